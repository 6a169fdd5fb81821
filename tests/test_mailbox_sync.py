import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from dateutil.relativedelta import relativedelta

from inboxpay.errors import ReauthRequiredError, SyncInProgressError
from inboxpay.models import AuditLog, Email, EmailAttachment, MailAccount
from inboxpay.oauth.vault import TokenVault
from inboxpay.services.mailbox_sync import MailboxSyncEngine, build_query

NOW = datetime(2026, 10, 19, tzinfo=timezone.utc)


@pytest.fixture
def engine_for(db, fake_gmail, fake_provider):
    def make():
        return MailboxSyncEngine(
            db,
            vault=TokenVault(db, provider=fake_provider),
            client_factory=fake_gmail.client_factory(),
            now=lambda: NOW,
        )

    return make


def test_build_query_joins_non_empty_parts():
    assert build_query(123) == "after:123"
    assert build_query(123, "  from:shop ") == "after:123 from:shop"


def test_first_sync_walks_every_page_of_the_lookback_window(db, account, fake_gmail, message_builder, engine_for):
    for mid in ("a", "b", "c"):
        fake_gmail.add(message_builder(mid, subject=f"Receipt {mid}"))
    fake_gmail.pages = [["a", "b"], ["c"]]

    result = asyncio.run(engine_for().sync_account(account))

    expected_after = int((NOW - relativedelta(months=3)).timestamp())
    assert fake_gmail.list_calls[0]["q"] == f"after:{expected_after}"
    assert fake_gmail.list_calls[0]["maxResults"] == "500"
    assert "pageToken" not in fake_gmail.list_calls[0]
    assert fake_gmail.list_calls[1]["pageToken"] == "1"
    assert result.synced == 3
    assert db.query(Email).count() == 3
    stored = db.query(Email).filter(Email.message_id == "b").one()
    assert stored.subject == "Receipt b"
    assert stored.is_read is False
    assert stored.user_id == account.user_id
    assert account.last_sync_at is not None
    audit = db.query(AuditLog).filter(AuditLog.action == "mail_sync").one()
    assert audit.meta["synced"] == 3


def test_second_run_is_incremental_and_skips_stored_messages(db, account, fake_gmail, message_builder, engine_for):
    fake_gmail.add(message_builder("a", internal_ms=1_760_000_000_500))
    fake_gmail.add(message_builder("b", internal_ms=1_760_000_100_999))
    asyncio.run(engine_for().sync_account(account))
    fetched = list(fake_gmail.get_calls)

    result = asyncio.run(engine_for().sync_account(account))

    second = fake_gmail.list_calls[-1]
    assert second["q"] == f"after:{1_760_000_100_999 // 1000 + 2}"
    assert second["maxResults"] == "50"
    assert len(fake_gmail.list_calls) == 2
    assert result.synced == 0
    assert result.skipped == 2
    assert fake_gmail.get_calls == fetched
    assert db.query(Email).count() == 2


def test_incremental_page_size_can_be_overridden(db, account, fake_gmail, message_builder, engine_for):
    fake_gmail.add(message_builder("a", internal_ms=1_760_000_000_000))
    asyncio.run(engine_for().sync_account(account))

    asyncio.run(engine_for().sync_account(account, max_results=7, query="subject:receipt"))

    last = fake_gmail.list_calls[-1]
    assert last["maxResults"] == "7"
    assert last["q"].endswith(" subject:receipt")


def test_empty_mailbox_completes_without_audit_row(db, account, fake_gmail, engine_for):
    result = asyncio.run(engine_for().sync_account(account))

    assert result.synced == 0
    assert fake_gmail.get_calls == []
    assert db.query(AuditLog).count() == 0
    assert account.last_sync_at is not None
    assert account.last_sync_error is None


def test_one_failing_message_does_not_abort_the_run(db, account, fake_gmail, message_builder, engine_for):
    for mid in ("a", "b", "c"):
        fake_gmail.add(message_builder(mid))
    fake_gmail.fail_messages = {"b"}

    result = asyncio.run(engine_for().sync_account(account))

    assert result.synced == 2
    assert result.failed == 1
    assert sorted(e.message_id for e in db.query(Email).all()) == ["a", "c"]


def test_attachments_are_downloaded_and_stored(db, account, fake_gmail, message_builder, engine_for):
    pdf = {
        "partId": "2",
        "mimeType": "application/pdf",
        "filename": "invoice.pdf",
        "body": {"attachmentId": "att-pdf", "size": 11},
    }
    fake_gmail.add(message_builder("a", extra_parts=[pdf]))
    fake_gmail.attachments[("a", "att-pdf")] = b"%PDF-1.4 ok"

    asyncio.run(engine_for().sync_account(account))

    email = db.query(Email).one()
    assert email.has_attachments is True
    att = db.query(EmailAttachment).one()
    assert att.email_id == email.id
    assert att.filename == "invoice.pdf"
    assert att.data == b"%PDF-1.4 ok"
    assert att.is_inline is False


def test_failed_attachment_download_keeps_the_message(db, account, fake_gmail, message_builder, engine_for):
    pdf = {
        "partId": "2",
        "mimeType": "application/pdf",
        "filename": "invoice.pdf",
        "body": {"attachmentId": "att-broken", "size": 11},
    }
    fake_gmail.add(message_builder("a", extra_parts=[pdf]))
    fake_gmail.fail_attachments = {"att-broken"}

    result = asyncio.run(engine_for().sync_account(account))

    assert result.synced == 1
    assert result.attachments_failed == 1
    assert db.query(Email).count() == 1
    assert db.query(EmailAttachment).count() == 0


def test_reauth_required_propagates_and_nothing_is_listed(db, account_factory, fake_gmail, engine_for):
    acct = account_factory(expires_in_s=-10, refresh_token=None)

    with pytest.raises(ReauthRequiredError):
        asyncio.run(engine_for().sync_account(acct))

    assert fake_gmail.list_calls == []
    db.expire_all()
    assert db.get(MailAccount, acct.id).needs_reauth is True


def test_listing_failure_is_recorded_on_the_account(db, account, fake_gmail, engine_for):
    def broken(request):
        raise RuntimeError("gmail exploded")

    fake_gmail.handler = broken

    with pytest.raises(RuntimeError):
        asyncio.run(engine_for().sync_account(account))

    db.expire_all()
    stored = db.get(MailAccount, account.id)
    assert "gmail exploded" in stored.last_sync_error
    assert stored.sync_started_at is None


def test_sync_all_isolates_failing_accounts(db, account_factory, fake_gmail, message_builder, engine_for):
    good = account_factory(email="good@example.com")
    bad = account_factory(email="bad@example.com", expires_in_s=-10, refresh_token=None)
    flagged = account_factory(email="flagged@example.com")
    flagged.needs_reauth = True
    db.commit()
    fake_gmail.add(message_builder("a"))

    summary = asyncio.run(engine_for().sync_all())

    assert summary.accounts == 2
    assert summary.succeeded == 1
    assert summary.failed == 1
    assert summary.synced == 1
    assert bad.id in summary.errors
    assert db.query(Email).filter(Email.mail_account_id == good.id).count() == 1


def _hold_claim(db, acct, started):
    acct.sync_started_at = started
    db.commit()


def test_account_claimed_by_another_run_is_not_synced(db, account, fake_gmail, message_builder, engine_for):
    held_since = NOW.replace(tzinfo=None) - timedelta(minutes=2)
    _hold_claim(db, account, held_since)
    fake_gmail.add(message_builder("a"))

    with pytest.raises(SyncInProgressError) as exc:
        asyncio.run(engine_for().sync_account(account))

    assert exc.value.account_id == account.id
    assert fake_gmail.list_calls == []
    assert db.query(Email).count() == 0
    db.expire_all()
    assert db.get(MailAccount, account.id).sync_started_at == held_since


def test_stale_claim_is_taken_over_and_released(db, account, fake_gmail, message_builder, engine_for):
    _hold_claim(db, account, NOW.replace(tzinfo=None) - timedelta(hours=2))
    fake_gmail.add(message_builder("a"))

    result = asyncio.run(engine_for().sync_account(account))

    assert result.synced == 1
    db.expire_all()
    stored = db.get(MailAccount, account.id)
    assert stored.sync_started_at is None
    assert stored.last_sync_at == NOW.replace(tzinfo=None)


def test_claim_is_released_when_reauth_is_required(db, account_factory, engine_for):
    acct = account_factory(expires_in_s=-10, refresh_token=None)

    with pytest.raises(ReauthRequiredError):
        asyncio.run(engine_for().sync_account(acct))

    db.expire_all()
    assert db.get(MailAccount, acct.id).sync_started_at is None


def test_sync_all_counts_busy_accounts_separately(db, account_factory, fake_gmail, message_builder, engine_for):
    free = account_factory(email="free@example.com")
    busy = account_factory(email="busy@example.com")
    _hold_claim(db, busy, NOW.replace(tzinfo=None))
    fake_gmail.add(message_builder("a"))

    summary = asyncio.run(engine_for().sync_all())

    assert summary.accounts == 2
    assert summary.busy == 1
    assert summary.succeeded == 1
    assert summary.failed == 0
    assert busy.id not in summary.errors
    assert db.query(Email).filter(Email.mail_account_id == free.id).count() == 1
    assert db.query(Email).filter(Email.mail_account_id == busy.id).count() == 0
