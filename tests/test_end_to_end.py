import asyncio
from datetime import datetime, timezone

from inboxpay.models import Email, PaymentReport
from inboxpay.oauth.vault import TokenVault
from inboxpay.services import reports
from inboxpay.services.analysis import AnalysisEngine
from inboxpay.services.mailbox_sync import MailboxSyncEngine


def test_sync_then_analyze_produces_one_payment_record(db, user, account, fake_gmail, fake_provider, message_builder, llm_factory):
    fake_gmail.add(
        message_builder(
            "m-coffee",
            subject="Your Coffee Co receipt",
            sender="Coffee Co <receipts@coffee.example>",
            text="Thanks for your order. Total charged: $42.50",
            internal_ms=1_790_000_000_000,
        )
    )
    fake_gmail.add(
        message_builder(
            "m-news",
            subject="This week's newsletter",
            text="Our fall collection is here. Prices from $19.",
            internal_ms=1_790_000_100_000,
        )
    )
    llm = llm_factory(
        {
            "Your Coffee Co receipt": {
                "isPayment": True,
                "amount": 42.5,
                "currency": "USD",
                "merchant": "Coffee Co",
                "paymentType": "card_online",
                "category": "living",
                "summary": "Coffee order paid by card.",
            }
        }
    )
    sync = MailboxSyncEngine(
        db,
        vault=TokenVault(db, provider=fake_provider),
        client_factory=fake_gmail.client_factory(),
        now=lambda: datetime(2026, 10, 19, tzinfo=timezone.utc),
    )

    synced = asyncio.run(sync.sync_account(account))
    batch = asyncio.run(AnalysisEngine(db, llm=llm).analyze_batch(user.id, limit=10))

    assert synced.synced == 2
    assert batch.to_dict() == {"analyzed": 2, "payments": 1, "failed": 0}
    assert db.query(Email).filter(Email.analyzed_at.is_(None)).count() == 0
    assert db.query(PaymentReport).count() == 2

    page = reports.get_records(db, user.id)
    assert page.total_count == 1
    record = page.data[0]
    assert record.merchant == "Coffee Co"
    assert float(record.amount) == 42.5
    assert record.currency == "USD"
    assert record.email.message_id == "m-coffee"
    # no payment date from the classifier, so the message's receive time is used
    assert record.payment_date == record.email.received_at
