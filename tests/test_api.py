from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from inboxpay.main import app
from inboxpay.models import EmailAttachment, PaymentReport
from inboxpay.security import create_access_token
from inboxpay.services.analysis_queue import analysis_queue
from inboxpay.worker.celery_app import celery_app


@pytest.fixture
def client(db):
    analysis_queue.clear()
    yield TestClient(app)
    analysis_queue.clear()


@pytest.fixture
def headers(user):
    return {"Authorization": f"Bearer {create_access_token(subject=user.email, user_id=user.id)}"}


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["ok"] is True


def test_requests_without_a_valid_token_are_rejected(client):
    assert client.get("/analysis/records").status_code == 401
    r = client.get("/analysis/records", headers={"Authorization": "Bearer not-a-jwt"})
    assert r.status_code == 401
    assert r.json()["success"] is False


def test_unsupported_provider_is_a_client_error(client):
    r = client.get("/auth/myspace/url")
    assert r.status_code == 400
    assert r.json()["code"] == "unsupported_provider"


def test_google_authorization_url(client):
    r = client.get("/auth/google/url", params={"state": "abc"})
    assert r.status_code == 200
    assert "state=abc" in r.json()["url"]


def test_sync_of_an_account_that_needs_reauth_returns_401(client, headers, account_factory):
    acct = account_factory(expires_in_s=-60, refresh_token=None)

    r = client.post(f"/mail/accounts/{acct.id}/sync", headers=headers)

    assert r.status_code == 401
    body = r.json()
    assert body["needs_reauth"] is True
    assert body["mail_account_id"] == acct.id
    assert body["provider"] == "gmail"


def test_sync_of_an_account_already_syncing_returns_409(client, headers, db, account):
    account.sync_started_at = datetime.now(timezone.utc).replace(tzinfo=None)
    db.commit()

    r = client.post(f"/mail/accounts/{account.id}/sync", headers=headers)

    assert r.status_code == 409
    body = r.json()
    assert body["code"] == "sync_in_progress"
    assert body["mail_account_id"] == account.id


def test_token_status_and_accounts(client, headers, account):
    r = client.get(f"/auth/accounts/{account.id}/token-status", headers=headers)
    assert r.status_code == 200
    assert r.json()["has_refresh_token"] is True
    assert r.json()["is_expired"] is False

    accounts = client.get("/auth/accounts", headers=headers).json()
    assert [a["id"] for a in accounts] == [account.id]

    assert client.get("/auth/accounts/999/token-status", headers=headers).status_code == 404


def test_queue_sync_sends_one_task_per_account(client, headers, account, monkeypatch):
    sent = []

    def send_task(name, kwargs=None, **_):
        sent.append((name, kwargs))
        return SimpleNamespace(id=f"task-{len(sent)}")

    monkeypatch.setattr(celery_app, "send_task", send_task)

    r = client.post("/mail/sync", headers=headers)

    assert r.json()["queued"] == 1
    assert sent == [("inboxpay.worker.tasks.sync_account", {"mail_account_id": account.id})]


def test_messages_and_attachment_download(client, headers, db, email_factory):
    email = email_factory(subject="Coffee receipt")
    att = EmailAttachment(
        email_id=email.id, attachment_id="a1", filename="영수증.pdf", mime_type="application/pdf", data=b"%PDF"
    )
    db.add(att)
    db.commit()

    listed = client.get("/mail/messages", headers=headers, params={"search": "coffee"}).json()["data"]
    assert [m["id"] for m in listed] == [email.id]

    detail = client.get(f"/mail/messages/{email.id}", headers=headers).json()["data"]
    assert detail["attachments"][0]["filename"] == "영수증.pdf"

    r = client.get(f"/mail/attachments/{att.id}", headers=headers)
    assert r.status_code == 200
    assert r.content == b"%PDF"
    assert r.headers["content-type"] == "application/pdf"
    assert r.headers["content-disposition"].startswith("attachment; filename*=UTF-8''%EC")


def test_records_stats_and_delete(client, headers, db, email_factory):
    email = email_factory(subject="Coffee receipt", analyzed_at=datetime(2026, 9, 2))
    db.add(
        PaymentReport(
            email_id=email.id, is_payment=True, amount=42.5, currency="USD", merchant="Coffee Co", payment_date=datetime(2026, 9, 1)
        )
    )
    db.commit()

    page = client.get("/analysis/records", headers=headers).json()
    assert page["total_count"] == 1
    assert page["data"][0]["merchant"] == "Coffee Co"
    assert page["data"][0]["subject"] == "Coffee receipt"

    detail = client.get(f"/analysis/records/{page['data'][0]['id']}", headers=headers)
    assert detail.status_code == 200

    monthly = client.get("/analysis/stats/monthly", headers=headers, params={"year": 2026}).json()
    assert monthly["months"][8]["total_amount"] == 42.5

    daily = client.get("/analysis/stats/daily", headers=headers, params={"year": 2026, "month": 9}).json()
    assert len(daily["days"]) == 30
    assert daily["days"][0]["count"] == 1

    assert client.get("/analysis/stats/daily", headers=headers, params={"year": 2026, "month": 13}).status_code == 422

    assert client.delete("/analysis/records", headers=headers).json()["deleted"] == 1
    assert client.get("/analysis/records", headers=headers).json()["total_count"] == 0


def test_missing_record_is_404(client, headers):
    r = client.get("/analysis/records/12345", headers=headers)
    assert r.status_code == 404
    assert r.json()["code"] == "not_found"


def test_queue_endpoints(client, headers, email_factory):
    first = email_factory(subject="A", received_at=datetime(2026, 9, 1))
    second = email_factory(subject="B", received_at=datetime(2026, 9, 2))

    r = client.post("/analysis/queue/enqueue", headers=headers, json={"message_ids": [first.id, first.id, 999]})
    assert r.json()["added"] == 1

    r = client.post("/analysis/queue/produce", headers=headers)
    assert r.json()["added"] == 1
    assert r.json()["size"] == 2

    status = client.get("/analysis/queue", headers=headers).json()
    assert [i["message_id"] for i in status["next"]] == [first.id, second.id]

    drained = client.post("/analysis/queue/drain", headers=headers).json()
    assert drained["processed"] == 2
    assert drained["failed"] == 0
    assert drained["size"] == 0

    assert client.delete("/analysis/queue", headers=headers).json()["removed"] == 0


def test_enqueue_requires_at_least_one_id(client, headers):
    r = client.post("/analysis/queue/enqueue", headers=headers, json={"message_ids": []})
    assert r.status_code == 422
    assert r.json()["code"] == "validation_error"
