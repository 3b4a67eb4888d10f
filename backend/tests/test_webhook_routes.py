from __future__ import annotations

import threading

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

import app.modules.billing.api as billing_api
from app.core.errors import WebhookSignatureError
from app.db.session import get_db


class RecordingSession:
    def __init__(self):
        self.commits = 0
        self.rollbacks = 0

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1


@pytest.fixture()
def session():
    return RecordingSession()


@pytest.fixture()
def client(session):
    app = FastAPI()
    app.include_router(billing_api.router, prefix="/billing")
    app.dependency_overrides[get_db] = lambda: session
    with TestClient(app) as test_client:
        yield test_client


def test_webhook_ingestion_runs_in_worker_thread(monkeypatch, client, session):
    seen: dict = {}
    offloaded: list = []
    real_run_in_threadpool = billing_api.run_in_threadpool

    async def tracking_run_in_threadpool(func, *args, **kwargs):
        offloaded.append(func.__name__)
        seen["loop_thread"] = threading.get_ident()
        return await real_run_in_threadpool(func, *args, **kwargs)

    def ingest(db, *, provider_code, headers, raw_body, query):
        seen.update(
            thread=threading.get_ident(),
            provider=provider_code,
            body=raw_body,
            topic=query.get("topic"),
            signature=headers.get("x-signature"),
        )
        return {"ok": True, "duplicate": False, "event_key": "payment:123", "kind": "payment_succeeded", "applied": True}

    monkeypatch.setattr(billing_api, "run_in_threadpool", tracking_run_in_threadpool)
    monkeypatch.setattr(billing_api, "ingest_webhook", ingest)

    resp = client.post(
        "/billing/webhooks/mercadopago?topic=payment&id=123",
        content=b"topic=payment&id=123",
        headers={"x-signature": "ts=1,v1=abc"},
    )

    assert resp.status_code == 200
    assert resp.json()["event_key"] == "payment:123"
    assert resp.json()["applied"] is True
    assert offloaded == ["_ingest_and_commit"]
    assert seen["thread"] != seen["loop_thread"]
    assert seen["provider"] == "mercadopago"
    assert seen["body"] == b"topic=payment&id=123"
    assert seen["topic"] == "payment"
    assert seen["signature"] == "ts=1,v1=abc"
    assert session.commits == 1
    assert session.rollbacks == 0


def test_rejected_webhook_rolls_back_with_error_status(monkeypatch, client, session):
    def ingest(db, **kwargs):
        raise WebhookSignatureError("Firma de webhook invalida")

    monkeypatch.setattr(billing_api, "ingest_webhook", ingest)

    resp = client.post("/billing/webhooks/stripe", content=b"{}")

    assert resp.status_code == 400
    assert resp.json()["detail"] == "Firma de webhook invalida"
    assert session.commits == 0
    assert session.rollbacks == 1


def test_unexpected_failure_answers_500_for_redelivery(monkeypatch, client, session):
    def ingest(db, **kwargs):
        raise RuntimeError("db down")

    monkeypatch.setattr(billing_api, "ingest_webhook", ingest)

    resp = client.post("/billing/webhooks/mercadopago", content=b"{}")

    assert resp.status_code == 500
    assert session.rollbacks == 1


def test_mercadopago_validation_ping_is_acknowledged(client):
    resp = client.get("/billing/webhooks/mercadopago")
    assert resp.status_code == 200
    assert resp.json()["note"] == "ok"
