"""Notification outbox.

State-changing services call ``enqueue_notification`` inside their own
transaction; ``dispatch_pending_notifications`` runs separately (cron or
script) and delivers through Resend. A delivery failure only touches the
outbox row, never billing state.
"""
from __future__ import annotations

from datetime import datetime, timedelta
import html
import logging

import sqlalchemy as sa
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import ProviderError
from app.core.security import now_utc
from app.models.billing import NotificationOutbox
from app.services.billing_provider import http_json_request

logger = logging.getLogger(__name__)


def enqueue_notification(db: Session, recipient: str | None, subject: str, body: str, *, kind: str) -> bool:
    if not recipient:
        logger.info("notification %s skipped: no recipient", kind)
        return False
    db.add(NotificationOutbox(kind=kind, recipient=recipient, subject=subject, body=body))
    return True


def retry_backoff(attempts: int) -> timedelta:
    return timedelta(minutes=min(2 ** max(attempts - 1, 0), 60 * 24))


def send_email(recipient: str, subject: str, body: str) -> None:
    paragraphs = "".join(f"<p>{html.escape(line)}</p>" for line in body.split("\n") if line.strip())
    http_json_request(
        "POST",
        settings.RESEND_API_URL,
        {
            "from": settings.EMAIL_FROM,
            "to": recipient,
            "subject": subject,
            "html": paragraphs,
        },
        headers={"Authorization": f"Bearer {settings.RESEND_API_KEY}"},
        timeout=settings.MP_HTTP_TIMEOUT_SECONDS,
        source="resend",
    )


def _claim_due(db: Session, now: datetime, limit: int):
    return db.execute(
        sa.text(
            """
            SELECT id, kind, recipient, subject, body, attempts
            FROM notification_outbox
            WHERE status='pending' AND next_attempt_at <= :now
            ORDER BY next_attempt_at, created_at
            LIMIT :limit
            FOR UPDATE SKIP LOCKED
            """
        ),
        {"now": now, "limit": limit},
    ).mappings().all()


def _mark(db: Session, row_id, **values):
    assignments = ", ".join(f"{k}=:{k}" for k in values)
    db.execute(
        sa.text(f"UPDATE notification_outbox SET {assignments} WHERE id=:id"),
        {"id": row_id, **values},
    )


def dispatch_pending_notifications(db: Session, *, limit: int | None = None, now: datetime | None = None) -> dict:
    now = now or now_utc()
    rows = _claim_due(db, now, limit or settings.NOTIFY_BATCH_SIZE)
    sent = failed = retried = skipped = 0

    for row in rows:
        if not settings.RESEND_API_KEY:
            logger.info("notification %s to %s skipped: RESEND_API_KEY not configured", row["id"], row["recipient"])
            _mark(db, row["id"], status="skipped", last_error="RESEND_API_KEY no configurado")
            skipped += 1
            continue

        attempts = int(row["attempts"]) + 1
        try:
            send_email(row["recipient"], row["subject"], row["body"])
        except ProviderError as exc:
            if attempts >= settings.NOTIFY_MAX_ATTEMPTS:
                logger.warning("notification %s failed permanently: %s", row["id"], exc.detail)
                _mark(db, row["id"], status="failed", attempts=attempts, last_error=exc.detail)
                failed += 1
            else:
                logger.warning("notification %s attempt %s failed: %s", row["id"], attempts, exc.detail)
                _mark(
                    db,
                    row["id"],
                    attempts=attempts,
                    last_error=exc.detail,
                    next_attempt_at=now + retry_backoff(attempts),
                )
                retried += 1
            continue

        _mark(db, row["id"], status="sent", attempts=attempts, sent_at=now, last_error=None)
        sent += 1
        logger.info("notification %s (%s) sent to %s", row["id"], row["kind"], row["recipient"])

    return {"processed": len(rows), "sent": sent, "retried": retried, "failed": failed, "skipped": skipped}
