from __future__ import annotations

from datetime import datetime, timedelta
import logging

import sqlalchemy as sa
from sqlalchemy.orm import Session

from app.core.security import now_utc

logger = logging.getLogger(__name__)

AT_RISK_LIMIT = 20
RECENT_EVENTS_LIMIT = 10
EXPIRING_WINDOW_DAYS = 7


def churn_rate(canceled_30d: int, active: int) -> float:
    if active <= 0:
        return 0.0
    return round(canceled_30d / active * 100, 2)


def _metrics(db: Session, now: datetime) -> dict:
    row = db.execute(
        sa.text(
            """
            SELECT
                COALESCE(SUM(p.price) FILTER (
                    WHERE s.status='active' AND s.provider IN ('stripe','mercadopago')
                ), 0) AS mrr,
                COUNT(*) FILTER (WHERE s.status='active') AS active_subscriptions,
                COUNT(*) FILTER (WHERE s.status='trialing') AS trialing_subscriptions,
                COUNT(*) FILTER (WHERE s.status='canceled' AND s.canceled_at >= :since_90) AS canceled_last_90_days,
                COUNT(*) FILTER (WHERE s.status='canceled' AND s.canceled_at >= :since_30) AS canceled_last_30_days
            FROM subscriptions s
            JOIN subscription_plans p ON p.id=s.plan_id
            """
        ),
        {"since_90": now - timedelta(days=90), "since_30": now - timedelta(days=30)},
    ).mappings().one()
    active = int(row["active_subscriptions"] or 0)
    return {
        "mrr": round(float(row["mrr"] or 0), 2),
        "active_subscriptions": active,
        "trialing_subscriptions": int(row["trialing_subscriptions"] or 0),
        "canceled_last_90_days": int(row["canceled_last_90_days"] or 0),
        "churn_rate_30d": churn_rate(int(row["canceled_last_30_days"] or 0), active),
    }


def _alerts(db: Session, now: datetime) -> dict:
    at_risk = db.execute(
        sa.text(
            """
            SELECT
                s.company_id, c.name AS company_name, s.status, s.payment_failed_count,
                s.payment_retry_after, s.disabled_until
            FROM subscriptions s
            JOIN companies c ON c.id=s.company_id
            WHERE s.status='past_due' OR s.payment_failed_count >= 2
            ORDER BY s.payment_failed_count DESC, s.last_payment_failed_at DESC NULLS LAST
            LIMIT :limit
            """
        ),
        {"limit": AT_RISK_LIMIT},
    ).mappings().all()
    expiring = db.execute(
        sa.text(
            """
            SELECT s.company_id, c.name AS company_name, s.trial_ends_at
            FROM subscriptions s
            JOIN companies c ON c.id=s.company_id
            WHERE s.status='trialing'
              AND s.trial_ends_at >= :now
              AND s.trial_ends_at <= :until
            ORDER BY s.trial_ends_at ASC
            """
        ),
        {"now": now, "until": now + timedelta(days=EXPIRING_WINDOW_DAYS)},
    ).mappings().all()
    return {
        "at_risk_count": len(at_risk),
        "at_risk_subscriptions": [dict(r) for r in at_risk],
        "expiring_trials_count": len(expiring),
        "expiring_trials": [dict(r) for r in expiring],
    }


def _activity(db: Session, now: datetime) -> dict:
    recent = db.execute(
        sa.text(
            """
            SELECT id, company_id, event_type, old_status, new_status, reason, created_at
            FROM subscription_events
            ORDER BY created_at DESC
            LIMIT :limit
            """
        ),
        {"limit": RECENT_EVENTS_LIMIT},
    ).mappings().all()
    counts = db.execute(
        sa.text(
            """
            SELECT
                COUNT(*) FILTER (WHERE event_type='upgraded') AS upgrades_30d,
                COUNT(*) FILTER (WHERE event_type='downgraded') AS downgrades_30d
            FROM subscription_events
            WHERE created_at >= :since
            """
        ),
        {"since": now - timedelta(days=30)},
    ).mappings().one()
    return {
        "recent_events": [dict(r) for r in recent],
        "upgrades_30d": int(counts["upgrades_30d"] or 0),
        "downgrades_30d": int(counts["downgrades_30d"] or 0),
    }


def subscription_analytics(db: Session, *, now: datetime | None = None) -> dict:
    now = now or now_utc()
    out = {
        "metrics": _metrics(db, now),
        "alerts": _alerts(db, now),
        "activity": _activity(db, now),
        "generated_at": now,
    }
    logger.info("subscription analytics computed: mrr=%s active=%s", out["metrics"]["mrr"], out["metrics"]["active_subscriptions"])
    return out
