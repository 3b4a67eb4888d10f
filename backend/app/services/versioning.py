"""Optimistic writes for rows carrying a ``version`` column.

``update_versioned`` loads the row, lets the caller compute the changes
from that snapshot and writes them only if ``version`` is unchanged,
bumping it in the same statement. On a miss the row is reloaded and the
changes recomputed, so concurrent webhook/cron/API writers never
overwrite each other blindly.
"""
from __future__ import annotations

import logging
from typing import Callable, Mapping

import sqlalchemy as sa
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import NotFoundError, StaleWriteError

logger = logging.getLogger(__name__)

VERSIONED_TABLES = {"subscriptions", "signup_intents"}


def load_row(db: Session, table: str, row_id) -> dict | None:
    if table not in VERSIONED_TABLES:
        raise ValueError(f"tabla no versionada: {table}")
    row = db.execute(sa.text(f"SELECT * FROM {table} WHERE id=:id"), {"id": str(row_id)}).mappings().first()
    return dict(row) if row else None


def write_if_version(db: Session, table: str, row_id, version: int, changes: Mapping) -> bool:
    if table not in VERSIONED_TABLES:
        raise ValueError(f"tabla no versionada: {table}")
    assignments = "".join(f"{col}=:{col}, " for col in changes)
    result = db.execute(
        sa.text(
            f"""
            UPDATE {table}
            SET {assignments}version=version + 1, updated_at=now()
            WHERE id=:_row_id AND version=:_row_version
            """
        ),
        {**changes, "_row_id": str(row_id), "_row_version": version},
    )
    return result.rowcount == 1


def update_versioned(
    db: Session,
    table: str,
    row_id,
    compute: Callable[[dict], Mapping | None],
    *,
    attempts: int | None = None,
) -> tuple[dict, dict]:
    """Returns ``(snapshot, changes)``; ``changes`` is empty when compute opted out."""
    max_attempts = attempts or settings.WRITE_RETRY_ATTEMPTS
    for attempt in range(1, max_attempts + 1):
        row = load_row(db, table, row_id)
        if row is None:
            raise NotFoundError(f"{table} {row_id} no encontrado")
        changes = compute(row)
        if not changes:
            return (row, {})
        if write_if_version(db, table, row_id, row["version"], changes):
            return (row, dict(changes))
        logger.info("stale write on %s %s (version %s), attempt %s", table, row_id, row["version"], attempt)
    raise StaleWriteError(f"{table} {row_id} fue modificado concurrentemente")
