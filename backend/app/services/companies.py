from __future__ import annotations

import logging

import sqlalchemy as sa
from sqlalchemy.orm import Session

from app.core.errors import AuthorizationError

logger = logging.getLogger(__name__)


def get_membership(db: Session, user_id, company_id):
    return db.execute(
        sa.text(
            """
            SELECT role, active, platform_admin
            FROM company_users
            WHERE company_id=:c AND user_id=:u AND active=true
            """
        ),
        {"c": str(company_id), "u": str(user_id)},
    ).mappings().first()


def require_active_member(db: Session, user_id, company_id, *, role: str | None = None):
    membership = get_membership(db, user_id, company_id)
    if not membership:
        raise AuthorizationError("No tienes acceso a esta empresa")
    if role and membership["role"] != role:
        raise AuthorizationError("No tienes permiso para esta operacion")
    return membership


def is_platform_admin(db: Session, user_id) -> bool:
    row = db.execute(
        sa.text(
            """
            SELECT 1
            FROM company_users
            WHERE user_id=:u AND active=true AND platform_admin=true
            LIMIT 1
            """
        ),
        {"u": str(user_id)},
    ).first()
    return row is not None


def company_contact(db: Session, company_id) -> str | None:
    row = db.execute(
        sa.text(
            """
            SELECT c.email AS company_email, u.email AS admin_email
            FROM companies c
            LEFT JOIN company_users cu ON cu.company_id=c.id AND cu.role='admin' AND cu.active=true
            LEFT JOIN users u ON u.id=cu.user_id
            WHERE c.id=:c
            ORDER BY cu.created_at
            LIMIT 1
            """
        ),
        {"c": str(company_id)},
    ).mappings().first()
    if not row:
        return None
    return row["company_email"] or row["admin_email"]


def delete_account(db: Session, *, email: str, company_id) -> dict:
    """Removes the signup user and the company; dependent rows go with FK cascades."""
    user_deleted = db.execute(
        sa.text("DELETE FROM users WHERE lower(email)=lower(:e)"),
        {"e": email},
    ).rowcount
    company_deleted = 0
    if company_id:
        company_deleted = db.execute(
            sa.text("DELETE FROM companies WHERE id=:c"),
            {"c": str(company_id)},
        ).rowcount
    logger.info("account deleted email=%s company=%s users=%s companies=%s", email, company_id, user_deleted, company_deleted)
    return {"users": user_deleted, "companies": company_deleted}
