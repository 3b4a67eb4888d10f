import logging

import sqlalchemy as sa
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.security import create_access_token, now_utc, verify_password
from app.db.session import get_db
from app.schemas.auth import LoginIn, TokenOut

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/login", response_model=TokenOut)
def login(payload: LoginIn, db: Session = Depends(get_db)):
    email = payload.email.strip().lower()
    user = db.execute(
        sa.text(
            """
            SELECT id, password_hash, status
            FROM users
            WHERE lower(email)=:e
            """
        ),
        {"e": email},
    ).mappings().first()
    if not user or not verify_password(payload.password, user["password_hash"]):
        logger.info("login rejected for %s", email)
        raise HTTPException(401, "Credenciales invalidas")
    if user["status"] != "active":
        raise HTTPException(403, "Usuario bloqueado")

    db.execute(sa.text("UPDATE users SET last_login_at=:now WHERE id=:u"), {"now": now_utc(), "u": user["id"]})
    db.commit()
    return TokenOut(
        access_token=create_access_token(str(user["id"])),
        expires_in=settings.JWT_ACCESS_MINUTES * 60,
    )
