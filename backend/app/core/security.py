from datetime import datetime, timedelta, timezone

import bcrypt
from jose import JWTError, jwt

from app.core.config import settings

ALGO = "HS256"
ACCESS_TOKEN_TYPE = "access"


class InvalidToken(ValueError):
    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(detail)


def now_utc() -> datetime:
    return datetime.now(timezone.utc)

def create_access_token(sub: str, *, minutes: int | None = None) -> str:
    ttl = settings.JWT_ACCESS_MINUTES if minutes is None else minutes
    payload = {"sub": sub, "type": ACCESS_TOKEN_TYPE, "exp": now_utc() + timedelta(minutes=ttl)}
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=ALGO)

def decode_access_token(token: str) -> str:
    """Returns the user id carried by a valid, unexpired access token."""
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[ALGO])
    except JWTError as exc:
        raise InvalidToken("Token invalido") from exc
    if payload.get("type") != ACCESS_TOKEN_TYPE:
        raise InvalidToken("Tipo de token invalido")
    sub = payload.get("sub")
    if not sub:
        raise InvalidToken("Token sin usuario")
    return str(sub)

def hash_password(password: str) -> str:
    raw = password.encode("utf-8")
    return bcrypt.hashpw(raw, bcrypt.gensalt()).decode("utf-8")

def verify_password(password: str, password_hash: str | None) -> bool:
    if not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False
