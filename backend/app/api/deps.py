import hmac

from fastapi import Depends, Header, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import BillingError
from app.core.security import InvalidToken, decode_access_token
from app.db.session import get_db
from app.models.user import User
from app.services.companies import is_platform_admin

bearer = HTTPBearer()


def http_error(exc: BillingError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.detail)


def _get_user_from_access_token(creds: HTTPAuthorizationCredentials, db: Session) -> User:
    try:
        user_id = decode_access_token(creds.credentials)
    except InvalidToken as exc:
        raise HTTPException(status_code=401, detail=exc.detail)
    user = db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=401, detail="Usuario no encontrado")
    return user


def get_current_user(
    creds: HTTPAuthorizationCredentials = Depends(bearer),
    db: Session = Depends(get_db),
) -> User:
    user = _get_user_from_access_token(creds, db)
    if user.status != "active":
        raise HTTPException(status_code=403, detail="Usuario bloqueado")
    return user


def require_platform_admin(
    current: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> User:
    if not is_platform_admin(db, current.id):
        raise HTTPException(status_code=403, detail="Solo administradores de plataforma")
    return current


def require_cron_secret(x_cron_secret: str | None = Header(default=None)) -> None:
    expected = settings.CRON_SECRET
    if not expected:
        raise HTTPException(status_code=503, detail="CRON_SECRET no configurado")
    if not x_cron_secret or not hmac.compare_digest(x_cron_secret, expected):
        raise HTTPException(status_code=401, detail="Cron secret invalido")


optional_bearer = HTTPBearer(auto_error=False)


def get_optional_user(
    creds: HTTPAuthorizationCredentials | None = Depends(optional_bearer),
    db: Session = Depends(get_db),
) -> User | None:
    if creds is None:
        return None
    return get_current_user(creds, db)
