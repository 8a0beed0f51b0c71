from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from affiliate_engine.core.config import settings
from affiliate_engine.core.db import get_db
from affiliate_engine.core.security import decode_access_token, secrets_match
from affiliate_engine.crud.affiliates import get_affiliate_for_user
from affiliate_engine.crud.users import get_user
from affiliate_engine.models.affiliates import Affiliate
from affiliate_engine.models.users import User


bearer_scheme = HTTPBearer(auto_error=False)


def _user_from_credentials(db: Session, credentials: HTTPAuthorizationCredentials | None) -> User | None:
    if credentials is None or not credentials.credentials:
        return None
    try:
        payload = decode_access_token(credentials.credentials)
    except ValueError:
        return None
    subject = payload.get("sub")
    try:
        user_id = int(subject)
    except (TypeError, ValueError):
        return None
    return get_user(db, user_id)


def get_optional_user(
    db: Session = Depends(get_db),
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> User | None:
    return _user_from_credentials(db, credentials)


def get_current_user(user: User | None = Depends(get_optional_user)) -> User:
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


def require_platform_admin():
    def dependency(current_user: User = Depends(get_current_user)) -> User:
        if not current_user.is_admin:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Platform admin required")
        return current_user

    return dependency


def require_affiliate_owner():
    def dependency(
        db: Session = Depends(get_db),
        current_user: User = Depends(get_current_user),
    ) -> Affiliate:
        affiliate = get_affiliate_for_user(db, user_id=current_user.id)
        if not affiliate:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Affiliate account required")
        return affiliate

    return dependency


def require_payout_trigger():
    """Admin bearer token or the scheduler's shared secret; nothing else."""

    def dependency(
        request: Request,
        user: User | None = Depends(get_optional_user),
    ) -> str:
        provided = request.headers.get(settings.CRON_SECRET_HEADER_NAME)
        is_admin = user is not None and user.is_admin
        cron_ok = secrets_match(provided, settings.CRON_SECRET)
        authorized = is_admin or cron_ok
        if not authorized:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
        return f"admin:{user.id}" if is_admin else "cron"

    return dependency
