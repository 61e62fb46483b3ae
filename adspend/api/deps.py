import secrets
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import APIKeyHeader
from sqlmodel import Session

from adspend.core.config import settings
from adspend.db import get_session
from adspend.services.billing import BillingStateMachine
from adspend.services.wiring import build_state_machine

# Internal API token header name
ADMIN_TOKEN_HEADER = "X-Admin-Token"

admin_token_header = APIKeyHeader(name=ADMIN_TOKEN_HEADER, auto_error=False)


def require_admin_token(token: Optional[str] = Depends(admin_token_header)) -> None:
    """
    Guard for the internal billing API.

    Refuses everything when no token is configured.
    """
    if not settings.ADMIN_API_TOKEN:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Billing API is not configured",
        )
    if not token or not secrets.compare_digest(token, settings.ADMIN_API_TOKEN):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing admin token",
        )


def get_state_machine(session: Session = Depends(get_session)) -> BillingStateMachine:
    try:
        return build_state_machine(session)
    except RuntimeError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
