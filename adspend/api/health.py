from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlmodel import Session

from adspend.api.deps import require_admin_token
from adspend.core.circuit_breaker import CircuitBreakerRegistry
from adspend.db import get_session

router = APIRouter(tags=["health"])


@router.get("/health")
def health(session: Session = Depends(get_session)):
    """Liveness plus a database round trip."""
    try:
        session.execute(text("SELECT 1"))
        database = "ok"
    except Exception as e:
        database = f"error: {e}"
    return {"status": "healthy" if database == "ok" else "degraded", "database": database}


@router.get("/health/circuits", dependencies=[Depends(require_admin_token)])
def circuit_states():
    """State of every circuit breaker the process knows about."""
    states = CircuitBreakerRegistry.get_all_states()
    open_circuits = [name for name, stats in states.items() if stats["state"] != "closed"]
    return {
        "status": "degraded" if open_circuits else "healthy",
        "open": open_circuits,
        "circuits": states,
    }
