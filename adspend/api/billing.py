"""
Internal ad spend billing API.

Used by the dashboard backend and support tooling; every route requires the
X-Admin-Token header.
"""

from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlmodel import Session

from adspend.api.deps import get_state_machine, require_admin_token
from adspend.core.exceptions import CreditAccountNotFoundError, LockUnavailableError, PaymentFailureError
from adspend.core.logging_config import get_logger
from adspend.db import get_session
from adspend.services.billing import BillingStateMachine
from adspend.services.ledger import AdSpendCreditLedger, NO_SPEND_DAYS_REMAINING

logger = get_logger(__name__)

BILLING_IN_PROGRESS = "Billing is in progress for this customer, try again shortly"

router = APIRouter(
    prefix="/billing/ad-spend",
    tags=["billing"],
    dependencies=[Depends(require_admin_token)],
)


class AddCreditRequest(BaseModel):
    amount: Decimal = Field(gt=0)
    description: Optional[str] = Field(default=None, max_length=255)


def _ledger_or_404(session: Session, customer_id: int) -> AdSpendCreditLedger:
    try:
        return AdSpendCreditLedger.for_customer(session, customer_id)
    except CreditAccountNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/{customer_id}/balance")
def get_balance(customer_id: int, session: Session = Depends(get_session)):
    """Balance, standing and spend projection for one account."""
    ledger = _ledger_or_404(session, customer_id)
    credit = ledger.credit
    days_remaining = ledger.days_remaining()

    return {
        "customer_id": customer_id,
        "balance": str(ledger.balance),
        "currency": credit.currency,
        "status": credit.status.value,
        "payment_status": credit.payment_status.value,
        "failed_charge_count": credit.failed_charge_count,
        "grace_period_ends_at": credit.grace_period_ends_at.isoformat() if credit.grace_period_ends_at else None,
        "campaigns_paused_at": credit.campaigns_paused_at.isoformat() if credit.campaigns_paused_at else None,
        "can_run_campaigns": ledger.can_run_campaigns(),
        "budget_multiplier": ledger.budget_multiplier(),
        "average_daily_spend": str(ledger.average_daily_spend()),
        "days_remaining": None if days_remaining == NO_SPEND_DAYS_REMAINING else round(days_remaining, 2),
    }


@router.get("/{customer_id}/transactions")
def get_transactions(
    customer_id: int,
    limit: int = Query(default=20, ge=1, le=200),
    session: Session = Depends(get_session),
):
    ledger = _ledger_or_404(session, customer_id)
    return {
        "customer_id": customer_id,
        "transactions": [
            {
                "id": tx.id,
                "type": tx.type.value,
                "amount": str(tx.amount),
                "balance_after": str(tx.balance_after),
                "description": tx.description,
                "charge_reference": tx.charge_reference,
                "created_at": tx.created_at.isoformat(),
            }
            for tx in ledger.transactions(limit=limit)
        ],
    }


@router.post("/{customer_id}/add-credit")
async def add_credit(
    customer_id: int,
    body: AddCreditRequest,
    state_machine: BillingStateMachine = Depends(get_state_machine),
):
    """Manual top-up charged to the customer's card."""
    try:
        result = await state_machine.top_up(customer_id, body.amount, body.description or "Manual top-up via dashboard")
    except CreditAccountNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except LockUnavailableError:
        raise HTTPException(status_code=409, detail=BILLING_IN_PROGRESS)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if not result.success:
        raise HTTPException(status_code=400, detail=result.error or "Failed to add credit")

    logger.info("ad_spend_manual_credit_added", customer_id=customer_id, amount=str(body.amount))
    return {
        "success": True,
        "new_balance": str(result.new_balance),
        "charge_id": result.charge_id,
        "message": "Credit added successfully",
    }


@router.post("/{customer_id}/retry-payment")
async def retry_payment(
    customer_id: int,
    state_machine: BillingStateMachine = Depends(get_state_machine),
):
    """Retry a failed payment and restore the account."""
    try:
        result = await state_machine.retry_payment(customer_id)
    except CreditAccountNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except LockUnavailableError:
        raise HTTPException(status_code=409, detail=BILLING_IN_PROGRESS)
    except PaymentFailureError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if not result.success:
        raise HTTPException(status_code=400, detail=result.error or "Payment failed")

    return {
        "success": True,
        "new_balance": str(result.new_balance),
        "charge_id": result.charge_id,
        "message": "Payment successful! Your campaigns will resume shortly.",
    }
