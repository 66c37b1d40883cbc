# paygate/api/endpoints/transactions.py
from fastapi import APIRouter, HTTPException, Path, Request, status

from paygate.api.models.transaction import Transaction
from paygate.x402.ledger import normalize_payment_id

router = APIRouter()


@router.get(
    "/{payment_id}",
    response_model=Transaction,
    summary="Get Payment Status"
)
async def get_transaction(
    request: Request,
    payment_id: str = Path(..., description="paymentId returned in the 202 or X-PAYMENT-ID header."),
) -> Transaction:
    """
    Returns the ledger record of a payment.

    Clients that received 202 poll here until the status is settled or
    failed, then retry the original request with the same proof.
    """
    try:
        transaction = request.app.state.ledger.lookup(normalize_payment_id(payment_id))
    except ValueError:
        transaction = None
    if transaction is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No payment with id '{payment_id}'"
        )
    return transaction
