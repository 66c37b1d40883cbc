# paygate/api/models/transaction.py
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class TransactionStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    SETTLED = "settled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TransactionStatus.SETTLED, TransactionStatus.FAILED)


class PaymentMethod(str, Enum):
    EXACT = "exact"      # off-chain ERC-3009 authorization settled by the proxy
    GATEWAY = "gateway"  # already paid on-chain through payForService


class Transaction(BaseModel):
    """
    Lifecycle record of one payment attempt.

    Keyed by paymentId. Records are immutable values; the ledger replaces
    them on every advance.
    """
    id: str = Field(..., description="Ledger key (the paymentId).")
    resourceId: str
    payer: str
    amount: int
    method: PaymentMethod
    status: TransactionStatus = TransactionStatus.PENDING
    timestamp: float = Field(..., description="Unix time the record was created.")
    updatedAt: float
    paymentId: str
    nonce: Optional[str] = None
    network: Optional[str] = None
    transactionHash: Optional[str] = None
    failureReason: Optional[str] = None
    delivered: bool = Field(False, description="Whether the paid request has been forwarded.")

    class Config:
        frozen = True
