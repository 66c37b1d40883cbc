# paygate/api/models/payment.py
from typing import List, Optional

from pydantic import BaseModel, Field, field_serializer


class RequirementExtra(BaseModel):
    """EIP-712 domain name/version of the payment asset."""
    name: str
    version: str


class PaymentRequirement(BaseModel):
    """
    One acceptable way to pay for a resource, as listed in a 402 `accepts` array.

    Generated fresh for every challenge and never persisted.
    """
    scheme: str = Field(..., description="Payment scheme, e.g. 'exact'.")
    network: str = Field(..., description="CAIP-2 network identifier, e.g. 'eip155:10143'.")
    maxAmountRequired: str = Field(..., description="Price in atomic units of the asset (decimal string).")
    resource: str = Field(..., description="Full URL of the resource being paid for.")
    description: str = Field("", description="Human-readable description of the resource.")
    mimeType: str = Field("application/json", description="MIME type of the resource response.")
    payTo: str = Field(..., description="Address receiving the payment.")
    maxTimeoutSeconds: int = Field(..., description="How long a client may take to produce a proof.")
    asset: str = Field(..., description="Token contract address of the payment asset.")
    extra: RequirementExtra


class PaymentRequiredResponse(BaseModel):
    """Body of an HTTP 402 Payment Required response."""
    x402Version: int
    error: str
    accepts: List[PaymentRequirement]
    gatewayContract: str
    serviceId: str


class Authorization(BaseModel):
    """ERC-3009 TransferWithAuthorization message signed by the payer."""
    from_: str = Field(..., alias="from")
    to: str
    value: int
    validAfter: int
    validBefore: int
    nonce: str = Field(..., description="bytes32 hex nonce chosen by the payer.")

    class Config:
        populate_by_name = True

    @field_serializer("value", "validAfter", "validBefore")
    def _as_decimal_string(self, number: int) -> str:
        return str(number)


class ExactPayload(BaseModel):
    signature: str
    authorization: Authorization


class PaymentProof(BaseModel):
    """
    Signed, single-use authorization presented by the client on retry.

    Travels base64-encoded JSON in the X-PAYMENT / PAYMENT-SIGNATURE header.
    """
    x402Version: int = 1
    scheme: str
    network: str
    payload: ExactPayload

    @property
    def payer(self) -> str:
        return self.payload.authorization.from_

    @property
    def nonce(self) -> str:
        return self.payload.authorization.nonce

    @property
    def amount(self) -> int:
        return self.payload.authorization.value


class SettlementResponse(BaseModel):
    """Settlement evidence returned to the client in X-PAYMENT-RESPONSE."""
    success: bool
    transaction: Optional[str] = None
    network: str
    payer: Optional[str] = None
    paymentId: str
