# paygate/x402/challenge.py
"""
Builds the HTTP 402 Payment Required challenge for a resource.

Pure functions of the catalog entry and the configuration: nothing here
touches the network or the ledger.
"""
import base64
import json
from typing import List, Optional

from paygate.api.models.payment import (
    PaymentRequiredResponse,
    PaymentRequirement,
    RequirementExtra,
)
from paygate.api.models.resource import Resource
from paygate.core.config import Settings

# x402 protocol constants
X402_VERSION = 1
EXACT_SCHEME = "exact"
PAYMENT_REQUIRED_HEADER = "PAYMENT-REQUIRED"


def payee_for(resource: Resource, signer_address: Optional[str]) -> str:
    """
    Address an exact payment for this resource is made out to.

    Agents with a revenue split are paid through the settlement signer, which
    forwards the shares after settlement. Everyone else is paid directly.
    """
    if resource.split is not None and signer_address:
        return signer_address
    return resource.ownerAddress


def build_requirement(
    resource: Resource,
    resource_url: str,
    settings: Settings,
    pay_to: Optional[str] = None,
) -> PaymentRequirement:
    """
    Create the "exact" PaymentRequirement for one call of a resource.

    Args:
        resource: Catalog entry being paid for
        resource_url: Full URL the client requested
        settings: Process configuration (network, asset, timeout)
        pay_to: Recipient override, see payee_for(); defaults to the owner

    Returns:
        PaymentRequirement for the per-call price
    """
    return PaymentRequirement(
        scheme=EXACT_SCHEME,
        network=settings.X402_NETWORK,
        maxAmountRequired=str(resource.pricePerCall),
        resource=resource_url,
        description=describe(resource),
        mimeType="application/json",
        payTo=pay_to or resource.ownerAddress,
        maxTimeoutSeconds=settings.X402_MAX_TIMEOUT_SECONDS,
        asset=settings.ASSET_ADDRESS,
        extra=RequirementExtra(name=settings.ASSET_NAME, version=settings.ASSET_VERSION),
    )


def describe(resource: Resource) -> str:
    name = resource.name or resource.id
    return f"{name} ({resource.serviceType}, 1 call)"


def build_challenge(
    resource: Resource,
    resource_url: str,
    settings: Settings,
    error: str = "Payment required",
    accepts: Optional[List[PaymentRequirement]] = None,
    pay_to: Optional[str] = None,
) -> PaymentRequiredResponse:
    """Assemble the full 402 body. `accepts` defaults to the single "exact" requirement."""
    return PaymentRequiredResponse(
        x402Version=X402_VERSION,
        error=error,
        accepts=accepts or [build_requirement(resource, resource_url, settings, pay_to)],
        gatewayContract=settings.GATEWAY_ADDRESS,
        serviceId=resource.id,
    )


def encode_header(payload: dict) -> str:
    """Base64-encode a JSON object for an x402 response header."""
    return base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")


def encode_challenge_header(challenge: PaymentRequiredResponse) -> str:
    return encode_header(challenge.model_dump())
