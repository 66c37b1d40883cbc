# paygate/x402/middleware.py
"""
FastAPI middleware for x402 payment verification.

This module provides HTTP middleware that:
1. Intercepts requests to /proxy/{resourceId}[/...]
2. Returns 402 Payment Required when no proof is attached
3. Verifies and settles the attached proof through the PaymentGate
   (MCP initialize and tools/list calls are forwarded without payment)
4. Answers 202 while settlement is still being confirmed
5. Lets the request through to the proxy endpoint once payment is settled

Everything else (health, catalog listing, ledger polling, admin) passes
through unchanged.
"""
import base64
import json
import logging
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from paygate.api.models.payment import SettlementResponse
from paygate.api.models.transaction import Transaction
from paygate.x402.challenge import PAYMENT_REQUIRED_HEADER, encode_challenge_header
from paygate.x402.gate import GateDecision, GateOutcome, PaymentGate

logger = logging.getLogger(__name__)

# x402 protocol headers
X_PAYMENT_HEADER = "X-PAYMENT"
PAYMENT_SIGNATURE_HEADER = "PAYMENT-SIGNATURE"
X_PAYMENT_ID_HEADER = "X-PAYMENT-ID"
X_PAYMENT_RESPONSE_HEADER = "X-PAYMENT-RESPONSE"

PROXY_PREFIX = "/proxy/"
# Methods the proxy endpoint serves; anything else is answered by routing without payment
PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD"]
PENDING_RETRY_AFTER_SECONDS = 2

# MCP JSON-RPC discovery calls answered without payment
FREE_RPC_METHODS = {"initialize", "tools/list"}


def get_client_ip(request: Request) -> str:
    """Extract client IP from request, handling proxies."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # Take the first IP in the chain
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    if request.client:
        return request.client.host

    return "unknown"


async def is_free_rpc_request(request: Request) -> bool:
    """True for a POSTed MCP JSON-RPC call to a free discovery method."""
    if request.method != "POST":
        return False
    try:
        message = json.loads(await request.body())
    except ValueError:
        return False
    if not isinstance(message, dict):
        return False
    method = message.get("method")
    return isinstance(method, str) and method in FREE_RPC_METHODS


def resource_id_from_path(path: str) -> Optional[str]:
    """'/proxy/<id>/sub/path' -> '<id>'."""
    if not path.startswith(PROXY_PREFIX):
        return None
    resource_id = path[len(PROXY_PREFIX):].split("/", 1)[0]
    return resource_id or None


def encode_payment_response(transaction: Transaction, network: str) -> str:
    """
    Encode settlement evidence for the X-PAYMENT-RESPONSE header.

    Returns:
        Base64-encoded JSON string
    """
    settlement = SettlementResponse(
        success=True,
        transaction=transaction.transactionHash,
        network=transaction.network or network,
        payer=transaction.payer,
        paymentId=transaction.paymentId,
    )
    return base64.b64encode(json.dumps(settlement.model_dump()).encode("utf-8")).decode("ascii")


def create_402_response(decision: GateDecision, stage: Optional[str] = None) -> JSONResponse:
    """
    Create an HTTP 402 Payment Required response.

    The body is the challenge; rejections add the failing stage and reason so a
    client can tell a bad proof from a failed settlement.
    """
    challenge = decision.challenge
    if decision.message:
        challenge = challenge.model_copy(update={"error": decision.message})

    body = challenge.model_dump()
    if stage:
        body["stage"] = stage
    if decision.reason:
        body["reason"] = decision.reason.value
    if decision.transaction is not None:
        body["paymentId"] = decision.transaction.paymentId

    return JSONResponse(
        status_code=402,
        content=body,
        headers={PAYMENT_REQUIRED_HEADER: encode_challenge_header(challenge)},
    )


class X402Middleware(BaseHTTPMiddleware):
    """
    x402 payment gate for the proxy routes.

    The gate is looked up on app.state unless one is passed in, so tests can
    install the middleware with a gate built from fakes.
    """

    def __init__(self, app, gate: Optional[PaymentGate] = None):
        super().__init__(app)
        self._gate = gate

    def gate_for(self, request: Request) -> PaymentGate:
        return self._gate or request.app.state.gate

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Response]
    ) -> Response:
        resource_id = resource_id_from_path(request.url.path)
        if resource_id is None or request.method not in PROXY_METHODS:
            return await call_next(request)

        client_ip = get_client_ip(request)
        if await is_free_rpc_request(request):
            resource = self.gate_for(request).resource(resource_id)
            if resource is None:
                return JSONResponse(status_code=404, content={"error": f"Resource '{resource_id}' not found"})
            logger.info(f"x402: Free discovery call from {client_ip} to {resource.id}")
            request.state.resource = resource
            request.state.free_request = True
            request.state.client_ip = client_ip
            return await call_next(request)

        logger.info(f"x402: Processing paid request from {client_ip}: {request.method} {request.url.path}")

        payment_header = request.headers.get(X_PAYMENT_HEADER) or request.headers.get(PAYMENT_SIGNATURE_HEADER)
        decision = await run_in_threadpool(
            self.gate_for(request).evaluate,
            resource_id,
            str(request.url),
            payment_header,
            request.headers.get(X_PAYMENT_ID_HEADER),
            client_ip,
        )

        if decision.outcome == GateOutcome.UNKNOWN_RESOURCE:
            return JSONResponse(status_code=404, content={"error": decision.message})

        if decision.outcome == GateOutcome.CHALLENGE:
            return create_402_response(decision)

        if decision.outcome == GateOutcome.REJECTED:
            return create_402_response(decision, stage="verification")

        if decision.outcome == GateOutcome.SETTLEMENT_FAILED:
            return create_402_response(decision, stage="settlement")

        if decision.outcome == GateOutcome.UPSTREAM_ERROR:
            return JSONResponse(
                status_code=502,
                content={"error": "Payment verification failed", "detail": decision.message},
            )

        if decision.outcome == GateOutcome.PENDING:
            transaction = decision.transaction
            return JSONResponse(
                status_code=202,
                content={
                    "paymentId": transaction.paymentId,
                    "status": transaction.status.value,
                    "transactionHash": transaction.transactionHash,
                    "poll": f"/transactions/{transaction.paymentId}",
                },
                headers={
                    "Retry-After": str(PENDING_RETRY_AFTER_SECONDS),
                    X_PAYMENT_ID_HEADER: transaction.paymentId,
                },
            )

        # Paid: hand the settled record to the proxy endpoint
        request.state.resource = decision.resource
        request.state.transaction = decision.transaction
        request.state.client_ip = client_ip
        return await call_next(request)
