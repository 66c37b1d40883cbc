# paygate/api/endpoints/proxy.py
import logging

from fastapi import APIRouter, HTTPException, Request, status
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask
from starlette.concurrency import run_in_threadpool

from paygate.core.errors import OriginUnavailable
from paygate.x402.middleware import (
    PROXY_METHODS,
    X_PAYMENT_ID_HEADER,
    X_PAYMENT_RESPONSE_HEADER,
    encode_payment_response,
)

router = APIRouter()
logger = logging.getLogger(__name__)


@router.api_route("/{resource_id}", methods=PROXY_METHODS, summary="Proxy a Paid Request")
@router.api_route("/{resource_id}/{path:path}", methods=PROXY_METHODS, summary="Proxy a Paid Request")
async def proxy_request(request: Request, resource_id: str, path: str = ""):
    """
    Forwards a paid request to the resource's origin and streams the answer back.

    Only reached after the x402 middleware has settled the payment and
    redeemed it for this request, or marked it as a free MCP discovery
    call. Paid responses carry the settlement evidence in X-PAYMENT-RESPONSE
    and the paymentId in X-PAYMENT-ID.

    Raises:
        HTTPException: 402 if the request reached the endpoint without a settled payment
    """
    transaction = getattr(request.state, "transaction", None)
    resource = getattr(request.state, "resource", None)
    free = getattr(request.state, "free_request", False)
    if resource is None or (transaction is None and not free):
        raise HTTPException(status_code=status.HTTP_402_PAYMENT_REQUIRED, detail="Payment required")

    app_state = request.app.state
    settlement_headers = {}
    payment_id = None
    if transaction is not None:
        payment_id = transaction.paymentId
        settlement_headers = {
            X_PAYMENT_RESPONSE_HEADER: encode_payment_response(transaction, app_state.settings.X402_NETWORK),
            X_PAYMENT_ID_HEADER: payment_id,
        }
    client_ip = getattr(request.state, "client_ip", "unknown")
    body = await request.body()

    try:
        origin = await run_in_threadpool(
            app_state.forwarder.forward,
            resource,
            request.method,
            path,
            request.url.query,
            request.headers,
            body,
        )
    except OriginUnavailable as e:
        # Settlement already happened and is not reversed
        app_state.audit.origin_error(client_ip, payment_id, e.origin_url, e.detail)
        content = {"error": "Origin unavailable", "detail": e.detail}
        if transaction is not None:
            content["paymentId"] = payment_id
            content["transactionHash"] = transaction.transactionHash
        return JSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content=content,
            headers=settlement_headers,
        )

    app_state.audit.origin_forwarded(client_ip, payment_id, resource.originURL, origin.status_code)
    headers = {**origin.headers, **settlement_headers}
    return StreamingResponse(
        origin.body,
        status_code=origin.status_code,
        headers=headers,
        background=BackgroundTask(origin.close),
    )
