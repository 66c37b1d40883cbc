# paygate/api/endpoints/services.py
import logging
import secrets
from typing import List, Optional

from fastapi import APIRouter, Body, Header, HTTPException, Request, status
from starlette.concurrency import run_in_threadpool

from paygate.api.models.resource import (
    CatalogSyncFailure,
    CatalogSyncResponse,
    RegisterServiceRequest,
    RegisterServiceResponse,
    Resource,
)

router = APIRouter()
logger = logging.getLogger(__name__)


def require_admin(request: Request, token: Optional[str]) -> None:
    expected = request.app.state.settings.ADMIN_TOKEN
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin endpoints are disabled (ADMIN_TOKEN not set)"
        )
    if not token or not secrets.compare_digest(token, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin token")


@router.get(
    "/services",
    response_model=List[Resource],
    summary="List Paid Services"
)
async def list_services(request: Request) -> List[Resource]:
    """Lists every resource reachable through the proxy, with its price."""
    return request.app.state.catalog.list()


@router.post(
    "/register-service",
    response_model=RegisterServiceResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register an On-Chain Service"
)
async def register_service(
    request: Request,
    payload: RegisterServiceRequest = Body(...),
    x_admin_token: Optional[str] = Header(None, alias="X-Admin-Token"),
) -> RegisterServiceResponse:
    """
    Reads a service from the ServiceRegistry and publishes it behind the proxy.

    Raises:
        HTTPException: 400 if the service is inactive, 502 if the registry is unreachable
    """
    require_admin(request, x_admin_token)
    catalog = request.app.state.catalog

    try:
        resource = await run_in_threadpool(
            catalog.register,
            payload.serviceId,
            payload.originalUrl,
            payload.apiKey,
            payload.apiKeyHeader,
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except Exception as e:
        logger.error(f"Service registration failed for {payload.serviceId}: {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Could not read service {payload.serviceId} from the registry: {e}"
        )

    logger.info(f"Registered service {resource.name} ({resource.id}) -> {catalog.proxy_url(resource.id)}")
    return RegisterServiceResponse(
        serviceId=payload.serviceId,
        name=resource.name,
        proxyUrl=catalog.proxy_url(resource.id),
        resourceId=resource.id,
    )


@router.post(
    "/admin/catalog/sync",
    response_model=CatalogSyncResponse,
    summary="Sync the Catalog from the Registry"
)
async def sync_catalog(
    request: Request,
    x_admin_token: Optional[str] = Header(None, alias="X-Admin-Token"),
) -> CatalogSyncResponse:
    """
    Publishes every active registry service that declares an endpoint.

    Entries that cannot be read are listed under `failures`; they do not
    stop the rest of the sync.
    """
    require_admin(request, x_admin_token)

    try:
        result = await run_in_threadpool(request.app.state.catalog.sync_from_registry)
    except Exception as e:
        logger.error(f"Catalog sync failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Could not read the service registry: {e}"
        )

    return CatalogSyncResponse(
        synced=result.resources,
        failures=[
            CatalogSyncFailure(serviceId=f.service_id, index=f.index, error=f.error)
            for f in result.failures
        ],
    )
