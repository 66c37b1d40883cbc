# paygate/api/models/resource.py
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

# On-chain ServiceRegistry serviceType enum
SERVICE_TYPE_NAMES: Dict[int, str] = {
    0: "COMPUTE",
    1: "STORAGE",
    2: "API",
    3: "AGENT",
    4: "OTHER",
}


class RevenueSplit(BaseModel):
    """
    Proxy-side split of exact payments for an agent that needs funding.

    Payments are made out to the settlement signer, which forwards
    splitRatio basis points to the pool and the rest to the agent wallet.
    """
    splitRatio: int = Field(..., gt=0, le=10_000, description="Basis points of each payment sent to the pool.")
    pool: str = Field(..., description="Agent investment pool.")
    agentWallet: str = Field(..., description="Agent operating wallet.")

    class Config:
        frozen = True


class Resource(BaseModel):
    """
    A paid resource reachable through the proxy.

    Immutable once published; looked up read-only on every request.
    """
    id: str = Field(..., description="Resource identifier (bytes32 service id for on-chain services).")
    name: str = Field("", description="Display name of the service.")
    ownerAddress: str = Field(..., description="Address that receives payments for this resource.")
    originURL: str = Field(..., description="Upstream URL requests are forwarded to.")
    pricePerCall: int = Field(..., ge=0, description="Price per call in atomic units of the asset.")
    currency: str = Field("USDC", description="Symbol of the payment asset.")
    serviceType: str = Field("OTHER", description="COMPUTE, STORAGE, API, AGENT or OTHER.")
    apiKey: Optional[str] = Field(None, exclude=True, description="Credential injected when forwarding.")
    apiKeyHeader: Optional[str] = Field(None, exclude=True, description="Header name for apiKey.")
    split: Optional[RevenueSplit] = Field(None, exclude=True, description="Revenue split, when the agent needs funding.")

    class Config:
        frozen = True


class RegisterServiceRequest(BaseModel):
    """Request body for registering an on-chain service with the proxy."""
    serviceId: str = Field(..., description="bytes32 service id in the ServiceRegistry.")
    originalUrl: str = Field(..., description="Origin URL the proxy forwards paid requests to.")
    apiKey: Optional[str] = None
    apiKeyHeader: Optional[str] = None


class RegisterServiceResponse(BaseModel):
    success: bool = True
    serviceId: str
    name: str
    proxyUrl: str
    resourceId: str


class CatalogSyncFailure(BaseModel):
    serviceId: Optional[str] = None
    index: Optional[int] = None
    error: str


class CatalogSyncResponse(BaseModel):
    synced: List[Resource]
    failures: List[CatalogSyncFailure]
