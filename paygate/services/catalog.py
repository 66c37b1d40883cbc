# paygate/services/catalog.py
"""
Resource catalog: resource id -> origin URL, price and owner.

Entries come from the on-chain ServiceRegistry, either one at a time
(register) or by a bounded-concurrency sweep over the whole registry
(sync_from_registry). Lookups on the request path are read-only.
"""
import base64
import binascii
import json
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from paygate.api.models.resource import Resource, RevenueSplit
from paygate.services.registry import AgentFundingReader, RegistryService, ServiceRegistryReader

logger = logging.getLogger(__name__)

DATA_URI_JSON_PREFIX = "data:application/json;base64,"


@dataclass(frozen=True)
class NameResult:
    """Display name parse outcome. `error` is set whenever the fallback was used."""
    name: str
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def parse_display_name(uri: str, fallback: str) -> NameResult:
    """
    Derive a display name from a registry name or agent metadata URI.

    Accepts plain names, JSON metadata with a "name" field, and base64 JSON
    data URIs. Anything else yields the fallback together with the reason.
    """
    text = (uri or "").strip()
    if not text:
        return NameResult(fallback, "empty name")

    if text.startswith(DATA_URI_JSON_PREFIX):
        try:
            text = base64.b64decode(text[len(DATA_URI_JSON_PREFIX):], validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as e:
            return NameResult(fallback, f"undecodable data URI: {e}")
    elif not text.startswith("{"):
        return NameResult(text)

    try:
        metadata = json.loads(text)
    except json.JSONDecodeError as e:
        return NameResult(fallback, f"invalid metadata JSON: {e}")

    name = metadata.get("name") if isinstance(metadata, dict) else None
    if not isinstance(name, str) or not name.strip():
        return NameResult(fallback, "metadata has no name")
    return NameResult(name.strip())


@dataclass(frozen=True)
class SyncFailure:
    error: str
    service_id: Optional[str] = None
    index: Optional[int] = None


@dataclass
class SyncResult:
    resources: List[Resource] = field(default_factory=list)
    failures: List[SyncFailure] = field(default_factory=list)


class ResourceCatalog:
    """
    Thread-safe map of published resources.

    Args:
        registry: Registry reader used by register() and sync_from_registry()
        public_url: Base URL used to build proxy URLs
        sync_concurrency: Maximum registry reads in flight during a sync
        funding: Agent funding reader; without it no resource gets a revenue split
    """

    def __init__(
        self,
        registry: Optional[ServiceRegistryReader] = None,
        public_url: str = "http://localhost:4402",
        sync_concurrency: int = 8,
        funding: Optional[AgentFundingReader] = None,
    ):
        self._registry = registry
        self._funding = funding
        self._public_url = public_url.rstrip("/")
        self._sync_concurrency = max(1, sync_concurrency)
        self._resources: Dict[str, Resource] = {}
        self._lock = threading.Lock()

    def get(self, resource_id: str) -> Optional[Resource]:
        with self._lock:
            return self._resources.get(resource_id.lower())

    def list(self) -> List[Resource]:
        with self._lock:
            return list(self._resources.values())

    def publish(self, resource: Resource) -> Resource:
        with self._lock:
            self._resources[resource.id.lower()] = resource
        logger.info(f"Catalog: published {resource.id} -> {resource.originURL} ({resource.pricePerCall})")
        return resource

    def proxy_url(self, resource_id: str) -> str:
        return f"{self._public_url}/proxy/{resource_id}"

    def register(
        self,
        service_id: str,
        origin_url: str,
        api_key: Optional[str] = None,
        api_key_header: Optional[str] = None,
    ) -> Resource:
        """
        Publish a registry service behind the proxy.

        Raises:
            ValueError: If the service is not active in the registry
            RuntimeError: If no registry reader is configured
        """
        if self._registry is None:
            raise RuntimeError("No service registry configured")

        service = self._registry.get_service(service_id)
        if not service.active:
            raise ValueError(f"Service {service_id} is not active")

        return self.publish(
            self._to_resource(service, origin_url, api_key=api_key, api_key_header=api_key_header)
        )

    def sync_from_registry(self) -> SyncResult:
        """
        Publish every active registry service that declares an endpoint.

        Reads run in a pool of at most sync_concurrency workers. A failing
        entry is reported in SyncResult.failures and does not stop the rest.
        """
        if self._registry is None:
            raise RuntimeError("No service registry configured")

        count = self._registry.service_count()
        result = SyncResult()
        if count == 0:
            return result

        with ThreadPoolExecutor(max_workers=min(self._sync_concurrency, count)) as executor:
            futures = [executor.submit(self._load_entry, index) for index in range(count)]
            for future in futures:
                outcome = future.result()
                if isinstance(outcome, SyncFailure):
                    result.failures.append(outcome)
                elif outcome is not None:
                    result.resources.append(self.publish(outcome))

        logger.info(
            f"Catalog: synced {len(result.resources)} of {count} registry services "
            f"({len(result.failures)} failures)"
        )
        return result

    def _load_entry(self, index: int):
        try:
            service_id = self._registry.service_id_at(index)
        except Exception as e:
            logger.warning(f"Catalog: getServiceIdAt({index}) failed: {e}")
            return SyncFailure(error=str(e), index=index)

        try:
            service = self._registry.get_service(service_id)
        except Exception as e:
            logger.warning(f"Catalog: getService({service_id}) failed: {e}")
            return SyncFailure(error=str(e), service_id=service_id, index=index)

        if not service.active:
            return None
        if not service.endpoint:
            return SyncFailure(error="service has no endpoint", service_id=service_id, index=index)
        return self._to_resource(service, service.endpoint)

    def _to_resource(
        self,
        service: RegistryService,
        origin_url: str,
        api_key: Optional[str] = None,
        api_key_header: Optional[str] = None,
    ) -> Resource:
        display = parse_display_name(service.name, fallback=f"Agent #{service.agent_id}")
        if not display.ok:
            logger.info(f"Catalog: using fallback name for {service.service_id}: {display.error}")

        return Resource(
            id=service.service_id,
            name=display.name,
            ownerAddress=service.owner,
            originURL=origin_url,
            pricePerCall=service.price_per_call,
            currency="USDC",
            serviceType=service.service_type_name,
            apiKey=api_key,
            apiKeyHeader=api_key_header,
            split=self._resolve_split(service),
        )

    def _resolve_split(self, service: RegistryService) -> Optional[RevenueSplit]:
        """
        Revenue split for agents that need funding and have a pool and wallet.

        Any read failure leaves the resource paying its owner directly.
        """
        if self._funding is None:
            return None
        try:
            funding = self._funding.get_funding(service.agent_id)
        except Exception as e:
            logger.warning(f"Catalog: funding config for agent {service.agent_id} unavailable: {e}")
            return None

        if not funding.needs_funding or funding.split_ratio <= 0:
            return None
        if funding.split_ratio > 10_000:
            logger.warning(f"Catalog: agent {service.agent_id} split ratio {funding.split_ratio} exceeds 10000 bps")
            return None
        if not funding.has_split_targets:
            logger.info(f"Catalog: no split targets for agent {service.agent_id}, paying owner directly")
            return None
        return RevenueSplit(splitRatio=funding.split_ratio, pool=funding.pool, agentWallet=funding.agent_wallet)
