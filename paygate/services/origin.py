# paygate/services/origin.py
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, Mapping, Optional

import requests
from requests.exceptions import RequestException

from paygate.api.models.resource import Resource
from paygate.core.errors import OriginUnavailable

logger = logging.getLogger(__name__)

# Headers that carry payment proofs; never forwarded to the origin
PAYMENT_HEADERS = {"x-payment", "payment-signature", "x-payment-id"}

# RFC 7230 hop-by-hop headers plus the ones requests/Starlette recompute
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "host",
    "content-length",
}

STREAM_CHUNK_SIZE = 64 * 1024


@dataclass
class OriginResponse:
    """Status, headers and a streaming body iterator from the origin."""
    status_code: int
    headers: Dict[str, str]
    body: Iterator[bytes]
    _response: Optional[requests.Response] = None

    def close(self) -> None:
        if self._response is not None:
            self._response.close()


def filter_request_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    return {
        name: value
        for name, value in headers.items()
        if name.lower() not in PAYMENT_HEADERS and name.lower() not in HOP_BY_HOP_HEADERS
    }


def filter_response_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    # requests decodes gzip/deflate bodies, so the encoding header no longer applies
    return {
        name: value
        for name, value in headers.items()
        if name.lower() not in HOP_BY_HOP_HEADERS and name.lower() != "content-encoding"
    }


def build_target_url(origin_url: str, path: str = "", query: str = "") -> str:
    url = origin_url.rstrip("/")
    if path:
        url = f"{url}/{path.lstrip('/')}"
    if query:
        url = f"{url}?{query}"
    return url


class OriginForwarder:
    """
    Relays a paid request to the resource's origin and streams the answer back.

    Origin error statuses are returned as they are. Only a transport failure
    (connection refused, timeout, ...) raises OriginUnavailable.
    """

    def __init__(self, session: Optional[requests.Session] = None, timeout: float = 30.0):
        self._session = session or requests.Session()
        self._timeout = timeout

    def forward(
        self,
        resource: Resource,
        method: str,
        path: str,
        query: str,
        headers: Mapping[str, str],
        body: Optional[bytes] = None,
    ) -> OriginResponse:
        url = build_target_url(resource.originURL, path, query)
        outgoing = filter_request_headers(headers)
        if resource.apiKey:
            outgoing[resource.apiKeyHeader or "Authorization"] = resource.apiKey

        try:
            response = self._session.request(
                method,
                url,
                headers=outgoing,
                data=body or None,
                timeout=self._timeout,
                stream=True,
                allow_redirects=False,
            )
        except RequestException as e:
            logger.error(f"Error forwarding {method} to origin ({url}): {e}")
            raise OriginUnavailable(url, str(e)) from e

        logger.info(f"Origin {url} answered {response.status_code} for {method}")
        return OriginResponse(
            status_code=response.status_code,
            headers=filter_response_headers(response.headers),
            body=_stream(response.iter_content(chunk_size=STREAM_CHUNK_SIZE)),
            _response=response,
        )


def _stream(chunks: Iterable[bytes]) -> Iterator[bytes]:
    for chunk in chunks:
        if chunk:
            yield chunk
