# paygate/agent/relay.py
"""
JSON-RPC clients for the ERC-4337 relay (bundler) and the chain node.

Bundler: eth_estimateUserOperationGas, eth_sendUserOperation,
eth_getUserOperationReceipt. Node: eth_call (EntryPoint.getNonce) and
eth_gasPrice. An RPC error object becomes RelayError; transport failures
(requests exceptions) propagate unchanged.
"""
import itertools
import logging
from typing import Any, Dict, List, Optional

import requests
from eth_abi import decode
from eth_utils import to_checksum_address, to_hex

from paygate.agent.calls import encode_function_call
from paygate.core.config import Settings
from paygate.core.errors import RelayError

logger = logging.getLogger(__name__)

_request_ids = itertools.count(1)


class JsonRpcClient:
    """Minimal JSON-RPC 2.0 client over HTTP."""

    def __init__(self, url: str, session: Optional[requests.Session] = None, timeout: float = 30.0):
        self.url = url
        self._session = session or requests.Session()
        self._timeout = timeout

    def call(self, method: str, params: List[Any]) -> Any:
        """
        Raises:
            RelayError: If the endpoint answers with an error object or no result
            requests.exceptions.RequestException: On transport failure
        """
        response = self._session.post(
            self.url,
            json={
                "jsonrpc": "2.0",
                "id": next(_request_ids),
                "method": method,
                "params": params,
            },
            timeout=self._timeout,
        )
        response.raise_for_status()

        payload = response.json()
        error = payload.get("error")
        if error:
            if isinstance(error, dict):
                raise RelayError(method, str(error.get("message", error)), error.get("code"))
            raise RelayError(method, str(error))
        if "result" not in payload:
            raise RelayError(method, "Invalid RPC response: missing 'result' field")
        return payload["result"]


class RelayClient:
    """
    Everything the operation pipeline needs from the outside world.

    Args:
        bundler: JSON-RPC client of the ERC-4337 bundler
        node: JSON-RPC client of a chain node
        entry_point: EntryPoint contract address
    """

    def __init__(self, bundler: JsonRpcClient, node: JsonRpcClient, entry_point: str):
        self._bundler = bundler
        self._node = node
        self.entry_point = to_checksum_address(entry_point)

    @classmethod
    def from_settings(cls, settings: Settings, session: Optional[requests.Session] = None) -> "RelayClient":
        if settings.BUNDLER_URL is None:
            raise ValueError("BUNDLER_URL not set. Cannot send UserOperations without a bundler.")
        session = session or requests.Session()
        return cls(
            bundler=JsonRpcClient(str(settings.BUNDLER_URL), session),
            node=JsonRpcClient(str(settings.RPC_URL), session),
            entry_point=settings.ENTRYPOINT_ADDRESS,
        )

    # Node

    def get_nonce(self, sender: str, key: int = 0) -> int:
        data = encode_function_call("get_nonce", [to_checksum_address(sender), key])
        result = self._node.call("eth_call", [{"to": self.entry_point, "data": to_hex(data)}, "latest"])
        (nonce,) = decode(["uint256"], bytes.fromhex(result[2:]))
        return nonce

    def gas_price(self) -> int:
        return int(self._node.call("eth_gasPrice", []), 16)

    # Bundler

    def estimate_user_operation_gas(self, user_operation: Dict[str, str]) -> Dict[str, int]:
        result = self._bundler.call("eth_estimateUserOperationGas", [user_operation, self.entry_point])
        if not isinstance(result, dict):
            raise RelayError("eth_estimateUserOperationGas", "Bundler returned invalid gas estimate payload")
        return {key: int(value, 16) for key, value in result.items() if isinstance(value, str)}

    def send_user_operation(self, user_operation: Dict[str, str]) -> str:
        result = self._bundler.call("eth_sendUserOperation", [user_operation, self.entry_point])
        if not isinstance(result, str):
            raise RelayError("eth_sendUserOperation", "Bundler returned invalid user operation hash")
        logger.info(f"UserOperation sent: {result}")
        return result

    def get_user_operation_receipt(self, operation_hash: str) -> Optional[Dict[str, Any]]:
        result = self._bundler.call("eth_getUserOperationReceipt", [operation_hash])
        if result is not None and not isinstance(result, dict):
            raise RelayError("eth_getUserOperationReceipt", "Bundler returned invalid receipt payload")
        return result
