# paygate/agent/payer.py
"""
Client side of the proxy: how an agent pays for a resource.

Two ways to pay:

- gateway: one atomic user operation [pull?, approve, payForService]; the
  paymentId from the ServicePaid event is then presented as X-PAYMENT-ID.
- exact: sign an ERC-3009 authorization answering a 402 challenge and
  present it base64-encoded as X-PAYMENT.
"""
import base64
import json
import logging
import os
import time
from dataclasses import dataclass
from typing import Optional

import requests
from eth_account import Account
from eth_utils import keccak, to_checksum_address, to_hex

from paygate.agent.calls import encode_approve, encode_pay_for_service, encode_pool_pull
from paygate.agent.operation import OperationBuilder
from paygate.agent.submitter import OperationReceipt, OperationState, OperationSubmitter
from paygate.api.models.payment import Authorization, ExactPayload, PaymentProof, PaymentRequirement
from paygate.core.errors import OperationReverted, RelayError
from paygate.x402.typed_data import sign_authorization

logger = logging.getLogger(__name__)

SERVICE_PAID_TOPIC = to_hex(keccak(text="ServicePaid(address,bytes32,uint256,uint256,bytes32)"))

X_PAYMENT_HEADER = "X-PAYMENT"
X_PAYMENT_ID_HEADER = "X-PAYMENT-ID"


@dataclass(frozen=True)
class ServicePayment:
    payment_id: str
    operation_hash: str
    transaction_hash: Optional[str]
    amount: int


def find_payment_id(receipt: OperationReceipt, gateway_address: str) -> Optional[str]:
    """paymentId of the first ServicePaid event emitted by the gateway, if any."""
    gateway = gateway_address.lower()
    for log in receipt.logs:
        if str(log.get("address", "")).lower() != gateway:
            continue
        topics = log.get("topics") or []
        if len(topics) >= 4 and str(topics[0]).lower() == SERVICE_PAID_TOPIC:
            return topics[3]
    return None


def sign_exact_authorization(
    requirement: PaymentRequirement, private_key: str, now: Optional[int] = None
) -> PaymentProof:
    """Answer a 402 requirement with a signed single-use transfer authorization."""
    now = int(time.time()) if now is None else now
    authorization = Authorization(
        from_=Account.from_key(private_key).address,
        to=to_checksum_address(requirement.payTo),
        value=int(requirement.maxAmountRequired),
        validAfter=now,
        validBefore=now + requirement.maxTimeoutSeconds,
        nonce=to_hex(os.urandom(32)),
    )
    return PaymentProof(
        scheme=requirement.scheme,
        network=requirement.network,
        payload=ExactPayload(
            signature=sign_authorization(authorization, requirement, private_key),
            authorization=authorization,
        ),
    )


def encode_payment_header(proof: PaymentProof) -> str:
    payload = proof.model_dump(mode="json", by_alias=True)
    return base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")


class AgentPayer:
    """
    Pays for services from the agent's smart account.

    Args:
        builder: Builds operations for the smart account
        submitter: Signs and submits them
        owner_key: Private key of the smart account owner
        smart_account: Address of the agent's smart account
        gateway_address: Payment gateway contract
        token_address: Payment asset (ERC-20)
        session: HTTP session used to call the proxy
    """

    def __init__(
        self,
        builder: OperationBuilder,
        submitter: OperationSubmitter,
        owner_key: str,
        smart_account: str,
        gateway_address: str,
        token_address: str,
        session: Optional[requests.Session] = None,
    ):
        self._builder = builder
        self._submitter = submitter
        self._owner_key = owner_key
        self.smart_account = to_checksum_address(smart_account)
        self.gateway_address = to_checksum_address(gateway_address)
        self.token_address = to_checksum_address(token_address)
        self._session = session or requests.Session()

    def pay_for_service(
        self,
        service_id: str,
        price_per_call: int,
        calls: int = 1,
        pool: Optional[str] = None,
        remaining_cap: Optional[int] = None,
    ) -> ServicePayment:
        """
        Pay the gateway for `calls` calls in one atomic operation.

        With a pool, the amount is first pulled from the agent's spending pool
        into the smart account.

        Raises:
            CallEncodingError: On invalid arguments or an over-cap pull
            RelayError: If the relay rejected the operation
            RelayTimeout: If no receipt arrived in time; query it before retrying
            OperationReverted: If the operation was included but reverted
        """
        amount = price_per_call * calls
        batch = []
        if pool is not None:
            batch.append(encode_pool_pull(pool, self.smart_account, amount, remaining_cap))
        batch.append(encode_approve(self.token_address, self.gateway_address, amount))
        batch.append(encode_pay_for_service(self.gateway_address, service_id, calls))

        operation = self._builder.build(self.smart_account, batch)
        submission = self._submitter.submit(operation, self._owner_key)

        if submission.state in (OperationState.REJECTED, OperationState.TIMED_OUT):
            raise submission.error
        receipt = submission.receipt
        if not receipt.success:
            raise OperationReverted(receipt.operation_hash, receipt.revert_reason)

        payment_id = find_payment_id(receipt, self.gateway_address)
        if payment_id is None:
            raise RelayError(
                "eth_getUserOperationReceipt",
                f"No ServicePaid event in receipt of {receipt.operation_hash}",
            )
        logger.info(f"Paid {amount} for service {service_id}: paymentId {payment_id}")
        return ServicePayment(
            payment_id=payment_id,
            operation_hash=receipt.operation_hash,
            transaction_hash=receipt.transaction_hash,
            amount=amount,
        )

    def call_service(self, url: str, payment_id: str, method: str = "GET", **kwargs) -> requests.Response:
        """Call a proxied resource presenting a gateway receipt."""
        headers = dict(kwargs.pop("headers", None) or {})
        headers[X_PAYMENT_ID_HEADER] = payment_id
        return self._session.request(method, url, headers=headers, **kwargs)

    def pay_exact(self, url: str, method: str = "GET", **kwargs) -> requests.Response:
        """
        Request a resource, and if challenged, answer with an exact-scheme proof.

        Returns the final response; a second 402 is returned to the caller as is.
        """
        headers = dict(kwargs.pop("headers", None) or {})
        response = self._session.request(method, url, headers=headers, **kwargs)
        if response.status_code != 402:
            return response

        accepts = response.json().get("accepts") or []
        if not accepts:
            return response
        requirement = PaymentRequirement.model_validate(accepts[0])
        proof = sign_exact_authorization(requirement, self._owner_key)
        headers[X_PAYMENT_HEADER] = encode_payment_header(proof)
        logger.info(f"Answering 402 for {url} with {requirement.maxAmountRequired} {requirement.asset}")
        return self._session.request(method, url, headers=headers, **kwargs)
