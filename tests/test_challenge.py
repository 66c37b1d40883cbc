# tests/test_challenge.py
"""
Unit tests for 402 challenge construction.
"""
import base64
import json

from paygate.api.models.resource import RevenueSplit
from paygate.x402.challenge import (
    EXACT_SCHEME,
    X402_VERSION,
    build_challenge,
    build_requirement,
    encode_challenge_header,
    payee_for,
)

from conftest import (
    AGENT_WALLET_ADDRESS,
    ASSET_ADDRESS,
    GATEWAY_ADDRESS,
    PAYEE_ADDRESS,
    POOL_ADDRESS,
    PRICE,
    RESOURCE_ID,
    SIGNER_ADDRESS,
)

RESOURCE_URL = f"http://testserver/proxy/{RESOURCE_ID}/forecast"


class TestBuildRequirement:
    """Test the exact-scheme requirement."""

    def test_price_is_atomic_decimal_string(self, resource, settings):
        """The price is quoted in atomic units as a decimal string."""
        requirement = build_requirement(resource, RESOURCE_URL, settings)
        assert requirement.maxAmountRequired == "1000000"
        assert int(requirement.maxAmountRequired) >= PRICE

    def test_fields_from_resource_and_settings(self, resource, settings):
        """Requirement fields come from the resource and settings."""
        requirement = build_requirement(resource, RESOURCE_URL, settings)

        assert requirement.scheme == EXACT_SCHEME
        assert requirement.network == "eip155:10143"
        assert requirement.payTo == PAYEE_ADDRESS
        assert requirement.asset == ASSET_ADDRESS
        assert requirement.resource == RESOURCE_URL
        assert requirement.maxTimeoutSeconds == settings.X402_MAX_TIMEOUT_SECONDS
        assert requirement.extra.name == "USDC"
        assert requirement.extra.version == "2"

    def test_description_names_resource(self, resource, settings):
        """The description names the resource."""
        requirement = build_requirement(resource, RESOURCE_URL, settings)
        assert "Weather Oracle" in requirement.description

    def test_free_resource_still_priced_zero(self, resource, settings):
        """A zero price is still quoted."""
        free = resource.model_copy(update={"pricePerCall": 0})
        assert build_requirement(free, RESOURCE_URL, settings).maxAmountRequired == "0"


class TestBuildChallenge:
    """Test the 402 body."""

    def test_body_shape(self, resource, settings):
        """The 402 body carries version, error, gateway, service and one requirement."""
        challenge = build_challenge(resource, RESOURCE_URL, settings)
        body = challenge.model_dump()

        assert body["x402Version"] == X402_VERSION
        assert body["error"] == "Payment required"
        assert body["gatewayContract"] == GATEWAY_ADDRESS
        assert body["serviceId"] == RESOURCE_ID
        assert len(body["accepts"]) == 1
        assert set(body["accepts"][0]) == {
            "scheme", "network", "maxAmountRequired", "resource", "description",
            "mimeType", "payTo", "maxTimeoutSeconds", "asset", "extra",
        }

    def test_custom_error(self, resource, settings):
        """The error text can be overridden."""
        challenge = build_challenge(resource, RESOURCE_URL, settings, error="Nonce already used")
        assert challenge.error == "Nonce already used"

    def test_header_is_base64_json_of_body(self, resource, settings):
        """PAYMENT-REQUIRED is the base64 JSON of the body."""
        challenge = build_challenge(resource, RESOURCE_URL, settings)
        decoded = json.loads(base64.b64decode(encode_challenge_header(challenge)))
        assert decoded == challenge.model_dump()


class TestPayee:
    """Test who a challenge names as payTo."""

    def split_resource(self, resource):
        split = RevenueSplit(splitRatio=4000, pool=POOL_ADDRESS, agentWallet=AGENT_WALLET_ADDRESS)
        return resource.model_copy(update={"split": split})

    def test_owner_without_split(self, resource):
        """Resources without a split are paid to their owner."""
        assert payee_for(resource, SIGNER_ADDRESS) == PAYEE_ADDRESS

    def test_signer_with_split(self, resource):
        """Split revenue is collected by the settlement signer."""
        assert payee_for(self.split_resource(resource), SIGNER_ADDRESS) == SIGNER_ADDRESS

    def test_owner_when_no_signer(self, resource):
        """Without a signer the owner is paid directly."""
        assert payee_for(self.split_resource(resource), None) == PAYEE_ADDRESS

    def test_challenge_pay_to_override(self, resource, settings):
        """An explicit payTo replaces the owner."""
        challenge = build_challenge(resource, RESOURCE_URL, settings, pay_to=SIGNER_ADDRESS)
        assert challenge.accepts[0].payTo == SIGNER_ADDRESS
