"""
Unit tests for the Meta Custom Audiences activator.

Tests cover:
- Preflight rules (act_ prefix, 20 identifier minimum, mixed types allowed)
- Custom Audience creation and special ad categories
- Multi-key payloads, batching and inter-batch pause
- Graph API error code classification
- Status lookup and deletion
"""

import pytest

from activation_engine.config.platform_limits import PlatformLimits
from activation_engine.exceptions import (
    IdentifierValidationError,
    PlatformAPIError,
    PlatformAuthenticationError,
    PlatformRateLimitError,
    PreflightError,
)
from activation_engine.models.activation import (
    ActivationChannel,
    ChannelConfig,
    ChannelStatus,
    ComplianceFlags,
    IdentifierType,
    UserIdentifier,
)
from activation_engine.services.identifier_hasher import IdentifierHasher
from activation_engine.services.platform_activators.meta_activator import (
    MetaActivator,
    MetaCredentials,
    build_payload,
    classify_meta_error,
)
from activation_engine.tests.mocks import MockMetaServer

AUDIENCE_ID = "23850000000000001"


@pytest.fixture
def server():
    return MockMetaServer()


@pytest.fixture
def make_activator(server, fake_sleep):
    def _make(**kwargs):
        return MetaActivator(
            MetaCredentials(access_token="EAAB-token"),
            "act_123",
            http_client=server.client(),
            sleep=fake_sleep,
            **kwargs,
        )
    return _make


@pytest.fixture
def activator(make_activator):
    return make_activator()


@pytest.fixture
def config():
    return ChannelConfig(
        channel=ActivationChannel.META, account_id="act_123", audience_name="High Value Customers",
    )


@pytest.fixture
def hashed(make_identifiers):
    def _hashed(identifier_type=IdentifierType.EMAIL, count=25):
        return IdentifierHasher().hash_all(make_identifiers(identifier_type, count))
    return _hashed


class TestPreflight:
    """Tests for Meta preflight rules."""

    @pytest.mark.asyncio
    async def test_account_without_act_prefix_rejected(self, activator, hashed, server):
        config = ChannelConfig(
            channel=ActivationChannel.META, account_id="123", audience_name="x",
        )

        with pytest.raises(PreflightError, match="act_"):
            await activator.preflight_check(config, hashed())

        assert server.requests == []

    @pytest.mark.asyncio
    async def test_minimum_twenty_identifiers(self, activator, config, hashed):
        await activator.preflight_check(config, hashed(count=20))

        with pytest.raises(PreflightError) as exc_info:
            await activator.preflight_check(config, hashed(count=19))

        assert exc_info.value.code == "BELOW_MINIMUM_SIZE"
        assert str(exc_info.value) == "meta requires at least 20 identifiers. Received: 19"

    @pytest.mark.asyncio
    async def test_mixed_types_allowed(self, activator, config, hashed):
        identifiers = hashed(IdentifierType.EMAIL, 10) + hashed(IdentifierType.PHONE, 10)

        await activator.preflight_check(config, identifiers)

    @pytest.mark.asyncio
    async def test_missing_token(self, server, config, hashed):
        activator = MetaActivator(MetaCredentials(access_token=""), "act_123", http_client=server.client())

        with pytest.raises(PreflightError, match="access token"):
            await activator.preflight_check(config, hashed())


class TestCreateAudience:
    """Tests for Custom Audience creation."""

    @pytest.mark.asyncio
    async def test_creates_customer_file_audience(self, activator, config, hashed, server):
        audience_id = await activator.create_audience(config, hashed())

        assert audience_id == AUDIENCE_ID
        request = server.requests_to("/customaudiences")[0]
        assert request.path == "/v22.0/act_123/customaudiences"
        assert request.json["subtype"] == "CUSTOM"
        assert request.json["customer_file_source"] == "USER_PROVIDED_ONLY"
        assert "special_ad_categories" not in request.json
        assert request.headers["authorization"] == "Bearer EAAB-token"

    @pytest.mark.asyncio
    async def test_special_ad_categories(self, activator, config, hashed, server):
        flagged = ChannelConfig(
            channel=ActivationChannel.META,
            account_id="act_123",
            audience_name="Housing",
            compliance_flags=ComplianceFlags(housing=True, financial=True),
        )

        await activator.create_audience(flagged, hashed())

        assert server.requests[0].json["special_ad_categories"] == ["HOUSING", "CREDIT"]


class TestUpload:
    """Tests for batched user uploads."""

    @pytest.mark.asyncio
    async def test_match_rate_from_received_and_invalid(self, activator, hashed, server):
        server.invalid_per_batch = 5

        result = await activator.upload_identifiers(AUDIENCE_ID, hashed(count=50))

        assert result.success
        assert result.num_received == 50
        assert result.num_invalid_entries == 5
        assert result.matched_count == 45
        assert result.match_rate == 90.0

    @pytest.mark.asyncio
    async def test_batches_with_pause_between(self, make_activator, hashed, server, fake_sleep):
        activator = make_activator(limits=PlatformLimits(
            min_identifiers=20, batch_size=10, inter_batch_delay_seconds=0.1,
        ))

        result = await activator.upload_identifiers(AUDIENCE_ID, hashed(count=25))

        batches = server.requests_to("/users", method="POST")
        assert [len(r.json["payload"]["data"]) for r in batches] == [10, 10, 5]
        assert fake_sleep.delays == [0.1, 0.1]
        assert result.num_received == 25

    @pytest.mark.asyncio
    async def test_update_adds_and_removes(self, activator, hashed, server):
        await activator.update_audience(
            AUDIENCE_ID, hashed(count=3), hashed(IdentifierType.PHONE, 2),
        )

        assert len(server.rows_sent("POST")) == 3
        removed = server.requests_to("/users", method="DELETE")
        assert len(removed) == 1
        assert removed[0].json["payload"]["schema"] == ["PHONE"]

    @pytest.mark.asyncio
    async def test_update_with_disallowed_type_rejected(self, make_activator, hashed, server):
        activator = make_activator(limits=PlatformLimits(
            allowed_types=frozenset({IdentifierType.EMAIL, IdentifierType.PHONE}),
        ))

        with pytest.raises(PreflightError) as exc_info:
            await activator.update_audience(
                AUDIENCE_ID, hashed(count=3), hashed(IdentifierType.CRM_ID, 2),
            )

        assert exc_info.value.code == "UNSUPPORTED_IDENTIFIER_TYPE"
        assert server.requests == []

    @pytest.mark.asyncio
    async def test_rate_limit_code_classified(self, activator, hashed, server):
        server.fail_next("/users", 400, {"error": {"message": "User request limit reached", "code": 17}})

        with pytest.raises(PlatformRateLimitError):
            await activator.upload_identifiers(AUDIENCE_ID, hashed())

    @pytest.mark.asyncio
    async def test_expired_token_classified(self, activator, config, hashed, server):
        server.fail_next("/customaudiences", 400, {"error": {"message": "Session expired", "code": 190}})

        with pytest.raises(PlatformAuthenticationError):
            await activator.create_audience(config, hashed())


class TestBuildPayload:
    """Tests for the multi-key schema."""

    def test_single_type(self, hashed):
        batch = hashed(count=2)

        payload = build_payload(batch)

        assert payload == {
            "schema": ["EMAIL"],
            "data": [[batch[0].hashed_value], [batch[1].hashed_value]],
        }

    def test_mixed_types_fill_own_column(self, hashed):
        email = hashed(IdentifierType.EMAIL, 1)[0]
        madid = hashed(IdentifierType.MOBILE_AD_ID, 1)[0]
        crm = hashed(IdentifierType.CRM_ID, 1)[0]

        payload = build_payload([crm, email, madid])

        assert payload["schema"] == ["EMAIL", "MADID", "EXTERN_ID"]
        assert payload["data"] == [
            ["", "", crm.hashed_value],
            [email.hashed_value, "", ""],
            ["", madid.hashed_value, ""],
        ]


class TestClassifyMetaError:

    def test_success_body_passes(self):
        assert classify_meta_error(200, {"id": "1"}) is None

    def test_throttle_codes(self):
        assert isinstance(classify_meta_error(400, {"error": {"code": 80003}}), PlatformRateLimitError)

    def test_transient_flag(self):
        error = classify_meta_error(400, {"error": {"code": 2, "is_transient": True}})

        assert isinstance(error, PlatformAPIError)
        assert error.is_retryable

    def test_permanent_error(self):
        error = classify_meta_error(400, {"error": {"code": 100, "message": "Invalid parameter"}})

        assert not error.is_retryable
        assert error.code == "100"


class TestStatusAndDelete:

    @pytest.mark.asyncio
    async def test_ready_audience_is_active(self, activator, server):
        status = await activator.get_status(AUDIENCE_ID)

        assert status.status == ChannelStatus.ACTIVE
        assert status.matched_count == 1100
        assert server.requests[0].method == "GET"
        assert "operation_status" in server.requests[0].params["fields"]

    @pytest.mark.asyncio
    async def test_processing_audience_is_uploading(self, activator, server):
        server.operation_status_code = 300

        status = await activator.get_status(AUDIENCE_ID)

        assert status.status == ChannelStatus.UPLOADING

    @pytest.mark.asyncio
    async def test_delete(self, activator, server):
        assert await activator.delete_audience(AUDIENCE_ID) is True
        assert server.requests[0].method == "DELETE"
        assert server.requests[0].path == f"/v22.0/{AUDIENCE_ID}"


@pytest.mark.scenario
class TestGmailScenario:
    """Three emails, one malformed, activated on act_123."""

    RAW = ["a@gmail.com", "A.B+promo@gmail.com", "bad-email"]

    @pytest.mark.asyncio
    async def test_bad_entry_rejects_batch_then_valid_pair_uploads(self, activator, server):
        hasher = IdentifierHasher()
        identifiers = [UserIdentifier(type=IdentifierType.EMAIL, raw_value=v) for v in self.RAW]

        with pytest.raises(IdentifierValidationError) as exc_info:
            hasher.hash_all(identifiers)
        assert list(exc_info.value.errors) == [2]

        valid = hasher.hash_all(identifiers[:2])
        assert hasher.normalize(self.RAW[0], IdentifierType.EMAIL) == "a@gmail.com"
        assert hasher.normalize(self.RAW[1], IdentifierType.EMAIL) == "ab@gmail.com"
        assert valid[0].hashed_value != valid[1].hashed_value

        result = await activator.upload_identifiers(AUDIENCE_ID, valid)

        assert result.num_received == 2
        assert server.rows_sent() == [[valid[0].hashed_value], [valid[1].hashed_value]]
