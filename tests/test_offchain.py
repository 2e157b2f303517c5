"""Tests for the off-chain API client."""
import json

import httpx
import pytest

from trust_chain.exceptions import MissingProofError, OffchainSyncError
from trust_chain.models import FieldError, OfferDraft
from trust_chain.offchain import TX_HASH_HEADER, OffchainSyncClient, parse_error_body


class RecordingAPI:
    """MockTransport handler returning a canned response per request."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0) if self.responses else httpx.Response(200, json={})
        if isinstance(response, Exception):
            raise response
        return response


def make_client(api):
    return OffchainSyncClient("http://api.test/", "secret-token", transport=httpx.MockTransport(api))


@pytest.fixture
def draft():
    return OfferDraft(
        title="Road works",
        description="Resurfacing of RN5",
        budget=125000.0,
        currency="TND",
        sector_id=3,
        tender_number="T-2024-017",
        proposal_submission_start="2024-05-01T00:00:00Z",
        proposal_submission_end="2024-05-15T00:00:00Z",
        proposal_review_start="2024-05-16T00:00:00Z",
        proposal_review_end="2024-05-30T00:00:00Z",
    )


class TestParseErrorBody:
    def test_message_object(self):
        """Should read the msg of an error object."""
        assert parse_error_body({"error": {"msg": "role not found"}}) == ("role not found", [])

    def test_field_error_array(self):
        """Should surface every entry of a validation error array."""
        body = {"error": [
            {"type": "field", "value": "", "msg": "required", "path": "title"},
            {"type": "field", "value": "-1", "msg": "must be positive", "path": "budget"},
        ]}

        message, fields = parse_error_body(body)

        assert fields == [FieldError("title", "required"), FieldError("budget", "must be positive")]
        assert message == "title: required; budget: must be positive"

    def test_plain_text(self):
        """Should fall back to the raw body text."""
        assert parse_error_body("Bad Gateway") == ("Bad Gateway", [])
        assert parse_error_body(None) == ("", [])


class TestMutations:
    @pytest.mark.asyncio
    async def test_grant_role_carries_proof(self, sample_tx_hash):
        """Should send the bearer token and the transaction hash header."""
        api = RecordingAPI(httpx.Response(200, json={"message": "role added"}))
        client = make_client(api)

        result = await client.grant_role(7, 4, sample_tx_hash)

        request = api.requests[0]
        assert request.method == "POST"
        assert request.url.path == "/user/7/roles"
        assert request.headers["Authorization"] == "Bearer secret-token"
        assert request.headers[TX_HASH_HEADER] == sample_tx_hash
        assert json.loads(request.content) == {"roleID": 4}
        assert result == {"message": "role added"}
        await client.close()

    @pytest.mark.asyncio
    async def test_revoke_role(self, sample_tx_hash):
        """Should DELETE the role of the user."""
        api = RecordingAPI(httpx.Response(200, json={"message": "role removed"}))
        client = make_client(api)

        await client.revoke_role(7, 4, sample_tx_hash)

        request = api.requests[0]
        assert request.method == "DELETE"
        assert request.url.path == "/user/7/roles/4"
        assert request.headers[TX_HASH_HEADER] == sample_tx_hash
        await client.close()

    @pytest.mark.asyncio
    async def test_mutation_without_hash_is_refused(self):
        """Should never call the endpoint without a transaction hash."""
        api = RecordingAPI()
        client = make_client(api)

        with pytest.raises(MissingProofError):
            await client.grant_role(7, 4, "")

        assert api.requests == []
        await client.close()

    @pytest.mark.asyncio
    async def test_create_offer_multipart(self, draft, sample_tx_hash, sample_eth_address):
        """Should post the offer fields and documents as multipart form data."""
        api = RecordingAPI(httpx.Response(201, json={"offer": {"ID": 11}}))
        client = make_client(api)

        result = await client.create_offer(
            draft, sample_eth_address, sample_tx_hash, documents=[("spec.pdf", b"%PDF-1.4")]
        )

        request = api.requests[0]
        body = request.content.decode("latin-1")
        assert request.url.path == "/tender/offer"
        assert request.headers["Content-Type"].startswith("multipart/form-data")
        assert request.headers[TX_HASH_HEADER] == sample_tx_hash
        assert 'name="tenderNumber"' in body and "T-2024-017" in body
        assert 'name="contractAddress"' in body and sample_eth_address in body
        assert 'filename="spec.pdf"' in body
        assert result == {"offer": {"ID": 11}}
        await client.close()


class TestErrors:
    @pytest.mark.asyncio
    async def test_server_error_is_transient(self, sample_tx_hash):
        """Should mark a 5xx response as transient."""
        api = RecordingAPI(httpx.Response(500, json={"error": {"msg": "database unavailable"}}))
        client = make_client(api)

        with pytest.raises(OffchainSyncError) as exc_info:
            await client.grant_role(7, 4, sample_tx_hash)

        assert exc_info.value.status_code == 500
        assert exc_info.value.transient
        assert exc_info.value.message == "database unavailable"
        await client.close()

    @pytest.mark.asyncio
    async def test_validation_errors_are_surfaced(self, draft, sample_tx_hash):
        """Should carry field errors of a 400 response."""
        api = RecordingAPI(httpx.Response(400, json={"error": [{"msg": "required", "path": "title"}]}))
        client = make_client(api)

        with pytest.raises(OffchainSyncError) as exc_info:
            await client.create_offer(draft, None, sample_tx_hash)

        assert not exc_info.value.transient
        assert exc_info.value.field_errors == [FieldError("title", "required")]
        await client.close()

    @pytest.mark.asyncio
    async def test_error_in_success_body(self, sample_tx_hash):
        """Should treat an error key in a 200 body as a failure."""
        api = RecordingAPI(httpx.Response(200, json={"error": {"msg": "user not found"}}))
        client = make_client(api)

        with pytest.raises(OffchainSyncError, match="user not found"):
            await client.grant_role(7, 4, sample_tx_hash)
        await client.close()

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self, sample_tx_hash):
        """Should wrap transport failures as transient sync errors."""
        api = RecordingAPI(httpx.ConnectError("connection refused"))
        client = make_client(api)

        with pytest.raises(OffchainSyncError) as exc_info:
            await client.grant_role(7, 4, sample_tx_hash)

        assert exc_info.value.transient
        assert exc_info.value.status_code is None
        await client.close()


class TestReads:
    @pytest.mark.asyncio
    async def test_get_user(self):
        """Should parse the user record and its roles."""
        api = RecordingAPI(httpx.Response(200, json={"user": {
            "ID": 7,
            "firstName": "Amel",
            "publicWalletAddress": "0x70997970C51812dc3A010C7d01b50e0d17dc79C8",
            "Roles": [{"ID": 2, "name": "tender"}],
        }}))
        client = make_client(api)

        user = await client.get_user(7)

        assert api.requests[0].url.path == "/user/7"
        assert TX_HASH_HEADER not in api.requests[0].headers
        assert user.id == 7
        assert user.has_role("Tender")
        await client.close()

    @pytest.mark.asyncio
    async def test_find_role(self):
        """Should look roles up by name case-insensitively."""
        api = RecordingAPI(httpx.Response(200, json={"roles": [{"ID": 1, "name": "admin"}, {"ID": 4, "name": "expert"}]}))
        client = make_client(api)

        role = await client.find_role("EXPERT")

        assert role.id == 4
        await client.close()

    @pytest.mark.asyncio
    async def test_iter_users_follows_pages(self):
        """Should walk every page of the user list."""
        api = RecordingAPI(
            httpx.Response(200, json={"users": [{"ID": 1}, {"ID": 2}], "pagination": {"totalPages": 2}}),
            httpx.Response(200, json={"users": [{"ID": 3}], "pagination": {"totalPages": 2}}),
        )
        client = make_client(api)

        ids = [user.id async for user in client.iter_users(limit=2)]

        assert ids == [1, 2, 3]
        assert [r.url.params["page"] for r in api.requests] == ["1", "2"]
        await client.close()
