"""
Tests for the Identify API.

Tests request validation, response shape and error mapping for POST /identify.
"""
import asyncio
import pytest
from unittest.mock import MagicMock, patch

from api.services.identity_lock import IdentityLockTimeout
from api.services.identity_resolver import ContactSummary
from api.services.resilience import StoreError

# Mark all tests in this module as unit tests
pytestmark = pytest.mark.unit


@pytest.fixture
def client():
    """Create test client."""
    from fastapi.testclient import TestClient
    from api.main import app
    return TestClient(app)


@pytest.fixture
def live_resolver(resolver):
    """Route requests to a resolver backed by the temporary store."""
    with patch("api.routes.identify.get_identity_resolver", return_value=resolver):
        yield resolver


@pytest.fixture
def mock_resolver():
    """Mock the identity resolver."""
    with patch("api.routes.identify.get_identity_resolver") as mock:
        resolver = MagicMock()
        resolver.identify.return_value = ContactSummary(1, ["a@x.com"], ["123"], [])
        mock.return_value = resolver
        yield resolver


class TestIdentifyAPI:
    """Tests for POST /identify against a real store."""

    def test_first_sighting(self, client, live_resolver):
        response = client.post("/identify", json={"email": "a@x.com", "phoneNumber": "123"})

        assert response.status_code == 200
        contact = response.json()["contact"]
        assert contact["emails"] == ["a@x.com"]
        assert contact["phoneNumbers"] == ["123"]
        assert contact["secondaryContactIds"] == []
        assert isinstance(contact["primaryContactId"], int)

    def test_repeat_returns_identical_summary(self, client, live_resolver):
        body = {"email": "a@x.com", "phoneNumber": "123"}

        first = client.post("/identify", json=body).json()
        second = client.post("/identify", json=body).json()

        assert first == second

    def test_secondary_extension(self, client, live_resolver):
        client.post("/identify", json={"email": "a@x.com", "phoneNumber": "111"})

        response = client.post("/identify", json={"email": "a@x.com", "phoneNumber": "222"})

        contact = response.json()["contact"]
        assert contact["phoneNumbers"] == ["111", "222"]
        assert len(contact["secondaryContactIds"]) == 1

    def test_cluster_merge(self, client, live_resolver):
        first = client.post("/identify", json={"email": "a@x.com", "phoneNumber": "111"}).json()
        second = client.post("/identify", json={"email": "b@x.com", "phoneNumber": "222"}).json()

        merged = client.post("/identify", json={"email": "a@x.com", "phoneNumber": "222"}).json()

        contact = merged["contact"]
        assert contact["primaryContactId"] == first["contact"]["primaryContactId"]
        assert second["contact"]["primaryContactId"] in contact["secondaryContactIds"]
        assert sorted(contact["emails"]) == ["a@x.com", "b@x.com"]
        assert contact["secondaryContactIds"] == sorted(contact["secondaryContactIds"])

    def test_numeric_phone_number_accepted(self, client, live_resolver):
        response = client.post("/identify", json={"email": None, "phoneNumber": 123456})

        assert response.status_code == 200
        assert response.json()["contact"]["phoneNumbers"] == ["123456"]

    def test_absent_field_allowed(self, client, live_resolver):
        response = client.post("/identify", json={"email": "solo@x.com"})

        assert response.status_code == 200
        assert response.json()["contact"]["phoneNumbers"] == []


class TestIdentifyValidation:
    """Validation happens before any store access."""

    def test_empty_object_rejected(self, client, mock_resolver):
        from api.routes.identify import EMPTY_BODY_ERROR

        response = client.post("/identify", json={})

        assert response.status_code == 400
        assert response.json()["error"] == EMPTY_BODY_ERROR
        mock_resolver.identify.assert_not_called()

    def test_missing_body_rejected(self, client, mock_resolver):
        from api.routes.identify import EMPTY_BODY_ERROR

        response = client.post("/identify")

        assert response.status_code == 400
        assert response.json()["error"] == EMPTY_BODY_ERROR
        mock_resolver.identify.assert_not_called()

    def test_malformed_json_rejected(self, client, mock_resolver):
        response = client.post(
            "/identify",
            content="{not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400
        mock_resolver.identify.assert_not_called()

    def test_unknown_keys_only_is_not_empty_body(self, client, mock_resolver):
        from api.routes.identify import NO_IDENTIFIER_ERROR

        response = client.post("/identify", json={"foo": 1})

        assert response.status_code == 400
        assert response.json()["error"] == NO_IDENTIFIER_ERROR
        mock_resolver.identify.assert_not_called()

    def test_unknown_keys_ignored_next_to_known(self, client, mock_resolver):
        response = client.post("/identify", json={"email": "a@x.com", "foo": 1})

        assert response.status_code == 200
        mock_resolver.identify.assert_called_once_with("a@x.com", None)

    def test_both_fields_empty_rejected(self, client, mock_resolver):
        from api.routes.identify import NO_IDENTIFIER_ERROR

        response = client.post("/identify", json={"email": "", "phoneNumber": None})

        assert response.status_code == 400
        assert response.json()["error"] == NO_IDENTIFIER_ERROR
        mock_resolver.identify.assert_not_called()

    def test_blank_strings_rejected(self, client, mock_resolver):
        response = client.post("/identify", json={"email": "   ", "phoneNumber": ""})

        assert response.status_code == 400
        mock_resolver.identify.assert_not_called()

    def test_wrong_type_rejected(self, client, mock_resolver):
        response = client.post("/identify", json={"email": ["a@x.com"]})

        assert response.status_code == 400
        assert response.json()["error"] == "Validation error"
        mock_resolver.identify.assert_not_called()


class TestIdentifyErrors:
    """Internal failures map to 500 with the underlying message."""

    def test_store_error(self, client, mock_resolver):
        mock_resolver.identify.side_effect = StoreError("insert", "disk I/O error")

        response = client.post("/identify", json={"email": "a@x.com"})

        assert response.status_code == 500
        assert response.json() == {"error": "disk I/O error"}

    def test_lock_timeout(self, client, mock_resolver):
        mock_resolver.identify.side_effect = IdentityLockTimeout("email:a@x.com", 10.0)

        response = client.post("/identify", json={"email": "a@x.com"})

        assert response.status_code == 500
        assert "email:a@x.com" in response.json()["error"]

    def test_passes_normalized_values(self, client, mock_resolver):
        client.post("/identify", json={"email": " a@x.com ", "phoneNumber": 42})

        mock_resolver.identify.assert_called_once_with("a@x.com", "42")


class TestHealth:
    """Tests for the health endpoint."""

    def test_healthy(self, client):
        with patch("api.services.contact_store.get_contact_store") as mock_store:
            mock_store.return_value.ping.return_value = True
            response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["checks"] == {"contact_store": True}

    def test_degraded(self, client):
        with patch("api.services.contact_store.get_contact_store") as mock_store:
            mock_store.return_value.ping.return_value = False
            response = client.get("/health")

        assert response.json()["status"] == "degraded"

    def test_ping_runs_in_worker_thread(self, client):
        real_to_thread = asyncio.to_thread
        offloaded = []

        async def recording_to_thread(func, *args, **kwargs):
            offloaded.append(func)
            return await real_to_thread(func, *args, **kwargs)

        with patch("api.services.contact_store.get_contact_store") as mock_store, \
                patch("api.main.asyncio.to_thread", side_effect=recording_to_thread):
            mock_store.return_value.ping.return_value = True
            response = client.get("/health")

        assert response.json()["status"] == "healthy"
        assert mock_store.return_value.ping in offloaded
