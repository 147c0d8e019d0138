"""Tests for X-Request-ID middleware.

Tests cover:
- Request ID generation when missing
- Request ID preservation when valid
- Request ID normalization (UUID lowercase)
- Request ID replacement when invalid
- Request ID presence on internal-header failures
- Request ID in error response body and in submitted jobs
"""

from uuid import UUID

import pytest
from fastapi.testclient import TestClient

from relay.app import add_request_id_middleware, create_app
from relay.middleware.internal_header import InternalHeaderMiddleware
from relay.middleware.request_id import is_valid_request_id


@pytest.fixture
def rid_client(session_factory, fake_redis, mock_dispatch):
    """Create a client with request-id middleware."""
    app = create_app(skip_internal_header=True, redis_client=fake_redis)

    # Add request-id middleware LAST (so it runs FIRST, outermost)
    add_request_id_middleware(app, log_requests=False)

    with TestClient(app) as test_client:
        yield test_client


class TestRequestIdMiddleware:
    """Tests for X-Request-ID middleware."""

    def test_request_id_generated_when_missing(self, rid_client):
        """Request ID is generated when not provided."""
        response = rid_client.get("/health")

        assert response.status_code == 200
        assert "X-Request-ID" in response.headers

        # Verify it's a valid UUID
        UUID(response.headers["X-Request-ID"])  # Raises if invalid

    def test_request_id_preserved_when_valid(self, rid_client):
        """Valid non-UUID request IDs are preserved."""
        custom_id = "abc_def-123"

        response = rid_client.get("/health", headers={"X-Request-ID": custom_id})

        assert response.headers["X-Request-ID"] == custom_id

    def test_request_id_uuid_normalized_to_lowercase(self, rid_client):
        """UUID request IDs are normalized to lowercase."""
        uppercase_uuid = "550E8400-E29B-41D4-A716-446655440000"

        response = rid_client.get("/health", headers={"X-Request-ID": uppercase_uuid})

        assert response.headers["X-Request-ID"] == "550e8400-e29b-41d4-a716-446655440000"

    def test_request_id_replaced_when_invalid(self, rid_client):
        """Invalid request IDs (with spaces) are replaced."""
        invalid_id = "bad id with spaces"

        response = rid_client.get("/health", headers={"X-Request-ID": invalid_id})

        new_id = response.headers["X-Request-ID"]
        assert new_id != invalid_id
        UUID(new_id)

    def test_request_id_replaced_when_too_long(self, rid_client):
        """Request IDs longer than 128 bytes are replaced."""
        long_id = "a" * 200

        response = rid_client.get("/health", headers={"X-Request-ID": long_id})

        new_id = response.headers["X-Request-ID"]
        assert new_id != long_id
        UUID(new_id)

    def test_error_response_includes_request_id_in_body(self, rid_client):
        """Error responses include request_id in the body."""
        response = rid_client.get("/conversations/nobody_c1/messages")

        assert response.status_code == 404
        data = response.json()
        assert data["error"]["request_id"] == response.headers["X-Request-ID"]

    def test_request_id_forwarded_to_job(self, rid_client, character, mock_dispatch):
        """The request ID travels with the generation job."""
        rid_client.post(
            "/conversations/u1_c1/messages",
            json={"message_id": "m1", "user_id": "u1", "character_id": "c1", "content": "hi"},
            headers={"X-Request-ID": "req-42"},
        )

        assert mock_dispatch.call_args.kwargs["kwargs"]["request_id"] == "req-42"

    def test_request_id_present_on_internal_header_failure(self, session_factory, fake_redis):
        """Internal header failures still include X-Request-ID."""
        app = create_app(skip_internal_header=True, redis_client=fake_redis)
        app.add_middleware(InternalHeaderMiddleware, internal_secret="test-secret")
        add_request_id_middleware(app, log_requests=False)

        with TestClient(app) as client:
            response = client.get("/internal/conversations/stats")

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "E_INTERNAL_ONLY"
        assert "X-Request-ID" in response.headers


class TestInternalHeaderGuard:
    """Tests for the shared-secret guard itself."""

    @pytest.fixture
    def guarded(self, session_factory, fake_redis):
        app = create_app(skip_internal_header=True, redis_client=fake_redis)
        app.add_middleware(InternalHeaderMiddleware, internal_secret="test-secret")
        with TestClient(app) as client:
            yield client

    def test_wrong_secret_rejected(self, guarded):
        response = guarded.get(
            "/internal/conversations/stats", headers={"X-Relay-Internal": "nope"}
        )
        assert response.status_code == 403

    def test_correct_secret_accepted(self, guarded):
        response = guarded.get(
            "/internal/conversations/stats", headers={"X-Relay-Internal": "test-secret"}
        )
        assert response.status_code == 200

    def test_public_paths_open(self, guarded):
        assert guarded.get("/health").status_code == 200

    def test_missing_secret_configuration(self, session_factory, fake_redis):
        app = create_app(skip_internal_header=True, redis_client=fake_redis)
        app.add_middleware(InternalHeaderMiddleware, internal_secret=None)

        with TestClient(app) as client:
            response = client.get(
                "/internal/conversations/stats", headers={"X-Relay-Internal": "anything"}
            )

        assert response.status_code == 500


class TestRequestIdValidation:
    """Tests for request ID validation edge cases."""

    @pytest.mark.parametrize(
        "value",
        [
            "request.id.with.dots",
            "request_id_with_underscores",
            "request-id-with-hyphens",
            "a" * 128,
        ],
    )
    def test_valid(self, value):
        assert is_valid_request_id(value)

    @pytest.mark.parametrize("value", ["", "has space", "semi;colon", "a" * 129, "ünïcode"])
    def test_invalid(self, value):
        assert not is_valid_request_id(value)
