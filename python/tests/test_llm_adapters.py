"""Tests for the LLM adapter layer.

Test coverage:
- OpenAI-compatible adapter: request shape, response parsing, raw HTTP errors
- Error classification for every provider status the router normalizes
- Router: provider gating, error normalization, empty responses

Explicitly Forbidden:
- Live provider calls
- Real API keys anywhere in test code

Note: These tests are pure unit tests that do NOT require database access.
They use respx to mock HTTP requests.
"""

import json

import httpx
import pytest
import respx

from relay.services.llm import (
    LLMError,
    LLMErrorClass,
    LLMRequest,
    LLMRouter,
    OpenAICompatibleAdapter,
    Turn,
    classify_provider_error,
)

DEEPSEEK_URL = "https://api.deepseek.com/v1"
TOGETHER_URL = "https://api.together.xyz/v1"

SUCCESS_BODY = {
    "id": "chatcmpl-123",
    "object": "chat.completion",
    "choices": [
        {
            "index": 0,
            "message": {
                "role": "assistant",
                "content": "Hello! How can I help you today?",
                "reasoning_content": "The user greeted me.",
            },
            "finish_reason": "stop",
        }
    ],
    "usage": {"prompt_tokens": 10, "completion_tokens": 8, "total_tokens": 18},
}


# =============================================================================
# Test Fixtures
# =============================================================================


@pytest.fixture
def httpx_client():
    """Create an httpx AsyncClient for testing."""
    return httpx.AsyncClient()


@pytest.fixture
def llm_request():
    """Create a basic LLM request for testing."""
    return LLMRequest(
        model_name="test-model",
        messages=[
            Turn(role="system", content="You are helpful."),
            Turn(role="user", content="Hello!"),
        ],
        max_tokens=100,
        temperature=0.7,
    )


@pytest.fixture
def router(httpx_client):
    return LLMRouter(
        httpx_client,
        base_urls={"deepseek": DEEPSEEK_URL, "together": TOGETHER_URL},
        api_keys={"deepseek": "sk-test", "together": None},
    )


# =============================================================================
# Adapter Tests
# =============================================================================


class TestOpenAICompatibleAdapter:
    """Tests for the shared chat-completions adapter."""

    @pytest.mark.asyncio
    @respx.mock
    async def test_nonstream_success(self, httpx_client, llm_request):
        """Happy path generation."""
        respx.post(f"{DEEPSEEK_URL}/chat/completions").respond(
            200, json=SUCCESS_BODY, headers={"x-request-id": "req-test-123"}
        )

        adapter = OpenAICompatibleAdapter(httpx_client, provider="deepseek", base_url=DEEPSEEK_URL)
        response = await adapter.generate(llm_request, api_key="sk-test", timeout_s=30)

        assert response.text == "Hello! How can I help you today?"
        assert response.usage is not None
        assert response.usage.prompt_tokens == 10
        assert response.usage.completion_tokens == 8
        assert response.usage.total_tokens == 18
        assert response.provider_request_id == "req-test-123"

    @pytest.mark.asyncio
    @respx.mock
    async def test_request_body_and_headers(self, httpx_client, llm_request):
        """Request uses bearer auth and the chat-completions body shape."""
        route = respx.post(f"{DEEPSEEK_URL}/chat/completions").respond(200, json=SUCCESS_BODY)

        adapter = OpenAICompatibleAdapter(httpx_client, provider="deepseek", base_url=DEEPSEEK_URL)
        await adapter.generate(llm_request, api_key="sk-test", timeout_s=30)

        sent = route.calls.last.request
        assert sent.headers["Authorization"] == "Bearer sk-test"
        body = json.loads(sent.content)
        assert body == {
            "model": "test-model",
            "messages": [
                {"role": "system", "content": "You are helpful."},
                {"role": "user", "content": "Hello!"},
            ],
            "max_tokens": 100,
            "stream": False,
            "temperature": 0.7,
        }

    @pytest.mark.asyncio
    @respx.mock
    async def test_temperature_omitted_when_none(self, httpx_client):
        route = respx.post(f"{DEEPSEEK_URL}/chat/completions").respond(200, json=SUCCESS_BODY)
        req = LLMRequest(
            model_name="m", messages=[Turn(role="user", content="Hi")], max_tokens=10
        )

        adapter = OpenAICompatibleAdapter(httpx_client, provider="deepseek", base_url=DEEPSEEK_URL)
        await adapter.generate(req, api_key="sk-test", timeout_s=30)

        assert "temperature" not in json.loads(route.calls.last.request.content)

    @pytest.mark.asyncio
    @respx.mock
    async def test_request_id_falls_back_to_body_id(self, httpx_client, llm_request):
        respx.post(f"{DEEPSEEK_URL}/chat/completions").respond(200, json=SUCCESS_BODY)

        adapter = OpenAICompatibleAdapter(httpx_client, provider="deepseek", base_url=DEEPSEEK_URL)
        response = await adapter.generate(llm_request, api_key="sk-test", timeout_s=30)

        assert response.provider_request_id == "chatcmpl-123"

    @pytest.mark.asyncio
    @respx.mock
    async def test_missing_choices_raises(self, httpx_client, llm_request):
        respx.post(f"{DEEPSEEK_URL}/chat/completions").respond(200, json={"choices": []})

        adapter = OpenAICompatibleAdapter(httpx_client, provider="deepseek", base_url=DEEPSEEK_URL)
        with pytest.raises(LLMError) as exc_info:
            await adapter.generate(llm_request, api_key="sk-test", timeout_s=30)

        assert exc_info.value.error_class == LLMErrorClass.PROVIDER_DOWN

    @pytest.mark.asyncio
    @respx.mock
    async def test_http_error_raises_raw(self, httpx_client, llm_request):
        """Adapters do not classify; the router does."""
        respx.post(f"{DEEPSEEK_URL}/chat/completions").respond(401, json={"error": "bad key"})

        adapter = OpenAICompatibleAdapter(httpx_client, provider="deepseek", base_url=DEEPSEEK_URL)
        with pytest.raises(httpx.HTTPStatusError):
            await adapter.generate(llm_request, api_key="sk-test", timeout_s=30)


# =============================================================================
# Error Classification Tests
# =============================================================================


class TestErrorClassification:
    """Tests for error classification logic."""

    @pytest.mark.parametrize(
        "status, expected",
        [
            (401, LLMErrorClass.INVALID_KEY),
            (403, LLMErrorClass.INVALID_KEY),
            (402, LLMErrorClass.RATE_LIMIT),
            (429, LLMErrorClass.RATE_LIMIT),
            (404, LLMErrorClass.MODEL_NOT_AVAILABLE),
            (500, LLMErrorClass.PROVIDER_DOWN),
            (503, LLMErrorClass.PROVIDER_DOWN),
        ],
    )
    def test_status_codes(self, status: int, expected: LLMErrorClass):
        assert classify_provider_error("deepseek", status, None, None) == expected

    def test_context_length_code(self):
        body = {"error": {"code": "context_length_exceeded", "message": "too many tokens"}}
        assert (
            classify_provider_error("openai", 400, body, None)
            == LLMErrorClass.CONTEXT_TOO_LARGE
        )

    def test_context_length_message(self):
        body = {"error": {"message": "This model's maximum context length is 8192 tokens"}}
        assert (
            classify_provider_error("together", 400, body, None)
            == LLMErrorClass.CONTEXT_TOO_LARGE
        )

    def test_model_not_found_message(self):
        body = {"error": {"message": "The model `x` does not exist"}}
        assert (
            classify_provider_error("together", 400, body, None)
            == LLMErrorClass.MODEL_NOT_AVAILABLE
        )

    def test_string_error_body(self):
        body = {"error": "something odd"}
        assert classify_provider_error("deepseek", 400, body, None) == LLMErrorClass.PROVIDER_DOWN

    def test_timeout_exception_classification(self):
        exc = httpx.ReadTimeout("timed out")
        assert classify_provider_error("openai", None, None, exc) == LLMErrorClass.TIMEOUT

    def test_network_error_classification(self):
        exc = httpx.ConnectError("refused")
        assert classify_provider_error("openai", None, None, exc) == LLMErrorClass.PROVIDER_DOWN

    def test_unknown_provider(self):
        assert classify_provider_error("acme", 401, None, None) == LLMErrorClass.PROVIDER_DOWN


# =============================================================================
# Router Tests
# =============================================================================


class TestLLMRouter:
    """Tests for LLM router."""

    def test_provider_without_key_unavailable(self, router):
        assert router.is_provider_available("deepseek") is True
        assert router.is_provider_available("together") is False
        assert router.is_provider_available("acme") is False

    def test_resolve_unknown_provider(self, router):
        with pytest.raises(LLMError) as exc_info:
            router.resolve_adapter("acme")

        assert exc_info.value.error_class == LLMErrorClass.MODEL_NOT_AVAILABLE

    def test_resolve_unconfigured_provider(self, router):
        with pytest.raises(LLMError) as exc_info:
            router.resolve_adapter("together")

        assert exc_info.value.error_class == LLMErrorClass.MODEL_NOT_AVAILABLE

    def test_from_settings(self, httpx_client):
        class StubSettings:
            provider_base_urls = {"deepseek": DEEPSEEK_URL, "openai": "https://api.openai.com/v1"}

            def provider_api_key(self, provider):
                return {"deepseek": "sk-test"}.get(provider)

        router = LLMRouter.from_settings(httpx_client, StubSettings())

        assert router.is_provider_available("deepseek") is True
        assert router.is_provider_available("openai") is False

    @pytest.mark.asyncio
    @respx.mock
    async def test_generate_success(self, router, llm_request):
        respx.post(f"{DEEPSEEK_URL}/chat/completions").respond(200, json=SUCCESS_BODY)

        response = await router.generate("deepseek", llm_request)

        assert response.text == "Hello! How can I help you today?"

    @pytest.mark.asyncio
    @respx.mock
    async def test_generate_normalizes_http_error(self, router, llm_request):
        respx.post(f"{DEEPSEEK_URL}/chat/completions").respond(
            429, json={"error": {"message": "Rate limit reached"}}
        )

        with pytest.raises(LLMError) as exc_info:
            await router.generate("deepseek", llm_request)

        assert exc_info.value.error_class == LLMErrorClass.RATE_LIMIT
        assert exc_info.value.provider == "deepseek"

    @pytest.mark.asyncio
    @respx.mock
    async def test_generate_normalizes_timeout(self, router, llm_request):
        respx.post(f"{DEEPSEEK_URL}/chat/completions").mock(
            side_effect=httpx.ReadTimeout("timed out")
        )

        with pytest.raises(LLMError) as exc_info:
            await router.generate("deepseek", llm_request)

        assert exc_info.value.error_class == LLMErrorClass.TIMEOUT

    @pytest.mark.asyncio
    @respx.mock
    async def test_generate_normalizes_network_error(self, router, llm_request):
        respx.post(f"{DEEPSEEK_URL}/chat/completions").mock(
            side_effect=httpx.ConnectError("refused")
        )

        with pytest.raises(LLMError) as exc_info:
            await router.generate("deepseek", llm_request)

        assert exc_info.value.error_class == LLMErrorClass.PROVIDER_DOWN

    @pytest.mark.asyncio
    @respx.mock
    async def test_blank_text_is_empty_response(self, router, llm_request):
        body = {**SUCCESS_BODY, "choices": [{"message": {"content": "   "}}]}
        respx.post(f"{DEEPSEEK_URL}/chat/completions").respond(200, json=body)

        with pytest.raises(LLMError) as exc_info:
            await router.generate("deepseek", llm_request)

        assert exc_info.value.error_class == LLMErrorClass.EMPTY_RESPONSE

    @pytest.mark.asyncio
    async def test_unconfigured_provider_raises_without_http(self, router, llm_request):
        with pytest.raises(LLMError) as exc_info:
            await router.generate("together", llm_request)

        assert exc_info.value.error_class == LLMErrorClass.MODEL_NOT_AVAILABLE
