"""OpenAI-compatible chat-completions adapter.

DeepSeek, Together and OpenAI all expose the same endpoint shape, so a single
adapter serves every provider; only the base URL differs.

- Endpoint: POST {base_url}/chat/completions
- Headers: Authorization: Bearer <key>, Content-Type: application/json

Request body:
{
  "model": "<model_name>",
  "messages": [{"role": "system", "content": "..."}, ...],
  "max_tokens": 500,
  "temperature": 1.3,
  "stream": false
}

Response - extract:
- text = choices[0].message.content
- usage = direct mapping
- provider_request_id = response header x-request-id or body id

deepseek-reasoner also returns choices[0].message.reasoning_content; it is
ignored so chain-of-thought never reaches the reply.
"""

import httpx

from relay.services.llm.adapter import LLMAdapter
from relay.services.llm.errors import LLMError, LLMErrorClass
from relay.services.llm.types import LLMRequest, LLMResponse, LLMUsage, Turn

OPENAI_BASE_URL = "https://api.openai.com/v1"


class OpenAICompatibleAdapter(LLMAdapter):
    """Chat-completions adapter bound to one provider base URL."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        provider: str = "openai",
        base_url: str = OPENAI_BASE_URL,
    ):
        super().__init__(client)
        self.provider = provider
        self.base_url = base_url.rstrip("/")

    @property
    def chat_url(self) -> str:
        return f"{self.base_url}/chat/completions"

    async def generate(
        self,
        req: LLMRequest,
        *,
        api_key: str,
        timeout_s: int,
    ) -> LLMResponse:
        """Non-streaming chat completion."""
        response = await self._client.post(
            self.chat_url,
            headers=self._build_headers(api_key),
            json=self._build_request_body(req),
            timeout=httpx.Timeout(timeout_s, connect=10.0),
        )
        response.raise_for_status()

        return self._parse_response(response.json(), response.headers)

    def _build_headers(self, api_key: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    def _build_request_body(self, req: LLMRequest) -> dict:
        body: dict = {
            "model": req.model_name,
            "messages": [self._turn_to_message(turn) for turn in req.messages],
            "max_tokens": req.max_tokens,
            "stream": False,
        }

        if req.temperature is not None:
            body["temperature"] = req.temperature

        return body

    def _turn_to_message(self, turn: Turn) -> dict[str, str]:
        return {"role": turn.role, "content": turn.content}

    def _parse_response(self, data: dict, headers: httpx.Headers) -> LLMResponse:
        choices = data.get("choices") or []
        if not choices:
            raise LLMError(
                LLMErrorClass.PROVIDER_DOWN,
                f"{self.provider} response missing choices",
                provider=self.provider,
            )

        text = (choices[0].get("message") or {}).get("content") or ""

        usage = None
        usage_data = data.get("usage")
        if usage_data:
            usage = LLMUsage(
                prompt_tokens=usage_data.get("prompt_tokens"),
                completion_tokens=usage_data.get("completion_tokens"),
                total_tokens=usage_data.get("total_tokens"),
            )

        provider_request_id = headers.get("x-request-id") or data.get("id")

        return LLMResponse(
            text=text,
            usage=usage,
            provider_request_id=provider_request_id,
        )
