"""OpenAI-compatible chat completions client over httpx.

Works with OpenAI, OpenRouter and other /chat/completions endpoints.
No retries here: a failed call raises ProviderError and the failover
wrapper decides whether another model gets a turn.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from parley.config import Settings
from parley.llm.provider import ProviderError
from parley.schemas import Completion, ConversationTurn, ToolCall, Usage

logger = logging.getLogger(__name__)

_ERROR_BODY_LIMIT = 500


class OpenAICompatibleClient:
    """Provider implementation for OpenAI-style chat completions."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._http: httpx.AsyncClient | None = None

    async def start(self, transport: httpx.AsyncBaseTransport | None = None) -> None:
        """Initialize the httpx client with auth and timeout settings."""
        settings = self._settings

        headers: dict[str, str] = {"content-type": "application/json"}
        if settings.llm_api_key:
            headers["authorization"] = f"Bearer {settings.llm_api_key}"
        else:
            logger.warning("LLM_API_KEY is not set -- provider calls will likely fail")

        if "openrouter.ai" in settings.llm_base_url:
            headers["x-title"] = settings.agent_name

        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(max_connections=10, max_keepalive_connections=5)

        self._http = httpx.AsyncClient(
            base_url=settings.llm_base_url.rstrip("/") + "/",
            headers=headers,
            timeout=timeout,
            limits=limits,
            transport=transport,
        )
        logger.info("LLM client initialized (%s)", settings.llm_base_url)

    async def close(self) -> None:
        if self._http:
            await self._http.aclose()
            self._http = None

    # ------------------------------------------------------------------
    # Provider API
    # ------------------------------------------------------------------

    async def complete(
        self, turns: list[ConversationTurn], *, model: str | None = None
    ) -> str:
        data = await self._post(self._build_payload(turns, model=model))
        return self._parse_completion(data, model).text

    async def complete_with_tools(
        self,
        turns: list[ConversationTurn],
        tools: list[dict[str, Any]],
        *,
        model: str | None = None,
    ) -> Completion:
        data = await self._post(self._build_payload(turns, tools=tools, model=model))
        completion = self._parse_completion(data, model)
        logger.debug(
            "complete_with_tools: model=%s tool_calls=%d",
            completion.model,
            len(completion.tool_calls),
        )
        return completion

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _build_payload(
        self,
        turns: list[ConversationTurn],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": model or self._settings.model,
            "max_tokens": self._settings.max_tokens,
            "messages": [t.to_wire() for t in turns],
            "stream": False,
        }
        if tools:
            payload["tools"] = tools
        return payload

    async def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        if not self._http:
            raise RuntimeError("httpx client not initialized -- call start() first")

        model = payload["model"]
        try:
            response = await self._http.post("chat/completions", json=payload)
        except httpx.TimeoutException as e:
            raise ProviderError(
                f"API request timed out: {e}", model=model, retryable=True
            ) from e
        except httpx.HTTPError as e:
            raise ProviderError(f"HTTP error: {e}", model=model, retryable=False) from e

        if response.status_code != 200:
            body = response.text[:_ERROR_BODY_LIMIT]
            raise ProviderError(
                f"API error (status {response.status_code}): {body}",
                status_code=response.status_code,
                body=body,
                model=model,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(f"Invalid JSON from provider: {e}", model=model) from e

        # Some gateways report errors inside a 200 body
        error = data.get("error")
        if error:
            message = error.get("message", "unknown error") if isinstance(error, dict) else str(error)
            code = error.get("code", "") if isinstance(error, dict) else ""
            raise ProviderError(
                f"API error: {message}",
                body=f"{code} {message}",
                model=model,
            )
        return data

    def _parse_completion(self, data: dict[str, Any], model: str | None) -> Completion:
        choices = data.get("choices") or []
        if not choices:
            raise ProviderError("no response from model", model=model)

        choice = choices[0]
        message = choice.get("message") or {}
        tool_calls = [
            ToolCall(
                id=tc.get("id", ""),
                name=(tc.get("function") or {}).get("name", ""),
                arguments=(tc.get("function") or {}).get("arguments") or "{}",
            )
            for tc in message.get("tool_calls") or []
            if tc.get("type", "function") == "function"
        ]

        usage = None
        if data.get("usage"):
            u = data["usage"]
            usage = Usage(
                prompt_tokens=u.get("prompt_tokens", 0),
                completion_tokens=u.get("completion_tokens", 0),
                total_tokens=u.get("total_tokens", 0),
            )

        return Completion(
            text=message.get("content") or "",
            tool_calls=tool_calls,
            usage=usage,
            finish_reason=choice.get("finish_reason") or "",
            model=data.get("model") or model or self._settings.model,
        )
