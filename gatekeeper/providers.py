"""LLM providers behind a uniform chat interface."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx


class ProviderError(RuntimeError):
    """Raised when the inference backend fails or returns an unusable reply."""


@dataclass(frozen=True)
class ChatMessage:
    role: str  # 'system', 'user', 'assistant'
    content: str


@dataclass
class ChatResponse:
    content: str
    model: str
    usage: dict[str, int] = field(default_factory=dict)


class ChatProvider(Protocol):
    name: str

    async def chat(self, messages: list[ChatMessage], **options: Any) -> ChatResponse: ...

    async def health_check(self) -> bool: ...

    async def aclose(self) -> None: ...

class HttpChatProvider:
    """Async client for an OpenAI-compatible ``/chat/completions`` endpoint."""

    name = "http"

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str | None,
        model: str,
        max_tokens: int = 2048,
        timeout_seconds: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._model = model
        self._max_tokens = max_tokens
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def chat(self, messages: list[ChatMessage], **options: Any) -> ChatResponse:
        payload = {
            "model": options.get("model", self._model),
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "max_tokens": options.get("max_tokens", self._max_tokens),
            "temperature": options.get("temperature", 0.2),
            "response_format": {"type": "json_object"},
        }
        try:
            resp = await self._client.post("/chat/completions", json=payload)
        except httpx.HTTPError as e:
            raise ProviderError(f"chat request failed: {e}") from e
        if resp.status_code >= 400:
            raise ProviderError(f"chat request failed ({resp.status_code}): {resp.text[:500]}")
        try:
            body = resp.json()
            content = body["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ProviderError(f"unexpected chat response: {resp.text[:500]}") from e
        if content is None:
            content = ""
        if not isinstance(content, str):
            raise ProviderError(f"chat content must be a string, got {type(content).__name__}")
        return ChatResponse(
            content=content,
            model=body.get("model", payload["model"]),
            usage={k: int(v) for k, v in (body.get("usage") or {}).items() if isinstance(v, int)},
        )

    async def health_check(self) -> bool:
        try:
            resp = await self._client.get("/models")
        except httpx.HTTPError:
            return False
        return resp.status_code < 400


class StubProvider:
    """Deterministic offline provider.

    ``valid=True`` returns output that satisfies the agent contract; ``False``
    returns output that fails it (oversized summary, missing ledger_writes).
    """

    name = "stub"

    def __init__(self, *, valid: bool = True) -> None:
        self.valid = valid
        self.calls: list[list[ChatMessage]] = []

    async def chat(self, messages: list[ChatMessage], **options: Any) -> ChatResponse:
        self.calls.append(messages)
        request = json.loads(messages[-1].content) if messages else {}
        agent = request.get("agent", "cos")
        version = request.get("agent_version", "v1.0")
        intent = request.get("intent", "PLAN_WORK")
        output_type = (request.get("output_types") or ["plan"])[0]
        goal = str(request.get("goal_text", ""))[:120].replace("\n", " ")

        if not self.valid:
            body: dict[str, Any] = {
                "agent": agent,
                "version": version,
                "intent": intent,
                "summary": "x" * 400,
                "outputs": [],
            }
        else:
            body = {
                "agent": agent,
                "version": version,
                "intent": intent,
                "summary": f"[STUB] {agent} drafted a response for: {goal}",
                "outputs": [
                    {
                        "type": output_type,
                        "title": "Stub draft",
                        "content": f"Offline draft from {agent} for intent {intent}.",
                    }
                ],
                "ledger_writes": [{"table": "artifacts", "type": output_type}],
                "next_actions": [
                    {
                        "title": f"Review {agent} draft for {intent}",
                        "details": "Created by the offline provider.",
                        "owner_agent": agent,
                    }
                ],
            }
        return ChatResponse(content=json.dumps(body), model="stub", usage={})

    async def health_check(self) -> bool:
        return True

    async def aclose(self) -> None:
        return None


def build_provider(
    mode: str,
    *,
    base_url: str,
    api_key: str | None,
    model: str,
    max_tokens: int,
    timeout_seconds: float,
) -> ChatProvider:
    if mode == "stub":
        return StubProvider(valid=True)
    if mode == "bad_stub":
        return StubProvider(valid=False)
    if mode == "http":
        return HttpChatProvider(
            base_url=base_url,
            api_key=api_key,
            model=model,
            max_tokens=max_tokens,
            timeout_seconds=timeout_seconds,
        )
    raise ValueError(f"unknown provider mode: {mode}")
