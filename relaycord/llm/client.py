"""
relaycord/llm/client.py

HTTP client for the chat backend.

Endpoints:
  POST /ollama/api/chat        : buffered reply
  POST /ollama/api/chat/stream : server-sent events (event:/data: lines)
  GET  /api/health             : health probe

Every httpx failure is translated into the relaycord.llm.errors taxonomy so
callers never deal with transport-library exceptions.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Literal, Optional

import httpx

from .errors import LLMResponseError, translate_http_error
from .stream import StreamEvent, TokenUsage, ToolCall, normalize_event, parse_usage

MessageType = Literal["inbox", "task", "system"]

CHAT_PATH = "/ollama/api/chat"
STREAM_PATH = "/ollama/api/chat/stream"
HEALTH_PATH = "/api/health"


@dataclass
class OutboundRequest:
    messages: list[dict[str, str]]
    session_id: str
    message_type: MessageType = "inbox"
    max_tokens: int = 4096
    temperature: float = 0.7
    media_data: Optional[str] = None
    media_type: Optional[str] = None


@dataclass
class ChatResponse:
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: Optional[TokenUsage] = None
    send_message: bool = True
    message_target: Optional[str] = None

    @classmethod
    def from_payload(cls, data: Any) -> "ChatResponse":
        if not isinstance(data, dict):
            raise LLMResponseError(f"Backend reply must be an object, got {type(data).__name__}")
        message = data.get("message") or {}
        content = message.get("content") if isinstance(message, dict) else None
        calls = [
            ToolCall(name=str(c.get("name") or "unknown"), arguments=c.get("arguments") or {})
            for c in data.get("tool_calls") or []
            if isinstance(c, dict)
        ]
        target = data.get("message_target")
        return cls(
            content=content if isinstance(content, str) else "",
            tool_calls=calls,
            usage=parse_usage(data),
            # Older backends omit the flag; absent means "send".
            send_message=data.get("send_message") is not False,
            message_target=target if target in ("dm", "channel") else None,
        )


class BackendClient:
    def __init__(
        self,
        base_url: str,
        session_id: str = "discord-bot",
        model: str = "",
        timeout: float = 300.0,
        max_tokens: int = 4096,
        temperature: float = 0.7,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.session_id = session_id
        self.model = model
        self.timeout = timeout
        self.max_tokens = max_tokens
        self.temperature = temperature
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout, connect=10.0),
            headers={"Content-Type": "application/json"},
        )

    def build_payload(self, request: OutboundRequest, stream: bool) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "messages": request.messages,
            "stream": stream,
            "session_id": request.session_id or self.session_id,
            "message_type": request.message_type or "inbox",
            "max_tokens": request.max_tokens or self.max_tokens,
            "temperature": request.temperature if request.temperature is not None else self.temperature,
        }
        if self.model:
            payload["model"] = self.model
        if request.media_data and request.media_type:
            payload["media_data"] = request.media_data
            payload["media_type"] = request.media_type
        return payload

    async def chat(self, request: OutboundRequest) -> ChatResponse:
        payload = self.build_payload(request, stream=False)
        logging.info(
            "🔧 Backend request: type=%s max_tokens=%s session=%s",
            payload["message_type"], payload["max_tokens"], payload["session_id"],
        )
        try:
            response = await self._http.post(CHAT_PATH, json=payload)
            response.raise_for_status()
            data = response.json()
        except json.JSONDecodeError as e:
            raise LLMResponseError(f"Backend reply is not JSON: {e}") from e
        except httpx.HTTPError as e:
            raise translate_http_error(e) from e
        return ChatResponse.from_payload(data)

    async def chat_stream(self, request: OutboundRequest) -> AsyncIterator[StreamEvent]:
        """
        Stream a chat turn, yielding normalized events in arrival order.
        """
        payload = self.build_payload(request, stream=True)
        logging.info(
            "🔧 Backend streaming request: type=%s max_tokens=%s session=%s",
            payload["message_type"], payload["max_tokens"], payload["session_id"],
        )
        try:
            async with self._http.stream("POST", STREAM_PATH, json=payload) as response:
                response.raise_for_status()
                current_event = ""
                async for line in response.aiter_lines():
                    if not line.strip():
                        current_event = ""
                        continue
                    if line.startswith("event:"):
                        current_event = line[6:].strip()
                        continue
                    if not line.startswith("data:"):
                        continue
                    raw = line[5:].strip()
                    try:
                        data = json.loads(raw)
                    except json.JSONDecodeError:
                        logging.warning("Failed to parse SSE data: %s", raw[:200])
                        continue
                    event = normalize_event(current_event, data)
                    if event is not None:
                        yield event
        except httpx.HTTPError as e:
            raise translate_http_error(e) from e

    async def health_check(self) -> dict[str, Any]:
        """Probe the backend. Returns reachability and round-trip latency; never raises."""
        started = time.perf_counter()
        try:
            response = await self._http.get(HEALTH_PATH, timeout=10.0)
            response.raise_for_status()
            latency_ms = round((time.perf_counter() - started) * 1000)
            return {"reachable": True, "latency_ms": latency_ms, "health": response.json()}
        except (httpx.HTTPError, json.JSONDecodeError) as e:
            latency_ms = round((time.perf_counter() - started) * 1000)
            return {"reachable": False, "latency_ms": latency_ms, "error": str(translate_http_error(e))}

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()
