"""Gateway-side emitter for message events.

Sends are best effort: each one has a small timeout, any failure is logged
and discarded, and the caller never waits on or sees the outcome.
"""

from __future__ import annotations

import asyncio
from typing import Any

import httpx
import structlog

from hippo.config import EmitterConfig
from hippo.models import MessageEvent

logger = structlog.get_logger(__name__)

EVENTS_PATH = "/events/message"


def event_to_payload(event: MessageEvent) -> dict[str, Any]:
    """Wire format accepted by POST /events/message."""
    payload: dict[str, Any] = {
        "userId": event.user_id,
        "threadId": event.thread_id,
        "msgId": event.msg_id,
        "role": event.role,
        "content": event.content,
        "tokens": {"input": event.input_tokens, "output": event.output_tokens},
    }
    if event.timestamp is not None:
        payload["timestamp"] = int(event.timestamp * 1000)
    return payload


class MemoryEventEmitter:
    """Fire-and-forget client for the memory service."""

    def __init__(
        self,
        config: EmitterConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config or EmitterConfig()
        self._client = client
        self._pending: set[asyncio.Task] = set()
        self.sent = 0
        self.failed = 0

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url,
                timeout=httpx.Timeout(self.config.timeout_ms / 1000.0),
            )
        return self._client

    async def close(self) -> None:
        """Wait briefly for in-flight sends, then close the HTTP client."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        if self._client:
            await self._client.aclose()
            self._client = None

    def emit(self, event: MessageEvent) -> None:
        """Schedule a send and return immediately."""
        if not self.config.enabled:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.failed += 1
            logger.debug(
                "memory_event_emit_failed",
                thread_id=event.thread_id,
                msg_id=event.msg_id,
                error="no running event loop",
            )
            return
        task = loop.create_task(self.send(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def send(self, event: MessageEvent) -> bool:
        """
        Post one event.

        Returns:
            True if the service accepted it. Never raises.
        """
        try:
            response = await asyncio.wait_for(
                self._get_client().post(EVENTS_PATH, json=event_to_payload(event)),
                timeout=self.config.timeout_ms / 1000.0,
            )
            response.raise_for_status()
        except Exception as e:
            self.failed += 1
            logger.debug(
                "memory_event_emit_failed",
                thread_id=event.thread_id,
                msg_id=event.msg_id,
                error=str(e) or type(e).__name__,
            )
            return False

        self.sent += 1
        return True
