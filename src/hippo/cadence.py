"""Per-thread cadence tracking that decides when to run an audit.

A thread is audited once enough has happened since the last audit:
six messages, 1500 tokens, or three minutes of conversation, whichever
comes first. A debounce gate keeps a thread from being re-audited within
30 seconds of the previous audit even if a threshold is met again.

State is in-process only. Losing it on restart just restarts the
accumulation window.
"""

from __future__ import annotations

import time
from collections import deque
from threading import Lock
from typing import Callable

import structlog

from hippo.config import CadenceConfig
from hippo.models import CadenceState, MessageEvent

logger = structlog.get_logger(__name__)

ThreadKey = tuple[str, str]


class CadenceTracker:
    """
    Thread-safe map of (user_id, thread_id) -> CadenceState.

    The clock is injectable so tests can drive time explicitly.
    """

    def __init__(
        self,
        config: CadenceConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or CadenceConfig()
        self._clock = clock
        self._states: dict[ThreadKey, CadenceState] = {}
        self._lock = Lock()

    def record_message(
        self,
        user_id: str,
        thread_id: str,
        tokens: dict[str, int] | None = None,
        timestamp: float | None = None,
    ) -> CadenceState:
        """
        Accumulate one message into the thread's window.

        Args:
            user_id: User identifier
            thread_id: Thread identifier
            tokens: {"input": n, "output": m}
            timestamp: Message time in epoch seconds (defaults to now)

        Returns:
            Copy of the updated state
        """
        now = timestamp if timestamp is not None else self._clock()
        token_count = 0
        if tokens:
            token_count = int(tokens.get("input", 0)) + int(tokens.get("output", 0))

        with self._lock:
            state = self._states.setdefault((user_id, thread_id), CadenceState())
            if state.first_msg_time is None:
                state.first_msg_time = now
            state.msg_count += 1
            state.token_count += token_count
            state.last_msg_time = now
            return CadenceState(**vars(state))

    def should_trigger_audit(self, user_id: str, thread_id: str) -> bool:
        """True when a threshold is met and the debounce window has passed."""
        now = self._clock()
        with self._lock:
            state = self._states.get((user_id, thread_id))
            if state is None:
                return False

            if state.last_audit_time is not None:
                if now - state.last_audit_time < self.config.debounce_seconds:
                    return False

            elapsed = 0.0
            if state.first_msg_time is not None:
                elapsed = now - state.first_msg_time

            return (
                state.msg_count >= self.config.msg_threshold
                or state.token_count >= self.config.token_threshold
                or (state.msg_count > 0 and elapsed >= self.config.time_threshold_seconds)
            )

    def mark_audit_complete(self, user_id: str, thread_id: str) -> None:
        """Reset counters. The next recorded message opens a fresh window."""
        now = self._clock()
        with self._lock:
            state = self._states.setdefault((user_id, thread_id), CadenceState())
            state.msg_count = 0
            state.token_count = 0
            state.first_msg_time = None
            state.last_audit_time = now

        logger.debug("cadence_audit_complete", user_id=user_id, thread_id=thread_id)

    def get_state(self, user_id: str, thread_id: str) -> CadenceState | None:
        with self._lock:
            state = self._states.get((user_id, thread_id))
            return CadenceState(**vars(state)) if state else None

    def clear_thread(self, user_id: str, thread_id: str) -> None:
        with self._lock:
            self._states.pop((user_id, thread_id), None)

    def cleanup(self, max_age_seconds: float | None = None) -> int:
        """
        Drop threads with no activity within max_age_seconds.

        Returns:
            Number of entries removed
        """
        max_age = (
            max_age_seconds
            if max_age_seconds is not None
            else self.config.cleanup_max_age_seconds
        )
        now = self._clock()
        with self._lock:
            stale = [
                key
                for key, state in self._states.items()
                if now - _last_activity(state) > max_age
            ]
            for key in stale:
                del self._states[key]

        if stale:
            logger.info("cadence_cleanup", removed=len(stale))
        return len(stale)

    def get_metrics(self) -> dict[str, int]:
        with self._lock:
            return {
                "active_threads": len(self._states),
                "total_messages": sum(s.msg_count for s in self._states.values()),
                "total_tokens": sum(s.token_count for s in self._states.values()),
            }


def _last_activity(state: CadenceState) -> float:
    times = [t for t in (state.last_msg_time, state.last_audit_time) if t is not None]
    return max(times) if times else 0.0


class MessageBuffer:
    """Bounded per-thread window of messages awaiting audit."""

    def __init__(self, max_size: int = 50) -> None:
        self.max_size = max_size
        self._buffers: dict[ThreadKey, deque[MessageEvent]] = {}
        self._lock = Lock()

    def append(self, event: MessageEvent) -> None:
        with self._lock:
            key = (event.user_id, event.thread_id)
            buffer = self._buffers.get(key)
            if buffer is None:
                buffer = deque(maxlen=self.max_size)
                self._buffers[key] = buffer
            buffer.append(event)

    def drain(self, user_id: str, thread_id: str) -> list[MessageEvent]:
        """Remove and return the pending messages in arrival order."""
        with self._lock:
            buffer = self._buffers.pop((user_id, thread_id), None)
            return list(buffer) if buffer else []

    def peek(self, user_id: str, thread_id: str) -> list[MessageEvent]:
        with self._lock:
            return list(self._buffers.get((user_id, thread_id), ()))

    def clear(self, user_id: str, thread_id: str) -> None:
        with self._lock:
            self._buffers.pop((user_id, thread_id), None)

    def __len__(self) -> int:
        with self._lock:
            return sum(len(b) for b in self._buffers.values())
