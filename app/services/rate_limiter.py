"""Durable call-quota counter and resume cursor for the Keka sync jobs."""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, ValidationError

from app.config import settings
from app.database.cache import CacheBackend
from app.services.exceptions import RateLimitExceeded

logger = logging.getLogger(__name__)

CHECKPOINT_SCHEMA_VERSION = 1


class SyncCheckpoint(BaseModel):
    """Rate-limit counters plus the exact resume position of a sync run.

    Stored as JSON in the durable cache. Unknown keys are ignored and missing
    keys take defaults so checkpoints written by other versions still load.
    """

    model_config = ConfigDict(extra="ignore")

    schema_version: int = CHECKPOINT_SCHEMA_VERSION
    call_count: int = 0
    window_start: float = 0.0
    cursor_entity_index: int = 0
    cursor_page: int = 1
    total_entities: int = 0
    current_entity_id: str = ""
    entity_id_snapshot: List[str] = []
    paused: bool = False
    # Page-only cursors (employee roster) also track the reported page count
    total_pages: int = 1


class RateLimiter:
    """Fixed-window call counter persisted after every change.

    States: ACTIVE (count below quota), PAUSED (quota reached, sleeping out
    the window) and RESET (window expired, applied lazily on read/write).
    """

    def __init__(
        self,
        cache: CacheBackend,
        key: str,
        max_calls: Optional[int] = None,
        window_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        """Initialize rate limiter.

        Args:
            cache: Durable cache backend holding the checkpoint.
            key: Cache key of this limiter's checkpoint.
            max_calls: Calls allowed per window (defaults to settings).
            window_seconds: Window length (defaults to settings).
            clock: Time source returning epoch seconds.
            sleep: Coroutine used to wait out a full window.
        """
        self.cache = cache
        self.key = key
        self.max_calls = max_calls or settings.sync_max_calls_per_minute
        self.window_seconds = window_seconds or settings.sync_rate_window_seconds
        self._clock = clock
        self._sleep = sleep

    def _window_expired(self, state: SyncCheckpoint, now: float) -> bool:
        return (now - state.window_start) > self.window_seconds

    async def load_state(self) -> SyncCheckpoint:
        """Read the checkpoint, applying a lazy window reset.

        Returns:
            The stored checkpoint, or a fresh persisted one if none exists.
        """
        now = self._clock()
        raw = await self.cache.get(self.key)

        if raw:
            try:
                state = SyncCheckpoint.model_validate_json(raw)
                if self._window_expired(state, now):
                    logger.debug(f"{self.key}: rate limit window reset")
                    state.call_count = 0
                    state.window_start = now
                    state.paused = False
                return state
            except ValidationError as e:
                logger.error(f"{self.key}: unreadable checkpoint, starting fresh: {e}")

        state = SyncCheckpoint(window_start=now)
        await self.persist(state)
        return state

    async def record_call(self, state: SyncCheckpoint) -> bool:
        """Count one remote call, pausing in place if the quota is reached.

        Args:
            state: Checkpoint of the calling run (mutated and persisted).

        Returns:
            True if the caller was paused for a full window.
        """
        now = self._clock()
        if self._window_expired(state, now):
            state.call_count = 1
            state.window_start = now
            state.paused = False
        else:
            state.call_count += 1

        logger.debug(f"{self.key}: API call count {state.call_count}/{self.max_calls}")
        await self.persist(state)

        try:
            self._check_quota(state)
        except RateLimitExceeded as e:
            logger.info(f"{e}. Pausing for {self.window_seconds:g}s")
            await self._pause(state)
            return True

        return False

    def _check_quota(self, state: SyncCheckpoint) -> None:
        if state.call_count >= self.max_calls:
            raise RateLimitExceeded(
                f"{self.key}: rate limit reached ({state.call_count}/{self.max_calls})"
            )

    async def _pause(self, state: SyncCheckpoint) -> None:
        state.paused = True
        await self.persist(state)

        await self._sleep(self.window_seconds)

        state.call_count = 0
        state.window_start = self._clock()
        state.paused = False
        await self.persist(state)
        logger.info(f"{self.key}: resumed, rate limit reset to 0/{self.max_calls}")

    async def resume_if_paused(self, state: SyncCheckpoint) -> bool:
        """Clear a pause left behind by an interrupted process.

        The stored window start already reflects real elapsed time, so the
        pause is treated as served without sleeping again.

        Returns:
            True if the checkpoint was paused.
        """
        if not state.paused:
            return False

        logger.info(f"{self.key}: resuming from previous rate limit pause")
        state.call_count = 0
        state.window_start = self._clock()
        state.paused = False
        await self.persist(state)
        return True

    async def persist(self, state: SyncCheckpoint) -> None:
        await self.cache.set(self.key, state.model_dump_json())

    async def clear(self) -> None:
        await self.cache.delete(self.key)
        logger.info(f"{self.key}: checkpoint cleared")

    async def status(self) -> Dict[str, Any]:
        """Summarise the current counters and cursor for diagnostics."""
        state = await self.load_state()
        elapsed = self._clock() - state.window_start
        return {
            "current_count": state.call_count,
            "max_limit": self.max_calls,
            "current_entity_index": state.cursor_entity_index,
            "current_page": state.cursor_page,
            "total_entities": state.total_entities,
            "total_pages": state.total_pages,
            "current_entity_id": state.current_entity_id,
            "window_start": state.window_start,
            "is_paused": state.paused,
            "seconds_until_reset": max(0.0, self.window_seconds - elapsed),
        }
