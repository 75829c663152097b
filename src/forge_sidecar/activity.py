"""Idle tracking and automatic shutdown of the sidecar."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import TYPE_CHECKING, Any, Callable

from .config import SidecarSettings, clamp_idle_threshold
from .process.state import ACTIVITY_KEY, AUTO_SHUTDOWN_KEY, StateStore
from .process.supervisor import SupervisorState

if TYPE_CHECKING:
    from .process.supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 1800


class ActivityMonitor:
    """Tracks the last proxied call and decides when the sidecar is idle.

    The timestamp and any runtime policy override live in the shared
    :class:`StateStore`, so every request handler sees the same record.
    """

    def __init__(
        self,
        store: StateStore,
        *,
        threshold: int = DEFAULT_THRESHOLD,
        enabled: bool = True,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._store = store
        self._default_threshold = clamp_idle_threshold(threshold)
        self._default_enabled = enabled
        self._clock = clock or time.time

    @classmethod
    def from_settings(
        cls,
        settings: SidecarSettings,
        store: StateStore,
        *,
        clock: Callable[[], float] | None = None,
    ) -> "ActivityMonitor":
        return cls(store, threshold=settings.idle_threshold, enabled=settings.auto_shutdown, clock=clock)

    def _policy(self) -> dict[str, Any]:
        raw = self._store.get(AUTO_SHUTDOWN_KEY)
        if not raw:
            return {}
        try:
            policy = json.loads(raw)
        except ValueError:
            return {}
        return policy if isinstance(policy, dict) else {}

    @property
    def threshold(self) -> int:
        value = self._policy().get("threshold")
        if isinstance(value, int) and not isinstance(value, bool):
            return clamp_idle_threshold(value)
        return self._default_threshold

    @property
    def enabled(self) -> bool:
        value = self._policy().get("enabled")
        return value if isinstance(value, bool) else self._default_enabled

    def update_policy(self, *, enabled: bool | None = None, threshold: int | None = None) -> dict[str, Any]:
        """Persist a runtime override of the auto-shutdown policy."""

        policy = {"enabled": self.enabled, "threshold": self.threshold}
        if enabled is not None:
            policy["enabled"] = bool(enabled)
        if threshold is not None:
            policy["threshold"] = clamp_idle_threshold(threshold)
        self._store.set(AUTO_SHUTDOWN_KEY, json.dumps(policy))
        logger.info("Auto-shutdown policy updated", extra=policy)
        return policy

    def record_activity(self) -> None:
        self._store.set(ACTIVITY_KEY, str(int(self._clock())))

    def last_activity(self) -> int | None:
        raw = self._store.get(ACTIVITY_KEY)
        if raw is None:
            return None
        try:
            return int(raw)
        except ValueError:
            return None

    def seconds_since_activity(self) -> int | None:
        last = self.last_activity()
        if last is None:
            return None
        return max(0, int(self._clock()) - last)

    def is_inactive(self) -> bool:
        elapsed = self.seconds_since_activity()
        if elapsed is None:
            return True
        return elapsed >= self.threshold

    def clear(self) -> None:
        self._store.delete(ACTIVITY_KEY)

    async def check_and_stop_if_inactive(self, supervisor: "ProcessSupervisor") -> bool:
        """Stop the sidecar when idle; returns True if a stop was issued. Never raises."""

        try:
            if not self.enabled:
                return False
            # a sidecar still inside start() has no activity record yet
            if supervisor.status().state is not SupervisorState.RUNNING:
                return False
            if not self.is_inactive():
                return False

            seconds = self.seconds_since_activity()
            logger.info(
                "Stopping opencode after %d minutes of inactivity",
                (seconds or 0) // 60,
                extra={"seconds_inactive": seconds, "threshold": self.threshold},
            )
            await supervisor.stop()
            return True
        except Exception:
            logger.exception("Idle check failed")
            return False

    def status(self, running: bool) -> dict[str, Any]:
        seconds_inactive = self.seconds_since_activity()
        threshold = self.threshold
        enabled = self.enabled
        will_shutdown_in = None
        if running and seconds_inactive is not None and enabled:
            will_shutdown_in = max(0, threshold - seconds_inactive)
        return {
            "last_activity": self.last_activity(),
            "seconds_inactive": seconds_inactive,
            "threshold": threshold,
            "is_inactive": self.is_inactive(),
            "auto_shutdown_enabled": enabled,
            "will_shutdown_in": will_shutdown_in,
        }


class IdleWatcher:
    """Runs the idle check on a fixed cadence inside the event loop."""

    def __init__(
        self,
        monitor: ActivityMonitor,
        supervisor: "ProcessSupervisor",
        *,
        interval: float = 300.0,
    ) -> None:
        self._monitor = monitor
        self._supervisor = supervisor
        self._interval = interval
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="forge-sidecar-idle-watcher")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            await self._monitor.check_and_stop_if_inactive(self._supervisor)


__all__ = ["ActivityMonitor", "DEFAULT_THRESHOLD", "IdleWatcher"]
