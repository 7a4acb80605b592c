"""
Session monitor: tracks user activity and remaining session time.

States: INACTIVE (no credential), ACTIVE, WARNING (remaining below warning threshold),
EXPIRED (remaining reached zero). Driven by a periodic asyncio poll task plus activity
events fed in by the host through ActivityTracker. Timers and listeners only exist while
a credential is present; stop() (or releasing the handle returned by start()) removes both.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from session_client.config import ACTIVITY_DEBOUNCE, POLL_INTERVAL, RESET_THRESHOLD, WARNING_THRESHOLD
from session_client.token_store import TokenStore

logger = logging.getLogger(__name__)

TRACKED_EVENTS = frozenset({"pointerdown", "keydown", "scroll", "touchstart"})


class SessionState(str, Enum):
    INACTIVE = "inactive"
    ACTIVE = "active"
    WARNING = "warning"
    EXPIRED = "expired"


class SessionEvent(str, Enum):
    TICK = "tick"
    WARNING = "warning"
    ACTIVE = "active"
    EXPIRED = "expired"


@dataclass(frozen=True)
class ActivityState:
    last_activity_at: float | None
    warning_threshold: float
    session_expired: bool


class Subscription:
    """Handle for a registered listener. release() is idempotent."""

    def __init__(self, release: Callable[[], None]) -> None:
        self._release = release
        self.active = True

    def release(self) -> None:
        if not self.active:
            return
        self.active = False
        self._release()

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc) -> None:
        self.release()


def _released_handle() -> Subscription:
    handle = Subscription(lambda: None)
    handle.release()
    return handle


class ActivityTracker:
    """
    Event hub for user activity. The host environment calls emit() for pointer, key,
    scroll and touch events; the monitor subscribes while a session is live.
    """

    def __init__(self) -> None:
        self._listeners: list[Callable[[str], None]] = []

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def subscribe(self, callback: Callable[[str], None]) -> Subscription:
        self._listeners.append(callback)

        def _remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return Subscription(_remove)

    def emit(self, event: str) -> None:
        for callback in list(self._listeners):
            try:
                callback(event)
            except Exception:
                logger.exception("Activity listener failed for %s", event)


class SessionMonitor:
    def __init__(
        self,
        token_store: TokenStore,
        tracker: ActivityTracker | None = None,
        *,
        warning_threshold: float = WARNING_THRESHOLD,
        reset_threshold: float = RESET_THRESHOLD,
        poll_interval: float = POLL_INTERVAL,
        activity_debounce: float = ACTIVITY_DEBOUNCE,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        self.token_store = token_store
        self.tracker = tracker or ActivityTracker()
        self.warning_threshold = warning_threshold
        self.reset_threshold = reset_threshold
        self.poll_interval = poll_interval
        self.activity_debounce = activity_debounce
        self._clock = clock
        self.state = SessionState.INACTIVE
        self._remaining = 0.0
        self._computed_at: float | None = None
        self._last_handled_activity: float | None = None
        self._poll_task: asyncio.Task | None = None
        self._activity_sub: Subscription | None = None
        self._handle: Subscription | None = None
        self._subscribers: list[Callable[[SessionEvent, float], None]] = []

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------
    def subscribe(self, callback: Callable[[SessionEvent, float], None]) -> Subscription:
        """callback(event, remaining_seconds) on every tick and state change."""
        self._subscribers.append(callback)

        def _remove() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return Subscription(_remove)

    def _emit(self, event: SessionEvent) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event, self._remaining)
            except Exception:
                logger.exception("Session monitor subscriber failed on %s", event.value)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    @property
    def running(self) -> bool:
        return self._handle is not None and self._handle.active

    @property
    def poll_task(self) -> asyncio.Task | None:
        return self._poll_task

    def start(self) -> Subscription:
        """
        Begin monitoring the current credential. Returns a handle whose release() stops
        the poll task and removes the activity listener. Without a credential nothing is
        started and an already-released handle is returned.
        """
        if self.running:
            return self._handle
        if self.token_store.get() is None:
            self.state = SessionState.INACTIVE
            return _released_handle()

        self.state = SessionState.ACTIVE
        self._last_handled_activity = None
        self._handle = Subscription(self._teardown)
        self._activity_sub = self.tracker.subscribe(self.on_activity)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No event loop: activity listener and explicit check() calls still work
            logger.warning("Session monitor started without a running event loop; polling disabled")
        else:
            self._poll_task = loop.create_task(self._poll())
        logger.debug("Session monitor started (poll every %ss)", self.poll_interval)
        self.check()
        # An already-expired credential tears down inside check()
        return self._handle if self._handle is not None else _released_handle()

    def stop(self) -> None:
        """Stop timers and listeners. Safe to call repeatedly."""
        if self._handle is not None:
            self._handle.release()
        self.state = SessionState.INACTIVE

    def _teardown(self) -> None:
        if self._poll_task is not None:
            task = self._poll_task
            self._poll_task = None
            try:
                current = asyncio.current_task()
            except RuntimeError:
                current = None
            # Expiry detected inside the poll task ends the loop by itself
            if task is not current:
                task.cancel()
        if self._activity_sub is not None:
            self._activity_sub.release()
            self._activity_sub = None
        self._handle = None
        logger.debug("Session monitor stopped")

    async def _poll(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            self.check()
            if not self.running:
                return

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------
    def check(self) -> float:
        """Recompute remaining time and apply state transitions. Returns remaining seconds."""
        if self.state is SessionState.EXPIRED:
            return 0.0
        credential = self.token_store.get()
        if credential is None:
            self._remaining = 0.0
            self.stop()
            return 0.0

        now = self._clock()
        self._remaining = credential.remaining(now)
        self._computed_at = now

        if self._remaining <= 0:
            self.state = SessionState.EXPIRED
            if self._handle is not None:
                self._handle.release()
            logger.info("Session expired")
            self._emit(SessionEvent.EXPIRED)
            return 0.0

        self._emit(SessionEvent.TICK)
        if self._remaining < self.warning_threshold:
            if self.state is SessionState.ACTIVE:
                self.state = SessionState.WARNING
                logger.info("Session expiring in %.0fs", self._remaining)
                self._emit(SessionEvent.WARNING)
        elif self.state is SessionState.WARNING:
            self.state = SessionState.ACTIVE
            self._emit(SessionEvent.ACTIVE)
        return self._remaining

    def on_activity(self, event: str) -> None:
        """Handle one activity event: extend the session and leave WARNING if far enough from expiry."""
        if event not in TRACKED_EVENTS:
            return
        if self.state not in (SessionState.ACTIVE, SessionState.WARNING):
            return
        now = self._clock()
        if (
            self._last_handled_activity is not None
            and now - self._last_handled_activity < self.activity_debounce
        ):
            return
        self._last_handled_activity = now

        self.token_store.update_activity()
        self.token_store.update_session_expiry()
        credential = self.token_store.get()
        if credential is None:
            return
        self._remaining = credential.remaining(now)
        self._computed_at = now
        if self.state is SessionState.WARNING and self._remaining > self.reset_threshold:
            self.state = SessionState.ACTIVE
            logger.debug("Activity reset session warning")
            self._emit(SessionEvent.ACTIVE)

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------
    @property
    def remaining(self) -> float:
        """Remaining seconds as of the last check or activity."""
        return self._remaining

    def estimate_remaining(self) -> float:
        """Last computed remaining time minus wall-clock time elapsed since it was computed."""
        if self._computed_at is None:
            return self._remaining
        return max(0.0, self._remaining - (self._clock() - self._computed_at))

    @property
    def activity_state(self) -> ActivityState:
        return ActivityState(
            last_activity_at=self.token_store.last_activity_at(),
            warning_threshold=self.warning_threshold,
            session_expired=self.state is SessionState.EXPIRED,
        )
