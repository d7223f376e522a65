"""Admin login brute-force protection.

Tracks failed login attempts per client IP in process memory. After
`max_attempts` failures inside one window the client is blocked for a fixed
duration. Per identity the state moves CLEAN -> ACCUMULATING -> BLOCKED and
back to CLEAN on a successful login, or lazily once the window or the block
has elapsed.

State is lost on restart; the guard throttles guessing, it is not a
security boundary on its own.
"""

import asyncio
import math
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Dict, Optional

from poligraph.app.core.config import Settings
from poligraph.app.core.logging import get_log_context, get_logger

logger = get_logger(__name__)

MAX_ATTEMPTS = 5
WINDOW_SECONDS = 15 * 60
BLOCK_SECONDS = 30 * 60
SWEEP_INTERVAL_SECONDS = 10 * 60


@dataclass
class LoginAttempt:
    """Failed-login bookkeeping for one client identity."""
    failure_count: int
    window_started_at: float
    blocked_until: Optional[float] = None


@dataclass(frozen=True)
class LoginCheck:
    """Outcome of a guard check."""
    limited: bool
    remaining: int
    retry_after: Optional[int] = None


class LoginGuard:
    """In-memory login attempt tracker with temporary lockout.

    All reads and writes of the attempt table happen under one lock, so
    parallel failed logins from the same client cannot lose updates and
    slip past `max_attempts`. A `threading.Lock` is used because handlers
    may run on the event loop or in the threadpool.

    Usage:
        guard = LoginGuard()
        await guard.start()      # background sweep

        check = guard.check_rate_limit(ip)
        if not check.limited:
            if password_ok:
                guard.clear_attempts(ip)
            else:
                guard.record_failed_attempt(ip)

        await guard.stop()
    """

    def __init__(
        self,
        max_attempts: int = MAX_ATTEMPTS,
        window_seconds: float = WINDOW_SECONDS,
        block_seconds: float = BLOCK_SECONDS,
        sweep_interval: float = SWEEP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the guard.

        Args:
            max_attempts: Failures allowed inside one window before blocking
            window_seconds: Length of the failure-counting window
            block_seconds: Lockout duration once max_attempts is reached
            sweep_interval: Seconds between background sweeps
            clock: Monotonic clock in seconds (injectable for tests)
        """
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self.block_seconds = block_seconds
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._attempts: Dict[str, LoginAttempt] = {}
        self._lock = threading.Lock()
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._attempts)

    @property
    def sweeping(self) -> bool:
        return self._task is not None and not self._task.done()

    def _is_stale(self, entry: LoginAttempt, now: float) -> bool:
        if entry.blocked_until is not None:
            return now >= entry.blocked_until
        return now - entry.window_started_at > self.window_seconds

    def _check_locked(self, identity: str, now: float) -> LoginCheck:
        entry = self._attempts.get(identity)
        if entry is None:
            return LoginCheck(limited=False, remaining=self.max_attempts)

        if entry.blocked_until is not None and now < entry.blocked_until:
            retry_after = math.ceil(entry.blocked_until - now)
            return LoginCheck(limited=True, remaining=0, retry_after=retry_after)

        # Block elapsed, or window elapsed without reaching the threshold
        if self._is_stale(entry, now):
            del self._attempts[identity]
            return LoginCheck(limited=False, remaining=self.max_attempts)

        remaining = self.max_attempts - entry.failure_count
        return LoginCheck(limited=remaining <= 0, remaining=max(0, remaining))

    def check_rate_limit(self, identity: str) -> LoginCheck:
        """Report whether `identity` may attempt a login right now."""
        with self._lock:
            return self._check_locked(identity, self._clock())

    def record_failed_attempt(self, identity: str) -> LoginCheck:
        """Count one failed login and return the resulting state.

        A client that is already blocked does not accumulate failures and
        its block is not extended.
        """
        blocked_after = None
        with self._lock:
            now = self._clock()
            entry = self._attempts.get(identity)

            if entry is not None and entry.blocked_until is not None and now < entry.blocked_until:
                return self._check_locked(identity, now)

            if entry is None or self._is_stale(entry, now):
                entry = LoginAttempt(failure_count=1, window_started_at=now)
                self._attempts[identity] = entry
            else:
                entry.failure_count += 1

            if entry.failure_count >= self.max_attempts:
                entry.blocked_until = now + self.block_seconds
                blocked_after = entry.failure_count

            check = self._check_locked(identity, now)

        if blocked_after is not None:
            logger.warning(
                f"Admin login blocked after {blocked_after} failed attempts",
                extra=get_log_context(client_ip=identity, retry_after=check.retry_after),
            )
        return check

    def clear_attempts(self, identity: str) -> None:
        """Forget `identity` entirely (called after a successful login)."""
        with self._lock:
            self._attempts.pop(identity, None)

    def entry(self, identity: str) -> Optional[LoginAttempt]:
        """Return a copy of the bookkeeping entry for `identity`, if any."""
        with self._lock:
            entry = self._attempts.get(identity)
            return replace(entry) if entry is not None else None

    def sweep(self) -> int:
        """Drop entries whose window or block has elapsed.

        Not needed for correctness (checks reset stale entries lazily); it
        only bounds memory.

        Returns:
            Number of entries removed
        """
        with self._lock:
            now = self._clock()
            stale = [
                identity
                for identity, entry in list(self._attempts.items())
                if self._is_stale(entry, now)
            ]
            for identity in stale:
                del self._attempts[identity]
        if stale:
            logger.debug(f"Login guard sweep removed {len(stale)} entries")
        return len(stale)

    async def start(self) -> None:
        """Start the background sweep task."""
        if self.sweeping:
            logger.debug("Login guard sweep already running")
            return

        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_sweeps())
        logger.info(f"Started login guard sweep (interval: {self.sweep_interval}s)")

    async def stop(self) -> None:
        """Stop the background sweep task."""
        if self._task is None:
            return

        self._stop_event.set()

        try:
            await asyncio.wait_for(self._task, timeout=5.0)
        except asyncio.TimeoutError:
            logger.warning("Login guard sweep did not stop gracefully, cancelling")
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        finally:
            self._task = None
            self._stop_event = None
            logger.info("Stopped login guard sweep")

    async def _run_sweeps(self) -> None:
        """Background task that sweeps on a fixed interval until stopped."""
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(),
                    timeout=self.sweep_interval
                )
            except asyncio.TimeoutError:
                # Normal case: interval elapsed
                pass
            else:
                break

            try:
                self.sweep()
            except Exception as e:
                logger.error(f"Error during login guard sweep: {e}")


def build_login_guard(config: Settings) -> LoginGuard:
    return LoginGuard(
        max_attempts=config.login_max_attempts,
        window_seconds=config.login_window_seconds,
        block_seconds=config.login_block_seconds,
        sweep_interval=config.login_sweep_interval_seconds,
    )
