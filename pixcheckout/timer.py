"""
Countdown for a PIX payment.

The countdown is always recomputed from the stored expiration timestamp and
the current time, never from a saved remaining duration, so it survives a
reload unchanged.
"""
import asyncio
import inspect
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Union

from .formatting import format_countdown

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
Callback = Callable[..., Union[None, Awaitable[None]]]

WARNING_WINDOW_SECONDS = 60
WARNING_STEP_SECONDS = 15


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_expiration(value: Any) -> Optional[datetime]:
    """Return an aware UTC datetime, or None when missing or unparseable."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def seconds_until(expires_at: Any, now: datetime) -> Optional[float]:
    parsed = parse_expiration(expires_at)
    if parsed is None:
        return None
    return (parsed - now).total_seconds()


async def _call(callback: Optional[Callback], *args):
    if callback is None:
        return
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except asyncio.CancelledError:
        raise
    except Exception:
        logger.exception("Timer callback failed")


class ExpirationTimer:
    def __init__(self,
                 expires_at: Any,
                 clock: Clock = utcnow,
                 on_expired: Optional[Callback] = None,
                 on_warning: Optional[Callback] = None,
                 interval: float = 1.0,
                 ):
        self.expires_at = parse_expiration(expires_at)
        self.clock = clock
        self.on_expired = on_expired
        self.on_warning = on_warning
        self.interval = interval
        self._expired = False
        self._last_warning: Optional[int] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def expired(self) -> bool:
        return self._expired

    def remaining_seconds(self) -> Optional[float]:
        if self.expires_at is None:
            return None
        return (self.expires_at - self.clock()).total_seconds()

    def countdown(self) -> str:
        remaining = self.remaining_seconds()
        if remaining is None:
            return format_countdown(None)
        return format_countdown(max(remaining, 0))

    async def tick(self) -> str:
        """Recompute the countdown and fire expiry/warning callbacks."""
        remaining = self.remaining_seconds()
        if remaining is None:
            return format_countdown(None)

        if remaining <= 0:
            if not self._expired:
                self._expired = True
                logger.info("PIX payment expired at %s", self.expires_at.isoformat())
                await _call(self.on_expired)
            return format_countdown(0)

        whole = int(remaining)
        if (whole < WARNING_WINDOW_SECONDS and whole > 0
                and whole % WARNING_STEP_SECONDS == 0 and whole != self._last_warning):
            self._last_warning = whole
            await _call(self.on_warning, whole)
        return format_countdown(remaining)

    async def run(self):
        while not self._expired:
            await self.tick()
            if self._expired or self.expires_at is None:
                break
            await asyncio.sleep(self.interval)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    def stop(self):
        # run() exits on its own once expired; cancelling from inside the
        # expiry callback would abort the callback itself
        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        self._task = None
