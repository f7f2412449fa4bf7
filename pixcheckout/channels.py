"""
Automatic confirmation channels.

A channel keeps asking (polling) or listening (real-time) for the payment
status on behalf of the verifier. The verifier picks the first channel that
opens and falls back down the list when one fails.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol

import socketio
from pydantic import ValidationError

from .config import settings
from .schemas import PixPayment, StatusResult

logger = logging.getLogger(__name__)


class CheckSource(str, Enum):
    MANUAL = "manual"
    AUTOMATIC = "automatic"
    REALTIME = "realtime"


class ChannelUnavailable(Exception):
    pass


class ConfirmationSink(Protocol):
    payment: PixPayment

    @property
    def terminal(self) -> bool: ...

    @property
    def in_flight(self) -> bool: ...

    @property
    def consecutive_errors(self) -> int: ...

    async def check(self, source: CheckSource) -> Any: ...

    async def apply_result(self, result: StatusResult, source: CheckSource) -> Any: ...

    async def channel_failed(self, channel: "ConfirmationChannel", reason: str) -> None: ...


class ConfirmationChannel(ABC):
    name = "channel"

    @abstractmethod
    async def open(self, sink: ConfirmationSink):
        """Start delivering status to the sink. Raise ChannelUnavailable on failure."""

    @abstractmethod
    async def close(self):
        ...

    @property
    @abstractmethod
    def alive(self) -> bool:
        ...


class PollingChannel(ConfirmationChannel):
    """Periodic status checks with exponential backoff on errors."""
    name = "polling"

    def __init__(self,
                 interval: Optional[float] = None,
                 max_interval: Optional[float] = None,
                 immediate: bool = True,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 ):
        self.base_interval = interval if interval is not None else settings.poll_interval
        self.interval = self.base_interval
        self.max_interval = max_interval if max_interval is not None else settings.poll_max_interval
        self.immediate = immediate
        self._sleep = sleep
        self._sink: Optional[ConfirmationSink] = None
        self._task: Optional[asyncio.Task] = None
        self._sleeping = False
        self._stopped = True

    @property
    def alive(self) -> bool:
        return self._task is not None and not self._task.done() and not self._stopped

    def next_delay(self, errors: int) -> float:
        delay = self.interval * (2 ** min(errors, 6))
        return min(delay, max(self.max_interval, self.interval))

    async def open(self, sink: ConfirmationSink):
        self._sink = sink
        self._stopped = False
        self.interval = self.base_interval
        self._task = asyncio.create_task(self._run())

    async def _run(self):
        delay = 0.0 if self.immediate else self.interval
        while not self._stopped and not self._sink.terminal:
            self._sleeping = True
            try:
                await self._sleep(delay)
            finally:
                self._sleeping = False
            if self._stopped or self._sink.terminal:
                break
            try:
                await self._tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                # the next tick must still happen
                logger.exception("Polling tick failed for order %s", self._sink.payment.order_id)
            delay = self.next_delay(self._sink.consecutive_errors)

    async def _tick(self):
        if self._sink.in_flight:
            logger.debug("Check already in flight, skipping polling tick")
            return
        outcome = await self._sink.check(CheckSource.AUTOMATIC)
        retry_after = getattr(outcome, "retry_after", None)
        if retry_after:
            self.interval = max(self.interval, retry_after + 5)
            logger.info("Status endpoint rate limited, polling every %.0fs", self.interval)

    async def close(self):
        self._stopped = True
        task = self._task
        # a tick that is mid-check finishes and then sees _stopped
        if task is not None and not task.done() and task is not asyncio.current_task() and self._sleeping:
            task.cancel()
        self._task = None


class RealtimeChannel(ConfirmationChannel):
    """Socket.IO subscription that receives payment status pushes."""
    name = "realtime"

    def __init__(self,
                 url: Optional[str] = None,
                 connect_timeout: float = 10.0,
                 client_factory: Callable[..., Any] = socketio.AsyncClient,
                 ):
        self.url = url if url is not None else settings.realtime_url
        self.connect_timeout = connect_timeout
        self.client_factory = client_factory
        self._client = None
        self._sink: Optional[ConfirmationSink] = None
        self._alive = False
        self._closing = False
        self._failure_task: Optional[asyncio.Task] = None

    @property
    def alive(self) -> bool:
        return self._alive and self._client is not None and bool(getattr(self._client, "connected", False))

    async def open(self, sink: ConfirmationSink):
        if not self.url:
            raise ChannelUnavailable("No real-time endpoint configured")
        self._sink = sink
        self._closing = False
        client = self.client_factory(reconnection=False)
        client.on("message", handler=self._on_message)
        client.on("disconnect", handler=self._on_disconnect)
        self._client = client
        try:
            await asyncio.wait_for(client.connect(self.url, transports=["websocket"]), self.connect_timeout)
            self._alive = True
            await client.emit("subscribe", {
                "orderId": sink.payment.order_id,
                "paymentId": sink.payment.payment_id or "",
            })
        except Exception as e:
            self._alive = False
            await self._disconnect_quietly()
            raise ChannelUnavailable(f"Real-time channel unavailable: {e}") from e
        logger.info("Real-time channel subscribed for order %s", sink.payment.order_id)

    async def _on_message(self, data):
        try:
            if not isinstance(data, dict) or not self._alive:
                return
            kind = data.get("type")
            if kind == "payment_status":
                try:
                    result = StatusResult.model_validate(data)
                except ValidationError:
                    logger.debug("Ignoring malformed payment_status push: %r", data)
                    return
                await self._sink.apply_result(result, CheckSource.REALTIME)
            elif kind == "ping":
                await self._client.emit("message", {"type": "pong"})
            elif kind == "error":
                self._fail(f"server error: {data.get('message', 'unknown')}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Real-time message handling failed: %s", e)
            self._fail("handler error")

    async def _on_disconnect(self, *args):
        if not self._closing:
            self._fail("disconnected")

    def _fail(self, reason: str):
        if not self._alive:
            return
        self._alive = False
        # hand over outside the socket handler
        self._failure_task = asyncio.create_task(self._sink.channel_failed(self, reason))

    async def _disconnect_quietly(self):
        client = self._client
        if client is None:
            return
        try:
            if getattr(client, "connected", False):
                await client.disconnect()
        except Exception as e:
            logger.debug("Ignoring error while closing real-time channel: %s", e)

    async def close(self):
        self._closing = True
        self._alive = False
        await self._disconnect_quietly()
        self._client = None
