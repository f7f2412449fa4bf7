"""
Confirmation verifier for a single PIX payment.

States::

    idle -> checking -> idle        inconclusive result or error
                     -> paid        terminal
                     -> expired     terminal

Manual checks, the polling channel and the real-time channel all funnel into
``check``/``apply_result``. At most one status request is in flight at a
time, and the paid transition is applied once no matter how many paths
report it.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional, Sequence

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from .channels import ChannelUnavailable, CheckSource, ConfirmationChannel
from .errors import ShopApiError
from .events import CheckoutEvent, EventBus
from .formatting import format_price
from .schemas import Notice, PixPayment, StatusResult
from .services.shop_api import ShopApiClient
from .storage import PaymentStore
from .timer import Clock, ExpirationTimer, utcnow

logger = logging.getLogger(__name__)

PENDING_NOTICE = "Payment still pending. Try again in a few moments."
CHECK_ERROR_NOTICE = "Could not check the payment status. Try again."
EXPIRED_NOTICE = "The PIX payment expired. Start over to generate a new code."
PAID_NOTICE = "Payment of {amount} confirmed!"


class VerifierState(str, Enum):
    IDLE = "idle"
    CHECKING = "checking"
    PAID = "paid"
    EXPIRED = "expired"


@dataclass
class VerificationSession:
    in_flight: bool = False
    check_started_at: Optional[datetime] = None
    consecutive_errors: int = 0
    check_count: int = 0
    strategy: Optional[str] = None
    last_checked_at: Optional[datetime] = None
    # bumped when a stuck in-flight flag is reset, so the stale check
    # cannot clear the flag of a newer one
    generation: int = 0


@dataclass
class CheckOutcome:
    performed: bool
    state: VerifierState
    result: Optional[StatusResult] = None
    error: Optional[str] = None
    retry_after: Optional[float] = None
    notice: Optional[Notice] = None


class ConfirmationVerifier:
    def __init__(self,
                 api: ShopApiClient,
                 payment: PixPayment,
                 bus: EventBus,
                 store: Optional[PaymentStore] = None,
                 channels: Sequence[ConfirmationChannel] = (),
                 clock: Clock = utcnow,
                 timer: Optional[ExpirationTimer] = None,
                 ):
        self.api = api
        self.payment = payment
        self.bus = bus
        self.store = store
        self.channels: List[ConfirmationChannel] = list(channels)
        self.clock = clock
        self.timer = timer or ExpirationTimer(
            payment.expires_at, clock=clock,
            on_expired=self._on_timer_expired, on_warning=self._on_timer_warning,
        )
        self.state = VerifierState.PAID if payment.paid else VerifierState.IDLE
        self.session = VerificationSession()
        self.channel: Optional[ConfirmationChannel] = None
        self._channel_index: Optional[int] = None
        self._closed = False
        self._tasks = set()

    # sink interface used by the channels

    @property
    def terminal(self) -> bool:
        return self.state in (VerifierState.PAID, VerifierState.EXPIRED)

    @property
    def in_flight(self) -> bool:
        return self.session.in_flight

    @property
    def consecutive_errors(self) -> int:
        return self.session.consecutive_errors

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def expired(self) -> bool:
        return self.state is VerifierState.EXPIRED

    # lifecycle

    async def start(self, auto: bool = True):
        if self.terminal or self._closed:
            return
        await self.timer.tick()
        if self.terminal:
            return
        self.timer.start()
        if auto:
            await self._open_channel(0)

    async def close(self):
        """Tear everything down (owner unmounted). State is left as is."""
        self._closed = True
        self.timer.stop()
        await self._close_channel()

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # channels

    async def _open_channel(self, start: int):
        for index in range(start, len(self.channels)):
            if self.terminal or self._closed:
                return
            channel = self.channels[index]
            try:
                await channel.open(self)
            except ChannelUnavailable as e:
                logger.info("Channel %s unavailable for order %s: %s", channel.name, self.payment.order_id, e)
                continue
            if self.terminal or self._closed:
                # resolved while the channel was opening
                await channel.close()
                return
            self.channel = channel
            self._channel_index = index
            self.session.strategy = channel.name
            logger.info("Verifying order %s via %s", self.payment.order_id, channel.name)
            await self.bus.publish(CheckoutEvent.CHANNEL_CHANGED, channel.name)
            return
        logger.warning("No confirmation channel could be opened for order %s", self.payment.order_id)

    async def _close_channel(self):
        channel, self.channel, self._channel_index = self.channel, None, None
        if channel is not None:
            await channel.close()

    async def channel_failed(self, channel: ConfirmationChannel, reason: str):
        if channel is not self.channel:
            return
        logger.warning("Channel %s failed for order %s (%s), falling back",
                       channel.name, self.payment.order_id, reason)
        index = self._channel_index or 0
        await self._close_channel()
        await self._open_channel(index + 1)

    async def revive_channel(self) -> bool:
        """Reopen the preferred channel if the active one died or is a fallback."""
        if self.terminal or self._closed or not self.channels:
            return False
        if self.channel is not None and self.channel.alive and self._channel_index == 0:
            return False
        await self._close_channel()
        await self._open_channel(0)
        return True

    def reset_stale_check(self, max_age: float, force: bool = False) -> bool:
        """Drop an in-flight flag that cannot legitimately still be in flight."""
        if not self.session.in_flight:
            return False
        started = self.session.check_started_at
        age = (self.clock() - started).total_seconds() if started else None
        if not force and age is not None and age < max_age:
            return False
        logger.info("Resetting stale status check for order %s", self.payment.order_id)
        self.session.in_flight = False
        self.session.check_started_at = None
        self.session.generation += 1
        if self.state is VerifierState.CHECKING:
            self.state = VerifierState.IDLE
        return True

    # checks

    async def verify_manually(self) -> CheckOutcome:
        outcome = await self.check(CheckSource.MANUAL)
        if outcome.notice is not None:
            await self.bus.publish(CheckoutEvent.NOTICE, outcome.notice)
        return outcome

    async def check(self, source: CheckSource) -> CheckOutcome:
        if self.terminal or self._closed:
            return CheckOutcome(performed=False, state=self.state)
        if self.session.in_flight:
            # ignored, not queued
            logger.debug("Status check already in flight, ignoring %s request", source.value)
            return CheckOutcome(performed=False, state=self.state)

        generation = self.session.generation
        self.session.in_flight = True
        self.session.check_started_at = self.clock()
        self.state = VerifierState.CHECKING
        result, error = None, None
        try:
            result = await self.api.check_status(self.payment.order_id, self.payment.payment_id)
        except (ShopApiError, ValidationError) as e:
            error = e
        finally:
            self.session.check_count += 1
            self.session.last_checked_at = self.clock()
            if self.session.generation == generation:
                self.session.in_flight = False
                self.session.check_started_at = None
                if self.state is VerifierState.CHECKING:
                    self.state = VerifierState.IDLE

        if error is not None:
            return self._record_error(error, source)
        self.session.consecutive_errors = 0
        notice = await self.apply_result(result, source)
        return CheckOutcome(performed=True, state=self.state, result=result, notice=notice)

    def _record_error(self, error: Exception, source: CheckSource) -> CheckOutcome:
        self.session.consecutive_errors += 1
        retry_after = None
        message = getattr(error, "message", None) or "Malformed status response"
        if isinstance(error, ShopApiError) and error.status_code == 429:
            try:
                retry_after = float(error.payload.get("waitTime") or 0) or None
            except (TypeError, ValueError):
                retry_after = None
        if source is CheckSource.MANUAL:
            logger.warning("Manual status check failed for order %s: %s", self.payment.order_id, message)
            notice = Notice(level="error", message=CHECK_ERROR_NOTICE)
        else:
            logger.debug("Status check failed for order %s: %s", self.payment.order_id, message)
            notice = None
        return CheckOutcome(performed=True, state=self.state, error=message,
                            retry_after=retry_after, notice=notice)

    async def apply_result(self, result: StatusResult, source: CheckSource) -> Optional[Notice]:
        if self.terminal or self._closed:
            return None
        if result.paid:
            await self._mark_paid(source)
            return Notice(level="success", message=PAID_NOTICE.format(amount=format_price(self.payment.total)))
        if result.expired:
            await self.mark_expired(source)
            return Notice(level="error", message=EXPIRED_NOTICE, blocking=True)
        if source is CheckSource.MANUAL:
            return Notice(level="info", message=PENDING_NOTICE)
        logger.debug("Order %s still pending (%s)", self.payment.order_id, result.payment_status or result.status)
        return None

    # transitions

    async def _mark_paid(self, source: CheckSource):
        if self.payment.paid or self.terminal:
            return
        # flag before any await so concurrent paths collapse here
        self.payment.paid = True
        self.state = VerifierState.PAID
        logger.info("Payment for order %s confirmed via %s", self.payment.order_id, source.value)
        self._shutdown()
        await self._persist()
        await self.bus.publish(CheckoutEvent.PAYMENT_CONFIRMED, self.payment)

    async def mark_expired(self, source: Optional[CheckSource] = None):
        if self.terminal:
            return
        self.state = VerifierState.EXPIRED
        logger.info("Payment for order %s expired (%s)", self.payment.order_id,
                    source.value if source else "timer")
        self._shutdown()
        await self.bus.publish(CheckoutEvent.PAYMENT_EXPIRED, self.payment)

    def _shutdown(self):
        self.timer.stop()
        # closed in its own task so a channel never tears itself down mid-callback
        self._spawn(self._close_channel())

    async def _persist(self):
        if self.store is None:
            return
        try:
            await self.store.update(self.payment)
        except SQLAlchemyError:
            logger.exception("Could not persist payment state for order %s", self.payment.order_id)

    async def _on_timer_expired(self):
        await self.mark_expired()

    async def _on_timer_warning(self, seconds: int):
        if not self.terminal:
            await self.bus.publish(CheckoutEvent.NOTICE,
                                   Notice(level="warning", message=f"Payment expires in {seconds} seconds."))
