import asyncio
import logging
from collections import deque
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from .channels import ConfirmationChannel, PollingChannel, RealtimeChannel
from .config import settings
from .errors import CheckoutNotFound
from .events import CheckoutEvent, EventBus
from .recovery import LifecycleSignal, RecoveryPlan, RecoverySupervisor
from .schemas import Cart, CheckoutStateOut, Customer, Notice, PixPayment
from .services.card import start_card_checkout
from .services.orders import create_order
from .services.pix import generate_pix_payment
from .services.shop_api import ShopApiClient
from .storage import PaymentStore, ResumeAction, ResumeDecision
from .timer import Clock, utcnow
from .verifier import ConfirmationVerifier, VerifierState

logger = logging.getLogger(__name__)

NOTICE_TTL_SECONDS = 8


def default_channels() -> List[ConfirmationChannel]:
    channels: List[ConfirmationChannel] = []
    if settings.realtime_url:
        channels.append(RealtimeChannel())
    channels.append(PollingChannel())
    return channels


class CheckoutSession:
    """One customer's way from cart to confirmed (or expired) PIX payment."""

    def __init__(self,
                 api: ShopApiClient,
                 store: PaymentStore,
                 cart: Optional[Cart] = None,
                 customer: Optional[Customer] = None,
                 bus: Optional[EventBus] = None,
                 clock: Clock = utcnow,
                 channel_factory: Callable[[], List[ConfirmationChannel]] = default_channels,
                 auto_verify: Optional[bool] = None,
                 ):
        self.api = api
        self.store = store
        self.cart = cart or Cart()
        self.customer = customer or Customer()
        self.bus = bus or EventBus()
        self.clock = clock
        self.channel_factory = channel_factory
        self.auto_verify = settings.auto_verify if auto_verify is None else auto_verify

        self.order_id: Optional[str] = None
        self.payment_method: Optional[str] = None
        self.payment: Optional[PixPayment] = None
        self.checkout_url: Optional[str] = None
        self.redirect_url: Optional[str] = None
        self.verifier: Optional[ConfirmationVerifier] = None
        self.supervisor = RecoverySupervisor(clock=clock)
        self.confirmed_count = 0
        self._notices: deque = deque(maxlen=10)

        self.bus.subscribe(CheckoutEvent.PAYMENT_CONFIRMED, self._on_confirmed)
        self.bus.subscribe(CheckoutEvent.PAYMENT_EXPIRED, self._on_expired)
        self.bus.subscribe(CheckoutEvent.NOTICE, self._on_notice)

    # steps

    async def submit(self, payment_method: str = "pix") -> str:
        """Create the order and move to the payment step. Returns the order id."""
        self.supervisor.set_overlay(True, pending_operation=True)
        try:
            order_id = await create_order(self.api, self.cart, self.customer, payment_method)
            self.order_id = order_id
            self.payment_method = payment_method
            await self._discard_previous()

            if payment_method == "card":
                self.checkout_url = await start_card_checkout(self.api, order_id, self.cart, self.customer)
                await self.store.remember_order(order_id)
                self.cart.clear()
                self.redirect_url = self.checkout_url
                return order_id

            payment = await generate_pix_payment(self.api, self.store, order_id, self.cart, self.customer,
                                                 clock=self.clock)
            await self.bus.publish(CheckoutEvent.PAYMENT_CREATED, payment)
            await self._start_verifier(payment)
            return order_id
        finally:
            self.supervisor.set_overlay(False)

    async def _discard_previous(self):
        if self.verifier is not None:
            await self.verifier.close()
            self.verifier = None
        try:
            await self.store.clear()
        except SQLAlchemyError:
            logger.exception("Could not clear stored payment before new order")

    async def _start_verifier(self, payment: PixPayment):
        self.payment = payment
        self.order_id = payment.order_id
        channels = self.channel_factory() if self.auto_verify else []
        self.verifier = ConfirmationVerifier(
            self.api, payment, self.bus, store=self.store, channels=channels, clock=self.clock,
        )
        self.supervisor.verifier = self.verifier
        await self.verifier.start(auto=self.auto_verify)

    async def resume(self) -> ResumeDecision:
        """Pick up a payment left in durable storage by a previous page load."""
        decision = await self.store.resume(self.clock())
        if decision.action is ResumeAction.REDIRECT:
            self.order_id = decision.order_id
            self.payment = decision.payment
            self.redirect_url = settings.success_redirect_url
            await self._finish_paid()
        elif decision.action is ResumeAction.RESUME:
            self.payment_method = "pix"
            await self._start_verifier(decision.payment)
        else:
            self.redirect_url = settings.cart_redirect_url
        return decision

    async def verify(self):
        if self.verifier is None:
            raise CheckoutNotFound("No PIX payment to verify")
        return await self.verifier.verify_manually()

    async def lifecycle(self, signal: LifecycleSignal) -> RecoveryPlan:
        return await self.supervisor.handle(signal)

    async def click(self, at_ms: float) -> Optional[RecoveryPlan]:
        return await self.supervisor.click(at_ms)

    async def cancel(self):
        if self.verifier is not None:
            await self.verifier.close()
        await self._clear_stored()
        logger.info("Checkout for order %s cancelled", self.order_id)

    async def close(self):
        if self.verifier is not None:
            await self.verifier.close()

    # event handlers

    async def _on_confirmed(self, payment: PixPayment):
        self.confirmed_count += 1
        self.redirect_url = settings.success_redirect_url
        await self._finish_paid()

    async def _finish_paid(self):
        self.cart.clear()
        await self._clear_stored()

    async def _on_expired(self, payment: PixPayment):
        await self._clear_stored()
        self.redirect_url = None

    async def _clear_stored(self):
        # an abandoned session must not wipe the order that replaced it
        if self.order_id:
            await self.store.clear_order(self.order_id)
        else:
            await self.store.clear()

    def _on_notice(self, notice: Notice):
        self._notices.append((self.clock(), notice))

    # views

    @property
    def client_key(self) -> str:
        return self.store.namespace

    @property
    def state(self) -> str:
        if self.verifier is not None:
            return self.verifier.state.value
        if self.payment is not None and self.payment.paid:
            return VerifierState.PAID.value
        return VerifierState.IDLE.value

    def notices(self, now: Optional[datetime] = None) -> List[Notice]:
        now = now or self.clock()
        current = [n for at, n in self._notices if (now - at).total_seconds() < NOTICE_TTL_SECONDS]
        if self.verifier is not None and self.verifier.expired:
            current.append(Notice(level="error", blocking=True,
                                  message="The PIX payment expired. Start over to generate a new code."))
        return current

    def snapshot(self) -> CheckoutStateOut:
        verifier = self.verifier
        return CheckoutStateOut(
            order_id=self.order_id or "",
            state=self.state,
            countdown=verifier.timer.countdown() if verifier else "--:--",
            is_paid=bool(self.payment and self.payment.paid),
            is_expired=bool(verifier and verifier.expired),
            strategy=verifier.session.strategy if verifier else None,
            placeholder=bool(self.payment and self.payment.placeholder),
            redirect_url=self.redirect_url,
            payment=self.payment,
            notices=self.notices(),
        )


class CheckoutRegistry:
    """
    In-memory map of live checkout sessions by order id.

    A client (one durable storage namespace) has at most one live session.
    Sessions that reach paid or expired stay readable for ``grace_seconds``
    so the UI can pick up the final state, then they are evicted.
    """

    def __init__(self, grace_seconds: Optional[float] = None):
        self.grace_seconds = settings.session_grace_seconds if grace_seconds is None else grace_seconds
        self._sessions: Dict[str, CheckoutSession] = {}
        self._evictions = set()

    def add(self, session: CheckoutSession):
        if not session.order_id:
            return
        self._sessions[session.order_id] = session

        def evict(payload):
            self._schedule_eviction(session)

        session.bus.subscribe(CheckoutEvent.PAYMENT_CONFIRMED, evict)
        session.bus.subscribe(CheckoutEvent.PAYMENT_EXPIRED, evict)

    def find(self, order_id: str) -> Optional[CheckoutSession]:
        return self._sessions.get(order_id)

    def get(self, order_id: str) -> CheckoutSession:
        session = self.find(order_id)
        if session is None:
            raise CheckoutNotFound(f"Checkout {order_id} not found")
        return session

    def for_client(self, client_key: str) -> List[CheckoutSession]:
        return [s for s in self._sessions.values() if s.client_key == client_key]

    async def remove(self, order_id: str, session: Optional[CheckoutSession] = None) -> Optional[CheckoutSession]:
        found = self._sessions.get(order_id)
        if found is None or (session is not None and found is not session):
            return None
        del self._sessions[order_id]
        await found.close()
        return found

    async def supersede(self, client_key: str) -> int:
        """Close every live session of the client before it starts a new order."""
        previous = self.for_client(client_key)
        for session in previous:
            logger.info("Order %s superseded by a new checkout", session.order_id)
            await self.remove(session.order_id, session)
        return len(previous)

    def _schedule_eviction(self, session: CheckoutSession):
        task = asyncio.create_task(self._evict_later(session))
        self._evictions.add(task)
        task.add_done_callback(self._evictions.discard)

    async def _evict_later(self, session: CheckoutSession):
        await asyncio.sleep(self.grace_seconds)
        if await self.remove(session.order_id, session) is not None:
            logger.debug("Evicted finished checkout %s", session.order_id)

    async def close_all(self):
        for task in list(self._evictions):
            task.cancel()
        for order_id in list(self._sessions):
            await self.remove(order_id)

    def items(self) -> List[Tuple[str, CheckoutSession]]:
        return list(self._sessions.items())
