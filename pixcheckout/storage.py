"""
Durable storage for the in-flight PIX payment.

The payment artifact and the owning order id live under two fixed keys and
are always cleared together.
"""
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from pydantic import ValidationError
from sqlmodel import select

from .models import StoredRecord
from .schemas import PixPayment
from .timer import seconds_until, utcnow

logger = logging.getLogger(__name__)

PIX_PAYMENT_KEY = "pixPaymentData"
ORDER_ID_KEY = "createdOrderId"


class ResumeAction(str, Enum):
    NONE = "none"
    RESUME = "resume"
    REDIRECT = "redirect"


@dataclass
class ResumeDecision:
    action: ResumeAction
    order_id: Optional[str] = None
    payment: Optional[PixPayment] = None


class PaymentStore:
    def __init__(self, session_factory: Callable, namespace: str = ""):
        self.session_factory = session_factory
        self.namespace = namespace

    def _key(self, name: str) -> str:
        return f"{self.namespace}{name}"

    async def _put(self, session, key: str, value: str):
        found = await session.get(StoredRecord, key)
        if found:
            found.value = value
            found.updated_at = datetime.now(timezone.utc)
            session.add(found)
        else:
            session.add(StoredRecord(key=key, value=value))

    async def save(self, payment: PixPayment):
        """Store the payment and its order id, superseding whatever was there."""
        async with self.session_factory() as session:
            await self._put(session, self._key(PIX_PAYMENT_KEY), payment.model_dump_json(by_alias=True))
            await self._put(session, self._key(ORDER_ID_KEY), payment.order_id)
            await session.commit()

    async def remember_order(self, order_id: str):
        """Store only the order id (card checkouts have no PIX artifact)."""
        async with self.session_factory() as session:
            found = await session.get(StoredRecord, self._key(PIX_PAYMENT_KEY))
            if found:
                await session.delete(found)
            await self._put(session, self._key(ORDER_ID_KEY), order_id)
            await session.commit()

    async def load(self):
        """Return (order_id, payment) as stored, without any expiry check."""
        async with self.session_factory() as session:
            q = select(StoredRecord).where(
                StoredRecord.key.in_([self._key(PIX_PAYMENT_KEY), self._key(ORDER_ID_KEY)])
            )
            res = await session.exec(q)
            records = {r.key: r.value for r in res.all()}

        order_id = records.get(self._key(ORDER_ID_KEY))
        raw = records.get(self._key(PIX_PAYMENT_KEY))
        if raw is None:
            return order_id, None
        try:
            payment = PixPayment.model_validate(json.loads(raw))
        except (ValueError, ValidationError):
            logger.warning("Stored PIX payment is unreadable, discarding it")
            await self.clear()
            return None, None
        return order_id, payment

    async def clear(self):
        async with self.session_factory() as session:
            for name in (PIX_PAYMENT_KEY, ORDER_ID_KEY):
                found = await session.get(StoredRecord, self._key(name))
                if found:
                    await session.delete(found)
            await session.commit()

    async def current_order(self) -> Optional[str]:
        async with self.session_factory() as session:
            found = await session.get(StoredRecord, self._key(ORDER_ID_KEY))
            return found.value if found else None

    async def update(self, payment: PixPayment) -> bool:
        """Rewrite the stored payment only while it still belongs to its order."""
        if await self.current_order() != payment.order_id:
            logger.info("Stored state moved on from order %s, not updating it", payment.order_id)
            return False
        await self.save(payment)
        return True

    async def clear_order(self, order_id: str) -> bool:
        """Clear stored state unless a newer order has taken the slot."""
        stored = await self.current_order()
        if stored is not None and stored != order_id:
            logger.info("Stored state belongs to order %s, leaving it in place for %s", stored, order_id)
            return False
        await self.clear()
        return True

    async def resume(self, now: Optional[datetime] = None) -> ResumeDecision:
        """Decide what a freshly mounted checkout should do with stored state."""
        now = now or utcnow()
        order_id, payment = await self.load()
        if payment is None or not order_id:
            return ResumeDecision(ResumeAction.NONE)
        if payment.order_id != order_id:
            logger.warning("Stored order id %s does not match payment order %s, discarding", order_id, payment.order_id)
            await self.clear()
            return ResumeDecision(ResumeAction.NONE)

        if payment.paid:
            return ResumeDecision(ResumeAction.REDIRECT, order_id=order_id, payment=payment)

        remaining = seconds_until(payment.expires_at, now)
        if remaining is not None and remaining <= 0:
            logger.info("Stored PIX payment for order %s already expired, discarding", order_id)
            await self.clear()
            return ResumeDecision(ResumeAction.NONE)

        return ResumeDecision(ResumeAction.RESUME, order_id=order_id, payment=payment)
