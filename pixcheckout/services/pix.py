import base64
import io
import logging
from datetime import timedelta
from functools import lru_cache
from typing import Optional

import qrcode
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from ..config import settings
from ..errors import ShopApiError
from ..schemas import Cart, Customer, PixPayment
from ..storage import PaymentStore
from ..timer import Clock, parse_expiration, utcnow
from .shop_api import ShopApiClient

logger = logging.getLogger(__name__)

# Non-functional stand-in shown when the backend cannot produce a real charge.
PLACEHOLDER_PIX_CODE = (
    "00020126580014BR.GOV.BCB.PIX0136"
    "00000000-0000-0000-0000-000000000000"
    "5204000053039865802BR5909PLACEHOLD6009SAO PAULO62070503***6304ABCD"
)


@lru_cache(maxsize=1)
def placeholder_qr_base64() -> str:
    qr = qrcode.QRCode(box_size=10, border=4)
    qr.add_data(PLACEHOLDER_PIX_CODE)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")

    buffered = io.BytesIO()
    img.save(buffered, format="PNG")
    return base64.b64encode(buffered.getvalue()).decode("ascii")


def build_placeholder_payment(order_id: str, amount: float, clock: Clock = utcnow,
                              ttl_minutes: Optional[int] = None) -> PixPayment:
    ttl = ttl_minutes if ttl_minutes is not None else settings.placeholder_ttl_minutes
    return PixPayment(
        order_id=order_id,
        payment_id=None,
        pix_copia_e_cola=PLACEHOLDER_PIX_CODE,
        qr_code_base64=placeholder_qr_base64(),
        expires_at=(clock() + timedelta(minutes=ttl)).isoformat(),
        total=amount,
        placeholder=True,
    )


def payment_from_response(order_id: str, data: dict, fallback_amount: float) -> Optional[PixPayment]:
    """Build a PixPayment from the backend payload, or None if it is unusable."""
    if data.get("success") is False:
        return None
    code = data.get("pixCopiaECola")
    qr_base64 = data.get("qrCodeBase64")
    qr_url = data.get("qrCodeUrl")
    expires_at = data.get("expiresAt")
    if not code or not (qr_base64 or qr_url) or parse_expiration(expires_at) is None:
        return None

    total = data.get("total", data.get("amount"))
    try:
        total = float(total) if total is not None else fallback_amount
    except (TypeError, ValueError):
        total = fallback_amount

    try:
        return PixPayment(
            order_id=order_id,
            payment_id=str(data["paymentId"]) if data.get("paymentId") is not None else None,
            pix_copia_e_cola=code,
            qr_code_base64=qr_base64,
            qr_code_url=qr_url,
            expires_at=str(expires_at),
            total=total,
        )
    except ValidationError as e:
        logger.warning("Malformed PIX payload for order %s: %d invalid fields", order_id, e.error_count())
        return None


def build_payment_request(order_id: str, cart: Cart, customer: Customer) -> dict:
    return {
        "order_id": order_id,
        "transaction_amount": cart.subtotal,
        "email": customer.email.strip(),
        "cpf": customer.cpf_digits,
        "first_name": customer.first_name.strip(),
        "last_name": customer.last_name.strip(),
        "reference_id": f"order_{order_id}",
    }


async def generate_pix_payment(api: ShopApiClient,
                               store: PaymentStore,
                               order_id: str,
                               cart: Cart,
                               customer: Customer,
                               clock: Clock = utcnow,
                               ) -> PixPayment:
    """
    Produce exactly one PixPayment for the order and persist it.

    A failed call or an incomplete payload yields a placeholder artifact so the
    checkout can still move on to the payment step.
    """
    payment = None
    try:
        data = await api.generate_pix(build_payment_request(order_id, cart, customer))
        payment = payment_from_response(order_id, data, cart.subtotal)
        if payment is None:
            logger.warning("Incomplete PIX payload for order %s, using placeholder", order_id)
    except ShopApiError as e:
        logger.warning("PIX generation failed for order %s (%s), using placeholder", order_id, e.message)

    if payment is None:
        payment = build_placeholder_payment(order_id, cart.subtotal, clock=clock)

    # a new artifact supersedes whatever was stored before
    try:
        await store.save(payment)
    except SQLAlchemyError:
        logger.exception("Could not persist PIX payment for order %s", order_id)
    logger.info("PIX payment ready for order %s (placeholder=%s)", order_id, payment.placeholder)
    return payment
