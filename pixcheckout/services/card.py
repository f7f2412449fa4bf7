import logging
from ..errors import CardCheckoutError, ShopApiError, ShopApiTimeout
from ..schemas import Cart, Customer
from .pix import build_payment_request
from .shop_api import ShopApiClient

logger = logging.getLogger(__name__)


async def start_card_checkout(api: ShopApiClient, order_id: str, cart: Cart, customer: Customer) -> str:
    """
    Ask the backend for a hosted card checkout and return its URL.

    Unlike PIX there is no placeholder: the user is redirected to the provider,
    so a failure here has to be shown to them.
    """
    try:
        data = await api.create_card_checkout(build_payment_request(order_id, cart, customer))
    except ShopApiTimeout as e:
        raise CardCheckoutError("Card checkout timed out, please try again") from e
    except ShopApiError as e:
        raise CardCheckoutError(e.message) from e

    checkout_url = data.get("checkoutUrl")
    if not checkout_url or not data.get("preferenceId"):
        raise CardCheckoutError("Incomplete card checkout information")

    logger.info("Card checkout for order %s ready (preference %s)", order_id, data.get("preferenceId"))
    return checkout_url
