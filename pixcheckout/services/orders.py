import logging
from typing import Optional
from ..errors import CustomerValidationError, OrderCreationError, ShopApiError, ShopApiTimeout
from ..formatting import is_valid_cpf_format, is_valid_email
from ..schemas import Cart, Customer
from .shop_api import ShopApiClient

logger = logging.getLogger(__name__)

PAYMENT_METHODS = ("pix", "card")


def validate_checkout(cart: Cart, customer: Customer, payment_method: str):
    """Raise CustomerValidationError for the first invalid field."""
    if not customer.first_name.strip() or not customer.last_name.strip():
        raise CustomerValidationError("name", "First name and last name are required")
    if not is_valid_email(customer.email.strip()):
        raise CustomerValidationError("email", "Invalid email")
    if not is_valid_cpf_format(customer.cpf):
        raise CustomerValidationError("cpf", "Invalid CPF")
    if cart.is_empty:
        raise CustomerValidationError("cart", "Cart is empty")
    if payment_method not in PAYMENT_METHODS:
        raise CustomerValidationError("payment_method", f"Unsupported payment method: {payment_method}")


def build_order_payload(cart: Cart, customer: Customer, payment_method: str) -> dict:
    customer_data = {
        "firstName": customer.first_name.strip(),
        "lastName": customer.last_name.strip(),
        "email": customer.email.strip(),
        "cpf": customer.cpf,
    }
    if customer.phone:
        customer_data["phone"] = customer.phone

    payload = {
        "items": [
            {
                "productId": item.product_id,
                "variantId": item.variant_id,
                "quantity": item.quantity,
                "price": item.price,
            }
            for item in cart.items
        ],
        "paymentMethod": payment_method,
        "customer": customer_data,
    }
    if cart.coupon and cart.coupon.discount_amount > 0:
        payload["coupon"] = {"code": cart.coupon.code, "discountAmount": cart.coupon.discount_amount}
    return payload


async def create_order(api: ShopApiClient, cart: Cart, customer: Customer, payment_method: str = "pix") -> str:
    """Validate locally, create the order remotely and return its id."""
    validate_checkout(cart, customer, payment_method)

    try:
        data = await api.create_order(build_order_payload(cart, customer, payment_method))
    except ShopApiTimeout as e:
        logger.warning("Order creation timed out")
        raise OrderCreationError("Order creation timed out, please try again", timed_out=True) from e
    except ShopApiError as e:
        logger.error("Order creation failed: %s", e.message)
        raise OrderCreationError(e.message) from e

    order_id = data.get("orderId")
    if not order_id:
        raise OrderCreationError("Order created without an identifier")
    order_id = str(order_id)
    logger.info("Order %s created (%s, %d items)", order_id, payment_method, len(cart.items))

    if cart.coupon and cart.coupon.discount_amount > 0:
        await _register_coupon_use(api, cart.coupon.code, order_id)
    return order_id


async def _register_coupon_use(api: ShopApiClient, coupon_code: str, order_id: str) -> Optional[dict]:
    # coupon bookkeeping must never fail the order
    try:
        return await api.register_coupon_use(coupon_code, order_id)
    except ShopApiError as e:
        logger.warning("Could not register use of coupon %s for order %s: %s", coupon_code, order_id, e.message)
        return None
