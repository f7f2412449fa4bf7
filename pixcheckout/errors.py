from typing import Optional


class CheckoutError(Exception):
    """Base class for every error the checkout flow surfaces to the user."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class CustomerValidationError(CheckoutError):
    """Bad customer input, caught before any network call."""

    def __init__(self, field: str, message: str):
        super().__init__(message)
        self.field = field


class ShopApiError(CheckoutError):
    """Non-success response or malformed body from the shop backend."""

    def __init__(self, message: str, status_code: Optional[int] = None, payload: Optional[dict] = None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload or {}


class ShopApiTimeout(ShopApiError):
    pass


class OrderCreationError(CheckoutError):
    def __init__(self, message: str, timed_out: bool = False):
        super().__init__(message)
        self.timed_out = timed_out


class CardCheckoutError(CheckoutError):
    pass


class CheckoutNotFound(CheckoutError):
    pass
