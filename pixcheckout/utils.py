from fastapi import Header, HTTPException
from typing import Optional
from .config import settings
from .errors import (
    CardCheckoutError,
    CheckoutError,
    CheckoutNotFound,
    CustomerValidationError,
    OrderCreationError,
)

def require_service_api_key(x_api_key: Optional[str] = Header(default=None)):
    if x_api_key != settings.service_api_key:
        raise HTTPException(status_code=401, detail="Invalid X-API-KEY")
    return True

def to_http_error(error: CheckoutError) -> HTTPException:
    if isinstance(error, CustomerValidationError):
        return HTTPException(status_code=422, detail={"field": error.field, "message": error.message})
    if isinstance(error, OrderCreationError):
        return HTTPException(status_code=504 if error.timed_out else 502, detail=error.message)
    if isinstance(error, CardCheckoutError):
        return HTTPException(status_code=502, detail=error.message)
    if isinstance(error, CheckoutNotFound):
        return HTTPException(status_code=404, detail=error.message)
    return HTTPException(status_code=400, detail=error.message)
