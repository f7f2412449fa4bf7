import logging
import httpx
from typing import Optional
from ..config import settings
from ..errors import ShopApiError, ShopApiTimeout
from ..schemas import StatusResult

logger = logging.getLogger(__name__)


class ShopApiClient:
    """Thin async client for the shop backend endpoints the checkout consumes."""

    def __init__(self,
                 base_url: Optional[str] = None,
                 api_key: Optional[str] = None,
                 timeout: Optional[float] = None,
                 status_timeout: Optional[float] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 ):
        self.base_url = (base_url or settings.shop_api_base).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.request_timeout
        self.status_timeout = status_timeout if status_timeout is not None else settings.status_timeout
        self.headers = {"Content-Type": "application/json"}
        api_key = api_key if api_key is not None else settings.shop_api_key
        if api_key:
            self.headers["Authorization"] = f"Bearer {api_key}"
        self._transport = transport

    async def _post(self, path: str, payload: dict, timeout: float) -> dict:
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                resp = await client.post(url, json=payload, headers=self.headers.copy())
        except httpx.TimeoutException as e:
            raise ShopApiTimeout(f"Request to {path} timed out") from e
        except httpx.HTTPError as e:
            raise ShopApiError(f"Request to {path} failed: {e}") from e

        try:
            data = resp.json()
        except ValueError:
            data = None

        if resp.is_error:
            body = data if isinstance(data, dict) else {}
            message = body.get("error") or body.get("message") or f"HTTP {resp.status_code} from {path}"
            raise ShopApiError(message, status_code=resp.status_code, payload=body)
        if not isinstance(data, dict):
            raise ShopApiError(f"Malformed response from {path}", status_code=resp.status_code)
        return data

    async def create_order(self, payload: dict) -> dict:
        return await self._post("/orders/create", payload, self.timeout)

    async def register_coupon_use(self, coupon_code: str, order_id: str) -> dict:
        return await self._post("/coupons/use", {"couponCode": coupon_code, "orderId": order_id}, self.timeout)

    async def generate_pix(self, payload: dict) -> dict:
        return await self._post("/payment/pix", payload, self.timeout)

    async def create_card_checkout(self, payload: dict) -> dict:
        return await self._post("/payment/card", payload, self.timeout)

    async def check_status(self, order_id: str, payment_id: Optional[str] = None) -> StatusResult:
        data = await self._post(
            "/payment/check-status",
            {"orderId": order_id, "paymentId": payment_id or ""},
            self.status_timeout,
        )
        return StatusResult.model_validate(data)
