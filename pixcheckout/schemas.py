from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional

class CartItem(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    name: Optional[str] = None
    quantity: int = Field(1, ge=1)
    price: float = Field(..., ge=0, description="Unit price in BRL")

class Coupon(BaseModel):
    code: str
    discount_amount: float = 0.0

class Cart(BaseModel):
    items: List[CartItem] = Field(default_factory=list)
    coupon: Optional[Coupon] = None

    @property
    def is_empty(self) -> bool:
        return not self.items

    @property
    def subtotal(self) -> float:
        total = sum(item.price * item.quantity for item in self.items)
        if self.coupon and self.coupon.discount_amount > 0:
            total -= self.coupon.discount_amount
        return round(max(total, 0.0), 2)

    def clear(self):
        self.items = []
        self.coupon = None

class Customer(BaseModel):
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    cpf: str = ""
    phone: Optional[str] = None

    @property
    def cpf_digits(self) -> str:
        return "".join(ch for ch in self.cpf if ch.isdigit())

class PixPayment(BaseModel):
    """PIX artifact as stored and handed to the UI (camelCase on the wire)."""
    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(..., alias="orderId")
    payment_id: Optional[str] = Field(default=None, alias="paymentId")
    pix_copia_e_cola: Optional[str] = Field(default=None, alias="pixCopiaECola")
    qr_code_base64: Optional[str] = Field(default=None, alias="qrCodeBase64")
    qr_code_url: Optional[str] = Field(default=None, alias="qrCodeUrl")
    expires_at: Optional[str] = Field(default=None, alias="expiresAt")
    total: float = 0.0
    paid: bool = False
    placeholder: bool = False

class StatusResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    is_paid: bool = Field(default=False, alias="isPaid")
    is_expired: bool = Field(default=False, alias="isExpired")
    status: Optional[str] = None
    payment_status: Optional[str] = Field(default=None, alias="paymentStatus")
    wait_time: Optional[float] = Field(default=None, alias="waitTime")

    @property
    def paid(self) -> bool:
        return self.is_paid or (self.status or "").lower() in ("approved", "paid")

    @property
    def expired(self) -> bool:
        return self.is_expired or (self.status or "").lower() == "expired"

class Notice(BaseModel):
    level: str = "info"  # info, success, warning, error
    message: str
    blocking: bool = False

# HTTP surface

class CheckoutIn(BaseModel):
    cart: Cart
    customer: Customer
    payment_method: str = "pix"

class CheckoutOut(BaseModel):
    order_id: str
    payment_method: str
    payment: Optional[PixPayment] = None
    checkout_url: Optional[str] = None

class CheckoutStateOut(BaseModel):
    order_id: str
    state: str
    countdown: str
    is_paid: bool
    is_expired: bool
    strategy: Optional[str] = None
    placeholder: bool = False
    redirect_url: Optional[str] = None
    payment: Optional[PixPayment] = None
    notices: List[Notice] = Field(default_factory=list)

class VerifyOut(BaseModel):
    state: str
    notice: Optional[Notice] = None

class LifecycleIn(BaseModel):
    signal: str  # visible, hidden, page_restored, focus

class ResumeOut(BaseModel):
    action: str  # none, resume, redirect
    redirect_url: Optional[str] = None
    order_id: Optional[str] = None
    payment: Optional[PixPayment] = None

class ClickIn(BaseModel):
    at_ms: float = Field(..., description="Client timestamp of the click in milliseconds")

class RecoveryOut(BaseModel):
    reset_check: bool = False
    revive_channel: bool = False
    clear_overlay: bool = False
    overlay_visible: bool = False
