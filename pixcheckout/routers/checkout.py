from fastapi import APIRouter, Depends, Header, HTTPException
from typing import Optional
from ..checkout import CheckoutRegistry, CheckoutSession
from ..db import async_session
from ..errors import CheckoutError
from ..recovery import LifecycleSignal, RecoveryPlan
from ..schemas import (
    CheckoutIn,
    CheckoutOut,
    CheckoutStateOut,
    ClickIn,
    LifecycleIn,
    RecoveryOut,
    ResumeOut,
    VerifyOut,
)
from ..services.shop_api import ShopApiClient
from ..storage import PaymentStore
from ..utils import require_service_api_key, to_http_error

router = APIRouter(prefix="/checkout", tags=["checkout"], dependencies=[Depends(require_service_api_key)])

registry = CheckoutRegistry()

def get_registry() -> CheckoutRegistry:
    return registry

def get_shop_api() -> ShopApiClient:
    return ShopApiClient()

def get_store(x_client_id: Optional[str] = Header(default=None)) -> PaymentStore:
    # one durable slot per browser, like localStorage
    return PaymentStore(async_session, namespace=f"{x_client_id}:" if x_client_id else "")

def _recovery_out(plan: Optional[RecoveryPlan]) -> RecoveryOut:
    if plan is None:
        return RecoveryOut()
    return RecoveryOut(
        reset_check=plan.reset_check,
        revive_channel=plan.revive_channel,
        clear_overlay=plan.clear_overlay,
        overlay_visible=plan.state.overlay_visible,
    )

@router.post("/orders", response_model=CheckoutOut)
async def create_checkout(payload: CheckoutIn,
                          api: ShopApiClient = Depends(get_shop_api),
                          store: PaymentStore = Depends(get_store),
                          sessions: CheckoutRegistry = Depends(get_registry)):
    """Create the order and produce its PIX payment (or card checkout URL)."""
    # a new order supersedes whatever this client was still paying for
    await sessions.supersede(store.namespace)
    session = CheckoutSession(api, store, cart=payload.cart, customer=payload.customer)
    try:
        order_id = await session.submit(payload.payment_method)
    except CheckoutError as e:
        await session.close()
        raise to_http_error(e)

    if session.payment_method == "pix":
        sessions.add(session)
    return CheckoutOut(
        order_id=order_id,
        payment_method=session.payment_method,
        payment=session.payment,
        checkout_url=session.checkout_url,
    )

@router.post("/resume", response_model=ResumeOut)
async def resume_checkout(api: ShopApiClient = Depends(get_shop_api),
                          store: PaymentStore = Depends(get_store),
                          sessions: CheckoutRegistry = Depends(get_registry)):
    """Resume whatever payment durable storage still holds."""
    session = CheckoutSession(api, store)
    decision = await session.resume()
    if session.verifier is not None:
        previous = sessions.find(session.order_id)
        if previous is not None:
            # the live session wins, the resumed copy is dropped
            await session.close()
            session = previous
        else:
            sessions.add(session)
    return ResumeOut(
        action=decision.action.value,
        redirect_url=session.redirect_url,
        order_id=decision.order_id,
        payment=decision.payment,
    )

@router.get("/{order_id}", response_model=CheckoutStateOut)
async def checkout_state(order_id: str, sessions: CheckoutRegistry = Depends(get_registry)):
    try:
        return sessions.get(order_id).snapshot()
    except CheckoutError as e:
        raise to_http_error(e)

@router.post("/{order_id}/verify", response_model=VerifyOut)
async def verify_payment(order_id: str, sessions: CheckoutRegistry = Depends(get_registry)):
    """Manual 'I already paid' check. Ignored while another check is running."""
    try:
        outcome = await sessions.get(order_id).verify()
    except CheckoutError as e:
        raise to_http_error(e)
    return VerifyOut(state=outcome.state.value, notice=outcome.notice)

@router.post("/{order_id}/lifecycle", response_model=RecoveryOut)
async def lifecycle_signal(order_id: str, payload: LifecycleIn, sessions: CheckoutRegistry = Depends(get_registry)):
    try:
        signal = LifecycleSignal(payload.signal)
    except ValueError:
        raise HTTPException(status_code=422, detail=f"Unknown lifecycle signal: {payload.signal}")
    try:
        plan = await sessions.get(order_id).lifecycle(signal)
    except CheckoutError as e:
        raise to_http_error(e)
    return _recovery_out(plan)

@router.post("/{order_id}/clicks", response_model=RecoveryOut)
async def report_click(order_id: str, payload: ClickIn, sessions: CheckoutRegistry = Depends(get_registry)):
    try:
        plan = await sessions.get(order_id).click(payload.at_ms)
    except CheckoutError as e:
        raise to_http_error(e)
    return _recovery_out(plan)

@router.delete("/{order_id}")
async def cancel_checkout(order_id: str, sessions: CheckoutRegistry = Depends(get_registry)):
    try:
        session = sessions.get(order_id)
    except CheckoutError as e:
        raise to_http_error(e)
    await session.cancel()
    await sessions.remove(order_id)
    return {"status": "cancelled"}
