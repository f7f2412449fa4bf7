from datetime import timedelta

from pixcheckout.models import StoredRecord
from pixcheckout.storage import ORDER_ID_KEY, PIX_PAYMENT_KEY, ResumeAction

from conftest import T0


async def test_round_trip_uses_fixed_keys(store, payment):
    await store.save(payment)

    async with store.session_factory() as session:
        raw = await session.get(StoredRecord, PIX_PAYMENT_KEY)
        order = await session.get(StoredRecord, ORDER_ID_KEY)
    assert '"pixCopiaECola"' in raw.value
    assert order.value == "ord-1"

    order_id, stored = await store.load()
    assert order_id == "ord-1"
    assert stored == payment


async def test_active_payment_is_resumed(store, payment):
    await store.save(payment)

    decision = await store.resume(T0 + timedelta(minutes=10))

    assert decision.action is ResumeAction.RESUME
    assert decision.payment.expires_at == payment.expires_at


async def test_expired_payment_is_discarded(store, payment):
    await store.save(payment)

    decision = await store.resume(T0 + timedelta(minutes=31))

    assert decision.action is ResumeAction.NONE
    assert await store.load() == (None, None)


async def test_paid_payment_routes_to_destination_even_if_expired(store, payment):
    payment.paid = True
    await store.save(payment)

    decision = await store.resume(T0 + timedelta(hours=2))

    assert decision.action is ResumeAction.REDIRECT
    assert decision.payment.paid


async def test_unreadable_record_is_cleared(store):
    async with store.session_factory() as session:
        session.add(StoredRecord(key=PIX_PAYMENT_KEY, value="{not json"))
        session.add(StoredRecord(key=ORDER_ID_KEY, value="ord-1"))
        await session.commit()

    decision = await store.resume(T0)

    assert decision.action is ResumeAction.NONE
    async with store.session_factory() as session:
        assert await session.get(StoredRecord, ORDER_ID_KEY) is None


async def test_nothing_stored(store):
    decision = await store.resume(T0)
    assert decision.action is ResumeAction.NONE


async def test_order_id_only_is_not_resumed(store):
    await store.remember_order("ord-card")
    order_id, stored = await store.load()
    assert order_id == "ord-card"
    assert stored is None
    assert (await store.resume(T0)).action is ResumeAction.NONE


async def test_clear_removes_both_keys(store, payment):
    await store.save(payment)
    await store.clear()
    assert await store.load() == (None, None)


async def test_namespaces_are_isolated(store, payment):
    from pixcheckout.storage import PaymentStore

    other = PaymentStore(store.session_factory, namespace="browser-2:")
    await store.save(payment)

    assert await other.load() == (None, None)


async def test_clear_order_leaves_a_newer_order_alone(store, payment):
    newer = payment.model_copy(update={"order_id": "ord-2"})
    await store.save(newer)

    assert not await store.clear_order("ord-1")
    assert (await store.load())[0] == "ord-2"

    assert await store.clear_order("ord-2")
    assert await store.load() == (None, None)


async def test_update_only_touches_its_own_order(store, payment):
    await store.save(payment.model_copy(update={"order_id": "ord-2"}))
    payment.paid = True

    assert not await store.update(payment)
    _, stored = await store.load()
    assert stored.order_id == "ord-2"
    assert not stored.paid
