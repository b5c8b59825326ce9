"""Concurrency and refund edge cases of the order workflow, driven directly."""

import asyncio
from decimal import Decimal

import httpx
import pytest

from conftest import PAYMENTS_URL, USERS_URL
from services.order.app.aggregate import CANCELLED, PAID, PENDING
from services.order.app.commands import REFUND_PROCESSED, OrderFulfillment
from services.order.app.store import InMemoryOrderStore
from services.shared.dependency import DependencyCaller
from services.shared.errors import ConflictError


@pytest.fixture
def store():
    return InMemoryOrderStore()


@pytest.fixture
def fulfillment(mesh, store):
    caller = DependencyCaller(mesh.client())
    return OrderFulfillment(
        store,
        caller,
        caller,
        user_service_url=USERS_URL,
        payment_service_url=PAYMENTS_URL,
        user_timeout=1,
        payment_timeout=1,
        refund_timeout=1,
    )


async def pending_order(store):
    return await store.insert(
        user_id=1, user={"id": 1}, product="Book", amount=Decimal("20.00")
    )


class TestConcurrentPay:
    @pytest.mark.asyncio
    async def test_only_one_of_two_concurrent_pays_wins(self, fulfillment, store, mesh):
        order = await pending_order(store)

        async def charge(request):
            await asyncio.sleep(0.01)
            return {"transactionId": "txn_1"}

        mesh.on("POST", f"{PAYMENTS_URL}/pay", charge)

        results = await asyncio.gather(
            fulfillment.pay(order.id), fulfillment.pay(order.id), return_exceptions=True
        )

        errors = [r for r in results if isinstance(r, ConflictError)]
        wins = [r for r in results if not isinstance(r, BaseException)]
        assert len(wins) == 1
        assert len(errors) == 1
        assert errors[0].message == "Order already paid"
        assert (await store.get(order.id)).status == PAID
        assert mesh.calls_to("POST", f"{PAYMENTS_URL}/refund") == []

    @pytest.mark.asyncio
    async def test_cancel_during_charge_refunds_the_payment(self, fulfillment, store, mesh):
        order = await pending_order(store)
        charging = asyncio.Event()
        release = asyncio.Event()

        async def charge(request):
            charging.set()
            await release.wait()
            return {"transactionId": "txn_9"}

        mesh.on("POST", f"{PAYMENTS_URL}/pay", charge)
        mesh.on("POST", f"{PAYMENTS_URL}/refund", lambda r: {"refundId": "ref_9"})

        paying = asyncio.create_task(fulfillment.pay(order.id))
        await charging.wait()
        cancelled, refund = await fulfillment.cancel(order.id)
        release.set()

        with pytest.raises(ConflictError) as excinfo:
            await paying

        assert excinfo.value.message == "Cannot pay a cancelled order"
        assert cancelled.status == CANCELLED
        assert (await store.get(order.id)).status == CANCELLED
        assert mesh.calls_to("POST", f"{PAYMENTS_URL}/refund")[0]["json"] == {
            "transactionId": "txn_9",
            "amount": 20.0,
            "reason": "order_cancelled_during_payment",
        }


class StaleStore(InMemoryOrderStore):
    """Loses every cancel to a concurrent writer."""

    async def transition(self, order_id, expected, new, **changes):
        if new == CANCELLED:
            return None
        return await super().transition(order_id, expected, new, **changes)


class TestCancel:
    @pytest.mark.asyncio
    async def test_lost_cancel_race_is_a_conflict(self, mesh):
        store = StaleStore()
        caller = DependencyCaller(mesh.client())
        fulfillment = OrderFulfillment(
            store,
            caller,
            caller,
            user_service_url=USERS_URL,
            payment_service_url=PAYMENTS_URL,
            user_timeout=1,
            payment_timeout=1,
            refund_timeout=1,
        )
        order = await pending_order(store)

        with pytest.raises(ConflictError) as excinfo:
            await fulfillment.cancel(order.id)

        assert excinfo.value.message == "Order was modified concurrently, please retry"
        assert (await store.get(order.id)).status == PENDING

    @pytest.mark.asyncio
    async def test_refund_with_empty_success_body_counts_as_processed(
        self, fulfillment, store, mesh
    ):
        order = await pending_order(store)
        await store.transition(
            order.id, PENDING, PAID, payment_details={"transactionId": "txn_1"}
        )
        mesh.on("POST", f"{PAYMENTS_URL}/refund", lambda r: httpx.Response(204))

        cancelled, refund = await fulfillment.cancel(order.id)

        assert refund == REFUND_PROCESSED
        assert cancelled.status == CANCELLED


class TestOrderStore:
    @pytest.mark.asyncio
    async def test_list_orders_newest_first_with_paging(self, store):
        for _ in range(3):
            await pending_order(store)

        page, total = await store.list_orders(limit=2)

        assert total == 3
        assert [o.id for o in page] == [3, 2]
        assert [o.id for o in await store.all()] == [1, 2, 3]
