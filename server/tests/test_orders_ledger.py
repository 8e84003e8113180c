"""
Tests for the order ledger: running totals, transactional writes and
status rules.
"""

from datetime import date
from decimal import Decimal

import pytest

from storefront.errors import (
    InvalidReferenceError,
    NotFoundError,
    OrderNotModifiableError,
    StorageError,
    ValidationError,
)
from storefront.db import atomic
from storefront.models import OrderPatch, OrderStatus
from storefront.services.orders import OrderLedger, parse_date_bound


def _items_sum(db, order_id):
    return Decimal(str(db.scalar(
        "SELECT COALESCE(SUM(quantity * unit_price), 0) FROM order_items WHERE order_id = ?", order_id
    ))).quantize(Decimal("0.01"))


def _stored_total(db, order_id):
    return Decimal(str(db.scalar("SELECT total_price FROM orders WHERE id = ?", order_id))).quantize(
        Decimal("0.01")
    )


class FakePublisher:
    def __init__(self, fail=False):
        self.events = []
        self.fail = fail

    async def publish_order_created(self, event):
        if self.fail:
            raise RuntimeError("topic unavailable")
        self.events.append(event)


class TestCreateOrder:
    def test_total_is_sum_of_line_totals(self, db, run):
        ledger = OrderLedger(db)
        created = run(ledger.create_order(
            1, "Alice", "Paris",
            [
                {"product_id": 5, "quantity": 2, "unit_price": "15.99"},
                {"product_id": 7, "quantity": 1, "unit_price": "9.01"},
            ],
        ))

        assert created.total_price == Decimal("40.99")
        assert db.count("orders") == 1
        assert db.count("order_items", "order_id = ?", created.order_id) == 2
        assert _stored_total(db, created.order_id) == _items_sum(db, created.order_id)

    def test_defaults_to_pending(self, db, run):
        ledger = OrderLedger(db)
        created = run(ledger.create_order(1, "Alice", None, []))

        order = run(ledger.get_order_by_id(created.order_id))
        assert order.order_status == OrderStatus.PENDING
        assert order.total_price == Decimal("0.00")
        assert order.items == []

    def test_explicit_total_is_kept(self, db, run):
        ledger = OrderLedger(db)
        created = run(ledger.create_order(
            1, "Alice", None,
            [{"product_id": 5, "quantity": 2, "unit_price": "15.99"}],
            total_price=Decimal("25.00"),
        ))

        assert created.total_price == Decimal("25.00")
        assert _stored_total(db, created.order_id) == Decimal("25.00")

    def test_explicit_zero_total_is_kept(self, db, run):
        ledger = OrderLedger(db)
        created = run(ledger.create_order(
            1, "Alice", None,
            [{"product_id": 9, "quantity": 1, "unit_price": "10.00"}],
            total_price=0,
        ))

        assert created.total_price == Decimal("0.00")
        assert _stored_total(db, created.order_id) == Decimal("0.00")

    def test_invalid_product_rolls_back_everything(self, db, run):
        ledger = OrderLedger(db)
        with pytest.raises(InvalidReferenceError):
            run(ledger.create_order(
                1, "Alice", None,
                [
                    {"product_id": 5, "quantity": 1, "unit_price": "15.99"},
                    {"product_id": 404, "quantity": 1, "unit_price": "1.00"},
                ],
            ))

        assert db.count("orders") == 0
        assert db.count("order_items") == 0

    def test_unknown_user_is_invalid_reference(self, db, run):
        ledger = OrderLedger(db)
        with pytest.raises(InvalidReferenceError):
            run(ledger.create_order(99, "Ghost", None, []))
        assert db.count("orders") == 0

    def test_items_validated_before_any_write(self, db, run):
        ledger = OrderLedger(db)
        with pytest.raises(ValidationError):
            run(ledger.create_order(
                1, "Alice", None,
                [{"product_id": 5, "quantity": 0, "unit_price": "15.99"}],
            ))
        assert db.statements == []

    def test_status_can_be_given(self, db, run):
        ledger = OrderLedger(db)
        created = run(ledger.create_order(1, "Alice", None, [], order_status="confirmed"))
        assert run(ledger.get_order_by_id(created.order_id)).order_status == OrderStatus.CONFIRMED

    def test_publishes_order_created_event(self, db):
        import asyncio

        publisher = FakePublisher()
        ledger = OrderLedger(db, publisher=publisher)

        async def scenario():
            created = await ledger.create_order(
                1, "Alice", "Paris", [{"product_id": 9, "quantity": 2, "unit_price": "10.00"}]
            )
            await ledger.drain_events()
            return created

        created = asyncio.run(scenario())
        assert len(publisher.events) == 1
        event = publisher.events[0]
        assert event["orderId"] == created.order_id
        assert event["eventType"] == "ORDER_CREATED"
        assert event["totalPrice"] == 20.0
        assert event["orderStatus"] == "pending"

    def test_publisher_failure_does_not_fail_create(self, db):
        import asyncio

        ledger = OrderLedger(db, publisher=FakePublisher(fail=True))

        async def scenario():
            created = await ledger.create_order(1, "Alice", None, [])
            await ledger.drain_events()
            return created

        created = asyncio.run(scenario())
        assert db.count("orders", "id = ?", created.order_id) == 1


class TestReadOrder:
    def test_joins_user_and_product_fields(self, db, run):
        ledger = OrderLedger(db)
        created = run(ledger.create_order(
            1, "Alice", "Paris",
            [{"product_id": 5, "quantity": 2, "unit_price": "15.99", "product_name": "Lamp (promo)"},
             {"product_id": 7, "quantity": 1, "unit_price": "9.01"}],
        ))

        order = run(ledger.get_order_by_id(created.order_id))
        assert order.email == "alice@example.com"
        assert order.first_name == "Alice"
        assert [item.product_name for item in order.items] == ["Lamp (promo)", "Mug"]
        assert order.items[1].product_description == "Ceramic mug"
        assert order.items[0].total_price == Decimal("31.98")

    def test_missing_order_is_none(self, db, run):
        assert run(OrderLedger(db).get_order_by_id(12345)) is None

    def test_read_is_repeatable(self, db, run):
        ledger = OrderLedger(db)
        created = run(ledger.create_order(1, "Alice", None, [{"product_id": 9, "quantity": 1, "unit_price": "10"}]))

        first = run(ledger.get_order_by_id(created.order_id))
        second = run(ledger.get_order_by_id(created.order_id))
        assert first == second

    def test_list_orders_scoped_to_user(self, db, run):
        ledger = OrderLedger(db)
        run(ledger.create_order(1, "Alice", None, []))
        run(ledger.create_order(2, "Bob", None, []))
        run(ledger.create_order(1, "Alice", None, []))

        assert len(run(ledger.list_orders())) == 3
        mine = run(ledger.list_orders(user_id=1))
        assert [o.user_id for o in mine] == [1, 1]
        assert mine[0].id > mine[1].id


class TestItems:
    def _order(self, db, run, status="pending"):
        ledger = OrderLedger(db)
        created = run(ledger.create_order(
            1, "Alice", None,
            [{"product_id": 5, "quantity": 2, "unit_price": "15.99"}],
            order_status=status,
        ))
        return ledger, created.order_id

    def test_add_item_increments_total(self, db, run):
        ledger, order_id = self._order(db, run)

        added = run(ledger.add_order_item(order_id, 9, 3, "10.00"))

        assert added.line_total == Decimal("30.00")
        assert _stored_total(db, order_id) == Decimal("61.98")
        assert _stored_total(db, order_id) == _items_sum(db, order_id)

    def test_add_item_uses_increment_not_recompute(self, db, run):
        ledger, order_id = self._order(db, run)
        run(ledger.add_order_item(order_id, 9, 1, "10.00"))

        assert any("total_price = total_price + ?1" in sql for sql in db.statements)

    def test_add_item_to_shipped_order_rejected(self, db, run):
        ledger, order_id = self._order(db, run, status="shipped")

        with pytest.raises(OrderNotModifiableError) as exc:
            run(ledger.add_order_item(order_id, 9, 3, "10.00"))

        assert exc.value.details == {"currentStatus": "shipped"}
        assert db.count("order_items", "order_id = ?", order_id) == 1
        assert _stored_total(db, order_id) == Decimal("31.98")

    def test_add_item_to_confirmed_order_allowed(self, db, run):
        ledger, order_id = self._order(db, run, status="confirmed")
        run(ledger.add_order_item(order_id, 1, 2, "4.50"))
        assert _stored_total(db, order_id) == Decimal("40.98")

    def test_add_item_missing_order(self, db, run):
        with pytest.raises(NotFoundError):
            run(OrderLedger(db).add_order_item(999, 9, 1, "10.00"))

    @pytest.mark.parametrize(
        "quantity,unit_price",
        [(0, "1.00"), (10_001, "1.00"), (1, "-0.01"), (1, "1000000.01"), (10_000, "1000.01")],
    )
    def test_add_item_rejects_out_of_range_values(self, db, run, quantity, unit_price):
        ledger, order_id = self._order(db, run)
        with pytest.raises(ValidationError):
            run(ledger.add_order_item(order_id, 9, quantity, unit_price))
        assert _stored_total(db, order_id) == Decimal("31.98")

    def test_remove_item_decrements_total(self, db, run):
        ledger, order_id = self._order(db, run)
        added = run(ledger.add_order_item(order_id, 9, 3, "10.00"))

        assert run(ledger.remove_order_item(added.item_id)) == order_id

        assert _stored_total(db, order_id) == Decimal("31.98")
        assert _stored_total(db, order_id) == _items_sum(db, order_id)

    def test_remove_missing_item_mutates_nothing(self, db, run):
        ledger, order_id = self._order(db, run)

        with pytest.raises(NotFoundError):
            run(ledger.remove_order_item(999))

        assert db.count("order_items") == 1
        assert _stored_total(db, order_id) == Decimal("31.98")

    def test_total_tracks_items_through_a_sequence(self, db, run):
        ledger, order_id = self._order(db, run)
        a = run(ledger.add_order_item(order_id, 7, 3, "9.01"))
        b = run(ledger.add_order_item(order_id, 1, 7, "4.50"))
        run(ledger.remove_order_item(a.item_id))
        run(ledger.add_order_item(order_id, 9, 2, "10.00"))
        run(ledger.remove_order_item(b.item_id))

        assert _stored_total(db, order_id) == _items_sum(db, order_id) == Decimal("51.98")

    def test_get_order_owner(self, db, run):
        ledger, order_id = self._order(db, run)
        db.statements.clear()

        assert run(ledger.get_order_owner(order_id)) == 1
        assert run(ledger.get_order_owner(999)) is None
        assert not any("order_items" in sql for sql in db.statements)

    def test_get_order_item(self, db, run):
        ledger, order_id = self._order(db, run)
        added = run(ledger.add_order_item(order_id, 9, 1, "10.00"))

        item = run(ledger.get_order_item(added.item_id))
        assert item.order_id == order_id
        assert item.total_price == Decimal("10.00")
        assert run(ledger.get_order_item(999)) is None


class TestUpdateAndDelete:
    def test_update_writes_only_given_fields(self, db, run):
        ledger = OrderLedger(db)
        created = run(ledger.create_order(1, "Alice", "Paris", []))

        result = run(ledger.update_order(created.order_id, OrderPatch(order_status="SHIPPED")))

        assert result.updated is True
        assert result.fields == ["order_status"]
        order = run(ledger.get_order_by_id(created.order_id))
        assert order.order_status == OrderStatus.SHIPPED
        assert order.user_location == "Paris"

    def test_empty_update_is_a_no_op(self, db, run):
        ledger = OrderLedger(db)
        created = run(ledger.create_order(1, "Alice", None, []))
        db.statements.clear()

        result = run(ledger.update_order(created.order_id, {}))

        assert result.updated is False
        assert result.message == "No updates provided"
        assert db.statements == []

    def test_update_missing_order(self, db, run):
        with pytest.raises(NotFoundError):
            run(OrderLedger(db).update_order(999, {"user_name": "Nobody"}))

    def test_update_total_does_not_recompute(self, db, run):
        ledger = OrderLedger(db)
        created = run(ledger.create_order(1, "Alice", None, [{"product_id": 9, "quantity": 1, "unit_price": "10"}]))

        run(ledger.update_order(created.order_id, {"total_price": "5.00"}))
        assert _stored_total(db, created.order_id) == Decimal("5.00")

    def test_delete_cascades_items(self, db, run):
        ledger = OrderLedger(db)
        created = run(ledger.create_order(
            1, "Alice", None,
            [{"product_id": 5, "quantity": 1, "unit_price": "15.99"},
             {"product_id": 7, "quantity": 1, "unit_price": "9.01"}],
        ))

        run(ledger.delete_order(created.order_id))

        assert db.count("orders", "id = ?", created.order_id) == 0
        assert db.count("order_items", "order_id = ?", created.order_id) == 0

    def test_delete_missing_order(self, db, run):
        ledger = OrderLedger(db)
        run(ledger.create_order(1, "Alice", None, [{"product_id": 9, "quantity": 1, "unit_price": "10"}]))

        with pytest.raises(NotFoundError):
            run(ledger.delete_order(999))
        assert db.count("order_items") == 1


class TestTotalPrice:
    def test_no_matching_orders_is_zero(self, db, run):
        total = run(OrderLedger(db).get_total_price("2024-01-01", "2024-12-31"))
        assert total == Decimal("0.00")

    def test_sums_orders_in_range(self, db, run):
        ledger = OrderLedger(db)
        a = run(ledger.create_order(1, "Alice", None, [{"product_id": 9, "quantity": 1, "unit_price": "10"}]))
        b = run(ledger.create_order(2, "Bob", None, [{"product_id": 7, "quantity": 2, "unit_price": "9.01"}]))
        c = run(ledger.create_order(2, "Bob", None, [{"product_id": 1, "quantity": 1, "unit_price": "4.50"}]))
        db.conn.execute("UPDATE orders SET created_at = '2024-03-10 12:00:00' WHERE id = ?", (a.order_id,))
        db.conn.execute("UPDATE orders SET created_at = '2024-12-31 18:30:00' WHERE id = ?", (b.order_id,))
        db.conn.execute("UPDATE orders SET created_at = '2025-01-01 00:00:01' WHERE id = ?", (c.order_id,))

        assert run(ledger.get_total_price("2024-01-01", "2024-12-31")) == Decimal("28.02")
        assert run(ledger.get_total_price()) == Decimal("32.52")
        assert run(ledger.get_total_price(from_="2025-01-01")) == Decimal("4.50")

    def test_bad_date_is_validation_error(self, db, run):
        with pytest.raises(ValidationError):
            run(OrderLedger(db).get_total_price("last tuesday"))


def test_date_only_upper_bound_covers_whole_day():
    end = parse_date_bound("2024-12-31", end_of_day=True)
    assert end.date() == date(2024, 12, 31)
    assert (end.hour, end.minute, end.second) == (23, 59, 59)
    assert parse_date_bound("2024-12-31").hour == 0
    assert parse_date_bound(None) is None


class TestTransactions:
    """Each mutation is all-or-nothing and always hands its connection back."""

    @pytest.fixture
    def order(self, db, run):
        ledger = OrderLedger(db)
        created = run(ledger.create_order(
            1, "Alice", None,
            [{"product_id": 5, "quantity": 2, "unit_price": "15.99"},
             {"product_id": 7, "quantity": 1, "unit_price": "9.01"}],
        ))
        db.transactions.clear()
        return ledger, created.order_id

    def test_commit_releases_connection(self, db, run):
        async def scenario():
            async with atomic(db) as tx:
                await tx.execute("UPDATE products SET quantity = 0 WHERE id = $1", 9)

        run(scenario())

        assert [tx.released for tx in db.transactions] == [True]
        assert db.scalar("SELECT quantity FROM products WHERE id = 9") == 0

    def test_delete_order_failure_keeps_order_and_items(self, db, run, order):
        ledger, order_id = order
        db.fail_when("DELETE FROM orders")

        with pytest.raises(StorageError):
            run(ledger.delete_order(order_id))

        assert db.count("orders", "id = ?", order_id) == 1
        assert db.count("order_items", "order_id = ?", order_id) == 2
        assert [tx.released for tx in db.transactions] == [True]

    def test_add_item_failure_leaves_no_item_and_same_total(self, db, run, order):
        ledger, order_id = order
        db.fail_when("total_price = total_price +")

        with pytest.raises(StorageError):
            run(ledger.add_order_item(order_id, 9, 3, "10.00"))

        assert db.count("order_items", "order_id = ?", order_id) == 2
        assert _stored_total(db, order_id) == Decimal("40.99")
        assert [tx.released for tx in db.transactions] == [True]

    def test_remove_item_failure_keeps_item_and_total(self, db, run, order):
        ledger, order_id = order
        item_id = run(ledger.get_order_by_id(order_id)).items[0].id
        db.fail_when("total_price = total_price -")

        with pytest.raises(StorageError):
            run(ledger.remove_order_item(item_id))

        assert db.count("order_items", "id = ?", item_id) == 1
        assert _stored_total(db, order_id) == Decimal("40.99")
        assert [tx.released for tx in db.transactions] == [True]

    def test_rejected_item_releases_connection(self, db, run, order):
        ledger, order_id = order
        run(ledger.update_order(order_id, {"order_status": "shipped"}))

        with pytest.raises(OrderNotModifiableError):
            run(ledger.add_order_item(order_id, 9, 1, "10.00"))

        assert [tx.released for tx in db.transactions] == [True]
