"""
Order ledger.

Owns orders and their items and keeps each order's total_price equal to the
sum of its line totals. Every mutation runs in a single transaction; totals
move by SQL increments so concurrent item changes apply deltas instead of
overwriting each other.
"""

import asyncio
import logging
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Set, Union

from pydantic import ValidationError as PydanticValidationError

from ..db import QueryExecutor, atomic
from ..errors import NotFoundError, OrderNotModifiableError, ValidationError
from ..models import (
    EDITABLE_STATUSES,
    AddedItem,
    CreatedOrder,
    Order,
    OrderItem,
    OrderItemIn,
    OrderPatch,
    OrderStatus,
    UpdateResult,
    to_money,
)
from ..querybuilder import UpdateBuilder
from .notifications import OrderEventPublisher, build_order_created_event

logger = logging.getLogger(__name__)


# Lower bound for total-price queries without a start date
TOTALS_EPOCH = datetime(2020, 1, 1)

DateBound = Union[str, date, datetime, None]

_order_updates = UpdateBuilder(
    "orders",
    ["user_id", "user_name", "user_location", "order_status", "total_price"],
)


def _validation_error(e: PydanticValidationError) -> ValidationError:
    problems = [
        {
            "field": ".".join(str(part) for part in err["loc"]),
            "problem": err["msg"],
            "provided": err.get("input"),
        }
        for err in e.errors(include_url=False)
    ]
    return ValidationError("Invalid order item", details={"details": problems})


def _coerce_items(items: Iterable[Union[OrderItemIn, Dict[str, Any]]]) -> List[OrderItemIn]:
    coerced = []
    for item in items:
        if isinstance(item, OrderItemIn):
            coerced.append(item)
            continue
        try:
            coerced.append(OrderItemIn.model_validate(item))
        except PydanticValidationError as e:
            raise _validation_error(e) from e
    return coerced


def _coerce_status(value: Optional[Union[OrderStatus, str]]) -> OrderStatus:
    if not value:
        return OrderStatus.PENDING
    if isinstance(value, OrderStatus):
        return value
    try:
        return OrderStatus(value.strip().lower())
    except ValueError as e:
        allowed = ", ".join(s.value for s in OrderStatus)
        raise ValidationError(f"Invalid order status {value!r}. Allowed: {allowed}") from e


def parse_date_bound(value: DateBound, end_of_day: bool = False) -> Optional[datetime]:
    """
    Normalize a date-range bound to a naive UTC datetime.

    A bare date (or `YYYY-MM-DD` string) as an upper bound covers that
    whole day.
    """
    if value is None or value == "":
        return None

    if isinstance(value, str):
        text = value.strip()
        try:
            if len(text) == 10:
                value = date.fromisoformat(text)
            else:
                value = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError as e:
            raise ValidationError(
                f"Invalid date: {value!r}. Expected YYYY-MM-DD or an ISO 8601 timestamp",
                details={"details": [{"field": "date", "problem": "invalid date", "provided": value}]},
            ) from e

    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    return datetime.combine(value, time.max if end_of_day else time.min)


class OrderLedger:
    """Transactional operations over orders and order items."""

    def __init__(self, executor: QueryExecutor, publisher: Optional[OrderEventPublisher] = None):
        self.executor = executor
        self.publisher = publisher
        self.pending_events: Set[asyncio.Task] = set()

    # ---- Creation ----

    async def create_order(
        self,
        user_id: int,
        user_name: Optional[str],
        user_location: Optional[str],
        items: Iterable[Union[OrderItemIn, Dict[str, Any]]],
        total_price: Optional[Any] = None,
        order_status: Optional[Union[OrderStatus, str]] = None,
    ) -> CreatedOrder:
        """
        Create an order and its items atomically.

        Args:
            user_id: Owning user; must reference an existing users row
            items: Order lines (models or plain dicts)
            total_price: Explicit total. When given it is stored as-is and
                not reconciled against the items.
            order_status: Initial status, pending when omitted

        Returns:
            CreatedOrder with the new id and the resolved total
        """
        lines = _coerce_items(items)
        status = _coerce_status(order_status)
        explicit_total = to_money(total_price) if total_price is not None else None

        running_total = Decimal("0.00")
        async with atomic(self.executor) as tx:
            order_id = await tx.fetchval(
                """
                INSERT INTO orders (user_id, user_name, user_location, order_status, total_price)
                VALUES ($1, $2, $3, $4, $5)
                RETURNING id
                """,
                user_id,
                user_name,
                user_location,
                status.value,
                explicit_total if explicit_total is not None else Decimal("0.00"),
            )

            for line in lines:
                line_total = line.line_total
                running_total += line_total
                await tx.execute(
                    """
                    INSERT INTO order_items
                        (order_id, product_id, product_name, quantity, unit_price, total_price)
                    VALUES ($1, $2, $3, $4, $5, $6)
                    """,
                    order_id,
                    line.product_id,
                    line.product_name,
                    line.quantity,
                    to_money(line.unit_price),
                    line_total,
                )

            if explicit_total is None:
                await tx.execute(
                    "UPDATE orders SET total_price = $1 WHERE id = $2",
                    running_total,
                    order_id,
                )

        resolved_total = explicit_total if explicit_total is not None else running_total
        logger.info(f"Created order {order_id} with {len(lines)} items, total {resolved_total}")

        self._announce_created(order_id, user_id, user_name, user_location, resolved_total, status)
        return CreatedOrder(order_id=order_id, total_price=resolved_total)

    def _announce_created(self, order_id, user_id, user_name, user_location, total, status) -> None:
        if self.publisher is None:
            return
        event = build_order_created_event(
            order_id, user_id, user_name, user_location, total, status.value
        )
        task = asyncio.create_task(self._publish(event))
        self.pending_events.add(task)
        task.add_done_callback(self.pending_events.discard)

    async def _publish(self, event: Dict[str, Any]) -> None:
        try:
            await self.publisher.publish_order_created(event)
        except Exception as e:
            # The order is committed; a lost event is only logged
            logger.error(f"Failed to publish order created event for order {event['orderId']}: {e}")

    async def drain_events(self) -> None:
        """Wait for in-flight event publications."""
        if self.pending_events:
            await asyncio.gather(*list(self.pending_events), return_exceptions=True)

    # ---- Reads ----

    async def _fetch_items(self, order_id: int) -> List[OrderItem]:
        rows = await self.executor.fetch(
            """
            SELECT oi.id, oi.order_id, oi.product_id,
                   COALESCE(oi.product_name, p.name) AS product_name,
                   p.description AS product_description,
                   oi.quantity, oi.unit_price, oi.total_price
            FROM order_items oi
            LEFT JOIN products p ON oi.product_id = p.id
            WHERE oi.order_id = $1
            ORDER BY oi.id
            """,
            order_id,
        )
        return [OrderItem(**_money_fields(row, "unit_price", "total_price")) for row in rows]

    async def get_order_by_id(self, order_id: int) -> Optional[Order]:
        """Order with owner display fields and items, or None."""
        row = await self.executor.fetchrow(
            """
            SELECT o.id, o.user_id, o.user_name, o.user_location, o.order_status,
                   o.total_price, o.created_at,
                   u.first_name, u.last_name, u.email
            FROM orders o
            LEFT JOIN users u ON o.user_id = u.id
            WHERE o.id = $1
            """,
            order_id,
        )
        if row is None:
            return None
        items = await self._fetch_items(order_id)
        return Order(**_money_fields(row, "total_price"), items=items)

    async def get_order_owner(self, order_id: int) -> Optional[int]:
        """Owning user id of an order, or None when the order does not exist."""
        return await self.executor.fetchval("SELECT user_id FROM orders WHERE id = $1", order_id)

    async def list_orders(self, user_id: Optional[int] = None) -> List[Order]:
        """Orders newest first, optionally restricted to one owner. Items are not loaded."""
        sql = """
            SELECT o.id, o.user_id, o.user_name, o.user_location, o.order_status,
                   o.total_price, o.created_at,
                   u.first_name, u.last_name, u.email
            FROM orders o
            LEFT JOIN users u ON o.user_id = u.id
        """
        args: List[Any] = []
        if user_id is not None:
            sql += " WHERE o.user_id = $1"
            args.append(user_id)
        sql += " ORDER BY o.created_at DESC, o.id DESC"

        rows = await self.executor.fetch(sql, *args)
        return [Order(**_money_fields(row, "total_price")) for row in rows]

    async def get_order_item(self, item_id: int) -> Optional[OrderItem]:
        row = await self.executor.fetchrow(
            """
            SELECT id, order_id, product_id, product_name, quantity, unit_price, total_price
            FROM order_items
            WHERE id = $1
            """,
            item_id,
        )
        if row is None:
            return None
        return OrderItem(**_money_fields(row, "unit_price", "total_price"))

    # ---- Updates ----

    async def update_order(self, order_id: int, patch: Union[OrderPatch, Dict[str, Any]]) -> UpdateResult:
        """
        Write only the fields set on `patch`. Totals are never recomputed here,
        so setting total_price overrides the item sum.
        """
        if not isinstance(patch, OrderPatch):
            try:
                patch = OrderPatch.model_validate(patch)
            except PydanticValidationError as e:
                raise _validation_error(e) from e

        statement = _order_updates.build(patch, order_id)
        if statement is None:
            return UpdateResult(updated=False, message="No updates provided")

        params = [
            to_money(value) if name == "total_price" and value is not None else value
            for name, value in zip(statement.fields, statement.params)
        ] + statement.params[len(statement.fields):]

        affected = await self.executor.execute(statement.sql, *params)
        if affected == 0:
            raise NotFoundError("Order not found")

        logger.info(f"Updated order {order_id}: {', '.join(statement.fields)}")
        return UpdateResult(updated=True, message="Order updated successfully", fields=statement.fields)

    async def delete_order(self, order_id: int) -> None:
        """Delete an order and all its items in one transaction."""
        async with atomic(self.executor) as tx:
            removed_items = await tx.execute("DELETE FROM order_items WHERE order_id = $1", order_id)
            deleted = await tx.execute("DELETE FROM orders WHERE id = $1", order_id)
            if deleted == 0:
                raise NotFoundError("Order not found")
        logger.info(f"Deleted order {order_id} and {removed_items} items")

    # ---- Items ----

    async def add_order_item(
        self,
        order_id: int,
        product_id: int,
        quantity: int,
        unit_price: Any,
        product_name: Optional[str] = None,
    ) -> AddedItem:
        """
        Attach an item to an editable order and raise its total by the line total.

        Raises:
            ValidationError: quantity, price or line total out of range
            NotFoundError: no such order
            OrderNotModifiableError: order is past the editable statuses
        """
        line = _coerce_items(
            [
                {
                    "product_id": product_id,
                    "quantity": quantity,
                    "unit_price": unit_price,
                    "product_name": product_name,
                }
            ]
        )[0]
        line_total = line.line_total

        lock = " FOR UPDATE" if self.executor.supports_row_locks else ""
        async with atomic(self.executor) as tx:
            order = await tx.fetchrow(
                f"SELECT id, order_status FROM orders WHERE id = $1{lock}",
                order_id,
            )
            if order is None:
                raise NotFoundError("Order not found")

            status = order["order_status"]
            if status not in {s.value for s in EDITABLE_STATUSES}:
                raise OrderNotModifiableError(
                    "Cannot add items to order with current status",
                    details={"currentStatus": status},
                )

            item_id = await tx.fetchval(
                """
                INSERT INTO order_items
                    (order_id, product_id, product_name, quantity, unit_price, total_price)
                VALUES ($1, $2, $3, $4, $5, $6)
                RETURNING id
                """,
                order_id,
                line.product_id,
                line.product_name,
                line.quantity,
                to_money(line.unit_price),
                line_total,
            )
            await tx.execute(
                "UPDATE orders SET total_price = total_price + $1 WHERE id = $2",
                line_total,
                order_id,
            )

        logger.info(f"Added item {item_id} to order {order_id} (+{line_total})")
        return AddedItem(item_id=item_id, order_id=order_id, line_total=line_total)

    async def remove_order_item(self, item_id: int) -> int:
        """Delete an item and lower its order's total. Returns the order id."""
        async with atomic(self.executor) as tx:
            item = await tx.fetchrow(
                "SELECT order_id, total_price FROM order_items WHERE id = $1",
                item_id,
            )
            if item is None:
                raise NotFoundError("Item not found")

            order_id = item["order_id"]
            line_total = to_money(item["total_price"])
            await tx.execute("DELETE FROM order_items WHERE id = $1", item_id)
            await tx.execute(
                "UPDATE orders SET total_price = total_price - $1 WHERE id = $2",
                line_total,
                order_id,
            )

        logger.info(f"Removed item {item_id} from order {order_id} (-{line_total})")
        return order_id

    # ---- Aggregates ----

    async def get_total_price(self, from_: DateBound = None, to: DateBound = None) -> Decimal:
        """Sum of order totals created within [from_, to]; 0.00 when none match."""
        start = parse_date_bound(from_) or TOTALS_EPOCH
        end = parse_date_bound(to, end_of_day=True) or datetime.now(timezone.utc).replace(tzinfo=None)

        total = await self.executor.fetchval(
            """
            SELECT COALESCE(SUM(total_price), 0)
            FROM orders
            WHERE created_at >= $1 AND created_at <= $2
            """,
            start,
            end,
        )
        return to_money(total)


def _money_fields(row: Dict[str, Any], *names: str) -> Dict[str, Any]:
    data = dict(row)
    for name in names:
        data[name] = to_money(data.get(name))
    return data
