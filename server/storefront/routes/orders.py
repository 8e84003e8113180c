"""
Order endpoints.

Admins see and change every order. Other callers are mapped to their users
row by email and only reach their own orders: someone else's order reads as
not found and cannot be changed.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from ..auth import get_admin_user, get_current_user
from ..errors import ForbiddenError, NotFoundError, ValidationError
from ..identity import Identity
from ..models import (
    AddItemResponse,
    CreateOrderRequest,
    CreateOrderResponse,
    DateRange,
    ItemDetails,
    MessageResponse,
    Order,
    OrderItemIn,
    OrderPatch,
    RemoveItemResponse,
    TotalPriceResponse,
    UpdateOrderResponse,
)
from ..services.catalog import UserRepository
from ..services.orders import OrderLedger
from .dependencies import get_ledger, get_user_repository, require_user_id, resolve_user_id


router = APIRouter(prefix="/orders", tags=["orders"])


async def _check_owner(
    ledger: OrderLedger,
    order_id: int,
    user: Identity,
    users: UserRepository,
    hide_foreign: bool,
) -> int:
    """Return the owner of an order the caller may act on; admins may act on any."""
    owner_id = await ledger.get_order_owner(order_id)
    if owner_id is None:
        raise NotFoundError("Order not found")
    if user.is_admin:
        return owner_id

    caller_id = await resolve_user_id(user, users)
    if owner_id != caller_id:
        if hide_foreign:
            raise NotFoundError("Order not found")
        raise ForbiddenError("You can only modify your own orders")
    return owner_id


@router.get("", response_model=List[Order])
async def list_orders(
    user: Identity = Depends(get_current_user),
    ledger: OrderLedger = Depends(get_ledger),
    users: UserRepository = Depends(get_user_repository),
):
    """List orders, newest first. Non-admins only see their own."""
    if user.is_admin:
        return await ledger.list_orders()
    caller_id = await resolve_user_id(user, users)
    if caller_id is None:
        return []
    return await ledger.list_orders(user_id=caller_id)


@router.get("/total-price", response_model=TotalPriceResponse)
async def get_total_price(
    from_: Optional[str] = Query(None, alias="from", description="Start date (YYYY-MM-DD or ISO 8601)"),
    to: Optional[str] = Query(None, description="End date, inclusive"),
    user: Identity = Depends(get_admin_user),
    ledger: OrderLedger = Depends(get_ledger),
):
    total = await ledger.get_total_price(from_, to)
    return TotalPriceResponse(
        total_price=total,
        date_range=DateRange(from_=from_ or "all time start", to=to or "today"),
    )


@router.get("/{order_id}", response_model=Order)
async def get_order(
    order_id: int,
    user: Identity = Depends(get_current_user),
    ledger: OrderLedger = Depends(get_ledger),
    users: UserRepository = Depends(get_user_repository),
):
    await _check_owner(ledger, order_id, user, users, hide_foreign=True)
    order = await ledger.get_order_by_id(order_id)
    if order is None:
        raise NotFoundError("Order not found")
    return order


@router.post("", response_model=CreateOrderResponse, status_code=status.HTTP_201_CREATED)
async def create_order(
    req: CreateOrderRequest,
    user: Identity = Depends(get_current_user),
    ledger: OrderLedger = Depends(get_ledger),
    users: UserRepository = Depends(get_user_repository),
):
    """
    Create an order with its items.

    Non-admin orders are always placed for the caller's own user.
    """
    if user.is_admin:
        if req.user_id is None:
            raise ValidationError(
                "User ID is required",
                details={"details": [{"field": "user_id", "problem": "required", "provided": None}]},
            )
        owner_id = req.user_id
    else:
        owner_id = await require_user_id(user, users)

    created = await ledger.create_order(
        owner_id,
        req.user_name,
        req.user_location,
        req.items,
        total_price=req.total_price,
        order_status=req.order_status,
    )
    return CreateOrderResponse(
        order_id=created.order_id,
        total_price=created.total_price,
        item_count=len(req.items),
    )


@router.put("/{order_id}", response_model=UpdateOrderResponse)
async def update_order(
    order_id: int,
    patch: OrderPatch,
    user: Identity = Depends(get_current_user),
    ledger: OrderLedger = Depends(get_ledger),
    users: UserRepository = Depends(get_user_repository),
):
    if not user.is_admin:
        owner_id = await _check_owner(ledger, order_id, user, users, hide_foreign=False)
        if "user_id" in patch.model_fields_set and patch.user_id != owner_id:
            raise ForbiddenError("You cannot reassign an order to another user")

    result = await ledger.update_order(order_id, patch)
    return UpdateOrderResponse(message=result.message, order_id=order_id, updated_fields=result.fields)


@router.delete("/{order_id}", response_model=MessageResponse)
async def delete_order(
    order_id: int,
    user: Identity = Depends(get_admin_user),
    ledger: OrderLedger = Depends(get_ledger),
):
    await ledger.delete_order(order_id)
    return MessageResponse(message="Order deleted successfully")


@router.post("/{order_id}/items", response_model=AddItemResponse, status_code=status.HTTP_201_CREATED)
async def add_order_item(
    order_id: int,
    item: OrderItemIn,
    user: Identity = Depends(get_current_user),
    ledger: OrderLedger = Depends(get_ledger),
    users: UserRepository = Depends(get_user_repository),
):
    if not user.is_admin:
        await _check_owner(ledger, order_id, user, users, hide_foreign=False)

    added = await ledger.add_order_item(
        order_id,
        item.product_id,
        item.quantity,
        item.unit_price,
        product_name=item.product_name,
    )
    return AddItemResponse(
        order_id=order_id,
        item_details=ItemDetails(
            product_id=item.product_id,
            quantity=item.quantity,
            unit_price=item.unit_price,
            total_price=added.line_total,
        ),
    )


@router.delete("/items/{item_id}", response_model=RemoveItemResponse)
async def remove_order_item(
    item_id: int,
    user: Identity = Depends(get_current_user),
    ledger: OrderLedger = Depends(get_ledger),
    users: UserRepository = Depends(get_user_repository),
):
    if not user.is_admin:
        item = await ledger.get_order_item(item_id)
        if item is None:
            raise NotFoundError("Item not found")
        await _check_owner(ledger, item.order_id, user, users, hide_foreign=False)

    await ledger.remove_order_item(item_id)
    return RemoveItemResponse(item_id=item_id)
