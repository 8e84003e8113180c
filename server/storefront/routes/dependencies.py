"""Request-scoped collaborators for the routers."""

from typing import Optional

from fastapi import Depends, Request

from ..db import QueryExecutor, get_executor
from ..errors import ForbiddenError
from ..identity import Identity
from ..services.catalog import ProductImageRepository, ProductRepository, UserRepository
from ..services.orders import OrderLedger


def get_ledger(request: Request, executor: QueryExecutor = Depends(get_executor)) -> OrderLedger:
    publisher = getattr(request.app.state, "publisher", None)
    return OrderLedger(executor, publisher=publisher)


def get_product_repository(executor: QueryExecutor = Depends(get_executor)) -> ProductRepository:
    return ProductRepository(executor)


def get_image_repository(executor: QueryExecutor = Depends(get_executor)) -> ProductImageRepository:
    return ProductImageRepository(executor)


def get_user_repository(executor: QueryExecutor = Depends(get_executor)) -> UserRepository:
    return UserRepository(executor)


async def resolve_user_id(identity: Identity, users: UserRepository) -> Optional[int]:
    """
    Map a caller to their users row by email.

    Returns None when the caller has no email or no matching row.
    """
    if not identity.email:
        return None
    user = await users.get_by_email(identity.email)
    return user.id if user else None


async def require_user_id(identity: Identity, users: UserRepository) -> int:
    user_id = await resolve_user_id(identity, users)
    if user_id is None:
        raise ForbiddenError("No user profile is linked to this account")
    return user_id
