"""Keyed CRUD over products, product image records and users."""

import logging
from typing import Any, Dict, List, Optional

from ..db import QueryExecutor, Transaction, atomic
from ..errors import NotFoundError
from ..models import (
    Product,
    ProductImage,
    ProductImageIn,
    ProductImagePatch,
    ProductIn,
    ProductPatch,
    User,
    UserIn,
    UserPatch,
    to_money,
)
from ..querybuilder import UpdateBuilder, UpdateStatement

logger = logging.getLogger(__name__)


USER_COLUMNS = "id, first_name, last_name, email, phone_number, birthdate, gender, address, created_at"
IMAGE_COLUMNS = (
    "id, product_id, image_url, image_key, alt_text, display_order, is_primary, created_at, updated_at"
)


def _product(row: Dict[str, Any]) -> Product:
    data = dict(row)
    data["price"] = to_money(data.get("price"))
    return Product(**data)


class ProductRepository:
    updates = UpdateBuilder("products", ["name", "price", "quantity", "description"])

    def __init__(self, executor: QueryExecutor):
        self.executor = executor

    async def list(self, limit: int = 100, offset: int = 0) -> List[Product]:
        rows = await self.executor.fetch(
            """
            SELECT id, name, price, quantity, description
            FROM products
            ORDER BY id
            LIMIT $1 OFFSET $2
            """,
            limit,
            offset,
        )
        return [_product(row) for row in rows]

    async def get(self, product_id: int) -> Optional[Product]:
        row = await self.executor.fetchrow(
            "SELECT id, name, price, quantity, description FROM products WHERE id = $1",
            product_id,
        )
        return _product(row) if row else None

    async def create(self, product: ProductIn) -> int:
        product_id = await self.executor.fetchval(
            """
            INSERT INTO products (name, price, quantity, description)
            VALUES ($1, $2, $3, $4)
            RETURNING id
            """,
            product.name,
            to_money(product.price),
            product.quantity,
            product.description,
        )
        logger.info(f"Created product {product_id}")
        return product_id

    async def update(self, product_id: int, patch: ProductPatch) -> Optional[UpdateStatement]:
        """Apply `patch`; returns None when it sets nothing."""
        statement = self.updates.build(patch, product_id)
        if statement is None:
            return None
        if await self.executor.execute(statement.sql, *statement.params) == 0:
            raise NotFoundError("Product not found")
        return statement

    async def delete(self, product_id: int) -> None:
        if await self.executor.execute("DELETE FROM products WHERE id = $1", product_id) == 0:
            raise NotFoundError("Product not found")
        logger.info(f"Deleted product {product_id}")



class ProductImageRepository:
    """
    Image records per product. The image files themselves live in object
    storage; only their URL, key and display metadata are kept here.

    A product has at most one primary image.
    """

    updates = UpdateBuilder(
        "product_images",
        ["alt_text", "display_order", "is_primary"],
        touch="updated_at",
    )

    def __init__(self, executor: QueryExecutor):
        self.executor = executor

    async def list(self, product_id: int) -> List[ProductImage]:
        rows = await self.executor.fetch(
            f"""
            SELECT {IMAGE_COLUMNS}
            FROM product_images
            WHERE product_id = $1
            ORDER BY display_order, id
            """,
            product_id,
        )
        return [ProductImage(**row) for row in rows]

    async def get(self, image_id: int) -> Optional[ProductImage]:
        row = await self.executor.fetchrow(
            f"SELECT {IMAGE_COLUMNS} FROM product_images WHERE id = $1",
            image_id,
        )
        return ProductImage(**row) if row else None

    async def get_primary(self, product_id: int) -> Optional[ProductImage]:
        row = await self.executor.fetchrow(
            f"SELECT {IMAGE_COLUMNS} FROM product_images WHERE product_id = $1 AND is_primary",
            product_id,
        )
        return ProductImage(**row) if row else None

    @staticmethod
    async def _clear_primary(tx: Transaction, product_id: int) -> None:
        await tx.execute(
            """
            UPDATE product_images
            SET is_primary = FALSE, updated_at = CURRENT_TIMESTAMP
            WHERE product_id = $1 AND is_primary
            """,
            product_id,
        )

    async def create(self, image: ProductImageIn) -> int:
        """Insert an image record; a new primary image demotes the current one."""
        async with atomic(self.executor) as tx:
            if image.is_primary:
                await self._clear_primary(tx, image.product_id)
            image_id = await tx.fetchval(
                """
                INSERT INTO product_images
                    (product_id, image_url, image_key, alt_text, display_order, is_primary)
                VALUES ($1, $2, $3, $4, $5, $6)
                RETURNING id
                """,
                image.product_id,
                image.image_url,
                image.image_key,
                image.alt_text,
                image.display_order,
                image.is_primary,
            )
        logger.info(f"Created image {image_id} for product {image.product_id}")
        return image_id

    async def update(self, image_id: int, patch: ProductImagePatch) -> Optional[UpdateStatement]:
        statement = self.updates.build(patch, image_id)
        if statement is None:
            return None
        async with atomic(self.executor) as tx:
            if patch.is_primary:
                product_id = await tx.fetchval(
                    "SELECT product_id FROM product_images WHERE id = $1",
                    image_id,
                )
                if product_id is None:
                    raise NotFoundError("Image not found")
                await self._clear_primary(tx, product_id)
            if await tx.execute(statement.sql, *statement.params) == 0:
                raise NotFoundError("Image not found")
        return statement

    async def set_primary(self, product_id: int, image_id: int) -> None:
        """Make `image_id` the only primary image of `product_id`."""
        lock = " FOR UPDATE" if self.executor.supports_row_locks else ""
        async with atomic(self.executor) as tx:
            found = await tx.fetchval(
                f"SELECT id FROM product_images WHERE id = $1 AND product_id = $2{lock}",
                image_id,
                product_id,
            )
            if found is None:
                raise NotFoundError("Image not found for this product")
            await self._clear_primary(tx, product_id)
            await tx.execute(
                "UPDATE product_images SET is_primary = TRUE, updated_at = CURRENT_TIMESTAMP WHERE id = $1",
                image_id,
            )
        logger.info(f"Image {image_id} is now primary for product {product_id}")

    async def delete(self, image_id: int) -> None:
        if await self.executor.execute("DELETE FROM product_images WHERE id = $1", image_id) == 0:
            raise NotFoundError("Image not found")
        logger.info(f"Deleted image record {image_id}")

    async def delete_for_product(self, product_id: int) -> int:
        """Remove every image record of a product; returns how many went."""
        deleted = await self.executor.execute(
            "DELETE FROM product_images WHERE product_id = $1",
            product_id,
        )
        logger.info(f"Deleted {deleted} image records of product {product_id}")
        return deleted

class UserRepository:
    updates = UpdateBuilder(
        "users",
        ["first_name", "last_name", "email", "phone_number", "birthdate", "gender", "address"],
    )

    def __init__(self, executor: QueryExecutor):
        self.executor = executor

    async def list(self) -> List[User]:
        rows = await self.executor.fetch(f"SELECT {USER_COLUMNS} FROM users ORDER BY id")
        return [User(**row) for row in rows]

    async def get(self, user_id: int) -> Optional[User]:
        row = await self.executor.fetchrow(f"SELECT {USER_COLUMNS} FROM users WHERE id = $1", user_id)
        return User(**row) if row else None

    async def get_by_email(self, email: str) -> Optional[User]:
        """Case-insensitive lookup; used to map a caller's token email to a users row."""
        row = await self.executor.fetchrow(
            f"SELECT {USER_COLUMNS} FROM users WHERE LOWER(email) = LOWER($1)",
            email,
        )
        return User(**row) if row else None

    async def create(self, user: UserIn) -> int:
        user_id = await self.executor.fetchval(
            """
            INSERT INTO users (first_name, last_name, email, phone_number, birthdate, gender, address)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            RETURNING id
            """,
            user.first_name,
            user.last_name,
            user.email,
            user.phone_number,
            user.birthdate,
            user.gender,
            user.address,
        )
        logger.info(f"Created user {user_id}")
        return user_id

    async def update(self, user_id: int, patch: UserPatch) -> Optional[UpdateStatement]:
        statement = self.updates.build(patch, user_id)
        if statement is None:
            return None
        if await self.executor.execute(statement.sql, *statement.params) == 0:
            raise NotFoundError("User not found")
        return statement

    async def delete(self, user_id: int) -> None:
        if await self.executor.execute("DELETE FROM users WHERE id = $1", user_id) == 0:
            raise NotFoundError("User not found")
        logger.info(f"Deleted user {user_id}")
