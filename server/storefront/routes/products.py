"""
Product catalog endpoints, including product image records.

Reads need a signed-in caller, writes need an admin. Image routes manage
metadata only; uploading the files to object storage happens elsewhere.
"""

from typing import List

from fastapi import APIRouter, Depends, Query, status

from ..auth import get_admin_user, get_current_user
from ..errors import NotFoundError
from ..identity import Identity
from ..models import (
    MessageResponse,
    Product,
    ProductImage,
    ProductImageIn,
    ProductImagePatch,
    ProductIn,
    ProductPatch,
)
from ..services.catalog import ProductImageRepository, ProductRepository
from .dependencies import get_image_repository, get_product_repository


router = APIRouter(prefix="/products", tags=["products"])


@router.get("", response_model=List[Product])
async def list_products(
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    user: Identity = Depends(get_current_user),
    products: ProductRepository = Depends(get_product_repository),
):
    return await products.list(limit=limit, offset=offset)


@router.get("/{product_id}", response_model=Product)
async def get_product(
    product_id: int,
    user: Identity = Depends(get_current_user),
    products: ProductRepository = Depends(get_product_repository),
):
    product = await products.get(product_id)
    if product is None:
        raise NotFoundError("Product not found")
    return product


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_product(
    req: ProductIn,
    user: Identity = Depends(get_admin_user),
    products: ProductRepository = Depends(get_product_repository),
):
    product_id = await products.create(req)
    return {"message": "Product created successfully", "productId": product_id}


@router.put("/{product_id}")
async def update_product(
    product_id: int,
    patch: ProductPatch,
    user: Identity = Depends(get_admin_user),
    products: ProductRepository = Depends(get_product_repository),
):
    statement = await products.update(product_id, patch)
    if statement is None:
        return {"message": "No updates provided", "productId": product_id, "updatedFields": []}
    return {
        "message": "Product updated successfully",
        "productId": product_id,
        "updatedFields": statement.fields,
    }


@router.delete("/{product_id}", response_model=MessageResponse)
async def delete_product(
    product_id: int,
    user: Identity = Depends(get_admin_user),
    products: ProductRepository = Depends(get_product_repository),
):
    await products.delete(product_id)
    return MessageResponse(message="Product deleted successfully")


# ---- Image records ----


@router.get("/images/{image_id}", response_model=ProductImage)
async def get_product_image(
    image_id: int,
    user: Identity = Depends(get_current_user),
    images: ProductImageRepository = Depends(get_image_repository),
):
    image = await images.get(image_id)
    if image is None:
        raise NotFoundError("Image not found")
    return image


@router.post("/images/record", status_code=status.HTTP_201_CREATED)
async def create_product_image(
    req: ProductImageIn,
    user: Identity = Depends(get_admin_user),
    images: ProductImageRepository = Depends(get_image_repository),
):
    image_id = await images.create(req)
    return {"message": "Product image record created successfully", "imageId": image_id}


@router.put("/images/record/{image_id}")
async def update_product_image(
    image_id: int,
    patch: ProductImagePatch,
    user: Identity = Depends(get_admin_user),
    images: ProductImageRepository = Depends(get_image_repository),
):
    statement = await images.update(image_id, patch)
    if statement is None:
        return {"message": "No updates provided", "imageId": image_id, "updatedFields": []}
    return {
        "message": "Product image record updated successfully",
        "imageId": image_id,
        "updatedFields": statement.fields,
    }


@router.delete("/images/record/{image_id}", response_model=MessageResponse)
async def delete_product_image(
    image_id: int,
    user: Identity = Depends(get_admin_user),
    images: ProductImageRepository = Depends(get_image_repository),
):
    await images.delete(image_id)
    return MessageResponse(message="Product image record deleted successfully")


@router.get("/{product_id}/images", response_model=List[ProductImage])
async def list_product_images(
    product_id: int,
    user: Identity = Depends(get_current_user),
    images: ProductImageRepository = Depends(get_image_repository),
):
    """Images of a product in display order."""
    return await images.list(product_id)


@router.get("/{product_id}/images/primary", response_model=ProductImage)
async def get_primary_product_image(
    product_id: int,
    user: Identity = Depends(get_current_user),
    images: ProductImageRepository = Depends(get_image_repository),
):
    image = await images.get_primary(product_id)
    if image is None:
        raise NotFoundError("No primary image for this product")
    return image


@router.put("/{product_id}/images/{image_id}/primary")
async def set_primary_product_image(
    product_id: int,
    image_id: int,
    user: Identity = Depends(get_admin_user),
    images: ProductImageRepository = Depends(get_image_repository),
):
    await images.set_primary(product_id, image_id)
    return {"message": "Primary image updated successfully", "productId": product_id, "imageId": image_id}


@router.delete("/{product_id}/images")
async def delete_product_images(
    product_id: int,
    user: Identity = Depends(get_admin_user),
    images: ProductImageRepository = Depends(get_image_repository),
):
    deleted = await images.delete_for_product(product_id)
    return {
        "message": "Product image records deleted successfully",
        "productId": product_id,
        "deletedCount": deleted,
    }
