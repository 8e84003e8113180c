"""User management endpoints (admin only)."""

from typing import List

from fastapi import APIRouter, Depends, status

from ..auth import get_admin_user
from ..errors import NotFoundError
from ..identity import Identity
from ..models import MessageResponse, User, UserIn, UserPatch
from ..services.catalog import UserRepository
from .dependencies import get_user_repository


router = APIRouter(prefix="/users", tags=["users"])


@router.get("", response_model=List[User])
async def list_users(
    user: Identity = Depends(get_admin_user),
    users: UserRepository = Depends(get_user_repository),
):
    return await users.list()


@router.get("/{user_id}", response_model=User)
async def get_user(
    user_id: int,
    user: Identity = Depends(get_admin_user),
    users: UserRepository = Depends(get_user_repository),
):
    found = await users.get(user_id)
    if found is None:
        raise NotFoundError("User not found")
    return found


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_user(
    req: UserIn,
    user: Identity = Depends(get_admin_user),
    users: UserRepository = Depends(get_user_repository),
):
    user_id = await users.create(req)
    return {"message": "User created successfully", "userId": user_id}


@router.put("/{user_id}")
async def update_user(
    user_id: int,
    patch: UserPatch,
    user: Identity = Depends(get_admin_user),
    users: UserRepository = Depends(get_user_repository),
):
    statement = await users.update(user_id, patch)
    if statement is None:
        return {"message": "No updates provided", "userId": user_id, "updatedFields": []}
    return {
        "message": "User updated successfully",
        "userId": user_id,
        "updatedFields": statement.fields,
    }


@router.delete("/{user_id}", response_model=MessageResponse)
async def delete_user(
    user_id: int,
    user: Identity = Depends(get_admin_user),
    users: UserRepository = Depends(get_user_repository),
):
    await users.delete(user_id)
    return MessageResponse(message="User deleted successfully")
