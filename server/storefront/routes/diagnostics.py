"""Connectivity check for local troubleshooting. Requires auth in production."""

from typing import Optional

from fastapi import APIRouter, Depends

from ..auth import get_diagnostics_user
from ..db import QueryExecutor, connection_diagnostics, get_executor
from ..identity import Identity
from ..settings import settings


router = APIRouter(tags=["diagnostics"])


@router.get("/test-connection")
async def test_connection(
    user: Optional[Identity] = Depends(get_diagnostics_user),
    executor: QueryExecutor = Depends(get_executor),
):
    result = await connection_diagnostics(executor)
    return {"message": "Database connection successful", "stage": settings.stage, **result}
