"""Liveness probe, open without the admin header."""

from fastapi import APIRouter

from folio.responses import success_response

router = APIRouter()


@router.get("/health")
async def health_check() -> dict:
    # Process liveness only; storage and database are not contacted
    return success_response({"status": "ok"})
