"""
Operator endpoints: duplicate resolution and on-demand reconciliation.
"""

from __future__ import annotations

from dataclasses import asdict
from typing import List, Literal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from services import dedup
from services.reconciliation import run_reconciliation

router = APIRouter()


class ResolveDuplicatesRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    primary_id: str = Field(min_length=1, alias="primaryId")
    duplicate_ids: List[str] = Field(min_length=1, alias="duplicateIds")
    strategy: Literal["merge", "keep_specific", "delete_duplicates"] = "merge"
    dry_run: bool = Field(default=True, alias="dryRun")


@router.get("/duplicates")
async def list_duplicate_groups(db: AsyncSession = Depends(get_db)):
    groups = await dedup.detect_duplicate_groups(db)
    return {
        "groups": [
            {"externalAssetId": group.external_asset_id, "assetIds": group.asset_ids, "count": group.count}
            for group in groups
        ],
        "total": len(groups),
    }


@router.post("/duplicates/resolve")
async def resolve_duplicates(request: ResolveDuplicatesRequest, db: AsyncSession = Depends(get_db)):
    """Collapse duplicates onto a primary. Defaults to a dry run."""
    try:
        report = await dedup.resolve(
            db,
            request.primary_id,
            request.duplicate_ids,
            strategy=request.strategy,
            dry_run=request.dry_run,
        )
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return asdict(report)


@router.post("/reconcile")
async def reconcile_now():
    """Run every reconciliation sweep once."""
    return await run_reconciliation()
