"""
Processing provider webhook router.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from services import webhook_ingestion
from services.errors import InvalidSignature

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/processing")
async def receive_processing_webhook(
    request: Request,
    mux_signature: Optional[str] = Header(default=None, alias=webhook_ingestion.SIGNATURE_HEADER),
    db: AsyncSession = Depends(get_db),
):
    """
    Provider status callback.
    401 for bad signatures, 503 when processing overruns its budget so the
    provider redelivers, 200 for everything else (including duplicates).
    """
    raw_body = await request.body()
    try:
        result = await asyncio.wait_for(
            webhook_ingestion.handle(db, raw_body, mux_signature),
            timeout=float(settings.WEBHOOK_TIMEOUT_SECONDS),
        )
    except InvalidSignature as exc:
        logger.warning("Rejected webhook signature: %s", exc)
        return JSONResponse(
            status_code=401,
            content={"outcome": "rejected_signature", "detail": str(exc)},
        )
    except asyncio.TimeoutError:
        logger.error("Webhook processing exceeded %ss; asking provider to redeliver", settings.WEBHOOK_TIMEOUT_SECONDS)
        return JSONResponse(status_code=503, content={"outcome": "timeout"})

    return {
        "outcome": result.outcome,
        "eventId": result.event_id,
        "eventType": result.event_type,
        "assetId": result.asset_id,
        "detail": result.detail,
    }
