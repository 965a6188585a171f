from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from services.payments.dependencies import get_dedup
from services.payments.settings import SERVICE_NAME

router = APIRouter(tags=["system"])


@router.get("/health")
async def health(dedup=Depends(get_dedup)):
    return {
        "status": "ok",
        "service": SERVICE_NAME,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "dedup": await dedup.stats(),
    }


@router.get("/metrics", include_in_schema=False)
async def metrics(dedup=Depends(get_dedup)):
    await dedup.stats()
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
