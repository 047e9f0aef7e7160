"""
Internal API Endpoints

Called by collaborator services with the shared ``X-Internal-Token``:
count-change broadcasts and rollup maintenance.
"""

from datetime import date
from typing import Any, Dict, Literal
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from viewtrack.pipeline import ViewPipeline
from viewtrack.serving.api.deps import get_pipeline, require_internal_token

logger = structlog.get_logger(__name__)
router = APIRouter(dependencies=[Depends(require_internal_token)])


class ProductEventRequest(BaseModel):
    """Count change or coarse product update to broadcast"""
    event: Literal["upvoteCount", "bookmarkCount", "commentCount", "viewCount", "productUpdate"]
    data: Dict[str, Any] = Field(default_factory=dict)


@router.post("/products/{product_id}/events", status_code=202)
async def publish_product_event(
    product_id: UUID,
    body: ProductEventRequest,
    pipeline: ViewPipeline = Depends(get_pipeline),
) -> Dict[str, Any]:
    data = {"productId": str(product_id), **body.data}
    await pipeline.notifier.publish(product_id, body.event, data)
    logger.info("Product event relayed", product_id=str(product_id), notifier_event=body.event)
    return {"accepted": True}


@router.post("/products/{product_id}/reseal")
async def reseal_product_day(
    product_id: UUID,
    day: date = Query(..., alias="date"),
    pipeline: ViewPipeline = Depends(get_pipeline),
) -> Dict[str, Any]:
    """Rebuild one product-day from raw events, even when sealed."""
    result = await pipeline.aggregator.reseal(product_id, day)
    return {
        "productId": str(product_id),
        "date": day.isoformat(),
        "viewCount": result["view_count"],
        "uniqueCount": result["unique_count"],
    }


@router.post("/reconcile")
async def run_reconciliation(pipeline: ViewPipeline = Depends(get_pipeline)) -> Dict[str, Any]:
    """Run a reconciliation sweep now."""
    return await pipeline.aggregator.reconcile()
