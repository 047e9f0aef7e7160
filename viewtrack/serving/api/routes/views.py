"""
Views API Endpoints

View start/end ingestion and the authenticated user's history.
"""

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from viewtrack.analytics.schemas import PopularProduct, RelatedProduct, UserEngagement
from viewtrack.errors import Conflict
from viewtrack.ingestion.ingress import ClientContext
from viewtrack.pipeline import ViewPipeline
from viewtrack.serving.api.caching import validated_json
from viewtrack.serving.api.deps import get_client_context, get_pipeline, require_user_id

router = APIRouter()


class ViewStartRequest(BaseModel):
    """View start payload"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    product_id: UUID
    source: Optional[str] = Field(default=None, max_length=64)
    referrer: Optional[str] = Field(default=None, max_length=2048)
    client_ts: Optional[datetime] = None


class ViewStartResponse(BaseModel):
    handle: Optional[str]
    ignored: bool = False


class ViewEndRequest(BaseModel):
    """View end payload; durations are clamped server-side"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    duration_seconds: float = Field(allow_inf_nan=False)


@router.post("", status_code=status.HTTP_201_CREATED, response_model=ViewStartResponse)
async def record_view_start(
    body: ViewStartRequest,
    context: ClientContext = Depends(get_client_context),
    pipeline: ViewPipeline = Depends(get_pipeline),
):
    """
    Record a view start.

    Returns an opaque handle for the matching view end. Crawler traffic is
    acknowledged with ``200`` and ``ignored: true``.
    """
    outcome = await pipeline.ingress.start_view(
        body.product_id,
        context,
        source=body.source,
        referrer=body.referrer,
        client_ts=body.client_ts,
    )
    if outcome.ignored:
        return JSONResponse({"handle": None, "ignored": True}, status_code=status.HTTP_200_OK)
    return ViewStartResponse(handle=outcome.handle)


@router.patch("/{handle}", status_code=status.HTTP_204_NO_CONTENT)
async def record_view_end(
    handle: str,
    body: ViewEndRequest,
    pipeline: ViewPipeline = Depends(get_pipeline),
):
    """Record a view end. A repeated end is a no-op answered with 200."""
    try:
        await pipeline.ingress.end_view(handle, body.duration_seconds)
    except Conflict as e:
        return JSONResponse(
            {
                "handle": handle,
                "durationSeconds": e.details.get("duration_seconds"),
                "alreadyEnded": True,
            },
            status_code=status.HTTP_200_OK,
        )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/history")
async def list_history(
    request: Request,
    page: int = Query(1),
    limit: int = Query(12),
    product_id: Optional[UUID] = Query(None, alias="productId"),
    device: Optional[str] = Query(None),
    cursor: Optional[str] = Query(None),
    user_id: str = Depends(require_user_id),
    pipeline: ViewPipeline = Depends(get_pipeline),
) -> Response:
    """
    Paginated view history of the authenticated user, newest first.

    Pass ``pagination.cursor`` from the first page to later pages to keep
    them pinned to the same snapshot.
    """
    history = await pipeline.history.list_user_history(
        user_id,
        page=page,
        limit=limit,
        product_id=product_id,
        device=device,
        cursor=cursor,
    )
    return validated_json(request, history, etag_exclude={"pagination": {"cursor"}})


@router.get("/engagement", response_model=UserEngagement)
async def user_engagement(
    days: int = Query(30),
    user_id: str = Depends(require_user_id),
    pipeline: ViewPipeline = Depends(get_pipeline),
) -> UserEngagement:
    return await pipeline.history.user_engagement(user_id, days=days)


@router.get("/popular", response_model=List[PopularProduct])
async def popular_products(
    days: int = Query(7),
    limit: int = Query(10),
    pipeline: ViewPipeline = Depends(get_pipeline),
) -> List[PopularProduct]:
    """Most viewed products over the last ``days`` UTC days."""
    return await pipeline.popular.get_popular(days=days, limit=limit)


@router.get("/related/{product_id}", response_model=List[RelatedProduct])
async def related_products(
    product_id: UUID,
    limit: int = Query(5),
    pipeline: ViewPipeline = Depends(get_pipeline),
) -> List[RelatedProduct]:
    """Products viewed by the same signed-in users over the last 30 days."""
    return await pipeline.related.get_related(product_id, limit=limit)
