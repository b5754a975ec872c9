from fastapi import APIRouter, Depends, HTTPException

from ..schemas.pipeline import CacheInvalidateOut, CacheInvalidateRequest, CacheStatsOut
from ..services.caching import CacheManager, get_cache_manager
from ..services.subjects import normalize_subject
from .routes_pipeline import verify_api_key

router = APIRouter(tags=["cache"])


@router.post("/cache/invalidate", response_model=CacheInvalidateOut)
def invalidate_cache(
    payload: CacheInvalidateRequest,
    cache: CacheManager = Depends(get_cache_manager),
    _: None = Depends(verify_api_key),
):
    """
    Drop one cached analysis, or every analysis for the subject when
    ``analysis_type`` is omitted. Entries are shared by all callers.
    """
    try:
        deleted = cache.invalidate(payload.subject, payload.analysis_type)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {
        "subject": normalize_subject(payload.subject),
        "analysis_type": payload.analysis_type,
        "deleted": deleted,
    }


@router.get("/cache/stats", response_model=CacheStatsOut)
def cache_stats(
    subject: str | None = None,
    cache: CacheManager = Depends(get_cache_manager),
    _: None = Depends(verify_api_key),
):
    try:
        return cache.stats(subject)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
