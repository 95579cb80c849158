"""
Cache endpoints.

Tiered cache statistics and manual invalidation.
"""

from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, Query

from ...core.exceptions import ScanPipeError
from ...services.cache.cache_manager import TieredCacheManager
from ...services.cache.invalidation import (
    CacheInvalidationService,
    InvalidationDimension,
)
from ..dependencies import get_cache_manager, get_invalidation_service
from ..errors import ScanPipeHTTPException

logger = structlog.get_logger()
router = APIRouter(prefix="/api/v1/cache", tags=["cache"])


@router.get("/stats")
async def get_cache_stats(
    namespace: Optional[str] = Query(None, description="Strategy namespace"),
    cache_manager: TieredCacheManager = Depends(get_cache_manager),
    invalidation: CacheInvalidationService = Depends(get_invalidation_service),
) -> Dict[str, Any]:
    return {
        "cache": cache_manager.get_stats(namespace).to_dict(),
        "tiers": cache_manager.get_tier_stats(),
        "invalidation": invalidation.get_stats(),
    }


@router.post("/invalidate/{subject}")
async def invalidate_subject(
    subject: str,
    dimension: Optional[List[InvalidationDimension]] = Query(
        None, description="Dimensions to clear (all when omitted)"
    ),
    reason: str = Query("manual", description="Label recorded in invalidation stats"),
    invalidation: CacheInvalidationService = Depends(get_invalidation_service),
) -> Dict[str, Any]:
    """Remove cached entries for a subject across both tiers."""
    try:
        removed = await invalidation.invalidate(subject, dimension, reason)
    except ScanPipeError as e:
        raise ScanPipeHTTPException(e) from e

    logger.info("Cache invalidated", subject=subject, reason=reason, removed=removed)
    return {"subject": subject, "removed": removed}
