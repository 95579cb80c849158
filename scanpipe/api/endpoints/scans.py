"""
Scan endpoints.

Serve wallet scans from cache or schedule them, with an optional bounded
wait on the quick path, plus bulk, refresh and analytics submission.
"""

from typing import List, Optional

import structlog
from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel, Field

from ...core.exceptions import ScanPipeError
from ...domain.jobs.entities import JobHandle
from ...services.scanning.scan_service import ScanResponse, ScanService
from ..dependencies import get_scan_service
from ..errors import ScanPipeHTTPException

logger = structlog.get_logger()
router = APIRouter(prefix="/api/v1/scans", tags=["scans"])


class BulkScanRequest(BaseModel):
    """Bulk scan request body."""

    wallets: List[str] = Field(..., description="Wallets to scan")
    chains: Optional[List[str]] = Field(None, description="Chains to include")


class JobAccepted(BaseModel):
    """Reference to a submitted job."""

    job_id: str
    queue_name: str
    deduplicated: bool = False

    @classmethod
    def from_handle(cls, handle: JobHandle) -> "JobAccepted":
        return cls(
            job_id=handle.id,
            queue_name=handle.queue_name,
            deduplicated=handle.deduplicated,
        )


@router.post("/bulk", status_code=status.HTTP_202_ACCEPTED)
async def submit_bulk_scan(
    request: BulkScanRequest,
    service: ScanService = Depends(get_scan_service),
) -> JobAccepted:
    """Schedule scans for many wallets through the bulk queue."""
    try:
        handle = service.request_bulk_scan(request.wallets, request.chains)
    except ScanPipeError as e:
        raise ScanPipeHTTPException(e) from e
    return JobAccepted.from_handle(handle)


@router.post("/{wallet}")
async def request_scan(
    wallet: str,
    response: Response,
    quick: bool = Query(False, description="Wait briefly for the result"),
    force_refresh: bool = Query(False, description="Bypass cached results"),
    chains: Optional[List[str]] = Query(None, description="Chains to include"),
    service: ScanService = Depends(get_scan_service),
) -> ScanResponse:
    """
    Scan a wallet.

    Returns 200 with data when served from cache or finished within the
    quick wait, otherwise 202 with the job reference to track.
    """
    try:
        result = await service.request_scan(
            wallet, chains=chains, quick=quick, force_refresh=force_refresh
        )
    except ScanPipeError as e:
        logger.warning("Scan request rejected", wallet=wallet, error=e.message)
        raise ScanPipeHTTPException(e) from e

    if result.status == "queued":
        response.status_code = status.HTTP_202_ACCEPTED
    return result


@router.post("/{wallet}/refresh", status_code=status.HTTP_202_ACCEPTED)
async def refresh_positions(
    wallet: str,
    position_id: Optional[str] = Query(None),
    chains: Optional[List[str]] = Query(None),
    service: ScanService = Depends(get_scan_service),
) -> JobAccepted:
    """Invalidate cached positions for a wallet and rescan it."""
    try:
        handle = service.request_position_refresh(wallet, position_id, chains)
    except ScanPipeError as e:
        raise ScanPipeHTTPException(e) from e
    return JobAccepted.from_handle(handle)


@router.post("/{wallet}/analytics", status_code=status.HTTP_202_ACCEPTED)
async def request_analytics(
    wallet: str,
    timeframe: str = Query("30d"),
    service: ScanService = Depends(get_scan_service),
) -> JobAccepted:
    try:
        handle = service.request_analytics(wallet, timeframe)
    except ScanPipeError as e:
        raise ScanPipeHTTPException(e) from e
    return JobAccepted.from_handle(handle)
