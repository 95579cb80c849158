"""
Scan Service

Composes the tiered cache, job registry, bounded wait and invalidation into
the scan workflow: serve from cache, otherwise submit a job, optionally wait
briefly for it, and write successful results through both cache tiers.
"""

import logging
from typing import Any, Dict, List, Literal, Optional, Protocol, Sequence

from pydantic import BaseModel

from ...constants import (
    ANALYTICS_STEPS,
    DEFAULT_SCAN_PRIORITY,
    ESTIMATED_DURATION_MS,
    QUICK_SCAN_PRIORITY,
    REFRESH_STEPS,
    SCAN_STEPS,
    QueueName,
    get_current_timestamp,
)
from ...core.config import Settings, get_settings
from ...core.exceptions import ValidationError
from ...domain.cache.value_objects import CacheKey, CacheStrategies, CacheStrategy
from ...domain.jobs.entities import JobHandle, JobOptions
from ...domain.jobs.payloads import (
    QuickScanPayload,
    WalletScanPayload,
    validate_subject,
)
from ..cache.cache_manager import TieredCacheManager
from ..cache.invalidation import (
    CacheInvalidationService,
    InvalidationDimension,
    InvalidationReason,
)
from ..queues.queue_manager import QueueManager
from ..queues.waiter import wait_for_job
from ..queues.workers import JobContext

logger = logging.getLogger(__name__)


class Scanner(Protocol):
    """Domain scan function producing a wallet's positions."""

    async def scan(
        self, wallet: str, chains: Optional[List[str]], context: JobContext
    ) -> Dict[str, Any]:
        ...


class NullScanner:
    """Scanner without protocol integrations; returns an empty portfolio."""

    async def scan(
        self, wallet: str, chains: Optional[List[str]], context: JobContext
    ) -> Dict[str, Any]:
        return {
            "wallet": wallet,
            "chains": list(chains or []),
            "positions": [],
            "total_value_usd": 0.0,
            "scanned_at": get_current_timestamp().isoformat(),
        }


def _require_wallet(wallet: str) -> str:
    try:
        return validate_subject(wallet)
    except ValueError as e:
        raise ValidationError(str(e), field="wallet", value=wallet) from e


def is_valid_scan_result(value: Any) -> bool:
    """Freshness predicate for cached scan results."""
    return (
        isinstance(value, dict)
        and isinstance(value.get("wallet"), str)
        and isinstance(value.get("positions"), list)
    )


def summarize_portfolio(scan: Dict[str, Any], timeframe: str) -> Dict[str, Any]:
    """Aggregate a scan result into portfolio analytics."""
    positions = scan.get("positions", [])
    by_chain: Dict[str, float] = {}
    by_protocol: Dict[str, float] = {}
    total = 0.0

    for position in positions:
        value = float(position.get("value_usd", 0.0) or 0.0)
        total += value
        chain = position.get("chain", "unknown")
        protocol = position.get("protocol", "unknown")
        by_chain[chain] = by_chain.get(chain, 0.0) + value
        by_protocol[protocol] = by_protocol.get(protocol, 0.0) + value

    top = sorted(
        positions, key=lambda p: float(p.get("value_usd", 0.0) or 0.0), reverse=True
    )[:5]
    return {
        "wallet": scan.get("wallet"),
        "timeframe": timeframe,
        "position_count": len(positions),
        "total_value_usd": round(total, 2),
        "value_by_chain": by_chain,
        "value_by_protocol": by_protocol,
        "top_positions": top,
        "generated_at": get_current_timestamp().isoformat(),
    }


class ScanResponse(BaseModel):
    """Answer to a scan request."""

    status: Literal["cached", "completed", "failed", "queued"]
    wallet: str
    data: Optional[Dict[str, Any]] = None
    job_id: Optional[str] = None
    queue_name: Optional[str] = None
    error: Optional[str] = None
    estimated_duration_ms: Optional[int] = None
    deduplicated: bool = False


class ScanService:
    """Scan workflow over the cache and the job registry."""

    def __init__(
        self,
        queue_manager: QueueManager,
        cache_manager: TieredCacheManager,
        invalidation: CacheInvalidationService,
        scanner: Optional[Scanner] = None,
        settings: Optional[Settings] = None,
        strategy: CacheStrategy = CacheStrategies.SCANS,
        analytics_strategy: CacheStrategy = CacheStrategies.ANALYTICS,
    ):
        self.queue_manager = queue_manager
        self.cache_manager = cache_manager
        self.invalidation = invalidation
        self.scanner = scanner or NullScanner()
        self.settings = settings or get_settings()
        self.strategy = strategy
        self.analytics_strategy = analytics_strategy

    def register_queues(self) -> None:
        """Register the scan workflow's worker functions."""
        self.queue_manager.register_queue(QueueName.WALLET_SCAN.value, self._handle_scan)
        self.queue_manager.register_queue(QueueName.QUICK_SCAN.value, self._handle_scan)
        self.queue_manager.register_queue(QueueName.BULK_SCAN.value, self._handle_bulk_scan)
        self.queue_manager.register_queue(
            QueueName.POSITION_REFRESH.value, self._handle_position_refresh
        )
        self.queue_manager.register_queue(
            QueueName.PORTFOLIO_ANALYTICS.value, self._handle_analytics
        )

    @staticmethod
    def scan_job_id(queue_name: str, wallet: str, chains: Optional[Sequence[str]]) -> str:
        """Deduplication key for a scan of one wallet and chain selection."""
        suffix = f"-{','.join(sorted(chains))}" if chains else ""
        return f"{queue_name}-{wallet}{suffix}"

    async def get_cached_scan(
        self, wallet: str, chains: Optional[List[str]] = None
    ) -> Optional[Dict[str, Any]]:
        return await self.cache_manager.get(
            CacheKey.scan(wallet, chains),
            self.strategy,
            freshness_predicate=is_valid_scan_result,
        )

    def submit_scan(
        self,
        wallet: str,
        chains: Optional[List[str]] = None,
        quick: bool = False,
        force_refresh: bool = False,
    ) -> JobHandle:
        """
        Submit a scan job, reusing an in-flight scan of the same wallet.

        Full and quick scans of the same wallet and chains share one
        execution: a request of either kind joins a queued or running job of
        the other kind instead of dispatching a second one.
        """
        wallet = _require_wallet(wallet)
        full_queue = QueueName.WALLET_SCAN.value
        quick_queue = QueueName.QUICK_SCAN.value
        full_job_id = self.scan_job_id(full_queue, wallet, chains)
        quick_job_id = self.scan_job_id(quick_queue, wallet, chains)

        other_queue, other_job_id = (
            (full_queue, full_job_id) if quick else (quick_queue, quick_job_id)
        )
        in_flight = self.queue_manager.get_job(other_queue, other_job_id)
        if in_flight is not None and in_flight.status.is_active:
            logger.info(
                f"Scan of {wallet} joins in-flight job {other_job_id}",
                extra={"queue_name": other_queue, "quick": quick},
            )
            return JobHandle(id=other_job_id, queue_name=other_queue, deduplicated=True)

        if quick:
            return self.queue_manager.add_job(
                quick_queue,
                "scan",
                QuickScanPayload(wallet=wallet, chains=chains),
                JobOptions(priority=QUICK_SCAN_PRIORITY, job_id=quick_job_id),
            )

        return self.queue_manager.add_job(
            full_queue,
            "scan",
            WalletScanPayload(wallet=wallet, chains=chains, force_refresh=force_refresh),
            JobOptions(priority=DEFAULT_SCAN_PRIORITY, job_id=full_job_id),
        )

    async def request_scan(
        self,
        wallet: str,
        chains: Optional[List[str]] = None,
        quick: bool = False,
        force_refresh: bool = False,
    ) -> ScanResponse:
        """
        Serve a scan from cache or schedule it.

        With ``quick`` the call waits a bounded time for the job and returns
        its result when it finishes in time; otherwise it returns the job
        handle for asynchronous tracking.
        """
        wallet = _require_wallet(wallet)

        if not force_refresh:
            cached = await self.get_cached_scan(wallet, chains)
            if cached is not None:
                return ScanResponse(status="cached", wallet=wallet, data=cached)

        handle = self.submit_scan(wallet, chains, quick=quick, force_refresh=force_refresh)
        queued = ScanResponse(
            status="queued",
            wallet=wallet,
            job_id=handle.id,
            queue_name=handle.queue_name,
            estimated_duration_ms=ESTIMATED_DURATION_MS["scan"],
            deduplicated=handle.deduplicated,
        )
        if not quick:
            return queued

        outcome = await wait_for_job(
            self.queue_manager,
            handle,
            poll_interval_ms=self.settings.QUICK_SCAN_POLL_INTERVAL_MS,
            timeout_ms=self.settings.QUICK_SCAN_TIMEOUT_MS,
        )
        if outcome.succeeded:
            return queued.model_copy(
                update={
                    "status": "completed",
                    "data": outcome.result,
                    "estimated_duration_ms": None,
                }
            )
        if outcome.failed:
            return queued.model_copy(
                update={
                    "status": "failed",
                    "error": outcome.error,
                    "estimated_duration_ms": None,
                }
            )
        return queued

    def request_bulk_scan(
        self, wallets: List[str], chains: Optional[List[str]] = None
    ) -> JobHandle:
        return self.queue_manager.add_job(
            QueueName.BULK_SCAN.value,
            "bulk_scan",
            {"kind": "bulk_scan", "wallets": wallets, "chains": chains},
        )

    def request_position_refresh(
        self,
        wallet: str,
        position_id: Optional[str] = None,
        chains: Optional[List[str]] = None,
    ) -> JobHandle:
        queue = QueueName.POSITION_REFRESH.value
        wallet = _require_wallet(wallet)
        return self.queue_manager.add_job(
            queue,
            "position_refresh",
            {
                "kind": "position_refresh",
                "wallet": wallet,
                "position_id": position_id,
                "chains": chains,
            },
            JobOptions(job_id=self.scan_job_id(queue, wallet, chains)),
        )

    def request_analytics(self, wallet: str, timeframe: str = "30d") -> JobHandle:
        queue = QueueName.PORTFOLIO_ANALYTICS.value
        wallet = _require_wallet(wallet)
        return self.queue_manager.add_job(
            queue,
            "portfolio_analytics",
            {"kind": "portfolio_analytics", "wallet": wallet, "timeframe": timeframe},
            JobOptions(job_id=f"{queue}-{wallet}-{timeframe}"),
        )

    async def _run_scan(
        self, wallet: str, chains: Optional[List[str]], context: JobContext
    ) -> Dict[str, Any]:
        result = await self.scanner.scan(wallet, chains, context)
        if not is_valid_scan_result(result):
            raise ValueError(f"Scanner returned an invalid result for {wallet}")
        return result

    async def _handle_scan(self, payload, context: JobContext) -> Dict[str, Any]:
        await context.advance_to(SCAN_STEPS[0])
        await context.advance_to(SCAN_STEPS[1])
        await context.advance_to(SCAN_STEPS[2])
        result = await self._run_scan(payload.wallet, payload.chains, context)

        await context.advance_to(SCAN_STEPS[5])
        stored = await self.cache_manager.set(
            CacheKey.scan(payload.wallet, payload.chains), result, self.strategy
        )
        if not stored:
            logger.warning(f"Scan result for {payload.wallet} cached in fast tier only")
        return result

    async def _handle_bulk_scan(self, payload, context: JobContext) -> Dict[str, Any]:
        jobs = []
        total = len(payload.wallets)
        for index, wallet in enumerate(payload.wallets, start=1):
            handle = self.submit_scan(wallet, payload.chains)
            jobs.append(
                {
                    "wallet": wallet,
                    "job_id": handle.id,
                    "queue_name": handle.queue_name,
                    "deduplicated": handle.deduplicated,
                }
            )
            await context.report_progress(index * 100 / total, current_step=wallet)
        return {"jobs": jobs}

    async def _handle_position_refresh(
        self, payload, context: JobContext
    ) -> Dict[str, Any]:
        await context.advance_to(REFRESH_STEPS[0])
        removed = await self.invalidation.invalidate(
            payload.wallet,
            [
                InvalidationDimension.SCAN,
                InvalidationDimension.POSITIONS,
                InvalidationDimension.ANALYTICS,
            ],
            reason=InvalidationReason.POSITION_CHANGE,
        )

        await context.advance_to(REFRESH_STEPS[1])
        result = await self._run_scan(payload.wallet, payload.chains, context)

        await context.advance_to(REFRESH_STEPS[2])
        await self.cache_manager.set(
            CacheKey.scan(payload.wallet, payload.chains), result, self.strategy
        )
        return {
            "wallet": payload.wallet,
            "position_id": payload.position_id,
            "invalidated_entries": removed,
            "positions": len(result["positions"]),
        }

    async def _handle_analytics(self, payload, context: JobContext) -> Dict[str, Any]:
        await context.advance_to(ANALYTICS_STEPS[0])

        async def _load_scan() -> Dict[str, Any]:
            return await self._run_scan(payload.wallet, None, context)

        scan = await self.cache_manager.get(
            CacheKey.scan(payload.wallet),
            self.strategy,
            loader=_load_scan,
            freshness_predicate=is_valid_scan_result,
        )
        if scan is None:
            raise ValueError(f"No scan data available for {payload.wallet}")

        await context.advance_to(ANALYTICS_STEPS[1])
        analytics = summarize_portfolio(scan, payload.timeframe)

        await context.advance_to(ANALYTICS_STEPS[4])
        await self.cache_manager.set(
            CacheKey.analytics(payload.wallet, payload.timeframe),
            analytics,
            self.analytics_strategy,
        )
        return analytics
