"""
Server-Sent Events (SSE) Streaming Service

Streams job status events from a subscription as SSE frames with:
- Keepalive comments to prevent connection timeouts
- Automatic close once every watched job reached a terminal state
- Subscription cleanup on disconnect
"""

from typing import AsyncGenerator, Optional, Set

import structlog

from .publisher import Subscription

logger = structlog.get_logger()

KEEPALIVE_FRAME = ": keepalive\n\n"


def format_sse(data: str, event: Optional[str] = None) -> str:
    """Format a payload as an SSE frame."""
    prefix = f"event: {event}\n" if event else ""
    return f"{prefix}data: {data}\n\n"


class SSEService:
    """Turns subscriptions into SSE frame streams."""

    def __init__(self, keepalive_interval: float = 15.0):
        if keepalive_interval <= 0:
            raise ValueError("keepalive_interval must be positive")
        self.keepalive_interval = keepalive_interval

    async def stream(self, subscription: Subscription) -> AsyncGenerator[str, None]:
        """
        Yield SSE frames for every event delivered to the subscription.

        When the subscription is filtered to specific job ids the stream
        ends after all of them have finished. The subscription is
        cancelled when the stream ends or the client disconnects.

        Yields:
            SSE formatted event strings
        """
        finished: Set[str] = set()

        logger.info(
            "SSE: stream opened",
            subscription_id=subscription.id,
            topic=subscription.topic,
            job_ids=sorted(subscription.job_ids) if subscription.job_ids else None,
        )

        try:
            while not subscription.closed:
                event = await subscription.get(timeout=self.keepalive_interval)
                if event is None:
                    if subscription.closed:
                        break
                    yield KEEPALIVE_FRAME
                    continue

                yield format_sse(event.model_dump_json(), event=event.type)

                if event.is_terminal and subscription.job_ids is not None:
                    finished.add(event.job_id)
                    if finished >= subscription.job_ids:
                        logger.info(
                            "SSE: all watched jobs finished, closing stream",
                            subscription_id=subscription.id,
                        )
                        break
        finally:
            subscription.cancel()
            logger.info("SSE: stream closed", subscription_id=subscription.id)
