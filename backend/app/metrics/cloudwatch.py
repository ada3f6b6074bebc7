"""CloudWatch custom metric emission for reconciliation business events.

All functions are fire-and-forget: they catch exceptions internally and log
warnings via structlog. They NEVER raise or block the caller.

Metrics are emitted via boto3 put_metric_data. Since boto3 is synchronous,
calls are dispatched to a ThreadPoolExecutor to avoid blocking the async event loop.
Nothing is sent unless METRICS_ENABLED is true.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

import boto3
import structlog

from app.core.config import get_settings

logger = structlog.get_logger(__name__)

NAMESPACE = "Reconciler/Business"

_cw_client = None
_executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="cw-metrics")


def _get_client():
    global _cw_client
    if _cw_client is None:
        _cw_client = boto3.client("cloudwatch", region_name=get_settings().metrics_region)
    return _cw_client


def _put_business_event(event_name: str, value: float = 1.0, source: str | None = None) -> None:
    """Synchronous put_metric_data for business events. Runs in thread pool."""
    dimensions = [{"Name": "Event", "Value": event_name}]
    if source:
        dimensions.append({"Name": "Source", "Value": source})
    try:
        _get_client().put_metric_data(
            Namespace=NAMESPACE,
            MetricData=[{
                "MetricName": "EventCount",
                "Dimensions": dimensions,
                "Value": value,
                "Unit": "Count",
                "Timestamp": datetime.now(timezone.utc),
            }],
        )
    except Exception as e:
        logger.warning("business_event_emit_failed", error=str(e), event=event_name)


async def emit_business_event(event_name: str, value: float = 1.0, source: str | None = None) -> None:
    """Emit business event metric. Non-blocking, fire-and-forget."""
    if not get_settings().metrics_enabled:
        return
    loop = asyncio.get_running_loop()
    loop.run_in_executor(_executor, _put_business_event, event_name, value, source)
