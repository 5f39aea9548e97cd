"""wabridge – Instrumentation.

structlog configuration with PII masking and the Prometheus metrics the
gateway exposes on ``/metrics``.
"""

import logging

import structlog
from fastapi import APIRouter, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, generate_latest

from wabridge.integrations.pii_filter import filter_log_record

router = APIRouter(tags=["monitoring"])

EVENTS_INGESTED = Counter(
    "wabridge_events_ingested_total",
    "Message events accepted by the ingestion pipeline",
    ["tenant_id", "direction"],
)

DUPLICATES_DROPPED = Counter(
    "wabridge_duplicates_dropped_total",
    "Message events dropped as duplicates",
    ["tenant_id"],
)

REPLIES_SENT = Counter(
    "wabridge_replies_sent_total",
    "Automated replies delivered, by origin (AUTO/AI)",
    ["tenant_id", "origin"],
)

BROADCAST_SENDS = Counter(
    "wabridge_broadcast_sends_total",
    "Broadcast deliveries by outcome",
    ["tenant_id", "outcome"],
)

ACTIVE_SESSIONS = Gauge(
    "wabridge_active_sessions",
    "Tenant sessions currently registered",
)


@router.get("/metrics")
def metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


def setup_logging(level: str = "info") -> None:
    """Configure structlog with PII masking."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            filter_log_record,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level.upper(), logging.INFO)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
