# Prometheus counters for the settlement engine. Request metrics are
# recorded by the middleware; payout and job counters by the batch job.

from time import monotonic

from fastapi import Request
from prometheus_client import Counter, Histogram
from starlette.middleware.base import BaseHTTPMiddleware


REQUEST_LATENCY = Histogram(
    "api_request_latency_seconds",
    "Latency of API requests in seconds",
    ["method", "endpoint"],
)
REQUEST_COUNT = Counter(
    "api_request_count_total",
    "Total API requests",
    ["method", "endpoint", "http_status"],
)

JOB_RUN_TOTAL = Counter(
    "job_run_total",
    "Background job runs",
    ["job_name", "status"],
)

# One increment per affiliate group per batch run.
AFFILIATE_PAYOUT_OUTCOMES_TOTAL = Counter(
    "affiliate_payout_outcomes_total",
    "Affiliate payout decisions grouped by outcome",
    ["outcome", "reason"],
)
AFFILIATE_PAYOUT_AMOUNT_CENTS_TOTAL = Counter(
    "affiliate_payout_amount_cents_total",
    "Commission cents transferred to affiliates",
    ["currency"],
)

ATTRIBUTIONS_CREATED_TOTAL = Counter(
    "affiliate_attributions_created_total",
    "Attributions created grouped by type and source",
    ["type", "source"],
)
COMMISSIONS_ACCRUED_TOTAL = Counter(
    "affiliate_commissions_accrued_total",
    "Commission ledger entries accrued grouped by event type",
    ["event_type"],
)


def _label(value: object | None, default: str = "unknown") -> str:
    if value is None:
        return default
    if isinstance(value, str) and not value.strip():
        return default
    return str(value)


def record_job_run(*, job_name: str, success: bool) -> None:
    JOB_RUN_TOTAL.labels(
        job_name=_label(job_name),
        status="success" if success else "failure",
    ).inc()


def record_payout_outcome(*, outcome: str, reason: str | None = None) -> None:
    AFFILIATE_PAYOUT_OUTCOMES_TOTAL.labels(outcome=_label(outcome), reason=_label(reason, "none")).inc()


def record_payout_amount(*, currency: str, amount_cents: int) -> None:
    AFFILIATE_PAYOUT_AMOUNT_CENTS_TOTAL.labels(currency=_label(currency)).inc(max(0, int(amount_cents)))


def record_attribution_created(*, attribution_type: str, source: str) -> None:
    ATTRIBUTIONS_CREATED_TOTAL.labels(type=_label(attribution_type), source=_label(source)).inc()


def record_commission_accrued(*, event_type: str) -> None:
    COMMISSIONS_ACCRUED_TOTAL.labels(event_type=_label(event_type)).inc()


class MetricsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start = monotonic()
        response = await call_next(request)
        route = request.scope.get("route")
        endpoint = getattr(route, "path", None) or request.url.path
        REQUEST_LATENCY.labels(method=request.method, endpoint=endpoint).observe(monotonic() - start)
        REQUEST_COUNT.labels(
            method=request.method,
            endpoint=endpoint,
            http_status=str(response.status_code),
        ).inc()
        return response
