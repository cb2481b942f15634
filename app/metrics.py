from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "path", "status"],
)
REQUEST_ERRORS = Counter(
    "http_request_errors_total",
    "Total HTTP 5xx responses",
    ["method", "path", "status"],
)

WEBHOOK_EVENTS = Counter(
    "billing_webhook_events_total",
    "Inbound gateway webhook events by outcome",
    ["gateway", "event_type", "outcome"],
)
GATEWAY_REQUESTS = Counter(
    "billing_gateway_requests_total",
    "Outbound payment gateway calls",
    ["gateway", "operation", "outcome"],
)
GATEWAY_LATENCY = Histogram(
    "billing_gateway_request_duration_seconds",
    "Outbound payment gateway call latency",
    ["gateway", "operation"],
)

JOB_DURATION = Histogram(
    "job_duration_seconds",
    "Background job duration",
    ["task", "status"],
)


def observe_job(task_name: str, status: str, duration: float) -> None:
    JOB_DURATION.labels(task=task_name, status=status).observe(duration)


def observe_webhook(gateway: str, event_type: str, outcome: str) -> None:
    WEBHOOK_EVENTS.labels(gateway=gateway, event_type=event_type, outcome=outcome).inc()


def observe_gateway_call(
    gateway: str, operation: str, outcome: str, duration: float
) -> None:
    GATEWAY_REQUESTS.labels(gateway=gateway, operation=operation, outcome=outcome).inc()
    GATEWAY_LATENCY.labels(gateway=gateway, operation=operation).observe(duration)
