from prometheus_client import Counter, Histogram, REGISTRY


# already-registered collectors are reused so reloads and test runs don't fail
def get_or_create_metric(name, documentation, metric_type, **kwargs):
    try:
        return metric_type(name, documentation, **kwargs)
    except ValueError:
        return REGISTRY._names_to_collectors[name]


IMPORTS_TOTAL = get_or_create_metric(
    "schedule_imports_total",
    "Schedule imports by final status",
    Counter,
    labelnames=["source_type", "status"],
)

ENTRIES_CREATED_TOTAL = get_or_create_metric(
    "schedule_entries_created_total",
    "Schedule entries created from imports",
    Counter,
    labelnames=["processing_status"],
)

CONVERSIONS_TOTAL = get_or_create_metric(
    "schedule_conversions_total",
    "Entry to event conversions by outcome",
    Counter,
    labelnames=["outcome"],
)

CLAIMS_TOTAL = get_or_create_metric(
    "schedule_analysis_claims_total",
    "AI analysis claim attempts by outcome",
    Counter,
    labelnames=["outcome"],
)

LLM_REQUESTS_TOTAL = get_or_create_metric(
    "schedule_llm_requests_total",
    "Schedule optimizer LLM requests by outcome",
    Counter,
    labelnames=["outcome"],
)

LLM_LATENCY_SECONDS = get_or_create_metric(
    "schedule_llm_latency_seconds",
    "Schedule optimizer LLM latency",
    Histogram,
)

NOTIFICATIONS_CREATED_TOTAL = get_or_create_metric(
    "schedule_notifications_created_total",
    "Notifications created",
    Counter,
    labelnames=["type"],
)

NOTIFICATIONS_PROCESSED_TOTAL = get_or_create_metric(
    "schedule_notifications_processed_total",
    "Notifications processed by outcome",
    Counter,
    labelnames=["outcome"],
)


def record_claims(result) -> None:
    CLAIMS_TOTAL.labels(outcome="claimed").inc(len(result.success))
    CLAIMS_TOTAL.labels(outcome="locked").inc(len(result.already_locked))
    CLAIMS_TOTAL.labels(outcome="failed").inc(len(result.failed))
