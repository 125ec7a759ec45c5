from prometheus_client import Counter, Histogram

JOB_DURATION = Histogram(
    "parksync_job_duration_seconds",
    "Background job duration in seconds",
    ["job", "status"],
)
ERP_SYNC_ROWS = Counter(
    "parksync_erp_sync_rows_total",
    "Rows processed by the ERP sync engine",
    ["entity", "direction", "outcome"],
)
ERP_SYNC_PAGES = Counter(
    "parksync_erp_sync_pages_total",
    "ERP pages fetched by the sync controller",
    ["entity", "result"],
)


def observe_job(job: str, status: str, duration: float) -> None:
    JOB_DURATION.labels(job=job, status=status).observe(duration)


def observe_sync_rows(entity: str, direction: str, stats) -> None:
    """Add one page worth of direction stats to the row counter."""
    for outcome in ("created", "updated", "skipped", "errors"):
        count = getattr(stats, outcome, 0)
        if count:
            ERP_SYNC_ROWS.labels(entity=entity, direction=direction, outcome=outcome).inc(count)


def observe_sync_page(entity: str, result: str) -> None:
    ERP_SYNC_PAGES.labels(entity=entity, result=result).inc()
