from .logger import AnalyticsLogger, AnalyticsSink, build_record
from .metrics import RelayMetrics

__all__ = [
    "AnalyticsLogger",
    "AnalyticsSink",
    "RelayMetrics",
    "build_analytics",
    "build_record",
]


def build_analytics(config) -> tuple[AnalyticsLogger, RelayMetrics]:
    """Create the logger for an AnalyticsConfig.

    The in-process collector backs the stats endpoint and stays empty when
    analytics are disabled. BigQuery is added on top when configured.
    """
    metrics = RelayMetrics(max_events=config.max_events)
    sinks: list[AnalyticsSink] = []
    if config.backend != "none":
        sinks.append(metrics)
    if config.backend == "bigquery":
        from .bigquery import BigQuerySink
        sinks.append(BigQuerySink(config.dataset, config.table))
    return AnalyticsLogger(sinks), metrics
