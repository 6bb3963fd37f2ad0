"""CloudWatch metrics publishing for Reddit Relay."""

from typing import Any

import boto3

from .config import MetricsConfig
from .logging_config import create_execution_logger

# CloudWatch accepts at most this many metrics per put_metric_data call
BATCH_SIZE = 20


def new_tick_metrics() -> dict[str, Any]:
    """Empty metrics for one scheduler tick."""
    return {
        "items_found": 0,
        "items_new": 0,
        "messages_sent": 0,
        "errors": [],
    }


def send_cloudwatch_metrics(
    metrics: dict[str, Any],
    source_name: str,
    config: MetricsConfig,
    execution_id: str | None = None,
) -> None:
    """
    Send the metrics of one tick to CloudWatch.

    Failures are logged and never raised: metrics must not break polling.

    Args:
        metrics: Tick metrics as built by the scheduler
        source_name: Subreddit the tick polled, used as dimension
        config: Namespace and region
        execution_id: Execution ID for logging context
    """
    metrics_logger = create_execution_logger("cloudwatch_metrics", execution_id)

    if not config.enabled:
        metrics_logger.debug("CloudWatch metrics disabled", source_name=source_name)
        return

    try:
        cloudwatch = boto3.client("cloudwatch", region_name=config.region)

        total_errors = len(metrics["errors"])
        dimensions = [{"Name": "Source", "Value": source_name}]

        metric_data = [
            {
                "MetricName": "ItemsFound",
                "Value": metrics["items_found"],
                "Unit": "Count",
                "Dimensions": dimensions,
            },
            {
                "MetricName": "NewItems",
                "Value": metrics["items_new"],
                "Unit": "Count",
                "Dimensions": dimensions,
            },
            {
                "MetricName": "MessagesSent",
                "Value": metrics["messages_sent"],
                "Unit": "Count",
                "Dimensions": dimensions,
            },
            {
                "MetricName": "Errors",
                "Value": total_errors,
                "Unit": "Count",
                "Dimensions": dimensions,
            },
            {
                "MetricName": "TickSuccess",
                "Value": 1 if total_errors == 0 else 0,
                "Unit": "Count",
                "Dimensions": dimensions,
            },
        ]

        for i in range(0, len(metric_data), BATCH_SIZE):
            batch = metric_data[i : i + BATCH_SIZE]
            cloudwatch.put_metric_data(Namespace=config.namespace, MetricData=batch)

        metrics_logger.debug(
            "Sent metrics to CloudWatch",
            source_name=source_name,
            metrics_sent=len(metric_data),
            namespace=config.namespace,
        )

    except Exception as e:
        metrics_logger.error(
            f"Failed to send CloudWatch metrics: {e}",
            source_name=source_name,
            error=str(e),
        )
