"""Unit tests for CloudWatch metrics functionality."""

from unittest.mock import Mock, patch

import boto3
import pytest
from botocore.exceptions import ClientError
from moto import mock_aws

from reddit_relay.config import MetricsConfig
from reddit_relay.metrics import new_tick_metrics, send_cloudwatch_metrics

CONFIG = MetricsConfig(namespace="RedditRelay", region="eu-west-1")


def sent_metrics(mock_cloudwatch):
    all_metrics = []
    for call in mock_cloudwatch.put_metric_data.call_args_list:
        assert call.kwargs["Namespace"] == "RedditRelay"
        all_metrics.extend(call.kwargs["MetricData"])
    return {m["MetricName"]: m for m in all_metrics}


class TestCloudWatchMetricsUnit:
    """Unit tests for send_cloudwatch_metrics."""

    def test_send_metrics_success(self):
        metrics = {"items_found": 25, "items_new": 3, "messages_sent": 3, "errors": []}

        with patch("boto3.client") as mock_boto_client:
            mock_cloudwatch = Mock()
            mock_boto_client.return_value = mock_cloudwatch

            send_cloudwatch_metrics(metrics, "python", CONFIG, "test-exec-123")

            mock_boto_client.assert_called_with("cloudwatch", region_name="eu-west-1")
            sent = sent_metrics(mock_cloudwatch)

        assert sent["ItemsFound"]["Value"] == 25
        assert sent["NewItems"]["Value"] == 3
        assert sent["MessagesSent"]["Value"] == 3
        assert sent["Errors"]["Value"] == 0
        assert sent["TickSuccess"]["Value"] == 1
        for metric in sent.values():
            assert metric["Unit"] == "Count"
            assert metric["Dimensions"] == [{"Name": "Source", "Value": "python"}]

    def test_send_metrics_with_errors(self):
        metrics = new_tick_metrics()
        metrics["items_new"] = 2
        metrics["messages_sent"] = 1
        metrics["errors"] = ["delivery failed for abc"]

        with patch("boto3.client") as mock_boto_client:
            mock_cloudwatch = Mock()
            mock_boto_client.return_value = mock_cloudwatch

            send_cloudwatch_metrics(metrics, "rust", CONFIG)
            sent = sent_metrics(mock_cloudwatch)

        assert sent["Errors"]["Value"] == 1
        assert sent["TickSuccess"]["Value"] == 0

    def test_client_error_is_swallowed(self):
        with patch("boto3.client") as mock_boto_client:
            mock_cloudwatch = Mock()
            mock_cloudwatch.put_metric_data.side_effect = ClientError(
                error_response={"Error": {"Code": "AccessDenied", "Message": "Access denied"}},
                operation_name="PutMetricData",
            )
            mock_boto_client.return_value = mock_cloudwatch

            send_cloudwatch_metrics(new_tick_metrics(), "python", CONFIG)

            assert mock_cloudwatch.put_metric_data.called

    def test_disabled_config_skips_client(self):
        with patch("boto3.client") as mock_boto_client:
            send_cloudwatch_metrics(new_tick_metrics(), "python", MetricsConfig())

        mock_boto_client.assert_not_called()


@pytest.fixture
def aws_credentials(monkeypatch):
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")


@mock_aws
def test_metrics_reach_cloudwatch(aws_credentials):
    metrics = {"items_found": 2, "items_new": 2, "messages_sent": 2, "errors": []}

    send_cloudwatch_metrics(metrics, "python", CONFIG)

    client = boto3.client("cloudwatch", region_name="eu-west-1")
    names = {m["MetricName"] for m in client.list_metrics(Namespace="RedditRelay")["Metrics"]}
    assert names == {"ItemsFound", "NewItems", "MessagesSent", "Errors", "TickSuccess"}
