"""
Tests for the AWS Cost Explorer reader.
"""

from datetime import date
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from spend_monitor.providers.aws import AWSCostReader
from spend_monitor.providers.base import (
    ConfigurationError,
    MalformedResponseError,
    ProviderId,
    ProviderUnavailableError,
    TimeGranularity,
)

START = date(2024, 3, 1)
END = date(2024, 3, 3)


def client_error(code, status=400):
    return ClientError(
        {
            "Error": {"Code": code, "Message": f"{code} happened"},
            "ResponseMetadata": {"HTTPStatusCode": status},
        },
        "GetCostAndUsage",
    )


def result_by_time(day, groups):
    return {
        "TimePeriod": {"Start": day, "End": day},
        "Groups": [
            {
                "Keys": [service],
                "Metrics": {"UnblendedCost": {"Amount": amount, "Unit": "USD"}},
            }
            for service, amount in groups
        ],
    }


@pytest.fixture
def ce_client():
    return MagicMock()


@pytest.fixture
def reader(ce_client):
    reader = AWSCostReader({"retry_delay": 0})
    reader.cost_explorer_client = ce_client
    return reader


class TestAWSCostReader:
    """Test cases for AWSCostReader."""

    def test_provider_id(self):
        assert AWSCostReader().provider == ProviderId.AWS

    def test_request_params(self, reader):
        """Test that the window is passed through as an exclusive end date."""
        params = reader._prepare_request_params(START, END, TimeGranularity.MONTHLY)

        assert params["TimePeriod"] == {"Start": "2024-03-01", "End": "2024-03-03"}
        assert params["Granularity"] == "MONTHLY"
        assert params["Metrics"] == ["UnblendedCost"]
        assert params["GroupBy"] == [{"Type": "DIMENSION", "Key": "SERVICE"}]

    async def test_get_range_parses_and_paginates(self, reader, ce_client):
        """Test that pages are followed and folded into one payload."""
        ce_client.get_cost_and_usage.side_effect = [
            {
                "ResultsByTime": [
                    result_by_time("2024-03-01", [("Amazon EC2", "10.50"), ("Amazon S3", "2.00")])
                ],
                "NextPageToken": "page-2",
            },
            {"ResultsByTime": [result_by_time("2024-03-02", [("Amazon EC2", "4.50")])]},
        ]

        payload = await reader.get_range(START, END)

        assert ce_client.get_cost_and_usage.call_count == 2
        assert ce_client.get_cost_and_usage.call_args_list[1].kwargs["NextPageToken"] == "page-2"
        assert payload["totalCost"] == "17.00"
        assert payload["currency"] == "USD"
        assert payload["period"] == {"start": "2024-03-01", "end": "2024-03-03"}
        assert payload["services"] == [
            {"name": "Amazon EC2", "cost": "15.00"},
            {"name": "Amazon S3", "cost": "2.00"},
        ]
        assert payload["trends"] == [
            {"date": "2024-03-01", "cost": "12.50"},
            {"date": "2024-03-02", "cost": "4.50"},
        ]

    async def test_ungrouped_results_use_total(self, reader, ce_client):
        ce_client.get_cost_and_usage.return_value = {
            "ResultsByTime": [
                {
                    "TimePeriod": {"Start": "2024-03-01"},
                    "Groups": [],
                    "Total": {"UnblendedCost": {"Amount": "3", "Unit": "USD"}},
                }
            ]
        }

        payload = await reader.get_range(START, END)

        assert payload["totalCost"] == "3"
        assert payload["services"] == []

    async def test_throttling_is_retried(self, reader, ce_client):
        """Test that a throttled request is retried before giving up."""
        ce_client.get_cost_and_usage.side_effect = [
            client_error("Throttling"),
            {"ResultsByTime": [result_by_time("2024-03-01", [("Amazon EC2", "1")])]},
        ]

        payload = await reader.get_range(START, END)

        assert payload["totalCost"] == "1"
        assert ce_client.get_cost_and_usage.call_count == 2

    async def test_persistent_throttling_is_unavailable(self, reader, ce_client):
        ce_client.get_cost_and_usage.side_effect = client_error("Throttling", status=429)

        with pytest.raises(ProviderUnavailableError) as exc_info:
            await reader.get_range(START, END)

        assert exc_info.value.status_code == 429
        assert ce_client.get_cost_and_usage.call_count == reader.max_retries

    async def test_rejected_credentials_are_configuration_errors(self, reader, ce_client):
        ce_client.get_cost_and_usage.side_effect = client_error("AccessDeniedException", status=403)

        with pytest.raises(ConfigurationError):
            await reader.get_range(START, END)

    async def test_connection_failure_is_unavailable(self, reader, ce_client):
        ce_client.get_cost_and_usage.side_effect = EndpointConnectionError(
            endpoint_url="https://ce.us-east-1.amazonaws.com"
        )

        with pytest.raises(ProviderUnavailableError):
            await reader.get_range(START, END)

    async def test_malformed_response(self, reader, ce_client):
        ce_client.get_cost_and_usage.return_value = {"ResultsByTime": [{"Groups": []}]}

        with pytest.raises(MalformedResponseError):
            await reader.get_range(START, END)

    async def test_empty_window_is_rejected(self, reader):
        with pytest.raises(ValueError):
            await reader.get_range(END, START)

    def test_mismatched_access_keys(self):
        reader = AWSCostReader({"access_key_id": "AKIA123"})

        with pytest.raises(ConfigurationError):
            reader._get_client()

    def test_profile_session(self):
        reader = AWSCostReader({"profile": "billing"})

        with patch("spend_monitor.providers.aws.boto3.Session") as session_cls:
            reader._get_client()

        session_cls.assert_called_once_with(profile_name="billing")
        assert session_cls.return_value.client.call_args.args == ("ce",)
