"""
Tests for imds_audit/capabilities.py boto3-backed capabilities.

Covers:
- Ec2RegionLister against moto and with nameless entries
- Ec2InstancePager over the describe_instances paginator, page size and lookahead errors
- CloudWatchMetricSource request shape and datapoint extraction
"""
import os
import sys
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import boto3
import pytest
from moto import mock_aws

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from imds_audit.capabilities import (
    CloudWatchMetricSource,
    Ec2InstancePager,
    Ec2RegionLister,
    make_instance_pager,
    make_metric_source,
    make_region_lister,
)
from imds_audit.constants import METRIC_NAME, METRIC_NAMESPACE
from imds_audit.models import MetricWindow


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def aws_credentials():
    """Mocked AWS Credentials for moto."""
    os.environ["AWS_ACCESS_KEY_ID"] = "testing"
    os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
    os.environ["AWS_SECURITY_TOKEN"] = "testing"
    os.environ["AWS_SESSION_TOKEN"] = "testing"
    os.environ["AWS_DEFAULT_REGION"] = "us-east-1"


@pytest.fixture
def mock_session(aws_credentials):
    """Create a mocked boto3 session."""
    return boto3.Session(region_name="us-east-1")


@pytest.fixture
def window():
    end = datetime(2026, 10, 1, tzinfo=timezone.utc)
    return MetricWindow(start_time=end - timedelta(days=450), end_time=end, period=38880000)


# =============================================================================
# Region Lister Tests
# =============================================================================

class TestEc2RegionLister:
    """Tests for Ec2RegionLister."""

    @mock_aws
    def test_lists_enabled_regions(self, mock_session):
        regions = make_region_lister(mock_session, "us-west-2").list_regions()
        assert isinstance(regions, list)
        assert "us-east-1" in regions
        assert "us-west-2" in regions

    def test_keeps_api_order_and_drops_nameless(self):
        client = Mock()
        client.describe_regions.return_value = {
            'Regions': [{'RegionName': 'us-west-2'}, {'Endpoint': 'x'}, {'RegionName': 'us-east-1'}]
        }
        assert Ec2RegionLister(client).list_regions() == ['us-west-2', 'us-east-1']
        client.describe_regions.assert_called_once_with(AllRegions=False)

    def test_no_regions(self):
        client = Mock()
        client.describe_regions.return_value = {}
        assert Ec2RegionLister(client).list_regions() == []


# =============================================================================
# Instance Pager Tests
# =============================================================================

def paginated_client(pages):
    """Mock EC2 client whose describe_instances paginator yields pages."""
    client = Mock()
    client.get_paginator.return_value.paginate.return_value = pages
    return client


def failing_pages(pages, error):
    """Yield pages, then raise error, the way a PageIterator surfaces API failures."""
    yield from pages
    raise error


class TestEc2InstancePager:
    """Tests for Ec2InstancePager."""

    def test_uses_describe_instances_paginator(self):
        client = paginated_client([{'Reservations': []}])
        Ec2InstancePager(client)
        client.get_paginator.assert_called_once_with('describe_instances')
        client.get_paginator.return_value.paginate.assert_called_once_with(PaginationConfig={})
        client.describe_instances.assert_not_called()

    def test_serves_pages_in_order(self):
        pages = [
            {'Reservations': [{'Instances': [{'InstanceId': 'i-1'}]}]},
            {'Reservations': [{'Instances': [{'InstanceId': 'i-2'}]}]},
            {'Reservations': [{'Instances': [{'InstanceId': 'i-3'}]}]},
        ]
        pager = Ec2InstancePager(paginated_client(pages))

        served = []
        while pager.has_more_pages():
            served.append(pager.next_page())

        assert served == pages

    def test_has_more_pages_is_repeatable(self):
        pager = Ec2InstancePager(paginated_client([{'Reservations': []}]))
        assert pager.has_more_pages()
        assert pager.has_more_pages()
        pager.next_page()
        assert not pager.has_more_pages()
        assert not pager.has_more_pages()

    def test_next_page_without_has_more_pages(self):
        pager = Ec2InstancePager(paginated_client([{'Reservations': [], 'n': 1}, {'Reservations': [], 'n': 2}]))
        assert [pager.next_page()['n'], pager.next_page()['n']] == [1, 2]

    def test_page_size(self):
        client = paginated_client([])
        Ec2InstancePager(client, page_size=50)
        client.get_paginator.return_value.paginate.assert_called_once_with(PaginationConfig={'PageSize': 50})

    def test_error_surfaces_from_lookahead(self):
        from botocore.exceptions import ClientError

        error = ClientError({'Error': {'Code': 'UnauthorizedOperation', 'Message': 'denied'}}, 'DescribeInstances')
        pager = Ec2InstancePager(paginated_client(failing_pages([{'Reservations': []}], error)))
        assert pager.has_more_pages()
        pager.next_page()
        with pytest.raises(ClientError):
            pager.has_more_pages()

    @mock_aws
    def test_lists_moto_instances(self, mock_session):
        ec2 = mock_session.client("ec2", region_name="us-east-1")
        ec2.run_instances(ImageId="ami-12345678", MinCount=3, MaxCount=3, InstanceType="t2.micro")

        pager = make_instance_pager(mock_session, "us-east-1")
        instance_ids = []
        while pager.has_more_pages():
            for reservation in pager.next_page().get('Reservations', []):
                instance_ids.extend(i['InstanceId'] for i in reservation['Instances'])

        assert len(instance_ids) == 3

    @mock_aws
    def test_moto_multiple_pages_keep_order(self, mock_session):
        ec2 = mock_session.client("ec2", region_name="us-east-1")
        launched = []
        for _ in range(4):
            response = ec2.run_instances(ImageId="ami-12345678", MinCount=3, MaxCount=3, InstanceType="t2.micro")
            launched.extend(i['InstanceId'] for i in response['Instances'])

        pager = make_instance_pager(mock_session, "us-east-1", page_size=5)
        instance_ids = []
        while pager.has_more_pages():
            for reservation in pager.next_page().get('Reservations', []):
                instance_ids.extend(i['InstanceId'] for i in reservation['Instances'])

        assert instance_ids == launched

    @mock_aws
    def test_empty_region(self, mock_session):
        pager = make_instance_pager(mock_session, "eu-west-1")
        page = pager.next_page()
        assert page.get('Reservations', []) == []
        assert not pager.has_more_pages()


# =============================================================================
# Metric Source Tests
# =============================================================================

class TestCloudWatchMetricSource:
    """Tests for CloudWatchMetricSource."""

    def test_request_shape(self, window):
        client = Mock()
        client.get_metric_statistics.return_value = {'Datapoints': []}

        CloudWatchMetricSource(client).get_sum_datapoints(METRIC_NAMESPACE, METRIC_NAME, "i-0abc", window)

        client.get_metric_statistics.assert_called_once_with(
            Namespace="AWS/EC2",
            MetricName="MetadataNoToken",
            Dimensions=[{'Name': 'InstanceId', 'Value': "i-0abc"}],
            StartTime=window.start_time,
            EndTime=window.end_time,
            Period=38880000,
            Statistics=['Sum'],
        )

    def test_returns_sums_in_api_order(self, window):
        client = Mock()
        client.get_metric_statistics.return_value = {'Datapoints': [
            {'Sum': 5.0, 'Unit': 'Count'},
            {'Sum': 1.0, 'Unit': 'Count'},
            {'Unit': 'Count'},
        ]}
        values = CloudWatchMetricSource(client).get_sum_datapoints(METRIC_NAMESPACE, METRIC_NAME, "i-1", window)
        assert values == [5.0, 1.0]

    def test_no_datapoints(self, window):
        client = Mock()
        client.get_metric_statistics.return_value = {}
        assert CloudWatchMetricSource(client).get_sum_datapoints(METRIC_NAMESPACE, METRIC_NAME, "i-1", window) == []

    def test_errors_propagate(self, window):
        from botocore.exceptions import ClientError

        client = Mock()
        client.get_metric_statistics.side_effect = ClientError(
            {'Error': {'Code': 'Throttling', 'Message': 'Rate exceeded'}}, 'GetMetricStatistics'
        )
        with pytest.raises(ClientError):
            CloudWatchMetricSource(client).get_sum_datapoints(METRIC_NAMESPACE, METRIC_NAME, "i-1", window)

    @mock_aws
    def test_sums_moto_metric_data(self, mock_session):
        now = datetime.now(timezone.utc)
        cloudwatch = mock_session.client("cloudwatch", region_name="us-east-1")
        cloudwatch.put_metric_data(
            Namespace=METRIC_NAMESPACE,
            MetricData=[
                {
                    'MetricName': METRIC_NAME,
                    'Dimensions': [{'Name': 'InstanceId', 'Value': 'i-0abc'}],
                    'Timestamp': now - timedelta(minutes=10),
                    'Value': 2.0,
                },
                {
                    'MetricName': METRIC_NAME,
                    'Dimensions': [{'Name': 'InstanceId', 'Value': 'i-other'}],
                    'Timestamp': now - timedelta(minutes=10),
                    'Value': 100.0,
                },
            ],
        )

        window = MetricWindow(start_time=now - timedelta(days=1), end_time=now + timedelta(minutes=5), period=3600)
        source = make_metric_source(mock_session, "us-east-1")

        assert sum(source.get_sum_datapoints(METRIC_NAMESPACE, METRIC_NAME, 'i-0abc', window)) == pytest.approx(2.0)
        assert source.get_sum_datapoints(METRIC_NAMESPACE, METRIC_NAME, 'i-none', window) == []
