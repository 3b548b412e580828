"""
AWS capabilities consumed by the audit pipeline.

The pipeline only talks to these small interfaces, so tests can swap the
boto3-backed implementations for in-memory fakes:

- RegionLister:  DescribeRegions
- InstancePager: DescribeInstances, one page at a time
- MetricSource:  GetMetricStatistics (Sum) for one instance
"""
import logging
from typing import Any, Dict, List, Optional, Protocol

import boto3

from .constants import METRIC_DIMENSION, METRIC_STATISTIC
from .models import MetricWindow

logger = logging.getLogger(__name__)


class RegionLister(Protocol):
    def list_regions(self) -> List[str]:
        """Regions accessible to the current identity, in API order."""
        ...


class InstancePager(Protocol):
    def has_more_pages(self) -> bool:
        ...

    def next_page(self) -> Dict[str, Any]:
        """Next DescribeInstances response ({'Reservations': [...]})."""
        ...


class MetricSource(Protocol):
    def get_sum_datapoints(
        self,
        namespace: str,
        metric_name: str,
        instance_id: str,
        window: MetricWindow
    ) -> List[float]:
        """Sum of each datapoint returned for the instance, in API order."""
        ...


# =============================================================================
# boto3 implementations
# =============================================================================

def get_ec2_client(session: boto3.Session, region: str):
    """Get EC2 client for a region."""
    return session.client('ec2', region_name=region)


def get_aws_cloudwatch_client(session: boto3.Session, region: str):
    """Get CloudWatch client for a region."""
    return session.client('cloudwatch', region_name=region)


class Ec2RegionLister:
    """RegionLister backed by ec2:DescribeRegions (enabled regions only)."""

    def __init__(self, ec2_client):
        self.ec2_client = ec2_client

    def list_regions(self) -> List[str]:
        response = self.ec2_client.describe_regions(AllRegions=False)
        # Entries without a name cannot be addressed, drop them
        return [r['RegionName'] for r in response.get('Regions', []) if r.get('RegionName')]


class Ec2InstancePager:
    """
    InstancePager over the ec2 describe_instances paginator.

    has_more_pages() fetches the next page ahead of next_page(), so API
    errors can surface from either call.
    """

    def __init__(self, ec2_client, page_size: Optional[int] = None):
        paginator = ec2_client.get_paginator('describe_instances')
        pagination_config = {'PageSize': page_size} if page_size else {}
        self._pages = iter(paginator.paginate(PaginationConfig=pagination_config))
        self._lookahead: Optional[Dict[str, Any]] = None
        self._exhausted = False

    def has_more_pages(self) -> bool:
        if self._lookahead is None and not self._exhausted:
            self._lookahead = next(self._pages, None)
            self._exhausted = self._lookahead is None
        return self._lookahead is not None

    def next_page(self) -> Dict[str, Any]:
        page, self._lookahead = self._lookahead, None
        if page is None:
            page = next(self._pages)
        logger.debug(f"DescribeInstances page with {len(page.get('Reservations', []))} reservations")
        return page


class CloudWatchMetricSource:
    """MetricSource backed by cloudwatch:GetMetricStatistics."""

    def __init__(self, cloudwatch_client):
        self.cloudwatch_client = cloudwatch_client

    def get_sum_datapoints(
        self,
        namespace: str,
        metric_name: str,
        instance_id: str,
        window: MetricWindow
    ) -> List[float]:
        response = self.cloudwatch_client.get_metric_statistics(
            Namespace=namespace,
            MetricName=metric_name,
            Dimensions=[{'Name': METRIC_DIMENSION, 'Value': instance_id}],
            StartTime=window.start_time,
            EndTime=window.end_time,
            Period=window.period,
            Statistics=[METRIC_STATISTIC],
        )
        return [float(dp[METRIC_STATISTIC]) for dp in response.get('Datapoints', []) if METRIC_STATISTIC in dp]


def make_region_lister(session: boto3.Session, bootstrap_region: str) -> Ec2RegionLister:
    return Ec2RegionLister(get_ec2_client(session, bootstrap_region))


def make_instance_pager(
    session: boto3.Session,
    region: str,
    page_size: Optional[int] = None
) -> Ec2InstancePager:
    return Ec2InstancePager(get_ec2_client(session, region), page_size=page_size)


def make_metric_source(session: boto3.Session, region: str) -> CloudWatchMetricSource:
    return CloudWatchMetricSource(get_aws_cloudwatch_client(session, region))
