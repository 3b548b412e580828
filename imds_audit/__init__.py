"""
IMDS audit shared library.
"""
from . import constants
from .capabilities import (
    CloudWatchMetricSource,
    Ec2InstancePager,
    Ec2RegionLister,
    InstancePager,
    MetricSource,
    RegionLister,
)
from .constants import (
    DEFAULT_LOOKBACK_DAYS,
    DEFAULT_PERIOD_SECONDS,
    METRIC_NAME,
    METRIC_NAMESPACE,
    REPORT_HEADER,
)
from .models import AuditSummary, InstanceRecord, MetricWindow, RegionInstances, RegionResult
from .utils import (
    AuditError,
    CsvReportWriter,
    InstanceCollectionError,
    MetricQueryError,
    RegionAccessDeniedError,
    RegionDiscoveryError,
    is_auth_denied,
    setup_logging,
)

__all__ = [
    # Constants
    'constants',
    'DEFAULT_LOOKBACK_DAYS',
    'DEFAULT_PERIOD_SECONDS',
    'METRIC_NAME',
    'METRIC_NAMESPACE',
    'REPORT_HEADER',
    # Capabilities
    'RegionLister',
    'InstancePager',
    'MetricSource',
    'Ec2RegionLister',
    'Ec2InstancePager',
    'CloudWatchMetricSource',
    # Models
    'InstanceRecord',
    'RegionInstances',
    'MetricWindow',
    'RegionResult',
    'AuditSummary',
    # Errors
    'AuditError',
    'RegionDiscoveryError',
    'InstanceCollectionError',
    'MetricQueryError',
    'RegionAccessDeniedError',
    'is_auth_denied',
    # Utils
    'CsvReportWriter',
    'setup_logging',
]
