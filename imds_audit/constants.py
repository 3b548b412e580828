"""
Constants for the IMDS audit collector.

This module defines the magic strings and numbers used across the codebase
so the CLI, the pipeline and the report scripts agree on them.
"""

# =============================================================================
# Metric Window Defaults
# =============================================================================

# CloudWatch keeps hourly data for 455 days, so 450 stays inside retention
DEFAULT_LOOKBACK_DAYS = 450
# One bucket spanning the whole default lookback (450 days in seconds)
DEFAULT_PERIOD_SECONDS = 38880000

# =============================================================================
# AWS Defaults
# =============================================================================

# Region used for the DescribeRegions call before per-region clients exist
DEFAULT_BOOTSTRAP_REGION = "us-west-2"

# DescribeInstances accepts MaxResults between 5 and 1000
MIN_PAGE_SIZE = 5
MAX_PAGE_SIZE = 1000

# =============================================================================
# CloudWatch Metric
# =============================================================================

METRIC_NAMESPACE = "AWS/EC2"
METRIC_NAME = "MetadataNoToken"
METRIC_DIMENSION = "InstanceId"
METRIC_STATISTIC = "Sum"

# =============================================================================
# Report Output
# =============================================================================

DEFAULT_REPORT_NAME = "instances.csv"
REPORT_HEADER = ["region", "instance-id", "imdsv1 calls"]

# EC2 MetadataOptions.HttpTokens value when IMDSv2 is enforced
HTTP_TOKENS_REQUIRED = "required"

# =============================================================================
# Region Outcomes
# =============================================================================

REGION_EMITTED = "emitted"
REGION_SKIPPED_EMPTY = "skipped_empty"
REGION_SKIPPED_UNAUTHORIZED = "skipped_unauthorized"

# =============================================================================
# Pipeline Stages (used in error messages)
# =============================================================================

STAGE_DISCOVER_REGIONS = "discover regions"
STAGE_COLLECT_INSTANCES = "collect instances"
STAGE_QUERY_METRICS = "query metrics"

# =============================================================================
# Error Classification
# =============================================================================

# ClientError codes that mean the caller may not list instances in a region.
# These skip the region instead of ending the run.
AUTH_DENIED_ERROR_CODES = {
    'UnauthorizedOperation',
    'UnauthorizedAccess',
    'AccessDenied',
    'AccessDeniedException',
    'AuthFailure',
}
