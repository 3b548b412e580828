#!/usr/bin/env python3
"""
IMDS Audit - EC2 IMDSv1 Usage Collector

Finds EC2 instances that still make token-less (IMDSv1) instance metadata
calls. For every enabled region it lists the instances, sums the CloudWatch
AWS/EC2 MetadataNoToken metric for each one over a fixed window, and writes
a CSV row per instance: region, instance id, call count.

Usage:
    # All enabled regions, current credentials
    python3 imds_collect.py

    # Specific profile and regions
    python3 imds_collect.py --profile audit --regions us-east-1,us-west-2

    # Shorter window, daily buckets
    python3 imds_collect.py --lookback-days 30 --period 86400 -o ./imds-audit/
"""
import argparse
import logging
import os
import sys
from functools import partial
from typing import Any, Callable, Dict, List, Optional, Sequence

import boto3
import yaml
from botocore.exceptions import BotoCoreError, ClientError

from imds_audit.capabilities import (
    InstancePager,
    MetricSource,
    RegionLister,
    make_instance_pager,
    make_metric_source,
    make_region_lister,
)
from imds_audit.config import generate_sample_config, load_config
from imds_audit.constants import (
    MAX_PAGE_SIZE,
    METRIC_NAME,
    METRIC_NAMESPACE,
    MIN_PAGE_SIZE,
    REGION_EMITTED,
    REGION_SKIPPED_EMPTY,
    REGION_SKIPPED_UNAUTHORIZED,
    STAGE_COLLECT_INSTANCES,
    STAGE_DISCOVER_REGIONS,
    STAGE_QUERY_METRICS,
)
from imds_audit.models import AuditSummary, InstanceRecord, MetricWindow, RegionInstances, RegionResult
from imds_audit.utils import (
    AuditError,
    CsvReportWriter,
    InstanceCollectionError,
    MetricQueryError,
    RegionAccessDeniedError,
    RegionDiscoveryError,
    generate_run_id,
    get_error_code,
    get_timestamp,
    is_auth_denied,
    parse_region_list,
    print_audit_summary,
    print_region_banner,
    print_region_findings,
    setup_logging,
    write_json,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Session Management
# =============================================================================

def get_session(profile: Optional[str] = None, region: Optional[str] = None) -> boto3.Session:
    """Create boto3 session."""
    return boto3.Session(profile_name=profile, region_name=region)


# =============================================================================
# Region Discovery
# =============================================================================

def get_enabled_regions(region_lister: RegionLister) -> List[str]:
    """
    List every region visible to the caller, in API order.

    Raises:
        RegionDiscoveryError: on any API failure. A partial region list would
            silently narrow the audit, so there is nothing to fall back to.
    """
    try:
        regions = region_lister.list_regions()
    except (ClientError, BotoCoreError) as e:
        raise RegionDiscoveryError(
            f"Unable to retrieve regions: {e}",
            stage=STAGE_DISCOVER_REGIONS,
            original_error=e
        ) from e

    logger.info(f"Discovered {len(regions)} enabled regions")
    return regions


def filter_regions(discovered: Sequence[str], requested: Optional[Sequence[str]]) -> List[str]:
    """Restrict discovered regions to the requested ones, keeping discovery order."""
    if not requested:
        return list(discovered)

    missing = [r for r in requested if r not in discovered]
    if missing:
        logger.warning(f"Requested regions not enabled for this account, ignoring: {', '.join(missing)}")

    wanted = set(requested)
    return [r for r in discovered if r in wanted]


# =============================================================================
# Instance Collection
# =============================================================================

def _instance_record(instance: Dict[str, Any]) -> InstanceRecord:
    return InstanceRecord(
        instance_id=instance['InstanceId'],
        instance_type=instance.get('InstanceType'),
        state=instance.get('State', {}).get('Name'),
        http_tokens=instance.get('MetadataOptions', {}).get('HttpTokens'),
    )


def collect_instances(region_instances: RegionInstances, pager: InstancePager) -> RegionInstances:
    """
    Drain every DescribeInstances page into region_instances.

    Records are appended in page order, then in API order within a page.

    Raises:
        RegionAccessDeniedError: the caller may not list instances here.
            Pages after the failing one are not fetched.
        InstanceCollectionError: any other API failure.
    """
    region = region_instances.region
    page_count = 0

    # The boto3 pager fetches ahead in has_more_pages(), so both calls are guarded
    try:
        while pager.has_more_pages():
            page = pager.next_page()
            page_count += 1
            for reservation in page.get('Reservations', []):
                for instance in reservation.get('Instances', []):
                    region_instances.add_instance(_instance_record(instance))
    except (ClientError, BotoCoreError) as e:
        if is_auth_denied(e):
            logger.warning(f"[{region}] Not authorized to describe instances, skipping region: {e}")
            raise RegionAccessDeniedError(
                f"Not authorized to describe instances ({get_error_code(e)})",
                stage=STAGE_COLLECT_INSTANCES,
                region=region,
                original_error=e
            ) from e
        raise InstanceCollectionError(
            f"Failed to retrieve instances: {e}",
            stage=STAGE_COLLECT_INSTANCES,
            region=region,
            original_error=e
        ) from e

    logger.info(f"[{region}] Found {len(region_instances)} EC2 instances across {page_count} pages")
    return region_instances


# =============================================================================
# Metric Aggregation
# =============================================================================

def aggregate_metadata_no_token(
    region_instances: RegionInstances,
    metric_source: MetricSource,
    window: MetricWindow
) -> RegionInstances:
    """
    Add the MetadataNoToken Sum datapoints of each instance into its counter.

    One query per instance, in collection order. Datapoints are summed as
    returned; zero datapoints leave the counter unchanged.

    Raises:
        MetricQueryError: any query failure. There is no per-instance recovery.
    """
    region = region_instances.region

    for instance in region_instances.instances:
        logger.debug(f"[{region}] Retrieving {METRIC_NAME} for {instance.instance_id}")
        try:
            datapoints = metric_source.get_sum_datapoints(
                METRIC_NAMESPACE,
                METRIC_NAME,
                instance.instance_id,
                window
            )
        except (ClientError, BotoCoreError) as e:
            raise MetricQueryError(
                f"Error retrieving metrics for instance {instance.instance_id}: {e}",
                stage=STAGE_QUERY_METRICS,
                region=region,
                instance_id=instance.instance_id,
                original_error=e
            ) from e

        for value in datapoints:
            instance.add_calls(value)

    return region_instances


# =============================================================================
# Pipeline
# =============================================================================

def audit_region(
    region: str,
    pager: InstancePager,
    metric_source: MetricSource,
    window: MetricWindow,
    sink
) -> RegionResult:
    """
    Audit one region and hand its rows to sink.write_row().

    Authorization failures and empty regions are absorbed here and reported
    through the result outcome. Every other AuditError propagates.
    """
    print_region_banner(region)
    region_instances = RegionInstances(region=region)

    try:
        collect_instances(region_instances, pager)
    except RegionAccessDeniedError:
        # Instances gathered before the failure are dropped with the region
        return RegionResult(region=region, outcome=REGION_SKIPPED_UNAUTHORIZED)

    if not region_instances.instances:
        logger.info(f"[{region}] No EC2 instances found")
        return RegionResult(region=region, outcome=REGION_SKIPPED_EMPTY)

    aggregate_metadata_no_token(region_instances, metric_source, window)
    print_region_findings(region_instances)

    result = RegionResult(
        region=region,
        outcome=REGION_EMITTED,
        instance_count=len(region_instances),
    )
    for row in region_instances.rows():
        sink.write_row(row)
        result.rows_emitted += 1

    result.flagged_instances = [
        {
            'region': region,
            'instance_id': i.instance_id,
            'calls': i.metadata_no_token_calls,
            'http_tokens': i.http_tokens,
            'imdsv2_required': i.imdsv2_required,
            'instance_type': i.instance_type,
            'state': i.state,
        }
        for i in region_instances.instances_with_calls()
    ]
    if result.flagged_instances:
        logger.info(f"[{region}] {len(result.flagged_instances)} instances made token-less IMDS calls")

    return result


def run_audit(
    region_lister: RegionLister,
    pager_factory: Callable[[str], InstancePager],
    metric_source_factory: Callable[[str], MetricSource],
    window: MetricWindow,
    sink,
    regions: Optional[Sequence[str]] = None,
    run_id: Optional[str] = None
) -> AuditSummary:
    """
    Audit every enabled region, one at a time, in discovery order.

    Args:
        region_lister: Lists regions once for the whole run
        pager_factory: Builds the DescribeInstances pager for a region
        metric_source_factory: Builds the CloudWatch source for a region
        window: Metric window shared by every query
        sink: Receives report rows via write_row()
        regions: Optional subset of regions to audit
        run_id: Optional run identifier (generated if omitted)

    Returns:
        AuditSummary with one RegionResult per audited region

    Raises:
        AuditError: the first fatal failure. Rows already written stay written.
    """
    summary = AuditSummary(
        run_id=run_id or generate_run_id(),
        timestamp=get_timestamp(),
        window=window,
    )

    discovered = get_enabled_regions(region_lister)
    for region in filter_regions(discovered, regions):
        result = audit_region(
            region,
            pager_factory(region),
            metric_source_factory(region),
            window,
            sink
        )
        summary.add_result(result)

    logger.info(
        f"Audited {len(summary.regions)} regions: {summary.total_rows} rows, "
        f"{len(summary.flagged_instances)} instances with token-less calls"
    )
    return summary


# =============================================================================
# CLI
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='IMDS Audit - find EC2 instances making IMDSv1 calls',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # All enabled regions (current credentials)
  python3 imds_collect.py

  # Specific regions
  python3 imds_collect.py --regions us-east-1,us-west-2

  # Last 30 days in daily buckets
  python3 imds_collect.py --lookback-days 30 --period 86400

  # Generate a config file
  python3 imds_collect.py --generate-config > imds-config.yaml
"""
    )

    # Defaults live in imds_audit.config.DEFAULTS so config files can override them
    parser.add_argument('--config', '-c', help='Path to YAML config file')
    parser.add_argument('--generate-config', action='store_true',
                        help='Generate a sample config file and exit')
    parser.add_argument('--profile', help='AWS profile name')
    parser.add_argument('--regions', help='Comma-separated list of regions (default: all enabled)')
    parser.add_argument('--output', '-o', help='Output directory (default: .)')
    parser.add_argument('--report-name', help='CSV report file name (default: instances.csv)')
    parser.add_argument('--log-level', help='Logging level (default: INFO)')
    parser.add_argument('--bootstrap-region',
                        help='Region used for the DescribeRegions call (default: us-west-2)')
    parser.add_argument('--lookback-days', type=int,
                        help='Days of CloudWatch history to sum (default: 450)')
    parser.add_argument('--period', type=int,
                        help='GetMetricStatistics period in seconds (default: 38880000)')
    parser.add_argument('--page-size', type=int,
                        help=f'DescribeInstances page size, {MIN_PAGE_SIZE}-{MAX_PAGE_SIZE} (default: API default)')
    return parser


def main(argv: Optional[Sequence[str]] = None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.generate_config:
        print(generate_sample_config())
        sys.exit(0)

    try:
        load_config(args)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except (ValueError, yaml.YAMLError) as e:
        print(f"Error: invalid configuration: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(args.log_level, output_dir=args.output)

    # Computed once so every query in the run uses the same window
    try:
        window = MetricWindow.from_lookback(args.lookback_days, args.period)
    except ValueError as e:
        logger.error(str(e))
        sys.exit(1)
    logger.info(
        f"Metric window: {window.start_time.isoformat()} -> {window.end_time.isoformat()} "
        f"(period {window.period}s)"
    )

    if args.page_size is not None and not MIN_PAGE_SIZE <= args.page_size <= MAX_PAGE_SIZE:
        logger.error(f"Page size must be between {MIN_PAGE_SIZE} and {MAX_PAGE_SIZE} (got {args.page_size})")
        sys.exit(1)

    try:
        session = get_session(args.profile)
    except BotoCoreError as e:
        logger.error(f"Failed to create AWS session: {e}")
        logger.error("Check your AWS credentials are configured correctly.")
        sys.exit(1)

    report_path = os.path.join(args.output, args.report_name)
    requested_regions = parse_region_list(args.regions)

    try:
        with CsvReportWriter(report_path) as sink:
            summary = run_audit(
                make_region_lister(session, args.bootstrap_region),
                partial(make_instance_pager, session, page_size=args.page_size),
                partial(make_metric_source, session),
                window,
                sink,
                regions=requested_regions,
            )
    except AuditError as e:
        logger.error(e.describe())
        logger.error(f"Partial report kept at {report_path}")
        sys.exit(1)

    # run_id starts with the date and time and ends with a random suffix
    write_json(summary.to_dict(), os.path.join(args.output, f"imds_audit_summary_{summary.run_id}.json"))

    print_audit_summary(summary)
    print(f"Report: {report_path}")


if __name__ == '__main__':
    main()
