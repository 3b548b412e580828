"""
Utility functions for the IMDS audit collector.

Logging Level Standards:
------------------------
- ERROR: Failures that end the run
         "Audit failed during query metrics [us-east-1]: ..."
- WARNING: A region skipped because the caller is not authorized,
           requested regions that were not discovered
           "[ap-east-1] Not authorized to describe instances, skipping region"
- INFO: Progress messages, instance counts
        "[us-west-2] Found 42 EC2 instances"
- DEBUG: Per-instance metric queries
         "[us-west-2] Retrieving MetadataNoToken for i-0abc..."
"""
import csv
import json
import logging
import os
import sys
import uuid
from datetime import datetime, timezone
from typing import Any, List, Optional, Sequence

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .constants import AUTH_DENIED_ERROR_CODES, REGION_SKIPPED_EMPTY, REGION_SKIPPED_UNAUTHORIZED, REPORT_HEADER

logger = logging.getLogger(__name__)


# =============================================================================
# Errors
# =============================================================================

class AuditError(Exception):
    """Base exception for audit pipeline failures.

    Carries the pipeline stage and region so the top level can report
    where the run stopped.
    """
    def __init__(
        self,
        message: str,
        stage: str,
        region: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        self.stage = stage
        self.region = region
        self.original_error = original_error
        super().__init__(message)

    def describe(self) -> str:
        """One-line diagnostic naming the failing stage and region."""
        where = f" [{self.region}]" if self.region else ""
        return f"Audit failed during {self.stage}{where}: {self}"


class RegionDiscoveryError(AuditError):
    """DescribeRegions failed. Ends the run."""


class InstanceCollectionError(AuditError):
    """DescribeInstances failed for a reason other than authorization. Ends the run."""


class MetricQueryError(AuditError):
    """GetMetricStatistics failed for an instance. Ends the run."""
    def __init__(
        self,
        message: str,
        stage: str,
        region: Optional[str] = None,
        instance_id: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        self.instance_id = instance_id
        super().__init__(message, stage, region=region, original_error=original_error)


class RegionAccessDeniedError(AuditError):
    """The caller may not list instances in a region. The region is skipped."""


def get_error_code(exc: Exception) -> str:
    """Error code of a botocore ClientError, or '' for anything else."""
    response = getattr(exc, 'response', None)
    if not isinstance(response, dict):
        return ''
    return response.get('Error', {}).get('Code', '')


def is_auth_denied(exc: Exception) -> bool:
    """
    Check if an exception is an authorization-denied API error.

    Only botocore ClientErrors carrying one of AUTH_DENIED_ERROR_CODES count.
    Throttling, network and credential-loading failures do not.
    """
    if type(exc).__name__ != 'ClientError':
        return False
    return get_error_code(exc) in AUTH_DENIED_ERROR_CODES


# =============================================================================
# Run Metadata
# =============================================================================

def generate_run_id() -> str:
    """Generate a unique run ID."""
    return f"{datetime.now(timezone.utc).strftime('%Y%m%d-%H%M%S')}-{str(uuid.uuid4())[:8]}"


def get_timestamp() -> str:
    """Get current UTC timestamp in ISO format."""
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


# =============================================================================
# Logging
# =============================================================================

def setup_logging(level: str = "INFO", output_dir: Optional[str] = None) -> logging.Logger:
    """
    Setup logging configuration with console and optional file output.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
        output_dir: If provided, also write logs to a file in this directory

    Returns:
        Logger instance
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    formatter = logging.Formatter(
        '%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    # Clear existing handlers to avoid duplicates
    root_logger.handlers.clear()

    # Console handler (stderr, so stdout stays readable for the region banners)
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if output_dir:
        os.makedirs(output_dir, exist_ok=True)
        timestamp = datetime.now(timezone.utc).strftime('%Y%m%d_%H%M%S')
        log_file = os.path.join(output_dir, f"imds_audit_log_{timestamp}.log")

        file_handler = logging.FileHandler(log_file, mode='w')
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

        root_logger.info(f"Logging to: {log_file}")

    return logging.getLogger(__name__)


# =============================================================================
# Output
# =============================================================================

class CsvReportWriter:
    """
    Row-at-a-time CSV sink for the audit report.

    Writes the header on open and flushes after every row, so rows emitted
    before a fatal error are already on disk.

    Usage:
        with CsvReportWriter("out/instances.csv") as sink:
            sink.write_row(["us-west-2", "i-0abc", "2.00"])
    """

    def __init__(self, filepath: str, header: Sequence[str] = tuple(REPORT_HEADER)):
        self.filepath = filepath
        self.header = list(header)
        self.rows_written = 0
        self._file = None
        self._writer = None

    def open(self) -> 'CsvReportWriter':
        directory = os.path.dirname(self.filepath)
        if directory:
            os.makedirs(directory, exist_ok=True)
        self._file = open(self.filepath, 'w', newline='')
        self._writer = csv.writer(self._file)
        self._writer.writerow(self.header)
        self._file.flush()
        return self

    def write_row(self, row: Sequence[str]) -> None:
        if self._writer is None or self._file is None:
            raise RuntimeError(f"Report {self.filepath} is not open")
        self._writer.writerow(list(row))
        self._file.flush()
        self.rows_written += 1

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None
            self._writer = None

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


def write_json(data: Any, filepath: str) -> None:
    """Write data to JSON file with secure permissions."""
    # Owner read/write only: the summary lists instance ids of the account
    fd = os.open(filepath, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, 'w') as f:
        json.dump(data, f, indent=2, default=str)
    print(f"Wrote {filepath}")


# =============================================================================
# Console Output
# =============================================================================

def print_region_banner(region: str) -> None:
    """Banner printed before a region is processed."""
    print(f"=========== {region} ===========")


def print_region_findings(region_instances) -> None:
    """Banner plus the instances of a region that made token-less calls."""
    print(
        f"====================== {region_instances.region} instances with "
        f"metadatanotoken metric greater than 0 ======================"
    )
    for instance in region_instances.instances_with_calls():
        print(
            f"Instance Id: {instance.instance_id} | "
            f"MetadataNoToken Calls: {instance.metadata_no_token_calls:g}"
        )


def print_audit_summary(summary, console: Optional[Console] = None) -> None:
    """Print a formatted run summary using rich."""
    console = console or Console()

    table = Table(title="IMDS Audit Summary", show_header=False)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Regions", str(len(summary.regions)))
    table.add_row("Regions skipped (no instances)", str(len(summary.regions_with_outcome(REGION_SKIPPED_EMPTY))))
    table.add_row(
        "Regions skipped (not authorized)",
        str(len(summary.regions_with_outcome(REGION_SKIPPED_UNAUTHORIZED)))
    )
    table.add_row("Instances audited", f"{summary.total_instances:,}")
    table.add_row("Instances with IMDSv1 calls", f"{len(summary.flagged_instances):,}")

    console.print(Panel(table))

    flagged = summary.flagged_instances
    if flagged:
        detail = Table(title="Instances with token-less IMDS calls")
        detail.add_column("Region")
        detail.add_column("Instance Id")
        detail.add_column("Calls", justify="right")
        detail.add_column("HttpTokens")
        detail.add_column("IMDSv2 Enforced")
        for item in flagged:
            detail.add_row(
                item['region'],
                item['instance_id'],
                f"{item['calls']:,.2f}",
                item.get('http_tokens') or "unknown",
                "yes" if item.get('imdsv2_required') else "no",
            )
        console.print(detail)


def parse_region_list(value: Any) -> Optional[List[str]]:
    """Normalize a comma-separated string or list of regions; None/empty means all."""
    if not value:
        return None
    if isinstance(value, str):
        value = value.split(',')
    regions = [str(r).strip() for r in value if str(r).strip()]
    return regions or None
