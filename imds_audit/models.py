"""
Data models for the IMDS audit collector.
"""
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from .constants import (
    DEFAULT_LOOKBACK_DAYS,
    DEFAULT_PERIOD_SECONDS,
    HTTP_TOKENS_REQUIRED,
    REGION_EMITTED,
)


@dataclass
class InstanceRecord:
    """
    One EC2 instance and its accumulated MetadataNoToken call count.
    """
    instance_id: str
    metadata_no_token_calls: float = 0.0

    # Descriptive fields copied from DescribeInstances (not part of the CSV row)
    instance_type: Optional[str] = None
    state: Optional[str] = None
    http_tokens: Optional[str] = None

    def add_calls(self, value: float) -> None:
        """Add datapoint sums to the counter. Negative values are rejected."""
        if value < 0:
            raise ValueError(f"Call count for {self.instance_id} cannot decrease (got {value})")
        self.metadata_no_token_calls += value

    @property
    def imdsv2_required(self) -> bool:
        return self.http_tokens == HTTP_TOKENS_REQUIRED

    def to_row(self, region: str) -> List[str]:
        """Report row: region, instance id, call count with two decimals."""
        return [region, self.instance_id, f"{self.metadata_no_token_calls:.2f}"]

    def to_dict(self) -> Dict:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)


@dataclass
class RegionInstances:
    """
    Instances collected from a single region, in collection order.
    """
    region: str
    instances: List[InstanceRecord] = field(default_factory=list)

    def add_instance(self, instance: InstanceRecord) -> None:
        self.instances.append(instance)

    def instances_with_calls(self) -> List[InstanceRecord]:
        """Instances whose counter is above zero, in collection order."""
        return [i for i in self.instances if i.metadata_no_token_calls > 0]

    def rows(self) -> List[List[str]]:
        return [i.to_row(self.region) for i in self.instances]

    def __len__(self) -> int:
        return len(self.instances)


@dataclass(frozen=True)
class MetricWindow:
    """
    Historical window queried for every instance.

    start_time/end_time bound the query and period is the CloudWatch bucket
    width in seconds. The two are configured independently.
    """
    start_time: datetime
    end_time: datetime
    period: int = DEFAULT_PERIOD_SECONDS

    def __post_init__(self):
        if self.end_time <= self.start_time:
            raise ValueError("Metric window end_time must be after start_time")
        if self.period <= 0:
            raise ValueError(f"Metric window period must be positive (got {self.period})")

    @classmethod
    def from_lookback(
        cls,
        lookback_days: int = DEFAULT_LOOKBACK_DAYS,
        period: int = DEFAULT_PERIOD_SECONDS,
        now: Optional[datetime] = None
    ) -> 'MetricWindow':
        """Build the window ending at now (UTC) and starting lookback_days earlier."""
        if lookback_days <= 0:
            raise ValueError(f"lookback_days must be positive (got {lookback_days})")
        end_time = now or datetime.now(timezone.utc)
        return cls(
            start_time=end_time - timedelta(days=lookback_days),
            end_time=end_time,
            period=period,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'start_time': self.start_time.isoformat(),
            'end_time': self.end_time.isoformat(),
            'period': self.period,
        }


@dataclass
class RegionResult:
    """Outcome of auditing one region."""
    region: str
    outcome: str = REGION_EMITTED
    instance_count: int = 0
    rows_emitted: int = 0
    flagged_instances: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)


@dataclass
class AuditSummary:
    """Aggregated results of one audit run."""
    run_id: str
    timestamp: str
    window: MetricWindow
    regions: List[RegionResult] = field(default_factory=list)

    def add_result(self, result: RegionResult) -> None:
        self.regions.append(result)

    @property
    def total_instances(self) -> int:
        return sum(r.instance_count for r in self.regions)

    @property
    def total_rows(self) -> int:
        return sum(r.rows_emitted for r in self.regions)

    @property
    def flagged_instances(self) -> List[Dict[str, Any]]:
        return [f for r in self.regions for f in r.flagged_instances]

    def regions_with_outcome(self, outcome: str) -> List[str]:
        return [r.region for r in self.regions if r.outcome == outcome]

    def to_dict(self) -> Dict:
        """Convert to dictionary for JSON serialization."""
        return {
            'run_id': self.run_id,
            'timestamp': self.timestamp,
            'window': self.window.to_dict(),
            'region_count': len(self.regions),
            'total_instances': self.total_instances,
            'total_rows': self.total_rows,
            'flagged_instance_count': len(self.flagged_instances),
            'regions': [r.to_dict() for r in self.regions],
        }
