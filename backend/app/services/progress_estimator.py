"""
Progress estimation for provider jobs.

Derives a 0-100 value from whatever the provider gives, in priority order:
structured metric, log parsing, then elapsed-time interpolation.
Pure functions only; the caller decides what gets persisted.
"""
import enum
import math
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from app.ai.base import ProviderStatus

# Only a terminal provider success may report 100
NON_TERMINAL_CEILING = 99

STARTING_RANGE = (0, 10)
PROCESSING_RANGE = (10, 95)

_STEP_PATTERN = re.compile(r"\bsteps?\s*[:#]?\s*(\d+)\s*/\s*(\d+)", re.IGNORECASE)
_PERCENT_PATTERN = re.compile(r"(?<![\w.])(\d{1,3}(?:\.\d+)?)%")
_EPOCH_PATTERN = re.compile(r"\bepochs?\s*[:#]?\s*(\d+)\s*/\s*(\d+)", re.IGNORECASE)


class ProgressSource(str, enum.Enum):
    PROVIDER_METRICS = "provider_metrics"
    LOG_PARSE = "log_parse"
    TIME_ESTIMATE = "time_estimate"
    TERMINAL = "terminal"


@dataclass(frozen=True)
class ProgressSnapshot:
    progress: int
    source: ProgressSource

    @property
    def from_provider(self) -> bool:
        return self.source in (ProgressSource.PROVIDER_METRICS, ProgressSource.LOG_PARSE)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _accept(value: Optional[int]) -> Optional[int]:
    if value is None or value <= 0 or value > 100:
        return None
    return value


def _last_ratio(pattern: re.Pattern, logs: str) -> Optional[int]:
    matches = pattern.findall(logs)
    if not matches:
        return None
    done, total = (int(x) for x in matches[-1])
    if total <= 0:
        return None
    return _accept(_round_half_up(done / total * 100))


def _last_percent(logs: str) -> Optional[int]:
    matches = _PERCENT_PATTERN.findall(logs)
    if not matches:
        return None
    return _accept(_round_half_up(float(matches[-1])))


def parse_log_progress(logs: Optional[str]) -> Optional[int]:
    """
    Progress from free-text logs.

    Tries the last "step N/M", then the last standalone "NN%", then the
    last "epoch N/M". Values outside (0, 100] count as not found.
    """
    if not logs:
        return None
    for parser in (
        lambda text: _last_ratio(_STEP_PATTERN, text),
        _last_percent,
        lambda text: _last_ratio(_EPOCH_PATTERN, text),
    ):
        value = parser(logs)
        if value is not None:
            return value
    return None


def metric_progress(fraction: Optional[float]) -> Optional[int]:
    if fraction is None or fraction < 0 or fraction > 1:
        return None
    return _round_half_up(fraction * 100)


def time_estimate(
    status: ProviderStatus,
    started_at: Optional[datetime],
    expected_seconds: float,
    now: Optional[datetime] = None,
) -> int:
    """Linear interpolation between the floor and ceiling for the status."""
    floor, ceiling = STARTING_RANGE if status == ProviderStatus.STARTING else PROCESSING_RANGE
    if started_at is None or expected_seconds <= 0:
        return floor

    elapsed = ((now or datetime.utcnow()) - started_at).total_seconds()
    fraction = min(max(elapsed / expected_seconds, 0.0), 1.0)
    return int(floor + (ceiling - floor) * fraction)


def estimate_progress(
    status: ProviderStatus,
    metrics_fraction: Optional[float] = None,
    logs: Optional[str] = None,
    started_at: Optional[datetime] = None,
    expected_seconds: float = 0,
    now: Optional[datetime] = None,
) -> ProgressSnapshot:
    """
    Compute a progress snapshot for one reconciliation pass.

    Args:
        status: Normalized provider status
        metrics_fraction: Explicit structured progress in [0, 1], if any
        logs: Free-text provider logs, if any
        started_at: When the job was accepted by the provider
        expected_seconds: Expected total duration for the job type
        now: Clock override

    Returns:
        ProgressSnapshot; 100 only for a terminal provider success
    """
    if status == ProviderStatus.SUCCEEDED:
        return ProgressSnapshot(100, ProgressSource.TERMINAL)

    value = metric_progress(metrics_fraction)
    if value is not None:
        return ProgressSnapshot(min(value, NON_TERMINAL_CEILING), ProgressSource.PROVIDER_METRICS)

    value = parse_log_progress(logs)
    if value is not None:
        return ProgressSnapshot(min(value, NON_TERMINAL_CEILING), ProgressSource.LOG_PARSE)

    value = time_estimate(status, started_at, expected_seconds, now)
    return ProgressSnapshot(min(value, NON_TERMINAL_CEILING), ProgressSource.TIME_ESTIMATE)


def next_progress(stored: int, snapshot: ProgressSnapshot) -> Optional[int]:
    """
    Value to persist for this pass, or None to leave the record alone.

    Provider-reported values win even when lower than the stored value;
    time estimates only ever move progress forward.
    """
    stored = stored or 0
    if snapshot.from_provider or snapshot.source == ProgressSource.TERMINAL:
        return snapshot.progress if snapshot.progress != stored else None
    return snapshot.progress if snapshot.progress > stored else None
