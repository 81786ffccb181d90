"""
================================================================
Performance monitoring for bulk operations.
================================================================

Records wall time, CPU time and resident memory deltas for each phase
of a bulk operation (staging, bulk_load, merge, cleanup). Metrics are
kept in memory, logged at DEBUG and attached to the operation result.

Classes:
    PhaseMetric: Measurements of one completed phase
    PerformanceMonitor: Collects PhaseMetrics through a context manager
    PhaseMonitor: Measures one running phase

Example:
    >>> monitor = PerformanceMonitor('bulk_upsert:User')
    >>> with monitor.monitor_phase('bulk_load') as phase:
    ...     phase.rows = bulk_copy.write_to_server(source, staging)
    >>> monitor.metrics[0].rows_per_second
    182345.2
"""

import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, List, Optional

import psutil

from bulkmerge.core.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class PhaseMetric:
    """Measurements of one phase.

    Attributes:
        phase: Phase name
        duration: Wall time in seconds
        cpu_time: User plus system CPU seconds, None if unavailable
        memory_delta_mb: RSS change in MB, None if unavailable
        rows: Rows handled by the phase, if meaningful
        succeeded: False when the phase raised
    """

    phase: str
    duration: float
    cpu_time: Optional[float] = None
    memory_delta_mb: Optional[float] = None
    rows: Optional[int] = None
    succeeded: bool = True

    @property
    def rows_per_second(self) -> Optional[float]:
        if self.rows is None or self.duration <= 0:
            return None
        return self.rows / self.duration


class PhaseMonitor:
    """
    Individual phase monitor for tracking metrics during execution.

    Used as part of the PerformanceMonitor context manager.
    """

    def __init__(self, phase: str, rows: Optional[int] = None):
        self.phase = phase
        self.rows = rows
        self.start_time = None
        self.start_cpu_times = None
        self.start_memory = None

    def start(self):
        """Start monitoring."""
        self.start_time = time.perf_counter()

        try:
            process = psutil.Process()
            self.start_cpu_times = process.cpu_times()
            self.start_memory = process.memory_info()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            logger.warning("Could not access process metrics")

    def end(self, succeeded: bool = True) -> PhaseMetric:
        """End monitoring and build the phase metric."""
        duration = time.perf_counter() - self.start_time
        cpu_time = None
        memory_delta = None

        try:
            process = psutil.Process()
            if self.start_cpu_times is not None:
                end_cpu_times = process.cpu_times()
                cpu_time = (
                    (end_cpu_times.user - self.start_cpu_times.user) +
                    (end_cpu_times.system - self.start_cpu_times.system)
                )
            if self.start_memory is not None:
                memory_delta = (process.memory_info().rss - self.start_memory.rss) / 1024 / 1024
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            logger.warning("Could not collect final process metrics")

        return PhaseMetric(
            phase=self.phase,
            duration=duration,
            cpu_time=cpu_time,
            memory_delta_mb=memory_delta,
            rows=self.rows,
            succeeded=succeeded,
        )


class PerformanceMonitor:
    """Per-operation collector of phase metrics.

    Attributes:
        operation: Label used in log lines (e.g. 'bulk_upsert:User')
        metrics: Completed PhaseMetrics in execution order
    """

    def __init__(self, operation: str):
        self.operation = operation
        self.metrics: List[PhaseMetric] = []

    @contextmanager
    def monitor_phase(self, phase: str, rows: Optional[int] = None) -> Iterator[PhaseMonitor]:
        """
        Context manager timing one phase.

        Args:
            phase: Phase name
            rows: Row count, if already known; can also be set on the
                yielded PhaseMonitor before the block ends

        Yields:
            PhaseMonitor for the running phase
        """
        monitor = PhaseMonitor(phase, rows)
        monitor.start()
        succeeded = False
        try:
            yield monitor
            succeeded = True
        finally:
            metric = monitor.end(succeeded)
            self.metrics.append(metric)
            rate = f", {metric.rows_per_second:.0f} rows/s" if metric.rows_per_second else ""
            logger.debug(
                f"{self.operation} phase '{phase}' "
                f"{'completed' if succeeded else 'failed'} in {metric.duration:.3f}s{rate}"
            )

    @property
    def total_duration(self) -> float:
        return sum(m.duration for m in self.metrics)

    def get_metric(self, phase: str) -> Optional[PhaseMetric]:
        """Return the last metric recorded for a phase, if any."""
        for metric in reversed(self.metrics):
            if metric.phase == phase:
                return metric
        return None
