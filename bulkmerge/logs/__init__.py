"""
=====================================
Operational metrics for bulk operations.
=====================================

Modules:
    performance_monitor: Per-phase timing and resource usage
"""

__all__ = ['PerformanceMonitor', 'PhaseMetric', 'PhaseMonitor']

from bulkmerge.logs.performance_monitor import PerformanceMonitor, PhaseMetric, PhaseMonitor
