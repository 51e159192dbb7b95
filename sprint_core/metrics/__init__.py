"""
Metrics Module: Diagnostics, counters, histograms.

- Counters: probes_sent, corrections_applied, motion_triggers, etc.
- Histograms: probe round-trip time, offset corrections, processing latency
- Drop reason codes (no silent discards)

Usage:
    from sprint_core.metrics import get_metrics

    metrics = get_metrics()
    metrics.increment('probes_sent')
    metrics.increment_drop('rtt_outlier')
    metrics.record_histogram('probe_rtt_ms', 12.3)
"""

from .counters import MetricsCollector

# Global singleton for easy access
_global_metrics = None


def get_metrics() -> MetricsCollector:
    """
    Get the global metrics collector singleton.

    Returns:
        MetricsCollector instance
    """
    global _global_metrics
    if _global_metrics is None:
        _global_metrics = MetricsCollector()
    return _global_metrics


def reset_metrics():
    """Reset global metrics (for testing)."""
    global _global_metrics
    _global_metrics = MetricsCollector()


__all__ = ['MetricsCollector', 'get_metrics', 'reset_metrics']
