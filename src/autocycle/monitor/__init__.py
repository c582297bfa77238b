"""Advisory anomaly detection (hangs and action loops) for agent sessions."""

from autocycle.monitor.anomaly import AnomalyMonitor, LoopSignal, action_fingerprint, detect_loop

__all__ = ["AnomalyMonitor", "LoopSignal", "action_fingerprint", "detect_loop"]
