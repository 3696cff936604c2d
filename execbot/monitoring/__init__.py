"""
Monitoring: Prometheus metrics and operator notifications.
"""

from execbot.monitoring.metrics import ExecMetrics, start_metrics_server
from execbot.monitoring.notifier import Notifier, NotifierConfig

__all__ = ["ExecMetrics", "start_metrics_server", "Notifier", "NotifierConfig"]
