"""
Error types, error accounting and logging setup for the nesting engine.
"""

import logging
import sys
import threading
import traceback
from collections import deque
from datetime import datetime
from functools import wraps
from typing import Any, Callable, Dict, List, Optional

from geometry import GeometryError

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

logger = logging.getLogger(__name__)


class NestingError(Exception):
    """Base class for nesting engine failures."""
    pass


class NFPError(NestingError):
    """No valid placement exists for a pair at the requested rotations."""
    pass


class NfpCacheError(NestingError):
    """A cache entry was requested with the wrong inner/outer variant."""
    pass


class WorkerLifecycleError(NestingError):
    """A worker message arrived for a slot that no longer exists."""
    pass


class ConfigurationError(NestingError, ValueError):
    """Invalid nesting configuration or input, raised before any evaluation."""
    pass


def configure_logging(level: int = logging.INFO, log_file: Optional[str] = None):
    """Install the stream (and optional file) handlers used by the service."""
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)


class ErrorHandler:
    """
    Counts failures per category and error class and raises alerts.

    Sessions and the worker coordinator report from several threads, so the
    counters are guarded by a lock. An alert fires each time a key's count
    reaches a multiple of its category threshold; the latest alerts are kept
    for the health endpoint.
    """

    DEFAULT_THRESHOLDS = {
        'geometry_error': 50,
        'nfp_error': 100,
        'worker_error': 5,
        'configuration_error': 10,
        'api_error': 10,
    }

    def __init__(self, thresholds: Optional[Dict[str, int]] = None, keep_alerts: int = 20):
        self.error_counts: Dict[str, int] = {}
        self.error_thresholds = dict(self.DEFAULT_THRESHOLDS)
        if thresholds:
            self.error_thresholds.update(thresholds)
        self.alert_callbacks: List[Callable[[str, Dict[str, Any]], None]] = []
        self.recent_alerts = deque(maxlen=keep_alerts)
        self.lock = threading.Lock()

    def log_error(self, error_type: str, error: Exception, context: Dict[str, Any] = None):
        """Count ``error`` under ``error_type`` and alert when its threshold is reached."""
        error_key = f"{error_type}_{type(error).__name__}"
        with self.lock:
            count = self.error_counts.get(error_key, 0) + 1
            self.error_counts[error_key] = count

        logger.error(f"{error_key}: {error} (count {count}, context {context or {}})")
        if sys.exc_info()[0] is not None:
            logger.debug(f"{error_key} traceback:\n{traceback.format_exc()}")

        threshold = max(1, self.error_thresholds.get(error_type, 10))
        if count % threshold == 0:
            self._trigger_alert(error_key, {
                'timestamp': datetime.now().isoformat(),
                'error_type': error_type,
                'error_class': type(error).__name__,
                'error_message': str(error),
                'context': context or {},
                'count': count,
                'threshold': threshold,
            })

    def _trigger_alert(self, error_key: str, details: Dict[str, Any]):
        logger.critical(f"{error_key} reached {details['count']} occurrences (threshold {details['threshold']})")
        with self.lock:
            self.recent_alerts.append(dict(details, key=error_key))
            callbacks = list(self.alert_callbacks)

        for callback in callbacks:
            try:
                callback(error_key, details)
            except Exception as e:
                logger.error(f"Alert callback {getattr(callback, '__name__', callback)!r} failed: {e}")

    def register_alert_callback(self, callback: Callable[[str, Dict[str, Any]], None]):
        """Add ``callback(error_key, details)``; registering the same callable twice is a no-op."""
        with self.lock:
            if callback not in self.alert_callbacks:
                self.alert_callbacks.append(callback)

    def get_error_stats(self) -> Dict[str, Any]:
        with self.lock:
            return {
                'error_counts': dict(self.error_counts),
                'total_errors': sum(self.error_counts.values()),
                'error_thresholds': dict(self.error_thresholds),
                'recent_alerts': list(self.recent_alerts),
            }

    def reset_error_counts(self):
        with self.lock:
            self.error_counts.clear()
            self.recent_alerts.clear()
        logger.info("Error counts reset")


# Global error handler instance
error_handler = ErrorHandler()


def handle_errors(error_type: str, fallback_response: Any = None):
    """Decorator that records failures on the global handler, then re-raises
    or returns ``fallback_response`` when one is given."""
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except Exception as e:
                context = {
                    'function': func.__name__,
                    'args_count': len(args),
                    'kwargs_keys': list(kwargs.keys()) if kwargs else []
                }
                error_handler.log_error(error_type, e, context)
                if fallback_response is not None:
                    return fallback_response
                raise
        return wrapper
    return decorator


__all__ = [
    "NestingError", "GeometryError", "NFPError", "NfpCacheError",
    "WorkerLifecycleError", "ConfigurationError", "ErrorHandler",
    "error_handler", "handle_errors", "configure_logging", "LOG_FORMAT",
]
