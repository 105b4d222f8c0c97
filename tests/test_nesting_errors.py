"""
Tests for error accounting and the error-handling decorator.
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from nesting_errors import (
    ConfigurationError,
    ErrorHandler,
    GeometryError,
    NestingError,
    NFPError,
    error_handler,
    handle_errors,
)


def test_error_hierarchy():
    assert issubclass(NFPError, NestingError)
    assert issubclass(ConfigurationError, ValueError)
    assert not issubclass(GeometryError, NestingError)


def test_threshold_triggers_alert_callbacks():
    handler = ErrorHandler({'nfp_error': 2})
    alerts = []
    handler.register_alert_callback(lambda key, details: alerts.append((key, details['count'])))

    handler.log_error('nfp_error', NFPError("no fit"))
    assert alerts == []
    handler.log_error('nfp_error', NFPError("no fit"))
    assert alerts == [('nfp_error_NFPError', 2)]

    stats = handler.get_error_stats()
    assert stats['total_errors'] == 2
    handler.reset_error_counts()
    assert handler.get_error_stats()['total_errors'] == 0


def test_failing_alert_callback_is_contained():
    handler = ErrorHandler({'api_error': 1})

    def broken(key, details):
        raise RuntimeError("pager offline")

    handler.register_alert_callback(broken)
    handler.log_error('api_error', ValueError("bad request"))
    assert handler.error_counts['api_error_ValueError'] == 1


def test_handle_errors_returns_fallback():
    @handle_errors('geometry_error', fallback_response='fallback')
    def explode():
        raise GeometryError("degenerate")

    before = error_handler.get_error_stats()['error_counts'].get('geometry_error_GeometryError', 0)
    assert explode() == 'fallback'
    after = error_handler.get_error_stats()['error_counts']['geometry_error_GeometryError']
    assert after == before + 1


def test_handle_errors_reraises_without_fallback():
    @handle_errors('configuration_error')
    def explode():
        raise ConfigurationError("rotations must be positive")

    with pytest.raises(ConfigurationError):
        explode()


def test_alerts_repeat_at_each_threshold_multiple_and_are_kept():
    handler = ErrorHandler({'worker_error': 2})
    seen = []

    def pager(key, details):
        seen.append(details['count'])

    handler.register_alert_callback(pager)
    handler.register_alert_callback(pager)
    for _ in range(5):
        handler.log_error('worker_error', RuntimeError("worker slot 0 exited"), {'slot_id': 0})

    assert seen == [2, 4]
    alerts = handler.get_error_stats()['recent_alerts']
    assert [alert['count'] for alert in alerts] == [2, 4]
    assert alerts[-1]['key'] == 'worker_error_RuntimeError'
    assert alerts[-1]['context'] == {'slot_id': 0}
