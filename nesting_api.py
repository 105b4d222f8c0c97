#!/usr/bin/env python3
"""
Nesting API - start, monitor and stop nesting runs over HTTP.

Each run is a session: an optimizer driven on a background thread, either
in-process or through a worker pool. Clients poll the status endpoint and
fetch the best layout found so far from the result endpoint.
"""

import logging
import threading
import time
import traceback
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from flask import Blueprint, Flask, current_app, jsonify, request

from geometry import GeometryError, Polygon
from nesting_config import NestConfig, validate_config
from nesting_errors import ConfigurationError, error_handler, handle_errors
from nesting_optimizer import NestOptimizer, NestPart, NestSheet
from worker_coordinator import WorkerCoordinator

logger = logging.getLogger(__name__)

# Finished sessions older than this are dropped
SESSION_RETENTION_SECONDS = 3600.0

nesting_bp = Blueprint('nesting', __name__, url_prefix='/api/nesting')


@dataclass
class NestingSession:
    session_id: str
    optimizer: NestOptimizer
    parallel: bool
    thread: Optional[threading.Thread] = None
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    finished_at: Optional[float] = None

    @property
    def running(self) -> bool:
        return self.thread is not None and self.thread.is_alive()


class NestingSessionManager:
    """Keeps track of nesting runs started through the API"""

    def __init__(self, retention_seconds: float = SESSION_RETENTION_SECONDS):
        self.sessions: Dict[str, NestingSession] = {}
        self.retention_seconds = retention_seconds
        self.lock = threading.Lock()

    def create(self, optimizer: NestOptimizer, parallel: bool, warnings: List[str] = None) -> NestingSession:
        session = NestingSession(uuid.uuid4().hex, optimizer, parallel, warnings=warnings or [])
        session.thread = threading.Thread(
            target=self._run, args=(session,), name=f"nesting-{session.session_id[:8]}", daemon=True
        )
        self.prune()
        with self.lock:
            self.sessions[session.session_id] = session
        session.thread.start()
        return session

    def _run(self, session: NestingSession):
        try:
            if session.parallel:
                with WorkerCoordinator(session.optimizer.config.threads) as coordinator:
                    session.optimizer.run(coordinator)
            else:
                session.optimizer.run_serial()
        except Exception as e:
            session.error = f"{type(e).__name__}: {e}"
            error_handler.log_error('worker_error', e, {'session_id': session.session_id})
        finally:
            session.finished_at = time.time()

    def prune(self) -> int:
        """Forget finished sessions older than the retention period; returns how many."""
        cutoff = time.time() - self.retention_seconds
        with self.lock:
            expired = [
                session_id for session_id, session in self.sessions.items()
                if not session.running and session.finished_at is not None and session.finished_at <= cutoff
            ]
            for session_id in expired:
                del self.sessions[session_id]
        if expired:
            logger.info(f"Pruned {len(expired)} finished nesting sessions")
        return len(expired)

    def get(self, session_id: str) -> Optional[NestingSession]:
        with self.lock:
            return self.sessions.get(session_id)

    def stop(self, session_id: str, timeout: float = 10.0) -> Optional[NestingSession]:
        session = self.get(session_id)
        if session is None:
            return None
        session.optimizer.cancel()
        if session.thread is not None:
            session.thread.join(timeout=timeout)
        return session

    def get_status(self) -> Dict[str, Any]:
        self.prune()
        with self.lock:
            return {
                'sessions': len(self.sessions),
                'running': sum(1 for s in self.sessions.values() if s.running),
                'retention_seconds': self.retention_seconds,
            }


session_manager = NestingSessionManager()


def _polygon_from_json(item: Dict[str, Any], kind: str, closing_tolerance: float = 0.0) -> Polygon:
    points = item.get('points')
    if not points:
        raise ConfigurationError(f"{kind} {item.get('id', '?')} has no points")
    try:
        return Polygon.from_coords(points, item.get('holes', []), source=str(item.get('id')),
                                   closing_tolerance=closing_tolerance)
    except (GeometryError, TypeError, ValueError) as e:
        raise ConfigurationError(f"{kind} {item.get('id', '?')} has invalid geometry: {e}") from e


def parse_parts(items: List[Dict[str, Any]], closing_tolerance: float = 0.0) -> List[NestPart]:
    return [
        NestPart(str(item.get('id', index)), _polygon_from_json(item, 'Part', closing_tolerance),
                 int(item.get('quantity', 1)))
        for index, item in enumerate(items or [])
    ]


def parse_sheets(items: List[Dict[str, Any]], closing_tolerance: float = 0.0) -> List[NestSheet]:
    sheets = []
    for index, item in enumerate(items or []):
        if 'points' not in item and 'width' in item and 'height' in item:
            w, h = float(item['width']), float(item['height'])
            item = dict(item, points=[[0, 0], [w, 0], [w, h], [0, h]])
        sheets.append(NestSheet(str(item.get('id', index)), _polygon_from_json(item, 'Sheet', closing_tolerance),
                                int(item.get('quantity', 1))))
    return sheets


def _error(message: str, status: int, **extra):
    body = {'success': False, 'error': message}
    body.update(extra)
    return jsonify(body), status


@nesting_bp.route('/start', methods=['POST'])
def start_nesting():
    """
    Start a nesting run.

    Body: {"parts": [{"id", "points", "holes"?, "quantity"?}],
           "sheets": [{"id", "points" | "width"/"height", "quantity"?}],
           "config": {...}, "parallel": bool, "seed": int}
    """
    data = request.get_json(silent=True)
    if not data:
        return _error('No JSON data provided', 400)

    try:
        config = NestConfig.from_environment(overrides=data.get('config', {}))
        parts = parse_parts(data.get('parts', []), config.endpoint_tolerance)
        sheets = parse_sheets(data.get('sheets', []), config.endpoint_tolerance)
        optimizer = NestOptimizer(parts, sheets, config, seed=data.get('seed'))
    except (ConfigurationError, TypeError, ValueError) as e:
        error_handler.log_error('configuration_error', e, {'endpoint': 'start'})
        return _error(str(e), 400, error_type=type(e).__name__)

    session = session_manager.create(optimizer, bool(data.get('parallel', False)), validate_config(config))
    current_app.logger.info(
        f"Nesting session {session.session_id} started: {len(optimizer.instances)} parts, "
        f"{len(optimizer.sheets)} sheets, parallel={session.parallel}"
    )
    return jsonify({
        'success': True,
        'session_id': session.session_id,
        'parts': len(optimizer.instances),
        'sheets': len(optimizer.sheets),
        'warnings': session.warnings,
        'config': config.summary(),
    }), 202


@nesting_bp.route('/status/<session_id>', methods=['GET'])
def nesting_status(session_id):
    session = session_manager.get(session_id)
    if session is None:
        return _error(f'Unknown session {session_id}', 404)
    return jsonify({
        'success': True,
        'session_id': session_id,
        'running': session.running,
        'error': session.error,
        'status': session.optimizer.status(),
        'history': session.optimizer.history,
    })


@nesting_bp.route('/result/<session_id>', methods=['GET'])
def nesting_result(session_id):
    session = session_manager.get(session_id)
    if session is None:
        return _error(f'Unknown session {session_id}', 404)
    result = session.optimizer.best_result()
    if result is None:
        return _error('No evaluated layout yet', 404, running=session.running)
    return jsonify({'success': True, 'session_id': session_id, 'running': session.running,
                    'result': result.to_dict()})


@nesting_bp.route('/stop/<session_id>', methods=['POST'])
def stop_nesting(session_id):
    try:
        session = session_manager.stop(session_id)
    except Exception as e:
        current_app.logger.error(f"Stopping session {session_id} failed: {e}")
        current_app.logger.error(traceback.format_exc())
        error_handler.log_error('api_error', e, {'endpoint': 'stop', 'session_id': session_id})
        return _error(f'Stop failed: {e}', 500, error_type=type(e).__name__)
    if session is None:
        return _error(f'Unknown session {session_id}', 404)
    current_app.logger.info(f"Nesting session {session_id} stopped")
    return jsonify({'success': True, 'session_id': session_id, 'running': session.running,
                    'status': session.optimizer.status()})


@nesting_bp.route('/health', methods=['GET'])
@handle_errors('api_error', fallback_response=({'success': False, 'error': 'Health check failed'}, 500))
def health():
    errors = error_handler.get_error_stats()
    return jsonify({
        'success': True,
        'sessions': session_manager.get_status(),
        'errors': errors,
        'alerts': errors['recent_alerts'],
    })


def log_alert(error_key: str, details: Dict[str, Any]):
    """Alert callback: error thresholds reached by sessions and workers land in the service log."""
    logger.critical(
        f"ALERT {error_key}: {details['count']} occurrences, last: {details['error_message']} "
        f"(context {details['context']})"
    )


def register_nesting_api(app):
    """Register the nesting API with the Flask app"""
    app.register_blueprint(nesting_bp)
    error_handler.register_alert_callback(log_alert)
    app.logger.info("Nesting API registered")


def create_app() -> Flask:
    app = Flask(__name__)
    register_nesting_api(app)
    return app


if __name__ == '__main__':
    from nesting_errors import configure_logging

    configure_logging()
    create_app().run(host='0.0.0.0', port=5000)
