#!/usr/bin/env python3
"""
╔══════════════════════════════════════════════════════════════════════════════╗
║                  POWER-IGR - Web API                                         ║
║                  Thin Flask layer over the session registry                  ║
╚══════════════════════════════════════════════════════════════════════════════╝

Endpoints:
  GET  /api/options/<level>          enumerate year/district/taluka/village
  POST /api/search                   start (or continue) a search
  GET  /api/captcha-image            current CAPTCHA PNG (no-cache)
  GET  /api/captcha-status           does a CAPTCHA exist, how big, how old
  POST /api/submit-captcha           {captcha, session_id}
  POST /api/cancel                   {session_id}
  GET  /api/sessions                 registry summary + recent history
  GET  /api/sessions/<id>/captures   capture history of one session
  GET  /api/sessions/<id>/export     the same history as a CSV download
  GET  /api/health                   portal health metrics

Calls without session_id address the most recent live session.

Author: POWER-IGR Team
Version: 1.0.0
"""

import atexit
import logging
from concurrent.futures import TimeoutError as CommandTimeout
from typing import Optional

from flask import Flask, Response, jsonify, request, send_file
from flask_cors import CORS

from capture_history import CaptureHistory
from igr_config import Config, setup_logging
from igr_errors import PortalUnavailable, SessionBudgetExceeded, SessionBusy
from portal_health import PortalHealthMonitor, get_portal_monitor
from session_models import CASCADE_LEVELS, Selections, SessionStatus
from session_registry import SessionRegistry, SessionWorker

logger = logging.getLogger('IGR-API')

app = Flask(__name__)
CORS(app)

# Global state
registry: Optional[SessionRegistry] = None
history: Optional[CaptureHistory] = None
monitor: Optional[PortalHealthMonitor] = None


def init_globals(session_registry: SessionRegistry = None,
                 capture_history: CaptureHistory = None,
                 health_monitor: PortalHealthMonitor = None):
    global registry, history, monitor
    for folder in (Config.DATA_DIR, Config.DOCUMENTS_DIR, Config.CAPTCHA_DIR, Config.DIAGNOSTICS_DIR):
        folder.mkdir(parents=True, exist_ok=True)
    history = capture_history or CaptureHistory()
    monitor = health_monitor or get_portal_monitor()
    registry = session_registry or SessionRegistry(history=history, monitor=monitor)


# ═══════════════════════════════════════════════════════════════════════════════════════
# ERRORS
# ═══════════════════════════════════════════════════════════════════════════════════════

def _error(message: str, code: int, **extra):
    body = {'success': False, 'message': message, 'captchaRequired': False}
    body.update(extra)
    return jsonify(body), code


@app.errorhandler(SessionBusy)
def handle_busy(e):
    return _error(str(e), 409)


@app.errorhandler(SessionBudgetExceeded)
def handle_budget(e):
    return _error(str(e), 429)


@app.errorhandler(PortalUnavailable)
def handle_portal_down(e):
    return _error(str(e), 503, backoffSeconds=monitor.get_backoff_seconds() if monitor else 0)


@app.errorhandler(CommandTimeout)
def handle_timeout(e):
    return _error('Session did not answer in time', 504)


# ═══════════════════════════════════════════════════════════════════════════════════════
# HELPERS
# ═══════════════════════════════════════════════════════════════════════════════════════

def _payload() -> dict:
    return request.get_json(silent=True) or {}


def _session_id(data: dict = None) -> str:
    if data and data.get('session_id'):
        return str(data['session_id'])
    return request.args.get('session_id', '')


def _worker_for_search(session_id: str) -> Optional[SessionWorker]:
    """
    Named session, else the default one while it is still idle, else a new one.
    A default session past IDLE is cancelled first: one browser per anonymous client.
    """
    if session_id:
        return registry.get(session_id)
    worker = registry.default()
    if worker is not None:
        if worker.session.status == SessionStatus.IDLE:
            return worker
        logger.info(f"🔄 New search replaces session {worker.session_id} ({worker.session.status.value})")
        registry.cancel(worker.session_id)
    return registry.create()


def _no_session(session_id: str):
    return _error(f"Session {session_id} not found" if session_id else 'No active session', 404)


# ═══════════════════════════════════════════════════════════════════════════════════════
# SEARCH
# ═══════════════════════════════════════════════════════════════════════════════════════

@app.route('/api/options/<level>')
def get_options(level):
    if level not in CASCADE_LEVELS:
        return _error(f"Unknown level '{level}'", 400)

    parents = CASCADE_LEVELS[:CASCADE_LEVELS.index(level)]
    selections = Selections.from_dict({name: request.args.get(name, '') for name in parents})

    session_id = _session_id()
    worker = _worker_for_search(session_id)
    if worker is None:
        return _no_session(session_id)

    result = worker.execute('start', selections)
    body = result.to_dict()
    body['options'] = body.get(f'{level}s', [])
    return jsonify(body)


@app.route('/api/search', methods=['POST'])
def search():
    data = _payload()
    session_id = _session_id(data)
    worker = _worker_for_search(session_id)
    if worker is None:
        return _no_session(session_id)

    result = worker.execute('start', Selections.from_dict(data))
    body = result.to_dict()
    body['session_id'] = worker.session_id
    return jsonify(body)


# ═══════════════════════════════════════════════════════════════════════════════════════
# CAPTCHA
# ═══════════════════════════════════════════════════════════════════════════════════════

@app.route('/api/captcha-image')
def captcha_image():
    session_id = _session_id()
    worker = registry.resolve(session_id)
    challenge = worker.session.current_challenge() if worker else None
    if challenge is None:
        return _error('CAPTCHA image not found', 404)

    response = Response(challenge.image_bytes, mimetype='image/png')
    response.headers['Cache-Control'] = 'no-store, no-cache, must-revalidate, private'
    response.headers['Pragma'] = 'no-cache'
    response.headers['Expires'] = '0'
    return response


@app.route('/api/captcha-status')
def captcha_status():
    session_id = _session_id()
    worker = registry.resolve(session_id)
    challenge = worker.session.current_challenge() if worker else None
    body = {
        'success': True,
        'exists': challenge is not None,
        'captchaRequired': bool(worker and worker.session.status == SessionStatus.AWAITING_CAPTCHA),
        'sessionId': worker.session_id if worker else None,
    }
    if challenge is not None:
        body.update(challenge.to_dict())
    return jsonify(body)


@app.route('/api/submit-captcha', methods=['POST'])
def submit_captcha():
    data = _payload()
    session_id = _session_id(data)
    worker = registry.resolve(session_id)
    if worker is None:
        return _no_session(session_id)

    captcha = str(data.get('captcha') or '')
    if not captcha.strip():
        return _error('CAPTCHA text is required', 400, captchaRequired=True)

    result = worker.execute('submit_captcha', captcha)
    return jsonify(result.to_dict())


# ═══════════════════════════════════════════════════════════════════════════════════════
# SESSIONS
# ═══════════════════════════════════════════════════════════════════════════════════════

@app.route('/api/cancel', methods=['POST'])
def cancel():
    session_id = _session_id(_payload())
    if not session_id:
        worker = registry.default()
        if worker is None:
            return jsonify({'success': True, 'message': 'No active session', 'captchaRequired': False})
        session_id = worker.session_id
    result = registry.cancel(session_id)
    return jsonify(result.to_dict())


@app.route('/api/sessions')
def sessions():
    summary = registry.summary()
    summary['success'] = True
    summary['recent'] = history.get_recent_sessions(limit=request.args.get('limit', 20, type=int))
    return jsonify(summary)


@app.route('/api/sessions/<session_id>/captures')
def session_captures(session_id):
    session_row = history.get_session(session_id)
    if session_row is None:
        return _no_session(session_id)
    captures = history.get_captures(session_id)
    return jsonify({
        'success': True,
        'session': session_row,
        'count': len(captures),
        'captures': captures,
    })


@app.route('/api/sessions/<session_id>/export')
def export_session_captures(session_id):
    """Export a session's capture history to CSV"""
    if history.get_session(session_id) is None:
        return _no_session(session_id)

    saved_only = request.args.get('saved_only', 'false').lower() == 'true'
    suffix = '_saved' if saved_only else '_all'
    filename = f"igr_export_{session_id}{suffix}.csv"
    filepath = Config.DATA_DIR / filename

    if history.export_to_csv(session_id, str(filepath), saved_only=saved_only) == 0:
        return _error('No captures to export', 404)

    return send_file(
        filepath.resolve(),
        mimetype='text/csv',
        as_attachment=True,
        download_name=filename
    )


@app.route('/api/health')
def health():
    metrics = monitor.get_metrics()
    return jsonify({
        'success': True,
        'portal': metrics,
        'allowNewSessions': monitor.should_allow_session(),
        'liveSessions': registry.live_count(),
        'maxSessions': registry.max_sessions,
    })


# ═══════════════════════════════════════════════════════════════════════════════════════
# MAIN
# ═══════════════════════════════════════════════════════════════════════════════════════

def main():
    setup_logging(logging.DEBUG if Config.DEBUG else logging.INFO)
    init_globals()
    monitor.start()
    atexit.register(registry.cancel_all)
    atexit.register(monitor.stop)

    logger.info("=" * 80)
    logger.info("POWER-IGR - Maharashtra IGR property document capture")
    logger.info(f"Port: {Config.PORT}")
    logger.info(f"Max Sessions: {Config.MAX_SESSIONS}")
    logger.info(f"Data: {Config.DATA_DIR.resolve()}")
    logger.info("=" * 80)

    app.run(host=Config.HOST, port=Config.PORT, debug=False, use_reloader=False, threaded=True)


if __name__ == '__main__':
    main()
