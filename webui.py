"""
HTTP status API for docker-notify
"""

import hmac
import logging
import threading
from typing import Optional

from flask import Flask, Response, jsonify, request
from werkzeug.serving import BaseWSGIServer, make_server

from scheduler import AlreadyRunningError, InvalidScheduleError, TaskNotFoundError

logger = logging.getLogger(__name__)


def create_app(service) -> Flask:
    """Build the Flask app serving *service* (a ``DockerNotify``).

    Basic auth is enforced when ``web.username`` and ``web.password`` are
    both set (env: WEBUI_USER, WEBUI_PASSWORD).
    """
    app = Flask(__name__)
    web_cfg = service.config.get('web', {})
    auth_user: Optional[str] = web_cfg.get('username')
    auth_password: Optional[str] = web_cfg.get('password')
    auth_enabled = bool(auth_user and auth_password)

    def _check_credentials(username: str, password: str) -> bool:
        """Verify credentials using constant-time comparison."""
        return (hmac.compare_digest(username or '', auth_user) and
                hmac.compare_digest(password or '', auth_password))

    @app.before_request
    def require_auth():
        """Enforce basic auth on all requests when enabled."""
        if not auth_enabled:
            return None

        auth = request.authorization
        if auth and _check_credentials(auth.username, auth.password):
            return None

        return Response(
            'Authentication required', 401,
            {'WWW-Authenticate': 'Basic realm="docker-notify"'}
        )

    @app.before_request
    def require_csrf():
        """Reject state-changing requests missing the X-Requested-With header.

        Browsers block cross-origin custom headers by default, so requiring
        this header on POST/PUT/DELETE prevents cross-site request forgery
        without tokens.
        """
        if request.method in ('POST', 'PUT', 'DELETE'):
            if request.headers.get('X-Requested-With') != 'XMLHttpRequest':
                return jsonify({'error': 'CSRF check failed'}), 403

    @app.route('/api/version')
    def api_version():
        return jsonify({'version': service.status()['version']})

    @app.route('/api/status')
    def api_status():
        return jsonify(service.status())

    @app.route('/api/health')
    def api_health():
        healthy, report = service.health()
        body = {'status': 'healthy' if healthy else 'unhealthy', 'components': report}
        return jsonify(body), 200 if healthy else 503

    @app.route('/api/tasks')
    def api_tasks():
        return jsonify([s.to_dict() for s in service.scheduler.get_task_stats()])

    @app.route('/api/tasks/<task_id>')
    def api_task(task_id):
        try:
            return jsonify(service.scheduler.get_task(task_id).to_dict())
        except TaskNotFoundError as e:
            return jsonify({'error': str(e)}), 404

    @app.route('/api/tasks/<task_id>/run', methods=['POST'])
    def api_run_task(task_id):
        """Trigger a task now; it runs in the background."""
        try:
            service.scheduler.start_task(task_id)
        except TaskNotFoundError as e:
            return jsonify({'error': str(e)}), 404
        except AlreadyRunningError as e:
            return jsonify({'error': str(e)}), 409
        return jsonify({'status': 'started', 'task': task_id}), 202

    @app.route('/api/tasks/<task_id>/schedule', methods=['PUT'])
    def api_update_schedule(task_id):
        data = request.get_json(silent=True) or {}
        schedule = data.get('schedule')
        if not isinstance(schedule, str) or not schedule.strip():
            return jsonify({'error': 'schedule is required'}), 400
        try:
            service.scheduler.update_task_schedule(task_id, schedule)
        except TaskNotFoundError as e:
            return jsonify({'error': str(e)}), 404
        except InvalidScheduleError as e:
            return jsonify({'error': str(e)}), 400
        return jsonify(service.scheduler.get_task(task_id).to_dict())

    @app.route('/api/updates')
    def api_updates():
        """Updates found by the last check plus the in-memory history."""
        result = service.updates()
        limit = request.args.get('limit', 50, type=int)
        result['history'] = result['history'][-limit:] if limit > 0 else []
        return jsonify(result)

    return app


def serve(app: Flask, host: str, port: int) -> BaseWSGIServer:
    """Start serving *app* on a background thread; call ``shutdown()`` to stop."""
    server = make_server(host, port, app, threaded=True)
    thread = threading.Thread(target=server.serve_forever, name="webui", daemon=True)
    thread.start()
    logger.info(f"Status API listening on http://{host}:{port}")
    return server
