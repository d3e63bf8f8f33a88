#!/usr/bin/env python3
"""
BotFleet - API de administración
Consulta de cola y workers, alta/cancelación de jobs y reset de workers (JSON)
"""

import hmac
from functools import wraps

from flask import Flask, request, jsonify

from botfleet import (
    DuplicateOwner, FleetError, JobNotFound, JobRequest, NotCancellable, QueueShutdown,
    StateConflictError, ValidationError, WorkerNotFound,
)

# Excepción -> código HTTP
ERROR_STATUS = (
    (ValidationError, 400),
    (JobNotFound, 404),
    (WorkerNotFound, 404),
    (DuplicateOwner, 409),
    (NotCancellable, 409),
    (StateConflictError, 409),
    (QueueShutdown, 503),
)

JOB_FIELDS = ('id', 'owner_id', 'bot_type', 'payload', 'priority', 'cancellable',
              'retryable', 'timeout')


def _error_response(error: FleetError):
    status = next((code for exc, code in ERROR_STATUS if isinstance(error, exc)), 400)
    return jsonify({
        'success': False,
        'error': str(error),
        'type': error.__class__.__name__,
    }), status


def create_app(orchestrator, admin_token: str = None) -> Flask:
    """
    Crear la app Flask sobre un orquestador ya configurado.

    Args:
        orchestrator: Orchestrator (setup() hecho)
        admin_token: Token para X-Admin-Token (default: ADMIN_TOKEN de config)
    """
    if admin_token is None:
        from config import ADMIN_TOKEN
        admin_token = ADMIN_TOKEN

    app = Flask(__name__)
    app.config['ADMIN_TOKEN'] = admin_token
    app.config['JSON_SORT_KEYS'] = False

    def require_token(f):
        """Decorador para requerir X-Admin-Token (si hay token configurado)"""
        @wraps(f)
        def decorated(*args, **kwargs):
            token = app.config.get('ADMIN_TOKEN')
            if token:
                provided = request.headers.get('X-Admin-Token', '')
                if not hmac.compare_digest(provided, token):
                    return jsonify({'success': False, 'error': 'Unauthorized'}), 401
            return f(*args, **kwargs)
        return decorated

    app.register_error_handler(FleetError, _error_response)

    # === COLA ===

    @app.route('/api/status')
    @require_token
    def api_status():
        return jsonify(orchestrator.get_status())

    @app.route('/api/queue')
    @require_token
    def api_queue():
        return jsonify({
            'jobs': [j.to_dict() for j in orchestrator.manager.list_queue()],
            'stats': orchestrator.manager.get_stats(),
        })

    @app.route('/api/jobs', methods=['POST'])
    @require_token
    def api_submit_job():
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            raise ValidationError("JSON body required")

        fields = {k: data[k] for k in JOB_FIELDS if k in data}
        fields.setdefault('owner_id', None)
        fields.setdefault('bot_type', None)
        if fields.get('timeout') is not None:
            try:
                fields['timeout'] = float(fields['timeout'])
            except (TypeError, ValueError):
                raise ValidationError("timeout must be a number")

        job = JobRequest.from_dict({**fields, 'source': 'api'})
        position = orchestrator.manager.submit(job)
        return jsonify({'success': True, 'job_id': job.id, 'position': position}), 201

    @app.route('/api/jobs/<job_id>', methods=['DELETE'])
    @require_token
    def api_cancel_job(job_id: str):
        requested_by = request.args.get('requested_by') or None
        status = orchestrator.manager.cancel(job_id, requested_by=requested_by)
        return jsonify({'success': True, 'job_id': job_id, 'status': status.value})

    @app.route('/api/jobs/<job_id>/position')
    @require_token
    def api_job_position(job_id: str):
        return jsonify({'job_id': job_id, 'position': orchestrator.manager.query_position(job_id)})

    @app.route('/api/jobs/history')
    @require_token
    def api_job_history():
        limit = request.args.get('limit', 50, type=int)
        return jsonify({'jobs': orchestrator.get_job_history(limit)})

    # === WORKERS ===

    @app.route('/api/workers')
    @require_token
    def api_workers():
        return jsonify({'workers': [w.to_dict() for w in orchestrator.pool.list_workers()]})

    @app.route('/api/workers/<worker_id>/reset', methods=['POST'])
    @require_token
    def api_reset_worker(worker_id: str):
        orchestrator.pool.reset_worker(worker_id)
        return jsonify({'success': True, 'message': f"Reset requested for {worker_id}"})

    @app.route('/api/workers/<worker_id>/stop', methods=['POST'])
    @require_token
    def api_stop_worker(worker_id: str):
        data = request.get_json(silent=True) or {}
        graceful = bool(data.get('graceful', True))
        orchestrator.pool.stop_worker(worker_id, graceful=graceful)
        return jsonify({'success': True, 'message': f"Stop requested for {worker_id}",
                        'graceful': graceful})

    # === HEALTH ===

    @app.route('/api/health')
    @require_token
    def api_health():
        status = orchestrator.health_monitor.get_health_status()
        return jsonify(status), 200 if status['healthy'] else 503

    return app


if __name__ == '__main__':
    from config import WEB_HOST, WEB_PORT
    from orchestrator import Orchestrator, setup_logging

    setup_logging(log_file='webapp.log')

    orchestrator = Orchestrator()
    orchestrator.start()

    print("\n" + "=" * 50)
    print("🤖 BotFleet - Admin API")
    print("=" * 50)
    print(f"URL: http://{WEB_HOST}:{WEB_PORT}/api/status")
    print("=" * 50 + "\n")

    try:
        create_app(orchestrator).run(host=WEB_HOST, port=WEB_PORT, debug=False, use_reloader=False)
    finally:
        orchestrator.stop(reason="web server exited")
