"""
web_api.py
==========
Flask HTTP API in front of ServerManager.

Public endpoints: /health, /ping, /metrics.  Everything under /api/
requires the ``X-API-Key`` header.  Errors always use the envelope
``{"error": {"code", "message", "statusCode"}}``.
"""

from __future__ import annotations

import asyncio
import hmac
import logging
from datetime import datetime, timezone
from typing import Any, Dict

from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException

from errors import PanelBridgeError, RequestError
from server_manager import ServerManager
from settings import Settings

logger = logging.getLogger(__name__)

MAX_UPLOAD_BYTES = 50 * 1024 * 1024
PUBLIC_PATHS = ('/health', '/ping', '/metrics')


def _error(code: str, message: str, status: int):
    return jsonify({'error': {'code': code, 'message': message, 'statusCode': status}}), status


def _json_body() -> Dict[str, Any]:
    body = request.get_json(silent=True)
    if body is None:
        return {}
    if not isinstance(body, dict):
        raise RequestError('Request body must be a JSON object')
    return body


def _int_arg(name: str, default: int) -> int:
    raw = request.args.get(name)
    if raw is None or raw == '':
        return default
    try:
        return int(raw)
    except ValueError:
        raise RequestError(
            f"Query parameter '{name}' must be an integer", code=f'INVALID_{name.upper()}',
        ) from None


def create_app(manager: ServerManager, settings: Settings) -> Flask:
    """Build the Flask app bound to one ServerManager."""
    app = Flask(__name__)
    app.config['MAX_CONTENT_LENGTH'] = MAX_UPLOAD_BYTES
    api_key = settings.api_key.encode('utf-8')

    # ============================================================================
    # AUTH / BOOKKEEPING
    # ============================================================================

    @app.before_request
    def require_api_key():
        if not request.path.startswith('/api/'):
            return None
        supplied = request.headers.get('X-API-Key')
        if not supplied:
            logger.warning('Request to %s without API key from %s', request.path, request.remote_addr)
            return _error('MISSING_API_KEY', 'Missing X-API-Key header', 401)
        if not hmac.compare_digest(supplied.encode('utf-8'), api_key):
            logger.warning('Invalid API key %s… for %s', supplied[:4], request.path)
            return _error('INVALID_API_KEY', 'Invalid API key', 401)
        return None

    @app.after_request
    def count_request(response):
        manager.record_request(failed=response.status_code >= 500)
        return response

    # ============================================================================
    # ERROR HANDLERS
    # ============================================================================

    @app.errorhandler(PanelBridgeError)
    def handle_bridge_error(exc: PanelBridgeError):
        log = logger.warning if exc.is_client_error else logger.error
        log('%s %s failed: %s', request.method, request.path, exc)
        return jsonify(exc.to_dict()), exc.status_code

    @app.errorhandler(Exception)
    def handle_unexpected(exc: Exception):
        if isinstance(exc, HTTPException):
            code = 'PAYLOAD_TOO_LARGE' if exc.code == 413 else (exc.name or 'HTTP_ERROR').upper().replace(' ', '_')
            return _error(code, exc.description or exc.name, exc.code or 500)
        logger.exception('Unhandled error on %s %s', request.method, request.path)
        return _error('INTERNAL_ERROR', 'Internal server error', 500)

    # ============================================================================
    # HEALTH
    # ============================================================================

    @app.route('/health')
    def health():
        """Liveness + process memory"""
        return jsonify(manager.get_health())

    @app.route('/ping')
    def ping():
        return jsonify({'pong': True})

    @app.route('/metrics')
    def metrics():
        return jsonify(manager.get_metrics())

    # ============================================================================
    # SERVER (PANEL)
    # ============================================================================

    @app.route('/api/status')
    def api_status():
        """Canonical server status"""
        status = asyncio.run(manager.get_canonical_status())
        return jsonify({
            'status': status.to_dict(),
            'timestamp': datetime.now(tz=timezone.utc).isoformat(),
            'uptime': round(manager.uptime, 1),
        })

    @app.route('/api/server/info')
    def api_server_info():
        return jsonify(asyncio.run(manager.get_server_info()))

    @app.route('/api/server/logs')
    def api_server_logs():
        params = {k: v for k, v in request.args.items()}
        logs = asyncio.run(manager.get_logs(params=params or None))
        return jsonify({'logs': logs})

    @app.route('/api/server/command', methods=['POST'])
    def api_server_command():
        """Send a console command"""
        command = _json_body().get('command')
        if not isinstance(command, str):
            raise RequestError("Field 'command' is required", code='MISSING_FIELDS')
        result = asyncio.run(manager.send_command(command))
        return jsonify({'success': True, 'message': 'Command sent', 'result': result})

    @app.route('/api/server/<action>', methods=['POST'])
    def api_server_action(action):
        """start / stop / restart, optionally delayed"""
        if action not in ('start', 'stop', 'restart'):
            return _error('NOT_FOUND', f'Unknown server action: {action}', 404)
        delay = _json_body().get('delay', 0)
        logger.info('Server %s requested (delay=%s)', action, delay)
        result = asyncio.run(manager.schedule_action(action, delay))
        return jsonify(result.to_dict())

    # ============================================================================
    # REGISTRY
    # ============================================================================

    @app.route('/api/modrinth/search')
    def api_modrinth_search():
        """Search Modrinth (?q=, limit, offset, category, compatible=true)"""
        query = request.args.get('q', '')
        limit = _int_arg('limit', 10)
        offset = _int_arg('offset', 0)
        category = request.args.get('category') or None
        compatible = request.args.get('compatible', '').lower() in ('1', 'true', 'yes')
        page = asyncio.run(manager.search_plugins(
            query, limit=limit, offset=offset, category=category, compatible=compatible,
        ))
        return jsonify(page.to_dict())

    @app.route('/api/modrinth/project/<project_id>')
    def api_modrinth_project(project_id):
        project = asyncio.run(manager.get_project(project_id))
        return jsonify(project.to_dict())

    @app.route('/api/modrinth/project/<project_id>/versions')
    def api_modrinth_versions(project_id):
        versions = asyncio.run(manager.list_project_versions(project_id))
        return jsonify({'versions': [v.to_dict() for v in versions], 'count': len(versions)})

    # ============================================================================
    # PLUGINS
    # ============================================================================

    @app.route('/api/plugins')
    def api_plugins():
        """Installed plugins"""
        plugins = [p.to_dict() for p in manager.list_plugins()]
        return jsonify({'plugins': plugins, 'count': len(plugins)})

    @app.route('/api/plugins/backups')
    def api_plugin_backups():
        backups = manager.list_backups()
        return jsonify({'backups': backups, 'count': len(backups)})

    def _install(update: bool):
        body = _json_body()
        project_id = body.get('projectId')
        version_id = body.get('versionId')
        if not isinstance(project_id, str) or not project_id.strip():
            raise RequestError("Field 'projectId' is required", code='MISSING_FIELDS')
        if version_id is not None and not isinstance(version_id, str):
            raise RequestError("Field 'versionId' must be a string", code='INVALID_FIELDS')

        if update:
            record = asyncio.run(manager.update_plugin(project_id, version_id))
        else:
            record = asyncio.run(manager.install_plugin(project_id, version_id))
        verb = 'updated' if update else 'installed'
        return jsonify({
            'success': True,
            'message': f'Plugin {record.filename} {verb}',
            'installation': record.to_dict(),
        })

    @app.route('/api/plugins/install', methods=['POST'])
    def api_plugins_install():
        return _install(update=False)

    @app.route('/api/plugins/update', methods=['POST'])
    def api_plugins_update():
        return _install(update=True)

    @app.route('/api/plugins/upload', methods=['POST'])
    def api_plugins_upload():
        """Upload a jar (multipart field 'file')"""
        upload = request.files.get('file')
        if upload is None or not upload.filename:
            raise RequestError("Multipart field 'file' is required", code='MISSING_FILE')
        record = manager.upload_plugin(upload.read(), upload.filename)
        return jsonify({
            'success': True,
            'message': 'Plugin uploaded successfully',
            'installation': record.to_dict(),
        })

    @app.route('/api/plugins/<filename>', methods=['DELETE'])
    def api_plugins_delete(filename):
        removal = manager.remove_plugin(filename)
        return jsonify({
            'success': True,
            'message': f"Plugin '{filename}' deleted",
            'removal': removal.to_dict(),
        })

    return app


def run_server(manager: ServerManager, settings: Settings) -> None:
    """Run the API on Flask's threaded server."""
    app = create_app(manager, settings)
    logger.info('Starting API on http://%s:%d', settings.host, settings.port)
    try:
        app.run(host=settings.host, port=settings.port, debug=False, threaded=True)
    finally:
        cancelled = manager.cancel_scheduled()
        if cancelled:
            logger.info('Cancelled %d pending server action(s)', cancelled)
