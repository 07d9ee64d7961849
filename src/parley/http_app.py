#!/usr/bin/env python3
"""
Parley HTTP sidecar - health reporting and document uploads.

Runs a small Flask app on its own thread next to the websocket server and
shares the SessionStore and ResponseCache with it.
"""
import os
import threading
import time
import uuid
from typing import Any, Dict, Optional

import psutil
from flask import Flask, jsonify, request

from .cache import ResponseCache
from .documents import DocumentIngestor
from .error_handler import ErrorSeverity, ValidationError, get_error_handler, handle_error
from .logging_utils import setup_logger
from .session_store import SessionStore

logger = setup_logger("parley.http_app", "logs/parley.log")


def _api_ok(payload: Optional[dict] = None, message: str = "OK", extra: Optional[dict] = None, status: int = 200):
    resp: Dict[str, Any] = {
        'success': True,
        'message': message,
    }
    if payload is not None:
        resp['data'] = payload
    if extra:
        resp.update(extra)
    return jsonify(resp), status


def _api_error(message: str, code: str = 'bad_request', status: int = 400, details: Optional[dict] = None):
    resp: Dict[str, Any] = {
        'success': False,
        'error': message,
        'code': code,
    }
    if details:
        resp['details'] = details
    return jsonify(resp), status


class ParleyHttpApp:
    """Flask app exposing /health, /info and /upload"""

    def __init__(self, store: SessionStore, cache: ResponseCache, ingestor: DocumentIngestor,
                 name: str = "parley"):
        self.app = Flask(name)
        self.name = name
        self.store = store
        self.cache = cache
        self.ingestor = ingestor
        self.started_at = time.time()
        self._thread: Optional[threading.Thread] = None
        self.app.config['MAX_CONTENT_LENGTH'] = ingestor.max_bytes + 64 * 1024

        self._add_routes()

    def health_status(self) -> Dict[str, Any]:
        process = psutil.Process(os.getpid())
        return {
            'status': 'ok',
            'service': self.name,
            'uptime_sec': round(time.time() - self.started_at, 1),
            'sessions': len(self.store),
            'cache': self.cache.stats(),
            'errors': get_error_handler().get_error_stats(),
            'memory_rss_mb': round(process.memory_info().rss / (1024 * 1024), 1),
            'timestamp': time.time(),
        }

    def _add_routes(self) -> None:

        @self.app.route('/health')
        def health():
            req_id = str(uuid.uuid4())
            logger.info(f"{self.name}_req id={req_id} path=/health")
            status = self.health_status()
            status['req_id'] = req_id
            return jsonify(status)

        @self.app.route('/info')
        def info():
            """Basic service information"""
            return jsonify({
                'service': self.name,
                'status': 'running',
                'timestamp': time.time()
            })

        @self.app.route('/upload', methods=['POST'])
        def upload():
            """Attach an uploaded document to the session named in x-session-id"""
            session_id = request.headers.get('x-session-id')
            upload_file = request.files.get('document')
            if upload_file is None or not upload_file.filename:
                return _api_error('No document provided', code='missing_document')
            try:
                attachment = self.ingestor.ingest(session_id, upload_file.read(), upload_file.filename)
            except ValidationError as e:
                logger.warning(f"Upload rejected ({e.reason}): {e}")
                return _api_error(str(e), code=e.reason)
            except Exception as e:
                handle_error(e, "http_app", "upload", ErrorSeverity.HIGH, session_id=session_id)
                return _api_error('Failed to process document', code='internal_error', status=500)

            return _api_ok({
                'filename': attachment.filename,
                'size': attachment.size,
                'characters': len(attachment.content),
                'uploaded_at': attachment.uploaded_at,
            }, message=f"Document '{attachment.filename}' attached")

        @self.app.errorhandler(413)
        def too_large(_e):
            return _api_error('File too large', code='too_large', status=413)

    def run(self, host: str = '0.0.0.0', port: int = 5001, debug: bool = False, **kwargs):
        try:
            logger.info(f"Starting {self.name} HTTP sidecar on http://{host}:{port}")
            self.app.run(host=host, port=port, debug=debug, use_reloader=False, **kwargs)
        except OSError as e:
            if "Address already in use" in str(e):
                logger.warning(f"Port {port} already in use for {self.name}")
            else:
                logger.error(f"Failed to start {self.name}: {e}")
            raise

    def start_in_thread(self, host: str = '0.0.0.0', port: int = 5001) -> threading.Thread:
        def _run():
            try:
                self.run(host=host, port=port)
            except OSError as e:
                logger.error(f"HTTP sidecar terminated: {e}")

        self._thread = threading.Thread(target=_run, name="parley-http", daemon=True)
        self._thread.start()
        return self._thread


__all__ = ["ParleyHttpApp"]
