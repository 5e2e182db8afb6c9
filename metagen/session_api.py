"""
Session API endpoints: queue files, start/stop dispatch, retry, poll status
and download archives.
"""
import asyncio
import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from flask import Blueprint, Response, jsonify, request
from werkzeug.utils import secure_filename

from .batch_session import BatchSession
from .errors import (
    InsufficientCreditsError, InvalidTransitionError, PipelineError,
    QueueLockedError, ValidationError
)
from .file_processor import content_type_for
from .history_store import history_store
from .models import SourceFile

logger = logging.getLogger(__name__)

# Create Blueprint for session API
session_api = Blueprint('session_api', __name__, url_prefix='/api/v1/sessions')


def _default_factory(tool: str, selectors, params) -> BatchSession:
    return BatchSession(tool, selectors=selectors, params=params, history=history_store)


class SessionRegistry:
    """In-process registry of live batch sessions"""

    def __init__(self, factory: Callable[..., BatchSession] = _default_factory):
        self.factory = factory
        self._sessions: Dict[str, BatchSession] = {}
        self._lock = threading.Lock()

    def create(self, tool: str, selectors=None, params=None) -> BatchSession:
        session = self.factory(tool, selectors, params)
        with self._lock:
            self._sessions[session.id] = session
        logger.info("Created %s session %s", session.tool.name, session.id)
        return session

    def get(self, session_id: str) -> BatchSession:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise KeyError(f"Session {session_id} not found")
        return session

    def delete(self, session_id: str, timeout: float = 5.0):
        session = self.get(session_id)
        if session.running:
            raise QueueLockedError("Cannot close a session while processing is running")
        # the worker may still be publishing its final summary
        if not session.join(timeout):
            raise QueueLockedError("Session worker did not finish; try again shortly")
        with self._lock:
            self._sessions.pop(session_id, None)

    def shutdown(self, timeout: float = 30.0):
        """Stop every running session and wait for its worker to finish"""
        with self._lock:
            sessions = list(self._sessions.values())
        for session in sessions:
            session.stop()
        for session in sessions:
            if not session.join(timeout):
                logger.warning("Session %s worker still running at shutdown", session.id)

    def __len__(self):
        return len(self._sessions)


# Global session registry
session_registry = SessionRegistry()


def _ok(data: Any, code: int = 200, message: Optional[str] = None):
    body = {
        'success': True,
        'data': data,
        'timestamp': datetime.now().isoformat()
    }
    if message:
        body['message'] = message
    return jsonify(body), code


def _error(e: Exception):
    """Map pipeline errors onto HTTP status codes"""
    if isinstance(e, KeyError):
        code, message = 404, e.args[0] if e.args else 'Not found'
    elif isinstance(e, InsufficientCreditsError):
        code, message = 402, str(e)
    elif isinstance(e, (QueueLockedError, InvalidTransitionError)):
        code, message = 409, str(e)
    elif isinstance(e, (ValidationError, ValueError)):
        code, message = 400, str(e)
    elif isinstance(e, PipelineError):
        code, message = 502, str(e)
    else:
        logger.error(f"Unexpected session API error: {e}")
        code, message = 500, str(e)
    return jsonify({
        'success': False,
        'error': message,
        'timestamp': datetime.now().isoformat()
    }), code


@session_api.route('', methods=['POST'])
def create_session():
    """Create a session for one tool"""
    try:
        payload = request.get_json(silent=True) or {}
        tool = payload.get('tool', 'metadata')
        session = session_registry.create(
            tool, selectors=payload.get('selectors'), params=payload.get('params'))
        return _ok(session.to_dict(), 201)
    except Exception as e:
        return _error(e)


@session_api.route('/<session_id>', methods=['GET'])
def get_session(session_id: str):
    try:
        return _ok(session_registry.get(session_id).to_dict())
    except Exception as e:
        return _error(e)


@session_api.route('/<session_id>', methods=['DELETE'])
def delete_session(session_id: str):
    try:
        session_registry.delete(session_id)
        return _ok({'session_id': session_id})
    except Exception as e:
        return _error(e)


@session_api.route('/<session_id>/config', methods=['PUT'])
def configure_session(session_id: str):
    """Change selected variants and generation parameters"""
    try:
        payload = request.get_json(silent=True) or {}
        session = session_registry.get(session_id)
        session.configure(selectors=payload.get('selectors'), params=payload.get('params'))
        return _ok(session.to_dict())
    except Exception as e:
        return _error(e)


@session_api.route('/<session_id>/files', methods=['POST'])
def upload_files(session_id: str):
    """Queue uploaded files; unsupported files are reported, not queued"""
    try:
        session = session_registry.get(session_id)
        uploads = request.files.getlist('files')
        if not uploads:
            return jsonify({
                'success': False,
                'error': 'No files provided'
            }), 400

        sources = []
        for upload in uploads:
            filename = secure_filename(upload.filename or '') or 'upload'
            sources.append(SourceFile(
                filename=filename,
                content_type=upload.mimetype or content_type_for(filename),
                data=upload.read(),
            ))

        partition = session.add(sources)
        added = [item.to_dict() for item in partition.queued]
        return _ok({
            'added': added,
            'rejected': partition.rejection_messages(),
            'counts': session.counts(),
        }, 201 if added else 200)
    except Exception as e:
        return _error(e)


@session_api.route('/<session_id>/items/<item_id>', methods=['DELETE'])
def remove_item(session_id: str, item_id: str):
    try:
        session = session_registry.get(session_id)
        item = session.remove(item_id)
        return _ok(item.to_dict())
    except Exception as e:
        return _error(e)


@session_api.route('/<session_id>/clear', methods=['POST'])
def clear_queue(session_id: str):
    try:
        removed = session_registry.get(session_id).clear()
        return _ok({'removed': removed})
    except Exception as e:
        return _error(e)


@session_api.route('/<session_id>/start', methods=['POST'])
def start_processing(session_id: str):
    """Authorize against the credit balance and start dispatch in the background"""
    try:
        session = session_registry.get(session_id)
        pending = len(session.queue.pending())
        if pending == 0:
            return jsonify({
                'success': False,
                'error': 'No pending items to process'
            }), 400
        session.start_in_background()
        return _ok({'pending': pending, 'item_cost': session.item_cost}, 202,
                   message=f"Processing {pending} file(s)")
    except Exception as e:
        return _error(e)


@session_api.route('/<session_id>/stop', methods=['POST'])
def stop_processing(session_id: str):
    try:
        session = session_registry.get(session_id)
        session.stop()
        return _ok({'running': session.running},
                   message="Stopping after the current file")
    except Exception as e:
        return _error(e)


@session_api.route('/<session_id>/items/<item_id>/retry', methods=['POST'])
def retry_item(session_id: str, item_id: str):
    try:
        item = session_registry.get(session_id).retry(item_id)
        return _ok(item.to_dict())
    except Exception as e:
        return _error(e)


@session_api.route('/<session_id>/retry-all', methods=['POST'])
def retry_all(session_id: str):
    try:
        session = session_registry.get(session_id)
        count = session.retry_all()
        return _ok({'reset': count, 'counts': session.counts()},
                   message="Reset failed items - ready to process again")
    except Exception as e:
        return _error(e)


@session_api.route('/<session_id>/items', methods=['GET'])
def list_items(session_id: str):
    """Filtered, paginated view of the queue"""
    try:
        session = session_registry.get(session_id)
        projection = session.project(
            status=request.args.get('status') or None,
            verdict_filter=request.args.get('verdict') or None,
            page=request.args.get('page', 1, type=int),
            page_size=min(request.args.get('page_size', 0, type=int), 200),
        )
        data = projection.to_dict()
        data['running'] = session.running
        data['last_summary'] = session.last_summary.to_dict() if session.last_summary else None
        return _ok(data)
    except Exception as e:
        return _error(e)


@session_api.route('/<session_id>/archive', methods=['GET'])
def download_archive(session_id: str):
    """ZIP of completed items, optionally one variant or one verdict group"""
    try:
        session = session_registry.get(session_id)
        result = asyncio.run(session.build_archive(
            variant=request.args.get('variant') or None,
            verdict_filter=request.args.get('verdict') or None,
        ))
        if result.data is None:
            return jsonify({
                'success': False,
                'error': result.message,
                'data': result.to_dict()
            }), 404

        return Response(
            result.data,
            mimetype=result.content_type,
            headers={
                'Content-Disposition': f'attachment; filename="{result.filename}"',
                'X-Archive-Requested': str(result.requested),
                'X-Archive-Added': str(result.added),
                'X-Archive-Skipped': str(result.skipped),
            }
        )
    except Exception as e:
        return _error(e)


@session_api.route('/<session_id>/items/<item_id>/download', methods=['GET'])
def download_item(session_id: str, item_id: str):
    """Single file for one marketplace, with metadata embedded where possible"""
    try:
        session = session_registry.get(session_id)
        variant = request.args.get('variant')
        if not variant:
            return jsonify({
                'success': False,
                'error': 'variant parameter is required'
            }), 400
        result = asyncio.run(session.download_single(item_id, variant))
        return Response(
            result['data'],
            mimetype=result['content_type'],
            headers={'Content-Disposition': f'attachment; filename="{result["filename"]}"'}
        )
    except Exception as e:
        return _error(e)
