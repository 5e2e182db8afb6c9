"""
History API endpoints: browse, delete, clean up and export past results
"""
from flask import Blueprint, Response, jsonify, request
import logging
from datetime import datetime

from .export_manager import export_manager
from .history_store import HistoryFilter, history_store

logger = logging.getLogger(__name__)

# Create Blueprint for history API
history_api = Blueprint('history_api', __name__, url_prefix='/api/v1/history')


def _filters_from_request(default_limit: int = 50, max_limit: int = 500) -> HistoryFilter:
    return HistoryFilter(
        tool=request.args.get('tool') or None,
        verdict=request.args.get('verdict') or None,
        batch_id=request.args.get('batch_id') or None,
        search=request.args.get('search') or None,
        limit=min(request.args.get('limit', default_limit, type=int), max_limit),
        offset=request.args.get('offset', 0, type=int),
    )


@history_api.route('', methods=['GET'])
def list_history():
    """List history records, newest first"""
    try:
        filters = _filters_from_request()
        records = history_store.list(filters)
        return jsonify({
            'success': True,
            'data': {
                'records': records,
                'count': len(records),
                'limit': filters.limit,
                'offset': filters.offset
            },
            'timestamp': datetime.now().isoformat()
        })
    except Exception as e:
        logger.error(f"Error listing history: {e}")
        return jsonify({
            'success': False,
            'error': str(e)
        }), 500


@history_api.route('/<record_id>', methods=['GET'])
def get_record(record_id: str):
    try:
        return jsonify({
            'success': True,
            'data': history_store.get(record_id)
        })
    except ValueError as e:
        return jsonify({
            'success': False,
            'error': str(e)
        }), 404
    except Exception as e:
        logger.error(f"Error fetching history record {record_id}: {e}")
        return jsonify({
            'success': False,
            'error': str(e)
        }), 500


@history_api.route('/<record_id>', methods=['DELETE'])
def delete_record(record_id: str):
    try:
        if not history_store.delete(record_id):
            return jsonify({
                'success': False,
                'error': f"History record {record_id} not found"
            }), 404
        return jsonify({
            'success': True,
            'message': 'Deleted from history'
        })
    except Exception as e:
        logger.error(f"Error deleting history record {record_id}: {e}")
        return jsonify({
            'success': False,
            'error': str(e)
        }), 500


@history_api.route('/batches', methods=['GET'])
def list_batches():
    try:
        batches = history_store.list_batches(
            tool=request.args.get('tool') or None,
            limit=min(request.args.get('limit', 50, type=int), 200))
        return jsonify({
            'success': True,
            'data': {'batches': batches, 'count': len(batches)}
        })
    except Exception as e:
        logger.error(f"Error listing batches: {e}")
        return jsonify({
            'success': False,
            'error': str(e)
        }), 500


@history_api.route('/batches/<batch_id>', methods=['DELETE'])
def delete_batch(batch_id: str):
    """Delete a batch together with its history records"""
    try:
        removed = history_store.delete_batch(batch_id)
        return jsonify({
            'success': True,
            'data': {'batch_id': batch_id, 'records_removed': removed}
        })
    except ValueError as e:
        return jsonify({
            'success': False,
            'error': str(e)
        }), 404
    except Exception as e:
        logger.error(f"Error deleting batch {batch_id}: {e}")
        return jsonify({
            'success': False,
            'error': str(e)
        }), 500


@history_api.route('/cleanup', methods=['POST'])
def cleanup_history():
    """Remove records older than the retention window"""
    try:
        payload = request.get_json(silent=True) or {}
        days = payload.get('days')
        if days is not None and (not isinstance(days, int) or days < 1):
            return jsonify({
                'success': False,
                'error': 'days must be a positive integer'
            }), 400
        removed = history_store.cleanup_older_than(days)
        return jsonify({
            'success': True,
            'data': {'records_removed': removed}
        })
    except Exception as e:
        logger.error(f"Error cleaning up history: {e}")
        return jsonify({
            'success': False,
            'error': str(e)
        }), 500


@history_api.route('/export', methods=['GET'])
def export_history():
    """Export history as csv, json or xlsx"""
    try:
        format_type = request.args.get('format', 'csv')
        result = export_manager.export_history(
            format_type, _filters_from_request(default_limit=export_manager.max_rows,
                                               max_limit=export_manager.max_rows))
        return Response(
            result['data'],
            mimetype=result['content_type'],
            headers={'Content-Disposition': f'attachment; filename="{result["filename"]}"'}
        )
    except ValueError as e:
        return jsonify({
            'success': False,
            'error': str(e)
        }), 400
    except Exception as e:
        logger.error(f"Error exporting history: {e}")
        return jsonify({
            'success': False,
            'error': str(e)
        }), 500
