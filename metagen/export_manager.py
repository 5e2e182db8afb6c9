"""
History export in csv, json and xlsx formats
"""
import csv
import io
import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import pandas as pd

from .history_store import HistoryFilter, HistoryStore, history_store

logger = logging.getLogger(__name__)


class ExportManager:
    """Flattens history records (one row per variant) for download"""

    def __init__(self, store: Optional[HistoryStore] = None, max_rows: int = 100000):
        self.store = store or history_store
        self.export_formats = ['csv', 'json', 'xlsx']
        self.max_rows = max_rows

    def export_history(self, format_type: str = 'csv',
                       filters: Optional[HistoryFilter] = None) -> Dict[str, Any]:
        """
        Export history records

        Args:
            format_type: Export format ('csv', 'json', 'xlsx')
            filters: Optional history filter; limit defaults to max_rows

        Returns:
            Dictionary with data, filename, content_type and row count
        """
        if format_type not in self.export_formats:
            raise ValueError(
                f"Unsupported format: {format_type}. Supported: {self.export_formats}")

        filters = filters or HistoryFilter(limit=self.max_rows)
        records = self.store.list(filters)
        rows = self._flatten(records)

        if format_type == 'csv':
            data = self._generate_csv_data(rows)
        elif format_type == 'json':
            data = self._generate_json_data(records)
        else:
            data = self._generate_xlsx_data(rows)

        logger.info("Exported %d history record(s) as %s", len(records), format_type)
        return {
            'data': data,
            'filename': self._generate_filename(filters.tool, format_type),
            'content_type': self._get_content_type(format_type),
            'record_count': len(records),
            'row_count': len(rows),
        }

    @staticmethod
    def _flatten(records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        rows = []
        for record in records:
            for variant in record.get('variants') or [{}]:
                rows.append({
                    'record_id': record['id'],
                    'batch_id': record.get('batch_id') or '',
                    'tool': record['tool'],
                    'original_filename': record.get('original_filename') or '',
                    'display_name': record.get('display_name') or '',
                    'variant': variant.get('name') or '',
                    'title': variant.get('title') or '',
                    'description': variant.get('description') or '',
                    'keywords': ', '.join(variant.get('keywords') or []),
                    'prompt': variant.get('prompt') or '',
                    'negative_prompt': variant.get('negative_prompt') or '',
                    'verdict': record.get('verdict') or '',
                    'overall_score': record.get('overall_score'),
                    'asset_url': record['asset_url'],
                    'created_at': record.get('created_at') or '',
                })
        return rows

    @staticmethod
    def _generate_csv_data(rows: List[Dict[str, Any]]) -> str:
        csv_buffer = io.StringIO()
        if not rows:
            return ''
        writer = csv.DictWriter(csv_buffer, fieldnames=list(rows[0].keys()))
        writer.writeheader()
        writer.writerows(rows)
        return csv_buffer.getvalue()

    @staticmethod
    def _generate_json_data(records: List[Dict[str, Any]]) -> str:
        data = {
            'metadata': {
                'export_date': datetime.now().isoformat(),
                'total_records': len(records),
            },
            'records': records,
        }
        return json.dumps(data, indent=2, ensure_ascii=False)

    @staticmethod
    def _generate_xlsx_data(rows: List[Dict[str, Any]]) -> bytes:
        df = pd.DataFrame(rows)
        excel_buffer = io.BytesIO()
        with pd.ExcelWriter(excel_buffer, engine='openpyxl') as writer:
            df.to_excel(writer, sheet_name='History', index=False)
        excel_buffer.seek(0)
        return excel_buffer.getvalue()

    @staticmethod
    def _generate_filename(tool: Optional[str], format_type: str) -> str:
        timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
        return f"{tool or 'all'}_history_{timestamp}.{format_type}"

    @staticmethod
    def _get_content_type(format_type: str) -> str:
        content_types = {
            'csv': 'text/csv',
            'json': 'application/json',
            'xlsx': 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'
        }
        return content_types.get(format_type, 'application/octet-stream')


# Global export manager instance
export_manager = ExportManager()
