#!/usr/bin/env python3
"""
Delete history records older than the retention window
"""
import argparse
import logging
import os
import sys

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from metagen.database_models import init_database
from metagen.history_store import history_store
from metagen.pipeline_config import config

logging.basicConfig(level=logging.INFO,
                    format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.strip())
    parser.add_argument('--days', type=int, default=config.history_retention_days,
                        help='Retention window in days (default: %(default)s)')
    args = parser.parse_args(argv)

    if args.days < 1:
        parser.error('--days must be at least 1')

    init_database()
    removed = history_store.cleanup_older_than(args.days)
    logger.info(f"Cleanup complete: {removed} record(s) removed")
    return 0


if __name__ == "__main__":
    sys.exit(main())
