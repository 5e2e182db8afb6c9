"""
Pytest configuration file.
Adds the project root to Python path and points configuration at throwaway
locations before any metagen import.
"""
import json
import os
import sys
import tempfile
from pathlib import Path

import pytest

# Add project root to Python path
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

# Set environment variables for testing before any metagen imports
_scratch = tempfile.mkdtemp(prefix='metagen-tests-')
os.environ.setdefault('DATABASE_URL', 'sqlite:///:memory:')
os.environ.setdefault('UPLOAD_DIR', os.path.join(_scratch, 'uploads'))
os.environ.setdefault('EXPORT_DIR', os.path.join(_scratch, 'exports'))
os.environ.setdefault('LOG_DIR', os.path.join(_scratch, 'logs'))
os.environ.setdefault('THROTTLE_INTERVAL_MS', '0')
os.environ.setdefault('RATE_LIMIT_BACKOFF_MS', '0')
os.environ.setdefault('INFERENCE_API_KEY', '')

from metagen.asset_storage import AssetStorage  # noqa: E402
from metagen.errors import ArchiveFetchError  # noqa: E402
from metagen.models import SourceFile  # noqa: E402


class FakeStorage(AssetStorage):
    """Keeps uploads in memory; selected fetch calls can be made to fail"""

    def __init__(self, fail_uploads=False, fail_fetch_calls=()):
        self.objects = {}
        self.uploads = 0
        self.fetch_calls = 0
        self.fail_uploads = fail_uploads
        self.fail_fetch_calls = set(fail_fetch_calls)

    async def upload(self, data, content_type, filename):
        if self.fail_uploads:
            raise OSError("disk full")
        self.uploads += 1
        url = f"https://assets.test/{self.uploads}/{filename}"
        self.objects[url] = data
        return url

    async def fetch(self, url):
        self.fetch_calls += 1
        if self.fetch_calls in self.fail_fetch_calls or url not in self.objects:
            raise ArchiveFetchError(f"cannot fetch {url}")
        return self.objects[url]


class FakeClient:
    """
    Stand-in for InferenceClient. Each entry of ``replies`` is used for one
    call: a string is returned, an exception is raised, a callable is called
    with the call index and its result returned.
    """

    def __init__(self, replies):
        self.replies = list(replies)
        self.calls = []

    async def complete(self, messages):
        index = len(self.calls)
        self.calls.append(messages)
        reply = self.replies[index] if index < len(self.replies) else self.replies[-1]
        if callable(reply):
            reply = reply(index)
        if isinstance(reply, Exception):
            raise reply
        return reply


def metadata_reply(marketplaces=("Adobe Stock",), title="Golden sunset over calm ocean"):
    return json.dumps({
        'results': [
            {
                'marketplace': m,
                'title': title,
                'description': f"{title} for {m}",
                'keywords': ['sunset', 'ocean', 'golden hour', 'sky'],
            }
            for m in marketplaces
        ]
    })


def make_files(count, ext='jpg'):
    return [
        SourceFile(filename=f"photo_{i + 1}.{ext}", content_type='image/jpeg',
                   data=f"bytes-{i + 1}".encode())
        for i in range(count)
    ]


async def no_sleep(seconds):
    return None


@pytest.fixture
def fake_storage():
    return FakeStorage()


@pytest.fixture
def fresh_db():
    """Global database with empty tables"""
    from metagen.database_models import db_manager

    db_manager.drop_tables()
    db_manager.create_tables()
    yield db_manager
    db_manager.drop_tables()
