"""
Asset storage: upload files to get a URL, fetch bytes back for archives
"""
import asyncio
import logging
import os
import uuid
from abc import ABC, abstractmethod
from typing import Optional
from urllib.parse import urlparse

import aiohttp
from werkzeug.utils import secure_filename

from .errors import ArchiveFetchError, UploadError
from .pipeline_config import config

logger = logging.getLogger(__name__)


class AssetStorage(ABC):
    """Asset store used for inference input and later re-fetching"""

    @abstractmethod
    async def upload(self, data: bytes, content_type: str, filename: str) -> str:
        """Store bytes and return a URL the inference service can read"""

    @abstractmethod
    async def fetch(self, url: str) -> bytes:
        """Return the stored bytes for url"""


class LocalAssetStorage(AssetStorage):
    """Writes uploads below a directory; fetches local paths or http(s) URLs"""

    def __init__(self, root_dir: Optional[str] = None, public_base_url: Optional[str] = None,
                 timeout: Optional[int] = None):
        self.root_dir = os.path.abspath(root_dir or config.upload_dir)
        self.public_base_url = (public_base_url if public_base_url is not None
                                else config.public_base_url).rstrip('/')
        self._timeout = aiohttp.ClientTimeout(total=timeout or config.download_timeout)
        os.makedirs(self.root_dir, exist_ok=True)

    def _public_url(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{key}"
        return 'file://' + os.path.join(self.root_dir, key)

    def _local_path(self, url: str) -> Optional[str]:
        if url.startswith('file://'):
            return urlparse(url).path
        if self.public_base_url and url.startswith(self.public_base_url + '/'):
            return os.path.join(self.root_dir, url[len(self.public_base_url) + 1:])
        if os.path.isabs(url):
            return url
        return None

    @staticmethod
    def _write(path: str, data: bytes):
        with open(path, 'wb') as fh:
            fh.write(data)

    @staticmethod
    def _read(path: str) -> bytes:
        with open(path, 'rb') as fh:
            return fh.read()

    async def upload(self, data: bytes, content_type: str, filename: str) -> str:
        safe_name = secure_filename(filename) or 'upload'
        key = f"{uuid.uuid4().hex}_{safe_name}"
        path = os.path.join(self.root_dir, key)
        try:
            await asyncio.to_thread(self._write, path, data)
        except OSError as e:
            raise UploadError(f"Failed to store {filename}: {e}") from e
        logger.debug("Stored %s (%s, %d bytes) at %s",
                     filename, content_type, len(data), path)
        return self._public_url(key)

    async def fetch(self, url: str) -> bytes:
        local_path = self._local_path(url)
        if local_path is not None:
            try:
                return await asyncio.to_thread(self._read, local_path)
            except OSError as e:
                raise ArchiveFetchError(f"Failed to read {url}: {e}") from e

        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.get(url) as resp:
                    if resp.status != 200:
                        raise ArchiveFetchError(
                            f"Fetching {url} returned status {resp.status}")
                    return await resp.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ArchiveFetchError(f"Failed to fetch {url}: {e!r}") from e
