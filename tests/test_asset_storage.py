import asyncio
import os

import pytest

from metagen.asset_storage import LocalAssetStorage
from metagen.errors import ArchiveFetchError
from metagen.resilience import DispatchThrottle, ThrottleConfig


def test_local_upload_and_fetch_round_trip(tmp_path):
    storage = LocalAssetStorage(root_dir=str(tmp_path), public_base_url='')

    url = asyncio.run(storage.upload(b'pixels', 'image/png', '../odd name.png'))

    assert url.startswith('file://')
    assert url.endswith('_odd_name.png')
    assert asyncio.run(storage.fetch(url)) == b'pixels'


def test_public_base_url_maps_back_to_disk(tmp_path):
    storage = LocalAssetStorage(root_dir=str(tmp_path), public_base_url='https://cdn.test/u/')

    url = asyncio.run(storage.upload(b'abc', 'image/jpeg', 'a.jpg'))

    assert url.startswith('https://cdn.test/u/')
    key = url.rsplit('/', 1)[-1]
    assert os.path.exists(tmp_path / key)
    assert asyncio.run(storage.fetch(url)) == b'abc'


def test_missing_local_file_is_fetch_error(tmp_path):
    storage = LocalAssetStorage(root_dir=str(tmp_path), public_base_url='')
    with pytest.raises(ArchiveFetchError):
        asyncio.run(storage.fetch(f"file://{tmp_path}/nope.jpg"))


def test_throttle_records_waits():
    slept = []

    async def sleep(seconds):
        slept.append(seconds)

    throttle = DispatchThrottle(ThrottleConfig(2.0, 5.0), sleep=sleep)

    async def scenario():
        await throttle.wait_between_requests()
        await throttle.backoff_after_rate_limit()

    asyncio.run(scenario())
    stats = throttle.get_stats()
    assert slept == [2.0, 5.0]
    assert stats['total_waits'] == 1
    assert stats['total_backoffs'] == 1


def test_zero_interval_does_not_sleep():
    slept = []

    async def sleep(seconds):
        slept.append(seconds)

    asyncio.run(DispatchThrottle(ThrottleConfig(0, 0), sleep=sleep).wait_between_requests())
    assert slept == []
