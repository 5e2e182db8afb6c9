from datetime import datetime, timedelta, timezone

import pytest

from metagen.export_manager import ExportManager
from metagen.history_store import HistoryFilter, HistoryStore
from metagen.models import (
    Batch, ItemStatus, QueueItem, ResultPayload, SourceFile, Variant, Verdict
)


def _item(filename="beach.jpg", title="Sunny beach day", verdict=None):
    item = QueueItem(source=SourceFile(filename, 'image/jpeg', b'x'))
    item.uploaded_asset_url = f"https://assets.test/{filename}"
    item.transition(ItemStatus.PROCESSING)
    item.result = ResultPayload(
        variants=[Variant(name="Adobe Stock", title=title, description="d",
                          keywords=["sand", "sea"])],
        verdict=verdict)
    item.transition(ItemStatus.COMPLETED)
    return item


@pytest.fixture
def store(fresh_db):
    return HistoryStore(fresh_db)


def test_save_item_stores_snapshot_and_display_name(store):
    saved = store.save_item(_item(), 'metadata', {'tool': 'metadata', 'selectors': ['Adobe Stock']})

    record = store.get(saved['id'])
    assert record['display_name'] == "Sunny Beach Day Sea Sand.jpg"
    assert record['original_filename'] == "beach.jpg"
    assert record['variants'][0]['keywords'] == ["sand", "sea"]
    assert record['config_snapshot'] == {'tool': 'metadata', 'selectors': ['Adobe Stock']}


def test_every_dispatch_gets_its_own_row(store):
    item = _item()
    store.save_item(item, 'metadata')
    store.save_item(item, 'metadata')
    assert len(store.list()) == 2


def test_item_without_result_is_not_persisted(store):
    pending = QueueItem(source=SourceFile('a.jpg', 'image/jpeg', b'x'))
    with pytest.raises(ValueError):
        store.save_item(pending, 'metadata')


def test_list_newest_first_with_filters(store):
    now = datetime.now(timezone.utc)
    for i, (tool, verdict) in enumerate([('metadata', None), ('review', Verdict.PASS),
                                         ('review', Verdict.FAIL)]):
        record = store.build_record(_item(f"f{i}.jpg", f"Title {i}", verdict), tool)
        record.created_at = now - timedelta(minutes=10 - i)
        store.insert(record)

    assert [r['original_filename'] for r in store.list()] == ["f2.jpg", "f1.jpg", "f0.jpg"]
    reviews = store.list(HistoryFilter(tool='review'))
    assert len(reviews) == 2
    passed = store.list(HistoryFilter(verdict='pass'))
    assert [r['original_filename'] for r in passed] == ["f1.jpg"]
    assert len(store.list(HistoryFilter(limit=1, offset=1))) == 1


def test_search_matches_display_name_and_filename(store):
    store.save_item(_item("lake.jpg", "Mountain lake"), 'metadata')
    store.save_item(_item("city.jpg", "Night skyline"), 'metadata')

    assert [r['original_filename'] for r in store.list(HistoryFilter(search='mountain'))] == \
        ["lake.jpg"]
    assert [r['original_filename'] for r in store.list(HistoryFilter(search='CITY'))] == \
        ["city.jpg"]


def test_delete_record(store):
    saved = store.save_item(_item(), 'metadata')
    assert store.delete(saved['id']) is True
    assert store.delete(saved['id']) is False
    with pytest.raises(ValueError):
        store.get(saved['id'])


def test_batches_group_records_and_delete_together(store):
    items = [_item(f"b{i}.jpg") for i in range(2)]
    batch = Batch(name=Batch.default_name(), item_ids=[i.id for i in items],
                  item_cost=1, tool='metadata')
    store.create_batch(batch)
    for item in items:
        store.save_item(item, 'metadata', batch_id=batch.id)
    store.save_item(_item("solo.jpg"), 'metadata')

    batches = store.list_batches()
    assert batches[0]['item_count'] == 2
    assert len(store.list(HistoryFilter(batch_id=batch.id))) == 2

    assert store.delete_batch(batch.id) == 2
    assert [r['original_filename'] for r in store.list()] == ["solo.jpg"]
    with pytest.raises(ValueError):
        store.delete_batch(batch.id)


def test_cleanup_removes_only_old_records(store):
    old = store.build_record(_item("old.jpg"), 'metadata')
    old.created_at = datetime.now(timezone.utc) - timedelta(days=5)
    store.insert(old)
    store.save_item(_item("new.jpg"), 'metadata')

    assert store.cleanup_older_than(3) == 1
    assert [r['original_filename'] for r in store.list()] == ["new.jpg"]


def test_export_flattens_one_row_per_variant(store):
    item = _item()
    item.result.variants.append(Variant(name="Freepik", title="Beach", keywords=["a"]))
    store.save_item(item, 'metadata')
    exporter = ExportManager(store)

    csv_export = exporter.export_history('csv')
    assert csv_export['record_count'] == 1
    assert csv_export['row_count'] == 2
    assert csv_export['data'].splitlines()[0].startswith("record_id,batch_id,tool")
    assert csv_export['filename'].startswith("all_history_")

    xlsx = exporter.export_history('xlsx', HistoryFilter(tool='metadata'))
    assert xlsx['data'][:2] == b'PK'
    assert xlsx['filename'].startswith("metadata_history_")

    with pytest.raises(ValueError):
        exporter.export_history('pdf')
