import json
from datetime import date, datetime, timezone

import pytest

from dayflow.completion_store import CompletionStoreError
from dayflow.db import async_session
from dayflow.identity import InvalidIdentityError, instance_identity
from dayflow.models import Task

DAILY = {'pattern': 'daily', 'interval': 1}


@pytest.mark.asyncio
async def test_set_and_read_completion(store, make_task):
    task = await make_task(scheduled_date=datetime(2024, 1, 1, 9), recurring=DAILY)
    ident = instance_identity(task.id, date(2024, 1, 3))
    done_at = datetime(2024, 1, 3, 20, 0, tzinfo=timezone.utc)

    rec = await store.set_completion(ident, True, done_at)
    assert rec.completed is True

    cmap = await store.get_completion_map(task.id)
    assert list(cmap) == [ident]
    assert cmap[ident].completed is True
    assert await store.is_completed(ident) is True
    assert await store.is_completed(instance_identity(task.id, date(2024, 1, 4))) is False


@pytest.mark.asyncio
async def test_completion_defaults_timestamp(store, make_task):
    task = await make_task(scheduled_date=datetime(2024, 1, 1), recurring=DAILY)
    rec = await store.set_completion(instance_identity(task.id, date(2024, 1, 1)), True)
    assert rec.completed_at is not None


@pytest.mark.asyncio
async def test_completion_does_not_touch_template(store, make_task):
    task = await make_task(scheduled_date=datetime(2024, 1, 1), recurring=DAILY, status='today')
    await store.set_completion(instance_identity(task.id, date(2024, 1, 2)), True)
    async with async_session() as sess:
        fresh = await sess.get(Task, task.id)
    assert fresh.status == 'today'
    assert fresh.completed_at is None


@pytest.mark.asyncio
async def test_uncomplete_keeps_row_and_last_write_wins(store, make_task):
    task = await make_task(scheduled_date=datetime(2024, 1, 1), recurring=DAILY)
    ident = instance_identity(task.id, date(2024, 1, 2))
    await store.set_completion(ident, True)
    rec = await store.set_completion(ident, False)
    assert rec.completed is False
    assert rec.completed_at is None
    cmap = await store.get_completion_map(task.id)
    assert cmap[ident].completed is False
    await store.set_completion(ident, True)
    assert await store.is_completed(ident) is True


@pytest.mark.asyncio
async def test_maps_are_isolated_per_task(store, make_task):
    a = await make_task(scheduled_date=datetime(2024, 1, 1), recurring=DAILY)
    b = await make_task(scheduled_date=datetime(2024, 1, 1), recurring=DAILY)
    await store.set_completion(instance_identity(a.id, date(2024, 1, 2)), True)
    assert await store.get_completion_map(b.id) == {}


@pytest.mark.asyncio
async def test_invalid_identity_rejected(store):
    with pytest.raises(InvalidIdentityError):
        await store.set_completion('not-an-identity', True)


@pytest.mark.asyncio
async def test_list_and_range_queries(store, make_task):
    task = await make_task(scheduled_date=datetime(2024, 1, 1), recurring=DAILY)
    for d, done in ((5, True), (2, True), (3, False), (9, True)):
        await store.set_completion(instance_identity(task.id, date(2024, 1, d)), done)

    completed = await store.list_completed(task.id)
    assert [r.identity for r in completed] == [instance_identity(task.id, date(2024, 1, d)) for d in (2, 5, 9)]

    in_range = await store.records_in_range(task.id, date(2024, 1, 3), date(2024, 1, 5))
    assert [(r.identity[-2:], r.completed) for r in in_range] == [('03', False), ('05', True)]


@pytest.mark.asyncio
async def test_completion_stats(store, make_task):
    task = await make_task(scheduled_date=datetime(2024, 1, 1), recurring=DAILY)
    for d, done in ((1, True), (20, True), (21, False), (22, True), (23, False)):
        await store.set_completion(instance_identity(task.id, date(2024, 1, d)), done)
    stats = await store.completion_stats(task.id, days=10, today=date(2024, 1, 25))
    assert stats == {'total': 4, 'completed': 2, 'completion_rate': 50.0}

    empty = await store.completion_stats(task.id, days=3, today=date(2024, 6, 1))
    assert empty == {'total': 0, 'completed': 0, 'completion_rate': 0.0}


@pytest.mark.asyncio
async def test_cleanup_removes_only_old_records(store, make_task):
    task = await make_task(scheduled_date=datetime(2024, 1, 1), recurring=DAILY)
    old = instance_identity(task.id, date(2024, 1, 1))
    recent = instance_identity(task.id, date(2024, 5, 1))
    await store.set_completion(old, True)
    await store.set_completion(recent, True)

    await store.cleanup_old_records(retention_days=90, today=date(2024, 6, 1))
    cmap = await store.get_completion_map(task.id)
    assert set(cmap) == {recent}


@pytest.mark.asyncio
async def test_delete_before_limited_to_task(store, make_task):
    a = await make_task(scheduled_date=datetime(2024, 1, 1), recurring=DAILY)
    b = await make_task(scheduled_date=datetime(2024, 1, 1), recurring=DAILY)
    await store.set_completion(instance_identity(a.id, date(2024, 1, 1)), True)
    await store.set_completion(instance_identity(b.id, date(2024, 1, 1)), True)
    assert await store.delete_before(date(2024, 2, 1), task_id=a.id) == 1
    assert await store.get_completion_map(a.id) == {}
    assert len(await store.get_completion_map(b.id)) == 1


@pytest.mark.asyncio
async def test_export_then_import_restores_records(store, make_task):
    task = await make_task(scheduled_date=datetime(2024, 1, 1), recurring=DAILY)
    done = instance_identity(task.id, date(2024, 1, 2))
    undone = instance_identity(task.id, date(2024, 1, 3))
    await store.set_completion(done, True, datetime(2024, 1, 2, 8, 0, tzinfo=timezone.utc))
    await store.set_completion(undone, False)

    dump = await store.export_json(task.id)
    data = json.loads(dump)
    assert data[done] == {'taskId': task.id, 'instanceDate': '2024-01-02',
                          'completed': True, 'completedAt': '2024-01-02T08:00:00Z'}
    assert data[undone]['completed'] is False

    assert await store.clear(task.id) == 2
    assert await store.get_completion_map(task.id) == {}

    assert await store.import_json(dump) == 2
    cmap = await store.get_completion_map(task.id)
    assert cmap[done].completed is True
    assert cmap[undone].completed is False


@pytest.mark.asyncio
async def test_import_legacy_browser_format(store, make_task):
    task = await make_task(scheduled_date=datetime(2024, 1, 1), recurring=DAILY)
    legacy = {f'{task.id}-2024-01-04': {'completedAt': '2024-01-04T10:15:00.000Z'}}
    assert await store.import_json(json.dumps(legacy)) == 1
    cmap = await store.get_completion_map(task.id)
    rec = cmap[f'{task.id}-2024-01-04']
    assert rec.completed is True
    assert rec.completed_at.replace(tzinfo=None) == datetime(2024, 1, 4, 10, 15)


@pytest.mark.asyncio
async def test_import_rejects_non_object(store):
    with pytest.raises(ValueError):
        await store.import_json('[1, 2]')
    with pytest.raises(ValueError):
        await store.import_json('{broken')


@pytest.mark.asyncio
async def test_storage_failures_surface_as_store_errors(broken_store):
    store = broken_store
    with pytest.raises(CompletionStoreError):
        await store.get_completion_map(1)
    with pytest.raises(CompletionStoreError):
        await store.set_completion('1-2024-01-01', True)
    with pytest.raises(CompletionStoreError):
        await store.list_completed(1)
    with pytest.raises(CompletionStoreError):
        await store.cleanup_old_records()


@pytest.mark.asyncio
async def test_import_rejects_non_object_entry_without_writing(store, make_task):
    task = await make_task(scheduled_date=datetime(2024, 1, 1), recurring=DAILY)
    payload = {
        f'{task.id}-2024-01-01': {'completedAt': '2024-01-01T10:00:00Z'},
        f'{task.id}-2024-01-02': True,
    }
    with pytest.raises(ValueError):
        await store.import_json(payload)
    assert await store.get_completion_map(task.id) == {}


@pytest.mark.asyncio
async def test_import_rejects_bad_identity_without_writing(store, make_task):
    task = await make_task(scheduled_date=datetime(2024, 1, 1), recurring=DAILY)
    payload = {f'{task.id}-2024-01-01': {}, 'nonsense': {}}
    with pytest.raises(InvalidIdentityError):
        await store.import_json(payload)
    assert await store.get_completion_map(task.id) == {}
