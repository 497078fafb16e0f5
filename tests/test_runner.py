import asyncio
import importlib

import pytest

pytestmark = pytest.mark.asyncio

NOW = 1_700_000_000.0


class DummyBus:
    def __init__(self):
        self.events = []

    def emit(self, event, *, instance_id=None, decision=None, **fields):
        self.events.append((event, instance_id, decision, fields))

    def names(self):
        return [e[0] for e in self.events]


class FakeClient:
    def __init__(self, records=None, fail_remove=(), fail_import=(), fetch_error=None):
        self.records = records or []
        self.fail_remove = set(fail_remove)
        self.fail_import = set(fail_import)
        self.fetch_error = fetch_error
        self.removed = []
        self.imported = []

    async def fetch_queue(self):
        if self.fetch_error is not None:
            raise self.fetch_error
        return list(self.records)

    async def remove(self, item, config):
        errors = importlib.import_module('core.errors')
        if item.id in self.fail_remove:
            raise errors.DispatchError(f'Remove failed for queue item {item.id}')
        self.removed.append(item.id)

    async def manual_import(self, item):
        errors = importlib.import_module('core.errors')
        if item.id in self.fail_import:
            raise errors.DispatchError('No importable files')
        self.imported.append(item.id)
        return 1


def _rec(item_id, dlid=None, **overrides):
    models = importlib.import_module('core.models')
    base = {
        'id': item_id,
        'downloadId': dlid if dlid is not None else f'DL{item_id}',
        'title': f'Item {item_id}',
        'status': 'downloading',
        'trackedDownloadStatus': 'error',
        'trackedDownloadState': 'importFailed',
        'size': 100,
        'sizeleft': 50,
        'protocol': 'torrent',
        'added': models.format_timestamp(NOW - 120 * 60),
    }
    base.update(overrides)
    return base


def _importable(item_id, dlid=None):
    return _rec(
        item_id,
        dlid,
        trackedDownloadStatus='warning',
        trackedDownloadState='importBlocked',
        statusMessages=['Manual import required'],
        sizeleft=0,
    )


def _cfg(**fields):
    config = importlib.import_module('core.config')
    base = {'instance_id': 'sonarr-1', 'enabled': True, 'dry_run_mode': False}
    base.update(fields)
    return config.CleanerConfig.from_dict(base)


def _deps(store=None, **kw):
    runner = importlib.import_module('core.runner')
    state = importlib.import_module('storage.state')
    return runner.RunDeps(
        store=store if store is not None else state.StateStore(None),
        event_bus=DummyBus(),
        clock=lambda: NOW,
        import_delay=0,
        **kw,
    )


async def test_cap_defers_excess_and_marks_partial():
    runner = importlib.import_module('core.runner')
    client = FakeClient([_rec(i) for i in range(1, 11)])
    deps = _deps()
    result = await runner.execute_clean(client, _cfg(max_removals_per_run=5), deps)
    assert client.removed == [1, 2, 3, 4, 5]
    assert [d.item_id for d in result.deferred] == [6, 7, 8, 9, 10]
    assert result.status == 'partial'
    assert result.items_cleaned == 5
    assert deps.event_bus.names().count('deferred') == 5


async def test_dry_run_dispatches_nothing_and_writes_nothing():
    runner = importlib.import_module('core.runner')
    client = FakeClient([_rec(1), _rec(2, trackedDownloadStatus='ok', trackedDownloadState='downloading', sizeleft=100)])
    deps = _deps()
    cfg = _cfg(dry_run_mode=True, strike_system_enabled=True)
    result = await runner.execute_clean(client, cfg, deps)
    assert client.removed == []
    assert deps.store.data == {'strikes': {}, 'imports': {}}
    assert result.dry_run is True
    assert [d.item_id for d in result.removed] == [1]
    assert 'dry_remove' in deps.event_bus.names()
    assert result.message.startswith('Would clean 1')


async def test_dry_run_override_wins_over_config():
    runner = importlib.import_module('core.runner')
    client = FakeClient([_rec(1)])
    result = await runner.execute_clean(client, _cfg(dry_run_mode=False), _deps(), dry_run=True)
    assert client.removed == []
    assert result.dry_run is True


async def test_empty_queue_is_skipped():
    runner = importlib.import_module('core.runner')
    result = await runner.execute_clean(FakeClient([]), _cfg(), _deps())
    assert result.status == 'skipped'
    assert result.message.startswith('Queue is empty')


async def test_fetch_failure_raises_run_error():
    runner = importlib.import_module('core.runner')
    errors = importlib.import_module('core.errors')
    client = FakeClient(fetch_error=errors.RunError('Could not fetch queue'))
    with pytest.raises(errors.RunError):
        await runner.execute_clean(client, _cfg(), _deps())


async def test_strikes_commit_once_per_download_per_run():
    runner = importlib.import_module('core.runner')
    stalled = dict(trackedDownloadStatus='ok', trackedDownloadState='downloading', sizeleft=100)
    client = FakeClient([_rec(1, 'PACK', **stalled), _rec(2, 'PACK', **stalled)])
    deps = _deps()
    cfg = _cfg(strike_system_enabled=True, max_strikes=3)
    result = await runner.execute_clean(client, cfg, deps)
    assert deps.store.get_strike('sonarr-1', 'PACK').count == 1
    assert deps.event_bus.names().count('strike') == 1
    assert result.items_warned == 2
    assert result.status == 'completed'

    deps.clock = lambda: NOW + 3600
    await runner.execute_clean(client, cfg, deps)
    assert deps.store.get_strike('sonarr-1', 'PACK').count == 2


async def test_successful_removal_clears_strike_record():
    runner = importlib.import_module('core.runner')
    models = importlib.import_module('core.models')
    deps = _deps()
    deps.store.put_strike('sonarr-1', 'DL1', models.StrikeRecord(count=1, last_strike_at=NOW - 60))
    await runner.execute_clean(FakeClient([_rec(1)]), _cfg(), deps)
    assert deps.store.get_strike('sonarr-1', 'DL1') is None


async def test_strikes_for_items_no_longer_queued_are_pruned():
    runner = importlib.import_module('core.runner')
    models = importlib.import_module('core.models')
    deps = _deps()
    deps.store.put_strike('sonarr-1', 'GONE', models.StrikeRecord(count=2, last_strike_at=NOW - 60))
    healthy = _rec(1, trackedDownloadStatus='ok', trackedDownloadState='downloading')
    await runner.execute_clean(FakeClient([healthy]), _cfg(strike_system_enabled=True), deps)
    assert deps.store.get_strike('sonarr-1', 'GONE') is None


async def test_remove_failure_is_recorded_and_run_continues():
    runner = importlib.import_module('core.runner')
    client = FakeClient([_rec(1), _rec(2)], fail_remove={1})
    deps = _deps()
    result = await runner.execute_clean(client, _cfg(), deps)
    assert client.removed == [2]
    assert result.failed[0]['id'] == 1
    assert result.status == 'partial'
    assert 'dispatch_error' in deps.event_bus.names()


async def test_import_success_clears_attempts():
    runner = importlib.import_module('core.runner')
    client = FakeClient([_importable(1)])
    deps = _deps()
    cfg = _cfg(auto_import_enabled=True, import_block_cleanup_level='moderate')
    result = await runner.execute_clean(client, cfg, deps)
    assert client.imported == [1]
    assert client.removed == []
    assert [d.item_id for d in result.imported] == [1]
    assert deps.store.get_attempt('sonarr-1', 'DL1') is None
    assert result.status == 'completed'


async def test_failed_import_falls_back_to_removal():
    runner = importlib.import_module('core.runner')
    client = FakeClient([_importable(1)], fail_import={1})
    deps = _deps()
    cfg = _cfg(auto_import_enabled=True, import_block_cleanup_level='moderate')
    result = await runner.execute_clean(client, cfg, deps)
    assert client.removed == [1]
    assert 'import not possible' in result.removed[0].reason
    assert 'import_failed' in deps.event_bus.names()
    # removal clears the attempt record along with the item
    assert deps.store.get_attempt('sonarr-1', 'DL1') is None


async def test_failed_import_records_attempt_when_removal_fails():
    runner = importlib.import_module('core.runner')
    client = FakeClient([_importable(1)], fail_import={1}, fail_remove={1})
    deps = _deps()
    cfg = _cfg(auto_import_enabled=True, import_block_cleanup_level='moderate')
    await runner.execute_clean(client, cfg, deps)
    rec = deps.store.get_attempt('sonarr-1', 'DL1')
    assert rec.attempts == 1
    assert rec.last_error == 'No importable files'


async def test_import_budget_per_run_falls_back_to_removal():
    runner = importlib.import_module('core.runner')
    client = FakeClient([_importable(1), _importable(2)])
    deps = _deps(max_imports=1)
    cfg = _cfg(auto_import_enabled=True, import_block_cleanup_level='moderate')
    result = await runner.execute_clean(client, cfg, deps)
    assert client.imported == [1]
    assert client.removed == [2]
    assert result.items_cleaned == 2


class CancelDuringFetch(FakeClient):
    def __init__(self, cancel, records):
        super().__init__(records)
        self.cancel = cancel

    async def fetch_queue(self):
        self.cancel.set()
        return await super().fetch_queue()


class CancelAfterFirstRemove(FakeClient):
    def __init__(self, cancel, records):
        super().__init__(records)
        self.cancel = cancel

    async def remove(self, item, config):
        await super().remove(item, config)
        self.cancel.set()


async def test_cancel_stops_before_next_item():
    runner = importlib.import_module('core.runner')
    cancel = asyncio.Event()
    client = CancelAfterFirstRemove(cancel, [_rec(1), _rec(2), _rec(3)])
    result = await runner.execute_clean(client, _cfg(), _deps(), cancel_event=cancel)
    assert client.removed == [1]
    assert result.cancelled is True
    assert result.status == 'partial'
    assert [d.item_id for d in result.deferred] == [2, 3]
    assert all('run cancelled' in d.reason for d in result.deferred)


async def test_cancel_before_run_writes_no_strikes():
    runner = importlib.import_module('core.runner')
    cancel = asyncio.Event()
    cancel.set()
    stalled = dict(trackedDownloadStatus='ok', trackedDownloadState='downloading', sizeleft=100)
    client = FakeClient([_rec(1, **stalled), _rec(2, **stalled)])
    deps = _deps()
    cfg = _cfg(strike_system_enabled=True, max_strikes=3)
    result = await runner.execute_clean(client, cfg, deps, cancel_event=cancel)
    assert result.cancelled is True
    assert result.status == 'partial'
    assert deps.store.strikes_for('sonarr-1') == {}
    assert 'strike' not in deps.event_bus.names()
    assert client.removed == []


async def test_cancel_during_fetch_writes_nothing():
    runner = importlib.import_module('core.runner')
    cancel = asyncio.Event()
    stalled = dict(trackedDownloadStatus='ok', trackedDownloadState='downloading', sizeleft=100)
    client = CancelDuringFetch(cancel, [_rec(1, **stalled)])
    deps = _deps()
    result = await runner.execute_clean(client, _cfg(strike_system_enabled=True), deps, cancel_event=cancel)
    assert result.status == 'partial'
    assert deps.store.data == {'strikes': {}, 'imports': {}}


async def test_bad_record_becomes_data_error_skip():
    runner = importlib.import_module('core.runner')
    client = FakeClient([{'id': 7, 'title': 'Broken', 'size': 'lots'}, _rec(1)])
    result = await runner.execute_clean(client, _cfg(), _deps())
    assert result.has_data_error is True
    assert [d.rule for d in result.skipped] == ['data_error']
    assert client.removed == [1]


async def test_preview_reads_but_never_writes():
    runner = importlib.import_module('core.runner')
    client = FakeClient([_rec(1, trackedDownloadStatus='ok', trackedDownloadState='downloading', sizeleft=100)])
    deps = _deps()
    cfg = _cfg(strike_system_enabled=True)
    preview = await runner.preview_clean(client, {'id': 'sonarr-1'}, cfg, deps)
    assert preview['wouldWarn'] == 1
    assert deps.store.data == {'strikes': {}, 'imports': {}}
    assert client.removed == []


async def test_preview_unreachable_instance():
    runner = importlib.import_module('core.runner')
    errors = importlib.import_module('core.errors')
    client = FakeClient(fetch_error=errors.RunError('Could not fetch queue'))
    preview = await runner.preview_clean(client, {'id': 'sonarr-1'}, _cfg(), _deps())
    assert preview['instanceReachable'] is False
    assert preview['errorMessage'] == 'Could not fetch queue'
