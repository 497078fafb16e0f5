import asyncio
import importlib

import pytest

pytestmark = pytest.mark.asyncio

NOW = 1_700_000_000.0
INSTANCES = {
    'sonarr-1': {'id': 'sonarr-1', 'label': 'Sonarr', 'service': 'sonarr'},
    'radarr-1': {'id': 'radarr-1', 'label': 'Radarr', 'service': 'radarr'},
}


class DummyBus:
    def __init__(self):
        self.events = []

    def emit(self, event, *, instance_id=None, decision=None, **fields):
        self.events.append(event)


class FakeClient:
    def __init__(self, records=None, gate=None, error=None):
        self.records = records or []
        self.gate = gate
        self.error = error

    async def fetch_queue(self):
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return list(self.records)

    async def remove(self, item, config):
        return None

    async def manual_import(self, item):
        return 1


class Clock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now


def _scheduler(client=None, configs=None, **kw):
    scheduler = importlib.import_module('core.scheduler')
    repo = importlib.import_module('storage.repository')
    state = importlib.import_module('storage.state')
    config = importlib.import_module('core.config')
    configs_repo = repo.ConfigRepository(None)
    for cfg in configs if configs is not None else [{'instance_id': 'sonarr-1', 'enabled': True}]:
        configs_repo.put(config.CleanerConfig.from_dict(cfg))
    client = client or FakeClient()
    clock = kw.pop('clock', Clock())
    sched = scheduler.QueueCleanerScheduler(
        configs=configs_repo,
        logs=repo.LogRepository(None),
        store=state.StateStore(None),
        instances=lambda: INSTANCES,
        client_factory=lambda inst: client,
        event_bus=DummyBus(),
        clock=clock,
        **kw,
    )
    return sched, clock


def _logs_by_id(sched):
    return {lg.id: lg for lg in sched.logs.all()}


async def _drain(sched):
    tasks = list(sched._active.values())
    if tasks:
        await asyncio.gather(*tasks)


async def test_manual_trigger_cooldown():
    errors = importlib.import_module('core.errors')
    sched, clock = _scheduler(manual_cooldown_mins=2)
    assert sched.trigger_manual('sonarr-1') == {'triggered': True, 'message': 'Clean started'}
    await _drain(sched)

    clock.now += 60
    with pytest.raises(errors.CooldownError) as exc:
        sched.trigger_manual('sonarr-1')
    assert exc.value.wait_seconds == 60
    assert exc.value.status == 429

    clock.now += 61
    assert sched.trigger_manual('sonarr-1')['triggered'] is True
    await _drain(sched)


async def test_manual_trigger_while_running_is_rejected():
    gate = asyncio.Event()
    sched, _ = _scheduler(FakeClient(gate=gate))
    assert sched.trigger_manual('sonarr-1')['triggered'] is True
    second = sched.trigger_manual('sonarr-1')
    assert second['triggered'] is False
    assert sched.is_running('sonarr-1')
    gate.set()
    await _drain(sched)
    assert not sched.is_running('sonarr-1')


async def test_manual_trigger_unknown_instance_or_config():
    errors = importlib.import_module('core.errors')
    sched, _ = _scheduler()
    with pytest.raises(errors.NotFoundError):
        sched.trigger_manual('lidarr-9')
    with pytest.raises(errors.NotFoundError):
        sched.trigger_manual('radarr-1')


async def test_manual_trigger_ignores_global_pause():
    sched, _ = _scheduler(running=False)
    assert sched.trigger_manual('sonarr-1')['triggered'] is True
    await _drain(sched)


async def test_tick_gates():
    configs = [
        {'instance_id': 'sonarr-1', 'enabled': True},
        {'instance_id': 'radarr-1', 'enabled': False},
    ]
    sched, clock = _scheduler(configs=configs)
    assert await sched.tick() == ['sonarr-1']
    await _drain(sched)

    # not due again until the interval has passed
    clock.now += 60
    assert await sched.tick() == []
    clock.now += 30 * 60
    assert await sched.tick() == ['sonarr-1']
    await _drain(sched)

    sched.toggle()
    clock.now += 3600
    assert await sched.tick() == []


async def test_tick_skips_excluded_instances():
    sched, _ = _scheduler(excluded=['sonarr-1'])
    assert await sched.tick() == []


async def test_run_records_log_and_bookkeeping():
    models = importlib.import_module('core.models')
    record = {
        'id': 1,
        'downloadId': 'A',
        'title': 'Broken',
        'trackedDownloadStatus': 'error',
        'size': 10,
        'sizeleft': 5,
        'added': models.format_timestamp(NOW - 3600),
    }
    sched, _ = _scheduler(FakeClient([record]))
    log = await sched.run_clean('sonarr-1')
    assert log.status == 'completed'
    assert log.items_cleaned == 1
    assert log.is_dry_run is True
    assert _logs_by_id(sched)[log.id].status == 'completed'
    cfg = sched.configs.get('sonarr-1')
    assert cfg.last_run_at == NOW
    assert cfg.last_run_items_cleaned == 1


async def test_run_failure_becomes_error_log():
    errors = importlib.import_module('core.errors')
    sched, _ = _scheduler(FakeClient(error=errors.RunError('Failed to fetch queue for sonarr-1')))
    log = await sched.run_clean('sonarr-1')
    assert log.status == 'error'
    assert log.message == 'Failed to fetch queue for sonarr-1'
    assert sched.configs.get('sonarr-1').last_run_at == NOW


async def test_run_timeout_becomes_error_log():
    sched, _ = _scheduler(FakeClient(gate=asyncio.Event()), max_run_seconds=0.01)
    log = await sched.run_clean('sonarr-1')
    assert log.status == 'error'
    assert 'timed out' in log.message


async def test_unexpected_exception_is_contained():
    sched, _ = _scheduler(FakeClient(error=KeyError('boom')))
    log = await sched.run_clean('sonarr-1')
    assert log.status == 'error'
    assert log.message.startswith('Unexpected error')


async def test_cleanup_stuck_logs():
    models = importlib.import_module('core.models')
    sched, _ = _scheduler()
    sched.logs.upsert(models.CleanerLog(id='stuck', instance_id='sonarr-1', status='running', started_at=NOW - 100))
    assert sched.cleanup_stuck_logs() == 1
    log = _logs_by_id(sched)['stuck']
    assert log.status == 'error'
    assert log.message == 'Clean was interrupted'


async def test_stop_cancels_active_runs():
    gate = asyncio.Event()
    sched, _ = _scheduler(FakeClient(gate=gate))
    await sched.start()
    sched.trigger_manual('sonarr-1')
    for _ in range(3):
        await asyncio.sleep(0)
    assert sched.cancel('sonarr-1') is True
    gate.set()
    await sched.stop()
    logs = sched.logs.all()
    assert logs and all(lg.status != 'running' for lg in logs)


async def test_status_and_health():
    sched, _ = _scheduler()
    await sched.run_clean('sonarr-1')
    status = sched.status()
    assert status['schedulerRunning'] is True
    rows = {r['instanceId']: r for r in status['instances']}
    assert rows['sonarr-1']['hasConfig'] is True
    assert rows['sonarr-1']['enabled'] is True
    assert rows['radarr-1']['hasConfig'] is False
    assert rows['sonarr-1']['lastRunAt'].endswith('Z')
    health = sched.health()
    assert health['healthy'] is True
    assert health['activeRuns'] == []


async def test_dry_run_and_preview_never_dispatch():
    sched, _ = _scheduler()
    out = await sched.dry_run('sonarr-1')
    assert out['isDryRun'] is True
    preview = await sched.preview('sonarr-1')
    assert preview['instanceId'] == 'sonarr-1'
    assert preview['instanceReachable'] is True


async def test_cleanup_stuck_logs_counts_only_rewritten():
    models = importlib.import_module('core.models')
    gate = asyncio.Event()
    sched, _ = _scheduler(FakeClient(gate=gate))
    sched.trigger_manual('sonarr-1')
    sched.logs.upsert(models.CleanerLog(id='busy', instance_id='sonarr-1', status='running', started_at=NOW - 100))
    sched.logs.upsert(models.CleanerLog(id='dead', instance_id='radarr-1', status='running', started_at=NOW - 100))
    assert sched.cleanup_stuck_logs() == 1
    logs = _logs_by_id(sched)
    assert logs['busy'].status == 'running'
    assert logs['dead'].status == 'error'
    gate.set()
    await _drain(sched)


async def test_dry_run_timeout_raises_run_error():
    errors = importlib.import_module('core.errors')
    sched, _ = _scheduler(FakeClient(gate=asyncio.Event()), max_run_seconds=0.01)
    with pytest.raises(errors.RunError) as exc:
        await sched.dry_run('sonarr-1')
    assert exc.value.message == 'Dry run timed out after 0.01s'
