from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from core.config import CleanerConfig
from core.constants import (
    MANUAL_CLEAN_COOLDOWN_MINS,
    MAX_RUN_SECONDS,
    SCHEDULER_TICK_SECONDS,
    STATUS_ERROR,
    STATUS_RUNNING,
)
from core.errors import CleanerError, CooldownError, NotFoundError, RunError
from core.models import CleanerLog, format_timestamp
from core.results import build_log
from core.runner import RunDeps, execute_clean, preview_clean


class QueueCleanerScheduler:
    """Drives periodic and manual cleans; at most one active run per instance.

    Two independent gates apply: the global ``running`` flag gates automatic
    ticks only, and each config's ``enabled`` flag gates that instance's ticks.
    Manual triggers ignore the global flag.
    """

    def __init__(
        self,
        *,
        configs,
        logs,
        store,
        instances: Callable[[], Dict[str, Dict[str, Any]]],
        client_factory: Callable[[Dict[str, Any]], Any],
        event_bus,
        clock: Callable[[], float] = time.time,
        tick_seconds: float = SCHEDULER_TICK_SECONDS,
        manual_cooldown_mins: float = MANUAL_CLEAN_COOLDOWN_MINS,
        max_run_seconds: float = MAX_RUN_SECONDS,
        excluded: Iterable[str] = (),
        running: bool = True,
        debug_logging: bool = False,
    ) -> None:
        self.configs = configs
        self.logs = logs
        self.store = store
        self.instances = instances
        self.client_factory = client_factory
        self.event_bus = event_bus
        self.clock = clock
        self.tick_seconds = tick_seconds
        self.manual_cooldown_mins = manual_cooldown_mins
        self.max_run_seconds = max_run_seconds
        self.excluded = set(excluded)
        self.running = running
        self.debug_logging = debug_logging

        self._active: Dict[str, asyncio.Task] = {}
        self._cancel: Dict[str, asyncio.Event] = {}
        self._last_manual: Dict[str, float] = {}
        self._loop_task: Optional[asyncio.Task] = None

        self.consecutive_failures = 0
        self.last_error: Optional[str] = None
        self.last_tick_at: Optional[float] = None

    def _deps(self) -> RunDeps:
        return RunDeps(
            store=self.store,
            event_bus=self.event_bus,
            clock=self.clock,
            debug_logging=self.debug_logging,
        )

    # lifecycle
    async def start(self) -> None:
        self.cleanup_stuck_logs()
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._loop_task is not None:
            self._loop_task.cancel()
            await asyncio.gather(self._loop_task, return_exceptions=True)
            self._loop_task = None
        tasks = list(self._active.values())
        for ev in self._cancel.values():
            ev.set()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def toggle(self) -> bool:
        self.running = not self.running
        logging.info(f"Queue cleaner scheduler {'started' if self.running else 'paused'}")
        return self.running

    async def _loop(self) -> None:
        while True:
            try:
                await self.tick()
                self.consecutive_failures = 0
            except Exception as e:
                self.consecutive_failures += 1
                self.last_error = str(e)
                logging.error(f'Queue cleaner tick failed ({self.consecutive_failures} in a row): {e}')
            await asyncio.sleep(self.tick_seconds)

    # state
    def is_running(self, instance_id: str) -> bool:
        task = self._active.get(instance_id)
        return task is not None and not task.done()

    def is_due(self, config: CleanerConfig, now: float) -> bool:
        if config.last_run_at is None:
            return True
        return config.last_run_at + config.interval_mins * 60 <= now

    def _instance(self, instance_id: str) -> Dict[str, Any]:
        inst = self.instances().get(instance_id)
        if inst is None:
            raise NotFoundError(f'Unknown instance {instance_id}', {'instanceId': instance_id})
        return inst

    def _config(self, instance_id: str) -> CleanerConfig:
        config = self.configs.get(instance_id)
        if config is None:
            raise NotFoundError(f'No queue cleaner config for {instance_id}', {'instanceId': instance_id})
        return config

    async def tick(self, now: Optional[float] = None) -> List[str]:
        """Start runs for every due, enabled, idle instance. Returns the ids started."""
        now = self.clock() if now is None else now
        self.last_tick_at = now
        if not self.running:
            return []
        known = self.instances()
        started = []
        for config in self.configs.all():
            iid = config.instance_id
            if not config.enabled or iid in self.excluded or iid not in known:
                continue
            if self.is_running(iid) or not self.is_due(config, now):
                continue
            self._start(iid)
            started.append(iid)
        return started

    def _start(self, instance_id: str) -> asyncio.Task:
        task = asyncio.create_task(self.run_clean(instance_id))
        self._active[instance_id] = task
        task.add_done_callback(lambda t, iid=instance_id: self._active.pop(iid, None) if self._active.get(iid) is t else None)
        return task

    def trigger_manual(self, instance_id: str) -> Dict[str, Any]:
        self._instance(instance_id)
        self._config(instance_id)
        if self.is_running(instance_id):
            return {'triggered': False, 'message': 'A clean is already running for this instance'}
        now = self.clock()
        last = self._last_manual.get(instance_id)
        cooldown = self.manual_cooldown_mins * 60
        if last is not None and now - last < cooldown:
            raise CooldownError(instance_id, cooldown - (now - last))
        self._last_manual[instance_id] = now
        self._start(instance_id)
        return {'triggered': True, 'message': 'Clean started'}

    def cancel(self, instance_id: str) -> bool:
        ev = self._cancel.get(instance_id)
        if ev is None:
            return False
        ev.set()
        return True

    async def run_clean(self, instance_id: str) -> CleanerLog:
        now = self.clock()
        log = CleanerLog(id=self.logs.new_id(), instance_id=instance_id, status=STATUS_RUNNING, started_at=now)
        self.logs.upsert(log)
        cancel = asyncio.Event()
        self._cancel[instance_id] = cancel
        config = None
        try:
            config = self._config(instance_id)
            client = self.client_factory(self._instance(instance_id))
            result = await asyncio.wait_for(
                execute_clean(client, config, self._deps(), cancel_event=cancel),
                timeout=self.max_run_seconds,
            )
            log = build_log(result, log.id)
        except asyncio.TimeoutError:
            log = self._failed_log(log, self._timeout_message())
        except CleanerError as e:
            log = self._failed_log(log, e.message)
        except Exception as e:
            logging.exception(f'Instance {instance_id}: unexpected error during clean')
            log = self._failed_log(log, f'Unexpected error: {e}')
        finally:
            if self._cancel.get(instance_id) is cancel:
                self._cancel.pop(instance_id, None)
        self.logs.upsert(log)
        self._record_run(instance_id, log)
        logging.info(
            f'Instance {instance_id}: clean {log.status} cleaned={log.items_cleaned} '
            f'warned={log.items_warned} skipped={log.items_skipped}'
        )
        return log

    def _timeout_message(self, what: str = 'Clean') -> str:
        return f'{what} timed out after {self.max_run_seconds:g}s'

    def _failed_log(self, log: CleanerLog, message: str) -> CleanerLog:
        logging.error(f'Instance {log.instance_id}: clean failed: {message}')
        now = self.clock()
        return replace(
            log,
            status=STATUS_ERROR,
            message=message,
            completed_at=now,
            duration_ms=int(round((now - log.started_at) * 1000)),
        )

    def _record_run(self, instance_id: str, log: CleanerLog) -> None:
        # reload: the config may have been edited or deleted mid-run
        config = self.configs.get(instance_id)
        if config is None:
            return
        self.configs.put(replace(
            config,
            last_run_at=log.started_at,
            last_run_items_cleaned=log.items_cleaned,
            last_run_items_skipped=log.items_skipped,
        ))

    def cleanup_stuck_logs(self) -> int:
        """Mark logs left 'running' by a crash or restart as errors."""
        stuck = [lg for lg in self.logs.by_status(STATUS_RUNNING) if lg.instance_id not in self._active]
        for lg in stuck:
            self.logs.upsert(replace(
                lg,
                status=STATUS_ERROR,
                message='Clean was interrupted',
                completed_at=self.clock(),
            ))
        if stuck:
            logging.warning(f'Marked {len(stuck)} interrupted clean log(s) as error')
        return len(stuck)

    async def preview(self, instance_id: str) -> Dict[str, Any]:
        instance = self._instance(instance_id)
        config = self._config(instance_id)
        client = self.client_factory(instance)
        return await preview_clean(client, instance, config, self._deps())

    async def dry_run(self, instance_id: str) -> Dict[str, Any]:
        instance = self._instance(instance_id)
        config = self._config(instance_id)
        client = self.client_factory(instance)
        try:
            result = await asyncio.wait_for(
                execute_clean(client, config, self._deps(), dry_run=True),
                timeout=self.max_run_seconds,
            )
        except asyncio.TimeoutError:
            raise RunError(self._timeout_message('Dry run'), {'instanceId': instance_id})
        return result.to_dict()

    def health(self) -> Dict[str, Any]:
        return {
            'running': self.running,
            'healthy': self.consecutive_failures == 0,
            'consecutiveFailures': self.consecutive_failures,
            'lastError': self.last_error,
            'lastTickAt': format_timestamp(self.last_tick_at),
            'activeRuns': sorted(iid for iid in self._active if self.is_running(iid)),
        }

    def status(self) -> Dict[str, Any]:
        now = self.clock()
        today = datetime.fromtimestamp(now, tz=timezone.utc).date()
        per_day: Dict[str, Dict[str, int]] = {}
        for lg in self.logs.all():
            if datetime.fromtimestamp(lg.started_at, tz=timezone.utc).date() != today:
                continue
            row = per_day.setdefault(lg.instance_id, {'cleaned': 0, 'skipped': 0})
            row['cleaned'] += lg.items_cleaned
            row['skipped'] += lg.items_skipped
        instances = []
        for iid, inst in self.instances().items():
            config = self.configs.get(iid)
            today_row = per_day.get(iid, {'cleaned': 0, 'skipped': 0})
            instances.append({
                'instanceId': iid,
                'instanceLabel': inst.get('label', iid),
                'instanceService': inst.get('service'),
                'enabled': bool(config and config.enabled),
                'dryRunMode': bool(config.dry_run_mode) if config else True,
                'hasConfig': config is not None,
                'excluded': iid in self.excluded,
                'running': self.is_running(iid),
                'cleanedToday': today_row['cleaned'],
                'skippedToday': today_row['skipped'],
                'lastRunAt': format_timestamp(config.last_run_at) if config else None,
            })
        return {'schedulerRunning': self.running, 'instances': instances}
