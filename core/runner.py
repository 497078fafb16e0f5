from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple

from core.actions import ActionsDeps, import_item, remove_item
from core.config import CleanerConfig
from core.constants import (
    ACTION_IMPORT,
    ACTION_REMOVE,
    AUTO_IMPORT_DELAY_SECONDS,
    MAX_AUTO_IMPORTS_PER_RUN,
)
from core.errors import DataQualityError, DispatchError, RunError
from core.models import CleanerRunResult, Decision, ImportAttemptRecord, QueueItem
from core.results import build_preview, finalize, sort_decisions, split_for_cap
from core.rules import data_error_decision, evaluate_item
from core.strikes import StrikeTracker


@dataclass
class RunDeps:
    store: Any  # StateStore
    event_bus: Any
    clock: Callable[[], float]
    debug_logging: bool = False
    import_delay: float = AUTO_IMPORT_DELAY_SECONDS
    max_imports: int = MAX_AUTO_IMPORTS_PER_RUN


@dataclass
class RunnerState:
    """Bookkeeping for one run of one instance."""

    instance_id: str
    now: float
    dry_run: bool
    # strike keys already committed this run (packs share one key)
    struck: Set[str] = field(default_factory=set)
    # download ids imported this run
    imported_keys: Set[str] = field(default_factory=set)
    imports_attempted: int = 0


def evaluate_records(
    records: Sequence[Any],
    config: CleanerConfig,
    store: Any,
    now: float,
) -> Tuple[List[QueueItem], List[Decision]]:
    """Parse and decide every queue record. Unparseable records become data_error skips."""
    items: List[QueueItem] = []
    decisions: List[Decision] = []
    for record in records:
        try:
            item = QueueItem.from_record(record, now)
        except DataQualityError as e:
            logging.warning(f'Instance {config.instance_id}: skipping unparseable queue record: {e.message}')
            decisions.append(data_error_decision(record, e.message))
            continue
        strike = store.get_strike(config.instance_id, item.key) if config.strike_system_enabled else None
        attempt = store.get_attempt(config.instance_id, item.key) if config.auto_import_enabled else None
        items.append(item)
        decisions.append(evaluate_item(item, config, now, strike, attempt))
    return items, decisions


def _commit_strikes(state: RunnerState, config: CleanerConfig, decisions: Sequence[Decision], items: Sequence[QueueItem], deps: RunDeps) -> None:
    tracker = StrikeTracker(deps.store, state.instance_id, config.strike_decay_hours)
    for d in decisions:
        if d.strike_count is None or d.key in state.struck:
            continue
        state.struck.add(d.key)
        count, since = tracker.record_strike(d.key, state.now, rule=d.rule, reason=d.reason, title=d.title)
        deps.event_bus.emit(
            'strike',
            instance_id=state.instance_id,
            decision=d,
            count=count,
            hours_since_last=None if since is None else round(since, 2),
        )
    tracker.prune({i.key for i in items}, state.now)


def _prune_attempts(state: RunnerState, items: Sequence[QueueItem], store: Any) -> None:
    active = {i.key for i in items}
    for key in list(store.attempts_for(state.instance_id)):
        if key not in active:
            store.delete_attempt(state.instance_id, key)


async def _try_import(
    state: RunnerState,
    item: QueueItem,
    decision: Decision,
    actions: ActionsDeps,
    deps: RunDeps,
) -> bool:
    if item.key in state.imported_keys:
        return True
    store = deps.store
    rec = store.get_attempt(state.instance_id, item.key) or ImportAttemptRecord()
    if not state.dry_run:
        # count the attempt before dispatch so repeated failures exhaust the budget
        rec.attempts += 1
        rec.last_attempt_at = state.now
        store.put_attempt(state.instance_id, item.key, rec)
    state.imports_attempted += 1
    try:
        await import_item(item, decision, actions)
    except DispatchError as e:
        logging.warning(f'Instance {state.instance_id}: import failed for id={item.id}: {e.message}; falling back to removal')
        deps.event_bus.emit('import_failed', instance_id=state.instance_id, decision=decision, error=e.message)
        if not state.dry_run:
            rec.last_error = e.message
            store.put_attempt(state.instance_id, item.key, rec)
        return False
    state.imported_keys.add(item.key)
    if not state.dry_run:
        store.delete_attempt(state.instance_id, item.key)
        store.delete_strike(state.instance_id, item.key)
        if deps.import_delay:
            await asyncio.sleep(deps.import_delay)
    return True


async def execute_clean(
    client: Any,
    config: CleanerConfig,
    deps: RunDeps,
    *,
    dry_run: Optional[bool] = None,
    cancel_event: Optional[asyncio.Event] = None,
) -> CleanerRunResult:
    """Run one clean for one instance and return its finalized result.

    Queue fetch failures raise RunError. Per-item dispatch failures are
    recorded on the result and never abort the run.
    """
    instance_id = config.instance_id
    dry = config.dry_run_mode if dry_run is None else dry_run
    now = deps.clock()
    state = RunnerState(instance_id=instance_id, now=now, dry_run=dry)
    result = CleanerRunResult(instance_id=instance_id, dry_run=dry, started_at=now)
    if config.pattern_errors:
        result.has_data_error = True
        for name, msg in config.pattern_errors.items():
            logging.warning(f'Instance {instance_id}: {name} is invalid and was ignored: {msg}')

    records = await client.fetch_queue()
    # nothing awaits between here and the strike commit
    if cancel_event is not None and cancel_event.is_set():
        result.cancelled = True
        result.message = 'Run cancelled before processing'
        logging.warning(f'Instance {instance_id}: run cancelled before processing {len(records)} record(s)')
        return finalize(result, deps.clock())
    if not records:
        result.message = 'Queue is empty'
        if not dry:
            StrikeTracker(deps.store, instance_id, config.strike_decay_hours).prune((), now)
            _prune_attempts(state, [], deps.store)
            deps.store.save()
        return finalize(result, deps.clock())

    items, decisions = evaluate_records(records, config, deps.store, now)
    result.decisions = decisions
    for d in decisions:
        deps.event_bus.emit('decision', instance_id=instance_id, decision=d)

    if not dry:
        if config.strike_system_enabled:
            _commit_strikes(state, config, decisions, items, deps)
        _prune_attempts(state, items, deps.store)

    sort_decisions(result, decisions)
    within, deferred = split_for_cap(decisions, config.max_removals_per_run)
    result.deferred = deferred
    for d in deferred:
        deps.event_bus.emit('deferred', instance_id=instance_id, decision=d)

    actions = ActionsDeps(
        instance_id=instance_id,
        client=client,
        event_bus=deps.event_bus,
        debug_logging=deps.debug_logging,
        dry_run=dry,
    )
    tracker = StrikeTracker(deps.store, instance_id, config.strike_decay_hours)
    by_id: Dict[int, QueueItem] = {i.id: i for i in items}
    for idx, decision in enumerate(within):
        if cancel_event is not None and cancel_event.is_set():
            result.cancelled = True
            result.deferred.extend(replace(d, reason=f'{d.reason} (not processed: run cancelled)') for d in within[idx:])
            logging.warning(f'Instance {instance_id}: run cancelled; {len(within) - idx} item(s) not processed')
            break
        item = by_id[decision.item_id]
        if decision.action == ACTION_IMPORT:
            if state.imports_attempted < deps.max_imports or item.key in state.imported_keys:
                if await _try_import(state, item, decision, actions, deps):
                    result.imported.append(decision)
                    continue
            decision = replace(decision, action=ACTION_REMOVE, reason=f'{decision.reason} (import not possible, removing)')
        try:
            await remove_item(item, decision, config, actions)
        except DispatchError as e:
            logging.error(f'Instance {instance_id}: remove failed for id={item.id}: {e.message}')
            deps.event_bus.emit('dispatch_error', instance_id=instance_id, decision=decision, error=e.message)
            result.failed.append({'id': item.id, 'title': item.title, 'rule': decision.rule, 'error': e.message})
            continue
        result.removed.append(decision)
        if not dry:
            tracker.clear(item.key)
            deps.store.delete_attempt(instance_id, item.key)

    if not dry:
        deps.store.save()
    finalize(result, deps.clock())
    deps.event_bus.emit(
        'run_summary',
        instance_id=instance_id,
        status=result.status,
        dry_run=dry,
        cleaned=result.items_cleaned,
        warned=result.items_warned,
        skipped=result.items_skipped,
        deferred=len(result.deferred),
        failed=len(result.failed),
    )
    return result


async def preview_clean(client: Any, instance: Dict[str, Any], config: CleanerConfig, deps: RunDeps) -> Dict[str, Any]:
    """Evaluate without side effects; strike and import records are read, never written."""
    now = deps.clock()
    try:
        records = await client.fetch_queue()
    except RunError as e:
        return build_preview(instance, config, [], [], now, reachable=False, error_message=e.message)
    items, decisions = evaluate_records(records, config, deps.store, now)
    return build_preview(instance, config, items, decisions, now)
