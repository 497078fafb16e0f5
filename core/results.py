from __future__ import annotations

import json
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from core.config import CleanerConfig
from core.constants import (
    ACTION_IMPORT,
    ACTION_REMOVE,
    ACTION_SKIP,
    ACTION_WARN,
    ACTION_WHITELIST,
    STATUS_COMPLETED,
    STATUS_ERROR,
    STATUS_PARTIAL,
    STATUS_SKIPPED,
)
from core.grouping import group_decisions
from core.models import (
    CleanerLog,
    CleanerRunResult,
    Decision,
    ItemGroup,
    QueueItem,
    format_timestamp,
)

ACTIONABLE = (ACTION_REMOVE, ACTION_IMPORT)


def tally(decisions: Iterable[Decision]) -> Tuple[Dict[str, int], Dict[str, int]]:
    actions: Dict[str, int] = {}
    rules: Dict[str, int] = {}
    for d in decisions:
        actions[d.action] = actions.get(d.action, 0) + 1
        rules[d.rule] = rules.get(d.rule, 0) + 1
    return actions, rules


def split_for_cap(decisions: Sequence[Decision], cap: int) -> Tuple[List[Decision], List[Decision]]:
    """Keep the first ``cap`` remove/import decisions; the rest are deferred, not dropped."""
    within: List[Decision] = []
    deferred: List[Decision] = []
    for d in decisions:
        if d.action not in ACTIONABLE:
            continue
        if len(within) < cap:
            within.append(d)
        else:
            deferred.append(replace(d, reason=f'{d.reason} (deferred: exceeded max removals per run ({cap}))'))
    return within, deferred


def sort_decisions(result: CleanerRunResult, decisions: Iterable[Decision]) -> None:
    """File non-actionable decisions into the warned/skipped/whitelisted buckets."""
    for d in decisions:
        if d.action == ACTION_WARN:
            result.warned.append(d)
        elif d.action == ACTION_WHITELIST:
            result.whitelisted.append(d)
        elif d.action == ACTION_SKIP:
            result.skipped.append(d)
        if d.has_data_error:
            result.has_data_error = True


def determine_status(result: CleanerRunResult) -> str:
    if result.status == STATUS_ERROR:
        return STATUS_ERROR
    if result.cancelled or result.deferred or result.failed:
        return STATUS_PARTIAL
    if not (result.removed or result.imported or result.warned):
        return STATUS_SKIPPED
    return STATUS_COMPLETED


def build_message(result: CleanerRunResult) -> str:
    if result.status == STATUS_ERROR:
        return result.message or 'Run failed'
    verb = 'Would clean' if result.dry_run else 'Cleaned'
    parts = [f'{verb} {result.items_cleaned}', f'warned {result.items_warned}', f'skipped {result.items_skipped}']
    if result.imported:
        parts.append(f'{len(result.imported)} via import')
    if result.deferred:
        parts.append(f'{len(result.deferred)} deferred by max removals per run')
    if result.failed:
        parts.append(f'{len(result.failed)} failed')
    if result.cancelled:
        parts.append('cancelled before finishing')
    msg = ', '.join(parts)
    if result.message:
        msg = f'{result.message}; {msg}'
    return msg


def finalize(result: CleanerRunResult, now: float) -> CleanerRunResult:
    result.action_counts, result.rule_counts = tally(result.decisions)
    result.completed_at = now
    result.status = determine_status(result)
    result.message = build_message(result)
    return result


def _dump(items: Iterable[Any]) -> str:
    return json.dumps([i.to_dict() if hasattr(i, 'to_dict') else i for i in items], ensure_ascii=False)


def build_log(result: CleanerRunResult, log_id: str) -> CleanerLog:
    return CleanerLog(
        id=log_id,
        instance_id=result.instance_id,
        status=result.status,
        started_at=result.started_at,
        completed_at=result.completed_at,
        duration_ms=result.duration_ms,
        is_dry_run=result.dry_run,
        items_cleaned=result.items_cleaned,
        items_skipped=result.items_skipped,
        items_warned=result.items_warned,
        message=result.message,
        cleaned_items=_dump(result.removed + result.imported),
        skipped_items=_dump(result.skipped + result.whitelisted + result.deferred),
        warned_items=_dump(result.warned),
        has_data_error=result.has_data_error,
    )


# ---------------------------------------------------------------------------
# Preview
# ---------------------------------------------------------------------------

def queue_summary(items: Iterable[QueueItem]) -> Dict[str, int]:
    out = {
        'totalItems': 0,
        'downloading': 0,
        'paused': 0,
        'queued': 0,
        'seeding': 0,
        'importPending': 0,
        'failed': 0,
    }
    for item in items:
        out['totalItems'] += 1
        if item.tracked_state in ('importpending', 'importblocked', 'importing'):
            out['importPending'] += 1
        elif item.tracked_status == 'error' or item.status == 'failed' or 'failed' in item.tracked_state:
            out['failed'] += 1
        elif item.status == 'paused':
            out['paused'] += 1
        elif item.status in ('queued', 'delay', 'downloadclientunavailable'):
            out['queued'] += 1
        elif item.status == 'seeding' or (item.size > 0 and item.sizeleft == 0):
            out['seeding'] += 1
        else:
            out['downloading'] += 1
    return out


def _item_context(decision: Decision, item: Optional[QueueItem]) -> Dict[str, Any]:
    out = decision.to_dict()
    if item is not None:
        out.update({
            'queueAge': round(item.queue_age_minutes or 0),
            'size': item.size,
            'sizeleft': item.sizeleft,
            'progress': round(item.progress_percent, 1) if item.progress_percent is not None else None,
            'indexer': item.indexer or None,
            'downloadClient': item.download_client or None,
            'status': item.status or None,
        })
    if decision.strike_count is not None:
        out['strikeInfo'] = {
            'currentStrikes': decision.strike_count,
            'maxStrikes': decision.max_strikes,
            'wouldTriggerRemoval': decision.action in ACTIONABLE,
        }
    return out


def build_preview(
    instance: Dict[str, Any],
    config: CleanerConfig,
    items: Sequence[QueueItem],
    decisions: Sequence[Decision],
    now: float,
    *,
    reachable: bool = True,
    error_message: Optional[str] = None,
) -> Dict[str, Any]:
    by_id = {i.id: i for i in items}
    _, rule_summary = tally(decisions)
    within, deferred = split_for_cap(decisions, config.max_removals_per_run)
    would_remove = sum(1 for d in within if d.action == ACTION_REMOVE)
    would_import = sum(1 for d in within if d.action == ACTION_IMPORT)
    would_warn = sum(1 for d in decisions if d.action == ACTION_WARN)
    would_skip = sum(1 for d in decisions if d.action in (ACTION_SKIP, ACTION_WHITELIST)) + len(deferred)

    entries = []
    for entry in group_decisions(list(decisions)):
        if isinstance(entry, ItemGroup):
            data = entry.to_dict()
            data['items'] = [_item_context(d, by_id.get(d.item_id)) for d in entry.items]
            data['isGroup'] = True
            entries.append(data)
        else:
            entries.append(_item_context(entry, by_id.get(entry.item_id)))

    out: Dict[str, Any] = {
        'instanceId': instance.get('id'),
        'instanceLabel': instance.get('label'),
        'instanceService': instance.get('service'),
        'instanceReachable': reachable,
        'queueSummary': queue_summary(items),
        'wouldRemove': would_remove,
        'wouldImport': would_import,
        'wouldWarn': would_warn,
        'wouldSkip': would_skip,
        'previewItems': entries,
        'ruleSummary': rule_summary,
        'previewGeneratedAt': format_timestamp(now),
        'configSnapshot': {
            'dryRunMode': config.dry_run_mode,
            'strikeSystemEnabled': config.strike_system_enabled,
            'maxStrikes': config.max_strikes,
            'maxRemovalsPerRun': config.max_removals_per_run,
        },
        'hasDataError': any(d.has_data_error for d in decisions) or bool(config.pattern_errors),
    }
    if error_message:
        out['errorMessage'] = error_message
    return out
