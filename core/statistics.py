from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence

from core.constants import STATUS_ERROR, STATUS_RUNNING
from core.models import CleanerLog, format_timestamp

DAILY_WINDOW_DAYS = 7
RECENT_ACTIVITY_LIMIT = 10


def _day(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime('%Y-%m-%d')


def compute_statistics(
    logs: Sequence[CleanerLog],
    now: float,
    labels: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    labels = labels or {}
    finished = [lg for lg in logs if lg.status != STATUS_RUNNING]

    total_runs = len(finished)
    error_runs = sum(1 for lg in finished if lg.status == STATUS_ERROR)
    durations = [lg.duration_ms for lg in finished if lg.duration_ms is not None]
    totals = {
        'totalRuns': total_runs,
        'completedRuns': sum(1 for lg in finished if lg.status == 'completed'),
        'partialRuns': sum(1 for lg in finished if lg.status == 'partial'),
        'errorRuns': error_runs,
        'itemsCleaned': sum(lg.items_cleaned for lg in finished),
        'itemsSkipped': sum(lg.items_skipped for lg in finished),
        'itemsWarned': sum(lg.items_warned for lg in finished),
        'successRate': round((total_runs - error_runs) / total_runs * 100, 1) if total_runs else 0.0,
        'averageDurationMs': int(sum(durations) / len(durations)) if durations else 0,
    }

    today = datetime.fromtimestamp(now, tz=timezone.utc).date()
    days = [(today - timedelta(days=n)).isoformat() for n in range(DAILY_WINDOW_DAYS - 1, -1, -1)]
    daily = {d: {'date': d, 'runs': 0, 'itemsCleaned': 0, 'itemsSkipped': 0, 'itemsWarned': 0} for d in days}
    for lg in finished:
        bucket = daily.get(_day(lg.started_at))
        if bucket is None:
            continue
        bucket['runs'] += 1
        bucket['itemsCleaned'] += lg.items_cleaned
        bucket['itemsSkipped'] += lg.items_skipped
        bucket['itemsWarned'] += lg.items_warned

    rule_breakdown: Dict[str, int] = {}
    data_errors = 0
    for lg in finished:
        cleaned, ok = lg.parsed_items('cleaned')
        if not ok:
            data_errors += 1
            continue
        for entry in cleaned:
            rule = entry.get('rule') if isinstance(entry, dict) else None
            if rule:
                rule_breakdown[rule] = rule_breakdown.get(rule, 0) + 1

    per_instance: Dict[str, Dict[str, Any]] = {}
    for lg in sorted(finished, key=lambda x: x.started_at):
        row = per_instance.setdefault(lg.instance_id, {
            'instanceId': lg.instance_id,
            'instanceLabel': labels.get(lg.instance_id, lg.instance_id),
            'runs': 0,
            'itemsCleaned': 0,
            'itemsSkipped': 0,
            'itemsWarned': 0,
            'errors': 0,
        })
        row['runs'] += 1
        row['itemsCleaned'] += lg.items_cleaned
        row['itemsSkipped'] += lg.items_skipped
        row['itemsWarned'] += lg.items_warned
        if lg.status == STATUS_ERROR:
            row['errors'] += 1
        row['lastRunAt'] = format_timestamp(lg.started_at)
        row['lastStatus'] = lg.status

    recent: List[Dict[str, Any]] = []
    for lg in sorted(logs, key=lambda x: x.started_at, reverse=True)[:RECENT_ACTIVITY_LIMIT]:
        recent.append({
            'id': lg.id,
            'instanceId': lg.instance_id,
            'instanceLabel': labels.get(lg.instance_id, lg.instance_id),
            'status': lg.status,
            'startedAt': format_timestamp(lg.started_at),
            'itemsCleaned': lg.items_cleaned,
            'itemsWarned': lg.items_warned,
            'isDryRun': lg.is_dry_run,
        })

    return {
        'totals': totals,
        'daily': list(daily.values()),
        'ruleBreakdown': rule_breakdown,
        'instances': list(per_instance.values()),
        'recentActivity': recent,
        'hasDataError': data_errors > 0,
    }
