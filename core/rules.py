from __future__ import annotations

from typing import Callable, Optional, Sequence, Tuple

from core.autoimport import should_attempt_import
from core.config import CleanerConfig
from core.constants import (
    ACTION_IMPORT,
    ACTION_REMOVE,
    ACTION_SKIP,
    ACTION_WARN,
    ACTION_WHITELIST,
    FAILURE_KEYWORDS,
    IMPORT_BLOCKED_REVIEW_KEYWORDS,
    IMPORT_BLOCKED_SAFE_KEYWORDS,
    IMPORT_BLOCKED_TECHNICAL_KEYWORDS,
    IMPORT_PENDING_RECOVERABLE_KEYWORDS,
    IMPORT_RULES,
    RULE_DATA_ERROR,
    RULE_ERROR_PATTERN,
    RULE_ESTIMATED_COMPLETION,
    RULE_FAILED,
    RULE_HEALTHY,
    RULE_IMPORT_BLOCKED,
    RULE_IMPORT_PENDING,
    RULE_SEEDING_TIMEOUT,
    RULE_SLOW,
    RULE_STALLED,
    RULE_TOO_YOUNG,
    RULE_WHITELISTED,
    STALL_KEYWORDS,
)
from core.models import Decision, ImportAttemptRecord, QueueItem, StrikeRecord
from core.patterns import first_match, first_match_any
from core.strikes import next_strike_count

# (reason, detailed_reason)
Hit = Tuple[str, str]
RuleCheck = Callable[[QueueItem, CleanerConfig], Optional[Hit]]


def _aged(item: QueueItem, minutes: float) -> bool:
    return item.queue_age_minutes is not None and item.queue_age_minutes >= minutes


def _age_label(item: QueueItem) -> str:
    return f'{round(item.queue_age_minutes or 0)}m'


def match_whitelist(item: QueueItem, config: CleanerConfig) -> Optional[str]:
    for pat in config.whitelist_patterns:
        if pat.type == 'tracker':
            fields = (item.indexer, item.download_client)
        elif pat.type == 'tag':
            fields = item.tags
        elif pat.type == 'category':
            fields = (item.category,)
        else:
            fields = (item.title,)
        if first_match_any(fields, (pat.text,)) is not None:
            return f'{pat.type} "{pat.text}"'
    return None


def check_error_pattern(item: QueueItem, config: CleanerConfig) -> Optional[Hit]:
    if not config.error_patterns_enabled or not config.error_patterns:
        return None
    texts = list(item.status_messages) + [item.error_message]
    hit = first_match_any(texts, config.error_patterns)
    if hit is None:
        return None
    return f'Matched error pattern: "{hit}"', f'Error message or status matched the configured pattern "{hit}"'


def check_failed(item: QueueItem, config: CleanerConfig) -> Optional[Hit]:
    if not config.failed_enabled:
        return None
    state = item.tracked_state
    if state == 'importfailed' or 'failed' in state or item.tracked_status == 'error' or item.status == 'failed':
        label = state or item.tracked_status or item.status
        return f'Download failed (state: {label})', f'The download manager reports the download as failed ({label})'
    hit = first_match_any(item.status_messages, FAILURE_KEYWORDS)
    if hit is not None:
        return f'Failed: {hit}', f'A status message indicates failure ("{hit}")'
    return None


def import_block_reason(texts: Sequence[str], config: CleanerConfig, prefix: str) -> Optional[str]:
    """Apply cleanup level and pattern mode to an import-blocked item's status text."""
    mode = config.import_block_pattern_mode
    custom = tuple(p for p in config.import_block_patterns if p.strip())
    if mode == 'include' and custom:
        hit = first_match_any(texts, custom)
        return f'{prefix} (matched pattern): {hit}' if hit is not None else None
    if mode == 'exclude' and custom and first_match_any(texts, custom) is not None:
        return None

    level = config.import_block_cleanup_level
    hit = first_match_any(texts, IMPORT_BLOCKED_SAFE_KEYWORDS)
    if hit is not None:
        return f'{prefix} (safe to remove): {hit}'
    hit = first_match_any(texts, IMPORT_BLOCKED_REVIEW_KEYWORDS)
    if hit is not None:
        return f'{prefix} (needs review): {hit}' if level in ('moderate', 'aggressive') else None
    hit = first_match_any(texts, IMPORT_BLOCKED_TECHNICAL_KEYWORDS)
    if hit is not None:
        return f'{prefix} (technical): {hit}' if level == 'aggressive' else None
    if level in ('moderate', 'aggressive'):
        summary = texts[0] if texts else 'requires manual intervention'
        return f'{prefix}: {summary}'
    return None


def _check_import_state(item: QueueItem, config: CleanerConfig, state: str, prefix: str) -> Optional[Hit]:
    if not config.import_pending_enabled or item.tracked_state != state:
        return None
    if not _aged(item, config.import_pending_threshold_mins):
        return None
    reason = import_block_reason(item.status_messages, config, prefix)
    if reason is None:
        return None
    detail = (
        f'{prefix} for {_age_label(item)} (threshold: {config.import_pending_threshold_mins}m, '
        f'level: {config.import_block_cleanup_level}, mode: {config.import_block_pattern_mode})'
    )
    return reason, detail


def check_import_blocked(item: QueueItem, config: CleanerConfig) -> Optional[Hit]:
    return _check_import_state(item, config, 'importblocked', 'Import blocked')


def check_import_pending(item: QueueItem, config: CleanerConfig) -> Optional[Hit]:
    if item.tracked_state == 'importpending' and first_match_any(item.status_messages, IMPORT_PENDING_RECOVERABLE_KEYWORDS):
        return None
    return _check_import_state(item, config, 'importpending', 'Import pending')


def check_seeding_timeout(item: QueueItem, config: CleanerConfig) -> Optional[Hit]:
    if not config.seeding_timeout_enabled or item.protocol == 'usenet':
        return None
    seeding = (
        (item.size > 0 and item.sizeleft == 0)
        or 'seeding' in (item.status, item.tracked_status)
        or item.tracked_state in ('importpending', 'importing')
    )
    if not seeding or not _aged(item, config.seeding_timeout_hours * 60):
        return None
    hours = int((item.queue_age_minutes or 0) // 60)
    return (
        f'Seeding for {hours}h (limit: {config.seeding_timeout_hours}h)',
        f'Download completed and has stayed in the queue for {hours}h',
    )


def check_estimated_completion(item: QueueItem, config: CleanerConfig) -> Optional[Hit]:
    if not config.estimated_completion_enabled:
        return None
    if item.sizeleft <= 0 or not item.eta_minutes or item.queue_age_minutes is None:
        return None
    mult = config.estimated_completion_multiplier
    if item.queue_age_minutes < item.eta_minutes * mult:
        return None
    over = round(item.queue_age_minutes - item.eta_minutes)
    return (
        f'Exceeded estimated completion by {over}m ({mult:g}x threshold)',
        f'Expected {round(item.eta_minutes)}m, running for {_age_label(item)}',
    )


def check_stalled(item: QueueItem, config: CleanerConfig) -> Optional[Hit]:
    if not config.stalled_enabled or not _aged(item, config.stalled_threshold_mins):
        return None
    if item.tracked_status == 'warning' or item.status == 'stalled':
        hit = first_match_any(item.status_messages, STALL_KEYWORDS) or first_match(item.status, ('stalled',))
        if hit is not None:
            return f'Stalled: {hit}', f'Stalled for {_age_label(item)} (threshold: {config.stalled_threshold_mins}m)'
    if item.size > 0 and item.sizeleft >= item.size:
        return (
            f'No progress for {_age_label(item)} (threshold: {config.stalled_threshold_mins}m)',
            'Nothing has been downloaded since the item was queued',
        )
    return None


def check_slow(item: QueueItem, config: CleanerConfig) -> Optional[Hit]:
    if not config.slow_enabled or not _aged(item, config.slow_grace_period_mins):
        return None
    if item.size <= 0 or item.sizeleft <= 0 or item.speed is None:
        return None
    if item.speed >= config.slow_speed_threshold:
        return None
    return (
        f'Speed: {item.speed:.1f} KB/s (threshold: {config.slow_speed_threshold} KB/s)',
        f'Average speed since queued is below the threshold after {_age_label(item)}',
    )


# First hit wins; order is the tie-break between rules.
RULE_PRIORITY: Tuple[Tuple[str, RuleCheck], ...] = (
    (RULE_ERROR_PATTERN, check_error_pattern),
    (RULE_FAILED, check_failed),
    (RULE_IMPORT_BLOCKED, check_import_blocked),
    (RULE_IMPORT_PENDING, check_import_pending),
    (RULE_SEEDING_TIMEOUT, check_seeding_timeout),
    (RULE_ESTIMATED_COMPLETION, check_estimated_completion),
    (RULE_STALLED, check_stalled),
    (RULE_SLOW, check_slow),
)

# Rules whose removals skip the strike system
STRIKE_EXEMPT_RULES = frozenset({RULE_FAILED})


def _decision(item: QueueItem, rule: str, action: str, reason: str, detail: str = '', **extra) -> Decision:
    return Decision(
        item_id=item.id,
        rule=rule,
        action=action,
        reason=reason,
        detailed_reason=detail or reason,
        title=item.title,
        download_id=item.download_id,
        protocol=item.protocol,
        **extra,
    )


def data_error_decision(record, message: str) -> Decision:
    rec = record if isinstance(record, dict) else {}
    try:
        item_id = int(rec.get('id') or 0)
    except (TypeError, ValueError):
        item_id = 0
    title = rec.get('title') if isinstance(rec.get('title'), str) else 'Unknown'
    dlid = rec.get('downloadId') if isinstance(rec.get('downloadId'), str) else ''
    return Decision(
        item_id=item_id,
        rule=RULE_DATA_ERROR,
        action=ACTION_SKIP,
        reason='Item data could not be parsed',
        detailed_reason=message,
        title=title,
        download_id=dlid,
        has_data_error=True,
    )


def evaluate_item(
    item: QueueItem,
    config: CleanerConfig,
    now: float,
    strike: Optional[StrikeRecord] = None,
    attempt: Optional[ImportAttemptRecord] = None,
) -> Decision:
    """Resolve exactly one decision for a queue item.

    Pure: the same item, config, records and ``now`` always give the same result.
    """
    if config.whitelist_enabled:
        if 'whitelist_patterns' in config.pattern_errors:
            return _decision(
                item,
                RULE_DATA_ERROR,
                ACTION_SKIP,
                'Whitelist configuration is invalid',
                config.pattern_errors['whitelist_patterns'],
                has_data_error=True,
            )
        hit = match_whitelist(item, config)
        if hit is not None:
            return _decision(item, RULE_WHITELISTED, ACTION_WHITELIST, f'Whitelisted: {hit}')

    if item.queue_age_minutes is not None and item.queue_age_minutes < config.min_queue_age_mins:
        return _decision(
            item,
            RULE_TOO_YOUNG,
            ACTION_SKIP,
            f'Queued {_age_label(item)} ago (minimum: {config.min_queue_age_mins}m)',
        )

    for rule, check in RULE_PRIORITY:
        hit = check(item, config)
        if hit is not None:
            break
    else:
        return _decision(item, RULE_HEALTHY, ACTION_SKIP, 'No rule matched')

    reason, detail = hit
    action = ACTION_REMOVE
    extra = {}
    if config.strike_system_enabled and rule not in STRIKE_EXEMPT_RULES:
        count = next_strike_count(strike, now, config.strike_decay_hours)
        action = ACTION_WARN if count < config.max_strikes else ACTION_REMOVE
        reason = f'{reason} (strike {count}/{config.max_strikes})'
        extra = {'strike_count': count, 'max_strikes': config.max_strikes}

    if rule in IMPORT_RULES and action == ACTION_REMOVE and config.auto_import_enabled:
        verdict = should_attempt_import(item, config, attempt, now)
        extra['import_reason'] = verdict.reason
        if verdict.attempt:
            action = ACTION_IMPORT

    return _decision(item, rule, action, reason, detail, **extra)
