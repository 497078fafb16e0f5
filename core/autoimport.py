from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from core.config import CleanerConfig
from core.constants import AUTO_IMPORT_NEVER_KEYWORDS, AUTO_IMPORT_SAFE_KEYWORDS
from core.models import ImportAttemptRecord, QueueItem
from core.patterns import first_match_any


@dataclass(frozen=True)
class ImportVerdict:
    attempt: bool
    reason: str


def _texts(item: QueueItem):
    texts = list(item.status_messages)
    if item.error_message:
        texts.append(item.error_message)
    return texts


def should_attempt_import(
    item: QueueItem,
    config: CleanerConfig,
    attempt: Optional[ImportAttemptRecord],
    now: float,
) -> ImportVerdict:
    """Decide whether an import-blocked item gets a manual import before removal.

    Checks run in a fixed order: disabled, never-patterns (an absolute veto),
    safe-only, attempt budget, cooldown.
    """
    if not config.auto_import_enabled:
        return ImportVerdict(False, 'Auto-import disabled')

    texts = _texts(item)
    never = first_match_any(texts, AUTO_IMPORT_NEVER_KEYWORDS + config.auto_import_never_patterns)
    if never is not None:
        return ImportVerdict(False, f'Never auto-import: "{never}"')

    safe = first_match_any(texts, AUTO_IMPORT_SAFE_KEYWORDS + config.auto_import_custom_patterns)
    if config.auto_import_safe_only and safe is None:
        return ImportVerdict(False, 'No safe auto-import pattern matched')

    if attempt is not None:
        if attempt.attempts >= config.auto_import_max_attempts:
            return ImportVerdict(
                False,
                f'Auto-import attempts exhausted ({attempt.attempts}/{config.auto_import_max_attempts})',
            )
        if attempt.last_attempt_at is not None:
            elapsed_mins = (now - attempt.last_attempt_at) / 60.0
            if elapsed_mins < config.auto_import_cooldown_mins:
                wait = config.auto_import_cooldown_mins - elapsed_mins
                return ImportVerdict(False, f'Auto-import cooling down ({wait:.0f}m remaining)')

    if safe is not None:
        return ImportVerdict(True, f'Safe to auto-import: "{safe}"')
    return ImportVerdict(True, 'Auto-import eligible')
