from __future__ import annotations

from typing import Dict, Tuple

# Scheduler / run controls
MANUAL_CLEAN_COOLDOWN_MINS = 2
MAX_RUN_SECONDS = 300
SCHEDULER_TICK_SECONDS = 60
AUTO_IMPORT_DELAY_SECONDS = 0.2
MAX_AUTO_IMPORTS_PER_RUN = 10

# (min, max, default) per numeric config field
LIMITS: Dict[str, Tuple[float, float, float]] = {
    'interval_mins': (5, 1440, 30),
    'stalled_threshold_mins': (10, 1440, 60),
    'slow_speed_threshold': (10, 10000, 100),
    'slow_grace_period_mins': (5, 1440, 30),
    'max_removals_per_run': (1, 100, 10),
    'min_queue_age_mins': (1, 60, 5),
    'max_strikes': (2, 10, 3),
    'strike_decay_hours': (1, 168, 24),
    'seeding_timeout_hours': (1, 720, 72),
    'estimated_completion_multiplier': (1.5, 10, 2.0),
    'import_pending_threshold_mins': (5, 1440, 60),
    'auto_import_max_attempts': (1, 5, 2),
    'auto_import_cooldown_mins': (5, 240, 30),
}

# Fields that must stay integral after clamping
INTEGER_FIELDS = frozenset(k for k in LIMITS if k != 'estimated_completion_multiplier')

MAX_PATTERNS = 50
MAX_PATTERN_LENGTH = 200
MAX_PATTERN_JSON_LENGTH = 10000

CLEANUP_LEVELS = ('safe', 'moderate', 'aggressive')
PATTERN_MODES = ('defaults', 'include', 'exclude')
WHITELIST_TYPES = ('tracker', 'tag', 'category', 'title')

STALL_KEYWORDS = (
    'stalled',
    'no seeds',
    'no seeders',
    'not seeding',
    'dead torrent',
    'timed out',
    'timeout',
    'no connections',
    'metadata',
    'queued for checking',
)

FAILURE_KEYWORDS = (
    'failed',
    'failure',
    'import failed',
    'importfailed',
    'error',
    'cannot be imported',
    'could not be imported',
    'not a valid',
    'disk space',
    'permission denied',
    'access denied',
)

# Import-block reasons the arr will never resolve on its own; removing is always safe
IMPORT_BLOCKED_SAFE_KEYWORDS = (
    'already exists',
    'already in library',
    'already imported',
    'duplicate',
    'quality not wanted',
    'not wanted in',
    'cutoff already met',
    'not an upgrade',
    'not a custom format upgrade',
    'do not improve on existing',
    'sample only',
    'sample file',
    'no files found',
    'no video files',
    'no audio files',
    'no book files',
    'bad nfo',
)

# Reasons a human could fix with a manual import
IMPORT_BLOCKED_REVIEW_KEYWORDS = (
    'manual import',
    'manual interaction',
    'missing expected',
    'expected files',
    'automatic import is not possible',
    'was not found in the grabbed release',
    "couldn't find similar album",
    'match is not close enough',
    'has unmatched tracks',
)

IMPORT_BLOCKED_TECHNICAL_KEYWORDS = (
    'unpack required',
    'unpacking failed',
    'rar required',
    'password protected',
)

IMPORT_PENDING_RECOVERABLE_KEYWORDS = (
    'extracting',
    'unpacking',
    'processing',
    'copying',
    'moving',
    'importing',
    'scanning',
)

AUTO_IMPORT_SAFE_KEYWORDS = (
    'waiting for import',
    'import pending',
    'manual import required',
    'manual import',
    'waiting for manual',
    'matched to series by id',
    'matched to movie by id',
    'matched to artist by id',
    'matched to album by id',
    'matched to author by id',
    'matched to book by id',
    'via grab history',
    'title mismatch',
    'name mismatch',
)

AUTO_IMPORT_NEVER_KEYWORDS = (
    'no video files',
    'no audio files',
    'no book files',
    'no files found',
    'no files',
    'sample only',
    'sample file',
    'bad nfo',
    'password protected',
    'unpack required',
    'rar required',
    'unpacking failed',
    'extraction failed',
    'quality not wanted',
    'not an upgrade',
    'cutoff already met',
    'not wanted in',
    'not a custom format upgrade',
    'do not improve on existing',
    'already exists',
    'already in library',
    'already imported',
    'duplicate',
    "couldn't find similar album",
    'match is not close enough',
    'path does not exist',
    'file not found',
)

# Rule tags
RULE_WHITELISTED = 'whitelisted'
RULE_TOO_YOUNG = 'too_young'
RULE_ERROR_PATTERN = 'error_pattern'
RULE_FAILED = 'failed'
RULE_IMPORT_BLOCKED = 'import_blocked'
RULE_IMPORT_PENDING = 'import_pending'
RULE_SEEDING_TIMEOUT = 'seeding_timeout'
RULE_ESTIMATED_COMPLETION = 'estimated_completion'
RULE_STALLED = 'stalled'
RULE_SLOW = 'slow'
RULE_HEALTHY = 'healthy'
RULE_DATA_ERROR = 'data_error'

IMPORT_RULES = frozenset({RULE_IMPORT_BLOCKED, RULE_IMPORT_PENDING})

# Actions; 'import' is the try-import-then-remove pseudo-action
ACTION_REMOVE = 'remove'
ACTION_IMPORT = 'import'
ACTION_WARN = 'warn'
ACTION_SKIP = 'skip'
ACTION_WHITELIST = 'whitelist'

ACTION_SEVERITY: Dict[str, int] = {
    ACTION_REMOVE: 4,
    ACTION_IMPORT: 4,
    ACTION_WARN: 3,
    ACTION_SKIP: 2,
    ACTION_WHITELIST: 1,
}

# Run statuses
STATUS_RUNNING = 'running'
STATUS_COMPLETED = 'completed'
STATUS_PARTIAL = 'partial'
STATUS_SKIPPED = 'skipped'
STATUS_ERROR = 'error'

TITLE_SEPARATORS = (' - S', ' S', ' - ', ' (', ' [', '.S', '.')
