from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, List, Optional, Tuple

import yaml

from core.constants import (
    CLEANUP_LEVELS,
    INTEGER_FIELDS,
    LIMITS,
    MAX_PATTERN_JSON_LENGTH,
    MAX_PATTERN_LENGTH,
    MAX_PATTERNS,
    PATTERN_MODES,
    WHITELIST_TYPES,
)
from core.errors import ConfigurationError


def load_yaml(path: str) -> Dict[str, Any]:
    if not os.path.exists(path):
        return {}
    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}
            return data if isinstance(data, dict) else {}
    except (OSError, yaml.YAMLError) as e:
        logging.warning(f'Could not read config file {path}: {e}')
        return {}


def _get_env(key: str, default: Any = None) -> Any:
    return os.environ.get(key, default)


def get_env_var(key, default=None, cast_to=str):
    value = os.environ.get(key, default)
    if value is not None:
        return cast_to(value)
    return default


def env_flag(value: Any) -> bool:
    return str(value).lower() in ['true', '1', 'yes']


class ConfigAccessor:
    def __init__(self, cfg: Dict[str, Any]) -> None:
        self.cfg = cfg if isinstance(cfg, dict) else {}

    # General settings accessor
    def general(self, key: str, default: Any = None) -> Any:
        gen = self.cfg.get('general') if isinstance(self.cfg.get('general'), dict) else {}
        return gen.get(key, default)

    def excluded_instances(self) -> List[str]:
        raw = self.general('excluded_instances', None)
        if raw is None:
            raw = _get_env('EXCLUDED_INSTANCES', '')
        if isinstance(raw, str):
            raw = [p for p in raw.split(',')]
        return [str(p).strip() for p in (raw or []) if str(p).strip()]

    # Arr instances; API key precedence: env <ID>_API_KEY > yaml
    def instances(self) -> List[Dict[str, Any]]:
        raw = self.cfg.get('instances') if isinstance(self.cfg.get('instances'), list) else []
        out: List[Dict[str, Any]] = []
        for inst in raw:
            if not isinstance(inst, dict) or not inst.get('id'):
                continue
            iid = str(inst['id'])
            upper = re.sub(r'[^A-Za-z0-9]', '_', iid).upper()
            out.append({
                'id': iid,
                'label': str(inst.get('label') or iid),
                'service': str(inst.get('service') or 'sonarr').lower(),
                'api_url': (_get_env(f'{upper}_URL') or inst.get('url') or '').rstrip('/') or None,
                'api_key': _get_env(f'{upper}_API_KEY') or inst.get('api_key') or None,
            })
        return out


def sanitize_config(cfg: Dict[str, Any], debug_logging: bool = False) -> Dict[str, Any]:
    if not isinstance(cfg, dict):
        return {}
    out = dict(cfg)

    def _nz(v, cast, default):
        try:
            return cast(v)
        except (TypeError, ValueError):
            return default

    gen = out.get('general') if isinstance(out.get('general'), dict) else {}
    if gen:
        gen = dict(gen)
        if 'scheduler_tick_seconds' in gen:
            gen['scheduler_tick_seconds'] = max(1, _nz(gen['scheduler_tick_seconds'], int, 60))
        if 'manual_cooldown_mins' in gen:
            gen['manual_cooldown_mins'] = max(0, _nz(gen['manual_cooldown_mins'], float, 2))
        if 'max_run_seconds' in gen:
            gen['max_run_seconds'] = max(1, _nz(gen['max_run_seconds'], float, 300))
        if 'http_port' in gen:
            gen['http_port'] = _nz(gen['http_port'], int, 8080)
        if 'request_timeout' in gen:
            gen['request_timeout'] = max(1, _nz(gen['request_timeout'], int, 10))
        if 'retry_attempts' in gen:
            gen['retry_attempts'] = max(0, _nz(gen['retry_attempts'], int, 2))
        if 'retry_backoff' in gen:
            gen['retry_backoff'] = max(0, _nz(gen['retry_backoff'], float, 1.0))
        if 'min_request_interval_ms' in gen:
            gen['min_request_interval_ms'] = max(0, _nz(gen['min_request_interval_ms'], float, 0))
        if 'max_concurrent_requests' in gen:
            gen['max_concurrent_requests'] = max(0, _nz(gen['max_concurrent_requests'], int, 0))
        out['general'] = gen

    insts = out.get('instances')
    if insts is not None and not isinstance(insts, list):
        if debug_logging:
            logging.warning('Ignoring non-list instances section')
        out['instances'] = []
    return out


def validate_config(cfg: Dict[str, Any], debug_logging: bool = False) -> List[str]:
    """Log (never raise on) problems a reload would otherwise hide."""
    problems: List[str] = []
    accessor = ConfigAccessor(cfg)
    seen = set()
    for inst in accessor.instances():
        if inst['id'] in seen:
            problems.append(f"Instance {inst['id']} is declared more than once; the first entry wins.")
        seen.add(inst['id'])
        if bool(inst['api_url']) != bool(inst['api_key']):
            problems.append(f"Instance {inst['id']} has partial config (URL/API_KEY); it will be skipped.")
        if inst['service'] not in ('sonarr', 'radarr', 'lidarr', 'readarr'):
            problems.append(f"Instance {inst['id']} has unknown service '{inst['service']}'.")
    gen = cfg.get('general') if isinstance(cfg.get('general'), dict) else {}
    if float(gen.get('min_request_interval_ms') or 0) > 0 and int(gen.get('max_concurrent_requests') or 0) == 0:
        problems.append('min_request_interval_ms set without max_concurrent_requests; consider setting both for effect.')
    for p in problems:
        logging.warning(p)
    return problems


# ---------------------------------------------------------------------------
# Per-instance cleaner configuration
# ---------------------------------------------------------------------------

def to_snake(key: str) -> str:
    return re.sub(r'(?<!^)(?=[A-Z])', '_', key).lower()


def to_camel(key: str) -> str:
    head, *rest = key.split('_')
    return head + ''.join(p.title() for p in rest)


@dataclass(frozen=True)
class WhitelistPattern:
    type: str
    text: str

    def to_dict(self) -> Dict[str, str]:
        return {'type': self.type, 'pattern': self.text}


BOOL_FIELDS = (
    'enabled',
    'dry_run_mode',
    'stalled_enabled',
    'failed_enabled',
    'slow_enabled',
    'error_patterns_enabled',
    'strike_system_enabled',
    'seeding_timeout_enabled',
    'estimated_completion_enabled',
    'import_pending_enabled',
    'auto_import_enabled',
    'auto_import_safe_only',
    'whitelist_enabled',
    'remove_from_client',
    'add_to_blocklist',
    'search_after_removal',
    'change_category_enabled',
)

PATTERN_FIELDS = (
    'error_patterns',
    'import_block_patterns',
    'auto_import_custom_patterns',
    'auto_import_never_patterns',
)

CHOICE_FIELDS = {
    'import_block_cleanup_level': CLEANUP_LEVELS,
    'import_block_pattern_mode': PATTERN_MODES,
}

BOOKKEEPING_FIELDS = ('last_run_at', 'last_run_items_cleaned', 'last_run_items_skipped')


@dataclass(frozen=True)
class CleanerConfig:
    instance_id: str
    enabled: bool = False
    interval_mins: int = 30
    dry_run_mode: bool = True

    stalled_enabled: bool = True
    stalled_threshold_mins: int = 60
    failed_enabled: bool = True
    slow_enabled: bool = False
    slow_speed_threshold: int = 100
    slow_grace_period_mins: int = 30
    error_patterns_enabled: bool = False
    error_patterns: Tuple[str, ...] = ()

    strike_system_enabled: bool = False
    max_strikes: int = 3
    strike_decay_hours: int = 24

    seeding_timeout_enabled: bool = False
    seeding_timeout_hours: int = 72
    estimated_completion_enabled: bool = False
    estimated_completion_multiplier: float = 2.0

    import_pending_enabled: bool = True
    import_pending_threshold_mins: int = 60
    import_block_cleanup_level: str = 'safe'
    import_block_pattern_mode: str = 'defaults'
    import_block_patterns: Tuple[str, ...] = ()

    auto_import_enabled: bool = False
    auto_import_max_attempts: int = 2
    auto_import_cooldown_mins: int = 30
    auto_import_safe_only: bool = True
    auto_import_custom_patterns: Tuple[str, ...] = ()
    auto_import_never_patterns: Tuple[str, ...] = ()

    whitelist_enabled: bool = False
    whitelist_patterns: Tuple[WhitelistPattern, ...] = ()

    remove_from_client: bool = True
    add_to_blocklist: bool = True
    search_after_removal: bool = True
    change_category_enabled: bool = False

    max_removals_per_run: int = 10
    min_queue_age_mins: int = 5

    last_run_at: Optional[float] = None
    last_run_items_cleaned: int = 0
    last_run_items_skipped: int = 0

    # field -> message for pattern lists that failed to parse at load time
    pattern_errors: Dict[str, str] = field(default_factory=dict, compare=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CleanerConfig':
        """Build a config from a stored record (snake or camel keys).

        Numeric values are clamped to their limits. A pattern list that cannot
        be parsed is left empty and recorded in ``pattern_errors``.
        """
        src = {to_snake(k): v for k, v in (data or {}).items()}
        instance_id = src.get('instance_id')
        if not instance_id:
            raise ConfigurationError('instanceId is required', {'instanceId': 'required'})
        values: Dict[str, Any] = {'instance_id': str(instance_id)}
        errors: Dict[str, str] = {}

        for name in BOOL_FIELDS:
            if name in src and src[name] is not None:
                values[name] = _coerce_bool(src[name])
        for name in LIMITS:
            if name in src and src[name] is not None:
                try:
                    values[name] = clamp(name, src[name])
                except ConfigurationError:
                    pass
        for name, choices in CHOICE_FIELDS.items():
            val = str(src.get(name) or '').lower()
            if val in choices:
                values[name] = val
        for name in PATTERN_FIELDS:
            if name in src and src[name] is not None:
                try:
                    values[name] = parse_pattern_list(src[name], name)
                except ConfigurationError as e:
                    errors[name] = e.message
        if src.get('whitelist_patterns') is not None:
            try:
                values['whitelist_patterns'] = parse_whitelist(src['whitelist_patterns'])
            except ConfigurationError as e:
                errors['whitelist_patterns'] = e.message
        if src.get('last_run_at') is not None:
            try:
                values['last_run_at'] = float(src['last_run_at'])
            except (TypeError, ValueError):
                pass
        for name in ('last_run_items_cleaned', 'last_run_items_skipped'):
            try:
                values[name] = int(src.get(name) or 0)
            except (TypeError, ValueError):
                values[name] = 0
        return cls(pattern_errors=errors, **values)

    def to_record(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for f in fields(self):
            if f.name == 'pattern_errors':
                continue
            val = getattr(self, f.name)
            if f.name == 'whitelist_patterns':
                val = [p.to_dict() for p in val]
            elif f.name in PATTERN_FIELDS:
                val = list(val)
            out[f.name] = val
        return out

    def to_dict(self) -> Dict[str, Any]:
        out = {to_camel(k): v for k, v in self.to_record().items()}
        if self.pattern_errors:
            out['patternErrors'] = {to_camel(k): v for k, v in self.pattern_errors.items()}
        return out


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, str):
        return env_flag(value)
    return bool(value)


def clamp(name: str, value: Any) -> Any:
    lo, hi, _ = LIMITS[name]
    try:
        num = float(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f'{name} must be a number', {to_camel(name): 'must be a number'}) from e
    num = max(lo, min(hi, num))
    return int(round(num)) if name in INTEGER_FIELDS else num


def _decode_list(value: Any, name: str) -> List[Any]:
    if isinstance(value, str):
        if len(value) > MAX_PATTERN_JSON_LENGTH:
            raise ConfigurationError(f'{name} is too long', {to_camel(name): f'at most {MAX_PATTERN_JSON_LENGTH} characters'})
        if not value.strip():
            return []
        try:
            value = json.loads(value)
        except ValueError as e:
            raise ConfigurationError(f'{name} is not valid JSON', {to_camel(name): 'invalid JSON'}) from e
    if not isinstance(value, (list, tuple)):
        raise ConfigurationError(f'{name} must be a list', {to_camel(name): 'must be a list'})
    if len(value) > MAX_PATTERNS:
        raise ConfigurationError(f'{name} has too many entries', {to_camel(name): f'at most {MAX_PATTERNS} patterns'})
    return list(value)


def parse_pattern_list(value: Any, name: str = 'patterns') -> Tuple[str, ...]:
    out: List[str] = []
    for entry in _decode_list(value, name):
        if not isinstance(entry, str):
            raise ConfigurationError(f'{name} entries must be strings', {to_camel(name): 'entries must be strings'})
        if len(entry) > MAX_PATTERN_LENGTH:
            raise ConfigurationError(f'{name} entry is too long', {to_camel(name): f'at most {MAX_PATTERN_LENGTH} characters per pattern'})
        out.append(entry)
    return tuple(out)


def parse_whitelist(value: Any) -> Tuple[WhitelistPattern, ...]:
    out: List[WhitelistPattern] = []
    for entry in _decode_list(value, 'whitelist_patterns'):
        if not isinstance(entry, dict):
            raise ConfigurationError('whitelist entries must be objects', {'whitelistPatterns': 'entries must be {type, pattern}'})
        typ = str(entry.get('type') or '').lower()
        text = entry.get('pattern', entry.get('text'))
        if typ not in WHITELIST_TYPES:
            raise ConfigurationError(f'unknown whitelist type {typ!r}', {'whitelistPatterns': f'type must be one of {", ".join(WHITELIST_TYPES)}'})
        if not isinstance(text, str) or not text.strip():
            raise ConfigurationError('whitelist pattern is empty', {'whitelistPatterns': 'pattern must be a non-empty string'})
        if len(text) > MAX_PATTERN_LENGTH:
            raise ConfigurationError('whitelist pattern is too long', {'whitelistPatterns': f'at most {MAX_PATTERN_LENGTH} characters per pattern'})
        out.append(WhitelistPattern(typ, text))
    return tuple(out)


def validate_config_update(patch: Dict[str, Any]) -> Dict[str, Any]:
    """Validate a partial update from the API; raise ConfigurationError with every bad field."""
    if not isinstance(patch, dict):
        raise ConfigurationError('Config update must be an object')
    known = {f.name for f in fields(CleanerConfig)} - {'pattern_errors', 'instance_id'} - set(BOOKKEEPING_FIELDS)
    errors: Dict[str, str] = {}
    out: Dict[str, Any] = {}
    for raw_key, value in patch.items():
        name = to_snake(raw_key)
        if name in ('instance_id', 'id'):
            continue
        if name not in known:
            errors[raw_key] = 'unknown field'
            continue
        if name in BOOL_FIELDS:
            if not isinstance(value, bool):
                errors[raw_key] = 'must be a boolean'
            else:
                out[name] = value
        elif name in LIMITS:
            lo, hi, _ = LIMITS[name]
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                errors[raw_key] = 'must be a number'
            elif value < lo or value > hi:
                errors[raw_key] = f'must be between {lo:g} and {hi:g}'
            elif name in INTEGER_FIELDS and value != int(value):
                errors[raw_key] = 'must be a whole number'
            else:
                out[name] = int(value) if name in INTEGER_FIELDS else float(value)
        elif name in CHOICE_FIELDS:
            if value not in CHOICE_FIELDS[name]:
                errors[raw_key] = f'must be one of {", ".join(CHOICE_FIELDS[name])}'
            else:
                out[name] = value
        elif name in PATTERN_FIELDS:
            try:
                out[name] = parse_pattern_list(value, name)
            except ConfigurationError as e:
                errors[raw_key] = next(iter(e.details.values()), e.message)
        elif name == 'whitelist_patterns':
            try:
                out[name] = parse_whitelist(value)
            except ConfigurationError as e:
                errors[raw_key] = next(iter(e.details.values()), e.message)
    if errors:
        raise ConfigurationError('Invalid configuration', errors)
    return out


def apply_config_update(config: CleanerConfig, patch: Dict[str, Any]) -> CleanerConfig:
    values = validate_config_update(patch)
    errors = {k: v for k, v in config.pattern_errors.items() if k not in values}
    return replace(config, pattern_errors=errors, **values)
