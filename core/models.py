from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from core.errors import DataQualityError


def parse_timestamp(value: Any) -> Optional[float]:
    """Parse an arr ISO-8601 timestamp (``2024-01-01T00:00:00Z``) to epoch seconds."""
    if value is None or value == '':
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        raise DataQualityError(f'Unparseable timestamp: {value!r}')
    text = value.strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    try:
        dt = datetime.fromisoformat(text)
    except ValueError as e:
        raise DataQualityError(f'Unparseable timestamp: {value!r}') from e
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def format_timestamp(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat().replace('+00:00', 'Z')


def _as_int(record: Dict[str, Any], key: str, default: int = 0) -> int:
    val = record.get(key)
    if val is None:
        return default
    if isinstance(val, bool):
        raise DataQualityError(f'Field {key} is not numeric: {val!r}')
    try:
        return int(val)
    except (TypeError, ValueError) as e:
        raise DataQualityError(f'Field {key} is not numeric: {val!r}') from e


def _as_text(value: Any) -> str:
    return value if isinstance(value, str) else ''


def collect_status_messages(record: Dict[str, Any]) -> Tuple[str, ...]:
    msgs = record.get('statusMessages')
    if msgs is None:
        return ()
    if not isinstance(msgs, list):
        raise DataQualityError('statusMessages is not a list')
    out: List[str] = []
    for msg in msgs:
        if isinstance(msg, str):
            if msg.strip():
                out.append(msg)
            continue
        if not isinstance(msg, dict):
            raise DataQualityError(f'Malformed status message: {msg!r}')
        title = msg.get('title')
        if isinstance(title, str) and title.strip():
            out.append(title)
        inner = msg.get('messages') or []
        if isinstance(inner, str):
            inner = [inner]
        for text in inner:
            if isinstance(text, str) and text.strip():
                out.append(text)
    return tuple(out)


@dataclass(frozen=True)
class QueueItem:
    id: int
    download_id: str
    title: str
    status: str = ''
    tracked_status: str = ''
    tracked_state: str = ''
    status_messages: Tuple[str, ...] = ()
    queue_age_minutes: Optional[float] = None
    progress_percent: Optional[float] = None
    size: int = 0
    sizeleft: int = 0
    indexer: str = ''
    protocol: str = ''
    download_client: str = ''
    # average KB/s since the item was added
    speed: Optional[float] = None
    # expected total duration (added -> estimatedCompletionTime), minutes
    eta_minutes: Optional[float] = None
    error_message: str = ''
    category: str = ''
    tags: Tuple[str, ...] = ()

    @property
    def key(self) -> str:
        return self.download_id or str(self.id)

    @classmethod
    def from_record(cls, record: Dict[str, Any], now: float) -> 'QueueItem':
        if not isinstance(record, dict):
            raise DataQualityError(f'Queue record is not an object: {record!r}')
        if 'id' not in record:
            raise DataQualityError('Queue record has no id')
        item_id = _as_int(record, 'id')
        size = _as_int(record, 'size')
        sizeleft = _as_int(record, 'sizeleft', _as_int(record, 'sizeLeft'))
        added = parse_timestamp(record.get('added'))
        eta_ts = parse_timestamp(record.get('estimatedCompletionTime'))

        age_minutes = None
        speed = None
        eta_minutes = None
        if added is not None:
            elapsed = now - added
            age_minutes = elapsed / 60.0
            if elapsed > 0 and size > 0 and sizeleft > 0:
                speed = (size - sizeleft) / 1024.0 / elapsed
            if eta_ts is not None and eta_ts > added:
                eta_minutes = (eta_ts - added) / 60.0

        progress = None
        if size > 0:
            progress = max(0.0, min(100.0, (size - sizeleft) / size * 100.0))

        tags = record.get('tags') or []
        if not isinstance(tags, list):
            tags = [tags]

        return cls(
            id=item_id,
            download_id=_as_text(record.get('downloadId')),
            title=_as_text(record.get('title')) or 'Unknown',
            status=_as_text(record.get('status')).lower(),
            tracked_status=_as_text(record.get('trackedDownloadStatus')).lower(),
            tracked_state=_as_text(record.get('trackedDownloadState')).lower(),
            status_messages=collect_status_messages(record),
            queue_age_minutes=age_minutes,
            progress_percent=progress,
            size=size,
            sizeleft=sizeleft,
            indexer=_as_text(record.get('indexer')),
            protocol=_as_text(record.get('protocol')).lower(),
            download_client=_as_text(record.get('downloadClient')),
            speed=speed,
            eta_minutes=eta_minutes,
            error_message=_as_text(record.get('errorMessage')),
            category=_as_text(record.get('category')),
            tags=tuple(str(t) for t in tags),
        )


@dataclass
class StrikeRecord:
    count: int = 0
    first_strike_at: Optional[float] = None
    last_strike_at: Optional[float] = None
    last_rule: Optional[str] = None
    last_reason: Optional[str] = None
    title: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> 'StrikeRecord':
        if isinstance(data, int):
            return cls(count=data)
        if not isinstance(data, dict):
            return cls()
        return cls(
            count=int(data.get('count') or 0),
            first_strike_at=data.get('first_strike_at'),
            last_strike_at=data.get('last_strike_at'),
            last_rule=data.get('last_rule'),
            last_reason=data.get('last_reason'),
            title=data.get('title'),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'count': self.count,
            'first_strike_at': self.first_strike_at,
            'last_strike_at': self.last_strike_at,
            'last_rule': self.last_rule,
            'last_reason': self.last_reason,
            'title': self.title,
        }


@dataclass
class ImportAttemptRecord:
    attempts: int = 0
    last_attempt_at: Optional[float] = None
    last_error: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> 'ImportAttemptRecord':
        if not isinstance(data, dict):
            return cls()
        return cls(
            attempts=int(data.get('attempts') or 0),
            last_attempt_at=data.get('last_attempt_at'),
            last_error=data.get('last_error'),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'attempts': self.attempts,
            'last_attempt_at': self.last_attempt_at,
            'last_error': self.last_error,
        }


@dataclass(frozen=True)
class Decision:
    item_id: int
    rule: str
    action: str
    reason: str
    detailed_reason: str = ''
    title: str = ''
    download_id: str = ''
    protocol: str = ''
    strike_count: Optional[int] = None
    max_strikes: Optional[int] = None
    import_reason: Optional[str] = None
    has_data_error: bool = False

    @property
    def key(self) -> str:
        return self.download_id or str(self.item_id)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            'id': self.item_id,
            'title': self.title,
            'downloadId': self.download_id or None,
            'rule': self.rule,
            'action': self.action,
            'reason': self.reason,
            'detailedReason': self.detailed_reason or self.reason,
        }
        if self.protocol:
            out['protocol'] = self.protocol
        if self.strike_count is not None:
            out['strikeCount'] = self.strike_count
            out['maxStrikes'] = self.max_strikes
        if self.import_reason:
            out['importReason'] = self.import_reason
        if self.has_data_error:
            out['hasDataError'] = True
        return out


@dataclass(frozen=True)
class ItemGroup:
    download_id: str
    items: Tuple[Decision, ...]
    worst_action: str
    dominant_rule: str
    label: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'downloadId': self.download_id,
            'title': self.label,
            'action': self.worst_action,
            'rule': self.dominant_rule,
            'count': len(self.items),
            'items': [d.to_dict() for d in self.items],
        }


@dataclass
class CleanerRunResult:
    instance_id: str
    dry_run: bool
    started_at: float
    completed_at: Optional[float] = None
    status: str = 'running'
    message: str = ''
    decisions: List[Decision] = field(default_factory=list)
    removed: List[Decision] = field(default_factory=list)
    imported: List[Decision] = field(default_factory=list)
    warned: List[Decision] = field(default_factory=list)
    skipped: List[Decision] = field(default_factory=list)
    whitelisted: List[Decision] = field(default_factory=list)
    deferred: List[Decision] = field(default_factory=list)
    failed: List[Dict[str, Any]] = field(default_factory=list)
    action_counts: Dict[str, int] = field(default_factory=dict)
    rule_counts: Dict[str, int] = field(default_factory=dict)
    has_data_error: bool = False
    cancelled: bool = False

    @property
    def items_cleaned(self) -> int:
        return len(self.removed) + len(self.imported)

    @property
    def items_skipped(self) -> int:
        return len(self.skipped) + len(self.whitelisted) + len(self.deferred)

    @property
    def items_warned(self) -> int:
        return len(self.warned)

    @property
    def duration_ms(self) -> Optional[int]:
        if self.completed_at is None:
            return None
        return int(round((self.completed_at - self.started_at) * 1000))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'instanceId': self.instance_id,
            'isDryRun': self.dry_run,
            'status': self.status,
            'message': self.message,
            'startedAt': format_timestamp(self.started_at),
            'completedAt': format_timestamp(self.completed_at),
            'durationMs': self.duration_ms,
            'itemsCleaned': self.items_cleaned,
            'itemsWarned': self.items_warned,
            'itemsSkipped': self.items_skipped,
            'cleanedItems': [d.to_dict() for d in self.removed + self.imported],
            'warnedItems': [d.to_dict() for d in self.warned],
            'skippedItems': [d.to_dict() for d in self.skipped + self.whitelisted],
            'deferredItems': [d.to_dict() for d in self.deferred],
            'failedItems': list(self.failed),
            'actionCounts': dict(self.action_counts),
            'ruleCounts': dict(self.rule_counts),
            'hasDataError': self.has_data_error,
        }


@dataclass
class CleanerLog:
    id: str
    instance_id: str
    status: str
    started_at: float
    completed_at: Optional[float] = None
    duration_ms: Optional[int] = None
    is_dry_run: bool = False
    items_cleaned: int = 0
    items_skipped: int = 0
    items_warned: int = 0
    message: Optional[str] = None
    # JSON-encoded item lists as stored
    cleaned_items: Optional[str] = None
    skipped_items: Optional[str] = None
    warned_items: Optional[str] = None
    has_data_error: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CleanerLog':
        return cls(
            id=str(data['id']),
            instance_id=str(data['instance_id']),
            status=str(data.get('status') or 'error'),
            started_at=float(data.get('started_at') or 0.0),
            completed_at=data.get('completed_at'),
            duration_ms=data.get('duration_ms'),
            is_dry_run=bool(data.get('is_dry_run')),
            items_cleaned=int(data.get('items_cleaned') or 0),
            items_skipped=int(data.get('items_skipped') or 0),
            items_warned=int(data.get('items_warned') or 0),
            message=data.get('message'),
            cleaned_items=data.get('cleaned_items'),
            skipped_items=data.get('skipped_items'),
            warned_items=data.get('warned_items'),
            has_data_error=bool(data.get('has_data_error')),
        )

    def to_record(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'instance_id': self.instance_id,
            'status': self.status,
            'started_at': self.started_at,
            'completed_at': self.completed_at,
            'duration_ms': self.duration_ms,
            'is_dry_run': self.is_dry_run,
            'items_cleaned': self.items_cleaned,
            'items_skipped': self.items_skipped,
            'items_warned': self.items_warned,
            'message': self.message,
            'cleaned_items': self.cleaned_items,
            'skipped_items': self.skipped_items,
            'warned_items': self.warned_items,
            'has_data_error': self.has_data_error,
        }

    def parsed_items(self, which: str) -> Tuple[List[Any], bool]:
        """Decode one stored item list. Returns ``(items, ok)``; undecodable detail yields ``([], False)``."""
        raw = getattr(self, f'{which}_items')
        if raw is None or raw == '':
            return [], True
        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            return [], False
        if not isinstance(data, list):
            return [], False
        return data, True

    def to_dict(self) -> Dict[str, Any]:
        cleaned, ok_c = self.parsed_items('cleaned')
        skipped, ok_s = self.parsed_items('skipped')
        warned, ok_w = self.parsed_items('warned')
        data_error = self.has_data_error or not (ok_c and ok_s and ok_w)
        out = {
            'id': self.id,
            'instanceId': self.instance_id,
            'status': self.status,
            'startedAt': format_timestamp(self.started_at),
            'completedAt': format_timestamp(self.completed_at),
            'durationMs': self.duration_ms,
            'isDryRun': self.is_dry_run,
            'itemsCleaned': self.items_cleaned,
            'itemsSkipped': self.items_skipped,
            'itemsWarned': self.items_warned,
            'message': self.message,
            'cleanedItems': cleaned,
            'skippedItems': skipped,
            'warnedItems': warned,
            'hasDataError': data_error,
        }
        if not (ok_c and ok_s and ok_w):
            out['dataQuality'] = {'warning': 'Some stored item details could not be parsed'}
        return out
