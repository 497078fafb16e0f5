from __future__ import annotations

from typing import Iterable, Optional, Tuple

from core.models import StrikeRecord


def is_decayed(record: Optional[StrikeRecord], now: float, decay_hours: float) -> bool:
    if record is None or record.count <= 0:
        return True
    if record.last_strike_at is None:
        return False
    return (now - record.last_strike_at) > decay_hours * 3600.0


def current_count(record: Optional[StrikeRecord], now: float, decay_hours: float) -> int:
    """Strike count after lazy decay; no background sweep is needed."""
    if is_decayed(record, now, decay_hours):
        return 0
    return record.count


def next_strike_count(record: Optional[StrikeRecord], now: float, decay_hours: float) -> int:
    return current_count(record, now, decay_hours) + 1


class StrikeTracker:
    def __init__(self, store, instance_id: str, decay_hours: float) -> None:
        self.store = store
        self.instance_id = instance_id
        self.decay_hours = decay_hours

    def record(self, item_key: str) -> Optional[StrikeRecord]:
        return self.store.get_strike(self.instance_id, item_key)

    def current_strikes(self, item_key: str, now: float) -> int:
        rec = self.record(item_key)
        if rec is not None and is_decayed(rec, now, self.decay_hours):
            self.store.delete_strike(self.instance_id, item_key)
            return 0
        return current_count(rec, now, self.decay_hours)

    def record_strike(
        self,
        item_key: str,
        now: float,
        *,
        rule: Optional[str] = None,
        reason: Optional[str] = None,
        title: Optional[str] = None,
    ) -> Tuple[int, Optional[float]]:
        """Add a strike. Returns ``(count, hours since the previous strike)``.

        A gap longer than the decay window restarts the count at 1.
        """
        rec = self.record(item_key)
        since = None
        if rec is not None and rec.last_strike_at is not None:
            since = (now - rec.last_strike_at) / 3600.0
        if is_decayed(rec, now, self.decay_hours):
            rec = StrikeRecord(count=0, first_strike_at=now)
        rec.count += 1
        rec.last_strike_at = now
        if rec.first_strike_at is None:
            rec.first_strike_at = now
        rec.last_rule = rule
        rec.last_reason = reason
        rec.title = title or rec.title
        self.store.put_strike(self.instance_id, item_key, rec)
        return rec.count, since

    def clear(self, item_key: str) -> bool:
        return self.store.delete_strike(self.instance_id, item_key)

    def prune(self, active_keys: Iterable[str], now: float) -> int:
        """Drop records for items no longer queued and records that have decayed."""
        active = set(active_keys)
        removed = 0
        for key, rec in self.store.strikes_for(self.instance_id).items():
            if key not in active or is_decayed(rec, now, self.decay_hours):
                self.store.delete_strike(self.instance_id, key)
                removed += 1
        return removed
