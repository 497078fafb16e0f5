from __future__ import annotations

import json
import logging
import os
import uuid
from typing import Any, Dict, List, Optional, Tuple

from core.config import CleanerConfig
from core.models import CleanerLog


def _load_json(path: str, default: Any, debug_logging: bool = False) -> Any:
    try:
        with open(path, 'r') as file:
            return json.load(file)
    except (FileNotFoundError, json.JSONDecodeError):
        if debug_logging:
            logging.warning(f"{path} not found or is invalid. Starting empty.")
        return default


def _save_json(data: Any, path: str) -> None:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    tmp_path = path + '.tmp'
    with open(tmp_path, 'w') as file:
        json.dump(data, file, indent=4)
    os.replace(tmp_path, path)


class ConfigRepository:
    """Cleaner configs keyed by instance id, persisted as one JSON object."""

    def __init__(self, path: Optional[str], debug_logging: bool = False) -> None:
        self.path = path
        raw = _load_json(path, {}, debug_logging) if path else {}
        self._records: Dict[str, Dict[str, Any]] = raw if isinstance(raw, dict) else {}

    def _save(self) -> None:
        if self.path:
            _save_json(self._records, self.path)

    def get(self, instance_id: str) -> Optional[CleanerConfig]:
        rec = self._records.get(instance_id)
        if rec is None:
            return None
        return CleanerConfig.from_dict({**rec, 'instance_id': instance_id})

    def all(self) -> List[CleanerConfig]:
        return [c for c in (self.get(iid) for iid in self._records) if c is not None]

    def exists(self, instance_id: str) -> bool:
        return instance_id in self._records

    def put(self, config: CleanerConfig) -> None:
        self._records[config.instance_id] = config.to_record()
        self._save()

    def delete(self, instance_id: str) -> bool:
        if self._records.pop(instance_id, None) is None:
            return False
        self._save()
        return True


class LogRepository:
    def __init__(self, path: Optional[str], max_entries: int = 1000, debug_logging: bool = False) -> None:
        self.path = path
        self.max_entries = max_entries
        raw = _load_json(path, [], debug_logging) if path else []
        self._logs: List[CleanerLog] = []
        for rec in raw if isinstance(raw, list) else []:
            try:
                self._logs.append(CleanerLog.from_dict(rec))
            except (KeyError, TypeError, ValueError) as e:
                logging.warning(f'Dropping unreadable cleaner log record: {e}')

    def _save(self) -> None:
        if len(self._logs) > self.max_entries:
            self._logs = sorted(self._logs, key=lambda lg: lg.started_at)[-self.max_entries:]
        if self.path:
            _save_json([lg.to_record() for lg in self._logs], self.path)

    @staticmethod
    def new_id() -> str:
        return uuid.uuid4().hex

    def upsert(self, log: CleanerLog) -> None:
        for idx, existing in enumerate(self._logs):
            if existing.id == log.id:
                self._logs[idx] = log
                break
        else:
            self._logs.append(log)
        self._save()

    def all(self) -> List[CleanerLog]:
        return list(self._logs)

    def by_status(self, status: str) -> List[CleanerLog]:
        return [lg for lg in self._logs if lg.status == status]

    def query(
        self,
        *,
        status: Optional[str] = None,
        instance_id: Optional[str] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Tuple[List[CleanerLog], int]:
        """Newest first. Returns ``(page_of_logs, total_matching)``."""
        rows = [
            lg for lg in self._logs
            if (status is None or lg.status == status) and (instance_id is None or lg.instance_id == instance_id)
        ]
        rows.sort(key=lambda lg: lg.started_at, reverse=True)
        start = (max(1, page) - 1) * page_size
        return rows[start:start + page_size], len(rows)

    def delete_instance(self, instance_id: str) -> int:
        before = len(self._logs)
        self._logs = [lg for lg in self._logs if lg.instance_id != instance_id]
        removed = before - len(self._logs)
        if removed:
            self._save()
        return removed
