from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, Optional

from core.models import ImportAttemptRecord, StrikeRecord


def load_state(path: str, debug_logging: bool = False) -> Dict[str, Dict[str, Any]]:
    try:
        with open(path, 'r') as file:
            data = json.load(file)
    except (FileNotFoundError, json.JSONDecodeError):
        if debug_logging:
            logging.warning("State file not found or is invalid. Starting with empty strike and import records.")
        return {'strikes': {}, 'imports': {}}
    if not isinstance(data, dict):
        return {'strikes': {}, 'imports': {}}
    strikes = data.get('strikes') if isinstance(data.get('strikes'), dict) else {}
    imports = data.get('imports') if isinstance(data.get('imports'), dict) else {}
    return {'strikes': strikes, 'imports': imports}


def save_state(data: Dict[str, Any], path: str) -> None:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    tmp_path = path + '.tmp'
    with open(tmp_path, 'w') as file:
        json.dump(data, file, indent=4)
    os.replace(tmp_path, path)


def make_state_key(instance_id: str, item_key: Any) -> str:
    return f"{instance_id}:{item_key}"


def split_state_key(key: str):
    instance_id, _, item_key = str(key).partition(':')
    return instance_id, item_key


class StateStore:
    """Durable strike and import-attempt records, partitioned by instance id."""

    def __init__(self, path: Optional[str], debug_logging: bool = False) -> None:
        self.path = path
        self.debug_logging = debug_logging
        if path:
            self.data = load_state(path, debug_logging)
        else:
            self.data = {'strikes': {}, 'imports': {}}

    def save(self) -> None:
        if self.path:
            save_state(self.data, self.path)

    # strikes
    def get_strike(self, instance_id: str, item_key: str) -> Optional[StrikeRecord]:
        raw = self.data['strikes'].get(make_state_key(instance_id, item_key))
        return StrikeRecord.from_dict(raw) if raw is not None else None

    def put_strike(self, instance_id: str, item_key: str, record: StrikeRecord) -> None:
        self.data['strikes'][make_state_key(instance_id, item_key)] = record.to_dict()

    def delete_strike(self, instance_id: str, item_key: str) -> bool:
        return self.data['strikes'].pop(make_state_key(instance_id, item_key), None) is not None

    def strikes_for(self, instance_id: str) -> Dict[str, StrikeRecord]:
        out: Dict[str, StrikeRecord] = {}
        for key, raw in self.data['strikes'].items():
            iid, item_key = split_state_key(key)
            if iid == instance_id:
                out[item_key] = StrikeRecord.from_dict(raw)
        return out

    # import attempts
    def get_attempt(self, instance_id: str, item_key: str) -> Optional[ImportAttemptRecord]:
        raw = self.data['imports'].get(make_state_key(instance_id, item_key))
        return ImportAttemptRecord.from_dict(raw) if raw is not None else None

    def put_attempt(self, instance_id: str, item_key: str, record: ImportAttemptRecord) -> None:
        self.data['imports'][make_state_key(instance_id, item_key)] = record.to_dict()

    def delete_attempt(self, instance_id: str, item_key: str) -> bool:
        return self.data['imports'].pop(make_state_key(instance_id, item_key), None) is not None

    def attempts_for(self, instance_id: str) -> Dict[str, ImportAttemptRecord]:
        out: Dict[str, ImportAttemptRecord] = {}
        for key, raw in self.data['imports'].items():
            iid, item_key = split_state_key(key)
            if iid == instance_id:
                out[item_key] = ImportAttemptRecord.from_dict(raw)
        return out

    def clear_instance(self, instance_id: str) -> int:
        removed = 0
        for bucket in ('strikes', 'imports'):
            for key in [k for k in self.data[bucket] if split_state_key(k)[0] == instance_id]:
                self.data[bucket].pop(key, None)
                removed += 1
        return removed
