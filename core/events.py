from __future__ import annotations

import json
from typing import Any, Dict, Optional

from core.constants import ACTION_SKIP, ACTION_WHITELIST
from core.models import Decision


def decision_fields(decision: Decision) -> Dict[str, Any]:
    fields: Dict[str, Any] = {
        'id': decision.item_id,
        'title': decision.title,
        'rule': decision.rule,
        'action': decision.action,
        'reason': decision.reason,
    }
    if decision.strike_count is not None:
        fields['strikes'] = f'{decision.strike_count}/{decision.max_strikes}'
    return fields


class EventBus:
    """Decision event sink.

    Writes one line per event to the dedicated events logger: a JSON object when
    structured logs are on, ``event [instance] key=value ...`` otherwise. The
    decisions for skipped and whitelisted items are only written with debug
    logging.
    """

    def __init__(
        self,
        *,
        structured_logs: bool,
        debug_logging: bool,
        logger,
    ) -> None:
        self.structured_logs = structured_logs
        self.debug_logging = debug_logging
        self.logger = logger

    def log(self, event: str, **fields) -> None:
        if self.structured_logs:
            self.logger.info(json.dumps({'event': event, **fields}, ensure_ascii=False, default=str))
            return
        instance = fields.pop('instance', None)
        head = f'{event} [{instance}]' if instance else event
        body = ' '.join(f'{k}={v!r}' for k, v in fields.items())
        self.logger.info(f'{head} {body}'.rstrip())

    def emit(
        self,
        event: str,
        *,
        instance_id: Optional[str] = None,
        decision: Optional[Decision] = None,
        **fields: Any,
    ) -> None:
        if decision is not None:
            if event == 'decision' and decision.action in (ACTION_SKIP, ACTION_WHITELIST) and not self.debug_logging:
                return
            fields = {**decision_fields(decision), **fields}
        if instance_id is not None:
            fields.setdefault('instance', instance_id)
        self.log(event, **fields)
