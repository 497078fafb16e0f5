from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from core.config import CleanerConfig
from core.models import Decision, QueueItem


@dataclass
class ActionsDeps:
    instance_id: str
    client: Any  # expects async .remove(item, config) and .manual_import(item)
    event_bus: Any  # expects .emit(event, instance_id=..., decision=..., **fields)
    debug_logging: bool
    dry_run: bool


async def remove_item(item: QueueItem, decision: Decision, config: CleanerConfig, deps: ActionsDeps) -> None:
    """Remove a queue item with the instance's removal options; raises DispatchError on failure."""
    if deps.dry_run:
        deps.event_bus.emit('dry_remove', instance_id=deps.instance_id, decision=decision)
        return

    await deps.client.remove(item, config)
    if deps.debug_logging:
        logging.info(
            f"Instance {deps.instance_id}: removed id={item.id} title={item.title} "
            f"blocklist={config.add_to_blocklist} search={config.search_after_removal}"
        )
    deps.event_bus.emit(
        'remove',
        instance_id=deps.instance_id,
        decision=decision,
        blocklist=config.add_to_blocklist,
        remove_from_client=config.remove_from_client,
    )


async def import_item(item: QueueItem, decision: Decision, deps: ActionsDeps) -> int:
    if deps.dry_run:
        deps.event_bus.emit('dry_import', instance_id=deps.instance_id, decision=decision)
        return 0

    files = await deps.client.manual_import(item)
    if deps.debug_logging:
        logging.info(f"Instance {deps.instance_id}: imported id={item.id} title={item.title} files={files}")
    deps.event_bus.emit('import', instance_id=deps.instance_id, decision=decision, files=files)
    return files
