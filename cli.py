import argparse
import json
import os
import sys
import time
from typing import Any

from core.config import CleanerConfig, load_yaml
from core.errors import CleanerError
from core.models import QueueItem
from core.rules import evaluate_item
from storage.state import StateStore, make_state_key


def _env(key: str, default: Any) -> Any:
    return os.environ.get(key, default)


def _state_path() -> str:
    return _env('STATE_FILE_PATH', os.path.join(_env('DATA_DIR', '/app/data'), 'state.json'))


def cmd_list(args):
    store = StateStore(_state_path())
    instance = getattr(args, 'instance', None)
    if instance:
        data = {
            'strikes': {k: v.to_dict() for k, v in store.strikes_for(instance).items()},
            'imports': {k: v.to_dict() for k, v in store.attempts_for(instance).items()},
        }
    else:
        data = store.data
    print(json.dumps(data, indent=2))


def cmd_clear(args):
    store = StateStore(_state_path())
    instance = getattr(args, 'instance', None)
    key = getattr(args, 'key', None)
    if key:
        if not instance:
            print("--key requires --instance")
            sys.exit(2)
        found = store.delete_strike(instance, key)
        found = store.delete_attempt(instance, key) or found
        store.save()
        print(f"Cleared {make_state_key(instance, key)}" if found else "Key not found")
    elif instance:
        n = store.clear_instance(instance)
        store.save()
        print(f"Cleared {n} record(s) for {instance}")
    else:
        store.data = {'strikes': {}, 'imports': {}}
        store.save()
        print("Cleared all strike and import records")


def cmd_simulate(args):
    with open(args.item_json, 'r') as f:
        record = json.load(f)
    raw_cfg = load_yaml(args.config) if getattr(args, 'config', None) else {}
    instance = getattr(args, 'instance', None) or raw_cfg.get('instanceId') or raw_cfg.get('instance_id') or 'simulate'
    now = time.time()
    try:
        config = CleanerConfig.from_dict({**raw_cfg, 'instance_id': instance})
        item = QueueItem.from_record(record, now)
    except CleanerError as e:
        print(json.dumps({'error': e.message, 'details': e.details}, indent=2))
        sys.exit(1)
    store = StateStore(_state_path())
    strike = store.get_strike(instance, item.key)
    attempt = store.get_attempt(instance, item.key)
    decision = evaluate_item(item, config, now, strike, attempt)
    print(json.dumps(decision.to_dict(), indent=2))


def cmd_status(args):
    store = StateStore(_state_path())
    per_instance = {}
    for bucket, field in (('strikes', 'strikes'), ('imports', 'import_attempts')):
        for key, rec in store.data[bucket].items():
            instance = str(key).partition(':')[0]
            row = per_instance.setdefault(instance, {'strikes': 0, 'active_strikes': 0, 'import_attempts': 0})
            row[field] += 1
            if bucket == 'strikes' and isinstance(rec, dict) and int(rec.get('count') or 0) > 0:
                row['active_strikes'] += 1
    try:
        tick = int(_env('SCHEDULER_TICK_SECONDS', 60))
    except ValueError:
        tick = 60
    print(
        json.dumps(
            {
                "state_file": _state_path(),
                "strike_records": len(store.data['strikes']),
                "import_records": len(store.data['imports']),
                "instances": per_instance,
                "scheduler_tick_seconds": tick,
            },
            indent=2,
        )
    )


def main():
    ap = argparse.ArgumentParser(description="Arr Queue Cleaner CLI")
    sub = ap.add_subparsers(dest='cmd')

    p_list = sub.add_parser('list', help='List strike and import-attempt records')
    p_list.add_argument('--instance', help='Only records for this instance id')
    p_list.set_defaults(func=cmd_list)

    p_clear = sub.add_parser('clear', help='Clear records (all, one instance, or one item key)')
    p_clear.add_argument('--instance', help='Instance id to clear')
    p_clear.add_argument('--key', help='Item key (download id or queue id) within --instance')
    p_clear.set_defaults(func=cmd_clear)

    p_sim = sub.add_parser('simulate', help='Decide a single queue record JSON')
    p_sim.add_argument('item_json', help='Path to queue record JSON file')
    p_sim.add_argument('--config', help='Path to a cleaner config (YAML or JSON)')
    p_sim.add_argument('--instance', help='Instance id whose strike records to use')
    p_sim.set_defaults(func=cmd_simulate)

    p_status = sub.add_parser('status', help='Summarize stored records')
    p_status.set_defaults(func=cmd_status)

    args = ap.parse_args()
    if not hasattr(args, 'func'):
        ap.print_help()
        sys.exit(1)
    args.func(args)


if __name__ == '__main__':
    main()
