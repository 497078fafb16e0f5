import os
import asyncio
import logging
from typing import Any, Dict

import aiohttp
from aiohttp import web

from core.config import (
    ConfigAccessor,
    env_flag,
    get_env_var,
    load_yaml,
    sanitize_config,
    validate_config,
)

# Fetch debug flag from environment and set logging level
DEBUG_LOGGING = get_env_var('DEBUG_LOGGING', default='false', cast_to=env_flag)
logging_level = logging.DEBUG if DEBUG_LOGGING else logging.INFO

logging.basicConfig(
    format='%(asctime)s [%(levelname)s]: %(message)s',
    level=logging_level,
    handlers=[logging.StreamHandler()],
    force=True,
)


def _event_logger(level: int) -> logging.Logger:
    """Non-propagating logger with its own handler for decision events."""
    logger = logging.getLogger('media_cleaner.events')
    logger.setLevel(level)
    logger.propagate = False
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter('%(asctime)s [%(levelname)s]: %(message)s'))
    logger.handlers = [handler]
    return logger


EVENT_LOG = _event_logger(logging_level)

CONFIG_PATH = get_env_var('CONFIG_PATH', '/app/config.yaml')
DATA_DIR = get_env_var('DATA_DIR', '/app/data')
STATE_FILE_PATH = get_env_var('STATE_FILE_PATH', os.path.join(DATA_DIR, 'state.json'))

STRUCTURED_LOGS = get_env_var('STRUCTURED_LOGS', default='true', cast_to=env_flag)
SCHEDULER_ENABLED = get_env_var('SCHEDULER_ENABLED', default='true', cast_to=env_flag)
SCHEDULER_TICK_SECONDS = get_env_var('SCHEDULER_TICK_SECONDS', 60, cast_to=int)
MANUAL_COOLDOWN_MINS = get_env_var('MANUAL_COOLDOWN_MINS', 2, cast_to=float)
MAX_RUN_SECONDS = get_env_var('MAX_RUN_SECONDS', 300, cast_to=float)
HTTP_HOST = get_env_var('HTTP_HOST', '0.0.0.0')
HTTP_PORT = get_env_var('HTTP_PORT', 8080, cast_to=int)

# Request and retry configuration
REQUEST_TIMEOUT = get_env_var('REQUEST_TIMEOUT', 10, cast_to=int)
RETRY_ATTEMPTS = get_env_var('RETRY_ATTEMPTS', 2, cast_to=int)
RETRY_BACKOFF = get_env_var('RETRY_BACKOFF', 1.0, cast_to=float)  # base seconds
MIN_REQUEST_INTERVAL_MS = get_env_var('MIN_REQUEST_INTERVAL_MS', 0, cast_to=float)
MAX_CONCURRENT_REQUESTS = get_env_var('MAX_CONCURRENT_REQUESTS', 0, cast_to=int)

# YAML config loading
CONFIG: Dict[str, Any] = sanitize_config(load_yaml(CONFIG_PATH), DEBUG_LOGGING)
validate_config(CONFIG, DEBUG_LOGGING)
_AC = ConfigAccessor(CONFIG)


# Prefer YAML general for app-level settings; fallback to env-loaded defaults
def _get_general(key: str, default: Any) -> Any:
    val = _AC.general(key, None)
    return default if val is None else val


DEBUG_LOGGING = bool(_get_general('debug_logging', DEBUG_LOGGING))
STRUCTURED_LOGS = bool(_get_general('structured_logs', STRUCTURED_LOGS))
DATA_DIR = str(_get_general('data_dir', DATA_DIR))
STATE_FILE_PATH = str(_get_general('state_file_path', STATE_FILE_PATH))
SCHEDULER_ENABLED = bool(_get_general('scheduler_enabled', SCHEDULER_ENABLED))
SCHEDULER_TICK_SECONDS = int(_get_general('scheduler_tick_seconds', SCHEDULER_TICK_SECONDS))
MANUAL_COOLDOWN_MINS = float(_get_general('manual_cooldown_mins', MANUAL_COOLDOWN_MINS))
MAX_RUN_SECONDS = float(_get_general('max_run_seconds', MAX_RUN_SECONDS))
HTTP_HOST = str(_get_general('http_host', HTTP_HOST))
HTTP_PORT = int(_get_general('http_port', HTTP_PORT))
REQUEST_TIMEOUT = int(_get_general('request_timeout', REQUEST_TIMEOUT))
RETRY_ATTEMPTS = int(_get_general('retry_attempts', RETRY_ATTEMPTS))
RETRY_BACKOFF = float(_get_general('retry_backoff', RETRY_BACKOFF))
MIN_REQUEST_INTERVAL_MS = float(_get_general('min_request_interval_ms', MIN_REQUEST_INTERVAL_MS))
MAX_CONCURRENT_REQUESTS = int(_get_general('max_concurrent_requests', MAX_CONCURRENT_REQUESTS))

from api.routes import build_app
from core.events import EventBus
from core.scheduler import QueueCleanerScheduler
from integrations.arr import ArrClient
from integrations.services import RequestManager, is_instance_configured
from storage.repository import ConfigRepository, LogRepository
from storage.state import StateStore

EVENT_BUS = EventBus(structured_logs=STRUCTURED_LOGS, debug_logging=DEBUG_LOGGING, logger=EVENT_LOG)


def configured_instances() -> Dict[str, Dict[str, Any]]:
    out: Dict[str, Dict[str, Any]] = {}
    for inst in _AC.instances():
        if inst['id'] in out:
            continue
        if not is_instance_configured(inst):
            if DEBUG_LOGGING:
                logging.info(f"Instance {inst['id']}: configuration incomplete; skipping")
            continue
        out[inst['id']] = inst
    return out


async def main():
    instances = configured_instances()
    store = StateStore(STATE_FILE_PATH, DEBUG_LOGGING)
    configs = ConfigRepository(os.path.join(DATA_DIR, 'configs.json'), DEBUG_LOGGING)
    logs = LogRepository(os.path.join(DATA_DIR, 'logs.json'), debug_logging=DEBUG_LOGGING)
    requests = RequestManager(
        min_interval_ms=MIN_REQUEST_INTERVAL_MS,
        max_concurrent=MAX_CONCURRENT_REQUESTS,
        request_timeout=REQUEST_TIMEOUT,
        retry_attempts=RETRY_ATTEMPTS,
        retry_backoff=RETRY_BACKOFF,
        debug_logging=DEBUG_LOGGING,
    )
    async with aiohttp.ClientSession() as session:
        logging.info(f'Running arr-queue-cleaner with {len(instances)} instance(s)')
        scheduler = QueueCleanerScheduler(
            configs=configs,
            logs=logs,
            store=store,
            instances=lambda: instances,
            client_factory=lambda inst: ArrClient(session, inst, requests, DEBUG_LOGGING),
            event_bus=EVENT_BUS,
            tick_seconds=SCHEDULER_TICK_SECONDS,
            manual_cooldown_mins=MANUAL_COOLDOWN_MINS,
            max_run_seconds=MAX_RUN_SECONDS,
            excluded=_AC.excluded_instances(),
            running=SCHEDULER_ENABLED,
            debug_logging=DEBUG_LOGGING,
        )
        app = build_app(scheduler, configs, logs, store, lambda: instances)
        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, HTTP_HOST, HTTP_PORT)
        await site.start()
        logging.info(f'Control plane listening on http://{HTTP_HOST}:{HTTP_PORT}')
        await scheduler.start()
        try:
            await asyncio.Event().wait()
        finally:
            await scheduler.stop()
            await runner.cleanup()


if __name__ == '__main__':
    asyncio.run(main())
