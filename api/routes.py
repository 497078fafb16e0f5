from __future__ import annotations

import logging
from typing import Any, Callable, Dict

from aiohttp import web

from core.config import CleanerConfig, apply_config_update
from core.constants import STATUS_COMPLETED, STATUS_ERROR, STATUS_PARTIAL, STATUS_RUNNING, STATUS_SKIPPED
from core.errors import CleanerError, ConfigurationError, ConflictError, CooldownError, NotFoundError
from core.scheduler import QueueCleanerScheduler
from core.statistics import compute_statistics

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100
LOG_STATUSES = (STATUS_RUNNING, STATUS_COMPLETED, STATUS_PARTIAL, STATUS_SKIPPED, STATUS_ERROR)

SCHEDULER = web.AppKey('scheduler', QueueCleanerScheduler)
CONFIGS = web.AppKey('configs', object)
LOGS = web.AppKey('logs', object)
STORE = web.AppKey('store', object)
INSTANCES = web.AppKey('instances', object)


@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except CooldownError as e:
        return web.json_response(e.to_dict(), status=e.status, headers={'Retry-After': str(e.wait_seconds)})
    except CleanerError as e:
        return web.json_response(e.to_dict(), status=e.status)
    except web.HTTPException:
        raise
    except Exception:
        logging.exception(f'Unhandled error for {request.method} {request.path}')
        return web.json_response({'error': 'Internal server error'}, status=500)


async def _json_body(request: web.Request) -> Dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except ValueError as e:
        raise ConfigurationError('Request body must be valid JSON') from e
    if not isinstance(body, dict):
        raise ConfigurationError('Request body must be a JSON object')
    return body


def _instance_or_404(request: web.Request, instance_id: str) -> Dict[str, Any]:
    inst = request.app[INSTANCES]().get(instance_id)
    if inst is None:
        raise NotFoundError(f'Unknown instance {instance_id}', {'instanceId': instance_id})
    return inst


def _int_param(request: web.Request, name: str, default: int) -> int:
    raw = request.query.get(name)
    if raw is None or raw == '':
        return default
    try:
        val = int(raw)
    except ValueError as e:
        raise ConfigurationError(f'{name} must be an integer', {name: 'must be an integer'}) from e
    if val < 1:
        raise ConfigurationError(f'{name} must be positive', {name: 'must be at least 1'})
    return val


async def get_status(request: web.Request) -> web.Response:
    return web.json_response(request.app[SCHEDULER].status())


async def get_health(request: web.Request) -> web.Response:
    health = request.app[SCHEDULER].health()
    return web.json_response(health, status=200 if health['healthy'] else 503)


async def list_configs(request: web.Request) -> web.Response:
    configs = request.app[CONFIGS]
    out = []
    for iid, inst in request.app[INSTANCES]().items():
        config = configs.get(iid)
        out.append({
            'instanceId': iid,
            'instanceLabel': inst.get('label', iid),
            'instanceService': inst.get('service'),
            'config': config.to_dict() if config else None,
        })
    return web.json_response({'configs': out})


async def create_config(request: web.Request) -> web.Response:
    body = await _json_body(request)
    instance_id = body.pop('instanceId', None) or body.pop('instance_id', None)
    if not instance_id:
        raise ConfigurationError('instanceId is required', {'instanceId': 'required'})
    _instance_or_404(request, instance_id)
    configs = request.app[CONFIGS]
    if configs.exists(instance_id):
        raise ConflictError(f'Config already exists for {instance_id}', {'instanceId': instance_id})
    config = apply_config_update(CleanerConfig(instance_id=instance_id), body)
    configs.put(config)
    logging.info(f'Created queue cleaner config for {instance_id}')
    return web.json_response(config.to_dict(), status=201)


async def update_config(request: web.Request) -> web.Response:
    instance_id = request.match_info['instance_id']
    configs = request.app[CONFIGS]
    config = configs.get(instance_id)
    if config is None:
        raise NotFoundError(f'No queue cleaner config for {instance_id}', {'instanceId': instance_id})
    body = await _json_body(request)
    updated = apply_config_update(config, body)
    configs.put(updated)
    if config.enabled and not updated.enabled:
        request.app[SCHEDULER].cancel(instance_id)
    return web.json_response(updated.to_dict())


async def delete_config(request: web.Request) -> web.Response:
    instance_id = request.match_info['instance_id']
    configs = request.app[CONFIGS]
    if not configs.exists(instance_id):
        raise NotFoundError(f'No queue cleaner config for {instance_id}', {'instanceId': instance_id})
    request.app[SCHEDULER].cancel(instance_id)
    configs.delete(instance_id)
    store = request.app[STORE]
    cleared = store.clear_instance(instance_id)
    store.save()
    logs_deleted = request.app[LOGS].delete_instance(instance_id)
    return web.json_response({
        'deleted': True,
        'instanceId': instance_id,
        'recordsCleared': cleared,
        'logsDeleted': logs_deleted,
    })


async def trigger(request: web.Request) -> web.Response:
    instance_id = request.match_info['instance_id']
    result = request.app[SCHEDULER].trigger_manual(instance_id)
    return web.json_response(result, status=202 if result['triggered'] else 409)


async def preview(request: web.Request) -> web.Response:
    instance_id = request.match_info['instance_id']
    return web.json_response(await request.app[SCHEDULER].preview(instance_id))


async def dry_run(request: web.Request) -> web.Response:
    instance_id = request.match_info['instance_id']
    return web.json_response(await request.app[SCHEDULER].dry_run(instance_id))


async def get_logs(request: web.Request) -> web.Response:
    status = request.query.get('status') or None
    if status is not None and status not in LOG_STATUSES:
        raise ConfigurationError('Unknown log status', {'status': f'must be one of {", ".join(LOG_STATUSES)}'})
    page = _int_param(request, 'page', 1)
    page_size = min(_int_param(request, 'pageSize', DEFAULT_PAGE_SIZE), MAX_PAGE_SIZE)
    rows, total = request.app[LOGS].query(
        status=status,
        instance_id=request.query.get('instanceId') or None,
        page=page,
        page_size=page_size,
    )
    return web.json_response({
        'logs': [lg.to_dict() for lg in rows],
        'totalCount': total,
        'page': page,
        'pageSize': page_size,
    })


async def get_statistics(request: web.Request) -> web.Response:
    scheduler = request.app[SCHEDULER]
    labels = {iid: inst.get('label', iid) for iid, inst in request.app[INSTANCES]().items()}
    stats = compute_statistics(request.app[LOGS].all(), scheduler.clock(), labels)
    return web.json_response(stats)


async def toggle_scheduler(request: web.Request) -> web.Response:
    return web.json_response({'running': request.app[SCHEDULER].toggle()})


async def get_strikes(request: web.Request) -> web.Response:
    instance_id = request.match_info['instance_id']
    _instance_or_404(request, instance_id)
    store = request.app[STORE]
    return web.json_response({
        'instanceId': instance_id,
        'strikes': {k: v.to_dict() for k, v in store.strikes_for(instance_id).items()},
        'importAttempts': {k: v.to_dict() for k, v in store.attempts_for(instance_id).items()},
    })


async def clear_strikes(request: web.Request) -> web.Response:
    instance_id = request.match_info['instance_id']
    _instance_or_404(request, instance_id)
    store = request.app[STORE]
    cleared = store.clear_instance(instance_id)
    store.save()
    return web.json_response({'instanceId': instance_id, 'cleared': cleared})


def build_app(
    scheduler: QueueCleanerScheduler,
    configs,
    logs,
    store,
    instances: Callable[[], Dict[str, Dict[str, Any]]],
) -> web.Application:
    app = web.Application(middlewares=[error_middleware])
    app[SCHEDULER] = scheduler
    app[CONFIGS] = configs
    app[LOGS] = logs
    app[STORE] = store
    app[INSTANCES] = instances

    app.router.add_get('/status', get_status)
    app.router.add_get('/health', get_health)
    app.router.add_get('/configs', list_configs)
    app.router.add_post('/configs', create_config)
    app.router.add_patch('/configs/{instance_id}', update_config)
    app.router.add_delete('/configs/{instance_id}', delete_config)
    app.router.add_post('/trigger/{instance_id}', trigger)
    app.router.add_post('/preview/{instance_id}', preview)
    app.router.add_post('/dry-run/{instance_id}', dry_run)
    app.router.add_get('/logs', get_logs)
    app.router.add_get('/statistics', get_statistics)
    app.router.add_post('/scheduler/toggle', toggle_scheduler)
    app.router.add_get('/strikes/{instance_id}', get_strikes)
    app.router.add_delete('/strikes/{instance_id}', clear_strikes)
    return app
