from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Dict, Optional

import aiohttp

RETRYABLE_NETWORK_ERRORS = (
    aiohttp.ClientConnectorError,
    aiohttp.ClientOSError,
    aiohttp.ServerTimeoutError,
    asyncio.TimeoutError,
)


class RequestManager:
    """Per-instance request throttling on top of ``make_api_request``."""

    def __init__(
        self,
        *,
        min_interval_ms: float = 0.0,
        max_concurrent: int = 0,
        request_timeout: int = 10,
        retry_attempts: int = 2,
        retry_backoff: float = 1.0,
        debug_logging: bool = False,
    ) -> None:
        self.min_interval_ms = min_interval_ms
        self.max_concurrent = max_concurrent
        self.request_timeout = request_timeout
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff
        self.debug_logging = debug_logging
        self._last_request_at: Dict[str, float] = {}
        self._semaphores: Dict[str, asyncio.Semaphore] = {}

    async def _pace(self, instance_id: str) -> None:
        if not self.min_interval_ms or self.min_interval_ms <= 0:
            return
        loop = asyncio.get_running_loop()
        ready_at = self._last_request_at.get(instance_id, 0.0) + self.min_interval_ms / 1000.0
        if ready_at > loop.time():
            await asyncio.sleep(ready_at - loop.time())
        self._last_request_at[instance_id] = loop.time()

    def _slot(self, instance_id: str) -> Optional[asyncio.Semaphore]:
        if not self.max_concurrent or self.max_concurrent <= 0:
            return None
        return self._semaphores.setdefault(instance_id, asyncio.Semaphore(self.max_concurrent))

    async def throttled_request(
        self,
        session: aiohttp.ClientSession,
        instance_id: str,
        url: str,
        api_key: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_data: Optional[Any] = None,
        method: str = 'get',
    ):
        await self._pace(instance_id)
        call = make_api_request(
            session,
            url,
            api_key,
            params=params,
            json_data=json_data,
            method=method,
            request_timeout=self.request_timeout,
            retry_attempts=self.retry_attempts,
            retry_backoff=self.retry_backoff,
            debug_logging=self.debug_logging,
        )
        slot = self._slot(instance_id)
        if slot is None:
            return await call
        async with slot:
            return await call


def is_instance_configured(instance: Dict[str, Any]) -> bool:
    return bool(instance.get('api_url')) and bool(instance.get('api_key'))


def _backoff(retry_backoff: float, attempts: int) -> float:
    return retry_backoff * (2 ** (attempts - 1)) * (1 + random.uniform(0, 0.25))


def is_retryable(error: Exception) -> bool:
    if isinstance(error, aiohttp.ClientResponseError):
        return bool(error.status) and (error.status >= 500 or error.status == 429)
    return isinstance(error, RETRYABLE_NETWORK_ERRORS)


def _describe(error: Exception) -> str:
    if isinstance(error, aiohttp.ClientResponseError):
        return f'{error.status} {error.message}'
    return f'{type(error).__name__}: {error}'


async def _read_body(response: aiohttp.ClientResponse, label: str, debug_logging: bool):
    if response.status != 204 and 'application/json' in response.headers.get('Content-Type', ''):
        try:
            return await response.json()
        except (aiohttp.ContentTypeError, ValueError):
            # empty or malformed JSON body
            pass
    if debug_logging:
        logging.info(f'{label} -> {response.status} (no content)')
    return {'status': response.status}


async def make_api_request(
    session: aiohttp.ClientSession,
    url: str,
    api_key: str,
    *,
    params: Optional[Dict[str, Any]] = None,
    json_data: Optional[Any] = None,
    method: str = 'get',
    request_timeout: int = 10,
    retry_attempts: int = 2,
    retry_backoff: float = 1.0,
    debug_logging: bool = False,
):
    """Call an arr API endpoint, retrying 5xx/429 and network errors with jittered backoff.

    Returns the decoded JSON body, ``{'status': code}`` for empty 2xx replies,
    or ``None`` once the request has failed for good.
    """
    label = f'HTTP {method.upper()} {url}'
    timeout = aiohttp.ClientTimeout(total=request_timeout)
    for attempt in range(retry_attempts + 1):
        try:
            async with session.request(
                method, url, headers={'X-Api-Key': api_key}, params=params, json=json_data, timeout=timeout
            ) as response:
                response.raise_for_status()
                return await _read_body(response, label, debug_logging)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            if not is_retryable(e):
                logging.error(f'{label} failed: {_describe(e)}')
                return None
            if attempt == retry_attempts:
                logging.error(f'{label} failed after {retry_attempts} retries: {_describe(e)}')
                return None
            sleep_for = _backoff(retry_backoff, attempt + 1)
            if debug_logging:
                logging.warning(f'{label} {_describe(e)}; retrying in {sleep_for:.2f}s (attempt {attempt + 1}/{retry_attempts})')
            await asyncio.sleep(sleep_for)
    return None
