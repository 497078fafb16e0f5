from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from core.config import CleanerConfig
from core.errors import DispatchError, RunError
from core.models import QueueItem
from integrations.services import RequestManager

QUEUE_PAGE_SIZE = 100


class ArrClient:
    """Queue access for one Sonarr/Radarr instance (``api_url`` includes ``/api/v3``)."""

    def __init__(self, session, instance: Dict[str, Any], requests: RequestManager, debug_logging: bool = False) -> None:
        self.session = session
        self.instance = instance
        self.requests = requests
        self.debug_logging = debug_logging

    @property
    def instance_id(self) -> str:
        return self.instance['id']

    @property
    def service(self) -> str:
        return self.instance.get('service') or 'sonarr'

    async def _request(self, path: str, **kwargs):
        url = f"{self.instance['api_url']}{path}"
        return await self.requests.throttled_request(
            self.session, self.instance_id, url, self.instance['api_key'], **kwargs
        )

    async def fetch_queue(self) -> List[Dict[str, Any]]:
        initial = await self._request('/queue', params={'pageSize': 1})
        if initial is None or 'totalRecords' not in initial:
            raise RunError(f'Failed to fetch queue for {self.instance_id}')
        total_records = initial['totalRecords']
        if self.debug_logging:
            logging.info(f'Instance {self.instance_id}: queue size {total_records}')
        if not total_records:
            return []
        pages = (total_records + QUEUE_PAGE_SIZE - 1) // QUEUE_PAGE_SIZE
        records: List[Dict[str, Any]] = []
        for page in range(pages):
            data = await self._request('/queue', params={'page': page + 1, 'pageSize': QUEUE_PAGE_SIZE})
            if not data or 'records' not in data:
                raise RunError(f'Queue page {page + 1}/{pages} for {self.instance_id} is missing records')
            records.extend(data['records'])
        return records

    async def remove(self, item: QueueItem, config: CleanerConfig) -> None:
        params = {
            'removeFromClient': str(config.remove_from_client).lower(),
            'blocklist': str(config.add_to_blocklist).lower(),
            'skipRedownload': str(not config.search_after_removal).lower(),
        }
        # Changing category only makes sense for torrent clients
        if config.change_category_enabled and item.protocol == 'torrent':
            params['changeCategory'] = 'true'
        resp = await self._request(f'/queue/{item.id}', params=params, method='delete')
        if resp is None:
            raise DispatchError(f'Remove failed for queue item {item.id}', {'id': item.id, 'title': item.title})

    async def manual_import(self, item: QueueItem) -> int:
        """Import a blocked download through the arr's manual import. Returns the file count."""
        if not item.download_id:
            raise DispatchError('Item has no download id to import', {'id': item.id})
        candidates = await self._request(
            '/manualimport',
            params={'downloadId': item.download_id, 'filterExistingFiles': 'true'},
        )
        if not isinstance(candidates, list) or not candidates:
            raise DispatchError('The arr did not provide any importable files for this download', {'id': item.id})
        files = []
        rejected = []
        for cand in candidates:
            entry = self._command_file(cand, item.download_id)
            if entry is None:
                rejected.append(str(cand.get('name') or cand.get('path') or '?'))
            else:
                files.append(entry)
        if not files:
            raise DispatchError(
                'No files could be matched for import',
                {'id': item.id, 'rejected': rejected[:3]},
            )
        resp = await self._request(
            '/command',
            json_data={'name': 'ManualImport', 'importMode': 'auto', 'files': files},
            method='post',
        )
        if resp is None:
            raise DispatchError(f'Manual import command failed for queue item {item.id}', {'id': item.id})
        return len(files)

    def _command_file(self, cand: Dict[str, Any], download_id: str) -> Optional[Dict[str, Any]]:
        if not isinstance(cand, dict) or not cand.get('path'):
            return None
        # rejections with type 'permanent' cannot be imported
        for rej in cand.get('rejections') or []:
            if isinstance(rej, dict) and str(rej.get('type') or '').lower() == 'permanent':
                return None
        base = {
            'path': cand['path'],
            'folderName': cand.get('folderName') or '',
            'quality': cand.get('quality'),
            'languages': cand.get('languages') or [],
            'releaseGroup': cand.get('releaseGroup'),
            'indexerFlags': cand.get('indexerFlags') if isinstance(cand.get('indexerFlags'), int) else 0,
            'downloadId': download_id,
        }
        if self.service == 'sonarr':
            series = cand.get('series') or {}
            episode_ids = [e.get('id') for e in (cand.get('episodes') or []) if isinstance(e, dict) and e.get('id')]
            if not isinstance(series.get('id'), int) or not episode_ids:
                return None
            base.update({'seriesId': series['id'], 'episodeIds': episode_ids, 'releaseType': cand.get('releaseType')})
            return base
        if self.service == 'radarr':
            movie = cand.get('movie') or {}
            if not isinstance(movie.get('id'), int):
                return None
            base['movieId'] = movie['id']
            return base
        return None
