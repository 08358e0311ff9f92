from typing import Callable, Dict, Iterable, List, Optional, Set

import requests

from syncbridge.adapters.base import JobContext, SyncResult, TargetAdapter
from syncbridge.errors import PermanentError
from syncbridge.logging_config import get_logger
from syncbridge.models import Action

logger = get_logger(__name__)


class RestTargetAdapter(TargetAdapter):
    """
    Generic JSON/REST integration.

    Records live at ``{base_url}/{entity_type}/{id}``. Every call is a single
    HTTP attempt; HTTP errors are raised unchanged so the queue can classify
    them (5xx and 429 retry, other 4xx fail).

    ``local_writer`` applies pulled records locally:
    ``local_writer(entity_type, action, data, context) -> local_id``.
    """

    def __init__(
        self,
        base_url: str,
        api_token: Optional[str] = None,
        timeout: int = 30,
        batch_entity_types: Iterable[str] = (),
        local_writer: Optional[Callable] = None,
        session: Optional[requests.Session] = None,
    ):
        if not base_url:
            raise ValueError("Missing REMOTE_BASE_URL")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.batch_entity_types = set(batch_entity_types)
        self.local_writer = local_writer

        # Reusable HTTP session
        self.session = session or requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})
        if api_token:
            self.session.headers.update({"Authorization": f"Bearer {api_token}"})

    def _request(self, method: str, endpoint: str, **kwargs):
        url = f"{self.base_url}{endpoint}"
        response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        response.raise_for_status()
        return response.json() if response.text else None

    @staticmethod
    def _extract_id(body) -> Optional[int]:
        if isinstance(body, dict) and body.get("id") is not None:
            return int(body["id"])
        return None

    def push(self, job, context: JobContext) -> SyncResult:
        entity = context.entity_type
        if context.action == Action.DELETE.value:
            if context.remote_id is None:
                # Never synced, nothing to delete remotely
                return SyncResult.ok(local_id=context.local_id)
            self._request("DELETE", f"/{entity}/{context.remote_id}")
            return SyncResult.ok(remote_id=context.remote_id, local_id=context.local_id)

        if context.remote_id is not None:
            body = self._request("PUT", f"/{entity}/{context.remote_id}", json=context.payload)
            return SyncResult.ok(remote_id=self._extract_id(body) or context.remote_id, local_id=context.local_id)

        body = self._request("POST", f"/{entity}", json=context.payload)
        remote_id = self._extract_id(body)
        if remote_id is None:
            raise PermanentError(f"Remote did not return an id for new {entity}")
        logger.info("Remote record created", entity_type=entity, remote_id=remote_id, local_id=context.local_id)
        return SyncResult.ok(remote_id=remote_id, local_id=context.local_id)

    def pull(self, job, context: JobContext) -> SyncResult:
        if context.remote_id is None:
            raise PermanentError("Inbound job has no remote id")
        if self.local_writer is None:
            raise PermanentError(f"No local writer configured for {context.entity_type}")

        if context.action == Action.DELETE.value:
            data = None
        else:
            data = self._request("GET", f"/{context.entity_type}/{context.remote_id}")
        local_id = self.local_writer(context.entity_type, context.action, data, context)
        return SyncResult.ok(remote_id=context.remote_id, local_id=local_id)

    def supports_batch_create(self, entity_type: str) -> bool:
        return entity_type in self.batch_entity_types

    def push_batch(self, jobs: List, contexts: List[JobContext]) -> List[SyncResult]:
        entity = contexts[0].entity_type
        body = self._request("POST", f"/{entity}/batch", json=[c.payload for c in contexts])
        ids = body if isinstance(body, list) else (body or {}).get("ids", [])
        results = []
        for context, remote_id in zip(contexts, ids):
            if remote_id is None:
                results.append(SyncResult.failure("Remote rejected record in batch", remote_id=None))
            else:
                results.append(SyncResult.ok(remote_id=int(remote_id), local_id=context.local_id))
        return results

    def exists(self, entity_type: str, remote_ids: Iterable[int]) -> Set[int]:
        ids = [int(i) for i in remote_ids]
        if not ids:
            return set()
        body = self._request("GET", f"/{entity_type}", params={"ids": ",".join(str(i) for i in ids)})
        records: List[Dict] = body if isinstance(body, list) else (body or {}).get("items", [])
        return {int(r["id"]) for r in records if isinstance(r, dict) and r.get("id") is not None}
