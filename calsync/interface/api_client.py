"""HTTP implementation of the RemoteStore protocol over the calendar REST API."""

import logging
from typing import Any

import httpx

from calsync.core.config import Settings, settings
from calsync.core.errors import RemoteStoreError
from calsync.domain.conflict import Conflict, ConflictFilters, ConflictStats, ResolutionStrategy
from calsync.domain.sync_status import RemoteQueueStatus
from calsync.domain.task import Task, TaskCreate, TaskUpdate


logger = logging.getLogger(__name__)


# Wire names of the resolution strategies; the backend calls the remote side "notion"
STRATEGY_WIRE_NAMES: dict[ResolutionStrategy, str] = {
    ResolutionStrategy.LOCAL_WINS: "local_wins",
    ResolutionStrategy.REMOTE_WINS: "notion_wins",
    ResolutionStrategy.MERGED: "merged",
}

DEFAULT_RESOLVE_REASON = "Manual resolution"
DEFAULT_BATCH_REASON = "Batch resolution"


def encode_diff(diff: dict[str, Any]) -> dict[str, Any]:
    """Serialize a diff of changed top-level fields to its camelCase JSON body."""
    return TaskUpdate.model_validate(diff).model_dump(mode="json", by_alias=True, exclude_unset=True)


def _unwrap(response: httpx.Response) -> Any:  # noqa: ANN401
    """Return the data of an API envelope, raising RemoteStoreError on any error.

    The backend wraps bodies as {success, data, error}; a bare body is
    returned unchanged.
    """
    if not response.is_success:
        detail = response.text
        try:
            body = response.json()
            if isinstance(body, dict) and body.get("error"):
                detail = str(body["error"])
        except ValueError:
            pass
        raise RemoteStoreError(
            f"{response.request.method} {response.request.url.path} failed: {response.status_code} {detail}",
            status_code=response.status_code,
        )

    if not response.content:
        return None
    body = response.json()
    if isinstance(body, dict) and "success" in body:
        if not body["success"]:
            raise RemoteStoreError(str(body.get("error") or "Request was not successful"))
        return body.get("data")
    return body


def _task_list(data: Any) -> list[dict[str, Any]]:  # noqa: ANN401
    if isinstance(data, dict):
        data = data.get("tasks", [])
    return list(data or [])


class HttpRemoteStore:
    """RemoteStore backed by the calendar backend's REST endpoints.

    A short-lived httpx client is opened per request with the configured
    timeout; transport errors are wrapped in RemoteStoreError.
    """

    def __init__(self, config: Settings | None = None) -> None:
        self._settings = config or settings
        self.base_url = self._settings.api_base_url.rstrip("/")
        self.timeout = self._settings.request_timeout_seconds

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._settings.api_token:
            headers["Authorization"] = f"Bearer {self._settings.api_token}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,  # noqa: ANN401
    ) -> Any:  # noqa: ANN401
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                if method == "GET":
                    response = await client.get(url, params=params, headers=self._headers())
                elif method == "POST":
                    response = await client.post(url, json=json, headers=self._headers())
                elif method == "PUT":
                    response = await client.put(url, json=json, headers=self._headers())
                else:
                    response = await client.delete(url, headers=self._headers())
        except httpx.TimeoutException as e:
            raise RemoteStoreError(f"{method} {path} timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise RemoteStoreError(f"{method} {path} network error: {e}") from e
        return _unwrap(response)

    # Tasks

    async def fetch_tasks_in_range(self, start_date: str, end_date: str) -> list[Task]:
        data = await self._request("GET", "/tasks/calendar", params={"startDate": start_date, "endDate": end_date})
        tasks = [Task.model_validate(raw) for raw in _task_list(data)]
        logger.debug("Fetched %d tasks for %s..%s", len(tasks), start_date, end_date)
        return tasks

    async def create_task(self, payload: TaskCreate) -> Task:
        data = await self._request("POST", "/tasks", json=payload.model_dump(mode="json", by_alias=True))
        if isinstance(data, dict) and "task" in data:
            data = data["task"]
        return Task.model_validate(data)

    async def update_task(self, task_id: str, diff: dict[str, Any]) -> Task | None:
        data = await self._request("PUT", f"/tasks/{task_id}", json=encode_diff(diff))
        if isinstance(data, dict) and "task" in data:
            data = data["task"]
        if not data:
            return None
        return Task.model_validate(data)

    async def delete_task(self, task_id: str) -> None:
        await self._request("DELETE", f"/tasks/{task_id}")

    # Conflicts

    async def list_conflicts(self, filters: ConflictFilters | None = None) -> list[Conflict]:
        params = filters.model_dump(mode="json", by_alias=True, exclude_none=True) if filters else None
        data = await self._request("GET", "/admin/conflicts", params=params)
        if isinstance(data, dict):
            data = data.get("conflicts", [])
        return [Conflict.model_validate(raw) for raw in data or []]

    async def get_conflict_stats(self) -> ConflictStats:
        data = await self._request("GET", "/admin/conflicts/stats")
        return ConflictStats.model_validate(data or {})

    async def resolve_conflict(
        self,
        conflict_id: str,
        strategy: ResolutionStrategy,
        merged_payload: dict[str, Any] | None = None,
        reason: str | None = None,
    ) -> None:
        body: dict[str, Any] = {
            "strategy": STRATEGY_WIRE_NAMES[strategy],
            "reason": reason or DEFAULT_RESOLVE_REASON,
        }
        if merged_payload is not None:
            body["mergedData"] = merged_payload
        await self._request("POST", f"/admin/conflicts/{conflict_id}/resolve", json=body)

    async def batch_resolve_conflicts(
        self,
        conflict_ids: list[str],
        strategy: ResolutionStrategy,
        reason: str | None = None,
    ) -> int:
        data = await self._request(
            "POST",
            "/admin/conflicts/batch-resolve",
            json={
                "conflictIds": conflict_ids,
                "strategy": STRATEGY_WIRE_NAMES[strategy],
                "reason": reason or DEFAULT_BATCH_REASON,
            },
        )
        if isinstance(data, dict):
            return int(data.get("resolved", data.get("count", len(conflict_ids))))
        return len(conflict_ids)

    # Sync queue telemetry

    async def get_sync_queue_status(self) -> RemoteQueueStatus | None:
        """Return server queue telemetry; any failure yields None."""
        try:
            data = await self._request("GET", "/sync/status")
        except RemoteStoreError as e:
            logger.debug("Sync status endpoint unavailable: %s", e)
            return None
        if not data:
            return None
        return RemoteQueueStatus.model_validate(data)

    async def clear_sync_queue(self) -> None:
        """Ask the backend to drop its pending sync queue."""
        await self._request("POST", "/sync/clear-queue")

    async def retry_failed_sync(self) -> int:
        """Ask the backend to retry its failed sync items; returns how many were retried."""
        data = await self._request("POST", "/sync/retry-failed")
        if isinstance(data, dict):
            return int(data.get("retried", 0))
        return 0
