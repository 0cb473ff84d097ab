"""
REST backend client (jobs, clients, production and cost entries).

JSON over HTTPS with a bearer token. Reads are retried on transport errors;
writes are not, so a failed batch is never submitted twice.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .etl import (
    Job, JobCostEntry, ProductionEntry, parse_jobs, to_epoch_ms,
)
from .settings import Settings, get_settings

logger = logging.getLogger(__name__)


class BackendError(RuntimeError):
    """HTTP failure from the backend, carrying its ``message`` when it sends one."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(BackendError):
    pass


def _raise_for_status(response: httpx.Response) -> None:
    if response.status_code < 400:
        return
    try:
        body = response.json()
        detail = body.get("message") if isinstance(body, dict) else None
    except ValueError:
        detail = None
    detail = detail or response.text[:300] or response.reason_phrase
    if response.status_code == 401:
        raise AuthenticationError(f"Authentication failed: {detail}", 401)
    raise BackendError(f"Backend request failed ({response.status_code}): {detail}", response.status_code)


def _decode(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError as e:
        raise BackendError(
            f"Backend returned an unreadable response ({response.status_code}): {response.text[:120]}",
            response.status_code,
        ) from e


_retry_reads = retry(
    retry=retry_if_exception_type((httpx.TimeoutException, httpx.TransportError)),
    wait=wait_exponential(multiplier=1, min=1, max=8),
    stop=stop_after_attempt(3),
    reraise=True,
)


class BackendClient:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        headers = {"Content-Type": "application/json"}
        if self.settings.api_token:
            headers["Authorization"] = f"Bearer {self.settings.api_token}"
        self._client = httpx.Client(
            base_url=self.settings.api_base_url.rstrip("/") + "/",
            headers=headers,
            timeout=httpx.Timeout(self.settings.request_timeout_seconds),
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "BackendClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # -- plumbing ------------------------------------------------------------

    @_retry_reads
    def _send_get(self, path: str, params: Optional[Dict[str, Any]] = None) -> httpx.Response:
        return self._client.get(path.lstrip("/"), params=params)

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        try:
            response = self._send_get(path, params)
        except httpx.HTTPError as e:
            raise BackendError(f"Backend unreachable: {e}") from e
        _raise_for_status(response)
        return _decode(response)

    def _post(self, path: str, payload: Any) -> Any:
        try:
            response = self._client.post(path.lstrip("/"), json=payload)
        except httpx.HTTPError as e:
            raise BackendError(f"Backend unreachable: {e}") from e
        _raise_for_status(response)
        return _decode(response) if response.content else None

    # -- reads -----------------------------------------------------------------

    def fetch_jobs_raw(self, facilities_id: Optional[int] = None) -> List[Dict[str, Any]]:
        params = {"facilities_id": facilities_id} if facilities_id else None
        data = self._get("/jobs", params)
        logger.info("Fetched %d jobs", len(data))
        return data

    def fetch_jobs(self, facilities_id: Optional[int] = None) -> List[Job]:
        return parse_jobs(self.fetch_jobs_raw(facilities_id))

    def fetch_clients(self) -> List[Dict[str, Any]]:
        return self._get("/clients")

    def fetch_production_entries(self, start=None, end=None, facilities_id: Optional[int] = None) -> List[ProductionEntry]:
        params = _range_params(start, end, facilities_id)
        return [ProductionEntry.from_record(r) for r in self._get("/production_entry", params)]

    def fetch_job_cost_entries(self, start=None, end=None, facilities_id: Optional[int] = None) -> List[JobCostEntry]:
        params = _range_params(start, end, facilities_id)
        return [JobCostEntry.from_record(r) for r in self._get("/job_cost_entry", params)]

    # -- writes ----------------------------------------------------------------

    def create_production_entry(self, entry: ProductionEntry) -> Any:
        return self._post("/production_entry", entry.to_payload())

    def create_production_entries(self, entries: Sequence[ProductionEntry]) -> Any:
        return self._post("/production_entry/batch", {"entries": [e.to_payload() for e in entries]})

    def create_job_cost_entry(self, entry: JobCostEntry) -> Any:
        return self._post("/job_cost_entry", entry.to_payload())

    def create_job_cost_entries(self, entries: Sequence[JobCostEntry]) -> Any:
        return self._post("/job_cost_entry/batch", {"entries": [e.to_payload() for e in entries]})


def _range_params(start, end, facilities_id) -> Optional[Dict[str, Any]]:
    params: Dict[str, Any] = {}
    if start is not None:
        params["start_date"] = to_epoch_ms(start)
    if end is not None:
        params["end_date"] = to_epoch_ms(end)
    if facilities_id:
        params["facilities_id"] = facilities_id
    return params or None


# =============================================================================
# CHUNKED UPLOAD
# =============================================================================

@dataclass
class UploadResult:
    total: int
    created: int = 0
    calls: int = 0
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None and self.created == self.total


def upload_in_chunks(
    entries: Sequence[Any],
    create_batch: Callable[[Sequence[Any]], Any],
    chunk_size: int = 50,
    on_progress: Optional[Callable[[int, int], None]] = None,
) -> UploadResult:
    """
    Send ``entries`` in sequential chunks through ``create_batch``.

    ``on_progress(done, total)`` fires after each successful chunk. The first
    failing chunk stops the upload; the result keeps the count created so far.
    """
    if chunk_size < 1:
        raise ValueError("chunk_size must be >= 1")

    entries = list(entries)
    result = UploadResult(total=len(entries))
    for i in range(0, len(entries), chunk_size):
        chunk = entries[i:i + chunk_size]
        result.calls += 1
        try:
            create_batch(chunk)
        except (BackendError, httpx.HTTPError) as e:
            logger.error("Chunk %d failed after %d created: %s", result.calls, result.created, e)
            result.error = str(e)
            break
        result.created += len(chunk)
        if on_progress is not None:
            on_progress(result.created, result.total)

    logger.info("Uploaded %d of %d entries in %d calls", result.created, result.total, result.calls)
    return result
