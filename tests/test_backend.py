import json

import httpx
import pandas as pd
import pytest
from tenacity import wait_none

from conftest import job_record
from mailshop_analytics.backend import (
    AuthenticationError, BackendClient, BackendError, upload_in_chunks,
)
from mailshop_analytics.etl import ProductionEntry
from mailshop_analytics.settings import Settings


def _entries(n):
    return [ProductionEntry(job=i, date=pd.Timestamp("2025-01-15"), actual_quantity=10) for i in range(n)]


def _client(handler):
    settings = Settings(api_base_url="https://api.test/v1", api_token="secret")
    return BackendClient(settings, transport=httpx.MockTransport(handler))


def test_upload_120_entries_in_three_chunks():
    calls, progress = [], []

    def create_batch(chunk):
        calls.append(len(chunk))

    result = upload_in_chunks(_entries(120), create_batch, chunk_size=50,
                              on_progress=lambda done, total: progress.append((done, total)))
    assert calls == [50, 50, 20]
    assert progress == [(50, 120), (100, 120), (120, 120)]
    assert result.created == 120
    assert result.calls == 3
    assert result.success


def test_failed_chunk_stops_upload():
    calls = []

    def create_batch(chunk):
        calls.append(len(chunk))
        if len(calls) == 2:
            raise BackendError("Backend request failed (500): boom", 500)

    result = upload_in_chunks(_entries(120), create_batch, chunk_size=50)
    assert calls == [50, 50]
    assert result.created == 50
    assert result.error == "Backend request failed (500): boom"
    assert not result.success


def test_upload_rejects_bad_chunk_size():
    with pytest.raises(ValueError):
        upload_in_chunks(_entries(1), lambda chunk: None, chunk_size=0)


def test_fetch_jobs_sends_bearer_token_and_parses():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers["Authorization"]
        seen["path"] = request.url.path
        return httpx.Response(200, json=[job_record(1, billing=250)])

    with _client(handler) as client:
        jobs = client.fetch_jobs()
    assert seen == {"auth": "Bearer secret", "path": "/v1/jobs"}
    assert jobs[0].total_billing == 250.0
    assert jobs[0].client.name == "Acme"


def test_batch_upload_posts_entries_through_client():
    bodies = []

    def handler(request):
        assert request.url.path == "/v1/production_entry/batch"
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"created": len(bodies[-1]["entries"])})

    with _client(handler) as client:
        result = upload_in_chunks(_entries(7), client.create_production_entries, chunk_size=3)
    assert [len(b["entries"]) for b in bodies] == [3, 3, 1]
    assert bodies[0]["entries"][0]["date"] == int(pd.Timestamp("2025-01-15").value // 1_000_000)
    assert result.success


def test_http_errors_carry_backend_message():
    def handler(request):
        if request.url.path.endswith("/jobs"):
            return httpx.Response(401, json={"message": "token expired"})
        return httpx.Response(500, json={"message": "database down"})

    with _client(handler) as client:
        with pytest.raises(AuthenticationError, match="token expired"):
            client.fetch_jobs()
        with pytest.raises(BackendError, match="database down") as err:
            client.create_production_entries(_entries(1))
    assert err.value.status_code == 500


@pytest.fixture()
def no_retry_wait(monkeypatch):
    monkeypatch.setattr(BackendClient._send_get.retry, "wait", wait_none())


def test_unreachable_backend_is_a_backend_error(no_retry_wait):
    attempts = []

    def handler(request):
        attempts.append(request.url.path)
        raise httpx.ConnectError("connection refused", request=request)

    with _client(handler) as client:
        with pytest.raises(BackendError, match="Backend unreachable") as err:
            client.fetch_jobs()
    assert len(attempts) == 3
    assert isinstance(err.value.__cause__, httpx.ConnectError)


def test_read_timeout_after_retries_is_a_backend_error(no_retry_wait):
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with _client(handler) as client:
        with pytest.raises(BackendError):
            client.fetch_production_entries()


def test_unreadable_reply_stops_upload_with_partial_count():
    replies = []

    def handler(request):
        replies.append(request.url.path)
        if len(replies) == 2:
            return httpx.Response(200, text="<html>gateway</html>")
        return httpx.Response(200, json={"created": 50})

    with _client(handler) as client:
        result = upload_in_chunks(_entries(120), client.create_production_entries, chunk_size=50)
    assert result.calls == 2
    assert result.created == 50
    assert "unreadable response" in result.error
    assert not result.success


def test_dropped_connection_mid_upload_keeps_partial_count():
    replies = []

    def handler(request):
        replies.append(request.url.path)
        if len(replies) == 3:
            raise httpx.RemoteProtocolError("server disconnected", request=request)
        return httpx.Response(200, json={"created": 50})

    with _client(handler) as client:
        result = upload_in_chunks(_entries(120), client.create_production_entries, chunk_size=50)
    assert result.created == 100
    assert "Backend unreachable" in result.error
    # writes are never retried
    assert len(replies) == 3


def test_fetch_production_entries_sends_range():
    seen = {}

    def handler(request):
        seen.update(request.url.params)
        return httpx.Response(200, json=[{"job": 3, "date": int(pd.Timestamp("2025-01-15").value // 1_000_000),
                                          "actual_quantity": 40}])

    with _client(handler) as client:
        entries = client.fetch_production_entries(pd.Timestamp("2025-01-10"), pd.Timestamp("2025-01-16"), 2)
    assert seen["facilities_id"] == "2"
    assert int(seen["start_date"]) == int(pd.Timestamp("2025-01-10").value // 1_000_000)
    assert entries[0].job == 3
    assert entries[0].date == pd.Timestamp("2025-01-15")
