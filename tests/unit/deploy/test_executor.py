"""Tests for batch upload with bounded retry."""

import json

import pytest

from sitekv.config import RetryConfig
from sitekv.deploy.executor import UploadExecutor
from sitekv.deploy.inventory import SiteInventory
from sitekv.deploy.planner import UploadBatch
from sitekv.deploy.report import FailureReason, UploadStatus
from sitekv.errors import AuthError, BatchInterrupted
from sitekv.http.connection_manager import KVConnectionPool


@pytest.fixture
def files(site):
    return list(SiteInventory(site))


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def executor(config, kv_store, sleeps):
    async def record_sleep(delay):
        sleeps.append(delay)

    pool = KVConnectionPool(config, transport=kv_store.transport())
    return UploadExecutor(pool, config.retry, sleep=record_sleep)


def statuses(outcomes):
    return {o.key: (o.status, o.reason) for o in outcomes}


@pytest.mark.asyncio
async def test_bulk_batch_uploads_every_file(executor, kv_store, files):
    outcomes = await executor.execute(UploadBatch(0, tuple(files)))

    assert {o.key for o in outcomes} == {f.key for f in files}
    assert all(o.status == UploadStatus.UPLOADED for o in outcomes)
    assert len(kv_store.requests) == 1
    assert kv_store.values["index.html"] == b"<h1>Home</h1>"
    assert kv_store.metadata["index.html"]["fingerprint"] == files[2].fingerprint


@pytest.mark.asyncio
async def test_single_file_batch_uses_single_put(executor, kv_store, files):
    outcomes = await executor.execute(UploadBatch(0, (files[0],)))

    assert outcomes[0].status == UploadStatus.UPLOADED
    assert "/values/" in kv_store.requests[0].url.raw_path.decode()


@pytest.mark.asyncio
async def test_oversized_file_uses_single_put(executor, kv_store, files):
    await executor.execute(UploadBatch(0, (files[1],), oversized=True))

    assert "/values/" in kv_store.requests[0].url.raw_path.decode()


@pytest.mark.asyncio
@pytest.mark.parametrize("rate_limited", [0, 1, 2])
async def test_rate_limit_below_cap_succeeds(executor, kv_store, files, sleeps, rate_limited):
    kv_store.fail_next(429, times=rate_limited)

    outcomes = await executor.execute(UploadBatch(0, tuple(files)))

    assert all(o.status == UploadStatus.UPLOADED for o in outcomes)
    assert len(kv_store.requests) == rate_limited + 1
    assert len(sleeps) == rate_limited


@pytest.mark.asyncio
@pytest.mark.parametrize("rate_limited", [3, 4])
async def test_rate_limit_at_cap_is_exhausted(executor, kv_store, files, rate_limited):
    kv_store.fail_next(429, times=rate_limited)

    outcomes = await executor.execute(UploadBatch(0, tuple(files)))

    assert len(outcomes) == len(files)
    assert all(o.reason == FailureReason.RATE_LIMIT_EXHAUSTED for o in outcomes)
    assert len(kv_store.requests) == 3


@pytest.mark.asyncio
async def test_single_put_rate_limit_exhausted(executor, kv_store, files):
    kv_store.fail_next(429, times=3)

    outcomes = await executor.execute(UploadBatch(0, (files[0],)))

    assert statuses(outcomes) == {files[0].key: (UploadStatus.FAILED, FailureReason.RATE_LIMIT_EXHAUSTED)}


@pytest.mark.asyncio
async def test_server_errors_exhausted(executor, kv_store, files):
    kv_store.fail_next(503, times=3)

    outcomes = await executor.execute(UploadBatch(0, tuple(files)))

    assert all(o.reason == FailureReason.TRANSIENT_UPLOAD_ERROR for o in outcomes)


@pytest.mark.asyncio
async def test_transient_then_success(executor, kv_store, files):
    kv_store.fail_next(502)

    outcomes = await executor.execute(UploadBatch(0, (files[0],)))

    assert outcomes[0].status == UploadStatus.UPLOADED
    assert len(kv_store.requests) == 2


@pytest.mark.asyncio
async def test_validation_error_is_not_retried(executor, kv_store, files, sleeps):
    kv_store.fail_next(413)

    outcomes = await executor.execute(UploadBatch(0, tuple(files)))

    assert all(o.reason == FailureReason.VALIDATION_ERROR for o in outcomes)
    assert "413" in outcomes[0].detail
    assert len(kv_store.requests) == 1
    assert sleeps == []


@pytest.mark.asyncio
async def test_auth_error_interrupts_batch(executor, kv_store, files):
    kv_store.fail_next(401)

    with pytest.raises(BatchInterrupted) as exc_info:
        await executor.execute(UploadBatch(0, tuple(files)))

    assert isinstance(exc_info.value.error, AuthError)
    assert exc_info.value.outcomes == []
    assert len(kv_store.requests) == 1


@pytest.mark.asyncio
async def test_auth_error_keeps_keys_already_written(executor, kv_store, files):
    kv_store.reject_key("index.html")
    kv_store.fail_from(2, 401)

    with pytest.raises(BatchInterrupted) as exc_info:
        await executor.execute(UploadBatch(0, tuple(files)))

    assert isinstance(exc_info.value.error, AuthError)
    assert statuses(exc_info.value.outcomes) == {
        "about/index.html": (UploadStatus.UPLOADED, None),
        "assets/app.css": (UploadStatus.UPLOADED, None),
    }
    assert len(kv_store.requests) == 2


@pytest.mark.asyncio
async def test_only_unsuccessful_keys_are_retried(executor, kv_store, files):
    kv_store.reject_key("index.html")

    outcomes = await executor.execute(UploadBatch(0, tuple(files)))

    assert all(o.status == UploadStatus.UPLOADED for o in outcomes)
    retried = json.loads(kv_store.requests[1].content)
    assert [entry["key"] for entry in retried] == ["index.html"]


@pytest.mark.asyncio
async def test_unsuccessful_keys_exhausted(executor, kv_store, files):
    kv_store.reject_key("index.html", times=3)

    outcomes = await executor.execute(UploadBatch(0, tuple(files)))

    assert statuses(outcomes)["index.html"] == (UploadStatus.FAILED, FailureReason.TRANSIENT_UPLOAD_ERROR)
    assert sum(o.status == UploadStatus.UPLOADED for o in outcomes) == len(files) - 1


@pytest.mark.asyncio
async def test_vanished_file_is_read_error(executor, kv_store, files):
    files[0].path.unlink()

    outcomes = await executor.execute(UploadBatch(0, tuple(files)))

    assert statuses(outcomes)[files[0].key] == (UploadStatus.FAILED, FailureReason.READ_ERROR)
    assert sum(o.status == UploadStatus.UPLOADED for o in outcomes) == len(files) - 1


@pytest.mark.asyncio
async def test_read_error_survives_auth_failure(executor, kv_store, files):
    files[0].path.unlink()
    kv_store.fail_next(401)

    with pytest.raises(BatchInterrupted) as exc_info:
        await executor.execute(UploadBatch(0, tuple(files)))

    assert statuses(exc_info.value.outcomes) == {
        files[0].key: (UploadStatus.FAILED, FailureReason.READ_ERROR),
    }


@pytest.mark.asyncio
async def test_retry_after_is_honoured(config, kv_store, files, sleeps):
    async def record_sleep(delay):
        sleeps.append(delay)

    retry = RetryConfig(max_attempts=3, delay="1s", max_delay="30s")
    executor = UploadExecutor(KVConnectionPool(config, transport=kv_store.transport()), retry, sleep=record_sleep)
    kv_store.fail_next(429, headers={"Retry-After": "4"})
    kv_store.fail_next(429)

    await executor.execute(UploadBatch(0, tuple(files)))

    assert sleeps == [4.0, 2.0]


@pytest.mark.asyncio
async def test_delete_keys(executor, kv_store):
    kv_store.values.update({"old/a.html": b"a", "old/b.html": b"b", "keep.html": b"k"})
    kv_store.fail_next(500)

    deleted, failed = await executor.delete_keys(["old/a.html", "old/b.html"])

    assert deleted == ["old/a.html", "old/b.html"]
    assert failed == []
    assert set(kv_store.values) == {"keep.html"}


@pytest.mark.asyncio
async def test_delete_keys_exhausted(executor, kv_store):
    kv_store.fail_next(500, times=3)

    deleted, failed = await executor.delete_keys(["old.html"])

    assert deleted == []
    assert failed == ["old.html"]
