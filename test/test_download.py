from threading import Event, Thread, Timer
import hashlib
import time
import pytest

from glauncher.store import ArtifactStore
from glauncher.download import ArtifactRequest, ArtifactKind, DownloadResult, \
    fetch, required_failures
from glauncher.watcher import SimpleWatcher
from glauncher.download import DownloadProgressEvent, DownloadCompleteEvent


def _request(local_server, path: str, data: bytes, **kwargs) -> ArtifactRequest:
    url, sha1, size = local_server.add(f"/{path}", data)
    return ArtifactRequest(url, path, sha1=sha1, size=size, **kwargs)


def test_fetch_cold_then_cached(tmp_path, local_server):

    store = ArtifactStore(tmp_path)
    requests = [_request(local_server, f"libraries/lib{i}.jar", f"library {i}".encode() * 100) for i in range(10)]

    progress = []
    watcher = SimpleWatcher({DownloadProgressEvent: progress.append})

    results = fetch(requests, 4, store=store, watcher=watcher)
    assert len(results) == 10
    assert {result.request for result in results} == set(requests)
    assert all(result.outcome == DownloadResult.SUCCESS for result in results)
    assert all(result.attempts == 1 for result in results)
    assert [event.count for event in progress] == list(range(1, 11))

    for request in requests:
        assert store.has(request.path, request.sha1, request.size)

    network_calls = local_server.count()
    assert network_calls == 10

    results = fetch(requests, 4, store=store)
    assert all(result.outcome == DownloadResult.VERIFIED_CACHED for result in results)
    assert local_server.count() == network_calls


def test_fetch_corrupted(tmp_path, local_server):

    store = ArtifactStore(tmp_path)
    request = _request(local_server, "libraries/foo.jar", b"foo library")

    assert fetch([request], 1, store=store)[0].outcome == DownloadResult.SUCCESS

    # Altered content of the same size.
    file = store.resolve(request.path)
    file.write_bytes(b"FOO LIBRARY")

    result = fetch([request], 1, store=store)[0]
    assert result.outcome == DownloadResult.SUCCESS
    assert local_server.count("/libraries/foo.jar") == 2
    assert file.read_bytes() == b"foo library"


def test_fetch_failures(tmp_path, local_server):

    store = ArtifactStore(tmp_path)

    not_found = ArtifactRequest(local_server.url("/missing.jar"), "missing.jar", kind=ArtifactKind.LIBRARY)

    wrong_sha1 = _request(local_server, "wrong_sha1.png", b"asset", kind=ArtifactKind.ASSET)
    wrong_sha1.sha1 = hashlib.sha1(b"other").hexdigest()

    wrong_size = _request(local_server, "wrong_size.png", b"asset", kind=ArtifactKind.ASSET)
    wrong_size.size = 1

    conn_err = ArtifactRequest("http://127.0.0.1:1/foo.jar", "conn_err.jar")

    unavailable = ArtifactRequest(None, "libraries/local.jar")

    results = {result.request.path: result for result in fetch(
        [not_found, wrong_sha1, wrong_size, conn_err, unavailable], 2,
        store=store, max_attempts=2, backoff=0.0)}

    assert len(results) == 5
    assert not any(result.ok for result in results.values())

    assert results["missing.jar"].reason == DownloadResult.HTTP_STATUS
    assert results["missing.jar"].attempts == 1

    assert results["wrong_sha1.png"].reason == DownloadResult.RETRY_EXHAUSTED
    assert results["wrong_sha1.png"].last_error == DownloadResult.DIGEST_MISMATCH
    assert results["wrong_sha1.png"].attempts == 2

    assert results["wrong_size.png"].last_error == DownloadResult.SIZE_MISMATCH
    assert results["conn_err.jar"].last_error == DownloadResult.NETWORK
    assert results["libraries/local.jar"].reason == DownloadResult.UNAVAILABLE

    # Nothing partial is ever committed.
    assert not store.resolve("wrong_sha1.png").exists()
    assert not store.resolve("wrong_size.png").exists()

    failures = required_failures(results.values())
    assert {result.request.path for result in failures} == {"missing.jar", "conn_err.jar", "libraries/local.jar"}


def test_fetch_retry(tmp_path, local_server):

    store = ArtifactStore(tmp_path)
    request = _request(local_server, "flaky.jar", b"flaky")
    local_server.fail("/flaky.jar", 503, 500)

    result = fetch([request], 1, store=store, max_attempts=3, backoff=0.0)[0]
    assert result.outcome == DownloadResult.SUCCESS
    assert result.attempts == 3
    assert local_server.count("/flaky.jar") == 3


def test_fetch_redirect(tmp_path, local_server):

    store = ArtifactStore(tmp_path)
    url, sha1, size = local_server.add("/real.jar", b"real")
    local_server.redirects["/moved.jar"] = url

    request = ArtifactRequest(local_server.url("/moved.jar"), "moved.jar", sha1=sha1, size=size)
    result = fetch([request], 1, store=store)[0]
    assert result.outcome == DownloadResult.SUCCESS
    assert store.resolve("moved.jar").read_bytes() == b"real"


def test_fetch_cancel(tmp_path, local_server):

    store = ArtifactStore(tmp_path)
    requests = [_request(local_server, f"lib{i}.jar", b"lib") for i in range(5)]

    cancel = Event()
    cancel.set()

    results = fetch(requests, 2, store=store, cancel=cancel)
    assert len(results) == 5
    assert all(result.reason == DownloadResult.CANCELLED for result in results)
    assert local_server.count() == 0


def test_fetch_cancel_during_backoff(tmp_path, local_server):

    store = ArtifactStore(tmp_path)
    request = _request(local_server, "flaky.jar", b"flaky")
    local_server.fail("/flaky.jar", 500, 500, 500)

    cancel = Event()
    timer = Timer(0.5, cancel.set)
    timer.start()

    start = time.monotonic()
    results = fetch([request], 1, store=store, cancel=cancel, backoff=5.0)
    timer.join()

    # The backoff of 5 seconds is interrupted.
    assert time.monotonic() - start < 5.0
    assert results[0].reason == DownloadResult.CANCELLED
    assert results[0].attempts <= 1
    assert not store.resolve("flaky.jar").exists()


def test_fetch_invalid_url(tmp_path, local_server):

    store = ArtifactStore(tmp_path)
    ok = _request(local_server, "ok.jar", b"ok")

    results = {result.request.path: result for result in fetch(
        [ArtifactRequest("ssh://foo.bar", "invalid"), ArtifactRequest("http:///no-host.jar", "no_host"), ok],
        1, store=store)}

    assert len(results) == 3
    assert results["invalid"].reason == DownloadResult.UNSUPPORTED_URL
    assert results["no_host"].reason == DownloadResult.UNSUPPORTED_URL
    assert results["ok.jar"].outcome == DownloadResult.SUCCESS
    assert local_server.count() == 1

    with pytest.raises(ValueError):
        fetch([ok], 0, store=store)


def test_fetch_non_ascii_url(tmp_path, local_server):

    store = ArtifactStore(tmp_path)
    ok = _request(local_server, "ok.jar", b"ok")
    _url, sha1, size = local_server.add("/caf%C3%A9.jar", b"cafe")
    local_server.add("/a%20b.jar", b"space")

    results = {result.request.path: result for result in fetch([
        ok,
        ArtifactRequest(local_server.url("/café.jar"), "cafe.jar", sha1=sha1, size=size),
        ArtifactRequest(local_server.url("/a b.jar"), "space.jar"),
        ArtifactRequest(local_server.url("/déjà-vu.jar"), "missing.jar"),
    ], 1, store=store)}

    assert len(results) == 4
    assert results["ok.jar"].outcome == DownloadResult.SUCCESS
    # Non-ASCII paths are percent-encoded on the wire.
    assert results["cafe.jar"].outcome == DownloadResult.SUCCESS
    assert store.resolve("cafe.jar").read_bytes() == b"cafe"
    assert results["space.jar"].outcome == DownloadResult.SUCCESS
    assert results["missing.jar"].reason == DownloadResult.HTTP_STATUS


def test_fetch_concurrency_limit(tmp_path, local_server):

    store = ArtifactStore(tmp_path)
    requests = [_request(local_server, f"lib{i}.jar", f"lib {i}".encode()) for i in range(10)]
    local_server.delay = 0.05

    results = fetch(requests, 2, store=store)
    assert len(results) == 10
    assert all(result.ok for result in results)
    assert 1 <= local_server.peak_in_flight <= 2


def test_fetch_overlapping(tmp_path, local_server):

    store = ArtifactStore(tmp_path)
    shared = [_request(local_server, f"libraries/shared{i}.jar", f"shared {i}".encode() * 1000) for i in range(8)]

    results = []
    def run():
        results.append(fetch(shared, 4, store=store))

    threads = [Thread(target=run) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(results) == 4
    for batch in results:
        assert len(batch) == 8
        assert all(result.ok for result in batch)

    for request in shared:
        assert store.has(request.path, request.sha1, request.size)
        # No temporary file left beside the artifacts.
        assert not any(p.name.endswith(".part") for p in store.resolve(request.path).parent.iterdir())


def test_fetch_complete_event(tmp_path, local_server):

    store = ArtifactStore(tmp_path)
    complete = []
    watcher = SimpleWatcher({DownloadCompleteEvent: complete.append})

    assert fetch([], 4, store=store, watcher=watcher) == []
    results = fetch([_request(local_server, "a.jar", b"a")], 4, store=store, watcher=watcher)
    assert len(complete) == 1 and complete[0].results == results
