"""Definition of the bounded-concurrency download orchestrator.

Requests are fetched by a fixed pool of threads pulling from a queue, each thread
keeps its own HTTP connections alive. Results are collected as they come, failures
never abort sibling downloads, every request yields exactly one result.
"""

from http.client import HTTPConnection, HTTPSConnection, HTTPException
from threading import Thread, Event
from queue import Queue
import urllib.parse
import socket
import time
import os

from .store import ArtifactStore, DigestMismatch, SizeMismatch
from .http import ssl_context, USER_AGENT
from .watcher import Watcher

from typing import Optional, Dict, List, Tuple, Union, Iterable, FrozenSet


class ArtifactKind:
    """Kinds of artifacts, the kind tells how the artifact is used once downloaded and
    if its failure should prevent the game from launching.
    """

    MAIN_JAR = "main-jar"
    LIBRARY = "library"
    NATIVE = "native"
    ASSET_INDEX = "asset-index"
    ASSET = "asset"
    LOG_CONFIG = "log-config"

    REQUIRED: FrozenSet[str] = frozenset((MAIN_JAR, LIBRARY, NATIVE, ASSET_INDEX))


class ArtifactRequest:
    """A request for an artifact to be present in the store. The request is identified
    by its destination path, relative to the store's root. A request without URL can
    only be satisfied by an artifact already present in the store.
    """

    __slots__ = "url", "path", "sha1", "size", "kind", "name", "extract_excludes"

    def __init__(self,
        url: Optional[str],
        path: str, *,
        sha1: Optional[str] = None,
        size: Optional[int] = None,
        kind: str = ArtifactKind.LIBRARY,
        name: Optional[str] = None,
        extract_excludes: Tuple[str, ...] = ()
    ) -> None:
        self.url = url
        self.path = path
        self.sha1 = sha1
        self.size = size
        self.kind = kind
        self.name = path if name is None else name
        self.extract_excludes = extract_excludes

    @property
    def required(self) -> bool:
        return self.kind in ArtifactKind.REQUIRED

    def __repr__(self) -> str:
        return f"<ArtifactRequest {self.kind} {self.name}>"

    def __hash__(self) -> int:
        return hash(self.path)

    def __eq__(self, other) -> bool:
        return isinstance(other, ArtifactRequest) and self.path == other.path


_TARGET_SAFE = "/%?=&:@!$'()*+,;~"


class _Target:
    """Internal class with already parsed URL to speed up processing and prevent
    unsupported URL schemes.
    """

    __slots__ = "https", "host", "port", "target", "url"

    def __init__(self, url: str) -> None:

        # We only support HTTP/HTTPS
        url_parsed = urllib.parse.urlparse(url)
        if url_parsed.scheme not in ("http", "https"):
            raise ValueError(f"unsupported scheme '{url_parsed.scheme}://' from url {url}")
        if url_parsed.hostname is None:
            raise ValueError(f"missing host from url {url}")

        self.https = url_parsed.scheme == "https"
        self.host = url_parsed.hostname
        self.port = url_parsed.port
        # Request targets must be ASCII, already escaped sequences are kept.
        self.target = urllib.parse.quote(url_parsed.path or "/", safe=_TARGET_SAFE)
        if url_parsed.query:
            self.target += "?" + urllib.parse.quote(url_parsed.query, safe=_TARGET_SAFE)
        self.url = url


class DownloadResult:
    """The outcome of a single artifact request.
    """

    SUCCESS = "success"
    VERIFIED_CACHED = "verified-cached"
    FAILED = "failed"

    # Failure reasons.
    NETWORK = "network"
    HTTP_STATUS = "http-status"
    DIGEST_MISMATCH = "digest-mismatch"
    SIZE_MISMATCH = "size-mismatch"
    RETRY_EXHAUSTED = "retry-exhausted"
    CANCELLED = "cancelled"
    UNAVAILABLE = "unavailable"
    UNSUPPORTED_URL = "unsupported-url"

    __slots__ = "request", "outcome", "reason", "last_error", "attempts", "origin", "thread_id"

    def __init__(self,
        request: ArtifactRequest,
        outcome: str, *,
        reason: Optional[str] = None,
        last_error: Optional[str] = None,
        attempts: int = 0,
        origin: Optional[Exception] = None,
        thread_id: int = 0
    ) -> None:
        self.request = request
        self.outcome = outcome
        self.reason = reason
        self.last_error = last_error
        self.attempts = attempts
        self.origin = origin
        self.thread_id = thread_id

    @property
    def ok(self) -> bool:
        return self.outcome != self.FAILED

    def __repr__(self) -> str:
        if self.ok:
            return f"<DownloadResult {self.outcome} {self.request.name}>"
        return f"<DownloadResult {self.outcome}({self.reason}, {self.last_error}) {self.request.name}>"


def fetch(requests: Iterable[ArtifactRequest], concurrency_limit: int, *,
    store: ArtifactStore,
    cancel: Optional[Event] = None,
    timeout: float = 30.0,
    max_attempts: int = 3,
    backoff: float = 0.5,
    watcher: Optional[Watcher] = None
) -> List[DownloadResult]:
    """Ensure that all requested artifacts are present and valid in the store.

    Artifacts already present with a matching digest are reported as verified-cached
    without any network access. Other ones are downloaded by up to `concurrency_limit`
    threads, transient errors (connection, timeout, server error, size or digest
    mismatch) are retried up to `max_attempts` times with an exponential backoff.

    :param cancel: An optional event, when set, requests not yet started are reported
    as cancelled, in-flight requests are allowed to finish.
    :param timeout: Timeout in seconds of a single attempt.
    :return: The results, in completion order, exactly one per request. A request
    whose URL is not a valid HTTP(S) URL fails with reason `unsupported-url`.
    :raises ValueError: If the concurrency limit is less than 1.
    """

    watcher = watcher or Watcher()
    jobs = list(requests)
    if not len(jobs):
        return []

    if concurrency_limit < 1:
        raise ValueError("concurrency limit must be at least 1")

    # Note: do not create more thread than available entries.
    threads_count = min(concurrency_limit, len(jobs))
    total_size = sum(request.size or 0 for request in jobs)

    jobs_queue: Queue = Queue()
    result_queue: Queue = Queue()

    for job in jobs:
        jobs_queue.put(job)
    # One sentinel per thread, consumed exactly once.
    for _ in range(threads_count):
        jobs_queue.put(None)

    watcher.handle(DownloadStartEvent(threads_count, len(jobs), total_size))

    threads: List[Thread] = []
    for th_id in range(threads_count):
        th = Thread(target=_download_thread_wrapper,
                    args=(th_id, jobs_queue, result_queue, store, cancel, timeout, max_attempts, backoff),
                    daemon=True,
                    name=f"Download Thread {th_id}")
        th.start()
        threads.append(th)

    results: List[DownloadResult] = []
    crash: Optional[_DownloadThreadCrash] = None

    while len(results) < len(jobs):
        result = result_queue.get()
        if isinstance(result, _DownloadThreadCrash):
            crash = result
            break
        results.append(result)
        watcher.handle(DownloadProgressEvent(result.thread_id, len(results), len(jobs), result))

    if crash is not None:
        raise RuntimeError(f"unexpected crash from download thread {crash.thread_id}") from crash.origin

    for th in threads:
        th.join()

    watcher.handle(DownloadCompleteEvent(results))
    return results


def required_failures(results: Iterable[DownloadResult]) -> List[DownloadResult]:
    """Return the failed results whose artifact is required to launch the game.
    """
    return [result for result in results if not result.ok and result.request.required]


def default_concurrency(entries_count: int) -> int:
    """Default number of download threads for the given number of entries.
    """
    return max(1, min(entries_count, (os.cpu_count() or 1) * 4))


class _DownloadThreadCrash:
    """Unexpected exception happening in a thread, this is the result of a bad logic
    from programmer.
    """
    __slots__ = "thread_id", "origin"
    def __init__(self, thread_id: int, origin: Exception) -> None:
        self.thread_id = thread_id
        self.origin = origin


def _download_thread_wrapper(thread_id: int, jobs_queue: Queue, result_queue: Queue, *args) -> None:
    """Wrapper for the download thread that ensures that any unexpected error sends a
    signal to the master to signal the crash.
    """
    try:
        _download_thread(thread_id, jobs_queue, result_queue, *args)
    except Exception as e:
        result_queue.put(_DownloadThreadCrash(thread_id, e))


class _TransientError(Exception):
    """Internal error for a failed attempt that can be retried.
    """
    def __init__(self, code: str, origin: Optional[Exception] = None) -> None:
        self.code = code
        self.origin = origin


class _FatalError(_TransientError):
    """Internal error for a failed attempt that must not be retried.
    """


def _download_thread(
    thread_id: int,
    jobs_queue: Queue,
    result_queue: Queue,
    store: ArtifactStore,
    cancel: Optional[Event],
    timeout: float,
    max_attempts: int,
    backoff: float
) -> None:
    """This function is internally used for multi-threaded download.

    :param jobs_queue: Where requests to download are received.
    :param result_queue: Where threads send their results.
    """

    # Cache for connections depending on host and https
    conn_cache: Dict[Tuple[bool, str, Optional[int]], Union[HTTPConnection, HTTPSConnection]] = {}
    ctx = ssl_context()

    # Each thread has its own buffer.
    buffer = memoryview(bytearray(65536))

    try:
        while True:

            request: Optional[ArtifactRequest] = jobs_queue.get()

            # None is a sentinel to stop the thread, it should be consumed ONCE.
            if request is None:
                break

            if cancel is not None and cancel.is_set():
                result_queue.put(DownloadResult(request, DownloadResult.FAILED,
                    reason=DownloadResult.CANCELLED, thread_id=thread_id))
                continue

            if store.has(request.path, request.sha1, request.size):
                result_queue.put(DownloadResult(request, DownloadResult.VERIFIED_CACHED, thread_id=thread_id))
                continue

            if request.url is None:
                result_queue.put(DownloadResult(request, DownloadResult.FAILED,
                    reason=DownloadResult.UNAVAILABLE, thread_id=thread_id))
                continue

            try:
                target = _Target(request.url)
            except ValueError as error:
                result_queue.put(DownloadResult(request, DownloadResult.FAILED,
                    reason=DownloadResult.UNSUPPORTED_URL, last_error=DownloadResult.UNSUPPORTED_URL,
                    origin=error, thread_id=thread_id))
                continue

            try_num = 0
            while True:

                try_num += 1

                try:
                    _download_attempt(request, target, store, conn_cache, ctx, buffer, timeout)
                    result_queue.put(DownloadResult(request, DownloadResult.SUCCESS,
                        attempts=try_num, thread_id=thread_id))
                    break
                except _FatalError as error:
                    result_queue.put(DownloadResult(request, DownloadResult.FAILED,
                        reason=error.code, last_error=error.code, attempts=try_num,
                        origin=error.origin, thread_id=thread_id))
                    break
                except _TransientError as error:

                    if try_num >= max_attempts:
                        result_queue.put(DownloadResult(request, DownloadResult.FAILED,
                            reason=DownloadResult.RETRY_EXHAUSTED, last_error=error.code,
                            attempts=try_num, origin=error.origin, thread_id=thread_id))
                        break

                    # Exponential backoff, interrupted by cancellation.
                    delay = backoff * (2 ** (try_num - 1))
                    if cancel is not None:
                        if cancel.wait(delay):
                            result_queue.put(DownloadResult(request, DownloadResult.FAILED,
                                reason=DownloadResult.CANCELLED, last_error=error.code,
                                attempts=try_num, origin=error.origin, thread_id=thread_id))
                            break
                    elif delay > 0:
                        time.sleep(delay)

    finally:
        for conn in conn_cache.values():
            conn.close()


def _download_attempt(
    request: ArtifactRequest,
    target: _Target,
    store: ArtifactStore,
    conn_cache: Dict[Tuple[bool, str, Optional[int]], Union[HTTPConnection, HTTPSConnection]],
    ctx,
    buffer: memoryview,
    timeout: float
) -> None:
    """A single download attempt, following redirections, the artifact is committed to
    the store only if fully downloaded and verified.

    :raises _TransientError: If the attempt failed but can be retried.
    :raises _FatalError: If the attempt failed and should not be retried.
    """

    deadline = time.monotonic() + timeout
    redirects = 0

    while True:

        conn_key = (target.https, target.host, target.port)
        conn = conn_cache.get(conn_key)

        # If there is no cached connection or the connection has been reset.
        if conn is None:
            if target.https:
                conn = HTTPSConnection(target.host, target.port, timeout=timeout, context=ctx)
            else:
                conn = HTTPConnection(target.host, target.port, timeout=timeout)
            conn_cache[conn_key] = conn

        try:

            conn.request("GET", target.target, headers={"User-Agent": USER_AGENT})
            res = conn.getresponse()

            if res.status != 200:

                # Skip all bytes in the stream to allow further requests.
                while res.readinto(buffer):
                    pass

                if res.status in (301, 302, 303, 307, 308):
                    redirects += 1
                    location = res.getheader("Location")
                    if location is None or redirects > 5:
                        raise _FatalError(DownloadResult.HTTP_STATUS)
                    try:
                        target = _Target(urllib.parse.urljoin(target.url, location))
                    except ValueError as e:
                        raise _FatalError(DownloadResult.HTTP_STATUS, e)
                    continue

                if res.status >= 500 or res.status == 429:
                    raise _TransientError(DownloadResult.HTTP_STATUS)
                raise _FatalError(DownloadResult.HTTP_STATUS)

            with store.writer(request.path, request.sha1, request.size) as writer:
                while True:
                    read_len = res.readinto(buffer)
                    if not read_len:
                        break
                    writer.write(buffer[:read_len])
                    if time.monotonic() > deadline:
                        raise socket.timeout("download attempt timed out")
                writer.commit()

            return

        except DigestMismatch as e:
            raise _TransientError(DownloadResult.DIGEST_MISMATCH, e)
        except SizeMismatch as e:
            raise _TransientError(DownloadResult.SIZE_MISMATCH, e)
        except (ConnectionError, OSError, HTTPException) as e:
            # On errors, we just throw away the old connection and create a new one.
            # Raw but efficient way of resetting the potentially broken state...
            conn.close()
            del conn_cache[conn_key]
            raise _TransientError(DownloadResult.NETWORK, e)
        except ValueError as e:
            # The request could not be encoded (non-ASCII host, invalid header), it
            # will fail the same way if retried. The connection may be mid-request.
            conn.close()
            del conn_cache[conn_key]
            raise _FatalError(DownloadResult.NETWORK, e)


class DownloadError(Exception):
    """Raised when required artifacts failed to download, the failed results are given.
    """
    def __init__(self, results: List[DownloadResult]) -> None:
        self.results = results

    def __str__(self) -> str:
        return ", ".join(f"{r.request.name} ({r.reason}/{r.last_error})" for r in self.results)


class DownloadStartEvent:
    __slots__ = "threads_count", "entries_count", "size"
    def __init__(self, threads_count: int, entries_count: int, size: int) -> None:
        self.threads_count = threads_count
        self.entries_count = entries_count
        self.size = size

class DownloadProgressEvent:
    __slots__ = "thread_id", "count", "total", "result"
    def __init__(self, thread_id: int, count: int, total: int, result: DownloadResult) -> None:
        self.thread_id = thread_id
        self.count = count
        self.total = total
        self.result = result

class DownloadCompleteEvent:
    __slots__ = "results",
    def __init__(self, results: List[DownloadResult]) -> None:
        self.results = results
