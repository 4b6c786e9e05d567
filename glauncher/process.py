"""Supervision of the game's process.

The game is spawned with its standard output and error piped into a reader thread,
the lines are parsed, as log4j XML events when the game uses the XML layout, and
given to the subscribers of the process handle.
"""

from subprocess import Popen, PIPE, STDOUT, TimeoutExpired
from threading import Thread, Lock
from pathlib import Path
import xml.etree.ElementTree as ET
import shutil

from .assemble import LaunchSpec
from .watcher import Watcher

from typing import Optional, Dict, List, Callable, Any


class ProcessSupervisor:
    """Spawns games and keeps track of the running ones, only one game can run at a time
    in a given working directory.
    """

    def __init__(self, *, watcher: Optional[Watcher] = None) -> None:
        self.watcher = watcher or Watcher()
        self._running: Dict[Path, "ProcessHandle"] = {}
        self._lock = Lock()

    def launch(self, spec: LaunchSpec, *, subscribers: Optional[List[Callable[[Any], None]]] = None) -> "ProcessHandle":
        """Spawn the game described by the given launch spec.

        :param subscribers: Callbacks subscribed before the first line is read.
        :raises InstanceAlreadyRunning: If a game is already running in the same
        working directory.
        :raises SpawnError: If the process cannot be started.
        """

        work_dir = spec.work_dir.absolute()

        with self._lock:

            running = self._running.get(work_dir)
            if running is not None and running.is_alive():
                raise InstanceAlreadyRunning(work_dir)

            work_dir.mkdir(parents=True, exist_ok=True)

            try:
                process = Popen(spec.args(), cwd=work_dir,
                    stdout=PIPE, stderr=STDOUT,
                    bufsize=1, universal_newlines=True,
                    encoding="utf-8", errors="replace")
            except OSError as error:
                # Covers a missing executable as well as a permission error.
                if spec.natives_dir is not None:
                    shutil.rmtree(spec.natives_dir, ignore_errors=True)
                raise SpawnError(spec.executable, error)

            handle = ProcessHandle(process, spec, subscribers, watcher=self.watcher)
            self._running[work_dir] = handle

        self.watcher.handle(ProcessStartedEvent(handle))
        handle._start()
        return handle

    def running(self) -> List["ProcessHandle"]:
        """Return the handles of all games still running.
        """
        with self._lock:
            return [handle for handle in self._running.values() if handle.is_alive()]


class ProcessHandle:
    """Handle to a running game, its output can be subscribed to and its state can be
    queried without blocking.
    """

    def __init__(self, process: Popen, spec: LaunchSpec,
        subscribers: Optional[List[Callable[[Any], None]]] = None, *,
        watcher: Optional[Watcher] = None
    ) -> None:
        self.process = process
        self.spec = spec
        self.terminated = False
        self.watcher = watcher or Watcher()
        self._subscribers: List[Callable[[Any], None]] = list(subscribers or ())
        self._subscribers_lock = Lock()
        self._thread = Thread(target=self._stream_thread,
            name=f"Game Stream Thread {process.pid}",
            daemon=True)

    def _start(self) -> None:
        self._thread.start()

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def exit_code(self) -> Optional[int]:
        """The exit code of the process, none while it is alive.
        """
        return self.process.poll()

    def poll(self) -> Optional[int]:
        return self.process.poll()

    def is_alive(self) -> bool:
        """True while the process is running or its output is not fully consumed.
        """
        return self.process.poll() is None or self._thread.is_alive()

    def subscribe(self, callback: Callable[[Any], None]) -> None:
        """Subscribe to the output of the game, the callback receives plain lines or
        `Log4jEvent`, from the reader thread. A callback raising an exception doesn't
        stop the stream, the error is reported to the watcher.
        """
        with self._subscribers_lock:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[Any], None]) -> None:
        with self._subscribers_lock:
            self._subscribers.remove(callback)

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        """Wait for the process to exit and its output to be consumed.

        :return: The exit code, or none if the timeout expired.
        """
        try:
            code = self.process.wait(timeout)
        except TimeoutExpired:
            return None
        self._thread.join(timeout)
        return code

    def terminate(self) -> None:
        """Terminate the game if still running, the outcome is then reported as
        `Terminated`. Has no effect on a game that already exited.
        """
        if self.process.poll() is None:
            self.terminated = True
            self.process.terminate()

    def kill(self) -> None:
        if self.process.poll() is None:
            self.terminated = True
            self.process.kill()

    def outcome(self) -> Optional[int]:
        """Return the outcome of the exited game.

        :return: None if the game is still alive, the exit code (0) if it exited
        normally.
        :raises Terminated: If the game was terminated by the user.
        :raises CrashExit: If the game exited with a non-zero code.
        """
        code = self.process.poll()
        if code is None:
            return None
        if self.terminated:
            raise Terminated(code)
        if code != 0:
            raise CrashExit(code)
        return code

    def _dispatch(self, event: Any) -> None:
        with self._subscribers_lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception as error:
                self.watcher.handle(SubscriberErrorEvent(self, callback, error))

    def _stream_thread(self) -> None:

        stdout = self.process.stdout
        assert stdout is not None, "should not be none because it should be piped"

        try:
            parser: Optional[StreamParser] = None
            for line in iter(stdout.readline, ""):

                if parser is None:
                    parser = Log4jStreamParser() if Log4jStreamParser.accepts(line) else StreamParser()

                events = parser.feed(line)
                if events is None:
                    # Not well-formed log4j output, the rest is read as plain lines.
                    parser = StreamParser()
                    events = parser.feed(line)

                for event in events:
                    self._dispatch(event)

        finally:
            stdout.close()
            self.process.wait()
            # Shared libraries are extracted for a single launch.
            if self.spec.natives_dir is not None:
                shutil.rmtree(self.spec.natives_dir, ignore_errors=True)

    def __repr__(self) -> str:
        return f"<ProcessHandle {self.process.pid} {self.spec.main_class}>"


class StreamParser:
    """Parser of the game's output, fed line by line. This one gives back each line
    without its terminator.
    """

    def feed(self, line: str) -> Optional[List[Any]]:
        """Feed a line of output.

        :return: The events completed by this line, or none if the line cannot be
        parsed by this parser.
        """
        return [line.rstrip("\r\n")]


class Log4jStreamParser(StreamParser):
    """Parser of the log4j XML layout used by the game's default logger configuration,
    each `log4j:Event` element gives a `Log4jEvent` once closed.
    """

    _NS = "{log4j}"

    def __init__(self) -> None:
        self._xml = ET.XMLPullParser(["start", "end"])
        # The output is a sequence of elements without root, one is opened here.
        self._xml.feed("<?xml version=\"1.0\"?><root xmlns:log4j=\"log4j\">")
        self._root: Optional[ET.Element] = None
        self._pending: Optional[Log4jEvent] = None

    @staticmethod
    def accepts(line: str) -> bool:
        return line.lstrip().startswith("<log4j:")

    def feed(self, line: str) -> Optional[List[Any]]:
        events = []
        try:
            self._xml.feed(line)
            for kind, elem in self._xml.read_events():
                if elem.tag == "root":
                    self._root = elem
                elif elem.tag == f"{self._NS}Event":
                    if kind == "start":
                        self._pending = Log4jEvent.from_attrib(elem.attrib)
                    elif self._pending is not None:
                        events.append(self._pending)
                        self._pending = None
                        # Completed events are dropped from the tree.
                        if self._root is not None:
                            self._root.remove(elem)
                elif kind == "end" and self._pending is not None:
                    if elem.tag == f"{self._NS}Message":
                        self._pending.message = elem.text
                    elif elem.tag == f"{self._NS}Throwable":
                        self._pending.throwable = elem.text
        except (ET.ParseError, KeyError, ValueError):
            return None
        return events


class Log4jEvent:
    """A log event of the game, the time is in seconds since the epoch.
    """

    __slots__ = "time", "logger", "level", "thread", "message", "throwable"

    def __init__(self, time: float, logger: str, level: str, thread: str,
        message: Optional[str] = None,
        throwable: Optional[str] = None
    ) -> None:
        self.time = time
        self.logger = logger
        self.level = level
        self.thread = thread
        self.message = message
        self.throwable = throwable

    @classmethod
    def from_attrib(cls, attrib: Dict[str, str]) -> "Log4jEvent":
        """Build an event, without message, from the attributes of a `log4j:Event`.

        :raises KeyError: If an attribute is missing.
        :raises ValueError: If the timestamp is not an integer of milliseconds.
        """
        return cls(int(attrib["timestamp"]) / 1000.0, attrib["logger"], attrib["level"], attrib["thread"])

    def __repr__(self) -> str:
        return f"<Log4jEvent {self.level} [{self.thread}] {self.logger}: {self.message!r}>"


class SpawnError(Exception):
    """Raised when the game's executable cannot be started.
    """
    def __init__(self, executable: Path, origin: OSError) -> None:
        self.executable = executable
        self.origin = origin

    def __str__(self) -> str:
        return f"{self.executable}: {self.origin}"

class CrashExit(Exception):
    """Raised when the game exited with a non-zero code without being terminated.
    """
    def __init__(self, code: int) -> None:
        self.code = code

    def __str__(self) -> str:
        return f"exit code {self.code}"

class Terminated(Exception):
    """Raised when the game exited because it was terminated by the user.
    """
    def __init__(self, code: int) -> None:
        self.code = code

    def __str__(self) -> str:
        return f"terminated, exit code {self.code}"

class InstanceAlreadyRunning(Exception):
    """Raised when launching a game in a working directory where one is running.
    """
    def __init__(self, work_dir: Path) -> None:
        self.work_dir = work_dir

    def __str__(self) -> str:
        return str(self.work_dir)


class ProcessStartedEvent:
    __slots__ = "handle",
    def __init__(self, handle: ProcessHandle) -> None:
        self.handle = handle

class SubscriberErrorEvent:
    """Event triggered when a subscriber of a game's output raised an exception.
    """
    __slots__ = "handle", "callback", "error"
    def __init__(self, handle: ProcessHandle, callback: Callable[[Any], None], error: Exception) -> None:
        self.handle = handle
        self.callback = callback
        self.error = error
