from pathlib import Path
import sys
import pytest

from glauncher.assemble import LaunchSpec
from glauncher.process import ProcessSupervisor, SpawnError, CrashExit, Terminated, \
    InstanceAlreadyRunning, StreamParser, Log4jStreamParser, Log4jEvent, SubscriberErrorEvent
from glauncher.watcher import SimpleWatcher


def _spec(work_dir: Path, script: str, natives_dir=None) -> LaunchSpec:
    # The Python interpreter stands for the Java runtime, running the given script.
    return LaunchSpec(work_dir, Path(sys.executable), ["-c"], [], script, [], natives_dir)


def test_launch_output(tmp_path):

    lines = []
    supervisor = ProcessSupervisor()
    handle = supervisor.launch(_spec(tmp_path, "print('hello'); print('world')"), subscribers=[lines.append])

    assert handle.wait(30) == 0
    assert handle.exit_code == 0
    assert handle.outcome() == 0
    assert not handle.is_alive()
    assert lines == ["hello", "world"]


def test_launch_crash(tmp_path):

    handle = ProcessSupervisor().launch(_spec(tmp_path, "import sys; sys.exit(3)"))
    assert handle.wait(30) == 3

    with pytest.raises(CrashExit) as error:
        handle.outcome()
    assert error.value.code == 3


def test_launch_terminate(tmp_path):

    handle = ProcessSupervisor().launch(_spec(tmp_path, "import time; time.sleep(60)"))
    assert handle.is_alive()
    assert handle.outcome() is None
    assert handle.wait(0.1) is None

    handle.terminate()
    handle.wait(30)

    with pytest.raises(Terminated):
        handle.outcome()


def test_launch_one_per_instance(tmp_path):

    supervisor = ProcessSupervisor()
    handle = supervisor.launch(_spec(tmp_path, "import time; time.sleep(60)"))

    try:
        with pytest.raises(InstanceAlreadyRunning):
            supervisor.launch(_spec(tmp_path, "pass"))
        # Other instances are not affected.
        other = supervisor.launch(_spec(tmp_path / "other", "pass"))
        assert other.wait(30) == 0
    finally:
        handle.kill()
        handle.wait(30)

    # Once exited, the instance can be launched again.
    assert supervisor.launch(_spec(tmp_path, "pass")).wait(30) == 0


def test_launch_spawn_error(tmp_path):

    natives_dir = tmp_path / "natives"
    natives_dir.mkdir()

    spec = LaunchSpec(tmp_path, tmp_path / "missing" / "java", [], [], "Main", [], natives_dir)
    with pytest.raises(SpawnError):
        ProcessSupervisor().launch(spec)
    assert not natives_dir.exists()


def test_natives_removed(tmp_path):

    natives_dir = tmp_path / "natives"
    natives_dir.mkdir()
    (natives_dir / "liblwjgl.so").write_bytes(b"")

    handle = ProcessSupervisor().launch(_spec(tmp_path, "pass", natives_dir))
    handle.wait(30)
    assert not natives_dir.exists()


def test_launch_xml_log(tmp_path):

    script = "\n".join([
        "print('<log4j:Event logger=\"net.minecraft.client.Minecraft\" timestamp=\"1687000000000\" level=\"INFO\" thread=\"Render thread\">')",
        "print('  <log4j:Message><![CDATA[Setting user: Player]]></log4j:Message>')",
        "print('</log4j:Event>')",
    ])

    events = []
    handle = ProcessSupervisor().launch(_spec(tmp_path, script), subscribers=[events.append])
    handle.wait(30)

    assert len(events) == 1
    event = events[0]
    assert isinstance(event, Log4jEvent)
    assert event.logger == "net.minecraft.client.Minecraft"
    assert event.level == "INFO"
    assert event.thread == "Render thread"
    assert event.time == 1687000000.0
    assert event.message == "Setting user: Player"


def test_log4j_parser():

    parser = Log4jStreamParser()
    assert Log4jStreamParser.accepts("  <log4j:Event logger=\"a\">\n")
    assert not Log4jStreamParser.accepts("[12:00:00] [main/INFO]: hello\n")

    assert parser.feed("<log4j:Event logger=\"a\" timestamp=\"1500\" level=\"WARN\" thread=\"main\">\n") == []
    assert parser.feed("<log4j:Throwable><![CDATA[java.lang.Error]]></log4j:Throwable>\n") == []
    events = parser.feed("</log4j:Event>\n")
    assert len(events) == 1
    assert events[0].level == "WARN"
    assert events[0].time == 1.5
    assert events[0].message is None
    assert events[0].throwable == "java.lang.Error"

    # Malformed output cannot be parsed anymore.
    assert parser.feed("</not-opened>\n") is None

    assert StreamParser().feed("plain line\r\n") == ["plain line"]


def test_log4j_parser_missing_attribute():
    assert Log4jStreamParser().feed("<log4j:Event logger=\"a\" level=\"INFO\" thread=\"main\">\n") is None


def test_launch_log_fallback(tmp_path):

    script = "\n".join([
        "print('<log4j:Event logger=\"a\" timestamp=\"0\" level=\"INFO\" thread=\"main\">')",
        "print('</log4j:Event>')",
        "print('</broken>')",
        "print('plain')",
    ])

    received = []
    handle = ProcessSupervisor().launch(_spec(tmp_path, script), subscribers=[received.append])
    assert handle.wait(30) == 0

    assert len(received) == 3
    assert isinstance(received[0], Log4jEvent)
    assert received[1:] == ["</broken>", "plain"]

def test_subscribe(tmp_path):

    early, late = [], []
    handle = ProcessSupervisor().launch(_spec(tmp_path, "import time; time.sleep(1); print('ready')"),
        subscribers=[early.append])
    handle.subscribe(late.append)
    handle.unsubscribe(early.append)

    assert handle.wait(30) == 0
    assert early == []
    assert late == ["ready"]
    assert handle.pid > 0


def test_terminate_after_exit(tmp_path):

    handle = ProcessSupervisor().launch(_spec(tmp_path, "pass"))
    assert handle.wait(30) == 0

    handle.terminate()
    handle.kill()
    assert not handle.terminated
    assert handle.outcome() == 0

    crashed = ProcessSupervisor().launch(_spec(tmp_path / "crash", "import sys; sys.exit(2)"))
    assert crashed.wait(30) == 2
    crashed.terminate()
    with pytest.raises(CrashExit):
        crashed.outcome()


def test_subscriber_error(tmp_path):

    def failing(line):
        raise RuntimeError(line)

    lines = []
    errors = []
    supervisor = ProcessSupervisor(watcher=SimpleWatcher({
        SubscriberErrorEvent: errors.append
    }))

    handle = supervisor.launch(_spec(tmp_path, "print('a'); print('b')"), subscribers=[failing, lines.append])
    assert handle.wait(30) == 0

    assert lines == ["a", "b"]
    assert len(errors) == 2
    assert errors[0].handle is handle
    assert errors[0].callback is failing
    assert str(errors[0].error) == "a"
