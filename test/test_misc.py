import pytest


def test_sha1():

    from glauncher.util import calc_input_sha1
    from io import BytesIO

    assert calc_input_sha1(BytesIO(b"hello world!")) == "430ce34d020724ed75a196dfc2ad67c77772d169"
    assert calc_input_sha1(BytesIO(b"hello world!"), buffer_len=2) == "430ce34d020724ed75a196dfc2ad67c77772d169"


def test_file_sha1(tmp_path):

    from glauncher.util import calc_file_sha1

    file = tmp_path / "hello.txt"
    file.write_bytes(b"hello world!")
    assert calc_file_sha1(file) == "430ce34d020724ed75a196dfc2ad67c77772d169"
    assert calc_file_sha1(tmp_path / "missing.txt") is None


def test_iso_date():

    from glauncher.util import from_iso_date
    from datetime import datetime, timezone, timedelta

    date = from_iso_date("2022-06-23T17:01:27+00:00")
    assert date == datetime(2022, 6, 23, 17, 1, 27, 0, timezone(timedelta()))

    date = from_iso_date("2012-03-01T22:00:00+05:00")
    assert date == datetime(2012, 3, 1, 22, 0, 0, 0, timezone(timedelta(hours=5)))

    date = from_iso_date("2023-06-12T13:25:51Z")
    assert date == datetime(2023, 6, 12, 13, 25, 51, 0, timezone.utc)


def test_library_specifier():

    from glauncher.util import LibrarySpecifier

    spec = LibrarySpecifier.from_str("net.fabricmc:fabric-loader:0.14.21")
    assert (spec.group, spec.artifact, spec.version, spec.classifier, spec.extension) == \
        ("net.fabricmc", "fabric-loader", "0.14.21", None, "jar")
    assert str(spec) == "net.fabricmc:fabric-loader:0.14.21"
    assert spec.file_path() == "net/fabricmc/fabric-loader/0.14.21/fabric-loader-0.14.21.jar"

    spec = LibrarySpecifier.from_str("org.lwjgl:lwjgl:3.3.1:natives-linux@zip")
    assert spec.classifier == "natives-linux" and spec.extension == "zip"
    assert str(spec) == "org.lwjgl:lwjgl:3.3.1:natives-linux@zip"
    assert spec.file_path() == "org/lwjgl/lwjgl/3.3.1/lwjgl-3.3.1-natives-linux.zip"

    assert spec == LibrarySpecifier.from_str(str(spec))
    assert spec.with_classifier(None).key() == ("org.lwjgl", "lwjgl", None, "zip")
    assert spec.key() != spec.with_classifier(None).key()

    for invalid in ("foo", "foo:bar", "foo::1.0", "foo:bar:1.0@"):
        with pytest.raises(ValueError):
            LibrarySpecifier.from_str(invalid)


def test_offline_session():

    from glauncher.auth import OfflineSession

    session = OfflineSession("Notch")
    assert session.username == "Notch"
    assert len(session.uuid) == 32
    assert session.uuid == OfflineSession("Notch").uuid
    assert session.uuid != OfflineSession("jeb_").uuid
    assert session.format_token_argument(False) == ""
    assert session.valid

    session = OfflineSession(None, "0123456789abcdef0123456789abcdef")
    assert session.username == "01234567"

    assert len(OfflineSession("a" * 20).username) == 16


def test_session_token():

    from glauncher.auth import Session
    from datetime import datetime, timezone, timedelta

    session = Session("Player", "0123456789abcdef0123456789abcdef", "secret")
    assert session.format_token_argument(False) == "secret"
    assert session.format_token_argument(True) == "token:secret:0123456789abcdef0123456789abcdef"
    assert session.valid

    expired = Session("Player", "0123", "secret", expires_at=datetime.now(timezone.utc) - timedelta(minutes=1))
    assert not expired.valid


def test_watchers():

    from glauncher.watcher import WatcherGroup, SimpleWatcher

    received = []
    group = WatcherGroup()
    group.add(SimpleWatcher({int: received.append}))
    group.handle(42)
    group.handle("ignored")
    assert received == [42]
