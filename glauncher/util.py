"""Global utilities used internally. The functions can be used externally but upward
compatibility is not guaranteed unless explicitly specified.
"""

from datetime import datetime
from pathlib import Path
import platform
import hashlib

from typing import Optional, Tuple


jvm_bin_filename = "javaw.exe" if platform.system() == "Windows" else "java"


def calc_input_sha1(input_stream, *, buffer_len: int = 8192) -> str:
    """Internal function to calculate the sha1 of an input stream.

    :param input_stream: The input stream that supports `readinto`.
    :param buffer_len: Internal buffer length, defaults to 8192
    :return: The sha1 string.
    """
    h = hashlib.sha1()
    b = bytearray(buffer_len)
    mv = memoryview(b)
    for n in iter(lambda: input_stream.readinto(mv), 0):
        h.update(mv[:n])
    return h.hexdigest()


def calc_file_sha1(file: Path) -> Optional[str]:
    """Calculate the sha1 of a file, returning none if the file cannot be read.
    """
    try:
        with file.open("rb") as fp:
            return calc_input_sha1(fp, buffer_len=65536)
    except OSError:
        return None


def from_iso_date(raw: str) -> datetime:
    """Parse an ISO date as found in version metadata, the trailing 'Z' used by some
    loader APIs is accepted as UTC.
    """
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    return datetime.fromisoformat(raw)


class LibrarySpecifier:
    """A maven-style library specifier.
    """

    __slots__ = "group", "artifact", "version", "classifier", "extension"

    def __init__(self, group: str, artifact: str, version: str, classifier: Optional[str] = None, extension: str = "jar"):
        self.group = group
        self.artifact = artifact
        self.version = version
        self.classifier = classifier
        self.extension = extension

    @classmethod
    def from_str(cls, s: str) -> "LibrarySpecifier":
        """Parse a library specifier string 'group:artifact:version[:classifier][@ext]'.
        """

        ext_split = s.rsplit("@", maxsplit=1)
        ext = "jar" if len(ext_split) == 1 else ext_split[1]

        if not len(ext):
            raise ValueError("invalid library specifier: empty extension")

        parts = ext_split[0].split(":", 3)

        if len(parts) < 3 or not all(parts):
            raise ValueError("invalid library specifier: too few parts")
        else:
            return LibrarySpecifier(parts[0], parts[1], parts[2], parts[3] if len(parts) == 4 else None, ext)

    def with_classifier(self, classifier: Optional[str]) -> "LibrarySpecifier":
        """Return a copy of this specifier with another classifier.
        """
        return LibrarySpecifier(self.group, self.artifact, self.version, classifier, self.extension)

    def key(self) -> Tuple[str, str, Optional[str], str]:
        """Return the key identifying this library regardless of its version, two
        libraries with the same key are considered as the same library when merging
        versions, the classifier is part of the key so that native variants of a
        library are not confused with its main artifact.
        """
        return self.group, self.artifact, self.classifier, self.extension

    def __str__(self) -> str:
        return f"{self.group}:{self.artifact}:{self.version}" + \
            ("" if self.classifier is None else f":{self.classifier}") + \
            ("" if self.extension == "jar" else f"@{self.extension}")

    def __eq__(self, other) -> bool:
        return isinstance(other, LibrarySpecifier) and \
            (self.group, self.artifact, self.version, self.classifier, self.extension) == \
            (other.group, other.artifact, other.version, other.classifier, other.extension)

    def __repr__(self) -> str:
        return f"<LibrarySpecifier {self}>"

    def __hash__(self) -> int:
        return hash((self.group, self.artifact, self.version, self.classifier, self.extension))

    def file_path(self) -> str:
        """Return the standard path to store the file of this specifier.

        The path separator will always be forward slashes '/', because it's compatible
        with linux/mac/windows and URL paths.

        Specifier `com.foo.bar:artifact:version@zip` gives
        `com/foo/bar/artifact/version/artifact-version.zip`.
        """

        file_name = f"{self.artifact}-{self.version}" + \
            ("" if self.classifier is None else f"-{self.classifier}") + \
            f".{self.extension}"

        return "/".join([*self.group.split("."), self.artifact, self.version, file_name])
