"""Content-verified artifact store. Artifacts are addressed by a path relative to the
store's root and are only trusted if their SHA-1 digest matches the expected one.

Every write goes through a temporary file placed beside its destination, the file is
renamed into place only once fully written and verified, so that concurrent readers
or writers of the same destination can never observe a partially written artifact.
"""

from pathlib import Path
from uuid import uuid4
import hashlib
import os

from .util import calc_file_sha1

from typing import Optional, Union


PathLike = Union[str, Path]


class ArtifactStore:
    """An artifact store rooted at a directory.
    """

    def __init__(self, root: Path) -> None:
        self.root = root

    def resolve(self, path: PathLike) -> Path:
        """Return the absolute path of an artifact given its path relative to the root.
        Absolute paths are returned as-is.
        """
        return (self.root / path).absolute()

    def has(self, path: PathLike, digest: Optional[str], size: Optional[int] = None) -> bool:
        """Return true if the artifact is present and valid. When a digest is given, the
        file's content is hashed and compared, the modification time is never trusted.
        Without digest, only the existence and the optional size are checked.
        """

        file = self.resolve(path)

        try:
            stat = file.stat()
        except OSError:
            return False

        if not file.is_file():
            return False
        if size is not None and stat.st_size != size:
            return False
        if digest is None:
            return True

        return calc_file_sha1(file) == digest.lower()

    def commit(self, path: PathLike, data: bytes, digest: Optional[str], size: Optional[int] = None) -> Path:
        """Commit the given bytes at the given path, only if they match the digest.

        :raises IntegrityError: If the data doesn't match the expected size or digest,
        nothing is written in such case.
        :return: The absolute path of the committed artifact.
        """
        with self.writer(path, digest, size) as writer:
            writer.write(data)
            return writer.commit()

    def writer(self, path: PathLike, digest: Optional[str] = None, size: Optional[int] = None) -> "ArtifactWriter":
        """Open a streaming writer for the given artifact, this writer should be used as
        a context manager, if it's not committed before exiting, the temporary file is
        discarded.
        """
        return ArtifactWriter(self.resolve(path), digest, size)


class ArtifactWriter:
    """Streaming writer to a temporary file that is atomically renamed to its
    destination on successful commit.
    """

    __slots__ = "dst", "digest", "size", "tmp", "written", "_sha1", "_fp"

    def __init__(self, dst: Path, digest: Optional[str], size: Optional[int]) -> None:
        self.dst = dst
        self.digest = None if digest is None else digest.lower()
        self.size = size
        self.tmp = dst.with_name(f".{dst.name}.{uuid4().hex}.part")
        self.written = 0
        self._sha1 = hashlib.sha1()
        self._fp = None

    def __enter__(self) -> "ArtifactWriter":
        self.dst.parent.mkdir(parents=True, exist_ok=True)
        self._fp = self.tmp.open("xb")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.abort()

    def write(self, data) -> None:
        assert self._fp is not None, "writer is not opened"
        self._fp.write(data)
        self._sha1.update(data)
        self.written += len(data)

    def commit(self) -> Path:
        """Verify the written content and rename the temporary file to its destination.

        :raises SizeMismatch: If the written size is not the expected one.
        :raises DigestMismatch: If the written content's digest is not the expected one.
        """

        assert self._fp is not None, "writer is not opened"
        self._fp.close()
        self._fp = None

        if self.size is not None and self.written != self.size:
            raise SizeMismatch(self.dst, self.size, self.written)

        actual = self._sha1.hexdigest()
        if self.digest is not None and actual != self.digest:
            raise DigestMismatch(self.dst, self.digest, actual)

        # The temporary file is a sibling, so both are on the same volume.
        os.replace(self.tmp, self.dst)
        return self.dst

    def abort(self) -> None:
        """Discard the temporary file if not already committed.
        """
        if self._fp is not None:
            self._fp.close()
            self._fp = None
        try:
            self.tmp.unlink()
        except FileNotFoundError:
            pass


class IntegrityError(Exception):
    """Base class for errors raised when some content doesn't match its expectation.
    """

    def __init__(self, path: Path, expected, actual) -> None:
        self.path = path
        self.expected = expected
        self.actual = actual

    def __str__(self) -> str:
        return f"{self.path}: expected {self.expected}, got {self.actual}"


class DigestMismatch(IntegrityError):
    """Raised when the SHA-1 of some content doesn't match the expected one.
    """


class SizeMismatch(IntegrityError):
    """Raised when the size of some content doesn't match the expected one.
    """
