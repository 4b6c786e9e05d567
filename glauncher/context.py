"""Context of the game's installation and runtime.
"""

from pathlib import Path
from uuid import uuid4
import platform

from .store import ArtifactStore

from typing import Optional


class Context:
    """Context of the game's installation and runtime. This defines various directories
    where versions, assets and libraries are stored, as well as a bin directory for
    temporary runtime files, and also a working directory from where the game will run.

    The main directory is the root of the artifact store, every artifact request is
    expressed relatively to it.
    """

    def __init__(self,
        main_dir: Optional[Path] = None,
        work_dir: Optional[Path] = None
    ) -> None:
        """Construct a game installation context.

        Note that these paths can perfectly be relative paths, they are computed to
        absolute paths when needed. By default they will be resolved relatively to the
        current working directory.

        :param main_dir: The main directory where versions, assets and libraries are
        installed. If not specified this path will be set to the usual `.minecraft`.
        :param work_dir: The working directory from where the game is run, the game
        stores things like saves, resource packs, options and mods if relevant. This
        defaults to `main_dir` if not specified.
        """

        main_dir = get_minecraft_dir() if main_dir is None else main_dir
        self.main_dir = main_dir
        self.work_dir = main_dir if work_dir is None else work_dir
        self.versions_dir = main_dir / "versions"
        self.assets_dir = main_dir / "assets"
        self.libraries_dir = main_dir / "libraries"
        self.bin_dir = self.work_dir / "bin"

    def store(self) -> ArtifactStore:
        """Return the artifact store rooted at the main directory.
        """
        return ArtifactStore(self.main_dir)

    def version_dir(self, version: str) -> Path:
        return self.versions_dir / version

    def version_metadata_file(self, version: str) -> Path:
        return self.version_dir(version) / f"{version}.json"

    def gen_bin_dir(self) -> Path:
        """Generate a random named binary directory, used for the shared libraries
        extracted for a single launch. Note that this directory isn't created by this
        method, only its path is returned.
        """
        return self.bin_dir / str(uuid4())


def get_minecraft_dir() -> Path:
    """Internal function to get the default directory for installing and running the
    game.
    """
    home = Path.home()
    return {
        "Windows": home.joinpath("AppData", "Roaming", ".minecraft"),
        "Darwin": home.joinpath("Library", "Application Support", "minecraft"),
    }.get(platform.system(), home / ".minecraft")
