"""Repository of Fabric/Quilt mod loader versions, their metadata are provided by the
loaders' APIs and inherit from a vanilla version.
"""

import json

from .manifest import VersionRepository, ManifestNotFound, ManifestInvalid
from .http import http_request, HttpError
from .watcher import Watcher
from .context import Context

from typing import Optional, Any, Iterator, Tuple


class FabricApiLoader:
    """This class describes a loader returned from the fabric API.
    """
    __slots__ = "version", "stable"
    def __init__(self, version: str, stable: bool) -> None:
        self.version = version
        self.stable = stable


class FabricApi:
    """This class is internally used to defined two constant for both official Fabric
    backend API and Quilt API which have the same endpoints. So we use the same logic
    for both mod loaders.
    """

    def __init__(self, name: str, api_url: str) -> None:
        self.name = name
        self.api_url = api_url

    def request_fabric_meta(self, method: str) -> Any:
        """Generic HTTP request to the fabric's REST API.
        """
        return http_request("GET", f"{self.api_url}{method}", accept="application/json").json()

    def request_version_loader_profile(self, vanilla_version: str, loader_version: str) -> dict:
        """Return the version profile for the given vanilla version and loader.
        """
        return self.request_fabric_meta(f"versions/loader/{vanilla_version}/{loader_version}/profile/json")

    def request_loaders(self, vanilla_version: Optional[str] = None) -> Iterator[FabricApiLoader]:
        """Return an iterator of loaders available for the given vanilla version, if no
        vanilla version is specified, this returned an iterator of all loaders.
        """

        def map_loader(obj) -> FabricApiLoader:
            return FabricApiLoader(str(obj.get("version", "")), bool(obj.get("stable", False)))

        if vanilla_version is not None:
            loaders = self.request_fabric_meta(f"versions/loader/{vanilla_version}")
            return map(lambda obj: map_loader(obj["loader"]), loaders)
        else:
            return map(map_loader, self.request_fabric_meta("versions/loader"))

    def request_latest_loader(self, vanilla_version: Optional[str] = None) -> Optional[FabricApiLoader]:
        """Return the latest loader version for the given vanilla version, if no vanilla
        version is specified, this return the latest loader.
        """
        try:
            return next(self.request_loaders(vanilla_version))
        except StopIteration:
            return None


FABRIC_API = FabricApi("fabric", "https://meta.fabricmc.net/v2/")
QUILT_API = FabricApi("quilt", "https://meta.quiltmc.org/v3/")


class FabricRepository(VersionRepository):
    """Repository serving versions named `<prefix>-<vanilla>-<loader>` from a loader's
    API, other versions are loaded from the given vanilla repository. Fetched profiles
    are cached in the context's versions directory when a context is given.
    """

    def __init__(self, api: FabricApi, vanilla: VersionRepository, context: Optional[Context] = None, *,
        prefix: Optional[str] = None,
        watcher: Optional[Watcher] = None
    ) -> None:
        self.api = api
        self.vanilla = vanilla
        self.context = context
        self.prefix = api.name if prefix is None else prefix
        self.watcher = watcher or Watcher()

    def version_id(self, vanilla_version: str, loader_version: Optional[str] = None) -> str:
        """Return the id of the loader version for the given vanilla version, the latest
        loader is requested if not specified.

        :raises ManifestNotFound: If no loader exists for the vanilla version.
        """

        if loader_version is None:

            self.watcher.handle(FabricResolveEvent(self.api, vanilla_version, None))

            try:
                loader = self.api.request_latest_loader(vanilla_version)
            except HttpError as error:
                if error.res.status not in (404, 400):
                    raise ManifestNotFound(f"{self.prefix}-{vanilla_version}-???", error)
                loader = None

            if loader is None:
                raise ManifestNotFound(f"{self.prefix}-{vanilla_version}-???")

            loader_version = loader.version
            self.watcher.handle(FabricResolveEvent(self.api, vanilla_version, loader_version))

        return f"{self.prefix}-{vanilla_version}-{loader_version}"

    def split_version_id(self, version_id: str) -> Optional[Tuple[str, str]]:
        """Split a version id of this repository into its vanilla and loader versions,
        none if the id is not one of this repository.
        """
        if not version_id.startswith(f"{self.prefix}-"):
            return None
        # Both versions may contain dashes (1.20-pre1, 0.20.0-beta.11), the loader
        # version is the last part starting with a digit.
        rest = version_id[len(self.prefix) + 1:]
        idx = len(rest)
        while True:
            idx = rest.rfind("-", 0, idx)
            if idx <= 0:
                return None
            loader_version = rest[idx + 1:]
            if len(loader_version) and loader_version[0].isdigit():
                return rest[:idx], loader_version

    def load(self, version_id: str) -> dict:

        split = self.split_version_id(version_id)
        if split is None:
            return self.vanilla.load(version_id)

        vanilla_version, loader_version = split

        if self.context is not None:
            try:
                with self.context.version_metadata_file(version_id).open("rt", encoding="utf-8") as fp:
                    return json.load(fp)
            except (OSError, json.JSONDecodeError):
                pass

        try:
            data = self.api.request_version_loader_profile(vanilla_version, loader_version)
        except HttpError as error:
            # Correct error if the error is just a not found.
            raise ManifestNotFound(version_id, None if error.res.status in (404, 400) else error)
        except json.JSONDecodeError as error:
            raise ManifestInvalid(version_id, f"metadata: {error}")

        if not isinstance(data, dict):
            raise ManifestInvalid(version_id, "metadata: / must be an object")

        data["id"] = version_id

        if self.context is not None:
            metadata_file = self.context.version_metadata_file(version_id)
            metadata_file.parent.mkdir(parents=True, exist_ok=True)
            with metadata_file.open("wt", encoding="utf-8") as fp:
                json.dump(data, fp)

        return data


class FabricResolveEvent:
    """Event triggered when the loader version is missing and is being resolved.
    """
    __slots__ = "api", "vanilla_version", "loader_version"
    def __init__(self, api: FabricApi, vanilla_version: str, loader_version: Optional[str]) -> None:
        self.api = api
        self.vanilla_version = vanilla_version
        self.loader_version = loader_version
