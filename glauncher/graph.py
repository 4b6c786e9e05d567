"""Expansion of a resolved version into the artifact requests needed to launch it.
"""

from .download import ArtifactRequest, ArtifactKind
from .manifest import VersionDescriptor, LibraryRef, DownloadRef, ManifestInvalid
from .rules import Platform, evaluate_rules
from .watcher import Watcher

from typing import Optional, List, Dict, Any, Iterable


RESOURCES_URL = "https://resources.download.minecraft.net/"


def expand(descriptor: VersionDescriptor, platform: Platform, *,
    watcher: Optional[Watcher] = None
) -> List[ArtifactRequest]:
    """Expand a resolved version into the requests for its main jar, its libraries
    (and natives) allowed on the given platform, its asset index and its logger
    configuration. Assets are expanded later, once the index is downloaded, see
    `expand_assets`.

    Requests sharing a destination path are deduplicated, the first one is kept.

    :raises UnresolvedRule: If a rule of an included library uses an unknown predicate.
    """

    watcher = watcher or Watcher()
    requests: List[ArtifactRequest] = []

    requests.append(main_jar_request(descriptor))

    class_count = native_count = 0
    for lib in descriptor.libraries:
        request = library_request(lib, platform)
        if request is not None:
            requests.append(request)
            if request.kind == ArtifactKind.NATIVE:
                native_count += 1
            else:
                class_count += 1

    watcher.handle(LibrariesResolvedEvent(class_count, native_count))

    asset_index = descriptor.asset_index
    if asset_index is not None:
        requests.append(ArtifactRequest(asset_index.url, f"assets/indexes/{asset_index.id}.json",
            sha1=asset_index.sha1,
            size=asset_index.size,
            kind=ArtifactKind.ASSET_INDEX,
            name=asset_index.id))

    logging = descriptor.logging
    if logging is not None:
        requests.append(ArtifactRequest(logging.file.url, f"assets/log_configs/{logging.id}",
            sha1=logging.file.sha1,
            size=logging.file.size,
            kind=ArtifactKind.LOG_CONFIG,
            name=logging.id))

    return dedup_requests(requests)


def main_jar_request(descriptor: VersionDescriptor) -> ArtifactRequest:
    """Request for the main jar, stored in the directory of the version that declares
    it. If no version in the hierarchy declares a download, the jar must be installed.
    """
    jar_version = descriptor.main_jar_version
    path = f"versions/{jar_version}/{jar_version}.jar"
    main_jar = descriptor.main_jar
    if main_jar is None:
        return ArtifactRequest(None, path, kind=ArtifactKind.MAIN_JAR, name=jar_version)
    return ArtifactRequest(main_jar.url, path,
        sha1=main_jar.sha1,
        size=main_jar.size,
        kind=ArtifactKind.MAIN_JAR,
        name=jar_version)


def library_request(lib: LibraryRef, platform: Platform) -> Optional[ArtifactRequest]:
    """Request for a single library on the given platform, none if the library is
    excluded by its rules or has no natives for the platform's OS.

    :raises UnresolvedRule: If a rule uses an unknown predicate.
    """

    if not evaluate_rules(lib.rules, platform):
        return None

    spec = lib.spec
    download: Optional[DownloadRef]

    if lib.natives is not None:
        # The classifier associated to the OS overrides the specifier's classifier.
        classifier = lib.natives.get(platform.os)
        if classifier is None:
            return None
        spec = spec.with_classifier(classifier.replace("${arch}", str(platform.arch_bits)))
        download = lib.classifiers.get(spec.classifier)
    else:
        download = lib.artifact

    path = f"libraries/{spec.file_path()}"
    kind = ArtifactKind.NATIVE if lib.native else ArtifactKind.LIBRARY

    if download is not None and len(download.url):
        return ArtifactRequest(download.url, path,
            sha1=download.sha1,
            size=download.size,
            kind=kind,
            name=str(spec),
            extract_excludes=lib.extract_excludes)

    # If no download entry can be found, try to find the maven repository url.
    if lib.repo_url is not None:
        repo_url = lib.repo_url if lib.repo_url.endswith("/") else f"{lib.repo_url}/"
        return ArtifactRequest(f"{repo_url}{spec.file_path()}", path,
            kind=kind,
            name=str(spec),
            extract_excludes=lib.extract_excludes)

    # No download method, the library must already be installed.
    return ArtifactRequest(None, path, kind=kind, name=str(spec), extract_excludes=lib.extract_excludes)


def expand_assets(descriptor: VersionDescriptor, index: Any, resources_url: str = RESOURCES_URL) -> List[ArtifactRequest]:
    """Expand a downloaded asset index document into the requests of every asset, each
    asset is stored by its hash.

    :raises ManifestInvalid: If the index document is malformed.
    """

    index_id = "" if descriptor.asset_index is None else descriptor.asset_index.id
    requests = []
    for asset_id, (asset_hash, asset_size) in parse_asset_objects(index_id, index).items():
        asset_path = f"{asset_hash[:2]}/{asset_hash}"
        requests.append(ArtifactRequest(f"{resources_url}{asset_path}", f"assets/objects/{asset_path}",
            sha1=asset_hash,
            size=asset_size,
            kind=ArtifactKind.ASSET,
            name=asset_id))

    # Many assets share the same content.
    return dedup_requests(requests)


def parse_asset_objects(index_id: str, index: Any) -> Dict[str, tuple]:
    """Parse the objects of an asset index into a mapping of asset ids to their hash
    and size.

    :raises ManifestInvalid: If the index document is malformed.
    """

    if not isinstance(index, dict):
        raise ManifestInvalid(index_id, "assets index: / must be an object")

    assets_objects = index.get("objects")
    if not isinstance(assets_objects, dict):
        raise ManifestInvalid(index_id, "assets index: /objects must be an object")

    objects = {}
    for asset_id, asset_obj in assets_objects.items():

        if not isinstance(asset_obj, dict):
            raise ManifestInvalid(index_id, f"assets index: /objects/{asset_id} must be an object")

        asset_hash = asset_obj.get("hash")
        if not isinstance(asset_hash, str) or len(asset_hash) < 2:
            raise ManifestInvalid(index_id, f"assets index: /objects/{asset_id}/hash must be a string")

        asset_size = asset_obj.get("size")
        if not isinstance(asset_size, int):
            raise ManifestInvalid(index_id, f"assets index: /objects/{asset_id}/size must be an integer")

        objects[asset_id] = (asset_hash, asset_size)

    return objects


def asset_layout(index: Any) -> Optional[str]:
    """Return how assets must be copied for old versions: 'resources' for versions up
    to 13w23b, 'virtual' up to 1.7.2, none for later versions that read the objects
    directly.
    """
    if not isinstance(index, dict):
        return None
    if index.get("map_to_resources") is True:
        return "resources"
    if index.get("virtual") is True:
        return "virtual"
    return None


def dedup_requests(requests: Iterable[ArtifactRequest]) -> List[ArtifactRequest]:
    """Deduplicate requests by destination path, keeping the first one.
    """
    seen = set()
    result = []
    for request in requests:
        if request.path not in seen:
            seen.add(request.path)
            result.append(request)
    return result


class LibrariesResolvedEvent:
    """Event triggered when libraries have been filtered for the platform.
    """
    __slots__ = "class_libs_count", "native_libs_count"
    def __init__(self, class_libs_count: int, native_libs_count: int) -> None:
        self.class_libs_count = class_libs_count
        self.native_libs_count = native_libs_count
