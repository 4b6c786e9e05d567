"""Resolution of version descriptors and their parents.

Version metadata documents are parsed into immutable descriptors, a descriptor that
inherits from a parent is merged over its fully resolved parent. The merge is a plain
data merge computed once, the result is a descriptor without parent that can be used
as a value from then on.

This module also provides the repositories from which raw documents are loaded,
including Mojang's version manifest, allowing resolution of "vanilla" versions.
"""

from json import JSONDecodeError
from datetime import datetime
from pathlib import Path
import json

from .util import LibrarySpecifier, calc_file_sha1, from_iso_date
from .rules import Rule
from .http import http_request, HttpError
from .watcher import Watcher
from .context import Context

from typing import Optional, Dict, List, Tuple, Any, Iterable


VERSION_MANIFEST_URL = "https://piston-meta.mojang.com/mc/game/version_manifest_v2.json"


class DownloadRef:
    """Where to download a file and how to verify it.
    """

    __slots__ = "url", "sha1", "size", "path"

    def __init__(self, url: str, sha1: Optional[str] = None, size: Optional[int] = None, path: Optional[str] = None) -> None:
        self.url = url
        self.sha1 = sha1
        self.size = size
        self.path = path

    def __repr__(self) -> str:
        return f"<DownloadRef {self.url}>"


class LibraryRef:
    """A library declared by a version.
    """

    __slots__ = "spec", "artifact", "classifiers", "repo_url", "rules", "natives", "extract_excludes"

    def __init__(self,
        spec: LibrarySpecifier, *,
        artifact: Optional[DownloadRef] = None,
        classifiers: Optional[Dict[str, DownloadRef]] = None,
        repo_url: Optional[str] = None,
        rules: Tuple[Rule, ...] = (),
        natives: Optional[Dict[str, str]] = None,
        extract_excludes: Tuple[str, ...] = ()
    ) -> None:
        self.spec = spec
        self.artifact = artifact
        self.classifiers = {} if classifiers is None else classifiers
        self.repo_url = repo_url
        self.rules = rules
        self.natives = natives
        self.extract_excludes = extract_excludes

    @property
    def native(self) -> bool:
        """True if this library's artifact is extracted into the natives directory.
        """
        return self.natives is not None

    def merge_key(self) -> tuple:
        """Key identifying this library when merging a child version over its parent,
        the version is not part of it so that a child can upgrade a library.
        """
        return (*self.spec.key(), self.native)

    def dedup_key(self) -> tuple:
        """Key identifying exact duplicates in a merged library list.
        """
        return str(self.spec), self.native

    def __repr__(self) -> str:
        return f"<LibraryRef {self.spec}{' (natives)' if self.native else ''}>"


class ArgumentTemplate:
    """Argument tokens, literal or containing `${placeholder}`, included in the
    command line only if the rules allow it.
    """

    __slots__ = "tokens", "rules"

    def __init__(self, tokens: Tuple[str, ...], rules: Tuple[Rule, ...] = ()) -> None:
        self.tokens = tokens
        self.rules = rules

    def __repr__(self) -> str:
        return f"<ArgumentTemplate {' '.join(self.tokens)}>"


class AssetIndexRef:
    """Reference to the asset index of a version.
    """

    __slots__ = "id", "url", "sha1", "size", "total_size"

    def __init__(self, id: str, url: Optional[str], sha1: Optional[str] = None, size: Optional[int] = None, total_size: Optional[int] = None) -> None:
        self.id = id
        self.url = url
        self.sha1 = sha1
        self.size = size
        self.total_size = total_size


class LoggingRef:
    """The logger configuration file and the JVM argument that enables it, the
    argument contains a `${path}` placeholder.
    """

    __slots__ = "id", "argument", "file"

    def __init__(self, id: str, argument: str, file: DownloadRef) -> None:
        self.id = id
        self.argument = argument
        self.file = file


class JavaVersionRef:
    __slots__ = "component", "major_version"

    def __init__(self, component: Optional[str], major_version: Optional[int]) -> None:
        self.component = component
        self.major_version = major_version


class VersionDescriptor:
    """A version descriptor, either raw (parent may be set) or resolved (parent is none
    and all parents are merged in, their ids are kept in `hierarchy`).
    """

    __slots__ = "id", "parent", "main_class", "libraries", "asset_index", \
        "jvm_arguments", "game_arguments", "legacy_game_arguments", \
        "release_type", "release_time", "main_jar", "main_jar_version", \
        "java_version", "logging", "hierarchy"

    def __init__(self,
        id: str, *,
        parent: Optional[str] = None,
        main_class: Optional[str] = None,
        libraries: Tuple[LibraryRef, ...] = (),
        asset_index: Optional[AssetIndexRef] = None,
        jvm_arguments: Tuple[ArgumentTemplate, ...] = (),
        game_arguments: Tuple[ArgumentTemplate, ...] = (),
        legacy_game_arguments: Optional[Tuple[str, ...]] = None,
        release_type: Optional[str] = None,
        release_time: Optional[datetime] = None,
        main_jar: Optional[DownloadRef] = None,
        main_jar_version: Optional[str] = None,
        java_version: Optional[JavaVersionRef] = None,
        logging: Optional[LoggingRef] = None,
        hierarchy: Tuple[str, ...] = ()
    ) -> None:
        self.id = id
        self.parent = parent
        self.main_class = main_class
        self.libraries = libraries
        self.asset_index = asset_index
        self.jvm_arguments = jvm_arguments
        self.game_arguments = game_arguments
        self.legacy_game_arguments = legacy_game_arguments
        self.release_type = release_type
        self.release_time = release_time
        self.main_jar = main_jar
        self.main_jar_version = id if main_jar_version is None else main_jar_version
        self.java_version = java_version
        self.logging = logging
        self.hierarchy = (id,) if not len(hierarchy) else hierarchy

    @property
    def legacy(self) -> bool:
        """True if this version uses the legacy flat game arguments (<= 1.12.2).
        """
        return self.legacy_game_arguments is not None

    @property
    def ancestor(self) -> str:
        """The id of the farthest ancestor, usually the vanilla version.
        """
        return self.hierarchy[-1]

    def __repr__(self) -> str:
        return f"<VersionDescriptor {self.id}>"


class ManifestResolver:
    """Resolve versions from a repository, merging them with their parents.
    """

    def __init__(self, repository: "VersionRepository", *, watcher: Optional[Watcher] = None) -> None:
        self.repository = repository
        self.watcher = watcher or Watcher()

    def resolve(self, version_id: str) -> VersionDescriptor:
        """Resolve the given version and all of its parents into a single descriptor.

        :raises ManifestNotFound: If the version, or one of its parents, is not found.
        :raises ManifestInvalid: If a version's metadata is malformed.
        :raises CyclicParent: If the parents chain loops.
        """

        # Walk up the chain first, then merge from the farthest ancestor down.
        chain: List[VersionDescriptor] = []
        visited: List[str] = []
        current: Optional[str] = version_id

        while current is not None:
            if current in visited:
                raise CyclicParent(visited + [current])
            visited.append(current)
            descriptor = parse_descriptor(current, self.repository.load(current))
            chain.append(descriptor)
            current = descriptor.parent

        resolved = chain.pop()
        while len(chain):
            resolved = merge_descriptors(resolved, chain.pop())

        self.watcher.handle(VersionResolvedEvent(resolved))
        return resolved


def merge_descriptors(parent: VersionDescriptor, child: VersionDescriptor) -> VersionDescriptor:
    """Merge a child descriptor over its resolved parent. Arguments are concatenated,
    parent first; libraries of the child replace the parent's ones with the same merge
    key; other fields of the child override the parent's ones if present.
    """

    main_jar, main_jar_version = parent.main_jar, parent.main_jar_version
    if child.main_jar is not None:
        main_jar, main_jar_version = child.main_jar, child.main_jar_version

    return VersionDescriptor(
        child.id,
        parent=None,
        main_class=_override(parent.main_class, child.main_class),
        libraries=merge_libraries(parent.libraries, child.libraries),
        asset_index=_override(parent.asset_index, child.asset_index),
        jvm_arguments=parent.jvm_arguments + child.jvm_arguments,
        game_arguments=parent.game_arguments + child.game_arguments,
        legacy_game_arguments=_override(parent.legacy_game_arguments, child.legacy_game_arguments),
        release_type=_override(parent.release_type, child.release_type),
        release_time=_override(parent.release_time, child.release_time),
        main_jar=main_jar,
        main_jar_version=main_jar_version,
        java_version=_override(parent.java_version, child.java_version),
        logging=_override(parent.logging, child.logging),
        hierarchy=(child.id, *parent.hierarchy))


def merge_libraries(parent: Iterable[LibraryRef], child: Iterable[LibraryRef]) -> Tuple[LibraryRef, ...]:
    """Merge libraries of a child over the ones of its parent. A child library takes
    the place of the first parent library with the same merge key, the other parent
    libraries with that key are dropped, new child libraries are appended. Exact
    duplicates are then removed, keeping the first one.
    """

    child_by_key: Dict[tuple, List[LibraryRef]] = {}
    for lib in child:
        child_by_key.setdefault(lib.merge_key(), []).append(lib)

    merged: List[LibraryRef] = []
    placed = set()

    for lib in parent:
        key = lib.merge_key()
        if key in child_by_key:
            if key not in placed:
                merged.extend(child_by_key[key])
                placed.add(key)
        else:
            merged.append(lib)

    for key, libs in child_by_key.items():
        if key not in placed:
            merged.extend(libs)

    result: List[LibraryRef] = []
    seen = set()
    for lib in merged:
        key = lib.dedup_key()
        if key not in seen:
            seen.add(key)
            result.append(lib)

    return tuple(result)


def _override(parent_value, child_value):
    return parent_value if child_value is None else child_value


def parse_descriptor(version_id: str, data: Any) -> VersionDescriptor:
    """Parse a raw version metadata document into an unresolved descriptor.

    :raises ManifestInvalid: If the document is malformed.
    """

    if not isinstance(data, dict):
        raise ManifestInvalid(version_id, "metadata: / must be an object")

    def check(path: str, value: Any, expected: type, type_name: str, optional: bool = True) -> Any:
        if value is None and optional:
            return None
        # Note that booleans are integers in Python.
        if not isinstance(value, expected) or (expected is int and isinstance(value, bool)):
            raise ManifestInvalid(version_id, f"metadata: {path} must be {type_name}")
        return value

    parent = check("/inheritsFrom", data.get("inheritsFrom"), str, "a string")
    main_class = check("/mainClass", data.get("mainClass"), str, "a string")
    release_type = check("/type", data.get("type"), str, "a string")

    release_time = None
    raw_release_time = check("/releaseTime", data.get("releaseTime"), str, "a string")
    if raw_release_time is not None:
        try:
            release_time = from_iso_date(raw_release_time)
        except ValueError:
            raise ManifestInvalid(version_id, "metadata: /releaseTime must be an ISO date")

    libraries = tuple(
        _parse_library(version_id, f"/libraries/{i}", raw_lib, check)
        for i, raw_lib in enumerate(check("/libraries", data.get("libraries"), list, "a list") or ()))

    jvm_arguments: Tuple[ArgumentTemplate, ...] = ()
    game_arguments: Tuple[ArgumentTemplate, ...] = ()
    arguments = check("/arguments", data.get("arguments"), dict, "an object")
    if arguments is not None:
        jvm_arguments = _parse_arguments(version_id, "/arguments/jvm", arguments.get("jvm"), check)
        game_arguments = _parse_arguments(version_id, "/arguments/game", arguments.get("game"), check)

    legacy_game_arguments = None
    raw_legacy = check("/minecraftArguments", data.get("minecraftArguments"), str, "a string")
    if raw_legacy is not None:
        legacy_game_arguments = tuple(arg for arg in raw_legacy.split(" ") if len(arg))

    asset_index = None
    raw_asset_index = check("/assetIndex", data.get("assetIndex"), dict, "an object")
    if raw_asset_index is not None:
        index_id = data.get("assets", raw_asset_index.get("id"))
        check("/assets", index_id, str, "a string", optional=False)
        asset_index = AssetIndexRef(
            index_id,
            check("/assetIndex/url", raw_asset_index.get("url"), str, "a string"),
            check("/assetIndex/sha1", raw_asset_index.get("sha1"), str, "a string"),
            check("/assetIndex/size", raw_asset_index.get("size"), int, "an integer"),
            check("/assetIndex/totalSize", raw_asset_index.get("totalSize"), int, "an integer"))

    main_jar = None
    downloads = check("/downloads", data.get("downloads"), dict, "an object")
    if downloads is not None and downloads.get("client") is not None:
        main_jar = _parse_download(version_id, "/downloads/client", downloads["client"], check)

    java_version = None
    raw_java_version = check("/javaVersion", data.get("javaVersion"), dict, "an object")
    if raw_java_version is not None:
        java_version = JavaVersionRef(
            check("/javaVersion/component", raw_java_version.get("component"), str, "a string"),
            check("/javaVersion/majorVersion", raw_java_version.get("majorVersion"), int, "an integer"))

    logging = None
    raw_logging = check("/logging", data.get("logging"), dict, "an object")
    if raw_logging is not None and raw_logging.get("client") is not None:
        client = check("/logging/client", raw_logging["client"], dict, "an object")
        argument = check("/logging/client/argument", client.get("argument"), str, "a string", optional=False)
        file_info = check("/logging/client/file", client.get("file"), dict, "an object", optional=False)
        file_id = check("/logging/client/file/id", file_info.get("id"), str, "a string", optional=False)
        logging = LoggingRef(file_id, argument, _parse_download(version_id, "/logging/client/file", file_info, check))

    return VersionDescriptor(
        version_id,
        parent=parent,
        main_class=main_class,
        libraries=libraries,
        asset_index=asset_index,
        jvm_arguments=jvm_arguments,
        game_arguments=game_arguments,
        legacy_game_arguments=legacy_game_arguments,
        release_type=release_type,
        release_time=release_time,
        main_jar=main_jar,
        java_version=java_version,
        logging=logging)


def _parse_download(version_id: str, path: str, value: Any, check) -> DownloadRef:
    check(path, value, dict, "an object", optional=False)
    return DownloadRef(
        check(f"{path}/url", value.get("url"), str, "a string", optional=False),
        check(f"{path}/sha1", value.get("sha1"), str, "a string"),
        check(f"{path}/size", value.get("size"), int, "an integer"),
        check(f"{path}/path", value.get("path"), str, "a string"))


def _parse_library(version_id: str, path: str, value: Any, check) -> LibraryRef:

    check(path, value, dict, "an object", optional=False)

    name = check(f"{path}/name", value.get("name"), str, "a string", optional=False)
    try:
        spec = LibrarySpecifier.from_str(name)
    except ValueError:
        raise ManifestInvalid(version_id, f"metadata: {path}/name must be a library specifier")

    rules = parse_rules(version_id, f"{path}/rules", value.get("rules"))

    natives = check(f"{path}/natives", value.get("natives"), dict, "an object")
    if natives is not None:
        for os_name, classifier in natives.items():
            check(f"{path}/natives/{os_name}", classifier, str, "a string", optional=False)

    artifact = None
    classifiers = {}
    downloads = check(f"{path}/downloads", value.get("downloads"), dict, "an object")
    if downloads is not None:
        if downloads.get("artifact") is not None:
            artifact = _parse_download(version_id, f"{path}/downloads/artifact", downloads["artifact"], check)
        raw_classifiers = check(f"{path}/downloads/classifiers", downloads.get("classifiers"), dict, "an object")
        for classifier, raw_dl in (raw_classifiers or {}).items():
            classifiers[classifier] = _parse_download(version_id, f"{path}/downloads/classifiers/{classifier}", raw_dl, check)

    repo_url = check(f"{path}/url", value.get("url"), str, "a string")

    extract_excludes: Tuple[str, ...] = ()
    extract = check(f"{path}/extract", value.get("extract"), dict, "an object")
    if extract is not None:
        excludes = check(f"{path}/extract/exclude", extract.get("exclude"), list, "a list") or ()
        extract_excludes = tuple(check(f"{path}/extract/exclude/{i}", e, str, "a string", optional=False)
            for i, e in enumerate(excludes))

    return LibraryRef(spec,
        artifact=artifact,
        classifiers=classifiers,
        repo_url=repo_url,
        rules=rules,
        natives=natives,
        extract_excludes=extract_excludes)


def _parse_arguments(version_id: str, path: str, value: Any, check) -> Tuple[ArgumentTemplate, ...]:

    templates = []
    for i, arg in enumerate(check(path, value, list, "a list") or ()):
        if isinstance(arg, str):
            templates.append(ArgumentTemplate((arg,)))
        elif isinstance(arg, dict):
            rules = parse_rules(version_id, f"{path}/{i}/rules", arg.get("rules"))
            arg_value = arg.get("value")
            if isinstance(arg_value, str):
                templates.append(ArgumentTemplate((arg_value,), rules))
            elif isinstance(arg_value, list) and all(isinstance(v, str) for v in arg_value):
                templates.append(ArgumentTemplate(tuple(arg_value), rules))
            else:
                raise ManifestInvalid(version_id, f"metadata: {path}/{i}/value must be a list of strings or a string")
        else:
            raise ManifestInvalid(version_id, f"metadata: {path}/{i} must be an object or a string")

    return tuple(templates)


def parse_rules(version_id: str, path: str, value: Any) -> Tuple[Rule, ...]:
    """Parse a list of rules. Predicate kinds that are not known are kept in the rule
    and only reported when the rule is evaluated.

    :raises ManifestInvalid: If the rules are malformed.
    """

    if value is None:
        return ()
    if not isinstance(value, list):
        raise ManifestInvalid(version_id, f"metadata: {path} must be a list")

    rules = []
    for i, rule in enumerate(value):

        if not isinstance(rule, dict):
            raise ManifestInvalid(version_id, f"metadata: {path}/{i} must be an object")

        action = rule.get("action")
        if action not in (Rule.ALLOW, Rule.DISALLOW):
            raise ManifestInvalid(version_id, f"metadata: {path}/{i}/action must be 'allow' or 'disallow'")

        unknown = [key for key in rule.keys() if key not in ("action", "os", "features")]

        os_name = os_arch = os_version = None
        rule_os = rule.get("os")
        if isinstance(rule_os, str):
            # Shorthand only giving the OS name.
            os_name = rule_os
        elif rule_os is not None:
            if not isinstance(rule_os, dict):
                raise ManifestInvalid(version_id, f"metadata: {path}/{i}/os must be an object")
            os_name, os_arch, os_version = rule_os.get("name"), rule_os.get("arch"), rule_os.get("version")
            unknown.extend(f"os.{key}" for key in rule_os.keys() if key not in ("name", "arch", "version"))

        features = rule.get("features")
        if features is not None and not isinstance(features, dict):
            raise ManifestInvalid(version_id, f"metadata: {path}/{i}/features must be an object")

        rules.append(Rule(action,
            os_name=os_name,
            os_arch=os_arch,
            os_version=os_version,
            features=features,
            unknown=tuple(unknown)))

    return tuple(rules)


class VersionRepository:
    """Base class for sources of raw version metadata documents.
    """

    def load(self, version_id: str) -> dict:
        """Load the raw metadata of the given version.

        :raises ManifestNotFound: If the version cannot be located.
        :raises ManifestInvalid: If the document cannot be decoded.
        """
        raise NotImplementedError


class DictRepository(VersionRepository):
    """In-memory repository, mostly useful for documents already parsed by a caller.
    """

    def __init__(self, documents: Optional[Dict[str, dict]] = None) -> None:
        self.documents = {} if documents is None else documents

    def load(self, version_id: str) -> dict:
        try:
            return self.documents[version_id]
        except KeyError:
            raise ManifestNotFound(version_id)


class StandardRepository(VersionRepository):
    """Repository of versions installed in a context's versions directory, versions
    not installed, or whose file is outdated, are fetched from Mojang's manifest.
    """

    def __init__(self, context: Context, manifest: Optional["VersionManifest"] = None, *,
        watcher: Optional[Watcher] = None
    ) -> None:
        self.context = context
        self.manifest = manifest or VersionManifest(context.versions_dir / "version_manifest_v2.json")
        self.watcher = watcher or Watcher()

    def load(self, version_id: str) -> dict:

        self.watcher.handle(VersionLoadingEvent(version_id))

        metadata_file = self.context.version_metadata_file(version_id)
        local_error = None
        data = None

        try:
            with metadata_file.open("rt", encoding="utf-8") as fp:
                data = json.load(fp)
        except JSONDecodeError as error:
            local_error = error
        except OSError:
            pass

        if data is not None and self._is_up_to_date(version_id, metadata_file):
            self.watcher.handle(VersionLoadedEvent(version_id, False))
            return data

        self.watcher.handle(VersionFetchingEvent(version_id))

        try:
            data = self._fetch(version_id, metadata_file)
        except ManifestNotFound:
            if local_error is not None:
                raise ManifestInvalid(version_id, f"metadata: {local_error}")
            if data is not None:
                # Unknown remotely but installed locally, custom version.
                self.watcher.handle(VersionLoadedEvent(version_id, False))
                return data
            raise

        self.watcher.handle(VersionLoadedEvent(version_id, True))
        return data

    def _is_up_to_date(self, version_id: str, metadata_file: Path) -> bool:
        """Check the local metadata file against the SHA-1 given by the manifest, if
        the manifest is unreachable the local file is trusted to allow offline launch.
        """
        try:
            entry = self.manifest.get_version(version_id)
        except ManifestNotFound:
            return True
        if entry is None or entry.sha1 is None:
            return True
        return calc_file_sha1(metadata_file) == entry.sha1

    def _fetch(self, version_id: str, metadata_file: Path) -> dict:

        entry = self.manifest.get_version(version_id)
        if entry is None:
            raise ManifestNotFound(version_id)

        try:
            res = http_request("GET", entry.url, accept="application/json")
            data = res.json()
        except HttpError as error:
            raise ManifestNotFound(version_id, error)
        except JSONDecodeError as error:
            raise ManifestInvalid(version_id, f"metadata: {error}")

        # If successful, write the raw data directly to the file.
        metadata_file.parent.mkdir(parents=True, exist_ok=True)
        with metadata_file.open("wb") as fp:
            fp.write(res.data)

        return data


class VersionManifestEntry:
    """A version listed by the manifest, with where to fetch its metadata.
    """

    __slots__ = "id", "type", "url", "sha1", "release_time"

    def __init__(self, id: str, type: str, url: str,
        sha1: Optional[str] = None,
        release_time: Optional[datetime] = None
    ) -> None:
        self.id = id
        self.type = type
        self.url = url
        self.sha1 = sha1
        self.release_time = release_time

    def __repr__(self) -> str:
        return f"<VersionManifestEntry {self.id} {self.type}>"


class VersionManifest:
    """Mojang's version manifest, listing the officially available versions and the
    latest release and snapshot. The manifest is requested once, if a cache file is
    given it is used when the manifest is unchanged or unreachable.
    """

    ALIASES = ("release", "snapshot")

    def __init__(self, cache_file: Optional[Path] = None, url: str = VERSION_MANIFEST_URL) -> None:
        self.cache_file = cache_file
        self.url = url
        self._latest: Optional[Dict[str, str]] = None
        self._entries: Dict[str, VersionManifestEntry] = {}

    def filter_latest(self, version: str) -> Tuple[str, bool]:
        """Replace the 'release' or 'snapshot' alias by the version it designates.

        :return: The version id and true if the given one was an alias.
        :raises ManifestNotFound: If the version is an alias and the manifest cannot be
        requested nor read from its cache.
        """
        if version in self.ALIASES:
            latest = self._load(version).get(version)
            if latest is not None:
                return latest, True
        return version, False

    def get_version(self, version: str) -> Optional[VersionManifestEntry]:
        """Get the manifest entry of a version, aliases are accepted.

        :return: The entry, none if the version is not listed.
        :raises ManifestNotFound: If the manifest cannot be requested nor read from its
        cache.
        """
        version, _alias = self.filter_latest(version)
        self._load(version)
        return self._entries.get(version)

    def versions(self) -> List[VersionManifestEntry]:
        """Return all listed versions, most recent first.

        :raises ManifestNotFound: If the manifest cannot be requested nor read from its
        cache.
        """
        self._load("manifest")
        return list(self._entries.values())

    def _load(self, version: str) -> Dict[str, str]:
        """Request the manifest if not already done, the given version is only used to
        describe the error.

        :return: The latest versions by alias.
        """

        if self._latest is not None:
            return self._latest

        headers = {}
        cache_data = None

        if self.cache_file is not None:
            try:
                with self.cache_file.open("rt", encoding="utf-8") as cache_fp:
                    cache_data = json.load(cache_fp)
                if isinstance(cache_data, dict) and "last_modified" in cache_data:
                    headers["If-Modified-Since"] = cache_data["last_modified"]
            except (OSError, JSONDecodeError):
                cache_data = None

        try:
            res = http_request("GET", self.url, headers=headers, accept="application/json")
            data = res.json()
        except HttpError as error:
            # A status of 0 is a network error, the cache is used when offline.
            if error.res.status not in (0, 304) or cache_data is None:
                raise ManifestNotFound(version, error)
            data = cache_data
        except JSONDecodeError as error:
            raise ManifestInvalid(version, f"manifest: {error}")
        else:
            if isinstance(data, dict) and "Last-Modified" in res.headers:
                data["last_modified"] = res.headers["Last-Modified"]
            if self.cache_file is not None:
                self.cache_file.parent.mkdir(parents=True, exist_ok=True)
                with self.cache_file.open("wt", encoding="utf-8") as cache_fp:
                    json.dump(data, cache_fp)

        self._parse(version, data)
        assert self._latest is not None
        return self._latest

    def _parse(self, version: str, data: Any) -> None:

        if not isinstance(data, dict) or not isinstance(data.get("versions"), list):
            raise ManifestInvalid(version, "manifest: /versions must be a list")

        entries = {}
        for i, raw in enumerate(data["versions"]):
            if not isinstance(raw, dict) or not isinstance(raw.get("id"), str) or not isinstance(raw.get("url"), str):
                raise ManifestInvalid(version, f"manifest: /versions/{i} must have a string id and url")
            release_time = None
            if isinstance(raw.get("releaseTime"), str):
                try:
                    release_time = from_iso_date(raw["releaseTime"])
                except ValueError:
                    raise ManifestInvalid(version, f"manifest: /versions/{i}/releaseTime must be an ISO date")
            entries[raw["id"]] = VersionManifestEntry(raw["id"], str(raw.get("type", "release")), raw["url"],
                sha1=raw.get("sha1"),
                release_time=release_time)

        latest = data.get("latest")
        self._entries = entries
        self._latest = {k: v for k, v in latest.items() if isinstance(v, str)} if isinstance(latest, dict) else {}


class ManifestNotFound(Exception):
    """Raised when a version's metadata cannot be located, neither locally nor remotely.
    The original error is given if the version could not be fetched.
    """
    def __init__(self, version: str, origin: Optional[Exception] = None) -> None:
        self.version = version
        self.origin = origin

    def __str__(self) -> str:
        return repr(self.version) if self.origin is None else f"{self.version!r} ({self.origin})"

class ManifestInvalid(Exception):
    """Raised when a version's metadata is malformed, the message tells where.
    """
    def __init__(self, version: str, message: str) -> None:
        self.version = version
        self.message = message

    def __str__(self) -> str:
        return f"{self.version}: {self.message}"

class CyclicParent(Exception):
    """Raised when the parents chain of a version loops, the chain is given with the
    looping version last.
    """
    def __init__(self, versions: List[str]) -> None:
        self.versions = versions

    def __str__(self) -> str:
        return " -> ".join(self.versions)


class VersionEvent:
    """Base class for events regarding version.
    """
    __slots__ = "version",
    def __init__(self, version: str) -> None:
        self.version = version

class VersionLoadingEvent(VersionEvent):
    """Event triggered when a version is being loaded.
    """
    __slots__ = tuple()

class VersionFetchingEvent(VersionEvent):
    """Event triggered when a version is being fetched.
    """
    __slots__ = tuple()

class VersionLoadedEvent(VersionEvent):
    """Event triggered when a version has been successfully loaded.
    """
    __slots__ = "fetched",
    def __init__(self, version: str, fetched: bool) -> None:
        super().__init__(version)
        self.fetched = fetched

class VersionResolvedEvent:
    """Event triggered when a version and its parents have been merged.
    """
    __slots__ = "descriptor",
    def __init__(self, descriptor: VersionDescriptor) -> None:
        self.descriptor = descriptor
