"""Composition of the launch pipeline: resolve, expand, download, assemble and spawn.
"""

from threading import Event
from pathlib import Path
import shutil
import json

from .manifest import ManifestResolver, VersionDescriptor, VersionRepository, StandardRepository
from .graph import expand, expand_assets, parse_asset_objects, asset_layout, RESOURCES_URL
from .download import ArtifactRequest, ArtifactKind, DownloadResult, DownloadError, \
    fetch, required_failures, default_concurrency
from .assemble import InstanceSettings, ResolvedPaths, LaunchSpec, assemble, extract_natives
from .process import ProcessSupervisor, ProcessHandle
from .rules import Platform
from .auth import Session, OfflineSession
from .watcher import Watcher
from .context import Context

from typing import Optional, List, Callable, Any


class Installation:
    """An installed version, with the requests whose artifacts are present in the store.
    """

    __slots__ = "descriptor", "requests", "results", "assets_virtual_dir"

    def __init__(self,
        descriptor: VersionDescriptor,
        requests: List[ArtifactRequest],
        results: List[DownloadResult],
        assets_virtual_dir: Optional[Path] = None
    ) -> None:
        self.descriptor = descriptor
        self.requests = requests
        self.results = results
        self.assets_virtual_dir = assets_virtual_dir


class Launcher:
    """Launcher composing all stages of the pipeline for a context. Any failure is
    raised as a `LaunchError` giving the stage that failed and its cause.
    """

    RESOLVE = "resolve"
    DOWNLOAD = "download"
    ASSEMBLE = "assemble"
    SPAWN = "spawn"

    def __init__(self,
        context: Optional[Context] = None,
        repository: Optional[VersionRepository] = None, *,
        supervisor: Optional[ProcessSupervisor] = None,
        watcher: Optional[Watcher] = None,
        concurrency: Optional[int] = None,
        timeout: float = 30.0,
        max_attempts: int = 3,
        backoff: float = 0.5,
        resources_url: str = RESOURCES_URL
    ) -> None:
        self.context = context or Context()
        self.watcher = watcher or Watcher()
        self.repository = repository or StandardRepository(self.context, watcher=self.watcher)
        self.supervisor = supervisor or ProcessSupervisor(watcher=self.watcher)
        self.concurrency = concurrency
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.backoff = backoff
        self.resources_url = resources_url

    def resolve(self, version_id: str) -> VersionDescriptor:
        try:
            return ManifestResolver(self.repository, watcher=self.watcher).resolve(version_id)
        except Exception as error:
            raise LaunchError(self.RESOLVE, error) from error

    def install(self, version_id: str, platform: Optional[Platform] = None, *,
        cancel: Optional[Event] = None
    ) -> Installation:
        """Resolve the version and ensure that all of its artifacts are installed. The
        assets are expanded and fetched once their index is downloaded, their failures
        are tolerated.

        :raises LaunchError: If the version cannot be resolved or if a required artifact
        cannot be downloaded.
        """

        platform = platform or Platform.current()
        descriptor = self.resolve(version_id)

        try:
            requests = expand(descriptor, platform, watcher=self.watcher)
        except Exception as error:
            raise LaunchError(self.RESOLVE, error) from error

        self.watcher.handle(StageEvent(self.DOWNLOAD, descriptor.id))
        results = self._fetch(requests, cancel)

        failures = required_failures(results)
        if len(failures):
            raise LaunchError(self.DOWNLOAD, DownloadError(failures))

        assets_virtual_dir = None
        index_request = next((r for r in requests if r.kind == ArtifactKind.ASSET_INDEX), None)
        if index_request is not None:
            try:
                with self.context.store().resolve(index_request.path).open("rb") as index_fp:
                    index = json.load(index_fp)
                asset_requests = expand_assets(descriptor, index, self.resources_url)
            except Exception as error:
                raise LaunchError(self.DOWNLOAD, error) from error
            asset_results = self._fetch(asset_requests, cancel)
            results.extend(asset_results)
            assets_virtual_dir = self._finalize_assets(descriptor, index, asset_results)

        ok_paths = set(result.request.path for result in results if result.ok)
        installed = [request for request in requests if request.path in ok_paths]

        return Installation(descriptor, installed, results, assets_virtual_dir)

    def launch(self, version_id: str,
        session: Optional[Session] = None,
        settings: Optional[InstanceSettings] = None,
        platform: Optional[Platform] = None, *,
        cancel: Optional[Event] = None,
        subscribers: Optional[List[Callable[[Any], None]]] = None
    ) -> ProcessHandle:
        """Install and launch the given version.

        :param session: The player's session, an offline one is used if not given.
        :raises LaunchError: If any stage fails, see `Launcher` constants for stages.
        """

        platform = platform or Platform.current()
        installation = self.install(version_id, platform, cancel=cancel)

        self.watcher.handle(StageEvent(self.ASSEMBLE, installation.descriptor.id))

        natives_dir = self.context.gen_bin_dir().absolute()

        try:
            paths = ResolvedPaths.from_requests(self.context, installation.requests,
                natives_dir=natives_dir,
                assets_virtual_dir=installation.assets_virtual_dir)
            spec = assemble(installation.descriptor, paths,
                session or OfflineSession(),
                settings or InstanceSettings(),
                platform)
            extract_natives(paths.natives, natives_dir)
        except Exception as error:
            shutil.rmtree(natives_dir, ignore_errors=True)
            raise LaunchError(self.ASSEMBLE, error) from error

        self.watcher.handle(LaunchSpecEvent(spec))
        self.watcher.handle(StageEvent(self.SPAWN, installation.descriptor.id))

        try:
            return self.supervisor.launch(spec, subscribers=subscribers)
        except Exception as error:
            shutil.rmtree(natives_dir, ignore_errors=True)
            raise LaunchError(self.SPAWN, error) from error

    def _fetch(self, requests: List[ArtifactRequest], cancel: Optional[Event]) -> List[DownloadResult]:
        concurrency = self.concurrency or default_concurrency(len(requests))
        try:
            return fetch(requests, concurrency,
                store=self.context.store(),
                cancel=cancel,
                timeout=self.timeout,
                max_attempts=self.max_attempts,
                backoff=self.backoff,
                watcher=self.watcher)
        except Exception as error:
            raise LaunchError(self.DOWNLOAD, error) from error

    def _finalize_assets(self, descriptor: VersionDescriptor, index: Any, results: List[DownloadResult]) -> Optional[Path]:
        """Copy the assets for old versions that cannot read the objects directly.

        :return: The virtual assets directory, if used.
        """

        layout = asset_layout(index)
        if layout is None or descriptor.asset_index is None:
            return None

        if layout == "resources":
            dst_dir = self.context.work_dir / "resources"
        else:
            dst_dir = self.context.assets_dir / "virtual" / descriptor.asset_index.id

        store = self.context.store()
        ok_paths = set(result.request.path for result in results if result.ok)

        for asset_id, (asset_hash, _size) in parse_asset_objects(descriptor.asset_index.id, index).items():
            asset_path = f"assets/objects/{asset_hash[:2]}/{asset_hash}"
            if asset_path in ok_paths:
                dst_file = dst_dir / asset_id
                dst_file.parent.mkdir(parents=True, exist_ok=True)
                shutil.copyfile(store.resolve(asset_path), dst_file)

        return dst_dir.absolute() if layout == "virtual" else None


class LaunchError(Exception):
    """Raised when a stage of the launch fails, the stage is one of `resolve`,
    `download`, `assemble` or `spawn`, the original error is given as cause.
    """

    def __init__(self, stage: str, cause: Exception) -> None:
        self.stage = stage
        self.cause = cause

    def __str__(self) -> str:
        return f"{self.stage}: {type(self.cause).__name__}: {self.cause}"


class StageEvent:
    """Event triggered when a stage of the launch begins.
    """
    __slots__ = "stage", "version"
    def __init__(self, stage: str, version: str) -> None:
        self.stage = stage
        self.version = version

class LaunchSpecEvent:
    """Event triggered with the assembled launch spec, before spawning.
    """
    __slots__ = "spec",
    def __init__(self, spec: LaunchSpec) -> None:
        self.spec = spec
