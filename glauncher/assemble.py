"""Assembly of the command line launching a resolved version.
"""

from zipfile import ZipFile
from pathlib import Path
import shutil
import os
import re

from .download import ArtifactRequest, ArtifactKind
from .manifest import VersionDescriptor, ArgumentTemplate
from .rules import Platform, Rule, evaluate_rules, collect_features
from .util import jvm_bin_filename
from .context import Context
from .auth import Session
from . import LAUNCHER_NAME, LAUNCHER_VERSION

from typing import Optional, Dict, List, Tuple, Iterable


_VAR_PATTERN = re.compile(r"\$\{([^}]*)\}")

# Main class of the old launch wrapper, it needs to know where the client jar is.
LAUNCH_WRAPPER_MAIN_CLASS = "net.minecraft.launchwrapper.Launch"

# JVM arguments used by versions that only provide legacy game arguments.
LEGACY_JVM_ARGUMENTS = (
    ArgumentTemplate(("-XstartOnFirstThread",), (Rule(Rule.ALLOW, os_name="osx"),)),
    ArgumentTemplate(("-XX:HeapDumpPath=MojangTricksIntelDriversForPerformance_javaw.exe_minecraft.exe.heapdump",),
        (Rule(Rule.ALLOW, os_name="windows"),)),
    ArgumentTemplate(("-Dos.name=Windows 10", "-Dos.version=10.0"),
        (Rule(Rule.ALLOW, os_name="windows", os_version="^10\\."),)),
    ArgumentTemplate(("-Djava.library.path=${natives_directory}",)),
    ArgumentTemplate(("-Dminecraft.launcher.brand=${launcher_name}",)),
    ArgumentTemplate(("-Dminecraft.launcher.version=${launcher_version}",)),
    ArgumentTemplate(("-cp", "${classpath}")),
)


class InstanceSettings:
    """Per-instance settings, given by the caller for each launch.
    """

    __slots__ = "java_path", "min_memory", "max_memory", "extra_jvm_args", "resolution", \
        "fullscreen", "demo", "disable_multiplayer", "disable_chat"

    def __init__(self, *,
        java_path: Optional[Path] = None,
        min_memory: str = "512M",
        max_memory: str = "2G",
        extra_jvm_args: Iterable[str] = (),
        resolution: Optional[Tuple[int, int]] = None,
        fullscreen: bool = False,
        demo: bool = False,
        disable_multiplayer: bool = False,
        disable_chat: bool = False
    ) -> None:
        self.java_path = java_path
        self.min_memory = min_memory
        self.max_memory = max_memory
        self.extra_jvm_args = tuple(extra_jvm_args)
        self.resolution = resolution
        self.fullscreen = fullscreen
        self.demo = demo
        self.disable_multiplayer = disable_multiplayer
        self.disable_chat = disable_chat


class ResolvedPaths:
    """Absolute paths of the installed artifacts of a version, and the directories the
    game is given.
    """

    __slots__ = "main_jar", "libraries", "natives", "natives_dir", "work_dir", \
        "libraries_dir", "assets_dir", "assets_virtual_dir", "log_config"

    def __init__(self,
        main_jar: Path, *,
        libraries: Iterable[Path] = (),
        natives: Iterable[Tuple[Path, Tuple[str, ...]]] = (),
        natives_dir: Path,
        work_dir: Path,
        libraries_dir: Path,
        assets_dir: Path,
        assets_virtual_dir: Optional[Path] = None,
        log_config: Optional[Path] = None
    ) -> None:
        self.main_jar = main_jar
        self.libraries = tuple(libraries)
        self.natives = tuple(natives)
        self.natives_dir = natives_dir
        self.work_dir = work_dir
        self.libraries_dir = libraries_dir
        self.assets_dir = assets_dir
        self.assets_virtual_dir = assets_virtual_dir
        self.log_config = log_config

    @classmethod
    def from_requests(cls, context: Context, requests: Iterable[ArtifactRequest], *,
        natives_dir: Optional[Path] = None,
        assets_virtual_dir: Optional[Path] = None
    ) -> "ResolvedPaths":
        """Build the resolved paths from the requests of an expanded version, the
        requests are expected to be successfully fetched, in their expansion order.

        :raises ValueError: If no main jar is requested.
        """

        store = context.store()
        main_jar = None
        libraries: List[Path] = []
        natives: List[Tuple[Path, Tuple[str, ...]]] = []
        log_config = None

        for request in requests:
            if request.kind == ArtifactKind.MAIN_JAR:
                main_jar = store.resolve(request.path)
            elif request.kind == ArtifactKind.LIBRARY:
                libraries.append(store.resolve(request.path))
            elif request.kind == ArtifactKind.NATIVE:
                natives.append((store.resolve(request.path), request.extract_excludes))
            elif request.kind == ArtifactKind.LOG_CONFIG:
                log_config = store.resolve(request.path)

        if main_jar is None:
            raise ValueError("no main jar requested")

        return cls(main_jar,
            libraries=libraries,
            natives=natives,
            natives_dir=(context.gen_bin_dir() if natives_dir is None else natives_dir).absolute(),
            work_dir=context.work_dir.absolute(),
            libraries_dir=context.libraries_dir.absolute(),
            assets_dir=context.assets_dir.absolute(),
            assets_virtual_dir=assets_virtual_dir,
            log_config=log_config)


class LaunchSpec:
    """The complete invocation of the game, built once and consumed once.
    """

    __slots__ = "work_dir", "executable", "jvm_args", "classpath", "main_class", "game_args", "natives_dir"

    def __init__(self,
        work_dir: Path,
        executable: Path,
        jvm_args: Iterable[str],
        classpath: Iterable[str],
        main_class: str,
        game_args: Iterable[str],
        natives_dir: Optional[Path] = None
    ) -> None:
        self.work_dir = work_dir
        self.executable = executable
        self.jvm_args = tuple(jvm_args)
        self.classpath = tuple(classpath)
        self.main_class = main_class
        self.game_args = tuple(game_args)
        self.natives_dir = natives_dir

    def args(self) -> List[str]:
        """The full command line, executable first.
        """
        return [str(self.executable), *self.jvm_args, self.main_class, *self.game_args]

    def __repr__(self) -> str:
        return f"<LaunchSpec {self.main_class} in {self.work_dir}>"


def assemble(
    descriptor: VersionDescriptor,
    paths: ResolvedPaths,
    session: Session,
    settings: InstanceSettings,
    platform: Platform
) -> LaunchSpec:
    """Assemble the command line of a resolved version.

    JVM arguments from the settings come first, followed by the version's JVM
    arguments and then the logger configuration. The classpath keeps the order of the
    libraries and ends with the main jar.

    :raises TemplateSubstitutionError: If an argument has a placeholder with no value.
    :raises UnresolvedRule: If an argument's rule uses an unknown predicate.
    :raises ValueError: If the version has no main class.
    """

    if descriptor.main_class is None:
        raise ValueError(f"version {descriptor.id} has no main class")

    platform = platform.with_features({
        "is_demo_user": settings.demo,
        "has_custom_resolution": settings.resolution is not None,
    })

    main_jar = str(paths.main_jar)
    classpath = []
    seen = set()
    for lib_path in (*map(str, paths.libraries), main_jar):
        if lib_path not in seen:
            seen.add(lib_path)
            classpath.append(lib_path)
    # A library may have the same path as the main jar.
    if classpath[-1] != main_jar:
        classpath.remove(main_jar)
        classpath.append(main_jar)

    jvm_templates = descriptor.jvm_arguments
    if descriptor.legacy or not len(jvm_templates):
        jvm_templates = (*LEGACY_JVM_ARGUMENTS, *jvm_templates)

    game_templates = descriptor.game_arguments
    if descriptor.legacy:
        game_templates = (ArgumentTemplate(descriptor.legacy_game_arguments), *game_templates)

    all_features = set(collect_features(rule for template in game_templates for rule in template.rules))

    jvm_args = [f"-Xms{settings.min_memory}", f"-Xmx{settings.max_memory}", *settings.extra_jvm_args]
    jvm_args.extend(interpret_templates(jvm_templates, platform))

    if descriptor.logging is not None and paths.log_config is not None:
        jvm_args.append(descriptor.logging.argument.replace("${path}", str(paths.log_config)))

    if descriptor.main_class == LAUNCH_WRAPPER_MAIN_CLASS:
        jvm_args.append(f"-Dminecraft.client.jar={main_jar}")

    game_args = interpret_templates(game_templates, platform)

    # The arguments do not support custom resolution.
    if settings.resolution is not None and "has_custom_resolution" not in all_features:
        game_args.extend(("--width", str(settings.resolution[0]), "--height", str(settings.resolution[1])))
    if settings.fullscreen:
        game_args.append("--fullscreen")
    if settings.demo and "is_demo_user" not in all_features:
        game_args.append("--demo")
    if settings.disable_multiplayer:
        game_args.append("--disableMultiplayer")
    if settings.disable_chat:
        game_args.append("--disableChat")

    asset_index_id = "" if descriptor.asset_index is None else descriptor.asset_index.id

    replacements = {
        # Game
        "auth_player_name": session.username,
        "version_name": descriptor.id,
        "library_directory": str(paths.libraries_dir),
        "game_directory": str(paths.work_dir),
        "assets_root": str(paths.assets_dir),
        "assets_index_name": asset_index_id,
        "auth_uuid": session.uuid,
        "auth_access_token": session.format_token_argument(False),
        "auth_xuid": session.xuid,
        "clientid": session.client_id,
        "user_type": session.user_type,
        "version_type": descriptor.release_type or "",
        # Game (legacy)
        "auth_session": session.format_token_argument(True),
        "game_assets": str(paths.assets_dir if paths.assets_virtual_dir is None else paths.assets_virtual_dir),
        "user_properties": "{}",
        # JVM
        "natives_directory": str(paths.natives_dir),
        "launcher_name": LAUNCHER_NAME,
        "launcher_version": LAUNCHER_VERSION,
        "classpath_separator": os.pathsep,
        "classpath": os.pathsep.join(classpath),
    }

    if settings.resolution is not None:
        replacements["resolution_width"] = str(settings.resolution[0])
        replacements["resolution_height"] = str(settings.resolution[1])

    return LaunchSpec(
        paths.work_dir,
        settings.java_path or find_java() or Path(jvm_bin_filename),
        [replace_vars(arg, replacements) for arg in jvm_args],
        classpath,
        descriptor.main_class,
        [replace_vars(arg, replacements) for arg in game_args],
        paths.natives_dir)


def interpret_templates(templates: Iterable[ArgumentTemplate], platform: Platform) -> List[str]:
    """Flatten argument templates allowed on the given platform into their tokens.
    """
    args = []
    for template in templates:
        if evaluate_rules(template.rules, platform):
            args.extend(template.tokens)
    return args


def replace_vars(argument: str, replacements: Dict[str, str]) -> str:
    """Replace all placeholders of the form `${name}` in an argument.

    :raises TemplateSubstitutionError: If a placeholder has no replacement.
    """
    def repl(match: "re.Match") -> str:
        try:
            return replacements[match.group(1)]
        except KeyError:
            raise TemplateSubstitutionError(match.group(1), argument)
    return _VAR_PATTERN.sub(repl, argument)


def find_java() -> Optional[Path]:
    """Find a Java runtime, first in `JAVA_HOME` and then in the `PATH`.
    """

    java_home = os.environ.get("JAVA_HOME")
    if java_home:
        java_bin = Path(java_home) / "bin" / jvm_bin_filename
        if java_bin.is_file():
            return java_bin

    which = shutil.which(jvm_bin_filename)
    return None if which is None else Path(which)


def extract_natives(natives: Iterable[Tuple[Path, Tuple[str, ...]]], dst_dir: Path) -> List[Path]:
    """Extract native libraries into the given directory. Archives (jar, zip) have their
    shared libraries extracted at the root of the directory, except for entries starting
    with an excluded prefix. Files that are not archives are linked, or copied, as-is.

    :raises FileNotFoundError: If a native file is missing.
    :return: The extracted files.
    """

    dst_dir.mkdir(parents=True, exist_ok=True)
    extracted = []

    for src_file, excludes in natives:

        if not src_file.is_file():
            raise FileNotFoundError(f"source native file not found: {src_file}")

        native_name = src_file.name
        if native_name.endswith((".zip", ".jar")):

            with ZipFile(src_file, "r") as native_zip:
                for native_zip_info in native_zip.infolist():

                    native_name = native_zip_info.filename
                    if native_name.startswith(excludes):
                        continue
                    if not native_name.endswith((".so", ".dll", ".dylib", ".jnilib")):
                        continue

                    dst_file = dst_dir / native_name[native_name.rfind("/") + 1:]
                    with native_zip.open(native_zip_info, "r") as src_fp:
                        with dst_file.open("wb") as dst_fp:
                            shutil.copyfileobj(src_fp, dst_fp)
                    extracted.append(dst_file)

        else:

            # Here we try to remove the version numbers of .so files.
            so_idx = native_name.rfind(".so")
            if so_idx >= 0:
                native_name = native_name[:so_idx + len(".so")]

            # Try to symlink the file in the bin dir, and fallback to simple copy.
            dst_file = dst_dir / native_name
            try:
                dst_file.symlink_to(src_file)
            except OSError:
                shutil.copyfile(src_file, dst_file)
            extracted.append(dst_file)

    return extracted


class TemplateSubstitutionError(Exception):
    """Raised when an argument contains a placeholder that has no value.
    """

    def __init__(self, token: str, argument: str) -> None:
        self.token = token
        self.argument = argument

    def __str__(self) -> str:
        return f"no value for '${{{self.token}}}' in argument {self.argument!r}"
