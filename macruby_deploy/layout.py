"""On-disk layouts: the installed runtime, the app bundle, and the embedded copy.

Everything here is a frozen value object computed once at the start of a run.
"""

from dataclasses import dataclass
import fnmatch
import os
import pathlib
import plistlib
import re
import xml.parsers.expat

from macruby_deploy.errors import ConfigurationError


DEFAULT_FRAMEWORK_PATH: pathlib.Path = pathlib.Path("/Library/Frameworks/MacRuby.framework")

DEFAULT_EXCLUDED_SUBPATHS: tuple[str, ...] = (
    "Headers",
    "Versions/*/Headers",
    "Versions/*/usr/bin",
    "Versions/*/usr/include",
    "Versions/*/usr/share",
    "Versions/*/usr/lib/*.a",
    "Versions/*/usr/lib/ruby/Gems",
)

EXECUTABLE_ANCHOR: str = "@executable_path/../Frameworks"

_CONFIG_RE: re.Pattern[str] = re.compile(r'^\s*CONFIG\["(?P<key>[^"]+)"\]\s*=\s*"(?P<value>[^"]*)"', re.M)
_ARCH_FLAG_RE: re.Pattern[str] = re.compile(r"-arch\s+(?P<arch>\S+)")
_VAR_REF_RE: re.Pattern[str] = re.compile(r"\$\((?P<name>[A-Za-z0-9_]+)\)")


@dataclass(frozen=True, slots=True)
class RuntimeDistribution:
    """The installed runtime framework to embed.

    :ivar root: Framework directory (e.g. ``/Library/Frameworks/MacRuby.framework``).
    :ivar version: Name of the version directory ``Versions/Current`` points at.
    :ivar ruby_version: Ruby ABI version (``CONFIG["ruby_version"]``).
    :ivar supported_archs: Architectures the runtime was built for.
    :ivar library_name: File name of the shared runtime library.
    :ivar excluded_subpaths: Glob patterns (relative to ``root``) never embedded.
    """

    root: pathlib.Path
    version: str
    ruby_version: str
    supported_archs: tuple[str, ...]
    library_name: str
    excluded_subpaths: tuple[str, ...] = DEFAULT_EXCLUDED_SUBPATHS

    @property
    def version_dir(self) -> pathlib.Path:
        return self.root / "Versions" / self.version

    @property
    def usr_dir(self) -> pathlib.Path:
        return self.version_dir / "usr"

    @property
    def gem_repository(self) -> pathlib.Path:
        return self.usr_dir / "lib" / "ruby" / "Gems" / self.ruby_version

    @property
    def compiler(self) -> pathlib.Path:
        return self.usr_dir / "bin" / "macrubyc"

    @property
    def build_library_path(self) -> str:
        """Absolute install name binaries built against this runtime reference."""

        return str(self.usr_dir / "lib" / self.library_name)


@dataclass(frozen=True, slots=True)
class AppBundle:
    """A ``.app`` directory being deployed into.

    :ivar root: Bundle root (``Foo.app``).
    """

    root: pathlib.Path

    @property
    def contents_dir(self) -> pathlib.Path:
        return self.root / "Contents"

    @property
    def macos_dir(self) -> pathlib.Path:
        return self.contents_dir / "MacOS"

    @property
    def resources_dir(self) -> pathlib.Path:
        return self.contents_dir / "Resources"

    @property
    def frameworks_dir(self) -> pathlib.Path:
        return self.contents_dir / "Frameworks"

    def check(self) -> None:
        """Validate the bundle before any mutation.

        :raises ConfigurationError: If the path is not a usable application bundle.
        """

        if self.root.exists() is False:
            raise ConfigurationError(f"Application bundle does not exist: {self.root}")
        if self.root.is_dir() is False:
            raise ConfigurationError(f"Application bundle is not a directory: {self.root}")
        if self.macos_dir.is_dir() is False:
            raise ConfigurationError(
                f"Application bundle has no Contents/MacOS directory: {self.root}"
            )

    def executables(self) -> list[pathlib.Path]:
        """Return every regular file in ``Contents/MacOS``, sorted."""

        if self.macos_dir.is_dir() is False:
            return []
        found: list[pathlib.Path] = []
        for p in sorted(self.macos_dir.iterdir()):
            if p.is_file() is True:
                found.append(p)
        return found

    def main_executable(self) -> pathlib.Path:
        """Locate the primary executable.

        Uses ``CFBundleExecutable`` from ``Contents/Info.plist`` when present,
        otherwise the first file in ``Contents/MacOS``.

        :raises ConfigurationError: If no executable can be found.
        """

        info_plist: pathlib.Path = self.contents_dir / "Info.plist"
        if info_plist.is_file() is True:
            try:
                with open(info_plist, "rb") as f:
                    info: dict = plistlib.load(f)
            except (OSError, plistlib.InvalidFileException, ValueError, xml.parsers.expat.ExpatError) as e:
                raise ConfigurationError(f"Unreadable Info.plist: {info_plist}") from e
            name: object = info.get("CFBundleExecutable")
            if isinstance(name, str) and len(name) > 0:
                candidate: pathlib.Path = self.macos_dir / name
                if candidate.is_file() is True:
                    return candidate

        executables: list[pathlib.Path] = self.executables()
        if len(executables) == 0:
            raise ConfigurationError(f"No executable found in {self.macos_dir}")
        return executables[0]


@dataclass(frozen=True, slots=True)
class EmbeddedTree:
    """The runtime copy inside ``Contents/Frameworks``.

    ``Versions/<version>`` is the only real version directory and
    ``Versions/Current`` is a relative symlink to it. Paths below ``usr`` are
    spelled through the real directory; install names go through the alias.

    :ivar root: Embedded framework directory.
    :ivar version: Name of the embedded version directory.
    :ivar ruby_version: Ruby ABI version of the embedded runtime.
    :ivar library_name: File name of the shared runtime library.
    """

    root: pathlib.Path
    version: str
    ruby_version: str
    library_name: str

    @classmethod
    def for_bundle(cls, bundle: AppBundle, distribution: RuntimeDistribution) -> "EmbeddedTree":
        return cls(
            root=bundle.frameworks_dir / distribution.root.name,
            version=distribution.version,
            ruby_version=distribution.ruby_version,
            library_name=distribution.library_name,
        )

    @property
    def versions_dir(self) -> pathlib.Path:
        return self.root / "Versions"

    @property
    def version_dir(self) -> pathlib.Path:
        return self.versions_dir / self.version

    @property
    def current_dir(self) -> pathlib.Path:
        return self.versions_dir / "Current"

    @property
    def usr_dir(self) -> pathlib.Path:
        return self.version_dir / "usr"

    @property
    def lib_dir(self) -> pathlib.Path:
        return self.usr_dir / "lib"

    @property
    def site_dir(self) -> pathlib.Path:
        return self.lib_dir / "ruby" / "site_ruby" / self.ruby_version

    @property
    def anchored_library_path(self) -> str:
        """Executable-relative install name of the embedded runtime library."""

        return f"{EXECUTABLE_ANCHOR}/{self.root.name}/Versions/Current/usr/lib/{self.library_name}"


def load_distribution(
    framework_path: pathlib.Path,
    *,
    excluded_subpaths: tuple[str, ...] = DEFAULT_EXCLUDED_SUBPATHS,
) -> RuntimeDistribution:
    """Inspect an installed runtime framework.

    :param framework_path: Framework directory.
    :param excluded_subpaths: Patterns never embedded.
    :returns: The resolved distribution.
    :raises ConfigurationError: If the framework is missing or incomplete.
    """

    if framework_path.is_dir() is False:
        raise ConfigurationError(f"Runtime framework not found: {framework_path}")

    version: str = _current_version(framework_path)
    usr_dir: pathlib.Path = framework_path / "Versions" / version / "usr"
    rbconfig_candidates: list[pathlib.Path] = sorted((usr_dir / "lib" / "ruby").glob("*/*/rbconfig.rb"))
    if len(rbconfig_candidates) == 0:
        raise ConfigurationError(f"No rbconfig.rb found under {usr_dir / 'lib' / 'ruby'}")

    try:
        text: str = rbconfig_candidates[0].read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Unreadable rbconfig.rb: {rbconfig_candidates[0]}") from e
    config: dict[str, str] = parse_rbconfig(text)

    ruby_version: str | None = config.get("ruby_version")
    if ruby_version is None or len(ruby_version) == 0:
        raise ConfigurationError(f"rbconfig.rb does not define ruby_version: {rbconfig_candidates[0]}")

    supported_archs: tuple[str, ...] = tuple(
        m.group("arch") for m in _ARCH_FLAG_RE.finditer(config.get("ARCH_FLAG", ""))
    )
    library_name: str = config.get("LIBRUBY_SO", "")
    if len(library_name) == 0:
        library_name = f"libmacruby.{ruby_version}.dylib"

    return RuntimeDistribution(
        root=framework_path,
        version=version,
        ruby_version=ruby_version,
        supported_archs=supported_archs,
        library_name=library_name,
        excluded_subpaths=excluded_subpaths,
    )


def _current_version(framework_path: pathlib.Path) -> str:
    """Resolve which ``Versions/*`` directory is current.

    :raises ConfigurationError: If it cannot be determined.
    """

    versions_dir: pathlib.Path = framework_path / "Versions"
    current: pathlib.Path = versions_dir / "Current"
    if current.is_symlink() is True:
        target: str = os.readlink(current)
        name: str = pathlib.PurePath(target).name
        if (versions_dir / name).is_dir() is False:
            raise ConfigurationError(f"Versions/Current points at a missing directory: {target}")
        return name
    if current.is_dir() is True:
        return "Current"

    real_dirs: list[str] = []
    if versions_dir.is_dir() is True:
        for p in sorted(versions_dir.iterdir()):
            if p.is_dir() is True and p.is_symlink() is False:
                real_dirs.append(p.name)
    if len(real_dirs) == 1:
        return real_dirs[0]
    raise ConfigurationError(f"Cannot determine the current version of {framework_path}")


def parse_rbconfig(text: str) -> dict[str, str]:
    """Extract ``CONFIG["KEY"] = "value"`` assignments from ``rbconfig.rb``.

    ``$(NAME)`` references are expanded against the other entries.

    :param text: File contents.
    :returns: Mapping of keys to expanded values.
    """

    raw: dict[str, str] = {}
    for m in _CONFIG_RE.finditer(text):
        raw[m.group("key")] = m.group("value")

    expanded: dict[str, str] = {}
    for key in raw:
        expanded[key] = _expand(raw[key], raw, depth=0)
    return expanded


def _expand(value: str, config: dict[str, str], *, depth: int) -> str:
    if depth > 16:
        return value

    def repl(m: re.Match[str]) -> str:
        name: str = m.group("name")
        if name not in config:
            return ""
        return _expand(config[name], config, depth=depth + 1)

    return _VAR_REF_RE.sub(repl, value)


def path_matches(relpath: pathlib.PurePosixPath, pattern: str) -> bool:
    """Check whether ``relpath`` is, or lives under, a path matching ``pattern``.

    Matching is per path component (``*`` never crosses a ``/``).

    :param relpath: Path relative to the tree root.
    :param pattern: Glob pattern relative to the same root.
    :returns: ``True`` if a leading run of components matches the pattern.
    """

    pat_parts: tuple[str, ...] = pathlib.PurePosixPath(pattern).parts
    rel_parts: tuple[str, ...] = relpath.parts
    if len(rel_parts) < len(pat_parts):
        return False
    for part, pat in zip(rel_parts, pat_parts):
        if fnmatch.fnmatchcase(part, pat) is False:
            return False
    return True
