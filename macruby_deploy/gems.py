"""Installed gem lookup and dependency closures.

Gem metadata is read from the ``specifications/*.gemspec`` files RubyGems
writes into each gem repository. Those files are generated Ruby with a very
regular shape, so the handful of fields needed here are picked out with
regular expressions rather than by evaluating Ruby.
"""

from dataclasses import dataclass, field
import functools
import logging
import pathlib
import re

from macruby_deploy.errors import ResolutionError


_STRING_LITERAL: str = r"""(?:%q\{(?P<{n}1>[^}]*)\}|%q<(?P<{n}2>[^>]*)>|"(?P<{n}3>[^"]*)"|'(?P<{n}4>[^']*)')(?:\.freeze)?"""

_NAME_RE: re.Pattern[str] = re.compile(r"^\s*s\.name\s*=\s*" + _STRING_LITERAL.replace("{n}", "v"), re.M)
_VERSION_RE: re.Pattern[str] = re.compile(
    r"^\s*s\.version\s*=\s*(?:Gem::Version\.new\()?\s*" + _STRING_LITERAL.replace("{n}", "v"),
    re.M,
)
_REQUIRE_PATHS_RE: re.Pattern[str] = re.compile(r"^\s*s\.require_paths\s*=\s*\[(?P<body>[^\]]*)\]", re.M)
_DEPENDENCY_RE: re.Pattern[str] = re.compile(
    r"^\s*s\.add_(?P<kind>runtime_dependency|dependency|development_dependency)\s*\(?\s*"
    + _STRING_LITERAL.replace("{n}", "v"),
    re.M,
)
_LIST_ITEM_RE: re.Pattern[str] = re.compile(_STRING_LITERAL.replace("{n}", "v"))
_VERSION_SEGMENT_RE: re.Pattern[str] = re.compile(r"[0-9]+|[A-Za-z]+")


@dataclass(frozen=True, slots=True)
class GemSpec:
    """An installed gem.

    :ivar name: Gem name.
    :ivar version: Version string.
    :ivar dependencies: Names of runtime dependencies, in declaration order.
    :ivar require_paths: Load-path directories relative to ``install_root``.
    :ivar install_root: Directory the gem is unpacked into.
    """

    name: str
    version: str
    dependencies: tuple[str, ...]
    require_paths: tuple[str, ...]
    install_root: pathlib.Path

    def require_dirs(self) -> list[pathlib.Path]:
        return [self.install_root / p for p in self.require_paths]


def _literal(m: re.Match[str]) -> str:
    for i in range(1, 5):
        value: str | None = m.group(f"v{i}")
        if value is not None:
            return value
    return ""


def parse_gemspec(text: str, *, install_root: pathlib.Path) -> GemSpec:
    """Parse a RubyGems-generated ``.gemspec``.

    Both ``add_runtime_dependency`` and plain ``add_dependency`` count as
    runtime dependencies; development dependencies are ignored. Generated
    specs repeat dependencies across version-guard branches, so each name is
    listed once.

    :param text: File contents.
    :param install_root: Directory the gem is installed in.
    :returns: Parsed spec.
    :raises ValueError: If the name or version is missing.
    """

    name_m = _NAME_RE.search(text)
    version_m = _VERSION_RE.search(text)
    if name_m is None or version_m is None:
        raise ValueError("gemspec has no s.name / s.version")

    require_paths: tuple[str, ...] = ("lib",)
    paths_m = _REQUIRE_PATHS_RE.search(text)
    if paths_m is not None:
        items: list[str] = [_literal(m) for m in _LIST_ITEM_RE.finditer(paths_m.group("body"))]
        if len(items) > 0:
            require_paths = tuple(items)

    deps: list[str] = []
    for m in _DEPENDENCY_RE.finditer(text):
        if m.group("kind") == "development_dependency":
            continue
        dep: str = _literal(m)
        if dep not in deps:
            deps.append(dep)

    return GemSpec(
        name=_literal(name_m),
        version=_literal(version_m),
        dependencies=tuple(deps),
        require_paths=require_paths,
        install_root=install_root,
    )


def _version_segments(version: str) -> list[int | str]:
    segments: list[int | str] = []
    for token in _VERSION_SEGMENT_RE.findall(version):
        if token.isdigit() is True:
            segments.append(int(token))
        else:
            segments.append(token)
    return segments


def compare_versions(a: str, b: str) -> int:
    """Compare two gem versions the way RubyGems does.

    Missing segments count as ``0``; a letter segment marks a prerelease and
    sorts before any number (``1.0.a`` < ``1.0`` == ``1.0.0`` < ``1.0.1``).

    :returns: Negative, zero or positive, like a classic ``cmp``.
    """

    sa: list[int | str] = _version_segments(a)
    sb: list[int | str] = _version_segments(b)
    for i in range(max(len(sa), len(sb))):
        x: int | str = sa[i] if i < len(sa) else 0
        y: int | str = sb[i] if i < len(sb) else 0
        if x == y:
            continue
        if isinstance(x, str) and isinstance(y, int):
            return -1
        if isinstance(x, int) and isinstance(y, str):
            return 1
        return -1 if x < y else 1
    return 0


@dataclass(slots=True)
class GemIndex:
    """Installed gems across one or more gem repositories.

    :ivar specs: Every parsed spec, grouped by gem name.
    """

    specs: dict[str, list[GemSpec]] = field(default_factory=dict)

    @classmethod
    def load(
        cls,
        repositories: list[pathlib.Path],
        *,
        logger: logging.Logger | None = None,
    ) -> "GemIndex":
        """Read every ``specifications/*.gemspec`` in the given repositories.

        Unparseable spec files are skipped with a warning.

        :param repositories: Gem repository roots (each holding ``specifications/`` and ``gems/``).
        :param logger: Optional logger.
        :returns: Populated index.
        """

        if logger is None:
            logger = logging.getLogger("macruby_deploy")

        index: GemIndex = cls()
        for repo in repositories:
            spec_dir: pathlib.Path = repo / "specifications"
            if spec_dir.is_dir() is False:
                if logger.isEnabledFor(logging.DEBUG) is True:
                    logger.debug(f"macruby-deploy: no gem specifications in {repo}")
                continue
            for spec_file in sorted(spec_dir.glob("*.gemspec")):
                try:
                    text: str = spec_file.read_text(encoding="utf-8")
                    spec: GemSpec = parse_gemspec(text, install_root=repo / "gems" / spec_file.stem)
                except (OSError, UnicodeDecodeError, ValueError) as e:
                    logger.warning(f"macruby-deploy: warning: skipping unreadable gemspec {spec_file}: {e}")
                    continue
                index.add(spec)
        return index

    def add(self, spec: GemSpec) -> None:
        self.specs.setdefault(spec.name, []).append(spec)

    def find(self, name: str) -> GemSpec:
        """Return the most recent installed version of a gem.

        :raises ResolutionError: If the gem is not installed.
        """

        candidates: list[GemSpec] | None = self.specs.get(name)
        if candidates is None or len(candidates) == 0:
            raise ResolutionError(f"Gem '{name}' is not installed.")
        return max(candidates, key=functools.cmp_to_key(lambda x, y: compare_versions(x.version, y.version)))


def resolve_closure(
    index: GemIndex,
    name: str,
    *,
    _stack: tuple[str, ...] = (),
) -> list[pathlib.Path]:
    """Resolve a gem's require directories, dependencies first.

    Each dependency is resolved depth-first and its directories come before
    the gem's own. A dependency reachable through several paths is resolved
    (and listed) once per path.

    :param index: Installed gems.
    :param name: Gem to resolve.
    :returns: Ordered require directories.
    :raises ResolutionError: If a gem is missing or the dependencies form a cycle.
    """

    if name in _stack:
        chain: str = " -> ".join((*_stack, name))
        raise ResolutionError(f"Gem dependency cycle: {chain}")

    spec: GemSpec = index.find(name)
    stack: tuple[str, ...] = (*_stack, name)

    dirs: list[pathlib.Path] = []
    for dep in spec.dependencies:
        if dep not in index.specs:
            raise ResolutionError(f"Gem '{dep}' (required by '{name}') is not installed.")
        dirs.extend(resolve_closure(index, dep, _stack=stack))
    dirs.extend(spec.require_dirs())
    return dirs
