"""Embed the runtime framework into an application bundle.

The embedded copy is rebuilt from scratch on every run:

1. resolve gem closures (nothing is touched if one is missing);
2. compute what not to copy;
3. wipe any previous copy and mirror the framework;
4. keep one real version directory behind the ``Versions/Current`` alias;
5. prune the standard library;
6. copy gems into ``site_ruby`` and drop symlinks leading out of the copy;
7. optionally copy BridgeSupport files;
8. relink binaries;
9. report link-policy violations.

A failure in steps 1-8 aborts the run and leaves the bundle as it is.
"""

from dataclasses import dataclass
import logging
import os
import pathlib
import shutil
import time

from macruby_deploy.errors import FileOperationError
from macruby_deploy.gems import GemIndex, resolve_closure
from macruby_deploy.layout import AppBundle, EmbeddedTree, RuntimeDistribution, path_matches
from macruby_deploy.pruner import prune_stdlib
from macruby_deploy.relinker import relink_bundle
from macruby_deploy.tools import ToolRunner
from macruby_deploy.validator import LinkViolation, find_link_violations, report_link_violations


DEFAULT_BRIDGESUPPORT_ROOT: pathlib.Path = pathlib.Path("/System/Library/Frameworks")
BRIDGESUPPORT_SUFFIXES: frozenset[str] = frozenset({".bridgesupport", ".dylib"})


@dataclass(frozen=True, slots=True)
class CopyStats:
    """Stats collected while copying a directory tree.

    :ivar files_copied: Number of files copied.
    :ivar links_copied: Number of symlinks recreated.
    :ivar bytes_copied: Total bytes copied (best-effort).
    """

    files_copied: int
    links_copied: int
    bytes_copied: int


@dataclass(frozen=True, slots=True)
class GemClosure:
    """Require directories for one requested gem, dependencies first."""

    name: str
    dirs: tuple[pathlib.Path, ...]


@dataclass(frozen=True, slots=True)
class EmbedResult:
    """Outcome of :func:`embed_framework`.

    :ivar tree: The embedded runtime.
    :ivar copy_stats: Stats of the framework mirror copy.
    :ivar relinked: Files rewritten by the relinker.
    :ivar violations: Link-policy findings (advisory).
    """

    tree: EmbeddedTree
    copy_stats: CopyStats
    relinked: tuple[pathlib.Path, ...]
    violations: tuple[LinkViolation, ...]


def resolve_gem_closures(
    *,
    gems: tuple[str, ...],
    repositories: tuple[pathlib.Path, ...],
    logger: logging.Logger,
) -> list[GemClosure]:
    """Resolve every requested gem before anything is copied.

    :raises ResolutionError: If any gem cannot be resolved.
    """

    if len(gems) == 0:
        return []

    index: GemIndex = GemIndex.load(list(repositories), logger=logger)
    closures: list[GemClosure] = []
    for name in gems:
        dirs: list[pathlib.Path] = resolve_closure(index, name)
        closures.append(GemClosure(name=name, dirs=tuple(dirs)))
        if logger.isEnabledFor(logging.DEBUG) is True:
            logger.debug(f"macruby-deploy: gem {name} closure={[str(d) for d in dirs]}")
    return closures


def compute_excludes(
    distribution: RuntimeDistribution,
    *,
    no_stdlib: bool,
    installed_versions: list[str],
) -> list[str]:
    """Patterns (relative to the framework root) the mirror copy skips.

    Every version directory except the current one is skipped, including the
    source's ``Versions/Current`` alias, which step 4 recreates as a relative
    symlink.

    :param distribution: Runtime being embedded.
    :param no_stdlib: Skip the whole Ruby library tree.
    :param installed_versions: Names found in the source ``Versions`` directory.
    :returns: Exclude patterns.
    """

    patterns: list[str] = list(distribution.excluded_subpaths)
    if no_stdlib is True:
        patterns.append(f"Versions/{distribution.version}/usr/lib/ruby")
    for name in sorted(installed_versions):
        if name != distribution.version:
            patterns.append(f"Versions/{name}")
    return patterns


def _is_excluded(relpath: pathlib.PurePosixPath, patterns: list[str]) -> bool:
    for pattern in patterns:
        if path_matches(relpath, pattern) is True:
            return True
    return False


def _local_link_target(target: str, *, src_roots: tuple[str, ...], dst: pathlib.Path, link: pathlib.Path) -> str:
    """Rewrite an absolute link target inside the source tree as a relative one.

    Targets that are relative or point outside ``src_roots`` are returned
    unchanged; :func:`remove_escaping_links` deals with those later.
    """

    if os.path.isabs(target) is False:
        return target
    for root in src_roots:
        if target == root or target.startswith(root + os.sep) is True:
            rel: str = os.path.relpath(target, root)
            return os.path.relpath(os.path.join(dst, rel), os.path.dirname(link))
    return target


def _mirror_tree(*, src: pathlib.Path, dst: pathlib.Path, exclude_patterns: list[str]) -> CopyStats:
    """Copy a directory tree, recreating symlinks and skipping excluded paths.

    Absolute symlink targets inside ``src`` are rewritten relative to the
    copy.

    :param src: Source directory.
    :param dst: Destination directory (must not exist yet or be empty).
    :param exclude_patterns: Patterns relative to ``src``.
    :returns: Copy statistics.
    :raises FileOperationError: If anything cannot be copied.
    """

    files_copied: int = 0
    links_copied: int = 0
    bytes_copied: int = 0
    src_roots: tuple[str, ...] = tuple(dict.fromkeys((os.path.abspath(src), os.path.realpath(src))))

    def copy_link(src_path: pathlib.Path, dest_path: pathlib.Path) -> None:
        try:
            target: str = os.readlink(src_path)
            os.symlink(_local_link_target(target, src_roots=src_roots, dst=dst, link=dest_path), dest_path)
        except OSError as e:
            raise FileOperationError(f"Cannot copy symlink {src_path} -> {dest_path}: {e}") from e

    try:
        dst.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise FileOperationError(f"Cannot create {dst}: {e}") from e

    for root_str, dirs, files in os.walk(src, topdown=True):
        root_path: pathlib.Path = pathlib.Path(root_str)
        rel_root: pathlib.Path = root_path.relative_to(src)
        rel_root_posix: pathlib.PurePosixPath = pathlib.PurePosixPath(rel_root.as_posix())
        out_dir: pathlib.Path = dst / rel_root

        keep_dirs: list[str] = []
        for d in sorted(dirs):
            rel: pathlib.PurePosixPath = rel_root_posix / d
            if _is_excluded(rel, exclude_patterns) is True:
                continue
            if (root_path / d).is_symlink() is True:
                copy_link(root_path / d, out_dir / d)
                links_copied += 1
                continue
            try:
                (out_dir / d).mkdir(exist_ok=True)
            except OSError as e:
                raise FileOperationError(f"Cannot create {out_dir / d}: {e}") from e
            keep_dirs.append(d)
        dirs[:] = keep_dirs

        for name in sorted(files):
            if _is_excluded(rel_root_posix / name, exclude_patterns) is True:
                continue
            src_path: pathlib.Path = root_path / name
            dest_path: pathlib.Path = out_dir / name
            if src_path.is_symlink() is True:
                copy_link(src_path, dest_path)
                links_copied += 1
                continue
            try:
                shutil.copy2(src_path, dest_path)
            except OSError as e:
                raise FileOperationError(f"Cannot copy {src_path} -> {dest_path}: {e}") from e
            files_copied += 1
            try:
                bytes_copied += src_path.stat().st_size
            except OSError:
                pass

    return CopyStats(files_copied=files_copied, links_copied=links_copied, bytes_copied=bytes_copied)


def _remove_path(path: pathlib.Path) -> None:
    """Remove a file, symlink or directory tree if present.

    :raises FileOperationError: If removal fails.
    """

    try:
        if path.is_symlink() is True or path.is_file() is True:
            path.unlink()
        elif path.is_dir() is True:
            shutil.rmtree(path)
    except OSError as e:
        raise FileOperationError(f"Cannot remove {path}: {e}") from e


def normalize_versions(tree: EmbeddedTree) -> None:
    """Leave one real version directory behind a ``Versions/Current`` alias.

    Drops every other entry in ``Versions``, points ``Versions/Current`` at
    ``tree.version`` with a relative symlink, and removes header directories.
    A source whose only version directory is a real ``Current`` keeps it as is.

    :param tree: Embedded runtime.
    :raises FileOperationError: If the version directory is missing or the alias cannot be created.
    """

    versions_dir: pathlib.Path = tree.versions_dir
    copied: pathlib.Path = tree.version_dir
    if copied.is_dir() is False or copied.is_symlink() is True:
        raise FileOperationError(f"Embedded framework has no version directory {copied}")

    for entry in sorted(versions_dir.iterdir()):
        if entry.name != tree.version:
            _remove_path(entry)

    if tree.version != "Current":
        try:
            os.symlink(tree.version, tree.current_dir)
        except OSError as e:
            raise FileOperationError(f"Cannot link {tree.current_dir} -> {tree.version}: {e}") from e

    for stale in (tree.root / "Headers", copied / "Headers", tree.usr_dir / "include"):
        _remove_path(stale)


def remove_escaping_links(tree: EmbeddedTree, *, logger: logging.Logger) -> list[pathlib.Path]:
    """Delete symlinks that dangle or point outside the embedded framework.

    Absolute targets always count as outside: the bundle must not depend on
    where the runtime is installed on the build machine.

    :param tree: Embedded runtime.
    :param logger: Logger.
    :returns: Links that were removed.
    :raises FileOperationError: If a link cannot be removed.
    """

    root: str = os.path.abspath(tree.root)
    removed: list[pathlib.Path] = []
    for root_str, dirs, files in os.walk(tree.root, topdown=True):
        for name in sorted(dirs + files):
            link: pathlib.Path = pathlib.Path(root_str) / name
            if link.is_symlink() is False:
                continue
            try:
                target: str = os.readlink(link)
            except OSError as e:
                raise FileOperationError(f"Cannot read symlink {link}: {e}") from e
            resolved: str = os.path.normpath(os.path.join(root_str, target))
            inside: bool = os.path.isabs(target) is False and resolved.startswith(root + os.sep)
            if inside is True and link.exists() is True:
                continue
            _remove_path(link)
            removed.append(link)
            if logger.isEnabledFor(logging.DEBUG) is True:
                logger.debug(f"macruby-deploy: removed symlink {link} -> {target}")

    if len(removed) > 0:
        logger.info(f"macruby-deploy: removed {len(removed)} symlinks leading out of {tree.root.name}")
    return removed


def embed_gem_closures(tree: EmbeddedTree, closures: list[GemClosure], *, logger: logging.Logger) -> int:
    """Merge every closure directory into the embedded ``site_ruby`` directory.

    Later directories overwrite identically named files from earlier ones.

    :returns: Number of directories copied.
    :raises FileOperationError: If a directory is missing or cannot be copied.
    """

    if len(closures) == 0:
        return 0

    site_dir: pathlib.Path = tree.site_dir
    copied: int = 0
    for closure in closures:
        for src in closure.dirs:
            if src.is_dir() is False:
                raise FileOperationError(f"Gem '{closure.name}': require path does not exist: {src}")
            try:
                shutil.copytree(src, site_dir, symlinks=True, dirs_exist_ok=True)
            except (OSError, shutil.Error) as e:
                raise FileOperationError(f"Cannot copy {src} -> {site_dir}: {e}") from e
            copied += 1
        logger.info(f"macruby-deploy: embedded gem {closure.name} ({len(closure.dirs)} directories)")
    return copied


def embed_bridgesupport(
    bundle: AppBundle,
    *,
    source_root: pathlib.Path,
    logger: logging.Logger,
) -> list[pathlib.Path]:
    """Copy system BridgeSupport files into ``Contents/Resources/BridgeSupport``.

    :param bundle: Application bundle.
    :param source_root: Directory holding ``*.framework`` directories.
    :param logger: Logger.
    :returns: Files written.
    :raises FileOperationError: If a file cannot be copied.
    """

    dest_dir: pathlib.Path = bundle.resources_dir / "BridgeSupport"
    try:
        dest_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise FileOperationError(f"Cannot create {dest_dir}: {e}") from e

    written: list[pathlib.Path] = []
    for framework in sorted(source_root.glob("*.framework")):
        bs_dir: pathlib.Path = framework / "Resources" / "BridgeSupport"
        if bs_dir.is_dir() is False:
            continue
        for p in sorted(bs_dir.iterdir()):
            if p.suffix not in BRIDGESUPPORT_SUFFIXES or p.is_file() is False:
                continue
            dest: pathlib.Path = dest_dir / p.name
            try:
                shutil.copy2(p, dest)
            except OSError as e:
                raise FileOperationError(f"Cannot copy {p} -> {dest}: {e}") from e
            written.append(dest)

    if len(written) == 0:
        logger.warning(f"macruby-deploy: warning: no BridgeSupport files found under {source_root}")
    else:
        logger.info(f"macruby-deploy: embedded {len(written)} BridgeSupport files")
    return written


def embed_framework(
    *,
    bundle: AppBundle,
    distribution: RuntimeDistribution,
    runner: ToolRunner,
    no_stdlib: bool = False,
    keep_units: tuple[str, ...] = (),
    gems: tuple[str, ...] = (),
    gem_repositories: tuple[pathlib.Path, ...] = (),
    bridgesupport_root: pathlib.Path | None = None,
    logger: logging.Logger | None = None,
) -> EmbedResult:
    """Embed the runtime into ``bundle`` and relink it.

    :param bundle: Application bundle (already checked).
    :param distribution: Installed runtime.
    :param runner: Tool runner.
    :param no_stdlib: Leave the standard library out entirely.
    :param keep_units: Only keep these standard library units (empty keeps all).
    :param gems: Gems to embed, with their dependencies.
    :param gem_repositories: Gem repositories to search.
    :param bridgesupport_root: When set, copy BridgeSupport files from here.
    :param logger: Optional logger.
    :returns: What was embedded.
    :raises ResolutionError: If a gem cannot be resolved (before any copying).
    :raises FileOperationError: If a filesystem step or tool invocation fails.
    """

    if logger is None:
        logger = logging.getLogger("macruby_deploy")

    tree: EmbeddedTree = EmbeddedTree.for_bundle(bundle, distribution)

    closures: list[GemClosure] = resolve_gem_closures(
        gems=gems,
        repositories=gem_repositories,
        logger=logger,
    )

    installed_versions: list[str] = []
    try:
        for p in (distribution.root / "Versions").iterdir():
            installed_versions.append(p.name)
    except OSError as e:
        raise FileOperationError(f"Cannot list {distribution.root / 'Versions'}: {e}") from e
    excludes: list[str] = compute_excludes(
        distribution,
        no_stdlib=no_stdlib,
        installed_versions=installed_versions,
    )
    if logger.isEnabledFor(logging.DEBUG) is True:
        logger.debug(f"macruby-deploy: copy excludes={excludes}")

    t0: float = time.perf_counter()
    _remove_path(tree.root)
    stats: CopyStats = _mirror_tree(src=distribution.root, dst=tree.root, exclude_patterns=excludes)
    t1: float = time.perf_counter()
    logger.info(
        f"macruby-deploy: copied {distribution.root.name} ({stats.files_copied} files, "
        f"{stats.bytes_copied / (1024 * 1024):.1f} MiB) in {t1 - t0:.2f}s"
    )

    normalize_versions(tree)

    if no_stdlib is False:
        prune_stdlib(
            usr_dir=tree.usr_dir,
            ruby_version=tree.ruby_version,
            keep_units=keep_units,
            logger=logger,
        )

    embed_gem_closures(tree, closures, logger=logger)
    remove_escaping_links(tree, logger=logger)

    if bridgesupport_root is not None:
        embed_bridgesupport(bundle, source_root=bridgesupport_root, logger=logger)

    relinked: list[pathlib.Path] = relink_bundle(
        bundle=bundle,
        tree=tree,
        distribution=distribution,
        runner=runner,
        logger=logger,
    )

    violations: list[LinkViolation] = find_link_violations(root=tree.root, runner=runner, logger=logger)
    report_link_violations(violations, root=bundle.root, logger=logger)

    return EmbedResult(
        tree=tree,
        copy_stats=stats,
        relinked=tuple(relinked),
        violations=tuple(violations),
    )
