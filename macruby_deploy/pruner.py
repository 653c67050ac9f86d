"""Standard library pruning.

The embedded standard library is enumerated once into a :class:`StdlibFileSet`
snapshot. Which files go is then decided by pure predicates over that snapshot:

- With a keep list, every file that does not belong to a kept unit is removed.
- A ``.rb`` whose compiled ``.rbo`` sibling exists in the snapshot is removed;
  the object supersedes it. This check uses the full snapshot, so keep
  filtering never brings back a source whose object was filtered out.
"""

from dataclasses import dataclass
import fnmatch
import logging
import os
import pathlib

from macruby_deploy.errors import FileOperationError


SOURCE_SUFFIX: str = ".rb"
OBJECT_SUFFIX: str = ".rbo"
ARCH_DIR_PATTERN: str = "universal-darwin*"


@dataclass(frozen=True, slots=True)
class StdlibFileSet:
    """Snapshot of the standard library files under a ``usr`` directory.

    :ivar root: The ``usr`` directory the paths are relative to.
    :ivar ruby_version: Ruby ABI version naming the stdlib directories.
    :ivar files: Sorted file paths relative to ``root``.
    """

    root: pathlib.Path
    ruby_version: str
    files: tuple[pathlib.PurePosixPath, ...]


def stdlib_bases(ruby_version: str) -> tuple[pathlib.PurePosixPath, ...]:
    """Stdlib directories relative to ``usr`` (``lib/ruby/{,site_ruby/}<version>``)."""

    return (
        pathlib.PurePosixPath("lib", "ruby", ruby_version),
        pathlib.PurePosixPath("lib", "ruby", "site_ruby", ruby_version),
    )


def snapshot_stdlib(usr_dir: pathlib.Path, ruby_version: str) -> StdlibFileSet:
    """Enumerate every stdlib file under ``usr_dir`` once.

    :param usr_dir: Embedded ``usr`` directory.
    :param ruby_version: Ruby ABI version.
    :returns: Snapshot of the files (missing directories yield nothing).
    """

    files: set[pathlib.PurePosixPath] = set()
    for base in stdlib_bases(ruby_version):
        base_dir: pathlib.Path = usr_dir / base
        if base_dir.is_dir() is False:
            continue
        for root_str, _dirs, names in os.walk(base_dir):
            rel_root: pathlib.PurePosixPath = pathlib.PurePosixPath(
                pathlib.Path(root_str).relative_to(usr_dir).as_posix()
            )
            for name in names:
                files.add(rel_root / name)

    return StdlibFileSet(root=usr_dir, ruby_version=ruby_version, files=tuple(sorted(files)))


def unit_relpath(
    relpath: pathlib.PurePosixPath,
    ruby_version: str,
) -> pathlib.PurePosixPath | None:
    """Strip the stdlib base (and arch directory, if any) from a path.

    ``lib/ruby/1.9.2/universal-darwin10.0/json/ext.bundle`` becomes
    ``json/ext.bundle``.

    :param relpath: Path relative to ``usr``.
    :param ruby_version: Ruby ABI version.
    :returns: Path relative to the unit base, or ``None`` outside the stdlib.
    """

    parts: tuple[str, ...] = relpath.parts
    for base in stdlib_bases(ruby_version):
        base_parts: tuple[str, ...] = base.parts
        if parts[0 : len(base_parts)] != base_parts:
            continue
        rest: tuple[str, ...] = parts[len(base_parts) :]
        if len(rest) > 1 and fnmatch.fnmatchcase(rest[0], ARCH_DIR_PATTERN) is True:
            rest = rest[1:]
        if len(rest) == 0:
            return None
        return pathlib.PurePosixPath(*rest)
    return None


def is_kept(unit_path: pathlib.PurePosixPath, unit: str) -> bool:
    """Check whether a stdlib file belongs to a kept unit.

    A unit ``name`` keeps the file ``name`` itself, ``name.<ext>`` and every
    file below the directory ``name/``, data files included.

    :param unit_path: Path relative to the unit base.
    :param unit: Unit name (may contain ``/``, e.g. ``net/http``).
    :returns: ``True`` if the file is kept.
    """

    name: str = unit.strip("/")
    path: str = unit_path.as_posix()
    if path == name:
        return True
    if path.startswith(name + ".") is True:
        ext: str = path[len(name) + 1 :]
        return len(ext) > 0 and "/" not in ext
    return path.startswith(name + "/")


def plan_removals(fileset: StdlibFileSet, keep_units: tuple[str, ...]) -> list[pathlib.PurePosixPath]:
    """Decide which snapshot files to delete.

    :param fileset: Stdlib snapshot.
    :param keep_units: Units to keep; empty keeps everything.
    :returns: Paths (relative to ``fileset.root``) to delete, in snapshot order.
    """

    removals: list[pathlib.PurePosixPath] = []
    removed: set[pathlib.PurePosixPath] = set()

    if len(keep_units) > 0:
        for relpath in fileset.files:
            unit_path: pathlib.PurePosixPath | None = unit_relpath(relpath, fileset.ruby_version)
            keep: bool = False
            if unit_path is not None:
                keep = any(is_kept(unit_path, unit) for unit in keep_units)
            if keep is False:
                removals.append(relpath)
                removed.add(relpath)

    full: frozenset[pathlib.PurePosixPath] = frozenset(fileset.files)
    for relpath in fileset.files:
        if relpath in removed:
            continue
        if relpath.suffix != SOURCE_SUFFIX:
            continue
        compiled: pathlib.PurePosixPath = relpath.with_name(relpath.stem + OBJECT_SUFFIX)
        if compiled in full:
            removals.append(relpath)
            removed.add(relpath)

    return sorted(removals)


def prune_stdlib(
    *,
    usr_dir: pathlib.Path,
    ruby_version: str,
    keep_units: tuple[str, ...],
    logger: logging.Logger | None = None,
) -> list[pathlib.Path]:
    """Delete stdlib files that are not kept or are shadowed by compiled objects.

    Running it twice with the same keep list removes nothing the second time.

    :param usr_dir: Embedded ``usr`` directory.
    :param ruby_version: Ruby ABI version.
    :param keep_units: Units to keep; empty keeps everything.
    :param logger: Optional logger.
    :returns: Deleted paths.
    :raises FileOperationError: If a file cannot be deleted.
    """

    if logger is None:
        logger = logging.getLogger("macruby_deploy")

    fileset: StdlibFileSet = snapshot_stdlib(usr_dir, ruby_version)
    removals: list[pathlib.PurePosixPath] = plan_removals(fileset, keep_units)

    deleted: list[pathlib.Path] = []
    for relpath in removals:
        path: pathlib.Path = usr_dir / relpath
        try:
            path.unlink()
        except OSError as e:
            raise FileOperationError(f"Cannot remove {path}: {e}") from e
        deleted.append(path)

    if len(keep_units) > 0:
        _remove_empty_dirs(usr_dir=usr_dir, ruby_version=ruby_version)

    logger.info(
        f"macruby-deploy: pruned stdlib ({len(deleted)} of {len(fileset.files)} files removed)"
    )
    if logger.isEnabledFor(logging.DEBUG) is True and len(keep_units) > 0:
        logger.debug(f"macruby-deploy: stdlib keep units={sorted(keep_units)}")
    return deleted


def _remove_empty_dirs(*, usr_dir: pathlib.Path, ruby_version: str) -> None:
    """Remove directories left empty by pruning (the stdlib bases themselves stay)."""

    for base in stdlib_bases(ruby_version):
        base_dir: pathlib.Path = usr_dir / base
        if base_dir.is_dir() is False:
            continue
        for root_str, dirs, files in os.walk(base_dir, topdown=False):
            root_path: pathlib.Path = pathlib.Path(root_str)
            if root_path == base_dir:
                continue
            if len(files) > 0 or any(root_path.joinpath(d).exists() for d in dirs):
                continue
            try:
                root_path.rmdir()
            except OSError as e:
                raise FileOperationError(f"Cannot remove {root_path}: {e}") from e
