"""Point bundle binaries at the embedded runtime library.

Two passes:

- consumers (the executables, embedded extensions and compiled objects) have
  their reference to the build machine's library rewritten;
- the embedded library itself gets a new install name.

Both use the same ``@executable_path``-relative path, so the bundle loads its
own copy wherever it is installed.
"""

import logging
import pathlib

from macruby_deploy.layout import AppBundle, EmbeddedTree, RuntimeDistribution
from macruby_deploy.tools import ToolRunner


LOADABLE_SUFFIXES: frozenset[str] = frozenset({".bundle", ".rbo"})


def consumer_binaries(bundle: AppBundle, tree: EmbeddedTree) -> list[pathlib.Path]:
    """Files whose runtime-library reference must be rewritten.

    Executables come first, then embedded extensions/objects, then compiled
    resources; each group is sorted.
    """

    found: list[pathlib.Path] = list(bundle.executables())

    embedded: list[pathlib.Path] = []
    if tree.lib_dir.is_dir() is True:
        for p in tree.lib_dir.rglob("*"):
            if p.suffix in LOADABLE_SUFFIXES and p.is_file() is True and p.is_symlink() is False:
                embedded.append(p)
    found.extend(sorted(embedded))

    resources: list[pathlib.Path] = []
    if bundle.resources_dir.is_dir() is True:
        for p in bundle.resources_dir.rglob("*.rbo"):
            if p.is_file() is True:
                resources.append(p)
    found.extend(sorted(resources))
    return found


def library_glob(library_name: str) -> str:
    """Glob matching every versioned build of the runtime library.

    ``libmacruby.1.9.2.dylib`` gives ``libmacruby*.dylib``.
    """

    base: str = library_name.partition(".")[0]
    return f"{base}*{pathlib.PurePosixPath(library_name).suffix}"


def runtime_libraries(tree: EmbeddedTree) -> list[pathlib.Path]:
    """Embedded runtime library files (symlinked aliases excluded)."""

    if tree.lib_dir.is_dir() is False:
        return []
    found: list[pathlib.Path] = []
    for p in tree.lib_dir.glob(library_glob(tree.library_name)):
        if p.is_file() is True and p.is_symlink() is False:
            found.append(p)
    return sorted(found)


def relink_bundle(
    *,
    bundle: AppBundle,
    tree: EmbeddedTree,
    distribution: RuntimeDistribution,
    runner: ToolRunner,
    logger: logging.Logger | None = None,
) -> list[pathlib.Path]:
    """Rewrite runtime-library references across the bundle.

    :param bundle: Application bundle.
    :param tree: Embedded runtime.
    :param distribution: Installed runtime the binaries were built against.
    :param runner: Tool runner used for ``install_name_tool``.
    :param logger: Optional logger.
    :returns: Every file that was rewritten.
    :raises CommandError: If any rewrite fails.
    """

    if logger is None:
        logger = logging.getLogger("macruby_deploy")

    old: str = distribution.build_library_path
    new: str = tree.anchored_library_path
    if logger.isEnabledFor(logging.DEBUG) is True:
        logger.debug(f"macruby-deploy: relink {old} -> {new}")

    rewritten: list[pathlib.Path] = []
    for binary in consumer_binaries(bundle, tree):
        runner.change_reference(binary, old=old, new=new)
        rewritten.append(binary)

    libraries: list[pathlib.Path] = runtime_libraries(tree)
    for library in libraries:
        runner.change_identity(library, new=new)
        rewritten.append(library)

    logger.info(
        f"macruby-deploy: relinked {len(rewritten) - len(libraries)} binaries "
        f"and {len(libraries)} runtime libraries"
    )
    return rewritten
