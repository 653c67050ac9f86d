"""Compile loose Ruby sources in the bundle into ``.rbo`` objects."""

import logging
import pathlib
import time

from macruby_deploy.errors import ConfigurationError, FileOperationError
from macruby_deploy.layout import AppBundle, RuntimeDistribution
from macruby_deploy.tools import ToolRunner


def find_sources(bundle: AppBundle) -> list[pathlib.Path]:
    """Every ``.rb`` file under ``Contents/Resources``, sorted."""

    if bundle.resources_dir.is_dir() is False:
        return []
    found: list[pathlib.Path] = []
    for p in bundle.resources_dir.rglob("*.rb"):
        if p.is_file() is True:
            found.append(p)
    return sorted(found)


def compile_sources(
    *,
    bundle: AppBundle,
    distribution: RuntimeDistribution,
    archs: tuple[str, ...],
    runner: ToolRunner,
    logger: logging.Logger | None = None,
) -> list[pathlib.Path]:
    """Compile every resource source file and delete it afterwards.

    A source is removed only once its object was written. On a compiler
    failure the source stays where it is and the run stops.

    :param bundle: Application bundle.
    :param distribution: Runtime providing ``macrubyc``.
    :param archs: Architectures to compile for.
    :param runner: Tool runner.
    :param logger: Optional logger.
    :returns: The objects that were produced.
    :raises ConfigurationError: If the compiler is missing.
    :raises CompileError: If a file fails to compile.
    :raises FileOperationError: If a compiled source cannot be removed.
    """

    if logger is None:
        logger = logging.getLogger("macruby_deploy")

    compiler: pathlib.Path = distribution.compiler
    if compiler.is_file() is False:
        raise ConfigurationError(f"Compiler not found: {compiler}")

    sources: list[pathlib.Path] = find_sources(bundle)
    logger.info(f"macruby-deploy: compiling {len(sources)} source files")

    t0: float = time.perf_counter()
    objects: list[pathlib.Path] = []
    for source in sources:
        obj: pathlib.Path = source.with_suffix(".rbo")
        if logger.isEnabledFor(logging.DEBUG) is True:
            logger.debug(f"macruby-deploy: compile {source.relative_to(bundle.root)}")
        runner.compile(compiler=compiler, source=source, output=obj, archs=archs)
        try:
            source.unlink()
        except OSError as e:
            raise FileOperationError(f"Cannot remove compiled source {source}: {e}") from e
        objects.append(obj)
    t1: float = time.perf_counter()

    logger.info(f"macruby-deploy: compiled {len(objects)} files in {t1 - t0:.2f}s")
    return objects
