"""Top-level deployment run."""

from dataclasses import dataclass
import logging
import pathlib
import time

from macruby_deploy.architectures import resolve_architectures
from macruby_deploy.compiler import compile_sources
from macruby_deploy.embedder import DEFAULT_BRIDGESUPPORT_ROOT, EmbedResult, embed_framework
from macruby_deploy.errors import ConfigurationError
from macruby_deploy.layout import DEFAULT_FRAMEWORK_PATH, AppBundle, RuntimeDistribution, load_distribution
from macruby_deploy.tools import ToolRunner


@dataclass(frozen=True, slots=True)
class DeployOptions:
    """Everything a run needs, fixed before the bundle is touched.

    :ivar bundle_path: Application bundle to deploy into.
    :ivar compile: Compile ``Contents/Resources/**/*.rb`` into ``.rbo``.
    :ivar embed: Embed the runtime framework.
    :ivar no_stdlib: Embed without the standard library.
    :ivar stdlib_units: Embed only these standard library units.
    :ivar gems: Gems to embed along with their dependencies.
    :ivar bridgesupport: Embed the system BridgeSupport files.
    :ivar archs: Explicit architectures; detected from the executable when ``None``.
    :ivar framework_path: Installed runtime framework.
    :ivar gem_paths: Extra gem repositories searched after the runtime's own.
    :ivar bridgesupport_root: Where system frameworks live.
    """

    bundle_path: pathlib.Path
    compile: bool = False
    embed: bool = False
    no_stdlib: bool = False
    stdlib_units: tuple[str, ...] = ()
    gems: tuple[str, ...] = ()
    bridgesupport: bool = False
    archs: tuple[str, ...] | None = None
    framework_path: pathlib.Path = DEFAULT_FRAMEWORK_PATH
    gem_paths: tuple[pathlib.Path, ...] = ()
    bridgesupport_root: pathlib.Path = DEFAULT_BRIDGESUPPORT_ROOT

    def validate(self) -> None:
        """Reject option combinations that cannot work.

        :raises ConfigurationError: On conflicting or empty requests.
        """

        if self.compile is False and self.embed is False:
            raise ConfigurationError("Nothing to do: pass --compile and/or --embed.")
        if self.no_stdlib is True and len(self.stdlib_units) > 0:
            raise ConfigurationError("--no-stdlib and --stdlib cannot be used together.")
        if self.embed is False:
            if len(self.stdlib_units) > 0 or len(self.gems) > 0 or self.bridgesupport is True or self.no_stdlib is True:
                raise ConfigurationError("--no-stdlib, --stdlib, --gem and --bs require --embed.")


@dataclass(frozen=True, slots=True)
class DeployReport:
    """What a run did.

    :ivar archs: Architectures used for compilation (empty when not compiling).
    :ivar compiled: Objects produced by the compile step.
    :ivar embedded: Embedding outcome, or ``None`` when not embedding.
    """

    archs: tuple[str, ...]
    compiled: tuple[pathlib.Path, ...]
    embedded: EmbedResult | None


def deploy(
    options: DeployOptions,
    *,
    runner: ToolRunner | None = None,
    logger: logging.Logger | None = None,
) -> DeployReport:
    """Run a full deployment.

    :param options: Run options.
    :param runner: Tool runner (defaults to a real one).
    :param logger: Optional logger.
    :returns: Summary of the run.
    :raises DeployError: On any fatal failure.
    """

    if logger is None:
        logger = logging.getLogger("macruby_deploy")
    if runner is None:
        runner = ToolRunner(logger=logger)

    options.validate()
    bundle: AppBundle = AppBundle(options.bundle_path)
    bundle.check()
    distribution: RuntimeDistribution = load_distribution(options.framework_path)

    t_total0: float = time.perf_counter()
    logger.info(f"macruby-deploy: bundle={bundle.root}")
    logger.info(
        f"macruby-deploy: runtime={distribution.root} version={distribution.version} "
        f"ruby={distribution.ruby_version}"
    )

    archs: tuple[str, ...] = ()
    compiled: list[pathlib.Path] = []
    if options.compile is True:
        archs = resolve_architectures(
            bundle=bundle,
            distribution=distribution,
            override=options.archs,
            runner=runner,
            logger=logger,
        )
        compiled = compile_sources(
            bundle=bundle,
            distribution=distribution,
            archs=archs,
            runner=runner,
            logger=logger,
        )

    embedded: EmbedResult | None = None
    if options.embed is True:
        repositories: tuple[pathlib.Path, ...] = (distribution.gem_repository, *options.gem_paths)
        embedded = embed_framework(
            bundle=bundle,
            distribution=distribution,
            runner=runner,
            no_stdlib=options.no_stdlib,
            keep_units=options.stdlib_units,
            gems=options.gems,
            gem_repositories=repositories,
            bridgesupport_root=options.bridgesupport_root if options.bridgesupport is True else None,
            logger=logger,
        )

    t_total1: float = time.perf_counter()
    logger.info(f"macruby-deploy: done in {t_total1 - t_total0:.2f}s")
    return DeployReport(archs=archs, compiled=tuple(compiled), embedded=embedded)
