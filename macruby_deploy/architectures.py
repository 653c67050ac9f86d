"""Architecture resolution.

The bundle is built for the architectures the caller asks for (Xcode's
``ARCHS`` or ``--arch``) or, failing that, the ones the bundle's executable
already contains. Either way the set is narrowed to what the runtime itself
was built for.
"""

import logging
import pathlib

from macruby_deploy.errors import ConfigurationError
from macruby_deploy.layout import AppBundle, RuntimeDistribution
from macruby_deploy.tools import ToolRunner


def parse_arch_list(value: str | None) -> tuple[str, ...] | None:
    """Split a space-separated architecture list (``ARCHS`` style).

    :param value: Raw value, or ``None`` when unset.
    :returns: Architecture names, or ``None`` if nothing was given.
    """

    if value is None:
        return None
    parts: list[str] = value.split()
    if len(parts) == 0:
        return None
    return tuple(parts)


def intersect_architectures(
    *,
    candidates: tuple[str, ...],
    supported: tuple[str, ...],
) -> tuple[tuple[str, ...], tuple[str, ...]]:
    """Split candidates into usable and unsupported architectures.

    Candidate order is kept and duplicates collapse onto their first occurrence.

    :param candidates: Requested or detected architectures.
    :param supported: Architectures the runtime provides.
    :returns: ``(usable, unsupported)``.
    """

    usable: list[str] = []
    unsupported: list[str] = []
    for arch in candidates:
        if arch in usable or arch in unsupported:
            continue
        if arch in supported:
            usable.append(arch)
        else:
            unsupported.append(arch)
    return tuple(usable), tuple(unsupported)


def resolve_architectures(
    *,
    bundle: AppBundle,
    distribution: RuntimeDistribution,
    override: tuple[str, ...] | None,
    runner: ToolRunner,
    logger: logging.Logger | None = None,
) -> tuple[str, ...]:
    """Resolve the architectures to build the bundle for.

    :param bundle: Application bundle.
    :param distribution: Runtime being embedded.
    :param override: Explicit architecture list, used verbatim as candidates.
    :param runner: Tool runner used for ``lipo``.
    :param logger: Optional logger.
    :returns: Non-empty architecture set.
    :raises ConfigurationError: If no candidate is supported by the runtime.
    """

    if logger is None:
        logger = logging.getLogger("macruby_deploy")

    candidates: tuple[str, ...]
    if override is not None:
        candidates = override
        source: str = "requested"
    else:
        executable: pathlib.Path = bundle.main_executable()
        candidates = tuple(runner.list_architectures(executable))
        source = f"detected in {executable.name}"

    if len(candidates) == 0:
        raise ConfigurationError(
            "Cannot determine the architectures to build for; "
            "set ARCHS or pass --arch."
        )

    usable, unsupported = intersect_architectures(
        candidates=candidates,
        supported=distribution.supported_archs,
    )

    if len(usable) == 0:
        raise ConfigurationError(
            f"None of the {source} architectures ({', '.join(candidates)}) are supported "
            f"by the runtime (supported: {', '.join(distribution.supported_archs) or 'none'})."
        )
    if len(unsupported) > 0:
        logger.warning(
            "macruby-deploy: warning: the runtime does not support these architectures, "
            f"they will be ignored: {', '.join(unsupported)}"
        )

    logger.info(f"macruby-deploy: architectures={' '.join(usable)}")
    return usable
