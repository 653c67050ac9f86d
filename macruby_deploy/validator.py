"""Report embedded extensions that still link outside the bundle.

Advisory only: nothing here raises or changes the exit status.
"""

from dataclasses import dataclass
import logging
import pathlib

from macruby_deploy.errors import CommandError
from macruby_deploy.tools import ToolRunner


DISALLOWED_PREFIXES: tuple[str, ...] = (
    "/opt/",
    "/usr/local/",
    "/sw/",
    "/Users/",
    "/Library/",
)


@dataclass(frozen=True, slots=True)
class LinkViolation:
    """An embedded bundle referencing a library outside the allowed locations.

    :ivar bundle: The offending loadable bundle.
    :ivar reference: The library install name it links against.
    """

    bundle: pathlib.Path
    reference: str


def is_disallowed(reference: str) -> bool:
    return any(reference.startswith(prefix) for prefix in DISALLOWED_PREFIXES)


def find_link_violations(
    *,
    root: pathlib.Path,
    runner: ToolRunner,
    logger: logging.Logger | None = None,
) -> list[LinkViolation]:
    """Inspect every ``*.bundle`` under ``root`` with ``otool -L``.

    A file ``otool`` cannot read is reported as a warning and skipped.

    :param root: Embedded runtime root.
    :param runner: Tool runner.
    :param logger: Optional logger.
    :returns: Violations, grouped by bundle in path order.
    """

    if logger is None:
        logger = logging.getLogger("macruby_deploy")

    if root.is_dir() is False:
        return []

    bundles: list[pathlib.Path] = []
    for p in root.rglob("*.bundle"):
        if p.is_file() is True and p.is_symlink() is False:
            bundles.append(p)

    violations: list[LinkViolation] = []
    for path in sorted(bundles):
        try:
            refs: list[str] = runner.list_linked_libraries(path)
        except CommandError as e:
            logger.warning(f"macruby-deploy: warning: cannot inspect {path}: {e}")
            continue
        for ref in refs:
            if is_disallowed(ref) is True:
                violations.append(LinkViolation(bundle=path, reference=ref))
    return violations


def report_link_violations(
    violations: list[LinkViolation],
    *,
    root: pathlib.Path | None = None,
    logger: logging.Logger | None = None,
) -> None:
    """Log one warning block per offending bundle.

    :param violations: Output of :func:`find_link_violations`.
    :param root: Optional root to shorten bundle paths in the message.
    :param logger: Optional logger.
    """

    if logger is None:
        logger = logging.getLogger("macruby_deploy")

    grouped: dict[pathlib.Path, list[str]] = {}
    for v in violations:
        grouped.setdefault(v.bundle, []).append(v.reference)

    for bundle, refs in grouped.items():
        shown: pathlib.Path = bundle
        if root is not None and bundle.is_relative_to(root) is True:
            shown = bundle.relative_to(root)
        lines: str = "\n".join(f"  - {ref}" for ref in refs)
        logger.warning(
            f"macruby-deploy: warning: {shown} links against libraries in non-standard locations; "
            f"the bundle may not run on other machines:\n{lines}"
        )
