"""Command line interface for macruby-deploy."""

import argparse
import logging
import os
import pathlib
import sys

from macruby_deploy import __version__
from macruby_deploy.architectures import parse_arch_list
from macruby_deploy.deploy import DeployOptions, deploy
from macruby_deploy.errors import ConfigurationError, DeployError
from macruby_deploy.layout import DEFAULT_FRAMEWORK_PATH


def _configure_logging(*, verbose: int, quiet: int) -> logging.Logger:
    """Configure the macruby-deploy logger.

    :param verbose: Verbosity count (0+).
    :param quiet: Quietness count (0+).
    :returns: Configured logger.
    """

    level: int = logging.INFO
    if quiet >= 2:
        level = logging.ERROR
    elif quiet >= 1:
        level = logging.WARNING
    elif verbose >= 1:
        level = logging.DEBUG

    logger: logging.Logger = logging.getLogger("macruby_deploy")
    logger.setLevel(level)
    logger.propagate = False

    handler: logging.Handler = logging.StreamHandler(stream=sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s"))

    logger.handlers.clear()
    logger.addHandler(handler)
    return logger


def _resolve_bundle_path(arg: pathlib.Path | None, environ: dict[str, str]) -> pathlib.Path:
    """Use the positional bundle, or ``$TARGET_BUILD_DIR/$PROJECT_NAME.app`` from Xcode.

    :raises ConfigurationError: If neither is available.
    """

    if arg is not None:
        return arg

    build_dir: str | None = environ.get("TARGET_BUILD_DIR")
    project: str | None = environ.get("PROJECT_NAME")
    if build_dir is None or project is None or len(build_dir) == 0 or len(project) == 0:
        raise ConfigurationError(
            "No application bundle given, and TARGET_BUILD_DIR/PROJECT_NAME are not set."
        )
    return pathlib.Path(build_dir) / f"{project}.app"


def build_parser() -> argparse.ArgumentParser:
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog="macruby-deploy",
        description="Compile an application's Ruby sources and embed the MacRuby runtime in its bundle.",
    )
    parser.add_argument(
        "bundle",
        nargs="?",
        type=pathlib.Path,
        default=None,
        help="Application bundle (defaults to $TARGET_BUILD_DIR/$PROJECT_NAME.app).",
    )
    parser.add_argument(
        "--compile",
        action="store_true",
        help="Compile the bundle's Ruby sources into .rbo objects.",
    )
    parser.add_argument(
        "--embed",
        action="store_true",
        help="Embed the MacRuby framework inside the bundle.",
    )
    parser.add_argument(
        "--no-stdlib",
        action="store_true",
        help="Do not embed the standard library.",
    )
    parser.add_argument(
        "--stdlib",
        action="append",
        default=[],
        metavar="LIB",
        help="Embed only LIB from the standard library. Pass multiple times.",
    )
    parser.add_argument(
        "--gem",
        action="append",
        default=[],
        metavar="GEM",
        help="Embed GEM and its dependencies. Pass multiple times.",
    )
    parser.add_argument(
        "--bs",
        action="store_true",
        help="Embed the system BridgeSupport files.",
    )
    parser.add_argument(
        "--arch",
        action="append",
        default=[],
        metavar="ARCH",
        help="Compile for ARCH (overrides $ARCHS and the executable's architectures).",
    )
    parser.add_argument(
        "--framework",
        type=pathlib.Path,
        default=DEFAULT_FRAMEWORK_PATH,
        help=f"Installed MacRuby framework (default: {DEFAULT_FRAMEWORK_PATH}).",
    )
    parser.add_argument(
        "--gem-path",
        action="append",
        default=[],
        type=pathlib.Path,
        metavar="DIR",
        help="Additional gem repository to search. Pass multiple times.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Log every command that is run.",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Reduce logging. Pass multiple times to suppress more output.",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    return parser


def main(argv: list[str] | None = None, environ: dict[str, str] | None = None) -> int:
    """Run the macruby-deploy CLI.

    :param argv: Optional argv list (excluding program name).
    :param environ: Optional environment mapping (defaults to ``os.environ``).
    :returns: Exit code.
    """

    if environ is None:
        environ = dict(os.environ)

    ns = build_parser().parse_args(argv)
    logger: logging.Logger = _configure_logging(verbose=ns.verbose, quiet=ns.quiet)

    archs: tuple[str, ...] | None
    if len(ns.arch) > 0:
        archs = tuple(ns.arch)
    else:
        archs = parse_arch_list(environ.get("ARCHS"))

    try:
        options: DeployOptions = DeployOptions(
            bundle_path=_resolve_bundle_path(ns.bundle, environ),
            compile=ns.compile,
            embed=ns.embed,
            no_stdlib=ns.no_stdlib,
            stdlib_units=tuple(ns.stdlib),
            gems=tuple(ns.gem),
            bridgesupport=ns.bs,
            archs=archs,
            framework_path=ns.framework,
            gem_paths=tuple(ns.gem_path),
        )
        deploy(options, logger=logger)
    except DeployError as e:
        logger.error(f"macruby-deploy: error: {e}")
        return 1
    return 0
