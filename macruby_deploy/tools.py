"""Invocation boundary for the macOS developer tools.

Every external process the deployer starts goes through :class:`ToolRunner`.
Logical operations map to fixed argv templates so callers never assemble
``lipo``/``otool``/``install_name_tool`` command lines themselves.
"""

import logging
import pathlib
import subprocess

from macruby_deploy.errors import CommandError, CompileError


COMMAND_TEMPLATES: dict[str, tuple[str, ...]] = {
    "list_architectures": ("lipo", "-info", "{path}"),
    "list_linked_libraries": ("otool", "-L", "{path}"),
    "change_reference": ("install_name_tool", "-change", "{old}", "{new}", "{path}"),
    "change_identity": ("install_name_tool", "-id", "{new}", "{path}"),
}


class ToolRunner:
    """Run external tools synchronously and check their exit status.

    :ivar logger: Logger used to echo commands at DEBUG level.
    """

    def __init__(self, *, logger: logging.Logger | None = None) -> None:
        if logger is None:
            logger = logging.getLogger("macruby_deploy")
        self.logger: logging.Logger = logger

    def run(self, argv: list[str], *, check: bool = True) -> subprocess.CompletedProcess[str]:
        """Run a command and wait for it.

        :param argv: Full command line.
        :param check: Raise on a non-zero exit status when ``True``.
        :returns: The completed process (stdout/stderr captured as text).
        :raises CommandError: If the command fails and ``check`` is set.
        """

        if self.logger.isEnabledFor(logging.DEBUG) is True:
            self.logger.debug(f"macruby-deploy: running: {' '.join(argv)}")

        try:
            proc = subprocess.run(argv, check=False, capture_output=True, text=True)
        except OSError as e:
            raise CommandError(argv, 127, str(e)) from e

        if check is True and proc.returncode != 0:
            output: str = proc.stderr if len(proc.stderr.strip()) > 0 else proc.stdout
            raise CommandError(argv, proc.returncode, output)
        return proc

    def invoke(self, operation: str, *, check: bool = True, **fields: str) -> str:
        """Run one of the templated operations from :data:`COMMAND_TEMPLATES`.

        :param operation: Logical operation name.
        :param check: Raise on a non-zero exit status when ``True``.
        :param fields: Values substituted into the template.
        :returns: Captured stdout.
        :raises KeyError: If the operation is unknown.
        :raises CommandError: If the command fails and ``check`` is set.
        """

        template: tuple[str, ...] = COMMAND_TEMPLATES[operation]
        argv: list[str] = [part.format(**fields) for part in template]
        proc = self.run(argv, check=check)
        if proc.returncode != 0:
            if self.logger.isEnabledFor(logging.DEBUG) is True:
                self.logger.debug(
                    f"macruby-deploy: {operation} exited with status {proc.returncode}: {proc.stderr.strip()}"
                )
            return ""
        return proc.stdout

    def list_architectures(self, path: pathlib.Path) -> list[str]:
        """List the architectures of a Mach-O file.

        A failing ``lipo`` is informational here: it yields an empty list.

        :param path: Binary to inspect.
        :returns: Architecture names in the order ``lipo`` prints them.
        """

        output: str = self.invoke("list_architectures", check=False, path=str(path))
        return parse_lipo_info(output)

    def list_linked_libraries(self, path: pathlib.Path) -> list[str]:
        """List the libraries a Mach-O file links against.

        :param path: Binary to inspect.
        :returns: Referenced install names, without the header line.
        :raises CommandError: If ``otool`` fails.
        """

        output: str = self.invoke("list_linked_libraries", path=str(path))
        return parse_otool_libraries(output)

    def change_reference(self, path: pathlib.Path, *, old: str, new: str) -> None:
        """Rewrite a library reference inside ``path``.

        :raises CommandError: If ``install_name_tool`` fails.
        """

        self.invoke("change_reference", path=str(path), old=old, new=new)

    def change_identity(self, path: pathlib.Path, *, new: str) -> None:
        """Rewrite the install name (self-identification) of a shared library.

        :raises CommandError: If ``install_name_tool`` fails.
        """

        self.invoke("change_identity", path=str(path), new=new)

    def compile(
        self,
        *,
        compiler: pathlib.Path,
        source: pathlib.Path,
        output: pathlib.Path,
        archs: tuple[str, ...],
    ) -> None:
        """Compile one source file into a precompiled object.

        :param compiler: Path to ``macrubyc``.
        :param source: ``.rb`` file.
        :param output: ``.rbo`` destination.
        :param archs: Architectures to build for.
        :raises CompileError: If the compiler exits non-zero.
        """

        argv: list[str] = [str(compiler), "-C"]
        for arch in archs:
            argv.extend(["--arch", arch])
        argv.extend(["-o", str(output), str(source)])
        try:
            self.run(argv)
        except CommandError as e:
            raise CompileError(e.command, e.returncode, e.output) from e


def parse_lipo_info(output: str) -> list[str]:
    """Parse ``lipo -info`` output.

    Handles both ``Architectures in the fat file: X are: a b`` and
    ``Non-fat file: X is architecture: a``.

    :param output: Raw stdout.
    :returns: Architecture names.
    """

    text: str = output.strip()
    if "are:" in text:
        return text.split("are:")[-1].split()
    if "is architecture:" in text:
        return text.split("is architecture:")[-1].split()
    return []


def parse_otool_libraries(output: str) -> list[str]:
    """Parse ``otool -L`` output into install names.

    Header lines name the inspected file itself (one per slice for fat files)
    and are skipped. Entry lines look like
    ``\\t/usr/lib/libSystem.B.dylib (compatibility ...)``.

    :param output: Raw stdout.
    :returns: Install names in load-command order, each listed once.
    """

    refs: list[str] = []
    for line in output.splitlines():
        stripped: str = line.strip()
        if len(stripped) == 0:
            continue
        if stripped.endswith(":") is True:
            continue
        paren: int = stripped.find(" (")
        if paren != -1:
            stripped = stripped[0:paren]
        if stripped not in refs:
            refs.append(stripped)
    return refs
