"""Exception hierarchy shared by every deployment phase."""


class DeployError(RuntimeError):
    """Base class for fatal deployment failures."""


class ConfigurationError(DeployError):
    """Raised when the bundle, runtime or options are unusable.

    Always raised before the bundle is mutated.
    """


class ResolutionError(DeployError):
    """Raised when a requested gem (or one of its dependencies) cannot be resolved."""


class FileOperationError(DeployError):
    """Raised when a filesystem step fails.

    The bundle is left as it was at the point of failure; nothing is rolled back.
    """


class CommandError(FileOperationError):
    """Raised when an external tool exits with a non-zero status.

    :ivar command: The argv that was executed.
    :ivar returncode: Process exit status.
    :ivar output: Captured stderr (or stdout when stderr was empty).
    """

    def __init__(self, command: list[str], returncode: int, output: str = "") -> None:
        self.command: list[str] = command
        self.returncode: int = returncode
        self.output: str = output
        message: str = f"command failed (exit={returncode}): {' '.join(command)}"
        if len(output.strip()) > 0:
            message = f"{message}\n{output.strip()}"
        super().__init__(message)


class CompileError(CommandError):
    """Raised when ``macrubyc`` fails to compile a source file."""
