"""Custom exceptions for ob."""


class ObError(Exception):
    """Base exception for all ob errors."""

    pass


class CommandError(ObError):
    """Raised when an external command exits with a nonzero status.

    Attributes:
        command (list[str]): The full argument vector that was executed.
        returncode (int): The exit status of the process.
        stderr (str): The captured standard error, verbatim.
    """

    def __init__(self, command: list[str], returncode: int, stderr: str):
        self.command = command
        self.returncode = returncode
        self.stderr = stderr

        error_msg = f"'{' '.join(command)}' exited with status {returncode}"
        if stderr.strip():
            error_msg += f": {stderr.strip()}"

        super().__init__(error_msg)


class ParseError(ObError):
    """Raised when a command succeeded but its output could not be interpreted."""

    pass


class ConfigurationError(ObError):
    """Raised when the vault path is unset or unusable. Fatal at daemon startup."""

    pass
