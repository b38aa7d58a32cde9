"""
errors.py
~~~~~~~~~

Exception hierarchy for the binding layer.

Every failure is surfaced synchronously to the caller and aborts the
current command. Each exception class carries the HTTP status code the
API server answers with.
"""


class CaffeShimError(Exception):
    """Base class for all binding errors."""

    status_code = 400


class UsageError(CaffeShimError):
    """Wrong number or type of arguments for a command."""


class MissingFileError(CaffeShimError):
    """A file named by a command could not be opened."""

    status_code = 404

    def __init__(self, path: str):
        super().__init__(f"Could not open file {path}")
        self.path = path


class StaleHandleError(CaffeShimError):
    """A handle was issued under a previous generation key."""

    status_code = 409


class InvalidHandleError(CaffeShimError):
    """A handle is malformed or points at an object of the wrong kind."""


class UnknownCommandError(CaffeShimError):
    """No handler is registered under the requested command name."""

    status_code = 404

    def __init__(self, command: str):
        super().__init__(f"Unknown command '{command}'")
        self.command = command


class FrameworkError(CaffeShimError):
    """The wrapped framework rejected an operation."""
