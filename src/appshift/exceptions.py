"""Exception types raised inside appshift."""

from appshift.models import ErrorKind


class AppshiftError(Exception):
    """Base error for the project."""


class ConfigError(AppshiftError):
    pass


class InvalidTransition(AppshiftError):
    """A job was asked to move to a step outside its sequence."""


class SafetyCheckError(AppshiftError):
    """A pre-flight check refused the operation before anything was touched."""

    def __init__(self, kind: ErrorKind, message: str):
        super().__init__(message)
        self.kind = kind
