from __future__ import annotations


class WahubError(Exception):
    """Base error for wahub."""


class ConfigError(WahubError):
    """Invalid environment / configuration values."""

    def __init__(self, problems: list[str]) -> None:
        super().__init__("invalid configuration: " + "; ".join(problems))
        self.problems = problems


class ValidationError(WahubError):
    """A command was missing required addressing or payload fields."""


class TransportError(WahubError):
    """The transport client failed or rejected an operation."""


class SessionNotReadyError(TransportError):
    """
    The session did not reach `connected` in time.

    Also raised for sessions that were logged out and need an explicit restart.
    """

    def __init__(self, session_id: str, status: str) -> None:
        super().__init__(f"session {session_id!r} is not connected (status={status})")
        self.session_id = session_id
        self.status = status


class StorageError(WahubError):
    """Media persistence failure."""


class CredentialError(WahubError):
    """Credential persistence or removal failure."""


class SessionNotFoundError(WahubError):
    """No session with that id has been started."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"unknown session {session_id!r}")
        self.session_id = session_id
