from __future__ import annotations


class AgentRuntimeError(Exception):
    """Base class for errors raised by the session runtime."""


class ProviderError(AgentRuntimeError):
    """A model provider call failed.

    ``status`` is an HTTP-style status code and ``code`` a transport error code
    (e.g. ``ECONNRESET``); both feed retry classification.
    """

    def __init__(self, message: str, *, status: int | None = None, code: str | None = None):
        super().__init__(message)
        self.status = status
        self.code = code


class SessionNotFoundError(AgentRuntimeError):
    pass


class SessionNotResumableError(AgentRuntimeError):
    pass


class ConfigError(AgentRuntimeError):
    pass
