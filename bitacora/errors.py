from __future__ import annotations


class BitacoraError(Exception):
    """Base class for every error raised by the tracker core."""


class ValidationError(BitacoraError, ValueError):
    """Malformed window spec, unknown timezone or missing field."""


class ConflictError(BitacoraError):
    """Operation conflicts with the current state, e.g. a duplicate start."""


class InvalidStateError(ConflictError):
    pass


class SessionNotFoundError(InvalidStateError):
    pass


class AlreadyClosedError(BitacoraError):
    """Close was requested on a session that is already closed.

    Callers treat this as a no-op: it is what makes a manual exit racing the
    liveness timeout account minutes only once.
    """

    def __init__(self, session_id: int) -> None:
        super().__init__(f"Session {session_id} is already closed")
        self.session_id = session_id


class PersistenceError(BitacoraError):
    pass


class NotificationError(BitacoraError):
    pass


class ArchivalError(BitacoraError):
    def __init__(self, guild_id: str, message: str) -> None:
        super().__init__(f"Archive for guild {guild_id} failed: {message}")
        self.guild_id = guild_id
