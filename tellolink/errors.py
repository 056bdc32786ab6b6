"""Exceptions raised by the link, the relay supervisor and the session."""


class LinkError(RuntimeError):
    """UDP link failure. ``which`` names the socket role involved, if any."""

    def __init__(self, message: str, which=None, cause=None):
        super().__init__(message)
        self.which = which
        self.cause = cause


class LinkNotOpenError(LinkError):
    """Command issued while the command socket is absent."""


class RelayError(RuntimeError):
    """The video relay process could not be launched."""


class NotConnectedError(RuntimeError):
    """Flight command issued while the session is not streaming."""
