"""Exceptions raised by the dongle driver and the collection loop."""


class DongleError(Exception):
    """Base class for all dongle and session failures."""


class DongleConnectionError(DongleError, ConnectionError):
    """The serial device could not be opened or written to."""


class ProtocolError(DongleError):
    """The dongle answered with something other than the expected reply."""


class ScanTimeoutError(DongleError, TimeoutError):
    """No complete PAN description was seen before the scan deadline."""


class JoinError(DongleError):
    """SKJOIN reported a failure."""

    def __init__(self, line: str) -> None:
        super().__init__(f"Failed to join PAN: {line}")
        self.line = line


class SendError(DongleError):
    """SKSENDTO failed or no reply arrived."""


class AttachmentFailed(DongleError):
    """Every attempt of the join handshake failed."""


class SessionTimeoutError(DongleError, TimeoutError):
    """A fetch stalled past its deadline; the whole session must be torn down."""
