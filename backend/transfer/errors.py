"""Transfer error taxonomy.

Transport failures stay as the builtin ``OSError`` family and filesystem
failures as ``OSError``; only protocol-level problems get their own types.
"""


class TransferError(Exception):
    """Base class for errors that abort a single transfer session."""

    @property
    def reason(self) -> str:
        return str(self)


class ProtocolError(TransferError):
    """The peer sent something the protocol does not allow."""


class UnsafePathError(ProtocolError):
    """A manifest path is absolute or escapes the destination root."""


class InvalidTransitionError(RuntimeError):
    """A session tried to move between states that are not connected."""
