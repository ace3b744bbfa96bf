from __future__ import annotations


class FlufferError(Exception):
    """Base class for errors raised by the adapters."""


class StaleCheckpointError(FlufferError):
    """The calendar rejected the sync token; a full resync is required."""


class ArtifactMissingError(FlufferError):
    """A message or scheduled event was deleted out from under us."""


class UnknownChannelError(FlufferError):
    pass
