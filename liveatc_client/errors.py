"""Exceptions raised by the stream directory and the channel machinery."""


class LiveATCError(Exception):
    """Base class for all errors raised by this package."""


class NetworkFailure(LiveATCError):
    """A directory query or a playlist follow-up request failed."""


class ParseAnomaly(LiveATCError):
    """An expected pattern was missing from one directory entry."""


class NoCandidateInRange(LiveATCError):
    """No stream for the frequency is within reception range."""


class PlaybackStartFailure(LiveATCError):
    """The audio sink could not start the stream."""
