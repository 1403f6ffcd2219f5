"""Exceptions raised by the recommendation engine and its offline jobs."""


class ScreenRecError(Exception):
    """Base class for all screen_rec errors."""


class NotBuiltError(ScreenRecError):
    """A snapshot the operation strictly requires has not been built yet."""

    def __init__(self, what: str):
        self.what = what
        super().__init__(f"{what} has not been built; run the corresponding build job first")


class NoTrainingDataError(ScreenRecError):
    """Training was requested but no positive interactions exist."""


class MissingEntityError(ScreenRecError):
    """An unknown item or cast id was requested."""

    def __init__(self, kind: str, entity_id: str):
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(f"{kind} '{entity_id}' not found")


class JobCancelledError(ScreenRecError):
    """An offline job stopped because its cancellation event was set."""
