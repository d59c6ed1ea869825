"""
Player error taxonomy
"""


class PlayerError(Exception):
    """Base class for errors reported back to the command issuer."""

    message = "Something went wrong with playback."

    def __init__(self, message: str | None = None):
        super().__init__(message or self.message)

    @property
    def reply(self) -> str:
        return str(self)


class ResolutionError(PlayerError):
    message = "Could not find anything for that reference."


class EmptyQueueError(PlayerError):
    message = "The queue is empty."


class StreamingError(PlayerError):
    message = "Failed to start the audio stream."


class PlaybackExhaustedError(PlayerError):
    message = "Could not play anything in the queue."


class SessionConflictError(PlayerError):
    message = "The bot is currently playing in another voice channel."


class DestinationUnreachableError(PlayerError):
    message = "The voice channel is no longer reachable."


class SessionClosedError(PlayerError):
    message = "This playback session has ended."
