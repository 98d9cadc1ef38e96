class TrackingError(Exception):
    """Base class for every error raised by the tracking client."""


class ValidationError(TrackingError, ValueError):
    """A tracking call was given an empty or malformed required value."""


class ConfigError(TrackingError):
    """The tracker or dispatcher was configured with an unusable value."""


class DeliveryError(TrackingError):
    """The collector could not be reached (connection error, timeout...)."""

    def __init__(self, message: str, url: str = "") -> None:
        super().__init__(message)
        self.url = url
