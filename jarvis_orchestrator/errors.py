"""Error taxonomy shared by the gateway and the reminder scheduler."""


class JarvisError(Exception):
    """Base class for all Jarvis errors."""


class ConfigError(JarvisError):
    """A required setting or credential is missing. Fatal at startup."""


class UpstreamTimeout(JarvisError):
    """The generation service did not answer within the timeout."""


class UpstreamRejected(JarvisError):
    """The generation service failed for a reason other than a timeout."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class MalformedCommand(JarvisError):
    """A note or reminder command did not match the grammar."""

    def __init__(self, message: str, usage: str = ""):
        super().__init__(message)
        self.usage = usage


class NoPendingAction(JarvisError):
    """A confirm/edit callback arrived but nothing is pending for the user."""
