class PulseMapError(Exception):
    """Base class for errors raised inside the service."""


class FetchError(PulseMapError):
    """Upstream feed could not be retrieved (network, timeout, non-2xx)."""

    def __init__(self, source, message):
        super().__init__(message)
        self.source = source


class ParseError(PulseMapError):
    """An upstream payload or one of its records could not be normalized."""


class StoreError(PulseMapError):
    pass


class ValidationError(PulseMapError):
    pass


class NotFoundError(PulseMapError):
    pass


class AuthError(PulseMapError):
    pass
