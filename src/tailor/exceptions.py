"""Custom exceptions for the tailor package."""


class TailorError(Exception):
    """Base exception for all tailor errors."""
    pass


class WatchError(TailorError):
    """Error related to registering a watch."""
    pass


class PathNotFoundError(WatchError):
    """Watched path does not exist."""
    pass


class PathNotReadableError(WatchError):
    """Watched path exists but cannot be opened or observed."""
    pass


class ClientIdExhaustedError(WatchError):
    """No client id can be allocated for a new watch."""
    pass


class EngineDestroyedError(TailorError):
    """Engine instance has already been destroyed."""
    pass


class ObserverError(TailorError):
    """The underlying filesystem observer failed after a watch was established."""
    pass


class InvalidHandleError(TailorError):
    """Engine handle does not refer to a live instance."""
    pass
