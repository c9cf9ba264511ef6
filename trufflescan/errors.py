"""Exception hierarchy shared by the launcher and the scanning engine."""


class TruffleScanError(Exception):
    """Base class for every fatal condition raised by trufflescan."""


class ConfigurationError(TruffleScanError):
    """A required value is missing, a file is unreadable or flags conflict."""


class ResolutionError(TruffleScanError):
    """A scan prerequisite (git working path, credential) cannot be prepared."""


class DispatchError(TruffleScanError):
    """The selected scan call was rejected by the engine."""


class EngineError(TruffleScanError):
    """The engine was driven outside its lifecycle (e.g. scan after finish)."""
