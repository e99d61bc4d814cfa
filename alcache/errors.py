"""Exception types raised by the symbol cache."""


class SymbolCacheError(Exception):
    """Base class for symbol cache failures."""


class ExtractionError(SymbolCacheError):
    """An artifact could not be opened as an archive or written to disk."""

    def __init__(self, message: str, artifact_path: str = ""):
        super().__init__(message)
        self.artifact_path = artifact_path


class CacheIOError(SymbolCacheError):
    """Persisted cache JSON could not be read or written."""

    def __init__(self, message: str, path: str = ""):
        super().__init__(message)
        self.path = path


class WorkerStartupError(SymbolCacheError):
    """A worker process could not be spawned."""
