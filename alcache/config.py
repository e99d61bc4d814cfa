"""Environment-based configuration."""

import os
import tempfile
from pathlib import Path
from typing import Any, Dict

from .indexer.refresh_coordinator import default_max_workers


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def get_env_config() -> Dict[str, Any]:
    """Get configuration from environment variables."""
    base = Path(tempfile.gettempdir()) / "al-symbol-cache"
    workspaces = os.getenv("WORKSPACE_PATHS", "")
    max_workers = os.getenv("MAX_WORKERS", "")

    return {
        "cache_path": Path(os.getenv("CACHE_PATH", str(base / "cache"))),
        "extract_path": Path(os.getenv("EXTRACT_PATH", str(base / "extract"))),
        "src_extraction_path": Path(os.getenv("SRC_EXTRACTION_PATH", str(base / "src"))),
        "enable_src_extraction": _flag("ENABLE_SRC_EXTRACTION", "true"),
        "global_storage_path": Path(os.getenv("GLOBAL_STORAGE_PATH", str(base / "storage"))),
        "workspace_paths": [path for path in workspaces.split(os.pathsep) if path],
        "max_workers": int(max_workers) if max_workers else default_max_workers(),
        "log_level": os.getenv("LOG_LEVEL", "INFO"),
        "enable_watcher": _flag("ENABLE_FILE_WATCHER", "true"),
        "watcher_debounce": float(os.getenv("WATCHER_DEBOUNCE_SECONDS", "2.0")),
    }


def worker_log_level(log_level: str) -> str:
    """Translate a standard level name into the worker's verbose/normal/minimal."""
    level = log_level.upper()
    if level == "DEBUG":
        return "verbose"
    if level in ("WARNING", "ERROR", "CRITICAL"):
        return "minimal"
    return "normal"

