"""Discovery of ``.app`` packages and ``app.json`` metadata in AL workspaces."""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from .legacy_parser import IdRange

logger = logging.getLogger(__name__)

PACKAGE_CACHE_SETTING = "al.packageCachePath"
DEFAULT_PACKAGE_DIR = ".alpackages"


def _read_json(path: Path) -> Optional[Any]:
    try:
        return json.loads(path.read_text(encoding="utf-8-sig"))
    except (OSError, json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.error(f"Error reading {path}: {e}")
        return None


class PackageDiscovery:
    """Locate package caches and app manifests of one workspace folder."""

    def __init__(self, workspace_path: Union[str, Path], max_depth: int = 2):
        """Initialize package discovery.

        Args:
            workspace_path: Workspace folder root
            max_depth: How deep to look for ``app.json`` below the root
        """
        self.workspace_path = Path(workspace_path)
        self.max_depth = max_depth

    def package_cache_dir(self) -> Path:
        """Package folder from ``.vscode/settings.json``, else ``.alpackages``."""
        settings_path = self.workspace_path / ".vscode" / "settings.json"
        if settings_path.exists():
            settings = _read_json(settings_path)
            if isinstance(settings, dict) and settings.get(PACKAGE_CACHE_SETTING):
                package_path = Path(settings[PACKAGE_CACHE_SETTING])
                if not package_path.is_absolute():
                    package_path = self.workspace_path / package_path
                return package_path
        return self.workspace_path / DEFAULT_PACKAGE_DIR

    def detect_app_files(self) -> List[str]:
        """Return the ``.app`` files in the workspace's package folder."""
        package_dir = self.package_cache_dir()
        if not package_dir.is_dir():
            logger.debug(f"No package folder at {package_dir}")
            return []
        apps = sorted(
            str(path) for path in package_dir.iterdir()
            if path.is_file() and path.suffix.lower() == ".app"
        )
        logger.debug(f"Found {len(apps)} packages in {package_dir}")
        return apps

    def find_app_json(self) -> Optional[Path]:
        """Find ``app.json`` at the root or a few levels below it."""
        candidate = self.workspace_path / "app.json"
        if candidate.exists():
            return candidate

        root_depth = len(self.workspace_path.parts)
        for directory, dir_names, file_names in os.walk(self.workspace_path):
            depth = len(Path(directory).parts) - root_depth
            dir_names[:] = sorted(
                name for name in dir_names
                if not name.startswith(".") and name != "node_modules"
            )
            if depth >= self.max_depth:
                dir_names[:] = []
            if "app.json" in file_names:
                return Path(directory) / "app.json"
        return None

    def read_app_json(self) -> Optional[Dict[str, Any]]:
        """Read the workspace ``app.json``.

        Returns:
            Parsed manifest, or None if missing or invalid
        """
        path = self.find_app_json()
        if path is None:
            return None
        data = _read_json(path)
        return data if isinstance(data, dict) else None

    def app_name(self) -> Optional[str]:
        data = self.read_app_json()
        return data.get("name") if data else None

    def read_id_ranges(self) -> List[IdRange]:
        """Valid ``idRanges`` entries of ``app.json`` (``from`` <= ``to``)."""
        data = self.read_app_json()
        if not data or not isinstance(data.get("idRanges"), list):
            logger.warning(f"No idRanges found in app.json of {self.workspace_path}")
            return []

        ranges = []
        for entry in data["idRanges"]:
            try:
                id_range = IdRange(int(entry["from"]), int(entry["to"]))
            except (KeyError, TypeError, ValueError):
                continue
            if id_range.from_id <= id_range.to_id:
                ranges.append(id_range)
        return ranges


def discover_app_paths(workspace_paths: Iterable[Union[str, Path]]) -> List[str]:
    """Collect the package files of every workspace folder, without duplicates."""
    app_paths: List[str] = []
    for workspace in workspace_paths:
        for app_path in PackageDiscovery(workspace).detect_app_files():
            if app_path not in app_paths:
                app_paths.append(app_path)
    logger.info(f"Discovered {len(app_paths)} packages")
    return app_paths


def read_app_json(workspace_path: Union[str, Path]) -> Optional[Dict[str, Any]]:
    return PackageDiscovery(workspace_path).read_app_json()


def read_id_ranges(workspace_path: Union[str, Path]) -> List[IdRange]:
    return PackageDiscovery(workspace_path).read_id_ranges()
