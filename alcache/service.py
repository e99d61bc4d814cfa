"""Composition of stores, coordinator, field worker, lookups and watcher."""

import asyncio
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Set

from .config import get_env_config, worker_log_level
from .errors import CacheIOError, SymbolCacheError
from .indexer.artifact_extractor import sanitize_app_name
from .indexer.field_indexer import FieldIndexer
from .indexer.file_watcher import WorkspaceWatcher
from .indexer.models import FieldIndexSnapshot
from .indexer.package_discovery import PackageDiscovery, discover_app_paths
from .indexer.refresh_coordinator import (
    FieldIndexWorker,
    Notifier,
    RefreshCoordinator,
    RefreshOptions,
    RefreshReport,
)
from .indexer.symbol_worker import resolve_log_level
from .store.field_store import FieldIndexStore
from .store.symbol_store import SymbolStore
from .tools.lookup_tool import LookupTool

logger = logging.getLogger(__name__)


class SymbolCacheService:
    """Owns one set of cache components for a list of workspace folders."""

    def __init__(self, config: Optional[Dict[str, Any]] = None, notifier: Optional[Notifier] = None):
        """Initialize the service.

        Args:
            config: Settings as returned by ``get_env_config``
            notifier: Receives operator notifications
        """
        self.config = config or get_env_config()
        self.notifier = notifier or Notifier()

        self.symbol_store = SymbolStore(self.config["cache_path"])
        self.field_store = FieldIndexStore(self.config["global_storage_path"])
        self.options = RefreshOptions(
            cache_path=str(self.config["cache_path"]),
            extract_path=str(self.config["extract_path"]),
            enable_src_extraction=self.config["enable_src_extraction"],
            src_extraction_path=str(self.config["src_extraction_path"]),
            log_level=worker_log_level(self.config["log_level"]),
        )
        self.coordinator = RefreshCoordinator(
            self.symbol_store,
            self.options,
            max_workers=self.config["max_workers"],
            notifier=self.notifier,
        )
        self.field_worker = FieldIndexWorker(self.field_store)
        self.field_indexer = FieldIndexer()
        self._field_lock = asyncio.Lock()
        self.lookup = LookupTool(self.symbol_store, self.field_store, self.coordinator)

        self.watcher: Optional[WorkspaceWatcher] = None
        self.watcher_task: Optional[asyncio.Task] = None

    def initialize(self) -> None:
        """Load persisted caches."""
        logger.info("Initializing symbol cache...")
        self.symbol_store.load()
        self.field_store.load()
        logger.info(
            f"Symbol cache ready: {len(self.symbol_store.symbols)} objects, "
            f"{len(self.field_store.snapshot.table_fields)} tables"
        )

    def workspace_app_name(self) -> Optional[str]:
        """Name from the first workspace ``app.json`` that declares one."""
        for workspace in self.config["workspace_paths"]:
            name = PackageDiscovery(workspace).app_name()
            if name:
                return name
        return None

    async def refresh(self, force: bool = False) -> RefreshReport:
        """Reprocess the packages of every workspace, then the field index."""
        app_paths = discover_app_paths(self.config["workspace_paths"])
        if not app_paths:
            logger.info("No packages found in the workspace folders")

        report = await self.coordinator.refresh(app_paths, force=force)
        if not report.already_running and self.options.enable_src_extraction:
            await self.update_field_index()
        return report

    async def update_field_index(self) -> Optional[FieldIndexSnapshot]:
        """Bring the field index up to date through the field worker."""
        async with self._field_lock:
            try:
                return await self.field_worker.update(
                    self.options.src_extraction_path,
                    str(self.config["global_storage_path"]),
                    app_name=self.workspace_app_name(),
                    log_level=self.options.log_level,
                )
            except SymbolCacheError as e:
                self.notifier.warning(f"Field index update failed: {e}")
                return None

    def clear(self) -> dict:
        """Empty and persist both caches."""
        try:
            self.symbol_store.clear()
            self.field_store.clear()
            return {"success": True, "message": "Symbol cache cleared"}
        except CacheIOError as e:
            logger.error(f"Error clearing cache: {e}")
            return {"success": False, "error": str(e)}

    async def set_log_level(self, level: str) -> None:
        """Change the level here and in the field worker.

        Args:
            level: Standard level name or verbose/normal/minimal
        """
        resolved = resolve_log_level(level)
        logging.getLogger().setLevel(resolved)
        self.options.log_level = worker_log_level(logging.getLevelName(resolved))
        await self.field_worker.set_log_level(self.options.log_level)

    async def handle_file_changes(self, modified_files: Set[str], deleted_files: Set[str]) -> None:
        """Watcher callback: packages trigger a refresh, extracted sources a field index update.

        Args:
            modified_files: Created or modified paths
            deleted_files: Deleted paths
        """
        changed = modified_files | deleted_files
        if any(path.lower().endswith(".app") for path in changed):
            logger.info("Package change detected, refreshing symbol cache")
            await self.refresh()
            return

        modified = {path for path in modified_files if self.is_indexed_source(path)}
        deleted = {path for path in deleted_files if self.is_indexed_source(path)}
        if not modified and not deleted:
            logger.debug(f"Ignoring {len(changed)} changes outside the extracted source tree")
            return

        logger.info(f"Source change detected, updating field index for {len(modified) + len(deleted)} files")
        async with self._field_lock:
            self.apply_source_changes(modified, deleted)

    def is_indexed_source(self, path: str) -> bool:
        """Whether ``path`` is an AL file the field index covers."""
        if not self.options.enable_src_extraction or not path.lower().endswith(".al"):
            return False
        src_root = os.path.abspath(self.options.src_extraction_path)
        path = os.path.abspath(path)
        if not path.startswith(src_root + os.sep):
            return False
        app_name = self.workspace_app_name()
        if app_name:
            own_dir = os.path.join(src_root, sanitize_app_name(app_name))
            if path.startswith(own_dir + os.sep):
                return False
        return True

    def apply_source_changes(self, modified_files: Set[str], deleted_files: Set[str]) -> FieldIndexSnapshot:
        """Apply single-file changes to the field index and persist it.

        Args:
            modified_files: Source files to reparse
            deleted_files: Source files to retract

        Returns:
            The updated snapshot
        """
        snapshot = self.field_store.snapshot
        for path in sorted(deleted_files - modified_files):
            self.field_indexer.remove_file(snapshot, path)

        for path in sorted(modified_files):
            source = Path(path)
            try:
                mtime = source.stat().st_mtime
                text = source.read_text(encoding="utf-8-sig", errors="replace")
            except OSError as e:
                logger.warning(f"Cannot read {path}, retracting it: {e}")
                self.field_indexer.remove_file(snapshot, path)
                continue
            self.field_indexer.update_for_file(snapshot, path, text, mtime=mtime)

        try:
            self.field_store.save()
        except CacheIOError as e:
            self.notifier.warning(f"Field index could not be saved: {e}")
        return snapshot

    def create_watcher(self) -> Optional[WorkspaceWatcher]:
        """Create the watcher over the workspaces and the extracted source tree.

        Returns:
            The watcher, or None when disabled or nothing can be watched
        """
        if not self.config["enable_watcher"]:
            logger.info("File watcher disabled (set ENABLE_FILE_WATCHER=true to enable)")
            return None

        watch_paths = [str(path) for path in self.config["workspace_paths"] if Path(path).is_dir()]
        src_path = Path(self.config["src_extraction_path"])
        if self.options.enable_src_extraction and src_path.is_dir():
            watch_paths.append(str(src_path))
        if not watch_paths:
            logger.warning("No existing folders to watch, file watcher will not be started")
            return None

        self.watcher = WorkspaceWatcher(
            watch_paths,
            self.handle_file_changes,
            debounce_seconds=self.config["watcher_debounce"],
        )
        return self.watcher

    async def start_watcher(self) -> None:
        """Start the observer thread and the debounce processor task."""
        if self.watcher is None and self.create_watcher() is None:
            return
        self.watcher.start()
        self.watcher_task = asyncio.create_task(self.watcher.start_debounce_processor())

    async def close(self) -> None:
        """Stop the watcher and the field worker."""
        if self.watcher is not None:
            self.watcher.stop()
        if self.watcher_task is not None and not self.watcher_task.done():
            self.watcher_task.cancel()
            try:
                await self.watcher_task
            except asyncio.CancelledError:
                pass
        await self.field_worker.close()
