"""File system watcher that keeps the caches in step with workspace changes."""

import asyncio
import logging
import threading
import time
from pathlib import Path
from typing import Awaitable, Callable, Iterable, List, Optional, Set, Tuple

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[Set[str], Set[str]], Awaitable[None]]

WATCHED_EXTENSIONS = (".al", ".app")

# Hidden folders that still hold relevant files
VISIBLE_HIDDEN_DIRS = {".alpackages"}


class AlFileEventHandler(FileSystemEventHandler):
    """Collects AL source and package changes until they are drained."""

    def __init__(self, extensions: Iterable[str] = WATCHED_EXTENSIONS):
        super().__init__()
        self.extensions = tuple(extension.lower() for extension in extensions)

        self.modified_files: Set[str] = set()
        self.deleted_files: Set[str] = set()
        self.last_change_time = 0.0
        self._lock = threading.Lock()

        self.exclude_dirs = {
            "node_modules",
            ".git",
            ".vscode",
            ".snapshots",
            "__pycache__",
        }

    def should_process_file(self, file_path: str) -> bool:
        """Check if a file should be collected.

        Args:
            file_path: Path to the file

        Returns:
            True for .al sources and .app packages outside excluded folders
        """
        path = Path(file_path)
        if any(part in self.exclude_dirs for part in path.parts):
            return False
        if any(
            part.startswith(".") and part not in VISIBLE_HIDDEN_DIRS
            for part in path.parts[:-1]
        ):
            return False
        return path.suffix.lower() in self.extensions

    def _record(self, file_path: str, deleted: bool) -> None:
        with self._lock:
            if deleted:
                self.modified_files.discard(file_path)
                self.deleted_files.add(file_path)
            else:
                self.deleted_files.discard(file_path)
                self.modified_files.add(file_path)
            self.last_change_time = time.time()

    def on_modified(self, event: FileSystemEvent) -> None:
        """Handle file modification events.

        Args:
            event: File system event
        """
        if not event.is_directory and self.should_process_file(event.src_path):
            logger.debug(f"File modified: {event.src_path}")
            self._record(event.src_path, deleted=False)

    def on_created(self, event: FileSystemEvent) -> None:
        """Handle file creation events.

        Args:
            event: File system event
        """
        if not event.is_directory and self.should_process_file(event.src_path):
            logger.debug(f"File created: {event.src_path}")
            self._record(event.src_path, deleted=False)

    def on_deleted(self, event: FileSystemEvent) -> None:
        """Handle file deletion events.

        Args:
            event: File system event
        """
        if not event.is_directory and self.should_process_file(event.src_path):
            logger.debug(f"File deleted: {event.src_path}")
            self._record(event.src_path, deleted=True)

    def on_moved(self, event: FileSystemEvent) -> None:
        """Handle file move/rename events as a delete plus a create.

        Args:
            event: File system event
        """
        if event.is_directory:
            return
        if self.should_process_file(event.src_path):
            self._record(event.src_path, deleted=True)
        dest_path = getattr(event, "dest_path", "")
        if dest_path and self.should_process_file(dest_path):
            self._record(dest_path, deleted=False)

    def get_pending_changes(self) -> Tuple[Set[str], Set[str]]:
        """Drain and return (modified, deleted) paths."""
        with self._lock:
            modified, deleted = set(self.modified_files), set(self.deleted_files)
            self.modified_files.clear()
            self.deleted_files.clear()
        return modified, deleted

    def has_pending_changes(self) -> bool:
        """Check if there are pending changes.

        Returns:
            True if there are pending changes
        """
        return bool(self.modified_files or self.deleted_files)

    def time_since_last_change(self) -> float:
        """Get time elapsed since last change.

        Returns:
            Seconds since last change
        """
        return time.time() - self.last_change_time


class WorkspaceWatcher:
    """Watches workspace folders and hands debounced change sets to a callback."""

    def __init__(
        self,
        watch_paths: Iterable[str],
        on_change_callback: ChangeCallback,
        debounce_seconds: float = 2.0,
        recursive: bool = True,
    ):
        """Initialize the watcher.

        Args:
            watch_paths: Directories to watch
            on_change_callback: Async callback receiving (modified, deleted)
            debounce_seconds: Quiet period before a batch is delivered
            recursive: Whether to watch subdirectories
        """
        self.watch_paths: List[Path] = [Path(path) for path in watch_paths]
        self.on_change_callback = on_change_callback
        self.debounce_seconds = debounce_seconds

        self.event_handler = AlFileEventHandler()
        self.observer = Observer()
        for path in self.watch_paths:
            if path.is_dir():
                self.observer.schedule(self.event_handler, str(path), recursive=recursive)
            else:
                logger.warning(f"Not watching missing directory: {path}")

        self._running = False
        self._debounce_task: Optional[asyncio.Task] = None

    def start(self) -> None:
        """Start watching the workspace folders."""
        if not self._running:
            self.observer.start()
            self._running = True
            logger.info(f"Started watching {len(self.watch_paths)} folders")

    def stop(self) -> None:
        """Stop watching and wait for the observer thread."""
        if self._running:
            self.observer.stop()
            self.observer.join(timeout=5.0)
            self._running = False
            logger.info("Stopped file watcher")

    def is_running(self) -> bool:
        """Check if the observer is running.

        Returns:
            True if running
        """
        return self._running

    async def process_pending(self) -> bool:
        """Deliver pending changes if the debounce period has passed.

        Returns:
            True if a batch was delivered
        """
        if not self.event_handler.has_pending_changes():
            return False
        if self.event_handler.time_since_last_change() < self.debounce_seconds:
            return False

        modified, deleted = self.event_handler.get_pending_changes()
        if not modified and not deleted:
            return False

        logger.info(f"Processing changes: {len(modified)} modified, {len(deleted)} deleted")
        try:
            await self.on_change_callback(modified, deleted)
        except Exception as e:
            logger.error(f"Error processing file changes: {e}", exc_info=True)
        return True

    async def start_debounce_processor(self, interval: float = 0.5) -> None:
        """Poll for debounced changes until the watcher stops."""
        logger.info("Started debounce processor")
        while self._running:
            try:
                await self.process_pending()
                await asyncio.sleep(interval)
            except asyncio.CancelledError:
                logger.info("Debounce processor cancelled")
                break

    async def run_async(self) -> None:
        """Run the watcher until ``stop`` is called."""
        self.start()
        self._debounce_task = asyncio.create_task(self.start_debounce_processor())
        try:
            while self._running:
                await asyncio.sleep(1.0)
        finally:
            self._debounce_task.cancel()
            try:
                await self._debounce_task
            except asyncio.CancelledError:
                pass

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
