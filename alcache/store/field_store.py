"""Disk-persisted table-field and page-source indexes."""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from ..errors import CacheIOError
from ..indexer.models import FieldIndexSnapshot, FileContribution
from .symbol_store import read_json_file, write_json_file

logger = logging.getLogger(__name__)

METADATA_FILE = "fieldCacheMetadata.json"
TABLE_FILE = "fieldTableCache.json"
PAGE_FILE = "fieldPageCache.json"
CONTRIBUTIONS_FILE = "fieldContributions.json"


class FieldIndexStore:
    """Owns the persisted :class:`FieldIndexSnapshot`."""

    def __init__(self, storage_path: Union[str, Path]):
        self.storage_path = Path(storage_path)
        self.snapshot = FieldIndexSnapshot()

    def _path(self, file_name: str) -> Path:
        return self.storage_path / file_name

    def _load_part(self, file_name: str, default: Any) -> Any:
        data = read_json_file(self._path(file_name))
        if data is None:
            return default
        if not isinstance(data, dict):
            raise CacheIOError(f"{file_name} does not contain an object", str(self._path(file_name)))
        return data

    def load(self) -> bool:
        """Load the four index files.

        A corrupt table or page file is rebuilt from the contributions. Without
        readable contributions every file is reparsed on the next scan.

        Returns:
            True if every file loaded cleanly
        """
        failed = set()
        snapshot = self.snapshot

        loaders = (
            (METADATA_FILE, "watermarks", lambda data: {path: float(mtime) for path, mtime in data.items()}),
            (TABLE_FILE, "table_fields", lambda data: {table: list(fields) for table, fields in data.items()}),
            (PAGE_FILE, "page_sources", dict),
            (
                CONTRIBUTIONS_FILE,
                "contributions",
                lambda data: {path: FileContribution.from_dict(item) for path, item in data.items()},
            ),
        )
        for file_name, attribute, convert in loaders:
            try:
                setattr(snapshot, attribute, convert(self._load_part(file_name, {})))
            except (CacheIOError, AttributeError, TypeError, ValueError) as e:
                logger.error(f"Error loading {file_name}: {e}")
                failed.add(file_name)

        if CONTRIBUTIONS_FILE in failed:
            logger.warning("Field contributions unreadable, the next scan reparses every file")
            snapshot.table_fields = {}
            snapshot.page_sources = {}
            snapshot.watermarks = {}
            snapshot.contributions = {}
        elif TABLE_FILE in failed or PAGE_FILE in failed:
            logger.warning("Rebuilding field index from recorded contributions")
            snapshot.rebuild_from_contributions()

        logger.info(
            f"Loaded field index with {len(snapshot.table_fields)} tables, "
            f"{len(snapshot.page_sources)} pages, {len(snapshot.watermarks)} files"
        )
        return not failed

    def save(self) -> None:
        """Persist the snapshot.

        Raises:
            CacheIOError: If any file cannot be written
        """
        snapshot = self.snapshot
        write_json_file(self._path(METADATA_FILE), snapshot.watermarks)
        write_json_file(self._path(TABLE_FILE), snapshot.table_fields)
        write_json_file(self._path(PAGE_FILE), snapshot.page_sources)
        write_json_file(
            self._path(CONTRIBUTIONS_FILE),
            {path: item.to_dict() for path, item in snapshot.contributions.items()},
        )
        logger.debug(f"Saved field index to {self.storage_path}")

    def update(self, snapshot: FieldIndexSnapshot) -> None:
        """Adopt a new snapshot and persist it."""
        self.snapshot = snapshot
        self.save()

    def clear(self) -> None:
        """Empty the snapshot and persist the empty files."""
        self.snapshot = FieldIndexSnapshot()
        self.save()

    def get_fields_for_table(self, table_name: str) -> List[str]:
        """Get the field names of a table.

        Args:
            table_name: Table name

        Returns:
            Sorted field names (empty if unknown)
        """
        return list(self.snapshot.table_fields.get(table_name, []))

    def get_all_known_tables(self) -> List[str]:
        return sorted(self.snapshot.table_fields)

    def find_source_table_for_page(self, page_name: str) -> Optional[str]:
        """Get the source table of a page.

        Args:
            page_name: Page name

        Returns:
            Table name, or None
        """
        return self.snapshot.page_sources.get(page_name)

    def get_stats(self) -> Dict[str, Any]:
        """Get table, page and file counts."""
        return {
            "tables": len(self.snapshot.table_fields),
            "pages": len(self.snapshot.page_sources),
            "files": len(self.snapshot.watermarks),
        }
