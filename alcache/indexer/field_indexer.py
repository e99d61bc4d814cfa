"""Incremental table-field and page-source indexing of extracted AL sources.

Files are re-read only when their modification time differs from the
stored watermark. Each file's contribution is remembered so a changed or
deleted file can be retracted from the indexes exactly.
"""

import logging
import os
import re
from collections import defaultdict
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Set, Tuple, Union

from .block_scanner import AL_PROFILE, BlockScanner
from .models import FieldIndexSnapshot, FileContribution

logger = logging.getLogger(__name__)

_NAME = r"(?:\"([^\"]+)\"|'([^']+)'|([\w.-]+))"
_TABLE = re.compile(rf"^\s*table\s+\d+\s+{_NAME}", re.IGNORECASE | re.MULTILINE)
_TABLE_EXTENSION = re.compile(
    rf"^\s*tableextension\s+\d+\s+{_NAME}\s+extends\s+{_NAME}", re.IGNORECASE | re.MULTILINE
)
_PAGE = re.compile(rf"^\s*page\s+\d+\s+{_NAME}", re.IGNORECASE | re.MULTILINE)
_FIELD = re.compile(rf"\bfield\s*\(\s*\d+\s*;\s*{_NAME}", re.IGNORECASE)
_SOURCE_TABLE = re.compile(rf"\bSourceTable\s*=\s*{_NAME}", re.IGNORECASE)


def _name(match: re.Match, first_group: int = 1) -> str:
    groups = match.groups()[first_group - 1 : first_group + 2]
    return next(group for group in groups if group)


def extract_table_fields(text: str) -> Optional[Tuple[str, List[str]]]:
    """Return the (base) table name and the field names declared in ``text``.

    Only ``field(...)`` declarations inside the ``fields`` block count, so
    ``modify(...)`` entries and commented-out fields are ignored.

    Args:
        text: AL source of a table or table extension

    Returns:
        Tuple of (table name, field names), or None for other objects
    """
    scanner = BlockScanner(AL_PROFILE)
    mask = scanner.structural_mask(text)

    declaration = _TABLE_EXTENSION.search(text)
    if declaration:
        table_name = _name(declaration, 4)
    else:
        declaration = _TABLE.search(text)
        if not declaration:
            return None
        table_name = _name(declaration)

    block = scanner.find_block(text, "fields", declaration.end(), mask=mask)
    if not block.is_valid:
        return table_name, []

    fields: List[str] = []
    for match in _FIELD.finditer(text, block.start, block.end):
        if not mask[match.start()]:
            continue
        field_name = _name(match)
        if field_name not in fields:
            fields.append(field_name)
    return table_name, fields


def extract_page_source(text: str) -> Optional[Tuple[str, Optional[str]]]:
    """Return the page name and its ``SourceTable`` (None when absent)."""
    page = _PAGE.search(text)
    if not page:
        return None

    scanner = BlockScanner(AL_PROFILE)
    mask = scanner.structural_mask(text)
    for match in _SOURCE_TABLE.finditer(text, page.end()):
        if mask[match.start()]:
            return _name(page), _name(match)
    return _name(page), None


def extract_contribution(text: str) -> FileContribution:
    """Everything one source file contributes to the field indexes."""
    contribution = FileContribution()
    table = extract_table_fields(text)
    if table:
        contribution.table_name, contribution.fields = table
    page = extract_page_source(text)
    if page:
        contribution.page_name, contribution.source_table = page
    return contribution


class FieldIndexer:
    """Keeps a :class:`FieldIndexSnapshot` in step with a source tree."""

    def __init__(self, extension: str = ".al"):
        self.extension = extension.lower()

    def iter_source_files(
        self, source_root: Union[str, Path], exclude_dirs: Iterable[Union[str, Path]] = ()
    ) -> Iterator[Path]:
        """Yield absolute paths of source files below ``source_root``."""
        excluded = {os.path.abspath(path) for path in exclude_dirs}
        for directory, dir_names, file_names in os.walk(os.path.abspath(source_root)):
            dir_names[:] = [
                name for name in dir_names if os.path.join(directory, name) not in excluded
            ]
            for file_name in file_names:
                if file_name.lower().endswith(self.extension):
                    yield Path(directory) / file_name

    def update_index(
        self,
        source_root: Union[str, Path],
        previous: Optional[FieldIndexSnapshot] = None,
        exclude_dirs: Iterable[Union[str, Path]] = (),
    ) -> FieldIndexSnapshot:
        """Bring the indexes up to date with ``source_root``.

        Args:
            source_root: Root of the extracted source tree
            previous: Snapshot from the last scan
            exclude_dirs: Directories to leave out of the scan

        Returns:
            New snapshot; ``reparsed`` and ``removed`` list what changed
        """
        previous = previous or FieldIndexSnapshot()
        snapshot = FieldIndexSnapshot(
            table_fields={table: list(fields) for table, fields in previous.table_fields.items()},
            page_sources=dict(previous.page_sources),
            watermarks=dict(previous.watermarks),
            contributions=dict(previous.contributions),
        )
        observed: Set[str] = set()
        affected_tables: Set[str] = set()
        affected_pages: Set[str] = set()

        if not os.path.isdir(source_root):
            logger.warning(f"Source tree {source_root} does not exist")

        for path in self.iter_source_files(source_root, exclude_dirs):
            key = str(path)
            observed.add(key)
            try:
                mtime = path.stat().st_mtime
            except OSError as e:
                logger.warning(f"Cannot stat {key}: {e}")
                continue

            if previous.watermarks.get(key) == mtime and key in previous.contributions:
                continue

            try:
                text = path.read_text(encoding="utf-8-sig", errors="replace")
            except OSError as e:
                logger.warning(f"Cannot read {key}: {e}")
                continue

            self._replace_contribution(snapshot, key, extract_contribution(text), affected_tables, affected_pages)
            snapshot.watermarks[key] = mtime
            snapshot.reparsed.append(key)

        for key in list(snapshot.watermarks):
            if key not in observed:
                del snapshot.watermarks[key]
                self._retract(snapshot, key, affected_tables, affected_pages)
                snapshot.removed.append(key)

        self._rebuild(snapshot, affected_tables, affected_pages)

        logger.info(
            f"Field index updated: {len(snapshot.reparsed)} parsed, "
            f"{len(observed) - len(snapshot.reparsed)} unchanged, {len(snapshot.removed)} removed"
        )
        return snapshot

    def update_for_file(
        self,
        snapshot: FieldIndexSnapshot,
        path: Union[str, Path],
        text: str,
        mtime: Optional[float] = None,
    ) -> FieldIndexSnapshot:
        """Apply the contents of a single file to ``snapshot`` in place."""
        key = os.path.abspath(path)
        affected_tables: Set[str] = set()
        affected_pages: Set[str] = set()
        self._replace_contribution(snapshot, key, extract_contribution(text), affected_tables, affected_pages)
        if mtime is not None:
            snapshot.watermarks[key] = mtime
        self._rebuild(snapshot, affected_tables, affected_pages)
        return snapshot

    def remove_file(self, snapshot: FieldIndexSnapshot, path: Union[str, Path]) -> FieldIndexSnapshot:
        """Retract a deleted file from ``snapshot`` in place."""
        key = os.path.abspath(path)
        affected_tables: Set[str] = set()
        affected_pages: Set[str] = set()
        snapshot.watermarks.pop(key, None)
        self._retract(snapshot, key, affected_tables, affected_pages)
        self._rebuild(snapshot, affected_tables, affected_pages)
        return snapshot

    def _replace_contribution(
        self,
        snapshot: FieldIndexSnapshot,
        key: str,
        contribution: FileContribution,
        affected_tables: Set[str],
        affected_pages: Set[str],
    ) -> None:
        self._retract(snapshot, key, affected_tables, affected_pages)
        snapshot.contributions[key] = contribution

        if contribution.table_name and contribution.fields:
            existing = snapshot.table_fields.get(contribution.table_name, [])
            snapshot.table_fields[contribution.table_name] = sorted(set(existing) | set(contribution.fields))
        if contribution.page_name:
            snapshot.page_sources[contribution.page_name] = contribution.source_table

    @staticmethod
    def _retract(
        snapshot: FieldIndexSnapshot,
        key: str,
        affected_tables: Set[str],
        affected_pages: Set[str],
    ) -> None:
        old = snapshot.contributions.pop(key, None)
        if old is None:
            return
        if old.table_name:
            affected_tables.add(old.table_name)
        if old.page_name:
            affected_pages.add(old.page_name)

    @staticmethod
    def _rebuild(
        snapshot: FieldIndexSnapshot, affected_tables: Set[str], affected_pages: Set[str]
    ) -> None:
        """Recompute affected entries from the contributions still on record."""
        if not affected_tables and not affected_pages:
            return

        fields_by_table: Dict[str, Set[str]] = defaultdict(set)
        source_by_page: Dict[str, Optional[str]] = {}
        for contribution in snapshot.contributions.values():
            if contribution.table_name in affected_tables:
                fields_by_table[contribution.table_name].update(contribution.fields)
            if contribution.page_name in affected_pages:
                source_by_page[contribution.page_name] = contribution.source_table

        for table in affected_tables:
            if fields_by_table.get(table):
                snapshot.table_fields[table] = sorted(fields_by_table[table])
            else:
                snapshot.table_fields.pop(table, None)

        for page in affected_pages:
            if page in source_by_page:
                snapshot.page_sources[page] = source_by_page[page]
            else:
                snapshot.page_sources.pop(page, None)
