"""Disk-persisted object and procedure maps."""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from ..errors import CacheIOError
from ..indexer.models import ObjectRecord, ObjectType, ProcedureRecord, procedure_key

logger = logging.getLogger(__name__)

SYMBOLS_FILE = "symbols.json"
PROCEDURES_FILE = "procedures.json"


def read_json_file(path: Path) -> Optional[Any]:
    """Read a JSON document.

    Returns:
        The decoded document, or None when the file does not exist

    Raises:
        CacheIOError: If the file cannot be read or decoded
    """
    if not path.exists():
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError, UnicodeDecodeError) as e:
        raise CacheIOError(f"Cannot load {path.name}: {e}", str(path)) from e


def write_json_file(path: Path, data: Any) -> None:
    """Write a JSON document through a temporary file and rename.

    Raises:
        CacheIOError: If the directory or file cannot be written
    """
    temp_path = path.with_name(f"{path.name}.tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(temp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(temp_path, path)
    except (OSError, TypeError, ValueError) as e:
        raise CacheIOError(f"Cannot save {path.name}: {e}", str(path)) from e


class SymbolStore:
    """Object records by name and procedure lists by ``"<type>:<name>"``.

    Reads never touch the disk; ``load`` and ``save`` are the only I/O.
    """

    def __init__(self, cache_path: Union[str, Path]):
        """Initialize the store.

        Args:
            cache_path: Directory holding ``symbols.json`` and ``procedures.json``
        """
        self.cache_path = Path(cache_path)
        self.symbols_file = self.cache_path / SYMBOLS_FILE
        self.procedures_file = self.cache_path / PROCEDURES_FILE
        self.symbols: Dict[str, ObjectRecord] = {}
        self.procedures: Dict[str, List[ProcedureRecord]] = {}

    def load(self) -> bool:
        """Load both maps from disk.

        A missing file loads as empty. A file that cannot be read or decoded
        is logged and leaves the in-memory map as it was.

        Returns:
            True if both files loaded cleanly
        """
        clean = True

        try:
            data = read_json_file(self.symbols_file)
            self.symbols = {
                name: ObjectRecord.from_dict({**record, "name": record.get("name", name)})
                for name, record in (data or {}).items()
            }
            logger.info(f"Loaded symbol cache with {len(self.symbols)} objects")
        except (CacheIOError, AttributeError, KeyError, TypeError, ValueError) as e:
            logger.error(f"Error loading symbol cache: {e}")
            clean = False

        try:
            data = read_json_file(self.procedures_file)
            self.procedures = {
                key: [ProcedureRecord.from_dict(item) for item in items]
                for key, items in (data or {}).items()
            }
            logger.info(f"Loaded procedure cache with {len(self.procedures)} objects")
        except (CacheIOError, AttributeError, KeyError, TypeError, ValueError) as e:
            logger.error(f"Error loading procedure cache: {e}")
            clean = False

        return clean

    def save(self) -> None:
        """Persist both maps.

        Raises:
            CacheIOError: If either file cannot be written
        """
        write_json_file(
            self.symbols_file, {name: record.to_dict() for name, record in self.symbols.items()}
        )
        write_json_file(
            self.procedures_file,
            {key: [item.to_dict() for item in items] for key, items in self.procedures.items()},
        )
        logger.debug(
            f"Saved symbol cache with {len(self.symbols)} objects and "
            f"{len(self.procedures)} procedure lists"
        )

    def clear(self) -> None:
        """Empty both maps and persist the empty state."""
        self.symbols = {}
        self.procedures = {}
        self.save()
        logger.info("Cleared symbol cache")

    def get_object(self, name: str) -> Optional[ObjectRecord]:
        """Get an object record by name.

        Args:
            name: Object name

        Returns:
            The record, or None if unknown
        """
        return self.symbols.get(name)

    def get_object_id(self, name: str) -> Optional[int]:
        """Get the numeric id of an object.

        Args:
            name: Object name

        Returns:
            Object id, or None if unknown
        """
        record = self.symbols.get(name)
        return record.id if record else None

    def get_procedures(self, object_type: Union[str, ObjectType], object_name: str) -> List[ProcedureRecord]:
        """Get the procedures cached for an object.

        Args:
            object_type: Object type, matched case-insensitively
            object_name: Object name

        Returns:
            Copy of the procedure list (empty if none)
        """
        return list(self.procedures.get(procedure_key(object_type, object_name), []))

    def set_procedures(
        self,
        object_type: Union[str, ObjectType],
        object_name: str,
        procedures: List[ProcedureRecord],
    ) -> None:
        """Replace the procedures of one object.

        Args:
            object_type: Object type
            object_name: Object name
            procedures: Procedures in declaration order
        """
        self.procedures[procedure_key(object_type, object_name)] = list(procedures)

    def list_objects_with_procedures(self) -> List[str]:
        """Keys of every object that has at least one procedure."""
        return sorted(key for key, items in self.procedures.items() if items)

    def replace_symbols(self, symbols: Dict[str, ObjectRecord]) -> None:
        """Swap in a complete object map."""
        self.symbols = dict(symbols)

    def assign_procedures(self, procedures: Dict[str, List[ProcedureRecord]]) -> None:
        """Overwrite the given procedure keys, leaving other keys untouched."""
        for key, items in procedures.items():
            self.procedures[key] = list(items)

    def objects_from_app(self, artifact_path: str) -> Dict[str, ObjectRecord]:
        """Objects last produced by the given artifact."""
        return {
            name: record
            for name, record in self.symbols.items()
            if record.source_app == artifact_path
        }

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics.

        Returns:
            Object counts, cache path and on-disk size
        """
        return {
            "objects": len(self.symbols),
            "objects_with_procedures": len(self.list_objects_with_procedures()),
            "cache_path": str(self.cache_path),
            "cache_size_bytes": (
                self.symbols_file.stat().st_size if self.symbols_file.exists() else 0
            ),
        }
