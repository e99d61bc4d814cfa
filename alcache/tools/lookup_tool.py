"""Synchronous lookups against the symbol cache and field indexes."""

import logging
import re
from typing import List, Optional

from ..indexer.models import ProcedureRecord
from ..store.field_store import FieldIndexStore
from ..store.symbol_store import SymbolStore

logger = logging.getLogger(__name__)

_EXTENDED_PAGE = re.compile(
    r"pageextension\s+\d+\s+(?:\"[^\"]+\"|'[^']+'|[\w.-]+)\s+extends\s+(?:\"([^\"]+)\"|'([^']+)'|([\w.-]+))",
    re.IGNORECASE,
)
_SOURCE_TABLE = re.compile(r"SourceTable\s*=\s*(?:\"([^\"]+)\"|'([^']+)'|([\w.-]+))", re.IGNORECASE)


def _clean_table_name(token: str) -> str:
    name = token.strip()
    if len(name) >= 2 and name[0] == name[-1] and name[0] in "\"'":
        name = name[1:-1]
    return name


def _first_group(match: re.Match) -> str:
    return next(group for group in match.groups() if group)


def _after_record(text: str) -> Optional[str]:
    """Table name following the ``Record`` keyword in a declaration fragment."""
    position = text.lower().find("record")
    if position < 0:
        return None
    table = text[position + len("record") :].strip()
    table = re.split(r"[;),]", table, maxsplit=1)[0].strip()
    table = re.sub(r"\s+temporary$", "", table, flags=re.IGNORECASE)
    return _clean_table_name(table) or None


def find_table_in_declarations(text: str, variable: str) -> Optional[str]:
    """Resolve a record variable's table from its declaration.

    Checks ``var`` sections, single-line ``var`` declarations and procedure
    parameters, in that order.
    """
    if not text or not variable:
        return None
    lines = text.splitlines()
    lowered_variable = variable.lower()
    name_pattern = re.compile(rf"(?<![\w\"]){re.escape(lowered_variable)}(?![\w\"])|\"{re.escape(lowered_variable)}\"")

    in_var_section = False
    for line in lines:
        lowered = line.lower().strip()
        if lowered == "var":
            in_var_section = True
            continue
        if in_var_section and lowered == "begin":
            in_var_section = False
            continue
        if not in_var_section or "record" not in lowered or ":" not in line:
            continue
        declared, _, type_part = line.partition(":")
        if name_pattern.search(declared.lower()):
            table = _after_record(type_part)
            if table:
                return table

    for line in lines:
        lowered = line.lower()
        if "var" not in lowered or "record" not in lowered or lowered_variable not in lowered:
            continue
        parts = re.split(r"[:;]", line)
        for index, part in enumerate(parts[:-1]):
            if name_pattern.search(part.lower()) and parts[index + 1].strip().lower().startswith("record"):
                table = _after_record(parts[index + 1])
                if table:
                    return table

    parameter = re.compile(rf"{re.escape(variable)}\s*:\s*record\s+", re.IGNORECASE)
    for line in lines:
        match = parameter.search(line)
        if match:
            table = _after_record(line[match.start() + len(variable) :])
            if table:
                return table

    return None


def find_extended_page(text: str) -> Optional[str]:
    """Name of the page a ``pageextension`` extends, if any."""
    match = _EXTENDED_PAGE.search(text or "")
    return _first_group(match) if match else None


class LookupTool:
    """Read-only queries used by editor features."""

    def __init__(self, symbol_store: SymbolStore, field_store: FieldIndexStore, coordinator=None):
        """Initialize the lookup tool.

        Args:
            symbol_store: Object and procedure cache
            field_store: Table-field and page-source indexes
            coordinator: Refresh coordinator, for status reporting
        """
        self.symbol_store = symbol_store
        self.field_store = field_store
        self.coordinator = coordinator

    def get_object_info(self, name: str) -> Optional[dict]:
        """Get the cached record of an object.

        Args:
            name: Object name

        Returns:
            Serialized object record, or None if the object is unknown
        """
        record = self.symbol_store.get_object(name)
        return record.to_dict() if record else None

    def get_object_id(self, name: str) -> Optional[int]:
        """Get the numeric id of an object.

        Args:
            name: Object name

        Returns:
            Object id, or None if unknown or declared without an id
        """
        return self.symbol_store.get_object_id(name)

    def get_procedures(self, object_type: str, object_name: str) -> List[ProcedureRecord]:
        """Get the public procedures of an object.

        Args:
            object_type: Object type, case-insensitive
            object_name: Object name

        Returns:
            Procedures in declaration order (empty if none are cached)
        """
        return self.symbol_store.get_procedures(object_type, object_name)

    def get_fields_for_table(self, table_name: str) -> List[str]:
        """Get the field names of a table, including those added by extensions.

        Args:
            table_name: Table name

        Returns:
            Sorted field names (empty if the table is unknown)
        """
        if not table_name:
            return []
        return self.field_store.get_fields_for_table(table_name)

    def get_all_known_tables(self) -> List[str]:
        """Names of every table in the field index, sorted."""
        return self.field_store.get_all_known_tables()

    def find_source_table_for_page(self, page_name: str) -> Optional[str]:
        """Get the ``SourceTable`` of a page.

        Args:
            page_name: Page name

        Returns:
            Table name, or None for unknown pages and pages without a source table
        """
        if not page_name:
            return None
        return self.field_store.find_source_table_for_page(page_name)

    def guess_table_type(self, text: str, variable: str) -> Optional[str]:
        """Guess which table a record variable refers to.

        Args:
            text: Source text of the document being edited
            variable: Variable name, e.g. ``Rec`` or ``SalesLine``

        Returns:
            Table name, or None if it cannot be determined
        """
        if not text or not variable:
            return None

        table = find_table_in_declarations(text, variable)
        if table:
            return table

        extended_page = find_extended_page(text)
        if extended_page:
            source_table = self.find_source_table_for_page(extended_page)
            if source_table:
                return source_table

        match = _SOURCE_TABLE.search(text)
        if match:
            return _first_group(match)
        return None

    def get_cache_status(self) -> dict:
        """Summarize cache contents and the last refresh."""
        try:
            status = {
                "success": True,
                "symbols": self.symbol_store.get_stats(),
                "fields": self.field_store.get_stats(),
            }
            if self.coordinator is not None:
                status["refresh"] = self.coordinator.get_status_dict()
            return status
        except OSError as e:
            logger.error(f"Error getting cache status: {e}")
            return {"success": False, "error": str(e)}
