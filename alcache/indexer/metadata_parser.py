"""Object and procedure extraction from package metadata and AL source."""

import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from .block_scanner import AL_PROFILE, BlockScanner
from .models import ObjectRecord, ObjectType, ProcedureRecord

logger = logging.getLogger(__name__)

_SCANNER = BlockScanner(AL_PROFILE)

SYMBOL_REFERENCE_FILE = "SymbolReference.json"

# Array name in SymbolReference.json -> object type of its entries
STRUCTURED_ARRAYS: Dict[str, ObjectType] = {
    "Tables": ObjectType.TABLE,
    "Pages": ObjectType.PAGE,
    "Reports": ObjectType.REPORT,
    "Codeunits": ObjectType.CODEUNIT,
    "Queries": ObjectType.QUERY,
    "XmlPorts": ObjectType.XMLPORT,
    "EnumTypes": ObjectType.ENUM,
    "Interfaces": ObjectType.INTERFACE,
    "ControlAddIns": ObjectType.CONTROLADDIN,
    "PermissionSets": ObjectType.PERMISSIONSET,
    "TableExtensions": ObjectType.TABLEEXTENSION,
    "PageExtensions": ObjectType.PAGEEXTENSION,
    "ReportExtensions": ObjectType.REPORTEXTENSION,
    "EnumExtensionTypes": ObjectType.ENUMEXTENSION,
    "PermissionSetExtensions": ObjectType.PERMISSIONSETEXTENSION,
}

_JSON_SPAN = re.compile(r"(\{[\s\S]*\}|\[[\s\S]*\])")

_TYPE_KEYWORDS = "|".join(
    sorted((member.value for member in ObjectType), key=len, reverse=True)
)
_DECLARATION = re.compile(
    rf"^\s*({_TYPE_KEYWORDS})\s+(?:(\d+)\s+)?(?:\"([^\"]+)\"|([^\s{{\"]+))"
    rf"(?:\s+extends\s+(?:\"([^\"]+)\"|([^\s{{\"]+)))?",
    re.IGNORECASE | re.MULTILINE,
)
_LEGACY_HEADER = re.compile(r"^\s*OBJECT\s+[A-Za-z]+\s+\d+", re.MULTILINE)

_PROCEDURE_START = re.compile(
    r"^(?!.*\blocal\s)(?:\[[^\]]*\]\s*)?(?:(?:internal|protected)\s+)?"
    r"procedure\s+[\"']?([^\"'\s(]+)[\"']?\s*\((.*)$",
    re.IGNORECASE,
)
_RETURN_TYPE = re.compile(r"^\s*(?:\w+\s*)?:\s*([^;]+?)\s*;?\s*$")


def is_legacy_dialect(text: str) -> bool:
    """Detect C/AL exports by their ``OBJECT <Type> <id>`` header or section keyword."""
    return bool(_LEGACY_HEADER.search(text)) or "OBJECT-PROPERTIES" in text


def _split_parameters(raw: str) -> List[str]:
    return [parameter.strip() for parameter in raw.split(";") if parameter.strip()]


class _OpenProcedure:
    """Header text collected so far for a procedure whose ``)`` is pending."""

    def __init__(self, name: str, rest: str):
        self.name = name
        self.buffer = rest
        self.complete = False
        self.parameters: List[str] = []
        self.return_type: Optional[str] = None
        self._try_close()

    def feed(self, line: str) -> None:
        self.buffer = f"{self.buffer} {line}"
        self._try_close()

    def _try_close(self) -> None:
        close = self.buffer.rfind(")")
        if close < 0:
            return
        self.parameters = _split_parameters(self.buffer[:close])
        returns = _RETURN_TYPE.match(self.buffer[close + 1 :])
        self.return_type = returns.group(1) if returns else None
        self.complete = True

    def to_record(self) -> ProcedureRecord:
        if not self.complete:
            # Header never closed: keep what was read
            self.parameters = _split_parameters(self.buffer)
        return ProcedureRecord(self.name, self.parameters, self.return_type)


class MetadataParser:
    """Turns package contents into object and procedure records.

    Two strategies are available: the structured ``SymbolReference.json``
    document shipped in every package, and the AL source files bundled in
    packages built with source included.
    """

    def parse_from_structured_document(
        self, text: str, source_app: Optional[str] = None
    ) -> List[ObjectRecord]:
        """Read objects from a ``SymbolReference.json`` document.

        Args:
            text: Document text, possibly prefixed with a byte order mark
            source_app: Artifact path recorded on each object

        Returns:
            Objects of every known array, including nested namespaces
        """
        text = text.lstrip("\ufeff")
        try:
            document = json.loads(text)
        except json.JSONDecodeError:
            span = _JSON_SPAN.search(text)
            if not span:
                logger.warning("Symbol reference document contains no JSON value")
                return []
            try:
                document = json.loads(span.group(1))
            except json.JSONDecodeError as e:
                logger.warning(f"Could not decode symbol reference document: {e}")
                return []

        records: List[ObjectRecord] = []
        self._walk_document(document, records, source_app)
        logger.debug(f"Read {len(records)} objects from symbol reference")
        return records

    def _walk_document(
        self, document: Any, records: List[ObjectRecord], source_app: Optional[str]
    ) -> None:
        if isinstance(document, list):
            for item in document:
                self._walk_document(item, records, source_app)
            return
        if not isinstance(document, dict):
            return

        for array_name, object_type in STRUCTURED_ARRAYS.items():
            for entry in document.get(array_name) or []:
                if not isinstance(entry, dict) or not entry.get("Name"):
                    continue
                records.append(self._record_from_entry(entry, object_type, source_app))

        for namespace in document.get("Namespaces") or []:
            self._walk_document(namespace, records, source_app)

    @staticmethod
    def _record_from_entry(
        entry: Dict[str, Any], object_type: ObjectType, source_app: Optional[str]
    ) -> ObjectRecord:
        raw_id = entry.get("Id")
        try:
            object_id = int(raw_id) if raw_id is not None else None
        except (TypeError, ValueError):
            object_id = None
        metadata = {key: value for key, value in entry.items() if key not in ("Name", "Id")}
        return ObjectRecord(
            name=entry["Name"],
            type=object_type,
            id=object_id,
            metadata=metadata,
            source_app=source_app,
        )

    def parse_from_source_text(
        self, text: str, source_app: Optional[str] = None
    ) -> Optional[ObjectRecord]:
        """Read the declaration line of one AL source unit.

        Args:
            text: Source text
            source_app: Artifact path recorded on the object

        Returns:
            The declared object, or None for C/AL text and non-declarations
        """
        if is_legacy_dialect(text):
            return None

        match = _DECLARATION.search(text.lstrip("\ufeff"))
        if not match:
            return None

        object_type = ObjectType.from_keyword(match.group(1))
        if object_type is None:
            return None

        metadata: Dict[str, Any] = {}
        extends = match.group(5) or match.group(6)
        if extends:
            metadata["extends"] = extends

        return ObjectRecord(
            name=match.group(3) or match.group(4),
            type=object_type,
            id=int(match.group(2)) if match.group(2) else None,
            metadata=metadata,
            source_app=source_app,
        )

    parse_object_definition = parse_from_source_text

    @staticmethod
    def is_legacy_dialect(text: str) -> bool:
        return is_legacy_dialect(text)

    def extract_procedures(
        self, text: str, object_type: Union[str, ObjectType], object_name: str
    ) -> List[ProcedureRecord]:
        """Collect the non-local procedure headers of a source unit.

        Comments are ignored. A header whose parameter list does not close on
        its own line keeps reading following lines until it does or another
        header starts.

        Args:
            text: Source text
            object_type: Type of the declaring object
            object_name: Name of the declaring object

        Returns:
            Procedures in declaration order
        """
        procedures: List[ProcedureRecord] = []
        current: Optional[_OpenProcedure] = None

        for line in _SCANNER.strip_comments(text).splitlines():
            stripped = line.strip()
            match = _PROCEDURE_START.match(stripped)
            if match:
                if current is not None:
                    procedures.append(current.to_record())
                current = _OpenProcedure(match.group(1), match.group(2))
                if current.complete:
                    procedures.append(current.to_record())
                    current = None
                continue
            if current is not None:
                current.feed(stripped)
                if current.complete:
                    procedures.append(current.to_record())
                    current = None

        if current is not None:
            procedures.append(current.to_record())

        logger.debug(f"Found {len(procedures)} procedures in {object_type} {object_name}")
        return procedures

    @staticmethod
    def find_symbol_reference(root: Union[str, Path]) -> Optional[Path]:
        """Locate ``SymbolReference.json`` in an extracted package, shallowest first."""
        wanted = SYMBOL_REFERENCE_FILE.lower()
        for directory, dir_names, file_names in os.walk(root):
            dir_names.sort()
            for file_name in file_names:
                if file_name.lower() == wanted:
                    return Path(directory) / file_name
        return None

    def parse_source_files(
        self,
        paths: Iterable[Union[str, Path]],
        source_app: Optional[str] = None,
        with_procedures: bool = True,
    ) -> "SourceParseResult":
        """Parse a set of ``.al`` files into objects and procedure lists."""
        result = SourceParseResult()
        for path in paths:
            try:
                text = Path(path).read_text(encoding="utf-8-sig", errors="replace")
            except OSError as e:
                result.warnings.append(f"Failed to read AL file {Path(path).name}: {e}")
                continue

            record = self.parse_from_source_text(text, source_app)
            if record is None:
                continue
            result.objects.append(record)
            if with_procedures:
                result.procedures[(record.type.value, record.name)] = self.extract_procedures(
                    text, record.type, record.name
                )
        return result


class SourceParseResult:
    """Objects, procedures and warnings gathered from a set of source files."""

    def __init__(self):
        self.objects: List[ObjectRecord] = []
        self.procedures: Dict[tuple, List[ProcedureRecord]] = {}
        self.warnings: List[str] = []
