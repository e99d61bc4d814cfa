"""Data models for the AL symbol cache."""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional


class ObjectType(str, Enum):
    """AL object kinds, including extension variants."""

    TABLE = "Table"
    PAGE = "Page"
    REPORT = "Report"
    CODEUNIT = "Codeunit"
    QUERY = "Query"
    XMLPORT = "XmlPort"
    ENUM = "Enum"
    INTERFACE = "Interface"
    CONTROLADDIN = "ControlAddIn"
    PERMISSIONSET = "PermissionSet"
    TABLEEXTENSION = "TableExtension"
    PAGEEXTENSION = "PageExtension"
    REPORTEXTENSION = "ReportExtension"
    ENUMEXTENSION = "EnumExtension"
    PERMISSIONSETEXTENSION = "PermissionSetExtension"

    @classmethod
    def from_keyword(cls, keyword: str) -> Optional["ObjectType"]:
        """Resolve a declaration keyword (any casing) to an object type."""
        lowered = keyword.strip().lower()
        for member in cls:
            if member.value.lower() == lowered:
                return member
        return None

    @property
    def is_extension(self) -> bool:
        return self.value.endswith("Extension")


class ArtifactStatus(str, Enum):
    """Lifecycle of one artifact within a refresh."""

    PENDING = "pending"
    SKIPPED = "skipped"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class ObjectRecord:
    """One declared application object."""

    name: str  # lookup key, unique within the cache
    type: ObjectType
    id: Optional[int] = None  # absent for some extension kinds
    metadata: Dict[str, Any] = field(default_factory=dict)  # captions, properties, fields
    source_app: Optional[str] = None  # artifact path that produced the record

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type.value,
            "id": self.id,
            "metadata": self.metadata,
            "source_app": self.source_app,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ObjectRecord":
        object_type = ObjectType.from_keyword(data.get("type", "")) or ObjectType.TABLE
        raw_id = data.get("id")
        return cls(
            name=data["name"],
            type=object_type,
            id=int(raw_id) if raw_id is not None else None,
            metadata=dict(data.get("metadata") or {}),
            source_app=data.get("source_app"),
        )


@dataclass
class ProcedureRecord:
    """One exported (non-local) procedure of an object."""

    name: str
    parameters: List[str] = field(default_factory=list)  # raw declarations, in order
    return_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "parameters": list(self.parameters),
            "returnType": self.return_type,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProcedureRecord":
        return cls(
            name=data["name"],
            parameters=list(data.get("parameters") or []),
            return_type=data.get("returnType"),
        )


def procedure_key(object_type: str, object_name: str) -> str:
    """Build the ``"<type>:<name>"`` key used by the procedure map."""
    if isinstance(object_type, ObjectType):
        object_type = object_type.value
    return f"{object_type.lower()}:{object_name}"


@dataclass
class AppArtifact:
    """A compiled package path plus the identity parsed from its filename."""

    path: str
    app_name: str
    app_version: str
    degraded: bool = False  # True when defaults replaced missing filename segments


@dataclass
class ExtractedTree:
    """Scratch directory holding the unpacked contents of one artifact."""

    artifact_path: str
    root: Path
    files: List[str] = field(default_factory=list)  # member names written


@dataclass
class FileContribution:
    """What a single source file contributed to the field indexes."""

    table_name: Optional[str] = None  # base table name for table extensions
    fields: List[str] = field(default_factory=list)
    page_name: Optional[str] = None
    source_table: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "table": self.table_name,
            "fields": list(self.fields),
            "page": self.page_name,
            "sourceTable": self.source_table,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileContribution":
        return cls(
            table_name=data.get("table"),
            fields=list(data.get("fields") or []),
            page_name=data.get("page"),
            source_table=data.get("sourceTable"),
        )


@dataclass
class FieldIndexSnapshot:
    """Tables, pages, watermarks and per-file contributions of one scan."""

    table_fields: Dict[str, List[str]] = field(default_factory=dict)
    page_sources: Dict[str, Optional[str]] = field(default_factory=dict)
    watermarks: Dict[str, float] = field(default_factory=dict)
    contributions: Dict[str, FileContribution] = field(default_factory=dict)
    reparsed: List[str] = field(default_factory=list)  # files parsed during the scan
    removed: List[str] = field(default_factory=list)  # watermarks pruned during the scan

    def to_message(self) -> Dict[str, Any]:
        """Serialize as a ``fieldCacheData`` worker message."""
        return {
            "type": "fieldCacheData",
            "tableFieldsCache": self.table_fields,
            "pageSourceTableCache": self.page_sources,
            "metadata": self.watermarks,
            "contributions": {
                path: contribution.to_dict()
                for path, contribution in self.contributions.items()
            },
            "reparsed": self.reparsed,
            "removed": self.removed,
        }

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "FieldIndexSnapshot":
        return cls(
            table_fields={
                table: list(fields)
                for table, fields in (message.get("tableFieldsCache") or {}).items()
            },
            page_sources=dict(message.get("pageSourceTableCache") or {}),
            watermarks={
                path: float(mtime) for path, mtime in (message.get("metadata") or {}).items()
            },
            contributions={
                path: FileContribution.from_dict(data)
                for path, data in (message.get("contributions") or {}).items()
            },
            reparsed=list(message.get("reparsed") or []),
            removed=list(message.get("removed") or []),
        )

    def rebuild_from_contributions(self) -> None:
        """Recompute the table and page indexes from the per-file contributions."""
        fields_by_table: Dict[str, set] = {}
        page_sources: Dict[str, Optional[str]] = {}
        for contribution in self.contributions.values():
            if contribution.table_name and contribution.fields:
                fields_by_table.setdefault(contribution.table_name, set()).update(contribution.fields)
            if contribution.page_name:
                page_sources[contribution.page_name] = contribution.source_table

        self.table_fields = {table: sorted(fields) for table, fields in fields_by_table.items()}
        self.page_sources = page_sources
