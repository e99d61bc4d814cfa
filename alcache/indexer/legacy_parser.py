"""Structural parser for legacy C/AL object exports.

Parses ``OBJECT <Type> <id> <Name> { ... }`` text into sections, filters
fields, controls and actions by id range, and writes the object back out.
Retained records are emitted from their original text so a filtered object
diffs cleanly against its source.
"""

import logging
import re
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Optional, Tuple

from .block_scanner import LEGACY_PROFILE, BlockScanner, BlockSpan

logger = logging.getLogger(__name__)

_HEADER = re.compile(r"OBJECT\s+(\w+)\s+(\d+)\s+(.*?)(?:\r?\n|\{)")
_OBJECT_PROPERTY = re.compile(r"(\w+)=([^;]*);")
_PROPERTY = re.compile(r"^(\w+)=(.*)$")
_TRIGGER = re.compile(r"^(On\w+)=(.*)$")
_TRIGGER_DEPTH = re.compile(r"\b(BEGIN|CASE|END)\b", re.IGNORECASE)
_SOURCE_EXPR = re.compile(r"SourceExpr=([^;]+)(?:;|$)")
_DOC_TAIL = re.compile(r"\}\s*END\.\s*$")
_DOC_HEAD = re.compile(r"BEGIN\s*$")


@dataclass(frozen=True)
class IdRange:
    """Inclusive object/field id range, as declared in ``app.json``."""

    from_id: int
    to_id: int

    def __contains__(self, item: int) -> bool:
        return self.from_id <= item <= self.to_id


@dataclass
class LegacyTrigger:
    name: str
    code: str


@dataclass
class LegacyField:
    id: int
    name: str
    data_type: str
    properties: str
    original_text: str


@dataclass
class LegacyControl:
    id: int
    type: str
    properties: str
    source_expr: str
    original_text: str


@dataclass
class LegacyAction:
    id: int
    level: int
    type: str
    properties: str
    original_text: str


@dataclass
class LegacyObject:
    """Sections of one C/AL object."""

    type: str = ""
    id: str = ""
    name: str = ""
    object_properties: Dict[str, str] = field(default_factory=dict)
    properties: Dict[str, str] = field(default_factory=dict)
    triggers: List[LegacyTrigger] = field(default_factory=list)
    fields: List[LegacyField] = field(default_factory=list)
    controls: List[LegacyControl] = field(default_factory=list)
    actions: List[LegacyAction] = field(default_factory=list)
    code: str = ""
    documentation: str = ""
    # Verbatim section bodies (text between the braces)
    object_properties_text: str = ""
    properties_text: str = ""
    actions_text: str = ""
    keys_text: str = ""
    field_groups_text: str = ""

    @property
    def is_table(self) -> bool:
        return self.type.lower() == "table"

    @property
    def is_page(self) -> bool:
        return self.type.lower() == "page"


def _parse_object_properties(body: str) -> Dict[str, str]:
    return {match.group(1): match.group(2).strip() for match in _OBJECT_PROPERTY.finditer(body)}


def _collect_trigger(lines: List[str], start: int) -> Tuple[str, int]:
    """Collect a multi-line trigger body starting at ``lines[start]``.

    Returns the trimmed code and the index of the last line consumed.
    """
    collected = []
    depth = 0
    seen_begin = False
    index = start
    while index < len(lines):
        line = lines[index].strip()
        collected.append(line)
        for token in _TRIGGER_DEPTH.findall(line):
            token = token.upper()
            if token in ("BEGIN", "CASE"):
                depth += 1
                seen_begin = True
            else:
                depth -= 1
        if seen_begin and depth <= 0:
            break
        index += 1
    return "\n".join(collected), min(index, len(lines) - 1)


def _parse_properties(body: str) -> Tuple[Dict[str, str], List[LegacyTrigger]]:
    properties: Dict[str, str] = {}
    triggers: List[LegacyTrigger] = []
    lines = body.splitlines()
    current_name: Optional[str] = None
    current_value = ""

    index = 0
    while index < len(lines):
        line = lines[index].strip()
        index += 1
        if not line:
            continue

        if current_name is not None:
            current_value += line
            if line.endswith("];"):
                properties[current_name] = current_value[:-1]
                current_name = None
                current_value = ""
            continue

        trigger = _TRIGGER.match(line)
        if trigger:
            value = trigger.group(2).strip()
            if value.upper().startswith(("BEGIN", "VAR")):
                lines[index - 1] = value
                value, last = _collect_trigger(lines, index - 1)
                index = last + 1
            triggers.append(LegacyTrigger(trigger.group(1), value))
            continue

        match = _PROPERTY.match(line)
        if not match:
            continue
        name, value = match.group(1), match.group(2).strip()
        if value.startswith("[") and not value.endswith("];"):
            current_name = name
            current_value = value
            continue
        properties[name] = value[:-1] if value.endswith(";") else value

    if current_name is not None:
        logger.debug(f"Unterminated multi-line property {current_name}")
        properties[current_name] = current_value

    return properties, triggers


def _split_record(text: str, span: BlockSpan, parts: int) -> List[str]:
    return [part.strip() for part in span.body(text).split(";", parts - 1)]


def _parse_fields(text: str, spans: Iterable[BlockSpan]) -> List[LegacyField]:
    fields = []
    for span in spans:
        parts = _split_record(text, span, 5)
        if len(parts) < 4 or not parts[0].isdigit():
            continue
        fields.append(
            LegacyField(
                id=int(parts[0]),
                name=parts[2],
                data_type=parts[3],
                properties=parts[4] if len(parts) > 4 else "",
                original_text=span.outer(text),
            )
        )
    return fields


def _parse_controls(text: str, spans: Iterable[BlockSpan]) -> List[LegacyControl]:
    controls = []
    for span in spans:
        parts = _split_record(text, span, 4)
        if len(parts) < 3 or not parts[0].isdigit():
            continue
        properties = parts[3] if len(parts) > 3 else ""
        source_expr = _SOURCE_EXPR.search(properties)
        controls.append(
            LegacyControl(
                id=int(parts[0]),
                type=parts[2],
                properties=properties,
                source_expr=source_expr.group(1).strip() if source_expr else "",
                original_text=span.outer(text),
            )
        )
    return controls


def _parse_actions(text: str, spans: Iterable[BlockSpan]) -> List[LegacyAction]:
    actions = []
    for span in spans:
        parts = _split_record(text, span, 4)
        if len(parts) < 3 or not parts[0].isdigit() or not parts[1].isdigit():
            continue
        actions.append(
            LegacyAction(
                id=int(parts[0]),
                level=int(parts[1]),
                type=parts[2],
                properties=parts[3] if len(parts) > 3 else "",
                original_text=span.outer(text),
            )
        )
    return actions


def split_documentation(code: str) -> Tuple[str, str]:
    """Separate the trailing ``BEGIN { ... } END.`` documentation block.

    Returns:
        Tuple of (code with the block replaced by ``END.``, documentation)
    """
    tail = _DOC_TAIL.search(code)
    if not tail:
        return code, ""

    close = tail.start()
    depth = 0
    open_index = -1
    for i in range(close, -1, -1):
        if code[i] == "}":
            depth += 1
        elif code[i] == "{":
            depth -= 1
            if depth == 0:
                open_index = i
                break
    if open_index < 0:
        return code, ""

    head = _DOC_HEAD.search(code, 0, open_index)
    if not head:
        return code, ""

    documentation = code[open_index + 1 : close].strip()
    remainder = code[: head.start()].rstrip()
    remainder = f"{remainder}\n    END." if remainder else "END."
    return remainder, documentation


def parse_legacy_object(text: str) -> LegacyObject:
    """Parse a C/AL object export.

    Args:
        text: Object text starting with ``OBJECT <Type> <id> <Name>``

    Returns:
        Parsed object

    Raises:
        ValueError: If the text has no object header
    """
    header = _HEADER.search(text)
    if not header:
        raise ValueError("Text does not contain an OBJECT header")

    obj = LegacyObject(type=header.group(1), id=header.group(2), name=header.group(3).strip())
    scanner = BlockScanner(LEGACY_PROFILE)
    mask = scanner.structural_mask(text)

    object_properties = scanner.find_block(text, "OBJECT-PROPERTIES", header.end() - 1, mask=mask)
    if object_properties.is_valid:
        obj.object_properties_text = object_properties.body(text)
        obj.object_properties = _parse_object_properties(obj.object_properties_text)

    properties = scanner.find_block(text, "PROPERTIES", header.end() - 1, mask=mask)
    if properties.is_valid:
        body = properties.body(text)
        obj.properties_text = body
        actions = scanner.find_block(
            text, "ACTIONS", properties.start, properties.end, mask=mask
        )
        if actions.is_valid:
            obj.actions_text = actions.body(text)
            if obj.is_page:
                obj.actions = _parse_actions(text, scanner.iter_child_blocks(text, actions, mask))
            # Drop the nested action list so its records are not read as properties
            body = (
                text[properties.start + 1 : actions.keyword_start]
                + "ACTIONS"
                + text[actions.end + 1 : properties.end]
            )
        obj.properties, obj.triggers = _parse_properties(body)

    if obj.is_table:
        fields = scanner.find_block(text, "FIELDS", header.end() - 1, mask=mask)
        obj.fields = _parse_fields(text, scanner.iter_child_blocks(text, fields, mask))
        keys = scanner.find_block(text, "KEYS", header.end() - 1, mask=mask)
        obj.keys_text = keys.body(text)
        field_groups = scanner.find_block(text, "FIELDGROUPS", header.end() - 1, mask=mask)
        obj.field_groups_text = field_groups.body(text)

    if obj.is_page:
        controls = scanner.find_block(text, "CONTROLS", header.end() - 1, mask=mask)
        obj.controls = _parse_controls(text, scanner.iter_child_blocks(text, controls, mask))

    code = scanner.find_block(text, "CODE", header.end() - 1, mask=mask)
    if code.is_valid:
        obj.code, obj.documentation = split_documentation(code.body(text).strip())

    logger.debug(
        f"Parsed {obj.type} {obj.id} {obj.name}: {len(obj.fields)} fields, "
        f"{len(obj.controls)} controls, {len(obj.actions)} actions"
    )
    return obj


def is_id_in_ranges(item_id: Optional[int], ranges: Optional[Iterable[IdRange]]) -> bool:
    """Check an id against inclusive ranges; no ranges admits every id."""
    ranges = list(ranges or [])
    if not ranges:
        return True
    if item_id is None:
        return False
    try:
        numeric = int(item_id)
    except (TypeError, ValueError):
        return False
    return any(numeric in id_range for id_range in ranges)


def filter_by_id_ranges(obj: LegacyObject, ranges: Optional[Iterable[IdRange]]) -> LegacyObject:
    """Return a copy of ``obj`` keeping only fields, controls and actions in range."""
    ranges = list(ranges or [])
    return replace(
        obj,
        fields=[item for item in obj.fields if is_id_in_ranges(item.id, ranges)],
        controls=[item for item in obj.controls if is_id_in_ranges(item.id, ranges)],
        actions=[item for item in obj.actions if is_id_in_ranges(item.id, ranges)],
    )


def _emit_section(name: str, body: str) -> str:
    return f"  {name}\n  {{{body}}}\n"


def _emit_records(name: str, records: Iterable[str]) -> str:
    lines = "".join(f"    {record}\n" for record in records)
    return f"  {name}\n  {{\n{lines}  }}\n"


def _rebuild_properties(obj: LegacyObject) -> str:
    if obj.properties_text:
        if obj.actions_text and obj.actions_text in obj.properties_text:
            rebuilt = "".join(f"\n      {action.original_text}" for action in obj.actions)
            return obj.properties_text.replace(obj.actions_text, f"{rebuilt}\n    ", 1)
        return obj.properties_text

    lines = [f"    {name}={value};" for name, value in obj.properties.items()]
    lines.extend(f"    {trigger.name}={trigger.code}" for trigger in obj.triggers)
    return "\n" + "\n".join(lines) + "\n  " if lines else ""


def _rebuild_code(obj: LegacyObject) -> str:
    code = obj.code
    if obj.documentation:
        documentation = obj.documentation.replace("\n", "\n      ")
        block = f"BEGIN\n    {{\n      {documentation}\n    }}\n    END."
        last_end = code.rfind("END.")
        if code.strip().endswith("END.") and last_end >= 0:
            code = code[:last_end] + block
        else:
            code = f"{code}\n\n    {block}" if code else block
    return f"\n    {code}\n  "


def reconstruct_legacy_object(obj: LegacyObject) -> str:
    """Serialize a (possibly filtered) object back to C/AL text."""
    parts = [f"OBJECT {obj.type} {obj.id} {obj.name}\n{{\n"]

    if obj.object_properties_text:
        parts.append(_emit_section("OBJECT-PROPERTIES", obj.object_properties_text))

    properties = _rebuild_properties(obj)
    if properties:
        parts.append(_emit_section("PROPERTIES", properties))

    if obj.is_table:
        parts.append(_emit_records("FIELDS", (item.original_text for item in obj.fields)))
        if obj.keys_text:
            parts.append(_emit_section("KEYS", obj.keys_text))
        if obj.field_groups_text:
            parts.append(_emit_section("FIELDGROUPS", obj.field_groups_text))

    if obj.is_page:
        parts.append(_emit_records("CONTROLS", (item.original_text for item in obj.controls)))

    if obj.code or obj.documentation:
        parts.append(_emit_section("CODE", _rebuild_code(obj)))

    parts.append("}\n")
    return "".join(parts)


def parse_caption_ml(value: str) -> Dict[str, str]:
    """Split ``[ENU=Customer;DEU=Debitor]`` into a language-to-caption map."""
    result: Dict[str, str] = {}
    if not value or not value.startswith("["):
        return result

    content = value[1:-1] if value.endswith("]") else value[1:]
    for entry in content.split(";"):
        entry = entry.strip()
        if "=" not in entry:
            continue
        language, caption = entry.split("=", 1)
        caption = caption.strip()
        if len(caption) >= 2 and caption.startswith('"') and caption.endswith('"'):
            caption = caption[1:-1]
        result[language.strip()] = caption
    return result


def filter_to_id_ranges(text: str, ranges: Optional[Iterable[IdRange]]) -> str:
    """Parse, filter and rebuild ``text``; the input comes back unchanged on failure."""
    ranges = list(ranges or [])
    if not ranges:
        logger.info("No ID ranges given, returning object unchanged")
        return text
    try:
        obj = parse_legacy_object(text)
        return reconstruct_legacy_object(filter_by_id_ranges(obj, ranges))
    except ValueError as e:
        logger.warning(f"Could not filter object to ID ranges: {e}")
        return text
