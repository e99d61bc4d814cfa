"""Comment- and string-aware brace scanning for AL and C/AL object text.

Every block-boundary lookup in the cache goes through :class:`BlockScanner`,
a small state machine with four states (normal code, line comment, block
comment, string). A scan profile decides which delimiters exist in a dialect.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)


# Offset classes produced by BlockScanner.classify
COMMENT, CODE, STRING = 0, 1, 2
_STRUCTURAL_ONLY = bytes([0, 1, 0]) + bytes(253)


class ScanState(Enum):
    NORMAL = "normal"
    LINE_COMMENT = "line_comment"
    BLOCK_COMMENT = "block_comment"
    STRING = "string"


@dataclass(frozen=True)
class ScanProfile:
    """Delimiters recognised by the scanner for one dialect."""

    quote_chars: Tuple[str, ...] = ("'", '"')
    line_comment: Optional[str] = "//"
    block_comment: Optional[Tuple[str, str]] = ("/*", "*/")
    ignore_case: bool = True


# Modern AL: 'text' literals, "quoted identifiers", // and /* */ comments.
AL_PROFILE = ScanProfile()

# C/AL exports: section bodies hold unquoted captions (apostrophes included)
# and URLs, so only raw brace structure is tracked.
LEGACY_PROFILE = ScanProfile(
    quote_chars=(),
    line_comment=None,
    block_comment=None,
    ignore_case=False,
)


@dataclass(frozen=True)
class BlockSpan:
    """Offsets of a ``{`` and its matching ``}``; ``-1`` when not found."""

    start: int
    end: int
    keyword_start: int = -1

    @classmethod
    def invalid(cls) -> "BlockSpan":
        return cls(-1, -1, -1)

    @property
    def is_valid(self) -> bool:
        return self.start >= 0 and self.end > self.start

    def body(self, text: str) -> str:
        """Text between the braces, or an empty string for an invalid span."""
        if not self.is_valid:
            return ""
        return text[self.start + 1 : self.end]

    def outer(self, text: str) -> str:
        """Text including both braces."""
        if not self.is_valid:
            return ""
        return text[self.start : self.end + 1]

    def line_range(self, text: str) -> Tuple[int, int]:
        """Zero-based (keyword line, closing brace line), or (-1, -1)."""
        if not self.is_valid:
            return -1, -1
        first = self.keyword_start if self.keyword_start >= 0 else self.start
        return text.count("\n", 0, first), text.count("\n", 0, self.end)


class BlockScanner:
    """Locate brace-delimited blocks while ignoring comments and strings."""

    def __init__(self, profile: ScanProfile = AL_PROFILE):
        self.profile = profile

    def classify(self, text: str) -> bytearray:
        """Label every offset as comment (0), code (1) or string (2).

        Args:
            text: Source text

        Returns:
            One byte per character
        """
        profile = self.profile
        mask = bytearray(len(text))
        state = ScanState.NORMAL
        quote = ""
        i = 0
        length = len(text)

        while i < length:
            char = text[i]

            if state is ScanState.NORMAL:
                if profile.line_comment and text.startswith(profile.line_comment, i):
                    state = ScanState.LINE_COMMENT
                    i += len(profile.line_comment)
                    continue
                if profile.block_comment and text.startswith(profile.block_comment[0], i):
                    state = ScanState.BLOCK_COMMENT
                    i += len(profile.block_comment[0])
                    continue
                if char in profile.quote_chars:
                    state = ScanState.STRING
                    quote = char
                    mask[i] = STRING
                    i += 1
                    continue
                mask[i] = CODE
                i += 1

            elif state is ScanState.LINE_COMMENT:
                if char == "\n":
                    state = ScanState.NORMAL
                    mask[i] = CODE
                i += 1

            elif state is ScanState.BLOCK_COMMENT:
                closing = profile.block_comment[1]
                if text.startswith(closing, i):
                    state = ScanState.NORMAL
                    i += len(closing)
                    continue
                i += 1

            else:
                # A doubled quote ('') closes and reopens the literal, which
                # leaves the string state unchanged overall.
                if char == quote:
                    state = ScanState.NORMAL
                    mask[i] = STRING
                elif char == "\n":
                    # AL literals and quoted identifiers never span lines.
                    state = ScanState.NORMAL
                    mask[i] = CODE
                else:
                    mask[i] = STRING
                i += 1

        return mask

    def structural_mask(self, text: str) -> bytearray:
        """Mark every offset that is ordinary code (not comment or string).

        Returns:
            One byte per character, 1 where the character is structural
        """
        return self.classify(text).translate(_STRUCTURAL_ONLY)

    def strip_comments(self, text: str) -> str:
        """Drop comment text, keeping code and string literals."""
        kinds = self.classify(text)
        return "".join(char for char, kind in zip(text, kinds) if kind)

    def find_matching_brace(
        self, text: str, open_index: int, mask: Optional[bytearray] = None
    ) -> int:
        """Return the offset of the ``}`` closing ``text[open_index]``, or -1."""
        if mask is None:
            mask = self.structural_mask(text)
        if open_index < 0 or open_index >= len(text) or text[open_index] != "{":
            return -1

        depth = 0
        for i in range(open_index, len(text)):
            if not mask[i]:
                continue
            char = text[i]
            if char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    return i
        return -1

    def find_block(
        self,
        text: str,
        keyword: str,
        start: int = 0,
        end: Optional[int] = None,
        mask: Optional[bytearray] = None,
    ) -> BlockSpan:
        """Find the first ``<keyword> { ... }`` block in ``text[start:end]``.

        An occurrence of the keyword only counts when the next structural
        character is ``{``. A block whose opening brace is never closed is
        reported as an invalid span.

        Args:
            text: Source text
            keyword: Section keyword (e.g. ``FIELDS`` or ``dataset``)
            start: Offset to start searching from
            end: Offset to stop searching at
            mask: Precomputed structural mask for ``text``

        Returns:
            Span of the block, or ``BlockSpan.invalid()``
        """
        if mask is None:
            mask = self.structural_mask(text)
        limit = len(text) if end is None else end
        flags = re.IGNORECASE if self.profile.ignore_case else 0
        pattern = re.compile(rf"(?<![\w-]){re.escape(keyword)}\b", flags)

        for match in pattern.finditer(text, start, limit):
            if not mask[match.start()]:
                continue
            brace = self._next_structural(text, match.end(), limit, mask)
            if brace < 0 or text[brace] != "{":
                continue
            close = self.find_matching_brace(text, brace, mask)
            if close < 0 or close > limit:
                logger.debug(f"Unbalanced '{keyword}' block at offset {match.start()}")
                return BlockSpan.invalid()
            return BlockSpan(brace, close, match.start())

        return BlockSpan.invalid()

    def iter_child_blocks(
        self, text: str, span: BlockSpan, mask: Optional[bytearray] = None
    ) -> List[BlockSpan]:
        """List the top-level ``{ ... }`` groups directly inside ``span``."""
        if not span.is_valid:
            return []
        if mask is None:
            mask = self.structural_mask(text)

        children = []
        i = span.start + 1
        while i < span.end:
            if mask[i] and text[i] == "{":
                close = self.find_matching_brace(text, i, mask)
                if close < 0 or close > span.end:
                    break
                children.append(BlockSpan(i, close))
                i = close + 1
                continue
            i += 1
        return children

    @staticmethod
    def _next_structural(text: str, index: int, limit: int, mask: bytearray) -> int:
        for i in range(index, min(limit, len(text))):
            if mask[i] and not text[i].isspace():
                return i
        return -1


_REPORT_HEADER = re.compile(r"^\s*(reportextension|report)\s+\d+", re.IGNORECASE | re.MULTILINE)


def find_report_sections(
    text: str, sections: Iterable[str] = ("dataset", "requestpage")
) -> Dict[str, BlockSpan]:
    """Locate the given top-level sections of an AL report.

    A section whose braces do not balance is returned as an invalid span so
    callers treat it as absent instead of editing inside a broken block.
    """
    scanner = BlockScanner(AL_PROFILE)
    mask = scanner.structural_mask(text)
    report = BlockSpan.invalid()

    header = _REPORT_HEADER.search(text)
    if header and mask[header.start(1)]:
        brace = text.find("{", header.end())
        while brace >= 0 and not mask[brace]:
            brace = text.find("{", brace + 1)
        if brace >= 0:
            close = scanner.find_matching_brace(text, brace, mask)
            if close >= 0:
                report = BlockSpan(brace, close, header.start(1))

    result = {}
    for section in sections:
        if not report.is_valid:
            result[section] = BlockSpan.invalid()
            continue
        result[section] = scanner.find_block(
            text, section, start=report.start + 1, end=report.end, mask=mask
        )
    return result
