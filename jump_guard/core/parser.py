"""
Recovery of structured data from model output.

Model replies nominally contain JSON but are often wrapped in prose or code
fences, or written with single quotes, comments and trailing commas.

Stage Order (least to most aggressive):
1. Raw parse
2. Normalized parse (fences, BOM, prose, smart quotes, comments, commas)
3. Single-quote repair
4. Balanced-brace candidate scan
"""

import json
import logging
import re
from typing import Any, Iterator, List, Optional

logger = logging.getLogger(__name__)

_FENCE_OPEN = re.compile(r"^```[\w-]*\s*", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"\s*```$")
_BLOCK_COMMENT = re.compile(r"/\*.*?\*/", re.DOTALL)
_LINE_COMMENT = re.compile(r"(^|\s)//.*$", re.MULTILINE)
_TRAILING_COMMA = re.compile(r",(\s*[}\]])")
_SINGLE_QUOTED_KEY = re.compile(r"'([^'\\]*(?:\\.[^'\\]*)*)'\s*:")
_SINGLE_QUOTED_VALUE = re.compile(r":\s*'([^'\\]*(?:\\.[^'\\]*)*)'")

_SMART_QUOTES = {
    "\u201c": '"',
    "\u201d": '"',
    "\u2018": "'",
    "\u2019": "'",
}

_FAILED = object()


def _try_parse(text: str) -> Any:
    try:
        return json.loads(text)
    except (ValueError, RecursionError):
        return _FAILED


def normalize(text: str) -> str:
    """Apply the non-destructive clean-up steps to a model reply."""
    cleaned = text.lstrip("\ufeff").strip()
    cleaned = _FENCE_OPEN.sub("", cleaned)
    cleaned = _FENCE_CLOSE.sub("", cleaned).strip()

    first = cleaned.find("{")
    last = cleaned.rfind("}")
    if first != -1 and last > first:
        cleaned = cleaned[first:last + 1]

    for smart, plain in _SMART_QUOTES.items():
        cleaned = cleaned.replace(smart, plain)

    cleaned = _BLOCK_COMMENT.sub("", cleaned)
    cleaned = _LINE_COMMENT.sub(r"\1", cleaned)
    return strip_trailing_commas(cleaned)


def strip_trailing_commas(text: str) -> str:
    return _TRAILING_COMMA.sub(r"\1", text)


def _requote(match: "re.Match[str]", template: str) -> str:
    inner = match.group(1).replace("\\'", "'").replace('"', '\\"')
    return template.format(inner)


def repair_single_quotes(text: str) -> str:
    """Rewrite single-quoted keys and string values to double quotes."""
    repaired = _SINGLE_QUOTED_KEY.sub(lambda m: _requote(m, '"{}":'), text)
    return _SINGLE_QUOTED_VALUE.sub(lambda m: _requote(m, ': "{}"'), repaired)


def iter_object_candidates(text: str) -> Iterator[str]:
    """Yield every top-level ``{...}`` span, in order of its closing brace."""
    stack: List[int] = []
    for index, char in enumerate(text):
        if char == "{":
            stack.append(index)
        elif char == "}" and stack:
            start = stack.pop()
            if not stack:
                yield text[start:index + 1]


class ResponseParser:
    """Layered JSON recovery for untrusted model output.

    Each stage attempts a full parse before falling through to the next,
    more aggressive one. ``extract`` returns ``None`` when every stage fails;
    callers treat that as a parse failure.
    """

    def extract(self, text: Any) -> Optional[Any]:
        """Recover a JSON value from ``text``.

        Args:
            text: Raw model output

        Returns:
            The parsed value, or None if no stage produced one
        """
        if not isinstance(text, str) or not text.strip():
            return None

        value = _try_parse(text)
        if value is not _FAILED:
            return value

        cleaned = normalize(text)
        value = _try_parse(cleaned)
        if value is not _FAILED:
            logger.debug("Recovered JSON after normalization")
            return value

        if cleaned.count("'") > cleaned.count('"'):
            value = _try_parse(repair_single_quotes(cleaned))
            if value is not _FAILED:
                logger.debug("Recovered JSON after single-quote repair")
                return value

        for candidate in iter_object_candidates(cleaned):
            value = _try_parse(strip_trailing_commas(candidate))
            if value is not _FAILED:
                logger.debug("Recovered JSON from candidate object scan")
                return value

        logger.warning(f"Could not recover JSON from model output ({len(text)} chars)")
        return None

    def extract_object(self, text: Any) -> Optional[dict]:
        """Like ``extract`` but only accepts a JSON object."""
        value = self.extract(text)
        if isinstance(value, dict):
            return value
        return None
