from __future__ import annotations

import html
import re
import unicodedata
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Dict, FrozenSet, List

from bleach.sanitizer import Cleaner

from festguard.service.errors import ErrorCode, ValidationError

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_WHITESPACE = re.compile(r"[ \t]+")
_FILENAME_UNSAFE = re.compile(r"[^\w.\- ]")

RICH_TEXT_TAGS: FrozenSet[str] = frozenset({
    "p", "br", "b", "i", "u", "strong", "em",
    "h1", "h2", "h3", "h4", "h5", "h6",
    "ul", "ol", "li", "a", "blockquote", "code", "pre",
})
RICH_TEXT_ATTRIBUTES: Dict[str, List[str]] = {"*": ["title", "class"], "a": ["href", "title", "class"]}
RICH_TEXT_PROTOCOLS: FrozenSet[str] = frozenset({"http", "https", "mailto"})


@dataclass
class SanitizerConfig:
    max_length: int = 10_000
    rich_text_max_length: int = 50_000
    normalize_whitespace: bool = True
    tags: FrozenSet[str] = RICH_TEXT_TAGS
    attributes: Dict[str, List[str]] = field(default_factory=lambda: dict(RICH_TEXT_ATTRIBUTES))
    protocols: FrozenSet[str] = RICH_TEXT_PROTOCOLS


class Sanitizer:
    """Escape or allowlist-filter user supplied text before it is stored or echoed."""

    def __init__(self, config: SanitizerConfig | None = None):
        self.config = config or SanitizerConfig()
        self._cleaner = Cleaner(
            tags=self.config.tags,
            attributes=self.config.attributes,
            protocols=self.config.protocols,
            strip=True,
            strip_comments=True,
        )

    def _prepare(self, text: str, max_length: int) -> str:
        text = text.replace("\x00", "")
        text = _CONTROL_CHARS.sub("", text)
        text = unicodedata.normalize("NFC", text)
        if self.config.normalize_whitespace:
            text = _WHITESPACE.sub(" ", text).strip()
        return text[:max_length]

    def strip_all(self, text: str) -> str:
        """Fully escaped text: every angle bracket and quote is HTML-encoded."""
        if not text:
            return ""
        return html.escape(self._prepare(text, self.config.max_length), quote=True)

    def rich_text(self, text: str) -> str:
        """Keep the safe tag/attribute allowlist; drop scripts, handlers and unsafe URLs."""
        if not text:
            return ""
        return self._cleaner.clean(self._prepare(text, self.config.rich_text_max_length))


def sanitize_filename(name: str, *, max_length: int = 255) -> str:
    """Reduce an uploaded file name to a safe basename."""
    base = PurePosixPath(name.replace("\\", "/")).name
    base = _CONTROL_CHARS.sub("", base.replace("\x00", ""))
    base = _FILENAME_UNSAFE.sub("_", base).strip(" .")
    if not base:
        raise ValidationError("Invalid file name", code=ErrorCode.INVALID_INPUT)
    return base[:max_length]


def sanitize_path(path: str) -> str:
    """Normalize a relative path and refuse anything escaping its root."""
    cleaned = path.replace("\\", "/").replace("\x00", "")
    parts: List[str] = []
    for part in cleaned.split("/"):
        if part in ("", "."):
            continue
        if part == "..":
            raise ValidationError("Path traversal is not allowed", code=ErrorCode.INVALID_INPUT)
        parts.append(part)
    if not parts:
        raise ValidationError("Invalid path", code=ErrorCode.INVALID_INPUT)
    return "/".join(parts)


_default = Sanitizer()


def strip_all(text: str) -> str:
    return _default.strip_all(text)


def rich_text(text: str) -> str:
    return _default.rich_text(text)


__all__ = [
    "Sanitizer",
    "SanitizerConfig",
    "rich_text",
    "sanitize_filename",
    "sanitize_path",
    "strip_all",
]
