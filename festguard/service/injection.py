"""Pattern-based detection of injection payloads in request inputs.

Every category is a list of pre-compiled, case-insensitive expressions with
a short label. The label (never the matched value) is what ends up in logs.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Pattern, Sequence, Tuple
from urllib.parse import parse_qsl

from festguard.logging import get_logger

logger = get_logger(__name__)


class InjectionCategory(str, Enum):
    SQL = "sql"
    NOSQL = "nosql"
    COMMAND = "command"
    PATH_TRAVERSAL = "path_traversal"
    XSS = "xss"
    LDAP = "ldap"
    XXE = "xxe"


def _compile(patterns: Sequence[Tuple[str, str]]) -> List[Tuple[str, Pattern[str]]]:
    return [(label, re.compile(expr, re.IGNORECASE)) for label, expr in patterns]


_SQL = _compile([
    ("union_select", r"\bunion\b(\s+|/\*.*?\*/)+(all\s+)?select\b"),
    ("select_from", r"\bselect\b\s+(\*|distinct\b|count\s*\(|[\w.]+\s*,\s*[\w.]+).{0,100}?\bfrom\b"),
    ("insert_into", r"\binsert\s+into\s+\w"),
    ("delete_from", r"\bdelete\s+from\s+\w"),
    ("update_set", r"\bupdate\s+\w+\s+set\s+\w+\s*="),
    ("drop_alter", r"\b(drop|alter|truncate)\s+(table|database|schema|index|view)\b"),
    ("stacked_query", r";\s*(select|insert|update|delete|drop|alter|create|exec|execute|truncate)\b"),
    ("quote_tautology", r"['\"]\s*(or|and)\s+['\"]?[\w]+['\"]?\s*(=|like|<|>)\s*['\"]?[\w]+"),
    ("numeric_tautology", r"\b(or|and)\s+\d+\s*=\s*\d+"),
    ("comment_terminator", r"(['\"]\s*(--|#)(\s|$))|(/\*.*?\*/)"),
    ("time_based", r"\b(waitfor\s+delay|sleep\s*\(|pg_sleep\s*\(|benchmark\s*\()"),
    ("string_builders", r"\b(char|concat|convert|cast)\s*\(.*\b(select|from|0x)"),
    ("information_schema", r"\b(information_schema|pg_catalog|sysobjects|sqlite_master)\b"),
    ("procedures", r"\b(xp_cmdshell|sp_executesql|exec\s+master\.)"),
])

_NOSQL = _compile([
    ("where_clause", r"\$where\b"),
    ("query_operator", r"[\"']?\$(gt|gte|lt|lte|ne|eq|in|nin|or|and|not|nor|exists|type|regex|expr|elemmatch)[\"']?\s*:"),
    ("function_operator", r"\$(function|accumulator)\b"),
    ("js_function", r"function\s*\(\s*\)\s*\{"),
    ("this_comparison", r"\bthis\.\w+\s*(==|!=|>|<)"),
    ("operator_object", r"(\{|\[)\s*[\"']?\$\w+"),
    ("bracket_operator", r"\[\$\w+\]"),
])

_COMMAND = _compile([
    ("chained_binary", r"(;|\|\|?|&&?|\n)\s*(cat|ls|id|whoami|uname|pwd|wget|curl|nc|ncat|netcat|bash|sh|zsh|python\d?|perl|ruby|php|rm|chmod|chown|ping|nslookup|echo)\b"),
    ("subshell", r"\$\([^)]*\)"),
    ("backticks", r"`[^`]+`"),
    ("shell_path", r"/bin/(ba|z|da)?sh\b|/usr/bin/\w+"),
    ("windows_shell", r"\b(cmd(\.exe)?\s*/c|powershell(\.exe)?)\b"),
])

_PATH_TRAVERSAL = _compile([
    ("dot_dot_slash", r"\.\.[/\\]"),
    ("encoded", r"(%2e%2e(%2f|%5c|/|\\))|(\.\.(%2f|%5c))"),
    ("double_encoded", r"%252e%252e(%252f|%255c)"),
    ("overlong_utf8", r"%c0%ae%c0%ae|%c0%af"),
    ("sensitive_file", r"(etc/(passwd|shadow|hosts)|windows[/\\]system32|boot\.ini|proc/self/environ)"),
])

_XSS = _compile([
    ("script_tag", r"<\s*/?\s*script\b"),
    ("script_url", r"(javascript|vbscript|livescript)\s*:"),
    ("event_handler_attr", r"<[^>]*\bon[a-z]+\s*="),
    ("event_handler", r"\bon(load|error|click|mouseover|mouseout|mousedown|mouseup|focus|blur|change|submit|keydown|keyup|keypress|input|abort|toggle|animationstart|pointerover)\s*="),
    ("dangerous_tag", r"<\s*(iframe|frame|frameset|embed|object|applet|form|meta|base|link|style)\b"),
    ("svg_handler", r"<\s*svg\b[^>]*\bon\w+\s*="),
    ("math_tag", r"<\s*math\b"),
    ("data_url", r"data\s*:\s*(text/html|application/(x-)?javascript|text/javascript)"),
    ("css_expression", r"expression\s*\(|-moz-binding\s*:|behavior\s*:\s*url"),
    ("template_braces", r"\{\{.*?\}\}"),
    ("template_dollar", r"\$\{.*?\}"),
])

_LDAP = _compile([
    ("wildcard_close", r"\*\s*\)\s*\("),
    ("filter_break", r"\)\s*\(\s*[&|!]"),
    ("boolean_filter", r"\(\s*[&|!]\s*\("),
    ("attribute_wildcard", r"\(\s*\w+\s*=\s*\*\s*\)"),
    ("null_byte", r"\x00|%00"),
])

_XXE = _compile([
    ("doctype", r"<!DOCTYPE\b"),
    ("entity", r"<!ENTITY\b"),
    ("external_id", r"\b(SYSTEM|PUBLIC)\s+[\"'][^\"']*[\"']"),
    ("parameter_entity", r"<!ENTITY\s+%\s*[a-z_][\w.-]*|\[\s*%[a-z_][\w.-]*;\s*\]"),
])

PATTERNS: Mapping[InjectionCategory, List[Tuple[str, Pattern[str]]]] = {
    InjectionCategory.SQL: _SQL,
    InjectionCategory.NOSQL: _NOSQL,
    InjectionCategory.COMMAND: _COMMAND,
    InjectionCategory.PATH_TRAVERSAL: _PATH_TRAVERSAL,
    InjectionCategory.XSS: _XSS,
    InjectionCategory.LDAP: _LDAP,
    InjectionCategory.XXE: _XXE,
}

ALL_CATEGORIES = frozenset(InjectionCategory)


@dataclass(frozen=True)
class Detection:
    category: InjectionCategory
    location: str
    pattern: str


@dataclass
class InjectionConfig:
    enabled: bool = True
    categories: frozenset = ALL_CATEGORIES
    block_requests: bool = True
    log_attacks: bool = True
    exclude_paths: Tuple[str, ...] = ()
    scan_headers: Tuple[str, ...] = ("User-Agent", "Referer", "X-Forwarded-For", "X-Real-IP")
    max_body_bytes: int = 10 * 1024 * 1024
    max_depth: int = 32
    custom_patterns: Dict[InjectionCategory, List[str]] = field(default_factory=dict)

    @classmethod
    def from_names(cls, names: Iterable[str], **kwargs: Any) -> "InjectionConfig":
        categories = frozenset(InjectionCategory(name.strip().lower()) for name in names)
        return cls(categories=categories, **kwargs)


class InjectionDetector:
    """Scan strings, JSON documents and whole requests for injection payloads."""

    def __init__(self, config: Optional[InjectionConfig] = None):
        self.config = config or InjectionConfig()
        self._patterns: Dict[InjectionCategory, List[Tuple[str, Pattern[str]]]] = {
            category: list(patterns) for category, patterns in PATTERNS.items()
        }
        for category, extra in self.config.custom_patterns.items():
            self._patterns[InjectionCategory(category)].extend(
                _compile([(f"custom_{idx}", expr) for idx, expr in enumerate(extra)])
            )

    def _enabled(self, categories: Optional[Iterable[InjectionCategory]]) -> Iterable[InjectionCategory]:
        if categories is None:
            categories = self.config.categories
        # stable order so the reported category is deterministic
        selected = set(categories)
        return [category for category in InjectionCategory if category in selected]

    def detect(
        self,
        value: str,
        categories: Optional[Iterable[InjectionCategory]] = None,
        *,
        location: str = "value",
    ) -> Optional[Detection]:
        if not value or not isinstance(value, str):
            return None
        for category in self._enabled(categories):
            for label, pattern in self._patterns[category]:
                if pattern.search(value):
                    return Detection(category=category, location=location, pattern=label)
        return None

    def scan(self, value: str, categories: Optional[Iterable[InjectionCategory]] = None) -> bool:
        """True when ``value`` is clean for every enabled category."""
        return self.detect(value, categories) is None

    def _walk_json(self, obj: Any, location: str, depth: int) -> Iterator[Tuple[str, str, bool]]:
        """Yield (location, text, is_key) for every string key and scalar value.

        Past ``max_depth`` the remaining subtree is yielded as one serialized
        string so that deep nesting cannot hide a payload.
        """
        if depth > self.config.max_depth:
            yield location, json.dumps(obj, ensure_ascii=False), False
            return
        if isinstance(obj, dict):
            for key, value in obj.items():
                child = f"{location}.{key}"
                yield child, str(key), True
                yield from self._walk_json(value, child, depth + 1)
        elif isinstance(obj, list):
            for idx, item in enumerate(obj):
                yield from self._walk_json(item, f"{location}[{idx}]", depth + 1)
        elif isinstance(obj, str):
            yield location, obj, False

    def scan_json(
        self,
        obj: Any,
        categories: Optional[Iterable[InjectionCategory]] = None,
        *,
        location: str = "json:root",
    ) -> Optional[Detection]:
        """Recursively scan a decoded JSON document, including object keys."""
        enabled = list(self._enabled(categories))
        for loc, text, is_key in self._walk_json(obj, location, 0):
            if is_key:
                if InjectionCategory.NOSQL in enabled and text.startswith("$"):
                    return Detection(InjectionCategory.NOSQL, loc, "operator_key")
                continue
            found = self.detect(text, enabled, location=loc)
            if found:
                return found
        return None

    def is_excluded(self, path: str) -> bool:
        return any(path.startswith(prefix) for prefix in self.config.exclude_paths)

    def scan_request(
        self,
        *,
        path: str,
        raw_path: str = "",
        query: Sequence[Tuple[str, str]] = (),
        headers: Optional[Mapping[str, str]] = None,
        body: bytes = b"",
        content_type: str = "",
    ) -> Optional[Detection]:
        """Scan every request field; returns the first detection or None."""
        if not self.config.enabled or self.is_excluded(path):
            return None
        enabled = list(self._enabled(None))
        if not enabled:
            return None

        for location, value in (("path", path), ("raw_path", raw_path)):
            found = self.detect(value, enabled, location=location)
            if found:
                return found

        for name, value in query:
            found = self.detect(value, enabled, location=f"query:{name}")
            if found:
                return found
            if InjectionCategory.NOSQL in enabled and ("[$" in name or name.startswith("$")):
                return Detection(InjectionCategory.NOSQL, f"query:{name}", "operator_key")

        if headers is not None:
            for header in self.config.scan_headers:
                value = headers.get(header)
                if value:
                    found = self.detect(value, enabled, location=f"header:{header}")
                    if found:
                        return found

        if body and len(body) <= self.config.max_body_bytes:
            return self._scan_body(body, content_type, enabled)
        return None

    def _scan_body(
        self, body: bytes, content_type: str, enabled: List[InjectionCategory]
    ) -> Optional[Detection]:
        text = body.decode("utf-8", errors="replace")
        media_type = content_type.split(";")[0].strip().lower()
        if media_type == "application/json" or media_type.endswith("+json"):
            try:
                document = json.loads(text)
            except (ValueError, RecursionError):
                return self.detect(text, enabled, location="body")
            return self.scan_json(document, enabled)
        if media_type == "application/x-www-form-urlencoded":
            for name, value in parse_qsl(text, keep_blank_values=True):
                found = self.detect(value, enabled, location=f"form:{name}")
                if found:
                    return found
            return None
        return self.detect(text, enabled, location="body")

    def log_detection(self, detection: Detection, *, method: str, path: str, client_ip: Optional[str]) -> None:
        if not self.config.log_attacks:
            return
        logger.warning(
            "injection_detected",
            category=detection.category.value,
            location=detection.location,
            pattern=detection.pattern,
            method=method,
            path=path,
            client_ip=client_ip,
            blocked=self.config.block_requests,
        )


_default_detector = InjectionDetector()


def is_clean_input(value: str, *categories: InjectionCategory) -> bool:
    """Check a single value outside the request path, e.g. in a service call."""
    return _default_detector.scan(value, categories or None)


__all__ = [
    "ALL_CATEGORIES",
    "Detection",
    "InjectionCategory",
    "InjectionConfig",
    "InjectionDetector",
    "PATTERNS",
    "is_clean_input",
]
