"""
Response analyzer: error fingerprints, signature matching, reflection and sensitive data detection.
"""

import html
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import quote, quote_plus

from .utils import setup_logging, snippet_around

logger = setup_logging("response_analyzer")


def mask(value: str) -> str:
    """Keep two characters at each end of a sensitive value."""
    if len(value) <= 4:
        return "*" * len(value)
    return value[:2] + "*" * (len(value) - 4) + value[-2:]


def luhn_valid(number: str) -> bool:
    digits = [int(c) for c in number if c.isdigit()]
    total = 0
    for i, digit in enumerate(reversed(digits)):
        if i % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit
    return bool(digits) and total % 10 == 0


@dataclass
class SignatureMatch:
    """One heuristic that fired, with the span it matched in the body."""

    kind: str
    detail: str
    start: int = 0
    end: int = 0
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "detail": self.detail, **self.extra}


class ResponseAnalyzer:
    """
    Inspects HTTP responses for vulnerability indicators.

    Features:
    - Per-class error fingerprints (database drivers, template engines, ...)
    - Payload-specific signature matching
    - Reflection detection (raw, URL-encoded, HTML-encoded)
    - Evidence snippet extraction

    Matches that already occur in the baseline body are ignored, so
    boilerplate error text on a page does not count as a signal.
    """

    # SQL error patterns by database
    SQL_ERRORS = {
        "mysql": [
            r"SQL syntax.*MySQL",
            r"Warning.*mysql_",
            r"MySQLSyntaxErrorException",
            r"valid MySQL result",
            r"check the manual that corresponds to your MySQL server version",
            r"com\.mysql\.jdbc",
        ],
        "postgresql": [
            r"PostgreSQL.*ERROR",
            r"Warning.*\Wpg_",
            r"valid PostgreSQL result",
            r"Npgsql\.",
            r"PG::SyntaxError:",
            r"org\.postgresql\.util\.PSQLException",
            r"ERROR:\s+syntax error at or near",
            r"unterminated quoted string",
        ],
        "mssql": [
            r"Driver.*SQL[\-\_\ ]*Server",
            r"OLE DB.*SQL Server",
            r"Msg \d+, Level \d+, State \d+",
            r"Unclosed quotation mark after the character string",
            r"Microsoft SQL Native Client error",
        ],
        "oracle": [
            r"\bORA-\d{5}",
            r"Oracle error",
            r"oracle\.jdbc\.driver",
            r"quoted string not properly terminated",
        ],
        "sqlite": [
            r"SQLite\.Exception",
            r"System\.Data\.SQLite\.SQLiteException",
            r"Warning.*SQLite3::",
            r"\[SQLITE_ERROR\]",
            r"SQLite error \d+:",
            r"sqlite3\.OperationalError",
        ],
        "generic": [
            r"You have an error in your SQL syntax",
            r"SQL syntax error",
            r"ODBC Driver",
            r"DB2 SQL",
        ],
    }

    # Template engine errors
    SSTI_ERRORS = [
        r"TemplateSyntaxError",
        r"UndefinedError",
        r"jinja2\.exceptions",
        r"freemarker\.core\.",
        r"Twig_Error",
        r"org\.apache\.velocity",
    ]

    # Path traversal indicators
    PATH_TRAVERSAL_INDICATORS = [
        r"root:[^:\n]*:0:0:",  # /etc/passwd
        r"daemon:[^:\n]*:1:1:",
        r"\[extensions\]",  # win.ini
        r"for 16-bit app support",
        r"\[boot loader\]",
    ]

    # Command injection indicators
    CMD_INJECTION_INDICATORS = [
        r"uid=\d+\([^)]*\)\s+gid=\d+",
        r"root:x:0:0",
        r"Volume Serial Number",
        r"sh: \d+: .*: not found",
    ]

    # Type handling errors
    TYPE_ERRORS = [
        r"NumberFormatException",
        r"invalid input syntax for (type )?integer",
        r"ValueError: invalid literal for int\(\)",
        r"TypeError: ",
        r"Cannot convert .* to (int|number|bool)",
        r"json: cannot unmarshal",
        r"Input should be a valid (integer|number|boolean)",
        r"cannot be cast to",
    ]

    # Sensitive values in ordinary responses, strongest first
    SENSITIVE_DATA = [
        (
            "credential",
            r"['\"]?(password|passwd|secret|client_secret|api[_\-]?key|access[_\-]?token|private[_\-]?key)['\"]?"
            r"\s*[:=]\s*['\"]([^'\"\s]{4,})['\"]",
        ),
        ("card_number", r"(?<![\d-])\d{4}[ -]?\d{4}[ -]?\d{4}[ -]?\d{4}(?![\d-])"),
        ("ssn", r"(?<![\d-])\d{3}-\d{2}-\d{4}(?![\d-])"),
        ("email", r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}"),
    ]

    # Headers that show a rate limiter is in front of the endpoint
    RATE_LIMIT_HEADERS = (
        "x-ratelimit-limit",
        "x-ratelimit-remaining",
        "x-rate-limit-limit",
        "ratelimit-limit",
        "ratelimit-policy",
        "retry-after",
    )

    CLASS_FINGERPRINTS = {
        "injection": [p for patterns in SQL_ERRORS.values() for p in patterns],
        "ssti": SSTI_ERRORS,
        "path_traversal": PATH_TRAVERSAL_INDICATORS,
        "command_injection": CMD_INJECTION_INDICATORS,
        "type_confusion": TYPE_ERRORS,
    }

    def __init__(self, snippet_context: int = 80):
        self.snippet_context = snippet_context

    def find_patterns(
        self,
        body: str,
        patterns: Iterable[str],
        kind: str,
        baseline_body: str = "",
        ignore: str = "",
    ) -> Optional[SignatureMatch]:
        """
        First pattern that matches the body but not the baseline.

        `ignore` is blanked out of the body before matching so that a
        reflected attack string cannot satisfy its own pattern.
        """
        haystack = body.replace(ignore, " " * len(ignore)) if ignore else body
        for pattern in patterns:
            match = re.search(pattern, haystack, re.IGNORECASE)
            if not match:
                continue
            if baseline_body and re.search(pattern, baseline_body, re.IGNORECASE):
                continue
            return SignatureMatch(kind=kind, detail=pattern, start=match.start(), end=match.end())
        return None

    def detect_error_fingerprint(
        self,
        body: str,
        vuln_class: str,
        baseline_body: str = "",
        attack: str = "",
    ) -> Optional[SignatureMatch]:
        """Class-wide error fingerprint not present in the baseline."""
        patterns = self.CLASS_FINGERPRINTS.get(vuln_class, [])
        return self.find_patterns(body, patterns, "error_fingerprint", baseline_body, ignore=attack)

    def detect_sql_errors(self, body: str) -> List[str]:
        """Databases whose error messages appear in the body."""
        errors = []
        for db, patterns in self.SQL_ERRORS.items():
            for pattern in patterns:
                if re.search(pattern, body, re.IGNORECASE):
                    errors.append(db)
                    break
        return errors

    def detect_sensitive_data(self, body: str) -> List[SignatureMatch]:
        """First occurrence of each kind of sensitive value, with the value masked."""
        matches = []
        for kind, pattern in self.SENSITIVE_DATA:
            for match in re.finditer(pattern, body, re.IGNORECASE):
                if kind == "card_number" and not luhn_valid(match.group(0)):
                    continue
                if kind == "credential":
                    shown = f"{match.group(1)}={mask(match.group(2))}"
                else:
                    shown = mask(match.group(0))
                matches.append(
                    SignatureMatch(
                        kind=kind, detail=shown, start=match.start(), end=match.end(), extra={"masked": shown}
                    )
                )
                break
        return matches

    def has_rate_limit_headers(self, headers: Dict[str, str]) -> bool:
        names = {name.lower() for name in (headers or {})}
        return any(h in names for h in self.RATE_LIMIT_HEADERS)

    def detect_reflection(self, body: str, payload: str) -> Dict[str, Any]:
        """Detect if and how a payload is reflected in the response."""
        result = {
            "reflected": False,
            "exact_match": False,
            "encoded_match": False,
            "positions": [],
        }

        if not payload:
            return result

        # Exact match
        if payload in body:
            result["reflected"] = True
            result["exact_match"] = True
            result["positions"] = [m.start() for m in re.finditer(re.escape(payload), body)]

        # URL encoded match
        for encoded_payload in (quote(payload, safe=""), quote_plus(payload)):
            if encoded_payload != payload and encoded_payload in body:
                result["reflected"] = True
                result["encoded_match"] = True
                if not result["positions"]:
                    result["positions"] = [body.index(encoded_payload)]

        # HTML encoded match
        html_encoded = html.escape(payload)
        if html_encoded != payload and html_encoded in body:
            result["reflected"] = True
            result["encoded_match"] = True
            if not result["positions"]:
                result["positions"] = [body.index(html_encoded)]

        return result

    def reflection_match(self, body: str, payload: str, raw_only: bool = False) -> Optional[SignatureMatch]:
        """Reflection as a SignatureMatch, or None."""
        reflection = self.detect_reflection(body, payload)
        if not reflection["reflected"]:
            return None
        if raw_only and not reflection["exact_match"]:
            return None
        start = reflection["positions"][0] if reflection["positions"] else 0
        return SignatureMatch(
            kind="reflection",
            detail="exact" if reflection["exact_match"] else "encoded",
            start=start,
            end=start + len(payload),
        )

    def snippet(self, body: str, match: Optional[SignatureMatch] = None) -> str:
        """Evidence snippet around a match, or the head of the body."""
        if not body:
            return ""
        if match is None or match.end <= match.start:
            return snippet_around(body, 0, 0, self.snippet_context * 2)
        return snippet_around(body, match.start, match.end, self.snippet_context)
