"""
Shared utility functions for SPECPROBE.
"""

import html
import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union
from urllib.parse import urlparse

import yaml


def setup_logging(
    name: str = "specprobe",
    level: str = "INFO",
    log_file: Optional[str] = None,
    verbose: bool = False,
) -> logging.Logger:
    """Configure and return a logger instance."""
    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG if verbose else getattr(logging, level.upper()))

    formatter = logging.Formatter(
        "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # Console handler (once per logger name)
    if not any(type(h) is logging.StreamHandler for h in logger.handlers):
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    # File handler (optional)
    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def set_verbosity(verbose: bool = False, log_file: Optional[str] = None):
    """Re-level every specprobe logger that has already been created."""
    for name in list(logging.root.manager.loggerDict):
        existing = logging.getLogger(name)
        if existing.handlers and any(
            isinstance(h, logging.StreamHandler) for h in existing.handlers
        ):
            setup_logging(name, verbose=verbose, log_file=log_file)


def load_document(content: Union[str, bytes]) -> Any:
    """Parse JSON or YAML text. Raises ValueError when neither parses."""
    if isinstance(content, bytes):
        content = content.decode("utf-8", errors="replace")

    try:
        return json.loads(content)
    except json.JSONDecodeError:
        pass

    try:
        return yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ValueError(f"Not valid JSON or YAML: {e}") from e


def load_file(file_path: str) -> Any:
    """Load a JSON or YAML file from disk."""
    path = Path(file_path)
    if not path.exists():
        raise FileNotFoundError(f"File not found: {file_path}")

    with open(path, "r", encoding="utf-8") as f:
        data = load_document(f.read())

    return data if data is not None else {}


def normalize_url(url: str, default_scheme: str = "https") -> str:
    """Normalize URL with scheme and trailing slash handling."""
    url = url.strip()

    if not url:
        return ""

    # Add scheme if missing
    if not re.match(r"^https?://", url, re.IGNORECASE):
        url = f"{default_scheme}://{url}"

    parsed = urlparse(url)

    scheme = parsed.scheme.lower()
    netloc = parsed.netloc.lower()
    path = parsed.path or "/"
    query = parsed.query

    # Remove default ports
    if netloc.endswith(":80") and scheme == "http":
        netloc = netloc[:-3]
    elif netloc.endswith(":443") and scheme == "https":
        netloc = netloc[:-4]

    normalized = f"{scheme}://{netloc}{path}"
    if query:
        normalized += f"?{query}"

    return normalized


def join_url(base_url: str, path: str) -> str:
    """Join a base URL and an endpoint path without doubling slashes."""
    return f"{base_url.rstrip('/')}/{path.lstrip('/')}"


def safe_filename(name: str, max_length: int = 200) -> str:
    """Convert string to safe filename."""
    safe = re.sub(r'[<>:"/\\|?*\x00-\x1f]', "_", name)
    safe = re.sub(r"_+", "_", safe)
    safe = safe.strip("_. ")

    if len(safe) > max_length:
        safe = safe[:max_length]

    return safe or "unnamed"


def merge_dicts(base: Dict, override: Dict) -> Dict:
    """Deep merge two dictionaries."""
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = merge_dicts(result[key], value)
        else:
            result[key] = value

    return result


def timestamp_now() -> str:
    """Return current timestamp in ISO format."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def ensure_dir(path: Union[str, Path]) -> Path:
    """Ensure directory exists, create if not."""
    p = Path(path)
    p.mkdir(parents=True, exist_ok=True)
    return p


def excerpt(text: Union[str, bytes, None], limit: int = 120) -> str:
    """Short single-line excerpt of a source for error messages."""
    if text is None:
        return ""
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")
    flat = " ".join(text.split())
    return flat[:limit] + ("..." if len(flat) > limit else "")


def snippet_around(body: str, start: int, end: int, context: int = 80) -> str:
    """Cut an evidence snippet around a match position."""
    lo = max(0, start - context)
    hi = min(len(body), end + context)
    prefix = "..." if lo > 0 else ""
    suffix = "..." if hi < len(body) else ""
    return f"{prefix}{body[lo:hi]}{suffix}"


def strip_html(content: str) -> str:
    """Remove scripts, styles and tags from an HTML document."""
    content = re.sub(r"<(script|style)[^>]*>.*?</\1>", " ", content, flags=re.IGNORECASE | re.DOTALL)
    content = re.sub(r"<br\s*/?>|</p>|</h[1-6]>|</li>", "\n", content, flags=re.IGNORECASE)
    content = re.sub(r"<[^>]+>", " ", content)
    content = html.unescape(content)
    return re.sub(r"[ \t]+", " ", content).strip()
