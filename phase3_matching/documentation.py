"""
Documentation loading and chunking.

Sources are files, directories or http(s) URLs. HTML is reduced to text and
Markdown is split on headings into fragments of at most `max_tokens` words.
"""

import re
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from core.config import RAGConfig
from core.exceptions import ProbeNetworkError, ProbeTimeoutError
from core.http_client import AsyncHTTPClient
from core.models import DocumentationFragment
from core.utils import setup_logging, strip_html

logger = setup_logging("documentation")

DOC_SUFFIXES = (".md", ".markdown", ".mdx", ".txt", ".rst", ".html", ".htm")
HEADING_RE = re.compile(r"^(#{1,6})\s+(.+?)\s*#*\s*$")


def _is_url(source: str) -> bool:
    return source.startswith(("http://", "https://"))


def _bounded(text: str, max_tokens: int) -> List[str]:
    """Split text into pieces of at most max_tokens words, on paragraph breaks where possible."""
    max_tokens = max(1, max_tokens)
    if len(text.split()) <= max_tokens:
        return [text]

    pieces: List[str] = []
    current: List[str] = []
    count = 0
    for paragraph in re.split(r"\n\s*\n", text):
        words = paragraph.split()
        if not words:
            continue
        remainder = paragraph.strip()
        while len(words) > max_tokens:
            if current:
                pieces.append("\n\n".join(current))
                current, count = [], 0
            pieces.append(" ".join(words[:max_tokens]))
            words = words[max_tokens:]
            remainder = " ".join(words)
        if count + len(words) > max_tokens and current:
            pieces.append("\n\n".join(current))
            current, count = [], 0
        current.append(remainder)
        count += len(words)
    if current:
        pieces.append("\n\n".join(current))
    return pieces


def split_markdown(text: str, source_url: str, max_tokens: int = 4000, start_index: int = 0) -> List[DocumentationFragment]:
    """
    Cut a Markdown document into heading-scoped fragments.

    `section` is the heading path ("Users > Create user"), `heading` the
    innermost heading. Text before the first heading has neither.
    """
    fragments: List[DocumentationFragment] = []
    trail: List[Tuple[int, str]] = []
    body: List[str] = []
    in_fence = False

    def flush():
        content = "\n".join(body).strip()
        body.clear()
        if not content:
            return
        heading = trail[-1][1] if trail else None
        section = " > ".join(h for _, h in trail) if trail else None
        for piece in _bounded(content, max_tokens):
            fragments.append(
                DocumentationFragment(
                    source_url=source_url,
                    text=f"{heading}\n{piece}" if heading else piece,
                    section=section,
                    heading=heading,
                    index=start_index + len(fragments),
                )
            )

    for line in text.splitlines():
        if line.lstrip().startswith(("```", "~~~")):
            in_fence = not in_fence
        match = None if in_fence else HEADING_RE.match(line)
        if match:
            flush()
            level = len(match.group(1))
            while trail and trail[-1][0] >= level:
                trail.pop()
            trail.append((level, match.group(2)))
        else:
            body.append(line)
    flush()
    return fragments


class DocumentationLoader:
    """
    Reads `rag.documentation_sources` into DocumentationFragments.

    Unreadable sources are skipped with a warning and listed in `errors`.
    """

    def __init__(self, rag: Optional[RAGConfig] = None, client: Optional[AsyncHTTPClient] = None):
        self.rag = rag or RAGConfig()
        self.client = client
        self.errors: List[str] = []

    async def load(self, sources: Optional[Sequence[str]] = None) -> List[DocumentationFragment]:
        sources = list(self.rag.documentation_sources if sources is None else sources)
        fragments: List[DocumentationFragment] = []

        for source in sources:
            for url, text in await self._read(source):
                if not text.strip():
                    continue
                fragments.extend(split_markdown(text, url, self.rag.max_tokens, start_index=len(fragments)))

        logger.info(f"Loaded {len(fragments)} documentation fragments from {len(sources)} source(s)")
        return fragments

    async def _read(self, source: str) -> List[Tuple[str, str]]:
        if _is_url(source):
            return await self._fetch(source)

        path = Path(source)
        if path.is_dir():
            files = sorted(p for p in path.rglob("*") if p.is_file() and p.suffix.lower() in DOC_SUFFIXES)
        elif path.is_file():
            files = [path]
        else:
            self._error(f"Documentation source not found: {source}")
            return []

        documents = []
        for file in files:
            try:
                text = file.read_text(encoding="utf-8", errors="replace")
            except OSError as e:
                self._error(f"Cannot read {file}: {e}")
                continue
            if file.suffix.lower() in (".html", ".htm"):
                text = strip_html(text)
            documents.append((str(file), text))
        return documents

    async def _fetch(self, url: str) -> List[Tuple[str, str]]:
        if self.client is None:
            self._error(f"No HTTP client available to fetch {url}")
            return []
        try:
            response = await self.client.get(url)
        except (ProbeNetworkError, ProbeTimeoutError) as e:
            self._error(f"Cannot fetch {url}: {e}")
            return []
        if not response.ok:
            self._error(f"Cannot fetch {url}: HTTP {response.status}")
            return []
        content_type = response.headers.get("Content-Type", response.headers.get("content-type", ""))
        text = response.body
        if "html" in content_type.lower() or text.lstrip().lower().startswith(("<!doctype html", "<html")):
            text = strip_html(text)
        return [(url, text)]

    def _error(self, message: str):
        self.errors.append(message)
        logger.warning(message)
