"""Convert clipboard payloads into sanitized, uniformly styled HTML.

Spreadsheet applications (Excel, Google Sheets) put a full HTML document on
the clipboard when cells are copied, along with a tab-separated plain-text
version. Either one is turned into a bordered ``<table>`` fragment here; the
HTML route is best effort and may return malformed markup when the source
table itself is unbalanced.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from html.parser import HTMLParser

logger = logging.getLogger(__name__)

TABLE_STYLE = "border-collapse: collapse;"
CELL_STYLE = "border: 1px solid #ccc; padding: 4px;"

TABLE_OPEN = f'<table style="{TABLE_STYLE}">'
CELL_OPEN = f'<td style="{CELL_STYLE}">'

_TABLE_SUBSTRING = re.compile(r"<table[\s\S]*?</table>", re.IGNORECASE)
_COL_TAG = re.compile(r"</?col[^>]*>", re.IGNORECASE)
_TR_TAG = re.compile(r"<tr\b[^>]*>", re.IGNORECASE)
_TABLE_TAG = re.compile(r"<table\b[^>]*>", re.IGNORECASE)
_TD_TAG = re.compile(r"<td\b[^>]*>", re.IGNORECASE)
_LINE_BREAK = re.compile(r"\r?\n")


@dataclass(frozen=True)
class PasteResult:
    """Normalized paste output.

    ``handled`` is True when the normalizer took ownership of the paste and
    the caller must suppress its default paste behaviour.
    """

    html: str
    handled: bool


def escape_html(text: str) -> str:
    """Escape the three markup metacharacters, ampersand first."""

    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def _non_empty_lines(text: str) -> list[str]:
    return [line for line in _LINE_BREAK.split(text) if line]


def tsv_to_html(text: str) -> str:
    """Render tab-separated text as a bordered table."""

    rows = []
    for line in _non_empty_lines(text):
        cells = "".join(f"{CELL_OPEN}{escape_html(column)}</td>" for column in line.split("\t"))
        rows.append(f"<tr>{cells}</tr>")
    return f"{TABLE_OPEN}{''.join(rows)}</table>"


def text_to_html(text: str) -> str:
    """Convert arbitrary plain text: tables for TSV, paragraphs otherwise."""

    if "\t" in text:
        return tsv_to_html(text)
    return "".join(f"<p>{escape_html(line)}</p>" for line in _non_empty_lines(text))


class _FirstTableLocator(HTMLParser):
    """Record the source span of the first top-level ``<table>`` element."""

    def __init__(self, source: str):
        super().__init__(convert_charrefs=True)
        self._source = source
        self._line_offsets = [0]
        for match in re.finditer(r"\n", source):
            self._line_offsets.append(match.end())
        self._depth = 0
        self.start: int | None = None
        self.end: int | None = None

    def _offset(self) -> int:
        line, column = self.getpos()
        return self._line_offsets[line - 1] + column

    def handle_starttag(self, tag, attrs):
        if tag != "table" or self.end is not None:
            return
        if self._depth == 0:
            self.start = self._offset()
        self._depth += 1

    def handle_endtag(self, tag):
        if tag != "table" or self._depth == 0 or self.end is not None:
            return
        self._depth -= 1
        if self._depth == 0:
            close_at = self._source.find(">", self._offset())
            self.end = close_at + 1 if close_at != -1 else len(self._source)

    def table_markup(self) -> str | None:
        if self.start is None or self.end is None:
            return None
        return self._source[self.start:self.end]


def extract_first_table(html: str) -> str:
    """Return the outer markup of the first table in ``html``.

    Tries a structured parse first, then a non-greedy pattern match, and
    finally gives back the payload unchanged.
    """

    table: str | None = None
    try:
        locator = _FirstTableLocator(html)
        locator.feed(html)
        locator.close()
        table = locator.table_markup()
    except Exception as exc:
        logger.debug(f"Structured table parse failed, using pattern fallback: {exc}")
        table = None

    if table:
        return table

    match = _TABLE_SUBSTRING.search(html)
    if match:
        return match.group(0)

    logger.debug("No complete table found in clipboard HTML; using payload verbatim")
    return html


def sanitize_table(table_html: str) -> str:
    """Drop column hints and restyle table, row and cell open tags."""

    cleaned = _COL_TAG.sub("", table_html)
    cleaned = _TR_TAG.sub("<tr>", cleaned)
    cleaned = _TABLE_TAG.sub(TABLE_OPEN, cleaned, count=1)
    cleaned = _TD_TAG.sub(CELL_OPEN, cleaned)
    return cleaned


def normalize_paste(html: str | None = None, text: str | None = None) -> PasteResult:
    """Normalize a clipboard payload.

    Args:
        html: The ``text/html`` clipboard flavour, if any.
        text: The ``text/plain`` clipboard flavour, if any.

    Returns:
        A PasteResult; when ``handled`` is False the caller should fall back
        to its default paste and ``html`` is empty.
    """

    if html and "<table" in html.lower():
        return PasteResult(html=sanitize_table(extract_first_table(html)), handled=True)

    if text and "\t" in text:
        return PasteResult(html=tsv_to_html(text), handled=True)

    return PasteResult(html="", handled=False)


ALLOWED_TAGS = {
    "a", "b", "blockquote", "br", "caption", "code", "div", "em", "h1", "h2", "h3", "h4",
    "i", "li", "ol", "p", "pre", "s", "span", "strong", "table", "tbody", "td", "tfoot",
    "th", "thead", "tr", "u", "ul",
}
ALLOWED_ATTRIBUTES = {
    "a": {"href", "title"},
    "table": {"style"},
    "td": {"style", "colspan", "rowspan"},
    "th": {"style", "colspan", "rowspan"},
}
VOID_TAGS = {"br"}
DROPPED_CONTENT_TAGS = {"script", "style", "iframe", "object", "embed", "noscript", "template", "head", "title"}

_SAFE_HREF = re.compile(r"^(https?:|mailto:|#|/)", re.IGNORECASE)
_UNSAFE_STYLE = re.compile(r"url\s*\(|expression\s*\(|javascript:", re.IGNORECASE)


class _AllowListSanitizer(HTMLParser):
    """Re-emit only allow-listed tags and attributes; everything else is dropped."""

    def __init__(self):
        super().__init__(convert_charrefs=True)
        self.parts: list[str] = []
        self._skip_depth = 0

    def _attributes(self, tag, attrs) -> str:
        allowed = ALLOWED_ATTRIBUTES.get(tag, set())
        kept = []
        for name, value in attrs:
            if name not in allowed or value is None:
                continue
            if name == "href" and not _SAFE_HREF.match(value.strip()):
                continue
            if name == "style" and _UNSAFE_STYLE.search(value):
                continue
            kept.append(f' {name}="{escape_html(value).replace(chr(34), "&quot;")}"')
        return "".join(kept)

    def handle_starttag(self, tag, attrs):
        if tag in DROPPED_CONTENT_TAGS:
            self._skip_depth += 1
            return
        if self._skip_depth or tag not in ALLOWED_TAGS:
            return
        self.parts.append(f"<{tag}{self._attributes(tag, attrs)}>")

    def handle_startendtag(self, tag, attrs):
        if tag in DROPPED_CONTENT_TAGS or self._skip_depth or tag not in ALLOWED_TAGS:
            return
        self.parts.append(f"<{tag}{self._attributes(tag, attrs)}>")
        if tag not in VOID_TAGS:
            self.parts.append(f"</{tag}>")

    def handle_endtag(self, tag):
        if tag in DROPPED_CONTENT_TAGS:
            self._skip_depth = max(self._skip_depth - 1, 0)
            return
        if self._skip_depth or tag not in ALLOWED_TAGS or tag in VOID_TAGS:
            return
        self.parts.append(f"</{tag}>")

    def handle_data(self, data):
        if not self._skip_depth:
            self.parts.append(escape_html(data))


def sanitize_html(fragment: str) -> str:
    """Reduce an entry fragment to allow-listed markup.

    Scripts, frames and embedded styles are removed with their content, event
    handler and other unknown attributes are stripped, and links keep only
    http(s), mailto and relative targets. Tables produced by
    ``normalize_paste`` pass through unchanged.
    """

    sanitizer = _AllowListSanitizer()
    sanitizer.feed(fragment or "")
    sanitizer.close()
    return "".join(sanitizer.parts)
