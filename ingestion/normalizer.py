"""Content normalization for imported card fields.

Makes third-party field markup safe and uniform:
- Script/style blocks, comments, inline event handlers and script URLs are removed
- Structural and media tags (images, audio, video, breaks, lists, tables,
  basic emphasis) are kept; any other tag is dropped and its text kept
- Presentational wrappers (font/span) are unwrapped; div/p become line breaks
- Text entities are decoded, whitespace collapsed, and break runs capped at two

Tags are sanitized on the raw markup and only text between tags is decoded, so
escaped text such as ``&lt;div&gt;`` stays text. Decoded ``<`` and ``>`` are
re-escaped, which makes normalizing already-normalized content a no-op.
"""

import html
import logging
import re

from ingestion.constants import MAX_WRAPPER_PASSES

logger = logging.getLogger(__name__)

PRESERVED_TAGS = (
    "img", "audio", "video", "source", "hr", "br",
    "ul", "ol", "li",
    "table", "thead", "tbody", "tr", "td", "th",
    "strong", "b", "em", "i", "u", "sub", "sup",
)  # fmt: skip
WRAPPER_TAGS = ("font", "span", "div", "p")
# Block elements outside the allow-list still separate lines
BLOCK_TAGS = ("blockquote", "pre", "h1", "h2", "h3", "h4", "h5", "h6", "section", "article", "header", "footer")
DROPPED_ATTRIBUTES = ("style", "class")
SCRIPT_SCHEMES = ("javascript:", "vbscript:")
MEDIA_DATA_PREFIXES = ("data:image/", "data:audio/", "data:video/")

# Zero-width characters that render as nothing but break comparisons
ZERO_WIDTH_CHARS = "\u200b\u200c\u200d\u2060\ufeff"
_INVISIBLE = str.maketrans("", "", ZERO_WIDTH_CHARS + "\x00")

_SCRIPT_STYLE_BLOCK = re.compile(r"<(script|style)\b[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
_COMMENT = re.compile(r"<!--.*?(?:-->|$)|<![^>]*>|<\?[^>]*>", re.DOTALL)
_TAG = re.compile(r"""<(/?)([a-zA-Z][a-zA-Z0-9]*)((?:[^>"']|"[^"]*"|'[^']*')*)>""")
_ATTRIBUTE = re.compile(r"""([^\s"'<>/=]+)(?:\s*=\s*("[^"]*"|'[^']*'|[^\s"'<>=`]+))?""")

_PRESERVED = re.compile(r"</?(?:%s)\b[^>]*>" % "|".join(PRESERVED_TAGS), re.IGNORECASE)
_PLACEHOLDER = re.compile(r"\x00(\d+)\x00")

_FONT_SPAN = re.compile(r"<(font|span)>(.*?)</\1>", re.DOTALL)
_DIV = re.compile(r"<div>(.*?)</div>", re.DOTALL)
_PARAGRAPH = re.compile(r"<p>(.*?)</p>", re.DOTALL)
_ORPHAN_WRAPPER = re.compile(r"</?(?:font|span)>|<(?:div|p)>")
_ORPHAN_BLOCK_CLOSE = re.compile(r"</(?:div|p)>")

_BREAK = re.compile(r"\s*<br\s*/?>\s*", re.IGNORECASE)
_BREAK_RUN = re.compile(r"(?:<br>){3,}")
_EDGE_BREAKS = re.compile(r"^(?:<br>)+|(?:<br>)+$")
_WHITESPACE = re.compile(r"\s+")


def decode_entities(text: str) -> str:
    """Decode HTML entities until stable, so double-escaped text is caught too."""
    # Every entity is longer than what it decodes to, so this terminates
    while True:
        decoded = html.unescape(text)
        if decoded == text:
            return text
        text = decoded


def is_script_url(value: str) -> bool:
    """True for attribute values a browser would run or render as a document."""
    compact = "".join(ch for ch in decode_entities(value) if ch > " " and ch != "\x7f").lower()
    if compact.startswith(SCRIPT_SCHEMES):
        return True
    return compact.startswith("data:") and not compact.startswith(MEDIA_DATA_PREFIXES)


def clean_attributes(raw: str) -> str:
    kept = []
    for match in _ATTRIBUTE.finditer(raw):
        name, value = match.group(1).lower(), match.group(2)
        if name.startswith("on") or name in DROPPED_ATTRIBUTES:
            continue
        if value is None:
            kept.append(f" {name}")
            continue
        if value[0] in "\"'":
            value = value[1:-1]
        if is_script_url(value):
            logger.debug("Dropping script URL in %s attribute", name)
            continue
        value = value.replace('"', "&quot;").replace("<", "&lt;").replace(">", "&gt;")
        kept.append(f' {name}="{value}"')
    return "".join(kept)


def clean_tag(match: re.Match) -> str:
    closing, name, attributes = match.group(1), match.group(2).lower(), match.group(3)
    if name in BLOCK_TAGS:
        name = "div"
    if name in WRAPPER_TAGS:
        return f"<{closing}{name}>"
    if name not in PRESERVED_TAGS:
        return ""
    if closing:
        return f"</{name}>"
    if name == "br":
        return "<br>"
    return f"<{name}{clean_attributes(attributes)}>"


def clean_text(text: str) -> str:
    text = decode_entities(text).translate(_INVISIBLE)
    return text.replace("<", "&lt;").replace(">", "&gt;")


def sanitize(markup: str) -> str:
    """Keep allow-listed tags with safe attributes and decode the text between them."""
    markup = _SCRIPT_STYLE_BLOCK.sub("", markup.replace("\x00", ""))
    markup = _COMMENT.sub("", markup)
    parts = []
    position = 0
    for match in _TAG.finditer(markup):
        parts.append(clean_text(markup[position : match.start()]))
        parts.append(clean_tag(match))
        position = match.end()
    parts.append(clean_text(markup[position:]))
    return "".join(parts)


def unwrap_presentational(markup: str) -> str:
    """Unwrap font/span and turn div/p into breaks, leaving preserved tags untouched."""
    preserved: list[str] = []

    def hold(match: re.Match) -> str:
        preserved.append(match.group(0))
        return f"\x00{len(preserved) - 1}\x00"

    markup = _PRESERVED.sub(hold, markup)

    # Nested wrappers unwrap one level per pass
    for _ in range(MAX_WRAPPER_PASSES):
        unwrapped = _FONT_SPAN.sub(r"\2", markup)
        unwrapped = _DIV.sub(r"\1<br>", unwrapped)
        unwrapped = _PARAGRAPH.sub(r"\1<br><br>", unwrapped)
        if unwrapped == markup:
            break
        markup = unwrapped
    else:
        logger.debug("Wrapper unwrapping did not settle after %d passes", MAX_WRAPPER_PASSES)

    markup = _ORPHAN_BLOCK_CLOSE.sub("<br>", markup)
    markup = _ORPHAN_WRAPPER.sub("", markup)

    return _PLACEHOLDER.sub(lambda m: preserved[int(m.group(1))], markup)


def collapse_whitespace(markup: str) -> str:
    markup = _BREAK.sub("<br>", markup)
    markup = _BREAK_RUN.sub("<br><br>", markup)
    markup = _WHITESPACE.sub(" ", markup).strip()
    return _EDGE_BREAKS.sub("", markup).strip()


def normalize_html(markup: str) -> str:
    """Normalize raw field markup into safe, compact card content."""
    if not markup:
        return ""
    text = sanitize(markup)
    text = unwrap_presentational(text)
    return collapse_whitespace(text)


_ANY_TAG = re.compile(r"<[^>]+>")


def strip_html(markup: str) -> str:
    """Reduce markup to plain text (used for sort fields and checksums)."""
    text = _BREAK.sub(" ", markup)
    text = _ANY_TAG.sub("", text)
    return _WHITESPACE.sub(" ", decode_entities(text)).strip()
