"""
CONTENT FORMATTER MODULE
========================

Turns the light markup the model writes in content descriptions into the rich-text
HTML the content service stores, and derives a plain-text rendering from that HTML
for previews.

SUPPORTED MARKUP (line oriented):
  # / ## / ###     headings h1-h3
  - item, * item   unordered list items (consecutive items share one <ul>)
  **bold**         <strong>
  *italic*         <em>
  https://...      bare URLs become links
  blank line       block separator
  anything else    a <p> paragraph

Raw text is HTML-escaped before any markup is applied, so the tags introduced by the
markup are never escaped themselves.
"""

import html
import re
from typing import List


_HEADING_RE = re.compile(r"^(#{1,3})\s+(.*)$")
_LIST_ITEM_RE = re.compile(r"^[-*]\s+(.*)$")
_BOLD_RE = re.compile(r"\*\*(.+?)\*\*")
_ITALIC_RE = re.compile(r"\*(.+?)\*")
_URL_RE = re.compile(r"https?://[^\s<>\"]+")
# Trailing punctuation is part of the sentence, not the link.
_URL_TRAILING = ".,;:!?)"

_BLOCK_BREAK_RE = re.compile(r"</(?:p|h[1-6]|li|ul|ol|div)>|<br\s*/?>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")
_EXTRA_NEWLINES_RE = re.compile(r"\n{3,}")

# Unescape order matters: &amp; last so "&amp;lt;" becomes "&lt;", not "<".
_ENTITIES = (("&lt;", "<"), ("&gt;", ">"), ("&quot;", '"'), ("&amp;", "&"))


def _link(match: "re.Match[str]") -> str:
    url = match.group(0)
    trailing = ""
    while url and url[-1] in _URL_TRAILING:
        trailing = url[-1] + trailing
        url = url[:-1]
    if not url:
        return match.group(0)
    return f'<a href="{url}">{url}</a>{trailing}'


def format_inline(text: str) -> str:
    """Escape one line of raw text, then apply bold, italics and auto-links."""
    escaped = html.escape(text, quote=False)
    escaped = _BOLD_RE.sub(r"<strong>\1</strong>", escaped)
    escaped = _ITALIC_RE.sub(r"<em>\1</em>", escaped)
    return _URL_RE.sub(_link, escaped)


def to_rich_html(text: str) -> str:
    """Convert light markup to HTML, one block element per line."""
    blocks: List[str] = []
    list_items: List[str] = []

    def flush_list() -> None:
        if list_items:
            blocks.append("<ul>" + "".join(list_items) + "</ul>")
            list_items.clear()

    for raw_line in (text or "").splitlines():
        line = raw_line.strip()
        if not line:
            flush_list()
            continue

        heading = _HEADING_RE.match(line)
        if heading:
            flush_list()
            level = len(heading.group(1))
            blocks.append(f"<h{level}>{format_inline(heading.group(2))}</h{level}>")
            continue

        # "**bold** start" must stay a paragraph, not become a list item.
        item = _LIST_ITEM_RE.match(line)
        if item and not line.startswith("**"):
            list_items.append(f"<li>{format_inline(item.group(1))}</li>")
            continue

        flush_list()
        blocks.append(f"<p>{format_inline(line)}</p>")

    flush_list()
    return "\n".join(blocks)


def html_to_plain_text(markup: str) -> str:
    """
    Derive plain text from HTML: block ends become newlines, all other tags are
    dropped, the escaped entities are restored, runs of 3+ newlines collapse to
    two and surrounding whitespace is trimmed.
    """
    text = _BLOCK_BREAK_RE.sub("\n", markup or "")
    text = _TAG_RE.sub("", text)
    for entity, char in _ENTITIES:
        text = text.replace(entity, char)
    text = _EXTRA_NEWLINES_RE.sub("\n\n", text)
    return text.strip()
