"""Whitelist HTML sanitizer for glossary fragments."""

from __future__ import annotations

import re

from bs4 import (
    BeautifulSoup,
    CData,
    Comment,
    Declaration,
    Doctype,
    ProcessingInstruction,
)

ALLOWED_TAGS = frozenset(
    {"span", "b", "i", "em", "strong", "br", "p", "div", "ul", "li", "ol"}
)
ALLOWED_ATTRIBUTES = frozenset({"class"})

# Removed together with everything inside them.
_DROP_CONTENT_TAGS = (
    "script", "style", "template", "iframe", "object", "embed",
    "noscript", "svg", "math", "head", "title", "textarea", "select",
)

_LEGACY_STYLES = (
    ('style="color:green"', 'class="dict-type"'),
    ('style="color:brown"', 'class="dict-pron"'),
    ('style="font-size:0.7em"', 'class="dict-level"'),
)
_LEGACY_OPEN_RE = re.compile(r"<(?:type|pron|level|thai|def)\b")
_LEGACY_CLOSE_RE = re.compile(r"</(?:type|pron|level|thai|def)\s*>")
_TAG_RE = re.compile(r"<[A-Za-z][^<>]*>")


def _rewrite_tag_styles(match: re.Match) -> str:
    tag = match.group(0)
    for old, new in _LEGACY_STYLES:
        tag = tag.replace(old, new)
    return tag


def rewrite_legacy_markup(html: str) -> str:
    """Turn legacy inline styles and custom elements into ``<span class>``."""
    html = _TAG_RE.sub(_rewrite_tag_styles, html)
    html = _LEGACY_OPEN_RE.sub("<span", html)
    return _LEGACY_CLOSE_RE.sub("</span>", html)


def sanitize_html(html: str) -> str:
    """Strip every tag and attribute outside the whitelist.

    Disallowed tags are unwrapped (their text survives) except for
    script-like containers, which are dropped with their content.
    """
    if not html:
        return ""

    soup = BeautifulSoup(rewrite_legacy_markup(html), "html.parser")

    for node in soup.find_all(
        string=lambda s: isinstance(
            s, (CData, Comment, Declaration, Doctype, ProcessingInstruction)
        )
    ):
        node.extract()

    for tag in soup.find_all(_DROP_CONTENT_TAGS):
        if not tag.decomposed:
            tag.decompose()

    for tag in soup.find_all(True):
        if tag.name not in ALLOWED_TAGS:
            tag.unwrap()
            continue
        tag.attrs = {
            name: value
            for name, value in tag.attrs.items()
            if name in ALLOWED_ATTRIBUTES
        }

    return str(soup)
