"""Markup passes: CSS rules, sectioning, style cleanup, buttons, recolor and ToC."""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import parse_qs, urlparse

from bs4 import BeautifulSoup, NavigableString, Tag
from bs4.element import PreformattedString

from .models import NodeKind, Section, TocEntry, node_kind

LOG = logging.getLogger("html2email")

CSS_BLOCK_RE = re.compile(r"([^{]+)\{([^}]+)\}")
BUTTON_LABEL_RE = re.compile(r"^\[\s*(.+?)\s*\]$")
TOC_DAY_NAMES = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")
TOC_DATE_RE = re.compile(rf"^({'|'.join(TOC_DAY_NAMES)})\s+([A-Za-z]+\s+[0-9]+)")
TOC_SECTIONS = ("Bike Brigade", "In our community")

TAGS_TO_CLEAN = ("li", "b", "ul", "span", "p", "a", "h2", "div")
BOLD_DECLARATION = "font-weight:700"
ITALIC_DECLARATION = "font-style:italic"
SIGNAL_DECLARATIONS = (BOLD_DECLARATION, ITALIC_DECLARATION)
REDIRECT_PREFIX = "https://www.google.com/url"

BUTTON_LINK_CLASS = "mceButtonLink"
COMMUNITY_TEXT_STYLE = "color: #ffffff"
COMMUNITY_LINK_STYLE = "color: #aed9ef"

BUTTON_TEMPLATE = (
    '<table style="margin: auto"><tbody><tr><td style="padding: 12px 0 12px 0"><div style="margin-top: 12px">'
    '<table align="center" border="0" cellpadding="0" cellspacing="0" role="presentation" class="mceButtonContainer" '
    'style="padding-top: 24px; margin: auto; margin-top: 12px; text-align: center"><tbody><tr class="mceStandardButton">'
    '<td style="background-color:#000000;border-radius:0;margin-top:12px;text-align:center" valign="top" class="mceButton">'
    '<a href="{href}" target="_blank" class="mceButtonLink" style="background-color:#000000;border-radius:0;'
    "border:2px solid #000000;color:#ffffff;display:block;font-family:'Helvetica Neue', Helvetica, Arial, Verdana, "
    "sans-serif;font-size:16px;font-weight:normal;font-style:normal;padding:16px 28px;text-decoration:none;"
    'text-align:center;direction:ltr;letter-spacing:0px" rel="noreferrer">{label}</a></td></tr></tbody></table>'
    "</div></td></tr></tbody></table>"
)


def escape_html(text: str) -> str:
    return (
        text.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
        .replace("'", "&#039;")
    )


def parse_fragment(markup: str) -> List[Any]:
    fragment = BeautifulSoup(markup, "html.parser")
    return list(fragment.contents)


def node_text(node: Any) -> str:
    if isinstance(node, Tag):
        return node.get_text().strip()
    return str(node).strip()


def _class_list(node: Tag) -> List[str]:
    value = node.get("class")
    if value is None:
        return []
    if isinstance(value, str):
        return value.split()
    return [str(item) for item in value]


def build_css_rules(scope: Any) -> Dict[str, str]:
    css_text = "".join(style.get_text() for style in scope.find_all("style"))
    rules: Dict[str, str] = {}
    for match in CSS_BLOCK_RE.finditer(css_text):
        rules[match.group(1).strip()] = match.group(2).strip()
    return rules


def group_by_tag(nodes: Iterable[Any], tag: str) -> List[Section]:
    """Split ``nodes`` at every ``tag`` heading with text; leading nodes are dropped."""
    sections: List[Section] = []
    current: Optional[Section] = None
    for node in nodes:
        if getattr(node, "name", None) == tag and node_text(node):
            current = Section(name=node_text(node), nodes=[node])
            sections.append(current)
        elif current is not None:
            current.nodes.append(node)
    return sections


def _signal_declarations(declarations: str) -> List[str]:
    compact = declarations.replace(" ", "")
    return [signal for signal in SIGNAL_DECLARATIONS if signal in compact]


def _is_signal_style(style: Any) -> bool:
    parts = [part.replace(" ", "") for part in str(style or "").split(";") if part.strip()]
    return bool(parts) and all(part in SIGNAL_DECLARATIONS for part in parts)


def _convert_class_style(node: Tag, rules: Dict[str, str]) -> bool:
    classes = _class_list(node)
    if not classes or not node_text(node):
        return False
    signals: List[str] = []
    for name in classes:
        for signal in _signal_declarations(rules.get(f".{name}", "")):
            if signal not in signals:
                signals.append(signal)
    if not signals:
        return False
    node["style"] = ";".join(signals)
    del node["class"]
    node.attrs.pop("id", None)
    return True


def unwrap_redirect_href(href: str) -> str:
    if REDIRECT_PREFIX not in href:
        return href
    try:
        query = urlparse(href).query
        target = parse_qs(query).get("q")
    except ValueError:
        return href
    if target and target[0]:
        return target[0]
    return href


def simplify_html(scope: Any, rules: Dict[str, str]) -> Any:
    for tag in TAGS_TO_CLEAN:
        for node in scope.find_all(tag):
            if _convert_class_style(node, rules):
                continue
            if not _is_signal_style(node.get("style")):
                node.attrs.pop("style", None)
            node.attrs.pop("class", None)
            node.attrs.pop("id", None)

    for sup in scope.find_all("sup"):
        sup.decompose()

    for paragraph in scope.find_all("p"):
        if paragraph.decomposed:
            continue
        if not node_text(paragraph) and paragraph.find("img") is None:
            paragraph.decompose()

    for anchor in scope.find_all("a", href=True):
        anchor["href"] = unwrap_redirect_href(anchor["href"])
    return scope


def strip_heading_markers(scope: Any) -> int:
    """Drop comment markers (``<sup>``) from h2 headings before images are keyed on them."""
    removed = 0
    for heading in scope.find_all("h2"):
        for sup in heading.find_all("sup"):
            sup.decompose()
            removed += 1
    return removed


def format_buttons(scope: Any) -> Optional[str]:
    """Replace ``[ Label ]`` paragraphs with CTA buttons; return the first button's href."""
    call_to_action: Optional[str] = None
    for paragraph in scope.find_all("p"):
        if paragraph.decomposed:
            continue
        match = BUTTON_LABEL_RE.match(node_text(paragraph))
        if not match:
            continue
        anchor = paragraph.find("a")
        href = str(anchor.get("href") or "") if anchor is not None else ""
        if call_to_action is None:
            call_to_action = href
        markup = BUTTON_TEMPLATE.format(href=escape_html(href), label=escape_html(match.group(1)))
        for node in parse_fragment(markup):
            paragraph.insert_before(node)
        paragraph.decompose()
        LOG.debug("Button %r -> %s", match.group(1), href or "(no link)")
    return call_to_action


def _recolor_node(soup: BeautifulSoup, node: Tag) -> None:
    kind = node_kind(node)
    if kind is NodeKind.TABLE:
        return
    if kind is NodeKind.ANCHOR:
        if BUTTON_LINK_CLASS not in _class_list(node):
            node["style"] = COMMUNITY_LINK_STYLE
        return
    for child in list(node.children):
        if isinstance(child, Tag):
            _recolor_node(soup, child)
        elif isinstance(child, NavigableString) and not isinstance(child, PreformattedString):
            if str(child).strip():
                span = soup.new_tag("span", attrs={"style": COMMUNITY_TEXT_STYLE})
                span.string = str(child)
                child.replace_with(span)


def recolor(soup: BeautifulSoup, scope: Tag) -> Tag:
    for child in list(scope.children):
        if isinstance(child, Tag):
            _recolor_node(soup, child)
    return scope


def toc_entries(nodes: Iterable[Any]) -> List[TocEntry]:
    entries: List[TocEntry] = []
    for group in group_by_tag(nodes, "h2"):
        label = group.name
        date_hint: Optional[str] = None
        if group.content:
            match = TOC_DATE_RE.match(node_text(group.content[0]))
            if match:
                date_hint = match.group(2)
                label = f"{date_hint}: {group.name}"
        entries.append(TocEntry(label=escape_html(label), date_hint=date_hint))
    return entries


def build_toc(sections: Dict[str, List[Any]]) -> str:
    items: List[str] = []
    for name in TOC_SECTIONS:
        nodes = sections.get(name)
        if nodes:
            items.extend(f"<li>{entry.label}</li>" for entry in toc_entries(nodes))
    return f"<ul>{''.join(items)}</ul>".replace("<li>", "\n<li>")
