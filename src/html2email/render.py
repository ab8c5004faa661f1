"""Email layout rendering: sections, signup block and the assembled document."""

from __future__ import annotations

import logging
import re
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

from bs4 import BeautifulSoup

from .markup import build_toc, escape_html, format_buttons, group_by_tag, node_text, recolor, simplify_html
from .models import ImageRecord, SectionImages

LOG = logging.getLogger("html2email")

MONDAY = 0
SUNDAY = 6
MONTH_ABBR = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")
MONTH_NAMES = (
    "January",
    "February",
    "March",
    "April",
    "May",
    "June",
    "July",
    "August",
    "September",
    "October",
    "November",
    "December",
)

SECTION_BIKE_BRIGADE = "Bike Brigade"
SECTION_COMMUNITY = "In our community"
SECTION_OTHER_UPDATES = "Other updates"

SIGNUP_URL = "https://dispatch.bikebrigade.ca/campaigns/signup?current_week={week}"
THEME_BACKGROUND = "#223f4d"
BANNER_BACKGROUND = "#16232a"
EMPTY_PARAGRAPH_RE = re.compile(r"<p><span></span></p>")

SIGNUP_TEMPLATE = (
    '<table class="sign-up" style="background-color: #223f4d; text-align: center; margin: auto; margin-top: 24px; '
    'margin-bottom: 12px;"><tbody><tr><td><a href="{current_url}" target="_blank" class="sign-up mceButtonLink" '
    "style=\"background-color:#223f4d;border-radius:0;border:2px solid #223f4d;color:#ffffff;display:block;"
    "font-family:'Helvetica Neue', Helvetica, Arial, Verdana, sans-serif;font-size:16px;font-weight:normal;"
    'font-style:normal;padding:16px 28px;text-decoration:none;text-align:center;direction:ltr;letter-spacing:0px" '
    'rel="noreferrer">SIGN UP NOW TO DELIVER {current_range}</a></td></tr></table>\n'
    "<p style=\"text-align: center; font-family: 'Helvetica Neue', Helvetica, Arial, Verdana\">"
    '<a href="{next_url}" style="color: #476584; margin-top: 12px; margin-bottom: 12px;" target="_blank">'
    "You can also sign up early to deliver {next_range}</a></p>"
)

BLOCK_TEMPLATE = (
    '<table border="0" cellpadding="0" cellspacing="0" width="100%" style="border-collapse:collapse" '
    'role="presentation"><tbody><tr><td style= "padding-top:0;padding-bottom:0;padding-right:0;padding-left:0;'
    'border:0;border-radius:0" valign="top"><table width="100%" style= "border:0;background-color:{bg};'
    'border-radius:0"><tbody><tr><td style="{style}" class="mceTextBlockContainer"><div data-block-id="738" '
    'class="mceText" style= "width:100%">{text}</div></td></tr></tbody></table></td></tr></tbody></table>'
)
BLOCK_STYLE = "padding-left:24px;padding-right:24px;padding-top:12px;padding-bottom:12px"

EXTRA_IMAGE_ROW = (
    '<tr><td colspan="2" style="padding-top: 12px"><img src="{src}" alt="{alt}" '
    'style="width: 100%; max-width: 100%"></td></tr>'
)
LINKED_IMAGE = (
    '<a href="{href}" tabindex="-1" style="display: block;"><span style="background-color: transparent">'
    '<img src="{src}" alt="{alt}" style="padding-top: 12px; display:block;max-width:100%;height:auto;'
    'border-radius:0" width="306" height="auto" class="imageDropZone mceImage"></span></a>'
)
PLAIN_IMAGE = (
    '<img src="{src}" alt="{alt}" style="display:block; padding-top: 12px; width:100%; max-width:100%;'
    'height:auto;border-radius:0" width="306" height="auto" class="imageDropZone mceImage">'
)
TEXT_ONLY_STORY = (
    '<table width="100%" border="0" cellspacing="0" cellpadding="0" align="center" style="margin-top: 12px; '
    'margin-bottom: 12px;"><tbody><tr><td colspan="2" style="padding-top: 12px">{content}</td></tr>{extra}'
    "</tbody></table>"
)
IMAGE_STORY = (
    '<table width="100%" border="0" cellspacing="0" cellpadding="0" align="center" style="margin-top: 12px; '
    'margin-bottom: 12px;"><tbody><tr class="mceRow"><td colspan="1" rowspan="1" style="background-position:center;'
    'background-repeat:no-repeat;background-size:cover" valign="top"><table width="100%" border="0" cellspacing="0" '
    'cellpadding="0"><tbody><tr><td colspan="12" rowspan="1" valign="top" width="100%" class="mceColumn">'
    '<table width="100%" border="0" cellspacing="0" cellpadding="0"><tbody><tr><td colspan="1" rowspan="1" '
    'style="border:0;border-radius:0" valign="top"><table width="100%" border="0" cellspacing="0" cellpadding="0" '
    'align="center"><tbody><tr class="mceRow"><td colspan="1" rowspan="1" style="background-position:center;'
    'background-repeat:no-repeat;background-size:cover;padding-top:0px;padding-bottom:0px" valign="top">'
    '<table style="table-layout:fixed" width="100%" border="0" cellspacing="24" cellpadding="0"><tbody><tr>'
    '<td colspan="6" rowspan="1" style="padding-top:0;padding-bottom:0" valign="top" width="50%" class="mceColumn">'
    '<table width="100%" border="0" cellspacing="0" cellpadding="0"><tbody><tr><td colspan="1" rowspan="1" '
    'style="background-color:transparent;border:0;border-radius:0" valign="top" class="mceImageBlockContainer">'
    '<table style="border-collapse:separate;margin:0;vertical-align:top;max-width:100%;width:100%;height:auto" '
    'width="100%" border="0" cellspacing="0" cellpadding="0" align="center"><tbody><tr><td colspan="1" rowspan="1" '
    'style="border:0;border-radius:0;margin:0" valign="top">{image}</td></tr></tbody></table></td></tr></tbody>'
    '</table></td><td colspan="6" rowspan="1" style="padding-top:0;padding-bottom:0" valign="top" width="50%" '
    'class="mceColumn"><table width="100%" border="0" cellspacing="0" cellpadding="0"><tbody><tr><td colspan="1" '
    'rowspan="1" style="padding:12px" valign="top" class="mceGutterContainer"><table style="border-collapse:separate" '
    'width="100%" border="0" cellspacing="0" cellpadding="0"><tbody><tr><td colspan="1" rowspan="1" '
    'style="padding-top:0;padding-bottom:0;padding-right:0;padding-left:0;border:0;border-radius:0" valign="top">'
    '<table style="border:0;background-color:transparent;border-radius:0;border-collapse:separate" width="100%">'
    '<tbody><tr><td colspan="1" rowspan="1" class="mceTextBlockContainer">{content}</td></tr></tbody></table></td>'
    "</tr></tbody></table></td></tr></tbody></table></td></tr></tbody></table></td></tr></tbody></table></td></tr>"
    "</tbody></table></td></tr></tbody></table></td></tr>{extra}</tbody></table>"
)

DOCUMENT_HEAD = (
    '<base href=""><style>.tpl-content { padding: 0 !important } table { border-collapse: collapse !important } '
    "table.newsletter { border-collapse: collapse} .mceStandardButton a, table.sign-up a { text-decoration: none }"
    '</style><table><tbody><tr><td style="padding: 12px 24px 12px 24px">'
)
INTRO_PARAGRAPH = (
    "<p>Hi Bike Brigaders! Here's what's happening this week, with quick signup links. In this e-mail:</p>"
)


def next_weekday(value: date, weekday: int, strictly_after: bool = True) -> date:
    diff = (weekday - value.weekday()) % 7
    if strictly_after and diff == 0:
        diff = 7
    return value + timedelta(days=diff)


def format_month_day(value: date) -> str:
    return f"{MONTH_ABBR[value.month - 1]} {value.day}"


def format_long_date(value: date) -> str:
    return f"{MONTH_NAMES[value.month - 1]} {value.day}, {value.year}"


def format_range(start: date, end: date) -> str:
    end_str = str(end.day) if start.month == end.month else format_month_day(end)
    return f"{format_month_day(start)}-{end_str}"


def signup_block(run_date: date) -> str:
    """Signup links for the delivery week after ``run_date`` and the week after that."""
    base = next_weekday(run_date, SUNDAY, strictly_after=False)
    current_start = next_weekday(base, MONDAY)
    current_end = next_weekday(base, SUNDAY)
    next_start = next_weekday(current_start, MONDAY)
    next_end = next_weekday(current_end, SUNDAY)
    return SIGNUP_TEMPLATE.format(
        current_url=SIGNUP_URL.format(week=current_start.isoformat()),
        current_range=format_range(current_start, current_end).upper(),
        next_url=SIGNUP_URL.format(week=next_start.isoformat()),
        next_range=format_range(next_start, next_end),
    )


def text_block(text: str, bg: str = THEME_BACKGROUND, style: str = BLOCK_STYLE) -> str:
    return BLOCK_TEMPLATE.format(bg=bg, style=style, text=text)


def _extra_row(extra: Optional[ImageRecord]) -> str:
    if extra is None:
        return ""
    return EXTRA_IMAGE_ROW.format(src=escape_html(extra.src), alt=escape_html(extra.alt or ""))


def render_story(
    heading: str,
    content: str,
    main: Optional[ImageRecord],
    extra: Optional[ImageRecord],
    call_to_action: Optional[str],
) -> str:
    extra_html = _extra_row(extra)
    if main is None:
        return TEXT_ONLY_STORY.format(content=content, extra=extra_html)

    src = escape_html(main.src)
    alt = escape_html(main.alt or heading)
    if call_to_action:
        image = LINKED_IMAGE.format(href=escape_html(call_to_action), src=src, alt=alt)
    else:
        image = PLAIN_IMAGE.format(src=src, alt=alt)
    return IMAGE_STORY.format(image=image, content=content, extra=extra_html)


def render_section(
    soup: BeautifulSoup,
    nodes: List[Any],
    images: List[SectionImages],
    css_rules: Dict[str, str],
    themed: bool = False,
) -> str:
    by_name: Dict[str, SectionImages] = {}
    for entry in images:
        by_name.setdefault(entry.section, entry)

    parts: List[str] = []
    for group in group_by_tag(nodes, "h2"):
        item = soup.new_tag("div")
        heading = soup.new_tag("h2")
        heading.string = group.name
        item.append(heading)
        for node in group.content:
            item.append(node.extract())

        simplify_html(item, css_rules)
        call_to_action = format_buttons(item)
        if themed:
            recolor(soup, item)

        entry = by_name.get(group.name)
        main = entry.main if entry is not None else None
        extra = entry.extra if entry is not None else None
        LOG.debug(
            "Story %r: main=%s extra=%s cta=%s",
            group.name,
            main.src if main else None,
            extra.src if extra else None,
            call_to_action,
        )
        parts.append(render_story(group.name, item.decode_contents(), main, extra, call_to_action))
    return "".join(parts)


def render_list(nodes: List[Any]) -> str:
    items: List[str] = []
    for node in nodes:
        name = getattr(node, "name", None)
        if name in ("ul", "ol"):
            items.append(node.decode_contents())
        elif name == "li":
            items.append(str(node))
        elif name is not None and node_text(node):
            items.append(f"<li>{node.decode_contents()}</li>")
    return f"<ul>{''.join(items)}</ul>"


def assemble_document(
    soup: BeautifulSoup,
    sections: Dict[str, List[Any]],
    images: List[SectionImages],
    css_rules: Dict[str, str],
    run_date: date,
) -> str:
    toc = build_toc(sections)

    banner = (
        '<table style="margin: auto"><tbody><tr><td style="text-align: center; color: #f3f3f3">'
        f'<div style="text-align: center; color: #f3f3f3">{format_long_date(run_date)}</div></td></tr></tbody></table>'
    )
    html = '<table class="newsletter" margin=0 cellpadding=0 cellspacing=0 style="border-collapse:collapse"><tbody><tr><td>'
    html += text_block(banner, bg=BANNER_BACKGROUND, style="padding: 0px 24px 12px 24px")
    html += DOCUMENT_HEAD + INTRO_PARAGRAPH
    html += toc
    html += signup_block(run_date)

    if sections.get(SECTION_BIKE_BRIGADE):
        html += render_section(soup, sections[SECTION_BIKE_BRIGADE], images, css_rules)

    html += "</td></tr></tbody></table>"

    if sections.get(SECTION_COMMUNITY):
        html += f'<table style="background-color:{THEME_BACKGROUND};"><tbody><tr><td style="padding-left: 24px; padding-right: 24px">'
        html += text_block(f'<h1 style="text-align: center;"><span style= "color:#ffffff;">{SECTION_COMMUNITY}</span></h1>')
        html += render_section(soup, sections[SECTION_COMMUNITY], images, css_rules, themed=True)
        html += "</td></tr></tbody></table>"

    if sections.get(SECTION_OTHER_UPDATES):
        html += (
            '<table><tbody><tr><td style="padding: 12px 24px 12px 24px">'
            f"<h2>{SECTION_OTHER_UPDATES}</h2>{render_list(sections[SECTION_OTHER_UPDATES])}</td></tr></tbody></table>"
        )

    html += "</td></tr></tbody></table>"
    return EMPTY_PARAGRAPH_RE.sub("", html)
