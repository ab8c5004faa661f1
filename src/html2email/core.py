"""Core pipeline for html2email."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Optional

from bs4 import BeautifulSoup, Tag

from .images import (
    AssetHost,
    LocalAssetHost,
    extract_images,
    plan_section_images,
    publish_images,
    update_image_sources,
)
from .markup import build_css_rules, group_by_tag, simplify_html, strip_heading_markers
from .models import SectionImages
from .render import SUNDAY, assemble_document, next_weekday

LOG = logging.getLogger("html2email")

EXIT_INVALID_ARGS = 6
EXIT_OUTPUT = 7
EXIT_PIPELINE = 9
EXIT_ASSET_HOST = 10

IMAGES_DIR_ENV = "HTML2EMAIL_IMAGES_DIR"
PUBLISH_DIR_ENV = "HTML2EMAIL_PUBLISH_DIR"
ASSET_BASE_URL_ENV = "HTML2EMAIL_ASSET_BASE_URL"
DEFAULT_OUTPUT_NAME = "newsletter-email.html"


@dataclass
class ConversionConfig:
    source_path: Path
    images_dir: Path
    run_date: date
    output_path: Optional[Path] = None
    publish_dir: Optional[Path] = None
    asset_base_url: str = ""
    verbose: bool = False
    debug: bool = False


def _resolve_log_level(verbose: bool, debug: bool) -> int:
    return logging.DEBUG if debug else (logging.INFO if verbose else logging.WARNING)


def _configure_html2email_logger(level: int) -> None:
    LOG.setLevel(level)
    LOG.propagate = False
    if not LOG.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
        handler.setLevel(level)
        LOG.addHandler(handler)
    else:
        for handler in LOG.handlers:
            handler.setLevel(level)
            if handler.formatter is None:
                handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))


def setup_logging(verbose: bool, debug: bool) -> None:
    level = _resolve_log_level(verbose, debug)
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")
    _configure_html2email_logger(level)


def _progress_bar_line(current: int, total: int, width: int = 24) -> str:
    if total <= 0:
        return "[?]"
    clamped = max(0, min(current, total))
    filled = min(int((clamped / total) * width), width)
    return "[" + "#" * filled + "." * (width - filled) + "]"


def _log_verbose_progress(prefix: str, current: int, total: int, detail: Optional[str] = None) -> None:
    bar = _progress_bar_line(current, total)
    counter = f"[{current}/{total}]" if total > 0 else f"[{current}]"
    if total > 0:
        msg = f"{prefix} {bar} {counter} ({(current / total) * 100.0:.1f}%)"
    else:
        msg = f"{prefix} {bar} {counter}"
    if detail:
        msg = f"{msg} | {detail}"
    LOG.info(msg)


def next_newsletter_date(today: Optional[date] = None) -> date:
    """The Sunday the next newsletter goes out: strictly after ``today``."""
    return next_weekday(today or date.today(), SUNDAY, strictly_after=True)


def parse_run_date(value: str) -> date:
    try:
        return date.fromisoformat(value.strip())
    except ValueError as exc:
        raise ValueError(f"Invalid date {value!r}: expected YYYY-MM-DD") from exc


def find_latest_html(directory: Path) -> Optional[Path]:
    candidates = [p for p in directory.glob("*.html") if p.is_file()]
    if not candidates:
        return None
    return max(candidates, key=lambda p: p.stat().st_mtime)


def safe_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8", newline="\n")


def load_document(source_path: Path) -> BeautifulSoup:
    try:
        raw_html = source_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise RuntimeError(f"Unable to read {source_path}: {exc}") from exc
    return BeautifulSoup(raw_html, "html.parser")


def top_level_sections(soup: BeautifulSoup) -> Dict[str, List[Any]]:
    body = soup.body if soup.body is not None else soup
    children = [child for child in body.children if isinstance(child, Tag)]
    sections: Dict[str, List[Any]] = {}
    for section in group_by_tag(children, "h1"):
        sections[section.name] = section.content
    return sections


def build_image_plan(config: ConversionConfig) -> Dict[str, Any]:
    soup = load_document(config.source_path)
    strip_heading_markers(soup)
    plan = plan_section_images(soup, config.source_path.parent, config.images_dir, config.run_date)
    return {key: _section_images_to_dict(entry) for key, entry in plan.items()}


def _section_images_to_dict(entry: SectionImages) -> Dict[str, Any]:
    return {
        "section": entry.section,
        "images": [
            {
                "role": record.role,
                "source": record.source_path,
                "file": record.target_filename,
                "alt": record.alt,
                **({"url": record.url} if record.url else {}),
            }
            for record in entry.images
        ],
    }


def format_image_plan(plan: Dict[str, Any]) -> str:
    return json.dumps(plan, ensure_ascii=False, indent=2) + "\n"


def resolve_asset_host(config: ConversionConfig) -> Optional[AssetHost]:
    if config.publish_dir is None:
        return None
    return LocalAssetHost(config.publish_dir, config.asset_base_url)


def run_conversion_pipeline(config: ConversionConfig, host: Optional[AssetHost] = None) -> str:
    _configure_html2email_logger(_resolve_log_level(config.verbose, config.debug))

    if not config.source_path.exists():
        raise RuntimeError(f"Source document not found: {config.source_path}")

    soup = load_document(config.source_path)
    css_rules = build_css_rules(soup)
    strip_heading_markers(soup)
    LOG.info("Loaded %s (%d CSS rule(s))", config.source_path.name, len(css_rules))

    if config.debug:
        for key, entry in plan_section_images(
            soup, config.source_path.parent, config.images_dir, config.run_date
        ).items():
            LOG.debug("Image plan %s: %s", key, ", ".join(f"{r.role}={r.target_filename}" for r in entry.images))

    try:
        section_images = extract_images(soup, config.source_path.parent, config.images_dir, config.run_date)
    except OSError as exc:
        raise RuntimeError(f"Unable to write images to {config.images_dir}: {exc}") from exc
    image_count = sum(len(entry.images) for entry in section_images)
    LOG.info("Extracted %d image(s) across %d section(s)", image_count, len(section_images))

    host = host or resolve_asset_host(config)
    if host is not None:

        def _progress(current: int, total: int, detail: str) -> None:
            _log_verbose_progress("publish-images", current, total, detail=detail)

        publish_images(section_images, host, progress=_progress if config.verbose else None)

    simplify_html(soup, css_rules)
    update_image_sources(soup, section_images)

    sections = top_level_sections(soup)
    if not sections:
        LOG.warning("No top-level sections found in %s", config.source_path.name)
    else:
        LOG.info("Sections: %s", ", ".join(sections))

    html = assemble_document(soup, sections, section_images, css_rules, config.run_date)

    if config.output_path is not None:
        safe_write_text(config.output_path, html)
        LOG.info("Wrote %s", config.output_path)
    return html
