"""Image passes: section planning, extraction to deterministic files, publishing."""

from __future__ import annotations

import base64
import binascii
import filecmp
import logging
import re
import shutil
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol
from urllib.parse import quote

from bs4 import BeautifulSoup, Tag

from .markup import node_text
from .models import ROLE_EMOJI, ROLE_EXTRA, ROLE_MAIN, ImageRecord, NodeKind, SectionImages, node_kind

LOG = logging.getLogger("html2email")

LOCAL_ASSETS_PREFIX = "images/"
DEFAULT_PLAN_SECTION = "intro"
HEADING_KEY_MAX_LEN = 30
EMOJI_ALT_RE = re.compile(r"^:.+?:")
DATA_URI_RE = re.compile(r"^data:image/([^;]+);base64,(.*)$", re.DOTALL)
ASSET_BASE_RE = re.compile(r"^.+?-news-|\.(jpg|png)$")
DATED_ASSET_MARKER = "-news-"

ProgressCallback = Callable[[int, int, str], None]


class AssetUploadError(RuntimeError):
    def __init__(self, message: str, payload: Optional[str] = None) -> None:
        super().__init__(message)
        self.payload = payload

    def __str__(self) -> str:
        base = super().__str__()
        return f"{base}: {self.payload}" if self.payload else base


class AssetHost(Protocol):
    def upload(self, path: Path) -> str:
        ...


def slugify(text: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", text.strip().lower())
    return slug.strip("-")


def heading_key(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", text.strip().lower())[:HEADING_KEY_MAX_LEN]


def file_prefix(run_date: date) -> str:
    return f"{run_date.isoformat()}-news-"


def image_filename(run_date: date, slug: str, role: str, ext: str) -> str:
    suffix = "-extra" if role == ROLE_EXTRA else ""
    if ext and not ext.startswith("."):
        ext = f".{ext}"
    return f"{file_prefix(run_date)}{slug}{suffix}{ext}"


def resolve_local_image(src: str, base_dir: Path) -> Path:
    path = base_dir / src
    reencoded = path.with_suffix(".jpg")
    if path.suffix.lower() != ".jpg" and reencoded.exists():
        return reencoded
    return path


def asset_base_name(filename: str) -> str:
    return ASSET_BASE_RE.sub("", Path(filename).name)


def is_dated_asset(filename: str) -> bool:
    return DATED_ASSET_MARKER in Path(filename).name


# ---------------------------------------------------------------------------
# Plan pass


@dataclass
class _PlannedImage:
    src: str
    alt: str
    extra: bool = False


def _flush_plan(
    run: List[_PlannedImage],
    key: str,
    plan: Dict[str, SectionImages],
    base_dir: Path,
    images_dir: Path,
    run_date: date,
) -> None:
    image = run[-1]
    local_path = resolve_local_image(image.src, base_dir)
    if not local_path.exists():
        LOG.debug("plan: missing local image %s for %s", local_path, key)
        return
    role = ROLE_EXTRA if image.extra else ROLE_MAIN
    record = ImageRecord(
        role=role,
        source_path=str(local_path),
        target_filename=str(images_dir / image_filename(run_date, key, role, local_path.suffix)),
        alt=image.alt or key,
    )
    plan.setdefault(key, SectionImages(section=key)).set_image(record)


def plan_section_images(
    soup: BeautifulSoup, base_dir: Path, images_dir: Path, run_date: date
) -> Dict[str, SectionImages]:
    """Pair image runs with the heading they follow, one persisted image per run."""
    plan: Dict[str, SectionImages] = {}
    pending: List[_PlannedImage] = []
    last_key = DEFAULT_PLAN_SECTION

    for node in soup.find_all(True):
        kind = node_kind(node)
        if kind is NodeKind.IMAGE:
            src = str(node.get("src") or "")
            if src.startswith(LOCAL_ASSETS_PREFIX):
                if pending:
                    pending[-1].extra = True
                pending.append(_PlannedImage(src=src, alt=str(node.get("alt") or "")))
        elif kind is NodeKind.HEADING_1:
            if pending:
                pending[-1].extra = True
                _flush_plan(pending, last_key, plan, base_dir, images_dir, run_date)
                pending = []
        elif kind in (NodeKind.HEADING_2, NodeKind.HEADING_3):
            if pending:
                _flush_plan(pending, last_key, plan, base_dir, images_dir, run_date)
                pending = []
            key = heading_key(node.get_text())
            if key:
                last_key = key

    if pending:
        _flush_plan(pending, last_key, plan, base_dir, images_dir, run_date)
    return plan


# ---------------------------------------------------------------------------
# Extraction pass


@dataclass
class _PendingImage:
    node: Tag
    alt: str
    ext: str
    path: Optional[Path] = None
    data: Optional[bytes] = None


def _persist_image(pending: _PendingImage, target: Path, role: str) -> Optional[ImageRecord]:
    if pending.data is not None:
        target.write_bytes(pending.data)
        source = "data:"
    elif pending.path is not None and pending.path.exists():
        if pending.path.resolve() != target.resolve():
            shutil.copyfile(pending.path, target)
        source = str(pending.path)
    else:
        LOG.debug("Skipping missing image %s", pending.path)
        return None
    LOG.info("Saved %s image: %s", role, target.name)
    return ImageRecord(role=role, source_path=source, target_filename=str(target), alt=pending.alt)


def _pending_from_node(node: Tag, src: str, alt: str, base_dir: Path) -> Optional[_PendingImage]:
    if src.startswith(LOCAL_ASSETS_PREFIX):
        path = resolve_local_image(src, base_dir)
        return _PendingImage(node=node, alt=alt, ext=path.suffix, path=path)
    match = DATA_URI_RE.match(src)
    if match:
        try:
            data = base64.b64decode(match.group(2), validate=False)
        except (binascii.Error, ValueError) as exc:
            LOG.warning("Skipping undecodable inline image: %s", exc)
            return None
        return _PendingImage(node=node, alt=alt, ext=f".{match.group(1)}", data=data)
    return None


def _emoji_record(src: str, alt: str, base_dir: Path) -> Optional[ImageRecord]:
    if src.startswith("data:"):
        return ImageRecord(role=ROLE_EMOJI, source_path=src, target_filename=src, alt=alt)
    if not src.startswith(LOCAL_ASSETS_PREFIX):
        return None
    path = resolve_local_image(src, base_dir)
    if not path.exists():
        LOG.debug("Skipping missing emoji %s", path)
        return None
    return ImageRecord(role=ROLE_EMOJI, source_path=src, target_filename=str(path), alt=alt)


def extract_images(
    soup: BeautifulSoup, base_dir: Path, images_dir: Path, run_date: date
) -> List[SectionImages]:
    """Write each image under the slug of the h2 that follows it and drop its node.

    An image followed by another image before any h2 becomes the ``extra`` of
    the current h2 section instead. Emoji images (``:name:`` alt text) stay in
    the tree and are recorded on the current section.
    """
    images_dir.mkdir(parents=True, exist_ok=True)
    results: List[SectionImages] = []
    pending: Optional[_PendingImage] = None

    for node in soup.find_all(["img", "h2"]):
        kind = node_kind(node)
        if kind is NodeKind.IMAGE:
            src = str(node.get("src") or "")
            alt = str(node.get("alt") or "")

            if pending is not None:
                current = results[-1] if results else None
                if current is not None:
                    target = images_dir / image_filename(run_date, slugify(current.section), ROLE_EXTRA, pending.ext)
                    record = _persist_image(pending, target, ROLE_EXTRA)
                    if record is not None:
                        previous = current.extra
                        if previous is not None and Path(previous.target_filename) != target:
                            Path(previous.target_filename).unlink(missing_ok=True)
                        current.set_image(record)
                else:
                    LOG.debug("Dropping image found before the first section heading")
                pending.node.decompose()
                pending = None

            if EMOJI_ALT_RE.match(alt):
                emoji = _emoji_record(src, alt, base_dir)
                if emoji is not None and results:
                    results[-1].set_image(emoji)
            else:
                pending = _pending_from_node(node, src, alt, base_dir)

        elif kind is NodeKind.HEADING_2:
            text = node_text(node)
            if not text:
                continue
            entry = SectionImages(section=text)
            if pending is not None:
                target = images_dir / image_filename(run_date, slugify(text), ROLE_MAIN, pending.ext)
                record = _persist_image(pending, target, ROLE_MAIN)
                if record is not None:
                    entry.set_image(record)
                pending.node.decompose()
                pending = None
            results.append(entry)

    return results


# ---------------------------------------------------------------------------
# Publishing


class LocalAssetHost:
    """Directory-backed asset host.

    Renamed section assets (``...-news-<slug>``) are reused across runs by
    normalized basename. Other files, such as emojis that keep the exporter's
    generic names, are reused only when an identical file is already published
    and otherwise land under a fresh ``name__N`` filename.
    """

    def __init__(self, publish_dir: Path, base_url: str = "") -> None:
        self.publish_dir = publish_dir
        self.base_url = base_url
        self._cache: Dict[str, str] = {}
        try:
            self.publish_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise AssetUploadError(f"Unable to create publish directory {publish_dir}", payload=str(exc)) from exc
        for existing in sorted(p for p in self.publish_dir.iterdir() if p.is_file()):
            if is_dated_asset(existing.name):
                self._cache[asset_base_name(existing.name)] = self.url_for(existing.name)

    def url_for(self, name: str) -> str:
        if not self.base_url:
            return (self.publish_dir / name).as_posix()
        return f"{self.base_url.rstrip('/')}/{quote(name)}"

    def _undated_target(self, path: Path) -> Path:
        candidate = self.publish_dir / path.name
        i = 1
        while candidate.exists():
            if filecmp.cmp(path, candidate, shallow=False):
                return candidate
            candidate = self.publish_dir / f"{path.stem}__{i}{path.suffix}"
            i += 1
        return candidate

    def upload(self, path: Path) -> str:
        try:
            if not is_dated_asset(path.name):
                target = self._undated_target(path)
                if not target.exists():
                    shutil.copyfile(path, target)
                return self.url_for(target.name)

            key = asset_base_name(path.name)
            cached = self._cache.get(key)
            if cached:
                LOG.debug("Reusing published asset for %s: %s", path.name, cached)
                return cached
            shutil.copyfile(path, self.publish_dir / path.name)
        except OSError as exc:
            raise AssetUploadError(f"Unable to publish {path}", payload=str(exc)) from exc
        url = self.url_for(path.name)
        self._cache[key] = url
        return url


def publish_images(
    sections: List[SectionImages], host: AssetHost, progress: Optional[ProgressCallback] = None
) -> List[SectionImages]:
    records = [record for section in sections for record in section.images]
    total = len(records)
    for index, record in enumerate(records, start=1):
        if record.target_filename.startswith("data:"):
            record.url = record.target_filename
        else:
            record.url = host.upload(Path(record.target_filename))
        if progress is not None:
            progress(index, total, f"{Path(record.target_filename).name[:60]} -> {record.url[:80]}")
    return sections


def update_image_sources(soup: BeautifulSoup, sections: List[SectionImages]) -> int:
    by_stem: Dict[str, str] = {}
    for section in sections:
        for record in section.images:
            if record.url and not record.target_filename.startswith("data:"):
                by_stem.setdefault(Path(record.target_filename).stem, record.url)
    updated = 0
    for img in soup.find_all("img", src=True):
        src = str(img["src"])
        if src.startswith("data:"):
            continue
        url = by_stem.get(Path(src).stem)
        if url:
            img["src"] = url
            updated += 1
    return updated
