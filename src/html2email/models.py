"""Data types shared by the html2email passes."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, List, Optional

ROLE_MAIN = "main"
ROLE_EXTRA = "extra"
ROLE_EMOJI = "emoji"


class NodeKind(Enum):
    IMAGE = "img"
    HEADING_1 = "h1"
    HEADING_2 = "h2"
    HEADING_3 = "h3"
    PARAGRAPH = "p"
    TABLE = "table"
    ANCHOR = "a"
    TEXT = "#text"
    OTHER = "*"


_KIND_BY_TAG = {kind.value: kind for kind in NodeKind if kind not in (NodeKind.TEXT, NodeKind.OTHER)}


def node_kind(node: Any) -> NodeKind:
    name = getattr(node, "name", None)
    if name is None:
        return NodeKind.TEXT
    return _KIND_BY_TAG.get(str(name).lower(), NodeKind.OTHER)


@dataclass
class Section:
    """A named group of nodes; ``nodes[0]`` is the heading that opened it."""

    name: str
    nodes: List[Any] = field(default_factory=list)

    @property
    def heading(self) -> Any:
        return self.nodes[0] if self.nodes else None

    @property
    def content(self) -> List[Any]:
        return self.nodes[1:]


@dataclass
class ImageRecord:
    role: str
    source_path: str
    target_filename: str
    alt: str
    url: Optional[str] = None

    @property
    def src(self) -> str:
        if self.url:
            return self.url
        if self.target_filename.startswith("data:"):
            return self.target_filename
        return Path(self.target_filename).as_posix()


@dataclass
class SectionImages:
    section: str
    main: Optional[ImageRecord] = None
    extra: Optional[ImageRecord] = None
    emojis: List[ImageRecord] = field(default_factory=list)

    def set_image(self, record: ImageRecord) -> None:
        if record.role == ROLE_EMOJI:
            self.emojis.append(record)
        elif record.role == ROLE_EXTRA:
            self.extra = record
        else:
            self.main = record

    @property
    def images(self) -> List[ImageRecord]:
        out: List[ImageRecord] = []
        if self.main is not None:
            out.append(self.main)
        if self.extra is not None:
            out.append(self.extra)
        out.extend(self.emojis)
        return out


@dataclass
class TocEntry:
    label: str
    date_hint: Optional[str] = None
