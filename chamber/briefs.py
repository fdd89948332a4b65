"""Topic briefs: markdown files with optional YAML frontmatter."""

from dataclasses import dataclass, field
from pathlib import Path

import frontmatter


@dataclass
class Brief:
    topic: str
    participants: list[str] = field(default_factory=list)
    attachments: list[Path] = field(default_factory=list)
    intel: str = ""


def _as_list(value) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    return [str(v).strip() for v in value if str(v).strip()]


def parse_brief(file_path: Path) -> Brief:
    """Parse a brief file.

    Frontmatter keys (all optional): participants (list or comma string),
    attachments (paths, relative to the brief), intel (text). The body is
    the topic.
    """
    post = frontmatter.load(str(file_path))
    metadata = dict(post.metadata)
    base = file_path.parent
    return Brief(
        topic=post.content.strip(),
        participants=_as_list(metadata.get("participants")),
        attachments=[base / p for p in _as_list(metadata.get("attachments"))],
        intel=str(metadata.get("intel") or "").strip(),
    )
