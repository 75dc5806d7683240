"""YAML front-matter reader for agent and skill definition files."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)


def parse_frontmatter(text: str) -> dict[str, Any]:
    """Return the leading ``---`` YAML block as a mapping (empty when absent or invalid)."""
    lines = text.splitlines()
    if not lines or lines[0].strip() != "---":
        return {}
    for index in range(1, len(lines)):
        if lines[index].strip() == "---":
            block = "\n".join(lines[1:index])
            break
    else:
        return {}

    try:
        data = yaml.safe_load(block)
    except yaml.YAMLError as exc:
        logger.warning("Invalid front-matter block", exc_info=exc)
        return {}
    return data if isinstance(data, dict) else {}


def read_frontmatter(path: Path) -> dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        logger.warning("Failed to read %s", path, exc_info=exc)
        return {}
    return parse_frontmatter(text)


__all__ = ["parse_frontmatter", "read_frontmatter"]
