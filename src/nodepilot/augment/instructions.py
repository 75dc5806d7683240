"""Single-turn instruction augmentation using the project's declared skills."""

from __future__ import annotations

import contextvars
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional, Sequence

from nodepilot.agent.spec import AugmentableNode, RunRequest, SkillDescription
from nodepilot.frontmatter import read_frontmatter
from nodepilot.runners.copilot_cli import CopilotCLIRunner
from nodepilot.settings import AgentSettings, get_agent_settings

logger = logging.getLogger(__name__)

_augmentation_active: contextvars.ContextVar[bool] = contextvars.ContextVar(
    "nodepilot_augmentation_active", default=False
)


@dataclass(slots=True)
class AugmentedInstruction:
    id: str
    instructions: str


def augmentation_in_progress() -> bool:
    """True while an augmentation call is running in the current context."""
    return _augmentation_active.get()


def read_skill_descriptions(repo_path: Path) -> list[SkillDescription]:
    """Collect ``name``/``description`` pairs from ``.github/skills/*/SKILL.md``."""
    skills_dir = Path(repo_path) / ".github" / "skills"
    if not skills_dir.is_dir():
        return []
    try:
        skill_files = sorted(skills_dir.glob("*/SKILL.md"))
    except OSError as exc:
        logger.warning("Failed to scan skills directory %s: %s", skills_dir, exc)
        return []
    skills: list[SkillDescription] = []
    for skill_file in skill_files:
        meta = read_frontmatter(skill_file)
        name, description = meta.get("name"), meta.get("description")
        if isinstance(name, str) and isinstance(description, str) and name and description:
            skills.append(SkillDescription(name=name.strip(), description=description.strip()))
    return skills


def build_augmentation_prompt(
    skills: Sequence[SkillDescription], nodes: Sequence[AugmentableNode]
) -> str:
    if skills:
        skills_block = "\n".join(f"- **{skill.name}**: {skill.description}" for skill in skills)
    else:
        skills_block = "(No project skills defined.)"
    nodes_block = "\n\n".join(
        f'### Node "{node.id}"\n```\n{node.instructions}\n```' for node in nodes
    )
    return (
        "You are an instruction augmenter for a multi-agent orchestration system.\n"
        "Your job is to enrich each agent's instructions by weaving in relevant skill descriptions\n"
        "so the executing agent has full context about available project capabilities.\n"
        "\n"
        "## Available Project Skills\n"
        f"{skills_block}\n"
        "\n"
        "## Agent Tasks to Augment\n"
        f"{nodes_block}\n"
        "\n"
        "## Response Format\n"
        'Respond with ONLY a JSON array. Each element must have "id" (matching the node id) '
        'and "instructions" (the enriched instructions). Do not include any other text.\n'
        "\n"
        "Example:\n"
        '[{"id": "node-1", "instructions": "Enriched instructions here..."}]'
    )


def _valid_entries(items: list[object]) -> list[AugmentedInstruction]:
    entries: list[AugmentedInstruction] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        node_id, instructions = item.get("id"), item.get("instructions")
        if isinstance(node_id, str) and node_id and isinstance(instructions, str) and instructions:
            entries.append(AugmentedInstruction(id=node_id, instructions=instructions))
    return entries


def parse_augmented_output(output: str) -> list[AugmentedInstruction]:
    """Find the first JSON array of ``{id, instructions}`` objects in noisy output.

    Bracketed log prefixes and arrays without a single valid entry are skipped.
    Never raises; returns an empty list when nothing usable is found.
    """
    decoder = json.JSONDecoder()
    start = output.find("[")
    while start != -1:
        try:
            value, _ = decoder.raw_decode(output, start)
        except json.JSONDecodeError:
            value = None
        if isinstance(value, list):
            entries = _valid_entries(value)
            if entries:
                return entries
        start = output.find("[", start + 1)
    return []


def apply_augmentation(
    nodes: Iterable[AugmentableNode], updates: Iterable[AugmentedInstruction]
) -> int:
    """Apply updates to matching nodes; returns the number of nodes changed.

    The pre-augmentation text is snapshotted once and never overwritten.
    """
    by_id = {node.id: node for node in nodes}
    applied = 0
    for update in updates:
        node = by_id.get(update.id)
        if node is None:
            logger.debug("Ignoring augmentation for unknown node %s", update.id)
            continue
        if node.original_instructions is None:
            node.original_instructions = node.instructions
        node.instructions = update.instructions
        applied += 1
    return applied


class InstructionAugmenter:
    """Enrich node instructions with skill context in one bounded agent call."""

    def __init__(self, runner: CopilotCLIRunner, settings: AgentSettings | None = None) -> None:
        self.runner = runner
        self.settings = settings or get_agent_settings()

    async def augment(
        self,
        nodes: Sequence[AugmentableNode],
        repo_path: Path,
        *,
        in_progress: Optional[bool] = None,
    ) -> int:
        """Augment eligible nodes in place and return how many were updated.

        ``in_progress`` lets callers pass the guard state explicitly; when omitted
        the current context is consulted so nested calls are skipped.
        """
        if in_progress is None:
            in_progress = augmentation_in_progress()
        if in_progress:
            logger.info("Augmentation already in progress; skipping nested call")
            return 0

        eligible = [node for node in nodes if node.augment_instructions]
        if not eligible:
            return 0

        prompt = build_augmentation_prompt(read_skill_descriptions(repo_path), eligible)
        lines: list[str] = []
        request = RunRequest(
            cwd=Path(repo_path),
            task=prompt,
            label="augment",
            skip_instructions_file=True,
            timeout_ms=self.settings.AUGMENT_TIMEOUT_MS,
            max_turns=1,
        )

        token = _augmentation_active.set(True)
        try:
            result = await self.runner.run(request, on_output=lines.append)
        finally:
            _augmentation_active.reset(token)

        if not result.success:
            logger.warning("Instruction augmentation failed: %s", result.error)
            return 0

        updates = parse_augmented_output("\n".join(lines))
        applied = apply_augmentation(eligible, updates)
        logger.info("Augmented instructions for %d of %d nodes", applied, len(eligible))
        return applied


__all__ = [
    "AugmentedInstruction",
    "InstructionAugmenter",
    "apply_augmentation",
    "augmentation_in_progress",
    "build_augmentation_prompt",
    "parse_augmented_output",
    "read_skill_descriptions",
]
