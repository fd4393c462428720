"""Partial result tracking for multi-part analyses.

Executors use this to keep completed parts across retries and to render a
readable document while some parts are still being regenerated.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Union

import structlog

from analysis_ops.operations.models import utcnow
from analysis_ops.operations.state_machine import coerce_tier, progress_percentage
from analysis_ops.operations.types import Tier

logger = structlog.get_logger(__name__)


@dataclass
class PartialResult:
    part_number: int
    content: str
    completed_at: datetime


class PartialResultsManager:
    """Completed part contents for one session."""

    def __init__(self, session_id: str, tier: Union[Tier, str], total_parts: int):
        self.session_id = session_id
        self.tier = coerce_tier(tier)
        self.total_parts = total_parts
        self._parts: dict[int, PartialResult] = {}

    def mark_part_complete(self, part_number: int, content: str) -> None:
        """Store a part's content; a later call for the same part replaces it."""
        if not 1 <= part_number <= self.total_parts:
            raise ValueError(f"part_number {part_number} outside 1..{self.total_parts}")
        self._parts[part_number] = PartialResult(part_number, content, utcnow())
        logger.info(
            "partial_result_stored",
            session_id=self.session_id,
            part_number=part_number,
            total_parts=self.total_parts,
        )

    def completed_parts(self) -> list[PartialResult]:
        return [self._parts[n] for n in sorted(self._parts)]

    @property
    def completion_percentage(self) -> int:
        return progress_percentage(len(self._parts), self.total_parts)

    @property
    def missing_parts(self) -> list[int]:
        return [n for n in range(1, self.total_parts + 1) if n not in self._parts]

    @property
    def is_complete(self) -> bool:
        return not self.missing_parts

    def render_markdown(self) -> str:
        """Completed parts in order, with a notice and placeholders for the rest."""
        parts = self.completed_parts()
        missing = self.missing_parts
        chunks: list[str] = []

        if missing:
            done = ", ".join(f"Part {p.part_number}" for p in parts) or "None"
            pending = ", ".join(f"Part {n}" for n in missing)
            chunks.append(
                "\n---\n\n"
                "## Partial Analysis Notice\n\n"
                f"Your analysis is **{self.completion_percentage}% complete**. "
                "Some sections are being regenerated.\n\n"
                "| Status | Sections |\n"
                "|--------|----------|\n"
                f"| Completed | {done} |\n"
                f"| Processing | {pending} |\n\n"
                "---\n\n"
            )

        for part in parts:
            chunks.append(part.content + "\n\n")

        for number in missing:
            chunks.append(
                f"\n## Part {number} - Processing\n\n"
                "> **This section is being regenerated**\n\n"
                "We encountered a temporary issue generating this section. "
                "Our system is automatically retrying.\n\n"
                "---\n\n"
            )

        return "".join(chunks)
