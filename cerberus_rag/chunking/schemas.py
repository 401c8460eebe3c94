"""
Passage schema - the atomic unit that gets embedded and indexed.

A Passage traces back to its parent ticket (and message) so every
retrieval result carries full provenance for citations.
"""
from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


def passage_id(source_id: str, position: int, sub_unit_id: Optional[str] = None) -> str:
    """Deterministic id so re-chunking the same ticket overwrites, never duplicates."""
    if sub_unit_id:
        return f"{source_id}_{sub_unit_id}_chunk_{position}"
    return f"{source_id}_chunk_{position}"


class Passage(BaseModel):
    """
    A single embeddable word window produced from a ticket message.

    Write-once: instances are frozen after the chunker creates them.
    `position` / `total_chunks` are for display and debugging only and
    never take part in ranking.
    """

    model_config = ConfigDict(frozen=True)

    # Identity
    id: str
    source_id: str                       # Parent ticket uid
    sub_unit_id: Optional[str] = None    # Message uid within the ticket

    # Content
    text: str
    token_count: int = 0                 # Populated by the chunker

    # Position within the message (or ticket when there is no message)
    position: int = 0
    total_chunks: int = 1

    # Metadata pass-through (ticket mask/subject, group/bucket ids)
    attributes: dict[str, Any] = Field(default_factory=dict)

    @property
    def title(self) -> str:
        """Display title: '<mask>: <subject>' when available."""
        mask = self.attributes.get("ticket_mask") or self.source_id
        subject = self.attributes.get("ticket_subject") or ""
        return f"{mask}: {subject}" if subject else str(mask)
