"""
Ticket package schemas.

A Cerb ticket export is a JSON "package" whose `records` array mixes one
ticket record with the message records that belong to it. Only the two
record kinds the pipeline needs are modelled; other record kinds are kept
raw and ignored.
"""
from __future__ import annotations

from pathlib import Path
from typing import Any, Literal, Optional

import orjson
from pydantic import BaseModel, ConfigDict, Field


class TicketRecord(BaseModel):
    """The ticket header: identity plus the searchable attributes."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", coerce_numbers_to_str=True)

    uid: str
    context: Literal["ticket"] = Field("ticket", alias="_context")
    mask: str = ""                       # e.g. "ABC-12345-678"
    subject: str = ""
    importance: int = 0
    group_id: Optional[int] = None
    bucket_id: Optional[int] = None

    def attributes(self) -> dict[str, Any]:
        """Metadata copied onto every passage chunked from this ticket."""
        return {
            "ticket_mask": self.mask,
            "ticket_subject": self.subject,
            "group_id": self.group_id,
            "bucket_id": self.bucket_id,
        }


class MessageRecord(BaseModel):
    """One message on a ticket; the unit that chunk boundaries never cross."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", coerce_numbers_to_str=True)

    uid: str
    context: Literal["message"] = Field("message", alias="_context")
    ticket_id: str = ""
    is_outgoing: int = 0
    response_time: int = 0
    hash_header_message_id: str = ""
    content: str = ""

    @property
    def outgoing(self) -> bool:
        return self.is_outgoing == 1


class TicketPackage(BaseModel):
    """A parsed ticket export file."""

    model_config = ConfigDict(extra="ignore")

    package: dict[str, Any] = Field(default_factory=dict)
    records: list[dict[str, Any]] = Field(default_factory=list)

    @property
    def ticket(self) -> Optional[TicketRecord]:
        for record in self.records:
            if record.get("_context") == "ticket":
                return TicketRecord.model_validate(record)
        return None

    @property
    def messages(self) -> list[MessageRecord]:
        return [
            MessageRecord.model_validate(record)
            for record in self.records
            if record.get("_context") == "message"
        ]


def load_ticket_package(path: str | Path) -> TicketPackage:
    """Read and parse one ticket package JSON file."""
    with open(Path(path), "rb") as f:
        return TicketPackage.model_validate(orjson.loads(f.read()))


def find_ticket_files(directory: str | Path) -> list[Path]:
    """Recursively list every *.json file under directory, sorted for stable runs."""
    root = Path(directory)
    if not root.exists():
        raise FileNotFoundError(f"Ticket directory not found: {root}")
    return sorted(p for p in root.rglob("*.json") if p.is_file())
