"""Read-only JSON contact directory and suppression list."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from pydantic import BaseModel, Field

from sequence_engine.engine.gateway.contracts import Contact
from sequence_engine.engine.sequences.models import Channel

logger = logging.getLogger(__name__)


class SuppressionEntry(BaseModel):
    """An opt-out. No channels means every channel is suppressed."""

    tenant_id: str
    contact_id: str
    channels: list[Channel] = Field(default_factory=list)


class JsonContactStore:
    """Reads contacts and suppressions from JSON files on every lookup.

    The files are owned by the contact/lead service; the engine never writes them.
    """

    def __init__(self, contacts_path: Path, suppressions_path: Path) -> None:
        self._contacts_path = contacts_path
        self._suppressions_path = suppressions_path

    def _load(self, path: Path) -> list[object]:
        if not path.exists():
            return []
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning(
                "Contact file is not valid JSON; treating as empty", extra={"path": str(path)}
            )
            return []
        if not isinstance(raw, list):
            logger.warning(
                "Contact file has unexpected shape; treating as empty", extra={"path": str(path)}
            )
            return []
        return raw

    def get_contact(self, tenant_id: str, contact_id: str) -> Contact | None:
        for item in self._load(self._contacts_path):
            contact = Contact.model_validate(item)
            if contact.id == contact_id and contact.tenant_id == tenant_id:
                return contact
        return None

    def is_suppressed(self, tenant_id: str, contact_id: str, channel: Channel) -> bool:
        for item in self._load(self._suppressions_path):
            entry = SuppressionEntry.model_validate(item)
            if entry.tenant_id != tenant_id or entry.contact_id != contact_id:
                continue
            if not entry.channels or channel in entry.channels:
                return True
        return False
