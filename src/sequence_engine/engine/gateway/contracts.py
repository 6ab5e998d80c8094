"""Contracts for the collaborators the engine talks to.

The engine never delivers messages or owns contact data itself; it depends on
these protocols so tests and deployments can plug in their own implementations.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from pydantic import BaseModel, Field

from sequence_engine.engine.sequences.models import Channel


class Contact(BaseModel):
    id: str
    tenant_id: str
    email: str | None = None
    phone: str | None = None
    whatsapp: str | None = None
    first_name: str = ""
    last_name: str = ""
    attributes: dict[str, object] = Field(default_factory=dict)

    def address_for(self, channel: Channel) -> str | None:
        if channel is Channel.EMAIL:
            return self.email
        if channel is Channel.WHATSAPP:
            return self.whatsapp or self.phone
        return self.phone

    def template_fields(self) -> dict[str, object]:
        fields: dict[str, object] = dict(self.attributes)
        fields.update(
            {
                "contact_id": self.id,
                "first_name": self.first_name,
                "last_name": self.last_name,
                "email": self.email or "",
                "phone": self.phone or "",
            }
        )
        return fields


@dataclass(frozen=True, slots=True)
class RenderedContent:
    template_ref: str
    subject: str
    body: str


@dataclass(frozen=True, slots=True)
class SendReceipt:
    message_id: str
    status: str


class MessagingGateway(Protocol):
    """Delivers one rendered message.

    Implementations raise TransientDispatchError for failures worth retrying
    (timeouts included) and PermanentDispatchError otherwise. The idempotency
    key is stable per (enrollment, step) so a retried call never double-sends.
    """

    def send(
        self,
        *,
        tenant_id: str,
        channel: Channel,
        contact: Contact,
        content: RenderedContent,
        idempotency_key: str,
    ) -> SendReceipt: ...


class ContactStore(Protocol):
    """Read-only contact lookup and the tenant suppression (opt-out) list."""

    def get_contact(self, tenant_id: str, contact_id: str) -> Contact | None: ...

    def is_suppressed(self, tenant_id: str, contact_id: str, channel: Channel) -> bool: ...
