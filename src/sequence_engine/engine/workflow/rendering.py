from __future__ import annotations

from string import Template

from sequence_engine.engine.gateway.contracts import Contact, RenderedContent
from sequence_engine.engine.sequences.models import StepContent


def render_content(content: StepContent, contact: Contact) -> RenderedContent:
    """Fill `$placeholders` from contact data. Unknown placeholders are left as-is."""

    fields = contact.template_fields()
    return RenderedContent(
        template_ref=content.template_ref,
        subject=Template(content.subject).safe_substitute(fields),
        body=Template(content.body).safe_substitute(fields),
    )
