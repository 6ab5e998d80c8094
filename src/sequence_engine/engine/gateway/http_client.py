"""HTTP messaging gateway client.

Wraps the delivery service's REST API with requests. Every call carries a
bounded timeout; a timeout is a transient failure, never a hang.
"""

from __future__ import annotations

import logging

import requests

from sequence_engine.engine.errors import PermanentDispatchError, TransientDispatchError
from sequence_engine.engine.gateway.contracts import Contact, RenderedContent, SendReceipt
from sequence_engine.engine.sequences.models import Channel

logger = logging.getLogger(__name__)

_TRANSIENT_STATUS = {408, 425, 429, 500, 502, 503, 504}


class HttpMessagingGateway:
    def __init__(
        self,
        *,
        base_url: str,
        token: str = "",
        timeout_seconds: float = 30.0,
        session: requests.Session | None = None,
    ) -> None:
        if not base_url.strip():
            raise ValueError("Gateway base URL is required (ENGINE_GATEWAY_URL)")
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._session = session or requests.Session()
        self._session.headers.update({"Accept": "application/json"})
        if token.strip():
            self._session.headers.update({"Authorization": f"Bearer {token.strip()}"})

    def close(self) -> None:
        self._session.close()

    def send(
        self,
        *,
        tenant_id: str,
        channel: Channel,
        contact: Contact,
        content: RenderedContent,
        idempotency_key: str,
    ) -> SendReceipt:
        address = contact.address_for(channel)
        if not address:
            raise PermanentDispatchError(
                f"Contact {contact.id} has no {channel.value} address"
            )

        url = f"{self._base_url}/v1/messages"
        payload = {
            "tenant_id": tenant_id,
            "channel": channel.value,
            "to": address,
            "contact_id": contact.id,
            "template_ref": content.template_ref,
            "subject": content.subject,
            "body": content.body,
        }
        try:
            resp = self._session.post(
                url,
                json=payload,
                headers={"Idempotency-Key": idempotency_key},
                timeout=self._timeout,
            )
        except requests.Timeout as e:
            raise TransientDispatchError(f"Gateway timed out after {self._timeout}s") from e
        except requests.ConnectionError as e:
            raise TransientDispatchError(f"Gateway unreachable: {e}") from e

        if resp.status_code in _TRANSIENT_STATUS:
            raise TransientDispatchError(f"Gateway returned {resp.status_code}")
        if resp.status_code >= 400:
            raise PermanentDispatchError(
                f"Gateway rejected message ({resp.status_code}): {resp.text[:200]}"
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise TransientDispatchError("Gateway returned a non-JSON response") from e
        message_id = data.get("message_id") if isinstance(data, dict) else None
        if not isinstance(message_id, str) or not message_id:
            raise TransientDispatchError("Gateway response is missing message_id")
        status = data.get("status")
        logger.debug(
            "Gateway accepted message",
            extra={"tenant_id": tenant_id, "channel": channel.value, "message_id": message_id},
        )
        return SendReceipt(message_id=message_id, status=str(status or "accepted"))
