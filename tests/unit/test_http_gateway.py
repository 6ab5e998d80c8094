"""Unit tests for the HTTP messaging gateway and the JSON contact store."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import Mock

import pytest
import requests

from sequence_engine.engine.errors import PermanentDispatchError, TransientDispatchError
from sequence_engine.engine.gateway.contacts import JsonContactStore
from sequence_engine.engine.gateway.contracts import Contact, RenderedContent
from sequence_engine.engine.gateway.http_client import HttpMessagingGateway
from sequence_engine.engine.sequences.models import Channel

CONTACT = Contact(id="c1", tenant_id="t1", email="ada@example.com", phone="+15550100")
CONTENT = RenderedContent(template_ref="welcome", subject="Hi Ada", body="Hello Ada")


def _response(status_code: int, payload: object = None, text: str = "") -> Mock:
    resp = Mock(spec=requests.Response)
    resp.status_code = status_code
    resp.text = text
    if isinstance(payload, Exception):
        resp.json.side_effect = payload
    else:
        resp.json.return_value = payload
    return resp


def _gateway(session: Mock) -> HttpMessagingGateway:
    session.headers = {}
    return HttpMessagingGateway(
        base_url="https://gateway.example.com/",
        token="secret",
        timeout_seconds=5,
        session=session,
    )


def _send(gateway: HttpMessagingGateway, channel: Channel = Channel.EMAIL):
    return gateway.send(
        tenant_id="t1",
        channel=channel,
        contact=CONTACT,
        content=CONTENT,
        idempotency_key="e1:0",
    )


def test_send_posts_message_with_idempotency_key() -> None:
    session = Mock(spec=requests.Session)
    session.post.return_value = _response(202, {"message_id": "m-1", "status": "queued"})
    gateway = _gateway(session)

    receipt = _send(gateway)

    assert receipt.message_id == "m-1"
    assert receipt.status == "queued"
    assert session.headers["Authorization"] == "Bearer secret"
    args, kwargs = session.post.call_args
    assert args == ("https://gateway.example.com/v1/messages",)
    assert kwargs["headers"] == {"Idempotency-Key": "e1:0"}
    assert kwargs["timeout"] == 5
    assert kwargs["json"]["to"] == "ada@example.com"
    assert kwargs["json"]["channel"] == "email"
    assert kwargs["json"]["template_ref"] == "welcome"


def test_whatsapp_falls_back_to_phone() -> None:
    session = Mock(spec=requests.Session)
    session.post.return_value = _response(200, {"message_id": "m-2"})

    receipt = _send(_gateway(session), Channel.WHATSAPP)

    assert receipt.status == "accepted"
    assert session.post.call_args.kwargs["json"]["to"] == "+15550100"


@pytest.mark.parametrize("status_code", [429, 503])
def test_retryable_status_is_transient(status_code: int) -> None:
    session = Mock(spec=requests.Session)
    session.post.return_value = _response(status_code)

    with pytest.raises(TransientDispatchError):
        _send(_gateway(session))


def test_rejection_is_permanent() -> None:
    session = Mock(spec=requests.Session)
    session.post.return_value = _response(400, text="invalid recipient")

    with pytest.raises(PermanentDispatchError, match="invalid recipient"):
        _send(_gateway(session))


def test_timeout_is_transient() -> None:
    session = Mock(spec=requests.Session)
    session.post.side_effect = requests.Timeout("read timed out")

    with pytest.raises(TransientDispatchError, match="timed out"):
        _send(_gateway(session))


def test_unparseable_response_is_transient() -> None:
    session = Mock(spec=requests.Session)
    session.post.return_value = _response(200, ValueError("no json"))

    with pytest.raises(TransientDispatchError):
        _send(_gateway(session))


def test_missing_address_fails_before_calling_gateway() -> None:
    session = Mock(spec=requests.Session)
    gateway = _gateway(session)

    with pytest.raises(PermanentDispatchError):
        gateway.send(
            tenant_id="t1",
            channel=Channel.EMAIL,
            contact=Contact(id="c2", tenant_id="t1", phone="+15550100"),
            content=CONTENT,
            idempotency_key="e2:0",
        )
    session.post.assert_not_called()


def test_base_url_is_required() -> None:
    with pytest.raises(ValueError):
        HttpMessagingGateway(base_url="  ")


def test_json_contact_store(tmp_path: Path) -> None:
    contacts = tmp_path / "contacts.json"
    suppressions = tmp_path / "suppressions.json"
    contacts.write_text(
        json.dumps([CONTACT.model_dump(), {"id": "c1", "tenant_id": "t2"}]), encoding="utf-8"
    )
    suppressions.write_text(
        json.dumps(
            [
                {"tenant_id": "t1", "contact_id": "c1", "channels": ["sms"]},
                {"tenant_id": "t1", "contact_id": "c2"},
            ]
        ),
        encoding="utf-8",
    )
    store = JsonContactStore(contacts, suppressions)

    found = store.get_contact("t1", "c1")
    assert found is not None
    assert found.email == "ada@example.com"
    assert store.get_contact("t1", "missing") is None
    assert store.is_suppressed("t1", "c1", Channel.SMS)
    assert not store.is_suppressed("t1", "c1", Channel.EMAIL)
    assert store.is_suppressed("t1", "c2", Channel.WHATSAPP)
    assert not store.is_suppressed("t2", "c1", Channel.SMS)


def test_json_contact_store_tolerates_missing_or_corrupt_files(tmp_path: Path) -> None:
    broken = tmp_path / "contacts.json"
    broken.write_text("{oops", encoding="utf-8")
    store = JsonContactStore(broken, tmp_path / "absent.json")

    assert store.get_contact("t1", "c1") is None
    assert not store.is_suppressed("t1", "c1", Channel.EMAIL)
