"""Messaging gateway and contact store collaborators."""

from sequence_engine.engine.gateway.contacts import JsonContactStore
from sequence_engine.engine.gateway.contracts import (
    Contact,
    ContactStore,
    MessagingGateway,
    RenderedContent,
    SendReceipt,
)
from sequence_engine.engine.gateway.http_client import HttpMessagingGateway

__all__ = [
    "Contact",
    "ContactStore",
    "HttpMessagingGateway",
    "JsonContactStore",
    "MessagingGateway",
    "RenderedContent",
    "SendReceipt",
]
