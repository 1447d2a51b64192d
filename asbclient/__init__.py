"""
asbclient: Azure Service Bus REST client

Send, peek-lock, unlock and delete Service Bus messages over HTTPS with
per-request Shared Access Signature authentication.
"""

__version__ = "0.1.0"

from .servicebus import (
    ClientIdentity,
    EntityKind,
    MessageRequest,
    ReceivedMessage,
    ServiceBusClient,
    ServiceBusError,
)

__all__ = [
    "ClientIdentity",
    "EntityKind",
    "MessageRequest",
    "ReceivedMessage",
    "ServiceBusClient",
    "ServiceBusError",
    "__version__",
]
