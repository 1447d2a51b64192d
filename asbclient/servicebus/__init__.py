"""
Service Bus REST client.

Send, peek-lock, unlock and delete messages on queues and topic
subscriptions, authenticating every call with a SAS token.
"""

from .client import (
    API_VERSION,
    DEFAULT_PEEK_TIMEOUT,
    ServiceBusClient,
    SubscriptionReceiver,
)
from .errors import decode_error_body, read_error
from .exceptions import (
    ConfigurationError,
    DecodeError,
    InvalidEntityNameError,
    InvalidOperationError,
    InvalidUriError,
    ProtocolError,
    ServiceBusError,
    SubscriptionRequiredError,
    TransportError,
    is_transient_error,
)
from .models import (
    BrokerProperties,
    ClientIdentity,
    EntityKind,
    EntityNameValidator,
    LockOperation,
    MessageRequest,
    MessageState,
    ReceivedMessage,
    transition,
)

__all__ = [
    # Client
    "API_VERSION",
    "DEFAULT_PEEK_TIMEOUT",
    "ServiceBusClient",
    "SubscriptionReceiver",
    # Models
    "BrokerProperties",
    "ClientIdentity",
    "EntityKind",
    "EntityNameValidator",
    "LockOperation",
    "MessageRequest",
    "MessageState",
    "ReceivedMessage",
    "transition",
    # Errors
    "ConfigurationError",
    "DecodeError",
    "InvalidEntityNameError",
    "InvalidOperationError",
    "InvalidUriError",
    "ProtocolError",
    "ServiceBusError",
    "SubscriptionRequiredError",
    "TransportError",
    "decode_error_body",
    "is_transient_error",
    "read_error",
]
