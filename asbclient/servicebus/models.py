"""
Service Bus Models

Pydantic models for the Service Bus REST client: client identity, the
outbound message request, the inbound broker properties and received
message, and the peek-lock state machine.
"""

import json
import re
from datetime import datetime, timezone
from email.utils import format_datetime, parsedate_to_datetime
from enum import Enum
from typing import Any, Dict, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    ValidationError,
    field_validator,
)

from .exceptions import DecodeError, InvalidOperationError


SERVICE_BUS_URL = "https://{namespace}.servicebus.windows.net:443/"

DEAD_LETTER_SUFFIX = "/$DeadLetterQueue"


class EntityNameValidator:
    """
    Validates Service Bus entity paths:
    - 1-260 characters
    - Alphanumeric characters, hyphens (-), underscores (_), periods (.)
      and slashes (/) for nested paths
    - Must start and end with alphanumeric character
    - No consecutive hyphens, underscores, periods or slashes
    - May end with ``/$DeadLetterQueue`` to address the dead-letter sub-queue
    """

    @staticmethod
    def validate(name: str) -> tuple[bool, Optional[str]]:
        """
        Validate entity name.

        Args:
            name: Queue, topic or subscription name to validate

        Returns:
            Tuple of (is_valid, error_message)
        """
        if not name:
            return False, "Name cannot be empty"

        if len(name) > 260:
            return False, f"Name must be 1-260 characters, got {len(name)}"

        if name.endswith(DEAD_LETTER_SUFFIX):
            name = name[:-len(DEAD_LETTER_SUFFIX)]
            if not name:
                return False, "Dead-letter path needs an entity name"

        if not name[0].isalnum():
            return False, "Name must start with alphanumeric character"

        if not name[-1].isalnum():
            return False, "Name must end with alphanumeric character"

        if not re.match(r'^[a-zA-Z0-9\-_./]+$', name):
            return False, "Name can only contain alphanumeric, hyphens, underscores, periods and slashes"

        if '--' in name or '__' in name or '..' in name or '//' in name:
            return False, "Name cannot contain consecutive hyphens, underscores, periods or slashes"

        return True, None


class NamespaceValidator:
    """
    Validates Service Bus namespace names:
    - 6-50 characters
    - Letters, digits and hyphens only
    - Must start with a letter and end with a letter or digit
    """

    @staticmethod
    def validate(name: str) -> tuple[bool, Optional[str]]:
        if not 6 <= len(name) <= 50:
            return False, f"Namespace must be 6-50 characters, got {len(name)}"

        if not re.match(r'^[a-zA-Z][a-zA-Z0-9-]*[a-zA-Z0-9]$', name):
            return False, (
                "Namespace can only contain letters, digits and hyphens, "
                "and must start with a letter and end with a letter or digit"
            )

        return True, None


def parse_wire_datetime(value: Any) -> Optional[datetime]:
    """
    Parse a broker property timestamp.

    Service Bus sends RFC 1123 (``Mon, 25 Apr 2016 13:24:44 GMT``); ISO 8601
    is accepted as well. ``None``, ``"null"`` and ``""`` mean unset.
    """
    if value is None or isinstance(value, datetime):
        return value
    text = str(value).strip()
    if text in ("", "null"):
        return None
    try:
        parsed = parsedate_to_datetime(text)
    except (TypeError, ValueError):
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_wire_datetime(value: datetime) -> str:
    """Format a timestamp as RFC 1123 in GMT."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return format_datetime(value.astimezone(timezone.utc), usegmt=True)


class EntityKind(str, Enum):
    """Kind of entity a client talks to."""

    QUEUE = "queue"
    TOPIC = "topic"


class ClientIdentity(BaseModel):
    """
    Long-lived credentials and target for one Service Bus namespace.

    Immutable once built, so a single identity can back clients used from
    several threads at once.
    """
    model_config = ConfigDict(frozen=True, extra='forbid')

    namespace: str = Field(min_length=1)
    kind: EntityKind = EntityKind.QUEUE
    key_name: str = Field(min_length=1)
    key: SecretStr
    subscription: Optional[str] = None  # default subscription for topic receives
    endpoint: Optional[str] = None  # overrides the public namespace URL

    @field_validator('namespace')
    @classmethod
    def validate_namespace(cls, v: str) -> str:
        """Validate namespace name; it becomes part of the host name."""
        is_valid, error = NamespaceValidator.validate(v)
        if not is_valid:
            raise ValueError(error)
        return v

    @field_validator('subscription')
    @classmethod
    def validate_subscription(cls, v: Optional[str]) -> Optional[str]:
        """Validate subscription name."""
        if v is None:
            return v
        is_valid, error = EntityNameValidator.validate(v)
        if not is_valid:
            raise ValueError(error)
        return v

    @field_validator('endpoint')
    @classmethod
    def validate_endpoint(cls, v: Optional[str]) -> Optional[str]:
        """Require an absolute http(s) endpoint ending with a slash."""
        if v is None:
            return v
        if not re.match(r'^https?://[^/]+', v):
            raise ValueError(f"Endpoint must be an absolute http(s) URL, got '{v}'")
        return v if v.endswith("/") else v + "/"

    @property
    def base_url(self) -> str:
        """Base address every entity path is appended to."""
        return self.endpoint or SERVICE_BUS_URL.format(namespace=self.namespace)

    @property
    def key_bytes(self) -> bytes:
        """Shared access key as used for signing."""
        return self.key.get_secret_value().encode("utf-8")


class MessageRequest(BaseModel):
    """
    Outbound message to send to a queue or topic.

    Only carries fields a sender may set; lock token, sequence number and
    the other server-assigned values live on ReceivedMessage.
    """
    model_config = ConfigDict(extra='forbid')

    body: bytes = b""
    content_type: Optional[str] = None
    message_id: Optional[str] = None
    correlation_id: Optional[str] = None
    session_id: Optional[str] = None
    label: Optional[str] = None
    reply_to: Optional[str] = None
    to: Optional[str] = None
    partition_key: Optional[str] = None
    time_to_live: Optional[int] = Field(default=None, gt=0)  # seconds
    scheduled_enqueue_time_utc: Optional[datetime] = None
    properties: Dict[str, Union[bool, int, float, str]] = Field(default_factory=dict)

    @field_validator('body', mode='before')
    @classmethod
    def encode_body(cls, v: Any) -> Any:
        """Accept text bodies as UTF-8."""
        if isinstance(v, str):
            return v.encode("utf-8")
        if isinstance(v, (bytearray, memoryview)):
            return bytes(v)
        return v

    def broker_properties(self) -> Dict[str, Any]:
        """Return the BrokerProperties header fields that are set."""
        props: Dict[str, Any] = {
            "MessageId": self.message_id,
            "CorrelationId": self.correlation_id,
            "SessionId": self.session_id,
            "Label": self.label,
            "ReplyTo": self.reply_to,
            "To": self.to,
            "PartitionKey": self.partition_key,
            "TimeToLive": self.time_to_live,
        }
        if self.scheduled_enqueue_time_utc is not None:
            props["ScheduledEnqueueTimeUtc"] = format_wire_datetime(self.scheduled_enqueue_time_utc)
        return {k: v for k, v in props.items() if v is not None}

    def custom_headers(self) -> Dict[str, str]:
        """Return user properties as headers; values are JSON literals."""
        return {name: json.dumps(value) for name, value in self.properties.items()}


class BrokerProperties(BaseModel):
    """Message metadata carried in the BrokerProperties response header."""
    model_config = ConfigDict(extra='ignore', populate_by_name=True, frozen=True)

    delivery_count: int = Field(default=0, alias="DeliveryCount")
    enqueued_sequence_number: Optional[int] = Field(default=None, alias="EnqueuedSequenceNumber")
    enqueued_time_utc: Optional[datetime] = Field(default=None, alias="EnqueuedTimeUtc")
    lock_token: Optional[str] = Field(default=None, alias="LockToken")
    locked_until_utc: Optional[datetime] = Field(default=None, alias="LockedUntilUtc")
    message_id: Optional[str] = Field(default=None, alias="MessageId")
    correlation_id: Optional[str] = Field(default=None, alias="CorrelationId")
    session_id: Optional[str] = Field(default=None, alias="SessionId")
    label: Optional[str] = Field(default=None, alias="Label")
    reply_to: Optional[str] = Field(default=None, alias="ReplyTo")
    to: Optional[str] = Field(default=None, alias="To")
    partition_key: Optional[str] = Field(default=None, alias="PartitionKey")
    scheduled_enqueue_time_utc: Optional[datetime] = Field(default=None, alias="ScheduledEnqueueTimeUtc")
    sequence_number: Optional[int] = Field(default=None, alias="SequenceNumber")
    state: Optional[str] = Field(default=None, alias="State")
    time_to_live: Optional[float] = Field(default=None, alias="TimeToLive")

    @field_validator(
        'enqueued_time_utc', 'locked_until_utc', 'scheduled_enqueue_time_utc',
        mode='before'
    )
    @classmethod
    def parse_timestamps(cls, v: Any) -> Optional[datetime]:
        """Parse RFC 1123 timestamps."""
        return parse_wire_datetime(v)

    @classmethod
    def from_header(cls, header: Optional[str]) -> "BrokerProperties":
        """
        Decode the BrokerProperties header of a peek-lock response.

        Raises:
            DecodeError: If the header is missing, not a JSON object, has
                invalid values or lacks a lock token
        """
        if not header:
            raise DecodeError("missing BrokerProperties header")
        try:
            data = json.loads(header)
        except ValueError as exc:
            raise DecodeError(f"Error unmarshalling BrokerProperties: {exc}") from exc
        if not isinstance(data, dict):
            raise DecodeError("BrokerProperties is not a JSON object")
        try:
            props = cls.model_validate(data)
        except ValidationError as exc:
            raise DecodeError(f"Invalid BrokerProperties: {exc}") from exc
        if not props.lock_token:
            raise DecodeError("BrokerProperties has no LockToken")
        return props


class ReceivedMessage(BaseModel):
    """
    A message obtained through peek-lock.

    ``location`` is the server-assigned URI of this locked instance; delete
    and unlock are issued against it.
    """
    model_config = ConfigDict(frozen=True)

    properties: BrokerProperties
    location: str = Field(min_length=1)
    body: bytes = b""
    content_type: Optional[str] = None

    @property
    def message_id(self) -> Optional[str]:
        return self.properties.message_id

    @property
    def lock_token(self) -> Optional[str]:
        return self.properties.lock_token

    @property
    def sequence_number(self) -> Optional[int]:
        return self.properties.sequence_number

    @property
    def delivery_count(self) -> int:
        return self.properties.delivery_count

    @property
    def locked_until_utc(self) -> Optional[datetime]:
        return self.properties.locked_until_utc

    def is_lock_expired(self, now: Optional[datetime] = None) -> bool:
        """
        Whether the lock has lapsed according to the local clock.

        Advisory only: the server decides, and a delete or unlock after
        expiry simply fails with a ProtocolError.
        """
        if self.locked_until_utc is None:
            return False
        now = now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now >= self.locked_until_utc

    def text(self, encoding: str = "utf-8") -> str:
        """Decode the body as text."""
        return self.body.decode(encoding)


# Peek-lock state machine

class MessageState(str, Enum):
    """Server-side state of one message as seen through peek-lock."""

    UNSEEN = "Unseen"
    LOCKED = "Locked"
    DELETED = "Deleted"


class LockOperation(str, Enum):
    """Events that move a message between states."""

    PEEK_LOCK = "peek_lock"
    DELETE = "delete"
    UNLOCK = "unlock"
    LOCK_EXPIRED = "lock_expired"


TRANSITIONS: Dict[tuple[MessageState, LockOperation], MessageState] = {
    (MessageState.UNSEEN, LockOperation.PEEK_LOCK): MessageState.LOCKED,
    (MessageState.LOCKED, LockOperation.DELETE): MessageState.DELETED,
    (MessageState.LOCKED, LockOperation.UNLOCK): MessageState.UNSEEN,
    (MessageState.LOCKED, LockOperation.LOCK_EXPIRED): MessageState.UNSEEN,
}


def transition(state: MessageState, operation: LockOperation) -> MessageState:
    """
    Apply ``operation`` to a message in ``state``.

    The real state lives on the server; this table describes what a
    successful status code means and is what test doubles follow.

    Raises:
        InvalidOperationError: If the operation is not valid in ``state``
    """
    try:
        return TRANSITIONS[(state, operation)]
    except KeyError:
        raise InvalidOperationError(
            operation.value,
            f"not allowed while message is {state.value}"
        ) from None
