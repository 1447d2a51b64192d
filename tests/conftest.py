"""
Shared fixtures: an in-process fake Service Bus namespace.

The fake speaks enough of the REST protocol for the client (send,
peek-lock, delete, unlock on queues and topic subscriptions), verifies the
SAS token on every request, and follows the peek-lock state machine from
asbclient.servicebus.models.
"""

import json
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple
from urllib.parse import unquote_plus, urlsplit

import pytest
from fastapi import FastAPI, Request, Response, status
from fastapi.testclient import TestClient

from asbclient.auth.exceptions import InvalidAuthorizationHeaderError
from asbclient.auth.sas import SharedAccessSigner
from asbclient.servicebus.client import API_VERSION, ServiceBusClient
from asbclient.servicebus.models import (
    ClientIdentity,
    EntityKind,
    LockOperation,
    MessageState,
    format_wire_datetime,
    transition,
)


NAMESPACE = "tester"
KEY_NAME = "RootManageSharedAccessKey"
KEY = "gC9nJzD3UoxDP8LvQWkQihlvb6dBHpdxh7hXj3Trk5s="
BASE_URL = f"https://{NAMESPACE}.servicebus.windows.net/"

RESERVED_HEADERS = {
    "accept", "accept-encoding", "authorization", "brokerproperties", "connection",
    "content-length", "content-type", "host", "user-agent",
}


@dataclass
class StoredMessage:
    """One message inside the fake namespace."""

    sequence_number: int
    body: bytes
    broker_properties: Dict
    content_type: Optional[str] = None
    custom_properties: Dict[str, str] = field(default_factory=dict)
    enqueued_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    state: MessageState = MessageState.UNSEEN
    lock_token: Optional[str] = None
    locked_until: Optional[datetime] = None
    delivery_count: int = 0

    @property
    def message_id(self) -> str:
        return self.broker_properties["MessageId"]


class FakeServiceBus:
    """Thread-safe in-memory namespace with a controllable lock clock."""

    def __init__(self, lock_duration: int = 60):
        self.lock_duration = timedelta(seconds=lock_duration)
        self.signer = SharedAccessSigner(KEY_NAME, KEY)
        self.requests: List[Tuple[str, str, str]] = []
        self.topics: Dict[str, List[str]] = {}
        self._entities: Dict[str, List[StoredMessage]] = {}
        self._sequence = 0
        self._offset = timedelta()
        self._lock = threading.Lock()

    def now(self) -> datetime:
        return datetime.now(timezone.utc) + self._offset

    def advance(self, seconds: float) -> None:
        """Move the lock clock forward."""
        self._offset += timedelta(seconds=seconds)

    def create_subscription(self, topic: str, subscription: str) -> None:
        self.topics.setdefault(topic, []).append(subscription)

    def messages(self, entity: str) -> List[StoredMessage]:
        """Messages at ``entity`` that have not been deleted."""
        return [m for m in self._entities.get(entity, []) if m.state != MessageState.DELETED]

    def _expire_locks(self, entity: str) -> None:
        for message in self._entities.get(entity, []):
            if message.state == MessageState.LOCKED and message.locked_until <= self.now():
                message.state = transition(message.state, LockOperation.LOCK_EXPIRED)
                message.lock_token = None
                message.locked_until = None

    def send(self, entity: str, body: bytes, broker_properties: Dict,
             content_type: Optional[str], custom_properties: Dict[str, str]) -> None:
        with self._lock:
            targets = [f"{entity}/subscriptions/{s}" for s in self.topics[entity]] \
                if entity in self.topics else [entity]
            message_id = broker_properties.get("MessageId") or uuid.uuid4().hex
            for target in targets:
                self._sequence += 1
                props = dict(broker_properties, MessageId=message_id)
                self._entities.setdefault(target, []).append(StoredMessage(
                    sequence_number=self._sequence,
                    body=body,
                    broker_properties=props,
                    content_type=content_type,
                    custom_properties=dict(custom_properties),
                ))

    def peek_lock(self, entity: str) -> Optional[StoredMessage]:
        with self._lock:
            self._expire_locks(entity)
            for message in self._entities.get(entity, []):
                if message.state == MessageState.UNSEEN:
                    message.state = transition(message.state, LockOperation.PEEK_LOCK)
                    message.lock_token = str(uuid.uuid4())
                    message.locked_until = self.now() + self.lock_duration
                    message.delivery_count += 1
                    return message
            return None

    def settle(self, entity: str, sequence_number: int, lock_token: str,
               operation: LockOperation) -> bool:
        with self._lock:
            self._expire_locks(entity)
            for message in self._entities.get(entity, []):
                if (message.sequence_number == sequence_number
                        and message.state == MessageState.LOCKED
                        and message.lock_token == lock_token):
                    message.state = transition(message.state, operation)
                    message.lock_token = None
                    message.locked_until = None
                    return True
            return False


def _error(status_code: int, detail: str) -> Response:
    body = f"<Error><Code>{status_code}</Code><Detail>{detail}</Detail></Error>"
    return Response(content=body, status_code=status_code, media_type="application/xml")


def create_fake_app(bus: FakeServiceBus) -> FastAPI:
    """Build the REST surface of the fake namespace."""
    app = FastAPI()

    @app.middleware("http")
    async def check_sas(request: Request, call_next):
        header = request.headers.get("Authorization", "")
        bus.requests.append((request.method, request.url.path, header))

        try:
            token = bus.signer.verify(header)
        except InvalidAuthorizationHeaderError as exc:
            return _error(status.HTTP_401_UNAUTHORIZED, f"InvalidSignature: {exc.message}")

        signed = urlsplit(unquote_plus(token.resource))
        if signed.path != request.url.path.lower():
            return _error(status.HTTP_401_UNAUTHORIZED, "InvalidAudience: token is for another resource")
        if request.query_params.get("api-version") != API_VERSION:
            return _error(status.HTTP_400_BAD_REQUEST, "Unsupported api-version")

        return await call_next(request)

    async def _send(entity: str, request: Request) -> Response:
        raw = request.headers.get("BrokerProperties", "{}")
        custom = {k: v for k, v in request.headers.items() if k.lower() not in RESERVED_HEADERS}
        bus.send(entity, await request.body(), json.loads(raw),
                 request.headers.get("Content-Type"), custom)
        return Response(status_code=status.HTTP_201_CREATED)

    def _peek(entity: str) -> Response:
        message = bus.peek_lock(entity)
        if message is None:
            return Response(status_code=status.HTTP_204_NO_CONTENT)

        props = dict(
            message.broker_properties,
            DeliveryCount=message.delivery_count,
            EnqueuedSequenceNumber=0,
            EnqueuedTimeUtc=format_wire_datetime(message.enqueued_time),
            LockToken=message.lock_token,
            LockedUntilUtc=format_wire_datetime(message.locked_until),
            SequenceNumber=message.sequence_number,
            State="Active",
            TimeToLive=message.broker_properties.get("TimeToLive", 922337203685.47754),
        )
        headers = {
            "BrokerProperties": json.dumps(props),
            "Location": f"{BASE_URL}{entity}/messages/{message.sequence_number}/{message.lock_token}",
        }
        headers.update(message.custom_properties)
        return Response(
            content=message.body,
            status_code=status.HTTP_201_CREATED,
            headers=headers,
            media_type=message.content_type,
        )

    def _settle(entity: str, sequence_number: int, lock_token: str, operation: LockOperation) -> Response:
        if not bus.settle(entity, sequence_number, lock_token, operation):
            return _error(
                status.HTTP_404_NOT_FOUND,
                "The lock supplied is invalid. Either the lock expired, or the message has already been removed from the queue.",
            )
        return Response(status_code=status.HTTP_200_OK)

    @app.post("/{entity}/messages/")
    async def send_message(entity: str, request: Request):
        return await _send(entity, request)

    @app.post("/{entity}/messages/head")
    async def peek_queue(entity: str, timeout: int = 60):
        return _peek(entity)

    @app.post("/{topic}/subscriptions/{subscription}/messages/head")
    async def peek_subscription(topic: str, subscription: str, timeout: int = 60):
        return _peek(f"{topic}/subscriptions/{subscription}")

    @app.delete("/{entity}/messages/{sequence_number}/{lock_token}")
    async def delete_queue_message(entity: str, sequence_number: int, lock_token: str):
        return _settle(entity, sequence_number, lock_token, LockOperation.DELETE)

    @app.put("/{entity}/messages/{sequence_number}/{lock_token}")
    async def unlock_queue_message(entity: str, sequence_number: int, lock_token: str):
        return _settle(entity, sequence_number, lock_token, LockOperation.UNLOCK)

    @app.delete("/{topic}/subscriptions/{subscription}/messages/{sequence_number}/{lock_token}")
    async def delete_subscription_message(topic: str, subscription: str, sequence_number: int, lock_token: str):
        return _settle(f"{topic}/subscriptions/{subscription}", sequence_number, lock_token, LockOperation.DELETE)

    @app.put("/{topic}/subscriptions/{subscription}/messages/{sequence_number}/{lock_token}")
    async def unlock_subscription_message(topic: str, subscription: str, sequence_number: int, lock_token: str):
        return _settle(f"{topic}/subscriptions/{subscription}", sequence_number, lock_token, LockOperation.UNLOCK)

    return app


@pytest.fixture
def fake_bus():
    """Empty fake namespace."""
    return FakeServiceBus()


@pytest.fixture
def http_client(fake_bus):
    """httpx client wired to the fake namespace."""
    with TestClient(create_fake_app(fake_bus)) as client:
        yield client


@pytest.fixture
def queue_identity():
    return ClientIdentity(namespace=NAMESPACE, key_name=KEY_NAME, key=KEY)


@pytest.fixture
def topic_identity():
    return ClientIdentity(namespace=NAMESPACE, kind=EntityKind.TOPIC, key_name=KEY_NAME, key=KEY)


@pytest.fixture
def queue_client(queue_identity, http_client):
    return ServiceBusClient(queue_identity, http_client=http_client)


@pytest.fixture
def topic_client(topic_identity, http_client):
    return ServiceBusClient(topic_identity, http_client=http_client)
