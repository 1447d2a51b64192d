"""
Service Bus REST Client

Synchronous client for the Service Bus REST API: send, peek-lock, unlock
and delete against queues and topic subscriptions.

Every call is authenticated independently with a freshly minted SAS token,
and every call goes through the same request-construction path:

    URL build -> api-version merge -> SAS Authorization header -> body

The client holds no per-message state. A message's true state lives on the
server, so each operation attempts a transition and trusts the status code:

    Unseen --peek-lock (201)--> Locked --delete (200)--> Deleted
                                Locked --unlock (200)--> Unseen
                                Locked --lock expiry---> Unseen

A delete or unlock after the lock expired fails like any other request.

Reference: https://learn.microsoft.com/en-us/rest/api/servicebus/
"""

import json
import logging
from datetime import datetime
from typing import Callable, Optional, Union
from urllib.parse import parse_qsl, quote, urlencode, urlsplit, urlunsplit

import httpx

from asbclient.auth.sas import SharedAccessSigner

from .errors import read_error
from .exceptions import (
    ConfigurationError,
    DecodeError,
    InvalidEntityNameError,
    InvalidOperationError,
    InvalidUriError,
    SubscriptionRequiredError,
    TransportError,
)
from .models import (
    BrokerProperties,
    ClientIdentity,
    EntityKind,
    EntityNameValidator,
    MessageRequest,
    ReceivedMessage,
)

logger = logging.getLogger(__name__)


API_VERSION = "2017-04"

# Seconds the server may hold a peek-lock request open waiting for a message
DEFAULT_PEEK_TIMEOUT = 60

DEFAULT_HTTP_TIMEOUT = 90.0


class ServiceBusClient:
    """
    Client for one Service Bus namespace.

    Safe to share between threads: the identity is immutable and each call
    allocates its own request and response. Nothing is retried; callers
    poll and back off on their own.

    Example:
        identity = ClientIdentity(namespace="tester", key_name="...", key="...")
        with ServiceBusClient(identity) as client:
            client.send("orders", MessageRequest(body=b"hello"))
            message = client.peek_lock_message("orders", timeout=30)
            if message is not None:
                client.delete_message(message)
    """

    def __init__(
        self,
        identity: ClientIdentity,
        http_client: Optional[httpx.Client] = None,
        *,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """
        Initialize client.

        Args:
            identity: Namespace, entity kind and shared access credential
            http_client: Transport to use; one is created (and owned) if omitted
            timeout: HTTP timeout in seconds for an owned transport. Keep it
                above the peek-lock timeout, which the server may wait out.
            clock: Signing clock, for tests
        """
        self.identity = identity
        self._signer = SharedAccessSigner(identity.key_name, identity.key_bytes, clock=clock)
        self._owns_http = http_client is None
        self._http = http_client if http_client is not None else httpx.Client(timeout=timeout)

    def close(self) -> None:
        """Close the transport if this client created it."""
        if self._owns_http:
            self._http.close()

    def __enter__(self) -> "ServiceBusClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ========== Request construction ==========

    def _prepare_url(self, url: str) -> str:
        """
        Validate ``url`` and merge the api-version query parameter into it.

        Existing query parameters are kept; the query is re-encoded with
        keys in sorted order.

        Raises:
            InvalidUriError: If ``url`` is not an absolute http(s) URL
        """
        try:
            parts = urlsplit(url)
        except ValueError as exc:
            raise InvalidUriError(url, str(exc)) from exc

        if parts.scheme not in ("http", "https"):
            raise InvalidUriError(url, f"unsupported scheme '{parts.scheme}'")
        if not parts.hostname:
            raise InvalidUriError(url, "missing host")

        params = [
            (name, value)
            for name, value in parse_qsl(parts.query, keep_blank_values=True)
            if name != "api-version"
        ]
        params.append(("api-version", API_VERSION))
        params.sort(key=lambda item: item[0])

        return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(params), ""))

    def _build_request(
        self,
        method: str,
        url: str,
        message: Optional[MessageRequest] = None
    ) -> httpx.Request:
        """Build a signed request; the only place requests are constructed."""
        request_url = self._prepare_url(url)
        signed = self._signer.sign_request(method, request_url)

        headers = {}
        content = b""
        if message is not None:
            headers.update(message.custom_headers())
            headers["BrokerProperties"] = json.dumps(message.broker_properties())
            if message.content_type:
                headers["Content-Type"] = message.content_type
            content = message.body

        headers["Accept"] = "application/json"
        headers["Authorization"] = signed.authorization

        return self._http.build_request(signed.method, request_url, headers=headers, content=content)

    def _send(self, request: httpx.Request) -> httpx.Response:
        """
        Issue ``request``.

        The response body is always read in full and the connection handed
        back to the pool before this returns, whatever the status.

        Raises:
            TransportError: If the HTTP exchange itself failed
        """
        try:
            response = self._http.send(request)
        except httpx.RequestError as exc:
            logger.warning(f"{request.method} {request.url} failed: {exc!r}")
            raise TransportError(request.method, str(request.url), str(exc) or type(exc).__name__) from exc

        logger.debug(f"{request.method} {request.url} -> {response.status_code}")
        return response

    # ========== Validation helpers ==========

    def _validate_name(self, entity_type: str, name: str) -> None:
        is_valid, error = EntityNameValidator.validate(name)
        if not is_valid:
            raise InvalidEntityNameError(entity_type, name, error)

    @staticmethod
    def _require_lock(message: ReceivedMessage, operation: str) -> str:
        location = getattr(message, "location", None)
        if not location:
            raise InvalidOperationError(operation, "message has no location; only peek-locked messages can be settled")
        if not message.lock_token:
            raise InvalidOperationError(operation, "message has no lock token")
        return location

    @staticmethod
    def _unlock_url(location: str, lock_token: str) -> str:
        """Address of the lock itself: the location, ending with the lock token."""
        parts = urlsplit(location)
        path = parts.path.rstrip("/")
        if not path.endswith("/" + lock_token):
            path = f"{path}/{quote(lock_token, safe='')}"
        return urlunsplit((parts.scheme, parts.netloc, path, parts.query, ""))

    # ========== Operations ==========

    def send(self, path: str, message: Union[MessageRequest, bytes, str]) -> None:
        """
        Send a message to the queue or topic at ``path``.

        Args:
            path: Queue or topic name
            message: Message to send; bare bytes or text become the body

        Raises:
            InvalidEntityNameError: If ``path`` is not a valid entity name
            TransportError: If the request could not be sent
            ProtocolError: If the service did not answer 200 or 201
        """
        self._validate_name(self.identity.kind.value, path)
        if not isinstance(message, MessageRequest):
            message = MessageRequest(body=message)

        request = self._build_request("POST", f"{self.identity.base_url}{path}/messages/", message)
        response = self._send(request)

        if response.status_code in (httpx.codes.OK, httpx.codes.CREATED):
            logger.info(f"Sent message to {path} ({len(message.body)} bytes)")
            return

        raise read_error(response)

    def peek_lock_message(
        self,
        path: str,
        timeout: int = DEFAULT_PEEK_TIMEOUT,
        subscription: Optional[str] = None
    ) -> Optional[ReceivedMessage]:
        """
        Atomically retrieve and lock the next message at ``path``.

        The message stays invisible to other receivers until it is deleted,
        unlocked, or the lock expires on the server.

        Args:
            path: Queue name, or topic name for topic clients
            timeout: Seconds the server may wait for a message to arrive
            subscription: Subscription to read from (topics only); defaults
                to the identity's subscription

        Returns:
            The locked message, or None if nothing arrived within ``timeout``

        Raises:
            SubscriptionRequiredError: Topic client and no subscription given
            ConfigurationError: Subscription given for a queue, or negative timeout
            TransportError: If the request could not be sent
            ProtocolError: If the service answered anything but 201 or 204
            DecodeError: If a 201 response could not be decoded
        """
        self._validate_name(self.identity.kind.value, path)
        if timeout < 0:
            raise ConfigurationError(f"Peek-lock timeout must not be negative, got {timeout}")

        if self.identity.kind == EntityKind.TOPIC:
            subscription = subscription or self.identity.subscription
            if not subscription:
                raise SubscriptionRequiredError(path)
            self._validate_name("subscription", subscription)
            entity_url = f"{self.identity.base_url}{path}/subscriptions/{subscription}/"
        else:
            if subscription is not None:
                raise ConfigurationError(f"Subscriptions only apply to topics, not queue '{path}'")
            entity_url = f"{self.identity.base_url}{path}/"

        request = self._build_request("POST", f"{entity_url}messages/head?timeout={int(timeout)}")
        response = self._send(request)

        if response.status_code == httpx.codes.NO_CONTENT:
            logger.debug(f"No message available at {path}")
            return None

        if response.status_code != httpx.codes.CREATED:
            raise read_error(response)

        message = self._decode_locked_message(response)
        logger.info(
            f"Locked message {message.message_id} from {path} "
            f"(delivery {message.delivery_count}, locked until {message.locked_until_utc})"
        )
        return message

    def _decode_locked_message(self, response: httpx.Response) -> ReceivedMessage:
        """Build a ReceivedMessage from a 201 peek-lock response."""
        properties = BrokerProperties.from_header(response.headers.get("BrokerProperties"))

        location = response.headers.get("Location")
        if not location:
            raise DecodeError("missing Location header")
        location = str(response.request.url.join(location))

        return ReceivedMessage(
            properties=properties,
            location=location,
            body=response.content,
            content_type=response.headers.get("Content-Type"),
        )

    def delete_message(self, message: ReceivedMessage) -> None:
        """
        Delete a peek-locked message after it was processed.

        Raises:
            InvalidOperationError: If ``message`` was not obtained by peek-lock
            TransportError: If the request could not be sent
            ProtocolError: If the service did not answer 200, e.g. the lock
                already expired
        """
        location = self._require_lock(message, "delete")
        response = self._send(self._build_request("DELETE", location))

        if response.status_code == httpx.codes.OK:
            logger.info(f"Deleted message {message.message_id}")
            return

        raise read_error(response)

    def unlock(self, message: ReceivedMessage) -> None:
        """
        Release the lock on a message so any receiver can get it again.

        Raises:
            InvalidOperationError: If ``message`` was not obtained by peek-lock
            TransportError: If the request could not be sent
            ProtocolError: If the service did not answer 200
        """
        location = self._require_lock(message, "unlock")
        url = self._unlock_url(location, message.lock_token)
        response = self._send(self._build_request("PUT", url))

        if response.status_code == httpx.codes.OK:
            logger.info(f"Unlocked message {message.message_id}")
            return

        raise read_error(response)

    def subscription(self, topic: str, name: str) -> "SubscriptionReceiver":
        """
        Return a receiver bound to one topic subscription.

        Raises:
            ConfigurationError: If this is a queue client
            InvalidEntityNameError: If a name is invalid
        """
        if self.identity.kind != EntityKind.TOPIC:
            raise ConfigurationError("Subscriptions are only available on topic clients")
        return SubscriptionReceiver(self, topic, name)


class SubscriptionReceiver:
    """
    Receiver for a single topic subscription.

    The subscription is fixed at construction, so receivers for different
    subscriptions can run concurrently on the same client.
    """

    def __init__(self, client: ServiceBusClient, topic: str, subscription: str):
        client._validate_name("topic", topic)
        client._validate_name("subscription", subscription)
        self._client = client
        self.topic = topic
        self.subscription = subscription

    def peek_lock_message(self, timeout: int = DEFAULT_PEEK_TIMEOUT) -> Optional[ReceivedMessage]:
        """Peek-lock the next message of this subscription."""
        return self._client.peek_lock_message(self.topic, timeout, subscription=self.subscription)

    def delete_message(self, message: ReceivedMessage) -> None:
        self._client.delete_message(message)

    def unlock(self, message: ReceivedMessage) -> None:
        self._client.unlock(message)
