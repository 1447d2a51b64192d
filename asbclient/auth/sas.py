"""
Shared Access Signature (SAS) token generation for Azure Service Bus.

Every REST call to Service Bus carries its own time-limited token in the
Authorization header; there is no session or handshake. The token is built
from the request URI and the shared access key:

    sr  = lower(query_escape(uri))
    se  = now + 300s, as Unix seconds
    sig = query_escape(base64(HMAC-SHA256(key, sr + "\\n" + se)))

    Authorization: SharedAccessSignature sig=<sig>&se=<se>&skn=<key name>&sr=<sr>

Reference: https://learn.microsoft.com/en-us/rest/api/servicebus/authentication-and-authorization
"""

import base64
import hashlib
import hmac
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Union
from urllib.parse import quote_plus

from asbclient.auth.exceptions import (
    InvalidAuthorizationHeaderError,
    UnsupportedAuthSchemeError,
)

logger = logging.getLogger(__name__)


# Fixed by the protocol
SAS_VALIDITY_SECONDS = 300

SAS_SCHEME = "SharedAccessSignature"


@dataclass(frozen=True)
class SignedRequest:
    """The signing artefacts for a single outbound HTTP call."""

    method: str
    uri: str
    canonical_uri: str
    expiry: str
    signature: str
    authorization: str


@dataclass(frozen=True)
class SasToken:
    """Fields of a parsed SharedAccessSignature header."""

    signature: str  # sig
    expiry: str  # se
    key_name: str  # skn
    resource: str  # sr

    @property
    def expires_at(self) -> datetime:
        return datetime.fromtimestamp(int(self.expiry), tz=timezone.utc)


def compute_expiry(now: Optional[datetime] = None) -> str:
    """
    Compute the ``se`` field for a token minted at ``now``.

    Args:
        now: Signing time; naive values are taken as UTC. Defaults to the
            current time.

    Returns:
        Unix epoch seconds, rounded to the nearest second, as a string
    """
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    expires = now.timestamp() + SAS_VALIDITY_SECONDS
    return str(math.floor(expires + 0.5))


def canonicalize(uri: str) -> str:
    """
    Build the ``sr`` field for ``uri``.

    The whole URI is escaped as a query component (only ``A-Za-z0-9-_.~``
    survive, space becomes ``+``) and then lower-cased, hex digits included.
    Applying this twice is not a no-op: ``%`` is re-escaped as ``%25``.

    Args:
        uri: Absolute request URI, including its query string

    Returns:
        Canonical URI
    """
    return quote_plus(uri, safe="").lower()


def build_signing_input(canonical_uri: str, expiry: str) -> str:
    """Return the string-to-sign: canonical URI and expiry on two lines."""
    return f"{canonical_uri}\n{expiry}"


def sign(signing_input: str, secret: Union[bytes, str]) -> str:
    """
    Compute the ``sig`` field.

    Signature = QueryEscape(Base64(HMAC-SHA256(UTF8(StringToSign), Key)))

    The key is used verbatim; unlike storage account keys it is not
    base64-decoded first.

    Args:
        signing_input: Output of :func:`build_signing_input`
        secret: Shared access key value

    Returns:
        Percent-encoded base64 signature
    """
    if isinstance(secret, str):
        secret = secret.encode("utf-8")

    digest = hmac.new(secret, signing_input.encode("utf-8"), hashlib.sha256).digest()
    encoded = base64.b64encode(digest).decode("ascii")

    return quote_plus(encoded, safe="")


def format_auth_header(token: SasToken) -> str:
    """
    Render a token as an Authorization header value.

    The only place the header layout is defined; the inverse of
    :func:`parse_auth_header`.
    """
    return (
        f"{SAS_SCHEME} sig={token.signature}&se={token.expiry}"
        f"&skn={token.key_name}&sr={token.resource}"
    )


def build_auth_header(
    uri: str,
    expiry: str,
    key_name: str,
    secret: Union[bytes, str]
) -> str:
    """
    Assemble the Authorization header value for ``uri``.

    Args:
        uri: Absolute request URI (not yet canonicalized)
        expiry: Output of :func:`compute_expiry`
        key_name: Shared access policy name
        secret: Shared access key value

    Returns:
        ``SharedAccessSignature sig=...&se=...&skn=...&sr=...``
    """
    canonical_uri = canonicalize(uri)
    signature = sign(build_signing_input(canonical_uri, expiry), secret)
    return format_auth_header(SasToken(
        signature=signature,
        expiry=expiry,
        key_name=key_name,
        resource=canonical_uri,
    ))


def parse_auth_header(auth_header: str) -> SasToken:
    """
    Parse a SharedAccessSignature Authorization header.

    Args:
        auth_header: Authorization header value

    Returns:
        SasToken with the raw (still escaped) field values

    Raises:
        UnsupportedAuthSchemeError: If the scheme is not SharedAccessSignature
        InvalidAuthorizationHeaderError: If a field is missing or empty
    """
    parts = auth_header.strip().split(maxsplit=1)

    if len(parts) != 2:
        raise InvalidAuthorizationHeaderError(
            "Authorization header must be in format: SharedAccessSignature sig=..&se=..&skn=..&sr=.."
        )

    scheme, credentials = parts

    if scheme != SAS_SCHEME:
        raise UnsupportedAuthSchemeError(scheme)

    fields = {}
    for item in credentials.split("&"):
        name, sep, value = item.partition("=")
        if not sep:
            raise InvalidAuthorizationHeaderError(f"Malformed token field: {item!r}")
        fields[name] = value

    missing = [name for name in ("sig", "se", "skn", "sr") if not fields.get(name)]
    if missing:
        raise InvalidAuthorizationHeaderError(
            f"Missing token fields: {', '.join(missing)}"
        )

    if not fields["se"].isdigit():
        raise InvalidAuthorizationHeaderError(f"Invalid expiry: {fields['se']}")

    return SasToken(
        signature=fields["sig"],
        expiry=fields["se"],
        key_name=fields["skn"],
        resource=fields["sr"],
    )


class SharedAccessSigner:
    """
    Mints a fresh SAS token for each request.

    Holds only the credential and a clock, so one signer can be shared
    across threads.
    """

    def __init__(
        self,
        key_name: str,
        key: Union[bytes, str],
        clock: Optional[Callable[[], datetime]] = None
    ):
        """
        Initialize signer.

        Args:
            key_name: Shared access policy name (``skn``)
            key: Shared access key value
            clock: Returns the signing time; defaults to ``datetime.now(timezone.utc)``
        """
        self.key_name = key_name
        self._key = key.encode("utf-8") if isinstance(key, str) else bytes(key)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def sign_request(self, method: str, uri: str) -> SignedRequest:
        """
        Produce the signing artefacts for one request.

        Args:
            method: HTTP method
            uri: Final request URI, query string included

        Returns:
            SignedRequest whose ``authorization`` goes into the header
        """
        expiry = compute_expiry(self._clock())
        canonical_uri = canonicalize(uri)
        signature = sign(build_signing_input(canonical_uri, expiry), self._key)
        authorization = format_auth_header(SasToken(
            signature=signature,
            expiry=expiry,
            key_name=self.key_name,
            resource=canonical_uri,
        ))

        logger.debug(f"Signed {method.upper()} request, token expires at {expiry}")

        return SignedRequest(
            method=method.upper(),
            uri=uri,
            canonical_uri=canonical_uri,
            expiry=expiry,
            signature=signature,
            authorization=authorization,
        )

    def verify(self, auth_header: str, now: Optional[datetime] = None) -> SasToken:
        """
        Check that ``auth_header`` was signed with this signer's key.

        Args:
            auth_header: Authorization header value
            now: Time to check expiry against; defaults to the signer's clock

        Returns:
            Parsed token

        Raises:
            InvalidAuthorizationHeaderError: If the header is malformed,
                signed by another key or expired
        """
        token = parse_auth_header(auth_header)

        if token.key_name != self.key_name:
            raise InvalidAuthorizationHeaderError(f"Unknown key name: {token.key_name}")

        expected = sign(build_signing_input(token.resource, token.expiry), self._key)
        if not hmac.compare_digest(expected, token.signature):
            raise InvalidAuthorizationHeaderError("Signature mismatch")

        now = now or self._clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        if now >= token.expires_at:
            raise InvalidAuthorizationHeaderError("SAS token has expired")

        return token
