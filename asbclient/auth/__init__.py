"""
asbclient authentication module.

Shared Access Signature token generation for Service Bus REST calls.
"""

from asbclient.auth.exceptions import (
    AuthenticationError,
    InvalidAuthorizationHeaderError,
    UnsupportedAuthSchemeError,
)
from asbclient.auth.sas import (
    SAS_VALIDITY_SECONDS,
    SasToken,
    SharedAccessSigner,
    SignedRequest,
    build_auth_header,
    build_signing_input,
    canonicalize,
    compute_expiry,
    format_auth_header,
    parse_auth_header,
    sign,
)

__all__ = [
    # Exceptions
    "AuthenticationError",
    "InvalidAuthorizationHeaderError",
    "UnsupportedAuthSchemeError",
    # SAS
    "SAS_VALIDITY_SECONDS",
    "SasToken",
    "SharedAccessSigner",
    "SignedRequest",
    "build_auth_header",
    "build_signing_input",
    "canonicalize",
    "compute_expiry",
    "format_auth_header",
    "parse_auth_header",
    "sign",
]
