"""
Authentication exceptions for asbclient.
"""


class AuthenticationError(Exception):
    """Base exception for authentication errors."""
    
    def __init__(self, message: str, error_code: str = "AuthenticationFailed"):
        self.message = message
        self.error_code = error_code
        super().__init__(message)


class InvalidAuthorizationHeaderError(AuthenticationError):
    """Raised when an Authorization header is malformed."""
    
    def __init__(self, message: str = "Invalid Authorization header format"):
        super().__init__(message, "InvalidAuthorizationHeader")


class UnsupportedAuthSchemeError(InvalidAuthorizationHeaderError):
    """Raised when the header uses a scheme other than SharedAccessSignature."""
    
    def __init__(self, scheme: str):
        super().__init__(f"Unsupported authentication scheme: {scheme}")
        self.error_code = "UnsupportedAuthScheme"
