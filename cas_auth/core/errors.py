from typing import Optional


class CASError(Exception):
    """Base class for everything that can go wrong during a CAS login."""

    code = "cas-error"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class ConfigurationError(CASError):
    """Missing or inconsistent authsource configuration. Raised before any network I/O."""

    code = "configuration-error"


class TransportError(CASError):
    """The validation endpoint could not be reached or answered with a bad HTTP status."""

    code = "transport-error"


class ProtocolError(CASError):
    """The validation response was malformed or not a recognizable CAS response."""

    code = "unparseable-response"


class ValidationRejected(CASError):
    """The CAS server explicitly refused the ticket."""

    code = "validation-rejected"


class ExtractionError(CASError):
    """A configured attribute query could not be evaluated."""

    code = "extraction-error"

    def __init__(self, name: str, query: str, reason: str):
        super().__init__(f"attribute '{name}': invalid query '{query}' ({reason})")
        self.name = name
        self.query = query


class DirectoryError(CASError):
    """The directory lookup after CAS validation failed."""

    code = "directory-error"


class BadRequest(CASError):
    """The linkback request is missing something the CAS server should have sent back."""

    code = "bad-request"


class NoState(BadRequest):
    """The state id sent back by the CAS server does not match a saved state."""

    code = "no-state"


class AuthenticationFailed(CASError):
    """
    The single outcome shown to the end user when a login fails.
    The underlying typed error is kept on `.error` for operators.
    """

    code = "authentication-failed"

    def __init__(self, error: CASError):
        super().__init__("Authentication failed")
        self.error = error
