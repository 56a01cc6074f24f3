"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""


class RelayError(Exception):
    """Base exception for all entitlement relay errors."""

    pass


# ============================================================================
# Inbound notification rejections (answered with HTTP 400, nothing mutated)
# ============================================================================


class NotificationRejectedError(RelayError):
    """Raised when an inbound notification cannot be accepted."""

    code = "rejected"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class MalformedEnvelopeError(NotificationRejectedError):
    """Raised when the signed envelope or its payload cannot be parsed."""

    code = "malformed_envelope"

    def __init__(self, message: str) -> None:
        super().__init__(f"Malformed envelope: {message}")


class InvalidSignatureError(NotificationRejectedError):
    """Raised when the cryptographic signature check fails."""

    code = "invalid_signature"

    def __init__(self, message: str) -> None:
        super().__init__(f"Invalid signature: {message}")


class UntrustedCertificateError(NotificationRejectedError):
    """Raised when the embedded certificate chain does not lead to a pinned root."""

    code = "untrusted_certificate"

    def __init__(self, message: str) -> None:
        super().__init__(f"Untrusted certificate: {message}")


class UnsupportedPayloadVersionError(NotificationRejectedError):
    """Raised when the notification declares a version outside the supported set."""

    code = "unsupported_payload_version"

    def __init__(self, version: str, supported: frozenset[str]) -> None:
        self.version = version
        self.supported = supported
        super().__init__(
            f"Unsupported payload version {version!r} (supported: {', '.join(sorted(supported))})"
        )


# ============================================================================
# Ledger
# ============================================================================


class LedgerConflictError(RelayError):
    """Raised when an entitlement record was modified concurrently."""

    def __init__(self, user_id: str, product_id: str, expected_version: int) -> None:
        self.user_id = user_id
        self.product_id = product_id
        self.expected_version = expected_version
        super().__init__(
            f"Concurrent modification of entitlement {user_id}/{product_id} "
            f"(expected version {expected_version})"
        )


# ============================================================================
# Downstream collaborators
# ============================================================================


class DownstreamUnavailableError(RelayError):
    """Raised when the CRM or push gateway cannot be reached or refuses a request."""

    def __init__(self, service: str, message: str) -> None:
        self.service = service
        self.message = message
        super().__init__(f"{service} unavailable: {message}")


class CrmJobNotFoundError(RelayError):
    """Raised when a CRM sync job id does not exist."""

    def __init__(self, job_id: int) -> None:
        self.job_id = job_id
        super().__init__(f"CRM sync job not found: {job_id}")


class AuthenticationError(RelayError):
    """Raised when authentication fails (invalid admin key)."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Authentication failed: {message}")
