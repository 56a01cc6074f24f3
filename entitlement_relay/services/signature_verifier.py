"""
Signature Verifier - JWS verification against a pinned certificate chain.

App Store Server Notifications v2 are compact JWS strings whose header
carries the signing certificate chain in ``x5c`` (leaf, intermediate, root).
The embedded chain is never trusted on its own: every link is checked and
the chain must terminate at one of the pinned roots.

The verifier holds only immutable configuration, so one instance can be
shared by concurrent requests and worker threads.
"""

import base64
import binascii
import json
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import jwt
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.x509.oid import ObjectIdentifier
from structlog import get_logger

from entitlement_relay.exceptions import (
    InvalidSignatureError,
    MalformedEnvelopeError,
    UntrustedCertificateError,
)
from entitlement_relay.models.domain import Clock, utc_now

logger = get_logger(__name__)

# Marker extensions Apple puts on its App Store signing certificates
APPLE_LEAF_OID = ObjectIdentifier("1.2.840.113635.100.6.11.1")
APPLE_INTERMEDIATE_OID = ObjectIdentifier("1.2.840.113635.100.6.2.1")


@dataclass(frozen=True)
class VerifiedJws:
    """Header and payload of a JWS whose signature and chain were checked."""

    header: dict[str, Any]
    payload: dict[str, Any]
    signing_certificate: x509.Certificate


def load_trusted_roots(paths: Iterable[str]) -> list[x509.Certificate]:
    """
    Load pinned root certificates from disk.

    Args:
        paths: Files holding one DER or PEM encoded certificate each

    Returns:
        Parsed certificates, in the given order
    """
    roots: list[x509.Certificate] = []
    for path in paths:
        data = Path(path).read_bytes()
        if data.lstrip().startswith(b"-----BEGIN"):
            cert = x509.load_pem_x509_certificate(data)
        else:
            cert = x509.load_der_x509_certificate(data)
        roots.append(cert)
        logger.info(
            "trusted_root_loaded",
            path=path,
            subject=cert.subject.rfc4514_string(),
        )
    return roots


def _millis_to_datetime(value: object) -> datetime:
    """Convert an epoch-milliseconds claim to an aware datetime."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MalformedEnvelopeError(f"expected epoch milliseconds, got {value!r}")
    return datetime.fromtimestamp(value / 1000, tz=UTC)


class SignatureVerifier:
    """
    Verifies compact JWS strings signed by a certificate chain in ``x5c``.

    Order of checks:
    1. header parses and declares an allow-listed algorithm
    2. every certificate in ``x5c`` is issued by the next one
    3. the chain ends at (or directly below) a pinned root
    4. the signature over header.payload verifies with the leaf key
    5. every certificate was valid at the payload's ``signedDate``
    """

    def __init__(
        self,
        trusted_roots: Sequence[x509.Certificate],
        allowed_algorithms: Iterable[str] = ("ES256",),
        verify_apple_oids: bool = True,
        clock: Clock = utc_now,
    ) -> None:
        """
        Initialize the verifier.

        Args:
            trusted_roots: Pinned root certificates
            allowed_algorithms: JWS ``alg`` values that may be accepted
            verify_apple_oids: Require Apple's marker OIDs on leaf and intermediate
            clock: Fallback effective date when a payload has no ``signedDate``
        """
        self._roots = tuple(trusted_roots)
        self._root_fingerprints = frozenset(
            root.fingerprint(hashes.SHA256()) for root in self._roots
        )
        self._allowed_algorithms = frozenset(allowed_algorithms)
        self._verify_apple_oids = verify_apple_oids
        self._clock = clock
        self._jws = jwt.PyJWS()

        if not self._roots:
            logger.warning("signature_verifier_without_roots")

    def verify(self, signed: str) -> VerifiedJws:
        """
        Verify a compact JWS and return its decoded content.

        Raises:
            MalformedEnvelopeError: If the JWS or its certificates cannot be parsed
            InvalidSignatureError: If the algorithm is not allowed or the signature fails
            UntrustedCertificateError: If the chain does not validate to a pinned root
        """
        header = self._read_header(signed)

        algorithm = header.get("alg")
        if algorithm not in self._allowed_algorithms:
            raise InvalidSignatureError(f"algorithm {algorithm!r} is not allowed")

        chain = self._load_chain(header)
        self._validate_chain(chain)

        payload_bytes = self._verify_signature(signed, chain[0], algorithm)
        payload = self._parse_payload(payload_bytes)

        effective_date = (
            _millis_to_datetime(payload["signedDate"])
            if "signedDate" in payload
            else self._clock()
        )
        self._check_validity(chain, effective_date)

        return VerifiedJws(header=header, payload=payload, signing_certificate=chain[0])

    def _read_header(self, signed: str) -> dict[str, Any]:
        if not isinstance(signed, str) or signed.count(".") != 2:
            raise MalformedEnvelopeError("expected a compact JWS with three segments")
        try:
            header: dict[str, Any] = jwt.get_unverified_header(signed)
        except jwt.InvalidTokenError as exc:
            raise MalformedEnvelopeError(f"unreadable JWS header: {exc}") from exc
        return header

    def _load_chain(self, header: dict[str, Any]) -> list[x509.Certificate]:
        x5c = header.get("x5c")
        if not isinstance(x5c, list) or not x5c:
            raise MalformedEnvelopeError("JWS header has no x5c certificate chain")

        chain: list[x509.Certificate] = []
        for encoded in x5c:
            if not isinstance(encoded, str):
                raise MalformedEnvelopeError("x5c entries must be base64 strings")
            try:
                chain.append(x509.load_der_x509_certificate(base64.b64decode(encoded, validate=True)))
            except (binascii.Error, ValueError) as exc:
                raise MalformedEnvelopeError(f"unreadable x5c certificate: {exc}") from exc
        return chain

    def _validate_chain(self, chain: list[x509.Certificate]) -> None:
        if not self._roots:
            raise UntrustedCertificateError("no trusted roots are configured")

        if self._verify_apple_oids:
            if len(chain) != 3:
                raise UntrustedCertificateError(
                    f"expected leaf, intermediate and root, got {len(chain)} certificates"
                )
            _require_extension(chain[0], APPLE_LEAF_OID, "leaf")
            _require_extension(chain[1], APPLE_INTERMEDIATE_OID, "intermediate")

        for cert, issuer in zip(chain, chain[1:]):
            if not _issued_by(cert, issuer):
                raise UntrustedCertificateError(
                    f"{cert.subject.rfc4514_string()} is not issued by "
                    f"{issuer.subject.rfc4514_string()}"
                )

        anchor = chain[-1]
        if anchor.fingerprint(hashes.SHA256()) in self._root_fingerprints:
            return
        if any(_issued_by(anchor, root) for root in self._roots):
            return
        raise UntrustedCertificateError("certificate chain does not end at a pinned root")

    def _verify_signature(self, signed: str, leaf: x509.Certificate, algorithm: str) -> bytes:
        try:
            decoded = self._jws.decode_complete(
                signed,
                key=leaf.public_key(),  # type: ignore[arg-type]
                algorithms=[algorithm],
            )
        except jwt.InvalidSignatureError as exc:
            raise InvalidSignatureError("signature does not match the signing certificate") from exc
        except jwt.InvalidKeyError as exc:
            raise InvalidSignatureError(f"signing key does not fit {algorithm}: {exc}") from exc
        except jwt.InvalidTokenError as exc:
            raise MalformedEnvelopeError(f"unreadable JWS: {exc}") from exc
        payload: bytes = decoded["payload"]
        return payload

    def _parse_payload(self, payload_bytes: bytes) -> dict[str, Any]:
        try:
            payload = json.loads(payload_bytes)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise MalformedEnvelopeError(f"payload is not JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise MalformedEnvelopeError("payload must be a JSON object")
        return payload

    def _check_validity(self, chain: list[x509.Certificate], at: datetime) -> None:
        for cert in chain:
            if not cert.not_valid_before_utc <= at <= cert.not_valid_after_utc:
                raise UntrustedCertificateError(
                    f"{cert.subject.rfc4514_string()} was not valid at {at.isoformat()}"
                )


def _issued_by(cert: x509.Certificate, issuer: x509.Certificate) -> bool:
    """True if ``issuer`` signed ``cert``."""
    try:
        cert.verify_directly_issued_by(issuer)
    except (ValueError, TypeError, InvalidSignature):
        return False
    return True


def _require_extension(cert: x509.Certificate, oid: ObjectIdentifier, role: str) -> None:
    try:
        cert.extensions.get_extension_for_oid(oid)
    except x509.ExtensionNotFound as exc:
        raise UntrustedCertificateError(f"{role} certificate lacks marker OID {oid.dotted_string}") from exc
