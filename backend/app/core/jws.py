"""Verification of Apple-signed JWS tokens.

App Store Server Notifications V2 deliver a JWS whose header carries the
signing certificate chain (``x5c``). A token is trusted only when:

* the header algorithm is ES256,
* every certificate in ``x5c`` is inside its validity window,
* each certificate is signed by the next one in the chain,
* the last certificate is (or is issued by) a configured Apple root,
* the leaf and intermediate carry Apple's marker extensions,
* the JWS signature verifies against the leaf public key.

The same check applies to the nested ``signedTransactionInfo`` and
``signedRenewalInfo`` tokens.
"""

import base64
import binascii
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import jwt
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ObjectIdentifier

from app.core.errors import VerificationError


# Marker extensions Apple sets on its App Store signing certificates.
APPLE_LEAF_MARKER_OID = ObjectIdentifier("1.2.840.113635.100.6.11.1")
APPLE_INTERMEDIATE_MARKER_OID = ObjectIdentifier("1.2.840.113635.100.6.2.1")


def load_root_certificates(pem_bundle: str) -> list[x509.Certificate]:
    """Parse a PEM bundle into certificates; an empty bundle yields []."""
    if not pem_bundle or not pem_bundle.strip():
        return []
    try:
        return x509.load_pem_x509_certificates(pem_bundle.encode())
    except ValueError as exc:
        raise VerificationError("Configured Apple root certificates are not valid PEM") from exc


def _fingerprint(cert: x509.Certificate) -> bytes:
    return cert.fingerprint(hashes.SHA256())


class AppleJWSVerifier:
    """Verify Apple JWS tokens against a set of trusted root certificates."""

    def __init__(
        self,
        root_certificates: list[x509.Certificate],
        check_marker_oids: bool = True,
        clock: Callable[[], datetime] | None = None,
    ):
        self.root_certificates = root_certificates
        self.check_marker_oids = check_marker_oids
        self.clock = clock or (lambda: datetime.now(UTC))

    def verify(self, token: str) -> dict[str, Any]:
        """Verify ``token`` and return its payload."""
        if not self.root_certificates:
            raise VerificationError("No Apple root certificates configured")

        try:
            header = jwt.get_unverified_header(token)
        except jwt.DecodeError as exc:
            raise VerificationError("Malformed JWS") from exc

        if header.get("alg") != "ES256":
            raise VerificationError(f"Unexpected JWS algorithm: {header.get('alg')}")

        chain = self._load_chain(header.get("x5c"))
        self._verify_chain(chain)

        leaf_key = chain[0].public_key()
        if not isinstance(leaf_key, ec.EllipticCurvePublicKey):
            raise VerificationError("Leaf certificate does not carry an EC key")

        try:
            payload: dict[str, Any] = jwt.decode(
                token,
                key=leaf_key,
                algorithms=["ES256"],
                options={"verify_aud": False, "verify_exp": False},
            )
        except jwt.InvalidTokenError as exc:
            raise VerificationError(f"JWS signature verification failed: {exc}") from exc
        return payload

    def _load_chain(self, x5c: Any) -> list[x509.Certificate]:
        if not isinstance(x5c, list) or len(x5c) < 2:
            raise VerificationError("JWS header is missing the x5c certificate chain")
        chain = []
        for encoded in x5c:
            try:
                chain.append(x509.load_der_x509_certificate(base64.b64decode(encoded)))
            except (ValueError, TypeError, binascii.Error) as exc:
                raise VerificationError("x5c contains an unreadable certificate") from exc
        return chain

    def _verify_chain(self, chain: list[x509.Certificate]) -> None:
        now = self.clock()
        for cert in chain:
            if not cert.not_valid_before_utc <= now <= cert.not_valid_after_utc:
                raise VerificationError(
                    f"Certificate {cert.subject.rfc4514_string()} is outside its validity window"
                )

        for child, issuer in zip(chain, chain[1:], strict=False):
            self._check_issued_by(child, issuer)

        anchor = chain[-1]
        root_prints = {_fingerprint(root) for root in self.root_certificates}
        if _fingerprint(anchor) not in root_prints:
            for root in self.root_certificates:
                try:
                    anchor.verify_directly_issued_by(root)
                    break
                except (ValueError, TypeError, InvalidSignature):
                    continue
            else:
                raise VerificationError("Certificate chain does not end in a trusted Apple root")

        if self.check_marker_oids:
            self._check_marker(chain[0], APPLE_LEAF_MARKER_OID, "leaf")
            self._check_marker(chain[1], APPLE_INTERMEDIATE_MARKER_OID, "intermediate")

    @staticmethod
    def _check_issued_by(child: x509.Certificate, issuer: x509.Certificate) -> None:
        try:
            child.verify_directly_issued_by(issuer)
        except (ValueError, TypeError, InvalidSignature) as exc:
            raise VerificationError(
                f"Certificate {child.subject.rfc4514_string()} is not signed by its issuer"
            ) from exc

    @staticmethod
    def _check_marker(cert: x509.Certificate, oid: ObjectIdentifier, role: str) -> None:
        try:
            cert.extensions.get_extension_for_oid(oid)
        except x509.ExtensionNotFound:
            raise VerificationError(f"The {role} certificate is not an Apple signing certificate") from None
