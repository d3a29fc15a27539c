"""TLS certificate inspection for fleet sites."""
from __future__ import annotations

import hashlib
import socket
import ssl
from dataclasses import dataclass
from datetime import UTC, datetime

from cryptography import x509
from cryptography.hazmat.primitives import serialization

DEFAULT_TLS_PORT = 443


class TLSInspectionError(RuntimeError):
    """Raised when no certificate could be obtained from the endpoint."""


@dataclass(frozen=True)
class CertificateDetails:
    """Fields of an X.509 certificate relevant to health reporting."""

    subject: str
    issuer: str
    not_before: datetime
    not_after: datetime
    serial_number: str
    subject_alt_names: tuple[str, ...]
    fingerprint_sha256: str

    def days_until_expiry(self, now: datetime | None = None) -> int:
        """Return whole days left until ``not_after`` (negative once expired)."""
        current = now or datetime.now(tz=UTC)
        return (self.not_after - current).days

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "subject": self.subject,
            "issuer": self.issuer,
            "not_before": self.not_before.isoformat(),
            "not_after": self.not_after.isoformat(),
            "serial_number": self.serial_number,
            "subject_alt_names": list(self.subject_alt_names),
            "fingerprint_sha256": self.fingerprint_sha256,
        }


@dataclass(frozen=True)
class TLSHandshake:
    """Result of connecting to a TLS endpoint."""

    certificate: CertificateDetails
    verified: bool
    verification_error: str | None
    protocol: str | None
    cipher: str | None


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _load_certificate(data: bytes) -> x509.Certificate:
    if data.lstrip().startswith(b"-----BEGIN"):
        return x509.load_pem_x509_certificate(data)
    return x509.load_der_x509_certificate(data)


def parse_certificate(data: bytes) -> CertificateDetails:
    """Parse a PEM or DER encoded certificate."""
    try:
        cert = _load_certificate(data)
    except ValueError as exc:
        raise TLSInspectionError(f"Unable to parse certificate: {exc}") from exc

    not_before_attr = getattr(cert, "not_valid_before_utc", None)
    not_after_attr = getattr(cert, "not_valid_after_utc", None)
    if isinstance(not_before_attr, datetime) and isinstance(not_after_attr, datetime):
        not_before = not_before_attr
        not_after = not_after_attr
    else:  # pragma: no cover - older cryptography releases
        not_before = _as_utc(cert.not_valid_before)
        not_after = _as_utc(cert.not_valid_after)

    try:
        san_ext = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
        alt_names = tuple(san_ext.value.get_values_for_type(x509.DNSName))
    except x509.ExtensionNotFound:
        alt_names = ()

    der = cert.public_bytes(serialization.Encoding.DER)
    return CertificateDetails(
        subject=cert.subject.rfc4514_string(),
        issuer=cert.issuer.rfc4514_string(),
        not_before=not_before,
        not_after=not_after,
        serial_number=format(cert.serial_number, "x"),
        subject_alt_names=alt_names,
        fingerprint_sha256=hashlib.sha256(der).hexdigest(),
    )


class TLSInspector:
    """Fetch and describe the certificate presented by a TLS endpoint.

    A verified handshake is attempted first. If verification fails the
    certificate is fetched again without verification so that it can still
    be reported (with ``verified=False``).
    """

    def __init__(self, *, timeout: float = 10.0) -> None:
        self.timeout = timeout

    def inspect(
        self,
        host: str,
        port: int = DEFAULT_TLS_PORT,
        *,
        server_name: str | None = None,
    ) -> TLSHandshake:
        """Connect to ``host:port`` and return the handshake details."""
        sni = server_name or host
        verification_error: str | None = None
        try:
            der, protocol, cipher = self._handshake(host, port, sni, verify=True)
        except ssl.SSLCertVerificationError as exc:
            verification_error = exc.verify_message or str(exc)
            try:
                der, protocol, cipher = self._handshake(host, port, sni, verify=False)
            except (OSError, ssl.SSLError) as retry_exc:
                raise TLSInspectionError(
                    f"TLS handshake with {host}:{port} failed: {retry_exc}"
                ) from retry_exc
        except (OSError, ssl.SSLError) as exc:
            raise TLSInspectionError(f"TLS handshake with {host}:{port} failed: {exc}") from exc

        return TLSHandshake(
            certificate=parse_certificate(der),
            verified=verification_error is None,
            verification_error=verification_error,
            protocol=protocol,
            cipher=cipher,
        )

    def _handshake(
        self,
        host: str,
        port: int,
        server_name: str,
        *,
        verify: bool,
    ) -> tuple[bytes, str | None, str | None]:
        context = ssl.create_default_context()
        if not verify:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        with socket.create_connection((host, port), timeout=self.timeout) as sock:
            with context.wrap_socket(sock, server_hostname=server_name) as tls_sock:
                der = tls_sock.getpeercert(binary_form=True)
                if not der:
                    raise TLSInspectionError(f"{host}:{port} presented no certificate.")
                cipher = tls_sock.cipher()
                return der, tls_sock.version(), cipher[0] if cipher else None


__all__ = [
    "CertificateDetails",
    "DEFAULT_TLS_PORT",
    "TLSHandshake",
    "TLSInspectionError",
    "TLSInspector",
    "parse_certificate",
]
