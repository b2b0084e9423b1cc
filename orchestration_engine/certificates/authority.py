# orchestration_engine/certificates/authority.py
"""
Certificate authorities.

An authority turns (domain, email) into certificate material on disk. It
proves domain ownership through the ChallengeStore that the ingress serves
under the challenge prefix.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from orchestration_engine.certificates.challenges import ChallengeStore
from orchestration_engine.core.clock import Clock, SystemClock
from orchestration_engine.core.errors import CertificateIssuanceFailure, ServiceRuntimeError
from orchestration_engine.core.models import CertificateMaterial, ServiceSpec
from orchestration_engine.runtime.base import ServiceRuntime

logger = logging.getLogger(__name__)


CERT_FILE = "fullchain.pem"
KEY_FILE = "privkey.pem"


def read_certificate_validity(cert_path: str) -> Tuple[datetime, datetime]:
    """
    Read the validity window of the leaf certificate in a PEM file.

    Raises:
        CertificateIssuanceFailure: if the file is missing or does not parse
    """
    try:
        data = Path(cert_path).read_bytes()
        certificate = x509.load_pem_x509_certificate(data)
    except FileNotFoundError as e:
        raise CertificateIssuanceFailure(f"Certificate file not found: {cert_path}") from e
    except ValueError as e:
        raise CertificateIssuanceFailure(f"Certificate file {cert_path} is not valid PEM: {e}") from e

    return certificate.not_valid_before_utc, certificate.not_valid_after_utc


class CertificateAuthority(ABC):
    """Issues certificates for domains."""

    @abstractmethod
    def issue(self, domain: str, email: Optional[str], challenges: ChallengeStore) -> CertificateMaterial:
        """
        Obtain a certificate for domain.

        Raises:
            CertificateIssuanceFailure: on any failure (challenge, CA, files)
        """
        raise NotImplementedError


# ============================================
# SELF-SIGNED
# ============================================

class SelfSignedAuthority(CertificateAuthority):
    """
    Issues self-signed certificates (development, localhost).

    Each issuance writes to its own directory so material already bound by
    the router is never overwritten.
    """

    def __init__(
        self,
        certificate_dir: str,
        *,
        validity: timedelta = timedelta(days=90),
        clock: Optional[Clock] = None,
    ):
        self._certificate_dir = Path(certificate_dir)
        self._validity = validity
        self._clock = clock or SystemClock()

    def issue(self, domain: str, email: Optional[str], challenges: ChallengeStore) -> CertificateMaterial:
        now = self._clock.now()
        not_before = now - timedelta(minutes=1)
        not_after = now + self._validity

        key = ec.generate_private_key(ec.SECP256R1())
        serial = x509.random_serial_number()
        name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)])

        certificate = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(key.public_key())
            .serial_number(serial)
            .not_valid_before(not_before)
            .not_valid_after(not_after)
            .add_extension(x509.SubjectAlternativeName([x509.DNSName(domain)]), critical=False)
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .sign(key, hashes.SHA256())
        )

        target = self._certificate_dir / domain / f"{now.strftime('%Y%m%dT%H%M%S')}-{serial % 16 ** 8:08x}"
        try:
            target.mkdir(parents=True, exist_ok=True)
            cert_path = target / CERT_FILE
            key_path = target / KEY_FILE
            cert_path.write_bytes(certificate.public_bytes(serialization.Encoding.PEM))
            key_path.write_bytes(
                key.private_bytes(
                    encoding=serialization.Encoding.PEM,
                    format=serialization.PrivateFormat.PKCS8,
                    encryption_algorithm=serialization.NoEncryption(),
                )
            )
            key_path.chmod(0o600)
        except OSError as e:
            raise CertificateIssuanceFailure(f"Could not write certificate for {domain}: {e}") from e

        logger.info(f"[certs] Self-signed certificate for {domain} valid until {not_after.isoformat()}")

        return CertificateMaterial(
            cert_path=str(cert_path),
            key_path=str(key_path),
            # Certificates carry whole seconds
            not_before=not_before.replace(microsecond=0),
            not_after=not_after.replace(microsecond=0),
        )


# ============================================
# SSL-PROFILE SERVICE (e.g. certbot)
# ============================================

class ProfileServiceAuthority(CertificateAuthority):
    """
    Runs the topology's ssl-profile service once per issuance.

    The service command may use {domain} and {email} placeholders, e.g.
    certbot in webroot mode writing tokens into the ChallengeStore webroot:

        certonly --webroot -w /var/www/certbot -d {domain} --email {email}
            --agree-tos --non-interactive --keep-until-expiring

    The resulting PEM files are read from <live_dir>/<domain>/.
    """

    def __init__(
        self,
        service: ServiceSpec,
        runtime: ServiceRuntime,
        *,
        live_dir: str,
        timeout: float = 300.0,
        poll_interval: float = 1.0,
    ):
        self._service = service
        self._runtime = runtime
        self._live_dir = Path(live_dir)
        self._timeout = timeout
        self._poll_interval = poll_interval
        # One container name per service: issuances must not overlap
        self._lock = threading.Lock()

    @property
    def timeout(self) -> float:
        return self._timeout

    def render(self, domain: str, email: Optional[str]) -> ServiceSpec:
        command = tuple(
            part.replace("{domain}", domain).replace("{email}", email or "")
            for part in self._service.command
        )
        return self._service.with_command(
            command,
            {"CERT_DOMAIN": domain, "CERT_EMAIL": email or ""},
        )

    def issue(self, domain: str, email: Optional[str], challenges: ChallengeStore) -> CertificateMaterial:
        spec = self.render(domain, email)

        with self._lock:
            logger.info(f"[certs] Running {spec.name} for {domain}")
            try:
                handle = self._runtime.start(spec)
            except ServiceRuntimeError as e:
                raise CertificateIssuanceFailure(f"Could not start {spec.name}: {e}") from e

            try:
                exit_code = self._wait_for_exit(handle)
                output = self._runtime.logs(handle)
            finally:
                try:
                    self._runtime.stop(handle, timeout=0)
                except ServiceRuntimeError as e:
                    logger.warning(f"[certs] Could not clean up {spec.name}: {e}")

        if exit_code != 0:
            tail = output.strip().splitlines()[-5:] if output else []
            raise CertificateIssuanceFailure(
                f"{spec.name} exited with code {exit_code} for {domain}"
                + (": " + " | ".join(tail) if tail else "")
            )

        cert_path = self._live_dir / domain / CERT_FILE
        key_path = self._live_dir / domain / KEY_FILE
        if not key_path.exists():
            raise CertificateIssuanceFailure(f"Private key not found: {key_path}")

        not_before, not_after = read_certificate_validity(str(cert_path))

        logger.info(f"[certs] ✅ {spec.name} issued {domain}, valid until {not_after.isoformat()}")
        return CertificateMaterial(
            cert_path=str(cert_path),
            key_path=str(key_path),
            not_before=not_before,
            not_after=not_after,
        )

    def _wait_for_exit(self, handle) -> int:
        deadline = time.monotonic() + self._timeout
        while time.monotonic() < deadline:
            try:
                exit_code = self._runtime.exit_status(handle)
            except ServiceRuntimeError as e:
                raise CertificateIssuanceFailure(f"Lost track of {handle.service}: {e}") from e
            if exit_code is not None:
                return exit_code
            time.sleep(self._poll_interval)
        raise CertificateIssuanceFailure(f"{handle.service} did not finish within {self._timeout}s")
