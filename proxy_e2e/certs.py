"""
Self-signed certificate material for HTTPS and WSS virtual hosts

The proxy picks certificates up from ``<ssl dir>/certs/<host>.crt`` and
``<ssl dir>/private/<host>.key``, so issuing a certificate is just writing
those two files before the backend that declares the host is started.
"""

import logging
import re
import subprocess
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Union

from .errors import CertificateConflictError, GenerationError

logger = logging.getLogger(__name__)

# RFC 1123 labels, plus a leading wildcard label
HOSTNAME_RE = re.compile(r"^(\*\.)?([A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?)(\.[A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?)*$")


@dataclass(frozen=True)
class CertificateRecord:
    hostname: str
    cert_path: Path
    key_path: Path
    not_before: datetime
    not_after: datetime


def cert_paths(directory: Union[str, Path], hostname: str):
    """Deterministic (cert, key) paths for a hostname inside a TLS directory"""
    directory = Path(directory)
    return directory / "certs" / f"{hostname}.crt", directory / "private" / f"{hostname}.key"


def issue(directory: Union[str, Path], hostname: str, *, days: int = 365,
          key_bits: int = 2048, openssl: str = "openssl") -> CertificateRecord:
    """Generate a self-signed certificate naming ``hostname`` as CN and DNS SAN

    Issuing twice for the same hostname in one TLS directory is a
    configuration error and raises CertificateConflictError.
    """
    if not hostname or len(hostname) > 253 or not HOSTNAME_RE.match(hostname):
        raise GenerationError(f"invalid hostname for certificate: {hostname!r}")

    cert_path, key_path = cert_paths(directory, hostname)
    for path in (cert_path, key_path):
        if path.exists():
            raise CertificateConflictError(hostname, str(path))

    cert_path.parent.mkdir(parents=True, exist_ok=True)
    key_path.parent.mkdir(parents=True, exist_ok=True)

    not_before = datetime.now(timezone.utc)
    cmd = [
        openssl, "req", "-x509", "-newkey", f"rsa:{key_bits}", "-keyout", str(key_path),
        "-out", str(cert_path), "-days", str(days), "-nodes", "-sha256",
        "-subj", f"/O=Test Org/CN={hostname}",
        "-addext", f"subjectAltName=DNS:{hostname}",
        "-addext", "keyUsage=digitalSignature,keyEncipherment",
        "-addext", "extendedKeyUsage=serverAuth",
    ]

    try:
        subprocess.run(cmd, check=True, capture_output=True, text=True, timeout=60)
    except FileNotFoundError as e:
        raise GenerationError(f"{openssl} not found, cannot generate certificate for {hostname}") from e
    except subprocess.CalledProcessError as e:
        _discard(cert_path, key_path)
        raise GenerationError(f"openssl failed for {hostname}: {e.stderr.strip()}") from e
    except subprocess.TimeoutExpired as e:
        _discard(cert_path, key_path)
        raise GenerationError(f"openssl timed out generating certificate for {hostname}") from e

    key_path.chmod(0o600)
    logger.info(f"Generated self-signed certificate for {hostname}: {cert_path}")
    return CertificateRecord(
        hostname=hostname,
        cert_path=cert_path,
        key_path=key_path,
        not_before=not_before,
        not_after=not_before + timedelta(days=days),
    )


def _discard(*paths: Path):
    for path in paths:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
