"""
certs.py - Self-signed TLS certificate for the ledger node
"""

import datetime
import ipaddress
import logging
import os

from cryptography import x509
from cryptography.x509.oid import NameOID
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from server.config import CERT_DIR, CERT_FILE, KEY_FILE

logger = logging.getLogger(__name__)


def _subject_alt_names(hosts):
    names = []
    for host in hosts:
        try:
            names.append(x509.IPAddress(ipaddress.ip_address(host)))
        except ValueError:
            names.append(x509.DNSName(host))
    return names


def generate_tls_cert(cert_file: str = CERT_FILE, key_file: str = KEY_FILE,
                      common_name: str = "127.0.0.1", days: int = 365,
                      extra_hosts=("localhost",)) -> bool:
    """
    Write a self-signed certificate and key for *common_name*, which also
    heads the SAN list (IP or DNS entry) followed by *extra_hosts*.  Returns
    False (and leaves the files alone) if both already exist.
    """
    if os.path.exists(cert_file) and os.path.exists(key_file):
        logger.info("TLS certificate already exists – skipping generation.")
        return False

    os.makedirs(os.path.dirname(cert_file) or CERT_DIR, exist_ok=True)
    logger.info(f"Generating self-signed TLS certificate for {common_name} …")

    hosts = [common_name] + [h for h in extra_hosts if h != common_name]
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)

    subject = issuer = x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Face Ledger Devnet"),
        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
    ])

    now = datetime.datetime.now(datetime.timezone.utc)

    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + datetime.timedelta(days=days))
        .add_extension(
            x509.SubjectAlternativeName(_subject_alt_names(hosts)),
            critical=False,
        )
        .sign(key, hashes.SHA256())
    )

    with open(key_file, "wb") as f:
        f.write(key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.TraditionalOpenSSL,
            serialization.NoEncryption(),
        ))
    os.chmod(key_file, 0o600)

    with open(cert_file, "wb") as f:
        f.write(cert.public_bytes(serialization.Encoding.PEM))

    logger.info(f"Certificate written to {cert_file}")
    logger.info(f"Private key written to {key_file}")
    return True
