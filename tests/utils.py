from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import serialization


def assert_file_exists(base_dir: Path, file_path: str):
    """
    Asserts that a non-empty file exists at a given path relative to a base directory.

    Args:
        base_dir: The base directory to check from.
        file_path: The relative path to the file.
    """
    full_path = Path(base_dir) / file_path
    assert full_path.is_file(), f"Expected file does not exist: {full_path}"
    assert full_path.stat().st_size > 0, f"Expected file is empty: {full_path}"


def load_cert(path) -> x509.Certificate:
    return x509.load_pem_x509_certificate(Path(path).read_bytes())


def load_csr(path) -> x509.CertificateSigningRequest:
    return x509.load_pem_x509_csr(Path(path).read_bytes())


def public_der(key_or_public_key) -> bytes:
    """Returns the DER encoded SubjectPublicKeyInfo of a private or public key."""
    if hasattr(key_or_public_key, "public_key"):
        key_or_public_key = key_or_public_key.public_key()
    return key_or_public_key.public_bytes(
        serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
    )


def load_key_public_der(path) -> bytes:
    key = serialization.load_pem_private_key(Path(path).read_bytes(), password=None)
    return public_der(key)
