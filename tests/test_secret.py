import base64
import shutil
import subprocess

import pytest
import yaml
from cryptography import x509

from meshca.authority import Intermediate, Root
from meshca.secret import TrustSecret, new_ca_secret
from meshca.template import render_istio_config

secret_keys = ["ca-cert.pem", "ca-key.pem", "cert-chain.pem", "root-cert.pem"]


@pytest.fixture(scope="function")
def intermediate(generator, root_ca, work_dir):
    return Intermediate(
        str(work_dir), render_istio_config("istio-system"), root_ca, generator=generator
    )


def test_secret_entries(intermediate, root_ca):
    secret = new_ca_secret(intermediate)
    assert secret.name == "cacerts"
    assert sorted(secret.data) == secret_keys

    with open(intermediate.cert_file, "rb") as f:
        assert secret.data["ca-cert.pem"] == f.read()
    with open(intermediate.key_file, "rb") as f:
        assert secret.data["ca-key.pem"] == f.read()
    with open(root_ca.cert_file, "rb") as f:
        assert secret.data["root-cert.pem"] == f.read()
    assert (
        secret.data["cert-chain.pem"]
        == secret.data["ca-cert.pem"] + secret.data["root-cert.pem"]
    )


def test_secret_is_idempotent(intermediate):
    assert intermediate.new_ca_secret() == intermediate.new_ca_secret()


def test_secret_missing_file(intermediate, work_dir):
    (work_dir / "ca-key.pem").unlink()
    with pytest.raises(FileNotFoundError) as excinfo:
        new_ca_secret(intermediate)
    assert excinfo.value.filename == intermediate.key_file


def test_secret_manifest():
    secret = TrustSecret("cacerts", {"ca-cert.pem": b"cert", "root-cert.pem": b"root"})
    manifest = secret.to_manifest(namespace="istio-system")
    assert manifest["apiVersion"] == "v1"
    assert manifest["kind"] == "Secret"
    assert manifest["type"] == "Opaque"
    assert manifest["metadata"] == {"name": "cacerts", "namespace": "istio-system"}
    assert base64.b64decode(manifest["data"]["ca-cert.pem"]) == b"cert"

    assert "namespace" not in secret.to_manifest()["metadata"]
    assert yaml.safe_load(secret.to_yaml(namespace="istio-system")) == manifest


def test_secret_snapshot_is_independent():
    data = {"ca-cert.pem": b"cert"}
    secret = TrustSecret("cacerts", data)
    data["ca-cert.pem"] = b"changed"
    assert secret.data["ca-cert.pem"] == b"cert"
    assert secret != TrustSecret("cacerts", data)


def test_end_to_end_chain_verifies_against_root(generator, tmp_path):
    """
    Root in one directory, an intermediate for "istio-system" in another, the cert
    chain of the secret verifies with only the root certificate as trust anchor.
    """
    root_dir = tmp_path / "ca-root"
    root_dir.mkdir()
    intermediate_dir = tmp_path / "ca-intermediate"
    intermediate_dir.mkdir()

    root = Root(str(root_dir), generator=generator)
    intermediate = Intermediate(
        str(intermediate_dir), render_istio_config("istio-system"), root, generator=generator
    )
    secret = intermediate.new_ca_secret()

    chain = x509.load_pem_x509_certificates(secret.data["cert-chain.pem"])
    trust_anchor = x509.load_pem_x509_certificate(secret.data["root-cert.pem"])
    assert len(chain) == 2
    assert chain[1] == trust_anchor
    chain[0].verify_directly_issued_by(trust_anchor)
    trust_anchor.verify_directly_issued_by(trust_anchor)

    if shutil.which("openssl") is not None:
        trust_store = tmp_path / "trust.pem"
        trust_store.write_bytes(secret.data["root-cert.pem"])
        chain_file = tmp_path / "cert-chain.pem"
        chain_file.write_bytes(secret.data["cert-chain.pem"])
        result = subprocess.run(
            ["openssl", "verify", "-CAfile", str(trust_store), str(chain_file)],
            capture_output=True,
            text=True,
        )
        assert result.returncode == 0, result.stdout + result.stderr


def test_secret_data_is_read_only():
    secret = TrustSecret("cacerts", {"ca-cert.pem": b"cert"})
    with pytest.raises(TypeError):
        secret.data["ca-cert.pem"] = b"changed"
    with pytest.raises(TypeError):
        del secret.data["ca-cert.pem"]
    assert secret.data["ca-cert.pem"] == b"cert"
