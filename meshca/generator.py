"""
## Key, CSR and Certificate Generators

Every operation takes file paths and either writes a complete file to its output path
or raises `GenerationError`. Outputs are written to a temporary file next to the target
and moved into place, a failed step never leaves a partial output behind.

### Config Values
- MESHCA_GENERATOR: "native" (default) or "openssl"
- MESHCA_KEY_BITS, MESHCA_VALIDITY_DAYS, MESHCA_OPENSSL

### Functions
- get_generator_config
- default_generator

### Classes
- GenerationError
- Generator
- NativeGenerator
- OpenSSLGenerator

"""

import contextlib
import datetime
import logging
import os
import subprocess
import tempfile

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from .policy import load_policy

log = logging.getLogger(__name__)

default_key_bits = 2048
default_validity_days = 100000
default_openssl = "openssl"
generator_types = ("native", "openssl")


class GenerationError(Exception):
    """A key, CSR or certificate generation step failed.

    Attributes:
        step (str):
            Name of the failed operation, eg. "generate_csr".
        path (str):
            The output file the step was supposed to produce.
        stderr (str | None):
            Error output of the openssl binary, if any.
    """

    def __init__(self, step, path, message=None, stderr=None):
        self.step = step
        self.path = path
        self.stderr = stderr
        text = "{} failed for {}".format(step, path)
        if message:
            text += ": {}".format(message)
        if stderr:
            text += ":\n{}".format(stderr.strip())
        super().__init__(text)


def _write_atomic(path, data, mode=0o644):
    fd, tmp_path = tempfile.mkstemp(
        dir=os.path.dirname(os.path.abspath(path)), prefix=".{}.".format(os.path.basename(path))
    )
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp_path)
        raise


def _public_der(key):
    return key.public_bytes(
        serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
    )


class Generator:
    """Abstract capability to create keys, requests and certificates from files.

    Subclasses implement all four operations with the same file based contract.
    """

    def generate_key(self, key_file):
        """Creates a new private key at `key_file`."""
        raise NotImplementedError

    def generate_csr(self, conf_file, key_file, csr_file):
        """Creates a CSR for the key at `key_file`, using the policy at `conf_file`."""
        raise NotImplementedError

    def generate_selfsigned_cert(self, conf_file, csr_file, key_file, cert_file):
        """Signs the CSR at `csr_file` with its own key at `key_file`."""
        raise NotImplementedError

    def generate_signed_cert(
        self, conf_file, csr_file, signer_cert_file, signer_key_file, cert_file
    ):
        """Signs the CSR at `csr_file` with the signer certificate and key."""
        raise NotImplementedError


class NativeGenerator(Generator):
    """Generator using the `cryptography` library.

    The policy document is read with `meshca.policy`, keys are RSA in PKCS#8 PEM.
    """

    def __init__(self, key_bits=default_key_bits, validity_days=default_validity_days):
        """Initializes a NativeGenerator.

        Args:
            key_bits (int, optional):
                RSA key size. Defaults to `default_key_bits`.
            validity_days (int, optional):
                Validity of created certificates in days. Defaults to `default_validity_days`.
        """
        self.key_bits = key_bits
        self.validity_days = validity_days

    @contextlib.contextmanager
    def _step(self, step, path):
        try:
            yield
        except GenerationError:
            raise
        except (OSError, ValueError, TypeError, InvalidSignature, UnsupportedAlgorithm) as e:
            raise GenerationError(step, path, str(e) or type(e).__name__) from e

    def _load_key(self, key_file):
        with open(key_file, "rb") as f:
            return serialization.load_pem_private_key(f.read(), password=None)

    def _load_csr(self, csr_file):
        with open(csr_file, "rb") as f:
            csr = x509.load_pem_x509_csr(f.read())
        if not csr.is_signature_valid:
            raise ValueError("signature of {} is invalid".format(csr_file))
        return csr

    def _sign(self, policy, csr, issuer_name, signer_key):
        now = datetime.datetime.now(datetime.timezone.utc)
        builder = (
            x509.CertificateBuilder()
            .subject_name(csr.subject)
            .issuer_name(issuer_name)
            .public_key(csr.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now)
            .not_valid_after(now + datetime.timedelta(days=self.validity_days))
        )
        for extension, critical in policy.certificate_extensions(
            csr.public_key(), signer_key.public_key()
        ):
            builder = builder.add_extension(extension, critical=critical)
        cert = builder.sign(signer_key, policy.hash_algorithm())
        return cert.public_bytes(serialization.Encoding.PEM)

    def generate_key(self, key_file):
        with self._step("generate_key", key_file):
            key = rsa.generate_private_key(public_exponent=65537, key_size=self.key_bits)
            data = key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.PKCS8,
                encryption_algorithm=serialization.NoEncryption(),
            )
            _write_atomic(key_file, data, mode=0o600)

    def generate_csr(self, conf_file, key_file, csr_file):
        with self._step("generate_csr", csr_file):
            policy = load_policy(conf_file)
            key = self._load_key(key_file)
            builder = x509.CertificateSigningRequestBuilder().subject_name(policy.subject)
            for extension, critical in policy.request_extensions(key.public_key()):
                builder = builder.add_extension(extension, critical=critical)
            csr = builder.sign(key, policy.hash_algorithm())
            _write_atomic(csr_file, csr.public_bytes(serialization.Encoding.PEM))

    def generate_selfsigned_cert(self, conf_file, csr_file, key_file, cert_file):
        with self._step("generate_selfsigned_cert", cert_file):
            policy = load_policy(conf_file)
            key = self._load_key(key_file)
            csr = self._load_csr(csr_file)
            if _public_der(csr.public_key()) != _public_der(key.public_key()):
                raise ValueError("{} was not created from {}".format(csr_file, key_file))
            _write_atomic(cert_file, self._sign(policy, csr, csr.subject, key))

    def generate_signed_cert(
        self, conf_file, csr_file, signer_cert_file, signer_key_file, cert_file
    ):
        with self._step("generate_signed_cert", cert_file):
            policy = load_policy(conf_file)
            with open(signer_cert_file, "rb") as f:
                signer_cert = x509.load_pem_x509_certificate(f.read())
            signer_key = self._load_key(signer_key_file)
            if _public_der(signer_cert.public_key()) != _public_der(signer_key.public_key()):
                raise ValueError(
                    "{} does not match {}".format(signer_key_file, signer_cert_file)
                )
            csr = self._load_csr(csr_file)
            _write_atomic(cert_file, self._sign(policy, csr, signer_cert.subject, signer_key))


class OpenSSLGenerator(Generator):
    """Generator shelling out to the `openssl` command line tool."""

    def __init__(
        self,
        key_bits=default_key_bits,
        validity_days=default_validity_days,
        openssl=default_openssl,
    ):
        """Initializes an OpenSSLGenerator.

        Args:
            key_bits (int, optional):
                RSA key size. Defaults to `default_key_bits`.
            validity_days (int, optional):
                Validity of created certificates in days. Defaults to `default_validity_days`.
            openssl (str, optional):
                Name or path of the openssl binary. Defaults to "openssl".
        """
        self.key_bits = key_bits
        self.validity_days = validity_days
        self.openssl = openssl

    def _openssl(self, step, out_file, args):
        # "-out" goes right after the subcommand, genrsa wants numbits last
        tmp_file = os.path.join(
            os.path.dirname(os.path.abspath(out_file)),
            ".{}.tmp".format(os.path.basename(out_file)),
        )
        cmd = [self.openssl, args[0], "-out", tmp_file] + list(args[1:])
        log.debug("%s: %s", step, " ".join(cmd))
        try:
            result = subprocess.run(cmd, capture_output=True, text=True)
        except OSError as e:
            raise GenerationError(
                step, out_file, "could not execute {}: {}".format(self.openssl, e)
            ) from e
        if result.returncode != 0:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(tmp_file)
            raise GenerationError(
                step,
                out_file,
                "{} exited with status {}".format(self.openssl, result.returncode),
                stderr=result.stderr,
            )
        os.replace(tmp_file, out_file)

    def _extensions_section(self, step, conf_file, out_file):
        try:
            policy = load_policy(conf_file)
        except (OSError, ValueError) as e:
            raise GenerationError(step, out_file, str(e)) from e
        return policy.x509_extensions or "req_ext"

    def generate_key(self, key_file):
        self._openssl("generate_key", key_file, ["genrsa", str(self.key_bits)])

    def generate_csr(self, conf_file, key_file, csr_file):
        self._openssl(
            "generate_csr", csr_file, ["req", "-new", "-config", conf_file, "-key", key_file]
        )

    def generate_selfsigned_cert(self, conf_file, csr_file, key_file, cert_file):
        step = "generate_selfsigned_cert"
        section = self._extensions_section(step, conf_file, cert_file)
        self._openssl(
            step,
            cert_file,
            [
                "x509",
                "-req",
                "-days",
                str(self.validity_days),
                "-signkey",
                key_file,
                "-extensions",
                section,
                "-extfile",
                conf_file,
                "-in",
                csr_file,
            ],
        )

    def generate_signed_cert(
        self, conf_file, csr_file, signer_cert_file, signer_key_file, cert_file
    ):
        step = "generate_signed_cert"
        section = self._extensions_section(step, conf_file, cert_file)
        # explicit serial, -CAcreateserial would write a .srl file next to the signer cert
        self._openssl(
            step,
            cert_file,
            [
                "x509",
                "-req",
                "-days",
                str(self.validity_days),
                "-CA",
                signer_cert_file,
                "-CAkey",
                signer_key_file,
                "-set_serial",
                str(x509.random_serial_number()),
                "-extensions",
                section,
                "-extfile",
                conf_file,
                "-in",
                csr_file,
            ],
        )


def get_generator_config(environ=None):
    """Returns the generator configuration, read from environment variables.

    Args:
        environ (dict, optional):
            Mapping to read from. Defaults to `os.environ`.

    Returns:
        dict:
            generator_type, key_bits, validity_days, openssl

    Raises:
        ValueError:
            If MESHCA_GENERATOR is not one of `generator_types`.
    """
    if environ is None:
        environ = os.environ
    generator_config = {
        "generator_type": environ.get("MESHCA_GENERATOR") or "native",
        "key_bits": int(environ.get("MESHCA_KEY_BITS") or default_key_bits),
        "validity_days": int(environ.get("MESHCA_VALIDITY_DAYS") or default_validity_days),
        "openssl": environ.get("MESHCA_OPENSSL") or default_openssl,
    }
    if generator_config["generator_type"] not in generator_types:
        raise ValueError(
            "MESHCA_GENERATOR must be one of {}, not {}".format(
                ", ".join(generator_types), generator_config["generator_type"]
            )
        )
    return generator_config


def default_generator(environ=None):
    """Creates the generator selected by `get_generator_config`."""
    generator_config = get_generator_config(environ)
    if generator_config["generator_type"] == "openssl":
        return OpenSSLGenerator(
            key_bits=generator_config["key_bits"],
            validity_days=generator_config["validity_days"],
            openssl=generator_config["openssl"],
        )
    return NativeGenerator(
        key_bits=generator_config["key_bits"],
        validity_days=generator_config["validity_days"],
    )
