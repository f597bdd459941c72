"""
## Authority - Two-Tier Test Certificate Authority

A self signed Root CA and Intermediate CAs signed by it, one per cluster.
Every authority lives in its own work directory, using the fixed file names
`ca-key.pem`, `ca.conf`, `ca.csr` and `ca-cert.pem`.

### Functions
- create_root
- create_intermediate

### Classes
- Root
- Intermediate

"""

import copy
import errno
import logging
import os

from cryptography import x509
from cryptography.exceptions import InvalidSignature

from .generator import GenerationError, default_generator
from .secret import new_ca_secret
from .template import render_root_config

log = logging.getLogger(__name__)

key_filename = "ca-key.pem"
conf_filename = "ca.conf"
csr_filename = "ca.csr"
cert_filename = "ca-cert.pem"


def _check_work_dir(work_dir):
    if not os.path.isdir(work_dir):
        raise FileNotFoundError(errno.ENOENT, "Work directory does not exist", work_dir)


def _write_conf(conf_file, config):
    log.info("writing CA config %s", conf_file)
    with open(conf_file, "w") as f:
        f.write(config)


def verify_issued_by(cert_file, issuer_cert_file, step="verify_cert"):
    """Checks that the certificate at `cert_file` was signed by `issuer_cert_file`.

    Args:
        cert_file (str):
            The certificate to check.
        issuer_cert_file (str):
            The certificate of the expected issuer, may be `cert_file` itself.
        step (str, optional):
            Step name reported on failure. Defaults to "verify_cert".

    Raises:
        GenerationError:
            If either file can not be loaded, the issuer name does not match the
            subject of the issuer certificate, or the signature is invalid.
    """
    try:
        with open(cert_file, "rb") as f:
            cert = x509.load_pem_x509_certificate(f.read())
        with open(issuer_cert_file, "rb") as f:
            issuer = x509.load_pem_x509_certificate(f.read())
        cert.verify_directly_issued_by(issuer)
    except (OSError, ValueError, TypeError, InvalidSignature) as e:
        raise GenerationError(
            step,
            cert_file,
            "not issued by {}: {}".format(issuer_cert_file, str(e) or type(e).__name__),
        ) from e


class Root:
    """A self signed root CA, the trust anchor of a test run.

    The root can be shared by any number of intermediates, its files must stay
    in place as long as an intermediate built from it is in use.
    """

    def __init__(self, work_dir, generator=None, verify=True):
        """Creates the root key and self signed certificate in `work_dir`.

        Args:
            work_dir (str):
                Existing, writable directory exclusively used by this root.
            generator (meshca.generator.Generator, optional):
                The key and certificate generator. Defaults to `default_generator()`.
            verify (bool, optional):
                Check the created certificate is validly self signed. Defaults to True.

        Raises:
            FileNotFoundError:
                If `work_dir` does not exist. Nothing is generated.
            OSError:
                If the config file can not be written.
            GenerationError:
                If a generation step or the verification fails.
        """
        _check_work_dir(work_dir)
        if generator is None:
            generator = default_generator()

        self.work_dir = work_dir
        self.key_file = os.path.join(work_dir, key_filename)
        self.conf_file = os.path.join(work_dir, conf_filename)
        self.csr_file = os.path.join(work_dir, csr_filename)
        self.cert_file = os.path.join(work_dir, cert_filename)

        _write_conf(self.conf_file, render_root_config())

        log.info("generating root CA key %s", self.key_file)
        generator.generate_key(self.key_file)

        # self sign: create the csr and sign it with its own key
        log.info("generating root CA request %s", self.csr_file)
        generator.generate_csr(self.conf_file, self.key_file, self.csr_file)
        log.info("generating root CA cert %s", self.cert_file)
        generator.generate_selfsigned_cert(
            self.conf_file, self.csr_file, self.key_file, self.cert_file
        )

        if verify:
            verify_issued_by(self.cert_file, self.cert_file, step="verify_root_cert")

    def __repr__(self):
        return "Root(work_dir={!r})".format(self.work_dir)


class Intermediate:
    """An intermediate CA for a single cluster, signed by a `Root`."""

    def __init__(self, work_dir, config, root, generator=None, verify=True):
        """Creates the intermediate key, request and root signed certificate in `work_dir`.

        Order is strict: config, key, csr, signed cert. A failing step raises,
        no partially created intermediate is returned.

        Args:
            work_dir (str):
                Existing, writable directory exclusively used by this intermediate.
            config (str):
                The openssl policy document, eg. from `render_istio_config`.
            root (Root):
                The signing root CA. A copy of its descriptor is stored.
            generator (meshca.generator.Generator, optional):
                The key and certificate generator. Defaults to `default_generator()`.
            verify (bool, optional):
                Check the created certificate is signed by the root. Defaults to True.

        Raises:
            FileNotFoundError:
                If `work_dir` does not exist. Nothing is generated.
            ValueError:
                If `work_dir` is the work directory of `root`.
            OSError:
                If the config file can not be written.
            GenerationError:
                If a generation step or the verification fails.
        """
        _check_work_dir(work_dir)
        if os.path.realpath(work_dir) == os.path.realpath(root.work_dir):
            raise ValueError(
                "Intermediate work_dir {} is already used by the root CA".format(work_dir)
            )
        if generator is None:
            generator = default_generator()

        self.work_dir = work_dir
        self.key_file = os.path.join(work_dir, key_filename)
        self.conf_file = os.path.join(work_dir, conf_filename)
        self.csr_file = os.path.join(work_dir, csr_filename)
        self.cert_file = os.path.join(work_dir, cert_filename)
        self.root = copy.copy(root)

        _write_conf(self.conf_file, config)

        log.info("generating intermediate CA key %s", self.key_file)
        generator.generate_key(self.key_file)

        log.info("generating intermediate CA request %s", self.csr_file)
        generator.generate_csr(self.conf_file, self.key_file, self.csr_file)

        # the config supplies the extensions, the root signs
        log.info(
            "generating intermediate CA cert %s, signed by %s",
            self.cert_file,
            self.root.cert_file,
        )
        generator.generate_signed_cert(
            self.conf_file,
            self.csr_file,
            self.root.cert_file,
            self.root.key_file,
            self.cert_file,
        )

        if verify:
            verify_issued_by(
                self.cert_file, self.root.cert_file, step="verify_intermediate_cert"
            )

    def new_ca_secret(self):
        """Creates the "cacerts" trust secret of this intermediate, see `meshca.secret`."""
        return new_ca_secret(self)

    def __repr__(self):
        return "Intermediate(work_dir={!r}, root={!r})".format(self.work_dir, self.root)


def create_root(work_dir, generator=None, verify=True):
    """Creates a new root CA in `work_dir`.

    Returns:
        Root:
            The constructed root CA.
    """
    return Root(work_dir, generator=generator, verify=verify)


def create_intermediate(work_dir, config, root, generator=None, verify=True):
    """Creates a new intermediate CA in `work_dir`, signed by `root`.

    Returns:
        Intermediate:
            The constructed intermediate CA.
    """
    return Intermediate(work_dir, config, root, generator=generator, verify=verify)
