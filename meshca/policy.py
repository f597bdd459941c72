"""
## OpenSSL Policy Documents

Reads the subset of the openssl `req`/`x509` configuration format used by
`meshca.template` into values usable with `cryptography`.

- c: Policy
- f: load_policy

"""

import configparser
import ipaddress
import re

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID


name_oids = {
    "C": NameOID.COUNTRY_NAME,
    "ST": NameOID.STATE_OR_PROVINCE_NAME,
    "L": NameOID.LOCALITY_NAME,
    "O": NameOID.ORGANIZATION_NAME,
    "OU": NameOID.ORGANIZATIONAL_UNIT_NAME,
    "CN": NameOID.COMMON_NAME,
    "emailAddress": NameOID.EMAIL_ADDRESS,
}

key_usage_flags = {
    "digitalSignature": "digital_signature",
    "nonRepudiation": "content_commitment",
    "keyEncipherment": "key_encipherment",
    "dataEncipherment": "data_encipherment",
    "keyAgreement": "key_agreement",
    "keyCertSign": "key_cert_sign",
    "cRLSign": "crl_sign",
    "encipherOnly": "encipher_only",
    "decipherOnly": "decipher_only",
}

extended_key_usages = {
    "serverAuth": ExtendedKeyUsageOID.SERVER_AUTH,
    "clientAuth": ExtendedKeyUsageOID.CLIENT_AUTH,
    "codeSigning": ExtendedKeyUsageOID.CODE_SIGNING,
    "emailProtection": ExtendedKeyUsageOID.EMAIL_PROTECTION,
    "timeStamping": ExtendedKeyUsageOID.TIME_STAMPING,
    "OCSPSigning": ExtendedKeyUsageOID.OCSP_SIGNING,
}

hash_algorithms = {
    "sha256": hashes.SHA256,
    "sha384": hashes.SHA384,
    "sha512": hashes.SHA512,
}


class _PolicyParser(configparser.RawConfigParser):
    # openssl allows blanks inside the brackets: "[ req ]"
    SECTCRE = re.compile(r"\[\s*(?P<header>[^]]+?)\s*\]")

    def optionxform(self, optionstr):
        return optionstr


def _unquote(value):
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] == '"':
        return value[1:-1]
    return value


def _split_values(value):
    return [part.strip() for part in value.split(",") if part.strip()]


class Policy:
    """A parsed openssl policy document.

    Only the `req` section, its distinguished name section and the extension
    sections referenced by `req_extensions` and `x509_extensions` are read.
    """

    def __init__(self, text):
        """Initializes a Policy from the text of an openssl configuration.

        Args:
            text (str):
                The policy document.

        Raises:
            ValueError:
                If the document can not be parsed or lacks a `[ req ]` section.
        """
        parser = _PolicyParser(
            delimiters=("=",),
            comment_prefixes=("#",),
            inline_comment_prefixes=("#",),
            strict=False,
            default_section="__default__",
        )
        try:
            # openssl ignores indentation, configparser would read it as continuation lines
            parser.read_string("\n".join(line.strip() for line in text.splitlines()))
        except configparser.Error as e:
            raise ValueError(f"Invalid policy document: {e}") from e
        if not parser.has_section("req"):
            raise ValueError("Invalid policy document: missing [ req ] section")

        self._parser = parser
        req = self._section("req")
        self.digest = req.get("default_md", "sha256").lower()
        self.req_extensions = req.get("req_extensions")
        self.x509_extensions = req.get("x509_extensions")
        self.distinguished_name = req.get("distinguished_name")

    def _section(self, name):
        if not self._parser.has_section(name):
            raise ValueError(f"Invalid policy document: missing [ {name} ] section")
        return {key: _unquote(value) for key, value in self._parser[name].items()}

    @property
    def subject(self):
        """x509.Name: the subject described by the distinguished name section."""
        if not self.distinguished_name:
            return x509.Name([])
        attributes = []
        for key, value in self._section(self.distinguished_name).items():
            if key not in name_oids:
                raise ValueError(f"Unsupported distinguished name attribute: {key}")
            attributes.append(x509.NameAttribute(name_oids[key], value))
        return x509.Name(attributes)

    def hash_algorithm(self):
        if self.digest not in hash_algorithms:
            raise ValueError(f"Unsupported default_md: {self.digest}")
        return hash_algorithms[self.digest]()

    def request_extensions(self, public_key):
        """Returns the (extension, critical) pairs to put into a CSR."""
        if not self.req_extensions:
            return []
        return self._extensions(self.req_extensions, public_key, None)

    def certificate_extensions(self, public_key, issuer_public_key):
        """Returns the (extension, critical) pairs to put into a certificate."""
        if not self.x509_extensions:
            return []
        return self._extensions(self.x509_extensions, public_key, issuer_public_key)

    def _extensions(self, section_name, public_key, issuer_public_key):
        extensions = []
        for key, value in self._section(section_name).items():
            parts = _split_values(value)
            critical = "critical" in parts
            parts = [part for part in parts if part != "critical"]

            if key == "subjectKeyIdentifier":
                if parts not in (["hash"], ["none"]):
                    raise ValueError(f"Unsupported subjectKeyIdentifier value: {value}")
                if parts == ["hash"]:
                    extensions.append(
                        (x509.SubjectKeyIdentifier.from_public_key(public_key), critical)
                    )
            elif key == "authorityKeyIdentifier":
                # only meaningful when signing, a request has no issuer yet
                if issuer_public_key is not None:
                    extensions.append(
                        (
                            x509.AuthorityKeyIdentifier.from_issuer_public_key(
                                issuer_public_key
                            ),
                            critical,
                        )
                    )
            elif key == "basicConstraints":
                extensions.append((self._basic_constraints(parts), critical))
            elif key == "keyUsage":
                extensions.append((self._key_usage(parts), critical))
            elif key == "extendedKeyUsage":
                extensions.append((self._extended_key_usage(parts), critical))
            elif key == "subjectAltName":
                extensions.append((self._subject_alt_name(parts), critical))
            else:
                raise ValueError(f"Unsupported extension in [ {section_name} ]: {key}")
        return extensions

    def _basic_constraints(self, parts):
        ca = False
        path_length = None
        for part in parts:
            name, _, value = part.partition(":")
            if name == "CA":
                ca = value.strip().lower() == "true"
            elif name == "pathlen":
                path_length = int(value)
            else:
                raise ValueError(f"Unsupported basicConstraints value: {part}")
        return x509.BasicConstraints(ca=ca, path_length=path_length if ca else None)

    def _key_usage(self, parts):
        flags = {flag: False for flag in key_usage_flags.values()}
        for part in parts:
            if part not in key_usage_flags:
                raise ValueError(f"Unsupported keyUsage value: {part}")
            flags[key_usage_flags[part]] = True
        return x509.KeyUsage(**flags)

    def _extended_key_usage(self, parts):
        usages = []
        for part in parts:
            if part not in extended_key_usages:
                raise ValueError(f"Unsupported extendedKeyUsage value: {part}")
            usages.append(extended_key_usages[part])
        return x509.ExtendedKeyUsage(usages)

    def _subject_alt_name(self, parts):
        entries = []
        for part in parts:
            if part.startswith("@"):
                # "DNS.1 = name" style entries of a referenced section
                for key, value in self._section(part[1:]).items():
                    entries.append((key.split(".")[0], value.strip()))
            else:
                kind, _, value = part.partition(":")
                entries.append((kind, value.strip()))

        names = []
        for kind, value in entries:
            if kind == "DNS":
                names.append(x509.DNSName(value))
            elif kind == "IP":
                names.append(x509.IPAddress(ipaddress.ip_address(value)))
            elif kind == "URI":
                names.append(x509.UniformResourceIdentifier(value))
            elif kind == "email":
                names.append(x509.RFC822Name(value))
            else:
                raise ValueError(f"Unsupported subjectAltName type: {kind}")
        return x509.SubjectAlternativeName(names)


def load_policy(conf_file):
    """Reads and parses the policy document at `conf_file`.

    Raises:
        OSError:
            If the file can not be read.
        ValueError:
            If the document is not a supported policy.
    """
    with open(conf_file, "r") as f:
        return Policy(f.read())
