"""
## Trust Secret - "cacerts" bundle of an Intermediate CA

If available when the mesh control plane starts, this secret is used instead of
its autogenerated self-signed root. Intermediates of a shared root establish a
common root of trust between clusters.

- f: new_ca_secret
- c: TrustSecret

"""

import base64
import types

import yaml

secret_name = "cacerts"
ca_cert_key = "ca-cert.pem"
ca_key_key = "ca-key.pem"
cert_chain_key = "cert-chain.pem"
root_cert_key = "root-cert.pem"


class TrustSecret:
    """A named mapping of artifact label to raw bytes.

    A read-only snapshot of the files it was created from, no validation is done.
    """

    def __init__(self, name, data):
        self.name = name
        self.data = types.MappingProxyType(dict(data))

    def __eq__(self, other):
        if not isinstance(other, TrustSecret):
            return NotImplemented
        return self.name == other.name and dict(self.data) == dict(other.data)

    def __repr__(self):
        return "TrustSecret(name={!r}, keys={!r})".format(self.name, sorted(self.data))

    def to_manifest(self, namespace=None):
        """Returns the secret as a Kubernetes v1/Secret manifest.

        Args:
            namespace (str, optional):
                Namespace for the metadata. Omitted if None.

        Returns:
            dict:
                The manifest, with base64 encoded `data` values.
        """
        metadata = {"name": self.name}
        if namespace:
            metadata["namespace"] = namespace
        return {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": metadata,
            "type": "Opaque",
            "data": {
                key: base64.b64encode(value).decode("ascii")
                for key, value in sorted(self.data.items())
            },
        }

    def to_yaml(self, namespace=None):
        """Returns `to_manifest` as YAML document."""
        return yaml.safe_dump(self.to_manifest(namespace), sort_keys=False)


def _read_bytes(path):
    with open(path, "rb") as f:
        return f.read()


def new_ca_secret(intermediate):
    """Creates the "cacerts" secret containing the intermediate certificate, key and chain.

    Args:
        intermediate (meshca.authority.Intermediate):
            A constructed intermediate CA.

    Returns:
        TrustSecret:
            Secret with the entries `ca-cert.pem`, `ca-key.pem`, `cert-chain.pem`
            and `root-cert.pem`.

    Raises:
        OSError:
            If one of the files can not be read, `filename` names the file.
    """
    ca_cert = _read_bytes(intermediate.cert_file)
    ca_key = _read_bytes(intermediate.key_file)
    root_cert = _read_bytes(intermediate.root.cert_file)

    # the chain is the intermediate cert followed by the root cert
    cert_chain = ca_cert + root_cert

    return TrustSecret(
        secret_name,
        {
            ca_cert_key: ca_cert,
            ca_key_key: ca_key,
            cert_chain_key: cert_chain,
            root_cert_key: root_cert,
        },
    )
