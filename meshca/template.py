"""
## Jinja Templating of CA Policy Documents

### Python
- render_istio_config
- render_root_config

#### minor
- jinja_run

"""

import jinja2


# openssl policy for the self signed root ca
root_conf_template = """
[ req ]
encrypt_key = no
prompt = no
utf8 = yes
default_md = sha256
req_extensions = req_ext
x509_extensions = req_ext
distinguished_name = req_dn
[ req_ext ]
subjectKeyIdentifier = hash
basicConstraints = critical, CA:true
keyUsage = critical, digitalSignature, nonRepudiation, keyEncipherment, keyCertSign
[ req_dn ]
O = Istio
CN = Root CA
"""

# openssl policy for an intermediate ca of one cluster, SAN entries depend on the system namespace
istio_conf_template = """
[ req ]
encrypt_key = no
prompt = no
utf8 = yes
default_md = sha256
req_extensions = req_ext
x509_extensions = req_ext
distinguished_name = req_dn
[ req_ext ]
subjectKeyIdentifier = hash
basicConstraints = critical, CA:true, pathlen:0
keyUsage = critical, digitalSignature, nonRepudiation, keyEncipherment, keyCertSign
subjectAltName=@san
[ san ]
DNS.1 = istiod.{{ system_namespace }}
DNS.2 = istiod.{{ system_namespace }}.svc
DNS.3 = istio-pilot.{{ system_namespace }}
DNS.4 = istio-pilot.{{ system_namespace }}.svc
[ req_dn ]
O = Istio
CN = Intermediate CA
"""


def jinja_run(template_str: str, environment: dict = {}) -> str:
    """Renders a Jinja2 template string.

    Undefined variables are an error, and the trailing newline of the template is kept.

    Args:
        template_str (str):
            The Jinja2 template string.
        environment (dict, optional):
            A dictionary of variables to make available in the template. Defaults to {}.

    Returns:
        str:
            The rendered template.

    Raises:
        jinja2.TemplateSyntaxError:
            If the template is malformed. The surrounding template lines are
            attached as `context`.
        jinja2.UndefinedError:
            If the template references a variable missing from `environment`.
    """
    try:
        env = jinja2.Environment(
            loader=jinja2.BaseLoader(),
            undefined=jinja2.StrictUndefined,
            keep_trailing_newline=True,
        )
        template = env.from_string(template_str)
        return template.render(environment)
    except jinja2.exceptions.TemplateSyntaxError as e:
        error_line = e.lineno
        lines = template_str.splitlines()
        start = max(0, error_line - 6)  # 5 lines before + error line
        end = min(len(lines), error_line + 5)
        context = "\n".join(
            f"{i + 1}: {line}" for i, line in enumerate(lines[start:end], start)
        )
        e.context = context
        raise e


def render_istio_config(system_namespace: str) -> str:
    """Creates an extensions configuration for an intermediate CA.

    The given system namespace is used in the DNS SANs of the control plane services.

    Args:
        system_namespace (str):
            The namespace the control plane is deployed to, eg. "istio-system".

    Returns:
        str:
            The openssl policy document.

    Raises:
        ValueError:
            If `system_namespace` is empty or not a string.
    """
    if not isinstance(system_namespace, str) or not system_namespace:
        raise ValueError("system_namespace must be a non-empty string")
    return jinja_run(istio_conf_template, {"system_namespace": system_namespace})


def render_root_config() -> str:
    """Creates the extensions configuration for the self signed root CA."""
    return jinja_run(root_conf_template)
