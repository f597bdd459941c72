"""
## meshca - Test Certificate Authority for Service Mesh Clusters

Provisions a self signed Root CA and per cluster Intermediate CAs signed by it,
and packages an intermediate into the "cacerts" trust secret.

### Functions
- render_istio_config, render_root_config
- create_root, create_intermediate
- new_ca_secret
- default_generator, get_generator_config

### Classes
- Root, Intermediate
- TrustSecret
- Generator, NativeGenerator, OpenSSLGenerator, GenerationError

"""

from jinja2 import TemplateError

from .authority import Intermediate, Root, create_intermediate, create_root
from .generator import (
    GenerationError,
    Generator,
    NativeGenerator,
    OpenSSLGenerator,
    default_generator,
    get_generator_config,
)
from .secret import TrustSecret, new_ca_secret
from .template import render_istio_config, render_root_config

__all__ = [
    "GenerationError",
    "Generator",
    "Intermediate",
    "NativeGenerator",
    "OpenSSLGenerator",
    "Root",
    "TemplateError",
    "TrustSecret",
    "create_intermediate",
    "create_root",
    "default_generator",
    "get_generator_config",
    "new_ca_secret",
    "render_istio_config",
    "render_root_config",
]
