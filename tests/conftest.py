import logging
import shutil

import pytest

from meshca.authority import Root
from meshca.generator import NativeGenerator, OpenSSLGenerator

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")

# small keys keep the test run fast
test_key_bits = 2048


@pytest.fixture(scope="session", params=["native", "openssl"])
def generator(request):
    """Yields each available generator implementation."""
    if request.param == "openssl":
        if shutil.which("openssl") is None:
            pytest.skip("openssl binary not available")
        return OpenSSLGenerator(key_bits=test_key_bits)
    return NativeGenerator(key_bits=test_key_bits)


@pytest.fixture(scope="session")
def native_generator():
    return NativeGenerator(key_bits=test_key_bits)


@pytest.fixture(scope="session")
def root_ca(generator, tmp_path_factory):
    """A root CA shared by all tests of one generator."""
    work_dir = tmp_path_factory.mktemp("ca-root")
    return Root(str(work_dir), generator=generator)


@pytest.fixture(scope="function")
def work_dir(tmp_path):
    """An empty, exclusive work directory."""
    path = tmp_path / "ca-intermediate"
    path.mkdir()
    return path
