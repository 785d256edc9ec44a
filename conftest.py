"""
Pytest configuration and fixtures for the GAN engine tests
"""

import numpy as np
import pytest

from gan_engine import GANEngine


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "gpu: marks tests that require CUDA/pycuda (deselect with '-m \"not gpu\"')"
    )


@pytest.fixture
def engine():
    """CPU engine with a fixed seed"""
    with GANEngine('cpu', seed=42) as engine:
        yield engine


@pytest.fixture
def cuda_engine():
    """CUDA engine (skips if pycuda or a device is not available)"""
    try:
        return GANEngine('cuda', seed=42)
    except Exception as e:
        pytest.skip(f"CUDA backend not available: {e}")


@pytest.fixture
def rng():
    return np.random.default_rng(42)
