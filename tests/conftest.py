"""
Pytest fixtures for shader_synth tests.
"""
import sys
from pathlib import Path

import numpy as np
import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from shader_synth import SynthConfig  # noqa: E402


@pytest.fixture
def sample_rate():
    """Low sample rate keeps renders small while covering the whole voice table."""
    return 8000


@pytest.fixture
def config(sample_rate):
    return SynthConfig(sample_rate=sample_rate)


@pytest.fixture
def one_second_times():
    """4097 float32 times spanning [0, 1.0]."""
    return np.linspace(0.0, 1.0, 4097, dtype=np.float32)
