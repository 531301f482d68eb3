"""
pytest configuration and fixtures for the Byfl binary-output decoder tests.

Provides reusable fixtures for:
- Building Byfl binary files on disk
- Recording the decoder's callback event stream
- Hypothesis property-based testing configuration
"""

import os
import pytest
import sys
from pathlib import Path

from hypothesis import settings, Verbosity

# Add project paths
sys.path.insert(0, str(Path(__file__).parent.parent / "tools"))
sys.path.insert(0, str(Path(__file__).parent))

from bfbin import ColumnType
from bfbin_factory import BfbinFactory, EventRecorder

# Every example writes a file, so no profile sets a deadline.
# Select with HYPOTHESIS_PROFILE=ci|dev|debug.
settings.register_profile("default", max_examples=100, deadline=None)
settings.register_profile("ci", max_examples=500, deadline=None)
settings.register_profile("dev", max_examples=10, deadline=None)
settings.register_profile("debug", max_examples=10, deadline=None,
                          verbosity=Verbosity.verbose)
settings.load_profile(os.environ.get("HYPOTHESIS_PROFILE", "default"))


@pytest.fixture
def recorder():
    """Provide a fresh EventRecorder."""
    return EventRecorder()


@pytest.fixture
def new_recorder():
    """Provide the EventRecorder class for tests needing several."""
    return EventRecorder


@pytest.fixture
def factory():
    """
    Provide a byte-stream factory for building input files.

    Usage:
        def test_table(factory):
            data = factory.basic_table('T', [('x', ColumnType.UINT64)], [[1]]).build()
    """
    return BfbinFactory()


@pytest.fixture
def write_bfbin(tmp_path):
    """Write bytes to a fresh .byfl file and return its path as str."""
    counter = [0]

    def write(data: bytes) -> str:
        counter[0] += 1
        path = tmp_path / f"input{counter[0]}.byfl"
        path.write_bytes(data)
        return str(path)

    return write


@pytest.fixture
def sample_bytes():
    """A well-formed file with one basic and one key:value table."""
    return (BfbinFactory()
            .basic_table('Functions',
                         [('Function', ColumnType.STRING),
                          ('Loads', ColumnType.UINT64),
                          ('Inlined', ColumnType.BOOL)],
                         [['main', 1024, False],
                          ['helper', 7, True]])
            .keyval_table('Program',
                          [('Bytes loaded', ColumnType.UINT64, 8192),
                           ('Compiler', ColumnType.STRING, 'clang'),
                           ('Instrumented', ColumnType.BOOL, True)])
            .build())


# Markers for test categorization
def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
