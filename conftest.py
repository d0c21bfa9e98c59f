"""
Pytest configuration for the CHIP-8 test suite.

Lives at the repository root so the flat modules (chip8, decode, display,
asm, cli) are importable from every test module:

    python -m pytest                 # full suite
    python -m pytest -m "not exhaustive"   # skip the 64K-opcode sweeps
"""

import pytest


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers",
        "exhaustive: sweeps over every 16-bit opcode (slower)")


@pytest.fixture
def vm():
    """A fresh machine with a fixed RND seed."""
    from chip8 import Chip8
    return Chip8(seed=1234)
