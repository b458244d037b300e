"""
Pytest configuration for the CHIP-8 test suite.

    python -m pytest                 # everything
    python -m pytest -m "not display"   # skip tests that touch pygame

Display tests run against SDL's dummy video/audio drivers, so no screen
or sound device is needed.
"""

import os

import pytest

# Must be set before pygame initialises SDL
os.environ.setdefault("SDL_VIDEODRIVER", "dummy")
os.environ.setdefault("SDL_AUDIODRIVER", "dummy")
os.environ.setdefault("PYGAME_HIDE_SUPPORT_PROMPT", "1")


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers",
        "display: tests that open a (dummy-driver) pygame window")


@pytest.fixture
def rom_file(tmp_path):
    """Factory: write bytes to a temporary .ch8 file and return its path."""
    def _write(data: bytes, name: str = "prog.ch8") -> str:
        path = tmp_path / name
        path.write_bytes(data)
        return str(path)
    return _write
