"""
Pytest configuration for the FLV demuxer tests.

Settings are read from the project's .env file when present, the same way
the application reads them.
"""

from pathlib import Path

import pytest
from dotenv import load_dotenv

from flv_samples import build_flv, flv_header, flv_tag

# Load .env file from project root
project_root = Path(__file__).parent.parent
load_dotenv(project_root / ".env")


def pytest_configure(config):
    """Configure pytest-asyncio mode."""
    config.addinivalue_line("markers", "asyncio: mark test as async")


@pytest.fixture
def make_flv():
    """
    Factory fixture building an FLV byte string from (tag_type, body) pairs.

    Usage:
        def test_something(make_flv):
            data = make_flv((0x09, b"frame"), (0x08, b"\\x2f..."))
    """

    def _make(*tags, flags: int = 0x05) -> bytes:
        return build_flv(*(flv_tag(tag_type, body) for tag_type, body in tags), flags=flags)

    return _make


@pytest.fixture
def header_only() -> bytes:
    return flv_header() + b"\x00\x00\x00\x00"
