"""
test_cache.py
2024-03-25 ZD

Pytest test suite for the `cache.py` module.
"""

import os
import sys
import pytest
from unittest.mock import MagicMock

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from modules.cache import FileCache


@pytest.fixture
def cache(tmp_path):
    return FileCache(str(tmp_path / "cache"))


def test_sanitize_key():
    """Test conversion of accessions and URLs into file names."""
    assert FileCache.sanitize_key("biosample_123.xml") == "biosample_123.xml"
    assert (FileCache.sanitize_key("https://example.org/a/b.txt?x=1")
            == "https_example.org_a_b.txt_x_1")

    with pytest.raises(ValueError):
        FileCache.sanitize_key("///")


def test_get_or_fetch_miss_then_hit(cache):
    """Test that fetch runs once and later calls reuse the saved bytes."""
    fetch = MagicMock(return_value=b"<BioSampleSet/>")

    first = cache.get_or_fetch("SAMN001", fetch)
    second = cache.get_or_fetch("SAMN001", fetch)

    assert first == second == b"<BioSampleSet/>"
    fetch.assert_called_once()
    assert cache.has("SAMN001")


def test_get_or_fetch_encodes_text(cache):
    """Test that text returned by fetch is saved as UTF-8 bytes."""
    data = cache.get_or_fetch("ids.json", lambda: '["1", "2"]')

    assert data == b'["1", "2"]'


def test_get_or_fetch_rejects_other_types(cache):
    """Test that non-bytes results are rejected and nothing is cached."""
    with pytest.raises(TypeError):
        cache.get_or_fetch("bad", lambda: 123)

    assert not cache.has("bad")


def test_get_or_fetch_failure_not_cached(cache):
    """Test that a failing fetch leaves no cache file behind."""
    def failing_fetch():
        raise ConnectionError("network down")

    with pytest.raises(ConnectionError):
        cache.get_or_fetch("SAMN002", failing_fetch)

    assert not cache.has("SAMN002")
    assert not os.path.exists(cache.path_for("SAMN002") + ".part")


def test_get_or_fetch_path(cache):
    """Test that the local path of the cached file is returned."""
    path = cache.get_or_fetch_path("https://example.org/taxonomy.txt",
                                   lambda: b"Bacteria\tdomain\n")

    assert path == cache.path_for("https://example.org/taxonomy.txt")
    with open(path, 'rb') as f:
        assert f.read() == b"Bacteria\tdomain\n"
