"""
cache.py
2024-03-12 ZD

This module defines FileCache, the single place where raw remote responses
(BioSample XML, ENA reports, the reference taxonomy download) are saved to
disk and reused. Each key maps to one file inside the cache directory. A fetch
function is only called when the key has no file yet, and its result is saved
exactly once.

The cache is not safe for concurrent use. The pipeline runs as one sequential
process, so no locking is done.
"""

import os
import re
from typing import Callable


class FileCache:
    """Directory-backed cache of raw bytes keyed by accession, URL, etc.

    Args:
        cache_dir: Directory to hold cached files. Created on first write.
    """

    def __init__(self, cache_dir: str):
        self.cache_dir = cache_dir


    @staticmethod
    def sanitize_key(key: str) -> str:
        """Convert a cache key into a safe file name."""

        name = re.sub(r'[^A-Za-z0-9._-]+', '_', str(key)).strip('._')
        if not name:
            raise ValueError(f"Cache key '{key}' has no usable characters.")

        return name


    def path_for(self, key: str) -> str:
        """Get the file path used to store a key."""
        return os.path.join(self.cache_dir, self.sanitize_key(key))


    def has(self, key: str) -> bool:
        return os.path.exists(self.path_for(key))


    def _write(self, path: str, data: bytes):
        """Write to a temporary file and rename so partial files never stay."""

        os.makedirs(self.cache_dir, exist_ok=True)
        tmp_path = path + '.part'
        with open(tmp_path, 'wb') as f:
            f.write(data)
        os.replace(tmp_path, path)


    def get_or_fetch(self, key: str, fetch: Callable[[], bytes]) -> bytes:
        """Return cached bytes for key, calling fetch() only on a miss.

        Args:
            key: Cache key, e.g. an accession or a download name
            fetch: Zero-argument callable returning the raw bytes

        Returns:
            Raw bytes, either reused from disk or freshly fetched
        """

        path = self.path_for(key)

        if os.path.exists(path):
            print(f"Reusing cached {key} found in {path}.")
            with open(path, 'rb') as f:
                return f.read()

        data = fetch()
        if isinstance(data, str):
            data = data.encode('utf-8')
        if not isinstance(data, bytes):
            raise TypeError(f"Fetch for '{key}' returned "
                            f"{type(data).__name__}, expected bytes.")

        self._write(path, data)

        return data


    def get_or_fetch_path(self, key: str, fetch: Callable[[], bytes]) -> str:
        """Same as get_or_fetch but return the local file path."""

        self.get_or_fetch(key, fetch)

        return self.path_for(key)
