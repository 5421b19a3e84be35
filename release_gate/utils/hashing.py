"""
Hashing Utility
===============
Deterministic content fingerprints for cache keys.

Rules:
    - Hash file bytes, never paths or timestamps.
    - SHA-256 truncated to 16 hex chars for compactness.
    - A missing file hashes to the empty string, so the key still builds
      (mirrors hashFiles() on a path that does not exist).
"""
import hashlib
import os

_CHUNK = 1024 * 1024


def hash_file(path: str) -> str:
    """
    Fingerprint a file's content.

    Returns
    -------
    str
        16-character hex digest, or "" if the file does not exist.
    """
    if not os.path.isfile(path):
        return ""

    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()[:16]
