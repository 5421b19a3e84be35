"""
Cache Service
=============
Content-addressed cache for build dependencies and build artifacts
(``~/.cargo`` and ``./target`` by default).

Keys:
    {prefix}-{os}-{hash(toolchain file)}-{hash(lock file)}

Restore keys (most specific to least specific):
    {prefix}-{os}-{hash(toolchain file)}-
    {prefix}-{os}-
    {prefix}-{os}

Lookup:
    - The primary key must match exactly.
    - A restore key is a prefix: the newest archive whose key starts with it
      wins, ties broken by key name, so the same cache state always yields
      the same entry.
    - A miss on every key is not an error: the run starts with an empty cache.

Save:
    - Only after a successful run; never on failure (no partial artifacts).
    - Skipped when the primary key was an exact hit (content already stored).
    - Written to a temp file then atomically renamed: concurrent runs race
      last-writer-wins, which is safe because keys are content-derived.
    - A failed save is a warning, never a pipeline failure.

Storage layout:
    <cache_dir>/<key>.tar.gz   one archive per key, holding a manifest.json
                                 plus one member tree per cached path.

Manifest paths are portable: a path inside the checkout is stored relative
to it (``target``), a path under the home directory as ``~/...``, anything
else as-is. Restore resolves them against the current checkout, so an archive
saved from ``/runner/a/ceresdb`` restores into ``/runner/b/ceresdb``.
"""
import io
import json
import os
import platform
import shutil
import tarfile
import tempfile
import logging
from typing import Optional

from release_gate.models.cache_entry import CacheEntry
from release_gate.utils.hashing import hash_file

logger = logging.getLogger(__name__)

_ARCHIVE_SUFFIX = ".tar.gz"
_MANIFEST = "manifest.json"


def os_identifier() -> str:
    """Runner OS name used in cache keys (Linux / Darwin / Windows)."""
    return platform.system() or "unknown"


def compute_cache_key(
    toolchain_file: str,
    lock_file: str,
    prefix: str = "debug",
    os_name: Optional[str] = None,
) -> tuple[str, list[str]]:
    """
    Derive the primary key and the ordered fallback keys.

    Parameters
    ----------
    toolchain_file : str
        Path to the toolchain pin file.
    lock_file : str
        Path to the dependency lock file.
    prefix : str
        Build flavour prefix.
    os_name : str | None
        OS identifier override (defaults to the current platform).

    Returns
    -------
    tuple[str, list[str]]
        (primary_key, restore_keys)
    """
    os_name = os_name or os_identifier()
    toolchain_hash = hash_file(toolchain_file)
    lock_hash = hash_file(lock_file)
    key = f"{prefix}-{os_name}-{toolchain_hash}-{lock_hash}"
    restore_keys = [
        f"{prefix}-{os_name}-{toolchain_hash}-",
        f"{prefix}-{os_name}-",
        f"{prefix}-{os_name}",
    ]
    return key, restore_keys


def _is_within(path: str, parent: str) -> bool:
    return os.path.commonpath([path, parent]) == parent


def portable_path(path: str, root: Optional[str] = None) -> str:
    """Manifest form of ``path``: checkout-relative, ``~/``-relative or absolute."""
    path = os.path.abspath(os.path.expanduser(path))
    if root:
        root = os.path.abspath(root)
        if _is_within(path, root):
            return os.path.relpath(path, root)
    home = os.path.expanduser("~")
    if _is_within(path, home):
        return os.path.join("~", os.path.relpath(path, home))
    return path


def resolve_portable_path(stored: str, root: Optional[str] = None) -> str:
    """Inverse of ``portable_path`` for the current checkout."""
    if stored == "~" or stored.startswith("~" + os.sep):
        return os.path.expanduser(stored)
    if os.path.isabs(stored):
        return stored
    return os.path.abspath(os.path.join(root or os.getcwd(), stored))


class DependencyCache:
    """
    Directory-backed archive store.

    Usage:
        cache = DependencyCache("/var/cache/release-gate")
        entry = cache.restore(key, restore_keys, paths)
        ...
        if run_succeeded:
            cache.save(key, paths)
    """

    def __init__(self, cache_dir: str) -> None:
        self.cache_dir = os.path.abspath(os.path.expanduser(cache_dir))

    def _archive_for(self, key: str) -> str:
        return os.path.join(self.cache_dir, f"{key}{_ARCHIVE_SUFFIX}")

    def _stored_keys(self) -> list[str]:
        if not os.path.isdir(self.cache_dir):
            return []
        return sorted(
            name[: -len(_ARCHIVE_SUFFIX)]
            for name in os.listdir(self.cache_dir)
            if name.endswith(_ARCHIVE_SUFFIX)
        )

    def lookup(self, key: str, restore_keys: list[str]) -> Optional[str]:
        """
        Select the archive key to restore from.

        Returns
        -------
        str | None
            The matching stored key, or None on a full miss.
        """
        if os.path.isfile(self._archive_for(key)):
            return key

        stored = self._stored_keys()
        for prefix in restore_keys:
            candidates = [k for k in stored if k.startswith(prefix)]
            if not candidates:
                continue
            # newest first, then by name for a stable order
            candidates.sort(key=lambda k: (-os.path.getmtime(self._archive_for(k)), k))
            return candidates[0]
        return None

    def restore(
        self,
        key: str,
        restore_keys: list[str],
        paths: list[str],
        root: Optional[str] = None,
    ) -> CacheEntry:
        """
        Populate ``paths`` from the most specific matching archive.

        ``paths`` must already be absolute; relative manifest entries are
        resolved against ``root`` (the current checkout). A miss leaves them
        untouched. An archive that restores none of ``paths`` counts as a
        miss, so the next successful run saves a fresh one.
        """
        entry = CacheEntry(key=key, restore_keys=list(restore_keys), paths=list(paths))
        wanted = {os.path.abspath(p) for p in paths}
        restored = 0

        matched = self.lookup(key, restore_keys)
        if matched is None:
            logger.info("Cache miss for %s (no restore key matched)", key)
            return entry

        archive = self._archive_for(matched)
        with tempfile.TemporaryDirectory(prefix="release-gate-restore-") as tmp:
            with tarfile.open(archive, "r:gz") as tar:
                tar.extractall(tmp, filter="data")

            with open(os.path.join(tmp, _MANIFEST), "r", encoding="utf-8") as f:
                manifest = json.load(f)

            for item in manifest.get("paths", []):
                src = os.path.join(tmp, item["member"])
                dest = resolve_portable_path(item["path"], root)
                if dest not in wanted or not os.path.exists(src):
                    continue
                if os.path.isdir(src):
                    shutil.copytree(src, dest, dirs_exist_ok=True, symlinks=True)
                else:
                    os.makedirs(os.path.dirname(dest) or ".", exist_ok=True)
                    shutil.copy2(src, dest)
                restored += 1

        if not restored:
            logger.warning("Cache archive %s holds none of %s, treating as a miss", matched, paths)
            return entry

        entry.matched_key = matched
        entry.archive_path = archive
        logger.info("Cache %s: restored %s", "hit" if matched == key else "partial hit", matched)
        return entry

    def save(self, key: str, paths: list[str], root: Optional[str] = None) -> Optional[str]:
        """
        Archive the current state of ``paths`` under ``key``.

        Paths inside ``root`` are recorded relative to it. Missing paths are
        skipped. Returns the archive path, or None if there was nothing to
        save.
        """
        existing = [p for p in paths if os.path.exists(p)]
        if not existing:
            logger.info("Cache save skipped for %s: none of %s exist", key, paths)
            return None

        os.makedirs(self.cache_dir, exist_ok=True)
        archive = self._archive_for(key)
        fd, tmp_path = tempfile.mkstemp(prefix=f".{key}.", suffix=".tmp", dir=self.cache_dir)
        os.close(fd)

        manifest = {"key": key, "paths": []}
        try:
            with tarfile.open(tmp_path, "w:gz") as tar:
                for i, path in enumerate(existing):
                    member = f"p{i}"
                    tar.add(path, arcname=member)
                    manifest["paths"].append({"member": member, "path": portable_path(path, root)})

                data = json.dumps(manifest, indent=2).encode("utf-8")
                info = tarfile.TarInfo(_MANIFEST)
                info.size = len(data)
                tar.addfile(info, io.BytesIO(data))

            os.replace(tmp_path, archive)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

        logger.info("Cache saved: %s (%d path(s))", key, len(existing))
        return archive
