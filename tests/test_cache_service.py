"""
Cache Service Tests
===================
Key derivation, exact / prefix / miss lookup, and save-restore of real
directories in a temp cache.
"""
import os

import pytest

from release_gate.services.cache_service import (
    DependencyCache,
    compute_cache_key,
    portable_path,
    resolve_portable_path,
)


@pytest.fixture
def checkout(tmp_path):
    ws = tmp_path / "ws"
    ws.mkdir()
    (ws / "rust-toolchain").write_text("nightly-2022-08-08\n")
    (ws / "Cargo.lock").write_text('[[package]]\nname = "arrow"\nversion = "23.0.0"\n')
    return ws


@pytest.fixture
def cache(tmp_path):
    return DependencyCache(str(tmp_path / "cache"))


def _key(ws, os_name="Linux"):
    return compute_cache_key(str(ws / "rust-toolchain"), str(ws / "Cargo.lock"), os_name=os_name)


def _touch_archive(cache, key, mtime):
    os.makedirs(cache.cache_dir, exist_ok=True)
    path = os.path.join(cache.cache_dir, f"{key}.tar.gz")
    with open(path, "wb") as f:
        f.write(b"")
    os.utime(path, (mtime, mtime))
    return path


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------
def test_key_is_deterministic(checkout):
    assert _key(checkout) == _key(checkout)


def test_key_shape_and_restore_keys(checkout):
    key, restore_keys = _key(checkout)
    assert key.startswith("debug-Linux-")
    assert restore_keys[0].startswith("debug-Linux-") and restore_keys[0].endswith("-")
    assert key.startswith(restore_keys[0])
    assert restore_keys[1:] == ["debug-Linux-", "debug-Linux"]


def test_lock_change_keeps_toolchain_prefix(checkout):
    key_before, restore_before = _key(checkout)
    (checkout / "Cargo.lock").write_text('[[package]]\nname = "arrow"\nversion = "24.0.0"\n')
    key_after, restore_after = _key(checkout)
    assert key_before != key_after
    assert restore_before == restore_after


def test_toolchain_change_changes_prefix(checkout):
    _, restore_before = _key(checkout)
    (checkout / "rust-toolchain").write_text("nightly-2022-09-01\n")
    _, restore_after = _key(checkout)
    assert restore_before[0] != restore_after[0]


def test_os_is_part_of_key(checkout):
    assert _key(checkout, "Linux")[0] != _key(checkout, "Darwin")[0]


# ---------------------------------------------------------------------------
# Lookup
# ---------------------------------------------------------------------------
def test_lookup_miss_on_empty_cache(cache, checkout):
    key, restore_keys = _key(checkout)
    assert cache.lookup(key, restore_keys) is None


def test_lookup_exact_hit_preferred(cache, checkout):
    key, restore_keys = _key(checkout)
    _touch_archive(cache, key, mtime=1000)
    _touch_archive(cache, restore_keys[0] + "other", mtime=2000)
    assert cache.lookup(key, restore_keys) == key


def test_lookup_prefix_picks_newest(cache, checkout):
    key, restore_keys = _key(checkout)
    _touch_archive(cache, restore_keys[0] + "old", mtime=1000)
    _touch_archive(cache, restore_keys[0] + "new", mtime=2000)
    assert cache.lookup(key, restore_keys) == restore_keys[0] + "new"


def test_lookup_prefix_tie_broken_by_name(cache, checkout):
    key, restore_keys = _key(checkout)
    _touch_archive(cache, restore_keys[0] + "bbb", mtime=1000)
    _touch_archive(cache, restore_keys[0] + "aaa", mtime=1000)
    assert cache.lookup(key, restore_keys) == restore_keys[0] + "aaa"


def test_lookup_falls_back_to_less_specific_prefix(cache, checkout):
    key, restore_keys = _key(checkout)
    _touch_archive(cache, "debug-Linux-othertoolchain-abc", mtime=1000)
    assert cache.lookup(key, restore_keys) == "debug-Linux-othertoolchain-abc"


def test_lookup_ignores_other_os(cache, checkout):
    key, restore_keys = _key(checkout)
    _touch_archive(cache, "debug-Darwin-xyz-abc", mtime=1000)
    assert cache.lookup(key, restore_keys) is None


# ---------------------------------------------------------------------------
# Save / restore
# ---------------------------------------------------------------------------
def test_save_then_restore_directory(cache, checkout):
    target = checkout / "target"
    (target / "debug").mkdir(parents=True)
    (target / "debug" / "ceresdb-server").write_bytes(b"\x7fELF binary")
    key, restore_keys = _key(checkout)

    archive = cache.save(key, [str(target)])
    assert archive is not None and os.path.isfile(archive)

    # wipe and restore
    (target / "debug" / "ceresdb-server").unlink()
    entry = cache.restore(key, restore_keys, [str(target)])

    assert entry.hit and entry.exact_hit
    assert (target / "debug" / "ceresdb-server").read_bytes() == b"\x7fELF binary"


def test_restore_partial_hit_from_prefix(cache, checkout):
    target = checkout / "target"
    target.mkdir()
    (target / "artifact").write_text("v1")
    key, restore_keys = _key(checkout)
    cache.save(key, [str(target)])

    # lock changes -> new primary key, same toolchain prefix
    (checkout / "Cargo.lock").write_text("changed\n")
    new_key, new_restore = _key(checkout)
    (target / "artifact").unlink()

    entry = cache.restore(new_key, new_restore, [str(target)])
    assert entry.hit
    assert not entry.exact_hit
    assert entry.matched_key == key
    assert (target / "artifact").read_text() == "v1"


def test_restore_miss_leaves_paths_untouched(cache, checkout):
    key, restore_keys = _key(checkout)
    entry = cache.restore(key, restore_keys, [str(checkout / "target")])
    assert not entry.hit
    assert not (checkout / "target").exists()


def test_save_with_no_existing_paths_returns_none(cache, checkout):
    key, _ = _key(checkout)
    assert cache.save(key, [str(checkout / "missing")]) is None
    assert not os.path.isdir(cache.cache_dir) or not os.listdir(cache.cache_dir)


def test_save_leaves_no_temp_files(cache, checkout):
    (checkout / "target").mkdir()
    key, _ = _key(checkout)
    cache.save(key, [str(checkout / "target")])
    assert sorted(os.listdir(cache.cache_dir)) == [f"{key}.tar.gz"]


def test_restore_into_moved_checkout(tmp_path, cache):
    first = tmp_path / "run1" / "ceresdb"
    (first / "target" / "debug").mkdir(parents=True)
    (first / "target" / "debug" / "artifact.rlib").write_bytes(b"rlib")
    cache.save("debug-Linux-a-b", [str(first / "target")], root=str(first))

    second = tmp_path / "run2" / "ceresdb"
    second.mkdir(parents=True)
    entry = cache.restore("debug-Linux-a-b", [], [str(second / "target")], root=str(second))

    assert entry.exact_hit
    assert (second / "target" / "debug" / "artifact.rlib").read_bytes() == b"rlib"


def test_archive_without_requested_paths_is_a_miss(tmp_path, cache, checkout):
    (checkout / "target").mkdir()
    key, restore_keys = _key(checkout)
    cache.save(key, [str(checkout / "target")], root=str(checkout))

    entry = cache.restore(key, restore_keys, [str(tmp_path / "elsewhere")], root=str(checkout))

    assert not entry.hit
    assert not entry.exact_hit


def test_manifest_paths_are_portable(tmp_path, monkeypatch):
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    root = tmp_path / "home" / "work" / "ceresdb"

    assert portable_path(str(root / "target"), str(root)) == "target"
    assert portable_path(str(tmp_path / "home" / ".cargo"), str(root)) == os.path.join("~", ".cargo")
    assert portable_path("/opt/sdk", str(root)) == "/opt/sdk"
    assert resolve_portable_path("target", "/runner/b") == "/runner/b/target"
    assert resolve_portable_path(os.path.join("~", ".cargo")) == str(tmp_path / "home" / ".cargo")
