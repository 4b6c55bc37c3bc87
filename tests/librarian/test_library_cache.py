"""
Tests for the cache key and the cache manager.
"""

import json
import os
import socket
import subprocess
import sys
import threading
import time

import pytest

from librarian.librarian_exceptions import CacheError
from librarian.library_cache import (
    CacheEntryState,
    CacheKey,
    CacheManager,
    ExclusiveSlotHandle,
    ReadyEntry,
    cache_key,
)
from librarian.library_cache.cache_manager import CLAIM_FILE, POISONED_FILE, READY_FILE
from librarian.library_models import ArchiveFormat, LibraryRequest

from librarian_test_utils import LINUX_TRIPLE, WINDOWS_TRIPLE


def _key(name="foo", version="1.0", target_triple=LINUX_TRIPLE, source_url="https://example.com/foo.zip"):
    return CacheKey(name=name, version=version, target_triple=target_triple, source_url=source_url)


def _write_claim(entry_dir, pid, hostname=None, created_at=None, token="f" * 32):
    entry_dir.mkdir(parents=True, exist_ok=True)
    (entry_dir / CLAIM_FILE).write_text(
        json.dumps(
            {
                "pid": pid,
                "hostname": hostname or socket.gethostname(),
                "token": token,
                "created_at": time.time() if created_at is None else created_at,
            }
        )
    )


def _dead_pid():
    process = subprocess.Popen([sys.executable, "-c", "pass"])
    process.wait()
    return process.pid


class FakeClock:
    """Monotonic clock that only advances when the cache manager sleeps."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = 0

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps += 1
        self.now += seconds


class TestCacheKey:
    """Tests for cache key derivation."""

    def test_digest_is_not_part_of_the_key(self):
        base = dict(
            name="foo",
            version="1.0",
            target_triple=LINUX_TRIPLE,
            source_url="https://example.com/foo.zip",
            archive_format=ArchiveFormat.ZIP,
        )
        first = LibraryRequest(**base, expected_digest="sha256:00")
        second = LibraryRequest(**base, expected_digest="sha256:ff")
        assert cache_key(first) == cache_key(second)
        assert cache_key(first).dirname == cache_key(second).dirname

    @pytest.mark.parametrize(
        "field,value",
        [
            ("name", "bar"),
            ("version", "1.1"),
            ("target_triple", WINDOWS_TRIPLE),
            ("source_url", "https://mirror.example.com/foo.zip"),
        ],
    )
    def test_every_identity_field_changes_the_key(self, field, value):
        assert _key().dirname != _key(**{field: value}).dirname

    def test_dirname_is_filesystem_safe(self):
        key = _key(name="../../etc/passwd", version="1.0:beta", target_triple="x86_64 pc\\windows")
        dirname = key.dirname
        assert "/" not in dirname
        assert "\\" not in dirname
        assert ":" not in dirname
        assert ".." not in dirname.split("-")[0]
        assert not dirname.startswith(".")

    def test_dirname_prefix_is_bounded(self):
        key = _key(name="x" * 500)
        assert len(key.dirname) <= 64 + 1 + 32
        assert key.dirname.endswith(key.digest[:32])


class TestCacheManagerLifecycle:
    """Tests for the Empty -> Populating -> Ready / Poisoned lifecycle."""

    def test_first_acquire_returns_exclusive_slot(self, cache_manager):
        key = _key()
        slot = cache_manager.acquire_slot(key)

        assert isinstance(slot, ExclusiveSlotHandle)
        assert slot.staging_dir.is_dir()
        assert (slot.entry_dir / CLAIM_FILE).exists()
        assert cache_manager.entry(key).state == CacheEntryState.POPULATING
        slot.abort("test finished")

    def test_commit_publishes_ready_entry(self, cache_manager):
        key = _key()
        slot = cache_manager.acquire_slot(key)
        (slot.staging_dir / "lib").mkdir()
        (slot.staging_dir / "lib" / "libfoo.a").write_bytes(b"archive")
        slot.download_path.write_bytes(b"download")

        root_dir = slot.commit("sha256:abc")

        assert root_dir == slot.entry_dir / "root"
        assert (root_dir / "lib" / "libfoo.a").read_bytes() == b"archive"
        assert not slot.staging_dir.exists()
        assert not slot.download_path.exists()
        assert not (slot.entry_dir / CLAIM_FILE).exists()
        marker = json.loads((slot.entry_dir / READY_FILE).read_text())
        assert marker["key"] == key.digest
        assert marker["archive_digest"] == "sha256:abc"
        assert cache_manager.entry(key).state == CacheEntryState.READY

    def test_ready_entry_is_reused(self, cache_manager):
        key = _key()
        slot = cache_manager.acquire_slot(key)
        (slot.staging_dir / "foo.txt").write_text("hello")
        root_dir = slot.commit()

        again = cache_manager.acquire_slot(key)

        assert isinstance(again, ReadyEntry)
        assert again.root_dir == root_dir
        assert (again.root_dir / "foo.txt").read_text() == "hello"

    def test_leaving_with_block_without_commit_poisons_entry(self, cache_manager):
        key = _key()
        with pytest.raises(RuntimeError):
            with cache_manager.acquire_slot(key) as slot:
                (slot.staging_dir / "partial").write_bytes(b"half")
                slot.download_path.write_bytes(b"half")
                raise RuntimeError("boom")

        assert not slot.staging_dir.exists()
        assert not slot.download_path.exists()
        assert not (slot.entry_dir / "root").exists()
        assert not (slot.entry_dir / CLAIM_FILE).exists()
        assert "boom" in json.loads((slot.entry_dir / POISONED_FILE).read_text())["reason"]
        assert cache_manager.entry(key).state == CacheEntryState.POISONED

    def test_poisoned_entry_is_repopulated_from_scratch(self, cache_manager):
        key = _key()
        slot = cache_manager.acquire_slot(key)
        slot.abort("bad digest")

        retry = cache_manager.acquire_slot(key)

        assert isinstance(retry, ExclusiveSlotHandle)
        assert not (retry.entry_dir / POISONED_FILE).exists()
        assert [p.name for p in retry.entry_dir.iterdir() if p.name != CLAIM_FILE] == [retry.staging_dir.name]
        retry.commit()
        assert cache_manager.entry(key).state == CacheEntryState.READY

    def test_commit_after_lost_claim_fails(self, cache_manager):
        key = _key()
        slot = cache_manager.acquire_slot(key)
        (slot.entry_dir / CLAIM_FILE).unlink()

        with pytest.raises(CacheError) as excinfo:
            slot.commit()

        assert excinfo.value.phase == "cache"
        assert not (slot.entry_dir / READY_FILE).exists()
        assert cache_manager.entry(key).state == CacheEntryState.POISONED

    def test_corrupt_ready_marker_is_not_trusted(self, cache_manager):
        key = _key()
        entry_dir = cache_manager.entry_dir(key)
        (entry_dir / "root").mkdir(parents=True)
        (entry_dir / READY_FILE).write_text("{not json")

        slot = cache_manager.acquire_slot(key)

        assert isinstance(slot, ExclusiveSlotHandle)
        assert not (entry_dir / READY_FILE).exists()
        assert not (entry_dir / "root").exists()
        slot.abort("test finished")

    def test_ready_marker_for_other_key_is_not_trusted(self, cache_manager):
        key = _key()
        entry_dir = cache_manager.entry_dir(key)
        (entry_dir / "root").mkdir(parents=True)
        (entry_dir / READY_FILE).write_text(json.dumps({"key": _key(name="other").digest}))

        assert cache_manager.entry(key).state != CacheEntryState.READY


class TestCacheManagerClaims:
    """Tests for claim waiting, staleness and crash recovery."""

    def test_waiting_on_live_claim_times_out(self, tmp_path, logger):
        clock = FakeClock()
        manager = CacheManager(
            tmp_path / "cache", logger, lock_timeout=1.0, poll_interval=0.1, clock=clock, sleep=clock.sleep
        )
        key = _key()
        _write_claim(manager.entry_dir(key), os.getpid())

        with pytest.raises(CacheError) as excinfo:
            manager.acquire_slot(key)

        assert excinfo.value.phase == "cache"
        assert excinfo.value.resource == key.dirname
        assert clock.sleeps >= 10
        # The live claim is left alone.
        assert (manager.entry_dir(key) / CLAIM_FILE).exists()

    def test_claim_of_dead_process_is_broken(self, cache_manager):
        key = _key()
        entry_dir = cache_manager.entry_dir(key)
        _write_claim(entry_dir, _dead_pid())
        (entry_dir / "staging-deadbeef").mkdir()
        (entry_dir / "staging-deadbeef" / "half.lib").write_bytes(b"x")
        (entry_dir / "download-deadbeef.part").write_bytes(b"x")

        assert cache_manager.entry(key).state == CacheEntryState.POISONED
        slot = cache_manager.acquire_slot(key)

        assert isinstance(slot, ExclusiveSlotHandle)
        assert not (entry_dir / "staging-deadbeef").exists()
        assert not (entry_dir / "download-deadbeef.part").exists()
        slot.commit()
        assert cache_manager.entry(key).state == CacheEntryState.READY

    def test_old_claim_from_other_host_is_broken(self, tmp_path, logger):
        manager = CacheManager(tmp_path / "cache", logger, lock_timeout=1.0, poll_interval=0.01, stale_claim_after=60)
        key = _key()
        _write_claim(manager.entry_dir(key), 1, hostname="build-agent-7", created_at=time.time() - 120)

        slot = manager.acquire_slot(key)

        assert isinstance(slot, ExclusiveSlotHandle)
        slot.abort("test finished")

    def test_recent_claim_from_other_host_is_respected(self, tmp_path, logger):
        clock = FakeClock()
        manager = CacheManager(
            tmp_path / "cache", logger, lock_timeout=0.5, poll_interval=0.1, clock=clock, sleep=clock.sleep
        )
        key = _key()
        _write_claim(manager.entry_dir(key), 1, hostname="build-agent-7")

        with pytest.raises(CacheError):
            manager.acquire_slot(key)

    def test_unreadable_old_claim_is_broken(self, cache_manager):
        key = _key()
        entry_dir = cache_manager.entry_dir(key)
        entry_dir.mkdir(parents=True)
        claim_path = entry_dir / CLAIM_FILE
        claim_path.write_text("{trunc")
        old = time.time() - 600
        os.utime(claim_path, (old, old))

        slot = cache_manager.acquire_slot(key)

        assert isinstance(slot, ExclusiveSlotHandle)
        slot.abort("test finished")

    @pytest.mark.skipif(not hasattr(os, "fork"), reason="requires fork")
    def test_crashed_populator_process_is_recovered(self, cache_manager):
        """A child process claims the entry and dies before committing."""
        key = _key()
        pid = os.fork()
        if pid == 0:
            try:
                slot = cache_manager.acquire_slot(key)
                (slot.staging_dir / "half.dll").write_bytes(b"partial")
            finally:
                os._exit(0)
        os.waitpid(pid, 0)

        entry_dir = cache_manager.entry_dir(key)
        assert (entry_dir / CLAIM_FILE).exists()
        assert cache_manager.entry(key).state == CacheEntryState.POISONED

        slot = cache_manager.acquire_slot(key)

        assert isinstance(slot, ExclusiveSlotHandle)
        assert not any(p.name.startswith("staging-") and p != slot.staging_dir for p in entry_dir.iterdir())
        root_dir = slot.commit()
        assert not (root_dir / "half.dll").exists()

    def test_concurrent_threads_populate_once(self, cache_manager):
        key = _key()
        barrier = threading.Barrier(6)
        lock = threading.Lock()
        populations = []
        roots = []
        errors = []

        def worker():
            try:
                barrier.wait()
                slot = cache_manager.acquire_slot(key)
                if isinstance(slot, ExclusiveSlotHandle):
                    with lock:
                        populations.append(slot.claim.token)
                    (slot.staging_dir / "libfoo.so").write_bytes(b"elf")
                    time.sleep(0.1)
                    root_dir = slot.commit()
                else:
                    root_dir = slot.root_dir
                with lock:
                    roots.append(root_dir)
            except Exception as e:  # collected for the assertion below
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert len(populations) == 1
        assert len(set(roots)) == 1
        assert (roots[0] / "libfoo.so").read_bytes() == b"elf"


class TestCacheManagerEviction:
    """Tests for explicit eviction and reclamation."""

    def test_evict_ready_entry(self, cache_manager):
        key = _key()
        cache_manager.acquire_slot(key).commit()

        assert cache_manager.evict(key) is True
        assert not cache_manager.entry_dir(key).exists()
        assert cache_manager.entry(key).state == CacheEntryState.EMPTY

    def test_evict_missing_entry(self, cache_manager):
        assert cache_manager.evict(_key()) is False

    def test_evict_refuses_live_population(self, cache_manager):
        key = _key()
        slot = cache_manager.acquire_slot(key)

        with pytest.raises(CacheError):
            cache_manager.evict(key)

        slot.abort("test finished")

    def test_reclaim_poisoned_keeps_ready_entries(self, cache_manager):
        ready_key = _key(name="ready")
        poisoned_key = _key(name="poisoned")
        cache_manager.acquire_slot(ready_key).commit()
        cache_manager.acquire_slot(poisoned_key).abort("bad archive")

        removed = cache_manager.reclaim_poisoned()

        assert removed == [poisoned_key.dirname]
        assert cache_manager.entry(ready_key).state == CacheEntryState.READY
        assert cache_manager.entry(poisoned_key).state == CacheEntryState.EMPTY
