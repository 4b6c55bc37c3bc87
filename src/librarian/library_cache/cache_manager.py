"""
Cache manager implementation.

Maps cache keys to directories under the cache root and owns their creation,
reuse and concurrency-safe population. Build scripts run as independent
processes, so all coordination happens through files in each entry directory:

    <cache root>/<key dirname>/
        root/                 extracted tree, present once committed
        ready.json            completion marker, written last
        claim.json            exclusive population claim with a liveness token
        poisoned.json         reason the last population attempt failed
        staging-<token>/      extraction target of the current claim holder
        download-<token>.part archive bytes of the current claim holder

Readiness is gated on ready.json, never on the existence of root/.
"""

import json
import logging
import os
import pathlib
import socket
import time
import uuid
from dataclasses import asdict, dataclass
from typing import Callable, Dict, List, Optional, Union

from librarian.librarian_exceptions import CacheError
from librarian.librarian_logger import LibrarianLogger
from librarian.librarian_utils import FileUtils
from librarian.library_cache.cache_key import CacheKey

CLAIM_FILE = "claim.json"
READY_FILE = "ready.json"
POISONED_FILE = "poisoned.json"
ROOT_DIR = "root"
STAGING_PREFIX = "staging-"
DOWNLOAD_PREFIX = "download-"
BROKEN_CLAIM_PREFIX = "claim.broken-"

# An unreadable claim younger than this may still be being written by its owner.
CLAIM_WRITE_GRACE = 5.0


class CacheEntryState:
    """Enumeration of cache entry states."""

    EMPTY = "empty"
    POPULATING = "populating"
    READY = "ready"
    POISONED = "poisoned"


class CacheEntry:
    """
    On-disk state of a cache entry at the time it was inspected.
    """

    def __init__(self, key: CacheKey, root_dir: pathlib.Path, state: str):
        self.key = key
        self.root_dir = root_dir
        self.state = state

    def __repr__(self) -> str:
        return f"CacheEntry(key={self.key.dirname}, state={self.state}, root={self.root_dir})"


class ReadyEntry:
    """
    A committed cache entry. Its root directory is never modified again.
    """

    def __init__(self, key: CacheKey, root_dir: pathlib.Path, marker: Dict[str, object]):
        self.key = key
        self.root_dir = root_dir
        self.marker = marker

    def __repr__(self) -> str:
        return f"ReadyEntry(key={self.key.dirname}, root={self.root_dir})"


@dataclass
class ClaimToken:
    """Liveness token stored in claim.json."""

    pid: int
    hostname: str
    token: str
    created_at: float

    @classmethod
    def new(cls) -> "ClaimToken":
        return cls(
            pid=os.getpid(),
            hostname=socket.gethostname(),
            token=uuid.uuid4().hex,
            created_at=time.time(),
        )

    @classmethod
    def from_json(cls, text: str) -> Optional["ClaimToken"]:
        try:
            data = json.loads(text)
            return cls(
                pid=int(data["pid"]),
                hostname=str(data["hostname"]),
                token=str(data["token"]),
                created_at=float(data["created_at"]),
            )
        except (ValueError, KeyError, TypeError):
            return None

    def to_json(self) -> str:
        return json.dumps(asdict(self), sort_keys=True)


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    if os.name == "nt":
        import ctypes

        process_query_limited_information = 0x1000
        still_active = 259
        kernel32 = ctypes.windll.kernel32  # type: ignore[attr-defined]
        handle = kernel32.OpenProcess(process_query_limited_information, False, pid)
        if not handle:
            return False
        try:
            exit_code = ctypes.c_ulong()
            if not kernel32.GetExitCodeProcess(handle, ctypes.byref(exit_code)):
                return True
            return exit_code.value == still_active
        finally:
            kernel32.CloseHandle(handle)
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class ExclusiveSlotHandle:
    """
    Exclusive right to populate one cache entry.

    The holder extracts into ``staging_dir`` and downloads into
    ``download_path``, then calls ``commit()`` to publish the entry or
    ``abort()`` to poison it. Leaving a ``with`` block without committing
    aborts the slot.
    """

    def __init__(self, manager: "CacheManager", key: CacheKey, entry_dir: pathlib.Path, claim: ClaimToken):
        self.manager = manager
        self.key = key
        self.entry_dir = entry_dir
        self.claim = claim
        self.root_dir = entry_dir / ROOT_DIR
        self.staging_dir = entry_dir / f"{STAGING_PREFIX}{claim.token}"
        self.download_path = entry_dir / f"{DOWNLOAD_PREFIX}{claim.token}.part"
        self.finished = False

    def __enter__(self) -> "ExclusiveSlotHandle":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if not self.finished:
            self.abort(repr(exc) if exc is not None else "abandoned without commit")
        return False

    def commit(self, archive_digest: Optional[str] = None) -> pathlib.Path:
        """
        Publishes the staged tree as the entry's root and writes the Ready marker.

        Returns:
            The committed root directory

        Raises:
            CacheError: if the claim was lost or the filesystem operation failed
        """
        if self.finished:
            raise CacheError("Slot already finished", resource=str(self.entry_dir))
        if not self.manager._holds_claim(self.entry_dir, self.claim):
            self.abort("claim lost before commit")
            raise CacheError(
                "Exclusive claim was lost before commit",
                resource=str(self.entry_dir),
                hint="Another process judged this claim stale; retry the build.",
            )
        try:
            os.rename(self.staging_dir, self.root_dir)
            marker = {
                "key": self.key.digest,
                "name": self.key.name,
                "version": self.key.version,
                "target_triple": self.key.target_triple,
                "source_url": self.key.source_url,
                "archive_digest": archive_digest,
                "created_at": time.time(),
            }
            FileUtils.atomic_write_text(
                self.entry_dir / READY_FILE, json.dumps(marker, indent=2, sort_keys=True) + "\n"
            )
            FileUtils.remove_path(self.download_path)
        except OSError as e:
            self.abort(f"commit failed: {e}")
            raise CacheError(
                f"Failed to commit cache entry: {e}",
                resource=str(self.entry_dir),
            ) from e

        self.finished = True
        self.manager._release_claim(self.entry_dir, self.claim)
        self.manager.logger.log(f"Committed cache entry {self.key.dirname}", logging.INFO)
        return self.root_dir

    def abort(self, reason: str) -> None:
        """
        Discards everything this slot wrote, marks the entry Poisoned and
        releases the claim so a later attempt can start from scratch.
        """
        if self.finished:
            return
        self.finished = True
        self.manager.logger.log(
            f"Aborting population of {self.key.dirname}: {reason}",
            logging.WARNING,
        )
        try:
            FileUtils.remove_path(self.staging_dir)
            FileUtils.remove_path(self.download_path)
            if not (self.entry_dir / READY_FILE).exists():
                FileUtils.remove_path(self.root_dir)
            FileUtils.atomic_write_text(
                self.entry_dir / POISONED_FILE,
                json.dumps({"reason": reason, "at": time.time()}, sort_keys=True) + "\n",
            )
        except OSError as e:
            # Leftovers are cleared by the next claim holder.
            self.manager.logger.log(
                f"Failed to clean up {self.entry_dir} after abort: {e}",
                logging.ERROR,
            )
        finally:
            self.manager._release_claim(self.entry_dir, self.claim)


class CacheManager:
    """
    Owns the on-disk cache. No other component writes under the cache root.
    """

    def __init__(
        self,
        cache_root: Union[str, pathlib.Path],
        logger: LibrarianLogger,
        lock_timeout: float = 600.0,
        poll_interval: float = 0.2,
        stale_claim_after: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the cache manager.

        Args:
            cache_root: Directory holding one subdirectory per cache key
            logger: Logger for cache events
            lock_timeout: Seconds to wait for another process's claim before failing
            poll_interval: Seconds between checks while waiting on a claim
            stale_claim_after: Age in seconds after which any claim is considered abandoned
            clock: Monotonic clock used for the wait deadline
            sleep: Sleep function used between polls
        """
        self.cache_root = pathlib.Path(cache_root)
        self.logger = logger
        self.lock_timeout = lock_timeout
        self.poll_interval = poll_interval
        self.stale_claim_after = stale_claim_after
        self.clock = clock
        self.sleep = sleep

    def entry_dir(self, key: CacheKey) -> pathlib.Path:
        return self.cache_root / key.dirname

    def acquire_slot(self, key: CacheKey) -> Union[ExclusiveSlotHandle, ReadyEntry]:
        """
        Returns the Ready entry for ``key``, or the exclusive right to populate it.

        Blocks while another live process holds the claim, until it commits
        (the Ready entry is returned), gives up (the claim is re-attempted),
        or ``lock_timeout`` elapses.

        Raises:
            CacheError: on timeout or filesystem failure
        """
        entry_dir = self.entry_dir(key)
        deadline = self.clock() + self.lock_timeout
        waiting_logged = False

        while True:
            ready = self._read_ready(entry_dir, key)
            if ready is not None:
                self.logger.log(f"Cache hit for {key.dirname}", logging.DEBUG)
                return ready

            try:
                entry_dir.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise CacheError(
                    f"Cannot create cache entry directory: {e}",
                    resource=str(entry_dir),
                    hint="Check permissions and free space of the cache root.",
                ) from e

            claim = self._try_claim(entry_dir)
            if claim is not None:
                ready = self._read_ready(entry_dir, key)
                if ready is not None:
                    self._release_claim(entry_dir, claim)
                    return ready
                try:
                    self._clear_leftovers(entry_dir)
                except CacheError:
                    self._release_claim(entry_dir, claim)
                    raise
                handle = ExclusiveSlotHandle(self, key, entry_dir, claim)
                try:
                    handle.staging_dir.mkdir(parents=True)
                except OSError as e:
                    handle.abort(f"cannot create staging directory: {e}")
                    raise CacheError(
                        f"Cannot create staging directory: {e}",
                        resource=str(handle.staging_dir),
                    ) from e
                self.logger.log(f"Claimed cache entry {key.dirname}", logging.INFO)
                return handle

            holder = self._read_claim(entry_dir)
            if self._is_stale(entry_dir, holder):
                self._break_claim(entry_dir, holder)
                continue

            if self.clock() >= deadline:
                raise CacheError(
                    f"Timed out after {self.lock_timeout}s waiting for another process to populate the entry",
                    resource=key.dirname,
                    hint="Remove the claim file if its owner is known to be gone.",
                    context={"claim": str(entry_dir / CLAIM_FILE)},
                )
            if not waiting_logged:
                self.logger.log(
                    f"Waiting for another process populating {key.dirname}",
                    logging.INFO,
                )
                waiting_logged = True
            self.sleep(self.poll_interval)

    def entry(self, key: CacheKey) -> CacheEntry:
        """
        Inspects the current state of the entry for ``key``.
        """
        entry_dir = self.entry_dir(key)
        root_dir = entry_dir / ROOT_DIR
        if self._read_ready(entry_dir, key) is not None:
            return CacheEntry(key, root_dir, CacheEntryState.READY)
        return CacheEntry(key, root_dir, self._unready_state(entry_dir))

    def evict(self, key: CacheKey) -> bool:
        """
        Removes the entry for ``key``. Callers must ensure no build is reading it.

        Returns:
            True if an entry was removed

        Raises:
            CacheError: if another live process is populating the entry
        """
        entry_dir = self.entry_dir(key)
        if not entry_dir.exists():
            return False
        return self._remove_entry(entry_dir, key.dirname)

    def reclaim_poisoned(self) -> List[str]:
        """
        Removes every Poisoned entry under the cache root, including entries
        whose populator died. Ready and live Populating entries are kept.

        Returns:
            Directory names of the removed entries
        """
        removed = []
        if not self.cache_root.is_dir():
            return removed
        for entry_dir in sorted(self.cache_root.iterdir()):
            if not entry_dir.is_dir() or (entry_dir / READY_FILE).exists():
                continue
            if self._unready_state(entry_dir) != CacheEntryState.POISONED:
                continue
            try:
                if self._remove_entry(entry_dir, entry_dir.name):
                    removed.append(entry_dir.name)
            except CacheError as e:
                self.logger.log(f"Skipping {entry_dir.name}: {e.message}", logging.INFO)
        return removed

    def _remove_entry(self, entry_dir: pathlib.Path, name: str) -> bool:
        holder = self._read_claim(entry_dir)
        if holder is not None and self._is_stale(entry_dir, holder):
            self._break_claim(entry_dir, holder)
        claim = self._try_claim(entry_dir)
        if claim is None:
            raise CacheError(
                "Cache entry is being populated by another process",
                resource=str(entry_dir),
            )
        try:
            for child in entry_dir.iterdir():
                if child.name != CLAIM_FILE:
                    FileUtils.remove_path(child)
        except OSError as e:
            self._release_claim(entry_dir, claim)
            raise CacheError(f"Failed to remove cache entry: {e}", resource=str(entry_dir)) from e
        self._release_claim(entry_dir, claim)
        try:
            entry_dir.rmdir()
        except OSError:
            # Another process started populating the key in the meantime.
            pass
        self.logger.log(f"Removed cache entry {name}", logging.INFO)
        return True

    def _unready_state(self, entry_dir: pathlib.Path) -> str:
        if not entry_dir.is_dir():
            return CacheEntryState.EMPTY
        holder = self._read_claim(entry_dir)
        if (entry_dir / CLAIM_FILE).exists():
            if self._is_stale(entry_dir, holder):
                return CacheEntryState.POISONED
            return CacheEntryState.POPULATING
        if any(entry_dir.iterdir()):
            return CacheEntryState.POISONED
        return CacheEntryState.EMPTY

    def _read_ready(self, entry_dir: pathlib.Path, key: CacheKey) -> Optional[ReadyEntry]:
        marker_path = entry_dir / READY_FILE
        root_dir = entry_dir / ROOT_DIR
        try:
            marker = json.loads(marker_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            self.logger.log(f"Ignoring unreadable ready marker {marker_path}: {e}", logging.WARNING)
            return None
        if not isinstance(marker, dict) or marker.get("key") != key.digest or not root_dir.is_dir():
            self.logger.log(f"Ignoring mismatched ready marker {marker_path}", logging.WARNING)
            return None
        return ReadyEntry(key, root_dir, marker)

    def _try_claim(self, entry_dir: pathlib.Path) -> Optional[ClaimToken]:
        claim = ClaimToken.new()
        claim_path = entry_dir / CLAIM_FILE
        try:
            fd = os.open(claim_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return None
        except OSError as e:
            raise CacheError(
                f"Cannot create claim file: {e}",
                resource=str(claim_path),
                hint="Check permissions of the cache root.",
            ) from e
        try:
            try:
                os.write(fd, claim.to_json().encode("utf-8"))
                os.fsync(fd)
            finally:
                os.close(fd)
        except OSError as e:
            FileUtils.remove_path(claim_path)
            raise CacheError(f"Cannot write claim file: {e}", resource=str(claim_path)) from e
        return claim

    def _read_claim(self, entry_dir: pathlib.Path) -> Optional[ClaimToken]:
        try:
            text = (entry_dir / CLAIM_FILE).read_text(encoding="utf-8")
        except OSError:
            return None
        return ClaimToken.from_json(text)

    def _holds_claim(self, entry_dir: pathlib.Path, claim: ClaimToken) -> bool:
        holder = self._read_claim(entry_dir)
        return holder is not None and holder.token == claim.token

    def _is_stale(self, entry_dir: pathlib.Path, holder: Optional[ClaimToken]) -> bool:
        claim_path = entry_dir / CLAIM_FILE
        if holder is None:
            # Unreadable or half-written claim: judge by file age.
            try:
                age = time.time() - claim_path.stat().st_mtime
            except FileNotFoundError:
                return False
            return age > max(CLAIM_WRITE_GRACE, self.poll_interval)
        if time.time() - holder.created_at > self.stale_claim_after:
            return True
        if holder.hostname == socket.gethostname():
            return not _pid_alive(holder.pid)
        return False

    def _break_claim(self, entry_dir: pathlib.Path, holder: Optional[ClaimToken]) -> None:
        claim_path = entry_dir / CLAIM_FILE
        aside = entry_dir / f"{BROKEN_CLAIM_PREFIX}{uuid.uuid4().hex}"
        try:
            os.rename(claim_path, aside)
        except FileNotFoundError:
            return
        except OSError as e:
            raise CacheError(f"Cannot break stale claim: {e}", resource=str(claim_path)) from e

        try:
            moved = ClaimToken.from_json(aside.read_text(encoding="utf-8"))
        except OSError:
            moved = None
        expected = holder.token if holder is not None else None
        actual = moved.token if moved is not None else None
        if expected != actual:
            # The claim was replaced between the staleness check and the rename.
            try:
                os.link(aside, claim_path)
            except OSError:
                self.logger.log(f"Could not restore live claim in {entry_dir}", logging.WARNING)
            FileUtils.remove_path(aside)
            return
        FileUtils.remove_path(aside)
        self.logger.log(
            f"Broke stale claim in {entry_dir} (pid={holder.pid if holder else 'unknown'})",
            logging.WARNING,
        )

    def _release_claim(self, entry_dir: pathlib.Path, claim: ClaimToken) -> None:
        if not self._holds_claim(entry_dir, claim):
            return
        try:
            (entry_dir / CLAIM_FILE).unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            self.logger.log(f"Failed to release claim in {entry_dir}: {e}", logging.ERROR)

    def _clear_leftovers(self, entry_dir: pathlib.Path) -> None:
        try:
            for child in entry_dir.iterdir():
                if child.name == CLAIM_FILE:
                    continue
                FileUtils.remove_path(child)
        except OSError as e:
            raise CacheError(
                f"Failed to reclaim poisoned entry: {e}",
                resource=str(entry_dir),
            ) from e
