# resforge/fetcher.py
"""
fetcher.py - verified, cached access to files on named servers

Features:
- Fetcher.fetch(server, location, checksums) -> FetchedFile with an explicit trust tag
- Cache: filesystem objects + DB table `fetch_cache` for metadata
- Verification (sha256 / sha1) before bytes enter the cache; mismatches are never returned
- Cached objects are re-verified on every hit; corrupted entries are evicted and refetched
- Unchecksummed fetches are cached by (server, location) only as an advisory hint
- Bounded retries with exponential backoff for transient transport failures
- Per cache-key locks so concurrent workers never race on the same content
"""

from __future__ import annotations

import hashlib
import os
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

from resforge.config import Config, from_dict
from resforge.db import DB
from resforge.descriptors import FileRef
from resforge.errors import ChecksumMismatch, FetchError, TransientTransportError
from resforge.logging import get_logger
from resforge.transport import transport_for

logger = get_logger("fetcher")

ALGORITHMS = ("sha256", "sha1")

# -----------------------------------------------------------------------
# Trust tags
# -----------------------------------------------------------------------
@dataclass(frozen=True)
class Verified:
    algorithm: str
    digest: str
    trusted = True

    def __str__(self):
        return f"verified({self.algorithm}:{self.digest[:12]})"


@dataclass(frozen=True)
class Unverified:
    trusted = False

    def __str__(self):
        return "unverified"


UNVERIFIED = Unverified()
Trust = Union[Verified, Unverified]


@dataclass
class FetchedFile:
    server: str
    location: str
    path: Path
    trust: Trust
    cached: bool = False
    size: int = 0

    @property
    def servloc(self) -> str:
        return f"{self.server}:{self.location}"

    @property
    def basename(self) -> str:
        return os.path.basename(self.location)

    def read_bytes(self) -> bytes:
        return self.path.read_bytes()

# -----------------------------------------------------------------------
# Utility helpers
# -----------------------------------------------------------------------
def _now_ts() -> int:
    return int(time.time())

def _file_digests(path: Path, algos) -> Dict[str, str]:
    hashers = {a: hashlib.new(a) for a in algos}
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            for h in hashers.values():
                h.update(chunk)
    return {a: h.hexdigest() for a, h in hashers.items()}

def _normalize_checksums(checksums: Optional[Any]) -> Dict[str, str]:
    """Accepts {"sha256": hex, ...} or "sha256:hex"; drops empty values."""
    out: Dict[str, str] = {}
    if not checksums:
        return out
    if isinstance(checksums, str):
        alg, _, val = checksums.partition(":")
        checksums = {alg: val}
    for alg, val in checksums.items():
        alg = str(alg).lower()
        if alg not in ALGORITHMS:
            raise FetchError(f"unsupported checksum algorithm {alg!r}")
        if val:
            out[alg] = str(val).strip().lower()
    return out

def _primary(checksums: Dict[str, str]) -> Optional[Verified]:
    for alg in ALGORITHMS:
        if alg in checksums:
            return Verified(alg, checksums[alg])
    return None

def cache_key(server: str, location: str, checksums: Dict[str, str]) -> str:
    tag = ",".join(f"{a}:{checksums[a]}" for a in ALGORITHMS if a in checksums)
    return hashlib.sha256(f"{server}\0{location}\0{tag}".encode("utf-8")).hexdigest()

# -----------------------------------------------------------------------
# Fetcher
# -----------------------------------------------------------------------
class Fetcher:
    def __init__(self, servers: Dict[str, str], cache_dir: Union[str, Path], db: Optional[DB] = None,
                 cfg: Optional[Config] = None, sleep: Callable[[float], None] = time.sleep):
        cfg = cfg or from_dict()
        self.servers = dict(servers)
        self.cache_dir = Path(cache_dir)
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self._db = db
        self.retries = int(cfg.get("fetcher.retries", 3))
        self.backoff_base = float(cfg.get("fetcher.backoff_base", 0.5))
        self.backoff_max = float(cfg.get("fetcher.backoff_max", 8.0))
        self.timeout = float(cfg.get("fetcher.timeout", 60))
        self.refetch_unverified = bool(cfg.get("fetcher.refetch_unverified", False))
        self._sleep = sleep
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._metrics = {"fetch.total": 0, "fetch.failed": 0, "fetch.success": 0, "cache.hits": 0, "fetch.retries": 0}
        self._metrics_lock = threading.Lock()

    # -------------------------
    # bookkeeping
    # -------------------------
    def _key_lock(self, key: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def _count(self, name: str):
        with self._metrics_lock:
            self._metrics[name] += 1

    def get_metrics(self) -> Dict[str, int]:
        with self._metrics_lock:
            return dict(self._metrics)

    def _object_path(self, key: str, location: str) -> Path:
        return self.cache_dir / "objects" / key[:2] / key / (os.path.basename(location) or "file")

    # -------------------------
    # DB cache helpers
    # -------------------------
    def _get_cache_entry(self, key: str) -> Optional[Dict[str, Any]]:
        if self._db is None:
            return None
        row = self._db.fetchone("SELECT * FROM fetch_cache WHERE key = ?", (key,))
        return dict(row) if row else None

    def _put_cache_entry(self, key: str, server: str, location: str, trust: Trust, path: Path):
        if self._db is None:
            return
        checksum = f"{trust.algorithm}:{trust.digest}" if isinstance(trust, Verified) else None
        self._db.execute(
            "INSERT OR REPLACE INTO fetch_cache (key, server, location, checksum, trust, cached_path, size_bytes, fetched_at)"
            " VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (key, server, location, checksum, "verified" if trust.trusted else "unverified",
             str(path), path.stat().st_size, _now_ts()),
            commit=True,
        )

    def _evict(self, key: str, path: Path):
        if path.exists():
            path.unlink()
        if self._db is not None:
            self._db.execute("DELETE FROM fetch_cache WHERE key = ?", (key,), commit=True)

    # -------------------------
    # verification
    # -------------------------
    def _verify(self, path: Path, server: str, location: str, expected: Dict[str, str]) -> None:
        computed = _file_digests(path, expected.keys())
        for alg in ALGORITHMS:
            if alg in expected and computed[alg] != expected[alg]:
                raise ChecksumMismatch(server, location, alg, expected[alg], computed[alg])

    # -------------------------
    # core fetch flow
    # -------------------------
    def fetch(self, server: str, location: str, checksums: Optional[Any] = None) -> FetchedFile:
        """
        Return a local copy of server:location.
        flow:
         - cache hit: re-verify (checksummed) or hand out as Unverified
         - download with retry/backoff into a temp file next to the cache object
         - verify, then atomically rename into the cache
        """
        expected = _normalize_checksums(checksums)
        trust: Trust = _primary(expected) or UNVERIFIED
        if server not in self.servers:
            self._count("fetch.failed")
            raise FetchError(f"unknown server {server!r}", server=server, location=location)
        key = cache_key(server, location, expected)
        dest = self._object_path(key, location)
        self._count("fetch.total")

        with self._key_lock(key):
            if dest.exists():
                hit = self._cache_hit(key, dest, server, location, expected, trust)
                if hit is not None:
                    return hit
            try:
                self._download(server, location, dest, expected)
            except FetchError:
                self._count("fetch.failed")
                raise
            self._put_cache_entry(key, server, location, trust, dest)
            self._count("fetch.success")
            if not trust.trusted:
                logger.warning("fetched %s:%s without checksum; content is unverified", server, location)
            else:
                logger.info("fetched %s:%s (%s)", server, location, trust)
            return FetchedFile(server, location, dest, trust, cached=False, size=dest.stat().st_size)

    def _cache_hit(self, key: str, dest: Path, server: str, location: str,
                   expected: Dict[str, str], trust: Trust) -> Optional[FetchedFile]:
        if trust.trusted:
            try:
                self._verify(dest, server, location, expected)
            except ChecksumMismatch as e:
                logger.warning("cached object for %s:%s failed verification (%s); refetching", server, location, e.actual)
                self._evict(key, dest)
                return None
        elif self.refetch_unverified:
            logger.debug("refetching unverified %s:%s", server, location)
            self._evict(key, dest)
            return None
        self._count("cache.hits")
        logger.debug("cache hit %s:%s (%s)", server, location, trust)
        return FetchedFile(server, location, dest, trust, cached=True, size=dest.stat().st_size)

    def _download(self, server: str, location: str, dest: Path, expected: Dict[str, str]) -> None:
        base_url = self.servers[server]
        transport = transport_for(base_url)
        dest.parent.mkdir(parents=True, exist_ok=True)
        attempts = self.retries + 1
        last: Optional[Exception] = None
        for attempt in range(1, attempts + 1):
            fd, tmp_name = tempfile.mkstemp(prefix=".part-", dir=str(dest.parent))
            os.close(fd)
            tmp = Path(tmp_name)
            try:
                transport.fetch(base_url, location, tmp, timeout=self.timeout)
                self._verify(tmp, server, location, expected)
                os.replace(tmp, dest)
                return
            except TransientTransportError as e:
                last = e
                if attempt < attempts:
                    delay = min(self.backoff_max, self.backoff_base * (2 ** (attempt - 1)))
                    logger.warning("transient error fetching %s:%s (attempt %d/%d): %s; retrying in %.1fs",
                                   server, location, attempt, attempts, e, delay)
                    self._count("fetch.retries")
                    self._sleep(delay)
            except FetchError as e:
                if e.server is None:
                    e.server = server
                if e.location is None:
                    e.location = location
                e.attempts = attempt
                raise
            finally:
                if tmp.exists():
                    tmp.unlink()
        raise FetchError(f"fetching {server}:{location} failed after {attempts} attempts: {last}",
                         server=server, location=location, exhausted=True, attempts=attempts) from last

    # -------------------------
    # convenience
    # -------------------------
    def fetch_ref(self, ref: FileRef) -> FetchedFile:
        return self.fetch(ref.server, ref.location, ref.checksums)

    def fetch_bytes(self, server: str, location: str, checksums: Optional[Any] = None) -> bytes:
        return self.fetch(server, location, checksums).read_bytes()

    def clear_cache(self) -> None:
        objects = self.cache_dir / "objects"
        for p in sorted(objects.rglob("*"), reverse=True) if objects.exists() else []:
            if p.is_dir():
                p.rmdir()
            else:
                p.unlink()
        if self._db is not None:
            self._db.execute("DELETE FROM fetch_cache", commit=True)
        logger.info("fetch cache cleared")
