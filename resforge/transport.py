# resforge/transport.py
"""
transport.py - move bytes from a named server into a local file

Features:
- Transport per URL scheme: file:// (and bare absolute paths), http(s)://, rsync/ssh
- Transient failures (timeouts, resets, HTTP 5xx) raise TransientTransportError so
  the fetcher can retry; permanent ones (missing file, HTTP 4xx) raise FetchError
- register_transport() lets callers plug in extra schemes
"""

from __future__ import annotations

import os
import shutil
import socket
import subprocess
import threading
import urllib.error
import urllib.request
from pathlib import Path
from typing import Dict, Optional
from urllib.parse import quote, urlparse

from resforge.errors import FetchError, TransientTransportError
from resforge.logging import get_logger

logger = get_logger("transport")


def join_url(base: str, location: str) -> str:
    return base.rstrip("/") + "/" + location.lstrip("/")


class Transport:
    """Copies base_url/location to dest. Subclasses implement fetch()."""

    schemes = ()

    def fetch(self, base_url: str, location: str, dest: Path, timeout: float = 60) -> None:
        raise NotImplementedError


class LocalTransport(Transport):
    schemes = ("file", "")

    def fetch(self, base_url: str, location: str, dest: Path, timeout: float = 60) -> None:
        base = urlparse(base_url).path if base_url.startswith("file:") else base_url
        src = Path(base) / location
        if not src.is_file():
            raise FetchError(f"{src}: no such file", location=location)
        try:
            shutil.copyfile(src, dest)
        except OSError as e:
            raise FetchError(f"copying {src} failed: {e}", location=location) from e


class HttpTransport(Transport):
    schemes = ("http", "https")

    def fetch(self, base_url: str, location: str, dest: Path, timeout: float = 60) -> None:
        url = join_url(base_url, quote(location))
        try:
            with urllib.request.urlopen(url, timeout=timeout) as resp, open(dest, "wb") as out:
                while True:
                    chunk = resp.read(65536)
                    if not chunk:
                        break
                    out.write(chunk)
        except urllib.error.HTTPError as e:
            if e.code >= 500:
                raise TransientTransportError(f"{url}: HTTP {e.code}") from e
            raise FetchError(f"{url}: HTTP {e.code}", location=location) from e
        except (urllib.error.URLError, socket.timeout, ConnectionError) as e:
            raise TransientTransportError(f"{url}: {e}") from e


class RsyncTransport(Transport):
    """rsync:// and ssh:// servers through the rsync binary."""

    schemes = ("rsync", "ssh", "rsync+ssh")
    # rsync exit codes worth retrying: socket/io errors, timeouts
    _TRANSIENT = (10, 12, 30, 35)

    def fetch(self, base_url: str, location: str, dest: Path, timeout: float = 60) -> None:
        u = urlparse(base_url)
        if u.scheme == "rsync":
            src = join_url(base_url, location)
            cmd = ["rsync", f"--timeout={int(timeout)}", src, str(dest)]
        else:
            host = f"{u.username}@{u.hostname}" if u.username else u.hostname
            ssh = ["ssh"] + (["-p", str(u.port)] if u.port else [])
            cmd = ["rsync", f"--timeout={int(timeout)}", "-e", " ".join(ssh),
                   f"{host}:{join_url(u.path, location)}", str(dest)]
        proc = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
        if proc.returncode in self._TRANSIENT:
            raise TransientTransportError(f"rsync {base_url} {location}: {proc.stderr.strip()}")
        if proc.returncode != 0:
            raise FetchError(f"rsync {base_url} {location} failed ({proc.returncode}): {proc.stderr.strip()}",
                             location=location)

# ----------------------------
# Registry
# ----------------------------
_TRANSPORTS: Dict[str, Transport] = {}
_REG_LOCK = threading.Lock()

def register_transport(scheme: str, transport: Transport) -> None:
    with _REG_LOCK:
        _TRANSPORTS[scheme] = transport

def get_transport(base_url: str) -> Transport:
    scheme = urlparse(base_url).scheme if not os.path.isabs(base_url) else ""
    with _REG_LOCK:
        t = _TRANSPORTS.get(scheme)
    if t is None:
        raise FetchError(f"no transport for url {base_url!r}")
    return t

for _t in (LocalTransport(), HttpTransport(), RsyncTransport()):
    for _scheme in _t.schemes:
        register_transport(_scheme, _t)


def transport_for(base_url: Optional[str]) -> Transport:
    if not base_url:
        raise FetchError("server has no url")
    return get_transport(base_url)
