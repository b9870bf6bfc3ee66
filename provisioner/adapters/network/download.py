"""
fetch-file handler — download a file with retry and checksum checking.

Params:
    url (str): Source URL (http, https, or file).
    dest (str): Destination path; parent directories are created.
    checksum (str): Optional ``algo:hex`` digest, e.g. ``sha256:ab12...``.
    mode (str): Optional octal file mode, e.g. ``0755``.
    attempts (int): Attempt budget (default from the handler).
    timeout (int): Per-request timeout in seconds (default: 60).

Transient failures (connection errors, timeouts, HTTP 429 and 5xx) are
retried with exponential backoff. HTTP 4xx and checksum mismatches fail
at once. The download goes to a temp file next to ``dest`` and is only
renamed into place once it is complete and verified.
"""

from __future__ import annotations

import hashlib
import logging
import os
import shutil
import socket
import tempfile
import urllib.error
import urllib.request
from collections.abc import Callable
from pathlib import Path

from provisioner import __version__
from provisioner.adapters.base import ActionHandler, Outcome, as_int, expand_path, require
from provisioner.core.reliability.backoff import Backoff, RetryExhausted

logger = logging.getLogger(__name__)

_CHUNK = 64 * 1024


class ChecksumMismatch(Exception):
    """Downloaded content does not match the declared digest."""


def file_digest(path: Path, algo: str) -> str:
    h = hashlib.new(algo)
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK), b""):
            h.update(chunk)
    return h.hexdigest()


def verify_checksum(path: Path, expected: str) -> bool:
    """Verify file checksum. Format: ``algo:hex``."""
    algo, expected_hash = expected.split(":", 1)
    return file_digest(path, algo.lower()) == expected_hash.lower()


def is_transient(error: BaseException) -> bool:
    """Whether a download error is worth retrying."""
    if isinstance(error, urllib.error.HTTPError):
        return error.code == 429 or error.code >= 500
    return isinstance(error, (urllib.error.URLError, socket.timeout, TimeoutError, ConnectionError))


def _default_file_mode() -> int:
    """0666 masked by the process umask."""
    umask = os.umask(0)
    os.umask(umask)
    return 0o666 & ~umask


class FetchFileHandler(ActionHandler):
    """Download files over HTTP(S) or from ``file://`` URLs."""

    def __init__(
        self,
        attempts: int = 4,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        sleep: Callable[[float], None] | None = None,
    ):
        self._backoff = Backoff(attempts=attempts, base_delay=base_delay, max_delay=max_delay)
        self._sleep = sleep

    @property
    def kind(self) -> str:
        return "fetch-file"

    def validate(self, params: dict[str, str]) -> tuple[bool, str]:
        ok, err = require(params, "url", "dest")
        if not ok:
            return ok, err
        checksum = params.get("checksum")
        if checksum:
            algo, _, digest = checksum.partition(":")
            if not digest or algo.lower() not in hashlib.algorithms_available:
                return False, f"Invalid checksum {checksum!r}; expected 'algo:hex'"
        mode = params.get("mode")
        if mode:
            try:
                int(mode, 8)
            except ValueError:
                return False, f"Invalid file mode: {mode!r}"
        return True, ""

    def perform(self, params: dict[str, str]) -> Outcome:
        url = params["url"]
        dest = expand_path(params["dest"])
        checksum = params.get("checksum")
        timeout = as_int(params.get("timeout"), 60)
        mode = int(params["mode"], 8) if params.get("mode") else None

        backoff = self._backoff
        if params.get("attempts"):
            backoff = Backoff(
                attempts=as_int(params["attempts"], backoff.attempts),
                base_delay=backoff.base_delay,
                max_delay=backoff.max_delay,
            )

        dest.parent.mkdir(parents=True, exist_ok=True)
        kwargs = {"sleep": self._sleep} if self._sleep else {}
        try:
            size = backoff.call(
                lambda: self._download(url, dest, checksum, timeout, mode),
                retry_on=is_transient,
                label=f"Download {url}",
                **kwargs,
            )
        except RetryExhausted as e:
            return Outcome.failure(
                f"Download failed after {e.attempts} attempt(s): {e.last_error}",
                metadata={"url": url},
            )
        except ChecksumMismatch as e:
            return Outcome.failure(str(e), metadata={"url": url})
        except urllib.error.HTTPError as e:
            return Outcome.failure(f"HTTP {e.code} fetching {url}", metadata={"url": url})
        except (OSError, ValueError) as e:
            return Outcome.failure(f"Cannot fetch {url}: {e}", metadata={"url": url})

        logger.info("Fetched %s → %s (%d bytes)", url, dest, size)
        return Outcome.success(
            f"Saved {dest} ({size} bytes)",
            metadata={"url": url, "dest": str(dest), "size_bytes": size},
        )

    def _download(
        self, url: str, dest: Path, checksum: str | None, timeout: int, mode: int | None,
    ) -> int:
        """One download attempt. Returns the number of bytes written.

        Without an explicit ``mode`` the file gets the umask default, as if
        created by ``open()``, not the 0600 of the temp file.
        """
        req = urllib.request.Request(url, headers={"User-Agent": f"provisioner/{__version__}"})
        fd, tmp_name = tempfile.mkstemp(dir=dest.parent, prefix=f".{dest.name}.", suffix=".part")
        tmp = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as out, urllib.request.urlopen(req, timeout=timeout) as resp:
                shutil.copyfileobj(resp, out, _CHUNK)
            if checksum and not verify_checksum(tmp, checksum):
                raise ChecksumMismatch(f"Checksum mismatch for {url} (expected {checksum})")
            size = tmp.stat().st_size
            tmp.chmod(mode if mode is not None else _default_file_mode())
            tmp.replace(dest)
            return size
        finally:
            tmp.unlink(missing_ok=True)
