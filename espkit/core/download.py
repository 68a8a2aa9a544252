"""
Network download manager with retry, proxy support, and transfer verification.

This module provides:
- HTTP/HTTPS streaming downloads with TLS verification
- Optional HTTP or SOCKS proxy routing (``socks5h://`` via requests[socks])
- Retry of the transfer step with the injected RetryPolicy
- Completeness checking against Content-Length and optional SHA256 checks
- Cooperative cancellation between chunks

A failed attempt always restarts from byte 0; partial files are discarded.
"""

import hashlib
import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

import requests
from requests.exceptions import ConnectionError, HTTPError, RequestException, Timeout

from espkit.core.exceptions import DownloadFailed, OperationCancelled
from espkit.core.retry import RetryExhausted, RetryPolicy

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
USER_AGENT = "espkit"


@dataclass
class DownloadProgress:
    """Progress information for a download."""

    bytes_downloaded: int
    total_bytes: int
    speed_bps: float  # bytes per second

    @property
    def percentage(self) -> float:
        if self.total_bytes <= 0:
            return 0.0
        return self.bytes_downloaded / self.total_bytes * 100

    def __str__(self) -> str:
        mb_downloaded = self.bytes_downloaded / 1024 / 1024
        speed_mbps = self.speed_bps / 1024 / 1024
        if self.total_bytes > 0:
            mb_total = self.total_bytes / 1024 / 1024
            return (
                f"{mb_downloaded:.1f}/{mb_total:.1f} MB "
                f"({self.percentage:.1f}%) at {speed_mbps:.1f} MB/s"
            )
        return f"{mb_downloaded:.1f} MB at {speed_mbps:.1f} MB/s"


class ChecksumError(Exception):
    """Downloaded bytes do not match the published digest."""

    pass


class IncompleteDownloadError(RequestException):
    """The server closed the stream before Content-Length bytes arrived."""

    pass


class StreamingHasher:
    """Compute a SHA256 digest incrementally while streaming."""

    def __init__(self):
        self.hasher = hashlib.sha256()

    def update(self, data: bytes):
        self.hasher.update(data)

    def finalize(self) -> str:
        return self.hasher.hexdigest()

    def verify(self, expected_hash: str) -> bool:
        """Case-insensitive comparison against an expected hex digest."""
        return self.finalize().lower() == expected_hash.lower()


def build_session(proxy: Optional[str] = None) -> requests.Session:
    """
    Create a requests session, optionally routed through a proxy.

    Args:
        proxy: Proxy URL such as ``http://host:3128`` or ``socks5h://host:1080``.
            When omitted, requests still honours ``https_proxy``/``all_proxy``
            from the environment.

    Returns:
        Configured session
    """
    session = requests.Session()
    session.headers["User-Agent"] = USER_AGENT
    if proxy:
        logger.debug(f"Routing downloads through proxy {proxy}")
        session.proxies.update({"http": proxy, "https": proxy})
    return session


def download_file(
    url: str,
    destination: Path,
    expected_sha256: Optional[str] = None,
    session: Optional[requests.Session] = None,
    retry_policy: Optional[RetryPolicy] = None,
    cancel_event: Optional[threading.Event] = None,
    progress_callback: Optional[Callable[[DownloadProgress], None]] = None,
    timeout: float = 30,
) -> Path:
    """
    Download ``url`` to ``destination``, retrying transient failures.

    Args:
        url: URL to download from
        destination: Local path to save file
        expected_sha256: Expected SHA256 hash (verified during download)
        session: Session to use (proxy settings live here)
        retry_policy: Backoff policy for the transfer step
        cancel_event: Set by another thread to abort between chunks
        progress_callback: Optional callback for progress updates
        timeout: Connect/read timeout in seconds

    Returns:
        Path to downloaded file

    Raises:
        DownloadFailed: If every attempt failed; ``cause`` holds the last error
        ChecksumError: If checksum doesn't match (not retried)
        OperationCancelled: If ``cancel_event`` was set
    """
    if not url:
        raise ValueError("URL cannot be empty")

    destination = Path(destination)
    destination.parent.mkdir(parents=True, exist_ok=True)
    session = session or build_session()
    retry_policy = retry_policy or RetryPolicy()

    def attempt() -> Path:
        _check_cancelled(cancel_event)
        return _download_once(
            url,
            destination,
            expected_sha256,
            session,
            cancel_event,
            progress_callback,
            timeout,
        )

    try:
        return retry_policy.call(
            attempt,
            retry_on=(Timeout, ConnectionError, HTTPError, RequestException),
            description=f"Download of {destination.name}",
            cancel_event=cancel_event,
        )
    except RetryExhausted as e:
        destination.unlink(missing_ok=True)
        _check_cancelled(cancel_event)
        raise DownloadFailed(url, e.attempts, e.last_error) from e.last_error


def _check_cancelled(cancel_event: Optional[threading.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise OperationCancelled("Download cancelled")


def _download_once(
    url: str,
    destination: Path,
    expected_sha256: Optional[str],
    session: requests.Session,
    cancel_event: Optional[threading.Event],
    progress_callback: Optional[Callable[[DownloadProgress], None]],
    timeout: float,
) -> Path:
    """Perform a single streaming attempt from byte 0."""
    logger.info(f"Downloading {url}")

    hasher = StreamingHasher() if expected_sha256 else None
    downloaded = 0
    start_time = time.monotonic()
    last_report = start_time

    try:
        with session.get(url, stream=True, timeout=timeout, allow_redirects=True) as response:
            response.raise_for_status()
            content_length = response.headers.get("content-length")
            total_size = int(content_length) if content_length else 0

            with open(destination, "wb") as f:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    _check_cancelled(cancel_event)
                    if not chunk:
                        continue
                    f.write(chunk)
                    downloaded += len(chunk)
                    if hasher:
                        hasher.update(chunk)

                    now = time.monotonic()
                    if progress_callback and (
                        now - last_report >= 0.5 or downloaded == total_size
                    ):
                        elapsed = now - start_time
                        speed = downloaded / elapsed if elapsed > 0 else 0
                        progress_callback(DownloadProgress(downloaded, total_size, speed))
                        last_report = now
    except BaseException:
        destination.unlink(missing_ok=True)
        raise

    if total_size and downloaded != total_size:
        destination.unlink(missing_ok=True)
        raise IncompleteDownloadError(
            f"Transfer of {destination.name} ended after {downloaded} of {total_size} bytes"
        )

    if expected_sha256 and hasher and not hasher.verify(expected_sha256):
        destination.unlink(missing_ok=True)
        raise ChecksumError(
            f"Checksum mismatch for {destination.name}: "
            f"expected {expected_sha256}, got {hasher.finalize()}"
        )

    logger.debug(f"Download complete: {destination} ({downloaded} bytes)")
    return destination
