"""tus protocol adapter built on the ``tuspy`` client library.

Wraps ``tusclient`` uploaders behind a small session interface and sorts
every failure into one of two buckets:

- :class:`ProtocolError`: the server rejected the request for good
  (malformed request, unsupported protocol version, forbidden, ...)
- :class:`TransientTransferError`: network trouble, server overload or an
  upload the server has not fully committed yet; worth retrying later
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Mapping

import requests
from tusclient import client as tus_client
from tusclient.exceptions import TusCommunicationError
from tusclient.fingerprint.interface import Fingerprint
from tusclient.storage.filestorage import FileStorage

logger = logging.getLogger(__name__)

UPLOAD_DONE = -1

# Statuses that mean "try again later" rather than "never going to work".
_TRANSIENT_STATUSES = frozenset({408, 409, 423, 429})
# Statuses that mean a stored upload URL no longer exists server-side.
_GONE_STATUSES = frozenset({404, 410})

# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ProtocolError(Exception):
    """Raised when the tus server permanently rejects an upload request."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        """Initialise with the HTTP status the server answered, if any."""
        super().__init__(message)
        self.status_code = status_code


class TransientTransferError(OSError):
    """Raised for I/O-level failures that a later attempt may overcome."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        """Initialise with the HTTP status the server answered, if any."""
        super().__init__(message)
        self.status_code = status_code


def classify_error(exc: Exception) -> Exception:
    """Return the :class:`ProtocolError` or :class:`TransientTransferError` for *exc*."""
    if isinstance(exc, (ProtocolError, TransientTransferError)):
        return exc
    if isinstance(exc, TusCommunicationError):
        status = exc.status_code
        message = str(exc) or f"tus request failed with status {status}"
        if status is None or status >= 500 or status in _TRANSIENT_STATUSES:
            return TransientTransferError(message, status_code=status)
        return ProtocolError(message, status_code=status)
    if isinstance(exc, (requests.exceptions.RequestException, OSError)):
        return TransientTransferError(str(exc) or type(exc).__name__)
    return exc


@contextmanager
def _translated_errors() -> Iterator[None]:
    """Re-raise library errors as :class:`ProtocolError` / :class:`TransientTransferError`."""
    try:
        yield
    except (TusCommunicationError, requests.exceptions.RequestException, OSError) as exc:
        translated = classify_error(exc)
        if translated is exc:
            raise
        raise translated from exc


# ---------------------------------------------------------------------------
# Fingerprinting
# ---------------------------------------------------------------------------


class FixedFingerprint(Fingerprint):
    """Fingerprint that ignores file content and returns a caller-chosen key.

    Lets a re-submitted transfer of the same logical item find the upload
    URL stored by an earlier attempt.
    """

    def __init__(self, value: str) -> None:
        self._value = value

    def get_fingerprint(self, fs) -> str:
        return self._value


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


class TusUploadSession:
    """One in-flight upload: chunk loop plus finalisation."""

    def __init__(self, uploader, url_storage, fingerprint: str) -> None:
        self._uploader = uploader
        self._url_storage = url_storage
        self._fingerprint = fingerprint
        self._total_size = int(uploader.get_file_size())

    @property
    def offset(self) -> int:
        """Bytes the server has acknowledged so far."""
        return int(self._uploader.offset)

    @property
    def total_size(self) -> int:
        """Size of the payload in bytes."""
        return self._total_size

    @property
    def url(self) -> str | None:
        """Upload URL, once the server has created one."""
        return self._uploader.url

    def upload_next_chunk(self) -> int:
        """Send one chunk; return bytes sent or :data:`UPLOAD_DONE`."""
        if self._uploader.url and self.offset >= self._total_size:
            return UPLOAD_DONE
        before = self.offset if self._uploader.url else 0
        with _translated_errors():
            self._uploader.upload_chunk()
        return max(0, self.offset - before)

    def finish(self) -> str:
        """Confirm the server committed every byte and return the upload URL.

        Raises:
            TransientTransferError: The server reports fewer bytes than sent.
            ProtocolError: The server rejected the offset request.
        """
        if not self._uploader.url:
            raise ProtocolError("Upload was never created on the server")
        with _translated_errors():
            committed = int(self._uploader.get_offset())
        if committed < self._total_size:
            raise TransientTransferError(
                f"Server has committed {committed} of {self._total_size} bytes"
            )
        logger.debug("Upload committed: %s", self._uploader.url)
        return str(self._uploader.url)

    def forget(self) -> None:
        """Drop the stored upload URL so the fingerprint no longer resumes it."""
        try:
            self._url_storage.remove_item(self._fingerprint)
        except (KeyError, OSError, ValueError) as exc:
            logger.warning("Could not drop stored URL for %s: %s", self._fingerprint, exc)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class TusProtocolClient:
    """Creates or resumes tus uploads, remembering upload URLs by fingerprint."""

    def __init__(
        self,
        url_store_path: str | Path,
        chunk_size: int = 16 * 1024,
        headers_for: Callable[[str], Mapping[str, str]] | None = None,
    ) -> None:
        """Initialise the client.

        Args:
            url_store_path: JSON file where upload URLs are remembered.
            chunk_size: Bytes sent per PATCH request.
            headers_for: Returns extra request headers for an endpoint
                (e.g. ``Authorization``).
        """
        path = Path(url_store_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self._url_storage = FileStorage(str(path))
        self._chunk_size = chunk_size
        self._headers_for = headers_for

    def create_or_resume_upload(
        self,
        endpoint: str,
        fingerprint: str,
        payload_path: str | Path,
        metadata: Mapping[str, str] | None = None,
    ) -> TusUploadSession:
        """Return a session for *payload_path*, resuming a stored upload if any.

        A stored URL the server no longer knows (404/410) is forgotten and a
        fresh upload is created instead.
        """
        headers = dict(self._headers_for(endpoint)) if self._headers_for else {}
        client = tus_client.TusClient(endpoint, headers=headers)
        try:
            uploader = self._make_uploader(client, fingerprint, payload_path, metadata)
        except TusCommunicationError as exc:
            if exc.status_code not in _GONE_STATUSES:
                raise classify_error(exc) from exc
            logger.info(
                "Stored upload for %s is gone (HTTP %s) — starting over",
                fingerprint,
                exc.status_code,
            )
            self._url_storage.remove_item(fingerprint)
            with _translated_errors():
                uploader = self._make_uploader(client, fingerprint, payload_path, metadata)
        except (requests.exceptions.RequestException, OSError) as exc:
            raise classify_error(exc) from exc

        session = TusUploadSession(uploader, self._url_storage, fingerprint)
        if session.url:
            logger.info(
                "Resuming upload %s at offset %d/%d", session.url, session.offset, session.total_size
            )
        else:
            logger.info("Creating new upload for %s at %s", fingerprint, endpoint)
        return session

    def _make_uploader(self, client, fingerprint, payload_path, metadata):
        return client.uploader(
            file_path=str(payload_path),
            chunk_size=self._chunk_size,
            metadata=dict(metadata or {}),
            store_url=True,
            url_storage=self._url_storage,
            fingerprinter=FixedFingerprint(fingerprint),
        )
