"""Upload job for TusQueue.

Handles one queued transfer end to end:
- Idempotent payload staging (a resumed attempt re-sends identical bytes)
- Create-or-resume of the tus upload keyed by the item's fingerprint
- Chunk loop with progress published before the first chunk and after each
- Finalisation retried with quadratic backoff
- Error classification into success / permanent failure / retry
"""

from __future__ import annotations

import logging
from typing import Any, Mapping

from tusqueue.jobs import JobContext, JobResult
from tusqueue.protocol import UPLOAD_DONE, ProtocolError, TransientTransferError
from tusqueue.staging import PayloadStager, StagingError

logger = logging.getLogger(__name__)

# Input keys
KEY_SOURCE = "source"
KEY_ENDPOINT = "endpoint"
KEY_FINGERPRINT = "fingerprint"
KEY_ITEM_ID = "item_id"
KEY_REENCODE = "reencode"

# Output keys
KEY_UPLOAD_URL = "upload_url"
KEY_ERROR = "error"

# Progress keys
KEY_PROGRESS_UPLOADED = "progress_uploaded"
KEY_PROGRESS_TOTAL = "progress_total"

FINISH_MAX_ATTEMPTS = 5
FINISH_RETRY_DELAY = 1.0  # seconds; scaled by attempt²


class TransferCancelled(Exception):
    """Raised inside the job when its cancellation is noticed."""


class TusUploadJob:
    """Job handler uploading one staged payload through a tus protocol client.

    The handler never raises: every run ends in a :class:`JobResult`.
    """

    def __init__(
        self,
        stager: PayloadStager,
        protocol_client,
        finish_max_attempts: int = FINISH_MAX_ATTEMPTS,
        finish_retry_delay: float = FINISH_RETRY_DELAY,
    ) -> None:
        """Initialise the handler.

        Args:
            stager: Produces the staged payload for an item.
            protocol_client: Object with ``create_or_resume_upload(endpoint,
                fingerprint, payload_path, metadata)`` returning a session.
            finish_max_attempts: Finalisation attempts before asking the
                runner to retry the whole job.
            finish_retry_delay: Base delay; attempt *n* waits ``n² × base``.
        """
        self._stager = stager
        self._client = protocol_client
        self.finish_max_attempts = finish_max_attempts
        self.finish_retry_delay = finish_retry_delay

    def __call__(self, ctx: JobContext) -> JobResult:
        data = ctx.input_data
        source = data.get(KEY_SOURCE)
        endpoint = data.get(KEY_ENDPOINT)
        if not source or not endpoint:
            logger.error("Upload job %s is missing its source or endpoint", ctx.job_id)
            return JobResult.failure({KEY_ERROR: "missing source or endpoint"})

        item_id = data.get(KEY_ITEM_ID) or ctx.job_id
        fingerprint = data.get(KEY_FINGERPRINT) or f"{source}#{item_id}"
        reencode = bool(data.get(KEY_REENCODE, False))

        try:
            payload = self._stager.stage(item_id, source, reencode=reencode)
            session = self._client.create_or_resume_upload(
                endpoint,
                fingerprint,
                payload.path,
                {"filename": payload.filename, "filetype": payload.content_type},
            )
            logger.debug("Starting/resuming upload for %s", payload.filename)

            self._publish_progress(ctx, session)
            while True:
                if ctx.is_cancelled():
                    raise TransferCancelled()
                if session.upload_next_chunk() == UPLOAD_DONE:
                    break
                self._publish_progress(ctx, session)

            upload_url = self._finish(ctx, session)
            if ctx.is_cancelled():
                # Keep the stored URL and staged file; a resumed job finds the
                # upload complete and finalises it without sending any bytes.
                raise TransferCancelled()
        except TransferCancelled:
            logger.info("Upload %s interrupted by cancellation", ctx.job_id)
            return JobResult.retry({KEY_ERROR: "cancelled"})
        except (ProtocolError, StagingError) as exc:
            logger.error("Permanent upload failure for %s: %s", source, exc)
            return JobResult.failure({KEY_ERROR: str(exc)})
        except (TransientTransferError, OSError) as exc:
            logger.warning("Transient upload failure for %s, will retry: %s", source, exc)
            return JobResult.retry({KEY_ERROR: str(exc)})
        except Exception as exc:
            logger.exception("Unexpected error during upload of %s", source)
            return JobResult.failure({KEY_ERROR: str(exc) or type(exc).__name__})

        logger.info("Upload finished successfully. URL: %s", upload_url)
        session.forget()
        self._stager.discard(payload.path)
        return JobResult.success({KEY_UPLOAD_URL: upload_url})

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _finish(self, ctx: JobContext, session) -> str:
        """Finalise *session*, retrying transient failures with quadratic backoff.

        Returns the upload URL.  The last transient error is re-raised once
        every attempt has failed; permanent protocol errors propagate at once.
        """
        attempt = 1
        while True:
            try:
                return session.finish()
            except (TransientTransferError, OSError) as exc:
                logger.warning(
                    "Failed to finish upload, attempt %d/%d: %s",
                    attempt,
                    self.finish_max_attempts,
                    exc,
                )
                if attempt >= self.finish_max_attempts:
                    raise
            if ctx.wait(self.finish_retry_delay * attempt * attempt):
                raise TransferCancelled()
            attempt += 1

    def _publish_progress(self, ctx: JobContext, session) -> None:
        ctx.set_progress(progress_payload(session.offset, session.total_size))


def progress_payload(uploaded: int, total: int) -> dict[str, Any]:
    """Build the progress mapping published by upload jobs."""
    return {KEY_PROGRESS_UPLOADED: int(uploaded), KEY_PROGRESS_TOTAL: int(total)}


def progress_fraction(progress: Mapping[str, Any]) -> float | None:
    """Return uploaded/total from a progress mapping, or ``None`` if unknown."""
    total = progress.get(KEY_PROGRESS_TOTAL) or 0
    if total <= 0 or KEY_PROGRESS_UPLOADED not in progress:
        return None
    return min(1.0, max(0.0, progress[KEY_PROGRESS_UPLOADED] / total))
