"""TusQueue — sequential resumable uploads to tus servers.

:class:`App` wires the configuration, job runner, payload stager, tus
protocol client and upload queue together.
"""

from __future__ import annotations

import logging
from functools import partial
from pathlib import Path

from tusqueue.config import ConfigManager
from tusqueue.jobs import BackoffPolicy, JobRunner, JobSpec
from tusqueue.protocol import TusProtocolClient
from tusqueue.staging import PayloadStager
from tusqueue.transfer import (
    KEY_ENDPOINT,
    KEY_FINGERPRINT,
    KEY_ITEM_ID,
    KEY_REENCODE,
    KEY_SOURCE,
    TusUploadJob,
)
from tusqueue.upload_queue import QueueItem, QueueStatus, UploadQueueManager
from tusqueue.utils.net_helpers import endpoint_reachable

__version__ = "0.1.0"

logger = logging.getLogger(__name__)


class App:
    """Owns every long-lived component of a TusQueue session."""

    def __init__(
        self,
        config: ConfigManager | None = None,
        protocol_client=None,
        runner: JobRunner | None = None,
    ) -> None:
        """Build the component graph from *config*.

        ``protocol_client`` and ``runner`` may be injected (tests, embedding);
        otherwise they are created from the configuration.
        """
        self.config = config or ConfigManager()
        cfg = self.config

        self.runner = runner or JobRunner(
            max_workers=int(cfg.get("job_workers", 1)),
            default_max_attempts=int(cfg.get("job_max_attempts", 5)),
            default_backoff_delay=float(cfg.get("job_backoff_delay", 10.0)),
            max_backoff_delay=float(cfg.get("job_max_backoff_delay", 300.0)),
            constraint_poll_interval=float(cfg.get("constraint_poll_interval", 5.0)),
        )
        self.stager = PayloadStager(Path(cfg.get("staging_dir")))
        self.protocol_client = protocol_client or TusProtocolClient(
            url_store_path=cfg.get("url_store"),
            chunk_size=int(cfg.get("chunk_size", 16 * 1024)),
            headers_for=cfg.headers_for,
        )
        self.upload_job = TusUploadJob(
            self.stager,
            self.protocol_client,
            finish_max_attempts=int(cfg.get("finish_max_attempts", 5)),
            finish_retry_delay=float(cfg.get("finish_retry_delay", 1.0)),
        )
        self.reencode_images = bool(cfg.get("reencode_images", False))
        self.queue = UploadQueueManager(self.runner, self.make_job_spec)
        logger.debug("App initialised (config dir %s)", cfg.base_dir)

    def make_job_spec(self, item: QueueItem) -> JobSpec:
        """Return the job spec that uploads *item*."""
        constraint = None
        if self.config.get("require_network", True):
            constraint = partial(
                endpoint_reachable,
                item.endpoint,
                float(self.config.get("network_timeout", 3.0)),
            )
        return JobSpec(
            handler=self.upload_job,
            input_data={
                KEY_SOURCE: item.source,
                KEY_ENDPOINT: item.endpoint,
                KEY_FINGERPRINT: item.fingerprint,
                KEY_ITEM_ID: item.id,
                KEY_REENCODE: self.reencode_images,
            },
            name=f"upload-{item.id}",
            constraint=constraint,
            backoff_policy=BackoffPolicy.EXPONENTIAL,
        )

    def close(self) -> None:
        """Pause the queue and stop the job runner."""
        self.queue.pause()
        self.runner.shutdown(wait=True)
        logger.info("App closed")


__all__ = ["App", "QueueItem", "QueueStatus", "UploadQueueManager", "__version__"]
