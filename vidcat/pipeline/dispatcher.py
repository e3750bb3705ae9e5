"""Job dispatcher for the worker process.

Consumes ``transcode_queue`` and routes each message:

- ``process_directory``: walk the video root, publish one catalog-create
  request per video file to ``db_queue``.
- ``transcode_video``: run the encoder, report ``completed`` or ``failed``
  back to ``db_queue``.

Local concurrency is bounded by a semaphore sized to the concurrency limit,
and the consumer prefetch is set to the same limit so the broker withholds
deliveries the worker could not start anyway. A delivery that still finds
every slot busy after ``backpressure_wait`` seconds is requeued.
"""

import logging
import threading
import time
from pathlib import Path
from typing import Optional
from vidcat.config.models import AppConfig
from vidcat.domain.errors import EncoderAborted, TranscodeError
from vidcat.domain.events import JobCompleted, JobFailed, JobStarted, ScanFinished
from vidcat.domain.messages import (
    CatalogCreateRequest,
    CatalogUpdate,
    CatalogUpdateRequest,
    ScanTrigger,
    TranscodeRequest,
    parse_message,
)
from vidcat.domain.models import EntryStatus
from vidcat.infrastructure.broker import BrokerClient, Delivery
from vidcat.infrastructure.event_bus import EventBus
from vidcat.infrastructure.ffmpeg import FFmpegAdapter
from vidcat.infrastructure.file_scanner import DirectoryScanner


class JobDispatcher:
    """Routes transcode-queue deliveries to the scanner or the encoder.

    Args:
        config: AppConfig (paths, queue names, worker settings).
        broker: BrokerClient used to publish catalog messages.
        file_scanner: DirectoryScanner for process_directory.
        ffmpeg_adapter: FFmpegAdapter for transcode_video.
        event_bus: EventBus receiving ScanFinished / Job* events.
        concurrency_limit: Overrides config.worker.concurrency.
    """

    def __init__(
        self,
        config: AppConfig,
        broker: BrokerClient,
        file_scanner: DirectoryScanner,
        ffmpeg_adapter: FFmpegAdapter,
        event_bus: Optional[EventBus] = None,
        concurrency_limit: Optional[int] = None,
    ):
        self.config = config
        self.broker = broker
        self.file_scanner = file_scanner
        self.ffmpeg_adapter = ffmpeg_adapter
        self.event_bus = event_bus or EventBus()
        self.logger = logging.getLogger(__name__)

        self.concurrency_limit = max(1, concurrency_limit or config.worker.resolved_concurrency())
        self._slots = threading.BoundedSemaphore(self.concurrency_limit)
        self._active_jobs = 0
        self._active_lock = threading.Lock()

    @property
    def active_jobs(self) -> int:
        with self._active_lock:
            return self._active_jobs

    def _adjust_active(self, delta: int):
        with self._active_lock:
            self._active_jobs += delta

    def handle(self, delivery: Delivery):
        """Broker handler: takes a slot, dispatches, always releases the slot."""
        if not self._slots.acquire(timeout=self.config.worker.backpressure_wait):
            self.logger.info(
                f"All {self.concurrency_limit} slots busy, requeueing delivery {delivery.delivery_tag}"
            )
            delivery.nack(requeue=True)
            return

        self._adjust_active(1)
        try:
            self._dispatch(delivery)
        except Exception as e:
            self.logger.exception(f"Error handling delivery {delivery.delivery_tag}: {e}")
            if not delivery.settled:
                delivery.nack(requeue=False)
        finally:
            self._adjust_active(-1)
            self._slots.release()

    def _dispatch(self, delivery: Delivery):
        try:
            message = parse_message(delivery.json())
        except ValueError as e:
            self.logger.warning(f"Dropping malformed message {delivery.body[:200]!r}: {e}")
            delivery.ack()
            return

        if isinstance(message, ScanTrigger):
            self.process_directory()
            delivery.ack()
        elif isinstance(message, TranscodeRequest):
            try:
                succeeded = self.transcode(message)
            except EncoderAborted:
                delivery.nack(requeue=True)
                return
            if succeeded:
                delivery.ack()
            else:
                # Failed encodes are never redelivered
                delivery.nack(requeue=False)
        else:
            self.logger.warning(f"Dropping message with unknown task: {delivery.body[:200]!r}")
            delivery.ack()

    def process_directory(self, root: Optional[Path] = None) -> int:
        """Publishes a create request for every video file under root.

        No filtering of already-known paths: the reconciler's unique-path check
        makes repeated scans harmless.
        """
        root = Path(root or self.config.paths.video_root)
        self.logger.info(f"Directory scan started: {root}")
        start_time = time.monotonic()
        files_found = 0
        for descriptor in self.file_scanner.scan(root):
            self.broker.publish(self.config.broker.db_queue, CatalogCreateRequest(data=descriptor).to_wire())
            files_found += 1
        elapsed = time.monotonic() - start_time
        self.logger.info(f"Directory scan finished: {root} files={files_found} elapsed={elapsed:.2f}s")
        self.event_bus.publish(ScanFinished(root=root, files_found=files_found))
        return files_found

    def _report(self, request: TranscodeRequest, status: EntryStatus,
                transcoded_path: Optional[str] = None, error_message: Optional[str] = None):
        if request.db_id is None:
            return
        update = CatalogUpdate(
            db_id=request.db_id,
            status=status,
            transcoded_path=transcoded_path,
            error_message=error_message,
        )
        self.broker.publish(self.config.broker.db_queue, CatalogUpdateRequest(data=update).to_wire())

    def transcode(self, request: TranscodeRequest) -> bool:
        """Runs the encoder for one request and reports the outcome. Returns True on success."""
        source = Path(request.original_path)
        self.logger.info(f"Transcode started: id={request.db_id} {source}")
        self.event_bus.publish(JobStarted(request=request))
        if self.config.worker.report_processing:
            self._report(request, EntryStatus.PROCESSING)

        try:
            output_path = self.ffmpeg_adapter.transcode(source)
        except EncoderAborted as e:
            self.logger.warning(f"Transcode interrupted: id={request.db_id} {source}: {e}")
            raise
        except TranscodeError as e:
            error_message = f"{type(e).__name__}: {e}"
            self.logger.error(f"Transcode failed: id={request.db_id} {source}: {error_message}")
        except Exception as e:
            error_message = f"Unexpected {type(e).__name__}: {e}"
            self.logger.exception(f"Transcode crashed: id={request.db_id} {source}")
        else:
            self._report(request, EntryStatus.COMPLETED, transcoded_path=str(output_path))
            self.event_bus.publish(JobCompleted(request=request, output_path=output_path))
            self.logger.info(f"Transcode completed: id={request.db_id} -> {output_path}")
            return True

        self._report(request, EntryStatus.FAILED, error_message=error_message)
        self.event_bus.publish(JobFailed(request=request, error_message=error_message))
        return False
