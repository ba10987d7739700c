"""
Build Worker - consumer side of the build pipeline

Polls the build queue one message at a time and runs the build routine for
every valid build request. Errors never leave the loop: broker failures are
retried with exponential backoff, malformed messages are dropped and a
failing build is logged.
"""

import enum
import logging
import threading
from typing import Callable, Optional

from ibb.broker import MessageBroker
from ibb.build import build as build_image
from ibb.build_request import (
    BuildStatus,
    ImageConfig,
    deserialize_image_config,
    serialize,
)
from ibb.config import settings
from ibb.exceptions import ConsumeError, DeserializationError, PublishError

log = logging.getLogger("ibb.worker")


class PollResult(enum.Enum):
    """Outcome of a single poll of the build queue."""

    PROCESSED = "processed"  # build routine completed
    FAILED = "failed"  # build routine raised
    DROPPED = "dropped"  # message was not a valid build request
    EMPTY = "empty"  # no message available
    ERROR = "error"  # broker error while consuming


class Backoff:
    """Exponential backoff: initial, initial * 2, ... capped at maximum."""

    def __init__(self, initial: float = 0.5, maximum: float = 30.0):
        # A zero delay would poll an unreachable broker in a tight loop
        if initial <= 0:
            raise ValueError("initial must be > 0")
        if initial > maximum:
            raise ValueError("initial must be <= maximum")
        self.initial = initial
        self.maximum = maximum
        self.attempt = 0

    def next(self) -> float:
        """Return the next delay and advance."""
        delay = min(self.initial * (2**self.attempt), self.maximum)
        self.attempt += 1
        return delay

    def reset(self) -> None:
        self.attempt = 0


class BuildWorker:
    """
    Long-running consumer of the build queue.

    The worker is single-threaded: each build blocks the loop until it
    returns, so one worker runs at most one build at a time.
    """

    def __init__(
        self,
        broker: MessageBroker,
        process: Callable[[ImageConfig], None] = build_image,
        build_queue: Optional[str] = None,
        poll_interval: Optional[float] = None,
        backoff: Optional[Backoff] = None,
        status_updates: Optional[bool] = None,
    ):
        """
        Initialize the build worker.

        Args:
            broker: Connected message broker
            process: Build routine, called with every valid build request
            build_queue: Queue to poll, defaults to settings.build_queue
            poll_interval: Seconds to wait after finding the queue empty
            backoff: Delay policy after broker errors
            status_updates: Publish build status events, defaults to
                settings.status_updates
        """
        self.broker = broker
        self.process = process
        self.build_queue = build_queue or settings.build_queue
        self.poll_interval = (
            settings.poll_interval if poll_interval is None else poll_interval
        )
        self.backoff = backoff or Backoff(settings.backoff_initial, settings.backoff_max)
        self.status_updates = (
            settings.status_updates if status_updates is None else status_updates
        )

    def run(self, stop_event: Optional[threading.Event] = None) -> None:
        """
        Poll the build queue until stop_event is set.

        Args:
            stop_event: Set it to stop the loop; waits between polls return
                early once it is set. Without one the loop runs forever.
        """
        if stop_event is None:
            stop_event = threading.Event()

        log.info(f"Worker polling queue {self.build_queue}")
        while not stop_event.is_set():
            result = self.poll_once()

            if result is PollResult.ERROR:
                delay = self.backoff.next()
            else:
                self.backoff.reset()
                delay = self.poll_interval if result is PollResult.EMPTY else 0

            if delay:
                stop_event.wait(delay)

        log.info("Worker stopped")

    def poll_once(self) -> PollResult:
        """
        Run one iteration of the worker loop without waiting.

        Returns:
            PollResult describing what happened
        """
        try:
            delivery = self.broker.consume_one(self.build_queue)
        except ConsumeError as e:
            log.error(f"Error consuming message: {e}")
            return PollResult.ERROR

        if delivery is None:
            return PollResult.EMPTY

        try:
            image_config = deserialize_image_config(delivery.body)
        except DeserializationError as e:
            log.error(f"Error deserializing message from message broker: {e}")
            return PollResult.DROPPED

        return self.handle(image_config)

    def handle(self, image_config: ImageConfig) -> PollResult:
        """Run the build routine for one build request."""
        image_id = image_config.image_id
        self.publish_status(image_id, "started")

        try:
            self.process(image_config)
        except Exception as e:
            log.error(f"Build {image_id} failed: {e}", exc_info=True)
            self.publish_status(image_id, "failed", str(e))
            return PollResult.FAILED

        self.publish_status(image_id, "finished")
        return PollResult.PROCESSED

    def publish_status(
        self, image_id: Optional[str], status: str, detail: Optional[str] = None
    ) -> None:
        """Publish a status event for a build, if status updates are enabled."""
        if not self.status_updates or not image_id:
            return

        event = BuildStatus(image_id=image_id, status=status, detail=detail)
        try:
            self.broker.publish_to_exchange(
                serialize(event), self.broker.status_exchange, image_id
            )
        except PublishError as e:
            log.warning(f"Failed to publish status {status} for build {image_id}: {e}")
