"""
Submission Service - producer side of the build pipeline

Assigns an image id to a validated build request and publishes it to the
build queue. The caller gets the image id back as soon as the message has
been handed to the broker; the outcome of the build is not reported here.
"""

import logging
from typing import Callable, Optional

from ibb.broker import MessageBroker
from ibb.build_request import ImageConfig, serialize
from ibb.config import settings
from ibb.exceptions import BrokerError, SubmissionError
from ibb.util import generate_image_id, status_queue_name

log = logging.getLogger("ibb.api")


class SubmissionService:
    """
    Turns build requests into messages on the build queue.

    Either the request is published and its image id returned, or a
    SubmissionError is raised and nothing is published. The one exception
    is a publish timeout: a publish the broker thread had already started
    still completes, so the build may run anyway. The error names the image
    id and the broker logs a warning when such a late publish lands.
    """

    def __init__(
        self,
        broker: MessageBroker,
        id_generator: Callable[[], str] = generate_image_id,
        build_queue: Optional[str] = None,
        status_updates: Optional[bool] = None,
    ):
        """
        Initialize the submission service.

        Args:
            broker: Connected message broker
            id_generator: Returns a fresh image id on every call
            build_queue: Queue to publish to, defaults to settings.build_queue
            status_updates: Bind a status queue for every build, defaults to
                settings.status_updates
        """
        self.broker = broker
        self.id_generator = id_generator
        self.build_queue = build_queue or settings.build_queue
        self.status_updates = (
            settings.status_updates if status_updates is None else status_updates
        )

    def submit(self, image_config: ImageConfig) -> str:
        """
        Submit a build request.

        This method:
        1. Generates a fresh image id
        2. Attaches it to a copy of the request
        3. Serializes the copy to JSON
        4. Binds a status queue for the build (if status updates are enabled)
        5. Publishes the message to the build queue

        Args:
            image_config: Validated build request without an image id

        Returns:
            The image id assigned to the request

        Raises:
            SubmissionError: If any step fails
        """
        if image_config.image_id is not None:
            raise SubmissionError(
                f"request already has image id {image_config.image_id}"
            )

        try:
            image_id = self.id_generator()
        except Exception as e:
            raise SubmissionError(f"error generating image id: {e}") from e
        if not image_id:
            raise SubmissionError("error generating image id: empty id")

        request = image_config.model_copy(update={"image_id": image_id})

        try:
            payload = serialize(request)
        except (TypeError, ValueError) as e:
            raise SubmissionError(f"error serializing build request: {e}") from e

        try:
            if self.status_updates:
                self.broker.create_and_bind(
                    status_queue_name(image_id),
                    self.broker.status_exchange,
                    image_id,
                )
            self.broker.publish_to_queue(payload, self.build_queue)
        except BrokerError as e:
            raise SubmissionError(
                f"error sending message to queue for build {image_id}: {e}"
            ) from e

        log.info(f"Submitted build {image_id} for {request.architecture}")
        return image_id
