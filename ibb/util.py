"""Utility functions for the image builder backend."""

import logging
import secrets
import string
import threading

log = logging.getLogger("ibb")

IMAGE_ID_ALPHABET = string.ascii_lowercase + string.digits
IMAGE_ID_LENGTH = 6


class ImageIdGenerator:
    """Generate short random image ids that are never repeated.

    Ids issued by one generator are remembered so a collision is redrawn
    instead of handed out twice. Uniqueness only holds per generator, i.e.
    per process when the module-level generator is used.
    """

    def __init__(self, length: int = IMAGE_ID_LENGTH):
        if length < 1:
            raise ValueError("length must be >= 1")
        self.length = length
        self._issued: set[str] = set()
        self._lock = threading.Lock()

    def __call__(self) -> str:
        with self._lock:
            if len(self._issued) >= len(IMAGE_ID_ALPHABET) ** self.length:
                raise RuntimeError("image id space exhausted")
            while True:
                image_id = "".join(
                    secrets.choice(IMAGE_ID_ALPHABET) for _ in range(self.length)
                )
                if image_id not in self._issued:
                    self._issued.add(image_id)
                    return image_id
                log.debug(f"Image id collision on {image_id}, drawing again")


_generator = ImageIdGenerator()


def generate_image_id() -> str:
    """Return a fresh image id, unique within this process.

    Returns:
        str: Six lowercase letters and digits, e.g. "a1b2c3"
    """
    return _generator()


def status_queue_name(image_id: str) -> str:
    """Name of the queue collecting status events of one build."""
    return f"status.{image_id}"
