"""Stand-in for the image build routine.

The real build orchestration is not part of this service yet. build()
only logs the request and sleeps for settings.build_duration seconds.
"""

import logging
import time

from ibb.build_request import ImageConfig
from ibb.config import settings

log = logging.getLogger("ibb.build")


def build(image_config: ImageConfig) -> None:
    """Build an image.

    Args:
        image_config: The build request, with its image id assigned
    """
    log.info(
        f"Processing image with ID: {image_config.image_id} "
        f"({image_config.architecture})"
    )
    time.sleep(settings.build_duration)
    log.info(f"Finished image with ID: {image_config.image_id}")
