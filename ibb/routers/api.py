import logging
from typing import Union

from fastapi import APIRouter, Depends, Path, Request, Response
from pydantic import ValidationError

from ibb.broker import MessageBroker
from ibb.build_request import BuildStatus, ImageConfig
from ibb.config import settings
from ibb.exceptions import ConsumeError, QueueNotFoundError, SubmissionError
from ibb.services.submission_service import SubmissionService
from ibb.util import status_queue_name

log = logging.getLogger("ibb.api")

router = APIRouter()

IMAGE_ID_PATTERN = r"^[a-z0-9]+$"


def get_broker(request: Request) -> MessageBroker:
    """Return the broker connected during application startup."""
    return request.app.state.broker


def get_submission_service(
    broker: MessageBroker = Depends(get_broker),
) -> SubmissionService:
    return SubmissionService(broker)


def validation_failure(detail: str) -> tuple[dict[str, Union[str, int]], int]:
    log.info(f"Validation failure {detail = }")
    return {"detail": detail, "status": 400}, 400


def format_validation_errors(errors: list[dict]) -> str:
    """Join pydantic/FastAPI validation errors into a single message."""
    messages = []
    for error in errors:
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        message = error.get("msg", "invalid value")
        messages.append(f"{location}: {message}" if location else message)
    return "; ".join(messages) or "invalid request"


@router.post("/build", status_code=201)
def api_v1_build_post(
    image_config: ImageConfig,
    response: Response,
    service: SubmissionService = Depends(get_submission_service),
):
    """
    Submit an image build.

    The request is queued for a build worker and the assigned image id is
    returned immediately. An image id sent by the client is ignored.
    """
    if image_config.image_id is not None:
        log.debug(f"Ignoring client supplied image id {image_config.image_id}")
        image_config = image_config.model_copy(update={"image_id": None})

    try:
        image_id = service.submit(image_config)
    except SubmissionError as e:
        log.error(f"Error submitting build request: {e}")
        response.status_code = 500
        return {
            "status": 500,
            "title": "Internal Server Error",
            "detail": str(e),
        }

    return {"imageId": image_id}


@router.get("/build/{image_id}/status")
def api_v1_build_status(
    response: Response,
    image_id: str = Path(pattern=IMAGE_ID_PATTERN),
    broker: MessageBroker = Depends(get_broker),
) -> dict:
    """
    Return the status events published for a build since the last call.

    Events are consumed when read, so every event is returned only once.
    """
    if not settings.status_updates:
        response.status_code = 404
        return {
            "status": 404,
            "title": "Not Found",
            "detail": "status updates are not enabled on this server",
        }

    try:
        bodies = broker.consume_all(status_queue_name(image_id))
    except QueueNotFoundError:
        response.status_code = 404
        return {
            "status": 404,
            "title": "Not Found",
            "detail": "could not find provided image id",
        }
    except ConsumeError as e:
        log.error(f"Error reading status of build {image_id}: {e}")
        response.status_code = 500
        return {
            "status": 500,
            "title": "Internal Server Error",
            "detail": str(e),
        }

    events = []
    for body in bodies:
        try:
            event = BuildStatus.model_validate_json(body)
        except ValidationError as e:
            log.warning(f"Dropping malformed status event for build {image_id}: {e}")
            continue
        events.append(event.model_dump(by_alias=True))

    return {"imageId": image_id, "events": events}
