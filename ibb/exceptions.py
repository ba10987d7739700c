"""Exceptions raised by the broker, the submission service and the worker."""


class ImageBuilderError(Exception):
    """Base class for all image builder errors."""


class BrokerError(ImageBuilderError):
    """Base class for message broker errors."""


class BrokerConnectionError(BrokerError):
    """Raised when the broker is unreachable or the channel cannot be opened."""


class BindingError(BrokerError):
    """Raised when a queue or exchange cannot be declared or bound."""


class PublishError(BrokerError):
    """Raised when a message could not be handed to the broker."""


class PublishTimeoutError(PublishError):
    """Raised when publishing did not finish within the publish deadline."""

    def __init__(self, message: str, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(message)


class ConsumeError(BrokerError):
    """Raised when retrieving messages from a queue fails."""


class QueueNotFoundError(ConsumeError):
    """Raised when consuming from a queue that does not exist."""

    def __init__(self, queue_name: str) -> None:
        self.queue_name = queue_name
        super().__init__(f"queue {queue_name} does not exist")


class DeserializationError(ImageBuilderError):
    """Raised when a message body is not a valid build request."""


class SubmissionError(ImageBuilderError):
    """Raised when a build request could not be submitted."""
