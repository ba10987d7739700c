"""
Build worker process.

Run with:
    ibb-worker
    python -m ibb.worker
"""

import logging
import signal
import sys
import threading

from ibb.broker import MessageBroker
from ibb.config import settings
from ibb.exceptions import BrokerError
from ibb.services.build_worker import BuildWorker

log = logging.getLogger("ibb.worker")


def main() -> int:
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        broker = MessageBroker.connect()
    except BrokerError as e:
        log.error(f"Failed to start worker: {e}")
        return 1

    stop_event = threading.Event()

    def request_stop(signum, frame):
        log.info(f"Received {signal.Signals(signum).name}, stopping after current build")
        stop_event.set()

    signal.signal(signal.SIGINT, request_stop)
    signal.signal(signal.SIGTERM, request_stop)

    try:
        BuildWorker(broker).run(stop_event)
    finally:
        broker.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
