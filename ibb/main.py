"""
Image Builder API

Front door of the image builder backend. Accepts build requests, hands
them to the build queue and returns the assigned image id.

Run with:
    uvicorn ibb.main:app
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ibb import __version__
from ibb.broker import MessageBroker
from ibb.config import settings
from ibb.routers import api
from ibb.routers.api import format_validation_errors, validation_failure

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
log = logging.getLogger("ibb.api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # A broker that can not be reached aborts startup
    app.state.broker = MessageBroker.connect()
    try:
        yield
    finally:
        app.state.broker.close()


app = FastAPI(
    title="Image Builder",
    description="Queues image build requests for the build workers",
    version=__version__,
    lifespan=lifespan,
)

app.include_router(api.router, prefix="/api/v1")


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    content, status = validation_failure(format_validation_errors(exc.errors()))
    return JSONResponse(status_code=status, content=content)


@app.get("/health")
def health_check(request: Request, response: Response):
    """Health check endpoint for load balancers"""
    broker = getattr(request.app.state, "broker", None)
    if broker is None or not broker.is_open:
        response.status_code = 503
        return {"status": "unhealthy", "broker": "disconnected"}
    return {"status": "healthy", "broker": "connected"}
