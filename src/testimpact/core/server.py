"""Local HTTP endpoint sharing one ImpactAnalyzer between test runner processes.

Every request is a single JSON object POSTed to ``/``; the ``request`` field
names the operation. Analyzer calls block (they wait for initialization and
may run git), so they are executed on a bounded thread pool rather than on
the event loop.
"""

import asyncio
import json
import logging
import socket
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import uvicorn
from pydantic import ValidationError
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from testimpact.core.impact_analyzer import ImpactAnalyzer
from testimpact.core.models import (
    AddReportRequest,
    CoordinationRequest,
    CoordinationResponse,
    DisabledTestsRequest,
    LogRequest,
    WriteReportRequest,
    coordination_request_adapter,
)
from testimpact.core.settings import settings

logger = logging.getLogger(__name__)

STARTUP_TIMEOUT = 10.0


class BadRequestError(ValueError):
    """The request body is not a valid coordination request."""


def parse_request(body: bytes) -> CoordinationRequest:
    """Validate a raw request body.

    Raises:
        BadRequestError: If the body is empty, not JSON, or not a known request
    """
    text = body.decode("utf-8", errors="replace").strip()
    if not text:
        raise BadRequestError("Empty request")

    try:
        raw = json.loads(text)
    except json.JSONDecodeError as e:
        raise BadRequestError(f"Request is not valid JSON: {e}") from e

    if not isinstance(raw, dict):
        raise BadRequestError("Request must be a JSON object")
    if "request" not in raw:
        raise BadRequestError("Missing 'request' property")

    try:
        return coordination_request_adapter.validate_python(raw)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or 'request'}: {error['msg']}" for error in e.errors()
        )
        raise BadRequestError(f"Unsupported request '{raw['request']}': {problems}") from e


def dispatch(analyzer: ImpactAnalyzer, request: CoordinationRequest) -> CoordinationResponse:
    """Route one request to the analyzer."""
    match request:
        case DisabledTestsRequest(project=project, digest=digest):
            return CoordinationResponse(result=sorted(analyzer.disabled_tests(project, digest)))
        case AddReportRequest(project=project, test=test, classes=classes):
            analyzer.add_report(project, test, classes)
        case WriteReportRequest(project=project, digest=digest):
            analyzer.write_report(project, digest)
        case LogRequest(level=level, message=message):
            try:
                analyzer.log(level, message)
            except ValueError as e:
                raise BadRequestError(str(e)) from e
    return CoordinationResponse(result="ok")


def create_app(analyzer: ImpactAnalyzer, executor: ThreadPoolExecutor) -> Starlette:
    """Build the ASGI application serving ``analyzer``."""

    async def handle(request: Request) -> JSONResponse:
        body = await request.body()
        try:
            parsed = parse_request(body)
            loop = asyncio.get_running_loop()
            response = await loop.run_in_executor(executor, dispatch, analyzer, parsed)
        except BadRequestError as e:
            logger.debug(f"Rejected request: {e}")
            return JSONResponse(CoordinationResponse(error=str(e)).to_wire(), status_code=400)
        except Exception as e:
            logger.warning(f"Error processing request: {e}", exc_info=True)
            return JSONResponse(CoordinationResponse(error=repr(e)).to_wire(), status_code=500)

        return JSONResponse(response.to_wire())

    return Starlette(routes=[Route("/", handle, methods=["POST"])])


class CoordinationServer:
    """Serves one analyzer on a loopback port from a background thread."""

    def __init__(
        self,
        analyzer: ImpactAnalyzer,
        host: str | None = None,
        port: int | None = None,
        workers: int | None = None,
    ):
        self.analyzer = analyzer
        self.host = host or settings.server_host
        self.requested_port = settings.server_port if port is None else port
        self.workers = workers or settings.server_workers

        self._executor: ThreadPoolExecutor | None = None
        self._socket: socket.socket | None = None
        self._server: uvicorn.Server | None = None
        self._thread: threading.Thread | None = None

    @property
    def port(self) -> int:
        if self._socket is None:
            raise RuntimeError("Coordination server is not running")
        return self._socket.getsockname()[1]

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}/"

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> "CoordinationServer":
        if self._thread is not None:
            return self

        family = socket.AF_INET6 if ":" in self.host else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((self.host, self.requested_port))
        self._socket = sock

        self._executor = ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="testimpact-worker")
        app = create_app(self.analyzer, self._executor)
        config = uvicorn.Config(app, log_level="warning", access_log=False, lifespan="off")
        self._server = uvicorn.Server(config)
        self._thread = threading.Thread(
            target=self._server.run, kwargs={"sockets": [sock]}, name="testimpact-server", daemon=True
        )
        self._thread.start()

        deadline = time.monotonic() + STARTUP_TIMEOUT
        while not self._server.started:
            if not self._thread.is_alive() or time.monotonic() > deadline:
                self.stop()
                raise RuntimeError(f"Coordination server failed to start on {self.host}")
            time.sleep(0.01)

        logger.info(f"Coordination server for {self.analyzer.storage.working_dir} listening on {self.url}")
        return self

    def stop(self) -> None:
        if self._server is not None:
            self._server.should_exit = True
        if self._thread is not None:
            self._thread.join(timeout=5)
        if self._socket is not None:
            try:
                self._socket.close()
            except OSError as e:
                logger.debug(f"Failed to close server socket: {e}")
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)

        self._executor = None
        self._server = None
        self._thread = None
        self._socket = None

    def __enter__(self) -> "CoordinationServer":
        return self.start()

    def __exit__(self, *exc_info) -> None:
        self.stop()
