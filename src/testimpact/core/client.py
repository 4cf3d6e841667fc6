"""Client side of the coordination protocol, used by test runner processes.

Failures never make a test get skipped: if the server cannot be reached or
answers with an error, ``disabled_tests`` returns an empty set and every test
runs.
"""

import logging
from collections.abc import Iterable

import requests

from testimpact.core.models import CoordinationResponse
from testimpact.core.settings import settings

logger = logging.getLogger(__name__)


class CoordinationError(Exception):
    """The coordination server could not be reached or rejected a request."""


class CoordinationClient:
    """Talks to a CoordinationServer on behalf of one project."""

    def __init__(
        self,
        port: int,
        host: str | None = None,
        timeout: float | None = None,
        force: bool | None = None,
        session: requests.Session | None = None,
    ):
        self.url = f"http://{host or settings.server_host}:{port}/"
        self.timeout = settings.client_timeout if timeout is None else timeout
        self.force = settings.force if force is None else force
        self.session = session or requests.Session()

    def request(self, payload: dict) -> CoordinationResponse:
        """Send one request and return the parsed response.

        Raises:
            CoordinationError: On transport failure or an error response
        """
        try:
            reply = self.session.post(self.url, json=payload, timeout=self.timeout)
            response = CoordinationResponse.model_validate(reply.json())
        except (requests.RequestException, ValueError) as e:
            raise CoordinationError(f"{payload.get('request')} request to {self.url} failed: {e}") from e

        if response.is_error:
            raise CoordinationError(f"{payload.get('request')} request rejected: {response.error}")
        return response

    def disabled_tests(self, project: str, digest: str) -> set[str]:
        if self.force:
            logger.warning("Force mode is set, ignoring existing test reports")
            return set()
        try:
            response = self.request({"request": "disabledTests", "project": project, "digest": digest})
        except CoordinationError as e:
            logger.warning(f"Running every test of {project}: {e}")
            return set()

        if not isinstance(response.result, list):
            logger.warning(f"Running every test of {project}: unexpected result {response.result!r}")
            return set()
        return set(response.result)

    def add_report(self, project: str, test: str, classes: Iterable[str]) -> bool:
        return self._send(
            {"request": "addReport", "project": project, "test": test, "classes": sorted(set(classes))}
        )

    def write_report(self, project: str, digest: str) -> bool:
        return self._send({"request": "writeReport", "project": project, "digest": digest})

    def log(self, level: str, message: str) -> bool:
        return self._send({"request": "log", "level": level, "message": message})

    def _send(self, payload: dict) -> bool:
        try:
            self.request(payload)
        except CoordinationError as e:
            logger.error(str(e))
            return False
        return True

    def close(self) -> None:
        self.session.close()
