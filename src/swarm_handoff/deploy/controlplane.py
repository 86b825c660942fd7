"""HTTP client for the management control plane (Portainer API).

The control plane takes ownership of stacks created through its API. Only
three calls are needed: authenticate, list managed stacks and create a swarm
stack from a file.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import httpx
import structlog

from ..errors import AuthError, ControlPlaneUnreachable, SubmissionRejected, map_http_status

logger = structlog.get_logger(__name__)

AUTH_PATH = "/api/auth"
STACKS_PATH = "/api/stacks"
CREATE_SWARM_STACK_PATH = "/api/stacks/create/swarm/file"


@dataclass(frozen=True)
class ControlPlaneEndpoint:
    """Where the control plane lives and which environment to deploy into."""

    url: str
    endpoint_id: int = 1
    verify: bool = False


@dataclass(frozen=True)
class Credentials:
    """Control plane login."""

    username: str
    password: str = field(repr=False)


@dataclass(frozen=True)
class ControlPlaneSession:
    """Bearer token valid for the duration of one run."""

    token: str = field(repr=False)
    issued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}


class ControlPlaneClient:
    """Synchronous client for the control plane REST API.

    Use as a context manager:

        with ControlPlaneClient(endpoint) as client:
            session = client.authenticate(credentials)
    """

    def __init__(
        self,
        endpoint: ControlPlaneEndpoint,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        """Initialize client.

        Args:
            endpoint: Control plane location.
            timeout: Request timeout in seconds.
            transport: Optional httpx transport (tests).
        """
        self.endpoint = endpoint
        self.base_url = endpoint.url.rstrip("/")
        self.timeout = timeout
        self.transport = transport
        self._client: httpx.Client | None = None

    def __enter__(self) -> ControlPlaneClient:
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=self.timeout,
            verify=self.endpoint.verify,
            transport=self.transport,
        )
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self._client:
            self._client.close()
            self._client = None

    def _ensure_client(self) -> httpx.Client:
        if not self._client:
            raise RuntimeError("Client not initialized. Use 'with' context.")
        return self._client

    def _request(
        self,
        method: str,
        path: str,
        unit: str | None = None,
        **kwargs: Any,
    ) -> Any:
        """Make an HTTP request and return the decoded JSON body.

        Raises:
            ControlPlaneUnreachable: On connection errors or timeouts.
            AuthError: On HTTP 401/403.
            SubmissionRejected: On any other HTTP error status.
        """
        client = self._ensure_client()
        try:
            response = client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.ConnectError:
            raise ControlPlaneUnreachable(f"Cannot connect to control plane at {self.base_url}")
        except httpx.TimeoutException:
            raise ControlPlaneUnreachable(f"Request to {path} timed out after {self.timeout}s")
        except httpx.HTTPStatusError as e:
            try:
                error_data = e.response.json()
            except ValueError:
                error_data = None
            if isinstance(error_data, dict):
                message = error_data.get("message") or error_data.get("details") or str(e)
            else:
                message = e.response.text or str(e)
            raise map_http_status(e.response.status_code, message, unit=unit)

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return None

    def authenticate(self, credentials: Credentials) -> ControlPlaneSession:
        """Exchange credentials for a bearer token.

        Raises:
            AuthError: Rejected credentials or a null/absent token.
            ControlPlaneUnreachable: Transport failure.
        """
        try:
            data = self._request(
                "POST",
                AUTH_PATH,
                json={"Username": credentials.username, "Password": credentials.password},
            )
        except SubmissionRejected as e:
            # 422 and friends: the control plane refused the login
            raise AuthError(f"Authentication rejected: {e.message}", details=e.details) from e

        token = data.get("jwt") if isinstance(data, dict) else None
        if not token:
            raise AuthError("Control plane returned no token")

        logger.info("Authenticated against control plane", user=credentials.username)
        return ControlPlaneSession(token)

    def list_stacks(self, session: ControlPlaneSession) -> list[dict[str, Any]]:
        """List stacks the control plane manages."""
        data = self._request("GET", STACKS_PATH, headers=session.auth_headers())
        return data if isinstance(data, list) else []

    def managed_stack_names(self, session: ControlPlaneSession) -> set[str]:
        return {stack["Name"] for stack in self.list_stacks(session) if stack.get("Name")}

    def create_stack(
        self,
        session: ControlPlaneSession,
        name: str,
        swarm_id: str,
        definition: str,
    ) -> dict[str, Any]:
        """Create a swarm stack from a rendered definition file.

        Raises:
            SubmissionRejected: The control plane refused the stack.
            AuthError: The session is no longer valid.
            ControlPlaneUnreachable: Transport failure.
        """
        data = self._request(
            "POST",
            CREATE_SWARM_STACK_PATH,
            unit=name,
            headers=session.auth_headers(),
            params={"endpointId": self.endpoint.endpoint_id},
            data={
                "Name": name,
                "SwarmID": swarm_id,
                "EndpointId": str(self.endpoint.endpoint_id),
            },
            files={"file": (f"{name}.yaml", definition.encode(), "application/x-yaml")},
        )
        logger.info(f"Created managed stack {name}")
        return data if isinstance(data, dict) else {}
