"""Readiness gating for deployed units.

A unit that declares a probe is polled at a fixed interval until it reports
healthy or the timeout elapses. Timing out is permissive by default: the
result is recorded and the caller proceeds, because dependent units tolerate
brief unavailability during cold start. Strict mode raises instead.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum

import httpx
import structlog

from ..errors import ReadinessTimeoutError
from .clock import Clock, SystemClock
from .cluster import ClusterManager
from .model import ReadinessProbe, ServiceUnit
from .template import TemplateRenderer

logger = structlog.get_logger(__name__)


class ProbeState(Enum):
    """States of the polling state machine."""

    PENDING = "pending"
    PROBING = "probing"
    WAITING = "waiting"
    READY = "ready"
    TIMED_OUT = "timed_out"


@dataclass
class ReadinessResult:
    """Result of waiting for one unit."""

    unit: str
    state: ProbeState
    attempts: int = 0
    elapsed_seconds: float = 0.0
    error: str | None = None

    @property
    def ready(self) -> bool:
        return self.state == ProbeState.READY

    @property
    def timed_out(self) -> bool:
        return self.state == ProbeState.TIMED_OUT


class HttpProbe:
    """HTTP(S) GET probe. Success is the expected status, or any 2xx."""

    def __init__(
        self,
        verify: bool = False,
        request_timeout: float = 5.0,
        transport: httpx.BaseTransport | None = None,
    ):
        """Initialize probe.

        Args:
            verify: Verify TLS certificates. Off by default since the edge
                router obtains certificates only after services come up.
            request_timeout: Timeout for each HTTP request.
            transport: Optional httpx transport (tests).
        """
        self.verify = verify
        self.request_timeout = request_timeout
        self.transport = transport

    def check(self, url: str, expected: int | None = None) -> tuple[bool, str | None]:
        try:
            with httpx.Client(
                timeout=self.request_timeout,
                verify=self.verify,
                transport=self.transport,
                follow_redirects=True,
            ) as client:
                response = client.get(url)
        except httpx.ConnectError:
            return False, "Connection refused"
        except httpx.TimeoutException:
            return False, "Request timeout"
        except httpx.HTTPError as e:
            return False, str(e)

        if expected is not None:
            healthy = response.status_code == expected
        else:
            healthy = response.is_success
        return healthy, None if healthy else f"HTTP {response.status_code}"


class ExecProbe:
    """Probe that runs a command inside a unit's container."""

    def __init__(self, cluster: ClusterManager):
        self.cluster = cluster

    def check(
        self,
        name_filter: str,
        command: tuple[str, ...],
        expected: int | None = None,
        env: Mapping[str, str] | None = None,
    ) -> tuple[bool, str | None]:
        result = self.cluster.exec_in_service(name_filter, command, env)
        wanted = 0 if expected is None else expected
        if result.exit_code == wanted:
            return True, None
        return False, result.output or f"exit code {result.exit_code}"


class ReadinessGate:
    """Block until a unit's probe succeeds or its timeout elapses."""

    def __init__(
        self,
        params: Mapping[str, str],
        http_probe: HttpProbe | None = None,
        exec_probe: ExecProbe | None = None,
        clock: Clock | None = None,
        renderer: TemplateRenderer | None = None,
        strict: bool = False,
    ):
        """Initialize readiness gate.

        Args:
            params: Environment used to render probe endpoints and commands.
            http_probe: Probe for http/https units.
            exec_probe: Probe for exec units.
            clock: Time source (SystemClock by default).
            renderer: Template renderer for endpoints.
            strict: Raise ReadinessTimeoutError on timeout instead of returning.
        """
        self.params = params
        self.http_probe = http_probe or HttpProbe()
        self.exec_probe = exec_probe
        self.clock = clock or SystemClock()
        self.renderer = renderer or TemplateRenderer()
        self.strict = strict

    def _probe_once(self, probe: ReadinessProbe) -> tuple[bool, str | None]:
        endpoint = self.renderer.render_string(probe.endpoint, self.params, name="probe endpoint")
        if probe.protocol in ("http", "https"):
            if "://" not in endpoint:
                endpoint = f"{probe.protocol}://{endpoint}"
            return self.http_probe.check(endpoint, probe.expected)

        if self.exec_probe is None:
            return False, "No exec probe configured"
        command = tuple(
            self.renderer.render_string(part, self.params, name="probe command")
            for part in probe.command
        )
        return self.exec_probe.check(endpoint, command, probe.expected)

    def await_ready(
        self,
        unit: ServiceUnit,
        timeout: float,
        interval: float,
        on_attempt: Callable[[str, int, str | None], None] | None = None,
    ) -> ReadinessResult:
        """Poll the unit's probe until healthy or timeout.

        Args:
            unit: Unit to wait for. Units without a probe are ready at once.
            timeout: Seconds after which the unit is considered timed out.
            interval: Fixed seconds between attempts.
            on_attempt: Optional callback called with (unit, attempt, error).

        Returns:
            ReadinessResult in state READY or TIMED_OUT.

        Raises:
            ReadinessTimeoutError: Only in strict mode.
            ConfigError: The probe endpoint references an undefined parameter.
        """
        if unit.probe is None:
            return ReadinessResult(unit.name, ProbeState.READY)

        state = ProbeState.PENDING
        start = self.clock.now()
        attempts = 0
        last_error: str | None = None

        while state not in (ProbeState.READY, ProbeState.TIMED_OUT):
            if state in (ProbeState.PENDING, ProbeState.WAITING):
                state = ProbeState.PROBING
                attempts += 1
                healthy, last_error = self._probe_once(unit.probe)
                if on_attempt:
                    on_attempt(unit.name, attempts, last_error)
                if healthy:
                    state = ProbeState.READY
                elif self.clock.now() - start >= timeout:
                    state = ProbeState.TIMED_OUT
                else:
                    state = ProbeState.WAITING
                    self.clock.sleep(interval)

        elapsed = self.clock.now() - start
        if state == ProbeState.READY:
            logger.info(f"{unit.name} ready", attempts=attempts, elapsed=round(elapsed, 1))
            return ReadinessResult(unit.name, state, attempts, elapsed)

        message = f"{unit.name} not ready after {elapsed:.0f}s. Last error: {last_error}"
        logger.warning(message, attempts=attempts)
        if self.strict:
            raise ReadinessTimeoutError(message, unit=unit.name)
        return ReadinessResult(unit.name, state, attempts, elapsed, error=last_error)
