"""Stack submission to the cluster manager."""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path

import structlog

from ..shared.paths import RENDERED_DIR
from .cluster import ClusterManager
from .model import DeployHandle, ServiceUnit
from .template import TemplateRenderer

logger = structlog.get_logger(__name__)

APPLY_MODES = ("direct", "file")


class StackDeployer:
    """Render a unit's template and submit it as a named stack.

    Two apply modes are supported: ``direct`` pipes the rendered definition
    on stdin, ``file`` writes it under ``rendered_dir`` first. Existing
    stacks are updated in place by the cluster manager.
    """

    def __init__(
        self,
        cluster: ClusterManager,
        renderer: TemplateRenderer | None = None,
        apply_mode: str = "direct",
        rendered_dir: Path | None = None,
    ):
        if apply_mode not in APPLY_MODES:
            raise ValueError(f"Unknown apply mode: {apply_mode}")
        self.cluster = cluster
        self.renderer = renderer or TemplateRenderer()
        self.apply_mode = apply_mode
        self.rendered_dir = rendered_dir or RENDERED_DIR

    def render(self, unit: ServiceUnit, params: Mapping[str, str]) -> str:
        """Render the unit's template (ConfigError on missing parameters)."""
        return self.renderer.render_file(unit.template, params)

    def write_rendered(self, unit: ServiceUnit, definition: str) -> Path:
        """Write a rendered definition to ``<rendered_dir>/<unit>.yaml``."""
        self.rendered_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
        path = self.rendered_dir / f"{unit.name}.yaml"
        path.write_text(definition)
        path.chmod(0o600)
        return path

    def deploy(self, unit: ServiceUnit, params: Mapping[str, str]) -> DeployHandle:
        """Deploy one unit.

        Raises:
            ConfigError: A template parameter is missing.
            SubmissionRejected: The cluster manager refused the definition.
            ClusterUnreachable: Transport failure; retryable by the caller.
        """
        definition = self.render(unit, params)
        logger.info(f"Deploying stack {unit.name}", mode=self.apply_mode)

        if self.apply_mode == "file":
            path = self.write_rendered(unit, definition)
            output = self.cluster.deploy_unit(unit.name, path=path)
            return DeployHandle(unit.name, self.apply_mode, definition_path=path, output=output)

        output = self.cluster.deploy_unit(unit.name, definition=definition)
        return DeployHandle(unit.name, self.apply_mode, output=output)
