"""Unit tests for stack template rendering."""

import pytest

from swarm_handoff.deploy import TemplateRenderer
from swarm_handoff.errors import ConfigError


@pytest.fixture
def renderer():
    return TemplateRenderer()


class TestTemplateRenderer:
    """Tests for TemplateRenderer."""

    def test_substitutes_placeholders(self, renderer):
        """Test ${VAR} placeholders are replaced."""
        result = renderer.render_string("Host(`portainerapp.${DOMAIN}`)", {"DOMAIN": "example.com"})
        assert result == "Host(`portainerapp.example.com`)"

    def test_go_templates_pass_through(self, renderer):
        """Test docker Go templates are not treated as placeholders."""
        source = "hostname: '{{.Node.Hostname}}'\nemail: ${EMAIL}\n"
        result = renderer.render_string(source, {"EMAIL": "ops@example.com"})
        assert result == "hostname: '{{.Node.Hostname}}'\nemail: ops@example.com\n"

    def test_missing_parameters_reported_together(self, renderer):
        """Test every missing name is listed in one error."""
        with pytest.raises(ConfigError) as exc_info:
            renderer.render_string("${DOMAIN} ${EMAIL} ${SERVER_IP}", {"EMAIL": "x"}, name="t.yaml")

        assert exc_info.value.details["missing"] == ["DOMAIN", "SERVER_IP"]
        assert "t.yaml" in exc_info.value.message

    def test_missing(self, renderer):
        """Test missing() lists undefined names without rendering."""
        assert renderer.missing("${A}-${B}", {"A": "1"}) == ["B"]
        assert renderer.missing("no placeholders", {}) == []

    def test_trailing_newline_kept(self, renderer):
        """Test rendered files keep their final newline."""
        assert renderer.render_string("a: 1\n", {}).endswith("\n")

    def test_render_file(self, renderer, tmp_path):
        """Test rendering a template file."""
        path = tmp_path / "traefik.yaml"
        path.write_text("email: ${EMAIL}\n")
        assert renderer.render_file(path, {"EMAIL": "ops@example.com"}) == "email: ops@example.com\n"

    def test_render_missing_file(self, renderer, tmp_path):
        """Test a missing template is a ConfigError."""
        with pytest.raises(ConfigError, match="Cannot read stack template"):
            renderer.render_file(tmp_path / "absent.yaml", {})
