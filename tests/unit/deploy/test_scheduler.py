"""Unit tests for DependencyScheduler."""

import threading

import pytest

from swarm_handoff.deploy import (
    ClusterResource,
    DependencyGraph,
    DependencyScheduler,
    ReadinessGate,
    ReadinessProbe,
    RunReport,
    SecretRef,
    StackDeployer,
    UnitHook,
    UnitState,
)
from swarm_handoff.errors import (
    ClusterUnreachable,
    ConfigError,
    ReadinessTimeoutError,
    RunCancelled,
    StageFailed,
)


class StaticProbe:
    """HTTP probe stub: hosts listed in ``down`` never become healthy."""

    def __init__(self, down=()):
        self.down = set(down)
        self.urls = []

    def check(self, url, expected=None):
        self.urls.append(url)
        if any(host in url for host in self.down):
            return False, "Connection refused"
        return True, None


def https_probe(host):
    return ReadinessProbe(protocol="https", endpoint=f"{host}.${{DOMAIN}}")


@pytest.fixture
def build(fake_cluster, fake_clock, params):
    """Build a scheduler around the fake cluster."""

    def make(probe=None, strict=False, **kwargs):
        gate = ReadinessGate(
            params, http_probe=probe or StaticProbe(), clock=fake_clock, strict=strict
        )
        kwargs.setdefault("readiness_timeout", 10)
        kwargs.setdefault("readiness_interval", 2)
        return DependencyScheduler(fake_cluster, StackDeployer(fake_cluster), gate, **kwargs)

    return make


class TestOrdering:
    """Tests for stage ordering."""

    def test_dependents_start_after_dependencies_ready(self, build, make_unit, fake_cluster, params):
        """Test three chained units deploy in order, each after the previous is ready."""
        graph = DependencyGraph(
            [
                make_unit("edge_router", networks=("traefik_public",)),
                make_unit(
                    "admin_console",
                    depends_on=("edge_router",),
                    probe=https_probe("admin"),
                    volumes=("admin_data",),
                ),
                make_unit("data_store", depends_on=("admin_console",)),
            ]
        )

        report = build().run(graph, params)

        assert fake_cluster.calls_to("deploy_unit") == ["edge_router", "admin_console", "data_store"]
        records = report.records
        assert records["admin_console"].sequence_of(UnitState.DEPLOYED_DIRECT) > records[
            "edge_router"
        ].sequence_of(UnitState.READY)
        assert records["data_store"].sequence_of(UnitState.DEPLOYED_DIRECT) > records[
            "admin_console"
        ].sequence_of(UnitState.READY)
        assert all(r.state == UnitState.READY for r in records.values())
        assert report.ok

    def test_resources_provisioned_once_before_any_deploy(self, build, make_unit, fake_cluster, params):
        """Test cluster resources exist before the first stack is submitted."""
        graph = DependencyGraph(
            [
                make_unit("a", networks=("general_network",), volumes=("a_data",)),
                make_unit("b", networks=("general_network",), depends_on=("a",)),
            ]
        )
        build(resources=[ClusterResource.network("traefik_public")]).run(graph, params)

        methods = [m for m, _ in fake_cluster.calls]
        first_deploy = methods.index("deploy_unit")
        assert set(methods[:first_deploy]) == {"create_network", "create_volume"}
        assert fake_cluster.calls_to("create_network") == ["general_network", "traefik_public"]
        assert fake_cluster.calls_to("create_volume") == ["a_data"]

    def test_rerun_succeeds(self, build, make_unit, fake_cluster, params):
        """Test a second run over the same cluster succeeds and reports ready."""
        units = [make_unit("a", volumes=("a_data",)), make_unit("b", depends_on=("a",))]
        build().run(DependencyGraph(units), params)
        report = build().run(DependencyGraph(units), params)
        assert report.ok
        assert fake_cluster.volumes == {"a_data"}


class TestPreflight:
    """Tests for validation before side effects."""

    def test_cycle_makes_no_calls(self, build, make_unit, fake_cluster, params):
        """Test a dependency cycle is rejected before any cluster call."""
        graph = DependencyGraph(
            [
                make_unit("a", depends_on=("b",), volumes=("x",)),
                make_unit("b", depends_on=("a",)),
            ]
        )
        with pytest.raises(ConfigError, match="cycle"):
            build().run(graph, params)
        assert fake_cluster.calls == []

    def test_missing_parameters_listed_together(self, build, make_unit, fake_cluster):
        """Test every missing template value and secret is reported at once."""
        graph = DependencyGraph(
            [
                make_unit("a"),
                make_unit("b", secrets=(SecretRef("b_pw", "B_PASSWORD"),), body="x: ${EMAIL}\n"),
            ]
        )
        with pytest.raises(ConfigError) as exc_info:
            build().run(graph, {})

        problems = exc_info.value.details["problems"]
        assert len(problems) == 3
        assert any("DOMAIN" in p for p in problems)
        assert any("EMAIL" in p for p in problems)
        assert any("B_PASSWORD" in p for p in problems)
        assert fake_cluster.calls == []

    def test_hook_parameters_checked(self, build, make_unit, fake_cluster, params):
        """Test probe and hook placeholders are validated up front."""
        hook = UnitHook(service="db", command=("psql", "-c", "${UNDEFINED}"))
        graph = DependencyGraph([make_unit("db", hooks=(hook,))])
        with pytest.raises(ConfigError, match="UNDEFINED"):
            build().run(graph, params)
        assert fake_cluster.calls == []


class TestReadinessFailures:
    """Tests for readiness soft failure."""

    def test_timeout_is_soft(self, build, make_unit, fake_cluster, fake_clock, params):
        """Test a unit that never becomes ready does not block its dependents."""
        graph = DependencyGraph(
            [
                make_unit("admin_console", probe=https_probe("admin")),
                make_unit("data_store", depends_on=("admin_console",)),
            ]
        )
        start = fake_clock.now()

        report = build(probe=StaticProbe(down=["admin"])).run(graph, params)

        record = report.record("admin_console")
        assert record.state == UnitState.TIMED_OUT
        assert len(record.warnings) == 1
        assert fake_clock.now() - start <= 10 + 2
        assert fake_cluster.calls_to("deploy_unit") == ["admin_console", "data_store"]
        assert report.state_of("data_store") == UnitState.READY
        assert report.ok

    def test_strict_timeout_is_recorded(self, build, make_unit, fake_cluster, params):
        """Test strict mode stops the run after recording which unit timed out."""
        graph = DependencyGraph(
            [
                make_unit("admin_console", probe=https_probe("admin")),
                make_unit("data_store", depends_on=("admin_console",)),
            ]
        )
        report = RunReport()

        with pytest.raises(ReadinessTimeoutError):
            build(probe=StaticProbe(down=["admin"]), strict=True).run(graph, params, report=report)

        record = report.record("admin_console")
        assert record.state == UnitState.TIMED_OUT
        assert "not ready" in record.error
        assert fake_cluster.calls_to("deploy_unit") == ["admin_console"]
        assert report.state_of("data_store") == UnitState.PENDING


class TestStageFailures:
    """Tests for deployment failures."""

    def test_rejected_unit_fails_stage(self, build, make_unit, fake_cluster, params):
        """Test siblings finish but dependents never start."""
        fake_cluster.reject_deploy.add("redis")
        graph = DependencyGraph(
            [
                make_unit("postgres"),
                make_unit("redis"),
                make_unit("chatwoot", depends_on=("postgres", "redis")),
            ]
        )

        report = RunReport()
        with pytest.raises(StageFailed) as exc_info:
            build().run(graph, params, report=report)

        assert exc_info.value.stage == 0
        assert list(exc_info.value.failures) == ["redis"]
        assert "chatwoot" not in fake_cluster.calls_to("deploy_unit")
        assert report.state_of("redis") == UnitState.FAILED
        assert report.state_of("postgres") == UnitState.DEPLOYED_DIRECT
        assert report.state_of("chatwoot") == UnitState.PENDING

    def test_unreachable_is_fatal(self, build, make_unit, fake_cluster, params):
        """Test transport failures abort the run with ClusterUnreachable."""
        graph = DependencyGraph([make_unit("a")])
        fake_cluster.unreachable = True
        with pytest.raises(ClusterUnreachable):
            build().run(graph, params)


class TestSecretsAndHooks:
    """Tests for unit secrets and post-ready hooks."""

    def test_secret_created_before_unit_deploy(self, build, make_unit, fake_cluster, params):
        """Test unit secrets are created after earlier stages, right before the unit."""
        graph = DependencyGraph(
            [
                make_unit("traefik"),
                make_unit(
                    "portainer",
                    depends_on=("traefik",),
                    secrets=(SecretRef("portainer_admin_password", "PASSWORD_32"),),
                ),
            ]
        )
        build().run(graph, params)

        assert fake_cluster.secrets["portainer_admin_password"] == b"secret-password"
        calls = fake_cluster.calls
        secret_at = calls.index(("create_secret", "portainer_admin_password"))
        assert calls.index(("deploy_unit", "traefik")) < secret_at
        assert secret_at < calls.index(("deploy_unit", "portainer"))

    def test_hooks_run_after_ready(self, build, make_unit, fake_cluster, params):
        """Test hook commands and env are rendered and executed."""
        hook = UnitHook(
            service="postgres_postgres",
            command=("psql", "-c", "CREATE DATABASE chatwoot"),
            env=(("PGPASSWORD", "${PASSWORD_32}"),),
            description="create database chatwoot",
        )
        graph = DependencyGraph([make_unit("postgres", hooks=(hook,))])
        build().run(graph, params)

        assert fake_cluster.execs == [
            (
                "postgres_postgres",
                ("psql", "-c", "CREATE DATABASE chatwoot"),
                {"PGPASSWORD": "secret-password"},
            )
        ]

    def test_failed_hook_is_a_warning(self, build, make_unit, fake_cluster, params):
        """Test a failing hook does not fail the unit."""
        fake_cluster.exec_exit_codes["chatwoot_app"] = [1]
        hook = UnitHook(service="chatwoot_app", command=("rails", "db:prepare"))
        graph = DependencyGraph([make_unit("chatwoot", hooks=(hook,))])

        report = build().run(graph, params)

        assert report.state_of("chatwoot") == UnitState.READY
        assert "hook failed" in report.record("chatwoot").warnings[0]

    def test_hooks_skipped_on_timeout(self, build, make_unit, fake_cluster, params):
        """Test hooks only run for ready units."""
        hook = UnitHook(service="db", command=("true",))
        graph = DependencyGraph([make_unit("db", probe=https_probe("db"), hooks=(hook,))])
        build(probe=StaticProbe(down=["db"])).run(graph, params)
        assert fake_cluster.execs == []


class TestRunControl:
    """Tests for cancellation and already-managed units."""

    def test_cancel_at_stage_boundary(self, build, make_unit, fake_cluster, params):
        """Test cancellation stops before the next stage starts."""
        cancel = threading.Event()

        def progress(unit, message):
            if unit == "a" and message == "deployed":
                cancel.set()

        graph = DependencyGraph([make_unit("a"), make_unit("b", depends_on=("a",))])
        with pytest.raises(RunCancelled):
            build(cancel_event=cancel, on_progress=progress).run(graph, params)
        assert fake_cluster.calls_to("deploy_unit") == ["a"]

    def test_managed_units_not_redeployed(self, build, make_unit, fake_cluster, params):
        """Test units the control plane owns are skipped on rerun."""
        graph = DependencyGraph([make_unit("a"), make_unit("b", depends_on=("a",))])
        report = build().run(graph, params, managed={"a"})

        assert fake_cluster.calls_to("deploy_unit") == ["b"]
        assert report.state_of("a") == UnitState.DEPLOYED_MANAGED
        assert report.state_of("b") == UnitState.READY

    def test_max_parallel_bounds_workers(self, build):
        """Test max_parallel is at least one."""
        assert build(max_parallel=0).max_parallel == 1
