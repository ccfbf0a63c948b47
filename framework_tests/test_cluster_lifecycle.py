import pathlib as pl

import pytest

from gemfire_testcontainers.cluster_management import cluster as ccluster
from gemfire_testcontainers.cluster_management import errors
from gemfire_testcontainers.cluster_management import members as cmembers
from gemfire_testcontainers.utils import docker_runtime


def _operations(fake_runtime, operation: str) -> list[str]:
    return [name for op, name in fake_runtime.calls if op == operation]


class TestConstruction:
    @pytest.mark.parametrize(("locators", "servers"), ((0, 1), (1, 0), (-1, 2)))
    def test_minimum_counts(self, make_cluster, locators: int, servers: int):
        with pytest.raises(ValueError, match="At least one"):
            make_cluster(locator_count=locators, server_count=servers)

    def test_defaults(self, fake_runtime):
        cluster_obj = ccluster.GemFireCluster(runtime=fake_runtime)
        assert cluster_obj.registry.member_names == ["locator-0", "server-0", "server-1"]
        assert cluster_obj.network == f"gemfire-{cluster_obj.suffix}"
        assert len(cluster_obj.suffix) == 6
        assert cluster_obj.state == ccluster.ClusterState.UNSTARTED

    def test_close_unstarted(self, make_cluster, fake_runtime):
        cluster_obj = make_cluster()
        cluster_obj.close()
        assert not fake_runtime.calls
        assert cluster_obj.state == ccluster.ClusterState.UNSTARTED


class TestStart:
    @pytest.mark.parametrize(("locators", "servers"), ((1, 1), (1, 2), (2, 2), (3, 4)))
    def test_members(self, make_cluster, locators: int, servers: int):
        cluster_obj = make_cluster(locator_count=locators, server_count=servers).start()

        assert cluster_obj.state == ccluster.ClusterState.RUNNING
        assert list(cluster_obj.containers) == [
            *[f"locator-{i}" for i in range(locators)],
            *[f"server-{i}" for i in range(servers)],
        ]
        assert len(cluster_obj.server_ports) == servers
        assert len(cluster_obj.locator_ports) == locators
        assert all(p > 0 for p in [*cluster_obj.locator_ports, *cluster_obj.server_ports])

    def test_sequence(self, make_cluster, fake_runtime):
        cluster_obj = make_cluster(locator_count=2, server_count=2)
        cluster_obj.with_pdx("com\\.example\\..*", True)
        cluster_obj.with_gfsh(False, "create region --name=FOO --type=REPLICATE")
        cluster_obj.start()

        relevant = [c for c in fake_runtime.calls if c[0] in ("network_create", "start", "exec")]
        assert relevant == [
            ("network_create", cluster_obj.network),
            ("start", f"gemfire-proxy-{cluster_obj.suffix}"),
            ("start", "locator-0"),
            ("start", "locator-1"),
            ("exec", "locator-0"),
            ("start", "server-0"),
            ("start", "server-1"),
            ("exec", "locator-0"),
        ]
        assert fake_runtime.exec_scripts[0].split("\n")[1] == (
            "configure pdx --disk-store=DEFAULT --read-serialized=true "
            "--auto-serializable-classes=com\\.example\\..*"
        )
        assert fake_runtime.exec_scripts[1].split("\n")[1] == (
            "create region --name=FOO --type=REPLICATE"
        )

    def test_locator_addresses(self, make_cluster, fake_runtime):
        cluster_obj = make_cluster(locator_count=2, server_count=1).start()
        suffix = cluster_obj.suffix
        expected = (
            f"--locators=locator-0-{suffix}[32000],locator-1-{suffix}[32002]"
        )
        for name in ("locator-0", "locator-1", "server-0"):
            assert expected in fake_runtime.by_name(name).spec.command

    def test_ports(self, make_cluster):
        cluster_obj = make_cluster(locator_count=1, server_count=2).start()
        assert cluster_obj.locator_port == 32000
        assert cluster_obj.http_ports == [32001]
        assert cluster_obj.server_ports == [32002, 32004]
        assert cluster_obj.get_http_ports(cmembers.ALL_SERVERS) == [32003, 32005]

    def test_start_twice(self, make_cluster):
        cluster_obj = make_cluster().start()
        with pytest.raises(errors.ClusterStateError):
            cluster_obj.start()

        cluster_obj.close()
        with pytest.raises(errors.ClusterStateError):
            cluster_obj.start()

    def test_timeout_leaves_members_running(self, make_cluster, fake_runtime):
        fake_runtime.silent.add("server-1")
        cluster_obj = make_cluster().with_startup_timeout("server-1", 0.1)

        with pytest.raises(errors.StartupTimeoutError, match="server-1"):
            cluster_obj.start()

        assert cluster_obj.state == ccluster.ClusterState.STARTING
        assert not _operations(fake_runtime, "remove")

        cluster_obj.close()
        assert sorted(_operations(fake_runtime, "remove")) == sorted(
            [f"gemfire-proxy-{cluster_obj.suffix}", "locator-0", "server-0", "server-1"]
        )

    def test_servers_not_started_after_locator_failure(self, make_cluster, fake_runtime):
        fake_runtime.exit_early.add("locator-0")
        cluster_obj = make_cluster()
        with pytest.raises(errors.StartupError):
            cluster_obj.start()
        assert "server-0" not in _operations(fake_runtime, "start")

    def test_missing_license(self, make_cluster, fake_runtime):
        fake_runtime.require_license = True
        with pytest.raises(errors.StartupError, match="locator-0"):
            make_cluster().start()

    def test_failed_pdx(self, make_cluster, fake_runtime):
        fake_runtime.exec_results.append(
            docker_runtime.ExecResult(exit_code=1, stdout="error", stderr="")
        )
        cluster_obj = make_cluster().with_pdx(".*")
        with pytest.raises(errors.AdministrativeCommandError):
            cluster_obj.start()
        assert "server-0" not in _operations(fake_runtime, "start")


class TestClose:
    def test_order(self, make_cluster, fake_runtime):
        cluster_obj = make_cluster(locator_count=2, server_count=2).start()
        fake_runtime.calls.clear()
        cluster_obj.close()

        assert _operations(fake_runtime, "remove") == [
            f"gemfire-proxy-{cluster_obj.suffix}",
            "server-0",
            "server-1",
            "locator-0",
            "locator-1",
        ]
        assert fake_runtime.calls[-1] == ("network_rm", cluster_obj.network)
        assert cluster_obj.state == ccluster.ClusterState.STOPPED

    def test_best_effort(self, make_cluster, fake_runtime, caplog):
        cluster_obj = make_cluster().start()
        fake_runtime.fail_on.add(("remove", "server-0"))
        fake_runtime.fail_on.add(("remove", f"gemfire-proxy-{cluster_obj.suffix}"))
        cluster_obj.close()

        assert _operations(fake_runtime, "remove")[-2:] == ["server-1", "locator-0"]
        assert ("network_rm", cluster_obj.network) in fake_runtime.calls
        assert "Failed to stop member 'server-0'" in caplog.text

    def test_idempotent(self, make_cluster, fake_runtime):
        cluster_obj = make_cluster().start()
        cluster_obj.close()
        calls_num = len(fake_runtime.calls)
        cluster_obj.close()
        cluster_obj.stop()
        assert len(fake_runtime.calls) == calls_num

    def test_stop_bridge(self, make_cluster, fake_runtime):
        cluster_obj = make_cluster().start()
        cluster_obj.stop_bridge()
        assert _operations(fake_runtime, "remove") == [f"gemfire-proxy-{cluster_obj.suffix}"]

    def test_context_manager(self, make_cluster, fake_runtime):
        with make_cluster() as cluster_obj:
            assert cluster_obj.state == ccluster.ClusterState.RUNNING
        assert cluster_obj.state == ccluster.ClusterState.STOPPED
        assert not fake_runtime.networks

    def test_context_manager_failed_start(self, make_cluster, fake_runtime):
        fake_runtime.exit_early.add("locator-0")
        cluster_obj = make_cluster()
        with pytest.raises(errors.StartupError), cluster_obj:
            pass
        assert "locator-0" in _operations(fake_runtime, "remove")
        assert cluster_obj.state == ccluster.ClusterState.STOPPED
        assert not fake_runtime.networks

    def test_failed_start_leaves_members_running(self, make_cluster, fake_runtime):
        fake_runtime.exit_early.add("server-0")
        cluster_obj = make_cluster()
        with pytest.raises(errors.StartupError):
            cluster_obj.start()
        assert not _operations(fake_runtime, "remove")
        assert cluster_obj.state == ccluster.ClusterState.STARTING


class TestConfiguration:
    def test_bad_selector(self, make_cluster):
        with pytest.raises(errors.SelectorNoMatchError, match="No members matching 'foo-\\*'"):
            make_cluster().with_gemfire_property("foo-*", "log-level", "debug")

    def test_ports_mismatch(self, make_cluster, fake_runtime):
        with pytest.raises(errors.PortCountMismatchError) as excinfo:
            make_cluster().with_ports(cmembers.ALL_SERVERS, 40404)
        assert str(excinfo.value) == (
            "Found 2 members matching 'all servers' but supplied 1 ports. They must be the same."
        )
        assert not fake_runtime.calls

    def test_pinned_ports(self, make_cluster, fake_runtime):
        cluster_obj = make_cluster().with_ports(cmembers.ALL_SERVERS, 40404, 40405).start()
        assert cluster_obj.server_ports == [40404, 40405]
        assert "--server-port=40405" in fake_runtime.by_name("server-1").spec.command
        bridge = fake_runtime.by_name(f"gemfire-proxy-{cluster_obj.suffix}")
        assert bridge.spec.port_bindings == ["40404:2002", "40405:2004"]

    def test_gemfire_property(self, make_cluster, fake_runtime):
        make_cluster().with_gemfire_property("server-*", "log-level", "fine").start()
        assert "--J=-Dgemfire.log-level=fine" in fake_runtime.by_name("server-1").spec.command
        assert "--J=-Dgemfire.log-level=fine" not in fake_runtime.by_name("locator-0").spec.command

    def test_debug_port(self, make_cluster, fake_runtime, caplog):
        make_cluster(server_count=2).with_debug_port(cmembers.ALL_SERVERS, 5005).start()
        for name, port in (("server-0", 5005), ("server-1", 5006)):
            spec = fake_runtime.by_name(name).spec
            assert spec.port_bindings == [f"{port}:{port}"]
            assert (
                "--J=-agentlib:jdwp=transport=dt_socket,server=y,suspend=y,"
                f"address=0.0.0.0:{port}"
            ) in spec.command
        assert "waiting for debugger to connect on port 5006" in caplog.text

    def test_accept_license(self, make_cluster, fake_runtime):
        make_cluster().accept_license().start()
        for name in ("locator-0", "server-0", "server-1"):
            assert fake_runtime.by_name(name).spec.env["ACCEPT_TERMS"] == "y"

    def test_classpath(self, make_cluster, fake_runtime, tmp_path: pl.Path):
        jar = tmp_path / "app.jar"
        jar.write_bytes(b"PK")
        classes = tmp_path / "classes"
        classes.mkdir()

        make_cluster().with_classpath(cmembers.ALL_SERVERS, jar, classes).start()
        spec = fake_runtime.by_name("server-0").spec
        assert [b.as_arg() for b in spec.binds] == [
            f"{jar}:/classpath/0:ro",
            f"{classes}:/classpath/1:ro",
        ]
        assert spec.command[-1] == "--classpath=/classpath/0:/classpath/1"
        assert not fake_runtime.by_name("locator-0").spec.binds

    def test_classpath_missing(self, make_cluster, tmp_path: pl.Path):
        with pytest.raises(errors.ResourceReadError, match="Unable to locate resource"):
            make_cluster().with_classpath(cmembers.ALL, tmp_path / "missing.jar")

    def test_cache_xml(self, make_cluster, fake_runtime, tmp_path: pl.Path):
        cache_xml = tmp_path / "cache.xml"
        cache_xml.write_text("<cache/>")

        make_cluster().with_cache_xml("server-0", cache_xml).start()
        server = fake_runtime.by_name("server-0")
        assert server.files["/cache.xml"] == (b"<cache/>", 0o666)
        assert "--J=-Dgemfire.cache-xml-file=/cache.xml" in server.spec.command
        assert "/cache.xml" not in fake_runtime.by_name("server-1").files

    def test_cache_xml_missing(self, make_cluster, tmp_path: pl.Path):
        with pytest.raises(errors.ResourceReadError):
            make_cluster().with_cache_xml(cmembers.ALL, tmp_path / "missing.xml")

    def test_pre_start_only_copy(self, make_cluster):
        with pytest.raises(TypeError):
            make_cluster().with_pre_start(
                cmembers.ALL,
                cmembers.AppendArg("--foo"),  # type: ignore[arg-type]
            )

    def test_log_consumer(self, make_cluster):
        lines = []
        make_cluster().with_log_consumer(
            "locator-0", lambda name, line: lines.append((name, line))
        ).start()
        assert ("locator-0", "Locator started on 0.0.0.0[10334]") in lines
        assert {name for name, __ in lines} == {"locator-0"}

    def test_hostname_for_clients(self, make_cluster, fake_runtime):
        make_cluster().with_hostname_for_clients("server-1", "gemfire.test").start()
        server_args = fake_runtime.by_name("server-1").spec.command
        assert "--hostname-for-clients=gemfire.test" in server_args
        assert "--hostname-for-clients=localhost" in fake_runtime.by_name("server-0").spec.command

    def test_invalid_startup_timeout(self, make_cluster):
        with pytest.raises(ValueError, match="must be > 0"):
            make_cluster().with_startup_timeout(cmembers.ALL, 0)

    def test_ignored_after_start(self, make_cluster, fake_runtime):
        cluster_obj = make_cluster().start()
        cluster_obj.with_gemfire_property(cmembers.ALL, "log-level", "fine")
        cluster_obj.with_ports(cmembers.ALL_SERVERS, 1, 2)
        cluster_obj.with_gfsh(True, "list members")

        assert all(
            not any(isinstance(m, cmembers.AppendArg) for m in r.config_hooks)
            for r in cluster_obj.registry.members
        )
        assert cluster_obj.server_ports == [32002, 32004]

    def test_customize(self, make_cluster, fake_runtime):
        make_cluster().with_configuration(
            "server-0", cmembers.Customize(lambda spec: spec.env.update({"JAVA_OPTS": "-Xmx1g"}))
        ).start()
        assert fake_runtime.by_name("server-0").spec.env == {"JAVA_OPTS": "-Xmx1g"}
