from __future__ import annotations

import json

from kubernetes.client.rest import ApiException

from k8s_fakes import FakeClusterClient, component_pods, dns_pods, make_node, make_pod
from kdebug_cluster_check import (
    Deadline,
    Status,
    check_connectivity,
    check_control_plane,
    check_dns,
    check_node_health,
    node_issues,
)


def _forbidden(resource: str) -> ApiException:
    exc = ApiException(status=403, reason="Forbidden")
    exc.body = json.dumps({"message": f"{resource} is forbidden: User \"dev\" cannot list resource"})
    return exc


# Connectivity


def test_connectivity_passed_reports_duration_and_server() -> None:
    result = check_connectivity(FakeClusterClient(), Deadline())

    assert result.status is Status.PASSED
    assert result.message.startswith("Successfully connected to API server")
    assert result.details["server"] == FakeClusterClient.host
    assert "response_time" in result.details


def test_connectivity_slow_response_is_warning() -> None:
    result = check_connectivity(FakeClusterClient(), Deadline(), slow_threshold=-1.0)

    assert result.status is Status.WARNING
    assert result.message.endswith("- slow response")
    assert "response_time" in result.details


def test_connectivity_connection_refused_suggests_network_checks() -> None:
    client = FakeClusterClient(errors={
        "server_version": OSError("Failed to establish a new connection: [Errno 111] Connection refused"),
    })

    result = check_connectivity(client, Deadline())

    assert result.status is Status.FAILED
    assert "Connection refused" in result.error
    assert "network" in result.suggestion
    assert "credentials" not in result.suggestion


def test_connectivity_unauthorized_suggests_credential_checks() -> None:
    client = FakeClusterClient(errors={"server_version": ApiException(status=401, reason="Unauthorized")})

    result = check_connectivity(client, Deadline())

    assert result.status is Status.FAILED
    assert result.error == "(401) Unauthorized"
    assert "credentials" in result.suggestion


# Node health


def test_node_issues_tags_in_priority_order() -> None:
    node = make_node("n", ready="False", NetworkUnavailable="True", MemoryPressure="True")

    assert node_issues(node) == (False, ["NotReady", "MemoryPressure", "NetworkUnavailable"])


def test_node_without_ready_condition_is_not_ready() -> None:
    assert node_issues(make_node("n", ready=None)) == (False, ["NotReady"])
    assert node_issues(make_node("n", ready="Unknown")) == (False, ["NotReady"])


def test_all_nodes_healthy() -> None:
    client = FakeClusterClient(nodes=[make_node("a"), make_node("b"), make_node("c")])

    results = check_node_health(client, Deadline())

    assert len(results) == 1
    assert results[0].status is Status.PASSED
    assert results[0].message == "All 3 nodes are healthy and ready"


def test_one_node_not_ready_is_warning() -> None:
    client = FakeClusterClient(nodes=[make_node("a"), make_node("b"), make_node("c", ready="False")])

    overview, *nodes = check_node_health(client, Deadline())

    assert overview.status is Status.WARNING
    assert overview.message == "2/3 nodes ready, 1 nodes with issues"
    assert overview.details["problematic_nodes"] == "c"
    assert [n.name for n in nodes] == ["Node: c"]
    assert nodes[0].status is Status.FAILED
    assert nodes[0].details == {"node_name": "c", "issues": "NotReady", "ready": "false"}


def test_no_nodes_found() -> None:
    results = check_node_health(FakeClusterClient(nodes=[]), Deadline())

    assert len(results) == 1
    assert results[0].status is Status.FAILED
    assert results[0].message == "No nodes found in cluster"


def test_no_ready_nodes_is_failed() -> None:
    client = FakeClusterClient(nodes=[make_node("a", ready="False"), make_node("b", ready="False")])

    overview, *nodes = check_node_health(client, Deadline())

    assert overview.status is Status.FAILED
    assert overview.message == "0/2 nodes ready, 2 nodes with issues"
    assert len(nodes) == 2


def test_ready_node_with_pressure_is_warning_with_one_suggestion() -> None:
    client = FakeClusterClient(nodes=[make_node("a", DiskPressure="True", PIDPressure="True")])

    overview, node = check_node_health(client, Deadline())

    assert overview.status is Status.WARNING
    assert overview.message == "1/1 nodes ready, 1 nodes with issues"
    assert node.status is Status.WARNING
    assert node.details["issues"] == "DiskPressure, PIDPressure"
    assert node.suggestion == "Clean up disk space or add storage"


def test_node_records_are_sorted_by_name() -> None:
    client = FakeClusterClient(nodes=[
        make_node("zeta", ready="False"), make_node("alpha", ready="False"), make_node("mid"),
    ])

    _, *nodes = check_node_health(client, Deadline())

    assert [n.name for n in nodes] == ["Node: alpha", "Node: zeta"]


def test_node_listing_denied_is_failed() -> None:
    client = FakeClusterClient(errors={"list_nodes": _forbidden("nodes")})

    results = check_node_health(client, Deadline())

    assert len(results) == 1
    assert results[0].status is Status.FAILED
    assert results[0].error.startswith("(403) Forbidden: nodes is forbidden")
    assert "RBAC" in results[0].suggestion


# Control plane


def test_control_plane_component_statuses() -> None:
    client = FakeClusterClient(
        control_plane=component_pods("kube-scheduler", 0, 1) + component_pods("etcd", 3, 3),
    )

    overview, etcd, scheduler = check_control_plane(client, Deadline())

    assert overview.status is Status.WARNING
    assert overview.details == {"components_found": "2"}
    assert etcd.name == "Control Plane: etcd"
    assert etcd.status is Status.PASSED
    assert etcd.message == "etcd: 3/3 pods running"
    assert etcd.suggestion is None
    assert scheduler.name == "Control Plane: kube-scheduler"
    assert scheduler.status is Status.FAILED
    assert scheduler.message == "kube-scheduler: no pods running"


def test_control_plane_partial_component_is_warning() -> None:
    client = FakeClusterClient(control_plane=component_pods("kube-apiserver", 1, 2))

    overview, apiserver = check_control_plane(client, Deadline())

    assert apiserver.status is Status.WARNING
    assert apiserver.details == {"component": "kube-apiserver", "running_pods": "1", "total_pods": "2"}
    assert overview.status is Status.WARNING


def test_control_plane_healthy() -> None:
    client = FakeClusterClient(
        control_plane=component_pods("etcd", 1, 1) + component_pods("kube-scheduler", 2, 2),
    )

    overview, *components = check_control_plane(client, Deadline())

    assert overview.status is Status.PASSED
    assert overview.message == "Control plane components are healthy"
    assert all(c.status is Status.PASSED for c in components)


def test_control_plane_overview_never_failed() -> None:
    client = FakeClusterClient(control_plane=component_pods("etcd", 0, 3))

    overview, etcd = check_control_plane(client, Deadline())

    assert etcd.status is Status.FAILED
    assert overview.status is Status.WARNING


def test_control_plane_listing_denied_is_warning() -> None:
    client = FakeClusterClient(errors={"list_pods:control-plane": _forbidden("pods")})

    results = check_control_plane(client, Deadline())

    assert len(results) == 1
    assert results[0].status is Status.WARNING
    assert results[0].error is not None


def test_control_plane_not_visible_suggests_managed_cluster() -> None:
    results = check_control_plane(FakeClusterClient(), Deadline())

    assert len(results) == 1
    assert results[0].status is Status.WARNING
    assert "managed" in results[0].suggestion


# DNS


def test_dns_partially_functional() -> None:
    result = check_dns(FakeClusterClient(dns=dns_pods(1, 2)), Deadline())

    assert result.status is Status.WARNING
    assert result.message == "DNS partially functional: 1/2 pods running"
    assert result.details == {"dns_pods_running": "1", "dns_pods_total": "2"}


def test_dns_healthy() -> None:
    result = check_dns(FakeClusterClient(dns=dns_pods(2, 2)), Deadline())

    assert result.status is Status.PASSED
    assert result.message == "DNS is healthy: 2/2 pods running"


def test_dns_no_pods_running() -> None:
    result = check_dns(FakeClusterClient(dns=dns_pods(0, 2)), Deadline())

    assert result.status is Status.FAILED
    assert result.message == "No DNS pods are running"


def test_dns_no_pods_found_suggests_install() -> None:
    result = check_dns(FakeClusterClient(), Deadline())

    assert result.status is Status.FAILED
    assert "Install CoreDNS" in result.suggestion


def test_dns_listing_error_is_failed() -> None:
    client = FakeClusterClient(errors={"list_pods:dns": _forbidden("pods")})

    result = check_dns(client, Deadline())

    assert result.status is Status.FAILED
    assert result.message == "Failed to check DNS pods"


# Cancellation


def test_cancelled_deadline_degrades_every_probe_to_failed() -> None:
    deadline = Deadline()
    deadline.cancel("user interrupt")
    client = FakeClusterClient(control_plane=component_pods("etcd", 1, 1), dns=dns_pods(1, 1))

    results = [
        check_connectivity(client, deadline),
        *check_node_health(client, deadline),
        *check_control_plane(client, deadline),
        check_dns(client, deadline),
    ]

    assert [r.status for r in results] == [Status.FAILED] * 4
    assert all(r.error == "user interrupt" for r in results)
    assert client.calls == []


def test_call_failing_after_deadline_is_reported_as_cancelled() -> None:
    class _ExpiringClient(FakeClusterClient):
        def list_pods(self, namespace, label_selector, deadline):
            deadline.cancel("deadline exceeded after 1s")
            raise TimeoutError("Read timed out")

    results = check_control_plane(_ExpiringClient(), Deadline())

    assert results[0].status is Status.FAILED
    assert results[0].error == "deadline exceeded after 1s: Read timed out"


def test_control_plane_pods_without_component_label_suggest_managed_cluster() -> None:
    client = FakeClusterClient(control_plane=[make_pod("static-0", tier="control-plane")])

    results = check_control_plane(client, Deadline())

    assert len(results) == 1
    assert results[0].status is Status.WARNING
    assert "managed" in results[0].suggestion
