#!/usr/bin/python
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT

"""Self-contained Kubernetes cluster diagnostics module for Ansible.

Inspects the health of a running cluster (API server connectivity, nodes,
control plane components, cluster DNS) and returns a single snapshot report
with a PASSED / WARNING / FAILED verdict and one remediation hint per check.

All API calls are read-only (get/list). A broken subsystem never stops the
run: probe failures are reported as check results, and only a failure to
fetch the cluster identity aborts the module.
"""

from __future__ import annotations

DOCUMENTATION = r"""
---
module: kdebug_cluster_check
short_description: Diagnose common Kubernetes cluster-level issues
version_added: "0.1.0"
description:
  - Connects to a Kubernetes cluster and checks API server connectivity,
    node conditions, control plane components and cluster DNS.
  - Each problem found is classified as PASSED, WARNING or FAILED and
    carries a suggested remediation.
  - Completely read-only. Checks run once and return a single snapshot.
options:
  kubeconfig:
    description: Path to the kubeconfig file. Falls back to in-cluster config.
    type: path
    default: ~/.kube/config
  context:
    description: Kubeconfig context to use. Defaults to current context.
    type: str
  timeout:
    description: Deadline in seconds shared by every check. C(0) disables it.
    type: float
    default: 30
  nodes_only:
    description: Only run the connectivity and node checks.
    type: bool
    default: false
  parallel:
    description: Run the checks concurrently. Report order is unchanged.
    type: bool
    default: false
  system_namespace:
    description: Namespace hosting control plane and DNS pods.
    type: str
    default: kube-system
  slow_response_threshold:
    description: API response time in seconds above which connectivity is a warning.
    type: float
    default: 5
  output_format:
    description: Format of the rendered C(report_output) string.
    type: str
    default: text
    choices: [text, json, yaml]
  fail_on_failed:
    description: Fail the task when any check has FAILED status.
    type: bool
    default: false
  verbose:
    description: Include cluster information, errors, suggestions and details in the text report.
    type: bool
    default: false
requirements:
  - kubernetes (Python package)
  - PyYAML
author:
  - kdebug contributors
"""

EXAMPLES = r"""
- name: Run all cluster checks against current context
  kdebug_cluster_check:
  register: cluster

- name: Check only nodes of a specific context
  kdebug_cluster_check:
    kubeconfig: /etc/kubernetes/admin.conf
    context: prod-cluster
    nodes_only: true
  register: cluster

- name: Render the report as YAML
  kdebug_cluster_check:
    output_format: yaml
  register: cluster

- name: Fail playbook if critical issues found
  kdebug_cluster_check:
    fail_on_failed: true
"""

RETURN = r"""
report:
  description: Full diagnostic report.
  type: dict
  returned: always
  sample:
    target: cluster
    timestamp: "2025-01-01T12:00:00+00:00"
    cluster_info:
      context: prod
      server: https://10.0.0.1:6443
      version: v1.29.2
    checks:
      - name: API Server Connectivity
        status: PASSED
        message: "Successfully connected to API server (response time: 42ms)"
    summary:
      total: 6
      passed: 5
      failed: 0
      warnings: 1
      skipped: 0
summary:
  description: Check counts per status.
  type: dict
  returned: always
cluster_info:
  description: Identity and version of the target cluster.
  type: dict
  returned: always
overall_status:
  description: Most severe status across all checks.
  type: str
  returned: always
report_output:
  description: Report rendered in the requested output_format.
  type: str
  returned: always
"""

import json
import logging
import threading
import time
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from functools import partial
from types import MappingProxyType
from typing import Any, Callable, Mapping

import yaml

logger = logging.getLogger("kdebug_cluster_check")


# =====================================================================
# Errors
# =====================================================================

class KdebugError(Exception):
    """Base class for diagnostic engine errors."""


class ClusterInfoError(KdebugError):
    """The cluster identity could not be fetched; no report can be built."""


class ProbeCancelled(KdebugError):
    """The shared deadline expired or was cancelled before an API call."""


# =====================================================================
# Models
# =====================================================================

class Status(str, Enum):
    PASSED = "PASSED"
    WARNING = "WARNING"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"

    @property
    def sort_order(self) -> int:
        return {Status.FAILED: 0, Status.WARNING: 1, Status.PASSED: 2, Status.SKIPPED: 3}[self]


@dataclass(frozen=True)
class CheckResult:
    name: str
    status: Status
    message: str
    error: str | None = None
    details: Mapping[str, str] = field(default_factory=dict)
    suggestion: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "details", MappingProxyType(dict(self.details)))

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
            "message": self.message,
        }
        if self.suggestion:
            data["suggestion"] = self.suggestion
        if self.details:
            data["details"] = dict(self.details)
        if self.error:
            data["error"] = self.error
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CheckResult:
        return cls(
            name=data["name"],
            status=Status(data["status"]),
            message=data.get("message", ""),
            error=data.get("error"),
            details=dict(data.get("details") or {}),
            suggestion=data.get("suggestion"),
        )


@dataclass(frozen=True)
class Summary:
    total: int = 0
    passed: int = 0
    failed: int = 0
    warnings: int = 0
    skipped: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "passed": self.passed,
            "failed": self.failed,
            "warnings": self.warnings,
            "skipped": self.skipped,
        }


@dataclass
class DiagnosticReport:
    target: str
    timestamp: str
    cluster_info: dict[str, str]
    checks: list[CheckResult]
    summary: Summary
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"cluster_info": dict(self.cluster_info)}
        if self.metadata:
            data["metadata"] = self.metadata
        data.update({
            "checks": [c.to_dict() for c in self.checks],
            "target": self.target,
            "timestamp": self.timestamp,
            "summary": self.summary.to_dict(),
        })
        return data

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_dict(), sort_keys=False, default_flow_style=False)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> DiagnosticReport:
        return cls(
            target=data["target"],
            timestamp=data["timestamp"],
            cluster_info=dict(data.get("cluster_info") or {}),
            checks=[CheckResult.from_dict(c) for c in data.get("checks") or []],
            summary=Summary(**data["summary"]),
            metadata=dict(data.get("metadata") or {}),
        )


# =====================================================================
# Deadline
# =====================================================================

class Deadline:
    """Deadline and cancellation token shared by every probe of one run.

    Probes call ``request_timeout()`` right before each API call: it raises
    ProbeCancelled once the deadline has passed or ``cancel()`` was called,
    and otherwise returns the seconds left, used as the client request
    timeout so an in-flight call cannot outlive the deadline.
    """

    def __init__(self, timeout: float | None = None) -> None:
        self.timeout = timeout
        self._expires_at = time.monotonic() + timeout if timeout else None
        self._cancel_reason: str | None = None
        self._lock = threading.Lock()

    def cancel(self, reason: str = "cancelled") -> None:
        with self._lock:
            if self._cancel_reason is None:
                self._cancel_reason = reason

    @property
    def reason(self) -> str | None:
        if self._cancel_reason is not None:
            return self._cancel_reason
        if self._expires_at is not None and time.monotonic() >= self._expires_at:
            return f"deadline exceeded after {self.timeout:g}s"
        return None

    @property
    def done(self) -> bool:
        return self.reason is not None

    def remaining(self) -> float | None:
        if self._expires_at is None:
            return None
        return max(self._expires_at - time.monotonic(), 0.0)

    def request_timeout(self) -> float | None:
        reason = self.reason
        if reason is not None:
            raise ProbeCancelled(reason)
        return self.remaining()


# =====================================================================
# Kubernetes Client Adapter
# =====================================================================

def build_api_client(kubeconfig: str | None, context: str | None = None):
    """Build a kubernetes ApiClient, falling back to in-cluster config.

    Returns ``(api_client, context_name)``. Retries are disabled: every
    call is single-shot and transient errors are reported as-is.
    """
    from kubernetes import client, config
    from kubernetes.config.config_exception import ConfigException

    configuration = client.Configuration()
    try:
        config.load_kube_config(config_file=kubeconfig, context=context,
                                client_configuration=configuration)
        try:
            _, active_ctx = config.list_kube_config_contexts(config_file=kubeconfig)
            context_name = context or active_ctx.get("name", "unknown")
        except ConfigException:
            context_name = context or "unknown"
    except ConfigException:
        config.load_incluster_config(client_configuration=configuration)
        context_name = "in-cluster"
    configuration.retries = 0
    return client.ApiClient(configuration), context_name


class KubernetesClusterClient:
    """Read-only cluster handle used by the probes.

    Any object exposing ``host``, ``context``, ``server_version``,
    ``cluster_info``, ``list_nodes`` and ``list_pods`` with the same
    signatures can stand in for it.
    """

    def __init__(self, api_client, context: str = "unknown", core_api=None, version_api=None) -> None:
        from kubernetes.client import CoreV1Api, VersionApi

        self.api_client = api_client
        self.context = context
        self.core = core_api or CoreV1Api(api_client)
        self.version = version_api or VersionApi(api_client)

    @property
    def host(self) -> str:
        configuration = getattr(self.api_client, "configuration", None)
        return getattr(configuration, "host", "") or ""

    def server_version(self, deadline: Deadline):
        return self.version.get_code(_request_timeout=deadline.request_timeout())

    def cluster_info(self, deadline: Deadline) -> dict[str, str]:
        version = self.server_version(deadline)
        return {
            "context": self.context,
            "server": self.host,
            "version": version.git_version or f"v{version.major}.{version.minor}",
            "gitVersion": version.git_version or "",
            "platform": version.platform or "",
        }

    def list_nodes(self, deadline: Deadline) -> list[Any]:
        return self.core.list_node(_request_timeout=deadline.request_timeout()).items or []

    def list_pods(self, namespace: str, label_selector: str, deadline: Deadline) -> list[Any]:
        result = self.core.list_namespaced_pod(
            namespace, label_selector=label_selector,
            _request_timeout=deadline.request_timeout(),
        )
        return result.items or []


def _error_text(exc: BaseException) -> str:
    status = getattr(exc, "status", None)
    reason = getattr(exc, "reason", None)
    if status and isinstance(reason, str):
        # kubernetes ApiException: the server's message lives in the JSON body
        message = ""
        try:
            body = json.loads(exc.body)
            if isinstance(body, dict):
                message = body.get("message", "")
        except (AttributeError, TypeError, ValueError):
            pass
        return f"({status}) {reason}: {message}" if message else f"({status}) {reason}"
    return str(exc) or exc.__class__.__name__


# =====================================================================
# Error Classification
# =====================================================================

CREDENTIAL_ERROR_MARKERS = ("credentials", "unauthorized", "forbidden")
NETWORK_ERROR_MARKERS = (
    "no such host",
    "connection refused",
    "name or service not known",
    "failed to resolve",
    "timed out",
)


class ConnectionErrorKind(str, Enum):
    CREDENTIALS = "credentials"
    NETWORK = "network"
    UNKNOWN = "unknown"


def classify_connection_error(message: str) -> ConnectionErrorKind:
    lowered = message.lower()
    if any(marker in lowered for marker in CREDENTIAL_ERROR_MARKERS):
        return ConnectionErrorKind.CREDENTIALS
    if any(marker in lowered for marker in NETWORK_ERROR_MARKERS):
        return ConnectionErrorKind.NETWORK
    return ConnectionErrorKind.UNKNOWN


def describe_connection_error(exc: BaseException) -> str:
    text = _error_text(exc)
    kind = classify_connection_error(text)
    if kind is ConnectionErrorKind.CREDENTIALS:
        return f"authentication failed - please check your credentials: {text}"
    if kind is ConnectionErrorKind.NETWORK:
        return f"cluster unreachable - please check network connectivity: {text}"
    return f"failed to connect to Kubernetes cluster: {text}"


# =====================================================================
# Suggestion Resolver
# =====================================================================

NODE_ISSUE_PRIORITY = ("NotReady", "MemoryPressure", "DiskPressure", "PIDPressure", "NetworkUnavailable")

NODE_SUGGESTIONS = {
    "NotReady": "Check node status with 'kubectl describe node'",
    "MemoryPressure": "Free up memory or add more nodes",
    "DiskPressure": "Clean up disk space or add storage",
    "PIDPressure": "Reduce running processes or increase PID limits",
    "NetworkUnavailable": "Check network configuration and CNI",
}

CONNECTIVITY_SUGGESTIONS = {
    ConnectionErrorKind.CREDENTIALS: (
        "Refresh your cluster credentials (for EKS: 'aws eks update-kubeconfig "
        "--region <region> --name <cluster-name>') and verify with 'kubectl cluster-info'"
    ),
    ConnectionErrorKind.NETWORK: (
        "Verify the cluster is running, the kubeconfig server URL is correct "
        "and the network allows access to the API server"
    ),
    ConnectionErrorKind.UNKNOWN: "Check your kubeconfig file and ensure the cluster is accessible",
}


def node_suggestion(issues) -> str:
    """Return the single most important remediation for a node's issue tags."""
    for tag in NODE_ISSUE_PRIORITY:
        if tag in issues:
            return NODE_SUGGESTIONS[tag]
    return "Check node logs and status for more details"


def control_plane_suggestion(component: str, running: int, total: int) -> str | None:
    if running == 0:
        return f"Restart {component} component or check its configuration"
    if running < total:
        return f"Check {component} pod logs for issues"
    return None


def connectivity_suggestion(error_message: str) -> str:
    return CONNECTIVITY_SUGGESTIONS[classify_connection_error(error_message)]


# =====================================================================
# Probe Helpers
# =====================================================================

def _cancelled(name: str, reason: str) -> CheckResult:
    return CheckResult(
        name=name, status=Status.FAILED,
        message="Check aborted before completion",
        error=reason,
        suggestion="Increase the timeout or re-run the diagnostics",
    )


def _aborted(name: str, exc: Exception, deadline: Deadline) -> CheckResult | None:
    """Map a cancellation, or a call that failed because the deadline ran out."""
    if isinstance(exc, ProbeCancelled):
        return _cancelled(name, str(exc))
    if deadline.done:
        return _cancelled(name, f"{deadline.reason}: {_error_text(exc)}")
    return None


def _running_count(pods) -> int:
    return sum(1 for pod in pods if pod.status is not None and pod.status.phase == "Running")


# =====================================================================
# Connectivity Check
# =====================================================================

CONNECTIVITY_CHECK = "API Server Connectivity"
SLOW_RESPONSE_SECONDS = 5.0


def _fmt_duration(seconds: float) -> str:
    if seconds < 1:
        return f"{seconds * 1000:.0f}ms"
    return f"{seconds:.2f}s"


def check_connectivity(client, deadline: Deadline, slow_threshold: float = SLOW_RESPONSE_SECONDS) -> CheckResult:
    start = time.monotonic()
    try:
        client.server_version(deadline)
    except Exception as exc:
        cancelled = _aborted(CONNECTIVITY_CHECK, exc, deadline)
        if cancelled:
            return cancelled
        text = _error_text(exc)
        logger.debug("Server version query failed: %s", text)
        kind = classify_connection_error(text)
        message = {
            ConnectionErrorKind.CREDENTIALS: "Authentication to Kubernetes API server failed",
            ConnectionErrorKind.NETWORK: "Kubernetes API server is unreachable",
        }.get(kind, "Failed to connect to Kubernetes API server")
        return CheckResult(
            name=CONNECTIVITY_CHECK, status=Status.FAILED,
            message=message, error=text,
            suggestion=connectivity_suggestion(text),
        )
    duration = time.monotonic() - start

    details = {"response_time": _fmt_duration(duration), "server": client.host}
    message = f"Successfully connected to API server (response time: {_fmt_duration(duration)})"
    if duration > slow_threshold:
        return CheckResult(
            name=CONNECTIVITY_CHECK, status=Status.WARNING,
            message=message + " - slow response", details=details,
            suggestion="API server response is slow, check network connectivity",
        )
    return CheckResult(name=CONNECTIVITY_CHECK, status=Status.PASSED, message=message, details=details)


# =====================================================================
# Node Health Checks
# =====================================================================

NODE_CHECK = "Node Health"
NODE_OVERVIEW = "Node Health Overview"
PRESSURE_CONDITIONS = ("MemoryPressure", "DiskPressure", "PIDPressure", "NetworkUnavailable")


def node_issues(node) -> tuple[bool, list[str]]:
    """Return ``(ready, issue_tags)`` for a node, tags in priority order.

    A Ready condition that is missing, False or Unknown counts as NotReady.
    """
    conditions = (node.status.conditions if node.status else None) or []
    by_type = {cond.type: cond.status for cond in conditions}
    ready = by_type.get("Ready") == "True"
    issues = [] if ready else ["NotReady"]
    issues.extend(t for t in PRESSURE_CONDITIONS if by_type.get(t) == "True")
    return ready, issues


def check_node_health(client, deadline: Deadline) -> list[CheckResult]:
    try:
        nodes = client.list_nodes(deadline)
    except Exception as exc:
        cancelled = _aborted(NODE_CHECK, exc, deadline)
        if cancelled:
            return [cancelled]
        logger.debug("Listing nodes failed: %s", exc)
        return [CheckResult(
            name=NODE_CHECK, status=Status.FAILED,
            message="Failed to list cluster nodes",
            error=_error_text(exc),
            suggestion="Check RBAC permissions for node access",
        )]

    if not nodes:
        return [CheckResult(
            name=NODE_CHECK, status=Status.FAILED,
            message="No nodes found in cluster",
            suggestion="Ensure cluster has at least one node",
        )]

    total = len(nodes)
    ready_count = 0
    problematic: list[str] = []
    node_results: list[CheckResult] = []

    for node in sorted(nodes, key=lambda n: n.metadata.name):
        name = node.metadata.name
        ready, issues = node_issues(node)
        if ready:
            ready_count += 1
        if not issues:
            continue
        problematic.append(name)
        node_results.append(CheckResult(
            name=f"Node: {name}",
            status=Status.WARNING if ready else Status.FAILED,
            message=f"Node has issues: {', '.join(issues)}",
            details={"node_name": name, "issues": ", ".join(issues), "ready": str(ready).lower()},
            suggestion=node_suggestion(issues),
        ))

    if ready_count == total and not problematic:
        overview = CheckResult(
            name=NODE_OVERVIEW, status=Status.PASSED,
            message=f"All {total} nodes are healthy and ready",
            details={"total_nodes": str(total), "ready_nodes": str(ready_count)},
        )
    else:
        overview = CheckResult(
            name=NODE_OVERVIEW,
            status=Status.FAILED if ready_count == 0 else Status.WARNING,
            message=f"{ready_count}/{total} nodes ready, {len(problematic)} nodes with issues",
            details={
                "total_nodes": str(total),
                "ready_nodes": str(ready_count),
                "problematic_nodes": ", ".join(problematic),
            },
            suggestion="Check individual node issues below and address node problems",
        )
    return [overview] + node_results


# =====================================================================
# Control Plane Checks
# =====================================================================

SYSTEM_NAMESPACE = "kube-system"
CONTROL_PLANE_CHECK = "Control Plane Health"
CONTROL_PLANE_OVERVIEW = "Control Plane Overview"
CONTROL_PLANE_COMPONENTS = ("etcd", "kube-apiserver", "kube-controller-manager", "kube-scheduler")
CONTROL_PLANE_SELECTOR = f"component in ({','.join(CONTROL_PLANE_COMPONENTS)})"


def component_status(running: int, total: int) -> Status:
    if running == 0:
        return Status.FAILED
    if running < total:
        return Status.WARNING
    return Status.PASSED


def check_control_plane(client, deadline: Deadline, namespace: str = SYSTEM_NAMESPACE) -> list[CheckResult]:
    try:
        pods = client.list_pods(namespace, CONTROL_PLANE_SELECTOR, deadline)
    except Exception as exc:
        cancelled = _aborted(CONTROL_PLANE_CHECK, exc, deadline)
        if cancelled:
            return [cancelled]
        # Managed offerings (EKS, GKE, AKS) commonly hide the control plane.
        logger.debug("Listing control plane pods failed: %s", exc)
        return [CheckResult(
            name=CONTROL_PLANE_CHECK, status=Status.WARNING,
            message="Unable to access control plane components",
            error=_error_text(exc),
            suggestion=f"Check RBAC permissions for {namespace} namespace access",
        )]

    components: dict[str, list[Any]] = defaultdict(list)
    for pod in pods:
        component = (pod.metadata.labels or {}).get("component")
        if component:
            components[component].append(pod)

    if not components:
        return [CheckResult(
            name=CONTROL_PLANE_CHECK, status=Status.WARNING,
            message="No control plane components found (might be managed cluster)",
            suggestion="This might be a managed cluster (EKS, GKE, AKS) where control plane is managed",
        )]

    component_results: list[CheckResult] = []
    for component in sorted(components):
        members = components[component]
        running = _running_count(members)
        total = len(members)
        status = component_status(running, total)
        message = (f"{component}: no pods running" if status is Status.FAILED
                   else f"{component}: {running}/{total} pods running")
        component_results.append(CheckResult(
            name=f"Control Plane: {component}",
            status=status,
            message=message,
            details={"component": component, "running_pods": str(running), "total_pods": str(total)},
            suggestion=control_plane_suggestion(component, running, total),
        ))

    healthy = all(r.status is Status.PASSED for r in component_results)
    overview = CheckResult(
        name=CONTROL_PLANE_OVERVIEW,
        status=Status.PASSED if healthy else Status.WARNING,
        message="Control plane components are healthy" if healthy else "Some control plane components have issues",
        details={"components_found": str(len(components))},
    )
    return [overview] + component_results


# =====================================================================
# DNS Checks
# =====================================================================

DNS_CHECK = "DNS Health"
DNS_SELECTOR = "k8s-app in (kube-dns,coredns)"


def check_dns(client, deadline: Deadline, namespace: str = SYSTEM_NAMESPACE) -> CheckResult:
    try:
        pods = client.list_pods(namespace, DNS_SELECTOR, deadline)
    except Exception as exc:
        cancelled = _aborted(DNS_CHECK, exc, deadline)
        if cancelled:
            return cancelled
        logger.debug("Listing DNS pods failed: %s", exc)
        return CheckResult(
            name=DNS_CHECK, status=Status.FAILED,
            message="Failed to check DNS pods",
            error=_error_text(exc),
            suggestion=f"Check RBAC permissions for {namespace} namespace",
        )

    if not pods:
        return CheckResult(
            name=DNS_CHECK, status=Status.FAILED,
            message=f"No DNS pods found in {namespace} namespace",
            suggestion="Install CoreDNS or kube-dns for cluster DNS resolution",
        )

    running = _running_count(pods)
    total = len(pods)
    details = {"dns_pods_running": str(running), "dns_pods_total": str(total)}

    if running == 0:
        return CheckResult(
            name=DNS_CHECK, status=Status.FAILED,
            message="No DNS pods are running", details=details,
            suggestion="Check DNS pod logs and restart DNS deployment",
        )
    if running < total:
        return CheckResult(
            name=DNS_CHECK, status=Status.WARNING,
            message=f"DNS partially functional: {running}/{total} pods running", details=details,
            suggestion="Some DNS pods are not running, check pod status and logs",
        )
    return CheckResult(
        name=DNS_CHECK, status=Status.PASSED,
        message=f"DNS is healthy: {running}/{total} pods running", details=details,
    )


# =====================================================================
# Result Aggregation
# =====================================================================

def calculate_summary(checks) -> Summary:
    counts = {status: 0 for status in Status}
    total = 0
    for check in checks:
        counts[check.status] += 1
        total += 1
    return Summary(
        total=total,
        passed=counts[Status.PASSED],
        failed=counts[Status.FAILED],
        warnings=counts[Status.WARNING],
        skipped=counts[Status.SKIPPED],
    )


def overall_status(checks) -> Status:
    worst = Status.PASSED
    for check in checks:
        if check.status is not Status.SKIPPED and check.status.sort_order < worst.sort_order:
            worst = check.status
    return worst


# =====================================================================
# Orchestrator
# =====================================================================

PROBE_TITLES = {
    "connectivity": CONNECTIVITY_CHECK,
    "nodes": NODE_CHECK,
    "control_plane": CONTROL_PLANE_CHECK,
    "dns": DNS_CHECK,
}

Probe = Callable[[Any, Deadline], "CheckResult | list[CheckResult]"]


def fetch_cluster_info(client, deadline: Deadline) -> dict[str, str]:
    try:
        return client.cluster_info(deadline)
    except Exception as exc:
        raise ClusterInfoError(f"failed to get cluster info: {describe_connection_error(exc)}") from exc


def _run_probe(name: str, probe: Probe, client, deadline: Deadline) -> tuple[list[CheckResult], float]:
    start = time.monotonic()
    try:
        result = probe(client, deadline)
        results = [result] if isinstance(result, CheckResult) else list(result)
    except Exception as exc:
        logger.exception("Probe %s raised", name)
        results = [CheckResult(
            name=PROBE_TITLES.get(name, name), status=Status.FAILED,
            message=f"Probe raised exception: {exc}",
            error=_error_text(exc),
        )]
    duration_ms = round((time.monotonic() - start) * 1000, 1)
    logger.debug("Probe %s finished in %.1fms with %d results", name, duration_ms, len(results))
    return results, duration_ms


def run_diagnostics(
    client,
    deadline: Deadline | None = None,
    *,
    nodes_only: bool = False,
    parallel: bool = False,
    system_namespace: str = SYSTEM_NAMESPACE,
    slow_threshold: float = SLOW_RESPONSE_SECONDS,
) -> DiagnosticReport:
    """Run every cluster check once and assemble the report.

    Raises ClusterInfoError when the cluster identity cannot be fetched.
    Every other failure is reported as a check result.
    """
    deadline = deadline or Deadline()
    cluster_info = fetch_cluster_info(client, deadline)

    probes: list[tuple[str, Probe]] = [
        ("connectivity", partial(check_connectivity, slow_threshold=slow_threshold)),
        ("nodes", check_node_health),
    ]
    if not nodes_only:
        probes.extend([
            ("control_plane", partial(check_control_plane, namespace=system_namespace)),
            ("dns", partial(check_dns, namespace=system_namespace)),
        ])

    if parallel:
        with ThreadPoolExecutor(max_workers=len(probes)) as executor:
            futures = [executor.submit(_run_probe, name, probe, client, deadline) for name, probe in probes]
            outputs = [future.result() for future in futures]
    else:
        outputs = [_run_probe(name, probe, client, deadline) for name, probe in probes]

    checks = [check for results, _ in outputs for check in results]
    return DiagnosticReport(
        target="cluster (nodes only)" if nodes_only else "cluster",
        timestamp=datetime.now(timezone.utc).isoformat(timespec="seconds"),
        cluster_info=cluster_info,
        checks=checks,
        summary=calculate_summary(checks),
        metadata={
            "generator": "kdebug_cluster_check",
            "parallel": parallel,
            "timeout": deadline.timeout,
            "probe_durations_ms": {name: duration for (name, _), (_, duration) in zip(probes, outputs)},
        },
    )


# =====================================================================
# Report Text Generator
# =====================================================================

def generate_report_text(report: DiagnosticReport, verbose: bool = False) -> str:
    lines = [f"# Analyzing {report.target}", f"Timestamp: {report.timestamp}"]
    if verbose and report.cluster_info:
        lines.append("Cluster Information:")
        for key, value in report.cluster_info.items():
            lines.append(f"  {key}: {value}")
    lines.append("")

    for check in report.checks:
        lines.append(f"[{check.status.value}] {check.name}: {check.message}")
        if verbose and check.status in (Status.FAILED, Status.WARNING):
            if check.suggestion:
                lines.append(f"    Suggestion: {check.suggestion}")
            if check.error:
                lines.append(f"    Error: {check.error}")
            for key, value in check.details.items():
                lines.append(f"    {key}: {value}")

    s = report.summary
    summary_line = f"\n## Summary: {s.passed}/{s.total} checks passed"
    if s.failed:
        summary_line += f", {s.failed} failed"
    if s.warnings:
        summary_line += f", {s.warnings} warnings"
    if s.skipped:
        summary_line += f", {s.skipped} skipped"
    lines.append(summary_line)

    issues = [c for c in report.checks if c.status in (Status.FAILED, Status.WARNING)]
    if issues and not verbose:
        lines.append("\n## Issues Found")
        for check in sorted(issues, key=lambda c: c.status.sort_order):
            lines.append(f"- [{check.status.value}] {check.name}")
            if check.suggestion:
                lines.append(f"    Suggestion: {check.suggestion}")

    return "\n".join(lines)


def render_report(report: DiagnosticReport, output_format: str = "text", verbose: bool = False) -> str:
    if output_format == "json":
        return report.to_json()
    if output_format == "yaml":
        return report.to_yaml()
    return generate_report_text(report, verbose=verbose)


# =====================================================================
# Ansible Module Entry Point
# =====================================================================

def run_module():
    from ansible.module_utils.basic import AnsibleModule

    module = AnsibleModule(
        argument_spec=dict(
            kubeconfig=dict(type="path", default="~/.kube/config"),
            context=dict(type="str", default=None),
            timeout=dict(type="float", default=30.0),
            nodes_only=dict(type="bool", default=False),
            parallel=dict(type="bool", default=False),
            system_namespace=dict(type="str", default=SYSTEM_NAMESPACE),
            slow_response_threshold=dict(type="float", default=SLOW_RESPONSE_SECONDS),
            output_format=dict(type="str", default="text", choices=["text", "json", "yaml"]),
            fail_on_failed=dict(type="bool", default=False),
            verbose=dict(type="bool", default=False),
        ),
        supports_check_mode=True,
    )

    # Verify kubernetes package is available
    try:
        import kubernetes  # noqa: F401
    except ImportError:
        module.fail_json(msg="The 'kubernetes' Python package is required. Install with: pip install kubernetes")
        return

    params = module.params

    try:
        api_client, context_name = build_api_client(params["kubeconfig"], params["context"])
    except Exception as e:
        module.fail_json(msg=f"Failed to initialize Kubernetes client: {e}")
        return

    client = KubernetesClusterClient(api_client, context=context_name)
    deadline = Deadline(params["timeout"])

    try:
        report = run_diagnostics(
            client, deadline,
            nodes_only=params["nodes_only"],
            parallel=params["parallel"],
            system_namespace=params["system_namespace"],
            slow_threshold=params["slow_response_threshold"],
        )
    except ClusterInfoError as e:
        module.fail_json(msg=f"Failed to run cluster diagnostics: {e}")
        return

    result = dict(
        changed=False,
        report=report.to_dict(),
        summary=report.summary.to_dict(),
        cluster_info=report.cluster_info,
        overall_status=overall_status(report.checks).value,
        report_output=render_report(report, params["output_format"], verbose=params["verbose"]),
    )

    if params["fail_on_failed"] and report.summary.failed > 0:
        module.fail_json(
            msg=f"cluster health check failed: {report.summary.failed} critical issues found",
            **result,
        )
        return

    module.exit_json(**result)


def main():
    run_module()


if __name__ == "__main__":
    main()
