from __future__ import annotations

import enum
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kubernetes.client import ApiException, AppsV1Api, CoreV1Api, PolicyV1Api
from urllib3.exceptions import HTTPError

KUBE_SYSTEM = "kube-system"


class ResourceKind(str, enum.Enum):
    DAEMON_SET = "DaemonSet"
    DEPLOYMENT = "Deployment"
    SERVICE = "Service"
    SERVICE_ACCOUNT = "ServiceAccount"
    CONFIG_MAP = "ConfigMap"
    POD_DISRUPTION_BUDGET = "PodDisruptionBudget"


@dataclass(frozen=True)
class ManagedResourceRef:
    """Identity of one of the fixed add-on objects this tool manages."""

    kind: ResourceKind
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind.value}/{self.namespace}/{self.name}"


AWS_CNI_DAEMONSET = ManagedResourceRef(ResourceKind.DAEMON_SET, KUBE_SYSTEM, "aws-node")
KUBE_PROXY_DAEMONSET = ManagedResourceRef(ResourceKind.DAEMON_SET, KUBE_SYSTEM, "kube-proxy")
KUBE_PROXY_CONFIG_MAP = ManagedResourceRef(ResourceKind.CONFIG_MAP, KUBE_SYSTEM, "kube-proxy")

COREDNS_DEPLOYMENT = ManagedResourceRef(ResourceKind.DEPLOYMENT, KUBE_SYSTEM, "coredns")
COREDNS_SERVICE = ManagedResourceRef(ResourceKind.SERVICE, KUBE_SYSTEM, "kube-dns")
COREDNS_SERVICE_ACCOUNT = ManagedResourceRef(ResourceKind.SERVICE_ACCOUNT, KUBE_SYSTEM, "coredns")
COREDNS_CONFIG_MAP = ManagedResourceRef(ResourceKind.CONFIG_MAP, KUBE_SYSTEM, "coredns")
COREDNS_POD_DISRUPTION_BUDGET = ManagedResourceRef(
    ResourceKind.POD_DISRUPTION_BUDGET, KUBE_SYSTEM, "coredns"
)

# Order matters: deletions and adoptions walk the stack in this sequence.
COREDNS_STACK: tuple[ManagedResourceRef, ...] = (
    COREDNS_DEPLOYMENT,
    COREDNS_SERVICE,
    COREDNS_SERVICE_ACCOUNT,
    COREDNS_CONFIG_MAP,
    COREDNS_POD_DISRUPTION_BUDGET,
)

# Read-only lookup used to infer the cluster DNS address.
KUBERNETES_API_SERVICE = ManagedResourceRef(ResourceKind.SERVICE, "default", "kubernetes")


@dataclass(frozen=True)
class KindAdapter:
    """Where a kind's namespaced get/delete/replace calls live on the client."""

    api_group: str
    method_suffix: str


KIND_ADAPTERS: dict[ResourceKind, KindAdapter] = {
    ResourceKind.DAEMON_SET: KindAdapter("apps", "daemon_set"),
    ResourceKind.DEPLOYMENT: KindAdapter("apps", "deployment"),
    ResourceKind.SERVICE: KindAdapter("core", "service"),
    ResourceKind.SERVICE_ACCOUNT: KindAdapter("core", "service_account"),
    ResourceKind.CONFIG_MAP: KindAdapter("core", "config_map"),
    ResourceKind.POD_DISRUPTION_BUDGET: KindAdapter("policy", "pod_disruption_budget"),
}


@dataclass(frozen=True)
class KindOperations:
    """Capability record for one managed object: read, delete and replace."""

    read: Callable[[], Any]
    delete: Callable[[], Any]
    replace: Callable[[Any], Any]


@dataclass(frozen=True)
class ClusterApis:
    """Kubernetes API handles injected into the reconciliation core."""

    core: CoreV1Api
    apps: AppsV1Api
    policy: PolicyV1Api

    def _api_for(self, kind: ResourceKind) -> tuple[Any, str]:
        adapter = KIND_ADAPTERS[kind]
        return getattr(self, adapter.api_group), adapter.method_suffix

    def operations(self, ref: ManagedResourceRef, timeout: float | None = None) -> KindOperations:
        """Bind the client methods for *ref*'s kind to its name and namespace."""
        api, suffix = self._api_for(ref.kind)
        read_fn = getattr(api, f"read_namespaced_{suffix}")
        delete_fn = getattr(api, f"delete_namespaced_{suffix}")
        replace_fn = getattr(api, f"replace_namespaced_{suffix}")

        return KindOperations(
            read=lambda: read_fn(
                name=ref.name, namespace=ref.namespace, _request_timeout=timeout
            ),
            delete=lambda: delete_fn(
                name=ref.name, namespace=ref.namespace, _request_timeout=timeout
            ),
            replace=lambda body: replace_fn(
                name=ref.name, namespace=ref.namespace, body=body, _request_timeout=timeout
            ),
        )


def is_not_found(exc: ApiException) -> bool:
    return exc.status == 404


def is_conflict(exc: ApiException) -> bool:
    return exc.status == 409


class ReconcileError(RuntimeError):
    """A Kubernetes API call failed in a way the reconciler cannot recover from.

    Names the resource and the operation (``read``, ``delete`` or ``update``)
    so the caller can report exactly where an invocation stopped.
    """

    def __init__(
        self,
        ref: ManagedResourceRef,
        operation: str,
        status: int | None = None,
        reason: str | None = None,
    ) -> None:
        self.ref = ref
        self.operation = operation
        self.status = status
        self.reason = reason
        if status is not None:
            detail = f" (status={status}, reason={reason})"
        elif reason:
            detail = f" ({reason})"
        else:
            detail = ""
        super().__init__(f"Failed to {operation} {ref}{detail}")

    @classmethod
    def from_api_exception(
        cls, ref: ManagedResourceRef, operation: str, exc: ApiException
    ) -> ReconcileError:
        return cls(ref=ref, operation=operation, status=exc.status, reason=exc.reason)

    @classmethod
    def from_transport_error(
        cls, ref: ManagedResourceRef, operation: str, exc: HTTPError
    ) -> ReconcileError:
        """Wrap a connection-level failure (refused, reset, timed out) from urllib3."""
        return cls(ref=ref, operation=operation, reason=f"{type(exc).__name__}: {exc}")
