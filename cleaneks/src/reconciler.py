from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from cleaneks.src.adoption import adopt
from cleaneks.src.mutation import DEFAULT_RETRY, RetryBackoff, delete_if_exists
from cleaneks.src.ownership import OwnershipMarkers, ResourceState, classify
from cleaneks.src.resources import (
    AWS_CNI_DAEMONSET,
    COREDNS_CONFIG_MAP,
    COREDNS_DEPLOYMENT,
    COREDNS_POD_DISRUPTION_BUDGET,
    COREDNS_SERVICE,
    COREDNS_SERVICE_ACCOUNT,
    COREDNS_STACK,
    KUBE_PROXY_CONFIG_MAP,
    KUBE_PROXY_DAEMONSET,
    KUBERNETES_API_SERVICE,
    ClusterApis,
    ManagedResourceRef,
)

LOGGER = logging.getLogger(__name__)

# Field-name stems used in the flat record for each CoreDNS stack member.
COREDNS_SLUGS: dict[ManagedResourceRef, str] = {
    COREDNS_DEPLOYMENT: "deployment",
    COREDNS_SERVICE: "service",
    COREDNS_SERVICE_ACCOUNT: "service_account",
    COREDNS_CONFIG_MAP: "config_map",
    COREDNS_POD_DISRUPTION_BUDGET: "pod_disruption_budget",
}

_MARKER_FIELDS: dict[str, str] = {
    "release_name_set": "label_helm_release_name_set",
    "release_namespace_set": "label_helm_release_namespace_set",
    "managed_by_set": "label_managed_by_set",
    "provider_marker_removed": "label_amazon_managed_removed",
}

TRACKED_REFS: tuple[ManagedResourceRef, ...] = (
    AWS_CNI_DAEMONSET,
    KUBE_PROXY_DAEMONSET,
    KUBE_PROXY_CONFIG_MAP,
    *COREDNS_STACK,
)


@dataclass(frozen=True)
class DesiredState:
    """What the caller wants done to the cluster's default add-ons.

    Removing CoreDNS wins over importing it into Helm when both are set.
    """

    remove_aws_cni: bool = True
    remove_kube_proxy: bool = True
    remove_core_dns: bool = True
    import_coredns_to_helm: bool = False

    @property
    def adopt_core_dns(self) -> bool:
        return self.import_coredns_to_helm and not self.remove_core_dns


def infer_cluster_dns_ip(api_service_ip: str) -> str | None:
    """Derive the conventional cluster DNS address from the API service IP.

    EKS places kube-dns at ``.10`` of the service CIDR for IPv4 and at
    ``::a`` for IPv6.
    """
    if ":" in api_service_ip:
        return ":".join(api_service_ip.split(":")[:-1]) + ":a"
    if "." in api_service_ip:
        return ".".join(api_service_ip.split(".")[:-1]) + ".10"
    return None


@dataclass(frozen=True)
class ObservedResultRecord:
    """Flat, persistable result of one invocation.

    ``aws_coredns_*_exists`` mean "exists and is still the provider's
    instance". The ``*_pending`` flags are ``desired AND NOT converged`` and
    are all False once the cluster has reached the requested state.
    """

    id: str
    remove_aws_cni: bool
    remove_kube_proxy: bool
    remove_core_dns: bool
    import_coredns_to_helm: bool

    aws_cni_daemonset_exists: bool
    kube_proxy_daemonset_exists: bool
    kube_proxy_config_map_exists: bool

    aws_coredns_deployment_exists: bool
    aws_coredns_service_exists: bool
    aws_coredns_service_account_exists: bool
    aws_coredns_config_map_exists: bool
    aws_coredns_pod_disruption_budget_exists: bool
    aws_coredns_service_cluster_ips: tuple[str, ...]

    coredns_markers: Mapping[str, OwnershipMarkers] = field(default_factory=dict)

    remove_aws_cni_pending: bool = False
    remove_kube_proxy_pending: bool = False
    remove_core_dns_pending: bool = False
    import_coredns_to_helm_pending: bool = False

    @property
    def desired(self) -> DesiredState:
        return DesiredState(
            remove_aws_cni=self.remove_aws_cni,
            remove_kube_proxy=self.remove_kube_proxy,
            remove_core_dns=self.remove_core_dns,
            import_coredns_to_helm=self.import_coredns_to_helm,
        )

    @property
    def pending(self) -> bool:
        return (
            self.remove_aws_cni_pending
            or self.remove_kube_proxy_pending
            or self.remove_core_dns_pending
            or self.import_coredns_to_helm_pending
        )

    def markers_for(self, slug: str) -> OwnershipMarkers:
        return self.coredns_markers.get(slug, OwnershipMarkers.vacuous())

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "remove_aws_cni": self.remove_aws_cni,
            "remove_kube_proxy": self.remove_kube_proxy,
            "remove_core_dns": self.remove_core_dns,
            "import_coredns_to_helm": self.import_coredns_to_helm,
            "aws_cni_daemonset_exists": self.aws_cni_daemonset_exists,
            "kube_proxy_daemonset_exists": self.kube_proxy_daemonset_exists,
            "kube_proxy_config_map_exists": self.kube_proxy_config_map_exists,
            "aws_coredns_deployment_exists": self.aws_coredns_deployment_exists,
            "aws_coredns_service_exists": self.aws_coredns_service_exists,
            "aws_coredns_service_account_exists": self.aws_coredns_service_account_exists,
            "aws_coredns_config_map_exists": self.aws_coredns_config_map_exists,
            "aws_coredns_pod_disruption_budget_exists": (
                self.aws_coredns_pod_disruption_budget_exists
            ),
            "aws_coredns_service_cluster_ips": list(self.aws_coredns_service_cluster_ips),
        }
        for slug in COREDNS_SLUGS.values():
            markers = self.markers_for(slug)
            for attr, suffix in _MARKER_FIELDS.items():
                data[f"coredns_{slug}_{suffix}"] = getattr(markers, attr)
        data.update(
            {
                "remove_aws_cni_pending": self.remove_aws_cni_pending,
                "remove_kube_proxy_pending": self.remove_kube_proxy_pending,
                "remove_core_dns_pending": self.remove_core_dns_pending,
                "import_coredns_to_helm_pending": self.import_coredns_to_helm_pending,
            }
        )
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ObservedResultRecord:
        markers = {
            slug: OwnershipMarkers(
                **{
                    attr: bool(data.get(f"coredns_{slug}_{suffix}", True))
                    for attr, suffix in _MARKER_FIELDS.items()
                }
            )
            for slug in COREDNS_SLUGS.values()
        }
        return cls(
            id=str(data["id"]),
            remove_aws_cni=bool(data.get("remove_aws_cni", True)),
            remove_kube_proxy=bool(data.get("remove_kube_proxy", True)),
            remove_core_dns=bool(data.get("remove_core_dns", True)),
            import_coredns_to_helm=bool(data.get("import_coredns_to_helm", False)),
            aws_cni_daemonset_exists=bool(data.get("aws_cni_daemonset_exists", False)),
            kube_proxy_daemonset_exists=bool(data.get("kube_proxy_daemonset_exists", False)),
            kube_proxy_config_map_exists=bool(data.get("kube_proxy_config_map_exists", False)),
            aws_coredns_deployment_exists=bool(data.get("aws_coredns_deployment_exists", False)),
            aws_coredns_service_exists=bool(data.get("aws_coredns_service_exists", False)),
            aws_coredns_service_account_exists=bool(
                data.get("aws_coredns_service_account_exists", False)
            ),
            aws_coredns_config_map_exists=bool(data.get("aws_coredns_config_map_exists", False)),
            aws_coredns_pod_disruption_budget_exists=bool(
                data.get("aws_coredns_pod_disruption_budget_exists", False)
            ),
            aws_coredns_service_cluster_ips=tuple(
                str(ip) for ip in data.get("aws_coredns_service_cluster_ips") or []
            ),
            coredns_markers=markers,
            remove_aws_cni_pending=bool(data.get("remove_aws_cni_pending", False)),
            remove_kube_proxy_pending=bool(data.get("remove_kube_proxy_pending", False)),
            remove_core_dns_pending=bool(data.get("remove_core_dns_pending", False)),
            import_coredns_to_helm_pending=bool(
                data.get("import_coredns_to_helm_pending", False)
            ),
        )


class Reconciler:
    """Removes or adopts the EKS default add-ons, then reports what is left.

    Every call is sequential and blocking. A failure raises
    :class:`~cleaneks.src.resources.ReconcileError` and stops the run
    without undoing earlier deletions; each step is idempotent, so running
    again after fixing the cause picks up where it stopped.
    """

    def __init__(
        self,
        apis: ClusterApis,
        endpoint: str,
        request_timeout: float | None = None,
        backoff: RetryBackoff = DEFAULT_RETRY,
        sleep_fn: Callable[[float], None] = time.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        self.apis = apis
        self.endpoint = endpoint
        self.request_timeout = request_timeout
        self.backoff = backoff
        self.sleep_fn = sleep_fn
        self.logger = logger or LOGGER

    def _classify(self, ref: ManagedResourceRef) -> ResourceState:
        return classify(self.apis, ref, timeout=self.request_timeout)

    def _delete(self, ref: ManagedResourceRef) -> bool:
        return delete_if_exists(self.apis, ref, timeout=self.request_timeout)

    def _adopt(self, ref: ManagedResourceRef) -> bool:
        return adopt(
            self.apis,
            ref,
            timeout=self.request_timeout,
            backoff=self.backoff,
            sleep_fn=self.sleep_fn,
        )

    def _resolve_cluster_ips(
        self,
        service: ResourceState,
        known_ips: tuple[str, ...] = (),
        previous: ObservedResultRecord | None = None,
    ) -> tuple[str, ...]:
        """Pick the DNS service addresses: live, then already known, then inferred."""
        if service.cluster_ips:
            return service.cluster_ips
        if known_ips:
            return known_ips
        if previous is not None and previous.aws_coredns_service_cluster_ips:
            return previous.aws_coredns_service_cluster_ips

        api_service = self._classify(KUBERNETES_API_SERVICE)
        if not api_service.cluster_ips:
            return ()
        inferred = infer_cluster_dns_ip(api_service.cluster_ips[0])
        if inferred is None:
            return ()
        self.logger.info("Inferred cluster DNS address %s from %s", inferred, KUBERNETES_API_SERVICE)
        return (inferred,)

    def apply(
        self, desired: DesiredState, previous: ObservedResultRecord | None = None
    ) -> ObservedResultRecord:
        """Run the removal/adoption sequence and return the re-observed record."""
        self.logger.info(
            "Reconciling %s (remove_aws_cni=%s, remove_kube_proxy=%s, "
            "remove_core_dns=%s, import_coredns_to_helm=%s)",
            self.endpoint,
            desired.remove_aws_cni,
            desired.remove_kube_proxy,
            desired.remove_core_dns,
            desired.import_coredns_to_helm,
        )
        # Captured before any deletion so the address survives kube-dns removal.
        known_ips = self._resolve_cluster_ips(self._classify(COREDNS_SERVICE), previous=previous)

        if desired.remove_aws_cni:
            self._delete(AWS_CNI_DAEMONSET)

        if desired.remove_kube_proxy:
            self._delete(KUBE_PROXY_DAEMONSET)
            self._delete(KUBE_PROXY_CONFIG_MAP)

        if desired.remove_core_dns:
            if desired.import_coredns_to_helm:
                self.logger.warning(
                    "Both remove_core_dns and import_coredns_to_helm are set; removing CoreDNS"
                )
            for ref in COREDNS_STACK:
                if self._classify(ref).provider_owned:
                    self._delete(ref)
                else:
                    self.logger.info("Leaving %s alone; it is not the provider's instance", ref)
        elif desired.adopt_core_dns:
            for ref in COREDNS_STACK:
                if self._classify(ref).provider_owned:
                    self._adopt(ref)
                else:
                    self.logger.info("Leaving %s alone; it is not the provider's instance", ref)

        return self.observe(desired, previous=previous, known_ips=known_ips)

    def observe(
        self,
        desired: DesiredState,
        previous: ObservedResultRecord | None = None,
        known_ips: tuple[str, ...] = (),
    ) -> ObservedResultRecord:
        """Read every tracked object and build the record without mutating anything."""
        states = {ref: self._classify(ref) for ref in TRACKED_REFS}
        cluster_ips = self._resolve_cluster_ips(
            states[COREDNS_SERVICE], known_ips=known_ips, previous=previous
        )

        aws_owned = {ref: states[ref].provider_owned for ref in COREDNS_STACK}
        markers = {slug: states[ref].markers for ref, slug in COREDNS_SLUGS.items()}

        cni_exists = states[AWS_CNI_DAEMONSET].exists
        proxy_ds_exists = states[KUBE_PROXY_DAEMONSET].exists
        proxy_cm_exists = states[KUBE_PROXY_CONFIG_MAP].exists
        all_adopted = all(m.fully_adopted for m in markers.values())

        record = ObservedResultRecord(
            id=self.endpoint,
            remove_aws_cni=desired.remove_aws_cni,
            remove_kube_proxy=desired.remove_kube_proxy,
            remove_core_dns=desired.remove_core_dns,
            import_coredns_to_helm=desired.import_coredns_to_helm,
            aws_cni_daemonset_exists=cni_exists,
            kube_proxy_daemonset_exists=proxy_ds_exists,
            kube_proxy_config_map_exists=proxy_cm_exists,
            aws_coredns_deployment_exists=aws_owned[COREDNS_DEPLOYMENT],
            aws_coredns_service_exists=aws_owned[COREDNS_SERVICE],
            aws_coredns_service_account_exists=aws_owned[COREDNS_SERVICE_ACCOUNT],
            aws_coredns_config_map_exists=aws_owned[COREDNS_CONFIG_MAP],
            aws_coredns_pod_disruption_budget_exists=aws_owned[COREDNS_POD_DISRUPTION_BUDGET],
            aws_coredns_service_cluster_ips=cluster_ips,
            coredns_markers=markers,
            remove_aws_cni_pending=desired.remove_aws_cni and cni_exists,
            remove_kube_proxy_pending=(
                desired.remove_kube_proxy and (proxy_ds_exists or proxy_cm_exists)
            ),
            remove_core_dns_pending=desired.remove_core_dns and any(aws_owned.values()),
            import_coredns_to_helm_pending=desired.adopt_core_dns and not all_adopted,
        )
        self.logger.info("Observed %s (pending=%s)", self.endpoint, record.pending)
        return record
