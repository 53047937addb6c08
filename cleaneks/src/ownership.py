from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from kubernetes.client import ApiException
from urllib3.exceptions import HTTPError

from cleaneks.src.metrics import METRICS
from cleaneks.src.resources import (
    ClusterApis,
    ManagedResourceRef,
    ReconcileError,
    ResourceKind,
    is_not_found,
)

LOGGER = logging.getLogger(__name__)

HELM_RELEASE_NAME_ANNOTATION = "meta.helm.sh/release-name"
HELM_RELEASE_NAME = "coredns"
HELM_RELEASE_NAMESPACE_ANNOTATION = "meta.helm.sh/release-namespace"
HELM_RELEASE_NAMESPACE = "kube-system"
MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_HELM = "Helm"
PROVIDER_COMPONENT_KEY = "eks.amazonaws.com/component"


@dataclass(frozen=True)
class OwnershipMarkers:
    """The four facts Helm's ownership check cares about for one object."""

    release_name_set: bool
    release_namespace_set: bool
    managed_by_set: bool
    provider_marker_removed: bool

    @classmethod
    def vacuous(cls) -> OwnershipMarkers:
        """Markers for an object that does not exist; a later Helm install owns it cleanly."""
        return cls(
            release_name_set=True,
            release_namespace_set=True,
            managed_by_set=True,
            provider_marker_removed=True,
        )

    @property
    def fully_adopted(self) -> bool:
        return (
            self.release_name_set
            and self.release_namespace_set
            and self.managed_by_set
            and self.provider_marker_removed
        )


def _string_map(raw: Any) -> dict[str, str]:
    if not isinstance(raw, Mapping):
        return {}
    return {k: ("" if v is None else str(v)) for k, v in raw.items() if isinstance(k, str)}


def has_provider_marker(labels: Mapping[str, str], annotations: Mapping[str, str]) -> bool:
    return PROVIDER_COMPONENT_KEY in labels or PROVIDER_COMPONENT_KEY in annotations


def markers_from_metadata(
    labels: Mapping[str, str], annotations: Mapping[str, str]
) -> OwnershipMarkers:
    return OwnershipMarkers(
        release_name_set=annotations.get(HELM_RELEASE_NAME_ANNOTATION) == HELM_RELEASE_NAME,
        release_namespace_set=(
            annotations.get(HELM_RELEASE_NAMESPACE_ANNOTATION) == HELM_RELEASE_NAMESPACE
        ),
        managed_by_set=labels.get(MANAGED_BY_LABEL) == MANAGED_BY_HELM,
        provider_marker_removed=not has_provider_marker(labels, annotations),
    )


@dataclass(frozen=True)
class ResourceState:
    """Snapshot of one managed object taken by a single read."""

    ref: ManagedResourceRef
    exists: bool
    provider_owned: bool
    markers: OwnershipMarkers
    cluster_ips: tuple[str, ...] = field(default=())

    @classmethod
    def absent(cls, ref: ManagedResourceRef) -> ResourceState:
        return cls(ref=ref, exists=False, provider_owned=False, markers=OwnershipMarkers.vacuous())


def service_cluster_ips(service: Any) -> tuple[str, ...]:
    """Return the assigned cluster IPs of a Service, skipping headless placeholders."""
    spec = getattr(service, "spec", None)
    ips = getattr(spec, "cluster_ips", None) or []
    if not ips:
        single = getattr(spec, "cluster_ip", None)
        ips = [single] if single else []
    return tuple(ip for ip in ips if ip and ip != "None")


def state_from_object(ref: ManagedResourceRef, obj: Any) -> ResourceState:
    metadata = getattr(obj, "metadata", None)
    labels = _string_map(getattr(metadata, "labels", None))
    annotations = _string_map(getattr(metadata, "annotations", None))
    cluster_ips = service_cluster_ips(obj) if ref.kind is ResourceKind.SERVICE else ()
    return ResourceState(
        ref=ref,
        exists=True,
        provider_owned=has_provider_marker(labels, annotations),
        markers=markers_from_metadata(labels, annotations),
        cluster_ips=cluster_ips,
    )


def classify(
    apis: ClusterApis, ref: ManagedResourceRef, timeout: float | None = None
) -> ResourceState:
    """Read *ref* once and derive its existence and ownership markers.

    A 404 is not an error: the object is reported absent with vacuously
    satisfied markers. Any other API failure raises :class:`ReconcileError`.
    """
    try:
        obj = apis.operations(ref, timeout=timeout).read()
    except ApiException as exc:
        if is_not_found(exc):
            LOGGER.debug("%s not found", ref)
            return ResourceState.absent(ref)
        METRICS.api_errors_total.labels(kind=ref.kind.value, operation="read").inc()
        raise ReconcileError.from_api_exception(ref, "read", exc) from exc
    except HTTPError as exc:
        METRICS.api_errors_total.labels(kind=ref.kind.value, operation="read").inc()
        raise ReconcileError.from_transport_error(ref, "read", exc) from exc

    state = state_from_object(ref, obj)
    LOGGER.debug(
        "%s exists (provider_owned=%s, fully_adopted=%s)",
        ref,
        state.provider_owned,
        state.markers.fully_adopted,
    )
    return state
