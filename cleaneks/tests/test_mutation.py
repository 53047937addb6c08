from __future__ import annotations

from typing import Any
from unittest.mock import patch

import pytest
from prometheus_client import REGISTRY

from cleaneks.src.mutation import (
    DEFAULT_RETRY,
    RetryBackoff,
    delete_if_exists,
    read_modify_write_with_retry,
)
from cleaneks.src.resources import AWS_CNI_DAEMONSET, COREDNS_DEPLOYMENT, ReconcileError
from cleaneks.tests.fakes import FakeCluster


def _add_label(obj: Any) -> bool:
    labels = obj.metadata.labels or {}
    if labels.get("team") == "platform":
        return False
    labels["team"] = "platform"
    obj.metadata.labels = labels
    return True


def _bump_replicas(obj: Any) -> None:
    obj.metadata.labels = {**(obj.metadata.labels or {}), "touched": "yes"}


def _metric(name: str, **labels: str) -> float:
    return REGISTRY.get_sample_value(name, labels) or 0.0


def test_delete_if_exists_reports_whether_anything_was_deleted() -> None:
    cluster = FakeCluster()
    cluster.add(AWS_CNI_DAEMONSET)
    before = _metric("cleaneks_deletions_total", kind="DaemonSet")

    assert delete_if_exists(cluster.apis(), AWS_CNI_DAEMONSET) is True
    assert delete_if_exists(cluster.apis(), AWS_CNI_DAEMONSET) is False

    assert AWS_CNI_DAEMONSET not in cluster.objects
    assert _metric("cleaneks_deletions_total", kind="DaemonSet") == before + 1


def test_delete_if_exists_surfaces_other_errors() -> None:
    cluster = FakeCluster()
    cluster.add(AWS_CNI_DAEMONSET)
    cluster.errors[("delete", AWS_CNI_DAEMONSET)] = 500

    with pytest.raises(ReconcileError) as excinfo:
        delete_if_exists(cluster.apis(), AWS_CNI_DAEMONSET, timeout=3.0)

    assert excinfo.value.operation == "delete"
    assert excinfo.value.status == 500
    assert cluster.timeouts == [3.0]


def test_write_skipped_when_patch_reports_no_change() -> None:
    cluster = FakeCluster()
    cluster.add(COREDNS_DEPLOYMENT, labels={"team": "platform"})

    written = read_modify_write_with_retry(cluster.apis(), COREDNS_DEPLOYMENT, _add_label)

    assert written is False
    assert cluster.count("replace") == 0


def test_patch_fn_edits_a_private_copy() -> None:
    cluster = FakeCluster()
    cluster.add(COREDNS_DEPLOYMENT, labels={"team": "platform"})

    def scribble(obj: Any) -> bool:
        obj.metadata.labels["scribbled"] = "true"
        return False

    read_modify_write_with_retry(cluster.apis(), COREDNS_DEPLOYMENT, scribble)

    assert "scribbled" not in cluster.objects[COREDNS_DEPLOYMENT].metadata.labels


def test_write_applied_when_changed() -> None:
    cluster = FakeCluster()
    cluster.add(COREDNS_DEPLOYMENT)
    before = _metric("cleaneks_writes_total", kind="Deployment")

    written = read_modify_write_with_retry(cluster.apis(), COREDNS_DEPLOYMENT, _add_label)

    assert written is True
    assert cluster.objects[COREDNS_DEPLOYMENT].metadata.labels == {"team": "platform"}
    assert _metric("cleaneks_writes_total", kind="Deployment") == before + 1


def test_missing_object_is_a_no_op() -> None:
    cluster = FakeCluster()

    assert read_modify_write_with_retry(cluster.apis(), COREDNS_DEPLOYMENT, _add_label) is False
    assert cluster.calls == [("read", COREDNS_DEPLOYMENT)]


def test_conflict_restarts_from_the_read() -> None:
    cluster = FakeCluster()
    cluster.add(COREDNS_DEPLOYMENT)
    cluster.interfere(COREDNS_DEPLOYMENT, _bump_replicas)
    sleeps: list[float] = []
    before = _metric("cleaneks_update_conflicts_total", kind="Deployment")

    written = read_modify_write_with_retry(
        cluster.apis(), COREDNS_DEPLOYMENT, _add_label, sleep_fn=sleeps.append
    )

    assert written is True
    assert [verb for verb, _ in cluster.calls] == ["read", "replace", "read", "replace"]
    assert cluster.objects[COREDNS_DEPLOYMENT].metadata.labels == {
        "touched": "yes",
        "team": "platform",
    }
    assert len(sleeps) == 1
    assert DEFAULT_RETRY.duration <= sleeps[0] <= DEFAULT_RETRY.duration * 1.1
    assert _metric("cleaneks_update_conflicts_total", kind="Deployment") == before + 1


def test_conflict_retries_are_bounded() -> None:
    cluster = FakeCluster()
    cluster.add(COREDNS_DEPLOYMENT)
    cluster.interfere(COREDNS_DEPLOYMENT, _bump_replicas, times=DEFAULT_RETRY.steps)
    sleeps: list[float] = []

    with pytest.raises(ReconcileError) as excinfo:
        read_modify_write_with_retry(
            cluster.apis(), COREDNS_DEPLOYMENT, _add_label, sleep_fn=sleeps.append
        )

    assert excinfo.value.status == 409
    assert excinfo.value.operation == "update"
    assert cluster.count("replace") == DEFAULT_RETRY.steps
    assert len(sleeps) == DEFAULT_RETRY.steps - 1
    assert cluster.mutations == []


def test_non_conflict_write_error_is_returned_immediately() -> None:
    cluster = FakeCluster()
    cluster.add(COREDNS_DEPLOYMENT)
    cluster.errors[("replace", COREDNS_DEPLOYMENT)] = 422
    sleeps: list[float] = []

    with pytest.raises(ReconcileError, match="status=422"):
        read_modify_write_with_retry(
            cluster.apis(), COREDNS_DEPLOYMENT, _add_label, sleep_fn=sleeps.append
        )

    assert cluster.count("replace") == 1
    assert sleeps == []


def test_read_error_is_fatal() -> None:
    cluster = FakeCluster()
    cluster.add(COREDNS_DEPLOYMENT)
    cluster.errors[("read", COREDNS_DEPLOYMENT)] = 403

    with pytest.raises(ReconcileError) as excinfo:
        read_modify_write_with_retry(cluster.apis(), COREDNS_DEPLOYMENT, _add_label)

    assert excinfo.value.operation == "read"
    assert cluster.count("replace") == 0


def test_backoff_delays_follow_factor() -> None:
    backoff = RetryBackoff(steps=4, duration=0.5, factor=2.0, jitter=0.0)

    assert list(backoff.delays()) == pytest.approx([0.5, 1.0, 2.0])


def test_single_step_backoff_never_sleeps() -> None:
    assert list(RetryBackoff(steps=1).delays()) == []


@pytest.mark.parametrize("kwargs", [{"steps": 0}, {"duration": -1.0}])
def test_backoff_rejects_invalid_settings(kwargs: dict[str, Any]) -> None:
    with pytest.raises(ValueError):
        RetryBackoff(**kwargs)


def test_backoff_jitter_scales_with_duration() -> None:
    backoff = RetryBackoff(steps=3, duration=0.01, jitter=0.1)

    with patch("cleaneks.src.mutation.random.random", return_value=0.5):
        delays = list(backoff.delays())

    assert delays == pytest.approx([0.0105, 0.0105])


@pytest.mark.parametrize(("verb", "operation"), [("read", "read"), ("replace", "update")])
def test_connection_failure_during_update_names_the_operation(verb: str, operation: str) -> None:
    cluster = FakeCluster()
    cluster.add(COREDNS_DEPLOYMENT)
    cluster.refuse_connections(verb, COREDNS_DEPLOYMENT)
    sleeps: list[float] = []

    with pytest.raises(ReconcileError, match="Connection refused") as excinfo:
        read_modify_write_with_retry(
            cluster.apis(), COREDNS_DEPLOYMENT, _add_label, sleep_fn=sleeps.append
        )

    assert excinfo.value.operation == operation
    assert excinfo.value.ref == COREDNS_DEPLOYMENT
    assert sleeps == []
    assert cluster.mutations == []


def test_connection_failure_during_delete_is_wrapped() -> None:
    cluster = FakeCluster()
    cluster.add(AWS_CNI_DAEMONSET)
    cluster.refuse_connections("delete", AWS_CNI_DAEMONSET)
    before = _metric("cleaneks_api_errors_total", kind="DaemonSet", operation="delete")

    with pytest.raises(ReconcileError) as excinfo:
        delete_if_exists(cluster.apis(), AWS_CNI_DAEMONSET)

    assert excinfo.value.operation == "delete"
    assert AWS_CNI_DAEMONSET in cluster.objects
    assert _metric("cleaneks_api_errors_total", kind="DaemonSet", operation="delete") == before + 1
