from __future__ import annotations

import os
from pathlib import Path

import pytest

from cleaneks.src.config import (
    ClusterSettings,
    ConfigError,
    env_bool,
    env_float,
    load_settings,
    load_settings_file,
)
from cleaneks.src.reconciler import DesiredState


def test_defaults_with_empty_environment() -> None:
    settings = load_settings(env={})

    assert settings.desired == DesiredState()
    assert settings.cluster == ClusterSettings()
    assert settings.state_file == "cleaneks-state.json"
    assert settings.metrics_textfile == ""


def test_environment_drives_desired_state() -> None:
    settings = load_settings(
        env={
            "REMOVE_AWS_CNI": "false",
            "REMOVE_KUBE_PROXY": "0",
            "REMOVE_CORE_DNS": "no",
            "IMPORT_COREDNS_TO_HELM": "true",
        }
    )

    assert settings.desired == DesiredState(
        remove_aws_cni=False,
        remove_kube_proxy=False,
        remove_core_dns=False,
        import_coredns_to_helm=True,
    )
    assert settings.desired.adopt_core_dns is True


def test_unparseable_booleans_fall_back_to_defaults() -> None:
    settings = load_settings(env={"REMOVE_AWS_CNI": "maybe", "IMPORT_COREDNS_TO_HELM": "sure"})

    assert settings.desired.remove_aws_cni is True
    assert settings.desired.import_coredns_to_helm is False


def test_overrides_win_over_environment() -> None:
    settings = load_settings(
        env={"REMOVE_CORE_DNS": "true", "KUBE_HOST": "env.example.com"},
        overrides={"remove_core_dns": False, "host": "file.example.com", "state_file": "s.json"},
    )

    assert settings.desired.remove_core_dns is False
    assert settings.cluster.host == "file.example.com"
    assert settings.state_file == "s.json"


def test_cluster_settings_from_environment() -> None:
    settings = load_settings(
        env={
            "KUBE_HOST": "https://eks.example.com",
            "KUBE_TOKEN": "abc",
            "KUBE_INSECURE": "true",
            "KUBE_TLS_SERVER_NAME": "kubernetes",
            "KUBE_PROXY_URL": "http://proxy:3128",
            "KUBE_REQUEST_TIMEOUT_SECONDS": "12.5",
            "STATE_FILE": "/var/lib/cleaneks/state.json",
            "METRICS_TEXTFILE": "/var/lib/node-exporter/cleaneks.prom",
        }
    )

    cluster = settings.cluster
    assert cluster.host == "https://eks.example.com"
    assert cluster.token == "abc"
    assert cluster.insecure is True
    assert cluster.tls_server_name == "kubernetes"
    assert cluster.proxy_url == "http://proxy:3128"
    assert cluster.request_timeout_seconds == 12.5
    assert settings.state_file == "/var/lib/cleaneks/state.json"
    assert settings.metrics_textfile == "/var/lib/node-exporter/cleaneks.prom"


def test_config_paths_from_environment() -> None:
    joined = os.pathsep.join(["/a/config", "/b/config"])

    assert load_settings(env={"KUBE_CONFIG_PATHS": joined}).cluster.config_paths == (
        "/a/config",
        "/b/config",
    )
    assert load_settings(
        env={"KUBE_CONFIG_PATH": "/c/config", "KUBE_CONFIG_PATHS": joined}
    ).cluster.config_paths == ("/c/config",)


@pytest.mark.parametrize(
    "env",
    [
        {"KUBE_CLIENT_CERT_DATA": "cert"},
        {"KUBE_CLIENT_KEY_DATA": "key"},
        {"KUBE_USER": "admin"},
        {"KUBE_TOKEN": "abc", "KUBE_USER": "admin", "KUBE_PASSWORD": "pw"},
        {"KUBE_REQUEST_TIMEOUT_SECONDS": "0"},
        {"KUBE_REQUEST_TIMEOUT_SECONDS": "soon"},
        {"KUBE_CTX": "prod"},
        {"KUBE_CTX_CLUSTER": "other"},
        {"KUBE_CTX_AUTH_INFO": "admin"},
        {"KUBE_EXEC_ARGS": "eks get-token"},
        {"KUBE_HOST": "h", "KUBE_EXEC_COMMAND": "aws", "KUBE_TOKEN": "abc"},
        {"KUBE_EXEC_COMMAND": "aws"},
        {"KUBE_HOST": "h", "KUBE_EXEC_COMMAND": "aws", "KUBE_EXEC_ENV": "AWS_PROFILE"},
        {"KUBE_HOST": "h", "KUBE_EXEC_COMMAND": "aws", "KUBE_EXEC_ARGS": "\"unclosed"},
    ],
)
def test_contradictory_settings_are_rejected(env: dict[str, str]) -> None:
    with pytest.raises(ConfigError):
        load_settings(env=env)


def test_cluster_settings_repr_redacts_secrets() -> None:
    text = repr(ClusterSettings(host="h", token="s3cr3t", password="pw", client_key="key"))

    assert "s3cr3t" not in text
    assert "'pw'" not in text
    assert "[REDACTED]" in text
    assert "host='h'" in text


def test_env_bool_and_env_float_helpers() -> None:
    assert env_bool("X", True, env={}) is True
    assert env_bool("X", True, env={"X": "false"}) is False
    assert env_float("Y", 30.0, env={"Y": " "}) == 30.0
    assert env_float("Y", 30.0, env={"Y": "0.5"}) == 0.5
    assert env_bool("X", False, env={"X": " Yes "}) is True
    with pytest.raises(ConfigError, match="Y must be a number"):
        env_float("Y", 30.0, env={"Y": "soon"})


def test_load_settings_file(tmp_path: Path) -> None:
    path = tmp_path / "cleaneks.yaml"
    path.write_text("remove_core_dns: false\nimport_coredns_to_helm: true\nhost: eks.local\n")

    overrides = load_settings_file(path)
    settings = load_settings(env={}, overrides=overrides)

    assert overrides["remove_core_dns"] is False
    assert settings.desired.adopt_core_dns is True
    assert settings.cluster.host == "eks.local"


def test_load_settings_file_empty_returns_no_overrides(tmp_path: Path) -> None:
    path = tmp_path / "empty.yaml"
    path.write_text("")

    assert load_settings_file(path) == {}


@pytest.mark.parametrize("content", ["- a\n- b\n", "key: [unclosed\n"])
def test_load_settings_file_rejects_bad_content(tmp_path: Path, content: str) -> None:
    path = tmp_path / "bad.yaml"
    path.write_text(content)

    with pytest.raises(ConfigError):
        load_settings_file(path)


def test_load_settings_file_missing(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="Unable to read settings file"):
        load_settings_file(tmp_path / "missing.yaml")


def test_exec_plugin_from_environment() -> None:
    cluster = load_settings(
        env={
            "KUBE_HOST": "https://eks.example.com",
            "KUBE_EXEC_COMMAND": "aws",
            "KUBE_EXEC_ARGS": "eks get-token --cluster-name 'prod cluster'",
            "KUBE_EXEC_ENV": "AWS_PROFILE=prod AWS_REGION=eu-west-1",
        }
    ).cluster

    assert cluster.exec_command == "aws"
    assert cluster.exec_args == ("eks", "get-token", "--cluster-name", "prod cluster")
    assert cluster.exec_env == (("AWS_PROFILE", "prod"), ("AWS_REGION", "eu-west-1"))
    assert cluster.exec_api_version == "client.authentication.k8s.io/v1"
    assert "exec_env='[REDACTED]'" in repr(cluster)


def test_exec_plugin_from_settings_file(tmp_path: Path) -> None:
    path = tmp_path / "cleaneks.yaml"
    path.write_text(
        "host: eks.example.com\n"
        "exec_api_version: client.authentication.k8s.io/v1beta1\n"
        "exec_command: aws\n"
        "exec_args: [eks, get-token, --cluster-name, prod]\n"
        "exec_env:\n"
        "  AWS_PROFILE: prod\n"
    )

    cluster = load_settings(env={}, overrides=load_settings_file(path)).cluster

    assert cluster.exec_args == ("eks", "get-token", "--cluster-name", "prod")
    assert cluster.exec_env == (("AWS_PROFILE", "prod"),)
    assert cluster.exec_api_version == "client.authentication.k8s.io/v1beta1"


def test_context_overrides_from_environment() -> None:
    cluster = load_settings(
        env={
            "KUBE_CONFIG_PATH": "/a/config",
            "KUBE_CTX": "prod",
            "KUBE_CTX_CLUSTER": "prod-private",
            "KUBE_CTX_AUTH_INFO": "admin",
        }
    ).cluster

    assert cluster.config_context_cluster == "prod-private"
    assert cluster.config_context_auth_info == "admin"
