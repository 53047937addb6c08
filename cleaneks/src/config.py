from __future__ import annotations

import os
import shlex
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from cleaneks.src.reconciler import DesiredState


class ConfigError(RuntimeError):
    """Raised when the cluster connection or run configuration is invalid."""


_TRUE_VALUES = {"1", "t", "true", "y", "yes", "on"}
_FALSE_VALUES = {"0", "f", "false", "n", "no", "off"}
DEFAULT_EXEC_API_VERSION = "client.authentication.k8s.io/v1"


def _coerce_bool(raw: Any, default: bool) -> bool:
    if isinstance(raw, bool):
        return raw
    if raw is None:
        return default
    text = str(raw).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    return default


def env_bool(name: str, default: bool, env: Mapping[str, str] | None = None) -> bool:
    """Read a boolean variable; unset or unparseable values fall back to *default*."""
    values = env if env is not None else os.environ
    return _coerce_bool(values.get(name), default)


def env_float(name: str, default: float, env: Mapping[str, str] | None = None) -> float:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number") from exc


@dataclass(frozen=True)
class ClusterSettings:
    """How to reach the cluster's API server.

    Resolution order in :func:`cleaneks.src.kube.build_api_client`: explicit
    kubeconfig paths, then an explicit ``host`` with inline credentials (token,
    basic auth, client certificate or an exec plugin such as ``aws eks
    get-token``), then in-cluster service account, then the default kubeconfig.
    """

    host: str = ""
    token: str = ""
    username: str = ""
    password: str = ""
    insecure: bool = False
    tls_server_name: str = ""
    cluster_ca_certificate: str = ""
    client_certificate: str = ""
    client_key: str = ""
    config_paths: tuple[str, ...] = ()
    config_context: str = ""
    config_context_cluster: str = ""
    config_context_auth_info: str = ""
    exec_api_version: str = DEFAULT_EXEC_API_VERSION
    exec_command: str = ""
    exec_args: tuple[str, ...] = ()
    exec_env: tuple[tuple[str, str], ...] = ()
    proxy_url: str = ""
    request_timeout_seconds: float = 30.0

    def __repr__(self) -> str:
        secret_fields = {"token", "password", "client_key", "exec_env"}
        parts = []
        for name in self.__dataclass_fields__:
            value = getattr(self, name)
            if name in secret_fields and value:
                value = "[REDACTED]"
            parts.append(f"{name}={value!r}")
        return f"ClusterSettings({', '.join(parts)})"


@dataclass(frozen=True)
class Settings:
    cluster: ClusterSettings = field(default_factory=ClusterSettings)
    desired: DesiredState = field(default_factory=DesiredState)
    state_file: str = "cleaneks-state.json"
    metrics_textfile: str = ""


def validate_cluster_settings(cluster: ClusterSettings) -> None:
    """Reject contradictory credentials before any API call is attempted."""
    if bool(cluster.client_certificate) != bool(cluster.client_key):
        raise ConfigError(
            "KUBE_CLIENT_CERT_DATA and KUBE_CLIENT_KEY_DATA must be provided together"
        )
    if bool(cluster.username) != bool(cluster.password):
        raise ConfigError("KUBE_USER and KUBE_PASSWORD must be provided together")
    if cluster.token and cluster.username:
        raise ConfigError("KUBE_TOKEN cannot be combined with KUBE_USER/KUBE_PASSWORD")
    if cluster.request_timeout_seconds <= 0:
        raise ConfigError(
            "KUBE_REQUEST_TIMEOUT_SECONDS must be > 0, "
            f"got: {cluster.request_timeout_seconds}"
        )
    if (
        cluster.config_context or cluster.config_context_cluster or cluster.config_context_auth_info
    ) and not cluster.config_paths:
        raise ConfigError(
            "KUBE_CTX, KUBE_CTX_CLUSTER and KUBE_CTX_AUTH_INFO require "
            "KUBE_CONFIG_PATH or KUBE_CONFIG_PATHS"
        )
    if (cluster.exec_args or cluster.exec_env) and not cluster.exec_command:
        raise ConfigError("KUBE_EXEC_ARGS and KUBE_EXEC_ENV require KUBE_EXEC_COMMAND")
    if cluster.exec_command:
        if cluster.token or cluster.username:
            raise ConfigError(
                "KUBE_EXEC_COMMAND cannot be combined with KUBE_TOKEN or KUBE_USER/KUBE_PASSWORD"
            )
        if not cluster.host:
            raise ConfigError("KUBE_EXEC_COMMAND requires KUBE_HOST")


def load_settings_file(path: str | Path) -> dict[str, Any]:
    """Load optional YAML overrides; keys match the lower-cased env names."""
    try:
        raw = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigError(f"Unable to read settings file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Settings file {path} is not valid YAML: {exc}") from exc
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Settings file {path} must contain a mapping")
    return raw


def _config_paths(values: Mapping[str, str], overrides: Mapping[str, Any]) -> tuple[str, ...]:
    if "config_paths" in overrides:
        paths = overrides["config_paths"] or []
        if isinstance(paths, str):
            paths = [paths]
        return tuple(str(p) for p in paths if p)
    if "config_path" in overrides and overrides["config_path"]:
        return (str(overrides["config_path"]),)
    single = values.get("KUBE_CONFIG_PATH", "")
    if single:
        return (single,)
    multi = values.get("KUBE_CONFIG_PATHS", "")
    return tuple(p for p in multi.split(os.pathsep) if p)


def _exec_args(raw: Any) -> tuple[str, ...]:
    if raw is None or raw == "":
        return ()
    if isinstance(raw, str):
        try:
            return tuple(shlex.split(raw))
        except ValueError as exc:
            raise ConfigError(f"KUBE_EXEC_ARGS is not a valid argument list: {exc}") from exc
    if isinstance(raw, (list, tuple)):
        return tuple(str(arg) for arg in raw)
    raise ConfigError("exec_args must be a list or a string")


def _exec_env(raw: Any) -> tuple[tuple[str, str], ...]:
    """Accept a mapping (settings file) or ``NAME=value`` pairs (environment)."""
    if raw is None or raw == "":
        return ()
    if isinstance(raw, Mapping):
        return tuple((str(k), "" if v is None else str(v)) for k, v in raw.items())
    if not isinstance(raw, str):
        raise ConfigError("exec_env must be a mapping or NAME=value pairs")
    try:
        tokens = shlex.split(raw)
    except ValueError as exc:
        raise ConfigError(f"KUBE_EXEC_ENV is not valid: {exc}") from exc
    pairs = []
    for token in tokens:
        name, sep, value = token.partition("=")
        if not sep or not name:
            raise ConfigError(f"KUBE_EXEC_ENV entries must be NAME=value, got: {token!r}")
        pairs.append((name, value))
    return tuple(pairs)


def load_settings(
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Build :class:`Settings` from the environment, then apply *overrides*."""
    values = env if env is not None else os.environ
    extra = dict(overrides or {})

    def text(key: str, env_name: str) -> str:
        if key in extra and extra[key] is not None:
            return str(extra[key])
        return values.get(env_name, "")

    def flag(key: str, env_name: str, default: bool) -> bool:
        base = env_bool(env_name, default, env=values)
        return _coerce_bool(extra.get(key), base)

    def raw(key: str, env_name: str) -> Any:
        return extra[key] if key in extra else values.get(env_name)

    if "request_timeout_seconds" in extra:
        try:
            timeout = float(extra["request_timeout_seconds"])
        except (TypeError, ValueError) as exc:
            raise ConfigError("request_timeout_seconds must be a number") from exc
    else:
        timeout = env_float("KUBE_REQUEST_TIMEOUT_SECONDS", 30.0, env=values)

    cluster = ClusterSettings(
        host=text("host", "KUBE_HOST"),
        token=text("token", "KUBE_TOKEN"),
        username=text("username", "KUBE_USER"),
        password=text("password", "KUBE_PASSWORD"),
        insecure=flag("insecure", "KUBE_INSECURE", False),
        tls_server_name=text("tls_server_name", "KUBE_TLS_SERVER_NAME"),
        cluster_ca_certificate=text("cluster_ca_certificate", "KUBE_CLUSTER_CA_CERT_DATA"),
        client_certificate=text("client_certificate", "KUBE_CLIENT_CERT_DATA"),
        client_key=text("client_key", "KUBE_CLIENT_KEY_DATA"),
        config_paths=_config_paths(values, extra),
        config_context=text("config_context", "KUBE_CTX"),
        config_context_cluster=text("config_context_cluster", "KUBE_CTX_CLUSTER"),
        config_context_auth_info=text("config_context_auth_info", "KUBE_CTX_AUTH_INFO"),
        exec_api_version=(
            text("exec_api_version", "KUBE_EXEC_API_VERSION") or DEFAULT_EXEC_API_VERSION
        ),
        exec_command=text("exec_command", "KUBE_EXEC_COMMAND"),
        exec_args=_exec_args(raw("exec_args", "KUBE_EXEC_ARGS")),
        exec_env=_exec_env(raw("exec_env", "KUBE_EXEC_ENV")),
        proxy_url=text("proxy_url", "KUBE_PROXY_URL"),
        request_timeout_seconds=timeout,
    )
    validate_cluster_settings(cluster)

    desired = DesiredState(
        remove_aws_cni=flag("remove_aws_cni", "REMOVE_AWS_CNI", True),
        remove_kube_proxy=flag("remove_kube_proxy", "REMOVE_KUBE_PROXY", True),
        remove_core_dns=flag("remove_core_dns", "REMOVE_CORE_DNS", True),
        import_coredns_to_helm=flag("import_coredns_to_helm", "IMPORT_COREDNS_TO_HELM", False),
    )

    return Settings(
        cluster=cluster,
        desired=desired,
        state_file=text("state_file", "STATE_FILE") or "cleaneks-state.json",
        metrics_textfile=text("metrics_textfile", "METRICS_TEXTFILE"),
    )
