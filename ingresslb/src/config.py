from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from ingresslb.src.events import split_key

DEFAULT_INGRESS_CLASS = "nghttpx"


class ConfigError(ValueError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration loaded at startup.

    Object references (``default_backend_service``, ``default_tls_secret``,
    ``proxy_configmap``, ``publish_service``) are ``namespace/name`` keys.
    """

    pod_name: str
    pod_namespace: str
    default_backend_service: str
    default_tls_secret: str = ""
    proxy_configmap: str = ""
    publish_service: str = ""
    watch_namespace: str = ""
    ingress_class: str = DEFAULT_INGRESS_CLASS
    allow_internal_ip: bool = False
    reload_rate: float = 1.0
    reload_burst: int = 1
    resync_period_seconds: int = 30
    status_update_interval_seconds: int = 30
    proxy_conf_dir: str = "/etc/nghttpx"
    proxy_reload_command: str = ""
    health_port: int = 11249
    log_level: str = "INFO"


def parse_bool(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(
    values: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = values.get(name)
    if raw is None or not raw.strip():
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def env_float(values: Mapping[str, str], name: str, default: float, *, minimum: float) -> float:
    raw = values.get(name)
    if raw is None or not raw.strip():
        value = default
    else:
        try:
            value = float(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be a number") from exc
    if value <= minimum:
        raise ConfigError(f"{name} must be > {minimum}, got: {value}")
    return value


def _object_key(values: Mapping[str, str], name: str, required: bool = False) -> str:
    raw = (values.get(name) or "").strip()
    if not raw:
        if required:
            raise ConfigError(f"{name} must be set")
        return ""
    try:
        namespace, object_name = split_key(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must have the form namespace/name, got: {raw!r}") from exc
    if not namespace:
        raise ConfigError(f"{name} must have the form namespace/name, got: {raw!r}")
    return f"{namespace}/{object_name}"


def load_config(env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Load controller config from the environment.

    ``POD_NAME``, ``POD_NAMESPACE`` and ``DEFAULT_BACKEND_SERVICE`` are
    required; everything else has a default.  Raises :class:`ConfigError`
    so a misconfigured controller fails at startup instead of serving a
    half-working proxy.
    """
    values = env if env is not None else os.environ

    pod_name = (values.get("POD_NAME") or "").strip()
    if not pod_name:
        raise ConfigError("POD_NAME must be set")
    pod_namespace = (values.get("POD_NAMESPACE") or "").strip()
    if not pod_namespace:
        raise ConfigError("POD_NAMESPACE must be set")

    ingress_class = (values.get("INGRESS_CLASS") or DEFAULT_INGRESS_CLASS).strip()
    if not ingress_class:
        raise ConfigError("INGRESS_CLASS must be a non-empty string")

    return ControllerConfig(
        pod_name=pod_name,
        pod_namespace=pod_namespace,
        default_backend_service=_object_key(values, "DEFAULT_BACKEND_SERVICE", required=True),
        default_tls_secret=_object_key(values, "DEFAULT_TLS_SECRET"),
        proxy_configmap=_object_key(values, "PROXY_CONFIGMAP"),
        publish_service=_object_key(values, "PUBLISH_SERVICE"),
        watch_namespace=(values.get("WATCH_NAMESPACE") or "").strip(),
        ingress_class=ingress_class,
        allow_internal_ip=parse_bool(values.get("ALLOW_INTERNAL_IP")),
        reload_rate=env_float(values, "RELOAD_RATE", 1.0, minimum=0),
        reload_burst=env_int(values, "RELOAD_BURST", 1, minimum=1),
        resync_period_seconds=env_int(values, "RESYNC_PERIOD_SECONDS", 30, minimum=0),
        status_update_interval_seconds=env_int(
            values, "STATUS_UPDATE_INTERVAL_SECONDS", 30, minimum=1
        ),
        proxy_conf_dir=values.get("PROXY_CONF_DIR") or "/etc/nghttpx",
        proxy_reload_command=(values.get("PROXY_RELOAD_COMMAND") or "").strip(),
        health_port=env_int(values, "HEALTH_PORT", 11249, minimum=1, maximum=65535),
        log_level=(values.get("LOG_LEVEL") or "INFO").strip().upper(),
    )
