from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from typing import Any

import yaml

from ingresslb.src.model import (
    AFFINITIES,
    AFFINITY_NONE,
    PROTOCOL_HTTP11,
    PROTOCOLS,
    BackendConfig,
    PathConfig,
)

LOGGER = logging.getLogger(__name__)

INGRESS_CLASS_ANNOTATION = "kubernetes.io/ingress.class"
BACKEND_CONFIG_ANNOTATION = "ingress.zlab.co.jp/backend-config"
DEFAULT_BACKEND_CONFIG_ANNOTATION = "ingress.zlab.co.jp/default-backend-config"
PATH_CONFIG_ANNOTATION = "ingress.zlab.co.jp/path-config"
DEFAULT_PATH_CONFIG_ANNOTATION = "ingress.zlab.co.jp/default-path-config"

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def annotations_of(obj: Any) -> dict[str, str]:
    """Return an object's annotations as a plain ``dict[str, str]``."""
    annotations = getattr(getattr(obj, "metadata", None), "annotations", None)
    if not isinstance(annotations, dict):
        return {}
    return {k: ("" if v is None else str(v)) for k, v in annotations.items() if isinstance(k, str)}


def ingress_class(ingress: Any) -> str:
    """Return the class an Ingress asks for.

    The legacy annotation wins over ``spec.ingressClassName``; an Ingress
    with neither belongs to every controller.
    """
    annotated = annotations_of(ingress).get(INGRESS_CLASS_ANNOTATION)
    if annotated is not None:
        return annotated
    return getattr(getattr(ingress, "spec", None), "ingress_class_name", None) or ""


def class_matches(ingress: Any, configured_class: str) -> bool:
    return ingress_class(ingress) in {"", configured_class}


def selector_matches(selector: Mapping[str, str] | None, labels: Mapping[str, str] | None) -> bool:
    """Return True if *labels* carry every pair of *selector*.  An empty selector matches nothing."""
    if not selector:
        return False
    labels = labels or {}
    return all(labels.get(k) == v for k, v in selector.items())


def parse_duration(value: Any) -> float:
    """Parse a duration such as ``120s``, ``1m30s`` or ``500ms`` into seconds.

    Bare numbers are taken as seconds.
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, int | float):
        return float(value)
    text = str(value).strip()
    if not text:
        raise ValueError("empty duration")
    position = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            raise ValueError(f"invalid duration: {value!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if position != len(text):
        raise ValueError(f"invalid duration: {value!r}")
    return total


def _load_document(annotations: Mapping[str, str], key: str) -> dict[Any, Any] | None:
    """Load a JSON or YAML mapping stored in an annotation.

    Malformed content is logged and treated as if the annotation were absent.
    """
    data = annotations.get(key, "")
    if not data.strip():
        return None
    try:
        document = yaml.safe_load(data)
    except yaml.YAMLError as exc:
        LOGGER.error("Could not parse %s annotation: %s", key, exc)
        return None
    if not isinstance(document, dict):
        LOGGER.error("Annotation %s must contain a mapping", key)
        return None
    return document


def _optional_bool(raw: Mapping[str, Any], field_name: str) -> bool | None:
    value = raw.get(field_name)
    if value is None:
        return None
    if not isinstance(value, bool):
        raise ValueError(f"{field_name} must be a boolean, got: {value!r}")
    return value


def _optional_str(raw: Mapping[str, Any], field_name: str) -> str | None:
    value = raw.get(field_name)
    if value is None:
        return None
    return str(value)


def backend_config_from_dict(raw: Any) -> BackendConfig:
    if not isinstance(raw, dict):
        raise ValueError(f"backend config must be a mapping, got: {raw!r}")
    return BackendConfig(
        proto=_optional_str(raw, "proto"),
        tls=_optional_bool(raw, "tls"),
        sni=_optional_str(raw, "sni"),
        dns=_optional_bool(raw, "dns"),
        affinity=_optional_str(raw, "affinity"),
    )


def path_config_from_dict(raw: Any) -> PathConfig:
    if not isinstance(raw, dict):
        raise ValueError(f"path config must be a mapping, got: {raw!r}")
    read_timeout = raw.get("readTimeout")
    write_timeout = raw.get("writeTimeout")
    return PathConfig(
        read_timeout=None if read_timeout is None else parse_duration(read_timeout),
        write_timeout=None if write_timeout is None else parse_duration(write_timeout),
        redirect_if_not_tls=_optional_bool(raw, "redirectIfNotTLS"),
        mruby=_optional_str(raw, "mruby"),
    )


def backend_config_mapping(
    annotations: Mapping[str, str],
) -> tuple[BackendConfig | None, dict[str, dict[str, BackendConfig]]]:
    """Return ``(default, {service: {port: config}})`` from the backend config annotations.

    Every mapping entry already has the default merged underneath it.
    """
    default: BackendConfig | None = None
    default_document = _load_document(annotations, DEFAULT_BACKEND_CONFIG_ANNOTATION)
    if default_document is not None:
        try:
            default = backend_config_from_dict(default_document)
        except ValueError as exc:
            LOGGER.error("Invalid %s annotation: %s", DEFAULT_BACKEND_CONFIG_ANNOTATION, exc)

    mapping: dict[str, dict[str, BackendConfig]] = {}
    document = _load_document(annotations, BACKEND_CONFIG_ANNOTATION)
    if document is None:
        return default, mapping

    for service_name, ports in document.items():
        if not isinstance(ports, dict):
            LOGGER.error(
                "Invalid %s annotation: entry for service %s must be a mapping",
                BACKEND_CONFIG_ANNOTATION,
                service_name,
            )
            continue
        for port, raw in ports.items():
            try:
                config = backend_config_from_dict(raw)
            except ValueError as exc:
                LOGGER.error(
                    "Invalid %s annotation for %s:%s: %s",
                    BACKEND_CONFIG_ANNOTATION,
                    service_name,
                    port,
                    exc,
                )
                continue
            mapping.setdefault(str(service_name), {})[str(port)] = config.merged_over(default)
    return default, mapping


def path_config_mapping(
    annotations: Mapping[str, str],
) -> tuple[PathConfig | None, dict[str, PathConfig]]:
    """Return ``(default, {"host/path": config})`` from the path config annotations.

    A key without a ``/`` names a host and is normalised to ``host/``.
    """
    default: PathConfig | None = None
    default_document = _load_document(annotations, DEFAULT_PATH_CONFIG_ANNOTATION)
    if default_document is not None:
        try:
            default = path_config_from_dict(default_document)
        except ValueError as exc:
            LOGGER.error("Invalid %s annotation: %s", DEFAULT_PATH_CONFIG_ANNOTATION, exc)

    mapping: dict[str, PathConfig] = {}
    document = _load_document(annotations, PATH_CONFIG_ANNOTATION)
    if document is None:
        return default, mapping

    for host_path, raw in document.items():
        key = str(host_path)
        if "/" not in key:
            key += "/"
        try:
            config = path_config_from_dict(raw)
        except ValueError as exc:
            LOGGER.error("Invalid %s annotation for %s: %s", PATH_CONFIG_ANNOTATION, key, exc)
            continue
        mapping[key] = config.merged_over(default)
    return default, mapping


def fixup_backend_config(config: BackendConfig | None, service_key: str, port: str) -> BackendConfig:
    """Fill unspecified fields with defaults and coerce unknown values.

    Unrecognised protocols fall back to ``http/1.1`` and unrecognised
    affinities to ``none``, each with a warning naming the service port.
    """
    config = config or BackendConfig()
    proto = config.proto if config.proto is not None else PROTOCOL_HTTP11
    if proto not in PROTOCOLS:
        LOGGER.warning(
            "Unrecognized backend protocol %r for service %s port %s; using %s",
            proto,
            service_key,
            port,
            PROTOCOL_HTTP11,
        )
        proto = PROTOCOL_HTTP11
    affinity = config.affinity if config.affinity is not None else AFFINITY_NONE
    if affinity not in AFFINITIES:
        LOGGER.warning(
            "Unrecognized session affinity %r for service %s port %s; using %s",
            affinity,
            service_key,
            port,
            AFFINITY_NONE,
        )
        affinity = AFFINITY_NONE
    return BackendConfig(
        proto=proto,
        tls=bool(config.tls),
        sni=config.sni or "",
        dns=bool(config.dns),
        affinity=affinity,
    )
