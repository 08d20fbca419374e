from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any


class ResourceKind(enum.Enum):
    """Kinds of cluster objects mirrored by the controller."""

    INGRESS = "Ingress"
    SERVICE = "Service"
    ENDPOINTS = "Endpoints"
    SECRET = "Secret"
    CONFIGMAP = "ConfigMap"
    POD = "Pod"


@dataclass(frozen=True)
class DeletedFinalStateUnknown:
    """Last known state of an object whose deletion was missed by the watch.

    Produced when a re-list no longer contains an object that is still in the
    local store, so the delete event itself was never observed.
    """

    key: str
    obj: Any


@dataclass(frozen=True)
class Added:
    obj: Any


@dataclass(frozen=True)
class Updated:
    old: Any
    new: Any


@dataclass(frozen=True)
class Deleted:
    state: Any  # the object itself or a DeletedFinalStateUnknown

    @property
    def obj(self) -> Any:
        if isinstance(self.state, DeletedFinalStateUnknown):
            return self.state.obj
        return self.state


Event = Added | Updated | Deleted


def object_key(obj: Any) -> str:
    """Return the ``namespace/name`` store key of an object (``name`` when cluster scoped)."""
    metadata = getattr(obj, "metadata", None)
    name = getattr(metadata, "name", None) or ""
    namespace = getattr(metadata, "namespace", None)
    if namespace:
        return f"{namespace}/{name}"
    return name


def split_key(key: str) -> tuple[str, str]:
    """Split a ``namespace/name`` key.  Raises ``ValueError`` when malformed."""
    parts = key.split("/")
    if len(parts) == 1 and parts[0]:
        return "", parts[0]
    if len(parts) == 2 and parts[0] and parts[1]:
        return parts[0], parts[1]
    raise ValueError(f"unexpected key format: {key!r}")
