from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class WatchedKind(str, Enum):
    """The closed set of object kinds the controllers watch."""

    SERVICE = "Service"
    NAMESPACE = "Namespace"


@dataclass(frozen=True)
class ObjectKey:
    """Identity of a watched object; this is what sits in the work queue.

    ``namespace`` is ``""`` for cluster-scoped kinds.
    """

    kind: WatchedKind
    namespace: str
    name: str

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.kind.value}/{self.namespace}/{self.name}"
        return f"{self.kind.value}/{self.name}"


@dataclass(frozen=True)
class Notification:
    """A resolved work item handed to a sync function.

    ``obj`` is the cached object, or the last copy seen before deletion when
    ``deleted`` is true.  It may be ``None`` if the deletion was observed
    without a final state (e.g. the object vanished during a re-list that
    happened after its tombstone was already consumed).
    """

    key: ObjectKey
    obj: Any
    deleted: bool = False


@dataclass(frozen=True)
class SyncResult:
    """Record of the mutations a single sync issued.

    Each tuple holds ``"Kind/name"`` strings.  An all-empty result means the
    observed state already matched the desired state.
    """

    key: ObjectKey
    created: tuple[str, ...] = ()
    updated: tuple[str, ...] = ()
    deleted: tuple[str, ...] = ()

    @property
    def mutated(self) -> bool:
        return bool(self.created or self.updated or self.deleted)


class SyncError(Exception):
    """Base class for failures reported by a sync function."""


class TransientSyncError(SyncError):
    """A cluster API call failed; the item should be retried with backoff."""


class MalformedInputError(SyncError):
    """The work item cannot be processed and retrying will not help."""


def object_key(kind: WatchedKind, obj: Any) -> ObjectKey:
    """Build the work-queue identity for a Kubernetes model object."""
    metadata = getattr(obj, "metadata", None)
    name = getattr(metadata, "name", None)
    if not name:
        raise MalformedInputError(f"{kind.value} object without metadata.name")
    namespace = getattr(metadata, "namespace", None) or ""
    return ObjectKey(kind=kind, namespace=namespace, name=name)


def object_labels(obj: Any) -> dict[str, str]:
    metadata = getattr(obj, "metadata", None)
    labels = getattr(metadata, "labels", None)
    if not isinstance(labels, dict):
        return {}
    return labels
