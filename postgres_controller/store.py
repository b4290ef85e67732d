"""In-memory snapshots of ManagedDatabase status, served by the Management API"""

import threading
from typing import Any, Dict, List, Optional

from .models import ManagedDatabase


def _newer(candidate: Optional[str], current: Optional[str]) -> bool:
    # resourceVersion is opaque; only compare when both look like etcd revisions
    if candidate and current and candidate.isdigit() and current.isdigit():
        return int(candidate) >= int(current)
    return True


class StatusStore:
    """Last observed state of every known ManagedDatabase"""

    def __init__(self):
        self._lock = threading.Lock()
        self._items: Dict[str, ManagedDatabase] = {}

    def observe(self, resource: ManagedDatabase):
        """Record a resource as read from or written to the API server"""
        with self._lock:
            current = self._items.get(resource.key)
            if current is None or _newer(resource.resource_version, current.resource_version):
                self._items[resource.key] = resource

    def remove(self, key: str):
        with self._lock:
            self._items.pop(key, None)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._items

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            resource = self._items.get(key)
            return snapshot(resource) if resource else None

    def list(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [snapshot(self._items[key]) for key in sorted(self._items)]


def snapshot(resource: ManagedDatabase) -> Dict[str, Any]:
    return {
        "id": resource.key,
        "namespace": resource.namespace,
        "name": resource.name,
        "generation": resource.generation,
        "deleting": resource.deleting,
        "spec": resource.spec,
        "status": resource.status.to_dict(),
    }
