"""Translates the ManagedDatabase watch stream into WorkQueue keys"""

import threading
from typing import Any, Dict, Optional

from kubernetes.client.rest import ApiException

from .log import get_logger
from .models import ManagedDatabase
from .scheduler import WorkQueue
from .store import StatusStore

logger = get_logger("watcher")

RECONNECT_DELAY = 5.0


class Watcher:
    """
    List-then-watch loop feeding the work queue

    Every object is queued after a (re)list. During the watch only events
    that need a pass are queued: new objects, spec changes (generation bumps,
    queued at the front) and deletion markers. Status-only updates, including
    the controller's own, are recorded in the store and otherwise ignored.
    """

    def __init__(self, kube, queue: WorkQueue, store: StatusStore, namespace: str = "",
                 timeout_seconds: int = 30, stop_event: Optional[threading.Event] = None):
        self.kube = kube
        self.queue = queue
        self.store = store
        self.namespace = namespace
        self.timeout_seconds = timeout_seconds
        self._stopping = stop_event or threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.resource_version: Optional[str] = None

    def start(self):
        self._thread = threading.Thread(target=self.run, name="watcher", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0):
        self._stopping.set()
        self.kube.stop_watch()
        if self._thread is not None:
            self._thread.join(timeout)

    def run(self):
        scope = f"namespace {self.namespace}" if self.namespace else "all namespaces"
        logger.info(f"Watching ManagedDatabases in {scope}")
        while not self._stopping.is_set():
            try:
                if not self.resource_version:
                    self.relist()
                for event_type, obj in self.kube.watch(self.namespace, self.resource_version, self.timeout_seconds):
                    if self._stopping.is_set():
                        break
                    self.dispatch(event_type, obj)
            except ApiException as e:
                if e.status == 410:
                    logger.info("Watch resourceVersion expired, relisting")
                    self.resource_version = None
                    continue
                logger.warning(f"Watch failed ({e.status}): {e.reason}, reconnecting in {RECONNECT_DELAY}s")
                self._stopping.wait(RECONNECT_DELAY)
            except Exception as e:
                logger.warning(f"Watch connection lost: {e}, reconnecting in {RECONNECT_DELAY}s")
                self._stopping.wait(RECONNECT_DELAY)
        logger.info("Watcher stopped")

    def relist(self):
        """Queue every existing object and forget the ones deleted while disconnected"""
        items, resource_version = self.kube.list(self.namespace)
        seen = set()
        for resource in items:
            seen.add(resource.key)
            self.store.observe(resource)
            self.queue.add(resource.key)
        for snapshot in self.store.list():
            if snapshot["id"] not in seen:
                self._forget(snapshot["id"])
        self.resource_version = resource_version
        logger.info(f"Listed {len(items)} ManagedDatabases (resourceVersion {resource_version})")

    def dispatch(self, event_type: str, obj: Dict[str, Any]):
        metadata = obj.get("metadata") or {}
        if metadata.get("resourceVersion"):
            self.resource_version = metadata["resourceVersion"]
        if event_type == "BOOKMARK":
            return

        resource = ManagedDatabase.from_object(obj)
        key = resource.key

        if event_type == "DELETED":
            self._forget(key)
            return

        previous = self.store.get(key)
        self.store.observe(resource)

        if event_type == "ADDED" or previous is None:
            self.queue.add(key)
        elif previous["generation"] != resource.generation:
            logger.info(f"{key} changed (generation {previous['generation']} -> {resource.generation})")
            self.queue.add(key, front=True)
        elif resource.deleting and not previous["deleting"]:
            logger.info(f"{key} marked for deletion")
            self.queue.add(key, front=True)

    def _forget(self, key: str):
        logger.info(f"{key} deleted")
        self.store.remove(key)
        self.queue.forget(key)
