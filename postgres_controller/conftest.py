"""
In-memory stand-ins for PostgreSQL and the Kubernetes API

FakeSession keeps roles and databases in dicts and records every mutating
call, so tests can assert on exactly what a pass did. FakeKube stores raw
objects and enforces resourceVersion checks like the API server.
"""

import copy
import itertools
from contextlib import contextmanager
from typing import Any, Dict, List, Optional, Tuple

import psycopg2.errors
import pytest
from kubernetes.client.rest import ApiException

from .config import Config
from .database import LOOKUP_FUNCTION_BODY
from .errors import ConflictError
from .kube import StoredSecret
from .models import (FINALIZER, GROUP, KIND, VERSION, DatabaseRecord, DatabaseStatus, ManagedDatabase,
                     RoleAttributes, RoleRecord, make_key)
from .reconciler import Reconciler
from .scheduler import Request
from .store import StatusStore
from .vault import CredentialVault

MUTATIONS = {
    "create_role", "alter_role_attributes", "set_role_password", "drop_role", "reassign_owned",
    "create_database", "alter_database_owner", "drop_database", "grant_privileges",
    "create_login_role", "create_schema", "replace_lookup_function", "grant_schema_usage",
    "grant_lookup_execute", "revoke_lookup_public",
}


class FakeSession:
    """A PostgreSQL server reduced to the catalog state the controller reads"""

    def __init__(self):
        self.roles: Dict[str, RoleRecord] = {}
        self.passwords: Dict[str, Optional[str]] = {}
        self.databases: Dict[str, DatabaseRecord] = {}
        self.calls: List[Tuple[str, tuple]] = []
        self.failures: Dict[str, BaseException] = {}
        self.dependents: set = set()
        self.schemas: set = set()
        self.function_source: Optional[str] = None
        self.schema_usage: set = set()
        self.grantees: set = set()
        self.connected_to: List[str] = []

    def fail(self, method: str, error: BaseException):
        """Make the next call to a method raise"""
        self.failures[method] = error

    def _call(self, method: str, *args):
        if method in self.failures:
            raise self.failures.pop(method)
        if method in MUTATIONS:
            self.calls.append((method, args))

    @property
    def mutations(self) -> List[str]:
        return [name for name, _ in self.calls]

    def add_role(self, name: str, comment: Optional[str] = None, password: Optional[str] = None, **flags):
        attributes = RoleAttributes(**flags)
        self.roles[name] = RoleRecord(name=name, comment=comment, **attributes.__dict__)
        self.passwords[name] = password

    def add_database(self, name: str, owner: str, comment: Optional[str] = None, public_connect: bool = False):
        self.databases[name] = DatabaseRecord(name=name, owner=owner, comment=comment,
                                              public_connect=public_connect)

    # ------------------------------------------------------------------ roles

    def ping(self):
        self._call("ping")

    def fetch_role(self, name):
        self._call("fetch_role", name)
        role = self.roles.get(name)
        return copy.deepcopy(role)

    def role_exists(self, name):
        return name in self.roles

    def create_role(self, name, attributes, password, comment=None):
        self._call("create_role", name, attributes, comment)
        if name in self.roles:
            return False
        self.add_role(name, comment=comment, password=password, **attributes.__dict__)
        return True

    def alter_role_attributes(self, name, attributes):
        self._call("alter_role_attributes", name, attributes)
        comment = self.roles[name].comment
        self.roles[name] = RoleRecord(name=name, comment=comment, **attributes.__dict__)

    def set_role_password(self, name, password):
        self._call("set_role_password", name)
        self.passwords[name] = password

    def drop_role(self, name):
        self._call("drop_role", name)
        if name in self.dependents:
            raise psycopg2.errors.DependentObjectsStillExist(f"role \"{name}\" cannot be dropped")
        self.roles.pop(name, None)
        self.passwords.pop(name, None)

    def reassign_owned(self, role, new_owner):
        self._call("reassign_owned", role, new_owner)
        for database in self.databases.values():
            if database.owner == role:
                database.owner = new_owner

    # -------------------------------------------------------------- databases

    def fetch_database(self, name):
        self._call("fetch_database", name)
        return copy.deepcopy(self.databases.get(name))

    def database_exists(self, name):
        return name in self.databases

    def create_database(self, name, owner, comment=None):
        self._call("create_database", name, owner, comment)
        if name in self.databases:
            return False
        self.add_database(name, owner, comment, public_connect=True)
        return True

    def alter_database_owner(self, name, owner):
        self._call("alter_database_owner", name, owner)
        self.databases[name].owner = owner

    def drop_database(self, name):
        self._call("drop_database", name)
        self.databases.pop(name, None)

    def grant_privileges(self, database, role):
        self._call("grant_privileges", database, role)
        self.databases[database].public_connect = False

    # -------------------------------------------------------------- auth hook

    def create_login_role(self, name):
        self._call("create_login_role", name)
        self.add_role(name)

    def schema_exists(self, schema):
        return schema in self.schemas

    def create_schema(self, schema):
        self._call("create_schema", schema)
        self.schemas.add(schema)

    def lookup_function_source(self, schema):
        return self.function_source

    def replace_lookup_function(self, schema):
        self._call("replace_lookup_function", schema)
        self.function_source = LOOKUP_FUNCTION_BODY
        self.grantees.add("PUBLIC")

    def has_schema_usage(self, role, schema):
        return (role, schema) in self.schema_usage

    def grant_schema_usage(self, schema, role):
        self._call("grant_schema_usage", schema, role)
        self.schema_usage.add((role, schema))

    def lookup_function_grantees(self, schema):
        return set(self.grantees)

    def grant_lookup_execute(self, schema, role):
        self._call("grant_lookup_execute", schema, role)
        self.grantees.add(role)

    def revoke_lookup_public(self, schema):
        self._call("revoke_lookup_public", schema)
        self.grantees.discard("PUBLIC")


class FakeDatabaseClient:
    """DatabaseClient handing out a single FakeSession"""

    def __init__(self, session: FakeSession):
        self.fake = session
        self.session_failure: Optional[BaseException] = None
        self.sessions_opened = 0
        self.closed = False

    @contextmanager
    def session(self):
        if self.session_failure is not None:
            error, self.session_failure = self.session_failure, None
            raise error
        self.sessions_opened += 1
        yield self.fake

    @contextmanager
    def connect(self, dbname):
        self.fake.connected_to.append(dbname)
        yield self.fake

    def ping(self):
        with self.session() as session:
            session.ping()

    def close(self):
        self.closed = True


class FakeKube:
    """KubernetesClient backed by dicts, with resourceVersion conflict checks"""

    def __init__(self):
        self.objects: Dict[str, Dict[str, Any]] = {}
        self.secrets: Dict[Tuple[str, str], StoredSecret] = {}
        self.secret_writes: List[Tuple[str, str]] = []
        self.secret_deletes: List[Tuple[str, str]] = []
        self.status_writes: List[Dict[str, Any]] = []
        self.failures: Dict[str, BaseException] = {}
        self.crds: List[Dict[str, Any]] = []
        self.events: List[Tuple[str, Dict[str, Any]]] = []
        self.watch_stopped = False
        self._versions = itertools.count(100)

    def fail(self, method: str, error: BaseException):
        self.failures[method] = error

    def _maybe_fail(self, method: str):
        if method in self.failures:
            raise self.failures.pop(method)

    def _bump(self, obj: Dict[str, Any]):
        obj["metadata"]["resourceVersion"] = str(next(self._versions))

    # ------------------------------------------------------ test-side helpers

    def create(self, namespace: str, name: str, spec: Optional[Dict[str, Any]] = None) -> ManagedDatabase:
        obj = {
            "apiVersion": f"{GROUP}/{VERSION}",
            "kind": KIND,
            "metadata": {"namespace": namespace, "name": name, "generation": 1,
                         "uid": f"uid-{namespace}-{name}", "finalizers": []},
            "spec": spec or {},
        }
        self._bump(obj)
        self.objects[make_key(namespace, name)] = obj
        return ManagedDatabase.from_object(copy.deepcopy(obj))

    def edit_spec(self, key: str, spec: Dict[str, Any]):
        obj = self.objects[key]
        obj["spec"] = spec
        obj["metadata"]["generation"] += 1
        self._bump(obj)

    def mark_deleted(self, key: str):
        obj = self.objects[key]
        obj["metadata"]["deletionTimestamp"] = "2026-01-01T00:00:00Z"
        self._bump(obj)

    def raw(self, key: str) -> Dict[str, Any]:
        return self.objects[key]

    def status(self, key: str) -> DatabaseStatus:
        return DatabaseStatus.from_dict(self.objects[key].get("status"))

    # ------------------------------------------------------- client interface

    def get(self, namespace, name):
        self._maybe_fail("get")
        obj = self.objects.get(make_key(namespace, name))
        return ManagedDatabase.from_object(copy.deepcopy(obj)) if obj else None

    def list(self, namespace=""):
        self._maybe_fail("list")
        items = [ManagedDatabase.from_object(copy.deepcopy(obj)) for obj in self.objects.values()
                 if not namespace or obj["metadata"]["namespace"] == namespace]
        return items, "100"

    def watch(self, namespace, resource_version, timeout_seconds):
        self._maybe_fail("watch")
        events, self.events = self.events, []
        for event in events:
            yield event

    def stop_watch(self):
        self.watch_stopped = True

    def _current(self, resource: ManagedDatabase) -> Dict[str, Any]:
        obj = self.objects.get(resource.key)
        if obj is None:
            raise ApiException(status=404, reason="Not Found")
        if obj["metadata"]["resourceVersion"] != resource.resource_version:
            raise ConflictError(f"{resource.key} was modified concurrently")
        return obj

    def patch_status(self, resource, status):
        self._maybe_fail("patch_status")
        obj = self._current(resource)
        obj["status"] = copy.deepcopy(status.to_dict())
        self.status_writes.append(copy.deepcopy(obj["status"]))
        self._bump(obj)
        return ManagedDatabase.from_object(copy.deepcopy(obj))

    def add_finalizer(self, resource):
        self._maybe_fail("add_finalizer")
        if FINALIZER in resource.finalizers:
            return resource
        obj = self._current(resource)
        obj["metadata"]["finalizers"] = resource.finalizers + [FINALIZER]
        self._bump(obj)
        return ManagedDatabase.from_object(copy.deepcopy(obj))

    def remove_finalizer(self, resource):
        self._maybe_fail("remove_finalizer")
        obj = self._current(resource)
        obj["metadata"]["finalizers"] = [f for f in resource.finalizers if f != FINALIZER]
        if obj["metadata"].get("deletionTimestamp") and not obj["metadata"]["finalizers"]:
            del self.objects[resource.key]
            return None
        self._bump(obj)
        return ManagedDatabase.from_object(copy.deepcopy(obj))

    def read_secret(self, namespace, name):
        self._maybe_fail("read_secret")
        return copy.deepcopy(self.secrets.get((namespace, name)))

    def write_secret(self, namespace, name, data, labels, annotations, owner=None, remove_keys=()):
        self._maybe_fail("write_secret")
        self.secret_writes.append((namespace, name))
        existing = self.secrets.get((namespace, name))
        merged = dict(existing.data) if existing else {}
        merged.update(data)
        for key in remove_keys:
            merged.pop(key, None)
        merged_annotations = dict(existing.annotations) if existing else {}
        merged_annotations.update(annotations)
        self.secrets[(namespace, name)] = StoredSecret(namespace=namespace, name=name, data=merged,
                                                       annotations=merged_annotations)

    def delete_secret(self, namespace, name):
        self._maybe_fail("delete_secret")
        self.secret_deletes.append((namespace, name))
        self.secrets.pop((namespace, name), None)

    def apply_crd(self, manifest):
        self._maybe_fail("apply_crd")
        self.crds.append(manifest)


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def config():
    return Config.load(environ={})


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def db(session):
    return FakeDatabaseClient(session)


@pytest.fixture
def kube():
    return FakeKube()


@pytest.fixture
def store():
    return StatusStore()


@pytest.fixture
def vault(kube, config):
    return CredentialVault(kube, config)


@pytest.fixture
def reconciler(kube, db, vault, store, config):
    return Reconciler(kube, db, vault, store, config)


@pytest.fixture
def reconcile(reconciler):
    """Run one pass for a key and return its Result"""
    def run(key: str, forced: bool = False, rotate: bool = False):
        return reconciler.handle(Request(key=key, forced=forced, rotate=rotate))
    return run
