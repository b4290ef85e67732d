"""
Data models

ManagedDatabase mirrors the custom resource (desired state plus status).
RoleRecord and DatabaseRecord mirror what actually exists on the server and
are rebuilt on every reconcile pass.
"""

import hashlib
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .errors import PermanentError


GROUP = "postgres-controller.io"
VERSION = "v1"
KIND = "ManagedDatabase"
PLURAL = "manageddatabases"
SINGULAR = "manageddatabase"
FINALIZER = f"{GROUP}/cleanup"

MANAGED_BY = "postgres-controller"
ANNOTATION_RESOURCE = f"{GROUP}/resource"
ANNOTATION_ROLE = f"{GROUP}/role"

# PostgreSQL truncates identifiers to NAMEDATALEN - 1 bytes
MAX_IDENTIFIER_BYTES = 63


class Phase:
    PENDING = "Pending"
    PROVISIONING = "Provisioning"
    READY = "Ready"
    DELETING = "Deleting"
    FAILED = "Failed"


class ConditionType:
    READY = "Ready"
    CREDENTIAL_READY = "CredentialReady"
    DELETING = "Deleting"


def utcnow() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def make_key(namespace: str, name: str) -> str:
    return f"{namespace}/{name}"


def split_key(key: str):
    namespace, sep, name = key.partition("/")
    if not sep or not namespace or not name or "/" in name:
        raise ValueError(f"invalid resource key {key!r}, expected <namespace>/<name>")
    return namespace, name


# ============================================================================
# DESIRED STATE
# ============================================================================

@dataclass
class RoleAttributes:
    """Role attribute flags; always applied as a complete set"""
    can_login: bool = True
    create_db: bool = False
    create_role: bool = False
    bypass_rls: bool = False
    superuser: bool = False

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RoleAttributes":
        data = data or {}
        if not isinstance(data, dict):
            raise PermanentError("privileges must be an object", reason="InvalidSpec")
        flags = {
            "can_login": data.get("canLogin", True),
            "create_db": data.get("createDb", False),
            "create_role": data.get("createRole", False),
            "bypass_rls": data.get("bypassRls", False),
            "superuser": data.get("superuser", False),
        }
        for flag, value in flags.items():
            if not isinstance(value, bool):
                raise PermanentError(f"privilege flag {flag} must be a boolean, got {value!r}",
                                     reason="InvalidSpec")
        return cls(**flags)

    def to_dict(self) -> Dict[str, bool]:
        return {
            "canLogin": self.can_login,
            "createDb": self.create_db,
            "createRole": self.create_role,
            "bypassRls": self.bypass_rls,
            "superuser": self.superuser,
        }


@dataclass
class SecretSpec:
    name: Optional[str] = None
    namespaces: List[str] = field(default_factory=list)


@dataclass
class PasswordSecretRef:
    """Secret key holding an operator-supplied password"""
    name: str
    key: str


@dataclass
class PasswordSource:
    """
    Operator-supplied password, given inline or as a reference to a secret

    Exactly one of value and from_secret is set. Without a source the
    controller generates the password itself.
    """
    value: Optional[str] = None
    from_secret: Optional[PasswordSecretRef] = None

    @classmethod
    def from_dict(cls, data: Any) -> Optional["PasswordSource"]:
        if data is None:
            return None
        if not isinstance(data, dict) or len(data) != 1 or not ({"value", "fromSecret"} & data.keys()):
            raise PermanentError("password must set exactly one of value or fromSecret", reason="InvalidSpec")
        if "value" in data:
            return cls(value=_string(data, "value", "password.value", required=True))
        ref = data["fromSecret"]
        if not isinstance(ref, dict):
            raise PermanentError("password.fromSecret must be an object", reason="InvalidSpec")
        return cls(from_secret=PasswordSecretRef(
            name=_string(ref, "name", "password.fromSecret.name", required=True),
            key=_string(ref, "key", "password.fromSecret.key", required=True),
        ))


def _string(data: Dict[str, Any], key: str, path: str, required: bool = False) -> Optional[str]:
    value = data.get(key)
    if value is None or value == "":
        if required:
            raise PermanentError(f"{path} must be a non-empty string", reason="InvalidSpec")
        return None
    if not isinstance(value, str):
        raise PermanentError(f"{path} must be a string, got {value!r}", reason="InvalidSpec")
    return value


@dataclass
class DatabaseSpec:
    """Desired database/role pair"""
    database_name: Optional[str] = None
    owner: Optional[str] = None
    privileges: RoleAttributes = field(default_factory=RoleAttributes)
    retain_on_delete: bool = False
    secret: SecretSpec = field(default_factory=SecretSpec)
    password: Optional[PasswordSource] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "DatabaseSpec":
        data = data or {}
        if not isinstance(data, dict):
            raise PermanentError("spec must be an object", reason="InvalidSpec")
        secret = data.get("secret") or {}
        if not isinstance(secret, dict):
            raise PermanentError("secret must be an object", reason="InvalidSpec")
        namespaces = secret.get("namespaces") or []
        if not isinstance(namespaces, list) or not all(isinstance(n, str) and n for n in namespaces):
            raise PermanentError("secret.namespaces must be a list of namespace names",
                                 reason="InvalidSpec")
        retain = data.get("retainOnDelete", False)
        if not isinstance(retain, bool):
            raise PermanentError(f"retainOnDelete must be a boolean, got {retain!r}", reason="InvalidSpec")
        return cls(
            database_name=_string(data, "databaseName", "databaseName"),
            owner=_string(data, "owner", "owner"),
            privileges=RoleAttributes.from_dict(data.get("privileges")),
            retain_on_delete=retain,
            secret=SecretSpec(name=_string(secret, "name", "secret.name"), namespaces=list(namespaces)),
            password=PasswordSource.from_dict(data.get("password")),
        )


# ============================================================================
# STATUS
# ============================================================================

@dataclass
class Condition:
    type: str
    status: str
    reason: str
    message: str = ""
    last_transition_time: str = field(default_factory=utcnow)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Condition":
        return cls(
            type=data.get("type", ""),
            status=data.get("status", "Unknown"),
            reason=data.get("reason", ""),
            message=data.get("message", ""),
            last_transition_time=data.get("lastTransitionTime") or utcnow(),
        )

    def to_dict(self) -> Dict[str, str]:
        return {
            "type": self.type,
            "status": self.status,
            "reason": self.reason,
            "message": self.message,
            "lastTransitionTime": self.last_transition_time,
        }


@dataclass
class SecretRef:
    name: str
    namespace: str

    def to_dict(self) -> Dict[str, str]:
        return {"name": self.name, "namespace": self.namespace}


@dataclass
class DatabaseStatus:
    phase: str = Phase.PENDING
    conditions: List[Condition] = field(default_factory=list)
    observed_generation: Optional[int] = None
    secret_ref: Optional[SecretRef] = None
    last_reconcile_time: Optional[str] = None
    last_error: Optional[Dict[str, str]] = None
    role_name: Optional[str] = None
    database_name: Optional[str] = None
    failed_generation: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "DatabaseStatus":
        data = data or {}
        ref = data.get("secretRef")
        return cls(
            phase=data.get("phase") or Phase.PENDING,
            conditions=[Condition.from_dict(c) for c in data.get("conditions") or []],
            observed_generation=data.get("observedGeneration"),
            secret_ref=SecretRef(ref["name"], ref["namespace"]) if ref else None,
            last_reconcile_time=data.get("lastReconcileTime"),
            last_error=data.get("lastError"),
            role_name=data.get("roleName"),
            database_name=data.get("databaseName"),
            failed_generation=data.get("failedGeneration"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase,
            "conditions": [c.to_dict() for c in self.conditions],
            "observedGeneration": self.observed_generation,
            "secretRef": self.secret_ref.to_dict() if self.secret_ref else None,
            "lastReconcileTime": self.last_reconcile_time,
            "lastError": self.last_error,
            "roleName": self.role_name,
            "databaseName": self.database_name,
            "failedGeneration": self.failed_generation,
        }

    def condition(self, type_: str) -> Optional[Condition]:
        return next((c for c in self.conditions if c.type == type_), None)

    def set_condition(self, type_: str, status: bool, reason: str, message: str = ""):
        """Upsert a condition, keeping the transition time unless the status flips"""
        value = "True" if status else "False"
        existing = self.condition(type_)
        if existing is None:
            self.conditions.append(Condition(type_, value, reason, message))
            return
        if existing.status != value:
            existing.last_transition_time = utcnow()
        existing.status = value
        existing.reason = reason
        existing.message = message

    def remove_condition(self, type_: str):
        self.conditions = [c for c in self.conditions if c.type != type_]


# ============================================================================
# RESOURCE
# ============================================================================

@dataclass
class ManagedDatabase:
    """A ManagedDatabase custom resource as last read from the API server"""
    namespace: str
    name: str
    spec: Dict[str, Any]
    status: DatabaseStatus = field(default_factory=DatabaseStatus)
    generation: int = 1
    resource_version: Optional[str] = None
    uid: Optional[str] = None
    finalizers: List[str] = field(default_factory=list)
    deletion_timestamp: Optional[str] = None

    @classmethod
    def from_object(cls, obj: Dict[str, Any]) -> "ManagedDatabase":
        metadata = obj.get("metadata") or {}
        return cls(
            namespace=metadata.get("namespace", ""),
            name=metadata.get("name", ""),
            spec=obj.get("spec") or {},
            status=DatabaseStatus.from_dict(obj.get("status")),
            generation=metadata.get("generation") or 1,
            resource_version=metadata.get("resourceVersion"),
            uid=metadata.get("uid"),
            finalizers=list(metadata.get("finalizers") or []),
            deletion_timestamp=metadata.get("deletionTimestamp"),
        )

    @property
    def key(self) -> str:
        return make_key(self.namespace, self.name)

    @property
    def deleting(self) -> bool:
        return self.deletion_timestamp is not None

    def parsed_spec(self) -> DatabaseSpec:
        return DatabaseSpec.from_dict(self.spec)

    def owner_reference(self) -> Optional[Dict[str, Any]]:
        if not self.uid:
            return None
        return {
            "apiVersion": f"{GROUP}/{VERSION}",
            "kind": KIND,
            "name": self.name,
            "uid": self.uid,
            "controller": True,
            "blockOwnerDeletion": False,
        }

    def ownership_tag(self) -> str:
        return ownership_tag(self.namespace, self.name)

    def secret_name(self) -> str:
        return self.parsed_spec().secret.name or f"database-{self.name}-secret"


def ownership_tag(namespace: str, name: str) -> str:
    """Comment stamped on roles and databases created for a resource"""
    return f"managed-by={MANAGED_BY},resource={make_key(namespace, name)}"


# ============================================================================
# OBSERVED STATE
# ============================================================================

@dataclass
class RoleRecord:
    """A role as it exists on the server"""
    name: str
    can_login: bool
    create_db: bool
    create_role: bool
    bypass_rls: bool
    superuser: bool
    comment: Optional[str] = None

    def attributes(self) -> RoleAttributes:
        return RoleAttributes(
            can_login=self.can_login,
            create_db=self.create_db,
            create_role=self.create_role,
            bypass_rls=self.bypass_rls,
            superuser=self.superuser,
        )


@dataclass
class DatabaseRecord:
    """A database as it exists on the server"""
    name: str
    owner: str
    comment: Optional[str] = None
    public_connect: bool = False


# ============================================================================
# NAMING
# ============================================================================

@dataclass(frozen=True)
class ExternalNames:
    role: str
    database: str


_INVALID_NAME = re.compile(r"[\x00\"]")


def default_external_name(namespace: str, name: str) -> str:
    """
    Derive the default role/database name for a resource

    The result only depends on the resource identity. Names longer than
    PostgreSQL's identifier limit are cut and suffixed with a digest of the
    full identity so distinct resources never collide.
    """
    candidate = f"{namespace}-{name}"
    if len(candidate.encode()) <= MAX_IDENTIFIER_BYTES:
        return candidate
    digest = hashlib.sha256(candidate.encode()).hexdigest()[:8]
    # Cut on bytes, dropping any multibyte character split at the boundary
    head = candidate.encode()[:MAX_IDENTIFIER_BYTES - len(digest) - 1].decode("utf-8", errors="ignore")
    return f"{head}-{digest}"


def validate_identifier(kind: str, value: str, reserved: frozenset = frozenset()):
    if not value:
        raise PermanentError(f"{kind} name must not be empty", reason="InvalidName")
    if len(value.encode()) > MAX_IDENTIFIER_BYTES:
        raise PermanentError(f"{kind} name {value!r} exceeds {MAX_IDENTIFIER_BYTES} bytes",
                             reason="InvalidName")
    if _INVALID_NAME.search(value):
        raise PermanentError(f"{kind} name {value!r} contains forbidden characters",
                             reason="InvalidName")
    if value.lower().startswith("pg_"):
        raise PermanentError(f"{kind} name {value!r} uses the reserved pg_ prefix",
                             reason="InvalidName")
    if value in reserved:
        raise PermanentError(f"{kind} name {value!r} is reserved", reason="ReservedName")


def external_names(resource: ManagedDatabase, reserved_roles: frozenset = frozenset(),
                   reserved_databases: frozenset = frozenset()) -> ExternalNames:
    """
    Resolve and validate the role and database names for a resource

    Args:
        resource: The ManagedDatabase
        reserved_roles: Role names that may not be claimed
        reserved_databases: Database names that may not be claimed

    Returns:
        The external names

    Raises:
        PermanentError: when the spec is malformed or a name is invalid
    """
    spec = resource.parsed_spec()
    default = default_external_name(resource.namespace, resource.name)
    names = ExternalNames(role=spec.owner or default, database=spec.database_name or default)
    validate_identifier("role", names.role, reserved_roles)
    validate_identifier("database", names.database,
                        reserved_databases | {"template0", "template1"})
    return names
