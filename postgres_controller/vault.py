"""
Credential vault

The vault decides when a password must be generated, keeps the secret that
publishes it, and rotates it. The role and the secret live in two systems
without a shared transaction, so the order of writes matters:

* new role: write the secret first, then create the role with that password.
  A retry finds the secret tagged for the role and reuses its password.
* password change (rotation, or a new operator-supplied password): stage the
  new password in the secret under a pending key, change the server
  password, then promote it. A pass that finds a staged password finishes
  the change before anything else, so the server password is never known
  only to a crashed process.

A secret is only ever written or deleted when its resource annotation names
the ManagedDatabase at hand. Anything else with the same name belongs to
someone else and is reported as a conflict.
"""

import secrets
import string
from typing import Dict, List, Optional, Sequence, Tuple
from urllib.parse import quote

from kubernetes.client.rest import ApiException

from .config import Config
from .database import DatabaseSession
from .errors import PermanentError, TransientError, VaultError
from .kube import StoredSecret
from .log import get_logger
from .models import (ANNOTATION_RESOURCE, ANNOTATION_ROLE, MANAGED_BY, ExternalNames, ManagedDatabase,
                     RoleAttributes, RoleRecord, SecretRef)

logger = get_logger("vault")

PASSWORD_LENGTH = 32
PASSWORD_ALPHABET = string.ascii_letters + string.digits

# Holds a password that may already be set on the server but is not yet published
PENDING_PASSWORD_KEY = "pending-password"


def generate_password(length: int = PASSWORD_LENGTH) -> str:
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


class CredentialVault:
    """Sole writer of credential secrets"""

    def __init__(self, kube, config: Config):
        self.kube = kube
        self.config = config

    # ------------------------------------------------------------- contents

    def secret_data(self, names: ExternalNames, password: str) -> Dict[str, str]:
        """Key/value pairs published to consumers"""
        host = self.config.client_host
        port = str(self.config.client_port)
        ssl_mode = self.config.client_ssl_mode
        return {
            "username": names.role,
            "password": password,
            "PGHOST": host,
            "PGPORT": port,
            "PGUSER": names.role,
            "PGPASSWORD": password,
            "PGDATABASE": names.database,
            "PGSSLMODE": ssl_mode,
            "DATABASE_URL": (
                f"postgresql://{quote(names.role, safe='')}:{quote(password, safe='')}"
                f"@{host}:{port}/{quote(names.database, safe='')}?sslmode={ssl_mode}"
            ),
        }

    @staticmethod
    def _labels() -> Dict[str, str]:
        return {"app.kubernetes.io/managed-by": MANAGED_BY}

    @staticmethod
    def _annotations(resource: ManagedDatabase, names: ExternalNames) -> Dict[str, str]:
        return {ANNOTATION_RESOURCE: resource.key, ANNOTATION_ROLE: names.role}

    def secret_ref(self, resource: ManagedDatabase) -> SecretRef:
        return SecretRef(name=resource.secret_name(), namespace=resource.namespace)

    def _replica_namespaces(self, resource: ManagedDatabase) -> List[str]:
        return [ns for ns in resource.parsed_spec().secret.namespaces if ns != resource.namespace]

    def _namespaces(self, resource: ManagedDatabase) -> List[str]:
        return [resource.namespace] + self._replica_namespaces(resource)

    # ----------------------------------------------------------- kube access

    def _read(self, namespace: str, name: str) -> Optional[StoredSecret]:
        try:
            return self.kube.read_secret(namespace, name)
        except ApiException as e:
            raise VaultError(f"unable to read secret {namespace}/{name}: {e.reason}") from e

    def _read_owned(self, resource: ManagedDatabase, namespace: str) -> Optional[StoredSecret]:
        """
        Read the resource's secret in a namespace

        Raises:
            PermanentError: the secret exists but belongs to something else
        """
        stored = self._read(namespace, resource.secret_name())
        if stored is not None and stored.annotations.get(ANNOTATION_RESOURCE) != resource.key:
            owner = stored.annotations.get(ANNOTATION_RESOURCE)
            raise PermanentError(
                f"secret {namespace}/{stored.name} is owned by "
                f"{'ManagedDatabase ' + owner if owner else 'another party'}, not {resource.key}",
                reason="SecretConflict",
            )
        return stored

    def _write(self, resource: ManagedDatabase, namespace: str, names: ExternalNames, data: Dict[str, str],
               remove_keys: Sequence[str] = ()):
        name = resource.secret_name()
        owner = resource.owner_reference() if namespace == resource.namespace else None
        try:
            self.kube.write_secret(namespace, name, data, self._labels(),
                                   self._annotations(resource, names), owner, remove_keys=remove_keys)
        except ApiException as e:
            raise VaultError(f"unable to write secret {namespace}/{name}: {e.reason}") from e

    def _tagged_for_role(self, stored: Optional[StoredSecret], names: ExternalNames) -> bool:
        if stored is None:
            return False
        if stored.annotations.get(ANNOTATION_ROLE) != names.role:
            logger.warning(f"Secret {stored.namespace}/{stored.name} is not tagged for role {names.role}")
            return False
        return True

    def _usable_password(self, stored: Optional[StoredSecret], names: ExternalNames) -> Optional[str]:
        """Password from a secret that belongs to this role, None if missing or corrupted"""
        if not self._tagged_for_role(stored, names):
            return None
        password = stored.data.get("password")
        if not password:
            logger.warning(f"Secret {stored.namespace}/{stored.name} has no 'password' field")
            return None
        return password

    def _pending_password(self, stored: Optional[StoredSecret], names: ExternalNames) -> Optional[str]:
        if stored is None or stored.annotations.get(ANNOTATION_ROLE) != names.role:
            return None
        return stored.data.get(PENDING_PASSWORD_KEY) or None

    def supplied_password(self, resource: ManagedDatabase) -> Optional[str]:
        """
        Password given in spec.password, None when the controller generates it

        A referenced secret is read from the resource's own namespace.

        Raises:
            TransientError: the referenced secret or key does not exist (yet)
        """
        source = resource.parsed_spec().password
        if source is None:
            return None
        if source.value is not None:
            return source.value
        ref = source.from_secret
        stored = self._read(resource.namespace, ref.name)
        if stored is None:
            raise TransientError(f"password secret {resource.namespace}/{ref.name} not found",
                                 reason="PasswordSourceMissing")
        password = stored.data.get(ref.key)
        if not password:
            raise TransientError(f"password secret {resource.namespace}/{ref.name} has no key {ref.key!r}",
                                 reason="PasswordSourceMissing")
        return password

    def _publish(self, resource: ManagedDatabase, names: ExternalNames, password: str,
                 primary: Optional[StoredSecret] = None) -> int:
        """
        Bring the primary secret and its replicas up to date

        Every target is read and checked for ownership before the first
        write. Only the keys the controller manages are compared, so keys
        added by others survive and do not cause rewrites.

        Args:
            resource: Owning ManagedDatabase
            names: External names
            password: Password to publish
            primary: Already read primary secret, if any

        Returns:
            Number of secrets written
        """
        data = self.secret_data(names, password)
        annotations = self._annotations(resource, names)

        targets: List[Tuple[str, Optional[StoredSecret]]] = []
        for namespace in self._namespaces(resource):
            if namespace == resource.namespace and primary is not None:
                targets.append((namespace, primary))
            else:
                targets.append((namespace, self._read_owned(resource, namespace)))

        written = 0
        for namespace, stored in targets:
            stale_keys = [PENDING_PASSWORD_KEY] if stored is not None and PENDING_PASSWORD_KEY in stored.data else []
            if (stored is not None and not stale_keys
                    and all(stored.data.get(k) == v for k, v in data.items())
                    and all(stored.annotations.get(k) == v for k, v in annotations.items())):
                continue
            self._write(resource, namespace, names, data, remove_keys=stale_keys)
            written += 1
        return written

    # ------------------------------------------------------------ operations

    def pending_change(self, resource: ManagedDatabase, names: ExternalNames,
                       role: Optional[RoleRecord]) -> Optional[str]:
        """
        Describe the server-side credential change the next ensure_credential will make

        Returns:
            A short description, or None when the role's password is already
            what the secret publishes (or the role does not exist yet)
        """
        if role is None:
            return None
        primary = self._read_owned(resource, resource.namespace)
        if self._pending_password(primary, names) is not None:
            return "complete interrupted password change"
        password = self._usable_password(primary, names)
        supplied = self.supplied_password(resource)
        if supplied is not None and supplied != password:
            return "apply supplied password"
        if password is None:
            return "replace missing credential"
        return None

    def ensure_credential(self, resource: ManagedDatabase, session: DatabaseSession, names: ExternalNames,
                          attributes: RoleAttributes, role: Optional[RoleRecord]) -> SecretRef:
        """
        Make sure the role exists with a password published in its secret

        Args:
            resource: Owning ManagedDatabase
            session: Database session of the current pass
            names: External names
            attributes: Desired role attributes, used when the role is created
            role: Observed role, None if absent

        Returns:
            Reference to the secret holding the credential
        """
        primary = self._read_owned(resource, resource.namespace)
        password = self._usable_password(primary, names)
        pending = self._pending_password(primary, names)
        supplied = self.supplied_password(resource)

        if role is None:
            password = supplied or pending or password
            if password is None:
                password = generate_password()
                logger.info(f"Generated credential for {resource.key}")
            self._publish(resource, names, password, primary=primary)
            session.create_role(names.role, attributes, password, resource.ownership_tag())
            return self.secret_ref(resource)

        if pending is not None:
            logger.warning(f"Completing interrupted password change for {resource.key}")
            self._apply(resource, session, names, pending)
            return self.secret_ref(resource)

        if supplied is not None and supplied != password:
            logger.info(f"Applying supplied password for {resource.key}")
            self._change_password(resource, session, names, supplied, primary)
            return self.secret_ref(resource)

        if password is None:
            logger.warning(f"Credential for {resource.key} is missing or corrupted, rotating")
            self._change_password(resource, session, names, generate_password(), primary)
            return self.secret_ref(resource)

        self._publish(resource, names, password, primary=primary)
        return self.secret_ref(resource)

    def rotate(self, resource: ManagedDatabase, session: DatabaseSession, names: ExternalNames) -> SecretRef:
        """
        Replace the role's password and rewrite the secret in place

        The secret keeps its name, so consumers bound to it pick up the new
        value without any reference changing. A resource with a supplied
        password has nothing to rotate to; its password is re-applied.
        """
        primary = self._read_owned(resource, resource.namespace)
        supplied = self.supplied_password(resource)
        if supplied is not None:
            logger.info(f"{resource.key} uses a supplied password, re-applying it instead of rotating")
        self._change_password(resource, session, names, supplied or generate_password(), primary)
        logger.info(f"Rotated credential for {resource.key}")
        return self.secret_ref(resource)

    def _change_password(self, resource: ManagedDatabase, session: DatabaseSession, names: ExternalNames,
                         password: str, primary: Optional[StoredSecret]):
        # Stage in the primary secret first: it must hold the password before the server does
        current = self._usable_password(primary, names)
        staged = self.secret_data(names, current or password)
        staged[PENDING_PASSWORD_KEY] = password
        self._write(resource, resource.namespace, names, staged)
        self._apply(resource, session, names, password)

    def _apply(self, resource: ManagedDatabase, session: DatabaseSession, names: ExternalNames, password: str):
        session.set_role_password(names.role, password)
        self._publish(resource, names, password)

    def remove(self, resource: ManagedDatabase):
        """Delete the secret and its replicas, leaving alone any secret owned by someone else"""
        name = resource.secret_name()
        for namespace in self._namespaces(resource):
            stored = self._read(namespace, name)
            if stored is None:
                continue
            if stored.annotations.get(ANNOTATION_RESOURCE) != resource.key:
                logger.warning(f"Secret {namespace}/{name} is not owned by {resource.key}, not deleting it")
                continue
            try:
                self.kube.delete_secret(namespace, name)
            except ApiException as e:
                raise VaultError(f"unable to delete secret {namespace}/{name}: {e.reason}") from e
