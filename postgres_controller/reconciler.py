"""
Reconciler

One pass converges a single ManagedDatabase:

    fetch object -> (deleting? clean up) -> finalizer -> resolve names
    -> observe role/database -> credential -> role attributes
    -> database -> privileges -> status

The pass never assumes a transaction across Kubernetes and PostgreSQL. Every
step is checked against observed state before it acts, so a pass interrupted
anywhere is completed by the next one. Shutdown is honoured between steps.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

import psycopg2.errors

from .config import Config
from .database import DatabaseClient, DatabaseSession
from .errors import ConflictError, ControllerError, PermanentError, ShutdownRequested, classify
from .log import BLUE, GREEN, RED, RESET, YELLOW, get_logger
from .metrics import Metrics, ReconciliationStats
from .models import (FINALIZER, ConditionType, DatabaseRecord, DatabaseStatus, ExternalNames,
                     ManagedDatabase, Phase, RoleRecord, external_names, split_key, utcnow)
from .scheduler import Request, Result
from .store import StatusStore
from .vault import CredentialVault

logger = get_logger("reconciler")

STATUS_WRITE_ATTEMPTS = 3


@dataclass
class Pass:
    """State carried through a single reconcile pass"""
    resource: ManagedDatabase
    request: Request
    stats: ReconciliationStats
    step: str = "fetch"
    rotated: bool = False
    actions: List[str] = field(default_factory=list)


class StaleGeneration(Exception):
    """The object got a newer generation while the pass was running"""


class Reconciler:
    """Converges ManagedDatabase objects against the PostgreSQL server"""

    def __init__(self, kube, db: DatabaseClient, vault: CredentialVault, store: StatusStore, config: Config,
                 stop_event: Optional[threading.Event] = None, metrics: Optional[Metrics] = None):
        self.kube = kube
        self.db = db
        self.vault = vault
        self.store = store
        self.config = config
        self.metrics = metrics
        self._stopping = stop_event or threading.Event()

    # ================================================================ entry

    def handle(self, request: Request) -> Result:
        """Run one pass for a queued key; never raises"""
        stats = ReconciliationStats(start_time=datetime.now(timezone.utc))
        result = self._handle(request, stats)
        stats.end_time = datetime.now(timezone.utc)
        if result.error is not None:
            stats.errors += 1
        if self.metrics is not None:
            self.metrics.record_reconciliation(stats, permanent_failure=isinstance(result.error, PermanentError))
        logger.debug(f"Pass for {request.key} finished: {stats.to_dict()}")
        return result

    def _handle(self, request: Request, stats: ReconciliationStats) -> Result:
        namespace, name = split_key(request.key)
        try:
            resource = self.kube.get(namespace, name)
        except Exception as e:
            error = classify(e)
            logger.warning(f"Unable to fetch {request.key}: {error}")
            return Result.retry(error)

        if resource is None:
            logger.info(f"{request.key} no longer exists, forgetting it")
            self.store.remove(request.key)
            return Result.halt()

        self.store.observe(resource)
        p = Pass(resource=resource, request=request, stats=stats)
        if resource.deleting:
            return self._finalize(p)
        return self._reconcile(p)

    def _checkpoint(self, p: Pass, step: str):
        """Enter the next step, unless shutdown has been requested"""
        if self._stopping.is_set():
            raise ShutdownRequested(f"shutdown requested before {step}")
        p.step = step

    # ========================================================== convergence

    def _reconcile(self, p: Pass) -> Result:
        key = p.resource.key
        try:
            self._checkpoint(p, "add finalizer")
            p.resource = self.kube.add_finalizer(p.resource)
            self.store.observe(p.resource)

            status = p.resource.status
            if (status.phase == Phase.FAILED and status.failed_generation == p.resource.generation
                    and not p.request.forced):
                logger.info(f"Skipping {key}: failed at generation {p.resource.generation}, "
                            f"waiting for a spec change or a forced reconcile")
                return Result.halt()

            logger.info(f"{BLUE}Reconciling {key} (generation {p.resource.generation}){RESET}")
            return self._converge(p)
        except StaleGeneration:
            logger.info(f"{key} changed during the pass, starting over")
            return Result.success(resync=0)
        except Exception as e:
            return self._fail(p, classify(e))

    def _converge(self, p: Pass) -> Result:
        resource = p.resource
        self._checkpoint(p, "resolve names")
        names = external_names(resource, self.config.reserved_roles(), frozenset({self.config.DB_NAME}))
        attributes = resource.parsed_spec().privileges
        tag = resource.ownership_tag()

        self._checkpoint(p, "connect")
        with self.db.session() as session:
            self._checkpoint(p, "observe server state")
            role = session.fetch_role(names.role)
            database = session.fetch_database(names.database)
            self._check_immutable_names(session, resource, names)
            self._check_ownership(resource, names, role, database)

            rotate = p.request.rotate
            role_drift = role is not None and role.attributes() != attributes
            owner_drift = database is not None and database.owner != names.role
            if role is None:
                p.actions.append(f"create role {names.role}")
            if rotate:
                p.actions.append("rotate credential")
            if role_drift:
                p.actions.append(f"update attributes of role {names.role}")
            if database is None:
                p.actions.append(f"create database {names.database}")
            elif owner_drift:
                p.actions.append(f"change owner of database {names.database}")
            if database is None or database.public_connect:
                p.actions.append(f"restrict database {names.database}")
            credential_change = None if rotate else self.vault.pending_change(resource, names, role)
            if credential_change:
                p.actions.append(credential_change)

            if p.actions:
                self._mark_provisioning(p, names)

            # Credential before anything else: the role is created here
            self._checkpoint(p, "ensure credential")
            if role is None or not rotate:
                secret_ref = self.vault.ensure_credential(resource, session, names, attributes, role)
                if role is None:
                    p.stats.roles_created += 1
            if rotate:
                self._checkpoint(p, "rotate credential")
                secret_ref = self.vault.rotate(resource, session, names)
                p.stats.credentials_rotated += 1
                p.rotated = True

            if role_drift:
                self._checkpoint(p, "update role attributes")
                logger.info(f"{YELLOW}Drift detected on role {names.role}: attributes differ{RESET}")
                p.stats.drift_detected += 1
                session.alter_role_attributes(names.role, attributes)
                p.stats.roles_updated += 1

            if database is None:
                self._checkpoint(p, "create database")
                session.create_database(names.database, names.role, tag)
                p.stats.databases_created += 1
            elif owner_drift:
                self._checkpoint(p, "change database owner")
                logger.info(f"{YELLOW}Drift detected on database {names.database}: owner is "
                            f"{database.owner}{RESET}")
                p.stats.drift_detected += 1
                session.alter_database_owner(names.database, names.role)
                p.stats.databases_updated += 1

            if database is None or database.public_connect:
                self._checkpoint(p, "grant privileges")
                if database is not None:
                    p.stats.drift_detected += 1
                    p.stats.databases_updated += 1
                session.grant_privileges(names.database, names.role)

        self._checkpoint(p, "write status")
        status = p.resource.status
        status.phase = Phase.READY
        status.observed_generation = p.resource.generation
        status.secret_ref = secret_ref
        status.last_reconcile_time = utcnow()
        status.last_error = None
        status.failed_generation = None
        status.role_name = names.role
        status.database_name = names.database
        status.set_condition(ConditionType.READY, True, "Reconciled",
                             f"role {names.role} and database {names.database} are in sync")
        status.set_condition(ConditionType.CREDENTIAL_READY, True, "SecretPublished",
                             f"credential stored in secret {secret_ref.namespace}/{secret_ref.name}")
        status.remove_condition(ConditionType.DELETING)
        self._write_status(p, status)

        if p.actions:
            logger.info(f"{GREEN}{resource.key} is Ready ({'; '.join(p.actions)}){RESET}")
        else:
            logger.info(f"{resource.key} is in sync")
        return Result.success(resync=self.config.SYNC_INTERVAL, rotated=p.rotated)

    def _mark_provisioning(self, p: Pass, names: ExternalNames):
        """Record the names and the pending work before the first mutation"""
        status = p.resource.status
        status.phase = Phase.PROVISIONING
        status.role_name = names.role
        status.database_name = names.database
        status.set_condition(ConditionType.READY, False, "Provisioning", "; ".join(p.actions))
        self._write_status(p, status)

    @staticmethod
    def _check_ownership(resource: ManagedDatabase, names: ExternalNames, role: Optional[RoleRecord],
                         database: Optional[DatabaseRecord]):
        """
        Refuse to touch a role or database this resource did not create

        Raises:
            PermanentError: NameConflict
        """
        tag = resource.ownership_tag()
        if role is not None and role.comment != tag:
            raise PermanentError(f"role {names.role} already exists and is not managed for {resource.key}",
                                 reason="NameConflict")
        if database is not None and database.comment != tag and database.owner != names.role:
            raise PermanentError(f"database {names.database} already exists and is owned by {database.owner}",
                                 reason="NameConflict")

    @staticmethod
    def _check_immutable_names(session: DatabaseSession, resource: ManagedDatabase, names: ExternalNames):
        """
        Reject renames of a role or database that was already provisioned

        A recorded name whose object no longer exists may be replaced.
        """
        status = resource.status
        tag = resource.ownership_tag()
        if status.role_name and status.role_name != names.role:
            previous = session.fetch_role(status.role_name)
            if previous is not None and previous.comment == tag:
                raise PermanentError(f"role name is immutable: {status.role_name} is provisioned, "
                                     f"spec asks for {names.role}", reason="ImmutableName")
        if status.database_name and status.database_name != names.database:
            previous = session.fetch_database(status.database_name)
            if previous is not None and previous.comment == tag:
                raise PermanentError(f"database name is immutable: {status.database_name} is provisioned, "
                                     f"spec asks for {names.database}", reason="ImmutableName")

    # ============================================================= deletion

    def _finalize(self, p: Pass) -> Result:
        resource = p.resource
        key = resource.key
        if FINALIZER not in resource.finalizers:
            return Result.halt()

        logger.info(f"{BLUE}Cleaning up {key}{RESET}")
        try:
            if resource.status.phase != Phase.DELETING:
                status = resource.status
                status.phase = Phase.DELETING
                status.set_condition(ConditionType.READY, False, "Deleting", "resource is being deleted")
                status.set_condition(ConditionType.DELETING, True, "CleaningUp",
                                     "dropping external database and role")
                self._write_status(p, status, follow_generation=True)

            names = self._deletion_names(resource)
            if names is not None:
                self._drop_external(p, names)

            self._checkpoint(p, "remove secrets")
            self.vault.remove(p.resource)

            self._checkpoint(p, "remove finalizer")
            self.kube.remove_finalizer(p.resource)
        except StaleGeneration:
            return Result.success(resync=0)
        except Exception as e:
            return self._fail(p, classify(e))

        logger.info(f"{GREEN}Cleanup of {key} complete{RESET}")
        return Result.halt()

    def _deletion_names(self, resource: ManagedDatabase) -> Optional[ExternalNames]:
        status = resource.status
        if status.role_name and status.database_name:
            return ExternalNames(role=status.role_name, database=status.database_name)
        # Names are recorded before the first mutation; without them only a
        # still-valid spec can point at anything we created
        try:
            return external_names(resource, self.config.reserved_roles(), frozenset({self.config.DB_NAME}))
        except PermanentError as e:
            logger.info(f"No external objects to clean up for {resource.key}: {e}")
            return None

    def _drop_external(self, p: Pass, names: ExternalNames):
        """Drop the database then the role, or retain the database when asked to"""
        resource = p.resource
        tag = resource.ownership_tag()
        retain = resource.parsed_spec().retain_on_delete

        self._checkpoint(p, "connect")
        with self.db.session() as session:
            self._checkpoint(p, "observe server state")
            role = session.fetch_role(names.role)
            database = session.fetch_database(names.database)
            role_ours = role is not None and role.comment == tag
            database_ours = database is not None and (
                database.comment == tag or (role_ours and database.owner == names.role))
            if role is not None and not role_ours:
                logger.warning(f"Role {names.role} is not managed for {resource.key}, leaving it in place")
            if database is not None and not database_ours:
                logger.warning(f"Database {names.database} is not managed for {resource.key}, leaving it in place")

            if database_ours and retain:
                if role_ours:
                    self._checkpoint(p, "reassign owned objects")
                    with self.db.connect(names.database) as target:
                        target.reassign_owned(names.role, self.config.DB_USER)
                    database = session.fetch_database(names.database)
                if database is not None and database.owner != self.config.DB_USER:
                    self._checkpoint(p, "change database owner")
                    session.alter_database_owner(names.database, self.config.DB_USER)
                logger.info(f"Retained database {names.database} (owner {self.config.DB_USER})")
            elif database_ours:
                self._checkpoint(p, "drop database")
                session.drop_database(names.database)
                p.stats.databases_deleted += 1

            if role_ours:
                self._checkpoint(p, "drop role")
                try:
                    session.drop_role(names.role)
                except psycopg2.errors.DependentObjectsStillExist as e:
                    raise PermanentError(f"role {names.role} still owns objects or holds privileges: "
                                         f"{e.diag.message_detail or e}", reason="RoleHasDependents") from e
                p.stats.roles_deleted += 1

    # ============================================================== failure

    def _fail(self, p: Pass, error: ControllerError) -> Result:
        """Record a failed pass in status and tell the queue what to do next"""
        resource = p.resource
        permanent = isinstance(error, PermanentError)
        message = f"{p.step}: {error}"

        if isinstance(error, ShutdownRequested):
            logger.info(f"Pass for {resource.key} halted: {error}")
            return Result.retry(error)

        if permanent:
            logger.error(f"{RED}Permanent failure reconciling {resource.key} ({error.reason}) at {message}{RESET}")
        else:
            logger.warning(f"Transient failure reconciling {resource.key} ({error.reason}) at {message}")

        status = resource.status
        status.last_reconcile_time = utcnow()
        status.last_error = {"class": type(error).__name__, "reason": error.reason, "message": message}
        if resource.deleting:
            status.phase = Phase.DELETING
            status.set_condition(ConditionType.DELETING, True, error.reason, message)
        elif permanent:
            status.phase = Phase.FAILED
            status.failed_generation = resource.generation
            status.set_condition(ConditionType.READY, False, error.reason, message)
        else:
            status.phase = Phase.PROVISIONING
            status.set_condition(ConditionType.READY, False, error.reason, message)

        try:
            self._write_status(p, status, follow_generation=resource.deleting)
        except StaleGeneration:
            return Result.success(resync=0)
        except Exception as e:
            logger.warning(f"Unable to record failure in status of {resource.key}: {e}")

        return Result.halt(error) if permanent else Result.retry(error)

    # =============================================================== status

    def _write_status(self, p: Pass, status: DatabaseStatus, follow_generation: bool = False):
        """
        Write status, checked against the last observed resourceVersion

        On a conflict the object is fetched again. The write is retried onto
        the fresh object while its generation is unchanged; a newer generation
        abandons the pass (StaleGeneration) because its work is outdated.

        Args:
            p: Current pass
            status: Status to write
            follow_generation: Retry even when the generation moved on
        """
        resource = p.resource
        for attempt in range(STATUS_WRITE_ATTEMPTS):
            try:
                updated = self.kube.patch_status(resource, status)
            except ConflictError:
                latest = self.kube.get(resource.namespace, resource.name)
                if latest is None:
                    raise StaleGeneration()
                if latest.generation != p.resource.generation and not follow_generation:
                    logger.info(f"{resource.key} has generation {latest.generation}, abandoning status write")
                    raise StaleGeneration()
                logger.debug(f"Status conflict on {resource.key} (attempt {attempt + 1}), retrying")
                resource = latest
                continue
            p.resource = updated
            self.store.observe(updated)
            return
        raise ConflictError(f"status of {resource.key} kept changing")
