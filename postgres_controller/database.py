"""
PostgreSQL adapter

DatabaseClient owns the connection pool. A DatabaseSession wraps one checked
out connection and exposes the provisioning primitives used by the reconciler,
the credential vault and the bootstrap routine. Every mutating primitive is
safe to re-issue: it checks for existence first or is naturally idempotent,
and attribute changes always apply the complete attribute set.
"""

import threading
import time
from contextlib import contextmanager
from typing import Iterator, Optional, Set

import psycopg2
from psycopg2 import sql, pool

from .config import Config
from .errors import ShutdownRequested, TransientError
from .log import RESET, WHITE, get_logger
from .models import DatabaseRecord, RoleAttributes, RoleRecord

logger = get_logger("database")

APPLICATION_NAME = "postgres-controller"

# Abort statements stuck behind another session's lock instead of hanging a worker
LOCK_TIMEOUT_MS = 10000

POOL_INIT_RETRIES = 5
POOL_INIT_BACKOFF_BASE = 2.0

LOOKUP_FUNCTION = "user_lookup"

LOOKUP_FUNCTION_BODY = """
BEGIN
    SELECT usename, passwd FROM pg_catalog.pg_shadow
    WHERE usename = i_username INTO uname, phash;
    RETURN;
END;
"""


# ============================================================================
# DATABASE CLIENT
# ============================================================================

class DatabaseClient:
    """Handles the connection pool to the PostgreSQL server"""

    def __init__(self, config: Config, stop_event: Optional[threading.Event] = None):
        self.config = config
        self.connection_pool = None
        self._stopping = stop_event or threading.Event()
        self._slots = threading.BoundedSemaphore(config.DB_POOL_MAX_CONN)
        self._lock = threading.Lock()

    def connection_kwargs(self, dbname: Optional[str] = None) -> dict:
        kwargs = {
            "host": self.config.DB_HOST,
            "port": self.config.DB_PORT,
            "dbname": dbname or self.config.DB_NAME,
            "user": self.config.DB_USER,
            "sslmode": self.config.DB_SSL_MODE,
            "connect_timeout": self.config.DB_CONNECT_TIMEOUT,
            "application_name": APPLICATION_NAME,
            "options": f"-c lock_timeout={LOCK_TIMEOUT_MS}",
        }
        if self.config.DB_PASS:
            kwargs["password"] = self.config.DB_PASS
        return kwargs

    def _initialize_pool(self):
        """Initialize connection pool with retry logic"""
        for attempt in range(POOL_INIT_RETRIES):
            try:
                self.connection_pool = pool.ThreadedConnectionPool(
                    self.config.DB_POOL_MIN_CONN,
                    self.config.DB_POOL_MAX_CONN,
                    **self.connection_kwargs()
                )
                logger.info("Database connection pool initialized successfully")
                return
            except psycopg2.Error as e:
                sleep_time = POOL_INIT_BACKOFF_BASE ** attempt
                logger.warning(f"Failed to initialize connection pool (attempt {attempt + 1}/{POOL_INIT_RETRIES}), "
                               f"retrying in {sleep_time}s: {e}")
                if self._stopping.wait(sleep_time):
                    raise ShutdownRequested("shutdown requested while connecting to database")

        raise TransientError("Failed to initialize database connection pool", reason="DatabaseUnavailable")

    def get_connection(self):
        """
        Check a connection out of the pool

        Waits for a free slot for at most DB_POOL_TIMEOUT seconds, giving up
        early when shutdown is requested.
        """
        deadline = time.monotonic() + self.config.DB_POOL_TIMEOUT
        while not self._slots.acquire(timeout=0.25):
            if self._stopping.is_set():
                raise ShutdownRequested("shutdown requested while waiting for a connection")
            if time.monotonic() >= deadline:
                raise TransientError("timed out waiting for a pooled connection", reason="PoolExhausted")

        try:
            with self._lock:
                if not self.connection_pool:
                    self._initialize_pool()
            return self.connection_pool.getconn()
        except BaseException:
            self._slots.release()
            raise

    def return_connection(self, conn, close: bool = False):
        """Return a connection to the pool"""
        try:
            if self.connection_pool:
                self.connection_pool.putconn(conn, close=close or conn.closed)
        finally:
            self._slots.release()

    @contextmanager
    def session(self) -> Iterator["DatabaseSession"]:
        """
        Check out one connection for the duration of a block

        All statements issued through the yielded session run on the same
        connection, in autocommit mode unless grouped by a transaction.
        """
        conn = self.get_connection()
        broken = False
        try:
            conn.autocommit = True
            yield DatabaseSession(conn)
        except (psycopg2.OperationalError, psycopg2.InterfaceError):
            broken = True
            raise
        finally:
            self.return_connection(conn, close=broken)

    @contextmanager
    def connect(self, dbname: str) -> Iterator["DatabaseSession"]:
        """Open a dedicated, unpooled connection to another database"""
        if self._stopping.is_set():
            raise ShutdownRequested("shutdown requested before connecting")
        conn = psycopg2.connect(**self.connection_kwargs(dbname))
        try:
            conn.autocommit = True
            yield DatabaseSession(conn)
        finally:
            conn.close()

    def ping(self):
        """Run a trivial query to prove the server is reachable"""
        with self.session() as session:
            session.ping()

    def close(self):
        """Close the connection pool"""
        if self.connection_pool:
            self.connection_pool.closeall()
            self.connection_pool = None
            logger.info("Database connection pool closed")


# ============================================================================
# DATABASE SESSION
# ============================================================================

def _attribute_clause(attributes: RoleAttributes) -> sql.Composable:
    flags = [
        "LOGIN" if attributes.can_login else "NOLOGIN",
        "CREATEDB" if attributes.create_db else "NOCREATEDB",
        "CREATEROLE" if attributes.create_role else "NOCREATEROLE",
        "BYPASSRLS" if attributes.bypass_rls else "NOBYPASSRLS",
        "SUPERUSER" if attributes.superuser else "NOSUPERUSER",
        "NOREPLICATION",
    ]
    return sql.SQL(" ").join(sql.SQL(flag) for flag in flags)


class DatabaseSession:
    """Provisioning primitives bound to a single connection"""

    def __init__(self, conn):
        self.conn = conn

    @contextmanager
    def _transaction(self):
        self.conn.autocommit = False
        try:
            yield
            self.conn.commit()
        except BaseException:
            if not self.conn.closed:
                self.conn.rollback()
            raise
        finally:
            if not self.conn.closed:
                self.conn.autocommit = True

    def _execute(self, query, params=None):
        with self.conn.cursor() as cur:
            cur.execute(query, params)

    def _fetchone(self, query, params=None):
        with self.conn.cursor() as cur:
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query, params=None):
        with self.conn.cursor() as cur:
            cur.execute(query, params)
            return cur.fetchall()

    def ping(self):
        self._fetchone("SELECT 1")

    # ------------------------------------------------------------------ roles

    def fetch_role(self, name: str) -> Optional[RoleRecord]:
        """
        Fetch a role and its attribute flags

        Args:
            name: Role name

        Returns:
            RoleRecord or None if the role does not exist
        """
        row = self._fetchone("""
            SELECT r.rolname, r.rolcanlogin, r.rolcreatedb, r.rolcreaterole,
                   r.rolbypassrls, r.rolsuper,
                   pg_catalog.shobj_description(r.oid, 'pg_authid')
            FROM pg_catalog.pg_roles r
            WHERE r.rolname = %s;
        """, (name,))
        if row is None:
            return None
        return RoleRecord(
            name=row[0],
            can_login=row[1],
            create_db=row[2],
            create_role=row[3],
            bypass_rls=row[4],
            superuser=row[5],
            comment=row[6],
        )

    def role_exists(self, name: str) -> bool:
        return self._fetchone("SELECT 1 FROM pg_catalog.pg_roles WHERE rolname = %s;", (name,)) is not None

    def create_role(self, name: str, attributes: RoleAttributes, password: Optional[str],
                    comment: Optional[str] = None) -> bool:
        """
        Create a role with a password and ownership comment in one transaction

        Args:
            name: Role name
            attributes: Complete attribute set
            password: Password (never logged), or None for no password
            comment: Ownership tag stored as the role comment

        Returns:
            True if the role was created, False if it already existed
        """
        with self._transaction():
            if self.role_exists(name):
                logger.info(f"Role {name} already exists, not creating")
                return False
            query = sql.SQL("CREATE ROLE {} WITH {}").format(sql.Identifier(name), _attribute_clause(attributes))
            if password is None:
                self._execute(query)
            else:
                self._execute(query + sql.SQL(" PASSWORD %s"), (password,))
            if comment is not None:
                self._execute(sql.SQL("COMMENT ON ROLE {} IS %s").format(sql.Identifier(name)), (comment,))
        logger.info(f"{WHITE}Created role: {name}{RESET}")
        return True

    def alter_role_attributes(self, name: str, attributes: RoleAttributes):
        """Set the complete attribute set on an existing role"""
        self._execute(sql.SQL("ALTER ROLE {} WITH {}").format(sql.Identifier(name), _attribute_clause(attributes)))
        logger.info(f"{WHITE}Updated attributes of role: {name}{RESET}")

    def set_role_password(self, name: str, password: str):
        self._execute(sql.SQL("ALTER ROLE {} WITH PASSWORD %s").format(sql.Identifier(name)), (password,))
        logger.info(f"{WHITE}Changed password of role: {name}{RESET}")

    def drop_role(self, name: str):
        """Drop a role; an already absent role is not an error"""
        self._execute(sql.SQL("DROP ROLE IF EXISTS {}").format(sql.Identifier(name)))
        logger.info(f"{WHITE}Dropped role: {name}{RESET}")

    def reassign_owned(self, role: str, new_owner: str):
        """
        Hand every object the role owns in the current database to another role

        Privileges granted to the role in this database are removed as well,
        so the role can be dropped afterwards.
        """
        with self._transaction():
            self._execute(sql.SQL("REASSIGN OWNED BY {} TO {}").format(
                sql.Identifier(role), sql.Identifier(new_owner)))
            self._execute(sql.SQL("DROP OWNED BY {}").format(sql.Identifier(role)))
        logger.info(f"Reassigned objects owned by {role} to {new_owner}")

    # -------------------------------------------------------------- databases

    def fetch_database(self, name: str) -> Optional[DatabaseRecord]:
        row = self._fetchone("""
            SELECT d.datname,
                   pg_catalog.pg_get_userbyid(d.datdba),
                   pg_catalog.shobj_description(d.oid, 'pg_database'),
                   pg_catalog.has_database_privilege('public', d.oid, 'CONNECT')
            FROM pg_catalog.pg_database d
            WHERE d.datname = %s;
        """, (name,))
        if row is None:
            return None
        return DatabaseRecord(name=row[0], owner=row[1], comment=row[2], public_connect=row[3])

    def database_exists(self, name: str) -> bool:
        return self._fetchone("SELECT 1 FROM pg_catalog.pg_database WHERE datname = %s;", (name,)) is not None

    def create_database(self, name: str, owner: str, comment: Optional[str] = None) -> bool:
        """
        Create a database owned by a role

        CREATE DATABASE cannot run inside a transaction, so the comment is set
        by a separate statement. A database left without its comment is still
        recognised through its owner.

        Returns:
            True if the database was created, False if it already existed
        """
        if self.database_exists(name):
            logger.info(f"Database {name} already exists, not creating")
            return False
        self._execute(sql.SQL("CREATE DATABASE {} WITH OWNER {}").format(
            sql.Identifier(name), sql.Identifier(owner)))
        if comment is not None:
            self._execute(sql.SQL("COMMENT ON DATABASE {} IS %s").format(sql.Identifier(name)), (comment,))
        logger.info(f"{WHITE}Created database: {name} (owner {owner}){RESET}")
        return True

    def alter_database_owner(self, name: str, owner: str):
        self._execute(sql.SQL("ALTER DATABASE {} OWNER TO {}").format(sql.Identifier(name), sql.Identifier(owner)))
        logger.info(f"{WHITE}Changed owner of database {name} to {owner}{RESET}")

    def drop_database(self, name: str):
        """Drop a database; an already absent database is not an error"""
        self._execute(sql.SQL("DROP DATABASE IF EXISTS {}").format(sql.Identifier(name)))
        logger.info(f"{WHITE}Dropped database: {name}{RESET}")

    def grant_privileges(self, database: str, role: str):
        """Restrict a database to its owning role"""
        with self._transaction():
            self._execute(sql.SQL("REVOKE ALL ON DATABASE {} FROM PUBLIC").format(sql.Identifier(database)))
            self._execute(sql.SQL("GRANT ALL PRIVILEGES ON DATABASE {} TO {}").format(
                sql.Identifier(database), sql.Identifier(role)))
        logger.info(f"  ↳ Granted privileges on {database} to {role}")

    # -------------------------------------------------------------- auth hook

    def create_login_role(self, name: str):
        """Create an unprivileged login role (used for the proxy)"""
        self.create_role(name, RoleAttributes(can_login=True), password=None)

    def schema_exists(self, schema: str) -> bool:
        return self._fetchone("SELECT 1 FROM pg_catalog.pg_namespace WHERE nspname = %s;", (schema,)) is not None

    def create_schema(self, schema: str):
        self._execute(sql.SQL("CREATE SCHEMA IF NOT EXISTS {}").format(sql.Identifier(schema)))
        logger.info(f"{WHITE}Created schema: {schema}{RESET}")

    def lookup_function_source(self, schema: str) -> Optional[str]:
        """Body of the proxy lookup function, or None if it does not exist"""
        row = self._fetchone("""
            SELECT p.prosrc FROM pg_catalog.pg_proc p
                INNER JOIN pg_catalog.pg_namespace n
                    ON p.pronamespace = n.oid
                WHERE p.proname = %s AND n.nspname = %s;
        """, (LOOKUP_FUNCTION, schema))
        return row[0] if row else None

    def replace_lookup_function(self, schema: str):
        self._execute(sql.SQL("""
            CREATE OR REPLACE FUNCTION {}.{}(in i_username text, out uname text, out phash text)
                RETURNS record AS $$""" + LOOKUP_FUNCTION_BODY + """$$
            LANGUAGE plpgsql SECURITY DEFINER SET search_path = pg_catalog, pg_temp
        """).format(sql.Identifier(schema), sql.Identifier(LOOKUP_FUNCTION)))
        logger.info(f"{WHITE}Installed lookup function {schema}.{LOOKUP_FUNCTION}{RESET}")

    def has_schema_usage(self, role: str, schema: str) -> bool:
        row = self._fetchone("SELECT pg_catalog.has_schema_privilege(%s, %s, 'USAGE');", (role, schema))
        return bool(row[0])

    def grant_schema_usage(self, schema: str, role: str):
        self._execute(sql.SQL("GRANT USAGE ON SCHEMA {} TO {}").format(sql.Identifier(schema), sql.Identifier(role)))

    def lookup_function_grantees(self, schema: str) -> Set[str]:
        """Roles holding EXECUTE on the lookup function; PUBLIC appears as 'PUBLIC'"""
        rows = self._fetchall("""
            SELECT CASE WHEN a.grantee = 0 THEN 'PUBLIC'
                        ELSE pg_catalog.pg_get_userbyid(a.grantee) END
            FROM pg_catalog.pg_proc p
            CROSS JOIN LATERAL pg_catalog.aclexplode(
                COALESCE(p.proacl, pg_catalog.acldefault('f', p.proowner))) a
            WHERE p.oid = (pg_catalog.quote_ident(%s) || '.' || %s || '(text)')::regprocedure
              AND a.privilege_type = 'EXECUTE';
        """, (schema, LOOKUP_FUNCTION))
        return {r[0] for r in rows}

    def _lookup_signature(self, schema: str) -> sql.Composable:
        return sql.SQL("{}.{}(text)").format(sql.Identifier(schema), sql.Identifier(LOOKUP_FUNCTION))

    def grant_lookup_execute(self, schema: str, role: str):
        self._execute(sql.SQL("GRANT EXECUTE ON FUNCTION {} TO {}").format(
            self._lookup_signature(schema), sql.Identifier(role)))

    def revoke_lookup_public(self, schema: str):
        self._execute(sql.SQL("REVOKE ALL ON FUNCTION {} FROM PUBLIC").format(self._lookup_signature(schema)))
