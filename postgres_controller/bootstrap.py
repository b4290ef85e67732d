"""
PgBouncer auth hook bootstrap

PgBouncer authenticates clients by calling a lookup function in the server
(auth_query). The function, its schema and the grants limiting who may call it
are shared by every managed database, so they are set up once at startup,
before any reconcile pass runs. Any failure here stops the process: running
with a broken hook would silently break client connections for every database.
"""

import psycopg2

from .config import Config
from .database import LOOKUP_FUNCTION_BODY, DatabaseClient
from .errors import BootstrapError, ControllerError
from .log import GREEN, RESET, get_logger

logger = get_logger("bootstrap")


def ensure_auth_hook(db: DatabaseClient, config: Config):
    """
    Create or verify the PgBouncer auth hook

    Steps, each checked before acting:
        - the connecting user may create roles and databases
        - the proxy role exists and can log in
        - the schema exists
        - the lookup function exists with the expected body
        - the proxy role has schema usage and function execute
        - PUBLIC cannot execute the lookup function

    Raises:
        BootstrapError: when any step fails
    """
    schema = config.PGBOUNCER_SCHEMA
    proxy = config.PGBOUNCER_ROLE

    try:
        with db.session() as session:
            admin = session.fetch_role(config.DB_USER)
            if admin is None or not (admin.superuser or (admin.create_role and admin.create_db)):
                raise BootstrapError(f"user {config.DB_USER!r} must have CREATEROLE and CREATEDB permissions")
            logger.info("Current user has required permissions")

            proxy_role = session.fetch_role(proxy)
            if proxy_role is None:
                logger.warning(f"{proxy} user does not exist, creating...")
                session.create_login_role(proxy)
            elif not proxy_role.can_login:
                logger.warning(f"{proxy} user should be able to login")
            else:
                logger.info(f"{proxy} user already exists")

            if not session.schema_exists(schema):
                session.create_schema(schema)

            source = session.lookup_function_source(schema)
            if source is None or source.strip() != LOOKUP_FUNCTION_BODY.strip():
                if source is not None:
                    logger.warning(f"Lookup function {schema}.user_lookup drifted, replacing")
                session.replace_lookup_function(schema)

            if not session.has_schema_usage(proxy, schema):
                session.grant_schema_usage(schema, proxy)
                logger.info(f"  ↳ Granted usage on schema {schema} to {proxy}")

            grantees = session.lookup_function_grantees(schema)
            if proxy not in grantees:
                session.grant_lookup_execute(schema, proxy)
                logger.info(f"  ↳ Granted execute on {schema}.user_lookup to {proxy}")
            if "PUBLIC" in grantees:
                session.revoke_lookup_public(schema)
                logger.info(f"  ↳ Revoked public execute on {schema}.user_lookup")
    except BootstrapError:
        raise
    except (psycopg2.Error, ControllerError) as e:
        raise BootstrapError(f"unable to set up auth hook: {e}") from e

    logger.info(f"{GREEN}Auth hook verified ({schema}.user_lookup for {proxy}){RESET}")
