"""
Connection Pool Module

One PipePool per side of the copy. The pool resolves the engine family from
the target URI, hands out connections with autocommit disabled and a session
tag, probes the remote engine for a usable parallel degree, and recovers from
pool provisioning errors by re-creating the pool under a new identity.

Supported targets:
- oracle://host[:port]/service_name   (python-oracledb pool)
- postgresql://host[:port]/dbname     (psycopg2 ThreadedConnectionPool)
"""

from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse
import logging
import os
import threading
import time

import oracledb
import psycopg2
from psycopg2 import pool as pg_pool

from oracle_pipe.binders import ENGINE_ORACLE, ENGINE_POSTGRES
from oracle_pipe.exceptions import ConfigurationError, PoolProvisioningError, PrivilegeError
from oracle_pipe.utils import oracle_error_code, oracle_full_code

logger = logging.getLogger(__name__)

MODULE_NAME = "oracle-pipe"

# Connections allowed above the parallel degree
POOL_HEADROOM = int(os.environ.get('PIPE_POOL_HEADROOM', '8'))

# Negotiated SDU at or below this value is reported as a tuning opportunity
DEFAULT_SDU = 8192

# oracledb pool errors treated as a stale/exhausted pool identity
TRANSIENT_POOL_ERRORS = frozenset({
    "DPY-1002",  # connection pool is not open
    "DPY-4005",  # timed out waiting for the connection pool to return a connection
})

# Alias still registered by a pool that was never closed
POOL_ALIAS_EXISTS = "DPY-2055"

ORA_TABLE_OR_VIEW_DOES_NOT_EXIST = 942

SCHEMES = {
    "oracle": ENGINE_ORACLE,
    "postgresql": ENGINE_POSTGRES,
    "postgres": ENGINE_POSTGRES,
}

ORACLE_INSTANCE_SQL = """
select VERSION, INSTANCE_NAME, HOST_NAME,
       (select nvl(CPU_CORE_COUNT_CURRENT, CPU_COUNT_CURRENT) from V$LICENSE) CPU_CORE_COUNT_CURRENT
from   V$INSTANCE
"""

POSTGRES_WORKERS_SQL = "SELECT setting FROM pg_settings WHERE name = 'max_worker_processes'"


def parse_target(target: str) -> Tuple[str, Dict[str, Any]]:
    """
    Resolve engine family and driver connect arguments from a target URI.

    Args:
        target: oracle://host:port/service or postgresql://host:port/dbname

    Returns:
        Tuple of (engine, connect_args)

    Raises:
        ConfigurationError: If the scheme is not supported or parts are missing
    """
    parsed = urlparse(target or "")
    engine = SCHEMES.get(parsed.scheme.lower())
    if engine is None:
        raise ConfigurationError(
            f"Unsupported connection target '{target}'! "
            f"Expected one of: {', '.join(sorted(s + '://' for s in SCHEMES))}"
        )
    database = parsed.path.lstrip('/')
    if not parsed.hostname or not database:
        raise ConfigurationError(f"Connection target '{target}' must include host and database/service name")

    if engine == ENGINE_ORACLE:
        port = parsed.port or 1521
        return engine, {"dsn": f"{parsed.hostname}:{port}/{database}"}
    return engine, {"host": parsed.hostname, "port": parsed.port or 5432, "dbname": database}


class PipePool:
    """
    Sized pool of connections to one database.

    Usage:
        pool = PipePool.get("exp-pipe-pool", "oracle://db:1521/ORCL", "scott", "tiger")
        pool.resize(degree)
        conn = pool.acquire()
        try:
            ...
        finally:
            pool.release(conn)
    """

    def __init__(self, pool_name: str, target: str, user: str, password: str):
        """
        Initialize the pool.

        Args:
            pool_name: Base pool identity, also used as the session client identifier
            target: Connection target URI
            user: Database user
            password: Database password
        """
        self.pool_name = pool_name
        self.target = target
        self.engine, self._connect_args = parse_target(target)
        self._user = user
        self._password = password
        self.min_size = 1
        self.max_size = 1 + POOL_HEADROOM
        self.version = 0
        self.db_cores = 1
        self._identity = pool_name
        self._lock = threading.Lock()
        self._owners: Dict[int, Any] = {}
        self._retired: List[Any] = []
        self._pool = self._provision()
        logger.info(f"Created {self.engine} pool '{self._identity}' for {target}")

    @classmethod
    def get(cls, pool_name: str, target: str, user: str, password: str) -> "PipePool":
        """Create a pool and run the engine capacity probe on its first connection."""
        pipe_pool = cls(pool_name, target, user, password)
        try:
            if pipe_pool.engine == ENGINE_ORACLE:
                pipe_pool._probe_oracle()
            else:
                pipe_pool._probe_postgres()
        except BaseException:
            pipe_pool.close()
            raise
        return pipe_pool

    @property
    def identity(self) -> str:
        """Current internal pool identity."""
        return self._identity

    def _provision(self):
        if self.engine != ENGINE_ORACLE:
            return self._create_pool()
        while True:
            try:
                return self._create_pool()
            except oracledb.Error as e:
                if oracle_full_code(e) != POOL_ALIAS_EXISTS:
                    raise
                self.version += 1
                new_identity = f"{self.pool_name}-{self.version}"
                logger.warning(f"Pool alias '{self._identity}' is taken, renaming pool to '{new_identity}'")
                self._identity = new_identity

    def _create_pool(self):
        if self.engine == ENGINE_ORACLE:
            return oracledb.create_pool(
                user=self._user,
                password=self._password,
                min=self.min_size,
                max=self.max_size,
                increment=1,
                getmode=oracledb.POOL_GETMODE_WAIT,
                pool_alias=self._identity,
                **self._connect_args,
            )
        return pg_pool.ThreadedConnectionPool(
            minconn=self.min_size,
            maxconn=self.max_size,
            user=self._user,
            password=self._password,
            application_name=MODULE_NAME,
            **self._connect_args,
        )

    def _reprovision(self, error: Exception) -> None:
        """Re-create the pool under a new identity; the old pool is closed with this one."""
        with self._lock:
            self.version += 1
            new_identity = f"{self.pool_name}-{self.version}"
            logger.error(f"Trying to handle pool error: {error}")
            logger.error(f"Renaming pool '{self._identity}' to '{new_identity}'")
            self._retired.append(self._pool)
            self._identity = new_identity
            time.sleep(0.005)
            self._pool = self._provision()

    def _is_transient(self, error: Exception) -> bool:
        if isinstance(error, pg_pool.PoolError):
            return True
        return oracle_full_code(error) in TRANSIENT_POOL_ERRORS

    def acquire(self):
        """
        Acquire a ready connection: autocommit disabled, session tagged.

        A recognized pool provisioning error re-creates the pool under a new
        identity and retries exactly once.

        Raises:
            PoolProvisioningError: If the retry hits a provisioning error again
        """
        try:
            return self._acquire()
        except (oracledb.Error, pg_pool.PoolError) as e:
            if not self._is_transient(e):
                raise
            self._reprovision(e)

        try:
            return self._acquire()
        except (oracledb.Error, pg_pool.PoolError) as e:
            if not self._is_transient(e):
                raise
            raise PoolProvisioningError(
                f"Pool '{self._identity}' failed again after re-provisioning: {e}",
                details={"pool": self.pool_name, "version": self.version},
            ) from e

    def _acquire(self):
        pool = self._pool
        if self.engine == ENGINE_ORACLE:
            conn = pool.acquire()
            conn.module = MODULE_NAME
            conn.client_identifier = self.pool_name
        else:
            conn = pool.getconn()
        conn.autocommit = False
        with self._lock:
            self._owners[id(conn)] = pool
        return conn

    def release(self, conn) -> None:
        """
        Roll back anything uncommitted and return the connection to its pool.

        Args:
            conn: Connection to return (can be None, will be ignored)
        """
        if conn is None:
            return
        with self._lock:
            pool = self._owners.pop(id(conn), self._pool)
        try:
            conn.rollback()
        except (oracledb.Error, psycopg2.Error) as e:
            logger.warning(f"Rollback before release failed on pool '{self._identity}': {e}")
        if self.engine == ENGINE_ORACLE:
            pool.release(conn)
        else:
            pool.putconn(conn)

    def resize(self, degree: int) -> None:
        """
        Size the pool for a parallel degree: min = degree, max = degree + POOL_HEADROOM.
        """
        self.min_size = degree
        self.max_size = degree + POOL_HEADROOM
        if self.engine == ENGINE_ORACLE:
            self._pool.reconfigure(min=self.min_size, max=self.max_size, increment=1)
        else:
            # psycopg2 pools are fixed-size; nothing is checked out yet
            old_pool = self._pool
            self._pool = self._provision()
            old_pool.closeall()
        logger.info(f"Pool '{self._identity}' resized to min={self.min_size}, max={self.max_size}")

    def close(self) -> None:
        """Close the pool and any pool retired by re-provisioning."""
        for pool in self._retired + [self._pool]:
            if self.engine == ENGINE_ORACLE:
                pool.close(force=True)
            else:
                pool.closeall()
        self._retired = []
        logger.info(f"Pool '{self._identity}' closed")

    def _probe_oracle(self) -> None:
        conn = self.acquire()
        try:
            sdu = getattr(conn, "sdu", None)
            with conn.cursor() as cursor:
                try:
                    cursor.execute(ORACLE_INSTANCE_SQL)
                except oracledb.DatabaseError as e:
                    if oracle_error_code(e) == ORA_TABLE_OR_VIEW_DOES_NOT_EXIST:
                        grants = [
                            f"grant select on V_$INSTANCE to {self._user};",
                            f"grant select on V_$LICENSE to {self._user};",
                        ]
                        logger.error(
                            "\n=====================\n"
                            "Please run as SYSDBA:\n\t" + "\n\t".join(grants) +
                            "\nAnd restart the pipe\n"
                            "=====================\n"
                        )
                        raise PrivilegeError(
                            f"User {self._user} cannot read V$INSTANCE/V$LICENSE", grants=grants
                        ) from e
                    raise
                row = cursor.fetchone()
        finally:
            self.release(conn)

        if row:
            version, instance_name, host_name, cores = row
            self.db_cores = int(cores or 1)
            logger.info(
                f"Connected to Oracle {version} instance {instance_name} on {host_name} "
                f"({self.db_cores} cores)"
            )
        if sdu is not None and sdu <= DEFAULT_SDU:
            logger.warning(
                "\n=====================\n"
                f"The negotiated SDU for connection to '{self.target}' is set to {sdu}.\n"
                "\tWe recommend increasing it (SDU in the connect descriptor or sqlnet.ora)\n"
                "\tto achieve better performance.\n"
                "====================="
            )

    def _probe_postgres(self) -> None:
        conn = self.acquire()
        try:
            with conn.cursor() as cursor:
                cursor.execute(POSTGRES_WORKERS_SQL)
                row = cursor.fetchone()
            if row:
                self.db_cores = int(row[0])
            logger.info(f"PostgreSQL max_worker_processes = {self.db_cores}")
        except psycopg2.Error as e:
            logger.warning(f"Unable to read max_worker_processes, assuming {self.db_cores}: {e}")
        finally:
            self.release(conn)

    @property
    def stats(self) -> Dict[str, Any]:
        """Get pool statistics."""
        return {
            "engine": self.engine,
            "identity": self._identity,
            "min": self.min_size,
            "max": self.max_size,
            "cores": self.db_cores,
        }
