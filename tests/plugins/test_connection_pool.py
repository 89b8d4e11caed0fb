"""
Tests for Connection Pool Module

These tests validate target parsing, session setup, sizing, the engine
capacity probe and recovery from pool provisioning errors.
"""

from types import SimpleNamespace

import oracledb
import psycopg2
import pytest
from unittest.mock import MagicMock, patch
from psycopg2 import pool as pg_pool

from oracle_pipe.connection_pool import (
    MODULE_NAME,
    POOL_HEADROOM,
    PipePool,
    parse_target,
)
from oracle_pipe.exceptions import ConfigurationError, PoolProvisioningError, PrivilegeError

ORACLE_TARGET = "oracle://dbhost:1522/ORCLPDB1"
POSTGRES_TARGET = "postgresql://pghost/warehouse"


def oracle_error(full_code, code=0):
    return oracledb.DatabaseError(SimpleNamespace(code=code, full_code=full_code))


def make_oracle_connection(probe_row=("19.0.0.0.0", "ORCL", "dbhost", 16), sdu=65535, error=None):
    cursor = MagicMock()
    if error is not None:
        cursor.execute.side_effect = error
    cursor.fetchone.return_value = probe_row
    conn = MagicMock()
    conn.sdu = sdu
    conn.cursor.return_value.__enter__.return_value = cursor
    return conn


class TestParseTarget:
    """Test engine resolution from target URIs."""

    def test_oracle_default_port(self):
        assert parse_target("oracle://dbhost/ORCL") == ("oracle", {"dsn": "dbhost:1521/ORCL"})

    def test_oracle_explicit_port(self):
        assert parse_target(ORACLE_TARGET) == ("oracle", {"dsn": "dbhost:1522/ORCLPDB1"})

    def test_postgres(self):
        assert parse_target(POSTGRES_TARGET) == (
            "postgresql", {"host": "pghost", "port": 5432, "dbname": "warehouse"}
        )
        assert parse_target("postgres://pghost:6543/dw")[1]["port"] == 6543

    def test_unknown_scheme(self):
        with pytest.raises(ConfigurationError, match="mysql"):
            parse_target("mysql://host/db")

    def test_missing_parts(self):
        with pytest.raises(ConfigurationError):
            parse_target("oracle://dbhost")
        with pytest.raises(ConfigurationError):
            parse_target("")


class TestOraclePool:
    """Test the python-oracledb backed pool."""

    @pytest.fixture
    def mock_create_pool(self):
        with patch('oracle_pipe.connection_pool.oracledb.create_pool') as mock_create:
            yield mock_create

    def test_provisioning(self, mock_create_pool):
        pipe_pool = PipePool("oracle-pipe-source", ORACLE_TARGET, "scott", "tiger")

        assert pipe_pool.engine == "oracle"
        _, kwargs = mock_create_pool.call_args
        assert kwargs["dsn"] == "dbhost:1522/ORCLPDB1"
        assert kwargs["user"] == "scott"
        assert kwargs["password"] == "tiger"
        assert kwargs["pool_alias"] == "oracle-pipe-source"
        assert kwargs["getmode"] == oracledb.POOL_GETMODE_WAIT
        assert kwargs["min"] == 1
        assert kwargs["max"] == 1 + POOL_HEADROOM

    def test_acquire_sets_up_session(self, mock_create_pool):
        conn = MagicMock()
        mock_create_pool.return_value.acquire.return_value = conn
        pipe_pool = PipePool("oracle-pipe-source", ORACLE_TARGET, "scott", "tiger")

        assert pipe_pool.acquire() is conn
        assert conn.autocommit is False
        assert conn.module == MODULE_NAME
        assert conn.client_identifier == "oracle-pipe-source"

    def test_release_rolls_back(self, mock_create_pool):
        conn = MagicMock()
        pool = mock_create_pool.return_value
        pool.acquire.return_value = conn
        pipe_pool = PipePool("p", ORACLE_TARGET, "scott", "tiger")

        pipe_pool.release(pipe_pool.acquire())

        conn.rollback.assert_called_once()
        pool.release.assert_called_once_with(conn)

    def test_release_none_is_ignored(self, mock_create_pool):
        pipe_pool = PipePool("p", ORACLE_TARGET, "scott", "tiger")
        pipe_pool.release(None)
        mock_create_pool.return_value.release.assert_not_called()

    def test_resize(self, mock_create_pool):
        pipe_pool = PipePool("p", ORACLE_TARGET, "scott", "tiger")
        pipe_pool.resize(4)
        mock_create_pool.return_value.reconfigure.assert_called_once_with(min=4, max=4 + POOL_HEADROOM, increment=1)
        assert pipe_pool.stats["min"] == 4
        assert pipe_pool.stats["max"] == 4 + POOL_HEADROOM

    def test_close(self, mock_create_pool):
        pipe_pool = PipePool("p", ORACLE_TARGET, "scott", "tiger")
        pipe_pool.close()
        mock_create_pool.return_value.close.assert_called_once_with(force=True)


class TestPoolRecovery:
    """Test re-provisioning after pool identity errors."""

    @pytest.fixture
    def pools(self):
        first, second = MagicMock(name="first"), MagicMock(name="second")
        with patch('oracle_pipe.connection_pool.oracledb.create_pool', side_effect=[first, second]) as mock_create:
            with patch('oracle_pipe.connection_pool.time.sleep'):
                yield SimpleNamespace(first=first, second=second, create=mock_create)

    def test_transient_error_reprovisions_and_retries_once(self, pools):
        conn = MagicMock()
        pools.first.acquire.side_effect = oracle_error("DPY-4005")
        pools.second.acquire.return_value = conn
        pipe_pool = PipePool("oracle-pipe-source", ORACLE_TARGET, "scott", "tiger")

        assert pipe_pool.acquire() is conn
        assert pipe_pool.version == 1
        assert pipe_pool.identity == "oracle-pipe-source-1"
        assert pools.create.call_args_list[1][1]["pool_alias"] == "oracle-pipe-source-1"
        # Sessions keep the base name
        assert conn.client_identifier == "oracle-pipe-source"

    def test_connection_returned_to_owning_pool(self, pools):
        old_conn, new_conn = MagicMock(), MagicMock()
        pools.first.acquire.side_effect = [old_conn, oracle_error("DPY-1002")]
        pools.second.acquire.return_value = new_conn
        pipe_pool = PipePool("p", ORACLE_TARGET, "scott", "tiger")

        first = pipe_pool.acquire()
        second = pipe_pool.acquire()
        pipe_pool.release(first)
        pipe_pool.release(second)

        pools.first.release.assert_called_once_with(old_conn)
        pools.second.release.assert_called_once_with(new_conn)

    def test_close_includes_retired_pools(self, pools):
        pools.first.acquire.side_effect = oracle_error("DPY-4005")
        pipe_pool = PipePool("p", ORACLE_TARGET, "scott", "tiger")
        pipe_pool.acquire()
        pipe_pool.close()
        pools.first.close.assert_called_once_with(force=True)
        pools.second.close.assert_called_once_with(force=True)

    def test_persistent_error_raises(self, pools):
        pools.first.acquire.side_effect = oracle_error("DPY-4005")
        pools.second.acquire.side_effect = oracle_error("DPY-4005")
        pipe_pool = PipePool("p", ORACLE_TARGET, "scott", "tiger")

        with pytest.raises(PoolProvisioningError):
            pipe_pool.acquire()
        assert pools.create.call_count == 2

    def test_other_errors_propagate_unchanged(self, pools):
        error = oracle_error("ORA-01017", code=1017)
        pools.first.acquire.side_effect = error
        pipe_pool = PipePool("p", ORACLE_TARGET, "scott", "tiger")

        with pytest.raises(oracledb.DatabaseError) as exc_info:
            pipe_pool.acquire()
        assert exc_info.value is error
        assert pools.create.call_count == 1
        assert pipe_pool.version == 0

    def test_alias_conflict_renames_pool(self):
        created = MagicMock(name="created")
        with patch('oracle_pipe.connection_pool.oracledb.create_pool',
                   side_effect=[oracle_error("DPY-2055"), created]) as mock_create:
            pipe_pool = PipePool("oracle-pipe-source", ORACLE_TARGET, "scott", "tiger")

        assert pipe_pool.identity == "oracle-pipe-source-1"
        assert pipe_pool.version == 1
        assert mock_create.call_args_list[0][1]["pool_alias"] == "oracle-pipe-source"
        assert mock_create.call_args_list[1][1]["pool_alias"] == "oracle-pipe-source-1"
        pipe_pool.close()
        created.close.assert_called_once_with(force=True)

    def test_other_creation_errors_propagate(self):
        with patch('oracle_pipe.connection_pool.oracledb.create_pool',
                   side_effect=oracle_error("ORA-12514", code=12514)) as mock_create:
            with pytest.raises(oracledb.DatabaseError):
                PipePool("p", ORACLE_TARGET, "scott", "tiger")
        assert mock_create.call_count == 1


class TestOracleProbe:
    """Test the Oracle capacity probe."""

    def test_core_count(self):
        with patch('oracle_pipe.connection_pool.oracledb.create_pool') as mock_create:
            mock_create.return_value.acquire.return_value = make_oracle_connection()
            pipe_pool = PipePool.get("p", ORACLE_TARGET, "scott", "tiger")
        assert pipe_pool.db_cores == 16

    def test_small_sdu_warns(self, caplog):
        with patch('oracle_pipe.connection_pool.oracledb.create_pool') as mock_create:
            mock_create.return_value.acquire.return_value = make_oracle_connection(sdu=8192)
            PipePool.get("p", ORACLE_TARGET, "scott", "tiger")
        assert "SDU" in caplog.text
        assert "8192" in caplog.text

    def test_large_sdu_does_not_warn(self, caplog):
        with patch('oracle_pipe.connection_pool.oracledb.create_pool') as mock_create:
            mock_create.return_value.acquire.return_value = make_oracle_connection(sdu=2097152)
            PipePool.get("p", ORACLE_TARGET, "scott", "tiger")
        assert "SDU" not in caplog.text

    def test_missing_grants(self):
        conn = make_oracle_connection(error=oracle_error("ORA-00942", code=942))
        with patch('oracle_pipe.connection_pool.oracledb.create_pool') as mock_create:
            mock_create.return_value.acquire.return_value = conn
            with pytest.raises(PrivilegeError) as exc_info:
                PipePool.get("p", ORACLE_TARGET, "scott", "tiger")
        assert exc_info.value.grants == [
            "grant select on V_$INSTANCE to scott;",
            "grant select on V_$LICENSE to scott;",
        ]
        mock_create.return_value.release.assert_called_once_with(conn)

    def test_failed_probe_closes_pool(self):
        conn = make_oracle_connection(error=oracle_error("ORA-00942", code=942))
        with patch('oracle_pipe.connection_pool.oracledb.create_pool') as mock_create:
            mock_create.return_value.acquire.return_value = conn
            with pytest.raises(PrivilegeError):
                PipePool.get("oracle-pipe-source", ORACLE_TARGET, "scott", "tiger")
        mock_create.return_value.close.assert_called_once_with(force=True)

    def test_unexpected_probe_error_closes_pool(self):
        conn = make_oracle_connection(error=oracle_error("ORA-03113", code=3113))
        with patch('oracle_pipe.connection_pool.oracledb.create_pool') as mock_create:
            mock_create.return_value.acquire.return_value = conn
            with pytest.raises(oracledb.DatabaseError):
                PipePool.get("oracle-pipe-source", ORACLE_TARGET, "scott", "tiger")
        mock_create.return_value.close.assert_called_once_with(force=True)


class TestPostgresPool:
    """Test the psycopg2 backed pool."""

    @pytest.fixture
    def mock_pool_class(self):
        with patch('oracle_pipe.connection_pool.pg_pool.ThreadedConnectionPool') as mock_class:
            yield mock_class

    def test_provisioning(self, mock_pool_class):
        pipe_pool = PipePool("oracle-pipe-destination", POSTGRES_TARGET, "etl", "secret")
        assert pipe_pool.engine == "postgresql"
        mock_pool_class.assert_called_once_with(
            minconn=1,
            maxconn=1 + POOL_HEADROOM,
            user="etl",
            password="secret",
            application_name=MODULE_NAME,
            host="pghost",
            port=5432,
            dbname="warehouse",
        )

    def test_acquire_and_release(self, mock_pool_class):
        conn = MagicMock()
        pool = mock_pool_class.return_value
        pool.getconn.return_value = conn
        pipe_pool = PipePool("p", POSTGRES_TARGET, "etl", "secret")

        assert pipe_pool.acquire() is conn
        assert conn.autocommit is False
        pipe_pool.release(conn)
        conn.rollback.assert_called_once()
        pool.putconn.assert_called_once_with(conn)

    def test_pool_error_reprovisions(self, mock_pool_class):
        first, second = MagicMock(), MagicMock()
        conn = MagicMock()
        first.getconn.side_effect = pg_pool.PoolError("connection pool exhausted")
        second.getconn.return_value = conn
        mock_pool_class.side_effect = [first, second]
        with patch('oracle_pipe.connection_pool.time.sleep'):
            pipe_pool = PipePool("p", POSTGRES_TARGET, "etl", "secret")
            assert pipe_pool.acquire() is conn
        assert pipe_pool.identity == "p-1"

    def test_resize_recreates_pool(self, mock_pool_class):
        first, second = MagicMock(), MagicMock()
        mock_pool_class.side_effect = [first, second]
        pipe_pool = PipePool("p", POSTGRES_TARGET, "etl", "secret")
        pipe_pool.resize(4)
        assert mock_pool_class.call_args_list[1][1]["minconn"] == 4
        assert mock_pool_class.call_args_list[1][1]["maxconn"] == 4 + POOL_HEADROOM
        first.closeall.assert_called_once()

    def test_probe_reads_max_worker_processes(self, mock_pool_class):
        cursor = MagicMock()
        cursor.fetchone.return_value = ("8",)
        conn = MagicMock()
        conn.cursor.return_value.__enter__.return_value = cursor
        mock_pool_class.return_value.getconn.return_value = conn

        pipe_pool = PipePool.get("p", POSTGRES_TARGET, "etl", "secret")

        assert pipe_pool.db_cores == 8
        mock_pool_class.return_value.putconn.assert_called_once_with(conn)

    def test_probe_failure_keeps_default(self, mock_pool_class, caplog):
        cursor = MagicMock()
        cursor.execute.side_effect = psycopg2.OperationalError("permission denied")
        conn = MagicMock()
        conn.cursor.return_value.__enter__.return_value = cursor
        mock_pool_class.return_value.getconn.return_value = conn

        pipe_pool = PipePool.get("p", POSTGRES_TARGET, "etl", "secret")

        assert pipe_pool.db_cores == 1
        assert "max_worker_processes" in caplog.text
