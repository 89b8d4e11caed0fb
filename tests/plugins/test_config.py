"""
Tests for Run Configuration Module

These tests validate defaults, validation of every setting and resolution of
Airflow connections.
"""

import pytest
from unittest.mock import Mock, patch

from oracle_pipe.config import PipeConfig, resolve_connection
from oracle_pipe.exceptions import ConfigurationError


def make_config(**overrides):
    settings = dict(
        source_target="oracle://src:1521/ORCL",
        source_user="scott",
        source_password="tiger",
        destination_target="postgresql://dst:5432/warehouse",
        destination_user="etl",
        destination_password="secret",
        source_schema="SCOTT",
        source_table="EMP",
    )
    settings.update(overrides)
    return PipeConfig(**settings)


def make_airflow_connection(conn_type, host, port, schema, login, password, extra=None):
    conn = Mock()
    conn.conn_type = conn_type
    conn.host = host
    conn.port = port
    conn.schema = schema
    conn.login = login
    conn.password = password
    conn.extra_dejson = extra or {}
    return conn


class TestDefaults:
    """Test derived defaults."""

    def test_destination_defaults_to_source_names(self):
        config = make_config()
        assert config.destination_schema == "SCOTT"
        assert config.destination_table == "EMP"

    def test_tuning_defaults(self):
        config = make_config()
        assert config.commit_after == 50
        assert config.fetch_strategy == "bounded"
        assert config.store_backend == "memory"
        assert config.degree is None

    def test_rowid_passthrough_default_column(self):
        assert make_config(rowid_passthrough=True).passthrough_column == "ORA_ROW_ID"
        assert make_config(rowid_passthrough=True, rowid_column="SRC_ROWID").passthrough_column == "SRC_ROWID"
        assert make_config(rowid_column="SRC_ROWID").passthrough_column is None

    def test_rowid_column_without_passthrough_warns(self, caplog):
        make_config(rowid_column="SRC_ROWID")
        assert "SRC_ROWID" in caplog.text
        assert "ignored" in caplog.text

    def test_rowid_column_with_passthrough_does_not_warn(self, caplog):
        make_config(rowid_passthrough=True, rowid_column="SRC_ROWID")
        assert "ignored" not in caplog.text

    def test_where_clause_normalized(self):
        assert make_config(where_clause="DEPTNO = 10").where_clause == "where DEPTNO = 10"
        assert make_config(where_clause="  WHERE DEPTNO = 10 ").where_clause == "WHERE DEPTNO = 10"
        assert make_config(where_clause="   ").where_clause is None

    def test_to_dict_hides_passwords(self):
        data = make_config().to_dict()
        assert "source_password" not in data
        assert "destination_password" not in data
        assert data["source_table"] == "EMP"


class TestValidate:
    """Test configuration validation."""

    def test_valid_config(self):
        make_config().validate()

    def test_bad_target(self):
        with pytest.raises(ConfigurationError, match="destination"):
            make_config(destination_target="mysql://dst/db").validate()

    def test_bad_identifier(self):
        with pytest.raises(ConfigurationError, match="source table"):
            make_config(source_table="EMP; drop table EMP").validate()

    def test_bad_numbers(self):
        with pytest.raises(ConfigurationError) as exc_info:
            make_config(degree=0, commit_after=0).validate()
        problems = exc_info.value.details["problems"]
        assert len(problems) == 2

    def test_bad_choices(self):
        with pytest.raises(ConfigurationError) as exc_info:
            make_config(fetch_strategy="some", store_backend="tape").validate()
        assert len(exc_info.value.details["problems"]) == 2

    def test_missing_scratch_directory(self, tmp_path):
        with pytest.raises(ConfigurationError, match="Scratch directory"):
            make_config(store_backend="disk", scratch_directory=str(tmp_path / "missing")).validate()
        make_config(store_backend="disk", scratch_directory=str(tmp_path)).validate()

    def test_bad_rowid_column(self):
        with pytest.raises(ConfigurationError, match="ROWID column"):
            make_config(rowid_passthrough=True, rowid_column="row id").validate()

    def test_configuration_error_is_value_error(self):
        with pytest.raises(ValueError):
            make_config(commit_after=-1).validate()


class TestResolveConnection:
    """Test Airflow connection resolution."""

    def test_oracle_service_name_extra(self):
        conn = make_airflow_connection("oracle", "src", None, "ORCL", "scott", "tiger",
                                       extra={"service_name": "ORCLPDB1"})
        with patch('oracle_pipe.config.BaseHook.get_connection', return_value=conn):
            assert resolve_connection("oracle_source") == ("oracle://src:1521/ORCLPDB1", "scott", "tiger")

    def test_oracle_schema_fallback(self):
        conn = make_airflow_connection("oracle", "src", 1522, "ORCL", "scott", "tiger")
        with patch('oracle_pipe.config.BaseHook.get_connection', return_value=conn):
            assert resolve_connection("oracle_source")[0] == "oracle://src:1522/ORCL"

    def test_postgres(self):
        conn = make_airflow_connection("postgres", "dst", 5433, "warehouse", "etl", None)
        with patch('oracle_pipe.config.BaseHook.get_connection', return_value=conn):
            assert resolve_connection("pg") == ("postgresql://dst:5433/warehouse", "etl", "")

    def test_unsupported_type(self):
        conn = make_airflow_connection("mssql", "db", 1433, "master", "sa", "pw")
        with patch('oracle_pipe.config.BaseHook.get_connection', return_value=conn):
            with pytest.raises(ConfigurationError, match="mssql"):
                resolve_connection("mssql_source")

    def test_missing_conn_id(self):
        with pytest.raises(ConfigurationError):
            resolve_connection(None)


class TestFromParams:
    """Test building a config from DAG params."""

    def test_from_params(self):
        connections = {
            "oracle_source": make_airflow_connection("oracle", "src", 1521, "ORCL", "scott", "tiger"),
            "pg_destination": make_airflow_connection("postgres", "dst", 5432, "warehouse", "etl", "secret"),
        }
        params = {
            "source_conn_id": "oracle_source",
            "destination_conn_id": "pg_destination",
            "source_schema": "SCOTT",
            "source_table": "EMP",
            "destination_schema": "",
            "destination_table": "EMP_COPY",
            "where_clause": "",
            "degree": 0,
            "commit_after": 500,
            "fetch_strategy": "all",
            "store_backend": "disk",
            "scratch_directory": "",
            "rowid_passthrough": True,
            "rowid_column": "ORA_ROW_ID",
        }
        with patch('oracle_pipe.config.BaseHook.get_connection', side_effect=connections.get):
            config = PipeConfig.from_params(params)

        assert config.source_target == "oracle://src:1521/ORCL"
        assert config.destination_target == "postgresql://dst:5432/warehouse"
        assert config.destination_user == "etl"
        assert config.destination_schema == "SCOTT"
        assert config.destination_table == "EMP_COPY"
        assert config.where_clause is None
        assert config.degree is None
        assert config.commit_after == 500
        assert config.fetch_strategy == "all"
        assert config.store_backend == "disk"
        assert config.scratch_directory is None
        assert config.passthrough_column == "ORA_ROW_ID"
        config.validate()

    def test_from_params_default_rowid_column_without_passthrough(self, caplog):
        connections = {
            "oracle_source": make_airflow_connection("oracle", "src", 1521, "ORCL", "scott", "tiger"),
            "pg_destination": make_airflow_connection("postgres", "dst", 5432, "warehouse", "etl", "secret"),
        }
        params = {
            "source_conn_id": "oracle_source",
            "destination_conn_id": "pg_destination",
            "source_schema": "SCOTT",
            "source_table": "EMP",
            "rowid_passthrough": False,
            "rowid_column": "ORA_ROW_ID",
        }
        with patch('oracle_pipe.config.BaseHook.get_connection', side_effect=connections.get):
            config = PipeConfig.from_params(params)

        assert config.rowid_column is None
        assert config.passthrough_column is None
        assert "ignored" not in caplog.text
