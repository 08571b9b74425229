"""Tests for database connection manager."""
from unittest.mock import MagicMock, patch

import pytest

from safeharbor.shared.utils import configure_pii_salt
from safeharbor.shared.database.connection import ConnectionManager, DatabaseConfig


@pytest.fixture(autouse=True)
def setup_pii_salt():
    configure_pii_salt("test_salt_that_is_at_least_32_characters_long")


class TestDatabaseConfig:
    """Tests for DatabaseConfig dataclass."""

    def test_default_values(self):
        config = DatabaseConfig(host="localhost")

        assert config.port == 5432
        assert config.database == "safeharbor"
        assert config.min_connections == 2
        assert config.max_connections == 10
        assert config.ssl_mode == "require"

    def test_from_env(self):
        with patch.dict("os.environ", {
            "DB_HOST": "env-host",
            "DB_PORT": "5434",
            "DB_NAME": "env_db",
            "DB_USER": "env_user",
            "DB_PASSWORD": "env_pass",
            "DB_MAX_CONN": "4",
        }):
            config = DatabaseConfig.from_env()

            assert config.host == "env-host"
            assert config.port == 5434
            assert config.database == "env_db"
            assert config.username == "env_user"
            assert config.max_connections == 4

    def test_from_env_defaults(self):
        with patch.dict("os.environ", {}, clear=True):
            config = DatabaseConfig.from_env()

            assert config.host == "localhost"
            assert config.database == "safeharbor"

    def test_from_secrets_manager(self):
        client = MagicMock()
        client.get_secret_value.return_value = {
            "SecretString": '{"host": "db.internal", "username": "svc", "password": "pw"}'
        }
        with patch("safeharbor.shared.database.connection.boto3.client", return_value=client):
            config = DatabaseConfig.from_secrets_manager("arn:aws:secretsmanager:x")

        assert config.host == "db.internal"
        assert config.username == "svc"

    def test_load_prefers_secret_arn(self):
        with patch.dict("os.environ", {"DB_SECRET_ARN": "arn:aws:secretsmanager:y"}, clear=True):
            with patch.object(DatabaseConfig, "from_secrets_manager") as from_secret:
                DatabaseConfig.load()

        from_secret.assert_called_once_with("arn:aws:secretsmanager:y", "us-east-1")

    def test_load_falls_back_to_env(self):
        with patch.dict("os.environ", {"DB_HOST": "local-db"}, clear=True):
            assert DatabaseConfig.load().host == "local-db"


class TestConnectionManager:
    """Tests for ConnectionManager class."""

    def manager_with_pool(self):
        manager = ConnectionManager(DatabaseConfig(host="localhost"))
        conn = MagicMock()
        manager._pool = MagicMock()
        manager._pool.getconn.return_value = conn
        return manager, conn

    def test_health_check_reports_unreachable_database(self):
        manager = ConnectionManager(DatabaseConfig(host="localhost"))

        with patch(
            "safeharbor.shared.database.connection.pool.ThreadedConnectionPool",
            side_effect=Exception("connection refused"),
        ):
            health = manager.health_check()

        assert health["healthy"] is False
        assert health["status"] == "error"
        assert "connection refused" in health["error"]
        assert manager.initialized is False

    def test_transaction_opens_pool_lazily(self):
        manager = ConnectionManager(DatabaseConfig(host="db", statement_timeout_ms=750))

        with patch(
            "safeharbor.shared.database.connection.pool.ThreadedConnectionPool"
        ) as pool_cls:
            with manager.transaction():
                pass
            manager.initialize()

        pool_cls.assert_called_once()
        kwargs = pool_cls.call_args.kwargs
        assert kwargs["host"] == "db"
        assert kwargs["options"] == "-c statement_timeout=750"
        assert manager.initialized is True

    def test_transaction_commits(self):
        manager, conn = self.manager_with_pool()

        with manager.transaction() as cur:
            cur.execute("SELECT 1")

        conn.commit.assert_called_once()
        conn.rollback.assert_not_called()
        manager._pool.putconn.assert_called_once_with(conn)

    def test_transaction_rolls_back_on_error(self):
        manager, conn = self.manager_with_pool()

        with pytest.raises(RuntimeError):
            with manager.transaction():
                raise RuntimeError("boom")

        conn.rollback.assert_called_once()
        conn.commit.assert_not_called()
        manager._pool.putconn.assert_called_once_with(conn)

    def test_health_check_connected(self):
        manager, _ = self.manager_with_pool()

        assert manager.health_check()["healthy"] is True

    def test_close_releases_pool(self):
        manager, _ = self.manager_with_pool()
        pool = manager._pool

        manager.close()

        pool.closeall.assert_called_once()
        assert manager.initialized is False
