"""PostgreSQL access for the incident, responder, resource and audit stores.

One ThreadedConnectionPool per process, opened lazily on first use (the
orchestrator's parallel lookups may race to open it, so opening is
locked). Repositories only ever see `transaction()`, which hands out a
dict cursor and commits or rolls back around it.

Credentials come from DB_* variables locally and from Secrets Manager
(DB_SECRET_ARN) in deployed environments.
"""
import json
import logging
import os
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Optional

import boto3
from psycopg2 import pool
from psycopg2.extras import RealDictCursor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DatabaseConfig:
    """Where and how to connect."""
    host: str
    port: int = 5432
    database: str = "safeharbor"
    username: str = ""
    password: str = ""
    min_connections: int = 2
    max_connections: int = 10
    connect_timeout: int = 10
    ssl_mode: str = "require"
    # Incident creation must not stall behind a stuck query
    statement_timeout_ms: int = 5000
    application_name: str = "safeharbor"

    @classmethod
    def from_env(cls) -> "DatabaseConfig":
        """Read DB_HOST, DB_PORT, DB_NAME, DB_USER, DB_PASSWORD, DB_MIN_CONN,
        DB_MAX_CONN, DB_SSL_MODE and DB_STATEMENT_TIMEOUT_MS."""
        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "safeharbor"),
            username=os.getenv("DB_USER", ""),
            password=os.getenv("DB_PASSWORD", ""),
            min_connections=int(os.getenv("DB_MIN_CONN", "2")),
            max_connections=int(os.getenv("DB_MAX_CONN", "10")),
            ssl_mode=os.getenv("DB_SSL_MODE", "require"),
            statement_timeout_ms=int(os.getenv("DB_STATEMENT_TIMEOUT_MS", "5000")),
        )

    @classmethod
    def from_secrets_manager(cls, secret_arn: str, region: str = "us-east-1") -> "DatabaseConfig":
        """Build config from an RDS-style secret.

        Host, port and database fall back to the environment when the
        secret omits them; pool settings always come from the environment.

        Raises:
            Whatever boto3 raises; logged as SECRETS_MANAGER_LOAD_FAILED
        """
        base = cls.from_env()
        try:
            client = boto3.client("secretsmanager", region_name=region)
            secret = json.loads(client.get_secret_value(SecretId=secret_arn)["SecretString"])
        except Exception as e:
            logger.error(
                "SECRETS_MANAGER_LOAD_FAILED",
                extra={"error": str(e), "secret_arn": secret_arn}
            )
            raise

        return cls(
            host=secret.get("host", base.host),
            port=int(secret.get("port", base.port)),
            database=secret.get("dbname", base.database),
            username=secret.get("username", ""),
            password=secret.get("password", ""),
            min_connections=base.min_connections,
            max_connections=base.max_connections,
            ssl_mode=base.ssl_mode,
            statement_timeout_ms=base.statement_timeout_ms,
        )

    @classmethod
    def load(cls) -> "DatabaseConfig":
        """Secrets Manager when DB_SECRET_ARN is set, environment otherwise."""
        secret_arn = os.getenv("DB_SECRET_ARN")
        if secret_arn:
            return cls.from_secrets_manager(secret_arn, os.getenv("AWS_REGION", "us-east-1"))
        return cls.from_env()

    def connect_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments for psycopg2.connect / the pool."""
        return {
            "host": self.host,
            "port": self.port,
            "dbname": self.database,
            "user": self.username,
            "password": self.password,
            "connect_timeout": self.connect_timeout,
            "sslmode": self.ssl_mode,
            "application_name": self.application_name,
            "options": f"-c statement_timeout={self.statement_timeout_ms}",
        }


class ConnectionManager:
    """Owns the pool; hands out transactional dict cursors."""

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self._pool: Optional[pool.ThreadedConnectionPool] = None
        self._open_lock = threading.Lock()

        logger.info(
            "CONNECTION_MANAGER_CREATED",
            extra={
                "host": config.host,
                "database": config.database,
                "max_connections": config.max_connections,
            }
        )

    @property
    def initialized(self) -> bool:
        return self._pool is not None

    def initialize(self) -> None:
        """Open the pool if it is not open yet. Safe to call repeatedly."""
        with self._open_lock:
            if self._pool is not None:
                return
            try:
                self._pool = pool.ThreadedConnectionPool(
                    self.config.min_connections,
                    self.config.max_connections,
                    **self.config.connect_kwargs(),
                )
            except Exception as e:
                logger.error(
                    "CONNECTION_POOL_INIT_FAILED",
                    extra={"host": self.config.host, "error": str(e)}
                )
                raise

        logger.info(
            "CONNECTION_POOL_INITIALIZED",
            extra={"host": self.config.host, "database": self.config.database}
        )

    @contextmanager
    def transaction(self) -> Iterator[Any]:
        """Yield a RealDictCursor inside one transaction.

        Usage:
            with manager.transaction() as cur:
                cur.execute("SELECT * FROM crisis_incidents WHERE id = %s", (incident_id,))
                row = cur.fetchone()

        Commits on normal exit, rolls back on any exception. The
        connection goes back to the pool either way.
        """
        if self._pool is None:
            self.initialize()

        conn = self._pool.getconn()
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                yield cur
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            self._pool.putconn(conn)

    def health_check(self) -> Dict[str, Any]:
        """Readiness check: opens the pool if needed and runs SELECT 1.

        Never raises; failures are reported in the result.
        """
        try:
            with self.transaction() as cur:
                cur.execute("SELECT 1")
                cur.fetchone()
        except Exception as e:
            logger.error(
                "DATABASE_HEALTH_CHECK_FAILED",
                extra={"host": self.config.host, "error": str(e)}
            )
            return {"healthy": False, "status": "error", "error": str(e)}

        return {
            "healthy": True,
            "status": "connected",
            "host": self.config.host,
            "database": self.config.database,
        }

    def close(self) -> None:
        """Close every pooled connection (shutdown hook)."""
        with self._open_lock:
            if self._pool is None:
                return
            self._pool.closeall()
            self._pool = None
        logger.info("CONNECTION_POOL_CLOSED")


_connection_manager: Optional[ConnectionManager] = None
_manager_lock = threading.Lock()


def get_connection_manager() -> ConnectionManager:
    """Process-wide manager built from DatabaseConfig.load()."""
    global _connection_manager

    with _manager_lock:
        if _connection_manager is None:
            _connection_manager = ConnectionManager(DatabaseConfig.load())
        return _connection_manager
