"""Graph store adapter: runs Cypher against Neo4j or FalkorDB.

Both connections expose the same small surface used by the hierarchy store:

    rows = conn.run(cypher, params)          # list[dict], auto-commit
    with conn.transaction() as tx:           # one explicit write transaction
        tx.run(cypher, params)

Neo4j gives a real multi-statement transaction. FalkorDB executes each query
atomically but cannot group several, so ``supports_transactions`` is False
and callers re-validate inside their guarded writes.
"""

import logging
import os
from contextlib import contextmanager
from typing import Optional

from neo4j import GraphDatabase
from neo4j.exceptions import ServiceUnavailable, SessionExpired
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from .config_loader import HierarchyConfig, get_config
from .db_result_helpers import result_to_dicts

logger = logging.getLogger(__name__)


def _looks_like_connection_error(error: Exception) -> bool:
    error_msg = str(error).lower()
    return "defunct" in error_msg or "connection" in error_msg or "timeout" in error_msg


class _RetryMixin:
    """Reconnect-and-retry wrapper shared by both backends; each defines ``reconnect()``."""

    _retryable_errors: tuple = ()
    max_retries: int = 2

    def _execute_with_retry(self, query_func, max_retries: Optional[int] = None):
        """Execute a query function with automatic retry on connection failure."""
        if max_retries is None:
            max_retries = self.max_retries
        last_error = None
        for attempt in range(max_retries + 1):
            try:
                return query_func()
            except self._retryable_errors as e:
                last_error = e
                if attempt < max_retries:
                    logger.warning(f"Graph connection lost ({e}); reconnecting (attempt {attempt + 1})")
                    self.reconnect()
                else:
                    raise
            except Exception as e:
                if _looks_like_connection_error(e):
                    last_error = e
                    if attempt < max_retries:
                        logger.warning(f"Graph connection error ({e}); reconnecting (attempt {attempt + 1})")
                        self.reconnect()
                    else:
                        raise
                else:
                    raise
        raise last_error


class _Neo4jTransactionRunner:
    """Runs queries inside one open Neo4j transaction."""

    def __init__(self, tx):
        self._tx = tx

    def run(self, cypher: str, params: dict = None) -> list[dict]:
        result = self._tx.run(cypher, params or {})
        return [record.data() for record in result]


class GraphConnection(_RetryMixin):
    """Neo4j-backed store adapter."""

    supports_transactions = True
    _retryable_errors = (ServiceUnavailable, SessionExpired)

    def __init__(self, config: Optional[HierarchyConfig] = None):
        config = config or get_config()
        self.uri = os.getenv("NEO4J_URI")
        self.user = os.getenv("NEO4J_USER")
        self.password = os.getenv("NEO4J_PASSWORD")
        self.database = os.getenv("NEO4J_DATABASE", "neo4j")
        self.max_retries = config.graph.max_retries
        self.driver = None

    def connect(self):
        if not self.driver:
            self.driver = GraphDatabase.driver(
                self.uri,
                auth=(self.user, self.password),
                max_connection_lifetime=3600,
                max_connection_pool_size=50,
                connection_acquisition_timeout=30,
                keep_alive=True,
            )
        return self.driver

    def reconnect(self):
        """Force reconnection by closing existing driver and creating new one."""
        if self.driver:
            try:
                self.driver.close()
            except Exception as e:
                logger.debug(f"Ignoring error while closing stale driver: {e}")
            self.driver = None
        return self.connect()

    def close(self):
        if self.driver:
            self.driver.close()
            self.driver = None

    def verify_connection(self) -> bool:
        rows = self.run("RETURN 1 AS test")
        return bool(rows) and rows[0]["test"] == 1

    def run(self, cypher: str, params: dict = None) -> list[dict]:
        """Run one auto-commit query and return its rows as dicts."""
        def _query():
            driver = self.connect()
            with driver.session(database=self.database) as session:
                result = session.run(cypher, params or {})
                return [record.data() for record in result]
        try:
            return self._execute_with_retry(_query)
        except Exception as e:
            logger.error(f"Graph query failed: {e}")
            raise

    @contextmanager
    def transaction(self):
        """Open one write transaction; commit on success, roll back on any exception."""
        driver = self.connect()
        with driver.session(database=self.database) as session:
            tx = session.begin_transaction()
            try:
                yield _Neo4jTransactionRunner(tx)
                tx.commit()
            except Exception:
                tx.rollback()
                raise
            finally:
                tx.close()


class FalkorGraphConnection(_RetryMixin):
    """FalkorDB-backed store adapter."""

    supports_transactions = False
    _retryable_errors = (RedisConnectionError, RedisTimeoutError, ConnectionError, TimeoutError)

    def __init__(self, config: Optional[HierarchyConfig] = None):
        config = config or get_config()
        self.host = os.getenv("FALKORDB_HOST", "localhost")
        self.port = int(os.getenv("FALKORDB_PORT", 6379))
        self.username = os.getenv("FALKORDB_USERNAME")
        self.password = os.getenv("FALKORDB_PASSWORD")
        self.graph_name = config.graph.graph_name
        self.max_retries = config.graph.max_retries
        self.graph = None

    def connect(self):
        if self.graph is None:
            from falkordb import FalkorDB

            kwargs = {
                "host": self.host,
                "port": self.port,
                "socket_timeout": 30,
                "socket_connect_timeout": 15,
            }
            if self.username:
                kwargs["username"] = self.username
            if self.password:
                kwargs["password"] = self.password
            self.graph = FalkorDB(**kwargs).select_graph(self.graph_name)
        return self.graph

    def reconnect(self):
        self.graph = None
        return self.connect()

    def close(self):
        self.graph = None

    def verify_connection(self) -> bool:
        rows = self.run("RETURN 1 AS test")
        return bool(rows) and rows[0]["test"] == 1

    def run(self, cypher: str, params: dict = None) -> list[dict]:
        def _query():
            return result_to_dicts(self.connect().query(cypher, params=params or {}))
        try:
            return self._execute_with_retry(_query)
        except Exception as e:
            logger.error(f"Graph query failed: {e}")
            raise

    @contextmanager
    def transaction(self):
        """Each query commits on its own; there is nothing to roll back."""
        yield self


def get_connection(config: Optional[HierarchyConfig] = None):
    """Build the adapter for the backend named in config."""
    config = config or get_config()
    if config.graph.backend == "falkordb":
        return FalkorGraphConnection(config)
    return GraphConnection(config)
