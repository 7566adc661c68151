# savings340b/database/connection_manager.py
"""
Database connection manager for the portal database:
- Engine and session factory built from config/config.yaml
- Health checks guarded by a circuit breaker
- Connection metrics reported through the status endpoint
"""
import yaml
import os
import time
import threading
import re
from datetime import datetime
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field
from enum import Enum
import statistics

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import make_url
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.exc import SQLAlchemyError, OperationalError

from savings340b.utils.logging_config import get_logger, get_correlation_id
from savings340b.utils.error_handler import ConfigError

logger = get_logger('savings340b.database.connection_manager')

CONFIG_ENV_VAR = "SAVINGS340B_CONFIG"
_ENV_PATTERN = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}')


def resolve_config_value(value: Any) -> Any:
    """Expands ${VAR} / ${VAR:-default} references. Non-strings pass through unchanged."""
    if not isinstance(value, str):
        return value

    def replace_match(match):
        var_name, default_value = match.groups()
        return os.environ.get(var_name, default_value if default_value is not None else "")

    return _ENV_PATTERN.sub(replace_match, value)


def default_config_path() -> str:
    base_dir = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
    return os.environ.get(CONFIG_ENV_VAR) or os.path.join(base_dir, 'config', 'config.yaml')


def load_config(config_path: str = None) -> Dict[str, Any]:
    """Reads config.yaml. Raises ConfigError when the file is absent or malformed."""
    config_path = config_path or default_config_path()
    if not os.path.exists(config_path):
        msg = f"Configuration file not found at {config_path}"
        logger.critical(msg)
        raise ConfigError(msg, details={'config_path': config_path})
    try:
        with open(config_path, 'rt') as f:
            loaded_config = yaml.safe_load(f) or {}
        logger.info(f"Successfully loaded configuration from {config_path}")
        return loaded_config
    except yaml.YAMLError as e:
        logger.critical(f"Error loading configuration from {config_path}: {e}", exc_info=True)
        raise ConfigError(f"Error loading config.yaml: {e}", details={'config_path': config_path})


class ConnectionStatus(Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


@dataclass
class ConnectionMetrics:
    """Pool and query statistics for one engine."""
    total_connections_configured: int = 0
    active_connections: int = 0
    failed_connection_attempts: int = 0
    successful_connection_attempts: int = 0
    total_queries_executed: int = 0
    avg_query_response_time_ms: float = 0.0
    last_health_check_ts: Optional[datetime] = None
    health_status: ConnectionStatus = ConnectionStatus.UNKNOWN
    consecutive_health_check_failures: int = 0
    query_response_times_ms: List[float] = field(default_factory=list)

    def update_query_response_time(self, response_time_ms: float):
        self.query_response_times_ms.append(response_time_ms)
        # Rolling window of the last 100 timings
        if len(self.query_response_times_ms) > 100:
            self.query_response_times_ms = self.query_response_times_ms[-100:]
        self.avg_query_response_time_ms = statistics.mean(self.query_response_times_ms)


@dataclass
class DatabaseConfig:
    """Connection settings for the portal database. `url` overrides the host/port parts."""
    name: str
    url: Optional[str] = None
    host: str = "localhost"
    port: int = 5432
    database: Optional[str] = None
    user: Optional[str] = None
    password: Optional[str] = None
    pool_size: int = 10
    max_overflow: int = 20
    pool_timeout: int = 30
    pool_recycle: int = 1800
    connect_timeout: int = 5
    health_check_query: str = "SELECT 1"
    degraded_threshold_ms: int = 5000
    echo: bool = False
    circuit_breaker_failure_threshold: int = 5
    circuit_breaker_recovery_timeout_seconds: int = 60

    def connection_url(self) -> str:
        if self.url:
            return self.url
        auth_part = f"{self.user}:{self.password}@" if self.user and self.password else ""
        return f"postgresql+psycopg2://{auth_part}{self.host}:{self.port}/{self.database}"


class CircuitBreakerState(Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """Stops handing out sessions after repeated connection failures until a recovery window passes."""
    def __init__(self, failure_threshold: int, recovery_timeout_seconds: int, name: str):
        self.failure_threshold = failure_threshold
        self.recovery_timeout_seconds = recovery_timeout_seconds
        self.name = name
        self.failure_count = 0
        self.last_failure_time: Optional[datetime] = None
        self.state = CircuitBreakerState.CLOSED
        self._lock = threading.RLock()

    def can_execute(self) -> bool:
        with self._lock:
            if self.state == CircuitBreakerState.OPEN:
                elapsed = (datetime.now() - self.last_failure_time).total_seconds() if self.last_failure_time else 0
                if elapsed > self.recovery_timeout_seconds:
                    self.state = CircuitBreakerState.HALF_OPEN
                    logger.info(f"CircuitBreaker '{self.name}' transitioning to HALF_OPEN state.")
                    return True
                logger.debug(f"CircuitBreaker '{self.name}' is OPEN. Request blocked.")
                return False
            return True

    def record_success(self):
        with self._lock:
            if self.state == CircuitBreakerState.HALF_OPEN:
                logger.info(f"CircuitBreaker '{self.name}' transitioned to CLOSED after successful recovery.")
            self.state = CircuitBreakerState.CLOSED
            self.failure_count = 0
            self.last_failure_time = None

    def record_failure(self):
        with self._lock:
            self.failure_count += 1
            self.last_failure_time = datetime.now()
            if self.state == CircuitBreakerState.HALF_OPEN:
                self.state = CircuitBreakerState.OPEN
                logger.warning(f"CircuitBreaker '{self.name}' transitioned back to OPEN from HALF_OPEN due to failure.")
            elif self.failure_count >= self.failure_threshold and self.state == CircuitBreakerState.CLOSED:
                self.state = CircuitBreakerState.OPEN
                logger.warning(f"CircuitBreaker '{self.name}' transitioned to OPEN after {self.failure_count} failures.")


class DatabaseConnection:
    """Owns one engine, its session factory, health state and metrics."""
    def __init__(self, db_config: DatabaseConfig):
        self.config = db_config
        self.metrics = ConnectionMetrics(total_connections_configured=db_config.pool_size + db_config.max_overflow)
        self.circuit_breaker = CircuitBreaker(
            failure_threshold=db_config.circuit_breaker_failure_threshold,
            recovery_timeout_seconds=db_config.circuit_breaker_recovery_timeout_seconds,
            name=db_config.name
        )
        self.engine = None
        self.session_factory: Optional[sessionmaker] = None
        self._initialize_connection()

    def _engine_kwargs(self, url) -> Dict[str, Any]:
        if url.get_backend_name() == "sqlite":
            # In-memory SQLite must share one connection across threads
            return {'poolclass': StaticPool, 'connect_args': {'check_same_thread': False}}
        connect_args = {'connect_timeout': self.config.connect_timeout} if url.get_backend_name() == "postgresql" else {}
        return {
            'poolclass': QueuePool,
            'pool_size': self.config.pool_size,
            'max_overflow': self.config.max_overflow,
            'pool_timeout': self.config.pool_timeout,
            'pool_recycle': self.config.pool_recycle,
            'pool_pre_ping': True,
            'connect_args': connect_args,
        }

    def _initialize_connection(self):
        logger.info(f"Initializing connection for {self.config.name}...")
        try:
            url = make_url(self.config.connection_url())
            self.engine = create_engine(url, echo=self.config.echo, **self._engine_kwargs(url))
            self.session_factory = sessionmaker(bind=self.engine, autoflush=False, autocommit=False,
                                                expire_on_commit=False)
            self._add_event_listeners()
            self.metrics.health_status = ConnectionStatus.UNKNOWN
            logger.info(f"Connection successfully initialized for {self.config.name} ({url.get_backend_name()})")
        except (SQLAlchemyError, ImportError, ValueError) as e:
            logger.error(f"Failed to initialize database connection for {self.config.name}: {e}", exc_info=True)
            self.metrics.health_status = ConnectionStatus.UNHEALTHY
            self.metrics.failed_connection_attempts += 1

    def _add_event_listeners(self):
        @event.listens_for(self.engine, "before_cursor_execute")
        def before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
            context._query_start_time = time.perf_counter()

        @event.listens_for(self.engine, "after_cursor_execute")
        def after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
            if hasattr(context, '_query_start_time'):
                self.metrics.total_queries_executed += 1
                self.metrics.update_query_response_time((time.perf_counter() - context._query_start_time) * 1000)

        @event.listens_for(self.engine, "connect")
        def on_connect(dbapi_connection, connection_record):
            self.metrics.successful_connection_attempts += 1

        @event.listens_for(self.engine, "checkout")
        def on_checkout(dbapi_connection, connection_record, connection_proxy):
            self.metrics.active_connections += 1

        @event.listens_for(self.engine, "checkin")
        def on_checkin(dbapi_connection, connection_record):
            self.metrics.active_connections = max(0, self.metrics.active_connections - 1)

    def check_connection_health(self) -> bool:
        if not self.engine:
            self.metrics.health_status = ConnectionStatus.UNHEALTHY
            logger.warning(f"Health check for {self.config.name}: Engine not initialized.")
            return False
        if not self.circuit_breaker.can_execute():
            self.metrics.health_status = ConnectionStatus.UNHEALTHY
            logger.warning(f"Health check for {self.config.name}: Circuit breaker is OPEN.")
            return False

        start_time = time.perf_counter()
        try:
            with self.engine.connect() as connection:
                connection.execute(text(self.config.health_check_query))
        except SQLAlchemyError as e:
            logger.warning(f"Health check for {self.config.name} FAILED: {e}")
            self.metrics.consecutive_health_check_failures += 1
            self.metrics.health_status = ConnectionStatus.UNHEALTHY
            self.circuit_breaker.record_failure()
            return False

        response_time_ms = (time.perf_counter() - start_time) * 1000
        self.metrics.update_query_response_time(response_time_ms)
        self.metrics.last_health_check_ts = datetime.now()
        self.metrics.consecutive_health_check_failures = 0
        if response_time_ms > self.config.degraded_threshold_ms:
            self.metrics.health_status = ConnectionStatus.DEGRADED
            logger.warning(f"Health check for {self.config.name} DEGRADED: Response time {response_time_ms:.2f}ms")
        else:
            self.metrics.health_status = ConnectionStatus.HEALTHY
        self.circuit_breaker.record_success()
        return True

    def get_session(self) -> Session:
        if not self.engine or not self.session_factory:
            logger.error(f"Engine or session factory for {self.config.name} not initialized.")
            raise SQLAlchemyError(f"Connection {self.config.name} not ready.")

        if not self.circuit_breaker.can_execute():
            msg = f"Circuit breaker for {self.config.name} is OPEN. Database unavailable."
            logger.error(msg)
            raise OperationalError(msg, None, None)

        try:
            return self.session_factory()
        except OperationalError as oe:
            logger.warning(f"OperationalError getting session for {self.config.name}: {oe}. Marking as failure.")
            self.circuit_breaker.record_failure()
            self.metrics.health_status = ConnectionStatus.UNHEALTHY
            self.metrics.failed_connection_attempts += 1
            raise

    def metrics_report(self) -> Dict[str, Any]:
        m = self.metrics
        return {
            "name": self.config.name,
            "backend": self.engine.url.get_backend_name() if self.engine else None,
            "health_status": m.health_status.value,
            "circuit_breaker_state": self.circuit_breaker.state.value,
            "pool_configured_size": m.total_connections_configured,
            "pool_active_connections": m.active_connections,
            "connection_attempts_failed": m.failed_connection_attempts,
            "connection_attempts_successful": m.successful_connection_attempts,
            "queries_executed_total": m.total_queries_executed,
            "avg_query_response_time_ms": round(m.avg_query_response_time_ms, 2),
            "last_health_check_timestamp": m.last_health_check_ts.isoformat() if m.last_health_check_ts else None,
        }

    def close(self):
        if self.engine:
            self.engine.dispose()
            logger.info(f"Engine for {self.config.name} disposed.")


class EnhancedConnectionManager:
    """Process-wide owner of the portal connection."""
    _instance = None
    _lock = threading.Lock()

    PORTAL = "portal_primary"

    def __new__(cls):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super(EnhancedConnectionManager, cls).__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        if self._initialized:
            return
        self._config: Optional[Dict[str, Any]] = None
        self.connections: Dict[str, DatabaseConnection] = {}
        self._initialized = True

    @property
    def config(self) -> Dict[str, Any]:
        if self._config is None:
            self._config = load_config()
        return self._config

    def initialize_connections(self, config: Dict[str, Any] = None):
        if config is not None:
            self._config = config
        db_yaml_config = self.config.get('database')
        if not db_yaml_config:
            raise ConfigError("Section 'database' missing from config.yaml.")

        logger.info("Initializing database connections via EnhancedConnectionManager...")
        db_config = self._create_db_config_object(db_yaml_config, self.PORTAL)
        self.connections[self.PORTAL] = DatabaseConnection(db_config)

    def _create_db_config_object(self, yaml_config_section: Dict, conn_name: str) -> DatabaseConfig:
        resolved = {k: resolve_config_value(v) for k, v in yaml_config_section.items()}
        cb_conf = resolved.get('circuit_breaker') or {}
        try:
            return DatabaseConfig(
                name=conn_name,
                url=resolved.get('url') or None,
                host=resolved.get('host', 'localhost'),
                port=int(resolved.get('port', 5432)),
                database=resolved.get('database'),
                user=resolved.get('user'),
                password=resolved.get('password'),
                pool_size=int(resolved.get('pool_size', 10)),
                max_overflow=int(resolved.get('max_overflow', 20)),
                pool_timeout=int(resolved.get('pool_timeout', 30)),
                pool_recycle=int(resolved.get('pool_recycle', 1800)),
                connect_timeout=int(resolved.get('connect_timeout', 5)),
                health_check_query=resolved.get('health_check_query', "SELECT 1"),
                echo=str(resolved.get('echo', False)).lower() in ('true', '1', 'yes'),
                circuit_breaker_failure_threshold=int(resolve_config_value(cb_conf.get('failure_threshold', 5))),
                circuit_breaker_recovery_timeout_seconds=int(resolve_config_value(cb_conf.get('recovery_timeout', 60))),
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid database configuration: {e}", details={'connection': conn_name})

    def get_connection(self) -> Optional[DatabaseConnection]:
        return self.connections.get(self.PORTAL)

    def get_portal_session(self) -> Session:
        conn = self.get_connection()
        if conn:
            return conn.get_session()
        raise SQLAlchemyError(f"Database connection '{self.PORTAL}' not available.")

    def get_all_connection_metrics_details(self) -> Dict[str, Any]:
        return {name: conn.metrics_report() for name, conn in self.connections.items()}

    def run_all_health_checks(self) -> Dict[str, bool]:
        return {name: conn.check_connection_health() for name, conn in self.connections.items()}

    def dispose_all_connections(self):
        logger.info("Disposing all database connections...")
        for name, conn_obj in list(self.connections.items()):
            try:
                conn_obj.close()
            except SQLAlchemyError as e:
                logger.error(f"Error closing connection {name}: {e}", exc_info=True)
        self.connections.clear()
        self._config = None
        logger.info("All database connections disposed and manager reset.")


db_manager = EnhancedConnectionManager()


def init_database_connections(config: Dict[str, Any] = None):
    if db_manager.connections and config is None:
        logger.info("Database connections already initialized.")
        return
    db_manager.initialize_connections(config)


def get_portal_session() -> Session:
    if not db_manager.connections:
        init_database_connections()
    return db_manager.get_portal_session()


def check_portal_connection() -> bool:
    if not db_manager.connections:
        init_database_connections()
    conn = db_manager.get_connection()
    return conn.check_connection_health() if conn else False


def create_schema():
    """Creates every portal table that does not exist yet."""
    from savings340b.database.models.portal_models import Base

    if not db_manager.connections:
        init_database_connections()
    conn = db_manager.get_connection()
    if not conn or not conn.engine:
        raise SQLAlchemyError(f"Database connection '{db_manager.PORTAL}' not available.")
    Base.metadata.create_all(conn.engine)
    logger.info(f"[{get_correlation_id()}] Portal schema created/verified.")


def dispose_engines():
    if db_manager.connections:
        db_manager.dispose_all_connections()


def get_app_config() -> Dict[str, Any]:
    """Returns the loaded configuration, or an empty dict when config.yaml is unavailable."""
    if db_manager._config is not None:
        return db_manager._config
    try:
        return db_manager.config
    except ConfigError:
        return {}


if __name__ == '__main__':
    import json
    from savings340b.utils.logging_config import setup_logging
    setup_logging()
    main_cid = get_correlation_id()

    logger.info(f"[{main_cid}] Starting EnhancedConnectionManager check...")
    init_database_connections()
    logger.info(f"Health: {db_manager.run_all_health_checks()}")
    logger.info(f"Connection Metrics Report:\n{json.dumps(db_manager.get_all_connection_metrics_details(), indent=2)}")
    dispose_engines()
