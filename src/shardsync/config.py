import os
from dataclasses import dataclass, fields
from types import SimpleNamespace

__all__ = ['WorkerConfig', 'ConfigurationError', 'settings', 'load_settings', 'config_from_env']


class ConfigurationError(Exception):
    """Raised when static configuration is invalid.
    """


@dataclass
class WorkerConfig:
    """Configuration for a dispatch worker.

    All timing parameters are in seconds.
    Connection parameters for database access.
    """
    node_name: str = None
    fleet: str = 'shardsync'
    standalone: bool = False

    scan_interval_sec: float = 10
    sweep_interval_sec: float = 300
    correlation_max_age_sec: float = 1800

    membership_ttl_sec: float = 60
    membership_check_interval_sec: float = 30
    heartbeat_interval_sec: float = 5
    heartbeat_timeout_sec: int = 15

    db_max_attempts: int = 3
    db_base_delay_sec: float = 1.0
    gateway_max_attempts: int = 3
    gateway_base_delay_sec: float = 2.0
    retry_max_jitter_sec: float = 1.0

    record_permanent_failures: bool = True
    mark_completed_on_signal: bool = True
    dispatch_lease_sec: int = None
    summary_key: str = 'name'

    membership_backend: str = 'registry'
    namespace: str = 'default'
    label_selector: str = None

    host: str = 'localhost'
    port: int = 5432
    dbname: str = 'shardsync'
    user: str = 'postgres'
    password: str = 'postgres'
    appname: str = 'dispatch_'
    pool_size: int = 10
    statement_timeout_ms: int = 30000
    connect_timeout_sec: int = 5

    @property
    def membership_selector(self) -> str:
        """Selector handed to the membership source: the fleet name, or a pod label selector.
        """
        if self.membership_backend == 'kubernetes':
            return self.label_selector or f'app={self.fleet}'
        return self.fleet

    def validate(self) -> None:
        """Check static configuration.

        Raises
            ConfigurationError: On the first invalid value found
        """
        if not self.node_name:
            raise ConfigurationError('node_name is required')
        if not self.fleet:
            raise ConfigurationError('fleet is required')
        if self.membership_backend not in MEMBERSHIP_BACKENDS:
            raise ConfigurationError(f'membership_backend must be one of {MEMBERSHIP_BACKENDS}, '
                                     f'got {self.membership_backend!r}')
        for name in ('scan_interval_sec', 'sweep_interval_sec', 'correlation_max_age_sec',
                     'membership_check_interval_sec', 'heartbeat_interval_sec', 'heartbeat_timeout_sec'):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f'{name} must be positive, got {getattr(self, name)}')
        if self.membership_ttl_sec < 0:
            raise ConfigurationError(f'membership_ttl_sec must not be negative, got {self.membership_ttl_sec}')
        if self.heartbeat_timeout_sec <= self.heartbeat_interval_sec:
            raise ConfigurationError('heartbeat_timeout_sec must exceed heartbeat_interval_sec')
        if self.db_max_attempts < 1 or self.gateway_max_attempts < 1:
            raise ConfigurationError('retry attempts must be at least 1')
        if self.db_base_delay_sec < 0 or self.gateway_base_delay_sec < 0 or self.retry_max_jitter_sec < 0:
            raise ConfigurationError('retry delays must not be negative')
        if self.dispatch_lease_sec is not None and self.dispatch_lease_sec <= 0:
            raise ConfigurationError(f'dispatch_lease_sec must be positive, got {self.dispatch_lease_sec}')
        if self.pool_size < 1:
            raise ConfigurationError(f'pool_size must be at least 1, got {self.pool_size}')
        if not self.appname.replace('_', '').isalnum():
            raise ConfigurationError(f'appname must be alphanumeric with underscores, got {self.appname!r}')


MEMBERSHIP_BACKENDS = ('registry', 'kubernetes')


def _flag(value: str) -> bool:
    return str(value).lower() == 'true'


def _optional_int(value: str):
    return int(value) if value else None


def _node_name(environ) -> str:
    """Explicit node name, else the pod name injected by the Kubernetes downward API.
    """
    return environ.get('SHARDSYNC_NODE_NAME') or environ.get('SHARDSYNC_POD_NAME') or environ.get('POD_NAME')


def load_settings(environ) -> SimpleNamespace:
    """Read worker settings from an environment mapping.
    """
    return SimpleNamespace(
        sql=SimpleNamespace(
            appname=environ.get('SHARDSYNC_SQL_APPNAME', 'dispatch_'),
            host=environ.get('SHARDSYNC_SQL_HOST', 'localhost'),
            dbname=environ.get('SHARDSYNC_SQL_DATABASE', 'shardsync'),
            user=environ.get('SHARDSYNC_SQL_USERNAME', 'postgres'),
            passwd=environ.get('SHARDSYNC_SQL_PASSWORD', 'postgres'),
            port=int(environ.get('SHARDSYNC_SQL_PORT', '5432')),
            pool_size=int(environ.get('SHARDSYNC_SQL_POOL_SIZE', '10')),
            statement_timeout_ms=int(environ.get('SHARDSYNC_SQL_STATEMENT_TIMEOUT_MS', '30000')),
            connect_timeout_sec=int(environ.get('SHARDSYNC_SQL_CONNECT_TIMEOUT', '5')),
        ),
        worker=SimpleNamespace(
            node_name=_node_name(environ),
            fleet=environ.get('SHARDSYNC_FLEET', 'shardsync'),
            standalone=_flag(environ.get('SHARDSYNC_STANDALONE', 'false')),
            scan_interval_sec=float(environ.get('SHARDSYNC_SCAN_INTERVAL', '10')),
            sweep_interval_sec=float(environ.get('SHARDSYNC_SWEEP_INTERVAL', '300')),
            correlation_max_age_sec=float(environ.get('SHARDSYNC_CORRELATION_MAX_AGE', '1800')),
            membership_ttl_sec=float(environ.get('SHARDSYNC_MEMBERSHIP_TTL', '60')),
            membership_check_interval_sec=float(environ.get('SHARDSYNC_MEMBERSHIP_INTERVAL', '30')),
            heartbeat_interval_sec=float(environ.get('SHARDSYNC_HEARTBEAT_INTERVAL', '5')),
            heartbeat_timeout_sec=int(environ.get('SHARDSYNC_HEARTBEAT_TIMEOUT', '15')),
            db_max_attempts=int(environ.get('SHARDSYNC_DB_MAX_ATTEMPTS', '3')),
            db_base_delay_sec=float(environ.get('SHARDSYNC_DB_BASE_DELAY', '1.0')),
            gateway_max_attempts=int(environ.get('SHARDSYNC_GATEWAY_MAX_ATTEMPTS', '3')),
            gateway_base_delay_sec=float(environ.get('SHARDSYNC_GATEWAY_BASE_DELAY', '2.0')),
            retry_max_jitter_sec=float(environ.get('SHARDSYNC_RETRY_MAX_JITTER', '1.0')),
            record_permanent_failures=_flag(environ.get('SHARDSYNC_RECORD_PERMANENT_FAILURES', 'true')),
            mark_completed_on_signal=_flag(environ.get('SHARDSYNC_MARK_COMPLETED_ON_SIGNAL', 'true')),
            dispatch_lease_sec=_optional_int(environ.get('SHARDSYNC_DISPATCH_LEASE')),
            summary_key=environ.get('SHARDSYNC_SUMMARY_KEY', 'name'),
            membership_backend=environ.get('SHARDSYNC_MEMBERSHIP', 'registry'),
            namespace=environ.get('SHARDSYNC_POD_NAMESPACE') or environ.get('POD_NAMESPACE') or 'default',
            label_selector=environ.get('SHARDSYNC_LABEL_SELECTOR'),
        )
    )


settings = load_settings(os.environ)

REQUIRED_ENV = (
    'SHARDSYNC_SQL_HOST',
    'SHARDSYNC_SQL_DATABASE',
    'SHARDSYNC_SQL_USERNAME',
    'SHARDSYNC_SQL_PASSWORD',
)


def config_from_env(environ=None) -> WorkerConfig:
    """Build a validated WorkerConfig from environment variables.

    The node name comes from SHARDSYNC_NODE_NAME, or in Kubernetes from
    SHARDSYNC_POD_NAME / POD_NAME.

    Args:
        environ: Mapping to read (defaults to os.environ)

    Returns
        WorkerConfig

    Raises
        ConfigurationError: If required variables are missing or values are invalid
    """
    environ = os.environ if environ is None else environ
    missing = [] if _node_name(environ) else ['SHARDSYNC_NODE_NAME']
    missing += [name for name in REQUIRED_ENV if not environ.get(name)]
    if missing:
        raise ConfigurationError(f'Missing required environment variables: {", ".join(missing)}')

    try:
        loaded = load_settings(environ)
    except ValueError as e:
        raise ConfigurationError(f'Invalid numeric environment value: {e}') from e
    known = {f.name for f in fields(WorkerConfig)}
    values = {k: v for k, v in vars(loaded.worker).items() if k in known}
    values.update({k: v for k, v in vars(loaded.sql).items() if k in known})
    config = WorkerConfig(password=loaded.sql.passwd, **values)
    config.validate()
    return config
