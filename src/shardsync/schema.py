import logging

from sqlalchemy import Engine, text

logger = logging.getLogger(__name__)

TABLE_KEYS = ('Node', 'WorkItem')


def get_table_names(appname: str = 'dispatch_') -> dict[str, str]:
    """Get table names based on appname prefix.

    Args
        appname: Application name prefix for tables

    Returns
        Dictionary containing table names
    """
    return {
        'Node': f'{appname}node',
        'WorkItem': f'{appname}work_item',
    }


def verify_tables_exist(engine: Engine, appname: str = 'dispatch_') -> dict[str, bool]:
    """Verify which required tables exist in the database.

    Args:
        engine: SQLAlchemy engine
        appname: Application name prefix for tables

    Returns
        Dictionary mapping table keys to existence status
    """
    tables = get_table_names(appname)
    status = {}

    with engine.connect() as conn:
        for table_key in TABLE_KEYS:
            result = conn.execute(text("""
                SELECT EXISTS (
                    SELECT FROM information_schema.tables
                    WHERE table_schema = 'public'
                    AND table_name = :table_name
                )
            """), {'table_name': tables[table_key]})
            status[table_key] = result.scalar()

    return status


def _create_node_table(engine: Engine, tables: dict[str, str]) -> None:
    """Create the fleet membership heartbeat table.
    """
    Node = tables['Node']

    with engine.connect() as conn:
        conn.execute(text(f"""
CREATE TABLE IF NOT EXISTS {Node} (
    name varchar not null,
    fleet varchar not null,
    created_on timestamp with time zone not null,
    last_heartbeat timestamp with time zone,
    primary key (name)
);
        """))

        conn.execute(text(f'CREATE INDEX IF NOT EXISTS idx_{Node}_fleet_heartbeat ON {Node}(fleet, last_heartbeat)'))
        conn.commit()

    logger.debug(f'Membership table verified: {Node}')


def _create_backlog_table(engine: Engine, tables: dict[str, str]) -> None:
    """Create the shared work item backlog.
    """
    WorkItem = tables['WorkItem']

    with engine.connect() as conn:
        conn.execute(text(f"""
CREATE TABLE IF NOT EXISTS {WorkItem} (
    id bigserial primary key,
    partition_key bigint not null,
    payload jsonb not null default '{{}}'::jsonb,
    priority_rank integer not null default 4,
    enqueued_at timestamp with time zone not null default now(),
    dispatched_at timestamp with time zone,
    operation_ref varchar,
    completed boolean not null default false,
    completed_at timestamp with time zone,
    failed_at timestamp with time zone,
    failure_reason varchar
);
        """))

        conn.execute(text(f"""
CREATE INDEX IF NOT EXISTS idx_{WorkItem}_eligible
ON {WorkItem}(priority_rank, enqueued_at DESC)
WHERE completed = false AND failed_at IS NULL
        """))

        conn.commit()

    logger.debug(f'Backlog table verified: {WorkItem}')


def ensure_database_ready(engine: Engine, appname: str = 'dispatch_') -> None:
    """Ensure database has all required tables with correct structure.

    Safe to call repeatedly - uses CREATE TABLE IF NOT EXISTS.

    Args:
        engine: SQLAlchemy engine
        appname: Application name prefix for tables
    """
    tables = get_table_names(appname)

    logger.debug('Verifying database structure')

    table_status = verify_tables_exist(engine, appname)
    missing_tables = [k for k in TABLE_KEYS if not table_status.get(k, False)]
    if missing_tables:
        logger.info(f'Creating missing tables: {missing_tables}')

    try:
        _create_node_table(engine, tables)
        _create_backlog_table(engine, tables)
    except Exception as e:
        logger.error(f'Failed to create tables: {e}')
        raise

    logger.info('Database structure verified and ready')
