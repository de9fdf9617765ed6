"""Sharded backlog dispatch with locked claims and in-process correlation.
"""
import contextlib
import datetime
import json
import logging
import os
import random
import signal
import threading
import time
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from enum import Enum

from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from sqlalchemy import create_engine, text
from sqlalchemy.exc import DBAPIError, ProgrammingError, SQLAlchemyError

from shardsync.config import ConfigurationError, WorkerConfig
from shardsync.schema import ensure_database_ready, get_table_names

logger = logging.getLogger(__name__)

__all__ = [
    'Worker', 'WorkerConfig', 'BacklogStore', 'LockedDequeuer', 'MembershipTracker',
    'CorrelationTracker', 'KubernetesMembership', 'RetryExecutor', 'RetryPolicy', 'OperationGateway',
    'CompletionSignal', 'should_assign', 'example_ids', 'run',
]


# ============================================================
# EVENT SYSTEM
# ============================================================

@dataclass
class WorkerEvent:
    """Diagnostic record of something the worker observed.
    """
    type: str
    data: dict
    timestamp: float = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = time.time()


class EventLog:
    """Thread-safe bounded history of worker events.
    """

    def __init__(self, history_size: int = 100):
        self._history = deque(maxlen=history_size)
        self._lock = threading.Lock()

    def record(self, event_type: str, data: dict = None) -> None:
        """Append an event, dropping the oldest once the history is full.
        """
        with self._lock:
            self._history.append(WorkerEvent(event_type, data or {}))

    def recent(self, limit: int = None) -> list[WorkerEvent]:
        """Get recorded events, oldest first.

        Args:
            limit: Optional limit on number of events (most recent if limited)

        Returns
            List of events
        """
        with self._lock:
            events = list(self._history)
        if limit is not None:
            return events[-limit:] if limit > 0 else []
        return events


# ============================================================
# EXCEPTIONS
# ============================================================

class DispatchError(Exception):
    """Base class for dispatch worker errors.
    """


class TransientInfraError(DispatchError):
    """Network or timeout class failure that is worth retrying.
    """


class PermanentRequestError(DispatchError):
    """Validation or authorization class failure that must not be retried.
    """


class AlreadyTracked(DispatchError):
    """Raised when a task already has an outstanding operation in this process.
    """


class MembershipUnavailable(DispatchError):
    """Raised when membership cannot be refreshed and nothing is cached.
    """


class SelfNotFound(DispatchError):
    """Raised when this process is absent from a fresh membership snapshot.
    """


class ClaimTransactionFailure(DispatchError):
    """Raised when the backlog claim transaction aborts.
    """


class GatewayError(Exception):
    """Raised by operation gateways, carrying the upstream status when known.
    """

    def __init__(self, message: str, status: int = None):
        super().__init__(message)
        self.status = status


# ============================================================
# UTILITY FUNCTIONS
# ============================================================

def build_connection_string(host: str, port: int, dbname: str, user: str, password: str) -> str:
    """Build PostgreSQL connection string from parameters.
    """
    return (
        f'postgresql+psycopg://{user}:{password}'
        f'@{host}:{port}/{dbname}'
    )


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def ensure_timezone_aware(dt: datetime.datetime, name: str = 'datetime') -> datetime.datetime:
    """Ensure datetime is timezone-aware.

    Args:
        dt: Datetime to check
        name: Name for error message

    Returns
        The datetime (unchanged if already aware)

    Raises
        ValueError: If datetime is naive
    """
    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        raise ValueError(f'{name} must be timezone-aware (has tzinfo), got naive datetime: {dt}')
    return dt


def _as_timedelta(value: datetime.timedelta | float) -> datetime.timedelta:
    if isinstance(value, datetime.timedelta):
        return value
    return datetime.timedelta(seconds=value)


# ============================================================
# PARTITIONING
# ============================================================

def should_assign(task_id: int, index: int, total: int) -> bool:
    """Check whether the shard at 1-based ``index`` of ``total`` owns ``task_id``.

    Every id is owned by exactly one index in ``[1, total]``; negative ids wrap
    with floor modulo, as the claim query does.

    >>> should_assign(7, 2, 2)
    True
    >>> should_assign(8, 2, 2)
    False
    """
    return (task_id % total) == (index - 1)


def example_ids(index: int, total: int, max_examples: int = 10) -> list[int]:
    """List the first ids (starting from 1) owned by a shard.

    >>> example_ids(2, 3, 4)
    [1, 4, 7, 10]
    """
    examples = []
    for task_id in range(1, max_examples * total + 1):
        if should_assign(task_id, index, total):
            examples.append(task_id)
            if len(examples) >= max_examples:
                break
    return examples


# ============================================================
# RETRY
# ============================================================

class Classification(Enum):
    """How a failed outward call should be handled.
    """
    TRANSIENT = 'transient'
    PERMANENT = 'permanent'


PERMANENT_SQLSTATES = frozenset({'23505', '23503'})
PERMANENT_HTTP_STATUSES = frozenset({400, 401, 403})


def classify_database_error(error: BaseException) -> Classification:
    """Unique and foreign key violations and bad SQL are permanent; the rest is infrastructure.
    """
    if isinstance(error, PermanentRequestError):
        return Classification.PERMANENT
    if isinstance(error, DBAPIError):
        sqlstate = getattr(error.orig, 'sqlstate', None) or getattr(error.orig, 'pgcode', None)
        if sqlstate in PERMANENT_SQLSTATES or isinstance(error, ProgrammingError):
            return Classification.PERMANENT
    return Classification.TRANSIENT


def classify_gateway_error(error: BaseException) -> Classification:
    """Client-side HTTP failures and duplicate dispatches are permanent.
    """
    if isinstance(error, (PermanentRequestError, AlreadyTracked)):
        return Classification.PERMANENT
    if getattr(error, 'status', None) in PERMANENT_HTTP_STATUSES:
        return Classification.PERMANENT
    return Classification.TRANSIENT


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget and error classification for one kind of outward call.

    Delays are in seconds.
    """
    max_attempts: int = 3
    base_delay: float = 1.0
    classifier: Callable[[BaseException], Classification] = classify_database_error
    max_jitter: float = 1.0
    name: str = None

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f'max_attempts must be at least 1, got {self.max_attempts}')

    def backoff(self, attempt: int) -> float:
        """Delay before the retry that follows failed ``attempt`` (1-based), without jitter.
        """
        return self.base_delay * (2 ** (attempt - 1))

    def classify(self, error: BaseException) -> Classification:
        return self.classifier(error)


class RetryExecutor:
    """Runs operations under a RetryPolicy with exponential backoff and jitter.

    Backoff sleeps wait on the shutdown event, so setting it abandons the
    retry loop instead of sleeping through shutdown.
    """

    def __init__(self, shutdown_event: threading.Event = None, jitter: Callable[[float], float] = None):
        """Initialize executor.

        Args:
            shutdown_event: Event observed during backoff sleeps
            jitter: Function(ceiling) -> extra delay, defaults to uniform(0, ceiling)
        """
        self.shutdown_event = shutdown_event or threading.Event()
        self._jitter = jitter or (lambda ceiling: random.uniform(0, ceiling))

    def run(self, operation: Callable, policy: RetryPolicy):
        """Invoke ``operation`` until it succeeds, fails permanently, or attempts run out.

        Args:
            operation: Zero-argument callable
            policy: Retry policy to apply

        Returns
            The operation's result

        Raises
            The operation's last error, unchanged
        """
        name = policy.name or getattr(operation, '__name__', 'operation')
        for attempt in range(1, policy.max_attempts + 1):
            try:
                return operation()
            except Exception as e:
                if policy.classify(e) is Classification.PERMANENT:
                    logger.warning(f'{name} failed with permanent error, not retrying: {e}')
                    raise
                if attempt == policy.max_attempts:
                    logger.error(f'{name} failed after {policy.max_attempts} attempts: {e}')
                    raise
                delay = policy.backoff(attempt) + self._jitter(policy.max_jitter)
                logger.warning(f'{name} attempt {attempt}/{policy.max_attempts} failed: {e}, retrying in {delay:.1f}s')
                if self.shutdown_event.wait(timeout=delay):
                    logger.info(f'{name} retry abandoned, shutdown requested')
                    raise


# ============================================================
# DATA MODEL
# ============================================================

@dataclass(frozen=True)
class Member:
    identity: str
    healthy: bool = True


@dataclass(frozen=True)
class ShardInfo:
    """This process's 1-based position in the fleet.
    """
    index: int
    total: int
    identity: str = None
    stale: bool = False
    members: tuple = ()

    def __post_init__(self):
        if self.total < 1:
            raise ValueError(f'total must be at least 1, got {self.total}')
        if not 1 <= self.index <= self.total:
            raise ValueError(f'index must be within [1, {self.total}], got {self.index}')


@dataclass(frozen=True)
class MembershipSnapshot:
    """Point-in-time ordered view of healthy fleet members.

    Members are sorted lexicographically so every process observing the same
    set computes the same positions.
    """
    members: tuple
    as_of: float
    ttl: float

    @classmethod
    def from_members(cls, members: Iterable[Member], as_of: float, ttl: float) -> 'MembershipSnapshot':
        healthy = sorted({m.identity for m in members if m.healthy})
        return cls(tuple(healthy), as_of, ttl)

    def is_fresh(self, now: float) -> bool:
        return (now - self.as_of) < self.ttl

    def locate(self, identity: str) -> ShardInfo:
        """Compute the shard position of ``identity``.

        Raises
            SelfNotFound: If identity is not a healthy member
        """
        if identity not in self.members:
            raise SelfNotFound(f'{identity} not found in healthy members {list(self.members)}')
        return ShardInfo(self.members.index(identity) + 1, len(self.members), identity, False, self.members)


@dataclass(frozen=True)
class WorkItem:
    id: int
    payload: dict = field(default_factory=dict)
    priority_rank: int = 4
    enqueued_at: datetime.datetime = None
    partition_key: int = None

    def __post_init__(self):
        if self.partition_key is None:
            object.__setattr__(self, 'partition_key', self.id)


@dataclass(frozen=True)
class CorrelationEntry:
    """Outstanding dispatch of one task, held only in process memory.

    ``operation_ref`` is None while the dispatch is reserved but not yet accepted.
    """
    task_id: int
    operation_ref: str = None
    created_at: datetime.datetime = field(default_factory=utcnow)
    subject_summary: str = None

    def age(self, now: datetime.datetime = None) -> datetime.timedelta:
        return (now or utcnow()) - self.created_at


class Outcome(Enum):
    COMPLETED = 'completed'
    FAILED = 'failed'


@dataclass
class CompletionSignal:
    """Out-of-band report that an external operation finished.

    Carries the task id, the operation reference, or both. Without an explicit
    task id, the ``task_id`` echoed back in gateway metadata is used. A numeric
    string task id is converted to int; any other string is dropped.
    """
    outcome: Outcome | str = Outcome.COMPLETED
    task_id: int = None
    operation_ref: str = None
    metadata: dict = field(default_factory=dict)

    def __post_init__(self):
        if self.task_id is None and self.metadata:
            self.task_id = self.metadata.get('task_id')
        if isinstance(self.task_id, str):
            try:
                self.task_id = int(self.task_id)
            except ValueError:
                logger.warning(f'Ignoring non-numeric task id {self.task_id!r} in completion signal')
                self.task_id = None
        if isinstance(self.outcome, str):
            try:
                self.outcome = Outcome(self.outcome)
            except ValueError:
                logger.debug(f'Unrecognized completion outcome {self.outcome!r}')


# ============================================================
# CORRELATION TRACKING
# ============================================================

class CorrelationTracker:
    """Process-local map of task id to its outstanding operation.

    Guarantees at most one outstanding operation per task id at any instant.
    Every read and mutation happens under one lock; callers must not assume
    atomicity across two calls.
    """

    def __init__(self, clock: Callable[[], datetime.datetime] = None):
        self._entries = {}
        self._by_operation = {}
        self._lock = threading.Lock()
        self._clock = clock or utcnow

    def track(self, task_id: int, entry: CorrelationEntry) -> None:
        """Record an outstanding operation for ``task_id``.

        Raises
            AlreadyTracked: If the task already has one (nothing is changed)
        """
        ensure_timezone_aware(entry.created_at, 'correlation created_at')
        with self._lock:
            existing = self._entries.get(task_id)
            if existing is not None:
                raise AlreadyTracked(f'Task {task_id} already has an outstanding operation '
                                     f'{existing.operation_ref} since {existing.created_at.isoformat()}')
            self._entries[task_id] = entry
            if entry.operation_ref is not None:
                self._by_operation[entry.operation_ref] = task_id

    def bind(self, task_id: int, operation_ref: str) -> CorrelationEntry | None:
        """Attach the accepted operation reference to a reserved entry.

        Returns
            The updated entry, or None if the task was resolved meanwhile
        """
        with self._lock:
            entry = self._entries.get(task_id)
            if entry is None:
                return None
            if entry.operation_ref is not None:
                self._by_operation.pop(entry.operation_ref, None)
            entry = replace(entry, operation_ref=operation_ref)
            self._entries[task_id] = entry
            self._by_operation[operation_ref] = task_id
            return entry

    def resolve(self, task_id: int, operation_ref: str = None) -> CorrelationEntry | None:
        """Remove the entry for ``task_id``; resolving an absent id is a no-op.

        When ``operation_ref`` is given and the tracked entry belongs to a
        different operation, the entry is kept (the signal is for an older dispatch).
        """
        with self._lock:
            entry = self._entries.get(task_id)
            if entry is None:
                return None
            if operation_ref is not None and entry.operation_ref not in {None, operation_ref}:
                logger.warning(f'Completion for task {task_id} names operation {operation_ref}, '
                               f'tracked operation is {entry.operation_ref}, keeping entry')
                return None
            return self._pop(task_id)

    def resolve_operation(self, operation_ref: str) -> CorrelationEntry | None:
        """Remove the entry whose operation reference is ``operation_ref``.
        """
        with self._lock:
            task_id = self._by_operation.get(operation_ref)
            if task_id is None:
                return None
            return self._pop(task_id)

    def sweep(self, max_age: datetime.timedelta | float, now: datetime.datetime = None) -> list[CorrelationEntry]:
        """Remove and return entries older than ``max_age``.

        Args:
            max_age: Timedelta or seconds
            now: Reference time (defaults to the tracker clock)

        Returns
            Evicted entries, oldest first
        """
        max_age = _as_timedelta(max_age)
        with self._lock:
            now = now or self._clock()
            stale = [tid for tid, entry in self._entries.items() if now - entry.created_at > max_age]
            evicted = [self._pop(tid) for tid in stale]
        return sorted(evicted, key=lambda e: e.created_at)

    def in_flight_ids(self) -> frozenset:
        """Snapshot of task ids with an outstanding operation.
        """
        with self._lock:
            return frozenset(self._entries)

    def get(self, task_id: int) -> CorrelationEntry | None:
        with self._lock:
            return self._entries.get(task_id)

    def _pop(self, task_id: int) -> CorrelationEntry:
        entry = self._entries.pop(task_id)
        if entry.operation_ref is not None and self._by_operation.get(entry.operation_ref) == task_id:
            del self._by_operation[entry.operation_ref]
        return entry

    def __contains__(self, task_id) -> bool:
        with self._lock:
            return task_id in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


# ============================================================
# SERVICE LAYER
# ============================================================

class DatabaseContext:
    """Manages database engine, connections, and table names.
    """

    def __init__(self, config: WorkerConfig):
        """Initialize database context.

        Args:
            config: Worker configuration with connection parameters
        """
        connection_string = build_connection_string(
            config.host, config.port, config.dbname, config.user, config.password)
        self.engine = create_engine(
            connection_string, pool_pre_ping=True, pool_size=config.pool_size, max_overflow=5,
            connect_args={
                'connect_timeout': config.connect_timeout_sec,
                'options': f'-c statement_timeout={config.statement_timeout_ms}',
            })
        self.tables = get_table_names(config.appname)

    def execute(self, sql: str, params: dict = None):
        """Execute SQL statement with automatic commit.

        Args:
            sql: SQL statement to execute
            params: Optional parameters for the statement

        Returns
            Result proxy object
        """
        with self.engine.connect() as conn:
            result = conn.execute(text(sql), params or {})
            conn.commit()
            return result

    def query(self, sql: str, params: dict = None) -> list:
        """Execute query and return all rows.
        """
        with self.engine.connect() as conn:
            result = conn.execute(text(sql), params or {})
            return list(result)

    def dispose(self) -> None:
        """Dispose of engine resources.
        """
        with contextlib.suppress(Exception):
            self.engine.dispose()
        logger.info('Database connection pool closed')


URGENCY_TIERS = (
    ('extremely', 1),
    ('very', 2),
    ('frustrated', 3),
)
DEFAULT_URGENCY = 4


def rank_urgency(description: str) -> int:
    """Map free text to an urgency tier, 1 being the most urgent.

    >>> rank_urgency('Extremely frustrated')
    1
    >>> rank_urgency('a bit annoyed')
    4
    """
    lowered = (description or '').lower()
    for keyword, tier in URGENCY_TIERS:
        if keyword in lowered:
            return tier
    return DEFAULT_URGENCY


class BacklogStore:
    """Shared backlog of work items in Postgres.

    Mutual exclusion between claimants comes entirely from the row lock taken
    by ``claim_next_eligible``; every state write is idempotent.
    """

    def __init__(self, db: DatabaseContext, dispatch_lease_sec: int = None):
        """Initialize backlog store.

        Args:
            db: Database context
            dispatch_lease_sec: If set, dispatched rows never completed become eligible again after this many seconds
        """
        self.db = db
        self.table = db.tables['WorkItem']
        self.dispatch_lease_sec = dispatch_lease_sec

    @property
    def claim_sql(self) -> str:
        """SQL selecting and locking the next eligible row for a shard.
        """
        if self.dispatch_lease_sec:
            dispatched = f"(dispatched_at IS NULL OR dispatched_at < NOW() - INTERVAL '{int(self.dispatch_lease_sec)} seconds')"
        else:
            dispatched = 'dispatched_at IS NULL'
        return f"""
        SELECT id, partition_key, payload, priority_rank, enqueued_at
        FROM {self.table}
        WHERE completed IS NOT TRUE
          AND failed_at IS NULL
          AND {dispatched}
          AND mod(mod(partition_key, :total) + :total, :total) = (:index - 1)
          AND id <> ALL(CAST(:excluded AS bigint[]))
        ORDER BY priority_rank ASC, enqueued_at DESC
        LIMIT 1
        FOR UPDATE SKIP LOCKED
        """

    def claim_next_eligible(self, index: int, total: int, excluded_ids: list[int]) -> WorkItem | None:
        """Claim the next eligible row for a shard, skipping rows locked elsewhere.

        The transaction commits right after the read; the lock only signals
        the claim to concurrent claimants.

        Raises
            ClaimTransactionFailure: If the transaction aborted (rolled back)
        """
        params = {'index': index, 'total': total, 'excluded': list(excluded_ids)}
        try:
            with self.db.engine.connect() as conn:
                try:
                    row = conn.execute(text(self.claim_sql), params).first()
                    conn.commit()
                except SQLAlchemyError:
                    with contextlib.suppress(SQLAlchemyError):
                        conn.rollback()
                    raise
        except SQLAlchemyError as e:
            raise ClaimTransactionFailure(f'Claim transaction for shard {index}/{total} failed: {e}') from e

        if row is None:
            return None

        record = row._mapping
        payload = record['payload']
        if isinstance(payload, str):
            payload = json.loads(payload)
        return WorkItem(
            id=record['id'],
            partition_key=record['partition_key'],
            payload=payload or {},
            priority_rank=record['priority_rank'],
            enqueued_at=record['enqueued_at'])

    def enqueue(self, payload: dict, partition_key: int = None, priority_rank: int = None,
                urgency_text: str = None) -> int:
        """Insert a new work item.

        Args:
            payload: JSON-serializable item payload
            partition_key: Sharding key (defaults to the new row id)
            priority_rank: Urgency tier (defaults to ``rank_urgency(urgency_text)``)
            urgency_text: Free text ranked when priority_rank is not given

        Returns
            The new item id
        """
        if priority_rank is None:
            priority_rank = rank_urgency(urgency_text)
        sql = f"""
        WITH next AS (SELECT nextval(pg_get_serial_sequence(:table, 'id')) AS id)
        INSERT INTO {self.table} (id, partition_key, payload, priority_rank, enqueued_at)
        SELECT next.id, COALESCE(CAST(:partition_key AS bigint), next.id), CAST(:payload AS jsonb), :priority_rank, NOW()
        FROM next
        RETURNING id
        """
        result = self.db.execute(sql, {
            'table': self.table,
            'partition_key': partition_key,
            'payload': json.dumps(payload, default=str),
            'priority_rank': priority_rank,
        })
        item_id = result.scalar()
        logger.debug(f'Enqueued work item {item_id} (tier {priority_rank})')
        return item_id

    def mark_dispatched(self, task_id: int, operation_ref: str = None) -> bool:
        """Stamp the row as handed to the external operation.
        """
        sql = f"""
        UPDATE {self.table}
        SET dispatched_at = NOW(), operation_ref = :operation_ref
        WHERE id = :id
          AND completed IS NOT TRUE
          AND (dispatched_at IS NULL OR operation_ref IS DISTINCT FROM :operation_ref)
        """
        return self._update(sql, {'id': task_id, 'operation_ref': operation_ref}, 'dispatched')

    def mark_completed(self, task_id: int) -> bool:
        sql = f"""
        UPDATE {self.table}
        SET completed = TRUE, completed_at = NOW()
        WHERE id = :id AND completed IS NOT TRUE
        """
        return self._update(sql, {'id': task_id}, 'completed')

    def mark_failed(self, task_id: int, reason: str = None) -> bool:
        """Record a permanent failure so the row is no longer offered.
        """
        sql = f"""
        UPDATE {self.table}
        SET failed_at = NOW(), failure_reason = :reason
        WHERE id = :id AND failed_at IS NULL AND completed IS NOT TRUE
        """
        return self._update(sql, {'id': task_id, 'reason': reason}, 'failed')

    def release(self, task_id: int) -> bool:
        """Clear the dispatched stamp so the row is eligible again.
        """
        sql = f"""
        UPDATE {self.table}
        SET dispatched_at = NULL, operation_ref = NULL
        WHERE id = :id AND dispatched_at IS NOT NULL AND completed IS NOT TRUE
        """
        return self._update(sql, {'id': task_id}, 'released')

    def get_item(self, task_id: int) -> dict | None:
        """Get a work item with its state columns.
        """
        sql = f"""
        SELECT id, partition_key, payload, priority_rank, enqueued_at, dispatched_at,
               operation_ref, completed, completed_at, failed_at, failure_reason
        FROM {self.table}
        WHERE id = :id
        """
        rows = self.db.query(sql, {'id': task_id})
        return dict(rows[0]._mapping) if rows else None

    def health_check(self) -> bool:
        """Check database connectivity.
        """
        try:
            with self.db.engine.connect() as conn:
                conn.execute(text('SELECT 1'))
            return True
        except Exception as e:
            logger.error(f'Backlog health check failed: {e}')
            return False

    def _update(self, sql: str, params: dict, state: str) -> bool:
        changed = self.db.execute(sql, params).rowcount > 0
        if changed:
            logger.debug(f'Marked work item {params["id"]} as {state}')
        else:
            logger.debug(f'Work item {params["id"]} not marked {state} (missing or already in that state)')
        return changed


class LockedDequeuer:
    """Claims at most one work item per call for this process's shard.
    """

    def __init__(self, store: BacklogStore):
        self.store = store

    def claim_next(self, index: int, total: int, excluded_ids: Iterable = ()) -> WorkItem | None:
        """Claim the single next eligible item owned by shard ``index`` of ``total``.

        Args:
            index: 1-based shard index
            total: Fleet size
            excluded_ids: Task ids already in flight in this process

        Returns
            The claimed item, or None when nothing is eligible or the claim aborted
        """
        if total < 1 or not 1 <= index <= total:
            raise ValueError(f'Invalid shard {index}/{total}')

        excluded = sorted({i for i in excluded_ids if isinstance(i, int) and not isinstance(i, bool)})

        try:
            item = self.store.claim_next_eligible(index, total, excluded)
        except ClaimTransactionFailure as e:
            logger.error(f'{e}, nothing claimed this cycle')
            return None

        if item is None:
            logger.debug(f'No eligible work items for shard {index}/{total}')
            return None

        if not should_assign(item.partition_key, index, total) or item.id in excluded:
            logger.error(f'Backlog returned item {item.id} (partition key {item.partition_key}) '
                         f'not claimable by shard {index}/{total}, ignoring')
            return None

        logger.debug(f'Claimed work item {item.id} for shard {index}/{total}')
        return item


# ============================================================
# MEMBERSHIP
# ============================================================

class MembershipSource:
    """Lists fleet members. Ordering of the result does not matter.
    """

    def list_members(self, selector: str) -> list[Member]:
        raise NotImplementedError


class StaticMembership(MembershipSource):
    """Fixed member list, used for standalone (single process) mode.
    """

    def __init__(self, identities: Iterable[str]):
        self.identities = list(identities)

    def list_members(self, selector: str) -> list[Member]:
        return [Member(identity) for identity in self.identities]


def load_core_api() -> k8s_client.CoreV1Api:
    """Build a Kubernetes core API client from in-cluster or local kubeconfig.
    """
    if os.environ.get('KUBERNETES_SERVICE_HOST'):
        k8s_config.load_incluster_config()
    else:
        k8s_config.load_kube_config()
    return k8s_client.CoreV1Api()


class KubernetesMembership(MembershipSource):
    """Fleet membership from the pods matching a label selector.

    Members are pod names; a pod is healthy while its phase is Running.
    """

    def __init__(self, namespace: str = 'default', api=None):
        """Initialize Kubernetes membership.

        Args:
            namespace: Namespace the fleet's pods run in
            api: CoreV1Api-like client (defaults to one built by load_core_api)
        """
        self.namespace = namespace
        self.api = api or load_core_api()

    def list_members(self, selector: str) -> list[Member]:
        pods = self.api.list_namespaced_pod(self.namespace, label_selector=selector)
        return [
            Member(pod.metadata.name, pod.status is not None and pod.status.phase == 'Running')
            for pod in pods.items
        ]


class NodeRegistry(MembershipSource):
    """Fleet membership through a heartbeat table in the backlog database.
    """

    def __init__(self, node_name: str, fleet: str, db: DatabaseContext, heartbeat_timeout_sec: int,
                 created_on: datetime.datetime = None):
        """Initialize node registry.

        Args:
            node_name: This node's name
            fleet: Fleet this node belongs to
            db: Database context
            heartbeat_timeout_sec: Heartbeat age after which a node is unhealthy
            created_on: Node creation timestamp
        """
        self.node_name = node_name
        self.fleet = fleet
        self.db = db
        self.heartbeat_timeout = int(heartbeat_timeout_sec)
        self.created_on = ensure_timezone_aware(created_on or utcnow(), 'node created_on')
        self.last_heartbeat_sent = None

    def register(self) -> None:
        """Register node with initial heartbeat.
        """
        self.last_heartbeat_sent = utcnow()
        sql = f"""
        INSERT INTO {self.db.tables["Node"]} (name, fleet, created_on, last_heartbeat)
        VALUES (:name, :fleet, :created_on, :heartbeat)
        ON CONFLICT (name) DO UPDATE
        SET fleet = EXCLUDED.fleet, last_heartbeat = EXCLUDED.last_heartbeat
        """
        self.db.execute(sql, {
            'name': self.node_name,
            'fleet': self.fleet,
            'created_on': self.created_on,
            'heartbeat': self.last_heartbeat_sent
        })
        logger.info(f'Node {self.node_name} registered in fleet {self.fleet}')

    def heartbeat(self) -> None:
        heartbeat_time = utcnow()
        sql = f"""
        UPDATE {self.db.tables["Node"]}
        SET last_heartbeat = :heartbeat
        WHERE name = :name
        """
        result = self.db.execute(sql, {'heartbeat': heartbeat_time, 'name': self.node_name})
        if result.rowcount == 0:
            logger.warning(f'Node {self.node_name} row missing, re-registering')
            self.register()
            return
        self.last_heartbeat_sent = heartbeat_time
        logger.debug(f'Heartbeat sent by {self.node_name}')

    def list_members(self, selector: str) -> list[Member]:
        sql = f"""
        SELECT name, last_heartbeat > NOW() - INTERVAL '{self.heartbeat_timeout} seconds' AS healthy
        FROM {self.db.tables["Node"]}
        WHERE fleet = :fleet
        ORDER BY name ASC
        """
        rows = self.db.query(sql, {'fleet': selector})
        return [Member(row[0], bool(row[1])) for row in rows]

    def deregister(self) -> None:
        """Remove node from Node table.
        """
        try:
            sql = f'DELETE FROM {self.db.tables["Node"]} WHERE name = :name'
            self.db.execute(sql, {'name': self.node_name})
            logger.debug(f'Cleared {self.node_name} from {self.db.tables["Node"]}')
        except Exception as e:
            logger.warning(f'Failed to deregister node {self.node_name}: {e}')


class MembershipTracker:
    """Computes this process's shard position from the current fleet.

    No central scheduler assigns shards: every process observing the same
    membership converges on the same partitioning.
    """

    def __init__(self, identity: str, source: MembershipSource, selector: str, ttl: float = 60,
                 clock: Callable[[], float] = time.monotonic):
        """Initialize membership tracker.

        Args:
            identity: This process's member identity
            source: Membership source to list members from
            selector: Fleet selector passed to the source
            ttl: Seconds a snapshot is served from cache
            clock: Monotonic clock in seconds
        """
        self.identity = identity
        self.source = source
        self.selector = selector
        self.ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._snapshot = None
        self._info = None
        self.last_updated = None

    def get_info(self) -> ShardInfo:
        """Get shard info, refreshing the snapshot once it is older than the TTL.

        Raises
            SelfNotFound: If absent from a fresh snapshot and nothing is cached
            MembershipUnavailable: If the refresh failed and nothing is cached
        """
        with self._lock:
            if self._snapshot is not None and self._snapshot.is_fresh(self._clock()):
                return self._info
            return self._refresh()

    def refresh(self) -> ShardInfo:
        """Refresh regardless of cache age.
        """
        with self._lock:
            return self._refresh()

    def _refresh(self) -> ShardInfo:
        now = self._clock()
        try:
            members = self.source.list_members(self.selector)
        except Exception as e:
            if self._info is not None:
                logger.warning(f'Membership refresh failed, using cached shard info: {e}')
                return replace(self._info, stale=True)
            raise MembershipUnavailable(f'Membership refresh failed with no cached shard info: {e}') from e

        snapshot = MembershipSnapshot.from_members(members, now, self.ttl)
        try:
            info = snapshot.locate(self.identity)
        except SelfNotFound as e:
            if self._info is not None:
                logger.error(f'{e}, using cached shard info')
                return replace(self._info, stale=True)
            raise

        self._snapshot = snapshot
        self._info = info
        self.last_updated = utcnow()
        logger.info(f'Updated shard information: {info.index}/{info.total}', extra={
            'identity': self.identity,
            'shard_index': info.index,
            'total_shards': info.total,
            'members': list(snapshot.members),
        })
        return info

    def get_stats(self) -> dict:
        """Shard statistics for monitoring; never raises.
        """
        try:
            info = self.get_info()
        except Exception as e:
            logger.error(f'Failed to get shard statistics: {e}')
            return {'identity': self.identity, 'selector': self.selector, 'error': str(e)}
        return {
            'identity': self.identity,
            'selector': self.selector,
            'shard_index': info.index,
            'total_shards': info.total,
            'shard_percentage': round(100 / info.total, 2),
            'stale': info.stale,
            'last_updated': self.last_updated,
        }

    def validate(self) -> bool:
        """Check that this process currently has a valid shard position.
        """
        try:
            info = self.get_info()
        except Exception as e:
            logger.error(f'Failed to validate shard configuration: {e}')
            return False
        logger.info(f'Shard configuration validated: {info.index}/{info.total}')
        return True

    def start_monitoring(self, interval: float, on_change: Callable[[int, int], None],
                         shutdown_event: threading.Event = None) -> 'MembershipMonitor':
        """Check membership now and every ``interval`` seconds, reporting size changes.

        Args:
            interval: Seconds between checks
            on_change: Callback(old_total, new_total), once per size transition
            shutdown_event: Optional event that also ends monitoring

        Returns
            The running monitor; its ``stop()`` cancels monitoring and is safe to call twice
        """
        monitor = MembershipMonitor(self, interval, on_change, shutdown_event or threading.Event())
        monitor.start()
        return monitor


# ============================================================
# MONITORS
# ============================================================

class Monitor:
    """Base class for background periodic threads.
    """

    def __init__(self, name: str, interval: float, shutdown_event: threading.Event):
        """Initialize monitor.

        Args:
            name: Monitor name
            interval: Check interval in seconds
            shutdown_event: Event to signal shutdown
        """
        self.name = name
        self.interval = interval
        self.shutdown_event = shutdown_event
        self.thread = None
        self._stop_requested = threading.Event()

    def start(self) -> None:
        """Start the monitor thread.
        """
        self.thread = threading.Thread(
            target=self._run,
            daemon=True,
            name=self.name
        )
        self.thread.start()
        logger.info(f'{self.name} monitor started')

    def stop(self) -> None:
        """Request the monitor to stop; wakes it from its interval wait.
        """
        if not self._stop_requested.is_set():
            self._stop_requested.set()
            logger.info(f'{self.name} monitor stopped')

    def cancel(self) -> None:
        """Cancellation handle for ``start_monitoring`` callers; same as stop.
        """
        self.stop()

    def join(self, timeout: float = None) -> None:
        if self.thread is not None and self.thread is not threading.current_thread():
            self.thread.join(timeout=timeout)

    @property
    def running(self) -> bool:
        return self.thread is not None and self.thread.is_alive()

    def _run(self) -> None:
        """Main monitoring loop: check immediately, then every interval.
        """
        while not self.shutdown_event.is_set() and not self._stop_requested.is_set():
            try:
                self.check()
            except Exception as e:
                logger.error(f'{self.name} monitor error: {e}', exc_info=True)

            if self._stop_requested.wait(timeout=self.interval):
                break

    def check(self) -> None:
        """Perform monitoring check - to be implemented by subclasses.
        """
        raise NotImplementedError


class MembershipMonitor(Monitor):
    """Reports fleet size transitions.
    """

    def __init__(self, tracker: MembershipTracker, interval: float, on_change: Callable[[int, int], None],
                 shutdown_event: threading.Event):
        super().__init__(f'membership-{tracker.identity}', interval, shutdown_event)
        self.tracker = tracker
        self.on_change = on_change
        self.last_total = None

    def check(self) -> None:
        total = self.tracker.get_info().total
        previous, self.last_total = self.last_total, total
        if previous is not None and previous != total:
            logger.info(f'Shard count changed: {previous} -> {total}')
            if self.on_change:
                self.on_change(previous, total)


class HeartbeatMonitor(Monitor):
    """Sends periodic heartbeats to maintain node registration.
    """

    def __init__(self, registry: NodeRegistry, interval: float, shutdown_event: threading.Event):
        super().__init__(f'heartbeat-{registry.node_name}', interval, shutdown_event)
        self.registry = registry

    def check(self) -> None:
        self.registry.heartbeat()


class DispatchLoop(Monitor):
    """Runs one dispatch cycle per scan interval.
    """

    def __init__(self, worker: 'Worker'):
        super().__init__(f'dispatch-{worker.node_name}', worker.config.scan_interval_sec, worker._shutdown_event)
        self.worker = worker

    def check(self) -> None:
        self.worker.run_cycle()


class SweepMonitor(Monitor):
    """Evicts correlation entries whose completion signal never arrived.
    """

    def __init__(self, worker: 'Worker'):
        super().__init__(f'sweep-{worker.node_name}', worker.config.sweep_interval_sec, worker._shutdown_event)
        self.worker = worker

    def check(self) -> None:
        self.worker.sweep_stale()


# ============================================================
# OPERATION GATEWAY
# ============================================================

class OperationGateway:
    """Boundary to the slow asynchronous external operation.

    ``submit`` returns once the operation is accepted; completion is reported
    later through ``Worker.handle_completion``. Implementations raise
    ``GatewayError`` with the upstream status on failure.
    """

    def submit(self, payload: dict, metadata: dict) -> str:
        """Start the operation and return its reference.
        """
        raise NotImplementedError


# ============================================================
# WORKER
# ============================================================

class Worker:
    """Polling worker that dispatches this shard's backlog one item per cycle.

    Lifecycle:
    1. __enter__: verify schema and store health, register in the fleet,
       resolve the shard position (fatal if absent), start monitors
    2. Running: dispatch loop, staleness sweep, membership monitoring
    3. __exit__: stop the loop, abort retries, stop monitors, deregister,
       close the database last

    All collaborators are held on the instance; nothing is module-global.
    """

    def __init__(
        self,
        config: WorkerConfig,
        gateway: OperationGateway,
        membership_source: MembershipSource = None,
        backlog: BacklogStore = None,
    ):
        """Initialize dispatch worker.

        Args:
            config: Worker configuration (validated here)
            gateway: External operation gateway
            membership_source: Member listing (defaults per config: NodeRegistry, KubernetesMembership,
                or StaticMembership when standalone)
            backlog: Backlog store (defaults to a Postgres store built from config)

        Raises
            ConfigurationError: If config is invalid
        """
        config.validate()
        if gateway is None:
            raise ConfigurationError('gateway is required')

        self.config = config
        self.node_name = config.node_name
        self.gateway = gateway

        self._shutdown_event = threading.Event()
        self._shutdown_lock = threading.Lock()
        self._shut_down = False
        self._cycle_lock = threading.Lock()
        self._completion_lock = threading.Lock()
        self._early_completions = {}
        self._events = EventLog()
        self._monitors = {}
        self.last_cycle_at = None

        self.retry = RetryExecutor(self._shutdown_event)
        self.db_policy = RetryPolicy(config.db_max_attempts, config.db_base_delay_sec,
                                     classify_database_error, config.retry_max_jitter_sec, 'backlog write')
        self.gateway_policy = RetryPolicy(config.gateway_max_attempts, config.gateway_base_delay_sec,
                                          classify_gateway_error, config.retry_max_jitter_sec, 'gateway submit')

        needs_registry = (membership_source is None and not config.standalone
                          and config.membership_backend == 'registry')
        self.db = DatabaseContext(config) if backlog is None or needs_registry else None
        self.backlog = backlog or BacklogStore(self.db, config.dispatch_lease_sec)

        self.registry = None
        if membership_source is None:
            if config.standalone:
                membership_source = StaticMembership([config.node_name])
            elif config.membership_backend == 'kubernetes':
                membership_source = KubernetesMembership(config.namespace)
            else:
                self.registry = NodeRegistry(config.node_name, config.fleet, self.db, config.heartbeat_timeout_sec)
                membership_source = self.registry

        self.membership = MembershipTracker(config.node_name, membership_source, config.membership_selector,
                                            config.membership_ttl_sec)
        self.dequeuer = LockedDequeuer(self.backlog)
        self.tracker = CorrelationTracker()

    def _start_monitor(self, name: str, monitor: Monitor) -> None:
        if name in self._monitors:
            logger.debug(f'Monitor {name} already running')
            return
        self._monitors[name] = monitor
        if not monitor.running:
            monitor.start()

    def _stop_monitor(self, name: str) -> Monitor | None:
        monitor = self._monitors.pop(name, None)
        if monitor is not None:
            monitor.stop()
        return monitor

    def start(self) -> 'Worker':
        """Run startup checks and start the background threads.

        Raises
            RuntimeError: If the backlog store is unreachable
            SelfNotFound: If this node is absent from the fleet
        """
        logger.info(f'Starting {self.node_name} in fleet {self.config.fleet}')
        try:
            if self.db is not None:
                ensure_database_ready(self.db.engine, self.config.appname)

            if not self.backlog.health_check():
                raise RuntimeError('Backlog store health check failed')

            if self.registry is not None:
                self.retry.run(self.registry.register, self.db_policy)
                self._start_monitor('heartbeat', HeartbeatMonitor(
                    self.registry, self.config.heartbeat_interval_sec, self._shutdown_event))

            info = self.membership.refresh()
            logger.info(f'Service initialized: shard {info.index}/{info.total}, '
                        f'example ids {example_ids(info.index, info.total, 5)}, '
                        f'scan interval {self.config.scan_interval_sec}s')

            self._start_monitor('dispatch', DispatchLoop(self))
            self._start_monitor('sweep', SweepMonitor(self))
            self._start_monitor('membership', self.membership.start_monitoring(
                self.config.membership_check_interval_sec, self._on_membership_change, self._shutdown_event))
        except Exception as e:
            logger.error(f'Failed to initialize worker: {e}', exc_info=True)
            self.shutdown()
            raise
        return self

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_ty, exc_val, tb):
        if exc_ty:
            logger.error(exc_val)
        self.shutdown()

    def run_cycle(self) -> CorrelationEntry | None:
        """Claim and dispatch at most one item.

        A tick that finds the previous cycle still running is skipped.

        Returns
            The correlation entry of the dispatched item, or None
        """
        if self._shutdown_event.is_set():
            return None

        if not self._cycle_lock.acquire(blocking=False):
            logger.warning('Previous dispatch cycle still running, skipping tick')
            return None

        try:
            self.last_cycle_at = utcnow()
            try:
                info = self.membership.get_info()
            except (MembershipUnavailable, SelfNotFound) as e:
                logger.warning(f'Skipping dispatch cycle: {e}')
                return None

            item = self.dequeuer.claim_next(info.index, info.total, self.tracker.in_flight_ids())
            if item is None:
                return None

            return self.dispatch(item)
        finally:
            self._cycle_lock.release()

    def dispatch(self, item: WorkItem) -> CorrelationEntry | None:
        """Hand a claimed item to the gateway unless it is already in flight.

        Returns
            The bound correlation entry, or None if skipped or failed
        """
        summary = item.payload.get(self.config.summary_key) if isinstance(item.payload, dict) else None
        try:
            self.tracker.track(item.id, CorrelationEntry(item.id, None, utcnow(), summary))
        except AlreadyTracked as e:
            logger.debug(f'{e}, skipping duplicate dispatch')
            return None

        logger.info(f'Dispatching work item {item.id}', extra={'task_id': item.id, 'subject': summary})

        try:
            operation_ref = self.retry.run(
                lambda: self.gateway.submit(item.payload, {'task_id': str(item.id)}), self.gateway_policy)
        except Exception as e:
            self.tracker.resolve(item.id)
            if self.gateway_policy.classify(e) is Classification.PERMANENT:
                self._record_permanent_failure(item, e)
            else:
                logger.error(f'Failed to dispatch work item {item.id}: {e}, will retry next cycle')
            return None

        with self._completion_lock:
            early = self._early_completions.pop(operation_ref, None)
            entry = self.tracker.bind(item.id, operation_ref) if early is None else None

        if early is not None:
            completion, _ = early
            self.tracker.resolve(item.id)
            logger.info(f'Operation {operation_ref} for task {item.id} finished ({completion.outcome}) '
                        f'before its dispatch was recorded')
            self._apply_outcome(item.id, completion, tracked=True)
            return None

        if entry is None:
            logger.warning(f'Work item {item.id} resolved before dispatch of {operation_ref} was recorded')
            return None

        self._write(self.backlog.mark_dispatched, item.id, operation_ref)
        logger.info(f'Work item {item.id} dispatched as {operation_ref}, waiting for completion signal')
        return entry

    def _record_permanent_failure(self, item: WorkItem, error: Exception) -> None:
        logger.warning(f'Permanent error for work item {item.id}, not retrying: {error}',
                       extra={'task_id': item.id, 'status': getattr(error, 'status', None)})
        self._events.record('permanent_failure', {'task_id': item.id, 'error': str(error)})
        if self.config.record_permanent_failures:
            self._write(self.backlog.mark_failed, item.id, str(error)[:500])

    def _write(self, operation: Callable, *args) -> bool:
        """Run a best-effort backlog write under the database retry policy.
        """
        try:
            return bool(self.retry.run(lambda: operation(*args), self.db_policy))
        except Exception as e:
            logger.error(f'{operation.__name__}{args} failed: {e}')
            return False

    def handle_completion(self, completion: CompletionSignal) -> CorrelationEntry | None:
        """Apply an out-of-band completion signal; safe to call from any thread.

        Returns
            The resolved correlation entry, or None if nothing was tracked
        """
        if completion.task_id is not None:
            entry = self.tracker.resolve(completion.task_id, completion.operation_ref)
        elif completion.operation_ref is not None:
            with self._completion_lock:
                entry = self.tracker.resolve_operation(completion.operation_ref)
                if entry is None:
                    # submit may not have returned yet; dispatch applies it after bind
                    self._early_completions[completion.operation_ref] = (completion, utcnow())
                    logger.info(f'Completion for unbound operation {completion.operation_ref} held for dispatch')
                    return None
        else:
            logger.warning(f'Completion signal without task id or operation ref: {completion.metadata}')
            return None

        task_id = entry.task_id if entry is not None else completion.task_id
        if entry is not None:
            logger.info(f'Operation {entry.operation_ref} for task {task_id} finished '
                        f'({completion.outcome}) after {entry.age().total_seconds():.0f}s')
        else:
            logger.info(f'Completion signal for untracked task {task_id} ({completion.outcome})')

        self._apply_outcome(task_id, completion, tracked=entry is not None)
        return entry

    def _apply_outcome(self, task_id: int, completion: CompletionSignal, tracked: bool) -> None:
        """Write a completion outcome back to the backlog.
        """
        if completion.outcome is Outcome.COMPLETED:
            if self.config.mark_completed_on_signal:
                self._write(self.backlog.mark_completed, task_id)
        elif completion.outcome is Outcome.FAILED:
            self._write(self.backlog.release, task_id)
        else:
            logger.debug(f'Completion outcome {completion.outcome!r} for task {task_id} needs no write-back')

        self._events.record('completion', {'task_id': task_id, 'outcome': str(completion.outcome),
                                           'tracked': tracked})

    def sweep_stale(self) -> list[CorrelationEntry]:
        """Evict correlation entries past the max age and make their items eligible again.

        Held completions for operations no dispatch ever bound are dropped after the same age.
        """
        cutoff = utcnow() - _as_timedelta(self.config.correlation_max_age_sec)
        with self._completion_lock:
            unmatched = [ref for ref, (_, seen_at) in self._early_completions.items() if seen_at < cutoff]
            for ref in unmatched:
                del self._early_completions[ref]
        for ref in unmatched:
            logger.warning(f'Dropped completion for operation {ref}, no dispatch matched it')

        evicted = self.tracker.sweep(self.config.correlation_max_age_sec)
        for entry in evicted:
            logger.warning(f'Cleaned up stale operation {entry.operation_ref} for task {entry.task_id} '
                           f'(age {entry.age().total_seconds():.0f}s, possible missed completion) - will allow retry')
            self._write(self.backlog.release, entry.task_id)
        if evicted:
            logger.info(f'Swept {len(evicted)} stale correlation entries')
            self._events.record('entries_swept', {'task_ids': [e.task_id for e in evicted]})
        return evicted

    def _on_membership_change(self, old_total: int, new_total: int) -> None:
        logger.info(f'Fleet size changed {old_total} -> {new_total}, shard assignment follows on next cycle')
        self._events.record('membership_changed', {'previous_count': old_total, 'current_count': new_total})

    def is_ready(self) -> bool:
        """Readiness: backlog reachable and a valid shard position.
        """
        return self.backlog.health_check() and self.membership.validate()

    def get_status(self) -> dict:
        """Get current worker state for debugging.
        """
        return {
            'node_name': self.node_name,
            'fleet': self.config.fleet,
            'shard': self.membership.get_stats(),
            'in_flight': len(self.tracker),
            'in_flight_ids': sorted(self.tracker.in_flight_ids()),
            'last_cycle_at': self.last_cycle_at,
            'shutting_down': self._shutdown_event.is_set(),
            'recent_events': [
                {'type': e.type, 'timestamp': e.timestamp, 'data': e.data}
                for e in self._events.recent(limit=20)
            ],
            'monitors': list(self._monitors.keys()),
        }

    def shutdown(self, timeout: float = 10) -> None:
        """Stop the loop, let retries observe shutdown, then release connections.

        Safe to call more than once.
        """
        with self._shutdown_lock:
            if self._shut_down:
                return
            self._shut_down = True

        logger.info('Starting graceful shutdown...')

        stopping = [self._stop_monitor('dispatch')]
        self._shutdown_event.set()
        stopping += [self._stop_monitor(name) for name in ('sweep', 'membership')]
        for monitor in filter(None, stopping):
            monitor.join(timeout)
            if monitor.running:
                logger.warning(f'{monitor.name} thread did not stop within timeout')

        heartbeat = self._stop_monitor('heartbeat')
        if heartbeat is not None:
            heartbeat.join(timeout)

        if self.registry is not None:
            self.registry.deregister()
        if self.db is not None:
            self.db.dispose()

        logger.info('Graceful shutdown completed')


def run(worker: Worker, signals: tuple = (signal.SIGTERM, signal.SIGINT)) -> None:
    """Start ``worker`` and block until a termination signal, then shut it down.

    Must be called from the main thread.
    """
    stop = threading.Event()

    def handle_signal(signum, frame):
        logger.info(f'Received shutdown signal {signal.Signals(signum).name}')
        stop.set()

    for sig in signals:
        signal.signal(sig, handle_signal)

    with worker:
        while not stop.wait(timeout=1.0):
            pass
