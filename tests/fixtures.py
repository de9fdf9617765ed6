"""Shared test fixtures, utilities, and helpers.

Includes config builders, in-memory fakes for the worker's collaborators,
wait helpers, and database insert helpers.

USE THIS FILE FOR:
- Creating reusable test fakes and utilities
- Adding new wait helpers used by multiple test files
- Database setup utilities
"""
import datetime
import json
import logging
import threading
import time
from dataclasses import dataclass
from types import SimpleNamespace

import pytest
from sqlalchemy import text

from shardsync import schema
from shardsync.client import BacklogStore, DatabaseContext, GatewayError, Member
from shardsync.client import MembershipSource, OperationGateway, WorkItem
from shardsync.client import should_assign
from shardsync.config import WorkerConfig

logger = logging.getLogger(__name__)


# ============================================================================
# CONFIG BUILDERS - Create test configurations
# ============================================================================

def make_config(**overrides) -> WorkerConfig:
    """Create WorkerConfig with test-optimized values.

    Fast intervals and no retry delays. Use overrides for specific test needs.

    Usage:
        config = make_config()
        config = make_config(node_name='node2', standalone=False)
    """
    defaults = {
        'node_name': 'node1',
        'standalone': True,
        'scan_interval_sec': 0.1,
        'sweep_interval_sec': 0.5,
        'membership_check_interval_sec': 0.5,
        'heartbeat_interval_sec': 0.5,
        'heartbeat_timeout_sec': 3,
        'db_base_delay_sec': 0,
        'gateway_base_delay_sec': 0,
        'retry_max_jitter_sec': 0,
    }
    defaults.update(overrides)
    return WorkerConfig(**defaults)


# ============================================================================
# FAKES - In-memory collaborators
# ============================================================================

class RecordingEvent(threading.Event):
    """Shutdown event that records backoff waits instead of sleeping.
    """

    def __init__(self, set_after: int = None):
        super().__init__()
        self.waits = []
        self.set_after = set_after

    def wait(self, timeout=None):
        self.waits.append(timeout)
        if self.set_after is not None and len(self.waits) >= self.set_after:
            self.set()
        return self.is_set()


class FakeClock:
    """Monotonic clock advanced by hand.
    """

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedMembership(MembershipSource):
    """Membership source replaying scripted responses.

    Each response is a list of identities (all healthy), a list of Member,
    or an exception to raise. The last response repeats.
    """

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = 0

    def list_members(self, selector: str) -> list[Member]:
        response = self.responses[min(self.calls, len(self.responses) - 1)]
        self.calls += 1
        if isinstance(response, Exception):
            raise response
        return [m if isinstance(m, Member) else Member(m) for m in response]


class FakeGateway(OperationGateway):
    """Gateway that accepts everything unless told to fail.

    ``failures`` maps a task id to a list of exceptions raised on successive
    submits for that task before it is accepted.
    """

    def __init__(self, failures: dict = None):
        self.failures = failures or {}
        self.submitted = []
        self._lock = threading.Lock()

    def submit(self, payload: dict, metadata: dict) -> str:
        task_id = int(metadata['task_id'])
        with self._lock:
            self.submitted.append(task_id)
            pending = self.failures.get(task_id)
            if pending:
                raise pending.pop(0)
            return f'op-{task_id}-{len(self.submitted)}'

    def submitted_ids(self) -> list[int]:
        with self._lock:
            return list(self.submitted)


class FakeCoreApi:
    """Stand-in for the Kubernetes CoreV1Api pod listing.

    ``pods`` maps pod name to phase; a phase of None models a pod with no
    status yet.
    """

    def __init__(self, pods: dict = None, error: Exception = None):
        self.pods = pods or {}
        self.error = error
        self.calls = []

    def list_namespaced_pod(self, namespace, label_selector=None):
        self.calls.append((namespace, label_selector))
        if self.error is not None:
            raise self.error
        return SimpleNamespace(items=[
            SimpleNamespace(
                metadata=SimpleNamespace(name=name),
                status=None if phase is None else SimpleNamespace(phase=phase),
            )
            for name, phase in self.pods.items()
        ])


@dataclass
class FakeRow:
    item: WorkItem
    dispatched: bool = False
    completed: bool = False
    failed_reason: str = None


class FakeBacklog:
    """In-memory backlog with the same eligibility and ordering as BacklogStore.
    """

    def __init__(self, healthy: bool = True):
        self.rows = {}
        self.healthy = healthy
        self.calls = []
        self._lock = threading.Lock()

    def add(self, task_id: int, priority_rank: int = 4, minutes_ago: int = 0, **payload) -> WorkItem:
        enqueued_at = datetime.datetime.now(datetime.timezone.utc) - datetime.timedelta(minutes=minutes_ago)
        item = WorkItem(task_id, payload or {'name': f'item-{task_id}'}, priority_rank, enqueued_at)
        self.rows[task_id] = FakeRow(item)
        return item

    def claim_next_eligible(self, index: int, total: int, excluded_ids: list[int]) -> WorkItem | None:
        with self._lock:
            eligible = [
                row.item for row in self.rows.values()
                if not (row.dispatched or row.completed or row.failed_reason)
                and should_assign(row.item.partition_key, index, total)
                and row.item.id not in excluded_ids
            ]
        eligible.sort(key=lambda i: (i.priority_rank, -i.enqueued_at.timestamp()))
        return eligible[0] if eligible else None

    def mark_dispatched(self, task_id: int, operation_ref: str = None) -> bool:
        return self._set(task_id, 'mark_dispatched', dispatched=True)

    def mark_completed(self, task_id: int) -> bool:
        return self._set(task_id, 'mark_completed', completed=True)

    def mark_failed(self, task_id: int, reason: str = None) -> bool:
        return self._set(task_id, 'mark_failed', failed_reason=reason or 'failed')

    def release(self, task_id: int) -> bool:
        return self._set(task_id, 'release', dispatched=False)

    def health_check(self) -> bool:
        return self.healthy

    def calls_for(self, name: str) -> list[int]:
        return [task_id for call, task_id in self.calls if call == name]

    def _set(self, task_id: int, call: str, **state) -> bool:
        with self._lock:
            self.calls.append((call, task_id))
            row = self.rows.get(task_id)
            if row is None:
                return False
            changed = any(getattr(row, k) != v for k, v in state.items())
            for k, v in state.items():
                setattr(row, k, v)
            return changed


def gateway_error(status: int) -> GatewayError:
    return GatewayError(f'upstream returned {status}', status=status)


# ============================================================================
# WAIT HELPERS - Poll for conditions with timeout
# ============================================================================

def wait_for(condition: callable, timeout_sec: float = 5.0, check_interval: float = 0.05) -> bool:
    """Wait for condition function to return True.

    Usage:
        assert wait_for(lambda: len(gateway.submitted) >= 3)
    """
    start = time.time()
    while time.time() - start < timeout_sec:
        try:
            if condition():
                return True
        except Exception:
            pass
        time.sleep(check_interval)
    return False


# ============================================================================
# DATABASE HELPERS
# ============================================================================

@pytest.fixture
def tables():
    return schema.get_table_names(make_config().appname)


@pytest.fixture
def backlog(postgres):
    """BacklogStore against the test database.
    """
    db = DatabaseContext(make_config())
    try:
        yield BacklogStore(db)
    finally:
        db.dispose()


def insert_item(
    postgres,
    tables: dict,
    task_id: int,
    priority_rank: int = 4,
    minutes_ago: int = 0,
    partition_key: int = None,
    payload: dict = None,
) -> None:
    """Insert a work item with an explicit id and enqueue time.
    """
    enqueued_at = datetime.datetime.now(datetime.timezone.utc) - datetime.timedelta(minutes=minutes_ago)
    with postgres.connect() as conn:
        conn.execute(text(f"""
            INSERT INTO {tables["WorkItem"]} (id, partition_key, payload, priority_rank, enqueued_at)
            VALUES (:id, :partition_key, CAST(:payload AS jsonb), :priority_rank, :enqueued_at)
        """), {
            'id': task_id,
            'partition_key': task_id if partition_key is None else partition_key,
            'payload': json.dumps(payload or {'name': f'item-{task_id}'}),
            'priority_rank': priority_rank,
            'enqueued_at': enqueued_at,
        })
        conn.commit()


def insert_active_node(postgres, tables: dict, node_name: str, fleet: str = 'shardsync',
                       heartbeat_age_seconds: int = 0) -> None:
    """Insert a node row, optionally with an old heartbeat.
    """
    now = datetime.datetime.now(datetime.timezone.utc)
    with postgres.connect() as conn:
        conn.execute(text(f"""
            INSERT INTO {tables["Node"]} (name, fleet, created_on, last_heartbeat)
            VALUES (:name, :fleet, :created_on, :heartbeat)
        """), {
            'name': node_name,
            'fleet': fleet,
            'created_on': now,
            'heartbeat': now - datetime.timedelta(seconds=heartbeat_age_seconds),
        })
        conn.commit()


def get_row(postgres, tables: dict, task_id: int) -> dict:
    with postgres.connect() as conn:
        row = conn.execute(text(f'SELECT * FROM {tables["WorkItem"]} WHERE id = :id'), {'id': task_id}).first()
    return dict(row._mapping) if row else None
