__version__ = '0.1.0'

from shardsync.client import BacklogStore as BacklogStore
from shardsync.client import CompletionSignal as CompletionSignal
from shardsync.client import CorrelationTracker as CorrelationTracker
from shardsync.client import KubernetesMembership as KubernetesMembership
from shardsync.client import LockedDequeuer as LockedDequeuer
from shardsync.client import MembershipTracker as MembershipTracker
from shardsync.client import OperationGateway as OperationGateway
from shardsync.client import RetryExecutor as RetryExecutor
from shardsync.client import RetryPolicy as RetryPolicy
from shardsync.client import Worker as Worker
from shardsync.client import build_connection_string as build_connection_string
from shardsync.client import run as run
from shardsync.client import should_assign as should_assign
from shardsync.config import WorkerConfig as WorkerConfig
from shardsync.config import config_from_env as config_from_env
from shardsync.schema import get_table_names as get_table_names
