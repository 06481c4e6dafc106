"""Types shared by distributed task publishers and subscribers."""

from __future__ import annotations

import abc
import enum
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from .ctxdata import Context


@dataclass
class TaskInfo:
    """The state of a queued task."""

    id: str = ""
    queue: str = ""
    type: str = ""
    payload: bytes = b""
    state: str = ""
    max_retry: int = 0
    retried: int = 0
    last_err: str = ""
    last_failed_at: Optional[datetime] = None
    timeout: timedelta = field(default_factory=timedelta)
    deadline: Optional[datetime] = None
    group: str = ""
    next_process_at: Optional[datetime] = None
    is_orphaned: bool = False
    retention: timedelta = field(default_factory=timedelta)
    completed_at: Optional[datetime] = None
    result: bytes = b""


class Level(str, enum.Enum):
    """Priority queue a task is published to."""

    CRITICAL = "critical"
    DEFAULT = "default"
    LOW = "low"


@dataclass(frozen=True)
class Response:
    """What a subscription handler returns for one task."""

    error: Optional[BaseException] = None
    data: Any = None
    report: bool = False

    def is_error(self) -> bool:
        return self.error is not None


def report_error(err: BaseException, data: Any) -> Response:
    """A failure that should be reported."""
    return Response(error=err, data=data, report=True)


def expect_error(err: BaseException, data: Any) -> Response:
    """An expected failure that need not be reported."""
    return Response(error=err, data=data)


def done(data: Any) -> Response:
    """A successful result."""
    return Response(data=data)


class Task(abc.ABC):
    """A task received by a subscriber."""

    @abc.abstractmethod
    def bind(self, target: Any) -> Any:
        """Decode the task's JSON payload into ``target``."""

    @abc.abstractmethod
    def task_id(self) -> str:
        """Return the task's identifier."""

    @abc.abstractmethod
    def type(self) -> str:
        """Return the task's type name."""


class Publisher(abc.ABC):
    """Puts tasks on queues and inspects them."""

    @abc.abstractmethod
    def publish_with_schedule(
        self, queue_name: str, task_id: str, data: Any, process_at: datetime, deadline: datetime
    ) -> TaskInfo:
        """Queue a task to be processed at ``process_at``."""

    @abc.abstractmethod
    def publish(self, queue_name: str, task_id: str, data: Any, deadline: datetime) -> TaskInfo:
        """Queue a task for immediate processing."""

    @abc.abstractmethod
    def publish_with_level(
        self, queue_name: str, task_id: str, data: Any, deadline: datetime, level: Level
    ) -> TaskInfo:
        """Queue a task with a priority level."""

    @abc.abstractmethod
    def delete(self, queue_name: str, task_id: str) -> None:
        """Remove a task from its queue."""

    @abc.abstractmethod
    def get_task_info(self, queue_name: str, ids: list[str]) -> list[TaskInfo]:
        """Return the state of each task; unknown ids have state "not found"."""

    @abc.abstractmethod
    def get_all_archived_tasks(self, queue_name: str) -> list[str]:
        """Return the ids of archived tasks."""

    @abc.abstractmethod
    def run_all_retry_tasks(self, queue_name: str) -> int:
        """Run every task awaiting retry now; return how many."""


SubscriptionHandler = Callable[[Context, Task], Response]


@dataclass
class RedisConfig:
    """Connection settings of the task broker."""

    address: str = ""
    db: int = 0
    password: str = ""


@dataclass
class SubscriberConfig:
    """Settings of a task subscriber."""

    redis: RedisConfig = field(default_factory=RedisConfig)
    concurrency: int = 0
    prometheus_port: int = 0
    retry_delay: str = ""
    metrics_registry: Any = None


@dataclass(frozen=True)
class SubscriberOption:
    """A queue and the handler for its tasks."""

    queue_name: str
    handler: SubscriptionHandler

    @property
    def queue(self) -> str:
        return self.queue_name


def with_subscriber(queue_name: str, handler: SubscriptionHandler) -> SubscriberOption:
    return SubscriberOption(queue_name=queue_name, handler=handler)