"""
Durable Work Queue Module

The detached phase of every command runs as a persisted work item, so a
restart cannot drop work that was acknowledged to the portal. Items move
PENDING -> RUNNING -> DONE | FAILED. Claiming an item is a store-level
compare-and-set on its status, so two workers never run the same item.

A background thread drains the queue; tests and operators can call
run_pending() directly instead.
"""

import logging
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .logging_config import log_action
from .storage import StorageInterface, StorageRecord

logger = logging.getLogger("ess_bridge.tasks")


class WorkItemStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


@dataclass
class WorkItem(StorageRecord):
    """A unit of detached work keyed by the application it concerns"""
    task_type: str
    key: str
    payload: Dict[str, Any] = field(default_factory=dict)
    status: WorkItemStatus = WorkItemStatus.PENDING
    attempts: int = 0
    last_error: Optional[str] = None
    completed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['status'] = self.status.value
        result['completed_at'] = self.completed_at.isoformat() if self.completed_at else None
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkItem':
        data['status'] = WorkItemStatus(data['status'])
        if data.get('completed_at'):
            data['completed_at'] = datetime.fromisoformat(data['completed_at'])
        return super().from_dict(data)


class KeyedLock:
    """
    One re-entrant lock per key. A key's lock lives only while some thread
    holds or waits for it.
    """

    def __init__(self):
        self._locks: Dict[str, threading.RLock] = {}
        self._users: Dict[str, int] = {}
        self._guard = threading.Lock()

    @contextmanager
    def hold(self, key: str):
        with self._guard:
            lock = self._locks.setdefault(key, threading.RLock())
            self._users[key] = self._users.get(key, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._users[key] -= 1
                if not self._users[key]:
                    del self._users[key]
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


TaskHandler = Callable[[Dict[str, Any]], None]


class WorkQueue:
    """Persisted task queue with a single background worker"""

    def __init__(self, storage: StorageInterface, poll_interval: float = 1.0,
                 table_name: str = "work_items"):
        self.storage = storage
        self.poll_interval = poll_interval
        self.table_name = table_name
        self._handlers: Dict[str, TaskHandler] = {}
        self._wakeup = threading.Event()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def register(self, task_type: str, handler: TaskHandler) -> None:
        self._handlers[task_type] = handler

    def enqueue(self, task_type: str, key: str, payload: Optional[Dict[str, Any]] = None) -> WorkItem:
        """Persist a new PENDING item and wake the worker"""
        if task_type not in self._handlers:
            raise ValueError(f"No handler registered for task type {task_type}")
        now = datetime.now(timezone.utc)
        item = WorkItem(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            task_type=task_type,
            key=key,
            payload=payload or {},
        )
        self.storage.save(self.table_name, item.id, item.to_dict())
        log_action(logger, "info", f"Enqueued {task_type}", application_id=key,
                   action="enqueue", correlation_id=item.id)
        self._wakeup.set()
        return item

    def get(self, item_id: str) -> Optional[WorkItem]:
        data = self.storage.load(self.table_name, item_id)
        return WorkItem.from_dict(data) if data else None

    def list_items(self, status: Optional[WorkItemStatus] = None,
                   key: Optional[str] = None) -> List[WorkItem]:
        filters: Dict[str, Any] = {}
        if status:
            filters['status'] = status.value
        if key:
            filters['key'] = key
        items = [WorkItem.from_dict(data) for data in self.storage.find(self.table_name, filters)]
        items.sort(key=lambda item: item.created_at)
        return items

    def _claim(self, item: WorkItem) -> bool:
        previous = item.status
        item.status = WorkItemStatus.RUNNING
        item.attempts += 1
        item.updated_at = datetime.now(timezone.utc)
        return self.storage.compare_and_set(
            self.table_name, item.id, {'status': previous.value}, item.to_dict()
        )

    def _finish(self, item: WorkItem, error: Optional[Exception]) -> None:
        now = datetime.now(timezone.utc)
        item.updated_at = now
        if error is None:
            item.status = WorkItemStatus.DONE
            item.completed_at = now
            item.last_error = None
        else:
            item.status = WorkItemStatus.FAILED
            item.last_error = f"{type(error).__name__}: {error}"
        self.storage.save(self.table_name, item.id, item.to_dict())

    def run_item(self, item: WorkItem) -> bool:
        """Claim and execute one item. Returns True if it completed."""
        if not self._claim(item):
            return False
        handler = self._handlers.get(item.task_type)
        try:
            if handler is None:
                raise ValueError(f"No handler registered for task type {item.task_type}")
            handler(item.payload)
        except Exception as e:
            logger.exception(f"Work item {item.id} ({item.task_type}) failed for {item.key}")
            self._finish(item, e)
            return False
        self._finish(item, None)
        return True

    def run_pending(self, limit: Optional[int] = None) -> Dict[str, int]:
        """
        Execute pending items oldest first.

        Returns:
            Counts of items that completed and failed
        """
        results = {'completed': 0, 'failed': 0}
        for item in self.list_items(WorkItemStatus.PENDING)[:limit]:
            if self.run_item(item):
                results['completed'] += 1
            else:
                current = self.get(item.id)
                if current and current.status == WorkItemStatus.FAILED:
                    results['failed'] += 1
        return results

    def recover(self) -> int:
        """Return items left RUNNING by a crashed process to PENDING"""
        recovered = 0
        for item in self.list_items(WorkItemStatus.RUNNING):
            item.status = WorkItemStatus.PENDING
            item.updated_at = datetime.now(timezone.utc)
            if self.storage.compare_and_set(self.table_name, item.id,
                                            {'status': WorkItemStatus.RUNNING.value}, item.to_dict()):
                recovered += 1
        if recovered:
            logger.warning(f"Recovered {recovered} interrupted work item(s)")
        return recovered

    def requeue(self, item_id: str) -> WorkItem:
        """Put a FAILED item back to PENDING for another attempt"""
        item = self.get(item_id)
        if item is None:
            raise KeyError(item_id)
        if item.status != WorkItemStatus.FAILED:
            raise ValueError(f"Work item {item_id} is {item.status.value}, only failed items can be requeued")
        item.status = WorkItemStatus.PENDING
        item.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, item.id, item.to_dict())
        self._wakeup.set()
        return item

    def _worker(self) -> None:
        while not self._stop.is_set():
            self._wakeup.wait(self.poll_interval)
            self._wakeup.clear()
            if self._stop.is_set():
                break
            try:
                self.run_pending()
            except Exception:
                logger.exception("Work queue sweep failed")

    def start(self) -> None:
        """Recover interrupted items and start the background worker"""
        if self._thread and self._thread.is_alive():
            return
        self.recover()
        self._stop.clear()
        self._wakeup.set()
        self._thread = threading.Thread(target=self._worker, name="ess-bridge-worker", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        self._wakeup.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None
