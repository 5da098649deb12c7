"""Resource state persistence for stack-based orchestration.

Tracks per-resource status (pending, applying, applied, failed,
destroying, destroyed) in a JSON document per stack so that re-runs and
teardown know what was already done.
"""

import fcntl
import json
import logging
import os
import tempfile
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional

from config import ConfigError
from stack_opr.errors import StateLockedError

logger = logging.getLogger(__name__)

STATE_FILE = 'state.json'
LOCK_FILE = 'state.lock'


class ResourceStatus(str, Enum):
    """Lifecycle status of a resource."""
    PENDING = 'pending'
    APPLYING = 'applying'
    APPLIED = 'applied'
    FAILED = 'failed'
    DESTROYING = 'destroying'
    DESTROYED = 'destroyed'


@dataclass
class ResourceState:
    """Per-resource execution state.

    Attributes:
        id: Resource id (matches ResourceDescriptor.id)
        status: Current lifecycle status
        last_error: Error message of the last failure
        error_class: 'transient' or 'permanent' for the last failure
        attempts: Action invocations in the latest apply/destroy
        outputs: Non-secret values returned by the last successful apply
        updated_at: Timestamp of the last transition
    """
    id: str
    status: ResourceStatus = ResourceStatus.PENDING
    last_error: Optional[str] = None
    error_class: Optional[str] = None
    attempts: int = 0
    outputs: dict = field(default_factory=dict)
    updated_at: Optional[float] = None

    def _touch(self, status: ResourceStatus) -> None:
        self.status = status
        self.updated_at = time.time()

    def start_apply(self) -> None:
        self._touch(ResourceStatus.APPLYING)
        self.attempts = 0
        self.last_error = None
        self.error_class = None

    def mark_applied(self, outputs: Optional[dict] = None) -> None:
        self._touch(ResourceStatus.APPLIED)
        self.outputs = dict(outputs or {})

    def start_destroy(self) -> None:
        self._touch(ResourceStatus.DESTROYING)
        self.attempts = 0
        self.last_error = None
        self.error_class = None

    def mark_destroyed(self) -> None:
        self._touch(ResourceStatus.DESTROYED)
        self.outputs = {}

    def fail(self, error: str, error_class: str) -> None:
        self._touch(ResourceStatus.FAILED)
        self.last_error = error
        self.error_class = error_class

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'id': self.id,
            'status': self.status.value,
            'attempts': self.attempts,
        }
        if self.last_error is not None:
            d['last_error'] = self.last_error
        if self.error_class is not None:
            d['error_class'] = self.error_class
        if self.outputs:
            d['outputs'] = self.outputs
        if self.updated_at is not None:
            d['updated_at'] = self.updated_at
        return d

    @classmethod
    def from_dict(cls, data: dict) -> 'ResourceState':
        return cls(
            id=data['id'],
            status=ResourceStatus(data.get('status', 'pending')),
            last_error=data.get('last_error'),
            error_class=data.get('error_class'),
            attempts=data.get('attempts', 0),
            outputs=dict(data.get('outputs') or {}),
            updated_at=data.get('updated_at'),
        )


class StateStore:
    """Durable per-stack resource state.

    State is persisted to {state_dir}/{stack}/state.json. Every put()
    re-reads the document, replaces one resource entry and atomically
    swaps the file in (temp file + os.replace), so a crash never leaves a
    half-written document and reads never see a stale in-memory cache.
    """

    def __init__(self, stack_name: str, state_dir: Path):
        """Initialize the store.

        Args:
            stack_name: Stack identifier (state partition)
            state_dir: Root directory holding per-stack state directories
        """
        self.stack_name = stack_name
        self.directory = Path(state_dir) / stack_name
        self.path = self.directory / STATE_FILE

    def _read(self) -> dict:
        """Load the state document.

        Raises:
            ConfigError: If the file is not a valid state document
        """
        if not self.path.exists():
            return {'stack': self.stack_name, 'resources': {}}
        with open(self.path, encoding='utf-8') as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as e:
                raise ConfigError(f"Corrupt state file {self.path}: {e}")
        if not isinstance(data, dict) or not isinstance(data.setdefault('resources', {}), dict):
            raise ConfigError(f"Corrupt state file {self.path}: expected an object with a 'resources' mapping")
        return data

    def _write(self, data: dict) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.directory, prefix='.state-', suffix='.json')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def get(self, resource_id: str) -> ResourceState:
        """Get the persisted state of a resource.

        Raises:
            KeyError: If the resource has never been recorded
        """
        entry = self._read()['resources'][resource_id]
        return ResourceState.from_dict(entry)

    def contains(self, resource_id: str) -> bool:
        return resource_id in self._read()['resources']

    def put(self, state: ResourceState) -> None:
        """Persist one resource state atomically."""
        data = self._read()
        data['stack'] = self.stack_name
        data['resources'][state.id] = state.to_dict()
        self._write(data)
        logger.debug(f"Saved state {state.id}={state.status.value} to {self.path}")

    def ensure(self, resource_id: str) -> ResourceState:
        """Return the recorded state, registering it as pending if absent."""
        try:
            return self.get(resource_id)
        except KeyError:
            state = ResourceState(id=resource_id)
            self.put(state)
            return state

    def snapshot(self) -> list[ResourceState]:
        """All recorded resource states, in id order."""
        resources = self._read()['resources']
        return [ResourceState.from_dict(resources[rid]) for rid in sorted(resources)]

    @contextmanager
    def lock(self) -> Iterator['StateStore']:
        """Hold an exclusive lock on this stack's state for one run.

        Raises:
            StateLockedError: If another process holds the lock
        """
        self.directory.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.directory / LOCK_FILE, os.O_RDWR | os.O_CREAT, 0o600)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            raise StateLockedError(
                f"State for stack '{self.stack_name}' is locked by another run ({self.directory / LOCK_FILE})"
            )
        try:
            yield self
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)
