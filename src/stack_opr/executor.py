"""Resource executor for stack-based orchestration.

Walks a plan and runs each resource's apply or destroy action, recording
every status transition in the state store.

Apply is fail-fast: the first resource that fails (after retries for
transient errors) halts the walk, leaving later resources pending.
Destroy is best-effort: failures are recorded and the walk continues so
that as little as possible is left running.
"""

import logging
import threading
import time
from concurrent import futures
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from common import ActionResult
from config import Settings
from credentials import CredentialBroker, SecretValue
from stack import ActionFn, ResourceDescriptor
from stack_opr.errors import ActionError, PermanentActionError, TransientActionError
from stack_opr.graph import Plan
from stack_opr.state import ResourceState, ResourceStatus, StateStore

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    """Overall result of a plan run."""
    SUCCESS = 'success'
    PARTIAL_FAILURE = 'partial_failure'
    ABORTED = 'aborted'


@dataclass
class ExecutionReport:
    """Summary of a plan run.

    Attributes:
        operation: 'apply' or 'destroy'
        outcome: Overall outcome
        resources: ResourceState snapshots in walk order
        duration: Wall-clock seconds for the run
    """
    operation: str
    outcome: Outcome
    resources: list[ResourceState]
    duration: float = 0.0

    @property
    def success(self) -> bool:
        return self.outcome == Outcome.SUCCESS

    @property
    def failed(self) -> list[ResourceState]:
        """Resources that ended in the failed state."""
        return [r for r in self.resources if r.status == ResourceStatus.FAILED]

    def get(self, resource_id: str) -> ResourceState:
        """Get a resource snapshot by id.

        Raises:
            KeyError: If resource id not in report
        """
        for state in self.resources:
            if state.id == resource_id:
                return state
        raise KeyError(resource_id)

    def to_dict(self) -> dict:
        return {
            'operation': self.operation,
            'outcome': self.outcome.value,
            'duration_seconds': round(self.duration, 2),
            'resources': [r.to_dict() for r in self.resources],
            'failed': [
                {'id': r.id, 'error_class': r.error_class, 'error': r.last_error}
                for r in self.failed
            ],
        }


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Delay before retry number `attempt` (1-based): base * 2**(attempt-1), capped."""
    return min(base * (2 ** (attempt - 1)), cap)


@dataclass
class ExecutionEngine:
    """Applies and destroys plans one resource at a time.

    Attributes:
        max_retries: Retries after the first attempt for transient errors
        backoff_base: First retry delay in seconds
        backoff_cap: Upper bound for a single retry delay
        default_timeout: Action timeout when a resource sets none (None = no limit)
        cancel_event: Set to stop the walk at the next resource boundary
        sleep: Sleep function used between retries
    """
    max_retries: int = 3
    backoff_base: float = 2.0
    backoff_cap: float = 30.0
    default_timeout: Optional[float] = None
    cancel_event: threading.Event = field(default_factory=threading.Event)
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)
    # Timed-out invocations still running, by resource id
    _abandoned: dict = field(default_factory=dict, init=False, repr=False)

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> 'ExecutionEngine':
        """Build an engine from the retry/timeout fields of Settings."""
        return cls(
            max_retries=settings.max_retries,
            backoff_base=settings.backoff_base,
            backoff_cap=settings.backoff_cap,
            default_timeout=settings.timeout or None,
            **kwargs,
        )

    def cancel(self) -> None:
        """Request cancellation; honored before the next resource starts."""
        self.cancel_event.set()

    def apply(
        self,
        plan: Plan,
        store: StateStore,
        broker: Optional[CredentialBroker] = None,
    ) -> ExecutionReport:
        """Apply a plan in order, skipping resources already applied.

        Raises:
            StateLockedError: If another run holds the stack's state
        """
        start = time.time()
        outcome = Outcome.SUCCESS

        with store.lock():
            for descriptor in plan:
                store.ensure(descriptor.id)

            outputs = {s.id: s.outputs for s in store.snapshot() if s.status == ResourceStatus.APPLIED}

            for descriptor in plan:
                if self.cancel_event.is_set():
                    logger.warning("Cancellation requested; stopping before '%s'", descriptor.id)
                    outcome = Outcome.ABORTED
                    break

                state = store.get(descriptor.id)
                if state.status == ResourceStatus.APPLIED and descriptor.idempotent:
                    logger.info(f"[apply] '{descriptor.id}' already applied, skipping")
                    continue

                logger.info(f"[apply] Applying {descriptor.kind.value} '{descriptor.id}'")
                state.start_apply()
                store.put(state)

                try:
                    result = self._run_action(
                        descriptor, 'apply', descriptor.apply_action, state, store, broker, outputs)
                except ActionError as e:
                    state.fail(str(e), e.classification)
                    store.put(state)
                    logger.error("Apply failed for '%s' (%s): %s", descriptor.id, e.classification, e)
                    outcome = Outcome.PARTIAL_FAILURE
                    break

                state.mark_applied(_public_outputs(descriptor.id, result))
                store.put(state)
                outputs[descriptor.id] = state.outputs
                logger.info(f"[apply] '{descriptor.id}' applied")

            report = self._report('apply', plan, store, outcome, start)

        logger.info(f"Apply finished: {report.outcome.value} ({report.duration:.1f}s)")
        return report

    def destroy(
        self,
        plan: Plan,
        store: StateStore,
        broker: Optional[CredentialBroker] = None,
    ) -> ExecutionReport:
        """Destroy a plan in reverse order, continuing past failures.

        Raises:
            StateLockedError: If another run holds the stack's state
        """
        start = time.time()
        teardown = plan.reverse()
        outcome = Outcome.SUCCESS
        any_failed = False

        with store.lock():
            outputs = {s.id: s.outputs for s in store.snapshot() if s.outputs}

            for descriptor in teardown:
                if self.cancel_event.is_set():
                    logger.warning("Cancellation requested; stopping before '%s'", descriptor.id)
                    outcome = Outcome.ABORTED
                    break

                if not store.contains(descriptor.id):
                    logger.debug(f"[destroy] '{descriptor.id}' never recorded, skipping")
                    continue
                state = store.get(descriptor.id)
                if state.status in (ResourceStatus.PENDING, ResourceStatus.DESTROYED):
                    logger.info(f"[destroy] '{descriptor.id}' is {state.status.value}, skipping")
                    continue

                logger.info(f"[destroy] Destroying {descriptor.kind.value} '{descriptor.id}'")
                state.start_destroy()
                store.put(state)

                try:
                    self._run_action(
                        descriptor, 'destroy', descriptor.destroy_action, state, store, broker, outputs)
                except ActionError as e:
                    state.fail(str(e), e.classification)
                    store.put(state)
                    logger.error("Destroy failed for '%s' (%s): %s", descriptor.id, e.classification, e)
                    any_failed = True
                    continue

                state.mark_destroyed()
                store.put(state)
                outputs.pop(descriptor.id, None)
                logger.info(f"[destroy] '{descriptor.id}' destroyed")

            if outcome != Outcome.ABORTED and any_failed:
                outcome = Outcome.PARTIAL_FAILURE
            report = self._report('destroy', teardown, store, outcome, start)

        logger.info(f"Destroy finished: {report.outcome.value} ({report.duration:.1f}s)")
        return report

    def _run_action(
        self,
        descriptor: ResourceDescriptor,
        verb: str,
        action: Optional[ActionFn],
        state: ResourceState,
        store: StateStore,
        broker: Optional[CredentialBroker],
        outputs: dict,
    ):
        """Invoke an action, retrying transient errors with exponential backoff.

        Raises:
            TransientActionError: When retries are exhausted
            PermanentActionError: On the first non-transient failure
        """
        timeout = descriptor.timeout or self.default_timeout

        def _abandon(future):
            self._abandoned[descriptor.id] = future

        while True:
            self._wait_for_abandoned(descriptor.id)
            state.attempts += 1
            store.put(state)
            try:
                context = {
                    'resource_id': descriptor.id,
                    'kind': descriptor.kind.value,
                    'secrets': self._resolve_secrets(descriptor, broker),
                    'outputs': dict(outputs),
                }
                return _invoke(action, context, timeout, on_timeout=_abandon)
            except TransientActionError as e:
                if state.attempts > self.max_retries:
                    raise TransientActionError(
                        f"{e} (gave up after {state.attempts} attempts)") from e
                delay = backoff_delay(state.attempts, self.backoff_base, self.backoff_cap)
                logger.warning(
                    f"[{verb}] '{descriptor.id}' attempt {state.attempts} failed: {e}; "
                    f"retrying in {delay:g}s"
                )
                self.sleep(delay)

    def _wait_for_abandoned(self, resource_id: str) -> None:
        """Block until a timed-out invocation for resource_id has finished.

        Timed-out workers are not killed, so the next attempt on the same
        resource waits for them; two invocations never overlap.
        """
        future = self._abandoned.pop(resource_id, None)
        if future is None or future.done():
            return
        logger.warning(f"Waiting for timed-out action of '{resource_id}' to finish before retrying")
        futures.wait([future])

    @staticmethod
    def _resolve_secrets(descriptor: ResourceDescriptor, broker: Optional[CredentialBroker]) -> dict:
        """Resolve the descriptor's secrets; broker failures become ActionErrors."""
        if not descriptor.secrets:
            return {}
        if broker is None:
            raise PermanentActionError(
                f"Resource '{descriptor.id}' needs secrets but no credential broker is configured")
        secrets = {}
        for name in descriptor.secrets:
            try:
                secrets[name] = broker.resolve(name)
            except ActionError:
                raise
            except Exception as e:
                # Exception text may quote the secret; report the type only
                raise PermanentActionError(f"Resolving secret '{name}' failed: {type(e).__name__}") from e
        return secrets

    @staticmethod
    def _report(operation: str, plan: Plan, store: StateStore, outcome: Outcome, start: float) -> ExecutionReport:
        recorded = {s.id: s for s in store.snapshot()}
        resources = [recorded.get(rid) or ResourceState(id=rid) for rid in plan.ids]
        return ExecutionReport(
            operation=operation,
            outcome=outcome,
            resources=resources,
            duration=time.time() - start,
        )


def _invoke(action: Optional[ActionFn], context: dict, timeout: Optional[float],
            on_timeout: Optional[Callable[[futures.Future], None]] = None):
    """Call an action and translate its failure into the error taxonomy."""
    if action is None:
        return None
    try:
        if timeout:
            result = _call_with_timeout(action, context, timeout, on_timeout)
        else:
            result = action(context)
    except ActionError:
        raise
    except (TimeoutError, ConnectionError) as e:
        raise TransientActionError(str(e) or type(e).__name__) from e
    except Exception as e:
        raise PermanentActionError(f"{type(e).__name__}: {e}") from e

    if result is None:
        return None
    if not isinstance(result, ActionResult):
        raise PermanentActionError(
            f"Action returned {type(result).__name__}, expected ActionResult or None")
    if not result.success:
        error_cls = TransientActionError if result.transient else PermanentActionError
        raise error_cls(result.message or 'action reported failure')
    return result


def _call_with_timeout(action: ActionFn, context: dict, timeout: float,
                       on_timeout: Optional[Callable[[futures.Future], None]] = None):
    """Run action on a worker thread and stop waiting after timeout seconds.

    The worker is not killed on timeout; the wrapped call is an opaque
    external operation and is left to finish on its own. Its future is
    handed to on_timeout so the caller can wait for it before retrying.
    """
    pool = futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix='kfstack-action')
    future = pool.submit(action, context)
    try:
        return future.result(timeout=timeout)
    except futures.TimeoutError:
        if future.done():
            raise
        if on_timeout is not None:
            on_timeout(future)
        raise TransientActionError(f"Action timed out after {timeout:g}s")
    finally:
        pool.shutdown(wait=False)


def _public_outputs(resource_id: str, result) -> dict:
    """Outputs safe to persist: everything except SecretValue instances."""
    if result is None or not result.context_updates:
        return {}
    public = {}
    for key, value in result.context_updates.items():
        if isinstance(value, SecretValue):
            logger.debug(f"Not persisting secret output '{key}' of '{resource_id}'")
            continue
        public[key] = value
    return public


def preview(plan: Plan, store: StateStore, operation: str, stack_name: str) -> None:
    """Print what apply/destroy would do without invoking any action."""
    recorded = {s.id: s for s in store.snapshot()}
    order = plan if operation == 'apply' else plan.reverse()

    print("")
    print("=" * 65)
    print(f"  DRY-RUN {operation.upper()}: {stack_name}")
    print(f"  State: {store.path}")
    print("=" * 65)
    print("")
    for i, descriptor in enumerate(order, 1):
        state = recorded.get(descriptor.id)
        status = state.status if state else ResourceStatus.PENDING
        if operation == 'apply':
            skip = status == ResourceStatus.APPLIED and descriptor.idempotent
        else:
            skip = status in (ResourceStatus.PENDING, ResourceStatus.DESTROYED)
        verb = 'skip' if skip else operation
        deps = f" (after: {', '.join(sorted(descriptor.depends_on))})" if descriptor.depends_on else ''
        print(f"  [{i}] {descriptor.id}: {descriptor.kind.value}{deps} [{status.value} -> {verb}]")
        if descriptor.description:
            print(f"      {descriptor.description}")
    print("")
