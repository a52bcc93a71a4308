"""Instance readiness polling.

Drives a freshly requested instance through an explicit state machine until
it is safe to configure::

    awaiting-lifecycle -> awaiting-system-status -> awaiting-instance-status
        -> [volume-attachment] -> ready

Any state may end in ``failed``. Every status query fetches a full
``InstanceStatusSnapshot``; lifecycle only gates the first state and is
afterwards re-derived from the snapshots fetched for the health checks, which
is how a regression (stopping, terminated, ...) is detected while waiting.

Example:
    from sprout.poller import ReadinessPoller
    from sprout.types import WaitPolicy

    poller = ReadinessPoller(provider, WaitPolicy(poll_interval=5, timeout=600))
    ready = poller.wait("i-0123456789abcdef0")
    print(ready.address)
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from loguru import logger
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from sprout.constants import QUERY_BACKOFF_MAX, HealthStatus, LifecycleState, VolumeState
from sprout.core.exceptions import (
    AttachError,
    InvalidHandleError,
    LifecycleRegressionError,
    NotFoundError,
    PollCancelledError,
    QueryRejectedError,
    ReadinessError,
    TimeoutError,
    TransientQueryError,
)
from sprout.types import (
    InstanceDetails,
    InstanceHandle,
    InstanceStatusSnapshot,
    ReadinessState,
    ReadyInstance,
    VolumeAttachment,
    WaitPolicy,
)

if TYPE_CHECKING:
    from loguru import Logger

    from sprout.provider import CloudProvider

log = logger.bind(component="poller")

type Clock = Callable[[], float]


class Cancellation:
    """Cancellation token shared between a caller and a running poll.

    ``cancel()`` may be called from any thread (or a signal handler); a poll
    blocked in its wait interval wakes up and raises ``PollCancelledError``.
    """

    __slots__ = ("_event",)

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``. Returns True if cancelled."""
        return self._event.wait(max(seconds, 0.0))


@dataclass(slots=True)
class _Run:
    """Mutable progress of a single ``wait()`` call."""

    instance_id: InstanceHandle
    started: float
    state: ReadinessState = ReadinessState.AWAITING_LIFECYCLE
    attempts: int = 0
    snapshot: InstanceStatusSnapshot | None = None
    launched: bool = False
    seen: bool = False


class ReadinessPoller:
    """Blocks until an instance is running and passes both health checks.

    The poller holds configuration only; every ``wait()`` call starts from
    scratch, so a single poller can be reused (or shared across threads, one
    instance id per call).

    Args:
        provider: Cloud provider to query.
        policy: Poll interval and termination bounds.
        volume: Optional EBS volume to attach once the instance is healthy.
        cancellation: Token that aborts the wait interval.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        provider: CloudProvider,
        policy: WaitPolicy | None = None,
        *,
        volume: VolumeAttachment | None = None,
        cancellation: Cancellation | None = None,
        clock: Clock = time.monotonic,
    ) -> None:
        self._provider = provider
        self._policy = policy or WaitPolicy()
        self._volume = volume
        self._cancellation = cancellation or Cancellation()
        self._clock = clock

    @property
    def policy(self) -> WaitPolicy:
        return self._policy

    def wait(self, instance_id: InstanceHandle | None, *, launched: bool = False) -> ReadyInstance:
        """Poll ``instance_id`` until it is ready.

        Pass ``launched=True`` for an instance id fresh from a fleet request:
        "not found" then counts as not visible yet until the provider first
        reports a lifecycle state, bounded by the wait policy.

        Raises:
            InvalidHandleError: If the id is empty.
            LifecycleRegressionError: If the instance stops or terminates.
            TimeoutError: If the wait policy is exhausted.
            NotFoundError: If the provider does not know the instance.
            TransientQueryError: If provider queries keep failing.
            QueryRejectedError: If the provider refuses a query outright.
            PollCancelledError: If the cancellation token fires.
        """
        if not instance_id or not instance_id.strip():
            log.error("Refusing to poll: no instance id given")
            raise InvalidHandleError()

        run = _Run(instance_id=instance_id, started=self._clock(), launched=launched)
        log.info(
            "Waiting for {instance_id} (interval={interval}s, max_attempts={attempts}, timeout={timeout})",
            instance_id=instance_id,
            interval=self._policy.poll_interval,
            attempts=self._policy.max_attempts,
            timeout=self._policy.timeout,
        )
        if not self._policy.bounded:
            log.warning("No attempt limit or deadline set; {instance_id} may be polled forever", instance_id=instance_id)

        while True:
            run.snapshot = self._query_status(run)
            if self._advance(run):
                break
            self._check_budget(run)
            self._pause(run, self._next_interval(run))

        details = self._query_details(run)
        volume = self._attach_volume(run) if self._volume else None

        self._transition(run, ReadinessState.READY)
        return ReadyInstance(
            instance_id=run.instance_id,
            address=details.address,
            instance_type=details.instance_type,
            private_address=details.private_ip,
            volume=volume,
        )

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def _advance(self, run: _Run) -> bool:
        """Apply transition rules to the latest snapshot. True once healthy."""
        snapshot = run.snapshot
        assert snapshot is not None

        if snapshot.lifecycle.is_regression:
            raise self._fail(
                run,
                LifecycleRegressionError,
                f"Instance {run.instance_id} is {snapshot.lifecycle} while {run.state}",
                axis="lifecycle",
            )

        if run.state is ReadinessState.AWAITING_LIFECYCLE:
            if snapshot.lifecycle is not LifecycleState.RUNNING:
                self._still_waiting(run)
                return False
            self._transition(run, ReadinessState.AWAITING_SYSTEM_STATUS)

        if run.state is ReadinessState.AWAITING_SYSTEM_STATUS:
            if snapshot.system is not HealthStatus.OK:
                self._still_waiting(run)
                return False
            self._transition(run, ReadinessState.AWAITING_INSTANCE_STATUS)

        if not snapshot.healthy:
            self._still_waiting(run)
            return False
        return True

    def _transition(self, run: _Run, state: ReadinessState) -> None:
        previous, run.state = run.state, state
        self._log_state(run).info(
            "{instance_id}: {previous} -> {state} after {elapsed:.1f}s ({status})",
            instance_id=run.instance_id,
            previous=previous,
            state=state,
            elapsed=self._elapsed(run),
            status=run.snapshot.describe() if run.snapshot else "no status yet",
        )

    def _still_waiting(self, run: _Run) -> None:
        snapshot = run.snapshot
        assert snapshot is not None
        bound = self._log_state(run)
        if HealthStatus.IMPAIRED in (snapshot.system, snapshot.instance):
            bound.warning(
                "{instance_id} reports impaired health ({status}), still waiting",
                instance_id=run.instance_id,
                status=snapshot.describe(),
            )
            return
        bound.debug(
            "{instance_id}: attempt {attempt} {state} ({status})",
            instance_id=run.instance_id,
            attempt=run.attempts,
            state=run.state,
            status=snapshot.describe(),
        )

    def _fail[E: ReadinessError](self, run: _Run, error: type[E], message: str, *, axis: str) -> E:
        failed_in = run.state
        exc = error(message, axis=axis, state=failed_in, snapshot=run.snapshot)  # type: ignore[arg-type]
        self._transition(run, ReadinessState.FAILED)
        self._log_state(run).error(
            "{instance_id} failed in {state}: {error}",
            instance_id=run.instance_id,
            state=failed_in,
            error=message,
        )
        return exc

    # -------------------------------------------------------------------------
    # Wait policy
    # -------------------------------------------------------------------------

    def _check_budget(self, run: _Run) -> None:
        policy = self._policy
        axis = _AXIS_BY_STATE[run.state]

        if policy.max_attempts is not None and run.attempts >= policy.max_attempts:
            raise self._fail(
                run,
                TimeoutError,
                f"{run.instance_id} not ready after {run.attempts} attempts (waiting on {axis})",
                axis=axis,
            )

        if policy.timeout is not None and self._elapsed(run) >= policy.timeout:
            raise self._fail(
                run,
                TimeoutError,
                f"{run.instance_id} not ready after {policy.timeout}s (waiting on {axis})",
                axis=axis,
            )

    def _next_interval(self, run: _Run) -> float:
        interval = self._policy.poll_interval
        if self._policy.timeout is not None:
            interval = min(interval, self._policy.timeout - self._elapsed(run))
        return max(interval, 0.0)

    def _pause(self, run: _Run, seconds: float) -> None:
        if self._cancellation.wait(seconds):
            raise self._fail(
                run,
                PollCancelledError,
                f"Polling {run.instance_id} cancelled",
                axis=_AXIS_BY_STATE[run.state],
            )

    def _elapsed(self, run: _Run) -> float:
        return self._clock() - run.started

    # -------------------------------------------------------------------------
    # Provider queries
    # -------------------------------------------------------------------------

    def _retrying(self, run: _Run) -> Retrying:
        policy = self._policy
        return Retrying(
            stop=stop_after_attempt(policy.query_retries),
            wait=wait_exponential(multiplier=policy.query_backoff, max=QUERY_BACKOFF_MAX),
            retry=retry_if_exception_type(TransientQueryError),
            sleep=lambda seconds: self._pause(run, seconds),
            before_sleep=_log_retry,
            reraise=True,
        )

    def _query_status(self, run: _Run) -> InstanceStatusSnapshot:
        run.attempts += 1
        try:
            snapshot = self._retrying(run)(self._provider.describe_instance_status, run.instance_id)
        except NotFoundError as e:
            if run.launched and not run.seen:
                log.bind(instance_id=run.instance_id).debug(
                    "{instance_id} not visible yet after launch: {error}",
                    instance_id=run.instance_id,
                    error=e,
                )
                return InstanceStatusSnapshot(run.instance_id)
            raise self._fail(run, NotFoundError, str(e), axis="query") from e
        except TransientQueryError as e:
            raise self._fail(
                run,
                TransientQueryError,
                f"Status query for {run.instance_id} kept failing: {e}",
                axis="query",
            ) from e
        except QueryRejectedError as e:
            raise self._fail(
                run,
                QueryRejectedError,
                f"Status query for {run.instance_id} rejected: {e}",
                axis="query",
            ) from e
        run.seen = run.seen or snapshot.lifecycle is not LifecycleState.UNKNOWN
        return snapshot

    def _query_details(self, run: _Run) -> InstanceDetails:
        try:
            return self._retrying(run)(self._provider.describe_instance, run.instance_id)
        except NotFoundError as e:
            raise self._fail(run, NotFoundError, str(e), axis="query") from e
        except TransientQueryError as e:
            raise self._fail(
                run,
                TransientQueryError,
                f"Describing {run.instance_id} kept failing: {e}",
                axis="query",
            ) from e
        except QueryRejectedError as e:
            raise self._fail(
                run,
                QueryRejectedError,
                f"Describing {run.instance_id} rejected: {e}",
                axis="query",
            ) from e

    def _attach_volume(self, run: _Run) -> VolumeAttachment | None:
        volume = self._volume
        assert volume is not None
        self._transition(run, ReadinessState.VOLUME_ATTACHMENT)
        bound = log.bind(instance_id=run.instance_id, volume_id=volume.volume_id)

        try:
            state = self._retrying(run)(self._provider.describe_volume, volume.volume_id)
        except (TransientQueryError, QueryRejectedError, NotFoundError) as e:
            bound.warning("Could not query volume {volume_id}: {error}; skipping attach", volume_id=volume.volume_id, error=e)
            return None

        if state is not VolumeState.AVAILABLE:
            bound.warning(
                "Volume {volume_id} is {volume_state}; skipping attach",
                volume_id=volume.volume_id,
                volume_state=state,
            )
            return None

        try:
            self._provider.attach_volume(run.instance_id, volume.volume_id, volume.device)
        except AttachError as e:
            bound.warning("Attaching {volume_id} failed: {error}; continuing without it", volume_id=volume.volume_id, error=e)
            return None

        bound.info(
            "Attached {volume_id} to {instance_id} as {device}",
            volume_id=volume.volume_id,
            instance_id=run.instance_id,
            device=volume.device,
        )
        return volume

    def _log_state(self, run: _Run) -> Logger:
        snapshot = run.snapshot
        return log.bind(
            instance_id=run.instance_id,
            state=str(run.state),
            elapsed=round(self._elapsed(run), 3),
            lifecycle=str(snapshot.lifecycle) if snapshot else None,
            system=str(snapshot.system) if snapshot else None,
            instance=str(snapshot.instance) if snapshot else None,
        )


_AXIS_BY_STATE: dict[ReadinessState, str] = {
    ReadinessState.AWAITING_LIFECYCLE: "lifecycle",
    ReadinessState.AWAITING_SYSTEM_STATUS: "system",
    ReadinessState.AWAITING_INSTANCE_STATUS: "instance",
    ReadinessState.VOLUME_ATTACHMENT: "query",
    ReadinessState.READY: "query",
    ReadinessState.FAILED: "query",
}


def _log_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
    log.warning(
        "Transient provider error (attempt {attempt}): {error}. Waiting {delay:.1f}s...",
        attempt=retry_state.attempt_number,
        error=error,
        delay=delay,
    )
