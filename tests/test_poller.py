from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError
from conftest import FakeClock, InstantCancellation, ScriptedProvider

from sprout.constants import HealthStatus, LifecycleState, VolumeState
from sprout.core.exceptions import (
    AttachError,
    InvalidHandleError,
    LifecycleRegressionError,
    NotFoundError,
    PollCancelledError,
    QueryRejectedError,
    TimeoutError,
    TransientQueryError,
)
from sprout.poller import Cancellation, ReadinessPoller
from sprout.providers.aws import EC2Provider
from sprout.types import InstanceDetails, ReadinessState, VolumeAttachment, WaitPolicy

pytestmark = [pytest.mark.unit, pytest.mark.xdist_group("unit")]

PENDING = ("pending", None, None)
BOOTING = ("running", "initializing", "initializing")
SYSTEM_OK = ("running", "ok", "initializing")
HEALTHY = ("running", "ok", "ok")


def _poller(
    provider: ScriptedProvider,
    clock: FakeClock,
    cancellation: InstantCancellation,
    volume: VolumeAttachment | None = None,
    **policy: object,
) -> ReadinessPoller:
    return ReadinessPoller(
        provider,
        WaitPolicy(**{"poll_interval": 10, **policy}),  # type: ignore[arg-type]
        volume=volume,
        cancellation=cancellation,
        clock=clock,
    )


class TestHappyPath:
    def test_walks_every_state(self, clock, cancellation):
        provider = ScriptedProvider([PENDING, BOOTING, SYSTEM_OK, HEALTHY])
        ready = _poller(provider, clock, cancellation).wait("i-abc")

        assert ready.instance_id == "i-abc"
        assert ready.address == "203.0.113.10"
        assert ready.private_address == "10.0.0.10"
        assert ready.instance_type == "t3.micro"
        assert ready.volume is None
        assert provider.status_calls == 4
        assert cancellation.sleeps == [10, 10, 10]

    def test_healthy_first_snapshot_needs_one_query(self, clock, cancellation):
        provider = ScriptedProvider([HEALTHY])
        ready = _poller(provider, clock, cancellation).wait("i-abc")

        assert ready.instance_id == "i-abc"
        assert provider.status_calls == 1
        assert cancellation.sleeps == []

    def test_transitions_are_logged_in_order(self, clock, cancellation, log_records):
        provider = ScriptedProvider([PENDING, SYSTEM_OK, HEALTHY])
        _poller(provider, clock, cancellation).wait("i-abc")

        states = [r["extra"]["state"] for r in log_records if "->" in r["message"]]
        assert states == [
            ReadinessState.AWAITING_SYSTEM_STATUS,
            ReadinessState.AWAITING_INSTANCE_STATUS,
            ReadinessState.READY,
        ]

    def test_transition_log_carries_status_context(self, clock, cancellation, log_records):
        provider = ScriptedProvider([HEALTHY])
        _poller(provider, clock, cancellation).wait("i-abc")

        ready = next(r for r in log_records if r["extra"].get("state") == ReadinessState.READY)
        assert ready["level"].name == "INFO"
        assert ready["extra"]["instance_id"] == "i-abc"
        assert ready["extra"]["lifecycle"] == "running"
        assert ready["extra"]["system"] == "ok"
        assert ready["extra"]["instance"] == "ok"
        assert "elapsed" in ready["extra"]

    def test_falls_back_to_public_dns(self, clock, cancellation):
        details = InstanceDetails(instance_id="i-abc", instance_type="t3.micro", public_dns="ec2.example.com")
        provider = ScriptedProvider([HEALTHY], details=details)
        ready = _poller(provider, clock, cancellation).wait("i-abc")
        assert ready.address == "ec2.example.com"

    def test_poller_is_reusable(self, clock, cancellation):
        provider = ScriptedProvider([HEALTHY])
        poller = _poller(provider, clock, cancellation)
        assert poller.wait("i-one").instance_id == "i-one"
        assert poller.wait("i-two").instance_id == "i-two"

    @pytest.mark.parametrize("raw", [("rebooting", "mystery", None), (None, None, None)])
    def test_unrecognized_values_keep_waiting(self, clock, cancellation, raw):
        provider = ScriptedProvider([raw, HEALTHY])
        ready = _poller(provider, clock, cancellation).wait("i-abc")
        assert ready.instance_id == "i-abc"
        assert provider.status_calls == 2


class TestInvalidHandle:
    @pytest.mark.parametrize("instance_id", [None, "", "   "])
    def test_rejects_empty_id(self, clock, cancellation, instance_id):
        provider = ScriptedProvider([HEALTHY])
        with pytest.raises(InvalidHandleError) as exc_info:
            _poller(provider, clock, cancellation).wait(instance_id)

        assert exc_info.value.axis == "handle"
        assert exc_info.value.exit_code == 2
        assert provider.status_calls == 0


class TestRegression:
    def test_terminated_while_pending(self, clock, cancellation):
        provider = ScriptedProvider([PENDING, ("terminated", None, None)])
        with pytest.raises(LifecycleRegressionError) as exc_info:
            _poller(provider, clock, cancellation).wait("i-abc")

        err = exc_info.value
        assert err.axis == "lifecycle"
        assert err.state is ReadinessState.AWAITING_LIFECYCLE
        assert err.snapshot is not None
        assert err.snapshot.lifecycle is LifecycleState.TERMINATED
        assert provider.status_calls == 2

    def test_stopping_while_waiting_for_system_status(self, clock, cancellation):
        provider = ScriptedProvider([BOOTING, ("stopping", "ok", "ok")])
        with pytest.raises(LifecycleRegressionError) as exc_info:
            _poller(provider, clock, cancellation).wait("i-abc")

        assert exc_info.value.state is ReadinessState.AWAITING_SYSTEM_STATUS
        assert exc_info.value.exit_code == 5

    def test_shutting_down_while_waiting_for_instance_status(self, clock, cancellation):
        provider = ScriptedProvider([SYSTEM_OK, ("shutting-down", "ok", "ok")])
        with pytest.raises(LifecycleRegressionError) as exc_info:
            _poller(provider, clock, cancellation).wait("i-abc")
        assert exc_info.value.state is ReadinessState.AWAITING_INSTANCE_STATUS

    def test_regression_is_not_retried(self, clock, cancellation):
        provider = ScriptedProvider([("stopped", None, None)])
        with pytest.raises(LifecycleRegressionError):
            _poller(provider, clock, cancellation, max_attempts=10).wait("i-abc")
        assert provider.status_calls == 1
        assert cancellation.sleeps == []


class TestWaitPolicy:
    def test_max_attempts_bounds_queries(self, clock, cancellation):
        provider = ScriptedProvider([PENDING])
        with pytest.raises(TimeoutError) as exc_info:
            _poller(provider, clock, cancellation, max_attempts=3, timeout=None).wait("i-abc")

        assert provider.status_calls == 3
        assert exc_info.value.axis == "lifecycle"
        assert exc_info.value.state is ReadinessState.AWAITING_LIFECYCLE
        assert exc_info.value.exit_code == 4

    def test_timeout_names_system_axis(self, clock, cancellation):
        provider = ScriptedProvider([BOOTING])
        with pytest.raises(TimeoutError) as exc_info:
            _poller(provider, clock, cancellation, timeout=25).wait("i-abc")

        assert exc_info.value.axis == "system"
        assert exc_info.value.snapshot is not None
        assert exc_info.value.snapshot.system is HealthStatus.INITIALIZING

    def test_sleep_is_clipped_to_deadline(self, clock, cancellation):
        provider = ScriptedProvider([BOOTING])
        with pytest.raises(TimeoutError):
            _poller(provider, clock, cancellation, timeout=25).wait("i-abc")

        assert cancellation.sleeps == [10, 10, 5]
        assert provider.status_calls == 4

    def test_timeout_names_instance_axis(self, clock, cancellation):
        provider = ScriptedProvider([SYSTEM_OK])
        with pytest.raises(TimeoutError) as exc_info:
            _poller(provider, clock, cancellation, max_attempts=2).wait("i-abc")
        assert exc_info.value.axis == "instance"
        assert exc_info.value.state is ReadinessState.AWAITING_INSTANCE_STATUS

    def test_impaired_keeps_waiting_with_warning(self, clock, cancellation, log_records):
        provider = ScriptedProvider([("running", "ok", "impaired"), HEALTHY])
        ready = _poller(provider, clock, cancellation).wait("i-abc")

        assert ready.instance_id == "i-abc"
        warnings = [r for r in log_records if r["level"].name == "WARNING"]
        assert any("impaired" in r["message"] for r in warnings)

    def test_failure_is_logged_at_error(self, clock, cancellation, log_records):
        provider = ScriptedProvider([PENDING])
        with pytest.raises(TimeoutError):
            _poller(provider, clock, cancellation, max_attempts=1).wait("i-abc")

        errors = [r for r in log_records if r["level"].name == "ERROR"]
        assert errors
        assert errors[-1]["extra"]["state"] == ReadinessState.FAILED

    def test_default_policy_is_bounded(self):
        poller = ReadinessPoller(ScriptedProvider([HEALTHY]))
        assert poller.policy.bounded
        assert poller.policy.timeout == 900


class TestQueryErrors:
    def test_transient_error_is_retried(self, clock, cancellation):
        provider = ScriptedProvider([TransientQueryError("throttled"), HEALTHY])
        ready = _poller(provider, clock, cancellation).wait("i-abc")

        assert ready.instance_id == "i-abc"
        assert provider.status_calls == 2
        assert len(cancellation.sleeps) == 1

    def test_transient_errors_exhaust_retries(self, clock, cancellation):
        provider = ScriptedProvider([TransientQueryError("throttled")])
        with pytest.raises(TransientQueryError) as exc_info:
            _poller(provider, clock, cancellation, query_retries=3).wait("i-abc")

        assert provider.status_calls == 3
        assert exc_info.value.axis == "query"
        assert exc_info.value.exit_code == 7

    def test_retry_backoff_grows(self, clock, cancellation):
        provider = ScriptedProvider([TransientQueryError("throttled")])
        with pytest.raises(TransientQueryError):
            _poller(provider, clock, cancellation, query_retries=4, query_backoff=1).wait("i-abc")

        assert len(cancellation.sleeps) == 3
        assert cancellation.sleeps == sorted(cancellation.sleeps)

    def test_not_found_is_fatal_for_existing_instance(self, clock, cancellation):
        provider = ScriptedProvider([NotFoundError("no such instance")])
        with pytest.raises(NotFoundError) as exc_info:
            _poller(provider, clock, cancellation).wait("i-abc")

        assert provider.status_calls == 1
        assert exc_info.value.exit_code == 6
        assert exc_info.value.state is ReadinessState.AWAITING_LIFECYCLE

    def test_launched_instance_not_visible_yet(self, clock, cancellation, log_records):
        provider = ScriptedProvider([NotFoundError("InvalidInstanceID.NotFound"), PENDING, HEALTHY])
        ready = _poller(provider, clock, cancellation).wait("i-abc", launched=True)

        assert ready.instance_id == "i-abc"
        assert provider.status_calls == 3
        assert not any(r["level"].name == "ERROR" for r in log_records)

    def test_launched_instance_never_visible_times_out(self, clock, cancellation):
        provider = ScriptedProvider([NotFoundError("InvalidInstanceID.NotFound")])
        with pytest.raises(TimeoutError) as exc_info:
            _poller(provider, clock, cancellation, max_attempts=3).wait("i-abc", launched=True)

        assert provider.status_calls == 3
        assert exc_info.value.axis == "lifecycle"
        assert exc_info.value.snapshot.lifecycle is LifecycleState.UNKNOWN

    def test_launched_instance_vanishing_after_sighting_is_fatal(self, clock, cancellation):
        provider = ScriptedProvider([PENDING, NotFoundError("InvalidInstanceID.NotFound")])
        with pytest.raises(NotFoundError) as exc_info:
            _poller(provider, clock, cancellation).wait("i-abc", launched=True)

        assert provider.status_calls == 2
        assert exc_info.value.snapshot.lifecycle is LifecycleState.PENDING

    def test_rejected_status_query_fails_with_context(self, clock, cancellation, log_records):
        provider = ScriptedProvider([PENDING, QueryRejectedError("UnauthorizedOperation")])
        with pytest.raises(QueryRejectedError) as exc_info:
            _poller(provider, clock, cancellation).wait("i-abc")

        error = exc_info.value
        assert provider.status_calls == 2
        assert error.axis == "query"
        assert error.state is ReadinessState.AWAITING_LIFECYCLE
        assert error.snapshot.lifecycle is LifecycleState.PENDING
        assert error.exit_code == 11
        assert log_records[-1]["extra"]["state"] == ReadinessState.FAILED

    def test_rejected_detail_query_fails_with_context(self, clock, cancellation):
        provider = ScriptedProvider([HEALTHY])
        provider.describe_instance = MagicMock(side_effect=QueryRejectedError("UnauthorizedOperation"))
        with pytest.raises(QueryRejectedError) as exc_info:
            _poller(provider, clock, cancellation).wait("i-abc")

        assert exc_info.value.axis == "query"
        assert exc_info.value.snapshot.healthy

    def test_aws_permission_error_fails_through_poller(self, clock, cancellation):
        ec2 = MagicMock()
        ec2.describe_instance_status.side_effect = ClientError(
            {"Error": {"Code": "UnauthorizedOperation", "Message": "not allowed"}},
            "DescribeInstanceStatus",
        )
        poller = ReadinessPoller(EC2Provider(client=ec2), WaitPolicy(poll_interval=10), cancellation=cancellation, clock=clock)
        with pytest.raises(QueryRejectedError, match="UnauthorizedOperation") as exc_info:
            poller.wait("i-abc")

        assert exc_info.value.state is ReadinessState.AWAITING_LIFECYCLE
        assert ec2.describe_instance_status.call_count == 1


class TestCancellation:
    def test_cancel_during_interval(self, clock):
        cancellation = InstantCancellation(clock, cancel_after=2)
        provider = ScriptedProvider([PENDING])
        with pytest.raises(PollCancelledError) as exc_info:
            _poller(provider, clock, cancellation).wait("i-abc")

        assert provider.status_calls == 2
        assert exc_info.value.exit_code == 8
        assert exc_info.value.state is ReadinessState.AWAITING_LIFECYCLE

    def test_cancel_during_retry_backoff(self, clock):
        cancellation = InstantCancellation(clock, cancel_after=1)
        provider = ScriptedProvider([TransientQueryError("throttled")])
        with pytest.raises(PollCancelledError):
            _poller(provider, clock, cancellation).wait("i-abc")
        assert provider.status_calls == 1

    def test_real_token_wakes_immediately(self):
        token = Cancellation()
        token.cancel()
        assert token.cancelled
        assert token.wait(60) is True


class TestVolumeAttachment:
    volume = VolumeAttachment("vol-123", "/dev/sdf")

    def test_attaches_available_volume(self, clock, cancellation):
        provider = ScriptedProvider([HEALTHY])
        ready = _poller(provider, clock, cancellation, volume=self.volume).wait("i-abc")

        assert ready.volume == self.volume
        assert provider.attach_calls == [("i-abc", "vol-123", "/dev/sdf")]

    def test_attach_happens_after_health_checks(self, clock, cancellation, log_records):
        provider = ScriptedProvider([SYSTEM_OK, HEALTHY])
        _poller(provider, clock, cancellation, volume=self.volume).wait("i-abc")

        states = [r["extra"]["state"] for r in log_records if "->" in r["message"]]
        assert states[-2:] == [ReadinessState.VOLUME_ATTACHMENT, ReadinessState.READY]

    @pytest.mark.parametrize(
        "state",
        [VolumeState.IN_USE, VolumeState.MISSING, VolumeState.UNAVAILABLE],
    )
    def test_skips_unattachable_volume(self, clock, cancellation, log_records, state):
        provider = ScriptedProvider([HEALTHY], volume_state=state)
        ready = _poller(provider, clock, cancellation, volume=self.volume).wait("i-abc")

        assert ready.volume is None
        assert provider.attach_calls == []
        assert any(r["level"].name == "WARNING" and "vol-123" in r["message"] for r in log_records)

    def test_attach_failure_is_downgraded(self, clock, cancellation):
        provider = ScriptedProvider([HEALTHY], attach_error=AttachError("IncorrectState"))
        ready = _poller(provider, clock, cancellation, volume=self.volume).wait("i-abc")

        assert ready.volume is None
        assert len(provider.attach_calls) == 1

    def test_volume_query_failure_is_downgraded(self, clock, cancellation):
        provider = ScriptedProvider([HEALTHY], volume_state=TransientQueryError("throttled"))
        ready = _poller(provider, clock, cancellation, volume=self.volume, query_retries=2).wait("i-abc")

        assert ready.volume is None
        assert provider.volume_calls == ["vol-123", "vol-123"]

    def test_rejected_volume_query_is_downgraded(self, clock, cancellation, log_records):
        provider = ScriptedProvider([HEALTHY], volume_state=QueryRejectedError("UnauthorizedOperation"))
        ready = _poller(provider, clock, cancellation, volume=self.volume).wait("i-abc")

        assert ready.volume is None
        assert provider.volume_calls == ["vol-123"]
        assert provider.attach_calls == []
        assert any(r["level"].name == "WARNING" and "vol-123" in r["message"] for r in log_records)

    def test_aws_volume_permission_error_keeps_instance(self, clock, cancellation, log_records):
        ec2 = MagicMock()
        ec2.describe_instance_status.return_value = {
            "InstanceStatuses": [
                {
                    "InstanceState": {"Name": "running"},
                    "SystemStatus": {"Status": "ok"},
                    "InstanceStatus": {"Status": "ok"},
                }
            ]
        }
        ec2.describe_instances.return_value = {
            "Reservations": [{"Instances": [{"InstanceId": "i-abc", "InstanceType": "t3.micro", "PublicIpAddress": "203.0.113.9"}]}]
        }
        ec2.describe_volumes.side_effect = ClientError(
            {"Error": {"Code": "UnauthorizedOperation", "Message": "not allowed"}},
            "DescribeVolumes",
        )
        poller = ReadinessPoller(
            EC2Provider(client=ec2),
            WaitPolicy(poll_interval=10),
            volume=self.volume,
            cancellation=cancellation,
            clock=clock,
        )
        ready = poller.wait("i-abc")

        assert ready.address == "203.0.113.9"
        assert ready.volume is None
        ec2.attach_volume.assert_not_called()
        assert not any(r["level"].name == "ERROR" for r in log_records)

    def test_no_volume_means_no_volume_calls(self, clock, cancellation):
        provider = ScriptedProvider([HEALTHY])
        _poller(provider, clock, cancellation).wait("i-abc")
        assert provider.volume_calls == []
        assert provider.attach_calls == []
