"""Tests for the apply executor and the retry policy."""

import asyncio
import random
import threading
import time

import pytest

from converge.errors import (
    ApplyError,
    ProviderError,
    StalePlanError,
    StateLockedError,
    TransientProviderError,
)
from converge.pipeline.executor import Executor
from converge.pipeline.retry import RetryPolicy
from converge.pipeline.structures import ChangeStatus
from converge.planning.changes import Plan
from converge.providers.local import LocalProvider

from conftest import BASE_CONFIG


class RecordingObserver:
    """Collects executor callbacks in the order they arrive."""

    def __init__(self):
        self.events = []
        self.on_complete = None

    def on_apply_start(self, total):
        self.events.append(("start", total))

    def on_change_start(self, address, action):
        self.events.append(("begin", address, action))

    def on_change_complete(self, address, action, elapsed):
        self.events.append(("done", address, action))
        if self.on_complete:
            self.on_complete(address)

    def on_change_failed(self, address, action, error):
        self.events.append(("failed", address, error))

    def on_change_skipped(self, address, action, reason):
        self.events.append(("skipped", address, reason))

    def on_retry(self, address, attempt, delay, error):
        self.events.append(("retry", address, attempt))

    def on_log(self, message, is_error=False):
        self.events.append(("log", message))

    def index(self, kind, address):
        for i, event in enumerate(self.events):
            if event[0] == kind and event[1] == address:
                return i
        raise AssertionError(f"no {kind} event for {address}")


class FlakyProvider(LocalProvider):
    """Fails the first N creates of selected types with a transient error."""

    def __init__(self, *args, failures=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.failures = dict(failures or {})
        self._failures_lock = threading.Lock()

    def create(self, resource_type, attributes):
        with self._failures_lock:
            remaining = self.failures.get(resource_type, 0)
            if remaining:
                self.failures[resource_type] = remaining - 1
        if remaining:
            raise TransientProviderError(f"{resource_type} create throttled")
        return super().create(resource_type, attributes)


class CountingProvider(LocalProvider):
    """Records how many creates run at the same time."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.in_flight = 0
        self.max_in_flight = 0
        self._count_lock = threading.Lock()

    def create(self, resource_type, attributes):
        with self._count_lock:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            time.sleep(0.05)
            return super().create(resource_type, attributes)
        finally:
            with self._count_lock:
                self.in_flight -= 1


def provider_of(cls, tmp_path, schema_file, **kwargs):
    return cls(
        "test",
        store_file=tmp_path / "providers" / "test.json",
        schema_file=schema_file,
        region="eu-test-1",
        seed=7,
        **kwargs,
    )


FLEET_CONFIG = """
resource:
  test_instance:
    fleet:
      count: 6
      name: "node-${count.index}"
"""


class TestApply:
    def test_initial_apply_creates_everything(self, engine):
        result = engine.converge()

        assert result.complete
        assert result.status == "succeeded"
        assert result.count(ChangeStatus.APPLIED) == 4
        assert [entry.address for entry in engine.state.list()] == [
            "test_instance.app",
            "test_network.main",
            "test_subnet.private[0]",
            "test_subnet.private[1]",
        ]

    def test_computed_values_flow_into_dependents(self, engine):
        engine.converge()

        network = engine.state.get("test_network.main")
        subnet = engine.state.get("test_subnet.private[1]")
        instance = engine.state.get("test_instance.app")

        assert network.id.startswith("net-")
        assert network.attributes["arn"] == f"arn:test:eu-test-1:network/{network.id}"
        assert subnet.attributes["network_id"] == network.id
        assert subnet.attributes["zone"] == "eu-test-1b"
        assert subnet.dependencies == ["data.test_zones.available", "test_network.main"]
        assert instance.attributes["subnet_id"] == engine.state.get("test_subnet.private[0]").id
        assert instance.attributes["hostname"] == "app-dev.eu-test-1.internal"

    def test_outputs_are_written(self, engine):
        engine.converge()

        outputs = engine.state.outputs()
        network = engine.state.get("test_network.main")
        assert outputs["network_arn"] == {"value": network.attributes["arn"], "sensitive": False}
        assert outputs["subnet_ids"]["value"] == [
            engine.state.get("test_subnet.private[0]").id,
            engine.state.get("test_subnet.private[1]").id,
        ]

    def test_changes_start_after_their_dependencies(self, engine):
        observer = RecordingObserver()

        engine.apply(engine.plan(), observer=observer)

        assert observer.events[0] == ("start", 4)
        assert observer.index("done", "test_network.main") < observer.index("begin", "test_subnet.private[0]")
        assert observer.index("done", "test_subnet.private[0]") < observer.index("begin", "test_instance.app")
        assert observer.index("done", "test_subnet.private[1]") < observer.index("begin", "test_instance.app")

    def test_update_in_place_keeps_the_object(self, engine):
        engine.converge()
        before = engine.state.get("test_instance.app")

        result = engine.converge({"env": "prod"})

        after = engine.state.get("test_instance.app")
        assert result.complete
        assert after.id == before.id
        assert after.attributes["name"] == "app-prod"
        assert engine.state.get("test_network.main").attributes["tags"] == {"env": "prod"}

    def test_replacement_cascade(self, engine):
        engine.converge()
        old_network = engine.state.get("test_network.main").id

        result = engine.converge({"network_cidr": "10.1.0.0/16"})

        assert result.complete
        network = engine.state.get("test_network.main")
        assert network.id != old_network
        assert network.attributes["cidr"] == "10.1.0.0/16"
        assert engine.state.get("test_subnet.private[0]").attributes["network_id"] == network.id
        assert engine.state.get("test_subnet.private[0]").attributes["cidr"] == "10.1.0.0/24"
        # Old objects are gone remotely: one network, two subnets, one instance
        assert len(engine.provider.objects()) == 4
        assert not engine.plan({"network_cidr": "10.1.0.0/16"}).has_changes

    def test_shrinking_count_deletes_the_instance(self, engine):
        engine.converge()
        removed = engine.state.get("test_subnet.private[1]").id

        engine.converge({"zone_count": "1"})

        assert engine.state.get("test_subnet.private[1]") is None
        assert removed not in engine.provider.objects()
        assert len(engine.state.outputs()["subnet_ids"]["value"]) == 1

    def test_destroy_empties_state_and_outputs(self, engine):
        engine.converge()

        result = engine.converge(destroy=True)

        assert result.complete
        assert engine.state.list() == []
        assert engine.state.outputs() == {}
        assert engine.provider.objects() == {}

    def test_empty_plan(self, engine):
        engine.converge()

        result = engine.converge()

        assert result.results == []
        assert result.complete

    def test_saved_plan_can_be_applied(self, engine, tmp_path):
        path = tmp_path / "plan.json"
        engine.plan().save(path)

        result = engine.apply(Plan.load(path))

        assert result.complete
        assert len(engine.state.list()) == 4

    def test_targeted_apply_leaves_outputs_alone(self, engine):
        engine.converge()
        outputs = engine.state.outputs()

        engine.converge({"env": "prod"}, targets=["test_network.main"])

        assert engine.state.get("test_instance.app").attributes["name"] == "app-dev"
        assert engine.state.outputs() == outputs


class TestParallelism:
    @pytest.mark.parametrize("parallelism", [1, 2])
    def test_in_flight_calls_are_bounded(self, engine, config_dir, registry, tmp_path, schema_file, write_config, parallelism):
        write_config(config_dir, FLEET_CONFIG)
        counting = provider_of(CountingProvider, tmp_path, schema_file)
        registry.register("test", counting)

        result = engine.converge(parallelism=parallelism)

        assert result.count(ChangeStatus.APPLIED) == 6
        assert 1 <= counting.max_in_flight <= parallelism

    def test_parallelism_must_be_positive(self, engine):
        with pytest.raises(ApplyError, match="parallelism"):
            engine.apply(engine.plan(), parallelism=0)


class TestFailures:
    def test_transient_failures_are_retried(self, engine, registry, tmp_path, schema_file):
        registry.register("test", provider_of(FlakyProvider, tmp_path, schema_file, failures={"test_network": 2}))
        observer = RecordingObserver()

        result = engine.apply(engine.plan(), observer=observer)

        assert result.complete
        network = next(r for r in result.results if r.address == "test_network.main")
        assert network.attempts == 3
        retries = [event for event in observer.events if event[0] == "retry"]
        assert retries == [("retry", "test_network.main", 1), ("retry", "test_network.main", 2)]

    def test_exhausted_retries_fail_and_skip_dependents(self, engine, registry, tmp_path, schema_file):
        registry.register("test", provider_of(FlakyProvider, tmp_path, schema_file, failures={"test_subnet": 100}))

        result = engine.apply(engine.plan(), retry=RetryPolicy(max_attempts=2, base_delay=0, jitter=0))

        statuses = {r.address: r.status for r in result.results}
        assert statuses == {
            "test_network.main": ChangeStatus.APPLIED,
            "test_subnet.private[0]": ChangeStatus.FAILED,
            "test_subnet.private[1]": ChangeStatus.FAILED,
            "test_instance.app": ChangeStatus.SKIPPED,
        }
        app = next(r for r in result.results if r.address == "test_instance.app")
        assert app.error == "dependency test_subnet.private[0] did not complete"
        failed = next(r for r in result.results if r.address == "test_subnet.private[0]")
        assert "TransientProviderError" in failed.error
        assert result.status == "incomplete"

        # Partial progress is kept; outputs wait for a complete run
        assert [entry.address for entry in engine.state.list()] == ["test_network.main"]
        assert engine.state.outputs() == {}

    def test_next_plan_resumes_after_a_partial_apply(self, engine, registry, tmp_path, schema_file):
        flaky = provider_of(FlakyProvider, tmp_path, schema_file, failures={"test_subnet": 1})
        registry.register("test", flaky)
        engine.apply(engine.plan(), retry=RetryPolicy(max_attempts=1))

        plan = engine.plan()

        assert plan.change_for("test_network.main").action.value == "no-op"
        assert engine.apply(plan).complete
        assert len(engine.state.list()) == 4

    def test_permanent_errors_are_not_retried(self, engine, registry, tmp_path, schema_file):
        class Broken(LocalProvider):
            def create(self, resource_type, attributes):
                raise ProviderError(f"{resource_type} quota exceeded")

        registry.register("test", provider_of(Broken, tmp_path, schema_file))

        result = engine.converge()

        network = next(r for r in result.results if r.address == "test_network.main")
        assert network.status == ChangeStatus.FAILED
        assert network.attempts == 0
        assert "quota exceeded" in network.error

    def test_timeouts_fail_the_change(self, engine, registry, tmp_path, schema_file):
        registry.register("test", provider_of(LocalProvider, tmp_path, schema_file, latency=0.5))

        result = engine.apply(engine.plan(), call_timeout=0.05)

        network = next(r for r in result.results if r.address == "test_network.main")
        assert network.status == ChangeStatus.FAILED
        assert "timed out" in network.error

    def test_unexpected_provider_errors_fail_only_their_change(self, engine, config_dir, registry, tmp_path, schema_file, write_config):
        class DiskFull(LocalProvider):
            def create(self, resource_type, attributes):
                if attributes.get("name") == "node-1":
                    raise OSError("disk full")
                return super().create(resource_type, attributes)

        write_config(config_dir, FLEET_CONFIG)
        registry.register("test", provider_of(DiskFull, tmp_path, schema_file))

        result = engine.converge()

        failed = next(r for r in result.results if r.address == "test_instance.fleet[1]")
        assert failed.status == ChangeStatus.FAILED
        assert failed.error == "OSError: disk full"
        assert result.count(ChangeStatus.APPLIED) == 5
        assert result.status == "incomplete"
        assert engine.state.journal()[0]["status"] == "incomplete"
        assert engine.state.get("test_instance.fleet[1]") is None


LIFECYCLE_ANCHOR = '      tags:\n        env: "${var.env}"\n'
CBD_CONFIG = BASE_CONFIG.replace(
    LIFECYCLE_ANCHOR, LIFECYCLE_ANCHOR + "      lifecycle:\n        create_before_destroy: true\n"
)


class RecordingProvider(LocalProvider):
    """Logs provider calls; deletes of ``failing_type`` raise a permanent error."""

    def __init__(self, *args, failing_type=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.failing_type = failing_type
        self.calls = []
        self._calls_lock = threading.Lock()

    def create(self, resource_type, attributes):
        created = super().create(resource_type, attributes)
        with self._calls_lock:
            self.calls.append(("create", resource_type, created["id"]))
        return created

    def delete(self, resource_type, object_id, attributes):
        if resource_type == self.failing_type:
            raise ProviderError(f"{resource_type} {object_id} is still in use")
        super().delete(resource_type, object_id, attributes)
        with self._calls_lock:
            self.calls.append(("delete", resource_type, object_id))


class TestCreateBeforeDestroy:
    @pytest.fixture
    def cbd_engine(self, engine, config_dir, write_config):
        write_config(config_dir, CBD_CONFIG)
        engine.converge()
        return engine

    def test_replacement_is_created_before_the_old_object_goes(self, cbd_engine, registry, tmp_path, schema_file):
        engine = cbd_engine
        old_network = engine.state.get("test_network.main").id
        recorder = provider_of(RecordingProvider, tmp_path, schema_file)
        registry.register("test", recorder)

        plan = engine.plan({"network_cidr": "10.1.0.0/16"})
        assert plan.change_for("test_network.main").create_before_destroy
        result = engine.apply(plan)

        assert result.complete
        network = engine.state.get("test_network.main")
        assert network.id != old_network
        assert engine.state.get("test_subnet.private[0]").attributes["network_id"] == network.id
        assert old_network not in engine.provider.objects()
        assert len(engine.provider.objects()) == 4
        assert engine.state.deposed() == []

        calls = recorder.calls
        old_gone = calls.index(("delete", "test_network", old_network))
        assert calls.index(("create", "test_network", network.id)) < old_gone
        for index in (0, 1):
            subnet = engine.state.get(f"test_subnet.private[{index}]").id
            assert calls.index(("create", "test_subnet", subnet)) < old_gone
        assert not engine.plan({"network_cidr": "10.1.0.0/16"}).has_changes

    def test_failed_delete_keeps_the_old_object_in_state(self, cbd_engine, registry, tmp_path, schema_file):
        engine = cbd_engine
        old_network = engine.state.get("test_network.main").id
        registry.register(
            "test", provider_of(RecordingProvider, tmp_path, schema_file, failing_type="test_network")
        )

        result = engine.converge({"network_cidr": "10.1.0.0/16"})

        network_result = next(r for r in result.results if r.address == "test_network.main")
        assert network_result.status == ChangeStatus.FAILED
        assert "still in use" in network_result.error
        assert result.status == "incomplete"

        # Both objects exist remotely and both are tracked
        new_network = engine.state.get("test_network.main").id
        assert new_network != old_network
        assert {old_network, new_network} <= set(engine.provider.objects())
        deposed = engine.state.deposed()
        assert [(entry.address, entry.id) for entry in deposed] == [("test_network.main", old_network)]
        key = deposed[0].deposed

        plan = engine.plan({"network_cidr": "10.1.0.0/16"})
        cleanup = [change for change in plan.changes if change.deposed]
        assert len(cleanup) == 1
        assert cleanup[0].action.value == "delete"
        assert cleanup[0].deposed == key
        assert cleanup[0].label == f"test_network.main (deposed {key})"
        assert cleanup[0].before["id"] == old_network
        assert plan.change_for("test_network.main").action.value == "no-op"

        registry.register("test", provider_of(LocalProvider, tmp_path, schema_file))
        result = engine.apply(plan)

        assert result.complete
        assert [r.address for r in result.results] == [f"test_network.main (deposed {key})"]
        assert engine.state.deposed() == []
        assert old_network not in engine.provider.objects()
        assert engine.state.get("test_network.main").id == new_network
        assert not engine.plan({"network_cidr": "10.1.0.0/16"}).has_changes

    def test_destroy_also_removes_deposed_objects(self, cbd_engine, registry, tmp_path, schema_file):
        engine = cbd_engine
        registry.register(
            "test", provider_of(RecordingProvider, tmp_path, schema_file, failing_type="test_network")
        )
        engine.converge({"network_cidr": "10.1.0.0/16"})
        assert len(engine.state.deposed()) == 1
        registry.register("test", provider_of(LocalProvider, tmp_path, schema_file))

        result = engine.converge({"network_cidr": "10.1.0.0/16"}, destroy=True)

        assert result.complete
        assert engine.state.list() == []
        assert engine.state.deposed() == []
        assert engine.provider.objects() == {}


class TestCancellation:
    def test_cancel_stops_scheduling(self, engine):
        observer = RecordingObserver()
        executor = Executor(
            engine.plan(),
            engine.state,
            engine.registry,
            parallelism=1,
            retry=RetryPolicy(base_delay=0, jitter=0),
            observer=observer,
        )
        observer.on_complete = lambda address: executor.cancel()

        result = executor.run()

        assert executor.cancelled
        assert result.status == "cancelled"
        assert result.count(ChangeStatus.APPLIED) == 1
        assert result.count(ChangeStatus.CANCELLED) == 3
        assert [entry.address for entry in engine.state.list()] == ["test_network.main"]


class TestSafety:
    def test_stale_plan_is_refused(self, engine):
        plan = engine.plan()
        engine.state.set_outputs({})

        with pytest.raises(StalePlanError, match="serial"):
            engine.apply(plan)

    def test_plan_from_other_lineage_is_refused(self, engine):
        plan = engine.plan()
        plan.state_lineage = "another-lineage"

        with pytest.raises(StalePlanError, match="lineage"):
            engine.apply(plan)

    def test_locked_state_is_refused(self, engine):
        lock_id = engine.state.acquire_lock("someone@elsewhere:1")
        try:
            with pytest.raises(StateLockedError) as exc:
                engine.apply(engine.plan())
            assert exc.value.holder == "someone@elsewhere:1"
        finally:
            engine.state.release_lock(lock_id)

    def test_lock_is_released_after_apply(self, engine):
        engine.converge()
        assert engine.state.current_lock() is None

    def test_journal_records_the_run(self, engine):
        result = engine.converge()

        run = engine.state.journal()[0]
        assert run["id"] == result.run_id
        assert run["kind"] == "apply"
        assert run["status"] == "succeeded"
        applied = {event["address"] for event in run["events"] if event["status"] == "applied"}
        assert applied == {
            "test_network.main",
            "test_subnet.private[0]",
            "test_subnet.private[1]",
            "test_instance.app",
        }

    def test_aborted_run_is_closed_in_the_journal(self, engine):
        observer = RecordingObserver()

        def explode(address):
            raise RuntimeError("observer broke")

        observer.on_complete = explode

        with pytest.raises(RuntimeError, match="observer broke"):
            engine.apply(engine.plan(), observer=observer)

        assert engine.state.journal()[0]["status"] == "failed"
        assert engine.state.current_lock() is None


class TestRetryPolicy:
    def test_delay_doubles_up_to_the_cap(self):
        policy = RetryPolicy(base_delay=0.5, max_delay=4, jitter=0)
        assert [policy.delay(n) for n in range(1, 6)] == [0.5, 1.0, 2.0, 4, 4]

    def test_jitter_stays_within_bounds(self):
        policy = RetryPolicy(base_delay=1, jitter=0.25, rng=random.Random(3))
        for _ in range(50):
            assert 0.75 <= policy.delay(1) <= 1.25

    def test_from_config(self):
        policy = RetryPolicy.from_config({"max_attempts": 0, "base_delay": 2})
        assert policy.max_attempts == 1
        assert policy.base_delay == 2.0
        assert policy.max_delay == 20.0

    def test_run_retries_transient_errors_only(self):
        policy = RetryPolicy(max_attempts=3, base_delay=0, jitter=0)
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise TransientProviderError("busy")
            return "ok"

        assert asyncio.run(policy.run(flaky)) == ("ok", 3)

        async def broken():
            raise ProviderError("bad request")

        with pytest.raises(ProviderError):
            asyncio.run(policy.run(broken))

    def test_run_gives_up(self):
        policy = RetryPolicy(max_attempts=2, base_delay=0, jitter=0)
        seen = []

        async def always_busy():
            raise TransientProviderError("busy")

        with pytest.raises(TransientProviderError):
            asyncio.run(policy.run(always_busy, lambda attempt, delay, error: seen.append(attempt)))
        assert seen == [1]
