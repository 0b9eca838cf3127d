"""Apply executor: walk a plan in dependency order with bounded parallelism.

Every change is split into at most two steps:

- a *create* step (create, update, data read, or the create half of a replace)
- a *destroy* step (delete, or the destroy half of a replace)

Create steps wait for the create steps of the blocks they depend on now.
Destroy steps wait for the destroy steps of everything that depended on
them when they were last applied. A non-create_before_destroy replace
destroys first and then creates; a create_before_destroy replace creates
first and removes the old object once its dependents moved over. Until
that delete succeeds the old object stays in state as a deposed entry,
which the next plan deletes.

Steps run as asyncio tasks. A semaphore bounds how many provider calls are
in flight, and the blocking provider calls run in worker threads. The
state store is written after every completed step, so an interrupted run
leaves the state consistent with what was actually done remotely.
"""

import asyncio
import platform
import signal
import time
from dataclasses import dataclass, field
from typing import Any

from converge.errors import ApplyError, ConvergeError, StalePlanError
from converge.events import ApplyObserver
from converge.expressions.evaluator import evaluate_value
from converge.expressions.values import contains_unknown
from converge.graph.analyzer import GraphAnalyzer
from converge.graph.expansion import Instance
from converge.graph.types import ResourceAddress
from converge.graph.values import InstanceValues
from converge.planning.changes import Action, Plan, ResourceChange
from converge.planning.scope import ValueScope
from converge.providers.registry import ProviderRegistry
from converge.state.store import StateEntry, StateStore
from converge.utils.logging import logger

from .retry import RetryPolicy
from .structures import ApplyResult, ChangeResult, ChangeStatus

IS_WINDOWS = platform.system() == "Windows"

CREATE_STEP = "create"
DESTROY_STEP = "destroy"


@dataclass
class _Step:
    id: str
    kind: str
    change: ResourceChange
    waits: set[str] = field(default_factory=set)
    done: asyncio.Event | None = None
    ok: bool = False


class Executor:
    """Applies a Plan against providers and records the outcome in state."""

    def __init__(
        self,
        plan: Plan,
        state: StateStore,
        registry: ProviderRegistry,
        parallelism: int = 10,
        retry: RetryPolicy | None = None,
        call_timeout: float = 300,
        observer: ApplyObserver | None = None,
        handle_signals: bool = False,
    ):
        if parallelism < 1:
            raise ApplyError(f"parallelism must be at least 1 (got {parallelism})")
        self.plan = plan
        self.state = state
        self.registry = registry
        self.parallelism = parallelism
        self.retry = retry or RetryPolicy()
        self.call_timeout = call_timeout
        self.observer = observer
        self.handle_signals = handle_signals

        self.instances = InstanceValues()
        self.scope = ValueScope(
            plan.variables, plan.locals, self.instances, plan.root, cache_locals=False
        )
        self._changes = [change for change in plan.changes if change.is_change]
        self._steps = self._build_steps(self._changes)
        # Keyed by change label, so a deposed delete never collides with its address
        self._results: dict[str, ChangeResult] = {}
        self._pending_steps: dict[str, int] = {}
        self._started: dict[str, float] = {}
        self._deposed_keys: dict[str, str] = {}
        self._cancelled = False
        self._run_id: int | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        """Stop scheduling new changes. In-flight provider calls finish."""
        if not self._cancelled:
            logger.warning("Cancellation requested; waiting for in-flight changes")
            self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def run(self) -> ApplyResult:
        """Apply the plan synchronously (drives the event loop)."""
        return asyncio.run(self.run_async())

    async def run_async(self) -> ApplyResult:
        self._check_fresh()
        kind = "destroy" if self.plan.destroy else "apply"
        with self.state.locked(operation=kind):
            return await self._run_locked(kind)

    # ------------------------------------------------------------------
    # Step graph
    # ------------------------------------------------------------------

    @staticmethod
    def _build_steps(changes: list[ResourceChange]) -> dict[str, _Step]:
        steps: dict[str, _Step] = {}
        creates_by_block: dict[str, list[str]] = {}

        for change in changes:
            if change.action != Action.DELETE:
                step = _Step(f"{CREATE_STEP}:{change.label}", CREATE_STEP, change)
                steps[step.id] = step
                creates_by_block.setdefault(change.block, []).append(step.id)
            if change.action in (Action.DELETE, Action.REPLACE):
                step = _Step(f"{DESTROY_STEP}:{change.label}", DESTROY_STEP, change)
                steps[step.id] = step

        for step in steps.values():
            change = step.change
            if step.kind == CREATE_STEP:
                for block in change.dependencies:
                    if block != change.block:
                        step.waits.update(creates_by_block.get(block, []))
                if change.action == Action.REPLACE and not change.create_before_destroy:
                    step.waits.add(f"{DESTROY_STEP}:{change.label}")
                continue

            moves_dependents = (
                change.action == Action.DELETE or change.create_before_destroy
            )
            for other in changes:
                if other is change or change.block not in other.prior_dependencies:
                    continue
                if other.block == change.block:
                    continue
                if other.action in (Action.DELETE, Action.REPLACE):
                    step.waits.add(f"{DESTROY_STEP}:{other.label}")
                if moves_dependents and other.action != Action.DELETE:
                    step.waits.add(f"{CREATE_STEP}:{other.label}")
            if change.action == Action.REPLACE and change.create_before_destroy:
                step.waits.add(f"{CREATE_STEP}:{change.label}")

        graph = {
            "nodes": [{"id": step_id} for step_id in steps],
            "edges": [
                {"source": dep, "target": step.id}
                for step in steps.values()
                for dep in step.waits
            ],
        }
        cycles = GraphAnalyzer().detect_cycles(graph)
        if cycles:
            rendered = "; ".join(" -> ".join(cycle["nodes"]) for cycle in cycles)
            raise ApplyError(f"plan cannot be ordered: {rendered}")
        return steps

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def _check_fresh(self) -> None:
        serial = self.state.serial()
        lineage = self.state.lineage()
        if self.plan.state_lineage and self.plan.state_lineage != lineage:
            raise StalePlanError(
                f"plan was made for state lineage {self.plan.state_lineage}, "
                f"but the current state has lineage {lineage}"
            )
        if self.plan.state_serial != serial:
            raise StalePlanError(
                f"plan was made against state serial {self.plan.state_serial}, "
                f"but the state is now at serial {serial}; plan again"
            )

    async def _run_locked(self, kind: str) -> ApplyResult:
        start = time.time()
        self._seed_instances()
        self._run_id = self.state.start_run(kind, summary=self.plan.summary())
        for change in self._changes:
            self._results[change.label] = ChangeResult(
                change.label, change.action.value, ChangeStatus.PENDING
            )
            self._pending_steps[change.label] = sum(
                1 for step in self._steps.values() if step.change is change
            )

        logger.info("Applying {} change(s) with parallelism {}", len(self._changes), self.parallelism)
        if self.observer:
            self.observer.on_apply_start(len(self._changes))

        loop = asyncio.get_running_loop()
        installed = self._install_signal_handlers(loop)
        semaphore = asyncio.Semaphore(self.parallelism)
        try:
            for step in self._steps.values():
                step.done = asyncio.Event()
            await asyncio.gather(*(self._run_step(step, semaphore) for step in self._steps.values()))

            result = ApplyResult(
                results=[self._results[change.label] for change in self._changes],
                elapsed=time.time() - start,
                cancelled=self._cancelled,
                run_id=self._run_id,
            )
            if result.complete:
                self._write_outputs()
        except BaseException:
            logger.error("Apply run {} aborted", self._run_id)
            self.state.finish_run(self._run_id, "failed")
            raise
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)

        self.state.finish_run(self._run_id, result.status, result.summary())
        logger.info("Apply {} in {:.1f}s: {}", result.status, result.elapsed, result.summary())
        return result

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> list[int]:
        if not self.handle_signals or IS_WINDOWS:
            return []
        installed = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self.cancel)
            installed.append(sig)
        return installed

    def _seed_instances(self) -> None:
        """Known values of every instance before anything is applied."""
        changes = {change.address: change for change in self.plan.changes if not change.deposed}
        for block, expansion in self.plan.expansions.items():
            self.instances.set_expansion(block, expansion["kind"], expansion["keys"])
            for address in self.instances.addresses(block):
                key = str(address)
                change = changes.get(key)
                if key in self.plan.data:
                    self.instances.set(address, self.plan.data[key])
                elif change is not None and change.action == Action.NO_OP:
                    self.instances.set(address, dict(change.after or {}))
                elif change is None or change.action == Action.UPDATE:
                    entry = self.state.get(key)
                    if entry is not None:
                        self.instances.set(address, dict(entry.attributes))

    async def _run_step(self, step: _Step, semaphore: asyncio.Semaphore) -> None:
        try:
            for dep in step.waits:
                await self._steps[dep].done.wait()
            if self._cancelled:
                self._mark_skipped(step, ChangeStatus.CANCELLED, "cancelled before start")
                return
            blocked = sorted(dep for dep in step.waits if not self._steps[dep].ok)
            if blocked:
                blocker = self._steps[blocked[0]].change.label
                self._mark_skipped(step, ChangeStatus.SKIPPED, f"dependency {blocker} did not complete")
                return
            async with semaphore:
                if self._cancelled:
                    self._mark_skipped(step, ChangeStatus.CANCELLED, "cancelled before start")
                    return
                await self._execute(step)
        finally:
            step.done.set()

    async def _execute(self, step: _Step) -> None:
        change = step.change
        result = self._results[change.label]
        if result.status == ChangeStatus.PENDING:
            result.status = ChangeStatus.RUNNING
            self._started[change.label] = time.time()
            self._record(change, "running", 1, step.kind)
            if self.observer:
                self.observer.on_change_start(change.label, change.action.value)

        def on_retry(attempt: int, delay: float, error: Exception) -> None:
            self._record(change, "retrying", attempt, str(error))
            if self.observer:
                self.observer.on_retry(change.label, attempt, delay, str(error))

        try:
            if step.kind == CREATE_STEP:
                attempts = await self._apply_create(change, on_retry)
            else:
                attempts = await self._apply_destroy(change, on_retry)
        except TimeoutError:
            self._mark_failed(step, f"provider call timed out after {self.call_timeout}s")
            return
        except ConvergeError as e:
            self._mark_failed(step, f"{type(e).__name__}: {e}")
            return
        except Exception as e:
            logger.opt(exception=e).debug("Unexpected error during {} of {}", step.kind, change.label)
            self._mark_failed(step, f"{type(e).__name__}: {e}")
            return

        step.ok = True
        result.attempts = max(result.attempts, attempts)
        self._pending_steps[change.label] -= 1
        if self._pending_steps[change.label] == 0 and result.status == ChangeStatus.RUNNING:
            result.status = ChangeStatus.APPLIED
            result.elapsed = time.time() - self._started[change.label]
            self._record(change, "applied", result.attempts)
            if self.observer:
                self.observer.on_change_complete(change.label, change.action.value, result.elapsed)

    # ------------------------------------------------------------------
    # Provider calls
    # ------------------------------------------------------------------

    async def _call(self, fn, *args, on_retry=None) -> tuple[Any, int]:
        async def attempt():
            return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=self.call_timeout)

        return await self.retry.run(attempt, on_retry)

    async def _apply_create(self, change: ResourceChange, on_retry) -> int:
        provider = self.registry.get(change.provider)
        address = ResourceAddress.parse(change.address)
        attributes = self._resolve(change)

        if change.action == Action.READ:
            result, attempts = await self._call(
                provider.read_data, change.type, attributes, on_retry=on_retry
            )
            self.instances.set(address, result)
            return attempts

        if change.action == Action.UPDATE:
            current = self.state.get(change.address)
            old = current.attributes if current is not None else dict(change.before or {})
            result, attempts = await self._call(
                provider.update, change.type, old.get("id"), old, attributes, on_retry=on_retry
            )
        else:
            result, attempts = await self._call(
                provider.create, change.type, attributes, on_retry=on_retry
            )

        deposed_key = self.state.put(
            StateEntry(
                address=change.address,
                type=change.type,
                name=change.name,
                provider=change.provider,
                attributes=result,
                dependencies=list(change.dependencies),
                mode=change.mode,
                index_key=address.key,
            ),
            depose_prior=change.action == Action.REPLACE and change.create_before_destroy,
        )
        if deposed_key:
            self._deposed_keys[change.address] = deposed_key
        self.instances.set(address, result)
        return attempts

    async def _apply_destroy(self, change: ResourceChange, on_retry) -> int:
        provider = self.registry.get(change.provider)
        before = change.before or {}
        _, attempts = await self._call(
            provider.delete, change.type, before.get("id"), before, on_retry=on_retry
        )
        if change.deposed:
            self.state.remove_deposed(change.deposed)
        elif change.action == Action.DELETE or not change.create_before_destroy:
            self.state.remove(change.address)
        elif change.address in self._deposed_keys:
            self.state.remove_deposed(self._deposed_keys.pop(change.address))
        return attempts

    def _resolve(self, change: ResourceChange) -> dict[str, Any]:
        """Re-evaluate the change's configuration with the values known now."""
        instance = Instance(
            ResourceAddress.parse(change.address),
            count_index=change.count_index,
            each_key=change.each_key,
            each_value=change.each_value,
        )
        desired = evaluate_value(change.config, instance.context(self.scope.context(change.address)))
        if change.action in (Action.CREATE, Action.READ):
            attributes = desired
        else:
            # Planned attributes with every value that was unknown or changed re-resolved
            attributes = dict(change.after or {})
            for key, value in desired.items():
                if (
                    key not in attributes
                    or key in change.changed_attributes
                    or contains_unknown(attributes[key])
                ):
                    attributes[key] = value
        if contains_unknown(attributes):
            raise ApplyError(f"{change.address}: configuration still has unknown values at apply time")
        return attributes

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _mark_failed(self, step: _Step, error: str) -> None:
        change = step.change
        result = self._results[change.label]
        logger.error("{} {} failed: {}", change.label, step.kind, error)
        if result.status == ChangeStatus.FAILED:
            return
        result.status = ChangeStatus.FAILED
        result.error = error
        if change.label in self._started:
            result.elapsed = time.time() - self._started[change.label]
        self._record(change, "failed", max(result.attempts, 1), error)
        if self.observer:
            self.observer.on_change_failed(change.label, change.action.value, error)

    def _mark_skipped(self, step: _Step, status: ChangeStatus, reason: str) -> None:
        change = step.change
        result = self._results[change.label]
        if result.status not in (ChangeStatus.PENDING, ChangeStatus.RUNNING):
            return
        result.status = status
        result.error = reason
        logger.info("{} {}: {}", change.label, status.value, reason)
        self._record(change, status.value, 0, reason)
        if self.observer:
            self.observer.on_change_skipped(change.label, change.action.value, reason)

    def _record(self, change: ResourceChange, status: str, attempt: int, message: str | None = None) -> None:
        self.state.record_event(
            self._run_id, change.label, change.action.value, status, attempt, message
        )

    def _write_outputs(self) -> None:
        if self.plan.destroy:
            self.state.set_outputs({})
            return
        if self.plan.targets:
            return
        outputs = {}
        for name, decl in self.plan.output_decls.items():
            value = evaluate_value(decl["value"], self.scope.context(f"output.{name}"))
            if contains_unknown(value):
                raise ApplyError(f"output.{name} is still unknown after apply")
            outputs[name] = {"value": value, "sensitive": bool(decl.get("sensitive"))}
        self.state.set_outputs(outputs)
