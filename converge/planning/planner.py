"""Planner: diff the declared configuration against the last-known state.

Walks resource and data blocks in dependency order, expands count and
for_each, evaluates every instance's configuration and compares it with
the state entry at the same address:

- absent from state                      -> create
- identical managed attributes           -> no-op
- changed mutable attribute              -> update
- changed attribute marked force_new     -> replace
- in state but no longer declared        -> delete
- deposed object of a replacement        -> delete

Values that only exist after apply (ids of instances being created) are
UNKNOWN while planning; an unknown desired value always counts as a change.
With ``symbolic=True`` pending attributes evaluate to Symbols naming where
they come from instead, which is what the structural checks inspect.
"""

from dataclasses import replace
from typing import Any

from converge.declaration.model import Configuration, Lifecycle, ResourceBlock
from converge.errors import PlanError, ResourceNotFoundError
from converge.expressions.evaluator import evaluate_value
from converge.expressions.values import PendingAttributes, contains_unknown
from converge.graph.analyzer import GraphAnalyzer
from converge.graph.builder import GraphBuilder, ResourceGraph
from converge.graph.expansion import Instance, expand_block
from converge.graph.types import ResourceAddress
from converge.graph.values import InstanceValues
from converge.planning.changes import Action, Plan, ResourceChange, values_equal
from converge.planning.scope import ValueScope
from converge.providers.base import ResourceSchema
from converge.providers.registry import ProviderRegistry
from converge.state.store import StateEntry, StateStore
from converge.utils.logging import logger


class Planner:
    """Produce a Plan for one configuration."""

    def __init__(
        self,
        config: Configuration,
        variables: dict[str, Any],
        state: StateStore | None = None,
        registry: ProviderRegistry | None = None,
        refresh: bool = True,
        destroy: bool = False,
        targets: list[str] | tuple[str, ...] = (),
        symbolic: bool = False,
        max_instances: int = 1000,
    ):
        self.config = config
        self.variables = variables
        self.state = state
        self.registry = registry
        self.refresh = refresh
        self.destroy = destroy
        self.targets = [ResourceAddress.parse(target) for target in targets]
        self.symbolic = symbolic
        self.max_instances = max_instances
        self.graph: ResourceGraph | None = None
        self.instances = InstanceValues()
        self._vanished: dict[str, StateEntry] = {}

    def plan(self) -> Plan:
        plan = Plan(
            variables=dict(self.variables),
            locals=dict(self.config.locals),
            root=str(self.config.root),
            destroy=self.destroy,
            targets=[str(target) for target in self.targets],
            output_decls={
                name: {"value": output.value, "sensitive": output.sensitive}
                for name, output in self.config.outputs.items()
            },
        )

        prior: dict[str, StateEntry] = {}
        deposed: list[StateEntry] = []
        if self.state is not None:
            prior = {entry.address: entry for entry in self.state.list()}
            deposed = self.state.deposed()
            plan.state_serial = self.state.serial()
            plan.state_lineage = self.state.lineage()

        if (prior or deposed) and self.registry is None:
            raise PlanError("a provider registry is required to plan against existing state")

        if self.refresh and prior and not self.symbolic:
            prior = self._refresh(prior, plan)

        if self.destroy:
            self._plan_destroy(prior, plan)
        else:
            self.graph = GraphBuilder(self.config).build()
            self._plan_apply(prior, plan)
        self._plan_deposed(deposed, plan)

        summary = plan.summary()
        logger.info(
            "Plan: {} to create, {} to update, {} to replace, {} to delete, {} unchanged",
            summary["create"],
            summary["update"],
            summary["replace"],
            summary["delete"],
            summary["no-op"],
        )
        return plan

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def _refresh(self, prior: dict[str, StateEntry], plan: Plan) -> dict[str, StateEntry]:
        """Read every state entry back from its provider and record drift."""
        refreshed = {}
        for address, entry in prior.items():
            current = read_remote(self.registry, entry)
            if current is None:
                logger.warning("Drift: {} no longer exists remotely", address)
                plan.drift.append({"address": address, "kind": "deleted", "attributes": []})
                self._vanished[address] = entry
                continue
            changed = drifted_attributes(entry.attributes, current)
            if changed:
                logger.warning("Drift: {} changed outside converge: {}", address, ", ".join(changed))
                plan.drift.append({"address": address, "kind": "modified", "attributes": changed})
            refreshed[address] = replace(entry, attributes=current)
        return refreshed

    # ------------------------------------------------------------------
    # Destroy
    # ------------------------------------------------------------------

    def _plan_destroy(self, prior: dict[str, StateEntry], plan: Plan) -> None:
        entries = list(prior.values()) + list(self._vanished.values())
        if self.targets:
            entries = self._destroy_closure(entries)
        for entry in reverse_dependency_order(entries):
            self._check_prevent_destroy(entry.block, entry.address, "destroy")
            plan.changes.append(self._delete_change(entry, "destroy requested"))

    def _destroy_closure(self, entries: list[StateEntry]) -> list[StateEntry]:
        """Targeted entries plus everything that (transitively) depends on them."""
        selected = {
            entry.address
            for entry in entries
            if any(self._matches_target(entry.address, entry.block, target) for target in self.targets)
        }
        blocks = {ResourceAddress.parse(address).block for address in selected}
        grew = True
        while grew:
            grew = False
            for entry in entries:
                if entry.address not in selected and blocks.intersection(entry.dependencies):
                    selected.add(entry.address)
                    blocks.add(entry.block)
                    grew = True
        return [entry for entry in entries if entry.address in selected]

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    def _plan_apply(self, prior: dict[str, StateEntry], plan: Plan) -> None:
        graph = self.graph
        scope = ValueScope(self.variables, self.config.locals, self.instances, str(self.config.root))
        wanted = self._targeted_blocks(graph)
        declared: set[str] = set()

        for block_address in graph.block_order():
            if wanted is not None and block_address not in wanted:
                continue
            block = self.config.blocks[block_address]
            expansion = expand_block(block, scope.context(block_address), self.max_instances)
            self.instances.set_expansion(block_address, expansion.kind, expansion.keys)
            plan.expansions[block_address] = {"kind": expansion.kind, "keys": expansion.keys}
            dependencies = graph.resource_dependencies(block_address)

            for instance in expansion.instances:
                address = str(instance.address)
                declared.add(address)
                desired = evaluate_value(block.config, instance.context(scope.context(address)))
                if block.mode == "data":
                    change = self._plan_data(block, instance, desired, dependencies, plan)
                else:
                    change = self._plan_managed(block, instance, desired, prior.get(address), dependencies)
                if change is not None and self._instance_targeted(address, block_address):
                    plan.changes.append(change)

        orphans = [
            entry
            for address, entry in {**self._vanished, **prior}.items()
            if address not in declared
            and (wanted is None or entry.block in wanted)
            and self._instance_targeted(address, entry.block)
        ]
        for entry in reverse_dependency_order(orphans):
            self._check_prevent_destroy(entry.block, entry.address, "delete")
            if entry.address in self._vanished:
                reason = "no longer declared (already deleted outside converge)"
            elif entry.block in self.config.blocks:
                reason = "instance no longer produced by count/for_each"
            else:
                reason = "no longer declared"
            plan.changes.append(self._delete_change(entry, reason))

        if not self.targets:
            for name, output in self.config.outputs.items():
                plan.outputs[name] = evaluate_value(output.value, scope.context(f"output.{name}"))

    def _plan_deposed(self, deposed: list[StateEntry], plan: Plan) -> None:
        """Delete objects a create_before_destroy replacement left behind."""
        for entry in reverse_dependency_order(deposed):
            if self.targets and not any(
                self._matches_target(entry.address, entry.block, target) for target in self.targets
            ):
                continue
            change = self._delete_change(entry, "deposed by a create_before_destroy replacement")
            change.deposed = entry.deposed
            plan.changes.append(change)

    def _plan_data(
        self,
        block: ResourceBlock,
        instance: Instance,
        desired: dict[str, Any],
        dependencies: list[str],
        plan: Plan,
    ) -> ResourceChange | None:
        address = str(instance.address)
        if self.symbolic or contains_unknown(desired):
            self.instances.set(instance.address, PendingAttributes(address, desired, self.symbolic))
            change = self._new_change(block, instance, Action.READ, dependencies)
            change.after = desired
            change.reason = "configuration depends on values known only after apply"
            return change

        if self.registry is None:
            raise PlanError(f"{address}: a provider registry is required to read data sources")
        result = self.registry.get(block.provider_name).read_data(block.type, desired)
        self.instances.set(instance.address, result)
        plan.data[address] = result
        logger.debug("Read data source {}", address)
        return None

    def _plan_managed(
        self,
        block: ResourceBlock,
        instance: Instance,
        desired: dict[str, Any],
        prior: StateEntry | None,
        dependencies: list[str],
    ) -> ResourceChange:
        address = str(instance.address)

        if prior is None:
            change = self._new_change(block, instance, Action.CREATE, dependencies)
            change.after = desired
            change.reason = (
                "deleted outside converge" if address in self._vanished else "not in state"
            )
            if address in self._vanished:
                change.prior_dependencies = list(self._vanished[address].dependencies)
            self.instances.set(instance.address, PendingAttributes(address, desired, self.symbolic))
            return change

        schema = self.registry.get(prior.provider).schema(block.type)
        change = self._new_change(block, instance, Action.NO_OP, dependencies)
        change.before = prior.attributes
        change.prior_dependencies = list(prior.dependencies)
        changed = diff_attributes(desired, prior.attributes, schema, block.lifecycle)
        change.changed_attributes = changed

        if not changed:
            change.after = prior.attributes
            self.instances.set(instance.address, dict(prior.attributes))
            return change

        after = merge_attributes(desired, prior.attributes, schema, block.lifecycle)
        replace_reasons = [key for key in changed if key in schema.force_new]
        if replace_reasons:
            self._check_prevent_destroy(block.address, address, "replace")
            after = {
                key: value
                for key, value in after.items()
                if key in desired or not schema.is_computed(key)
            }
            change.action = Action.REPLACE
            change.replace_reasons = replace_reasons
            change.reason = f"forces replacement: {', '.join(replace_reasons)}"
        else:
            change.action = Action.UPDATE
            change.reason = f"changed: {', '.join(changed)}"
        change.after = after
        self.instances.set(instance.address, PendingAttributes(address, after, self.symbolic))
        return change

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _new_change(
        self,
        block: ResourceBlock,
        instance: Instance,
        action: Action,
        dependencies: list[str],
    ) -> ResourceChange:
        return ResourceChange(
            address=str(instance.address),
            type=block.type,
            name=block.name,
            mode=block.mode,
            provider=block.provider_name,
            action=action,
            config=block.config,
            count_index=instance.count_index,
            each_key=instance.each_key,
            each_value=instance.each_value,
            dependencies=list(dependencies),
            create_before_destroy=block.lifecycle.create_before_destroy,
        )

    @staticmethod
    def _delete_change(entry: StateEntry, reason: str) -> ResourceChange:
        return ResourceChange(
            address=entry.address,
            type=entry.type,
            name=entry.name,
            mode=entry.mode,
            provider=entry.provider,
            action=Action.DELETE,
            before=entry.attributes,
            after=None,
            prior_dependencies=list(entry.dependencies),
            reason=reason,
        )

    def _check_prevent_destroy(self, block_address: str, address: str, verb: str) -> None:
        block = self.config.blocks.get(block_address)
        if block is not None and block.lifecycle.prevent_destroy:
            raise PlanError(
                f"{address} has lifecycle.prevent_destroy set, but the plan would {verb} it"
            )

    def _targeted_blocks(self, graph: ResourceGraph) -> set[str] | None:
        if not self.targets:
            return None
        wanted = set()
        for target in self.targets:
            if target.block not in graph:
                raise PlanError(f"target {target} is not declared")
            wanted.add(target.block)
            wanted.update(
                node
                for node in graph.transitive_dependencies(target.block)
                if graph.nodes[node].node_type in ("resource", "data")
            )
        return wanted

    def _instance_targeted(self, address: str, block: str) -> bool:
        """Instance-level targets narrow only their own block."""
        if not self.targets:
            return True
        own = [target for target in self.targets if target.block == block]
        if not own:
            return True
        return any(self._matches_target(address, block, target) for target in own)

    @staticmethod
    def _matches_target(address: str, block: str, target: ResourceAddress) -> bool:
        if target.key is None:
            return block == target.block
        return address == str(target)


def read_remote(registry: ProviderRegistry, entry: StateEntry) -> dict[str, Any] | None:
    """Current remote attributes of a state entry, or None if the object is gone."""
    provider = registry.get(entry.provider)
    try:
        return provider.read(entry.type, entry.id, entry.attributes)
    except ResourceNotFoundError:
        return None


def drifted_attributes(recorded: dict[str, Any], current: dict[str, Any]) -> list[str]:
    return sorted(
        key
        for key in set(recorded) | set(current)
        if not values_equal(recorded.get(key), current.get(key))
    )


def diff_attributes(
    desired: dict[str, Any],
    before: dict[str, Any],
    schema: ResourceSchema,
    lifecycle: Lifecycle,
) -> list[str]:
    """Names of managed attributes whose desired value differs from state."""
    changed = []
    for key in sorted(set(desired) | set(before)):
        if lifecycle.ignores(key):
            continue
        if key in desired:
            value = desired[key]
            if contains_unknown(value) or not values_equal(value, before.get(key)):
                changed.append(key)
        elif not schema.is_computed(key):
            changed.append(key)
    return changed


def merge_attributes(
    desired: dict[str, Any],
    before: dict[str, Any],
    schema: ResourceSchema,
    lifecycle: Lifecycle,
) -> dict[str, Any]:
    """Planned attributes: declared values over computed and ignored ones from state."""
    after = {
        key: value
        for key, value in before.items()
        if schema.is_computed(key) or lifecycle.ignores(key)
    }
    for key, value in desired.items():
        if lifecycle.ignores(key) and key in before:
            continue
        after[key] = value
    return after


def reverse_dependency_order(entries: list[StateEntry]) -> list[StateEntry]:
    """Dependents first, using the dependencies recorded in state."""
    blocks = {entry.block for entry in entries}
    graph = {
        "nodes": [{"id": block} for block in blocks],
        "edges": [
            {"source": dep, "target": entry.block}
            for entry in entries
            for dep in entry.dependencies
            if dep in blocks and dep != entry.block
        ],
    }
    rank = {block: i for i, block in enumerate(GraphAnalyzer().topological_order(graph))}
    return sorted(
        entries,
        key=lambda e: (-rank.get(e.block, 0), e.resource_address.sort_key()),
    )
