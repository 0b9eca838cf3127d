"""Structural checks for a Fargate-style network and service topology.

The checks run on a symbolic plan: nothing is created, and every attribute
that would only be known after apply evaluates to a Symbol naming its
origin (``aws_nat_gateway.gw[1].id``). That lets each rule follow
references between instances exactly as the engine would wire them:

- every subnet block expands to as many instances as there are AZs
- every private subnet is associated with exactly one route table, and
  that table routes through the NAT gateway with the same index
- the tasks security group admits traffic only from the load balancer's
  security group, never from 0.0.0.0/0
- the service's load_balancer block names a target group plus a
  container name/port that exist in the task definition
- the rendered task definition is valid JSON listing exactly the expected
  containers, each later one depending on the one before it
"""

import json
import re
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from converge.declaration.model import Configuration
from converge.graph.types import ResourceAddress
from converge.planning.changes import Plan, ResourceChange
from converge.planning.planner import Planner
from converge.utils.logging import logger

DEFAULT_CONTAINERS = ("datacollector-sidecar", "app")
DEFAULT_AZ_VARIABLE = "az_count"

SUBNET_TYPES = ("aws_subnet",)
ROUTE_TABLE_TYPES = ("aws_route_table",)
ASSOCIATION_TYPES = ("aws_route_table_association",)
NAT_TYPES = ("aws_nat_gateway",)
SERVICE_TYPES = ("aws_ecs_service",)
TASK_DEFINITION_TYPES = ("aws_ecs_task_definition",)
LOAD_BALANCER_TYPES = ("aws_alb", "aws_lb")
TARGET_GROUP_TYPES = ("aws_alb_target_group", "aws_lb_target_group")
SG_RULE_TYPES = ("aws_security_group_rule",)

OPEN_CIDRS = {"0.0.0.0/0", "::/0"}
REQUIRED_CONTAINER_FIELDS = ("name", "image", "cpu", "memory", "essential")

_SYMBOL_RE = re.compile(r"^((?:data\.)?[A-Za-z_][\w-]*\.[A-Za-z_][\w-]*(?:\[[^\]]+\])?)\.([\w-]+)$")


class Severity(Enum):
    """Standardized severity levels."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


SEVERITY_ORDER = {"critical": 0, "high": 1, "medium": 2, "low": 3, "info": 4}


@dataclass
class TopologyFinding:
    """One violated structural property."""

    finding_id: str
    rule_name: str
    address: str | None
    category: str
    severity: str
    title: str
    description: str
    file_path: str | None = None
    remediation: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class CheckContext:
    """Everything the rules look at."""

    config: Configuration
    plan: Plan
    variables: dict[str, Any]
    az_variable: str = DEFAULT_AZ_VARIABLE
    expected_containers: tuple[str, ...] = DEFAULT_CONTAINERS
    _by_address: dict[str, ResourceChange] = field(default_factory=dict, repr=False)

    def __post_init__(self):
        self._by_address = {change.address: change for change in self.plan.changes}

    def changes_of(self, types: tuple[str, ...]) -> list[ResourceChange]:
        return [
            change
            for change in self.plan.changes
            if change.mode == "managed" and change.type in types
        ]

    def resolve(self, value: Any) -> ResourceChange | None:
        """The planned instance a symbolic reference points at."""
        ref = symbol_reference(value)
        if ref is None:
            return None
        return self._by_address.get(ref[0])

    def source_of(self, change: ResourceChange) -> str | None:
        block = self.config.blocks.get(change.block)
        return block.source if block else None


def symbol_reference(value: Any) -> tuple[str, str] | None:
    """Split ``aws_subnet.private[0].id`` into ("aws_subnet.private[0]", "id")."""
    if not isinstance(value, str):
        return None
    match = _SYMBOL_RE.match(value)
    if match is None:
        return None
    return match.group(1), match.group(2)


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _index_of(change: ResourceChange) -> Any:
    return ResourceAddress.parse(change.address).key


def _finding(
    ctx: CheckContext,
    rule_name: str,
    change: ResourceChange | None,
    severity: Severity,
    category: str,
    title: str,
    description: str,
    remediation: str = "",
) -> TopologyFinding:
    address = change.address if change else None
    return TopologyFinding(
        finding_id=f"{rule_name}::{address or 'configuration'}",
        rule_name=rule_name,
        address=address,
        category=category,
        severity=severity.value,
        title=title,
        description=description,
        file_path=ctx.source_of(change) if change else None,
        remediation=remediation,
    )


# ---------------------------------------------------------------------------
# Individual checks
# ---------------------------------------------------------------------------


def check_subnet_counts(ctx: CheckContext) -> list[TopologyFinding]:
    findings: list[TopologyFinding] = []
    az_count = ctx.variables.get(ctx.az_variable)
    if not isinstance(az_count, int) or isinstance(az_count, bool):
        findings.append(
            _finding(
                ctx,
                "subnet-count",
                None,
                Severity.HIGH,
                "network",
                f"Variable {ctx.az_variable!r} is not a number",
                f"Cannot compare subnet counts against var.{ctx.az_variable} = {az_count!r}",
                remediation=f"Declare variable {ctx.az_variable!r} with type number",
            )
        )
        return findings

    for block in ctx.config.resources.values():
        if block.type not in SUBNET_TYPES:
            continue
        expansion = ctx.plan.expansions.get(block.address)
        count = len(expansion["keys"]) if expansion else 0
        if count != az_count:
            findings.append(
                TopologyFinding(
                    finding_id=f"subnet-count::{block.address}",
                    rule_name="subnet-count",
                    address=block.address,
                    category="network",
                    severity=Severity.HIGH.value,
                    title=f"{block.address} has {count} instance(s), expected {az_count}",
                    description=(
                        f"Subnets must be spread over every availability zone: "
                        f"var.{ctx.az_variable} = {az_count}"
                    ),
                    file_path=block.source,
                    remediation=f'Set count = "${{var.{ctx.az_variable}}}"',
                )
            )
    return findings


def check_private_subnet_routes(ctx: CheckContext) -> list[TopologyFinding]:
    findings: list[TopologyFinding] = []
    associations = ctx.changes_of(ASSOCIATION_TYPES)

    for subnet in ctx.changes_of(SUBNET_TYPES):
        after = subnet.after or {}
        if after.get("map_public_ip_on_launch") is True:
            continue
        index = _index_of(subnet)
        attached = [
            assoc
            for assoc in associations
            if (ref := symbol_reference((assoc.after or {}).get("subnet_id")))
            and ref[0] == subnet.address
        ]
        if len(attached) != 1:
            findings.append(
                _finding(
                    ctx,
                    "private-subnet-route",
                    subnet,
                    Severity.HIGH,
                    "network",
                    f"Private subnet {subnet.address} has {len(attached)} route table associations",
                    "Each private subnet needs exactly one route table association",
                )
            )
            continue

        table = ctx.resolve((attached[0].after or {}).get("route_table_id"))
        if table is None or table.type not in ROUTE_TABLE_TYPES:
            findings.append(
                _finding(
                    ctx,
                    "private-subnet-route",
                    attached[0],
                    Severity.HIGH,
                    "network",
                    f"{attached[0].address} does not reference a declared route table",
                    f"route_table_id = {(attached[0].after or {}).get('route_table_id')!r}",
                )
            )
            continue

        nat_refs = [
            ctx.resolve(route.get("nat_gateway_id"))
            for route in _as_list((table.after or {}).get("route"))
            if isinstance(route, dict) and route.get("nat_gateway_id") is not None
        ]
        nats = [nat for nat in nat_refs if nat is not None and nat.type in NAT_TYPES]
        if not nats:
            findings.append(
                _finding(
                    ctx,
                    "private-subnet-route",
                    table,
                    Severity.HIGH,
                    "network",
                    f"{table.address} (for {subnet.address}) has no route through a NAT gateway",
                    "Private subnets reach the internet only through a NAT gateway",
                )
            )
            continue
        for nat in nats:
            nat_index = _index_of(nat)
            if nat_index != index:
                findings.append(
                    _finding(
                        ctx,
                        "private-subnet-route",
                        table,
                        Severity.HIGH,
                        "network",
                        f"{subnet.address} routes through {nat.address} in another AZ",
                        f"Subnet index {index} must use the NAT gateway with the same index, "
                        f"not {nat_index}",
                        remediation="Use element(aws_nat_gateway.<name>.*.id, count.index)",
                    )
                )
    return findings


def check_task_security_group(ctx: CheckContext) -> list[TopologyFinding]:
    findings: list[TopologyFinding] = []
    lb_groups = {
        ref[0]
        for lb in ctx.changes_of(LOAD_BALANCER_TYPES)
        for value in _as_list((lb.after or {}).get("security_groups"))
        if (ref := symbol_reference(value))
    }

    for service in ctx.changes_of(SERVICE_TYPES):
        network = (service.after or {}).get("network_configuration") or {}
        if isinstance(network, list):
            network = network[0] if network else {}
        groups = [ctx.resolve(value) for value in _as_list(network.get("security_groups"))]
        groups = [group for group in groups if group is not None]
        if not groups:
            findings.append(
                _finding(
                    ctx,
                    "task-ingress",
                    service,
                    Severity.HIGH,
                    "exposure",
                    f"{service.address} does not attach a declared security group",
                    "network_configuration.security_groups must name the tasks security group",
                )
            )
            continue

        for group in groups:
            rules = [rule for rule in _as_list((group.after or {}).get("ingress")) if isinstance(rule, dict)]
            rules.extend(
                rule.after or {}
                for rule in ctx.changes_of(SG_RULE_TYPES)
                if (rule.after or {}).get("type") == "ingress"
                and (ref := symbol_reference((rule.after or {}).get("security_group_id")))
                and ref[0] == group.address
            )
            findings.extend(_check_ingress_rules(ctx, group, rules, lb_groups))
    return findings


def _check_ingress_rules(
    ctx: CheckContext,
    group: ResourceChange,
    rules: list[dict[str, Any]],
    lb_groups: set[str],
) -> list[TopologyFinding]:
    findings = []
    for rule in rules:
        cidrs = set(_as_list(rule.get("cidr_blocks"))) | set(_as_list(rule.get("ipv6_cidr_blocks")))
        ports = f"{rule.get('from_port', '?')}-{rule.get('to_port', '?')}"
        if cidrs & OPEN_CIDRS:
            findings.append(
                _finding(
                    ctx,
                    "task-ingress",
                    group,
                    Severity.CRITICAL,
                    "exposure",
                    f"Tasks security group {group.address} allows ingress from the internet",
                    f"Ingress on ports {ports} from {', '.join(sorted(cidrs & OPEN_CIDRS))}",
                    remediation="Replace cidr_blocks with security_groups = [<load balancer group>.id]",
                )
            )
            continue
        if cidrs:
            findings.append(
                _finding(
                    ctx,
                    "task-ingress",
                    group,
                    Severity.HIGH,
                    "exposure",
                    f"Tasks security group {group.address} allows ingress from CIDR ranges",
                    f"Ingress on ports {ports} from {', '.join(sorted(cidrs))}",
                )
            )
        sources = {
            ref[0] if (ref := symbol_reference(value)) else str(value)
            for value in _as_list(rule.get("security_groups"))
        }
        if rule.get("source_security_group_id") is not None:
            value = rule["source_security_group_id"]
            ref = symbol_reference(value)
            sources.add(ref[0] if ref else str(value))
        foreign = sorted(sources - lb_groups)
        if foreign:
            findings.append(
                _finding(
                    ctx,
                    "task-ingress",
                    group,
                    Severity.HIGH,
                    "exposure",
                    f"Tasks security group {group.address} admits a group other than the load balancer's",
                    f"Ingress on ports {ports} from {', '.join(foreign)}",
                )
            )
        if not sources and not cidrs:
            findings.append(
                _finding(
                    ctx,
                    "task-ingress",
                    group,
                    Severity.MEDIUM,
                    "exposure",
                    f"Tasks security group {group.address} has an ingress rule without a source",
                    f"Ingress on ports {ports} names no security group",
                )
            )
    return findings


def check_service_load_balancer(ctx: CheckContext) -> list[TopologyFinding]:
    findings: list[TopologyFinding] = []
    for service in ctx.changes_of(SERVICE_TYPES):
        after = service.after or {}
        blocks = [lb for lb in _as_list(after.get("load_balancer")) if isinstance(lb, dict)]
        if not blocks:
            findings.append(
                _finding(
                    ctx,
                    "service-load-balancer",
                    service,
                    Severity.HIGH,
                    "service",
                    f"{service.address} has no load_balancer block",
                    "The service must register its tasks with a target group",
                )
            )
            continue

        task_definition = ctx.resolve(after.get("task_definition"))
        containers = None
        if task_definition is not None and task_definition.type in TASK_DEFINITION_TYPES:
            containers = _parse_containers((task_definition.after or {}).get("container_definitions"))
        else:
            findings.append(
                _finding(
                    ctx,
                    "service-load-balancer",
                    service,
                    Severity.HIGH,
                    "service",
                    f"{service.address} does not reference a declared task definition",
                    f"task_definition = {after.get('task_definition')!r}",
                )
            )

        for lb in blocks:
            target_group = ctx.resolve(lb.get("target_group_arn") or lb.get("target_group_id"))
            if target_group is None or target_group.type not in TARGET_GROUP_TYPES:
                findings.append(
                    _finding(
                        ctx,
                        "service-load-balancer",
                        service,
                        Severity.HIGH,
                        "service",
                        f"{service.address} load_balancer does not reference a declared target group",
                        f"target_group_arn = {lb.get('target_group_arn')!r}",
                    )
                )
            name = lb.get("container_name")
            port = lb.get("container_port")
            if target_group is not None and target_group.type in TARGET_GROUP_TYPES:
                tg_port = (target_group.after or {}).get("port")
                if tg_port is not None and port is not None and str(tg_port) != str(port):
                    findings.append(
                        _finding(
                            ctx,
                            "service-load-balancer",
                            target_group,
                            Severity.MEDIUM,
                            "service",
                            f"{target_group.address} forwards to port {tg_port}, container listens on {port}",
                            "The target group port should match the container port",
                        )
                    )
            if not isinstance(containers, list):
                continue
            container = next(
                (c for c in containers if isinstance(c, dict) and c.get("name") == name), None
            )
            if container is None:
                findings.append(
                    _finding(
                        ctx,
                        "service-load-balancer",
                        service,
                        Severity.HIGH,
                        "service",
                        f"{service.address} load balances container {name!r}, "
                        "which the task definition does not declare",
                        f"Declared containers: {[c.get('name') for c in containers if isinstance(c, dict)]}",
                    )
                )
                continue
            exposed = [
                mapping.get("containerPort")
                for mapping in _as_list(container.get("portMappings"))
                if isinstance(mapping, dict)
            ]
            if not any(str(p) == str(port) for p in exposed):
                findings.append(
                    _finding(
                        ctx,
                        "service-load-balancer",
                        service,
                        Severity.HIGH,
                        "service",
                        f"Container {name!r} does not expose port {port}",
                        f"portMappings containerPort values: {exposed}",
                    )
                )
    return findings


def check_task_definition(ctx: CheckContext) -> list[TopologyFinding]:
    findings: list[TopologyFinding] = []
    for task_definition in ctx.changes_of(TASK_DEFINITION_TYPES):
        rendered = (task_definition.after or {}).get("container_definitions")
        for severity, title, description in validate_container_definitions(
            rendered, ctx.expected_containers
        ):
            findings.append(
                _finding(
                    ctx,
                    "task-definition",
                    task_definition,
                    severity,
                    "task_definition",
                    f"{task_definition.address}: {title}",
                    description,
                )
            )
    return findings


def _parse_containers(rendered: Any) -> Any:
    if not isinstance(rendered, str):
        return rendered if isinstance(rendered, list) else None
    try:
        return json.loads(rendered)
    except json.JSONDecodeError:
        return None


def validate_container_definitions(
    rendered: Any,
    expected: tuple[str, ...] = DEFAULT_CONTAINERS,
) -> list[tuple[Severity, str, str]]:
    """Problems with a rendered container definition document.

    Returns (severity, title, description) tuples; empty when the document
    is valid JSON listing exactly ``expected`` in order, each container
    after the first depending on the one before it.
    """
    if not isinstance(rendered, str):
        return [(Severity.HIGH, "container_definitions is not a rendered string", f"got {rendered!r}")]
    try:
        containers = json.loads(rendered)
    except json.JSONDecodeError as e:
        return [(Severity.CRITICAL, "container_definitions is not valid JSON", str(e))]
    if not isinstance(containers, list) or not all(isinstance(c, dict) for c in containers):
        return [(Severity.CRITICAL, "container_definitions must be a list of objects", rendered[:200])]

    problems = []
    names = [container.get("name") for container in containers]
    if names != list(expected):
        problems.append(
            (
                Severity.HIGH,
                f"expected containers {list(expected)}, found {names}",
                f"The task definition must declare exactly {len(expected)} containers in this order",
            )
        )

    for container in containers:
        missing = [key for key in REQUIRED_CONTAINER_FIELDS if key not in container]
        if missing:
            problems.append(
                (
                    Severity.MEDIUM,
                    f"container {container.get('name')!r} is missing {', '.join(missing)}",
                    "Every container needs name, image, cpu, memory and essential",
                )
            )

    position = {name: i for i, name in enumerate(names)}
    for container in containers:
        name = container.get("name")
        for dependency in _as_list(container.get("dependsOn")):
            target = dependency.get("containerName") if isinstance(dependency, dict) else None
            if target not in position:
                problems.append(
                    (Severity.HIGH, f"container {name!r} depends on unknown container {target!r}", "")
                )
            elif position[target] >= position[name]:
                problems.append(
                    (
                        Severity.HIGH,
                        f"container {name!r} depends on {target!r}, which is declared after it",
                        "Containers must be listed in dependency order",
                    )
                )

    if names == list(expected):
        for earlier, later in zip(expected, expected[1:]):
            container = containers[position[later]]
            targets = [
                dep.get("containerName")
                for dep in _as_list(container.get("dependsOn"))
                if isinstance(dep, dict)
            ]
            if earlier not in targets:
                problems.append(
                    (
                        Severity.HIGH,
                        f"container {later!r} does not depend on {earlier!r}",
                        f"Add dependsOn: [{{containerName: {earlier}, condition: START}}]",
                    )
                )
    return problems


RULES: dict[str, Callable[[CheckContext], list[TopologyFinding]]] = {
    "subnet-count": check_subnet_counts,
    "private-subnet-route": check_private_subnet_routes,
    "task-ingress": check_task_security_group,
    "service-load-balancer": check_service_load_balancer,
    "task-definition": check_task_definition,
}


def build_context(
    config: Configuration,
    variables: dict[str, Any],
    az_variable: str = DEFAULT_AZ_VARIABLE,
    expected_containers: tuple[str, ...] = DEFAULT_CONTAINERS,
    max_instances: int = 1000,
) -> CheckContext:
    """Plan the configuration symbolically, without state or providers."""
    planner = Planner(
        config,
        variables,
        state=None,
        registry=None,
        refresh=False,
        symbolic=True,
        max_instances=max_instances,
    )
    plan = planner.plan()
    return CheckContext(
        config=config,
        plan=plan,
        variables=variables,
        az_variable=az_variable,
        expected_containers=tuple(expected_containers),
    )


def run_checks(ctx: CheckContext, rules: list[str] | None = None) -> list[TopologyFinding]:
    """Run the selected rules (all by default), most severe findings first."""
    selected = rules or list(RULES)
    unknown = [name for name in selected if name not in RULES]
    if unknown:
        raise ValueError(f"unknown rule(s): {', '.join(unknown)} (available: {', '.join(RULES)})")

    findings: list[TopologyFinding] = []
    for name in selected:
        found = RULES[name](ctx)
        logger.debug("Rule {}: {} finding(s)", name, len(found))
        findings.extend(found)
    findings.sort(key=lambda f: (SEVERITY_ORDER[f.severity], f.rule_name, f.address or ""))
    logger.info("Topology checks complete: {} findings", len(findings))
    return findings
