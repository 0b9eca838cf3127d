"""Local simulated provider.

Stands in for a cloud API: objects live in a JSON file, ids and computed
attributes are generated from templates in a YAML schema, and transient
failures can be injected to exercise the executor's retry path.

Provider block options::

    provider:
      aws:
        backend: local
        region: eu-west-1
        profile: default                   # available to computed templates as {profile}
        account_id: "123456789012"
        schema_file: schema.yaml           # relative to the config directory
        store_file: .converge/providers/aws.json
        transient_failure_rate: 0.0        # 0..1, chance a mutating call fails transiently
        seed: 7                            # makes failure injection reproducible
        latency: 0.0                       # seconds slept per call
"""

import copy
import json
import random
import string
import threading
import time
import uuid
from pathlib import Path
from typing import Any

import yaml

from converge.errors import ProviderError, ResourceNotFoundError, TransientProviderError
from converge.expressions.values import contains_unknown
from converge.providers.base import DataSourceSchema, ResourceSchema
from converge.utils.logging import logger


class _Placeholders(dict):
    """format_map mapping that leaves unknown placeholders untouched."""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def _render(template: Any, values: dict[str, Any]) -> Any:
    if isinstance(template, str):
        return template.format_map(_Placeholders(values))
    if isinstance(template, list):
        return [_render(item, values) for item in template]
    if isinstance(template, dict):
        return {key: _render(item, values) for key, item in template.items()}
    return template


def load_schema_file(path: Path) -> tuple[dict[str, ResourceSchema], dict[str, DataSourceSchema]]:
    """Parse a provider schema YAML file."""
    try:
        with open(path, encoding="utf-8") as f:
            document = yaml.safe_load(f) or {}
    except (yaml.YAMLError, OSError) as e:
        raise ProviderError(f"cannot load provider schema {path}: {e}") from None
    if not isinstance(document, dict):
        raise ProviderError(f"provider schema {path} must be a mapping")

    resources = {}
    for type_name, body in (document.get("resources") or {}).items():
        body = body or {}
        resources[type_name] = ResourceSchema(
            type=type_name,
            force_new=set(body.get("force_new") or []),
            computed=dict(body.get("computed") or {}),
            id_prefix=str(body.get("id_prefix") or ""),
        )
    data_sources = {}
    for type_name, body in (document.get("data_sources") or {}).items():
        body = body or {}
        data_sources[type_name] = DataSourceSchema(type=type_name, result=dict(body.get("result") or {}))
    return resources, data_sources


class LocalProvider:
    """Simulated remote API persisted to a JSON file."""

    def __init__(
        self,
        name: str,
        store_file: Path,
        schema_file: Path | None = None,
        region: str = "local-1",
        profile: str | None = None,
        account_id: str = "000000000000",
        transient_failure_rate: float = 0.0,
        seed: int | None = None,
        latency: float = 0.0,
    ):
        if not 0.0 <= transient_failure_rate <= 1.0:
            raise ProviderError("transient_failure_rate must be between 0 and 1")
        self.name = name
        self.store_file = Path(store_file)
        self.region = region
        self.profile = profile
        self.account_id = account_id
        self.transient_failure_rate = transient_failure_rate
        self.latency = latency
        self._random = random.Random(seed)
        self._lock = threading.Lock()
        if schema_file is not None:
            self._resources, self._data_sources = load_schema_file(Path(schema_file))
        else:
            self._resources, self._data_sources = {}, {}

    # ------------------------------------------------------------------
    # Store
    # ------------------------------------------------------------------

    def _load(self) -> dict[str, Any]:
        if not self.store_file.exists():
            return {"objects": {}}
        try:
            with open(self.store_file, encoding="utf-8") as f:
                return json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            raise ProviderError(f"{self.name}: cannot read object store {self.store_file}: {e}") from None

    def _save(self, store: dict[str, Any]) -> None:
        tmp = self.store_file.with_suffix(".tmp")
        try:
            self.store_file.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(store, f, indent=2, sort_keys=True)
            tmp.replace(self.store_file)
        except OSError as e:
            raise ProviderError(f"{self.name}: cannot write object store {self.store_file}: {e}") from None

    def objects(self) -> dict[str, dict[str, Any]]:
        """Snapshot of every stored object, keyed by id."""
        with self._lock:
            return copy.deepcopy(self._load()["objects"])

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _simulate_call(self, operation: str, resource_type: str) -> None:
        if self.latency:
            time.sleep(self.latency)
        if self.transient_failure_rate and self._random.random() < self.transient_failure_rate:
            raise TransientProviderError(
                f"{self.name}: {operation} {resource_type} throttled, retry later"
            )

    def _new_id(self, schema: ResourceSchema) -> str:
        suffix = uuid.uuid4().hex[:17]
        prefix = schema.id_prefix or schema.type.split("_", 1)[-1].replace("_", "-")
        return f"{prefix}-{suffix}"

    def _template_values(self, resource_type: str, attributes: dict[str, Any]) -> dict[str, Any]:
        values = {key: value for key, value in attributes.items() if isinstance(value, (str, int, float))}
        values.update(
            type=resource_type,
            region=self.region,
            profile=self.profile or "default",
            account_id=self.account_id,
            hex="".join(self._random.choices(string.hexdigits.lower()[:16], k=8)),
        )
        return values

    @staticmethod
    def _check_known(resource_type: str, attributes: dict[str, Any]) -> None:
        if contains_unknown(attributes):
            raise ProviderError(f"{resource_type}: cannot send unknown values to the provider")

    # ------------------------------------------------------------------
    # Provider protocol
    # ------------------------------------------------------------------

    def schema(self, resource_type: str) -> ResourceSchema:
        return self._resources.get(resource_type) or ResourceSchema(type=resource_type)

    def create(self, resource_type: str, attributes: dict[str, Any]) -> dict[str, Any]:
        self._check_known(resource_type, attributes)
        self._simulate_call("create", resource_type)
        schema = self.schema(resource_type)
        with self._lock:
            store = self._load()
            object_id = self._new_id(schema)
            values = self._template_values(resource_type, attributes)
            values["id"] = object_id
            created = dict(attributes)
            for key, template in schema.computed.items():
                if key not in created:
                    created[key] = _render(template, values)
            created["id"] = object_id
            store["objects"][object_id] = {"type": resource_type, "attributes": created}
            self._save(store)
        logger.debug("{}: created {} {}", self.name, resource_type, object_id)
        return copy.deepcopy(created)

    def read(self, resource_type: str, object_id: str, attributes: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            stored = self._load()["objects"].get(object_id)
        if stored is None or stored["type"] != resource_type:
            raise ResourceNotFoundError(f"{self.name}: {resource_type} {object_id} does not exist")
        return copy.deepcopy(stored["attributes"])

    def update(
        self,
        resource_type: str,
        object_id: str,
        old: dict[str, Any],
        new: dict[str, Any],
    ) -> dict[str, Any]:
        self._check_known(resource_type, new)
        self._simulate_call("update", resource_type)
        schema = self.schema(resource_type)
        with self._lock:
            store = self._load()
            stored = store["objects"].get(object_id)
            if stored is None or stored["type"] != resource_type:
                raise ResourceNotFoundError(f"{self.name}: {resource_type} {object_id} does not exist")
            current = stored["attributes"]
            immutable = sorted(
                key for key in schema.force_new if key in new and new.get(key) != current.get(key)
            )
            if immutable:
                raise ProviderError(
                    f"{self.name}: {resource_type} {object_id}: cannot update {', '.join(immutable)} "
                    "in place (requires replacement)"
                )
            updated = {key: value for key, value in current.items() if schema.is_computed(key)}
            updated.update(new)
            updated["id"] = object_id
            stored["attributes"] = updated
            self._save(store)
        logger.debug("{}: updated {} {}", self.name, resource_type, object_id)
        return copy.deepcopy(updated)

    def delete(self, resource_type: str, object_id: str, attributes: dict[str, Any]) -> None:
        self._simulate_call("delete", resource_type)
        with self._lock:
            store = self._load()
            if store["objects"].pop(object_id, None) is None:
                logger.info("{}: {} {} already gone", self.name, resource_type, object_id)
                return
            self._save(store)
        logger.debug("{}: deleted {} {}", self.name, resource_type, object_id)

    def read_data(self, data_type: str, arguments: dict[str, Any]) -> dict[str, Any]:
        self._check_known(data_type, arguments)
        schema = self._data_sources.get(data_type)
        if schema is None:
            raise ProviderError(f"{self.name}: unknown data source {data_type}")
        values = self._template_values(data_type, arguments)
        result = dict(arguments)
        result.update(_render(schema.result, values))
        result.setdefault("id", f"{data_type}-{self.region}")
        return result
