"""Provider registry: maps provider names to configured implementations."""

from pathlib import Path
from typing import Any

from converge.errors import ProviderError
from converge.providers.base import Provider
from converge.providers.local import LocalProvider
from converge.utils.constants import DEFAULT_PROVIDER_BACKEND
from converge.utils.logging import logger

_LOCAL_OPTIONS = {
    "backend",
    "region",
    "profile",
    "account_id",
    "schema_file",
    "store_file",
    "transient_failure_rate",
    "seed",
    "latency",
}


def _build_local(name: str, options: dict[str, Any], root: Path, providers_dir: Path) -> LocalProvider:
    unknown = set(options) - _LOCAL_OPTIONS
    if unknown:
        raise ProviderError(f"provider {name!r}: unsupported option(s) {sorted(unknown)}")
    schema_file = options.get("schema_file")
    store_file = options.get("store_file")
    return LocalProvider(
        name=name,
        store_file=(root / store_file) if store_file else providers_dir / f"{name}.json",
        schema_file=(root / schema_file) if schema_file else None,
        region=str(options.get("region", "local-1")),
        profile=options.get("profile"),
        account_id=str(options.get("account_id", "000000000000")),
        transient_failure_rate=float(options.get("transient_failure_rate", 0.0)),
        seed=options.get("seed"),
        latency=float(options.get("latency", 0.0)),
    )


BACKENDS = {
    "local": _build_local,
}


class ProviderRegistry:
    """Lazily instantiates one provider per configured name."""

    def __init__(
        self,
        provider_configs: dict[str, dict[str, Any]],
        root: Path,
        providers_dir: Path,
    ):
        self.provider_configs = provider_configs
        self.root = Path(root)
        self.providers_dir = Path(providers_dir)
        self._instances: dict[str, Provider] = {}

    def get(self, name: str) -> Provider:
        if name not in self._instances:
            options = dict(self.provider_configs.get(name, {}))
            backend = options.get("backend", DEFAULT_PROVIDER_BACKEND)
            if backend not in BACKENDS:
                raise ProviderError(
                    f"provider {name!r}: unknown backend {backend!r} "
                    f"(available: {', '.join(sorted(BACKENDS))})"
                )
            provider = BACKENDS[backend](name, options, self.root, self.providers_dir)
            logger.debug("Provider {} initialised with backend {}", name, backend)
            self._instances[name] = provider
        return self._instances[name]

    def register(self, name: str, provider: Provider) -> None:
        """Install a ready-made provider (used by tests and embedding code)."""
        self._instances[name] = provider
