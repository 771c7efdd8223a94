"""Adapter catalog: platform tag to adapter instance.

Populated once at startup. Platforms without an adapter resolve to
``UnsupportedPlatformAdapter`` so callers get a structured "not implemented"
precheck failure instead of an exception.
"""

from typing import Iterable, Optional

from signup_core.providers.base import ProviderAdapter, UnsupportedPlatformAdapter


class AdapterCatalog:
    """Registry of adapters keyed by ``ProviderAdapter.platform``."""

    def __init__(self, adapters: Optional[Iterable[ProviderAdapter]] = None):
        self._adapters: dict[str, ProviderAdapter] = {}
        for adapter in adapters or ():
            self.register(adapter)

    def register(self, adapter: ProviderAdapter) -> None:
        self._adapters[str(adapter.platform)] = adapter

    def supports(self, platform: str) -> bool:
        return str(platform) in self._adapters

    def platforms(self) -> list[str]:
        return sorted(self._adapters)

    def get(self, platform: str) -> ProviderAdapter:
        """Return the adapter for ``platform``, or a typed not-implemented adapter."""
        adapter = self._adapters.get(str(platform))
        if adapter is None:
            return UnsupportedPlatformAdapter(str(platform))
        return adapter
