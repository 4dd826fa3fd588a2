"""
Proxy provider backed by the `proxies` list in config.json.
"""

import itertools
from typing import List, Optional

from .models import ProxyDescriptor
from .utils import debug_print


def _parse_proxy_entry(entry) -> Optional[ProxyDescriptor]:
    if isinstance(entry, str):
        server = entry.strip()
        return ProxyDescriptor(server=server) if server else None
    if not isinstance(entry, dict):
        return None
    server = str(entry.get("server") or "").strip()
    if not server:
        return None
    return ProxyDescriptor(
        server=server,
        username=str(entry.get("username") or "") or None,
        password=str(entry.get("password") or "") or None,
        target_compatible=bool(entry.get("target_compatible", True)),
    )


class StaticProxyProvider:
    """Round-robin over configured proxies. `None` means connect directly."""

    def __init__(self, proxies: List[ProxyDescriptor]) -> None:
        self._proxies = list(proxies)
        self._cycle = itertools.cycle(self._proxies) if self._proxies else None

    @classmethod
    def from_config(cls, config: dict) -> "StaticProxyProvider":
        proxies = []
        for entry in config.get("proxies") or []:
            descriptor = _parse_proxy_entry(entry)
            if descriptor is None:
                debug_print(f"⚠️ Ignoring malformed proxy entry: {entry!r}")
                continue
            proxies.append(descriptor)
        return cls(proxies)

    def __len__(self) -> int:
        return len(self._proxies)

    def get_proxy(self, require_target_compatible: bool = False) -> Optional[ProxyDescriptor]:
        if self._cycle is None:
            return None
        for _ in range(len(self._proxies)):
            candidate = next(self._cycle)
            if require_target_compatible and not candidate.target_compatible:
                continue
            return candidate
        return None
