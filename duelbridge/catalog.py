"""
Model catalog: the list of models LMArena currently offers.

The arena page embeds its model list in the server-rendered flight data, so
a pooled session only has to load the page and read it back. The scraped
list is cached in memory and saved to the models file, which is served when
the site cannot be reached.
"""

import asyncio
import json
import re
import time
from typing import Callable, List, Optional

from . import constants
from . import config as _config_module
from .page_adapter import PlaywrightPageAdapter
from .utils import debug_print, uuid7


def extract_models(page_body: str) -> List[dict]:
    """Pull the raw `initialModels` list out of the page HTML. Returns [] when absent."""
    match = re.search(constants.INITIAL_MODELS_PATTERN, page_body or "", re.DOTALL)
    if not match:
        return []
    try:
        # The list sits inside a JS string literal, so it is escaped once
        models_json = json.loads(f'"{match.group(1)}"')
        models = json.loads(models_json)
    except json.JSONDecodeError as e:
        debug_print(f"⚠️ Model list in page is not valid JSON: {e}")
        return []
    return [m for m in models if isinstance(m, dict)] if isinstance(models, list) else []


def normalize_models(raw_models: List[dict]) -> List[dict]:
    """
    Keep chat-capable models that name an organization (stealth models do not)
    and reduce each to the fields clients select by.
    """
    models = []
    seen = set()
    for model in raw_models:
        output = (model.get("capabilities") or {}).get("outputCapabilities") or {}
        if not (output.get("text") or output.get("search")):
            continue
        if not model.get("organization"):
            continue
        model_id = str(model.get("id") or "").strip()
        if not model_id or model_id in seen:
            continue
        seen.add(model_id)
        models.append({
            "id": model_id,
            "name": model.get("publicName") or model_id,
            "organization": model.get("organization"),
        })
    return models


class ModelCatalog:
    def __init__(
        self,
        pool,
        *,
        target_url: str = constants.LMARENA_URL,
        ttl_seconds: float = constants.MODEL_CACHE_TTL_SECONDS,
        adapter_factory: Callable[[object], object] = PlaywrightPageAdapter,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.pool = pool
        self.target_url = target_url
        self.ttl_seconds = float(ttl_seconds)
        self._adapter_factory = adapter_factory
        self._clock = clock
        self._lock = asyncio.Lock()
        self._models: List[dict] = []
        self._fetched_at: Optional[float] = None
        self.source = "none"

    @classmethod
    def from_config(cls, config: dict, pool) -> "ModelCatalog":
        return cls(
            pool,
            target_url=config.get("lmarena_url", constants.LMARENA_URL),
            ttl_seconds=config.get("model_cache_ttl_seconds", constants.MODEL_CACHE_TTL_SECONDS),
        )

    def _is_fresh(self) -> bool:
        if not self._models or self._fetched_at is None:
            return False
        return self._clock() - self._fetched_at < self.ttl_seconds

    async def get_models(self, force_refresh: bool = False) -> List[dict]:
        """
        Return the model list, scraping LMArena when the cache is empty or stale.

        A failed scrape falls back to the cached list, then to the saved
        models file, then to the built-in defaults. Never raises.
        """
        if not force_refresh and self._is_fresh():
            return list(self._models)
        async with self._lock:
            # Another caller may have refreshed while this one waited
            if not force_refresh and self._is_fresh():
                return list(self._models)
            try:
                models = await self._scrape()
            except Exception as e:
                debug_print(f"❌ Error fetching model list: {type(e).__name__}: {e}")
                models = []
            if models:
                self._models = models
                self._fetched_at = self._clock()
                self.source = "lmarena"
                _config_module.save_models(models)
                debug_print(f"✅ Cached {len(models)} models")
                return list(models)
            return self._fallback()

    async def refresh(self) -> List[dict]:
        return await self.get_models(force_refresh=True)

    def _fallback(self) -> List[dict]:
        if self._models:
            debug_print("⚠️ Serving stale cached model list")
            self.source = "stale-cache"
            return list(self._models)
        saved = [m for m in _config_module.get_models() if isinstance(m, dict) and m.get("id")]
        if saved:
            debug_print(f"⚠️ Serving {len(saved)} models from {_config_module.get_models_file()}")
            self.source = "file"
            return saved
        debug_print("⚠️ Serving built-in default model list")
        self.source = "default"
        return [dict(m) for m in constants.DEFAULT_MODELS]

    async def _scrape(self) -> List[dict]:
        request_id = f"models-{uuid7()}"
        session = await self.pool.acquire(request_id)
        failed = True
        try:
            adapter = self._adapter_factory(session.page)
            debug_print(f"🌐 Loading {self.target_url} to read the model list...")
            await adapter.navigate(self.target_url)
            page_body = await adapter.read_content()
            raw_models = extract_models(page_body)
            if not raw_models:
                debug_print("⚠️ Could not find models in page")
            failed = False
            return normalize_models(raw_models)
        finally:
            if failed:
                await self.pool.force_close(session)
            else:
                await self.pool.release(session, request_id)

    def info(self) -> dict:
        age = None if self._fetched_at is None else round(self._clock() - self._fetched_at, 1)
        return {
            "count": len(self._models),
            "source": self.source,
            "age_seconds": age,
            "ttl_seconds": self.ttl_seconds,
        }
