"""
Automatic challenge solvers tried before asking a human to intervene.
"""

import asyncio
import time
from typing import Callable, Optional

from camoufox.async_api import AsyncCamoufox

from . import constants
from .models import SolveResult
from .page_adapter import PlaywrightPageAdapter
from .utils import debug_print

# Render once, then poll `turnstile.getResponse(widgetId)` from Python: a long-running
# evaluate promise can hang if the page reloads underneath it.
RENDER_TURNSTILE_JS = """async ({ sitekey, action, cData }) => {
  const w = (window.wrappedJSObject || window);
  const sleep = (ms) => new Promise((r) => setTimeout(r, ms));
  const out = { ok: false, widgetId: null, stage: 'start', error: '' };
  if (!sitekey) { out.stage = 'no_sitekey'; return out; }

  async function ensureLoaded() {
    if (w.turnstile && typeof w.turnstile.render === 'function') return true;
    try {
      const h = w.document && w.document.head;
      if (!h) return false;
      if (!w.__LM_DUEL_TURNSTILE_INJECTED) {
        w.__LM_DUEL_TURNSTILE_INJECTED = true;
        out.stage = 'inject_script';
        await Promise.race([
          new Promise((resolve) => {
            const s = w.document.createElement('script');
            s.src = 'https://challenges.cloudflare.com/turnstile/v0/api.js?render=explicit';
            s.async = true;
            s.onload = () => resolve(true);
            s.onerror = () => resolve(false);
            h.appendChild(s);
          }),
          sleep(12000).then(() => false),
        ]);
      }
    } catch (e) { out.error = String(e); }
    const start = Date.now();
    while ((Date.now() - start) < 15000) {
      if (w.turnstile && typeof w.turnstile.render === 'function') return true;
      await sleep(250);
    }
    return false;
  }

  if (!(await ensureLoaded())) { out.stage = 'not_loaded'; return out; }

  out.stage = 'render';
  try {
    const el = w.document.createElement('div');
    el.id = 'lm-bridge-turnstile';
    el.style.cssText = 'position:fixed;left:20px;top:20px;z-index:2147483647;';
    (w.document.body || w.document.documentElement).appendChild(el);
    const params = new w.Object();
    params.sitekey = sitekey;
    if (action) params.action = action;
    if (cData) params.cData = cData;
    params.size = 'normal';
    params.appearance = 'interaction-only';
    params.callback = (tok) => { try { w.__LM_DUEL_TURNSTILE_TOKEN = String(tok || ''); } catch (e) {} };
    params['error-callback'] = () => { try { w.__LM_DUEL_TURNSTILE_TOKEN = ''; } catch (e) {} };
    out.widgetId = w.turnstile.render(el, params);
    out.ok = true;
    return out;
  } catch (e) {
    out.error = String(e);
    out.stage = 'render_error';
    return out;
  }
}"""

POLL_TURNSTILE_JS = """({ widgetId }) => {
  const w = (window.wrappedJSObject || window);
  try {
    const tok = w.__LM_DUEL_TURNSTILE_TOKEN;
    if (tok && String(tok).trim()) return String(tok);
    if (!w.turnstile || typeof w.turnstile.getResponse !== 'function') return '';
    return String(w.turnstile.getResponse(widgetId) || '');
  } catch (e) {
    return '';
  }
}"""


class NullChallengeSolver:
    """Used when automatic solving is disabled: every challenge goes to a human."""

    async def solve(self, url: str, site_key: str, action: Optional[str] = None, extra_data: Optional[str] = None) -> SolveResult:
        return SolveResult(success=False, error="automatic solving disabled")


class BrowserTurnstileSolver:
    """
    Mint a Turnstile token for the captured site key in a separate headless
    Camoufox instance, clicking the widget while waiting for it to resolve.
    """

    def __init__(
        self,
        *,
        headless: bool = True,
        timeout_seconds: float = constants.CHALLENGE_SOLVE_TIMEOUT_SECONDS,
        browser_factory: Optional[Callable[[], object]] = None,
    ) -> None:
        self.headless = headless
        self.timeout_seconds = float(timeout_seconds)
        self._browser_factory = browser_factory or (
            lambda: AsyncCamoufox(headless=self.headless, main_world_eval=True)
        )

    async def solve(self, url: str, site_key: str, action: Optional[str] = None, extra_data: Optional[str] = None) -> SolveResult:
        if not site_key:
            return SolveResult(success=False, error="no site key")
        started = time.monotonic()
        debug_print(f"🧩 Solving Turnstile for {url} (sitekey={site_key[:12]}...)")
        try:
            async with self._browser_factory() as browser:
                page = await browser.new_page()
                await page.goto(url, wait_until="domcontentloaded")
                info = await asyncio.wait_for(
                    page.evaluate(RENDER_TURNSTILE_JS, {"sitekey": site_key, "action": action, "cData": extra_data}),
                    timeout=30.0,
                )
                widget_id = info.get("widgetId") if isinstance(info, dict) else None
                if widget_id is None:
                    stage = info.get("stage") if isinstance(info, dict) else "unknown"
                    return SolveResult(success=False, error=f"render failed (stage={stage})")

                adapter = PlaywrightPageAdapter(page)
                while time.monotonic() - started < self.timeout_seconds:
                    try:
                        token = await asyncio.wait_for(
                            page.evaluate(POLL_TURNSTILE_JS, {"widgetId": widget_id}),
                            timeout=5.0,
                        )
                    except asyncio.TimeoutError:
                        token = ""
                    token = str(token or "").strip()
                    if token:
                        debug_print(f"✅ Turnstile solved in {time.monotonic() - started:.1f}s")
                        return SolveResult(success=True, token=token)
                    await adapter.click_challenge_widget()
                    await asyncio.sleep(1.0)
        except Exception as e:
            debug_print(f"❌ Turnstile solver failed: {type(e).__name__}: {e}")
            return SolveResult(success=False, error=str(e))
        return SolveResult(success=False, error=f"timed out after {self.timeout_seconds:.0f}s")


def build_solver(config: dict):
    if not config.get("solver_enabled"):
        return NullChallengeSolver()
    return BrowserTurnstileSolver(
        headless=bool(config.get("headless", True)),
        timeout_seconds=float(config.get("solver_timeout_seconds", constants.CHALLENGE_SOLVE_TIMEOUT_SECONDS)),
    )
