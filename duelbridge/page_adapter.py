"""
Page adapter: the only place that knows how the target page is laid out.

The orchestrator talks to roles ("prompt_input", "submit", "challenge")
instead of selectors, so a layout change on the site only touches the
selector lists in constants.
"""

import asyncio
from typing import Any, Dict, List, Optional

from . import constants
from .errors import ActionTimeout, NavigationFailure, is_timeout_error
from .utils import debug_print

ROLE_SELECTORS: Dict[str, List[str]] = {
    "prompt_input": constants.PROMPT_INPUT_SELECTORS,
    "submit": constants.SUBMIT_BUTTON_SELECTORS,
    "challenge": constants.CHALLENGE_SELECTORS,
}

READ_TURNSTILE_PARAMS_JS = """() => {
  const w = (window.wrappedJSObject || window);
  const captured = w.capturedTurnstileParams;
  if (captured && captured.sitekey) return captured;
  const el = w.document.querySelector('[data-sitekey]');
  if (!el) return null;
  return {
    sitekey: el.getAttribute('data-sitekey'),
    action: el.getAttribute('data-action'),
    cData: el.getAttribute('data-cdata'),
    chlPageData: null,
    callbackName: el.getAttribute('data-callback'),
  };
}"""

APPLY_TURNSTILE_TOKEN_JS = """({ token, selector, callbackName }) => {
  const w = (window.wrappedJSObject || window);
  let applied = false;
  for (const el of w.document.querySelectorAll(selector)) {
    el.value = token;
    el.dispatchEvent(new Event('input', { bubbles: true }));
    el.dispatchEvent(new Event('change', { bubbles: true }));
    applied = true;
  }
  if (callbackName && typeof w[callbackName] === 'function') {
    try { w[callbackName](token); applied = true; } catch (e) {}
  }
  return applied;
}"""


def is_execution_context_destroyed_error(exc: BaseException) -> bool:
    message = str(exc)
    return "Execution context was destroyed" in message


def combine_arena_auth_cookies(cookies: list) -> Optional[str]:
    """
    Return the arena auth cookie value, joining the `.0`/`.1` halves when
    the site had to split an oversized session.
    """
    by_name = {}
    for cookie in cookies or []:
        name = str(cookie.get("name") or "")
        value = str(cookie.get("value") or "").strip()
        if name and value:
            by_name[name] = value
    whole = by_name.get(constants.ARENA_AUTH_COOKIE)
    if whole:
        return whole
    first_part, second_part = constants.ARENA_AUTH_COOKIE_PARTS
    if first_part in by_name:
        return by_name[first_part] + by_name.get(second_part, "")
    return None


class PlaywrightPageAdapter:
    def __init__(self, page, *, locate_timeout_ms: int = 30000) -> None:
        self.page = page
        self.locate_timeout_ms = int(locate_timeout_ms)

    async def navigate(self, url: str) -> None:
        try:
            await self.page.goto(url, wait_until="domcontentloaded")
        except Exception as e:
            if is_timeout_error(e):
                raise ActionTimeout(f"Navigation to {url} timed out: {e}") from e
            raise NavigationFailure(f"Navigation to {url} failed: {e}") from e

    async def read_content(self) -> str:
        try:
            return await self.page.content()
        except Exception as e:
            if is_timeout_error(e):
                raise ActionTimeout(f"Reading page content timed out: {e}") from e
            raise NavigationFailure(f"Reading page content failed: {e}") from e

    async def locate(self, role: str, *, timeout_ms: Optional[int] = None):
        """Wait for the first visible element playing `role`."""
        selectors = ROLE_SELECTORS.get(role)
        if not selectors:
            raise KeyError(f"Unknown page role: {role}")
        locator = self.page.locator(", ".join(selectors)).first
        try:
            await locator.wait_for(state="visible", timeout=timeout_ms or self.locate_timeout_ms)
        except Exception as e:
            if is_timeout_error(e):
                raise ActionTimeout(f"Timeout waiting for {role} element") from e
            raise
        return locator

    async def type_text(self, role: str, text: str) -> None:
        element = await self.locate(role)
        await element.fill(text)

    async def click(self, role: str) -> None:
        element = await self.locate(role)
        await element.click()

    async def read_stored_credentials(self) -> Optional[str]:
        try:
            cookies = await self.page.context.cookies()
        except Exception as e:
            debug_print(f"⚠️ Could not read session cookies: {e}")
            return None
        return combine_arena_auth_cookies(cookies)

    async def evaluate(self, script: str, arg: Any = None, retries: int = 3):
        """Evaluate in the page, retrying when a navigation destroyed the execution context."""
        retries = max(1, min(int(retries), 5))
        for attempt in range(retries):
            try:
                if arg is None:
                    return await self.page.evaluate(script)
                return await self.page.evaluate(script, arg)
            except Exception as e:
                if is_execution_context_destroyed_error(e) and attempt < retries - 1:
                    try:
                        await self.page.wait_for_load_state("domcontentloaded")
                    except Exception:
                        pass
                    await asyncio.sleep(0.25)
                    continue
                raise
        raise RuntimeError("Page.evaluate failed")

    async def dismiss_dialogs(self) -> int:
        """Click away consent/informational dialogs. Never raises."""
        dismissed = 0
        for selector in constants.DIALOG_DISMISS_SELECTORS:
            try:
                button = self.page.locator(selector).first
                if not await button.is_visible():
                    continue
                await button.click(timeout=constants.DIALOG_DISMISS_TIMEOUT_MS)
                dismissed += 1
            except Exception as e:
                debug_print(f"  ℹ️ Dialog dismiss skipped ({selector}): {e}")
        if dismissed:
            debug_print(f"  🧾 Dismissed {dismissed} dialog(s)")
        return dismissed

    async def detect_challenge(self) -> bool:
        """True when the page is showing an anti-automation challenge."""
        url = str(getattr(self.page, "url", "") or "")
        if constants.CLOUDFLARE_CHALLENGE_HOST in url:
            debug_print(f"  🛡️ Challenge detected via navigation target: {url}")
            return True
        try:
            title = await self.page.title()
        except Exception:
            title = ""
        if constants.CLOUDFLARE_CHALLENGE_TITLE in (title or ""):
            debug_print("  🛡️ Challenge detected via interstitial title")
            return True
        for selector in constants.CHALLENGE_SELECTORS:
            try:
                element = await self.page.query_selector(selector)
            except Exception:
                element = None
            if element:
                debug_print(f"  🛡️ Challenge detected via page content ({selector})")
                return True
        return False

    async def click_challenge_widget(self) -> bool:
        """
        Attempts to locate and click the Cloudflare Turnstile widget.
        Returns True when something was clicked.
        """
        debug_print("  🖱️  Attempting to click Cloudflare Turnstile...")
        for selector in constants.TURNSTILE_SELECTORS:
            try:
                elements = await self.page.query_selector_all(selector)
            except Exception:
                elements = []
            for element in elements or []:
                # Turnstile lives in an iframe: prefer clicking the checkbox inside it
                try:
                    frame = await element.content_frame()
                except Exception:
                    frame = None
                if frame is not None:
                    for inner_selector in constants.TURNSTILE_INNER_SELECTORS:
                        try:
                            inner = await frame.query_selector(inner_selector)
                            if inner:
                                await inner.click(force=True)
                                await asyncio.sleep(2)
                                return True
                        except Exception:
                            continue
                try:
                    await element.click(force=True)
                    await asyncio.sleep(2)
                    return True
                except Exception:
                    pass
                try:
                    box = await element.bounding_box()
                except Exception:
                    box = None
                if box:
                    x = box["x"] + (box["width"] / 2)
                    y = box["y"] + (box["height"] / 2)
                    debug_print(f"  🎯 Found widget at {x},{y}. Clicking...")
                    await self.page.mouse.click(x, y)
                    await asyncio.sleep(2)
                    return True
        return False

    async def read_challenge_params(self) -> Optional[dict]:
        try:
            params = await self.evaluate(READ_TURNSTILE_PARAMS_JS)
        except Exception as e:
            debug_print(f"  ⚠️ Could not read challenge parameters: {e}")
            return None
        if isinstance(params, dict) and params.get("sitekey"):
            return params
        return None

    async def apply_challenge_token(self, token: str, params: Optional[dict] = None) -> bool:
        callback_name = (params or {}).get("callbackName")
        try:
            return bool(await self.evaluate(
                APPLY_TURNSTILE_TOKEN_JS,
                {
                    "token": token,
                    "selector": constants.TURNSTILE_RESPONSE_INPUT,
                    "callbackName": callback_name,
                },
            ))
        except Exception as e:
            debug_print(f"  ⚠️ Failed to apply challenge token: {e}")
            return False
