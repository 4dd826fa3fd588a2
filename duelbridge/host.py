"""
Session Host: the single shared browser engine behind every pooled session.

Handles:
- Launching Camoufox (default) or Playwright Chromium, through a proxy when one is available
- Restarting the engine on age/inactivity/disconnect
- Fingerprint profile rotation after repeated interaction failures
- Creating configured sessions (context + page) and tracking their closure
"""

import asyncio
import random
import time
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from camoufox.async_api import AsyncCamoufox
from playwright.async_api import async_playwright

from . import constants
from .backoff import retry_with_backoff
from .errors import HostInitFailure
from .models import BrowserProfile, ProxyDescriptor, Session
from .rewriter import install_stream_tap
from .utils import debug_print, short_id

Launcher = Callable[[dict, Optional[ProxyDescriptor]], Awaitable[Tuple[object, Callable[[], Awaitable[None]]]]]


async def launch_engine(config: dict, proxy: Optional[ProxyDescriptor]):
    """
    Launch the configured engine and return `(browser, close)`.
    """
    headless = bool(config.get("headless", True))
    launch_timeout = float(config.get("launch_timeout_seconds", constants.HOST_LAUNCH_TIMEOUT_SECONDS))
    launch_timeout = max(20.0, min(launch_timeout, 300.0))
    proxy_options = proxy.to_playwright() if proxy is not None else None

    if config.get("engine") == constants.ENGINE_CHROMIUM:
        debug_print(f"🌐 Launching Chromium (headless={headless})...")
        playwright = await async_playwright().start()
        try:
            browser = await asyncio.wait_for(
                playwright.chromium.launch(
                    headless=headless,
                    proxy=proxy_options,
                    args=[
                        "--disable-blink-features=AutomationControlled",
                        "--no-first-run",
                        "--no-default-browser-check",
                    ],
                ),
                timeout=launch_timeout,
            )
        except BaseException:
            await playwright.stop()
            raise

        async def _close_chromium() -> None:
            try:
                await browser.close()
            finally:
                await playwright.stop()

        return browser, _close_chromium

    debug_print(f"🦊 Launching Camoufox (headless={headless})...")
    launch_options = {"headless": headless, "main_world_eval": True}
    if proxy_options:
        launch_options["proxy"] = proxy_options
    browser_cm = AsyncCamoufox(**launch_options)
    browser = await asyncio.wait_for(browser_cm.__aenter__(), timeout=launch_timeout)

    async def _close_camoufox() -> None:
        await browser_cm.__aexit__(None, None, None)

    return browser, _close_camoufox


class SessionHost:
    """
    Process-wide owner of the browser engine.

    Concurrent callers of `get_host()` wait on one in-flight launch instead of
    starting a second engine.
    """

    def __init__(
        self,
        config: dict,
        *,
        proxy_provider=None,
        launcher: Optional[Launcher] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.proxy_provider = proxy_provider
        self._launcher = launcher or launch_engine
        self._clock = clock
        self._init_lock = asyncio.Lock()
        self._close_engine: Optional[Callable[[], Awaitable[None]]] = None
        self._profiles = [BrowserProfile.from_dict(p) for p in constants.BROWSER_PROFILES]
        self._profile_index = 0
        self._timezone_index = random.randrange(len(constants.TIMEZONES))
        self._session_close_listeners: List[Callable[[Session], None]] = []

        self.browser = None
        self.proxy: Optional[ProxyDescriptor] = None
        self.connected = False
        self.started_at: Optional[float] = None
        self.last_activity_at: Optional[float] = None
        self.consecutive_failures = 0
        self.restart_count = 0
        self.sessions: Dict[str, Session] = {}

        self.max_age_seconds = float(config.get("max_host_age_seconds", constants.MAX_HOST_AGE_SECONDS))
        self.max_idle_seconds = float(config.get("max_host_idle_seconds", constants.MAX_HOST_IDLE_SECONDS))
        self.restart_settle_seconds = float(constants.HOST_RESTART_SETTLE_SECONDS)
        self.launch_attempts = int(config.get("launch_attempts", 2))

    # --- Identity ---

    @property
    def active_profile(self) -> BrowserProfile:
        return self._profiles[self._profile_index]

    @property
    def profile_names(self) -> List[str]:
        return [p.name for p in self._profiles]

    def rotate_identity(self, profile_name: Optional[str] = None) -> BrowserProfile:
        """Switch to `profile_name`, or to the next profile in the list."""
        if profile_name:
            wanted = profile_name.strip().lower()
            for index, profile in enumerate(self._profiles):
                if profile.name.lower() == wanted:
                    self._profile_index = index
                    break
            else:
                raise ValueError(f"Unknown browser profile: {profile_name}")
        else:
            self._profile_index = (self._profile_index + 1) % len(self._profiles)
        self.consecutive_failures = 0
        debug_print(f"🎭 Browser profile rotated to {self.active_profile.name}")
        return self.active_profile

    def record_failure(self) -> bool:
        """Count one failed interaction. Returns True when this triggered a rotation."""
        self.consecutive_failures += 1
        debug_print(
            f"⚠️ Interaction failure recorded ({self.consecutive_failures}/{constants.FAILURES_BEFORE_ROTATION})"
        )
        if self.consecutive_failures >= constants.FAILURES_BEFORE_ROTATION:
            self.rotate_identity()
            return True
        return False

    def record_success(self) -> None:
        self.consecutive_failures = 0

    def _next_timezone(self) -> str:
        timezone_id = constants.TIMEZONES[self._timezone_index]
        self._timezone_index = (self._timezone_index + 1) % len(constants.TIMEZONES)
        return timezone_id

    @staticmethod
    def _jittered_viewport(profile: BrowserProfile) -> dict:
        jitter = constants.VIEWPORT_JITTER_PX
        return {
            "width": int(profile.viewport["width"] + random.randint(-jitter, jitter)),
            "height": int(profile.viewport["height"] + random.randint(-jitter, jitter)),
        }

    # --- Lifecycle ---

    def touch(self) -> None:
        self.last_activity_at = self._clock()

    def _restart_reason(self) -> Optional[str]:
        if self.started_at is None:
            return None
        now = self._clock()
        if now - self.started_at > self.max_age_seconds:
            return "max age exceeded"
        if self.last_activity_at is not None and now - self.last_activity_at > self.max_idle_seconds:
            return "inactivity"
        return None

    def _has_active_sessions(self) -> bool:
        return any(s.in_use and not s.parked for s in self.sessions.values())

    async def get_host(self):
        """Return the running engine, launching or restarting it first when needed."""
        async with self._init_lock:
            if self.browser is not None and not self.connected:
                debug_print("⚠️ Browser disconnected. Relaunching...")
                await self._teardown_locked()
            if self.browser is not None:
                reason = self._restart_reason()
                if reason and self._has_active_sessions():
                    debug_print(f"⏳ Host restart ({reason}) deferred: sessions in use")
                elif reason:
                    debug_print(f"🔄 Restarting browser host ({reason})")
                    await self._restart_locked()
            if self.browser is None:
                await self._initialize_locked()
            self.touch()
            return self.browser

    async def restart(self) -> None:
        async with self._init_lock:
            await self._restart_locked()

    async def _restart_locked(self) -> None:
        await self._teardown_locked()
        if self.restart_settle_seconds > 0:
            await asyncio.sleep(self.restart_settle_seconds)
        await self._initialize_locked()
        self.restart_count += 1

    async def _initialize_locked(self) -> None:
        proxy = None
        if self.proxy_provider is not None:
            require_compatible = bool(self.config.get("require_target_compatible_proxy", True))
            try:
                proxy = self.proxy_provider.get_proxy(require_compatible)
            except Exception as e:
                debug_print(f"⚠️ Proxy provider unavailable ({type(e).__name__}: {e}). Using direct connection.")
                proxy = None

        async def _launch(with_proxy: Optional[ProxyDescriptor]):
            return await self._launcher(self.config, with_proxy)

        try:
            browser, close_engine = await retry_with_backoff(
                lambda: _launch(proxy),
                max_attempts=self.launch_attempts,
                description="Browser launch",
            )
        except Exception as e:
            if proxy is None:
                raise HostInitFailure(f"Browser launch failed: {e}") from e
            debug_print(f"⚠️ Launch through proxy {proxy.server} failed. Retrying with a direct connection...")
            proxy = None
            try:
                browser, close_engine = await _launch(None)
            except Exception as direct_error:
                raise HostInitFailure(f"Browser launch failed: {direct_error}") from direct_error

        self.browser = browser
        self.proxy = proxy
        self._close_engine = close_engine
        self.connected = True
        self.started_at = self._clock()
        self.last_activity_at = self.started_at
        try:
            browser.on("disconnected", lambda *_: self._on_disconnected())
        except AttributeError:
            pass
        debug_print(
            f"✅ Browser host ready (profile={self.active_profile.name}, "
            f"proxy={proxy.server if proxy else 'direct'})"
        )

    async def _teardown_locked(self) -> None:
        for session in list(self.sessions.values()):
            await self.close_session(session)
        close_engine = self._close_engine
        self.browser = None
        self._close_engine = None
        self.connected = False
        self.started_at = None
        if close_engine is not None:
            try:
                await close_engine()
            except Exception as e:
                debug_print(f"⚠️ Error closing browser: {e}")

    def _on_disconnected(self) -> None:
        self.connected = False
        debug_print("⚠️ Browser host disconnected")

    async def close(self) -> None:
        async with self._init_lock:
            await self._teardown_locked()

    # --- Sessions ---

    def add_session_close_listener(self, listener: Callable[[Session], None]) -> None:
        self._session_close_listeners.append(listener)

    def _forget_session(self, session: Session) -> None:
        if self.sessions.pop(session.id, None) is None:
            return
        session.closed = True
        for listener in list(self._session_close_listeners):
            try:
                listener(session)
            except Exception as e:
                debug_print(f"⚠️ Session close listener failed: {e}")

    async def new_session(self) -> Session:
        """Create one configured context + page on the shared engine."""
        browser = await self.get_host()
        profile = self.active_profile
        timezone_id = self._next_timezone()
        context = await browser.new_context(
            user_agent=profile.user_agent,
            viewport=self._jittered_viewport(profile),
            timezone_id=timezone_id,
            extra_http_headers=dict(profile.headers),
            geolocation=dict(constants.DEFAULT_GEOLOCATION),
            permissions=["geolocation"],
        )
        try:
            await context.add_init_script(constants.WEBDRIVER_MASK_SCRIPT)
            await context.add_init_script(constants.TURNSTILE_SNIFF_SCRIPT)
            page = await context.new_page()
            await install_stream_tap(page)
            page.set_default_navigation_timeout(constants.DEFAULT_NAVIGATION_TIMEOUT_MS)
            page.set_default_timeout(constants.DEFAULT_ACTION_TIMEOUT_MS)
        except Exception:
            await context.close()
            raise

        session = Session(page=page, context=context, profile_name=profile.name)
        self.sessions[session.id] = session
        page.on("close", lambda *_: self._forget_session(session))
        self.touch()
        debug_print(
            f"🆕 Session {short_id(session.id)} created "
            f"(profile={profile.name}, tz={timezone_id}, live={len(self.sessions)})"
        )
        return session

    async def close_session(self, session: Session) -> None:
        if session.closed and session.id not in self.sessions:
            return
        try:
            if session.context is not None:
                await session.context.close()
            else:
                await session.page.close()
        except Exception as e:
            debug_print(f"⚠️ Error closing session {short_id(session.id)}: {e}")
        self._forget_session(session)
        session.closed = True

    async def refresh_fingerprint(self, session: Session) -> None:
        """Re-apply the active profile to a live session before it is reused for a retry."""
        profile = self.active_profile
        await session.page.set_viewport_size(self._jittered_viewport(profile))
        headers = dict(profile.headers)
        headers["user-agent"] = profile.user_agent
        await session.page.set_extra_http_headers(headers)
        session.profile_name = profile.name
        debug_print(f"🎭 Session {short_id(session.id)} fingerprint refreshed ({profile.name})")

    def info(self) -> dict:
        now = self._clock()
        return {
            "connected": self.connected,
            "engine": self.config.get("engine", constants.ENGINE_CAMOUFOX),
            "profile": self.active_profile.name,
            "profiles": self.profile_names,
            "proxy": self.proxy.server if self.proxy else None,
            "uptime_seconds": round(now - self.started_at, 1) if self.started_at is not None else None,
            "idle_seconds": round(now - self.last_activity_at, 1) if self.last_activity_at is not None else None,
            "live_sessions": len(self.sessions),
            "consecutive_failures": self.consecutive_failures,
            "restart_count": self.restart_count,
        }
