"""
Constants for LMArena Duel Bridge.
All hardcoded values should be defined here.
"""

# ============================================================
# APPLICATION CONFIGURATION
# ============================================================

# Set to True for detailed logging, False for minimal logging
DEBUG = True

# Port to run the server on
PORT = 8000

# Default config file path
CONFIG_FILE = "config.json"

# Last model list scraped from LMArena
MODELS_FILE = "models.json"

# ============================================================
# HTTP STATUS CODES
# ============================================================

class HTTPStatus:
    """HTTP Status Codes used by the bridge"""
    OK = 200
    BAD_REQUEST = 400
    UNAUTHORIZED = 401
    FORBIDDEN = 403
    NOT_FOUND = 404
    REQUEST_TIMEOUT = 408
    TOO_MANY_REQUESTS = 429
    INTERNAL_SERVER_ERROR = 500
    BAD_GATEWAY = 502
    SERVICE_UNAVAILABLE = 503
    GATEWAY_TIMEOUT = 504


# Status code descriptions for logging
STATUS_MESSAGES = {
    200: "OK - Success",
    201: "Created",
    204: "No Content",
    301: "Moved Permanently",
    302: "Moved Temporarily",
    304: "Not Modified",
    400: "Bad Request - Invalid request syntax",
    401: "Unauthorized - Invalid or expired token",
    403: "Forbidden - Access denied",
    404: "Not Found - Resource doesn't exist",
    408: "Request Timeout",
    413: "Request Too Long - Payload too large",
    422: "Unprocessable Entity",
    429: "Too Many Requests - Rate limit exceeded",
    500: "Internal Server Error",
    502: "Bad Gateway",
    503: "Service Unavailable",
    504: "Gateway Timeout",
}

# Statuses on the evaluation endpoint that signal an anti-automation block
AUTH_REJECTION_STATUSES = (HTTPStatus.UNAUTHORIZED, HTTPStatus.FORBIDDEN)

# ============================================================
# ARENA ORIGINS & ENDPOINTS
# ============================================================

LMARENA_URL = "https://lmarena.ai/"

# Outbound calls that carry a dual-model evaluation
EVALUATION_URL_MARKERS = (
    "https://arena-api-stable.vercel.app/evaluation",
    "/nextjs-api/stream/create-evaluation",
)

NEUTRAL_PAGE_URL = "about:blank"

# Page binding the fetch tap reports evaluation response chunks through
STREAM_BINDING_NAME = "__lmDuelReportChunk"

# ============================================================
# PAYLOAD CONSTANTS
# ============================================================

EVALUATION_MODALITY = "chat"
EVALUATION_MODE = "side-by-side"
MESSAGE_STATUS_PENDING = "pending"

# Header carrying the session credential on the rewritten request
CREDENTIAL_HEADER = "supabase-jwt"
TURNSTILE_RESPONSE_HEADER = "cf-turnstile-response"
CONTENT_TYPE_APPLICATION_JSON = "application/json"

# Model slots as they appear in the response stream
MODEL_SLOT_KEYS = {"a": "A", "b": "B"}

# ============================================================
# COOKIE NAMES
# ============================================================

ARENA_AUTH_COOKIE = "arena-auth-prod-v1"
ARENA_AUTH_COOKIE_PARTS = ("arena-auth-prod-v1.0", "arena-auth-prod-v1.1")

# ============================================================
# PAGE SELECTORS
# ============================================================

PROMPT_INPUT_SELECTORS = [
    'textarea[placeholder*="Ask anything"]',
    'textarea[placeholder*="Send a message"]',
    "textarea",
]

SUBMIT_BUTTON_SELECTORS = [
    'form button[type="submit"]',
    'button[aria-label*="Send"]',
]

CHALLENGE_SELECTORS = [
    'iframe[src*="challenges.cloudflare.com/turnstile/if"]',
    'iframe[title*="captcha"]',
    'iframe[title*="challenge"]',
]

# Consent banners and informational modals shown on first visit
DIALOG_DISMISS_SELECTORS = [
    'button:has-text("Accept")',
    'button:has-text("I agree")',
    'button:has-text("Got it")',
    'button:has-text("Close")',
    '[role="dialog"] button[aria-label="Close"]',
]

TURNSTILE_SELECTORS = [
    '#lm-bridge-turnstile',
    '#lm-bridge-turnstile iframe',
    '#cf-turnstile',
    'iframe[src*="challenges.cloudflare.com"]',
    '[style*="display: grid"] iframe'
]

TURNSTILE_INNER_SELECTORS = [
    "input[type='checkbox']",
    "div[role='checkbox']",
    "label",
]

TURNSTILE_RESPONSE_INPUT = 'textarea[name="cf-turnstile-response"], input[name="cf-turnstile-response"]'

# ============================================================
# TURNSTILE / CLOUDFLARE
# ============================================================

CLOUDFLARE_CHALLENGE_TITLE = "Just a moment"
CLOUDFLARE_CHALLENGE_HOST = "challenges.cloudflare.com"

# Captures the options LMArena passes to turnstile.render() the first time it is called
TURNSTILE_SNIFF_SCRIPT = """
(() => {
  const w = window;
  w.capturedTurnstileParams = w.capturedTurnstileParams || null;
  const wrap = (ts) => {
    if (!ts || typeof ts.render !== 'function' || ts.__lmDuelWrapped) return ts;
    const originalRender = ts.render.bind(ts);
    ts.render = function (element, options) {
      try {
        if (!w.capturedTurnstileParams && options) {
          w.capturedTurnstileParams = {
            sitekey: options.sitekey || null,
            action: options.action || null,
            cData: options.cData || null,
            chlPageData: options.chlPageData || null,
            callbackName: (options.callback && options.callback.name) || null,
          };
        }
      } catch (e) {}
      return originalRender(element, options);
    };
    ts.__lmDuelWrapped = true;
    return ts;
  };
  let current = wrap(w.turnstile);
  try {
    Object.defineProperty(w, 'turnstile', {
      configurable: true,
      get() { return current; },
      set(value) { current = wrap(value); },
    });
  } catch (e) {}
})();
"""

WEBDRIVER_MASK_SCRIPT = "Object.defineProperty(navigator, 'webdriver', {get: () => undefined});"

# ============================================================
# BROWSER PROFILES
# ============================================================

BROWSER_PROFILES = [
    {
        "name": "Chrome Mac",
        "user_agent": (
            "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) "
            "Chrome/136.0.0.0 Safari/537.36"
        ),
        "viewport": {"width": 1920, "height": 1080},
        "headers": {
            "sec-ch-ua": '"Chromium";v="136", "Google Chrome";v="136", "Not.A/Brand";v="99"',
            "sec-ch-ua-mobile": "?0",
            "sec-ch-ua-platform": '"macOS"',
        },
    },
    {
        "name": "Chrome Windows",
        "user_agent": (
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) "
            "Chrome/136.0.0.0 Safari/537.36"
        ),
        "viewport": {"width": 1920, "height": 1080},
        "headers": {
            "sec-ch-ua": '"Chromium";v="136", "Google Chrome";v="136", "Not.A/Brand";v="99"',
            "sec-ch-ua-mobile": "?0",
            "sec-ch-ua-platform": '"Windows"',
        },
    },
    {
        "name": "Safari Mac",
        "user_agent": (
            "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) "
            "Version/17.0 Safari/605.1.15"
        ),
        "viewport": {"width": 1920, "height": 1080},
        "headers": {
            "sec-ch-ua": '"Not.A/Brand";v="99", "Apple Safari";v="17"',
            "sec-ch-ua-mobile": "?0",
            "sec-ch-ua-platform": '"macOS"',
        },
    },
    {
        "name": "Edge Windows",
        "user_agent": (
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) "
            "Chrome/136.0.0.0 Safari/537.36 Edg/136.0.0.0"
        ),
        "viewport": {"width": 1920, "height": 1080},
        "headers": {
            "sec-ch-ua": '"Chromium";v="136", "Microsoft Edge";v="136", "Not.A/Brand";v="99"',
            "sec-ch-ua-mobile": "?0",
            "sec-ch-ua-platform": '"Windows"',
        },
    },
]

TIMEZONES = [
    "America/New_York",
    "America/Chicago",
    "America/Denver",
    "America/Los_Angeles",
    "Europe/London",
    "Europe/Paris",
    "Asia/Tokyo",
    "Australia/Sydney",
]

DEFAULT_GEOLOCATION = {"latitude": 37.7749, "longitude": -122.4194}

# Browser engines the host can launch
ENGINE_CAMOUFOX = "camoufox"
ENGINE_CHROMIUM = "chromium"
VALID_ENGINES = {ENGINE_CAMOUFOX, ENGINE_CHROMIUM}

# ============================================================
# POOL LIMITS
# ============================================================

DEFAULT_MAX_POOL_SIZE = 1
DEFAULT_MAX_CONCURRENT = 1
DEFAULT_MAX_TABS_ALLOWED = 2

QUEUE_TIMEOUT_SECONDS = 60
FORCE_CLOSE_TIMEOUT_SECONDS = 30
PAGE_RESET_TIMEOUT_SECONDS = 5

# ============================================================
# HOST LIFECYCLE
# ============================================================

MAX_HOST_AGE_SECONDS = 30 * 60
MAX_HOST_IDLE_SECONDS = 5 * 60
HOST_RESTART_SETTLE_SECONDS = 2
HOST_LAUNCH_TIMEOUT_SECONDS = 90
FAILURES_BEFORE_ROTATION = 3

# Page defaults applied to every new session (milliseconds)
DEFAULT_NAVIGATION_TIMEOUT_MS = 90000
DEFAULT_ACTION_TIMEOUT_MS = 90000

# Viewport jitter applied per session (pixels, +/-)
VIEWPORT_JITTER_PX = 50

# ============================================================
# INTERACTION TIMING
# ============================================================

MAX_ATTEMPTS = 2
INTERCEPT_WAIT_SECONDS = 15
SETTLE_DELAY_RANGE_SECONDS = (5.0, 7.0)
COMPLETION_TIMEOUT_SECONDS = 180
DIALOG_DISMISS_TIMEOUT_MS = 1500
CHALLENGE_SOLVE_TIMEOUT_SECONDS = 120

# ============================================================
# BACKOFF SETTINGS
# ============================================================

BACKOFF_MAX_ATTEMPTS = 3
BACKOFF_INITIAL_DELAY_SECONDS = 1.0
BACKOFF_MAX_DELAY_SECONDS = 30.0
BACKOFF_FACTOR = 2.0
BACKOFF_JITTER_RATIO = 0.3


# ============================================================
# MODEL CATALOG
# ============================================================

MODEL_CACHE_TTL_SECONDS = 60 * 60

# The arena page embeds its model list in the Next.js flight data
INITIAL_MODELS_PATTERN = r'{\\"initialModels\\":(\[.*?\]),\\"initialModel[A-Z]Id'

# Served when LMArena cannot be reached and no scraped list was saved
DEFAULT_MODELS = [
    {"id": "chatgpt-4o-latest-20250326", "name": "chatgpt-4o-latest-20250326", "organization": "openai"},
    {"id": "claude-3-5-sonnet-20241022", "name": "claude-3-5-sonnet-20241022", "organization": "anthropic"},
    {"id": "gemini-2.0-flash-001", "name": "gemini-2.0-flash-001", "organization": "google"},
    {"id": "gemini-2.5-flash-preview-05-20", "name": "gemini-2.5-flash-preview-05-20", "organization": "google"},
    {"id": "grok-3-preview-02-24", "name": "grok-3-preview-02-24", "organization": "xai"},
]
