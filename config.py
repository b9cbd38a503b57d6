"""
config.py -- All tunable parameters for the bubble canvas client.

Every value here is loaded from environment variables so the client can be
pointed at a different store or tuned without touching code.

HOW TO READ THIS FILE:
  Each config value has a comment explaining:
    1. What it controls
    2. What happens if you raise/lower it
    3. The default and why it was chosen
"""

import os
import json as _json
import logging

# ---------------------------------------------------------------------------
# Helper: read an env var with a typed default
# ---------------------------------------------------------------------------

def _env(name, default, cast=str):
    """
    Read an environment variable and cast it to the right type.
    If the var is missing or empty, return *default* (already the right type).
    """
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        # Special handling for booleans -- "true"/"1"/"yes" are all truthy
        if cast is bool:
            return raw.strip().lower() in ("true", "1", "yes")
        return cast(raw)
    except (ValueError, TypeError):
        return default


# ---------------------------------------------------------------------------
# Store endpoint and session  (NEVER hard-code tokens -- always use env vars)
# ---------------------------------------------------------------------------

# Base URL of the bubble/channel store.  All endpoints hang off this prefix,
# e.g. GET {STORE_URL}/bubbles.
STORE_URL: str = _env("STORE_URL", "http://localhost:5001/api")

# Session token issued by the login flow (not handled here).  Sent on every
# authenticated request in the AUTH_HEADER header.
AUTH_TOKEN: str = _env("AUTH_TOKEN", "")

# Header carrying the session token.
AUTH_HEADER: str = _env("AUTH_HEADER", "x-auth-token")

# Local user id.  Left empty, it is read from the token payload (user.id).
USER_ID: str = _env("USER_ID", "")

# Deadline for every store request.  Without one a stalled request would
# hold its poller forever.
REQUEST_TIMEOUT_SEC: float = _env("REQUEST_TIMEOUT_SEC", 10.0, float)

# ---------------------------------------------------------------------------
# Polling
# ---------------------------------------------------------------------------

# How often the full bubble list is pulled.  Lower = other users' moves show
# up sooner, at one GET per interval.
BUBBLE_POLL_INTERVAL_SEC: float = _env("BUBBLE_POLL_INTERVAL_SEC", 3.0, float)

# How often the user's channel list is pulled.  Coarser than the message poll
# because each response carries up to CHANNEL_LIST_LIMIT populated channels.
CHANNEL_POLL_INTERVAL_SEC: float = _env("CHANNEL_POLL_INTERVAL_SEC", 15.0, float)

# How often the open channel's messages are pulled.  Only runs while the chat
# is open and a channel is active.
MESSAGE_POLL_INTERVAL_SEC: float = _env("MESSAGE_POLL_INTERVAL_SEC", 5.0, float)

# The store returns at most this many channels per user, newest first.
# Older channels are simply not listed; there is no pagination.
CHANNEL_LIST_LIMIT: int = 10

# ---------------------------------------------------------------------------
# Simulation
# ---------------------------------------------------------------------------

# Physics ticks per second.  60 matches a typical display refresh.
TICK_HZ: float = _env("TICK_HZ", 60.0, float)

# Bubble radius in canvas pixels (half the rendered bubble size).  Two
# bubbles settle when their centres are 2 * radius apart.
BUBBLE_RADIUS: float = _env("BUBBLE_RADIUS", 110.0, float)

# Constant pull toward every non-overlapping bubble.  Raising it clumps
# bubbles faster but makes them jitter harder once touching.
ATTRACTION_STRENGTH: float = _env("ATTRACTION_STRENGTH", 0.02, float)

# Constant push away from every overlapping bubble.
REPULSION_STRENGTH: float = _env("REPULSION_STRENGTH", 0.5, float)

# Push used when two centres (almost) coincide.
OVERLAP_FAILSAFE_STRENGTH: float = _env("OVERLAP_FAILSAFE_STRENGTH", 50.0, float)

# Multiplier applied to the summed force each tick.
DAMPING: float = _env("DAMPING", 0.99, float)

# Per-axis force clamp (pixels per tick).
MAX_FORCE: float = _env("MAX_FORCE", 30.0, float)

# Canvas extents used for boundary reflection.  Updated at runtime by resize.
SCREEN_WIDTH: float = _env("SCREEN_WIDTH", 1280.0, float)
SCREEN_HEIGHT: float = _env("SCREEN_HEIGHT", 800.0, float)

# Pairwise forces cost O(n^2) per tick.  Past this many bubbles a warning is
# logged; the simulation still runs every bubble.
MAX_SIMULATED_BUBBLES: int = _env("MAX_SIMULATED_BUBBLES", 200, int)

# ---------------------------------------------------------------------------
# Interaction
# ---------------------------------------------------------------------------

# Delay between a double-open and the pop request, long enough for the pop
# animation to finish.
POP_ANIMATION_DELAY_SEC: float = _env("POP_ANIMATION_DELAY_SEC", 0.3, float)

# A hold with no drag activity for this long is released locally.  Covers
# release events lost when the pointer leaves the window.
DRAG_RELEASE_TIMEOUT_SEC: float = _env("DRAG_RELEASE_TIMEOUT_SEC", 15.0, float)

# New bubbles spawn at a random point in [0, extent) on both axes.
NEW_BUBBLE_SPAWN_EXTENT: float = _env("NEW_BUBBLE_SPAWN_EXTENT", 300.0, float)

# Pastel palette for new bubbles.  Override with a JSON list.
BUBBLE_COLORS: list = ["#a2d9a2", "#a7c7e7", "#ffb3ba", "#ffdfba"]
_raw_colors = os.environ.get("BUBBLE_COLORS", "")
if _raw_colors:
    try:
        _parsed = _json.loads(_raw_colors)
        if isinstance(_parsed, list) and _parsed:
            BUBBLE_COLORS = [str(c) for c in _parsed]
    except ValueError:
        logging.getLogger(__name__).warning("BUBBLE_COLORS is not a JSON list, using defaults")

# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

# Ring the terminal bell when a message arrives in the open channel.
SOUND_CUE: bool = _env("SOUND_CUE", True, bool)

# Optional Telegram mirror for pings and failures.  Both must be set.
TELEGRAM_BOT_TOKEN: str = _env("TELEGRAM_BOT_TOKEN", "")
TELEGRAM_CHAT_ID: str = _env("TELEGRAM_CHAT_ID", "")

# ---------------------------------------------------------------------------
# Write queue
# ---------------------------------------------------------------------------

# Max queued store mutations before dropping the oldest.
WRITE_QUEUE_SIZE: int = _env("WRITE_QUEUE_SIZE", 200, int)

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

# Python log level.  DEBUG shows every store call; INFO is normal operations.
LOG_LEVEL: str = _env("LOG_LEVEL", "INFO")

# ---------------------------------------------------------------------------
# Local control server
# ---------------------------------------------------------------------------

# A front end reads state and posts user actions here.  Set to 0 to disable.
CONTROL_PORT: int = _env("CONTROL_PORT", 8080, int)

# Interface the control server binds to.
CONTROL_HOST: str = _env("CONTROL_HOST", "127.0.0.1")


# ---------------------------------------------------------------------------
# Startup banner -- printed when the client launches
# ---------------------------------------------------------------------------

def print_banner():
    """Print a clear summary of all active settings so you know what's running."""
    lines = [
        "",
        "=" * 60,
        "  BUBBLE CANVAS CLIENT",
        "=" * 60,
        f"  Store:           {STORE_URL}",
        f"  Session token:   {'configured' if AUTH_TOKEN else 'NOT SET'}",
        f"  User id:         {USER_ID or '(from token)'}",
        f"  Request timeout: {REQUEST_TIMEOUT_SEC:.1f}s",
        f"  Bubble poll:     {BUBBLE_POLL_INTERVAL_SEC:.1f}s",
        f"  Channel poll:    {CHANNEL_POLL_INTERVAL_SEC:.1f}s (max {CHANNEL_LIST_LIMIT} channels)",
        f"  Message poll:    {MESSAGE_POLL_INTERVAL_SEC:.1f}s",
        f"  Tick rate:       {TICK_HZ:.0f} Hz",
        f"  Canvas:          {SCREEN_WIDTH:.0f} x {SCREEN_HEIGHT:.0f}, radius {BUBBLE_RADIUS:.0f}",
        f"  Drag timeout:    {DRAG_RELEASE_TIMEOUT_SEC:.1f}s",
        f"  Sound cue:       {'on' if SOUND_CUE else 'off'}",
        f"  Telegram:        {'configured' if TELEGRAM_BOT_TOKEN and TELEGRAM_CHAT_ID else 'NOT SET'}",
        f"  Control port:    {CONTROL_PORT or 'disabled'}",
        f"  Log level:       {LOG_LEVEL}",
        "=" * 60,
        "",
    ]
    print("\n".join(lines))
