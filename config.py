# config.py
"""
Configuration settings for the timestamp relay and the feed sync driver.
"""

# ── Relay service ──────────────────────────────────────────────────────────

# Local interface only; the relay assumes a trusted loopback channel
RELAY_HOST = "127.0.0.1"
RELAY_PORT = 8080

# Seconds after the last push before /ping starts annotating the record
STALE_AFTER_SEC = 10

# ── Relay client ───────────────────────────────────────────────────────────

# Short on purpose: a blocked local loop is a transport failure, not a hang
CLIENT_TIMEOUT_SEC = 1.5

# ── Timestamp resolver ─────────────────────────────────────────────────────

# Added to items *before* the target while the target is moving forward (ms)
FORWARD_PENALTY_MS = 1_000_000

# ── Sync driver ────────────────────────────────────────────────────────────

# Seconds between relay polls
CHECK_INTERVAL = 2.0

# A forward jump larger than this (ms) drops the match-in-progress
HYSTERESIS_MS = 1000

# Switching feed context turns sync off instead of only resetting memory
DISABLE_ON_CONTEXT_CHANGE = True

# ── Producer ───────────────────────────────────────────────────────────────

# Seconds between play-head pushes
PRODUCER_PUSH_INTERVAL = 2.0

# ── Logging ────────────────────────────────────────────────────────────────

LOG_LEVEL  = "INFO"
LOG_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"
