from __future__ import annotations

# Probe settings
PROBE_INTERVAL_SECONDS = 5.0  # one tick probes every target once
PROBE_TIMEOUT_SECONDS = 2.0  # fail if no handshake/reply within this time
PROBE_GRACE_SECONDS = 0.5  # extra slack for subprocess start-up and teardown

# Rolling statistics window (seconds)
WINDOW_SECONDS = 300

# A gap between ticks larger than this means the process was suspended
STALL_THRESHOLD_SECONDS = 30.0

# Per-subscriber buffer of the result stream; oldest entries drop when full
SUBSCRIBER_QUEUE_SIZE = 1000

# Table refresh rate (seconds) - can be faster than probe interval to feel responsive
UI_REFRESH_INTERVAL = 0.5

# Target storage
TARGETS_FILE_NAME = "targets.json"
APP_DIR_NAME = "endpoint-monitor"

# Logging
LOG_FILE = "health_transitions.log"
LOG_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_ROTATE_DAYS = 90

# Health tiers: (min success rate, max average ms, max p90 ms)
OPTIMAL_TIER = (0.995, 15.0, 30.0)
GREAT_TIER = (0.99, 30.0, 80.0)
GOOD_TIER = (0.98, 80.0, 200.0)
WARN_MIN_SUCCESS = 0.95
BAD_MIN_SUCCESS = 0.70

# Health -> rich style
HEALTH_STYLES = {
    "optimal": "bold bright_green",
    "great": "green",
    "good": "cyan",
    "warn": "yellow",
    "bad": "bold dark_orange",
    "down": "bold red",
    "unknown": "dim",
    "unsupported": "magenta",
}

# Loaded with --examples
EXAMPLE_TARGETS: list[dict] = [
    {"name": "Cloudflare", "host": "1.1.1.1", "port": 443, "probe_type": "tcp"},
    {"name": "Netflix", "host": "netflix.com", "port": 443, "probe_type": "tcp"},
    {"name": "Google DNS", "host": "8.8.8.8", "port": 53, "probe_type": "tcp"},
    {"name": "YouTube", "host": "youtube.com", "port": 443, "probe_type": "tcp"},
    {"name": "Cloudflare Ping", "host": "1.1.1.1", "port": 0, "probe_type": "ping"},
    {"name": "Google Ping", "host": "google.com", "port": 0, "probe_type": "ping"},
    {
        "name": "Microsoft Ping",
        "host": "outlook.office365.com",
        "port": 0,
        "probe_type": "ping",
    },
    {"name": "Amazon", "host": "amazon.com", "port": 443, "probe_type": "tcp"},
]
