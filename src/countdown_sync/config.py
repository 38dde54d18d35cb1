"""Runtime settings, overridable from the environment."""

import os

# Shared storage key the envelope lives under
STORAGE_KEY = os.environ.get("COUNTDOWN_STORAGE_KEY", "timer-app-state-v2")

# Seconds between countdown recomputations
TICK_INTERVAL = float(os.environ.get("COUNTDOWN_TICK_INTERVAL", "0.25"))

# When set, contexts share a JSON file instead of process memory
STORAGE_PATH = os.environ.get("COUNTDOWN_STORAGE_PATH") or None
STORAGE_POLL_INTERVAL = float(os.environ.get("COUNTDOWN_STORAGE_POLL_INTERVAL", "0.5"))

MAX_CONTEXTS = int(os.environ.get("COUNTDOWN_MAX_CONTEXTS", "100"))
MAX_CLIENTS_PER_CONTEXT = int(os.environ.get("COUNTDOWN_MAX_CLIENTS_PER_CONTEXT", "100"))

HOST = os.environ.get("COUNTDOWN_HOST", "127.0.0.1")
PORT = int(os.environ.get("COUNTDOWN_PORT", "8003"))
