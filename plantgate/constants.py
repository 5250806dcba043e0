"""
Business logic constants for the plantgate service.

These values are stable across environments (dev/staging/prod) and do not
need env-var overrides. For operational parameters that vary per environment
(tier limits, timeouts, ad caps, time zone), see config.py.
"""

API_TITLE = "PlantGate Entitlements API"
API_VERSION = "1.0.0"

# --- Subject storage namespaces ---
USER_KEY_PREFIX = "user:"
GUEST_KEY_PREFIX = "guest:"
LOCAL_DEVICE_ID = "local"  # Single on-device guest

# --- Day keys ---
DAY_KEY_FORMAT = "%Y-%m-%d"  # Local calendar date, e.g. "2025-06-01"

# --- HTTP headers ---
GUEST_ID_HEADER = "X-Guest-Id"
PAYMENT_SIGNATURE_HEADER = "X-Payment-Signature"
