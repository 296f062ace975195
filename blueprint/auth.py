# blueprint/auth.py
"""
API key auth and caller identity.

Env vars:
- MOCK_AUTH (default: true): bypass key checks in dev
- API_KEYS: comma-separated allowed keys; `key=user_id` binds a key to a user
- API_KEYS_FILE: optional path to file with one key (or key=user_id) per line
- MOCK_USER_ID (default: dev-user): identity used under MOCK_AUTH when no header is sent
- REQUIRE_BOUND_KEYS (default: false): unbound keys get no identity, so every
  caller must present a key bound to a user

Identity: a key bound to a user always acts as that user. An unbound key is a
trusted service key: its holder may name any caller in the `x-user-id` header.
Deployments that hand keys to end users must bind them or set REQUIRE_BOUND_KEYS.
"""

import os
from typing import Dict, Optional

from blueprint.monitoring import logger

MOCK_AUTH = os.getenv("MOCK_AUTH", "true").lower() in ("1", "true", "yes")
API_KEYS_ENV = os.getenv("API_KEYS", "")
API_KEYS_FILE = os.getenv("API_KEYS_FILE", "")
MOCK_USER_ID = os.getenv("MOCK_USER_ID", "dev-user")
REQUIRE_BOUND_KEYS = os.getenv("REQUIRE_BOUND_KEYS", "false").lower() in ("1", "true", "yes")

API_KEY_HEADER = "x-api-key"
USER_ID_HEADER = "x-user-id"


def _parse_entry(raw: str, keys: Dict[str, Optional[str]]) -> None:
    entry = raw.strip()
    if not entry or entry.startswith("#"):
        return
    key, sep, user = entry.partition("=")
    keys[key.strip()] = (user.strip() or None) if sep else None


def _load_api_keys() -> Dict[str, Optional[str]]:
    """Allowed keys mapped to their bound user id (None when unbound)."""
    keys: Dict[str, Optional[str]] = {}
    for k in API_KEYS_ENV.split(","):
        _parse_entry(k, keys)
    if API_KEYS_FILE and os.path.exists(API_KEYS_FILE):
        try:
            with open(API_KEYS_FILE, "r", encoding="utf-8") as f:
                for line in f:
                    _parse_entry(line, keys)
        except OSError as e:
            logger.warning("could not read API_KEYS_FILE", extra={"path": API_KEYS_FILE, "error": str(e)})
    return keys


API_KEYS = _load_api_keys()


def is_key_allowed(api_key: Optional[str]) -> bool:
    """Check if API key is valid. If MOCK_AUTH=true, always returns True."""
    if MOCK_AUTH:
        return True
    if not api_key:
        return False
    return api_key in API_KEYS


def resolve_user_id(api_key: Optional[str], header_user_id: Optional[str]) -> Optional[str]:
    """Caller identity for an allowed request, or None when it cannot be determined."""
    bound = API_KEYS.get(api_key) if api_key else None
    if bound:
        return bound
    if REQUIRE_BOUND_KEYS and not MOCK_AUTH:
        return None
    user_id = (header_user_id or "").strip()
    if user_id:
        return user_id
    return MOCK_USER_ID if MOCK_AUTH else None
