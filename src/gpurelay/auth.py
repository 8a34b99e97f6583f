"""Shared-secret token storage for remote inference.

The token lives in ``~/.config/gpurelay/auth.json`` and is read by both
the server and the client. ``GPURELAY_AUTH_TOKEN`` overrides the stored
value on either side.
"""

from __future__ import annotations

import json
import logging
import os
import secrets
from datetime import datetime, timezone
from pathlib import Path

from gpurelay.protocol import ENV_AUTH_TOKEN

log = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".config" / "gpurelay"
AUTH_FILE = CONFIG_DIR / "auth.json"


def get_auth_path() -> Path:
    return AUTH_FILE


def _read_stored_token(path: Path) -> str | None:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    if not isinstance(data, dict):
        return None
    token = data.get("token")
    if isinstance(token, str) and token:
        return token
    return None


def get_current_token(path: Path | None = None) -> str | None:
    """Return the active token, or None when auth is not configured.

    Priority: ``GPURELAY_AUTH_TOKEN`` > the stored file. A missing or
    malformed file counts as no token.
    """
    return os.environ.get(ENV_AUTH_TOKEN) or _read_stored_token(path or get_auth_path())


def generate_token(path: Path | None = None) -> str:
    """Create a fresh random token, persist it (mode 0600) and return it."""
    path = path or get_auth_path()
    token = secrets.token_urlsafe(32)
    path.parent.mkdir(parents=True, exist_ok=True)

    config = {
        "token": token,
        "createdAt": datetime.now(timezone.utc).isoformat(),
    }
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as fh:
        fh.write(json.dumps(config, indent=2) + "\n")
    # O_CREAT's mode only applies to new files
    os.chmod(path, 0o600)

    log.info("wrote new auth token to %s", path)
    return token


def revoke_token(path: Path | None = None) -> bool:
    """Delete the stored token. Returns True if a file was removed."""
    path = path or get_auth_path()
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    log.info("revoked auth token at %s", path)
    return True
