# orchestration_engine/certificates/challenges.py
"""
Domain-ownership challenge store.

Tokens published here are served by the ingress under the challenge
prefix. An optional webroot is shared with external ACME clients (e.g. a
certbot container running in webroot mode): tokens they write to
<webroot>/.well-known/acme-challenge/ are served as well.
"""

import logging
import re
import threading
from pathlib import Path
from typing import Dict, Optional

logger = logging.getLogger(__name__)


# ACME tokens are base64url
_TOKEN_RE = re.compile(r"^[A-Za-z0-9_-]+$")

WEBROOT_CHALLENGE_DIR = Path(".well-known") / "acme-challenge"


class ChallengeStore:
    """Thread-safe token -> key authorization map."""

    def __init__(self, webroot: Optional[str] = None):
        self._tokens: Dict[str, str] = {}
        self._lock = threading.Lock()
        self._webroot = Path(webroot) if webroot else None

    @property
    def webroot(self) -> Optional[Path]:
        return self._webroot

    def publish(self, token: str, key_authorization: str) -> None:
        if not _TOKEN_RE.match(token):
            raise ValueError(f"Invalid challenge token: {token!r}")
        with self._lock:
            self._tokens[token] = key_authorization
        logger.debug(f"[challenges] Published token {token}")

    def remove(self, token: str) -> None:
        with self._lock:
            self._tokens.pop(token, None)

    def lookup(self, token: str) -> Optional[str]:
        """Key authorization for token, from memory first and then the webroot."""
        if not _TOKEN_RE.match(token):
            return None

        with self._lock:
            value = self._tokens.get(token)
        if value is not None:
            return value

        if self._webroot is None:
            return None

        path = self._webroot / WEBROOT_CHALLENGE_DIR / token
        try:
            return path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning(f"[challenges] Could not read {path}: {e}")
            return None

    def __len__(self) -> int:
        with self._lock:
            return len(self._tokens)
