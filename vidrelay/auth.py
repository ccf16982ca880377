"""
Link authorization and slug helpers.

Security note: secrets are static shared tokens. The session cookie carries
the user secret itself, so anyone holding the cookie holds the secret.
Comparisons are constant-time; everything else is deliberately simple.
"""
from __future__ import annotations

import hmac
import re
import unicodedata
from pathlib import PurePosixPath
from typing import Optional
from urllib.parse import unquote, urlparse

from fastapi import Response

SESSION_COOKIE_NAME = "auth-token"
SESSION_COOKIE_PATH = "/stream"

RESERVED_SLUGS = {"generate", "play", "stream", "admin", "delete", "health"}
SLUG_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]{0,63}$")
MAX_SLUG_LENGTH = 64


# ---------------------------------------------------------------------------
# Slugs
# ---------------------------------------------------------------------------

def slugify(text: str) -> str:
    """Lower-case ASCII slug: "My Movie (2020)" → "my-movie-2020"."""
    text = unicodedata.normalize("NFKD", text).encode("ascii", "ignore").decode()
    text = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return text[:MAX_SLUG_LENGTH].rstrip("-")


def name_from_url(url: str) -> str:
    """Derive a display name from the last path segment, minus its extension."""
    path = unquote(urlparse(url).path)
    stem = PurePosixPath(path).stem
    return stem.replace("_", " ").replace(".", " ")


def validate_slug(slug: str) -> bool:
    """Return True if slug is valid and not reserved."""
    return slug not in RESERVED_SLUGS and SLUG_PATTERN.match(slug) is not None


# ---------------------------------------------------------------------------
# Secrets
# ---------------------------------------------------------------------------

def _matches(presented: Optional[str], secrets: tuple[str, ...]) -> bool:
    if not presented:
        return False
    candidate = presented.encode()
    # Check every secret so timing does not reveal which one matched
    found = False
    for secret in secrets:
        if hmac.compare_digest(candidate, secret.encode()):
            found = True
    return found


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Extract the token from an "Authorization: Bearer <token>" header."""
    if not authorization or not authorization.startswith("Bearer "):
        return None
    return authorization.removeprefix("Bearer ").strip() or None


class AccessController:
    """Checks presented credentials against the configured secrets.

    Each check is independent; callers pick the one their endpoint needs.
    """

    def __init__(
        self,
        user_secrets: tuple[str, ...],
        admin_secrets: tuple[str, ...],
        cookie_max_age: int,
    ) -> None:
        self.user_secrets = user_secrets
        self.admin_secrets = admin_secrets
        self.cookie_max_age = cookie_max_age

    def check_token(self, token: Optional[str]) -> bool:
        """One-time token (or generation token) against the user secrets."""
        return _matches(token, self.user_secrets)

    def check_session(self, cookie: Optional[str]) -> bool:
        return _matches(cookie, self.user_secrets)

    def check_admin(self, token: Optional[str]) -> bool:
        return _matches(token, self.admin_secrets)

    def issue_session(self, response: Response, token: str) -> None:
        """Set the streaming cookie. Repeating this is harmless."""
        response.set_cookie(
            SESSION_COOKIE_NAME,
            token,
            max_age=self.cookie_max_age,
            path=SESSION_COOKIE_PATH,
            secure=True,
            httponly=True,
            samesite="strict",
        )
