"""GitHub App authentication service."""

import logging
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import TYPE_CHECKING

import httpx
import jwt

from src.config.settings import settings

if TYPE_CHECKING:
    from src.database.store import ReviewStore

logger = logging.getLogger(__name__)

# Refresh tokens this long before GitHub expires them
TOKEN_EXPIRY_BUFFER = timedelta(minutes=5)


class GitHubAppAuth:
    """Handle GitHub App authentication and installation token exchange."""

    def __init__(self) -> None:
        """Initialize GitHub App authentication."""
        self.app_id = settings.github_app_id
        self.api_url = settings.github_api_url.rstrip("/")
        self.private_key = self._load_private_key()

    def _load_private_key(self) -> str:
        """Load the GitHub App private key.

        Returns:
            The private key content

        Raises:
            ValueError: If private key is not configured
        """
        # Try loading from file path first (preferred for local development)
        if settings.github_app_private_key_path:
            key_path = Path(settings.github_app_private_key_path)
            if key_path.exists():
                return key_path.read_text()
            raise ValueError(f"Private key file not found: {key_path}")

        if settings.github_app_private_key:
            key = settings.github_app_private_key.strip()

            # Check for BEGIN and END markers and content between them
            lines = key.split("\n")
            if not (key.startswith("-----BEGIN") and key.endswith("-----")) or len(lines) < 3:
                raise ValueError(
                    "GITHUB_APP_PRIVATE_KEY appears incomplete. "
                    "Ensure it includes the full key content with BEGIN/END markers."
                )
            return key

        raise ValueError(
            "GitHub App private key not configured. "
            "Set APP_PRIVATE_KEY or APP_PRIVATE_KEY_PATH"
        )

    def generate_jwt(self) -> str:
        """Generate a JWT for GitHub App authentication.

        The JWT is used to authenticate as the GitHub App itself.
        It's valid for 10 minutes (GitHub's maximum).

        Raises:
            ValueError: If app_id is not configured
        """
        if not self.app_id:
            raise ValueError("GitHub App ID not configured")

        # 60 second clock drift protection
        now = int(time.time()) - 60
        payload = {
            "iat": now,
            "exp": now + (10 * 60),
            "iss": self.app_id,
        }
        return jwt.encode(payload, self.private_key, algorithm="RS256")

    async def create_installation_token(
        self, installation_id: int
    ) -> tuple[str, datetime]:
        """Exchange the app JWT for an installation access token.

        Returns:
            Tuple of (token, expires_at)

        Raises:
            httpx.HTTPError: If the API request fails
        """
        url = f"{self.api_url}/app/installations/{installation_id}/access_tokens"
        headers = {
            "Accept": "application/vnd.github+json",
            "Authorization": f"Bearer {self.generate_jwt()}",
            "X-GitHub-Api-Version": "2022-11-28",
        }

        async with httpx.AsyncClient(timeout=30.0) as client:
            response = await client.post(url, headers=headers)
            response.raise_for_status()
            data = response.json()

        expires_at = datetime.fromisoformat(data["expires_at"].replace("Z", "+00:00"))
        return data["token"], expires_at


class InstallationTokenProvider:
    """Resolve a short-lived access token for an organization.

    GitHub installation tokens are served from the persistence store while
    valid and refreshed through the GitHub App otherwise. GitLab
    organizations use the configured GitLab token.
    """

    def __init__(
        self,
        store: "ReviewStore",
        app_auth: GitHubAppAuth | None = None,
        gitlab_token: str | None = None,
    ) -> None:
        self.store = store
        self._app_auth = app_auth
        self.gitlab_token = gitlab_token

    @property
    def app_auth(self) -> GitHubAppAuth:
        if self._app_auth is None:
            self._app_auth = GitHubAppAuth()
        return self._app_auth

    async def get_token(self, org_id: int) -> str | None:
        cached = self.store.get_installation_token(org_id)
        if cached:
            return cached

        org = self.store.get_organization(org_id)
        if org is None:
            raise LookupError(f"organization not found: {org_id}")
        if org.platform == "gitlab":
            return self.gitlab_token
        if not org.installation_id:
            logger.warning(f"Organization {org_id} has no GitHub App installation")
            return None

        token, expires_at = await self.app_auth.create_installation_token(
            org.installation_id
        )
        self.store.save_installation_token(org_id, token, expires_at)
        logger.info(f"Refreshed installation token for organization {org_id}")
        return token


def token_is_fresh(expires_at: datetime | None, now: datetime | None = None) -> bool:
    """True if a token expiring at ``expires_at`` is usable for a few more minutes."""
    if expires_at is None:
        return False
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return now < expires_at - TOKEN_EXPIRY_BUFFER
