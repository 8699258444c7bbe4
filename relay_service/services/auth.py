"""API key authentication.

API keys are shown once at creation and stored as bcrypt hashes, so a key
is checked by verifying it against the candidate hashes. Both the HTTP API
(``Authorization: Bearer <key>``) and the SMTP relay (AUTH with the project
id as username and the key as password) go through this module and fail
closed with the same generic error.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass

from passlib.context import CryptContext

from relay_service.core.exceptions import AuthenticationError, PolicyError
from relay_service.core.logger import get_logger
from relay_service.database.projects import ProjectStore
from relay_service.models.project import ApiKeyRecord, ProjectRecord

logger = get_logger(__name__)

API_KEY_PREFIX = "tm_live_"
WEBHOOK_SECRET_PREFIX = "whsec_"
KEY_PREFIX_LENGTH = 12

SCOPE_SEND_EMAIL = "send:email"
SCOPE_LOGS_READ = "logs:read"

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def generate_api_key() -> str:
    """New plaintext API key: ``tm_live_`` followed by 64 hex characters."""
    return f"{API_KEY_PREFIX}{secrets.token_hex(32)}"


def generate_webhook_secret() -> str:
    """New webhook signing secret: ``whsec_`` followed by 64 hex characters."""
    return f"{WEBHOOK_SECRET_PREFIX}{secrets.token_hex(32)}"


def hash_api_key(api_key: str) -> str:
    return pwd_context.hash(api_key)


def verify_api_key(api_key: str | None, key_hash: str | None) -> bool:
    """Check a plaintext key against a stored hash; never raises."""
    if not api_key or not key_hash:
        return False
    try:
        return pwd_context.verify(api_key, key_hash)
    except (ValueError, TypeError) as e:
        logger.warning(f"API key verification failed: {e}")
        return False


@dataclass(frozen=True)
class AuthContext:
    """The key a request authenticated with and its project."""

    api_key: ApiKeyRecord
    project: ProjectRecord

    @property
    def project_id(self) -> str:
        return self.project.id

    def has_scope(self, scope: str) -> bool:
        return self.api_key.has_scope(scope)


class ApiKeyAuthenticator:
    """Resolves plaintext API keys to projects."""

    def __init__(self, projects: ProjectStore) -> None:
        self.projects = projects

    def _match(self, api_key: str, candidates: list[ApiKeyRecord]) -> ApiKeyRecord | None:
        prefix = api_key[:KEY_PREFIX_LENGTH]
        for candidate in candidates:
            if candidate.key_prefix and candidate.key_prefix != prefix:
                continue
            if verify_api_key(api_key, candidate.key_hash):
                return candidate
        return None

    def authenticate_bearer(self, token: str | None) -> AuthContext:
        """Authenticate an HTTP request's bearer token.

        Raises:
            AuthenticationError: If the key matches no non-revoked key.
            PolicyError: ``PROJECT_INACTIVE`` if the key's project is not
                active.
        """
        if not token:
            raise AuthenticationError()

        key = self._match(token, self.projects.list_api_keys())
        if key is None:
            logger.warning("Invalid API key attempt")
            raise AuthenticationError()

        project = self.projects.get_project(key.project_id)
        if project is None:
            raise AuthenticationError()
        if not project.is_active:
            raise PolicyError(PolicyError.PROJECT_INACTIVE, "Project is not active")

        self.projects.touch_api_key(key.id)
        return AuthContext(api_key=key, project=project)

    def authenticate_project(self, project_id: str, api_key: str, scope: str) -> AuthContext:
        """Authenticate SMTP credentials: project id plus plaintext key.

        Every failure (unknown or inactive project, wrong key, missing
        scope) raises the same generic error.

        Raises:
            AuthenticationError: If the credentials are not accepted.
        """
        if not project_id or not api_key:
            raise AuthenticationError()

        project = self.projects.get_project(project_id)
        if project is None or not project.is_active:
            logger.warning(f"SMTP auth rejected for project {project_id}")
            raise AuthenticationError()

        key = self._match(api_key, self.projects.list_api_keys(project_id))
        if key is None or not key.has_scope(scope):
            logger.warning(f"SMTP auth rejected for project {project_id}")
            raise AuthenticationError()

        self.projects.touch_api_key(key.id)
        return AuthContext(api_key=key, project=project)
