"""Sign in to GitHub with a personal/OAuth token and keep it in the vault."""

import logging
from dataclasses import dataclass

from github import Auth, BadCredentialsException, Github, GithubException, RateLimitExceededException

from .errors import AuthError, NetworkError, RateLimitedError
from .models import Credential
from .vault import CredentialVault

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    login: str
    avatar_url: str | None = None
    name: str | None = None


def fetch_identity(token: str, github: Github | None = None) -> Identity:
    """Resolve the account that owns ``token``.

    Raises AuthError for a rejected token, RateLimitedError when GitHub refuses
    the lookup for quota reasons, NetworkError otherwise.
    """
    gh = github or Github(auth=Auth.Token(token), retry=None)
    try:
        user = gh.get_user()
        return Identity(login=user.login, avatar_url=user.avatar_url, name=user.name)
    except BadCredentialsException as e:
        raise AuthError("GitHub rejected the token", status=e.status) from e
    except RateLimitExceededException as e:
        raise RateLimitedError("Rate limit exceeded while verifying the token", status=e.status) from e
    except GithubException as e:
        if e.status in (401, 403):
            raise AuthError(f"GitHub rejected the token (HTTP {e.status})", status=e.status) from e
        raise NetworkError(f"GitHub error while verifying the token (HTTP {e.status})", status=e.status) from e
    except OSError as e:
        raise NetworkError(f"Network error while verifying the token: {e}") from e
    finally:
        if github is None:
            gh.close()


def sign_in(vault: CredentialVault, token: str, github: Github | None = None) -> Credential:
    """Verify ``token`` against GitHub and store it with the account's profile."""
    token = token.strip()
    if not token:
        raise AuthError("Token must not be empty")
    identity = fetch_identity(token, github=github)
    logger.info("Signed in as %s", identity.login)
    return vault.save(token, identity.login, avatar_url=identity.avatar_url, display_name=identity.name)


def sign_out(vault: CredentialVault) -> None:
    vault.clear()
