"""Optional workspace-membership lookup used when QA registrations are approved."""
import logging
from typing import Optional

import httpx

from marisa.core.config import settings

logger = logging.getLogger(__name__)


class WorkspaceLookupError(RuntimeError):
    pass


def lookup_user_id(email: str) -> Optional[str]:
    """Return the messaging user id for `email`, None when the lookup is disabled or the user is unknown."""
    if settings.SLACK_BOT_TOKEN is None:
        return None
    headers = {"Authorization": f"Bearer {settings.SLACK_BOT_TOKEN.get_secret_value()}"}
    try:
        with httpx.Client(timeout=settings.SLACK_TIMEOUT_SECONDS) as client:
            r = client.get(settings.SLACK_LOOKUP_URL, params={"email": email}, headers=headers)
            r.raise_for_status()
            data = r.json()
    except (httpx.HTTPError, ValueError) as e:
        raise WorkspaceLookupError(f"Workspace lookup failed: {e}") from e

    if not data.get("ok"):
        if data.get("error") == "users_not_found":
            return None
        raise WorkspaceLookupError(f"Workspace lookup failed: {data.get('error')}")
    return (data.get("user") or {}).get("id")
