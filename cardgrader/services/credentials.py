"""
Credential providers and the one-time credential prompt.

The grading service and the remote collection store both need a secret
(API key or bearer token). Acquiring one interactively is outside this
package; providers only hand back what they have.
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Protocol

from cardgrader.config import Settings

logger = logging.getLogger(__name__)


class CredentialProvider(Protocol):
    async def get_token(self, interactive: bool = False) -> str | None:
        """Return a usable credential, or None when none is available."""
        ...


class SettingsCredentialProvider:
    """API key from settings, replaceable at runtime when the user supplies one."""

    def __init__(self, settings: Settings):
        self._key = settings.anthropic_api_key or None

    def update(self, key: str) -> None:
        self._key = key.strip() or None

    async def get_token(self, interactive: bool = False) -> str | None:
        return self._key


class StaticTokenProvider:
    """Fixed bearer token, e.g. an access token obtained out of band."""

    def __init__(self, token: str | None):
        self._token = token or None

    async def get_token(self, interactive: bool = False) -> str | None:
        return self._token


PromptCallback = Callable[[], Awaitable[None] | None]


class CredentialPrompt:
    """
    Asks for a credential at most once per occurrence.

    The prompt stays open after `request()` until `resolve()` is called, and
    further requests while open are ignored. An async callback is scheduled
    as a task so the caller never waits on the user.
    """

    def __init__(self, on_prompt: PromptCallback | None = None):
        self._on_prompt = on_prompt
        self._open = False
        self._pending: set[asyncio.Future[None]] = set()
        self.prompts_issued = 0

    @property
    def is_open(self) -> bool:
        return self._open

    def request(self) -> bool:
        """Open the prompt. Returns False if it was already open."""
        if self._open:
            return False
        self._open = True
        self.prompts_issued += 1
        logger.warning("CREDENTIAL_PROMPT_OPENED", extra={"prompts_issued": self.prompts_issued})

        if self._on_prompt is not None:
            result = self._on_prompt()
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)
        return True

    def resolve(self) -> None:
        self._open = False
