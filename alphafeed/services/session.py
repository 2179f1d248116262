"""
Session persistence and the ordered authentication strategies.

Each strategy installs candidate credentials on the content source and
reports whether it managed to; the authenticator then validates with the
source's logged-in check and advances to the next strategy on failure.
"""

import json
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional

from pydantic import ValidationError
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_incrementing,
)

from alphafeed.errors import AuthenticationError
from alphafeed.services.content_source import ContentSource
from alphafeed.services.types import Session

logger = logging.getLogger(__name__)


class SessionStore:
    """JSON file holding the cookies of the last valid session."""

    def __init__(self, directory: str, username: str):
        self.path = Path(directory) / f"{username or 'anonymous'}_cookies.json"
        self.username = username

    def load(self) -> Optional[Session]:
        if not self.path.exists():
            return None
        try:
            return Session.model_validate_json(self.path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            logger.warning(f"Ignoring unreadable session file {self.path}: {e}")
            return None

    def save(self, cookies: Dict[str, str]) -> Session:
        session = Session(
            username=self.username,
            cookies=cookies,
            saved_at=datetime.now(timezone.utc),
        )
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(session.model_dump_json(indent=2), encoding="utf-8")
        logger.info(f"Persisted session to {self.path}")
        return session

    def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()
            logger.info(f"Removed stale session file {self.path}")


def parse_cookie_blob(blob: str) -> Dict[str, str]:
    """
    Parse a credential blob into a cookie mapping.

    Accepts a saved session document, a plain {name: value} object, or a
    list of browser-export cookie objects with "name"/"key" and "value".
    """
    data = json.loads(blob)

    if isinstance(data, dict) and "cookies" in data:
        data = data["cookies"]

    if isinstance(data, dict):
        return {str(k): str(v) for k, v in data.items()}

    if isinstance(data, list):
        cookies = {}
        for entry in data:
            name = entry.get("name") or entry.get("key")
            if name and "value" in entry:
                cookies[str(name)] = str(entry["value"])
        return cookies

    raise ValueError("Cookie blob must be a JSON object or list")


class AuthStrategy:
    """One way of obtaining a session."""

    name = "strategy"

    def apply(self, source: ContentSource) -> bool:
        """Install credentials on `source`. False means nothing to try."""
        raise NotImplementedError

    def on_invalid(self) -> None:
        """Called when the installed credentials failed validation."""

    def on_valid(self, source: ContentSource) -> None:
        """Called once the installed credentials validated."""


class CookieBlobStrategy(AuthStrategy):
    name = "cookie blob"

    def __init__(self, blob: str):
        self.blob = blob

    def apply(self, source: ContentSource) -> bool:
        if not self.blob:
            return False
        try:
            cookies = parse_cookie_blob(self.blob)
        except (ValueError, AttributeError) as e:
            logger.warning(f"Configured cookie blob is not usable: {e}")
            return False
        source.set_cookies(cookies)
        return bool(cookies)


class PersistedSessionStrategy(AuthStrategy):
    name = "persisted session"

    def __init__(self, store: SessionStore):
        self.store = store

    def apply(self, source: ContentSource) -> bool:
        session = self.store.load()
        if session is None or not session.cookies:
            return False
        source.set_cookies(session.cookies)
        return True

    def on_invalid(self) -> None:
        self.store.clear()


class InteractiveLoginStrategy(AuthStrategy):
    """Username/password login, retried with linearly growing waits."""

    name = "interactive login"

    def __init__(self, username: str, password: str, email: Optional[str] = None,
                 store: Optional[SessionStore] = None, attempts: int = 3,
                 retry_delay: float = 2.0, sleep: Callable[[float], None] = time.sleep):
        self.username = username
        self.password = password
        self.email = email
        self.store = store
        self.attempts = attempts
        self.retry_delay = retry_delay
        self._sleep = sleep

    def apply(self, source: ContentSource) -> bool:
        if not self.username or not self.password:
            logger.warning("No login credentials configured")
            return False

        retrying = Retrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_incrementing(start=self.retry_delay, increment=self.retry_delay),
            retry=retry_if_exception_type(AuthenticationError),
            sleep=self._sleep,
            before_sleep=self._log_retry,
            reraise=True,
        )
        try:
            retrying(self._login, source)
        except AuthenticationError as e:
            logger.warning(f"Login failed after {self.attempts} attempts: {e}")
            return False
        return True

    def _login(self, source: ContentSource) -> None:
        source.clear_cookies()
        source.login(self.username, self.password, self.email or None)

    def _log_retry(self, retry_state: RetryCallState) -> None:
        logger.warning(f"Login attempt {retry_state.attempt_number}/{self.attempts} failed: "
                       f"{retry_state.outcome.exception()}")

    def on_valid(self, source: ContentSource) -> None:
        if self.store is not None:
            self.store.save(source.get_cookies())


class Authenticator:
    """Runs the strategies in order until one validates."""

    def __init__(self, strategies: List[AuthStrategy]):
        self.strategies = strategies

    def authenticate(self, source: ContentSource) -> str:
        for strategy in self.strategies:
            if not strategy.apply(source):
                logger.debug(f"Skipping {strategy.name}: no credentials")
                continue

            if source.is_logged_in():
                strategy.on_valid(source)
                logger.info(f"Authenticated with {strategy.name}")
                return strategy.name

            logger.warning(f"Session from {strategy.name} failed verification")
            strategy.on_invalid()
            source.clear_cookies()

        raise AuthenticationError("No authentication method produced a valid session")
