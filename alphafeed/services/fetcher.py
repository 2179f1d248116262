"""
Cache-aside access to the content source.

Every public read computes a namespaced cache key, serves an unexpired
cached value when there is one, and otherwise drains the source's lazy
page sequence into a list, caches it for `ttl` seconds and returns it.
"""

import logging
import threading
from typing import Callable, Iterable, List, Optional, TypeVar

from alphafeed.config import Settings, get_settings
from alphafeed.errors import FetchError, SessionExpiredError
from alphafeed.services.content_source import ContentSource
from alphafeed.services.session import (
    Authenticator,
    CookieBlobStrategy,
    InteractiveLoginStrategy,
    PersistedSessionStrategy,
    SessionStore,
)
from alphafeed.services.types import ContentItem, Profile
from alphafeed.storage.cache import Cache

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_SEARCH_MODE = "Latest"


def build_authenticator(settings: Settings) -> Authenticator:
    """Credential blob, then saved session, then interactive login."""
    store = SessionStore(settings.session_dir, settings.x_username)
    return Authenticator([
        CookieBlobStrategy(settings.x_cookies),
        PersistedSessionStrategy(store),
        InteractiveLoginStrategy(
            settings.x_username,
            settings.x_password,
            settings.x_email,
            store=store,
            attempts=settings.login_attempts,
            retry_delay=settings.login_retry_delay,
        ),
    ])


class ContentFetcher:
    def __init__(self, source: ContentSource, cache: Cache,
                 authenticator: Optional[Authenticator] = None,
                 ttl: Optional[int] = None, settings: Optional[Settings] = None):
        settings = settings or get_settings()
        self.source = source
        self.cache = cache
        self.authenticator = authenticator or build_authenticator(settings)
        self.ttl = ttl if ttl is not None else settings.content_cache_ttl
        self.auth_method: Optional[str] = None
        self._auth_lock = threading.Lock()
        self._session_generation = 0

    def initialize(self) -> None:
        """Establish a validated session; raises AuthenticationError."""
        with self._auth_lock:
            self._authenticate()

    @property
    def initialized(self) -> bool:
        return self.auth_method is not None

    def get_content(self, subject: str, count: int) -> List[ContentItem]:
        return self._cached_items(
            f"content:{subject}:{count}",
            lambda: self.source.iter_content(subject, count),
            subject,
        )

    def get_content_and_replies(self, subject: str) -> List[ContentItem]:
        return self._cached_items(
            f"content:{subject}:replies",
            lambda: self.source.iter_content_and_replies(subject),
            subject,
        )

    def search(self, query: str, count: int = 100, mode: str = DEFAULT_SEARCH_MODE) -> List[ContentItem]:
        key = f"search:{query}:{count}"
        if mode != DEFAULT_SEARCH_MODE:
            key = f"{key}:{mode}"
        return self._cached_items(key, lambda: self.source.iter_search(query, count, mode), query)

    def get_trends(self) -> List[str]:
        key = "content:trends"
        cached = self.cache.get_json(key)
        if cached is not None:
            return cached

        trends = self._live(self.source.get_trends, "trends")
        self.cache.set_json(key, trends, self.ttl)
        return trends

    def get_profile(self, username: str) -> Profile:
        key = f"profile:{username}"
        cached = self.cache.get_json(key)
        if cached is not None:
            return Profile.model_validate(cached)

        profile = self._live(lambda: self.source.get_profile(username), username)
        self.cache.set_json(key, profile.model_dump(mode="json"), self.ttl)
        return profile

    def get_follower_count(self, author_id: str) -> int:
        """Follower count for an author; 0 whenever it cannot be determined."""
        if not author_id:
            return 0

        key = f"followers:{author_id}"
        try:
            cached = self.cache.get_json(key)
            if cached is not None:
                return int(cached)

            count = self._live(lambda: self.source.get_follower_count(author_id), author_id)
            self.cache.set_json(key, count, self.ttl)
            return count
        except Exception as e:
            logger.warning(f"Follower count unavailable for author {author_id}: {e}")
            return 0

    def _cached_items(self, key: str, produce: Callable[[], Iterable[ContentItem]],
                      subject: str) -> List[ContentItem]:
        cached = self.cache.get_json(key)
        if cached is not None:
            logger.debug(f"Cache hit for {key}")
            return [ContentItem.model_validate(raw) for raw in cached]

        items = self._live(lambda: list(produce()), subject)
        self.cache.set_json(key, [item.model_dump(mode="json") for item in items], self.ttl)
        logger.info(f"Fetched {len(items)} items for {subject}")
        return items

    def _live(self, call: Callable[[], T], subject: str) -> T:
        """Run a live call, re-authenticating once if the session was rejected."""
        generation = self._session_generation
        try:
            return call()
        except SessionExpiredError:
            self._reauthenticate(generation, subject)
            return self._wrap(call, subject)
        except FetchError:
            raise
        except Exception as e:
            logger.error(f"Fetch failed for {subject}: {e}")
            raise FetchError(f"Fetch failed for {subject}: {e}", subject=subject) from e

    def _authenticate(self) -> None:
        # A failed attempt leaves the fetcher unauthenticated
        self.auth_method = None
        self.auth_method = self.authenticator.authenticate(self.source)
        self._session_generation += 1

    def _reauthenticate(self, generation: int, subject: str) -> None:
        """Refresh the session unless another caller already did since `generation`."""
        with self._auth_lock:
            if self._session_generation != generation:
                logger.debug(f"Session already refreshed, retrying {subject}")
                return
            logger.warning(f"Session expired while fetching {subject}; re-authenticating")
            self._authenticate()

    @staticmethod
    def _wrap(call: Callable[[], T], subject: str) -> T:
        try:
            return call()
        except FetchError:
            raise
        except Exception as e:
            raise FetchError(f"Fetch failed for {subject}: {e}", subject=subject) from e
