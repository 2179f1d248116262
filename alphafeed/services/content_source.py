from typing import Dict, Iterator, List, Optional, Protocol
from datetime import datetime
import httpx
import logging
from alphafeed.errors import AuthenticationError, FetchError, SessionExpiredError
from alphafeed.services.types import ContentItem, Profile

logger = logging.getLogger(__name__)

SEARCH_MODES = ("Latest", "Top", "Photos", "Videos")
PAGE_SIZE = 20


class ContentSource(Protocol):
    """Capability set the fetcher needs from an authenticated content source."""

    def login(self, username: str, password: str, email: Optional[str] = None) -> None:
        ...

    def is_logged_in(self) -> bool:
        ...

    def get_cookies(self) -> Dict[str, str]:
        ...

    def set_cookies(self, cookies: Dict[str, str]) -> None:
        ...

    def clear_cookies(self) -> None:
        ...

    def iter_content(self, username: str, count: int) -> Iterator[ContentItem]:
        ...

    def iter_content_and_replies(self, username: str) -> Iterator[ContentItem]:
        ...

    def iter_search(self, query: str, count: int, mode: str = "Latest") -> Iterator[ContentItem]:
        ...

    def get_trends(self) -> List[str]:
        ...

    def get_profile(self, username: str) -> Profile:
        ...

    def get_follower_count(self, author_id: str) -> int:
        ...

    def close(self) -> None:
        ...


class HttpContentSource:
    """
    Cookie-session client for the content gateway's JSON API.

    Every listing endpoint is cursor-paginated; the iter_* methods walk the
    pages lazily and stop at the requested count or the last page.
    """

    def __init__(self, base_url: str, timeout: float = 10.0,
                 transport: Optional[httpx.BaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=timeout,
            headers={"User-Agent": "alphafeed/1.0"},
            transport=transport,
        )
        self._closed = False

    # Session -----------------------------------------------------------

    def login(self, username: str, password: str, email: Optional[str] = None) -> None:
        payload = {"username": username, "password": password}
        if email:
            payload["email"] = email

        try:
            response = self._client.post("/auth/login", json=payload)
        except httpx.HTTPError as e:
            raise AuthenticationError(f"Login request failed for {username}: {e}") from e

        if response.status_code in (401, 403):
            raise AuthenticationError(f"Login rejected for {username}: {response.status_code}")
        if response.is_error:
            raise AuthenticationError(f"Login failed for {username}: {response.status_code}")

        logger.info(f"Logged in to content source as {username}")

    def is_logged_in(self) -> bool:
        if not self._client.cookies:
            return False
        try:
            response = self._client.get("/auth/verify")
        except httpx.HTTPError as e:
            logger.warning(f"Session verification request failed: {e}")
            return False
        if response.status_code != 200:
            return False
        try:
            payload = response.json()
        except ValueError as e:
            logger.warning(f"Session verification returned a non-JSON body: {e}")
            return False
        return isinstance(payload, dict) and bool(payload.get("logged_in", False))

    def get_cookies(self) -> Dict[str, str]:
        return dict(self._client.cookies.items())

    def set_cookies(self, cookies: Dict[str, str]) -> None:
        self._client.cookies.clear()
        for name, value in cookies.items():
            self._client.cookies.set(name, value)

    def clear_cookies(self) -> None:
        self._client.cookies.clear()

    # Listings ----------------------------------------------------------

    def iter_content(self, username: str, count: int) -> Iterator[ContentItem]:
        return self._paginate(f"/users/{username}/posts", {}, count, subject=username)

    def iter_content_and_replies(self, username: str) -> Iterator[ContentItem]:
        return self._paginate(f"/users/{username}/posts_and_replies", {}, None, subject=username)

    def iter_search(self, query: str, count: int, mode: str = "Latest") -> Iterator[ContentItem]:
        if mode not in SEARCH_MODES:
            raise ValueError(f"Unknown search mode: {mode}")
        return self._paginate("/search", {"q": query, "mode": mode}, count, subject=query)

    def get_trends(self) -> List[str]:
        data = self._get_json("/trends", {}, subject="trends")
        return [str(t) for t in data.get("trends", [])]

    def get_profile(self, username: str) -> Profile:
        data = self._get_json(f"/users/{username}", {}, subject=username)
        return _parse_profile(data)

    def get_follower_count(self, author_id: str) -> int:
        data = self._get_json(f"/users/by_id/{author_id}", {}, subject=author_id)
        return int(data.get("followersCount") or 0)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._client.close()

    # Internals ---------------------------------------------------------

    def _paginate(self, path: str, params: Dict, count: Optional[int],
                  subject: str) -> Iterator[ContentItem]:
        yielded = 0
        cursor = None

        while count is None or yielded < count:
            page_params = dict(params)
            page_params["count"] = PAGE_SIZE if count is None else min(PAGE_SIZE, count - yielded)
            if cursor:
                page_params["cursor"] = cursor

            data = self._get_json(path, page_params, subject=subject)
            raw_items = data.get("items", [])

            for raw in raw_items:
                try:
                    item = parse_item(raw)
                except (KeyError, ValueError) as e:
                    logger.warning(f"Failed to parse item {raw.get('id', 'unknown')} for {subject}: {e}")
                    continue
                yield item
                yielded += 1
                if count is not None and yielded >= count:
                    return

            cursor = data.get("next_cursor")
            if not cursor or not raw_items:
                return

    def _get_json(self, path: str, params: Dict, subject: str) -> Dict:
        try:
            response = self._client.get(path, params=params)
        except httpx.HTTPError as e:
            raise FetchError(f"Request to {path} failed: {e}", subject=subject) from e

        if response.status_code in (401, 403):
            raise SessionExpiredError(
                f"Session rejected on {path}: {response.status_code}", subject=subject
            )
        if response.status_code == 429:
            raise FetchError(f"Rate limited on {path}", subject=subject)

        try:
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            raise FetchError(f"Content source error on {path}: {e.response.status_code}",
                             subject=subject) from e
        except ValueError as e:
            raise FetchError(f"Invalid JSON from {path}: {e}", subject=subject) from e


def parse_item(raw: Dict) -> ContentItem:
    """Map a raw gateway payload (camelCase keys) onto a ContentItem."""
    item_id = str(raw["id"])

    created_at = None
    time_parsed = raw.get("timeParsed")
    if time_parsed:
        created_at = datetime.fromisoformat(str(time_parsed).replace("Z", "+00:00"))

    return ContentItem(
        id=item_id,
        author_id=str(raw.get("userId") or ""),
        username=raw.get("username"),
        text=raw.get("text") or "",
        created_at=created_at,
        likes=int(raw.get("likes") or 0),
        retweets=int(raw.get("retweets") or 0),
        replies=int(raw.get("replies") or 0),
        views=int(raw.get("views") or 0),
        bookmark_count=int(raw.get("bookmarkCount") or 0),
        hashtags=list(raw.get("hashtags") or []),
        mentions=[m.get("username", "") if isinstance(m, dict) else str(m)
                  for m in raw.get("mentions") or []],
        urls=list(raw.get("urls") or []),
        photos=[p.get("url", "") if isinstance(p, dict) else str(p)
                for p in raw.get("photos") or []],
        videos=[v.get("url") or v.get("preview", "") if isinstance(v, dict) else str(v)
                for v in raw.get("videos") or []],
        has_poll=bool(raw.get("poll")),
        is_reply=bool(raw.get("isReply")),
        is_retweet=bool(raw.get("isRetweet")),
        is_quoted=bool(raw.get("isQuoted")),
        is_self_thread=bool(raw.get("isSelfThread")),
        is_pin=bool(raw.get("isPin")),
        thread=[str(t.get("id")) if isinstance(t, dict) else str(t)
                for t in raw.get("thread") or []],
        sensitive_content=bool(raw.get("sensitiveContent")),
        permanent_url=raw.get("permanentUrl"),
    )


def _parse_profile(raw: Dict) -> Profile:
    return Profile(
        user_id=str(raw.get("userId") or raw.get("id") or ""),
        username=raw.get("username", ""),
        name=raw.get("name"),
        followers_count=int(raw.get("followersCount") or 0),
        following_count=int(raw.get("followingCount") or 0),
        posts_count=int(raw.get("tweetsCount") or 0),
        is_verified=bool(raw.get("isVerified")),
    )
