"""Shared fixtures: fake content source, oracle and scheduler, in-memory cache, item factory."""
import json
import threading
import time
from collections import Counter
from typing import Dict, List, Optional
from unittest.mock import MagicMock

import pytest
from apscheduler.jobstores.base import ConflictingIdError

from alphafeed.config import Settings
from alphafeed.errors import AuthenticationError, ScoringError
from alphafeed.nlp.oracle import OracleVerdict
from alphafeed.services.types import ContentItem, Profile
from alphafeed.storage.cache import InMemoryCache


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSource:
    """ContentSource double that counts live calls."""

    def __init__(self, items: Optional[Dict[str, List[ContentItem]]] = None,
                 valid_cookies: Optional[Dict[str, str]] = None):
        self.items = items or {}
        self.valid_cookies = valid_cookies or {"auth_token": "good"}
        self.cookies: Dict[str, str] = {}
        self.calls = Counter()
        self.login_failures = 0
        self.followers: Dict[str, int] = {}
        self.closed = False

    def login(self, username, password, email=None):
        self.calls["login"] += 1
        if self.login_failures > 0:
            self.login_failures -= 1
            raise AuthenticationError("bad credentials")
        self.cookies = dict(self.valid_cookies)

    def is_logged_in(self):
        self.calls["is_logged_in"] += 1
        return self.cookies == self.valid_cookies

    def get_cookies(self):
        return dict(self.cookies)

    def set_cookies(self, cookies):
        self.cookies = dict(cookies)

    def clear_cookies(self):
        self.cookies = {}

    def iter_content(self, username, count):
        self.calls["content"] += 1
        yield from self.items.get(username, [])[:count]

    def iter_content_and_replies(self, username):
        self.calls["content_and_replies"] += 1
        yield from self.items.get(username, [])

    def iter_search(self, query, count, mode="Latest"):
        self.calls["search"] += 1
        yield from self.items.get(query, [])[:count]

    def get_trends(self):
        self.calls["trends"] += 1
        return ["#SOL", "#memecoin"]

    def get_profile(self, username):
        self.calls["profile"] += 1
        return Profile(user_id="u-" + username, username=username, followers_count=42)

    def get_follower_count(self, author_id):
        self.calls["followers"] += 1
        if author_id not in self.followers:
            raise ConnectionError("network down")
        return self.followers[author_id]

    def close(self):
        self.closed = True


class ManualScheduler:
    """Scheduler double: records add_job calls and runs jobs on demand."""

    def __init__(self):
        self.jobs: Dict[str, dict] = {}
        self.running = False

    def add_job(self, func, trigger, args=None, id=None, replace_existing=False, **kwargs):
        if id in self.jobs and not replace_existing:
            raise ConflictingIdError(id)
        self.jobs[id] = dict(func=func, trigger=trigger, args=list(args or []), **kwargs)
        return self.jobs[id]

    def remove_all_jobs(self):
        self.jobs.clear()

    def start(self):
        self.running = True

    def shutdown(self, wait=True):
        self.running = False

    def by_trigger(self, trigger: str) -> List[str]:
        return [job_id for job_id, job in self.jobs.items() if job["trigger"] == trigger]

    def fire(self, job_id: str):
        """Run a job as if its trigger came due; one-shot jobs are consumed."""
        job = self.jobs[job_id]
        if job["trigger"] == "date":
            del self.jobs[job_id]
        return job["func"](*job["args"])

    def fire_next_retry(self):
        [job_id] = self.by_trigger("date")
        return self.fire(job_id)


class ScriptedOracle:
    """Oracle double: per-item verdicts, optional failures, call tracking."""

    def __init__(self, scores=None, malformed=(), delay=0.0):
        self.scores = scores or {}
        self.malformed = set(malformed)
        self.delay = delay
        self.calls = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def classify(self, text, item_id=None):
        with self._lock:
            self.calls.append(item_id)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            if item_id in self.malformed:
                raise ScoringError("Malformed oracle output", item_id=item_id)
            return OracleVerdict(sentiment="positive", score=self.scores.get(item_id, 0.8),
                                 topics=["presale"], summary="ok")
        finally:
            with self._lock:
                self.active -= 1


def make_item(item_id: str = "1", **overrides) -> ContentItem:
    fields = {
        "id": item_id,
        "author_id": "author-" + item_id,
        "username": "user" + item_id,
        "text": "New presale launching on SOL tonight with locked liquidity and a public audit",
    }
    fields.update(overrides)
    return ContentItem(**fields)


def oracle_response(content: str) -> MagicMock:
    response = MagicMock()
    response.choices[0].message.content = content
    return response


def verdict_json(score: float = 0.8, sentiment: str = "positive", topics=None) -> str:
    return json.dumps({
        "sentiment": sentiment,
        "score": score,
        "topics": topics if topics is not None else ["presale", "SOL"],
        "summary": "Presale announcement.",
    })


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return InMemoryCache(clock=clock)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        x_username="tester",
        x_password="secret",
        session_dir=str(tmp_path / "sessions"),
        login_retry_delay=2.0,
        batch_delay=1.0,
        primary_keywords=["presale", "stealth launch"],
        context_keywords=["crypto"],
        target_accounts=[],
        search_count=3,
    )


@pytest.fixture
def source():
    return FakeSource()
