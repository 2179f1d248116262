import datetime as dt
import itertools
import json
import logging
import threading
from typing import Dict, List, Optional

from alphafeed.config import Settings, get_settings
from alphafeed.errors import FetchError, PublishError
from alphafeed.nlp.oracle import ClassificationOracle
from alphafeed.nlp.scorer import Scorer
from alphafeed.orchestration.digest import build_envelope, is_significant
from alphafeed.orchestration.queue import Backoff, Job, JobOptions, JobQueue
from alphafeed.services.content_source import HttpContentSource
from alphafeed.services.fetcher import ContentFetcher
from alphafeed.services.types import ContentItem
from alphafeed.storage.cache import Cache, InMemoryCache, RedisCache

logger = logging.getLogger(__name__)

JOB_NAME = "sentiment-analysis"
VERSION = "1.0.0"

# Offline runs: keep cache and broadcast inside the process
MEMORY_URL = "memory://"


class SentimentPipeline:
    """
    Owns the recurring fetch -> score -> filter -> publish job.

    The job repeats on a fixed interval; a failed cycle is retried by the
    queue with exponential backoff and never re-arms the schedule itself.
    At most one cycle runs at a time: a trigger that arrives while a cycle
    is in flight is dropped.
    """

    def __init__(self, fetcher: ContentFetcher, scorer: Scorer, cache: Cache,
                 queue: Optional[JobQueue] = None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.fetcher = fetcher
        self.scorer = scorer
        self.cache = cache
        self.queue = queue or JobQueue(JOB_NAME)
        self._run_lock = threading.Lock()
        self._shutdown = False
        self.cycles_run = 0
        self.cycles_skipped = 0
        self.last_error: Optional[str] = None
        self.last_success: Optional[dt.datetime] = None

    def initialize(self, start_worker: bool = True) -> None:
        logger.info("Initializing sentiment pipeline...")
        self.fetcher.initialize()
        logger.info(f"Content source authenticated via {self.fetcher.auth_method}")

        self.queue.empty()
        self.queue.process(JOB_NAME, self._process)
        self.queue.on("completed", lambda job, _: logger.info(f"Job {job.id} completed"))
        self.queue.on("failed", lambda job, err: logger.error(f"Job {job.id} failed: {err}"))

        # First fire is immediate, which bootstraps the first cycle
        self.queue.add(JOB_NAME, JobOptions(
            repeat_every=self.settings.repeat_interval,
            attempts=self.settings.job_attempts,
            backoff=Backoff(
                type="exponential",
                delay=self.settings.backoff_delay,
                max_delay=self.settings.backoff_max_delay,
            ),
            job_id=JOB_NAME,
        ))
        if start_worker:
            self.queue.start()
        logger.info("Queue initialized")

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    def trigger(self) -> Optional[Dict]:
        """Run one cycle unless one is already in flight; returns the envelope."""
        if not self._run_lock.acquire(blocking=False):
            self.cycles_skipped += 1
            logger.info("Previous cycle still running, skipping trigger")
            return None

        try:
            envelope = self.run_cycle()
            self.last_error = None
            self.last_success = dt.datetime.now(dt.timezone.utc)
            return envelope
        except Exception as e:
            self.last_error = str(e)
            raise
        finally:
            self.cycles_run += 1
            self._run_lock.release()

    def run_cycle(self) -> Dict:
        logger.info("Starting pipeline cycle...")

        items = self._collect()
        logger.info(f"Retrieved {len(items)} unique items")

        report = self.scorer.analyze(items)
        logger.info(f"Analyzed {len(report.items)} items ({len(report.failures)} scoring failures)")

        significant = [
            a for a in report.items
            if is_significant(a, self.settings.significant_score, self.settings.significant_credibility)
        ]
        logger.info(f"Found {len(significant)} significant items")

        envelope = build_envelope(
            significant,
            total_analyzed=len(items),
            target_subjects=self.target_subjects(),
            topic_limit=self.settings.top_topics,
        )
        self.publish(envelope)
        return envelope

    def publish(self, envelope: Dict) -> None:
        """Broadcast the envelope and store it as the last-known-good snapshot."""
        message = json.dumps(envelope)
        try:
            receivers = self.cache.publish(self.settings.updates_channel, message)
            self.cache.set(self.settings.snapshot_key, message, self.settings.snapshot_ttl)
        except Exception as e:
            logger.error(f"Publish failed for batch {envelope['metadata']['batchId']}: {e}")
            raise PublishError(f"Failed to publish digest: {e}") from e
        logger.info(f"Published batch {envelope['metadata']['batchId']} to {receivers} subscribers")

    def latest_snapshot(self) -> Optional[Dict]:
        return self.cache.get_json(self.settings.snapshot_key)

    def target_subjects(self) -> Dict:
        return {
            "accounts": list(self.settings.target_accounts),
            "primary": list(self.settings.primary_keywords),
            "context": list(self.settings.context_keywords),
        }

    def search_queries(self) -> List[str]:
        return [
            f"{primary} {context}"
            for primary, context in itertools.product(
                self.settings.primary_keywords, self.settings.context_keywords
            )
        ]

    def shutdown(self) -> None:
        if self._shutdown:
            return
        self._shutdown = True
        logger.info("Shutting down sentiment pipeline...")

        for name, close in (
            ("queue", lambda: self.queue.close(self.settings.shutdown_grace)),
            ("content source", self.fetcher.source.close),
            ("cache", self.cache.close),
        ):
            try:
                close()
                logger.info(f"{name.capitalize()} closed")
            except Exception as e:
                logger.warning(f"Error closing {name}: {e}")

    def healthcheck(self) -> Dict:
        return {
            "status": "ok" if self.last_error is None else "degraded",
            "timestamp": dt.datetime.now(dt.timezone.utc).isoformat(),
            "version": VERSION,
            "authenticated": self.fetcher.initialized,
            "running": self.is_running,
            "cycles_run": self.cycles_run,
            "cycles_skipped": self.cycles_skipped,
            "last_success": self.last_success.isoformat() if self.last_success else None,
            "last_error": self.last_error,
        }

    def _process(self, job: Job) -> Optional[Dict]:
        return self.trigger()

    def _collect(self) -> List[ContentItem]:
        batches: List[List[ContentItem]] = []

        for account in self.settings.target_accounts:
            batches.append(self._fetch(
                lambda: self.fetcher.get_content(account, self.settings.account_count), account
            ))

        for query in self.search_queries():
            batches.append(self._fetch(
                lambda: self.fetcher.search(query, self.settings.search_count), query
            ))

        unique: Dict[str, ContentItem] = {}
        for item in itertools.chain.from_iterable(batches):
            unique.setdefault(item.id, item)
        return list(unique.values())

    @staticmethod
    def _fetch(call, subject: str) -> List[ContentItem]:
        try:
            return call()
        except FetchError as e:
            logger.error(f"Fetch stage failed for '{subject}': {e}")
            raise


def build_pipeline(settings: Optional[Settings] = None) -> SentimentPipeline:
    """Wire the production collaborators together."""
    settings = settings or get_settings()
    if settings.redis_url == MEMORY_URL:
        cache: Cache = InMemoryCache()
    else:
        cache = RedisCache(settings.redis_url)
    source = HttpContentSource(settings.content_base_url, timeout=settings.request_timeout)
    fetcher = ContentFetcher(source, cache, settings=settings)
    oracle = ClassificationOracle(api_key=settings.openai_api_key, model=settings.openai_model)
    scorer = Scorer(oracle, cache, fetcher=fetcher, settings=settings)
    return SentimentPipeline(fetcher, scorer, cache, JobQueue(JOB_NAME), settings=settings)
