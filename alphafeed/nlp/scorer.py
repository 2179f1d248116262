import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

from alphafeed.config import Settings, get_settings
from alphafeed.errors import ScoringError
from alphafeed.nlp.credibility import CredibilityParams, CredibilityWeights, credibility_score
from alphafeed.nlp.oracle import ClassificationOracle
from alphafeed.services.fetcher import ContentFetcher
from alphafeed.services.types import AnalysisResult, AnalyzedItem, ContentItem
from alphafeed.storage.cache import Cache

logger = logging.getLogger(__name__)


@dataclass
class ScoringReport:
    """Outcome of one analyze() call."""
    items: List[AnalyzedItem] = field(default_factory=list)
    failures: List[ScoringError] = field(default_factory=list)
    total: int = 0

    @property
    def scored(self) -> int:
        return self.total - len(self.failures)


class Scorer:
    """
    Turns content items into analyzed items.

    Items are scored in fixed-size batches. Inside a batch every item is
    analyzed concurrently; between batches the scorer sleeps for
    `batch_delay` seconds to stay under the oracle's rate limit. A failed
    item is reported in ScoringReport.failures and never aborts its batch.
    """

    def __init__(self, oracle: ClassificationOracle, cache: Cache,
                 fetcher: Optional[ContentFetcher] = None,
                 weights: Optional[CredibilityWeights] = None,
                 params: Optional[CredibilityParams] = None,
                 settings: Optional[Settings] = None,
                 sleep: Callable[[float], None] = time.sleep):
        settings = settings or get_settings()
        self.oracle = oracle
        self.cache = cache
        self.fetcher = fetcher
        self.weights = weights or CredibilityWeights()
        self.params = params or CredibilityParams()
        self.batch_size = settings.batch_size
        self.batch_delay = settings.batch_delay
        self.ttl = settings.analysis_cache_ttl
        self.min_score = settings.min_analysis_score
        self._sleep = sleep

    def analyze(self, items: Sequence[ContentItem]) -> ScoringReport:
        report = ScoringReport(total=len(items))
        analyzed: List[AnalyzedItem] = []
        batch_count = (len(items) + self.batch_size - 1) // self.batch_size

        for start in range(0, len(items), self.batch_size):
            batch = items[start:start + self.batch_size]
            logger.info(f"Processing batch {start // self.batch_size + 1} of {batch_count}")

            with ThreadPoolExecutor(max_workers=len(batch)) as executor:
                futures = [executor.submit(self.analyze_item, item) for item in batch]

            for item, future in zip(batch, futures):
                try:
                    analyzed.append(future.result())
                except ScoringError as e:
                    logger.warning(f"Scoring failed for item {item.id}: {e}")
                    report.failures.append(e)
                except Exception as e:
                    logger.error(f"Unexpected scoring error for item {item.id}: {e}")
                    report.failures.append(ScoringError(str(e), item_id=item.id))

            if start + self.batch_size < len(items):
                self._sleep(self.batch_delay)

        report.items = [a for a in analyzed if a.analysis.score > self.min_score]
        logger.info(f"Scored {report.scored}/{report.total} items, "
                    f"{len(report.items)} above {self.min_score}, {len(report.failures)} failed")
        return report

    def analyze_item(self, item: ContentItem) -> AnalyzedItem:
        """Cache-aside analysis of a single item."""
        key = f"analysis:{item.id}"
        cached = self.cache.get_json(key)
        if cached is not None:
            analysis = AnalysisResult.model_validate(cached)
        else:
            analysis = self._analyze(item)
            self.cache.set_json(key, analysis.model_dump(by_alias=True), self.ttl)

        return AnalyzedItem(
            item=item,
            analysis=analysis,
            author_followers=self._follower_count(item),
        )

    def credibility(self, item: ContentItem) -> float:
        return credibility_score(item, self.weights, self.params)

    def _analyze(self, item: ContentItem) -> AnalysisResult:
        verdict = self.oracle.classify(item.text, item_id=item.id)
        return AnalysisResult(
            sentiment=verdict.sentiment,
            score=verdict.score,
            topics=verdict.topics,
            summary=verdict.summary,
            credibility_score=self.credibility(item),
        )

    def _follower_count(self, item: ContentItem) -> int:
        if self.fetcher is None:
            return 0
        return self.fetcher.get_follower_count(item.author_id)
