"""Tests for batched, cached item scoring."""
from unittest.mock import MagicMock

import pytest

from alphafeed.errors import ScoringError
from alphafeed.nlp.scorer import Scorer
from alphafeed.services.fetcher import ContentFetcher
from tests.conftest import FakeSource, ScriptedOracle, make_item


@pytest.fixture
def sleeps():
    return []


def _scorer(oracle, cache, settings, sleeps, fetcher=None):
    return Scorer(oracle, cache, fetcher=fetcher, settings=settings, sleep=sleeps.append)


def test_second_analysis_served_from_cache(cache, settings, sleeps):
    oracle = ScriptedOracle()
    scorer = _scorer(oracle, cache, settings, sleeps)
    items = [make_item("1"), make_item("2")]

    scorer.analyze(items)
    report = scorer.analyze(items)

    assert oracle.calls.count("1") == 1
    assert oracle.calls.count("2") == 1
    assert len(report.items) == 2
    assert cache.get_json("analysis:1")["credibilityScore"] == report.items[0].analysis.credibility_score


def test_analysis_cache_uses_longer_ttl(cache, clock, settings, sleeps):
    oracle = ScriptedOracle()
    scorer = _scorer(oracle, cache, settings, sleeps)

    scorer.analyze([make_item("1")])
    clock.advance(3599)
    scorer.analyze([make_item("1")])
    assert len(oracle.calls) == 1

    clock.advance(2)
    scorer.analyze([make_item("1")])
    assert len(oracle.calls) == 2


def test_low_scores_filtered(cache, settings, sleeps):
    oracle = ScriptedOracle(scores={"1": 0.9, "2": 0.3, "3": 0.1})
    scorer = _scorer(oracle, cache, settings, sleeps)

    report = scorer.analyze([make_item("1"), make_item("2"), make_item("3")])

    assert [a.item.id for a in report.items] == ["1"]
    assert report.total == 3
    assert report.scored == 3


def test_batches_are_throttled(cache, settings, sleeps):
    oracle = ScriptedOracle()
    scorer = _scorer(oracle, cache, settings, sleeps)

    scorer.analyze([make_item(str(i)) for i in range(25)])

    # Three batches of 10/10/5 with a delay only between them
    assert sleeps == [1.0, 1.0]
    assert len(oracle.calls) == 25


def test_items_within_batch_run_concurrently(cache, settings, sleeps):
    oracle = ScriptedOracle(delay=0.05)
    scorer = _scorer(oracle, cache, settings, sleeps)

    scorer.analyze([make_item(str(i)) for i in range(10)])

    assert oracle.max_active > 1
    assert oracle.max_active <= settings.batch_size


def test_malformed_output_isolated_to_item(cache, settings, sleeps):
    oracle = ScriptedOracle(malformed={"7"})
    scorer = _scorer(oracle, cache, settings, sleeps)

    report = scorer.analyze([make_item(str(i)) for i in range(10)])

    assert len(report.items) == 9
    assert "7" not in [a.item.id for a in report.items]
    assert [f.item_id for f in report.failures] == ["7"]
    assert cache.get("analysis:7") is None


def test_unexpected_error_becomes_scoring_error(cache, settings, sleeps):
    oracle = MagicMock()
    oracle.classify.side_effect = RuntimeError("socket closed")
    scorer = _scorer(oracle, cache, settings, sleeps)

    report = scorer.analyze([make_item("1")])

    assert report.items == []
    assert isinstance(report.failures[0], ScoringError)
    assert report.failures[0].item_id == "1"


def test_credibility_attached_and_bounded(cache, settings, sleeps):
    scorer = _scorer(ScriptedOracle(), cache, settings, sleeps)
    item = make_item("1", videos=["v"], likes=500, views=2000)

    analyzed = scorer.analyze_item(item)

    assert analyzed.analysis.credibility_score == pytest.approx(scorer.credibility(item))
    assert 0.0 <= analyzed.analysis.credibility_score <= 1.0


def test_follower_enrichment_degrades(cache, settings, sleeps):
    source = FakeSource()
    source.followers["author-1"] = 900
    fetcher = ContentFetcher(source, cache, settings=settings)
    scorer = _scorer(ScriptedOracle(), cache, settings, sleeps, fetcher=fetcher)

    report = scorer.analyze([make_item("1"), make_item("2")])

    followers = {a.item.id: a.author_followers for a in report.items}
    assert followers == {"1": 900, "2": 0}


def test_empty_input(cache, settings, sleeps):
    report = _scorer(ScriptedOracle(), cache, settings, sleeps).analyze([])
    assert report.items == [] and report.failures == [] and sleeps == []
