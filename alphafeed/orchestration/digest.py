"""Aggregate statistics and the published digest envelope."""
import time
from collections import Counter
from typing import Dict, List, Sequence

from alphafeed.services.types import AnalyzedItem


def is_significant(analyzed: AnalyzedItem, min_score: float, min_credibility: float) -> bool:
    return (analyzed.analysis.score > min_score
            and analyzed.analysis.credibility_score > min_credibility)


def top_topics(items: Sequence[AnalyzedItem], limit: int = 5) -> List[Dict]:
    counts = Counter(topic for a in items for topic in a.analysis.topics)
    # Counter.most_common keeps first-seen order among equal counts
    return [{"topic": topic, "count": count} for topic, count in counts.most_common(limit)]


def compute_statistics(items: Sequence[AnalyzedItem], topic_limit: int = 5) -> Dict:
    if not items:
        return {
            "averageScore": 0.0,
            "averageCredibility": 0.0,
            "sentimentDistribution": {},
            "topTopics": [],
        }

    return {
        "averageScore": sum(a.analysis.score for a in items) / len(items),
        "averageCredibility": sum(a.analysis.credibility_score for a in items) / len(items),
        "sentimentDistribution": dict(Counter(a.analysis.sentiment for a in items)),
        "topTopics": top_topics(items, topic_limit),
    }


def serialize_item(analyzed: AnalyzedItem) -> Dict:
    item = analyzed.item
    payload = item.model_dump(mode="json")
    payload["analysis"] = analyzed.analysis.model_dump(by_alias=True)
    payload["authorFollowers"] = analyzed.author_followers
    payload["engagement"] = {
        "likes": item.likes or 0,
        "retweets": item.retweets or 0,
        "replies": item.replies or 0,
        "views": item.views or 0,
        "bookmarks": item.bookmark_count or 0,
    }
    return payload


def build_envelope(significant: Sequence[AnalyzedItem], total_analyzed: int,
                   target_subjects: Dict, topic_limit: int = 5) -> Dict:
    timestamp = int(time.time() * 1000)
    return {
        "timestamp": timestamp,
        "metadata": {
            "totalAnalyzed": total_analyzed,
            "significantCount": len(significant),
            "targetSubjects": target_subjects,
            "batchId": str(timestamp),
        },
        "statistics": compute_statistics(significant, topic_limit),
        "items": [serialize_item(a) for a in significant],
    }
