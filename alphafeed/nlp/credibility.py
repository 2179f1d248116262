"""
Composite credibility score for a content item.

Four sub-scores, each clamped to [0, 1], are blended with
CredibilityWeights. The constants inside the formulas live in
CredibilityParams so they can be tuned without touching the code.
"""

import math
from pydantic import BaseModel, ConfigDict, model_validator

from alphafeed.services.types import ContentItem


class CredibilityWeights(BaseModel):
    model_config = ConfigDict(frozen=True)

    engagement: float = 0.25
    content_quality: float = 0.15
    behavioral: float = 0.25
    media_richness: float = 0.35

    @model_validator(mode="after")
    def _check_total(self):
        weights = (self.engagement, self.content_quality, self.behavioral, self.media_richness)
        if any(w < 0 for w in weights):
            raise ValueError("Credibility weights must be non-negative")
        if sum(weights) > 1.0 + 1e-9:
            raise ValueError(f"Credibility weights sum to {sum(weights):.3f}, must be <= 1")
        return self


class CredibilityParams(BaseModel):
    model_config = ConfigDict(frozen=True)

    # Engagement: counts at these values normalize to 1.0 on a log10 scale
    likes_ceiling: int = 100_000
    retweets_ceiling: int = 100_000
    replies_ceiling: int = 10_000
    bookmarks_ceiling: int = 10_000
    likes_weight: float = 0.3
    retweets_weight: float = 0.3
    replies_weight: float = 0.2
    bookmarks_weight: float = 0.1
    engagement_rate_weight: float = 0.1

    # Content quality
    words_per_length_point: float = 50.0
    length_cap: float = 0.3
    max_hashtag_ratio: float = 0.2
    hashtag_bonus: float = 0.15
    hashtag_penalty: float = 0.1
    link_bonus: float = 0.15
    max_mention_ratio: float = 0.1
    mention_bonus: float = 0.1
    mention_penalty: float = 0.1
    poll_bonus: float = 0.15
    sensitive_penalty: float = 0.2

    # Behavioral
    behavior_base: float = 0.5
    original_bonus: float = 0.2
    retweet_penalty: float = 0.1
    quote_bonus: float = 0.1
    thread_bonus: float = 0.15
    thread_item_bonus: float = 0.05
    thread_depth_cap: float = 0.15
    pin_bonus: float = 0.1
    reply_bonus: float = 0.1

    # Media richness
    photo_bonus: float = 0.3
    video_bonus: float = 0.4
    text_only_link_bonus: float = 0.2
    max_media: int = 4
    excess_media_penalty: float = 0.2


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(value, high))


def _log_normalize(count: int, ceiling: int) -> float:
    return math.log10(max(count, 0) + 1) / math.log10(ceiling)


def engagement_score(item: ContentItem, params: CredibilityParams = CredibilityParams()) -> float:
    p = params
    interactions = item.likes + item.retweets + item.replies
    rate = min(interactions / item.views, 1.0) if item.views > 0 else 0.0

    score = (
        _log_normalize(item.likes, p.likes_ceiling) * p.likes_weight
        + _log_normalize(item.retweets, p.retweets_ceiling) * p.retweets_weight
        + _log_normalize(item.replies, p.replies_ceiling) * p.replies_weight
        + _log_normalize(item.bookmark_count, p.bookmarks_ceiling) * p.bookmarks_weight
        + rate * p.engagement_rate_weight
    )
    return clamp(score)


def content_quality_score(item: ContentItem, params: CredibilityParams = CredibilityParams()) -> float:
    p = params
    word_count = max(len(item.text.split()), 1)

    score = min(word_count / p.words_per_length_point, p.length_cap)

    hashtag_ratio = len(item.hashtags) / word_count
    score += p.hashtag_bonus if hashtag_ratio <= p.max_hashtag_ratio else -p.hashtag_penalty

    if item.urls:
        score += p.link_bonus

    mention_ratio = len(item.mentions) / word_count
    score += p.mention_bonus if mention_ratio <= p.max_mention_ratio else -p.mention_penalty

    if item.has_poll:
        score += p.poll_bonus
    if item.sensitive_content:
        score -= p.sensitive_penalty

    return clamp(score)


def behavioral_score(item: ContentItem, params: CredibilityParams = CredibilityParams()) -> float:
    p = params
    score = p.behavior_base

    score += -p.retweet_penalty if item.is_retweet else p.original_bonus

    if item.is_quoted:
        score += p.quote_bonus

    if item.is_self_thread:
        score += p.thread_bonus
        score += min(item.thread_depth * p.thread_item_bonus, p.thread_depth_cap)

    if item.is_pin:
        score += p.pin_bonus
    if item.is_reply:
        score += p.reply_bonus

    return clamp(score)


def media_richness_score(item: ContentItem, params: CredibilityParams = CredibilityParams()) -> float:
    p = params
    score = 0.0

    if item.photos:
        score += p.photo_bonus
    if item.videos:
        score += p.video_bonus

    # Link-only or poll-only posts are informational, not low effort
    if not item.photos and not item.videos and (item.urls or item.has_poll):
        score += p.text_only_link_bonus

    if item.media_count > p.max_media:
        score -= p.excess_media_penalty

    return clamp(score)


def credibility_score(item: ContentItem,
                      weights: CredibilityWeights = CredibilityWeights(),
                      params: CredibilityParams = CredibilityParams()) -> float:
    """Weighted blend of the four sub-scores, clamped to [0, 1]."""
    return clamp(
        engagement_score(item, params) * weights.engagement
        + content_quality_score(item, params) * weights.content_quality
        + behavioral_score(item, params) * weights.behavioral
        + media_richness_score(item, params) * weights.media_richness
    )
