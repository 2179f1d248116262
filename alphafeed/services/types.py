from pydantic import BaseModel, ConfigDict, Field
from typing import Dict, Literal, Optional, List
from datetime import datetime

class ContentItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    author_id: str = ""
    username: Optional[str] = None
    text: str = ""
    created_at: Optional[datetime] = None
    likes: int = 0
    retweets: int = 0
    replies: int = 0
    views: int = 0
    bookmark_count: int = 0
    hashtags: List[str] = []
    mentions: List[str] = []
    urls: List[str] = []
    photos: List[str] = []
    videos: List[str] = []
    has_poll: bool = False
    is_reply: bool = False
    is_retweet: bool = False
    is_quoted: bool = False
    is_self_thread: bool = False
    is_pin: bool = False
    thread: List[str] = []
    sensitive_content: bool = False
    permanent_url: Optional[str] = None

    @property
    def thread_depth(self) -> int:
        return len(self.thread)

    @property
    def media_count(self) -> int:
        return len(self.photos) + len(self.videos)

class Profile(BaseModel):
    user_id: str
    username: str
    name: Optional[str] = None
    followers_count: int = 0
    following_count: int = 0
    posts_count: int = 0
    is_verified: bool = False

class Session(BaseModel):
    username: str = ""
    cookies: Dict[str, str] = {}
    saved_at: Optional[datetime] = None

class AnalysisResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    sentiment: Literal["positive", "negative", "neutral"]
    score: float = Field(ge=0.0, le=1.0)
    topics: List[str] = []
    summary: str = ""
    credibility_score: float = Field(default=0.0, ge=0.0, le=1.0, alias="credibilityScore")

class AnalyzedItem(BaseModel):
    item: ContentItem
    analysis: AnalysisResult
    author_followers: int = 0
