import json
import logging
from typing import List, Literal, Optional

from openai import OpenAI, OpenAIError
from pydantic import BaseModel, Field

from alphafeed.errors import ScoringError

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a tweet analyzer with a focus on crypto/memecoin related tweets. "
    "Analyze the tweet and report its sentiment, an opportunity score, the topics it "
    "covers and a short summary. Respond only with valid JSON."
)

PROMPT_TEMPLATE = """\
Analyze this crypto/memecoin related tweet: "{text}"
Provide a JSON response with:
- sentiment (positive/negative/neutral)
- score (0-1, where 1 indicates high potential alpha/opportunity and 0 indicates scam/negative)
- topics (array of relevant topics: e.g., presale, launch, airdrop, token, blockchain name, etc.)
- summary (brief summary focusing on key trading signals and timeline)

Example:
Tweet: "$WIF just launched stealth on SOL! LP locked for 1 year, ownership renounced, 1000x potential!"
Response:
{{
  "sentiment": "positive",
  "score": 0.8,
  "topics": ["stealth launch", "SOL", "WIF", "memecoin", "liquidity locked", "ownership renounced"],
  "summary": "New memecoin WIF launched on Solana with locked liquidity and renounced ownership, suggesting an early opportunity."
}}
"""


class OracleVerdict(BaseModel):
    """Schema the classifier must answer with."""
    sentiment: Literal["positive", "negative", "neutral"]
    score: float = Field(ge=0.0, le=1.0)
    topics: List[str] = []
    summary: str = ""


def build_messages(text: str) -> List[dict]:
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": PROMPT_TEMPLATE.format(text=text)},
    ]


def parse_verdict(content: Optional[str], item_id: Optional[str] = None) -> OracleVerdict:
    """Validate raw oracle output; anything off-schema is a ScoringError."""
    if not content:
        raise ScoringError("Oracle returned an empty response", item_id=item_id)
    try:
        return OracleVerdict.model_validate(json.loads(content))
    except ValueError as e:
        # json.JSONDecodeError and pydantic.ValidationError are both ValueErrors
        raise ScoringError(f"Malformed oracle output: {e}", item_id=item_id) from e


class ClassificationOracle:
    """Sentiment classifier backed by an OpenAI chat model."""

    def __init__(self, api_key: str = "", model: str = "gpt-4o-mini",
                 client: Optional[OpenAI] = None):
        self.model = model
        self._client = client or OpenAI(api_key=api_key or None)

    def classify(self, text: str, item_id: Optional[str] = None) -> OracleVerdict:
        try:
            response = self._client.chat.completions.create(
                model=self.model,
                messages=build_messages(text),
                response_format={"type": "json_object"},
            )
        except OpenAIError as e:
            raise ScoringError(f"Oracle request failed: {e}", item_id=item_id) from e

        return parse_verdict(response.choices[0].message.content, item_id=item_id)
