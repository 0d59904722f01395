"""
retention.analytics.sentiment - Two-tier text sentiment in [-1, 1].

Tier 1 asks a hosted classifier (Hugging Face inference API).  Whenever
that call errors, times out, returns a non-200 status, returns something
unparsable, or comes back neutral, the deterministic keyword lexicon
(tier 2) decides instead.  ``SentimentEstimator.estimate`` never raises.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from retention.analytics.lexicon import LanguageTable, default_lexicons
from retention.config import Settings

logger = logging.getLogger(__name__)

ENGLISH_MODEL = "cardiffnlp/twitter-roberta-base-sentiment-latest"
INDIC_MODEL = "ai4bharat/indic-bert"

_POSITIVE_LABELS = {"LABEL_2", "POSITIVE", "positive"}
_NEGATIVE_LABELS = {"LABEL_0", "NEGATIVE", "negative"}
_NEUTRAL_LABELS = {"LABEL_1", "NEUTRAL", "neutral"}


def clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


# ---------------------------------------------------------------------------
# Tier 2: keyword lexicon
# ---------------------------------------------------------------------------

def lexicon_score(text: str, language: str, table: Optional[LanguageTable] = None) -> float:
    """
    Deterministic keyword score for ``text``.

    Each whitespace token scores +1 if it contains a positive keyword,
    otherwise -1 if it contains a negative keyword.  The sum is divided by
    the token count and clamped to [-1, 1].  No tokens → 0.
    """
    lexicon = (table or default_lexicons()).get(language)
    tokens = (text or "").lower().split()
    if not tokens:
        return 0.0

    score = 0
    for token in tokens:
        if any(word in token for word in lexicon.positive):
            score += 1
        elif any(word in token for word in lexicon.negative):
            score -= 1
    return clamp(score / len(tokens), -1.0, 1.0)


# ---------------------------------------------------------------------------
# Tier 1: hosted classifier
# ---------------------------------------------------------------------------

def model_for_language(language: str) -> str:
    return ENGLISH_MODEL if (language or "en").lower() == "en" else INDIC_MODEL


def parse_classifier_output(body: Any) -> Optional[float]:
    """
    Convert a ``[[{"label", "score"}, ...]]`` (or flat list) response into
    a signed score.  Returns None when the body has no usable prediction.
    """
    if isinstance(body, list) and body and isinstance(body[0], list):
        body = body[0]
    if not isinstance(body, list) or not body:
        return None

    best_label: Optional[str] = None
    best_score = 0.0
    for pred in body:
        if not isinstance(pred, dict):
            continue
        label = pred.get("label")
        score = pred.get("score")
        if not isinstance(label, str) or not isinstance(score, (int, float)):
            continue
        if score > best_score:
            best_label, best_score = label, float(score)

    if best_label in _POSITIVE_LABELS:
        return clamp(best_score, -1.0, 1.0)
    if best_label in _NEGATIVE_LABELS:
        return clamp(-best_score, -1.0, 1.0)
    if best_label in _NEUTRAL_LABELS:
        return 0.0
    return None


class SentimentEstimator:
    """Classifier-first sentiment with lexicon fallback."""

    def __init__(
        self,
        settings: Settings,
        client: Optional[httpx.AsyncClient] = None,
        lexicons: Optional[LanguageTable] = None,
    ) -> None:
        self._settings = settings
        self._client = client
        self._owns_client = client is None
        self._lexicons = lexicons or default_lexicons()

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self._settings.sentiment_timeout_seconds)
            self._owns_client = True
        return self._client

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    async def classify(self, text: str, language: str) -> Optional[float]:
        """Tier 1.  Returns None when the classifier is unavailable or inconclusive."""
        if not self._settings.hugging_face_token:
            logger.debug("Sentiment classifier not configured; using lexicon")
            return None

        url = f"{self._settings.sentiment_api_url}/{model_for_language(language)}"
        headers = {"Authorization": f"Bearer {self._settings.hugging_face_token}"}
        try:
            client = await self._get_client()
            resp = await client.post(
                url,
                json={"inputs": text},
                headers=headers,
                timeout=self._settings.sentiment_timeout_seconds,
            )
        except httpx.HTTPError as exc:
            logger.warning("Sentiment classifier call failed: %s", exc)
            return None

        if resp.status_code != 200:
            logger.warning("Sentiment classifier returned HTTP %d: %s", resp.status_code, resp.text[:200])
            return None

        try:
            score = parse_classifier_output(resp.json())
        except ValueError as exc:
            logger.warning("Sentiment classifier returned unparsable body: %s", exc)
            return None

        if score is None:
            logger.warning("Sentiment classifier returned no usable prediction")
            return None
        if score == 0.0:
            # Zero is indistinguishable from "no opinion"; let the lexicon decide.
            return None
        return score

    async def estimate(self, text: str, language: str) -> float:
        """Score ``text`` in [-1, 1].  Never raises."""
        if not (text or "").strip():
            return 0.0
        try:
            score = await self.classify(text, language)
        except Exception:
            logger.exception("Sentiment classifier raised unexpectedly")
            score = None
        if score is not None:
            return score
        return lexicon_score(text, language, self._lexicons)
