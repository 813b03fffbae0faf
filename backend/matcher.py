"""
Visual identity matcher.

The face comparison itself is an external service behind
``VisualMatcherService``. ``VisualIdentityMatcher`` wraps it with the
policy the attendance core relies on: no call for an empty gallery, an
explicit timeout, strict response validation and the confidence threshold.
"""
import asyncio
import logging
from typing import List, Literal, Optional, Sequence

from pydantic import BaseModel, Field, ValidationError

from config import MATCH_CONFIDENCE_THRESHOLD, MATCHER_TIMEOUT_SECONDS
from domain import Candidate, MatchResult, MatchStatus

logger = logging.getLogger(__name__)


class VisualMatcherService:
    """
    Contract for the external comparison service.

    ``compare`` returns a mapping with ``status`` (MATCH, NO_MATCH, NO_FACE or
    MULTIPLE_FACES), the best ``identity_id`` and its ``confidence`` in
    [0, 1]. A NO_MATCH response may still carry the best observed
    confidence.
    """

    async def compare(self, query_image: bytes, candidates: Sequence[Candidate]) -> dict:
        raise NotImplementedError


class MatcherResponse(BaseModel):
    status: Literal["MATCH", "NO_MATCH", "NO_FACE", "MULTIPLE_FACES"]
    identity_id: Optional[str] = None
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class VisualIdentityMatcher:

    def __init__(self, service: VisualMatcherService,
                 threshold: float = MATCH_CONFIDENCE_THRESHOLD,
                 timeout: float = MATCHER_TIMEOUT_SECONDS):
        if not 0.0 <= threshold <= 1.0:
            raise ValueError(f"threshold must be within [0, 1], got {threshold}")
        self.service = service
        self.threshold = threshold
        self.timeout = timeout

    async def resolve(self, query_image: bytes, candidates: List[Candidate]) -> MatchResult:
        if not candidates:
            return MatchResult.no_match()

        try:
            raw = await asyncio.wait_for(self.service.compare(query_image, candidates), self.timeout)
        except asyncio.TimeoutError:
            logger.warning("Matcher timed out after %.1fs", self.timeout)
            return MatchResult.error(f"Matcher timed out after {self.timeout}s")
        except Exception as e:
            logger.exception("Matcher service failed")
            return MatchResult.error(f"Matcher service failed: {e}")

        return self._apply_policy(raw, candidates)

    def _apply_policy(self, raw, candidates: List[Candidate]) -> MatchResult:
        try:
            response = MatcherResponse.model_validate(raw)
        except ValidationError as e:
            logger.warning("Malformed matcher response: %s", e)
            return MatchResult.error("Malformed matcher response")

        status = MatchStatus(response.status)
        if status is MatchStatus.NO_FACE:
            return MatchResult.no_face()
        if status is MatchStatus.MULTIPLE_FACES:
            return MatchResult.multiple_faces()
        if status is MatchStatus.NO_MATCH:
            return MatchResult.no_match(response.confidence)

        if response.identity_id is None or response.confidence is None:
            return MatchResult.error("MATCH response without identity or confidence")
        if response.identity_id not in {c.identity_id for c in candidates}:
            return MatchResult.error(f"Matcher returned unknown candidate {response.identity_id}")

        if response.confidence >= self.threshold:
            return MatchResult.match(response.identity_id, response.confidence)

        logger.info("Best candidate %s below threshold (%.3f < %.2f)",
                    response.identity_id, response.confidence, self.threshold)
        return MatchResult.no_match(response.confidence)
