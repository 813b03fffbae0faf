import asyncio

import pytest

from conftest import FakeMatcherService
from domain import Candidate, MatchStatus
from matcher import VisualIdentityMatcher

CANDIDATES = [Candidate("S100", b"ref-1"), Candidate("S200", b"ref-2")]


def resolve(response=None, error=None, delay=0.0, threshold=0.75, timeout=1.0, candidates=CANDIDATES):
    service = FakeMatcherService(response=response, error=error, delay=delay)
    matcher = VisualIdentityMatcher(service, threshold=threshold, timeout=timeout)
    return asyncio.run(matcher.resolve(b"query", candidates)), service


def test_confidence_at_threshold_is_a_match():
    result, _ = resolve({"status": "MATCH", "identity_id": "S100", "confidence": 0.75})
    assert result.status is MatchStatus.MATCH
    assert result.identity_id == "S100"
    assert result.confidence == 0.75


def test_confidence_just_below_threshold_is_no_match_with_confidence_kept():
    result, _ = resolve({"status": "MATCH", "identity_id": "S100", "confidence": 0.749999})
    assert result.status is MatchStatus.NO_MATCH
    assert result.identity_id is None
    assert result.confidence == 0.749999


def test_empty_candidate_set_skips_service():
    result, service = resolve({"status": "MATCH", "identity_id": "S100", "confidence": 0.99},
                              candidates=[])
    assert result.status is MatchStatus.NO_MATCH
    assert service.calls == []


def test_service_receives_query_and_candidates():
    _, service = resolve()
    assert service.calls == [(b"query", CANDIDATES)]


@pytest.mark.parametrize("status, expected", [
    ("NO_FACE", MatchStatus.NO_FACE),
    ("MULTIPLE_FACES", MatchStatus.MULTIPLE_FACES),
    ("NO_MATCH", MatchStatus.NO_MATCH),
])
def test_face_statuses_are_passed_through(status, expected):
    result, _ = resolve({"status": status})
    assert result.status is expected


def test_no_match_keeps_reported_confidence():
    result, _ = resolve({"status": "NO_MATCH", "confidence": 0.4})
    assert result.confidence == 0.4


def test_service_exception_is_matcher_error():
    result, _ = resolve(error=RuntimeError("model crashed"))
    assert result.status is MatchStatus.ERROR
    assert "model crashed" in result.detail


def test_timeout_is_matcher_error():
    result, _ = resolve(delay=0.5, timeout=0.05)
    assert result.status is MatchStatus.ERROR
    assert "timed out" in result.detail


@pytest.mark.parametrize("response", [
    {"status": "MATCH", "identity_id": "S100", "confidence": 1.5},
    {"status": "MATCH", "identity_id": "S100", "confidence": -0.1},
    {"status": "MATCH", "confidence": 0.9},
    {"status": "MATCH", "identity_id": "S999", "confidence": 0.9},
    {"status": "MAYBE"},
    {"identity_id": "S100"},
    "not a mapping",
])
def test_malformed_responses_are_matcher_errors(response):
    result, _ = resolve(response)
    assert result.status is MatchStatus.ERROR


def test_threshold_must_be_a_probability():
    with pytest.raises(ValueError):
        VisualIdentityMatcher(FakeMatcherService(), threshold=1.2)
