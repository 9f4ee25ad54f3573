# python -m pytest bicopilot/tests/pipeline/test_session_context.py -v

"""SessionContextStore: keying, expiry, eviction; orchestrator follow-up inheritance."""

import pytest

from bicopilot.context.models import PipelineRequest
from bicopilot.pipeline.session_context import SessionContextStore

FIRST = "Top 10 depositors yesterday from UK"
FOLLOW_UP = "and what about last month"


class FakeMonotonic:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def profile(classifier):
    return classifier.classify(FIRST)


class TestStore:
    def test_entries_are_keyed_by_user_and_session(self, profile):
        store = SessionContextStore(ttl_seconds=60, max_entries=10)
        store.put("alice", "s1", profile)

        assert store.get("alice", "s1") is profile
        assert store.get("bob", "s1") is None
        assert store.get("alice", "s2") is None

    def test_blank_session_is_never_stored(self, profile):
        store = SessionContextStore(ttl_seconds=60, max_entries=10)
        store.put("alice", "  ", profile)

        assert len(store) == 0
        assert store.get("alice", "") is None

    def test_entries_expire_after_ttl(self, profile):
        clock = FakeMonotonic()
        store = SessionContextStore(ttl_seconds=60, max_entries=10, clock=clock)
        store.put("alice", "s1", profile)

        clock.now += 59
        assert store.get("alice", "s1") is profile
        clock.now += 1
        assert store.get("alice", "s1") is None
        assert len(store) == 0

    def test_least_recently_used_is_evicted(self, profile):
        store = SessionContextStore(ttl_seconds=60, max_entries=2)
        store.put("u", "a", profile)
        store.put("u", "b", profile)
        store.get("u", "a")
        store.put("u", "c", profile)

        assert store.get("u", "b") is None
        assert store.get("u", "a") is profile
        assert store.get("u", "c") is profile


class TestOrchestratorFollowUp:
    def test_follow_up_inherits_domain_from_same_session(self, build_orchestrator):
        orchestrator = build_orchestrator(sessions=SessionContextStore(ttl_seconds=60))

        orchestrator.classify(PipelineRequest(question=FIRST, user_id="alice", session_id="s1"))
        same = orchestrator.classify(PipelineRequest(question=FOLLOW_UP, user_id="alice", session_id="s1"))
        other = orchestrator.classify(PipelineRequest(question=FOLLOW_UP, user_id="alice", session_id="s2"))

        assert same.domain.name == "Financial"
        assert other.domain.name != "Financial"

    def test_without_session_id_nothing_is_remembered(self, build_orchestrator):
        sessions = SessionContextStore(ttl_seconds=60)
        orchestrator = build_orchestrator(sessions=sessions)

        orchestrator.classify(PipelineRequest(question=FIRST, user_id="alice"))

        assert len(sessions) == 0

    def test_explicit_prior_profile_wins_over_session(self, build_orchestrator, classifier):
        sessions = SessionContextStore(ttl_seconds=60)
        orchestrator = build_orchestrator(sessions=sessions)
        gaming = classifier.classify("Show me top NetEnt games by revenue")
        sessions.put("alice", "s1", classifier.classify(FIRST))

        profile = orchestrator.classify(
            PipelineRequest(question=FOLLOW_UP, user_id="alice", session_id="s1", prior_profile=gaming)
        )

        assert profile.domain.name == "Gaming"
        assert sessions.get("alice", "s1") is profile
