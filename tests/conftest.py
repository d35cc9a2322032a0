import random

import pytest

from lumie.answer_selector import AnswerSelector
from lumie.context_resolver import ContextResolver
from lumie.engine import ChatEngine
from lumie.intent_corpus import IntentCorpus
from lumie.models import IntentRecordPayload
from lumie.rate_limiter import RateLimiter
from lumie.session_store import SessionStore


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


MENU_RECORDS = [
    {"intent": "greeting", "utterances": ["hi", "hello"], "answers": ["Hi!", "Hello!"], "setContext": None},
    {"intent": "farewell", "utterances": ["bye"], "answers": ["Bye!", "See you!"]},
    {"intent": "menu.open", "utterances": ["show menu"], "answers": ["Pick one: A or B."], "setContext": "menu"},
    {"intent": "menu.pick", "utterances": ["pick one"], "answers": ["Picked!", "Done!"], "context": "menu"},
    {"intent": "None", "utterances": [], "answers": ["Sorry?", "Say again?"]},
]


def build_corpus(records, fuzzy_score_limit=0.45, tie_margin=0.05):
    payloads = [IntentRecordPayload.model_validate(record) for record in records]
    return IntentCorpus.build(payloads, fuzzy_score_limit=fuzzy_score_limit, tie_margin=tie_margin)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_engine(clock):
    def _make(
        records=None,
        max_requests=100,
        window_sec=60.0,
        session_ttl_sec=3600.0,
        context_ttl_sec=300.0,
        max_recent_answers=5,
        fuzzy_score_limit=0.45,
        seed=7,
    ):
        corpus = build_corpus(MENU_RECORDS if records is None else records, fuzzy_score_limit=fuzzy_score_limit)
        return ChatEngine(
            corpus=corpus,
            rate_limiter=RateLimiter(max_requests=max_requests, window_sec=window_sec, clock=clock),
            sessions=SessionStore(session_ttl_sec=session_ttl_sec, context_ttl_sec=context_ttl_sec, clock=clock),
            selector=AnswerSelector(max_recent_answers, rng=random.Random(seed)),
            context_resolver=ContextResolver({"greeting", "farewell", "thanks"}),
            clock=clock,
        )

    return _make
