import pytest

from conftest import MENU_RECORDS
from lumie.engine import ChatTurn, OutcomeStatus
from lumie.errors import LumieError
from lumie.pipeline import Step, StepRunner


def test_greeting_from_new_user(make_engine):
    engine = make_engine()
    outcome = engine.handle_message("hi", "u1")

    assert outcome.status is OutcomeStatus.OK
    assert outcome.intent == "greeting"
    assert outcome.confidence == 1
    assert outcome.context == "none"
    assert outcome.reply in {"Hi!", "Hello!"}


def test_menu_follow_up_flow(make_engine):
    engine = make_engine()

    opened = engine.handle_message("show menu", "u1")
    picked = engine.handle_message("pick one", "u1")

    assert opened.intent == "menu.open"
    assert opened.context == "menu"
    assert picked.intent == "menu.pick"
    assert picked.context == "menu"


def test_follow_up_as_first_message_falls_back(make_engine):
    engine = make_engine()
    outcome = engine.handle_message("pick one", "u1")

    assert outcome.intent == "None"
    assert outcome.confidence == 0
    assert outcome.reply in {"Sorry?", "Say again?"}


def test_echo_when_corpus_has_no_sentinel(make_engine):
    engine = make_engine(records=[record for record in MENU_RECORDS if record["intent"] != "None"])
    outcome = engine.handle_message("  pick one ", "u1")

    assert outcome.intent == "Echo"
    assert outcome.reply == 'You said: "pick one"'
    assert outcome.context == "none"


def test_echo_keeps_active_context(make_engine):
    engine = make_engine(records=[record for record in MENU_RECORDS if record["intent"] != "None"])
    engine.handle_message("show menu", "u1")
    outcome = engine.handle_message("qqqqqqqq zzzz", "u1")

    assert outcome.intent == "Echo"
    assert outcome.context == "menu"


def test_general_intent_clears_context(make_engine):
    engine = make_engine()
    engine.handle_message("show menu", "u1")
    outcome = engine.handle_message("bye", "u1")

    assert outcome.intent == "farewell"
    assert outcome.context == "none"
    assert engine.handle_message("pick one", "u1").intent == "None"


def test_fallback_clears_context(make_engine):
    engine = make_engine()
    engine.handle_message("show menu", "u1")
    outcome = engine.handle_message("qqqqqqqq zzzz", "u1")

    assert outcome.intent == "None"
    assert outcome.context == "none"


def test_fuzzy_reports_score_as_confidence(make_engine):
    engine = make_engine()
    outcome = engine.handle_message("helo", "u1")

    assert outcome.intent == "greeting"
    assert outcome.confidence == pytest.approx(1 - 8 / 9)


def test_context_expires_after_inactivity(make_engine, clock):
    engine = make_engine()
    engine.handle_message("show menu", "u1")
    clock.advance(301)

    outcome = engine.handle_message("pick one", "u1")

    assert outcome.intent == "None"
    assert len(engine.sessions) == 1


def test_rate_limit_allows_two_then_denies(make_engine, clock):
    engine = make_engine(max_requests=2, window_sec=60.0)
    start = clock.now

    results = [engine.handle_message("hi", "u1") for _ in range(3)]

    assert [result.status for result in results] == [
        OutcomeStatus.OK,
        OutcomeStatus.OK,
        OutcomeStatus.RATE_LIMITED,
    ]
    denied = results[-1]
    assert denied.context == "rate-limit"
    assert denied.retry_at == start + 60.0
    assert "Please wait" in denied.reply


def test_denied_request_does_not_touch_session(make_engine, clock):
    engine = make_engine(max_requests=1)
    engine.handle_message("show menu", "u1")
    session = engine.sessions.get("u1")
    seen = session.last_seen
    recent = list(session.recent_answers)

    clock.advance(5)
    outcome = engine.handle_message("pick one", "u1")

    assert outcome.status is OutcomeStatus.RATE_LIMITED
    assert session.last_seen == seen
    assert session.recent_answers == recent
    assert session.current_context == "menu"


@pytest.mark.parametrize("message", [None, "", "   ", 42, ["hi"]])
def test_invalid_input_changes_nothing(make_engine, message):
    engine = make_engine()
    outcome = engine.handle_message(message, "u1")

    assert outcome.status is OutcomeStatus.INVALID
    assert outcome.context == "invalid-input"
    assert len(engine.sessions) == 0
    assert len(engine.rate_limiter) == 0


def test_answers_do_not_repeat_back_to_back(make_engine):
    engine = make_engine()
    replies = [engine.handle_message("hi", "u1").reply for _ in range(6)]

    assert all(previous != current for previous, current in zip(replies, replies[1:]))


def test_users_have_independent_context(make_engine):
    engine = make_engine()
    engine.handle_message("show menu", "alice")

    assert engine.handle_message("pick one", "bob").intent == "None"
    assert engine.handle_message("pick one", "alice").intent == "menu.pick"


def test_stats_and_shutdown(make_engine):
    engine = make_engine()
    engine.handle_message("hi", "u1")
    assert engine.stats() == {"intents": len(MENU_RECORDS), "sessions": 1}

    engine.shutdown()
    assert len(engine.sessions) == 0
    assert len(engine.rate_limiter) == 0


def test_matching_is_delegated_to_corpus_resolve(make_engine, monkeypatch):
    engine = make_engine()
    calls = []
    resolve = engine.corpus.resolve

    def _recording_resolve(message, current_context=None):
        calls.append((message, current_context))
        return resolve(message, current_context)

    monkeypatch.setattr(engine.corpus, "resolve", _recording_resolve)
    engine.handle_message("show menu", "u1")
    outcome = engine.handle_message("  pick one ", "u1")

    assert calls == [("show menu", None), ("pick one", "menu")]
    assert outcome.intent == "menu.pick"


def test_turn_runs_single_match_step(make_engine):
    engine = make_engine()

    trace = engine._runner.run(ChatTurn(user_id="u1", message="hi"))

    assert trace == ["validate", "rate_check", "session_load", "intent_match", "context_update", "answer_pick", "respond"]


def test_echo_turn_skips_context_update(make_engine):
    engine = make_engine(records=[record for record in MENU_RECORDS if record["intent"] != "None"])

    trace = engine._runner.run(ChatTurn(user_id="u1", message="qqqqqqqq zzzz"))

    assert "intent_match" in trace
    assert "context_update" not in trace


def test_turn_without_outcome_raises(make_engine):
    engine = make_engine()
    engine._runner = StepRunner(steps=[Step("validate", engine._step_validate)])

    with pytest.raises(LumieError, match="ended without an outcome"):
        engine.handle_message("hi", "u1")
