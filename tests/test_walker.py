import logging

from guard_rp.decision_parser import JudgeDecision
from guard_rp.judge import GenerationFailed, InvalidChoice, Judge, ParseFailed
from guard_rp.llm_engine import DecodeError
from guard_rp.messages import ChatMessage
from guard_rp.walker import Fallback, Finished, Quit, ScenarioWalker, SessionState, Transition


def ok(choice, reason="fine"):
    return f'<think>hmm</think>{{"decision": "{choice}", "reason": "{reason}"}}'


def make_walker(engine, graph, io):
    return ScenarioWalker(Judge(engine), graph, io)


def test_cooperative_player_is_cleared(make_engine, make_io, two_step_graph):
    engine = make_engine([ok("PASSPORT_CHECK", "handed it over")])
    io = make_io(lines=["Sure, here is my passport."])
    outcome = make_walker(engine, two_step_graph, io).play_round()

    assert outcome == Finished(
        success=True, steps_completed=1, total_steps=1, terminal_node_id="PASSPORT_CHECK"
    )
    assert io.shown("line") == [("Guard", "Hello. Passport please."), ("Guard", "Welcome.")]
    assert io.shown("reasoning") == [("handed it over",)]
    assert len(engine.calls) == 1


def test_judge_sees_guard_line_then_player_line(make_engine, make_io, two_step_graph):
    engine = make_engine([ok("FAILED")])
    make_walker(engine, two_step_graph, make_io(lines=["No."])).play_round()
    messages, _ = engine.calls[0]
    assert messages[1:] == [ChatMessage.assistant("Hello. Passport please."), ChatMessage.user("No.")]


def test_denied_player(make_engine, make_io, two_step_graph):
    engine = make_engine([ok("FAILED", "refused")])
    outcome = make_walker(engine, two_step_graph, make_io(lines=["No."])).play_round()
    assert outcome == Finished(success=False, steps_completed=1, total_steps=1, terminal_node_id="FAILED")


def test_quit_never_calls_the_judge(make_engine, make_io, two_step_graph):
    engine = make_engine()
    io = make_io(lines=["  QUIT "])
    assert make_walker(engine, two_step_graph, io).play_round() == Quit(steps_completed=0)
    assert engine.calls == []


def test_quit_reports_steps_so_far(make_engine, make_io, chain_graph):
    engine = make_engine([ok("B")])
    io = make_io(lines=["hello", "exit"])
    assert make_walker(engine, chain_graph, io).play_round() == Quit(steps_completed=1)


def test_empty_input_reprompts_without_duplicating_the_line(make_engine, make_io, two_step_graph):
    engine = make_engine([ok("PASSPORT_CHECK")])
    io = make_io(lines=["", "   ", "here you go"])
    outcome = make_walker(engine, two_step_graph, io).play_round()

    assert outcome.steps_completed == 1
    assert io.shown("notice").count(("(Please say something.)",)) == 2
    messages, _ = engine.calls[0]
    assert messages[1:] == [
        ChatMessage.assistant("Hello. Passport please."),
        ChatMessage.user("here you go"),
    ]


def test_invalid_choice_falls_back_to_first_option(make_engine, make_io, chain_graph, caplog):
    engine = make_engine([ok("C", "skipping ahead"), ok("C")])
    io = make_io(lines=["hi", "bye"])
    with caplog.at_level(logging.WARNING, logger="guard_rp.walker"):
        outcome = make_walker(engine, chain_graph, io).play_round()

    assert outcome == Finished(success=True, steps_completed=2, total_steps=2, terminal_node_id="C")
    assert [line for _, line in io.shown("line")] == ["first", "second", "done"]
    # the rejected decision's reasoning is still shown
    assert ("skipping ahead",) in io.shown("reasoning")
    assert "falling back to B" in caplog.text


def test_unparseable_and_failed_generation_fall_back(make_engine, make_io, chain_graph):
    engine = make_engine(["I refuse to answer in JSON.", DecodeError("context window exhausted")])
    io = make_io(lines=["hi", "bye"])
    outcome = make_walker(engine, chain_graph, io).play_round()
    assert outcome == Finished(success=True, steps_completed=2, total_steps=2, terminal_node_id="C")
    assert io.shown("reasoning") == []


def test_resolve_returns_fallback_with_error(make_engine, two_step_graph):
    state = SessionState.start(two_step_graph)
    state.conversation.append(ChatMessage.user("?"))
    walker = ScenarioWalker(Judge(make_engine(["nope"])), two_step_graph, io=None)

    result = walker.resolve(state, two_step_graph.start_node)
    assert isinstance(result, Fallback)
    assert result.target == "PASSPORT_CHECK"
    assert isinstance(result.error, ParseFailed)


def test_resolve_wraps_generation_errors(make_engine, two_step_graph):
    state = SessionState.start(two_step_graph)
    walker = ScenarioWalker(Judge(make_engine([DecodeError("boom")])), two_step_graph, io=None)
    result = walker.resolve(state, two_step_graph.start_node)
    assert isinstance(result.error, GenerationFailed)


def test_resolve_returns_transition(make_engine, two_step_graph):
    state = SessionState.start(two_step_graph)
    walker = ScenarioWalker(Judge(make_engine([ok("FAILED", "rude")])), two_step_graph, io=None)
    result = walker.resolve(state, two_step_graph.start_node)
    assert isinstance(result, Transition)
    assert result.target == "FAILED"
    assert result.decision.rationale == "rude"


def test_invalid_choice_fallback_keeps_attempted_id(make_engine, two_step_graph):
    state = SessionState.start(two_step_graph)
    walker = ScenarioWalker(Judge(make_engine([ok("CLEARED")])), two_step_graph, io=None)
    result = walker.resolve(state, two_step_graph.start_node)
    assert isinstance(result.error, InvalidChoice)
    assert result.error.attempted == "CLEARED"


def test_each_round_starts_fresh(make_engine, make_io, two_step_graph):
    engine = make_engine([ok("FAILED"), ok("PASSPORT_CHECK")])
    io = make_io(lines=["no", "yes"], restart=[True, False])
    make_walker(engine, two_step_graph, io).run()

    outcomes = [o for (o,) in io.shown("outcome")]
    assert [o.success for o in outcomes] == [False, True]
    assert len(io.shown("banner")) == 2
    # the second round's judge saw only its own turns
    second_messages, _ = engine.calls[1]
    assert second_messages[1:] == [ChatMessage.assistant("Hello. Passport please."), ChatMessage.user("yes")]


def test_run_stops_after_quit_choice(make_engine, make_io, two_step_graph):
    io = make_io(lines=["quit"], restart=[False])
    make_walker(make_engine(), two_step_graph, io).run()
    assert io.shown("outcome") == [(Quit(0),)]


class OffGraphJudge:
    """Returns a fixed decision regardless of the allowed choices."""

    def __init__(self, choice):
        self.choice = choice
        self.calls = 0

    def judge(self, conversation, node, valid_choices):
        self.calls += 1
        return JudgeDecision(self.choice, "made it up")


def test_choice_outside_the_graph_falls_back(make_io, two_step_graph, caplog):
    judge = OffGraphJudge("C")
    io = make_io(lines=["hello"])
    with caplog.at_level(logging.WARNING, logger="guard_rp.walker"):
        outcome = ScenarioWalker(judge, two_step_graph, io).play_round()

    assert outcome == Finished(success=True, steps_completed=1, total_steps=1, terminal_node_id="PASSPORT_CHECK")
    assert judge.calls == 1
    assert ("made it up",) in io.shown("reasoning")
    assert "falling back to PASSPORT_CHECK" in caplog.text


def test_choice_valid_elsewhere_but_not_here_falls_back(two_step_graph):
    # START is a real node, just not one of its own options
    state = SessionState.start(two_step_graph)
    walker = ScenarioWalker(OffGraphJudge("START"), two_step_graph, io=None)
    result = walker.resolve(state, two_step_graph.start_node)
    assert isinstance(result, Fallback)
    assert result.target == "PASSPORT_CHECK"
    assert isinstance(result.error, InvalidChoice)
    assert result.error.attempted == "START"
    assert result.error.raw is None
