"""Shared pytest fixtures: small scenario graphs, a scripted engine, a scripted terminal."""

import pytest

from guard_rp.scenario import Decision, NextNode, ScenarioGraph, ScenarioNode, Terminal


class FakeEngine:
    """Stands in for LLMEngine: returns queued outputs, or raises queued exceptions."""

    def __init__(self, outputs=()):
        self.outputs = list(outputs)
        self.calls = []

    def generate(self, messages, policy):
        self.calls.append((list(messages), policy))
        out = self.outputs.pop(0)
        if isinstance(out, BaseException):
            raise out
        return out


class ScriptedIO:
    """TerminalIO that replays player lines and restart answers, and records everything shown."""

    def __init__(self, lines=(), restart=()):
        self.lines = list(lines)
        self.restart = list(restart)
        self.events = []

    def show_banner(self):
        self.events.append(("banner",))

    def display_line(self, speaker, text):
        self.events.append(("line", speaker, text))

    def display_notice(self, text):
        self.events.append(("notice", text))

    def display_reasoning(self, text):
        self.events.append(("reasoning", text))

    def read_player_line(self):
        return self.lines.pop(0)

    def display_outcome(self, outcome):
        self.events.append(("outcome", outcome))

    def read_restart_choice(self):
        return self.restart.pop(0)

    def shown(self, kind):
        return [e[1:] for e in self.events if e[0] == kind]


@pytest.fixture
def make_engine():
    return FakeEngine


@pytest.fixture
def make_io():
    return ScriptedIO


@pytest.fixture
def two_step_graph():
    """START --(PASSPORT_CHECK | FAILED)--> terminal."""
    return ScenarioGraph.from_nodes(
        [
            ScenarioNode(
                id="START",
                transcript="Hello. Passport please.",
                kind=Decision(
                    (
                        NextNode("PASSPORT_CHECK", "Traveller hands over the passport."),
                        NextNode("FAILED", "Traveller refuses."),
                    )
                ),
                system_context="PASS if polite.",
            ),
            ScenarioNode("PASSPORT_CHECK", "Welcome.", Terminal(True)),
            ScenarioNode("FAILED", "Step aside.", Terminal(False)),
        ],
        "START",
    )


@pytest.fixture
def chain_graph():
    """A -> B -> C(terminal), with shortcuts from A and B straight to FAIL."""
    return ScenarioGraph.from_nodes(
        [
            ScenarioNode("A", "first", Decision((NextNode("B"), NextNode("FAIL")))),
            ScenarioNode("B", "second", Decision((NextNode("C"), NextNode("FAIL")))),
            ScenarioNode("C", "done", Terminal(True)),
            ScenarioNode("FAIL", "nope", Terminal(False)),
        ],
        "A",
    )
