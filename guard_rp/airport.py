"""기본 시나리오: 공항 출입국 심사.

판정 기준은 작은 모델이 읽기 쉽도록 짧고 직접적으로 쓴다.
통과 선택지를 항상 먼저 둔다. (첫 선택지 편향이 실패 쪽으로 가지 않게)
"""

from __future__ import annotations

from textwrap import dedent

from guard_rp.scenario import Decision, NextNode, ScenarioGraph, ScenarioNode, Terminal

START_NODE_ID = "START"


def airport_security_scenario() -> ScenarioGraph:
    nodes = [
        ScenarioNode(
            id="START",
            transcript="Hello. Passport please.",
            kind=Decision(
                (
                    NextNode("PASSPORT_CHECK", "Traveller proceeds to get the passport checked."),
                    NextNode("FAILED", "Traveller failed the border inspection."),
                )
            ),
            system_context=dedent(
                """\
                ## CRITERIA:
                - **PASSPORT_CHECK**: Choose this if the traveller hands over the passport peacefully.
                - **FAILED**: Choose this if the traveller refuses, ignores, or answers inappropriately.
                """
            ),
        ),
        ScenarioNode(
            id="PASSPORT_CHECK",
            transcript="Thank you. Let me take a look... Where are you travelling from today?",
            kind=Decision(
                (
                    NextNode(
                        "QUESTION_PURPOSE",
                        "Traveller answered appropriately. Proceeding with the questioning.",
                    ),
                    NextNode("FAILED", "Traveller failed the questioning."),
                )
            ),
            system_context=dedent(
                """\
                ## CRITERIA:
                - **QUESTION_PURPOSE**: traveller names a real place. It may be a country or city name.
                - **FAILED**: traveller is evasive, vague, or contradictory.
                EXAMPLES FOR PROPER RESPONSES:
                    - From Texas.
                    - I'm travelling from Frankfurt.
                    - From Atlanta, Georgia.
                """
            ),
        ),
        ScenarioNode(
            id="QUESTION_PURPOSE",
            transcript="And what is the purpose of your visit?",
            kind=Decision(
                (
                    NextNode("LUGGAGE_CHECK", "Traveller answered appropriately. Proceed to luggage check."),
                    NextNode("FAILED_SUSPICIOUS", "Traveller's answers do not add up."),
                )
            ),
            system_context=(
                "The guard asked the purpose of the visit.\n"
                "LUGGAGE_CHECK = traveller gives a normal reason (tourism, business, family, etc.).\n"
                "FAILED_SUSPICIOUS = traveller refuses, mentions something illegal, or is evasive."
            ),
        ),
        ScenarioNode(
            id="LUGGAGE_CHECK",
            transcript="Alright. Do you have anything to declare?",
            kind=Decision(
                (
                    NextNode("CLEARED", "Traveller says nothing to declare or lists normal items."),
                    NextNode(
                        "FAILED_CONTRABAND",
                        "Traveller mentions illegal items, acts nervous, or is suspicious.",
                    ),
                )
            ),
            system_context=(
                "The guard asked about declarations.\n"
                "CLEARED = traveller says nothing to declare or lists normal items.\n"
                "FAILED_CONTRABAND = traveller mentions illegal items, acts nervous, or is suspicious."
            ),
        ),
        # 성공 종료
        ScenarioNode(
            id="CLEARED",
            transcript="Everything checks out. Welcome, and enjoy your stay!",
            kind=Terminal(is_success=True),
        ),
        # 실패 종료
        ScenarioNode(
            id="FAILED",
            transcript="Sir/Ma'am, I'm going to have to ask you to step aside. Security!",
            kind=Terminal(is_success=False),
        ),
        ScenarioNode(
            id="FAILED_SUSPICIOUS",
            transcript="Your answers don't add up. Please follow me to secondary screening.",
            kind=Terminal(is_success=False),
        ),
        ScenarioNode(
            id="FAILED_CONTRABAND",
            transcript="I'm going to need you to open your bags. Security has been notified.",
            kind=Terminal(is_success=False),
        ),
    ]
    return ScenarioGraph.from_nodes(nodes, START_NODE_ID)
