from __future__ import annotations

import re
from enum import Enum
from typing import Protocol

APPROVED_KEYWORD = "APPROVED"
ALL_PASSED_KEYWORD = "ALL_PASSED"
CLARIFICATION_KEYWORD = "CLARIFICATION_NEEDED"


class Decision(str, Enum):
    APPROVED = "approved"
    CLARIFY = "clarify"
    FEEDBACK = "feedback"


def response_contains(response: str, keyword: str) -> bool:
    return keyword.upper() in response.upper()


class DecisionClassifier(Protocol):
    def classify(
        self,
        response: str,
        approval_keyword: str,
        clarification_keyword: str | None = None,
    ) -> Decision: ...

    def extract_question(self, response: str, clarification_keyword: str) -> str: ...


class KeywordDecisionClassifier:
    """Reads decisions from keyword tokens embedded in free text.

    Approval takes precedence over a clarification request. Anything else is
    feedback for the drafter.
    """

    def classify(
        self,
        response: str,
        approval_keyword: str,
        clarification_keyword: str | None = None,
    ) -> Decision:
        if response_contains(response, approval_keyword):
            return Decision.APPROVED
        if clarification_keyword and response_contains(response, clarification_keyword):
            return Decision.CLARIFY
        return Decision.FEEDBACK

    def extract_question(self, response: str, clarification_keyword: str) -> str:
        match = re.search(re.escape(clarification_keyword), response, re.IGNORECASE)
        if match is None:
            return response.strip()
        question = response[match.end() :].strip(" \t\r\n:-")
        return question or response.strip()
