"""Conflict detection between a primary answer and its review.

The router only asks "did the review flag a problem?". Detectors answer with
a list of conflict descriptors (empty = no conflict), so a model-graded or
structured detector can replace the lexical one without touching routing
control flow.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable

SERIOUS_ISSUES = "Review identified serious issues requiring escalation"


class ConflictDetector(ABC):
    @abstractmethod
    def detect(self, primary: str, review: str) -> list[str]:
        """Return conflict descriptors found in review of primary."""


class LexicalConflictDetector(ConflictDetector):
    """Flags a conflict when the review mentions any problem-indicating term.

    Matching is a case-insensitive substring search, so "bug" also matches
    "bugs" and "debugging".
    """

    def __init__(self, terms: Iterable[str]) -> None:
        self._terms = tuple(t.lower() for t in terms if t)
        if not self._terms:
            raise ValueError("LexicalConflictDetector needs at least one term")

    @property
    def terms(self) -> tuple[str, ...]:
        return self._terms

    def matched_terms(self, review: str) -> list[str]:
        lowered = review.lower()
        return [term for term in self._terms if term in lowered]

    def detect(self, primary: str, review: str) -> list[str]:
        return [SERIOUS_ISSUES] if self.matched_terms(review) else []
