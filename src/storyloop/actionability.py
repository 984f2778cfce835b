"""Lexical actionability check for generated plans.

A sentence is flagged when it uses a vague verb or adjective and carries no
quantifier (number, percentage, unit, or comparison). The check is purely
lexical; the word lists are meant to be tuned through configuration.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from storyloop.plan import Plan

DEFAULT_VAGUE_VERBS = ("optimize", "improve", "simplify", "reduce", "enhance")
DEFAULT_VAGUE_ADJECTIVES = (
    "proper",
    "comprehensive",
    "robust",
    "appropriate",
    "consistent",
    "clean",
)
DEFAULT_QUANTIFIER_PATTERN = (
    r"\d"
    r"|%"
    r"|[<>]=?|[≤≥]"
    r"|\b(?:less|more|fewer|greater|smaller|larger|at least|at most|no more than"
    r"|within|under|over|below|above|exactly|maximum|minimum)\b"
    r"|\b(?:ms|milliseconds?|seconds?|minutes?|hours?|bytes?|kb|mb|gb"
    r"|lines?|words?|characters?|percent|requests?|items?)\b"
)

_SENTENCE_SPLIT = re.compile(r"(?<=[.!?;])\s+|\n+")


def _verb_pattern(word: str) -> str:
    stem = word.lower()
    if len(stem) > 4 and stem[-1] in "ey":
        stem = stem[:-1]
    return rf"\b{re.escape(stem)}\w*"


def _adjective_pattern(word: str) -> str:
    return rf"\b{re.escape(word.lower())}(?:ly)?\b"


@dataclass(frozen=True, slots=True)
class VagueTermFinding:
    story_id: str
    field: str
    term: str
    sentence: str

    def describe(self) -> str:
        return f"{self.story_id} {self.field}: '{self.term}' in \"{self.sentence}\""


@dataclass(slots=True)
class VagueTermLexicon:
    vague_verbs: tuple[str, ...] = DEFAULT_VAGUE_VERBS
    vague_adjectives: tuple[str, ...] = DEFAULT_VAGUE_ADJECTIVES
    quantifier_pattern: str = DEFAULT_QUANTIFIER_PATTERN
    _terms: list[tuple[str, re.Pattern[str]]] = field(init=False, repr=False)
    _quantifier: re.Pattern[str] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.vague_verbs = tuple(word.strip() for word in self.vague_verbs if word.strip())
        self.vague_adjectives = tuple(
            word.strip() for word in self.vague_adjectives if word.strip()
        )
        self._terms = [
            (word, re.compile(_verb_pattern(word), re.IGNORECASE)) for word in self.vague_verbs
        ] + [
            (word, re.compile(_adjective_pattern(word), re.IGNORECASE))
            for word in self.vague_adjectives
        ]
        self._quantifier = re.compile(self.quantifier_pattern, re.IGNORECASE)

    @classmethod
    def from_words(
        cls, vague_verbs: Iterable[str], vague_adjectives: Iterable[str]
    ) -> VagueTermLexicon:
        return cls(vague_verbs=tuple(vague_verbs), vague_adjectives=tuple(vague_adjectives))

    def is_quantified(self, sentence: str) -> bool:
        return self._quantifier.search(sentence) is not None

    def vague_term_in(self, sentence: str) -> str | None:
        """Return the first unquantified vague term in ``sentence``, if any."""
        if self.is_quantified(sentence):
            return None
        for word, pattern in self._terms:
            if pattern.search(sentence):
                return word
        return None


def split_sentences(text: str) -> list[str]:
    return [part.strip() for part in _SENTENCE_SPLIT.split(text) if part.strip()]


def check_actionability(
    plan: Plan, lexicon: VagueTermLexicon | None = None
) -> list[VagueTermFinding]:
    lexicon = lexicon or VagueTermLexicon()
    findings: list[VagueTermFinding] = []
    for story in plan.stories:
        fields = [("description", story.description)] + [
            (f"acceptance_criteria[{index}]", criterion)
            for index, criterion in enumerate(story.acceptance_criteria)
        ]
        for field_name, text in fields:
            for sentence in split_sentences(text):
                term = lexicon.vague_term_in(sentence)
                if term is not None:
                    findings.append(
                        VagueTermFinding(
                            story_id=story.id,
                            field=field_name,
                            term=term,
                            sentence=sentence,
                        )
                    )
    return findings


def is_actionable(plan: Plan, lexicon: VagueTermLexicon | None = None) -> bool:
    return not check_actionability(plan, lexicon)
