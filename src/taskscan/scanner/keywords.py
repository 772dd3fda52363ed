from __future__ import annotations

import re
from collections.abc import Iterable

from taskscan.config import DEFAULT_GENERIC_TERMS, DEFAULT_STOPWORDS

WORD_PATTERN = re.compile(r"[a-z0-9]+")
NON_ALNUM_PATTERN = re.compile(r"[^a-z0-9]+")


def normalize(name: str) -> str:
    return NON_ALNUM_PATTERN.sub("", name.lower())


class KeywordExtractor:
    """Maps a free-text task description onto name patterns.

    ``keywords`` drops stopwords and short tokens. A file or identifier name
    matches when its normalized form contains two adjacent keywords joined
    (``navigation component`` -> ``navigationcomponent``) or equals one
    keyword that is not a generic term.
    """

    def __init__(
        self,
        *,
        stopwords: Iterable[str] = DEFAULT_STOPWORDS,
        min_length: int = 3,
        generic_terms: Iterable[str] = DEFAULT_GENERIC_TERMS,
    ) -> None:
        self.stopwords = {word.lower() for word in stopwords}
        self.min_length = min_length
        self.generic_terms = {word.lower() for word in generic_terms}

    @staticmethod
    def tokens(text: str) -> list[str]:
        return WORD_PATTERN.findall(text.lower())

    def keywords(self, text: str) -> list[str]:
        seen: set[str] = set()
        result: list[str] = []
        for token in self.tokens(text):
            if token in self.stopwords or len(token) < self.min_length or token in seen:
                continue
            seen.add(token)
            result.append(token)
        return result

    def subject(self, text: str) -> str | None:
        """The first non-generic keyword, i.e. the thing the task acts on."""
        return next(
            (keyword for keyword in self.keywords(text) if keyword not in self.generic_terms),
            None,
        )

    @staticmethod
    def joined_pairs(keywords: list[str]) -> list[str]:
        return [first + second for first, second in zip(keywords, keywords[1:], strict=False)]

    def name_matches(self, name: str, keywords: list[str]) -> bool:
        normalized = normalize(name)
        if not normalized or not keywords:
            return False
        if any(pair in normalized for pair in self.joined_pairs(keywords)):
            return True
        return any(
            normalized == keyword for keyword in keywords if keyword not in self.generic_terms
        )
