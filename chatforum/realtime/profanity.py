"""
Profanity filter for relayed chat messages.

Word list entries use * as a wildcard for any run of word characters:
"*shit*" matches any word containing "shit", "hitler" only that word.
Matching words are replaced by asterisks of the same length.
"""

import re
from typing import Iterable, List, Optional

from chatforum.config import get_settings

_WORD_RE = re.compile(r"\w+", re.UNICODE)


def _compile(pattern: str) -> re.Pattern:
    parts = [re.escape(part) for part in pattern.lower().split("*")]
    return re.compile("^" + r"\w*".join(parts) + "$", re.UNICODE)


class ProfanityFilter:
    """Censors words matching a wildcard word list."""

    def __init__(self, words: Optional[Iterable[str]] = None):
        if words is None:
            words = get_settings().profanity_words
        self._patterns: List[re.Pattern] = [_compile(w) for w in words if w.strip("*")]

    def is_profane(self, word: str) -> bool:
        lowered = word.lower()
        return any(p.match(lowered) for p in self._patterns)

    def censor(self, text: str) -> str:
        def _replace(match: re.Match) -> str:
            word = match.group(0)
            return "*" * len(word) if self.is_profane(word) else word

        return _WORD_RE.sub(_replace, text)
