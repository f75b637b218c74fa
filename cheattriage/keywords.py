import re

from .models import KeywordSet

# Word boundary: the neighbours of a match must not be ASCII letters or digits.
_BOUNDARY_BEFORE = r"(?<![a-z0-9])"
_BOUNDARY_AFTER = r"(?![a-z0-9])"


def basename_without_extension(text: str) -> str:
    """
    Last path component with its final extension removed. Works on both
    Windows and POSIX separators regardless of the host platform.
    """
    name = re.split(r"[\\/]", text)[-1]
    dot = name.rfind(".")
    return name[:dot] if dot > 0 else name


class KeywordMatcher:
    def __init__(self, keywords: KeywordSet):
        self._patterns = tuple(p for p in keywords.patterns if p)
        self._exact = frozenset(e.casefold() for e in keywords.exact_match if e)

        self._compiled = [
            re.compile(_BOUNDARY_BEFORE + re.escape(p.casefold()) + _BOUNDARY_AFTER)
            for p in self._patterns
        ]
        self._combined = None
        if self._compiled:
            alternation = "|".join(re.escape(p.casefold()) for p in self._patterns)
            self._combined = re.compile(f"{_BOUNDARY_BEFORE}(?:{alternation}){_BOUNDARY_AFTER}")

    @property
    def keywords(self) -> tuple[str, ...]:
        return self._patterns

    def _exact_hit(self, folded: str) -> str | None:
        if not self._exact:
            return None
        base = basename_without_extension(folded)
        return base if base in self._exact else None

    def contains_keyword(self, text: str | None) -> bool:
        if not text:
            return False

        folded = text.casefold()
        if self._exact_hit(folded) is not None:
            return True

        return self._combined is not None and self._combined.search(folded) is not None

    def find_keyword(self, text: str | None) -> str | None:
        """
        Return the first declared pattern that matches (original casing), or
        the lower-cased basename for an exact-match hit.
        """
        if not text:
            return None

        folded = text.casefold()
        exact = self._exact_hit(folded)
        if exact is not None:
            return exact

        for pattern, rx in zip(self._patterns, self._compiled):
            if rx.search(folded):
                return pattern
        return None

    def tag(self, text: str | None, *alternates: str | None) -> str:
        """`{keyword} ` prefix for a finding, or an empty string."""
        for candidate in (text, *alternates):
            kw = self.find_keyword(candidate)
            if kw:
                return f"{{{kw}}} "
        return ""
