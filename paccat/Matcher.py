"""Match archive entry paths against the requested file patterns.

Patterns are either literal names/paths or regular expressions; the mode
is fixed when the `Matcher` is built. If no pattern contains a ``/`` only
the basename of an entry is compared, otherwise the full path is.

The matcher keeps a ledger of the pattern indices that have been
satisfied. The ledger outlives a single archive so that several packages
can together satisfy several patterns; it is cleared explicitly when a
new batch of targets is resolved.
"""

import re
from typing import List, Sequence, Set

from .Errors import PatternError

WILDCARD = "*"


class Matcher:
    """Decide whether entry paths satisfy the requested patterns.

    Attributes:
        regex (bool): True when patterns are regular expressions.
        exact_file (bool): True when full paths, not basenames, are compared.
        patterns (list[str]): Patterns with leading slashes removed.
    """

    def __init__(self, patterns: Sequence[str], regex: bool = False) -> None:
        """Build a matcher.

        Args:
            patterns: Requested file names, paths or expressions.
            regex: Treat `patterns` as regular expressions.

        Raises:
            PatternError: If no pattern is given or an expression does not
                compile.
        """
        self.patterns: List[str] = [p.lstrip("/") for p in patterns]
        if not self.patterns:
            raise PatternError("no files specified")

        self.regex = regex
        self.exact_file = any("/" in p for p in self.patterns)
        self._matched: Set[int] = set()
        self._compiled = []

        if regex:
            for pattern in self.patterns:
                try:
                    self._compiled.append(re.compile(pattern))
                except re.error as e:
                    raise PatternError(f"invalid regex '{pattern}'") from e

    def __len__(self) -> int:
        return len(self.patterns)

    @property
    def matched(self) -> Set[int]:
        """Indices of the patterns satisfied so far."""
        return set(self._matched)

    def _candidates(self, file: str) -> List[int]:
        if self.regex:
            return [i for i, r in enumerate(self._compiled) if r.search(file)]
        return [i for i, p in enumerate(self.patterns) if p == file or p == WILDCARD]

    def is_match(self, path: str, consume: bool = True) -> bool:
        """Offer an entry path to the matcher.

        Every pattern the path satisfies is recorded in the ledger. The
        call reports a match if a pattern was satisfied for the first time,
        or, when `consume` is false, if any pattern matched at all.

        Args:
            path: Entry path inside the archive.
            consume: Report repeat matches of satisfied patterns as misses
                ("first occurrence only").
        """
        file = path if self.exact_file else path.rsplit("/", 1)[-1]
        if not file:
            return False

        hits = self._candidates(file)
        if not hits:
            return False

        new = [i for i in hits if i not in self._matched]
        self._matched.update(new)
        return bool(new) or not consume

    def all_matched(self) -> bool:
        return len(self._matched) == len(self.patterns)

    def clear(self) -> None:
        self._matched.clear()
