"""Glob-style resource pattern compiler.

``**`` matches any number of path segments (a leading ``**/`` also matches
none), ``*`` matches within one segment, ``?`` matches one non-separator
character. Everything else is literal and the match is anchored at both
ends.
"""

from __future__ import annotations

import functools
import re

SEPARATOR = "/"


@functools.lru_cache(maxsize=1024)
def compile_pattern(pattern: str) -> re.Pattern[str]:
    """Translate a glob pattern into an anchored regular expression."""
    parts: list[str] = []
    i = 0
    length = len(pattern)
    while i < length:
        char = pattern[i]
        if char == "*":
            if pattern.startswith("**", i):
                i += 2
                if pattern.startswith(SEPARATOR, i):
                    # "**/" may stand for zero or more whole directories.
                    parts.append(f"(?:.*{re.escape(SEPARATOR)})?")
                    i += 1
                else:
                    parts.append(".*")
                continue
            parts.append(f"[^{re.escape(SEPARATOR)}]*")
        elif char == "?":
            parts.append(f"[^{re.escape(SEPARATOR)}]")
        else:
            parts.append(re.escape(char))
        i += 1
    return re.compile("^" + "".join(parts) + "$", re.DOTALL)


def match_resource(pattern: str, resource: str) -> bool:
    """Check whether resource matches the glob pattern."""
    return compile_pattern(pattern).match(resource) is not None
