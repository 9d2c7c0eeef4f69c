"""Version parsing and constraint matching.

Versions are compared the way Homebrew compares them: split into numeric and
alphabetic tokens, numbers compared numerically, and a trailing ``_N``
revision compared last.

Constraint syntax (comma separated clauses are ANDed):

    ""  / "*"        any version
    "1" / "1.4"      component prefix: "1" matches 1, 1.0, 1.4.2 but not 10.0
    ">=1.2"          also <=, >, <, ==, !=
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import total_ordering

_TOKEN_RE = re.compile(r"\d+|[A-Za-z]+")
_CLAUSE_RE = re.compile(r"^(>=|<=|==|!=|>|<)?\s*(.+)$")


@total_ordering
@dataclass(frozen=True)
class Version:
    """A comparable package version with optional revision."""

    raw: str
    tokens: tuple
    revision: int = 0

    @classmethod
    def parse(cls, text: str) -> Version:
        text = str(text).strip()
        base, revision = text, 0
        match = re.match(r"^(.*)_(\d+)$", text)
        if match:
            base, revision = match.group(1), int(match.group(2))
        tokens = tuple(
            (0, int(t)) if t.isdigit() else (-1, t.lower()) for t in _TOKEN_RE.findall(base)
        )
        return cls(raw=text, tokens=tokens, revision=revision)

    def _key(self) -> tuple:
        tokens = list(self.tokens)
        while tokens and tokens[-1] == (0, 0):
            tokens.pop()
        return (tuple(tokens), self.revision)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self._key() == other._key()

    def __lt__(self, other: Version) -> bool:
        return self._key() < other._key()

    def __hash__(self) -> int:
        return hash(self._key())

    def __str__(self) -> str:
        return self.raw

    def startswith(self, prefix: Version) -> bool:
        """True when ``prefix``'s tokens are a leading run of ours."""
        return self.tokens[: len(prefix.tokens)] == prefix.tokens


def pkg_version(version: str, revision: int = 0) -> str:
    """Full version string including a non-zero revision (``1.2_1``)."""
    return f"{version}_{revision}" if revision else str(version)


def satisfies(version: str, constraint: str | None) -> bool:
    """Check whether ``version`` meets every clause of ``constraint``.

    Args:
        version: Version string, optionally with ``_N`` revision.
        constraint: Constraint expression, see module docstring.

    Returns:
        True if all clauses match.
    """
    if constraint is None:
        return True
    v = Version.parse(version)
    for clause in constraint.split(","):
        clause = clause.strip()
        if clause in ("", "*"):
            continue
        match = _CLAUSE_RE.match(clause)
        if match is None:
            raise ValueError(f"Invalid version constraint: {constraint!r}")
        op, operand = match.groups()
        other = Version.parse(operand)
        if op is None:
            if not v.startswith(other):
                return False
        elif op == ">=" and not v >= other:
            return False
        elif op == "<=" and not v <= other:
            return False
        elif op == ">" and not v > other:
            return False
        elif op == "<" and not v < other:
            return False
        elif op == "==" and not v == other:
            return False
        elif op == "!=" and v == other:
            return False
    return True


def compatible(a: str | None, b: str | None, candidates: list[str]) -> bool:
    """True when at least one candidate satisfies both constraints."""
    return any(satisfies(c, a) and satisfies(c, b) for c in candidates)


def parse_request(text: str, known: set[str] | None = None) -> tuple[str, str | None]:
    """Split a requested name into ``(name, constraint)``.

    ``"b@1"`` becomes ``("b", "1")`` unless ``"b@1"`` itself is a known
    package name (versioned formulae such as ``python@3.12``).

    Args:
        text: Requested name as typed by the user.
        known: Package names available in the metadata store.

    Returns:
        Tuple of package name and optional constraint.
    """
    text = text.strip()
    if known is not None and text in known:
        return text, None
    if "@" in text:
        name, _, constraint = text.rpartition("@")
        if name:
            return name, constraint or None
    return text, None
