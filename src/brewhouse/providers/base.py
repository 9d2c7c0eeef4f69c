"""Protocol definitions for metadata providers."""

from __future__ import annotations

from typing import Iterable, List, Protocol

from brewhouse.core.models import Package


class MetadataStore(Protocol):
    """Read-only source of package definitions."""

    def names(self) -> set[str]:
        """All package names known to the store."""
        ...

    def candidates(self, name: str) -> List[Package]:
        """Every known version of ``name``, newest first."""
        ...

    def get(self, name: str, version: str | None = None) -> Package:
        """Newest (or the exact) version of ``name``."""
        ...


def dependency_names(items: Iterable) -> List[str]:
    """Extract plain names from a mixed list of strings and ``{"name": ...}`` dicts."""
    out: List[str] = []
    for item in items or []:
        if isinstance(item, dict):
            out.append(str(item["name"]))
        else:
            out.append(str(item))
    return out
