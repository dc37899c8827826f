"""
auth/routing.py -- Public/private route classification.

A path matches a prefix entry when it equals the entry or starts with it.
Matching is plain string prefix matching: "/dashboard" also matches
"/dashboards". Use a trailing slash ("/auth/") to restrict a prefix to a
directory.

Precedence: private overrides public. A path that matches both lists must
authenticate. Paths that match neither list are not gated.

RouteClassifier is immutable and holds no request state, so one instance is
shared by every request.

Layer rule: stdlib only.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum


class RouteClass(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"
    UNLISTED = "unlisted"


def matches_any(path: str, prefixes: Iterable[str]) -> bool:
    return any(path == prefix or path.startswith(prefix) for prefix in prefixes)


@dataclass(frozen=True)
class RouteClassifier:
    public_prefixes: tuple[str, ...] = ()
    private_prefixes: tuple[str, ...] = ()

    @classmethod
    def from_lists(cls, public_prefixes: Iterable[str], private_prefixes: Iterable[str]) -> RouteClassifier:
        # Empty entries would match every path.
        return cls(
            public_prefixes=tuple(p for p in public_prefixes if p),
            private_prefixes=tuple(p for p in private_prefixes if p),
        )

    def is_public(self, path: str) -> bool:
        return matches_any(path, self.public_prefixes)

    def is_private(self, path: str) -> bool:
        return matches_any(path, self.private_prefixes)

    def classify(self, path: str) -> RouteClass:
        if self.is_private(path):
            return RouteClass.PRIVATE
        if self.is_public(path):
            return RouteClass.PUBLIC
        return RouteClass.UNLISTED
