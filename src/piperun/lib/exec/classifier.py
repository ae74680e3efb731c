"""Line-based failure classification for streamed command output."""

from __future__ import annotations

from collections.abc import Collection, Iterable, Mapping
from enum import StrEnum
from threading import Lock
from typing import TypeAlias

import structlog

logger = structlog.get_logger(__name__)

# Categories are an open set of labels; ErrorCategory names the well-known ones.
Category: TypeAlias = str


class ErrorCategory(StrEnum):
    UNDEFINED = "undefined"
    BUILD = "build"
    COMPLIANCE = "compliance"
    CONFIGURATION = "configuration"
    CUSTOM = "custom"
    INFRASTRUCTURE = "infrastructure"
    SERVICE = "service"
    TEST = "test"

    @classmethod
    def from_label(cls, label: str) -> Category:
        """Map a mapping label onto a category.

        Well-known labels (and the ``"config"`` alias) come back as members;
        any other label is its own category, normalized to lower case. A blank
        label is ``UNDEFINED``.
        """

        normalized = label.strip().lower()
        if normalized == "config":
            return cls.CONFIGURATION
        if not normalized:
            return cls.UNDEFINED
        try:
            return cls(normalized)
        except ValueError:
            return normalized


CategoryRules: TypeAlias = tuple[tuple[Category, tuple[str, ...]], ...]


class CategorySignal:
    """Most recently classified failure category, safe to share across threads."""

    def __init__(self, initial: Category = ErrorCategory.UNDEFINED) -> None:
        self._lock = Lock()
        self._value = initial

    def get(self) -> Category:
        with self._lock:
            return self._value

    def set(self, category: Category) -> None:
        with self._lock:
            self._value = category

    def reset(self) -> None:
        self.set(ErrorCategory.UNDEFINED)


def normalize_mapping(
    mapping: Mapping[str, Collection[str]] | None,
) -> CategoryRules:
    """Resolve labels to categories, keeping the mapping's iteration order."""

    if not mapping:
        return ()

    resolved: list[tuple[Category, tuple[str, ...]]] = []
    for label, patterns in mapping.items():
        category = ErrorCategory.from_label(label)
        if category == ErrorCategory.UNDEFINED:
            logger.warning("Ignoring error category label that names no category.", label=label)
            continue
        kept = tuple(pattern for pattern in patterns if pattern)
        if kept:
            resolved.append((category, kept))
    return tuple(resolved)


class OutputClassifier:
    """Match output lines against category patterns and update signals."""

    def __init__(
        self,
        rules: CategoryRules,
        signals: Iterable[CategorySignal] = (),
    ) -> None:
        self._rules = rules
        self._signals = tuple(signals)

    @property
    def enabled(self) -> bool:
        return bool(self._rules) and bool(self._signals)

    def classify(self, line: str) -> Category | None:
        """Return the first category whose patterns occur in ``line``."""

        for category, patterns in self._rules:
            if any(pattern in line for pattern in patterns):
                return category
        return None

    def observe(self, line: str) -> None:
        if not self.enabled:
            return
        category = self.classify(line)
        if category is None:
            return
        for signal in self._signals:
            signal.set(category)
