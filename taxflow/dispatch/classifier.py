# taxflow/dispatch/classifier.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from fnmatch import fnmatchcase
from typing import Any, Iterable, Mapping, Optional

from taxflow.config import (
    PRIORITY_CRITICAL,
    PRIORITY_NORMAL,
    PRIORITY_RANKS,
    SourceConfig,
)

logger = logging.getLogger("uvicorn.error")


@dataclass(frozen=True)
class Classification:
    priority: str
    is_critical: bool

    @property
    def rank(self) -> int:
        return PRIORITY_RANKS[self.priority]


class Classifier:
    """
    Static per-source lookup: the event kind (and any related kinds carried in the same
    delivery, e.g. several QuickBooks entities) is matched against glob patterns and the
    highest priority wins. In-memory only; safe to call on the request path.
    """

    def __init__(self, sources: Mapping[str, SourceConfig]):
        self._sources = sources

    def classify(
        self,
        source: str,
        kind: str,
        payload: Optional[Mapping[str, Any]] = None,
        *,
        related_kinds: Iterable[str] = (),
    ) -> Classification:
        cfg = self._sources.get(source)
        rules = cfg.priorities if cfg is not None else {}
        best = PRIORITY_NORMAL
        for k in (kind, *related_kinds):
            if not k:
                continue
            for pattern, prio in rules.items():
                if fnmatchcase(k, pattern) and PRIORITY_RANKS[prio] > PRIORITY_RANKS[best]:
                    best = prio
        return Classification(priority=best, is_critical=best == PRIORITY_CRITICAL)
