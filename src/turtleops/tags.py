# src/turtleops/tags.py
"""
Flipper-tag state model.

A turtle carries up to four physical tags, one per flipper position
(LRF, RRF, RFF, LFF).  This module represents a four-position tag-set and
classifies how each position evolves between two encounters:

- new:      current tag present, previous position empty
- replaced: both present and different
- lost:     previous tag present, current position empty

Empty strings and ``None`` are the same "no tag" value.  Comparison is exact;
callers normalize case with :func:`normalize_tag` (upper-case) first.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Iterable, Iterator


class TagPosition(str, enum.Enum):
    LRF = "lrf"
    RRF = "rrf"
    RFF = "rff"
    LFF = "lff"

    @property
    def code(self) -> str:
        return self.name

    @property
    def label(self) -> str:
        return _POSITION_LABELS[self]


_POSITION_LABELS = {
    TagPosition.LRF: "LRF (Left Rear)",
    TagPosition.RRF: "RRF (Right Rear)",
    TagPosition.RFF: "RFF (Right Front)",
    TagPosition.LFF: "LFF (Left Front)",
}

POSITIONS: tuple[TagPosition, ...] = tuple(TagPosition)


class ChangeKind(str, enum.Enum):
    NEW = "new"
    REPLACED = "replaced"
    LOST = "lost"

    @property
    def form_verb(self) -> str:
        """Word used for the position in the intake form and audit notes."""
        if self is ChangeKind.NEW:
            return "new"
        if self is ChangeKind.REPLACED:
            return "replaced"
        if self is ChangeKind.LOST:
            return "fell_off"
        raise AssertionError(f"unhandled change kind: {self!r}")

    @property
    def status(self) -> str:
        """CMTTP tag status column."""
        if self is ChangeKind.NEW:
            return "Active"
        if self is ChangeKind.REPLACED:
            return "Replaced"
        if self is ChangeKind.LOST:
            return "Lost"
        raise AssertionError(f"unhandled change kind: {self!r}")


def normalize_tag(value: Any) -> str | None:
    """
    Canonical stored form of a tag code: stripped, upper-case, ``None`` if blank.
    """
    if value is None:
        return None
    s = str(value).strip().upper()
    return s or None


def _canonical(value: str | None) -> str | None:
    # Blank means "no tag"; case is left alone.
    if value is None:
        return None
    return value if value.strip() else None


@dataclass(frozen=True)
class TagSet:
    """
    Four-position tag values for one turtle at one point in time.
    """
    lrf: str | None = None
    rrf: str | None = None
    rff: str | None = None
    lff: str | None = None

    def __post_init__(self) -> None:
        for pos in POSITIONS:
            object.__setattr__(self, pos.value, _canonical(getattr(self, pos.value)))

    @classmethod
    def normalized(
        cls,
        lrf: Any = None,
        rrf: Any = None,
        rff: Any = None,
        lff: Any = None,
    ) -> "TagSet":
        return cls(
            lrf=normalize_tag(lrf),
            rrf=normalize_tag(rrf),
            rff=normalize_tag(rff),
            lff=normalize_tag(lff),
        )

    @classmethod
    def of(cls, obj: Any, prefix: str = "") -> "TagSet":
        """Read ``<prefix>lrf`` ... attributes off a record (turtle, history row)."""
        return cls(**{pos.value: getattr(obj, f"{prefix}{pos.value}") for pos in POSITIONS})

    def get(self, position: TagPosition) -> str | None:
        return getattr(self, position.value)

    def with_value(self, position: TagPosition, value: str | None) -> "TagSet":
        d = self.as_dict()
        d[position.value] = value
        return TagSet(**d)

    def items(self) -> Iterator[tuple[TagPosition, str | None]]:
        for pos in POSITIONS:
            yield pos, self.get(pos)

    def as_dict(self) -> dict[str, str | None]:
        return {pos.value: self.get(pos) for pos in POSITIONS}

    def is_empty(self) -> bool:
        return all(v is None for _, v in self.items())

    def values(self) -> list[str]:
        return [v for _, v in self.items() if v is not None]


EMPTY_TAGS = TagSet()


@dataclass(frozen=True)
class PositionTransition:
    position: TagPosition
    previous_value: str | None
    current_value: str | None
    kind: ChangeKind


def classify(previous_value: str | None, current_value: str | None) -> ChangeKind | None:
    """
    Classify one position.  Returns ``None`` when the position did not change.
    """
    prev = _canonical(previous_value)
    cur = _canonical(current_value)
    if cur == prev:
        return None
    if prev is None:
        return ChangeKind.NEW
    if cur is None:
        return ChangeKind.LOST
    return ChangeKind.REPLACED


def diff(previous: TagSet, current: TagSet) -> list[PositionTransition]:
    """
    Per-position transitions from ``previous`` to ``current`` in position
    order.  Unchanged positions are omitted.
    """
    out: list[PositionTransition] = []
    for pos in POSITIONS:
        prev = previous.get(pos)
        cur = current.get(pos)
        kind = classify(prev, cur)
        if kind is None:
            continue
        out.append(PositionTransition(position=pos, previous_value=prev, current_value=cur, kind=kind))
    return out


def summarize_transitions(transitions: Iterable[PositionTransition]) -> str | None:
    """
    Audit note text, e.g. ``"Tags updated: LRF new, RRF fell_off"``.
    """
    parts = [f"{t.position.code} {t.kind.form_verb}" for t in transitions]
    if not parts:
        return None
    return "Tags updated: " + ", ".join(parts)
