"""Dense indexing and train/validation splits of rating records."""
from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Any, Dict, Hashable, Iterable, List, NamedTuple, Sequence


class RatingEntry(NamedTuple):
    user: int
    item: int
    value: float


@dataclass(frozen=True, eq=False)
class KeyIndex:
    """Maps external identifiers to dense row numbers and back."""

    keys: tuple
    _positions: Dict[Hashable, int] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        positions = {key: idx for idx, key in enumerate(self.keys)}
        if len(positions) != len(self.keys):
            raise ValueError("KeyIndex keys must be unique.")
        object.__setattr__(self, "_positions", positions)

    @classmethod
    def from_keys(cls, values: Iterable[Hashable]) -> "KeyIndex":
        return cls(tuple(sorted(set(values))))

    @property
    def size(self) -> int:
        return len(self.keys)

    def __len__(self) -> int:
        return len(self.keys)

    def __contains__(self, key: object) -> bool:
        return key in self._positions

    def index_of(self, key: Hashable) -> int:
        try:
            return self._positions[key]
        except KeyError:
            raise KeyError(f"Unknown key {key!r}") from None

    def key_of(self, index: int) -> Hashable:
        return self.keys[index]


@dataclass
class RatingSplit:
    train: List[RatingEntry]
    validation: List[RatingEntry]
    user_index: KeyIndex
    item_index: KeyIndex

    @property
    def user_count(self) -> int:
        return self.user_index.size

    @property
    def item_count(self) -> int:
        return self.item_index.size

    def validate(self) -> None:
        from .models.hpf import HPFConfigError

        for name, entries in (("train", self.train), ("validation", self.validation)):
            for entry in entries:
                if not 0 <= entry.user < self.user_count:
                    raise HPFConfigError(f"{name} entry {entry} has an out-of-range user index.")
                if not 0 <= entry.item < self.item_count:
                    raise HPFConfigError(f"{name} entry {entry} has an out-of-range item index.")

    @classmethod
    def from_triples(
        cls,
        train: Sequence[Sequence[float]],
        validation: Sequence[Sequence[float]],
        user_count: int | None = None,
        item_count: int | None = None,
    ) -> "RatingSplit":
        """Build a split from already-dense ``(user, item, value)`` triples.

        The indexes map each dense position to itself.
        """
        train_entries = [RatingEntry(int(u), int(i), float(r)) for u, i, r in train]
        val_entries = [RatingEntry(int(u), int(i), float(r)) for u, i, r in validation]
        everything = train_entries + val_entries
        if user_count is None:
            user_count = max((entry.user for entry in everything), default=-1) + 1
        if item_count is None:
            item_count = max((entry.item for entry in everything), default=-1) + 1
        return cls(
            train_entries,
            val_entries,
            KeyIndex.from_keys(range(user_count)),
            KeyIndex.from_keys(range(item_count)),
        )


def random_split(
    rows: Sequence[Dict[str, Any]],
    validation_frac: float = 0.1,
    seed: int = 42,
) -> RatingSplit:
    """Hold out a random fraction of the rating rows for validation.

    Both indexes cover every user and item seen in ``rows`` so that held-out
    ratings always refer to trained rows.
    """
    if not 0.0 < validation_frac < 1.0:
        raise ValueError("validation_frac must be in (0, 1)")
    if not rows:
        raise ValueError("Cannot split an empty rating set.")

    user_index = KeyIndex.from_keys(row["user_id"] for row in rows)
    item_index = KeyIndex.from_keys(row["item_id"] for row in rows)
    entries = [
        RatingEntry(
            user_index.index_of(row["user_id"]),
            item_index.index_of(row["item_id"]),
            float(row["rating"]),
        )
        for row in rows
    ]

    rng = random.Random(seed)
    order = list(range(len(entries)))
    rng.shuffle(order)
    n_val = max(1, int(round(len(entries) * validation_frac)))
    n_val = min(n_val, len(entries) - 1)
    held_out = set(order[:n_val])

    train = [entry for idx, entry in enumerate(entries) if idx not in held_out]
    validation = [entry for idx, entry in enumerate(entries) if idx in held_out]
    return RatingSplit(train, validation, user_index, item_index)


__all__ = ["KeyIndex", "RatingEntry", "RatingSplit", "random_split"]
