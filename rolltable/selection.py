"""Selection Engine - weighted, ranged and pooled draws

All draws go through the injected random.Random so a seeded generator gives
reproducible results. Exclusion sets hold selection keys (entry ids, or
'<tableId>/<entryId>' for pooled collection entries) and implement drawing
without replacement; callers apply the unique-overflow policy when a draw
raises PoolExhausted.
"""

import random
from dataclasses import dataclass
from typing import AbstractSet, List, Optional, Sequence, Tuple

from .errors import SelectionError
from .models import CompositeSource, CompositeTable, Entry, SimpleTable


class PoolExhausted(SelectionError):
    """Every selectable entry is excluded"""


@dataclass
class Selection:
    """One drawn entry plus the numbers behind the draw"""
    entry: Entry
    table_id: str
    collection_id: str
    key: str
    weight: float
    total_weight: float
    pool_size: int
    roll: Optional[int] = None  # range-mode draw

    @property
    def entry_id(self) -> str:
        return self.entry.id or ""

    @property
    def probability(self) -> float:
        return self.weight / self.total_weight if self.total_weight > 0 else 0.0

    def to_dict(self) -> dict:
        data = {
            "tableId": self.table_id,
            "entryId": self.entry_id,
            "selectedWeight": self.weight,
            "totalWeight": self.total_weight,
            "probability": self.probability,
            "poolSize": self.pool_size,
        }
        if self.roll is not None:
            data["roll"] = self.roll
        return data


def entry_weight(entry: Entry) -> float:
    """Range entries weigh as many points as they cover"""
    if entry.roll_range is not None:
        return float(entry.roll_range[1] - entry.roll_range[0] + 1)
    return entry.effective_weight


class SelectionEngine:
    """Draws entries and sources using one random generator"""

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.Random()

    def pick_weighted(self, weights: Sequence[float]) -> int:
        """Index drawn from cumulative weight ranges"""
        total = sum(weights)
        if total <= 0:
            raise SelectionError("Cannot select from a pool with zero total weight")
        draw = self.rng.random() * total
        cumulative = 0.0
        last = 0
        for index, weight in enumerate(weights):
            if weight <= 0:
                continue
            cumulative += weight
            last = index
            if draw < cumulative:
                return index
        return last

    def select_simple(self, table: SimpleTable, collection_id: str,
                      exclude: AbstractSet[str] = frozenset()) -> Selection:
        if not table.entries:
            raise SelectionError(f"Table '{table.id}' has no entries")

        if table.is_range_mode and not exclude:
            return self._select_range(table, collection_id)

        # Under exclusions a range table draws from what is left, weighted by
        # range width; no die is rolled, so the selection carries no roll.
        pool = [(e, e.id or "") for e in table.entries if (e.id or "") not in exclude]
        return self._select_from_pool(pool, table.id, collection_id, bool(exclude), table.id)

    def select_pooled(self, members: Sequence[Tuple[SimpleTable, str]], owner_id: str,
                      exclude: AbstractSet[str] = frozenset()) -> Selection:
        """Weighted draw over the merged entries of several tables"""
        pool: List[Tuple[Entry, str, SimpleTable, str]] = []
        for table, collection_id in members:
            for entry in table.entries:
                key = f"{table.id}/{entry.id}"
                if key not in exclude:
                    pool.append((entry, key, table, collection_id))

        if not pool:
            if exclude:
                raise PoolExhausted(f"All entries of collection table '{owner_id}' are used")
            raise SelectionError(f"Collection table '{owner_id}' has no entries")

        weights = [entry_weight(e) for e, _, _, _ in pool]
        index = self.pick_weighted(weights)
        entry, key, table, collection_id = pool[index]
        return Selection(
            entry=entry,
            table_id=table.id,
            collection_id=collection_id,
            key=key,
            weight=weights[index],
            total_weight=sum(weights),
            pool_size=len(pool),
        )

    def select_source(self, table: CompositeTable) -> Tuple[CompositeSource, float, float]:
        """Pick one composite source by weight"""
        if not table.sources:
            raise SelectionError(f"Composite table '{table.id}' has no sources")
        weights = [source.effective_weight for source in table.sources]
        index = self.pick_weighted(weights)
        return table.sources[index], weights[index], sum(weights)

    def _select_range(self, table: SimpleTable, collection_id: str) -> Selection:
        ranges = [e.roll_range for e in table.entries if e.roll_range is not None]
        low = min(r[0] for r in ranges)
        high = max(r[1] for r in ranges)
        roll = self.rng.randint(low, high)
        for entry in table.entries:
            if entry.roll_range is not None and entry.roll_range[0] <= roll <= entry.roll_range[1]:
                return Selection(
                    entry=entry,
                    table_id=table.id,
                    collection_id=collection_id,
                    key=entry.id or "",
                    weight=entry_weight(entry),
                    total_weight=float(high - low + 1),
                    pool_size=len(table.entries),
                    roll=roll,
                )
        raise SelectionError(f"Roll {roll} matches no range in table '{table.id}'")

    def _select_from_pool(self, pool: List[Tuple[Entry, str]], table_id: str,
                          collection_id: str, has_exclusions: bool, label: str) -> Selection:
        selectable = [(e, k) for e, k in pool if entry_weight(e) > 0]
        if not selectable:
            if has_exclusions:
                raise PoolExhausted(f"All entries of table '{label}' are used")
            raise SelectionError(f"Table '{label}' has no entries with positive weight")

        weights = [entry_weight(e) for e, _ in selectable]
        index = self.pick_weighted(weights)
        entry, key = selectable[index]
        return Selection(
            entry=entry,
            table_id=table_id,
            collection_id=collection_id,
            key=key,
            weight=weights[index],
            total_weight=sum(weights),
            pool_size=len(selectable),
        )
