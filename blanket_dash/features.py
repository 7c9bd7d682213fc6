"""
Distinctive features of items within a population.

Given many tasks whose configuration is a set of "name=value" strings,
find for each task the few settings that set it apart from the others.
A table of fifty nearly identical build tasks is easier to scan when
each row shows the one parameter that differs.
"""

from collections import Counter
from typing import Any, Callable, Iterable, List, Optional, Sequence


class DiffFeatures:
    """
    Frequency corpus over feature strings.

    Each registered item contributes one count to each of its distinct
    features. Best-of queries read the corpus as it is at call time, so a
    batch should be registered completely before any best-of query.

    Not idempotent: adding the same item twice counts it twice. Use
    `remove_item` or `clear` to rebuild.
    """

    def __init__(
        self,
        item_to_features: Callable[[Any], Iterable[str]],
        best_limit: Optional[int] = None
    ):
        """
        Initialize the corpus.

        Args:
            item_to_features: Derives the feature strings of an item
            best_limit: Default cap on best-of results (None = every
                distinguishing feature)
        """
        self.item_to_features = item_to_features
        self.best_limit = best_limit
        self._counts: Counter = Counter()
        self._items = 0

    @property
    def item_count(self) -> int:
        """Number of items currently registered."""
        return self._items

    def count(self, feature: str) -> int:
        """Number of registered items carrying `feature`."""
        return self._counts.get(feature, 0)

    def add_item(self, item: Any) -> List[str]:
        """
        Register an item.

        Returns:
            The item's sorted, deduplicated feature list
        """
        features = sorted(set(self.item_to_features(item)))
        self._counts.update(features)
        self._items += 1
        return features

    def remove_item(self, features: Sequence[str]) -> None:
        """
        Unregister an item by the feature list `add_item` returned for it.

        Counts that drop to zero are forgotten.
        """
        for feature in set(features):
            remaining = self._counts.get(feature, 0) - 1
            if remaining > 0:
                self._counts[feature] = remaining
            else:
                self._counts.pop(feature, None)
        self._items = max(self._items - 1, 0)

    def clear(self) -> None:
        """Forget every registered item."""
        self._counts.clear()
        self._items = 0

    def get_best_of_features(
        self,
        features: Sequence[str],
        limit: Optional[int] = -1
    ) -> List[str]:
        """
        Select the least common features from an item's feature list.

        Features shared by every registered item are the common baseline
        and are left out once more than one item is registered. The rest
        are ordered by ascending corpus count, then lexicographically.

        Args:
            features: A list previously returned by `add_item`
            limit: Maximum number of features to return; -1 uses the
                engine default, None returns all of them

        Returns:
            The most distinguishing features, rarest first
        """
        if limit == -1:
            limit = self.best_limit

        candidates = set(features)
        if self._items > 1:
            candidates = {f for f in candidates if self.count(f) < self._items}

        ranked = sorted(candidates, key=lambda f: (self.count(f), f))
        if limit is not None:
            ranked = ranked[:limit]
        return ranked
