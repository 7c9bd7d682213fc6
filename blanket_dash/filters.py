"""
Persisted task filter.

The filter is loaded once per session from local storage and written
back through a debouncer, so a user adjusting several fields in a row
causes one write.
"""

import logging
from typing import Any, Dict, Optional, Union

from pydantic import ValidationError

from blanket_dash.models import FilterConfig
from blanket_dash.scheduling import AsyncioScheduler, Debouncer, Scheduler
from blanket_dash.settings import TASK_FILTERS_KEY, LocalStore


logger = logging.getLogger(__name__)


DEFAULT_FILTER_DEBOUNCE = 0.5


class FilterStore:
    """
    Holds the current FilterConfig and persists it.

    Writes only happen when the debounced value differs from what was
    last persisted.
    """

    def __init__(
        self,
        local_store: LocalStore,
        scheduler: Optional[Scheduler] = None,
        delay: float = DEFAULT_FILTER_DEBOUNCE,
    ):
        self.local_store = local_store
        self.filter = FilterConfig()
        self._persisted: Optional[Dict[str, Any]] = None
        self._debouncer = Debouncer(scheduler or AsyncioScheduler(), delay, self._persist)

    def load(self) -> FilterConfig:
        """
        Merge the stored filter over the current values.

        Fields are merged one at a time: unknown, missing or invalid
        fields keep their current value.
        """
        stored = self.local_store.get_json(TASK_FILTERS_KEY, default=None)
        if not isinstance(stored, dict):
            return self.filter

        merged = self.filter.to_json()
        rejected = []
        for name in list(merged):
            if name not in stored:
                continue
            candidate = {**merged, name: stored[name]}
            try:
                FilterConfig.model_validate(candidate)
            except ValidationError as e:
                logger.warning(f"Ignoring invalid stored filter field '{name}': {e.errors()[0]['msg']}")
                rejected.append(name)
                continue
            merged = candidate

        self.filter = FilterConfig.model_validate(merged)
        # A partly invalid blob is rewritten on the next change
        self._persisted = None if rejected else self.filter.to_json()
        return self.filter

    def set_filter(self, new_filter: Union[FilterConfig, Dict[str, Any], None] = None, **values: Any) -> FilterConfig:
        """
        Update the filter and schedule a debounced write.

        Accepts a full FilterConfig, or field values (by alias or by name)
        that are applied over the current filter.
        """
        if isinstance(new_filter, FilterConfig):
            updated = new_filter
        else:
            changes = dict(new_filter or {})
            changes.update(values)
            merged = self.filter.to_json()
            for key, value in changes.items():
                field = FilterConfig.model_fields.get(key)
                alias = field.alias if field is not None and field.alias else key
                if alias not in merged:
                    raise ValueError(f"Unknown filter field: {key}")
                merged[alias] = value
            updated = FilterConfig.model_validate(merged)

        self.filter = updated
        self._debouncer.trigger(updated)
        return updated

    def is_dirty(self, config: FilterConfig) -> bool:
        return config.to_json() != self._persisted

    @property
    def pending(self) -> bool:
        return self._debouncer.pending

    def flush(self) -> None:
        """Write a pending update now."""
        self._debouncer.flush()

    def _persist(self, config: FilterConfig) -> bool:
        if not self.is_dirty(config):
            logger.debug("Task filter unchanged, not saving")
            return False

        data = config.to_json()
        self.local_store.set_json(TASK_FILTERS_KEY, data)
        self._persisted = data
        logger.debug(f"Saved task filter: {data}")
        return True
