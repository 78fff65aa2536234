"""
Rolling window aggregation for the agricultural sensor quality pipeline.

Keeps a time-ordered series of calibrated values per (sensor_id, reading_type)
and attaches the window mean to each reading as ``daily_average``. Windows are
the only state shared between batches: each key has its own lock so files
touching different sensors never wait on each other, and the whole store is
persisted between runs.

A batch is averaged against a private copy of the stored windows and only
committed once its output is persisted, so a failed file never leaks values
into other files. Entries are kept for ``retention_days`` behind the newest
reading rather than just the window length, which lets a file be reprocessed
with the same history it saw the first time.
"""

import json
import threading
from bisect import bisect_left, bisect_right
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np
import pandas as pd

from agri_pipeline.components.base import AggregationComponent
from agri_pipeline.config import PipelineConfig
from agri_pipeline.utils import get_logger, atomic_write_text, PersistenceError


WindowKey = Tuple[str, str]


class RollingWindow:
    """Time-ordered ``(timestamp, value)`` series averaged over ``window``."""

    def __init__(self, window: pd.Timedelta, retention: Optional[pd.Timedelta] = None):
        self.window = window
        self.retention = max(retention, window) if retention is not None else window
        self.timestamps: List[pd.Timestamp] = []
        self.values: List[float] = []

    def __len__(self) -> int:
        return len(self.timestamps)

    def add(self, timestamp: pd.Timestamp, value: float) -> None:
        """Insert a value, replacing any entry with the same timestamp."""
        idx = bisect_left(self.timestamps, timestamp)
        if idx < len(self.timestamps) and self.timestamps[idx] == timestamp:
            self.values[idx] = value
        else:
            self.timestamps.insert(idx, timestamp)
            self.values.insert(idx, value)

    def discard(self, timestamp: pd.Timestamp) -> bool:
        """Remove the entry at ``timestamp`` if there is one."""
        idx = bisect_left(self.timestamps, timestamp)
        if idx < len(self.timestamps) and self.timestamps[idx] == timestamp:
            del self.timestamps[idx]
            del self.values[idx]
            return True
        return False

    def apply(self, timestamps: Iterable[pd.Timestamp], values: Iterable[float]) -> int:
        """
        Merge a batch into the series.

        Present values replace whatever is stored at their timestamp; a missing
        value clears it, so the batch is authoritative for its own timestamps.

        Returns:
            Number of present values applied
        """
        applied = 0
        for ts, value in zip(timestamps, values):
            if pd.isna(value):
                self.discard(ts)
            else:
                self.add(ts, float(value))
                applied += 1
        return applied

    def prune(self) -> int:
        """Drop entries at or before ``retention`` behind the newest one."""
        if not self.timestamps:
            return 0

        cutoff = self.timestamps[-1] - self.retention
        evict = bisect_right(self.timestamps, cutoff)
        if evict:
            del self.timestamps[:evict]
            del self.values[:evict]
        return evict

    def mean_at(self, timestamp: pd.Timestamp) -> Optional[float]:
        """Mean of entries in ``(timestamp - window, timestamp]``, or None if there are none."""
        lo = bisect_right(self.timestamps, timestamp - self.window)
        hi = bisect_right(self.timestamps, timestamp)
        if hi <= lo:
            return None
        return float(np.mean(self.values[lo:hi]))

    def copy(self) -> "RollingWindow":
        clone = RollingWindow(self.window, self.retention)
        clone.timestamps = list(self.timestamps)
        clone.values = list(self.values)
        return clone

    def to_entries(self) -> List[List]:
        return [[ts.isoformat(), value] for ts, value in zip(self.timestamps, self.values)]

    @classmethod
    def from_entries(cls, window: pd.Timedelta, entries: List[List],
                     retention: Optional[pd.Timedelta] = None) -> "RollingWindow":
        rolling = cls(window, retention)
        for ts, value in sorted((pd.Timestamp(ts), float(v)) for ts, v in entries):
            rolling.add(ts, value)
        rolling.prune()
        return rolling


class RollingAggregator(AggregationComponent):
    """Owns the keyed rolling window store and derives ``daily_average``."""

    def __init__(self, config: PipelineConfig, load_state: bool = True):
        """
        Initialize the aggregator.

        Args:
            config: Pipeline configuration
            load_state: Restore windows persisted by a previous run
        """
        super().__init__(config)
        self.logger = get_logger(__name__)
        self.window = pd.Timedelta(days=config.rolling.window_days)
        self.retention = pd.Timedelta(days=config.rolling.retention_days)
        self.state_path = Path(config.rolling.state_file)

        self._windows: Dict[WindowKey, RollingWindow] = {}
        self._locks: Dict[WindowKey, threading.Lock] = {}
        self._guard = threading.Lock()
        self._save_lock = threading.Lock()

        self.stats = {
            "windows_tracked": 0,
            "values_added": 0,
            "entries_pruned": 0
        }

        if load_state:
            self.load_state()

    def execute(self, calibrated: pd.DataFrame) -> pd.DataFrame:
        """
        Attach ``daily_average`` computed from committed history plus this batch.

        Each key's readings are merged in timestamp order over a copy of its
        stored window; the store itself is left unchanged until ``commit``.

        Args:
            calibrated: Readings with ``calibrated_value``

        Returns:
            Copy of the readings with ``daily_average`` added
        """
        result = calibrated.copy()
        averages = pd.Series(np.nan, index=result.index, dtype='float64')

        for (sensor_id, reading_type), group in result.groupby(['sensor_id', 'reading_type'], sort=True):
            group = group.sort_values('timestamp', kind='mergesort')
            window = self._window_copy((str(sensor_id), str(reading_type)))
            window.apply(group['timestamp'], group['calibrated_value'])

            for idx, ts in zip(group.index, group['timestamp']):
                mean = window.mean_at(ts)
                if mean is not None:
                    averages.at[idx] = mean

        result['daily_average'] = averages
        return result

    def commit(self, readings: pd.DataFrame) -> int:
        """
        Fold a persisted batch into the stored windows and prune them.

        Args:
            readings: Readings with ``calibrated_value``, as passed to ``execute``

        Returns:
            Number of values applied
        """
        added = 0
        pruned = 0

        for (sensor_id, reading_type), group in readings.groupby(['sensor_id', 'reading_type'], sort=True):
            group = group.sort_values('timestamp', kind='mergesort')
            lock, window = self._acquire((str(sensor_id), str(reading_type)))

            with lock:
                added += window.apply(group['timestamp'], group['calibrated_value'])
                pruned += window.prune()

        with self._guard:
            self.stats["values_added"] += added
            self.stats["entries_pruned"] += pruned
            self.stats["windows_tracked"] = len(self._windows)

        return added

    def _window_copy(self, key: WindowKey) -> RollingWindow:
        """Private copy of a key's stored window, empty if the key is new."""
        with self._guard:
            window = self._windows.get(key)
            lock = self._locks.get(key)

        if window is None:
            return RollingWindow(self.window, self.retention)
        with lock:
            return window.copy()

    def _acquire(self, key: WindowKey) -> Tuple[threading.Lock, RollingWindow]:
        """Return the lock and window for a key, creating both if needed."""
        with self._guard:
            if key not in self._windows:
                self._windows[key] = RollingWindow(self.window, self.retention)
                self._locks[key] = threading.Lock()
            return self._locks[key], self._windows[key]

    def snapshot(self) -> Dict[WindowKey, List[List]]:
        """Copy of every window's entries, taken key by key under its lock."""
        with self._guard:
            keys = list(self._windows.keys())

        snapshot = {}
        for key in keys:
            lock, window = self._acquire(key)
            with lock:
                snapshot[key] = window.to_entries()
        return snapshot

    def save_state(self) -> None:
        """
        Persist all windows atomically.

        Saves are serialized so the file always holds a snapshot taken after
        every commit that preceded the last save.

        Raises:
            PersistenceError: If the state file cannot be written
        """
        with self._save_lock:
            payload = {
                "window_days": self.config.rolling.window_days,
                "retention_days": self.config.rolling.retention_days,
                "saved_at": datetime.now(timezone.utc).isoformat(),
                "windows": [
                    {"sensor_id": sensor_id, "reading_type": reading_type, "entries": entries}
                    for (sensor_id, reading_type), entries in sorted(self.snapshot().items())
                ]
            }

            try:
                atomic_write_text(self.state_path, json.dumps(payload))
            except OSError as e:
                raise PersistenceError(f"Failed to save rolling window state: {e}") from e

        self.logger.debug(f"Saved {len(payload['windows'])} rolling windows to {self.state_path}")

    def load_state(self) -> None:
        """Restore windows from the state file, starting empty if it is absent or unreadable."""
        if not self.state_path.exists():
            self.logger.info("No rolling window state found, starting fresh")
            return

        try:
            with open(self.state_path, 'r') as f:
                payload = json.load(f)

            windows = {}
            for item in payload.get("windows", []):
                key = (item["sensor_id"], item["reading_type"])
                windows[key] = RollingWindow.from_entries(self.window, item.get("entries", []), self.retention)

        except (OSError, ValueError, KeyError, TypeError) as e:
            self.logger.warning(f"Failed to load rolling window state: {e}. Starting fresh.")
            return

        with self._guard:
            self._windows = windows
            self._locks = {key: threading.Lock() for key in windows}
            self.stats["windows_tracked"] = len(windows)

        self.logger.info(f"Loaded {len(windows)} rolling windows, last saved: {payload.get('saved_at')}")

    def reset(self) -> None:
        """Drop all windows and delete the persisted state."""
        with self._guard:
            self._windows = {}
            self._locks = {}
            self.stats["windows_tracked"] = 0

        if self.state_path.exists():
            self.state_path.unlink()
            self.logger.info(f"Deleted rolling window state: {self.state_path}")
