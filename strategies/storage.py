# -*- coding: utf-8 -*-
"""
State storage: persistent engine state and the funding snapshot log.
Handles saving/loading the arbitrage state to disk to survive restarts.
"""
import csv
import json
import logging
import os
import shutil
import time
from typing import Any, Dict, List

log = logging.getLogger(__name__)

FUNDING_LOG_FIELDS = [
    "observed_at", "venue", "asset", "symbol", "mark_price", "raw_rate",
    "interval_hours", "hourly_rate", "annualized_pct",
]


class StateStore:
    def __init__(self, filepath: str = "data/funding_arb_state.json",
                 funding_log_path: str = "logs/funding_snapshots.csv"):
        self.filepath = filepath
        self.funding_log_path = funding_log_path
        self._ensure_dir(self.filepath)

    @staticmethod
    def _ensure_dir(path: str):
        """Ensure the parent directory exists."""
        d = os.path.dirname(path)
        if d:
            os.makedirs(d, exist_ok=True)

    def save(self, state: Dict[str, Any]) -> bool:
        """
        Save the full engine state to JSON atomically.
        state: plain dict (positions already converted with to_dict()).
        """
        try:
            data = dict(state)
            data["_meta"] = {"saved_at": time.time(), "version": 1}

            # Atomic write: write to temp file then rename
            temp_path = self.filepath + ".tmp"
            with open(temp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)

            shutil.move(temp_path, self.filepath)
            return True
        except (OSError, TypeError, ValueError) as e:
            log.error(f"[STATE] Save failed: {e}")
            return False

    def load(self) -> Dict[str, Any]:
        """
        Load the engine state.
        Returns {} when the file is missing or unreadable.
        """
        if not os.path.exists(self.filepath):
            return {}

        try:
            with open(self.filepath, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            log.error(f"[STATE] Load failed, starting from empty state: {e}")
            return {}
        if not isinstance(data, dict):
            log.error(f"[STATE] Unexpected state format in {self.filepath}, ignoring")
            return {}
        data.pop("_meta", None)
        return data

    def append_funding_snapshot(self, rows: List[Dict[str, Any]]) -> int:
        """Append funding rows to the CSV log. Writes the header on a new file."""
        if not rows:
            return 0
        self._ensure_dir(self.funding_log_path)
        new_file = not os.path.exists(self.funding_log_path) or os.path.getsize(self.funding_log_path) == 0
        try:
            with open(self.funding_log_path, "a", newline="", encoding="utf-8") as f:
                writer = csv.DictWriter(f, fieldnames=FUNDING_LOG_FIELDS, extrasaction="ignore")
                if new_file:
                    writer.writeheader()
                writer.writerows(rows)
        except OSError as e:
            log.error(f"[STATE] Funding log write failed: {e}")
            return 0
        return len(rows)
