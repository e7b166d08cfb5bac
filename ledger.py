import json
import logging
import os
import threading
from pathlib import Path
from typing import List, Optional

import config
from data_types import LedgerStatistics, TestRun
from errors import LedgerIOError

logger = logging.getLogger(__name__)

# ==========================================
# Result Ledger: bounded JSON log of finished runs
# ==========================================


class ResultLedger:
    """
    Newest-first list of TestRun records in a single JSON file, capped at
    `cap` entries. Build one per process and share it: the lock serializes
    every read-modify-write of the file.
    """

    def __init__(
        self,
        path: str = config.RESULTS_FILE,
        cap: int = config.LEDGER_CAP,
        lock: Optional[threading.Lock] = None,
    ):
        self.path = Path(path)
        self.cap = cap
        self._lock = lock or threading.Lock()

    def _read(self) -> List[TestRun]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except FileNotFoundError:
            return []
        except (OSError, ValueError) as e:
            logger.warning("Could not read ledger %s, treating it as empty: %s", self.path, e)
            return []

        if not isinstance(raw, list):
            logger.warning("Ledger %s does not hold a list, treating it as empty", self.path)
            return []

        runs = []
        for entry in raw:
            try:
                runs.append(TestRun.from_dict(entry))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping malformed ledger entry: %s", e)
        return runs

    def _write(self, runs: List[TestRun]) -> None:
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump([run.to_dict() for run in runs], f, indent=2)
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise LedgerIOError(f"Failed to write ledger {self.path}: {e}") from e

    def append(self, run: TestRun) -> None:
        with self._lock:
            runs = self._read()
            runs.insert(0, run)
            del runs[self.cap:]
            self._write(runs)

    def list(self) -> List[TestRun]:
        with self._lock:
            return self._read()

    def clear(self) -> None:
        with self._lock:
            self._write([])

    def statistics(self) -> LedgerStatistics:
        """Recomputed from the file on every call."""
        runs = self.list()
        total = len(runs)
        passed = sum(1 for run in runs if run.success)
        return LedgerStatistics(
            total=total,
            passed=passed,
            failed=total - passed,
            success_rate_percent=(passed / total) * 100 if total else 0.0,
            average_retries=sum(run.retry_count for run in runs) / total if total else 0.0,
        )
