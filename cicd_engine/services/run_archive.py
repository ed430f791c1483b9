"""
Run Archive
===========
Keeps finished PipelineRuns after their terminal notification is delivered:
a bounded in-memory history for the status API plus an append-only JSON-lines
file.
"""
import json
import logging
import os
from collections import deque
from typing import Deque, List, Optional

from cicd_engine.core.constants import RUN_HISTORY_LIMIT
from cicd_engine.models.pipeline_run import PipelineRun

logger = logging.getLogger(__name__)


class RunArchive:
    """
    Service responsible for retaining the history of finished runs.
    """

    def __init__(self, path: Optional[str] = None, limit: int = RUN_HISTORY_LIMIT) -> None:
        self.path = path
        self._runs: Deque[PipelineRun] = deque(maxlen=limit)

    def archive(self, run: PipelineRun) -> bool:
        """
        Store a finished run. Returns False when the file write failed; the
        in-memory copy is kept either way.
        """
        self._runs.append(run)
        if not self.path:
            return True
        try:
            directory = os.path.dirname(os.path.abspath(self.path))
            os.makedirs(directory, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(json.dumps(run.model_dump(mode="json")) + "\n")
            return True
        except OSError as e:
            logger.error("Failed to archive run %d to %s: %s", run.run_id, self.path, e)
            return False

    def get(self, run_id: int) -> Optional[PipelineRun]:
        for run in reversed(self._runs):
            if run.run_id == run_id:
                return run
        return None

    def recent(self, limit: int = 50) -> List[PipelineRun]:
        runs = list(self._runs)
        runs.reverse()
        return runs[:limit]

    def load(self) -> int:
        """Reload the in-memory history from the archive file. Returns the count loaded."""
        if not self.path or not os.path.exists(self.path):
            return 0
        loaded = 0
        with open(self.path, "r", encoding="utf-8") as f:
            for line_no, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    self._runs.append(PipelineRun.model_validate_json(line))
                    loaded += 1
                except ValueError as e:
                    logger.warning("Skipping unreadable archive line %d in %s: %s", line_no, self.path, e)
        logger.info("Loaded %d archived runs from %s", loaded, self.path)
        return loaded

    def last_run_id(self) -> int:
        return max((r.run_id for r in self._runs), default=0)

    def __len__(self) -> int:
        return len(self._runs)
