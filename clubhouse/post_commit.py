from __future__ import annotations

import logging
from typing import Any, Callable, List, Tuple

logger = logging.getLogger(__name__)


class PostCommitTasks:
    """
    Side effects queued during a transition and run only after its commit.

    Each task runs on its own; a failure is logged and the remaining tasks
    still run. Nothing here can undo the committed state change.
    """

    def __init__(self, label: str):
        self.label = label
        self._tasks: List[Tuple[str, Callable[..., Any], tuple, dict]] = []

    def add(self, name: str, fn: Callable[..., Any], *args, **kwargs) -> None:
        self._tasks.append((name, fn, args, kwargs))

    def __len__(self) -> int:
        return len(self._tasks)

    def run(self) -> List[str]:
        failed: List[str] = []
        tasks, self._tasks = self._tasks, []
        for name, fn, args, kwargs in tasks:
            try:
                fn(*args, **kwargs)
            except Exception as e:
                failed.append(name)
                logger.warning("[%s] %s failed: %s: %s", self.label, name, type(e).__name__, str(e)[:200])
        return failed
