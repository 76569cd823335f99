"""
Per-request tracking of resources that must be released exactly once.
"""

import inspect
from typing import Any, Callable, List, Tuple

from media_digest.utils.logger import logging


class ResourceTracker:
    """
    Release actions registered in acquisition order and run in reverse.

    Every action runs at most once. A failing action is logged and recorded
    in ``failures``; it never stops the remaining actions or replaces the
    error that ended the request.
    """

    def __init__(self, owner: str = "request"):
        self.owner = owner
        self._resources: List[Tuple[str, Callable[[], Any]]] = []
        self.failures: List[Tuple[str, Exception]] = []

    def __len__(self) -> int:
        return len(self._resources)

    @property
    def names(self) -> List[str]:
        return [name for name, _ in self._resources]

    def register(self, name: str, release: Callable[[], Any]) -> None:
        """Register a release action (sync or async) under a name."""
        self._resources.append((name, release))

    async def release(self, name: str) -> bool:
        """
        Release one resource ahead of the others.

        Returns:
            False when nothing is registered under that name
        """
        for index in range(len(self._resources) - 1, -1, -1):
            if self._resources[index][0] == name:
                _, release = self._resources.pop(index)
                await self._run(name, release)
                return True
        return False

    async def release_all(self) -> None:
        while self._resources:
            name, release = self._resources.pop()
            await self._run(name, release)

    async def _run(self, name: str, release: Callable[[], Any]) -> None:
        try:
            result = release()
            if inspect.isawaitable(result):
                await result
            logging.debug(f"[{self.owner}] released {name}")
        except Exception as e:
            self.failures.append((name, e))
            logging.error(f"[{self.owner}] failed to release {name}: {str(e)}")

    async def __aenter__(self) -> "ResourceTracker":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.release_all()
