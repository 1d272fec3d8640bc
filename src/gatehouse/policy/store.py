"""
YAML-backed policy store.

The store reads every policy from one or more files or directories and
notices when they change. It does not decide anything itself; it feeds a
PolicyRegistry, which owns the swap.

Change detection is by polling file modification times, which works the
same on every platform and needs no extra dependency:

    store = YamlPolicyStore(["policies/"])
    store.on_change(lambda: registry.reload_from(store))
    await store.watch(interval=2.0)     # or call store.poll() yourself
"""

import asyncio
import logging
from collections.abc import Callable, Iterable
from pathlib import Path

from gatehouse.schema import Policy, load_policies

logger = logging.getLogger(__name__)


class YamlPolicyStore:
    """
    Loads policies from YAML files and reports when they change.

    Attributes:
        paths: Files or directories read in order
    """

    def __init__(self, paths: Iterable[Path | str]) -> None:
        self.paths = [Path(p) for p in paths]
        self._callbacks: list[Callable[[], None]] = []
        self._fingerprint = self._compute_fingerprint()

    def load_all(self) -> list[Policy]:
        """
        Load every policy from the configured paths.

        Raises:
            PolicyLoadError: If any file is missing or invalid
        """
        policies: list[Policy] = []
        for path in self.paths:
            policies.extend(load_policies(path))
        return policies

    def on_change(self, callback: Callable[[], None]) -> None:
        """Register a callback to run when any policy file changes."""
        self._callbacks.append(callback)

    def _files(self) -> list[Path]:
        files: list[Path] = []
        for path in self.paths:
            if path.is_dir():
                files.extend(
                    sorted(p for p in path.iterdir() if p.suffix in (".yaml", ".yml"))
                )
            else:
                files.append(path)
        return files

    def _compute_fingerprint(self) -> tuple[tuple[str, int, int], ...]:
        entries = []
        for file in self._files():
            try:
                stat = file.stat()
            except OSError:
                entries.append((str(file), -1, -1))
                continue
            entries.append((str(file), stat.st_mtime_ns, stat.st_size))
        return tuple(entries)

    def poll(self) -> bool:
        """
        Check the files once and notify listeners if anything changed.

        Returns:
            True if a change was detected
        """
        fingerprint = self._compute_fingerprint()
        if fingerprint == self._fingerprint:
            return False
        self._fingerprint = fingerprint
        logger.info("Policy files changed, notifying %d listener(s)", len(self._callbacks))
        for callback in list(self._callbacks):
            try:
                callback()
            except Exception:
                logger.exception("Policy change listener failed")
        return True

    async def watch(self, interval: float = 2.0) -> None:
        """Poll forever until the task is cancelled."""
        while True:
            await asyncio.sleep(interval)
            try:
                self.poll()
            except OSError:
                logger.exception("Cannot scan policy paths, retrying in %.1fs", interval)
