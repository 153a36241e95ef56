"""Hot reload of the TOML configuration file."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Callable, List, Optional

from pydantic import ValidationError as PydanticValidationError

from ..monitoring.logger import get_logger
from .settings import AppConfig, _resolve_config_path, reload_app_config

ConfigListener = Callable[[AppConfig], None]


class ConfigWatcher:
    """Polls the config file and pushes a fresh ``AppConfig`` to listeners when it changes.

    An invalid edit is logged and ignored; the previous configuration stays active.
    """

    def __init__(
        self,
        path: Optional[Path] = None,
        *,
        poll_seconds: float = 5.0,
        loader: Callable[[], AppConfig] = reload_app_config,
    ) -> None:
        self._path = path or _resolve_config_path()
        self._poll_seconds = poll_seconds
        self._loader = loader
        self._listeners: List[ConfigListener] = []
        self._last_mtime = self._current_mtime()
        self._task: Optional[asyncio.Task] = None
        self._logger = get_logger(__name__)

    def subscribe(self, listener: ConfigListener) -> None:
        self._listeners.append(listener)

    def _current_mtime(self) -> float:
        try:
            return self._path.stat().st_mtime
        except FileNotFoundError:
            return 0.0

    def check(self) -> bool:
        """Reload once if the file changed since the last check. Returns True on reload."""

        mtime = self._current_mtime()
        if mtime == self._last_mtime:
            return False
        self._last_mtime = mtime
        try:
            config = self._loader()
        except (PydanticValidationError, ValueError, OSError) as exc:
            self._logger.error("Rejected configuration change in %s: %s", self._path, exc)
            return False
        for listener in list(self._listeners):
            listener(config)
        self._logger.info("Configuration reloaded from %s", self._path)
        return True

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._poll_seconds)
            self.check()

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None


__all__ = ["ConfigWatcher", "ConfigListener"]
