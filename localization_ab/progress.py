"""Background progress line for long-running harness runs."""

from __future__ import annotations

import threading
from typing import Callable, Optional

import typer


class ProgressMonitor:
    """Echo ``render()`` every *interval* seconds until stopped.

    Usable as a context manager; the line is rewritten in place with ``\\r``.
    """

    def __init__(
        self,
        render: Callable[[], str],
        interval: float = 2.0,
        echo: Callable[..., None] = typer.echo,
    ) -> None:
        self._render = render
        self._interval = interval
        self._echo = echo
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            self._echo("\r" + self._render(), nl=False)

    def start(self) -> "ProgressMonitor":
        self._thread = threading.Thread(target=self._run, name="progress", daemon=True)
        self._thread.start()
        return self

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
        self._echo("")

    def __enter__(self) -> "ProgressMonitor":
        return self.start()

    def __exit__(self, *exc_info: object) -> None:
        self.stop()
