from __future__ import annotations

import sys
from typing import Any

from tqdm import tqdm
from tqdm.std import tqdm as TqdmType

"""Submission progress display with tqdm (TTY only).

A single tqdm bar counts completed row submissions. In non-TTY environments (CI,
redirected output) the bar is disabled to avoid ANSI control sequence spam.
"""

__all__ = [
    "ProgressTracker",
    "is_tty_enabled",
]


def is_tty_enabled() -> bool:
    return sys.stdout.isatty()


class ProgressTracker:
    """Row submission progress bar.

    update() is driven by the reconciler after each completed row, so the bar
    reflects completions (in whatever order they arrive), not dispatches.
    """

    def __init__(self, total_rows: int, *, description: str = "Submitting rows") -> None:
        """
        Args:
            total_rows: rows that will be submitted
            description: bar label
        """
        self.total_rows = total_rows
        self.description = description
        self.completed = 0
        self.failed = 0

        self.enabled = is_tty_enabled()
        self.pbar: TqdmType[Any] | None
        if self.enabled:
            self.pbar = tqdm(
                total=total_rows,
                desc=description,
                unit="row",
                disable=False,
                leave=True,
                position=0,
                ncols=80,
                ascii=True,
            )
        else:
            self.pbar = None

    def update(self, success: bool = True) -> None:
        self.completed += 1
        if not success:
            self.failed += 1
        if self.enabled and self.pbar is not None:
            self.pbar.update(1)
            self.pbar.set_postfix(failed=self.failed)

    def set_postfix(self, **kwargs: Any) -> None:
        if self.enabled and self.pbar is not None:
            self.pbar.set_postfix(**kwargs)

    def close(self) -> None:
        if self.enabled and self.pbar is not None:
            self.pbar.close()
            self.pbar = None

    def __enter__(self) -> ProgressTracker:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()
