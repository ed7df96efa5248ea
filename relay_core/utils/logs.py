"""Log file helpers: tail for display, truncation for cleanup."""

from __future__ import annotations

import logging
import os
import tempfile
from collections import deque
from pathlib import Path
from typing import List

logger = logging.getLogger(__name__)


def tail_lines(path: Path, n: int = 20) -> List[str]:
    """Last ``n`` lines of ``path``; empty if the file does not exist."""
    path = Path(path)
    if not path.is_file():
        return []
    with open(path, "r", errors="replace") as f:
        return [line.rstrip("\n") for line in deque(f, maxlen=n)]


def truncate_log(path: Path, keep_lines: int = 1000) -> int:
    """
    Keep only the last ``keep_lines`` lines of ``path``.

    Returns the number of lines dropped. The rewrite goes through a temp
    file in the same directory so a crash never leaves a half-written log.
    """
    path = Path(path)
    if not path.is_file():
        return 0

    with open(path, "r", errors="replace") as f:
        total = 0
        kept: deque = deque(maxlen=keep_lines)
        for line in f:
            total += 1
            kept.append(line)

    dropped = total - len(kept)
    if dropped <= 0:
        return 0

    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w") as out:
            out.writelines(kept)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise

    logger.info(f"Truncated {path}: dropped {dropped} lines, kept {len(kept)}")
    return dropped


__all__ = ["tail_lines", "truncate_log"]
