from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Union

PathLike = Union[str, Path]

logger = logging.getLogger(__name__)


def ensure_dir(p: PathLike) -> Path:
    """Ensure that a directory exists, returning it as a Path."""
    p = Path(p)
    try:
        p.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise OSError(f"Failed to create directory {p}: {e}") from e
    return p


def read_text(path: PathLike) -> str:
    """Read a UTF-8 text file, raising OSError with the path in the message."""
    p = Path(path)
    try:
        return p.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise OSError(f"{p} is not valid UTF-8: {e}") from e
    except OSError as e:
        raise OSError(f"Failed to read {p}: {e}") from e


def read_text_dir(directory: PathLike, *, suffix: str = ".txt") -> Dict[str, str]:
    """Read every ``*suffix`` file in ``directory`` keyed by file stem.

    A missing directory yields an empty mapping. Unreadable files are
    skipped with a warning.
    """
    d = Path(directory)
    if not d.is_dir():
        return {}

    out: Dict[str, str] = {}
    for path in sorted(d.glob(f"*{suffix}")):
        if not path.is_file():
            continue
        try:
            out[path.stem] = read_text(path)
        except OSError as e:
            logger.warning("Skipping unreadable asset %s: %s", path, e)
    return out
