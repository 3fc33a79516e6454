"""Read-only learner profiles and course modules, loaded once at startup."""
from __future__ import annotations

import logging
from pathlib import Path
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Union

from utils.io import read_text_dir

logger = logging.getLogger(__name__)

LEARNERS = "learners"
MODULES = "modules"
KINDS = (LEARNERS, MODULES)


class ContentStore:
    """
    Named text blobs addressable by kind and name.

    Layout:
        content_dir/
          learners/<name>.txt
          modules/<name>.txt
    """

    def __init__(self, blobs: Optional[Mapping[str, Mapping[str, str]]] = None) -> None:
        self._blobs: Dict[str, Mapping[str, str]] = {
            kind: MappingProxyType(dict((blobs or {}).get(kind, {}))) for kind in KINDS
        }

    @classmethod
    def empty(cls) -> "ContentStore":
        return cls()

    @classmethod
    def load(cls, root: Union[str, Path]) -> "ContentStore":
        root = Path(root)
        if not root.is_dir():
            logger.warning("Content directory not found: %s", root)
        blobs = {kind: read_text_dir(root / kind) for kind in KINDS}
        logger.info(
            "Loaded %d learner profile(s) and %d module(s) from %s",
            len(blobs[LEARNERS]), len(blobs[MODULES]), root,
        )
        return cls(blobs)

    def names(self, kind: str) -> List[str]:
        return sorted(self._kind(kind))

    def get(self, kind: str, name: str) -> str:
        blobs = self._kind(kind)
        if name not in blobs:
            raise KeyError(f"Unknown {kind[:-1]}: {name!r}")
        return blobs[name]

    def learner(self, name: str) -> str:
        return self.get(LEARNERS, name)

    def module(self, name: str) -> str:
        return self.get(MODULES, name)

    def _kind(self, kind: str) -> Mapping[str, str]:
        if kind not in self._blobs:
            raise KeyError(f"Unknown content kind: {kind!r}")
        return self._blobs[kind]
