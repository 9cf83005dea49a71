"""
In-memory payload store built once from a directory of JSON files.

Behaviour
~~~~~~~~~
* Only regular files ending in ``.json`` are considered; names are sorted by their
  raw bytes so the index of every variant is stable across restarts.
* A file whose top-level object carries a ``"payloads"`` array is exploded into one
  variant per element, named ``<file>[<i>]``.
* Any other file becomes a single variant holding the raw file content.
* Files must be UTF-8 (an optional BOM is dropped) and strict JSON; ``NaN`` and
  ``Infinity`` literals count as invalid.
* Unreadable or invalid files, and array elements that cannot be re-serialised,
  are skipped with a warning; an empty result (or an unreadable directory) raises
  :class:`BootFailure`.
"""

from __future__ import annotations

import codecs
import json
import logging
import os
from pathlib import Path
from typing import Iterator, List, Sequence, Union

from localization_ab.assignment import assign
from localization_ab.model import PayloadVariant

logger = logging.getLogger(__name__)


class BootFailure(RuntimeError):
    """The service cannot start with the given payload source."""


class PayloadStore:
    """Ordered, read-only sequence of :class:`PayloadVariant`."""

    def __init__(self, variants: Sequence[PayloadVariant]) -> None:
        if not variants:
            raise BootFailure("No payloads loaded")
        self._variants = tuple(variants)

    def size(self) -> int:
        return len(self._variants)

    def get(self, index: int) -> PayloadVariant:
        return self._variants[index]

    def names(self) -> List[str]:
        return [v.name for v in self._variants]

    def variant_for(self, key: str) -> PayloadVariant:
        """Return the variant deterministically assigned to *key*."""
        return self._variants[assign(key, len(self._variants))]

    def __len__(self) -> int:
        return len(self._variants)

    def __iter__(self) -> Iterator[PayloadVariant]:
        return iter(self._variants)

    def __repr__(self) -> str:  # pragma: no cover
        return f"PayloadStore(size={len(self._variants)})"


# Helper functions

def _json_names(directory: Path) -> List[str]:
    """Return the sorted names of regular ``.json`` files in *directory*."""
    try:
        entries = list(os.scandir(directory))
    except OSError as exc:
        raise BootFailure(f"Failed to read payloads directory {directory}: {exc}") from exc

    names = [e.name for e in entries if e.name.endswith(".json") and e.is_file()]
    return sorted(names, key=os.fsencode)


def _reject_constant(token: str) -> None:
    raise ValueError(f"{token} is not a valid JSON value")


def _parse(raw: bytes) -> object:
    """Strict JSON parse: UTF-8 only, no ``NaN``/``Infinity`` literals."""
    return json.loads(raw.decode("utf-8"), parse_constant=_reject_constant)


def _explode(name: str, items: list) -> List[PayloadVariant]:
    """Turn each element of a ``"payloads"`` array into its own variant."""
    out: List[PayloadVariant] = []
    for i, item in enumerate(items):
        try:
            content = json.dumps(item, separators=(",", ":"), ensure_ascii=False, allow_nan=False)
            encoded = content.encode("utf-8")
        except (TypeError, ValueError) as exc:
            # lone surrogate escapes parse but cannot be encoded
            logger.warning("failed to serialise payload %d from %s: %s", i, name, exc)
            continue
        out.append(PayloadVariant(name=f"{name}[{i}]", content=encoded))
    return out


def _load_file(path: Path) -> List[PayloadVariant]:
    """Return the variants contained in *path*; empty list if the file is skipped."""
    try:
        raw = path.read_bytes()
    except OSError as exc:
        logger.warning("failed to load %s: %s", path, exc)
        return []

    raw = raw.removeprefix(codecs.BOM_UTF8)
    try:
        parsed = _parse(raw)
    except ValueError as exc:  # includes UnicodeDecodeError
        logger.warning("%s contains invalid JSON: %s", path, exc)
        return []

    if isinstance(parsed, dict) and isinstance(parsed.get("payloads"), list):
        items = parsed["payloads"]
        logger.info("Found payloads array in %s with %d items", path.name, len(items))
        variants = _explode(path.name, items)
        logger.info("Loaded %d payloads from %s", len(variants), path.name)
        return variants

    logger.info("Loaded payload: %s (%d bytes)", path.name, len(raw))
    return [PayloadVariant(name=path.name, content=raw)]


# Public factory

def build(directory: Union[str, Path]) -> PayloadStore:
    """Load every payload variant under *directory* into a :class:`PayloadStore`."""
    directory = Path(directory)
    variants: List[PayloadVariant] = []
    for name in _json_names(directory):
        variants.extend(_load_file(directory / name))

    store = PayloadStore(variants)
    logger.info("Loaded %d payloads total", store.size())
    return store
