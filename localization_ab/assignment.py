"""
Deterministic bucket assignment for the localization experiment.

A user identifier is hashed with 32-bit FNV-1a and reduced modulo the number of
loaded payload variants. No seed, clock or host identity is involved, so the same
``(key, variant_count)`` pair yields the same bucket on every machine and after
every restart.

Changing the number of variants reshuffles most users; that is accepted in
exchange for bucket math that is trivial to reproduce in any language.
"""

from __future__ import annotations

FNV32_OFFSET_BASIS = 0x811C9DC5
FNV32_PRIME = 0x01000193
_MASK32 = 0xFFFFFFFF


def fnv1a_32(data: bytes) -> int:
    """Return the 32-bit FNV-1a hash of *data*."""
    h = FNV32_OFFSET_BASIS
    for byte in data:
        h ^= byte
        h = (h * FNV32_PRIME) & _MASK32
    return h


def assign(key: str, variant_count: int) -> int:
    """Map *key* to a bucket index in ``[0, variant_count)``."""
    if variant_count <= 0:
        raise ValueError(f"variant_count must be positive, got {variant_count}")
    return fnv1a_32(key.encode("utf-8")) % variant_count
