"""
Deterministic variant assignment.

Maps a visitor identity to one arm of a test with a stable hash, so the
same visitor always lands in the same variant without storing anything.
"""

from typing import List
import hashlib

from splitflow.schemas import FunnelVariant


def hash_bucket(test_id: str, identity: str) -> int:
    """Return a stable bucket value in 0-99 for (test_id, identity)."""
    hash_input = f"{test_id}:{identity}"
    hash_bytes = hashlib.sha256(hash_input.encode()).digest()
    # First 8 bytes as integer, mod 100 for a percentage bucket
    return int.from_bytes(hash_bytes[:8], byteorder='big') % 100


def assign_variant(
    test_id: str,
    identity: str,
    variants: List[FunnelVariant]
) -> str:
    """
    Deterministically assign an identity to a variant based on traffic allocation.

    Algorithm:
    1. Hash test_id + identity to get a value 0-99
    2. Walk through variants in configuration order, accumulating allocation
    3. Return the variant whose cumulative allocation exceeds the bucket

    Raises:
        ValueError: If no variants are configured
    """
    if not variants:
        raise ValueError("Cannot assign a variant: no variants configured")

    bucket = hash_bucket(test_id, identity)

    cumulative = 0.0
    for variant in variants:
        cumulative += variant.traffic_allocation
        if bucket < cumulative:
            return variant.name

    # Floating point edge cases land in the last variant
    return variants[-1].name
