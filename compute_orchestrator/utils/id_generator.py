"""
Identifier generation for computes.

Compute ids end up as the value of the ``computeId`` pod label, so they are
restricted to characters valid in a label value:

    "compute_k3x8n2a5b3c1"
"""

from nanoid import generate

ID_ALPHABET = '0123456789abcdefghijklmnopqrstuvwxyz'


def generate_short_id(length: int = 12) -> str:
    """
    Generate a random lowercase alphanumeric id.

    12 chars gives ~4.7e18 combinations, plenty for live computes in one namespace.
    """
    return generate(ID_ALPHABET, length)


def generate_prefixed_id(prefix: str, length: int = 12) -> str:
    """
    Generate "<prefix>_<random>".

    Examples:
        generate_prefixed_id("compute") -> "compute_0k3x8n2a5b3c"
    """
    return f"{prefix}_{generate_short_id(length)}"
