"""
merkle.py - Binary Merkle tree over keccak-256 sample hashes.

The Merkle root summarises a batch of N samples into one 32-byte value that
is committed on-chain next to the archive CID. Any sample can later be
proven to be part of the batch with O(log N) sibling hashes.

Tree shape:
  Leaves stay in insertion order (arrival order is provenance).
  Each pair is sorted before hashing, so a proof needs no left/right flags.
  An odd node at the end of a level is carried up unchanged.

Hashing:
  Leaf:   keccak256(canonical_json(sample))
  Node:   keccak256(min(a,b) + max(a,b))  - sorted pair
  Root:   0x-prefixed hex of the final 32-byte value
"""
from typing import Any, Mapping, Sequence, Union

from eth_utils import keccak

from .errors import EmptyInputError
from .hashing import canonical_bytes, to_bytes32
from .schemas import Sample

SampleLike = Union[Sample, Mapping[str, Any]]


def _as_dict(sample: SampleLike) -> dict[str, Any]:
    if isinstance(sample, Sample):
        return sample.canonical()
    return dict(sample)


def _hash_pair(a: bytes, b: bytes) -> bytes:
    lo, hi = (a, b) if a <= b else (b, a)
    return keccak(lo + hi)


def leaf_hash(sample: SampleLike) -> bytes:
    return keccak(canonical_bytes(_as_dict(sample)))


def compute_leaves(samples: Sequence[SampleLike]) -> list[str]:
    """Return the hex leaf hash of every sample, in order."""
    return ["0x" + leaf_hash(s).hex() for s in samples]


def _next_level(layer: list[bytes]) -> list[bytes]:
    nxt = []
    for i in range(0, len(layer), 2):
        if i + 1 < len(layer):
            nxt.append(_hash_pair(layer[i], layer[i + 1]))
        else:
            nxt.append(layer[i])
    return nxt


def compute_root(samples: Sequence[SampleLike]) -> str:
    """Return the Merkle root of a non-empty, ordered batch of samples.

    Raises EmptyInputError for an empty batch: there is no valid
    commitment to "nothing".
    """
    if not samples:
        raise EmptyInputError("cannot compute Merkle root of an empty batch")
    layer = [leaf_hash(s) for s in samples]
    while len(layer) > 1:
        layer = _next_level(layer)
    return "0x" + layer[0].hex()


def compute_proof(samples: Sequence[SampleLike], index: int) -> list[str]:
    """Return the sibling path proving samples[index] is in the batch."""
    if not samples:
        raise EmptyInputError("cannot build a proof over an empty batch")
    if not 0 <= index < len(samples):
        raise IndexError(f"sample index {index} out of range for batch of {len(samples)}")

    layer = [leaf_hash(s) for s in samples]
    proof: list[str] = []
    while len(layer) > 1:
        sibling = index ^ 1
        if sibling < len(layer):
            proof.append("0x" + layer[sibling].hex())
        layer = _next_level(layer)
        index //= 2
    return proof


def verify(sample: SampleLike, root: str, proof: Sequence[str]) -> bool:
    """Check a sample against a previously computed root and its proof."""
    try:
        cur = leaf_hash(sample)
        for sib in proof:
            cur = _hash_pair(cur, to_bytes32(sib))
        return cur == to_bytes32(root)
    except ValueError:
        return False
