"""
Merkle distribution over (account, amount) leaves.

Leaf:  keccak256(abi.encode(address account, uint256 amount))
Node:  keccak256(min(a, b) ++ max(a, b))   (sorted pairs, no left/right flags)
Odd:   the last node of an odd layer is promoted unchanged

Leaves are sorted before the tree is built, so the root depends only on the
set of (account, amount) pairs and never on dict iteration order. The
on-chain claim contract verifies with the same sorted-pair rule.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from itertools import zip_longest

from eth_abi import encode
from eth_utils import decode_hex, encode_hex, keccak, to_checksum_address

from .errors import EmptyDistributionError


def hash_leaf(account: str, amount: int) -> bytes:
    """keccak256 of the ABI-encoded (address, uint256) pair."""
    return keccak(encode(["address", "uint256"], [to_checksum_address(account), int(amount)]))


def _combined_hash(a: bytes | None, b: bytes | None) -> bytes:
    if a is None:
        return b
    if b is None:
        return a
    return keccak(b"".join(sorted([a, b])))


class MerkleTree:
    """Sorted-leaf, sorted-pair keccak tree."""

    def __init__(self, leaves: list[bytes]):
        if not leaves:
            raise EmptyDistributionError("Cannot build a Merkle tree with no leaves")
        self.leaves = sorted(leaves)
        self.layers = MerkleTree.get_layers(self.leaves)
        self._positions = {leaf: i for i, leaf in enumerate(self.leaves)}

    @property
    def root(self) -> bytes:
        return self.layers[-1][0]

    def get_proof(self, leaf: bytes) -> list[str]:
        idx = self._positions[leaf]
        proof = []
        for layer in self.layers[:-1]:
            pair_idx = idx + 1 if idx % 2 == 0 else idx - 1
            if pair_idx < len(layer):
                proof.append(encode_hex(layer[pair_idx]))
            idx //= 2
        return proof

    @staticmethod
    def get_layers(leaves: list[bytes]) -> list[list[bytes]]:
        layers = [leaves]
        while len(layers[-1]) > 1:
            layers.append(MerkleTree.get_next_layer(layers[-1]))
        return layers

    @staticmethod
    def get_next_layer(nodes: list[bytes]) -> list[bytes]:
        return [_combined_hash(a, b) for a, b in zip_longest(nodes[::2], nodes[1::2])]


# ============================================================================
# DISTRIBUTION OUTPUTS
# ============================================================================


@dataclass(frozen=True)
class ClaimEntry:
    amount: str
    proofs: list[str]


@dataclass(frozen=True)
class MerkleRootAndProofs:
    merkle_root: str | None
    account_to_proofs: dict[str, ClaimEntry]


@dataclass(frozen=True)
class MerkleRootAndLeaves:
    merkle_root: str
    leaves: list[str]


def _leaves_by_account(account_to_amount: Mapping[str, int]) -> dict[str, bytes]:
    if not account_to_amount:
        raise EmptyDistributionError("Distribution has no accounts")
    leaves = {}
    for account, amount in account_to_amount.items():
        amount = int(amount)
        if amount < 0:
            raise ValueError(f"Negative amount for {account}: {amount}")
        if account.lower() in leaves:
            raise ValueError(f"Duplicate account (differs only in case): {account}")
        leaves[account.lower()] = (amount, hash_leaf(account, amount))
    return leaves


def calculate_merkle_root_and_proofs(account_to_amount: Mapping[str, int]) -> MerkleRootAndProofs:
    """
    Build the distribution tree and a proof for every account.

    Args:
        account_to_amount: account -> non-negative integer amount (any order)

    Returns:
        MerkleRootAndProofs with the hex root and, per lowercase account,
        the amount as a decimal string plus its sibling hashes

    Raises:
        EmptyDistributionError: account_to_amount is empty
        ValueError: a negative amount, or two keys naming the same address
    """
    leaves = _leaves_by_account(account_to_amount)
    tree = MerkleTree([leaf for _, leaf in leaves.values()])
    account_to_proofs = {
        account: ClaimEntry(amount=str(amount), proofs=tree.get_proof(leaf))
        for account, (amount, leaf) in leaves.items()
    }
    return MerkleRootAndProofs(merkle_root=encode_hex(tree.root), account_to_proofs=account_to_proofs)


def calculate_merkle_root_and_leaves(account_to_amount: Mapping[str, int]) -> MerkleRootAndLeaves:
    """Build the tree and return the sorted hex leaves instead of proofs."""
    leaves = _leaves_by_account(account_to_amount)
    tree = MerkleTree([leaf for _, leaf in leaves.values()])
    return MerkleRootAndLeaves(
        merkle_root=encode_hex(tree.root),
        leaves=[encode_hex(leaf) for leaf in tree.leaves],
    )


def verify_merkle_proof(leaf: bytes | str, proof: list[str], root: bytes | str) -> bool:
    """Recompute the root from a leaf and its sibling hashes, as the claim contract does."""
    node = decode_hex(leaf) if isinstance(leaf, str) else leaf
    for sibling in proof:
        node = _combined_hash(node, decode_hex(sibling))
    expected = decode_hex(root) if isinstance(root, str) else root
    return node == expected
