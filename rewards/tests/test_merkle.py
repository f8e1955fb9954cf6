"""
Tests for the Merkle distribution:
1. Leaf encoding
2. Tree shape (single leaf, pairs, odd promotion)
3. Proof verification for every account
4. Order independence and input validation

Run with: pytest tests/test_merkle.py -v
"""

import numpy as np
import pytest
from eth_abi import encode
from eth_utils import decode_hex, encode_hex, keccak, to_checksum_address
from points.errors import EmptyDistributionError
from points.merkle import (
    MerkleTree,
    calculate_merkle_root_and_leaves,
    calculate_merkle_root_and_proofs,
    hash_leaf,
    verify_merkle_proof,
)

WEI = 10**18


def make_accounts(n, seed=7):
    rng = np.random.RandomState(seed)
    return {
        "0x" + "".join(f"{int(b):02x}" for b in rng.randint(0, 256, size=20)): int(rng.randint(1, 10_000)) * WEI
        for _ in range(n)
    }


# ============================================================================
# 1. LEAVES
# ============================================================================


class TestLeaf:
    def test_matches_abi_encoding(self):
        account = "0x" + "ab" * 20
        expected = keccak(encode(["address", "uint256"], [to_checksum_address(account), 5 * WEI]))
        assert hash_leaf(account, 5 * WEI) == expected

    def test_case_insensitive_account(self):
        account = "0x" + "ab" * 20
        assert hash_leaf(account, 1) == hash_leaf(to_checksum_address(account), 1)

    def test_amount_changes_leaf(self):
        account = "0x" + "ab" * 20
        assert hash_leaf(account, 1) != hash_leaf(account, 2)


# ============================================================================
# 2. TREE SHAPE
# ============================================================================


class TestTreeShape:
    def test_single_leaf_is_root(self):
        result = calculate_merkle_root_and_proofs({"0x" + "11" * 20: 100})
        leaf = hash_leaf("0x" + "11" * 20, 100)
        assert result.merkle_root == encode_hex(leaf)
        assert result.account_to_proofs["0x" + "11" * 20].proofs == []

    def test_pair_is_sorted_concatenation(self):
        a = hash_leaf("0x" + "11" * 20, 1)
        b = hash_leaf("0x" + "22" * 20, 2)
        tree = MerkleTree([b, a])
        assert tree.root == keccak(b"".join(sorted([a, b])))

    def test_odd_node_promoted(self):
        leaves = sorted(hash_leaf("0x" + f"{i:02x}" * 20, i) for i in range(1, 4))
        tree = MerkleTree(leaves)
        assert tree.layers[1][1] == leaves[2]
        assert len(tree.layers) == 3

    def test_empty_tree_raises(self):
        with pytest.raises(EmptyDistributionError):
            MerkleTree([])


# ============================================================================
# 3. PROOFS
# ============================================================================


class TestProofs:
    @pytest.mark.parametrize("n", [2, 3, 7, 16, 33])
    def test_every_proof_verifies(self, n):
        accounts = make_accounts(n)
        result = calculate_merkle_root_and_proofs(accounts)

        assert set(result.account_to_proofs) == {a.lower() for a in accounts}
        for account, entry in result.account_to_proofs.items():
            leaf = hash_leaf(account, int(entry.amount))
            assert verify_merkle_proof(leaf, entry.proofs, result.merkle_root)

    def test_wrong_amount_fails(self):
        accounts = make_accounts(5)
        result = calculate_merkle_root_and_proofs(accounts)
        account, entry = next(iter(result.account_to_proofs.items()))
        forged = hash_leaf(account, int(entry.amount) + 1)
        assert not verify_merkle_proof(forged, entry.proofs, result.merkle_root)

    def test_hex_inputs_accepted(self):
        accounts = make_accounts(4)
        result = calculate_merkle_root_and_proofs(accounts)
        account, entry = next(iter(result.account_to_proofs.items()))
        leaf = encode_hex(hash_leaf(account, int(entry.amount)))
        assert verify_merkle_proof(leaf, entry.proofs, decode_hex(result.merkle_root))

    def test_amounts_are_decimal_strings(self):
        result = calculate_merkle_root_and_proofs({"0x" + "11" * 20: 12 * WEI})
        assert result.account_to_proofs["0x" + "11" * 20].amount == str(12 * WEI)


# ============================================================================
# 4. ORDER INDEPENDENCE & VALIDATION
# ============================================================================


class TestOrderIndependence:
    def test_root_ignores_insertion_order(self):
        accounts = make_accounts(20)
        rng = np.random.RandomState(1)
        keys = list(accounts)
        baseline = calculate_merkle_root_and_proofs(accounts).merkle_root
        for _ in range(3):
            rng.shuffle(keys)
            shuffled = {k: accounts[k] for k in keys}
            assert calculate_merkle_root_and_proofs(shuffled).merkle_root == baseline

    def test_single_amount_change_moves_root(self):
        accounts = make_accounts(6)
        baseline = calculate_merkle_root_and_proofs(accounts).merkle_root
        for account in accounts:
            changed = {**accounts, account: accounts[account] + 1}
            assert calculate_merkle_root_and_proofs(changed).merkle_root != baseline

    def test_leaves_variant_shares_root(self):
        accounts = make_accounts(9)
        proofs = calculate_merkle_root_and_proofs(accounts)
        leaves = calculate_merkle_root_and_leaves(accounts)
        assert leaves.merkle_root == proofs.merkle_root
        assert leaves.leaves == sorted(leaves.leaves)
        assert len(leaves.leaves) == 9


class TestValidation:
    def test_empty_distribution_raises(self):
        with pytest.raises(EmptyDistributionError):
            calculate_merkle_root_and_proofs({})

    def test_negative_amount_raises(self):
        with pytest.raises(ValueError):
            calculate_merkle_root_and_proofs({"0x" + "11" * 20: -1})

    def test_case_variant_duplicate_raises(self):
        account = "0x" + "ab" * 20
        with pytest.raises(ValueError, match="Duplicate account"):
            calculate_merkle_root_and_proofs({account: 1, to_checksum_address(account): 2})
        with pytest.raises(ValueError, match="Duplicate account"):
            calculate_merkle_root_and_leaves({account: 1, account.upper().replace("0X", "0x"): 1})
