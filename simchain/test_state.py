import unittest

from simchain.core import Account, ZERO_WORD
from simchain.errors import ValidationError
from simchain.state import StateStore
from simchain.utils.encoding import pad32

A = b"\xaa" * 20
B = b"\xbb" * 20
C = b"\xcc" * 20


class TestStateStore(unittest.TestCase):
    def setUp(self):
        self.store = StateStore({
            A: Account(balance=1_000, nonce=3),
            B: Account(balance=50, storage={pad32(1): pad32(7)}),
        })

    def test_unknown_accounts_read_as_empty(self):
        self.assertEqual(self.store.balance_of(C), 0)
        self.assertEqual(self.store.nonce_of(C), 0)
        self.assertEqual(self.store.code_of(C), b"")
        self.assertEqual(self.store.storage_at(C, pad32(1)), ZERO_WORD)
        self.assertFalse(self.store.exists(C))
        self.assertEqual(self.store.get_account(C), Account())

    def test_get_account_returns_a_copy(self):
        account = self.store.get_account(B)
        account.balance = 0
        account.storage[pad32(1)] = pad32(99)
        self.assertEqual(self.store.balance_of(B), 50)
        self.assertEqual(self.store.storage_at(B, pad32(1)), pad32(7))

    def test_delta_is_invisible_until_applied(self):
        delta = self.store.delta()
        delta.transfer(A, C, 400)
        delta.increment_nonce(A)
        self.assertEqual(delta.balance_of(A), 600)
        self.assertEqual(delta.balance_of(C), 400)
        self.assertEqual(self.store.balance_of(A), 1_000)
        self.assertFalse(self.store.exists(C))

        self.store.apply(delta)
        self.assertEqual(self.store.balance_of(A), 600)
        self.assertEqual(self.store.nonce_of(A), 4)
        self.assertEqual(self.store.balance_of(C), 400)
        self.assertFalse(delta)

    def test_zero_storage_values_are_removed(self):
        delta = self.store.delta()
        delta.set_storage(B, pad32(1), ZERO_WORD)
        self.assertEqual(delta.storage_at(B, pad32(1)), ZERO_WORD)
        self.store.apply(delta)
        self.assertEqual(self.store.get_account(B).storage, {})

    def test_empty_accounts_are_dropped(self):
        delta = self.store.delta()
        delta.set_balance(B, 0)
        delta.set_storage(B, pad32(1), ZERO_WORD)
        self.store.apply(delta)
        self.assertNotIn(B, self.store.addresses())

    def test_child_commit_and_discard(self):
        delta = self.store.delta()
        delta.sub_balance(A, 100)

        kept = delta.child()
        kept.set_storage(A, pad32(5), pad32(5))
        kept.commit()

        dropped = delta.child()
        dropped.transfer(A, B, 500)
        dropped.set_code(A, b"\x00asm")
        self.assertEqual(dropped.balance_of(A), 400)
        dropped.discard()

        self.assertEqual(delta.balance_of(A), 900)
        self.assertEqual(delta.code_of(A), b"")
        self.assertEqual(delta.storage_at(A, pad32(5)), pad32(5))
        merged = delta.get_account(A)
        self.assertEqual(merged.balance, 900)
        self.assertEqual(merged.storage, {pad32(5): pad32(5)})

    def test_sub_balance_cannot_go_negative(self):
        delta = self.store.delta()
        with self.assertRaises(ValidationError):
            delta.sub_balance(B, 51)
        with self.assertRaises(ValidationError):
            delta.set_balance(B, -1)

    def test_storage_words_must_be_32_bytes(self):
        delta = self.store.delta()
        with self.assertRaises(ValidationError):
            delta.set_storage(A, b"\x01", pad32(1))
        with self.assertRaises(ValidationError):
            delta.set_storage(A, pad32(1), b"\x01")

    def test_apply_rejects_foreign_delta(self):
        other = StateStore()
        with self.assertRaises(ValidationError):
            self.store.apply(other.delta())

    def test_top_level_delta_cannot_commit(self):
        with self.assertRaises(ValidationError):
            self.store.delta().commit()

    def test_snapshot_and_restore(self):
        snapshot = self.store.snapshot()
        delta = self.store.delta()
        delta.transfer(A, C, 10)
        delta.set_storage(B, pad32(1), pad32(8))
        self.store.apply(delta)

        self.store.restore(snapshot)
        self.assertEqual(self.store.balance_of(A), 1_000)
        self.assertFalse(self.store.exists(C))
        self.assertEqual(self.store.storage_at(B, pad32(1)), pad32(7))

    def test_snapshot_is_isolated_from_later_writes(self):
        snapshot = self.store.snapshot()
        delta = self.store.delta()
        delta.set_storage(B, pad32(1), pad32(9))
        self.store.apply(delta)
        self.assertEqual(snapshot[B].storage[pad32(1)], pad32(7))

    def test_dict_round_trip(self):
        restored = StateStore.from_dict(self.store.to_dict())
        self.assertEqual(restored.to_dict(), self.store.to_dict())
        self.assertEqual(restored.nonce_of(A), 3)


if __name__ == "__main__":
    unittest.main()
