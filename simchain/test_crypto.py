import unittest

from simchain.crypto import address_from_label, contract_address, event_topic, generate_hash


class TestHashing(unittest.TestCase):
    def test_keccak(self):
        self.assertEqual(generate_hash(b"").hex(),
                         "c5d2460186f7233c927e7db2dcc703c0e500b653ca82273b7bfad8045d85a470")

    def test_event_topic(self):
        self.assertEqual(event_topic("Transfer(address,address,uint256)").hex(),
                         "ddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef")
        self.assertNotEqual(event_topic("Incremented(uint256)"), event_topic("Incremented(uint128)"))

    def test_contract_address(self):
        sender = bytes.fromhex("6ac7ea33f8831ea9dcc53393aaa88b25a785dbf0")
        self.assertEqual(contract_address(sender, 0).hex(), "cd234a471b72ba2f1ccf0a70fcaba648a5eecd8d")
        self.assertEqual(contract_address(sender, 1).hex(), "343c43a37d37dff08ae8c4a11544c718abb4fcf8")

    def test_labels(self):
        self.assertEqual(address_from_label("alice"), address_from_label("alice"))
        self.assertNotEqual(address_from_label("alice"), address_from_label("bob"))
        self.assertEqual(len(address_from_label("alice")), 20)


if __name__ == "__main__":
    unittest.main()
