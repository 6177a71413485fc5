import unittest

from simchain.utils.encoding import (
    decode_error_string,
    encode_error_string,
    pad32,
    parse_address,
    parse_data,
    parse_quantity,
    to_hex,
    to_quantity,
)


class TestEncoding(unittest.TestCase):
    def test_quantities(self):
        self.assertEqual(to_quantity(0), "0x0")
        self.assertEqual(to_quantity(255), "0xff")
        self.assertEqual(parse_quantity("0x0"), 0)
        self.assertEqual(parse_quantity("0xff"), 255)
        self.assertEqual(parse_quantity("12"), 12)
        self.assertEqual(parse_quantity(7), 7)
        for bad in ("0xzz", -1, True, None, "ten"):
            with self.assertRaises(ValueError):
                parse_quantity(bad)
        with self.assertRaises(ValueError):
            to_quantity(-1)

    def test_data(self):
        self.assertEqual(to_hex(b"\x01\x02"), "0x0102")
        self.assertEqual(parse_data("0x"), b"")
        self.assertEqual(parse_data("0x0a0b"), b"\x0a\x0b")
        with self.assertRaises(ValueError):
            parse_data("0xabc")
        with self.assertRaises(ValueError):
            parse_data("abcd")

    def test_address(self):
        self.assertEqual(parse_address("0x" + "ab" * 20), b"\xab" * 20)
        with self.assertRaises(ValueError):
            parse_address("0xab")

    def test_pad32(self):
        self.assertEqual(pad32(1), b"\x00" * 31 + b"\x01")
        self.assertEqual(pad32(b"\x02"), b"\x00" * 31 + b"\x02")
        with self.assertRaises(ValueError):
            pad32(b"\x00" * 33)

    def test_error_string(self):
        payload = encode_error_string("INSUFFICIENT_OUTPUT")
        self.assertEqual(payload[:4].hex(), "08c379a0")
        self.assertEqual(len(payload), 4 + 32 * 3)
        self.assertEqual(decode_error_string(payload), "INSUFFICIENT_OUTPUT")
        self.assertIsNone(decode_error_string(b"INSUFFICIENT_OUTPUT"))
        self.assertIsNone(decode_error_string(payload[:40]))


if __name__ == "__main__":
    unittest.main()
