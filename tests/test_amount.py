import unittest
from decimal import Decimal

from tokengraph.core.amount import decode_amount, encode_amount
from tokengraph.core.errors import MalformedAmount


class DecodeAmountTests(unittest.TestCase):
    def test_high_word_is_shifted_by_32_bits(self) -> None:
        self.assertEqual(decode_amount("0000000100000000"), Decimal(4294967296))

    def test_low_word_only(self) -> None:
        self.assertEqual(decode_amount("00000000000003e8"), Decimal(1000))

    def test_max_value_is_exact(self) -> None:
        value = decode_amount("ffffffffffffffff")
        self.assertEqual(value, Decimal(2 ** 64 - 1))
        self.assertEqual(str(value), "18446744073709551615")

    def test_uppercase_hex_is_accepted(self) -> None:
        self.assertEqual(decode_amount("00000001FFFFFFFF"), Decimal(2 ** 33 - 1))

    def test_wrong_length_is_rejected(self) -> None:
        for bad in ("", "00", "000000000000000000", "00000000000000000000"):
            with self.assertRaises(MalformedAmount):
                decode_amount(bad)

    def test_odd_length_or_non_hex_is_rejected(self) -> None:
        for bad in ("000000000000000", "zzzzzzzzzzzzzzzz", "0x00000000000001"):
            with self.assertRaises(MalformedAmount):
                decode_amount(bad)

    def test_non_string_is_rejected(self) -> None:
        with self.assertRaises(MalformedAmount):
            decode_amount(1000)  # type: ignore[arg-type]


class EncodeAmountTests(unittest.TestCase):
    def test_values_survive_a_round_trip(self) -> None:
        for value in (0, 1, 2 ** 32 - 1, 2 ** 32, 2 ** 64 - 1):
            self.assertEqual(decode_amount(encode_amount(value)), Decimal(value))

    def test_encodes_big_endian(self) -> None:
        self.assertEqual(encode_amount(Decimal(4294967296)), "0000000100000000")

    def test_out_of_range_or_fractional_is_rejected(self) -> None:
        for bad in (-1, 2 ** 64, Decimal("1.5")):
            with self.assertRaises(MalformedAmount):
                encode_amount(bad)


if __name__ == "__main__":
    unittest.main()
