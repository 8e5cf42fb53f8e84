"""
Unit tests for gateway callback signature verification
"""
import base64
import hashlib
import hmac
import json
import unittest

from common.security import sign_payload, verify_signature

SECRET = "shared-callback-secret"
BODY = json.dumps({
    "Body": {"stkCallback": {
        "MerchantRequestID": "M1",
        "CheckoutRequestID": "C1",
        "ResultCode": 0,
        "ResultDesc": "The service request is processed successfully.",
    }}
}).encode("utf-8")


class TestSignPayload(unittest.TestCase):

    def test_timestamped_message(self):
        expected = base64.b64encode(
            hmac.new(SECRET.encode(), b"1700000000." + BODY, hashlib.sha256).digest()
        ).decode()
        self.assertEqual(sign_payload(BODY, SECRET, "1700000000"), expected)

    def test_bare_body_without_timestamp(self):
        expected = base64.b64encode(hmac.new(SECRET.encode(), BODY, hashlib.sha256).digest()).decode()
        self.assertEqual(sign_payload(BODY, SECRET), expected)
        self.assertNotEqual(sign_payload(BODY, SECRET), sign_payload(BODY, SECRET, "1700000000"))


class TestVerifySignature(unittest.TestCase):

    def test_valid_signature(self):
        signature = sign_payload(BODY, SECRET, "1700000000")
        self.assertIs(verify_signature(BODY, signature, "1700000000", SECRET), True)

    def test_prefix_is_stripped(self):
        signature = "sha256=" + sign_payload(BODY, SECRET, "1700000000")
        self.assertIs(verify_signature(BODY, signature, "1700000000", SECRET), True)

    def test_no_secret_is_unknown(self):
        signature = sign_payload(BODY, SECRET)
        self.assertIsNone(verify_signature(BODY, signature, None, None))
        self.assertIsNone(verify_signature(BODY, signature, None, ""))

    def test_missing_signature_is_invalid(self):
        self.assertIs(verify_signature(BODY, None, "1700000000", SECRET), False)
        self.assertIs(verify_signature(BODY, "", "1700000000", SECRET), False)

    def test_wrong_secret(self):
        signature = sign_payload(BODY, "another-secret", "1700000000")
        self.assertIs(verify_signature(BODY, signature, "1700000000", SECRET), False)

    def test_timestamp_is_bound_into_signature(self):
        signature = sign_payload(BODY, SECRET, "1700000000")
        self.assertIs(verify_signature(BODY, signature, "1700000001", SECRET), False)
        self.assertIs(verify_signature(BODY, signature, None, SECRET), False)

    def test_garbage_signature(self):
        self.assertIs(verify_signature(BODY, "not base64 at all ✓", "1700000000", SECRET), False)

    def test_any_single_bit_flip_invalidates(self):
        signature = sign_payload(BODY, SECRET, "1700000000")
        for i in range(len(BODY)):
            for bit in range(8):
                mutated = bytearray(BODY)
                mutated[i] ^= 1 << bit
                self.assertIs(
                    verify_signature(bytes(mutated), signature, "1700000000", SECRET), False,
                    f"bit {bit} of byte {i} went undetected",
                )


if __name__ == '__main__':
    unittest.main()
