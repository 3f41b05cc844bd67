"""
Unit Tests for Token Functionality
==================================
Tests cover:
- Token generation (alphabet, entropy, uniqueness)
- Verification round-trip
- Non-malleability of token, hash and salt
- Fail-closed behaviour on empty or malformed input
"""

import base64
import string

from django.test import SimpleTestCase

from shares.services.tokens import TokenService, TOKEN_BYTES, SALT_BYTES


URL_SAFE_ALPHABET = set(string.ascii_letters + string.digits + '-_')


def _mutate(value: str, index: int) -> str:
    """Replace one character with a different one from the same alphabet."""
    replacement = 'A' if value[index] != 'A' else 'B'
    return value[:index] + replacement + value[index + 1:]


class TokenGenerationTests(SimpleTestCase):
    """Tests for TokenService.generate_token."""

    def test_token_is_url_safe(self):
        """Plaintext should never need percent-encoding."""
        plaintext, _, _ = TokenService.generate_token()

        self.assertTrue(set(plaintext) <= URL_SAFE_ALPHABET)
        for char in '+/=':
            self.assertNotIn(char, plaintext)

    def test_token_carries_256_bits(self):
        plaintext, _, _ = TokenService.generate_token()

        padded = plaintext + '=' * (-len(plaintext) % 4)
        self.assertEqual(len(base64.urlsafe_b64decode(padded)), TOKEN_BYTES)
        self.assertGreaterEqual(TOKEN_BYTES * 8, 256)

    def test_salt_carries_128_bits(self):
        _, _, salt = TokenService.generate_token()

        self.assertEqual(len(base64.b64decode(salt)), SALT_BYTES)
        self.assertGreaterEqual(SALT_BYTES * 8, 128)

    def test_hash_is_sha256(self):
        _, token_hash, _ = TokenService.generate_token()

        self.assertEqual(len(base64.b64decode(token_hash)), 32)

    def test_hash_does_not_contain_plaintext(self):
        plaintext, token_hash, salt = TokenService.generate_token()

        self.assertNotIn(plaintext, token_hash)
        self.assertNotEqual(plaintext, salt)

    def test_ten_thousand_tokens_are_unique(self):
        """No duplicate plaintexts, hashes or salts across 10,000 calls."""
        plaintexts, hashes, salts = set(), set(), set()

        for _ in range(10_000):
            plaintext, token_hash, salt = TokenService.generate_token()
            plaintexts.add(plaintext)
            hashes.add(token_hash)
            salts.add(salt)

        self.assertEqual(len(plaintexts), 10_000)
        self.assertEqual(len(hashes), 10_000)
        self.assertEqual(len(salts), 10_000)


class TokenVerificationTests(SimpleTestCase):
    """Tests for TokenService.verify_token."""

    def setUp(self):
        self.plaintext, self.token_hash, self.salt = TokenService.generate_token()

    # ===================
    # Round-trip
    # ===================

    def test_generated_token_verifies(self):
        self.assertTrue(TokenService.verify_token(self.plaintext, self.token_hash, self.salt))

    def test_verification_is_repeatable(self):
        for _ in range(3):
            self.assertTrue(TokenService.verify_token(self.plaintext, self.token_hash, self.salt))

    # ===================
    # Non-malleability
    # ===================

    def test_any_single_char_change_in_token_fails(self):
        for i in range(len(self.plaintext)):
            candidate = _mutate(self.plaintext, i)
            self.assertFalse(
                TokenService.verify_token(candidate, self.token_hash, self.salt),
                f'token mutated at {i} should not verify'
            )

    def test_any_single_char_change_in_hash_fails(self):
        for i in range(len(self.token_hash)):
            mutated = _mutate(self.token_hash, i)
            self.assertFalse(
                TokenService.verify_token(self.plaintext, mutated, self.salt),
                f'hash mutated at {i} should not verify'
            )

    def test_any_single_char_change_in_salt_fails(self):
        for i in range(len(self.salt)):
            mutated = _mutate(self.salt, i)
            self.assertFalse(
                TokenService.verify_token(self.plaintext, self.token_hash, mutated),
                f'salt mutated at {i} should not verify'
            )

    def test_token_from_other_record_fails(self):
        other_plaintext, _, _ = TokenService.generate_token()

        self.assertFalse(TokenService.verify_token(other_plaintext, self.token_hash, self.salt))

    def test_truncated_and_extended_tokens_fail(self):
        self.assertFalse(TokenService.verify_token(self.plaintext[:-1], self.token_hash, self.salt))
        self.assertFalse(TokenService.verify_token(self.plaintext + 'A', self.token_hash, self.salt))

    # ===================
    # Fail closed
    # ===================

    def test_empty_or_missing_inputs_fail(self):
        values = {
            'plaintext': self.plaintext,
            'hash': self.token_hash,
            'salt': self.salt,
        }
        for blank in ('', None):
            for missing in range(1, 8):
                args = [
                    blank if missing & 1 else values['plaintext'],
                    blank if missing & 2 else values['hash'],
                    blank if missing & 4 else values['salt'],
                ]
                self.assertFalse(TokenService.verify_token(*args), f'{args!r} should not verify')

    def test_malformed_salt_fails_without_raising(self):
        self.assertFalse(TokenService.verify_token(self.plaintext, self.token_hash, 'not base64!'))

    def test_non_ascii_hash_fails_without_raising(self):
        self.assertFalse(TokenService.verify_token(self.plaintext, 'häsh', self.salt))

    def test_non_string_candidate_fails_without_raising(self):
        self.assertFalse(TokenService.verify_token(12345, self.token_hash, self.salt))
