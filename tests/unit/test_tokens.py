"""Tests for operator token generation."""

from __future__ import annotations

import hashlib
import itertools
from collections import Counter

import pytest

from coder_k8s_operator.services.postgres.tokens import (
    REJECTION_THRESHOLD,
    TOKEN_ALPHABET,
    TOKEN_ID_LENGTH,
    TOKEN_SECRET_LENGTH,
    generate_operator_token,
    hash_token_secret,
    random_string,
    split_operator_token,
)


class TestRandomString:
    """Test cases for random_string."""

    def test_length_and_alphabet(self):
        """Test that output uses only alphanumeric characters."""
        value = random_string(40)

        assert len(value) == 40
        assert set(value) <= set(TOKEN_ALPHABET)

    def test_rejects_non_positive_length(self):
        """Test invalid lengths."""
        with pytest.raises(ValueError):
            random_string(0)

    def test_biased_bytes_are_rejected(self):
        """Test that bytes at or above the threshold are skipped."""
        assert REJECTION_THRESHOLD == 248
        feed = iter([bytes([255, 248, 0]), bytes([61, 62])])

        value = random_string(3, random_bytes=lambda n: next(feed))

        assert value == "0" + TOKEN_ALPHABET[61] + TOKEN_ALPHABET[0]

    def test_all_symbols_reachable(self):
        """Test that every accepted byte value maps onto the alphabet evenly."""
        feed = itertools.cycle(range(REJECTION_THRESHOLD))

        value = random_string(REJECTION_THRESHOLD, random_bytes=lambda n: bytes(next(feed) for _ in range(n)))

        counts = Counter(value)
        assert set(counts) == set(TOKEN_ALPHABET)
        assert set(counts.values()) == {REJECTION_THRESHOLD // len(TOKEN_ALPHABET)}


class TestOperatorToken:
    """Test cases for token generation and parsing."""

    def test_format(self):
        """Test the <id>-<secret> layout and the returned hash."""
        token, token_id, hashed = generate_operator_token()

        parsed = split_operator_token(token)
        assert parsed is not None
        assert parsed[0] == token_id
        assert len(token_id) == TOKEN_ID_LENGTH
        assert len(parsed[1]) == TOKEN_SECRET_LENGTH
        assert hashed == hashlib.sha256(parsed[1].encode("utf-8")).digest()
        assert hash_token_secret(parsed[1]) == hashed

    def test_tokens_are_unique(self):
        """Test that consecutive tokens differ."""
        assert generate_operator_token()[0] != generate_operator_token()[0]

    def test_secret_characters_are_uniform(self):
        """Chi-square test over the secret halves of 10,000 tokens."""
        counts = Counter()
        for _ in range(10_000):
            counts.update(split_operator_token(generate_operator_token()[0])[1])
        expected = 10_000 * TOKEN_SECRET_LENGTH / len(TOKEN_ALPHABET)

        chi_square = sum((counts.get(c, 0) - expected) ** 2 / expected for c in TOKEN_ALPHABET)

        # 61 degrees of freedom; the 0.99999 quantile is about 120
        assert set(counts) <= set(TOKEN_ALPHABET)
        assert chi_square < 120

    @pytest.mark.parametrize("value", ["", "noseparator", "-secret", "id-"])
    def test_split_malformed(self, value):
        """Test malformed tokens."""
        assert split_operator_token(value) is None
