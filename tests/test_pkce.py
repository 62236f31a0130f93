"""
Tests for random state generation and the S256 code challenge.
"""

import pytest

from kinde_auth.pkce import (
    ALPHABET,
    STATE_LENGTH,
    VERIFIER_LENGTH,
    code_challenge,
    generate_pkce_pair,
    random_token,
)


class TestRandomToken:

    def test_default_length_and_alphabet(self):
        token = random_token()
        assert len(token) == STATE_LENGTH
        assert set(token) <= set(ALPHABET)

    def test_custom_length(self):
        assert len(random_token(64)) == 64

    def test_tokens_are_distinct(self):
        tokens = [random_token() for _ in range(2000)]
        assert len(set(tokens)) == len(tokens)
        assert all(a != b for a, b in zip(tokens, tokens[1:]))

    @pytest.mark.parametrize("length", [0, -5])
    def test_rejects_non_positive_length(self, length):
        with pytest.raises(ValueError):
            random_token(length)


class TestCodeChallenge:

    def test_known_vector(self):
        assert code_challenge("test-verifier-0001") == "3XXvxORNxhgQqTeK_wg6S7eNrhNpVAm2LtGKHmabX5Q"

    def test_rfc7636_appendix_b_vector(self):
        verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
        assert code_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"

    def test_deterministic_and_unpadded(self):
        challenge = code_challenge("same-verifier")
        assert challenge == code_challenge("same-verifier")
        assert "=" not in challenge
        assert "+" not in challenge and "/" not in challenge
        assert len(challenge) == 43


class TestPkcePair:

    def test_pair_matches(self):
        verifier, challenge = generate_pkce_pair()
        assert len(verifier) == VERIFIER_LENGTH
        assert challenge == code_challenge(verifier)
        assert verifier != challenge

    @pytest.mark.parametrize("length", [42, 129])
    def test_rejects_out_of_range_length(self, length):
        with pytest.raises(ValueError):
            generate_pkce_pair(length)
