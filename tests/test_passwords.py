"""Tests for credential hashing."""

import pytest

from klearkarma.config import PasswordAlgo
from klearkarma.service.passwords import Argon2Hasher, CredentialHasher, Pbkdf2Hasher


class TestPbkdf2Hasher:
    def test_hash_format(self):
        stored = Pbkdf2Hasher().hash("Aa1!aaaa")
        iterations, salt_hex, hash_hex = stored.split(":")
        assert iterations == "100000"
        assert len(bytes.fromhex(salt_hex)) == 32
        assert len(bytes.fromhex(hash_hex)) == 32

    def test_verify_roundtrip(self):
        hasher = Pbkdf2Hasher()
        stored = hasher.hash("Aa1!aaaa")
        assert hasher.verify("Aa1!aaaa", stored) is True
        assert hasher.verify("Aa1!aaab", stored) is False

    def test_same_password_gets_fresh_salt(self):
        hasher = Pbkdf2Hasher()
        assert hasher.hash("Aa1!aaaa") != hasher.hash("Aa1!aaaa")

    @pytest.mark.parametrize(
        "stored",
        ["", "garbage", "1:2", "abc:00:00", "100000:zz:00", "100000::", "0:00:00", None],
    )
    def test_malformed_stored_value_returns_false(self, stored):
        assert Pbkdf2Hasher().verify("Aa1!aaaa", stored) is False

    def test_rejects_weak_parameters(self):
        with pytest.raises(ValueError):
            Pbkdf2Hasher(iterations=1000)
        with pytest.raises(ValueError):
            Pbkdf2Hasher(salt_bytes=8)

    def test_older_iteration_count_still_verifies_and_needs_rehash(self):
        old = Pbkdf2Hasher(iterations=100_000)
        new = Pbkdf2Hasher(iterations=150_000)
        stored = old.hash("Aa1!aaaa")
        assert new.verify("Aa1!aaaa", stored) is True
        assert new.needs_rehash(stored) is True
        assert old.needs_rehash(stored) is False


class TestArgon2Hasher:
    def test_verify_roundtrip(self):
        hasher = Argon2Hasher()
        stored = hasher.hash("Aa1!aaaa")
        assert stored.startswith("$argon2id$")
        assert hasher.verify("Aa1!aaaa", stored) is True
        assert hasher.verify("wrong", stored) is False

    def test_malformed_stored_value_returns_false(self):
        assert Argon2Hasher().verify("Aa1!aaaa", "not-a-phc-string") is False


class TestCredentialHasher:
    """Dispatch by the algorithm tag stored next to the hash."""

    def test_hash_returns_algorithm_tag(self):
        digest, algo = CredentialHasher().hash("Aa1!aaaa")
        assert algo == "pbkdf2_sha256"
        assert digest.count(":") == 2

    def test_verify_uses_stored_tag(self):
        argon_digest, argon_algo = CredentialHasher(PasswordAlgo.ARGON2ID).hash("Aa1!aaaa")
        hasher = CredentialHasher(PasswordAlgo.PBKDF2_SHA256)
        assert hasher.verify("Aa1!aaaa", argon_digest, argon_algo) is True

    def test_unknown_algorithm_returns_false(self):
        digest, _ = CredentialHasher().hash("Aa1!aaaa")
        assert CredentialHasher().verify("Aa1!aaaa", digest, "md5") is False

    def test_needs_rehash_when_algorithm_changes(self):
        digest, algo = CredentialHasher(PasswordAlgo.PBKDF2_SHA256).hash("Aa1!aaaa")
        assert CredentialHasher(PasswordAlgo.ARGON2ID).needs_rehash(digest, algo) is True
        assert CredentialHasher(PasswordAlgo.PBKDF2_SHA256).needs_rehash(digest, algo) is False
