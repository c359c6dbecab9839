"""Tests for argon2id password hashing."""

import pytest
from argon2.exceptions import HashingError

from authkit.service.errors import PasswordHashingError
from authkit.service.passwords import CredentialVerifier


@pytest.fixture
def verifier():
    return CredentialVerifier(time_cost=1, memory_cost=8 * 1024, parallelism=1)


class TestCredentialVerifier:
    def test_hash_is_argon2id_and_not_plaintext(self, verifier):
        digest = verifier.hash_password("TestPassword123!")
        assert digest.startswith("$argon2id$")
        assert "TestPassword123!" not in digest

    def test_same_password_produces_different_hashes(self, verifier):
        assert verifier.hash_password("samepass1") != verifier.hash_password("samepass1")

    def test_verify_accepts_correct_password(self, verifier):
        digest = verifier.hash_password("TestPassword123!")
        assert verifier.verify_password(digest, "TestPassword123!") is True

    def test_verify_rejects_wrong_password(self, verifier):
        digest = verifier.hash_password("TestPassword123!")
        assert verifier.verify_password(digest, "WrongPassword!") is False

    def test_missing_hash_never_verifies(self, verifier):
        assert verifier.verify_password(None, "anything") is False
        assert verifier.verify_password("", "anything") is False

    def test_corrupt_hash_never_verifies(self, verifier):
        assert verifier.verify_password("$argon2id$garbage", "anything") is False
        assert verifier.verify_password("not-a-hash", "anything") is False

    def test_default_parameters(self):
        default = CredentialVerifier()
        digest = default.hash_password("pw-with-defaults")
        assert "m=65536,t=3,p=4" in digest

    def test_hashing_failure_is_a_server_error(self, verifier, monkeypatch):
        class _FailingHasher:
            def hash(self, password):
                raise HashingError("out of memory")

        monkeypatch.setattr(verifier, "_pwd_hasher", _FailingHasher())
        with pytest.raises(PasswordHashingError) as excinfo:
            verifier.hash_password("whatever1")
        assert excinfo.value.status_code == 500

    def test_burn_verification_builds_dummy_hash_once(self, verifier):
        verifier.burn_verification("guess-1")
        first = verifier._dummy_hash
        verifier.burn_verification("guess-2")
        assert first is not None
        assert verifier._dummy_hash == first
