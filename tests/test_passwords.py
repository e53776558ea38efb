"""Tests for the password policy, strength scoring and argon2 hashing."""

import pytest

from conftest import STRONG_PASSWORD, FastHasher
from tokenward.service.errors import WeakPasswordError
from tokenward.service.passwords import (
    PasswordHasher,
    ensure_strong_password,
    score_password,
    validate_password,
)


class TestValidatePassword:
    """Tests for rule evaluation."""

    def test_strong_password_has_no_violations(self):
        assert validate_password(STRONG_PASSWORD) == []

    def test_weak_password_lists_every_violation_in_order(self):
        violations = validate_password("abc123")

        assert violations == [
            "Password must be at least 8 characters long",
            "Password must contain at least one uppercase letter",
            "Password must contain at least one special character (!@#$%^&*()_+-=[]{}; etc.)",
            "Password is too common and easily guessable",
        ]

    def test_too_long_password(self):
        violations = validate_password("Aa1!" + "xy" * 70)

        assert "Password must not exceed 128 characters" in violations

    def test_repeated_characters(self):
        assert "Password should not contain repeated characters (e.g., aaa, 111)" in (
            validate_password("Paaassword1!")
        )

    def test_confirmation_mismatch(self):
        assert validate_password(STRONG_PASSWORD, "Str0ng!Pass98") == ["Passwords do not match"]

    def test_confirmation_match(self):
        assert validate_password(STRONG_PASSWORD, STRONG_PASSWORD) == []

    def test_email_local_part_rejected(self):
        violations = validate_password("Jdoe#2024xyz", email="jdoe@example.com")

        assert violations == ["Password should not contain your email address"]

    def test_first_name_rejected(self):
        violations = validate_password("Alice#2024xyz", email="someone@b.io", firstname="Alice")

        assert violations == ["Password should not contain your first name"]

    def test_last_name_rejected(self):
        violations = validate_password("Smith#2024xyz", lastname="Smith")

        assert violations == ["Password should not contain your last name"]

    def test_only_first_personal_rule_reported(self):
        violations = validate_password(
            "Alicesmith#24", email="alice@example.com", firstname="Alice", lastname="Smith"
        )

        assert violations == ["Password should not contain your email address"]

    def test_short_names_ignored(self):
        assert validate_password("Bo#Strong2024", firstname="Bo") == []


class TestScorePassword:
    """Tests for the strength score."""

    def test_weak_password_scores_low(self):
        strength = score_password("abc123")

        assert strength.score == 32
        assert strength.label == "Weak"

    def test_strong_password_scores_high(self):
        strength = score_password(STRONG_PASSWORD)

        # 26 for length, 40 for classes, 10 for length >= 12, 10 for all classes
        assert strength.score == 86
        assert strength.label == "Strong"

    def test_score_is_capped(self):
        assert score_password("Aa1!" * 10).score == 100
        assert score_password("Aa1!" * 10).label == "Very Strong"


class TestEnsureStrongPassword:
    def test_raises_with_violations_and_strength(self):
        with pytest.raises(WeakPasswordError) as excinfo:
            ensure_strong_password("abc123")

        err = excinfo.value
        assert err.status_code == 400
        assert err.error_code == "weak_password"
        assert len(err.detail["violations"]) == 4
        assert err.detail["strength"] == {"score": 32, "label": "Weak"}
        assert "Password must be at least 8 characters long" in err.message

    def test_returns_strength_when_valid(self):
        assert ensure_strong_password(STRONG_PASSWORD).label == "Strong"


class TestPasswordHasher:
    """Tests for argon2id hashing."""

    def test_hash_is_argon2id_and_salted(self):
        hasher = FastHasher()
        first = hasher.hash(STRONG_PASSWORD)
        second = hasher.hash(STRONG_PASSWORD)

        assert first.startswith("$argon2id$")
        assert first != second
        assert STRONG_PASSWORD not in first

    def test_verify_matches_and_mismatches(self):
        hasher = FastHasher()
        stored = hasher.hash(STRONG_PASSWORD)

        assert hasher.verify(stored, STRONG_PASSWORD) is True
        assert hasher.verify(stored, "Wr0ng!Pass99") is False

    def test_verify_tolerates_corrupt_hash(self):
        assert PasswordHasher().verify("not-a-hash", STRONG_PASSWORD) is False

    def test_default_hasher_verifies_fast_hashes(self):
        stored = FastHasher().hash(STRONG_PASSWORD)

        assert PasswordHasher().verify(stored, STRONG_PASSWORD) is True
