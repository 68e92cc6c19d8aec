"""
tests/test_credentials.py -- Unit tests for password verification and external identities.

Covers:
  - verify(): success, unknown user, wrong password, inactive account,
    external-only account, exact (case-sensitive) username match
  - parse_external_identity(): accepted forms and malformed input
  - resolve_or_provision(): existing principal, first-sight provisioning,
    inactive principal, username collision
"""

from __future__ import annotations

import pytest

from auth import permissions
from auth.credentials import CredentialVerifier, hash_password, parse_external_identity, verify_password
from auth.errors import AuthFailure, FailureReason
from auth.models import AuthType, User
from conftest import DEFAULT_PASSWORD, AuthHarness


def _verifier(harness: AuthHarness) -> CredentialVerifier:
    return CredentialVerifier(harness.users)


class TestPasswordHashing:
    def test_hash_and_verify(self) -> None:
        hashed = hash_password("s3cret-pass")
        assert hashed != "s3cret-pass"
        assert verify_password("s3cret-pass", hashed)
        assert not verify_password("s3cret-pasS", hashed)

    def test_malformed_hash_is_a_mismatch(self) -> None:
        assert not verify_password("anything", "not-a-bcrypt-hash")


class TestVerify:
    def test_success_returns_user(self, harness: AuthHarness) -> None:
        alice = harness.add_user("alice")
        result = _verifier(harness).verify("alice", DEFAULT_PASSWORD)
        assert isinstance(result, User)
        assert result.id == alice.id

    def test_unknown_user_and_wrong_password_are_indistinguishable(self, harness: AuthHarness) -> None:
        harness.add_user("alice")
        unknown = _verifier(harness).verify("mallory", DEFAULT_PASSWORD)
        wrong = _verifier(harness).verify("alice", "wrong-password")
        assert unknown == wrong
        assert unknown.reason is FailureReason.INVALID_CREDENTIALS

    def test_username_match_is_case_sensitive(self, harness: AuthHarness) -> None:
        harness.add_user("alice")
        result = _verifier(harness).verify("Alice", DEFAULT_PASSWORD)
        assert isinstance(result, AuthFailure)
        assert result.reason is FailureReason.INVALID_CREDENTIALS

    def test_inactive_account(self, harness: AuthHarness) -> None:
        harness.add_user("bob", is_active=False)
        result = _verifier(harness).verify("bob", DEFAULT_PASSWORD)
        assert result.reason is FailureReason.ACCOUNT_INACTIVE

    def test_inactive_account_with_wrong_password_reveals_nothing(self, harness: AuthHarness) -> None:
        harness.add_user("bob", is_active=False)
        result = _verifier(harness).verify("bob", "nope")
        assert result.reason is FailureReason.INVALID_CREDENTIALS

    def test_external_account_rejects_password_login(self, harness: AuthHarness) -> None:
        harness.add_user("carol", password=None, auth_type=AuthType.EXTERNAL, external_identity="CORP\\carol")
        result = _verifier(harness).verify("carol", "whatever")
        assert result.reason is FailureReason.WRONG_AUTH_TYPE

    def test_hybrid_account_accepts_password(self, harness: AuthHarness) -> None:
        harness.add_user("dave", auth_type=AuthType.HYBRID, external_identity="CORP\\dave")
        assert isinstance(_verifier(harness).verify("dave", DEFAULT_PASSWORD), User)


class TestParseExternalIdentity:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("CORP\\alice", ("CORP\\alice", "CORP")),
            ("  CORP\\alice  ", ("CORP\\alice", "CORP")),
            ("alice", ("LOCAL\\alice", "LOCAL")),
        ],
    )
    def test_accepted(self, raw: str, expected: tuple[str, str]) -> None:
        assert parse_external_identity(raw, "LOCAL") == expected

    @pytest.mark.parametrize(
        "raw",
        [None, "", "   ", "CORP\\", "\\alice", "A\\B\\c", "CORP\\al ice", "CORP\\al\tice", "CO@RP\\alice", "x\x00y"],
    )
    def test_rejected(self, raw) -> None:
        assert parse_external_identity(raw, "LOCAL") is None


class TestResolveOrProvision:
    def test_first_sight_provisions_basic_user(self, harness: AuthHarness) -> None:
        result = _verifier(harness).resolve_or_provision("CORP\\erin", "CORP")
        assert isinstance(result, User)
        assert result.id is not None
        assert result.username == "erin"
        assert result.email == "CORP_erin@CORP"
        assert result.auth_type is AuthType.EXTERNAL
        assert result.permissions == permissions.DEFAULT_PERMISSIONS
        assert result.hashed_password is None

    def test_second_sight_returns_same_principal(self, harness: AuthHarness) -> None:
        verifier = _verifier(harness)
        first = verifier.resolve_or_provision("CORP\\erin", "CORP")
        second = verifier.resolve_or_provision("CORP\\erin", "CORP")
        assert first.id == second.id
        assert len(harness.users.list_users()) == 1

    def test_inactive_external_principal(self, harness: AuthHarness) -> None:
        harness.add_user(
            "frank", password=None, auth_type=AuthType.EXTERNAL, external_identity="CORP\\frank", is_active=False
        )
        result = _verifier(harness).resolve_or_provision("CORP\\frank", "CORP")
        assert result.reason is FailureReason.ACCOUNT_INACTIVE

    def test_collision_with_local_username(self, harness: AuthHarness) -> None:
        harness.add_user("grace")
        result = _verifier(harness).resolve_or_provision("CORP\\grace", "CORP")
        assert isinstance(result, AuthFailure)
        assert result.reason is FailureReason.DUPLICATE_IDENTITY

    def test_empty_identity(self, harness: AuthHarness) -> None:
        result = _verifier(harness).resolve_or_provision("", "CORP")
        assert result.reason is FailureReason.INVALID_IDENTITY
