"""Tests for the identity seeding script."""

import pytest

from reflective_auth.storage.memory import MemoryStore
from scripts.bootstrap_user import bootstrap_user


@pytest.fixture
def fs_root(monkeypatch, tmp_path):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    monkeypatch.setenv("USE_MEMORY_STORE", "true")
    return tmp_path


def test_creates_two_factor_identity(fs_root):
    result = bootstrap_user("Ada@Example.com", "hunter22", name="Ada")

    assert result["status"] == "created"
    stored = MemoryStore(fs_root=str(fs_root)).get_identity_by_email("ada@example.com")
    assert stored.two_factor_enabled is True
    assert stored.password_hash.startswith("$argon2id$")


def test_legacy_identity_has_two_factor_off(fs_root):
    bootstrap_user("old@example.com", "hunter22", name="Old", legacy=True)

    stored = MemoryStore(fs_root=str(fs_root)).get_identity_by_email("old@example.com")
    assert stored.two_factor_enabled is False
    assert stored.two_factor_prompted is False


def test_existing_identity_is_left_alone(fs_root):
    first = bootstrap_user("ada@example.com", "hunter22", name="Ada")
    second = bootstrap_user("ada@example.com", "different", name="Ada")

    assert second == {**first, "status": "exists"}


def test_dry_run_writes_nothing(fs_root):
    result = bootstrap_user("ada@example.com", "hunter22", name="Ada", dry_run=True)

    assert result["status"] == "dry_run"
    assert MemoryStore(fs_root=str(fs_root)).get_identity_by_email("ada@example.com") is None
