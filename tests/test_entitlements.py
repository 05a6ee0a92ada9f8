"""Unit tests for entitlements generation."""

import plistlib
from pathlib import Path

import pytest

from appbundler import (
    ENTITLEMENT_ALLOW_DYLD_VARS,
    ENTITLEMENT_ALLOW_JIT,
    ENTITLEMENT_ALLOW_UNSIGNED_MEMORY,
    ENTITLEMENT_DISABLE_LIBRARY_VALIDATION,
    ENTITLEMENT_PLACEHOLDER,
    CodesignError,
    build_entitlements,
    write_entitlements,
)


class TestBuildEntitlements:
    """Tests for build_entitlements()."""

    def test_no_hardened_runtime(self):
        """Test that only the placeholder is present without hardening."""
        assert build_entitlements() == {ENTITLEMENT_PLACEHOLDER: True}

    def test_flags_ignored_without_hardened_runtime(self):
        """Test that exception flags need the hardened runtime."""
        entitlements = build_entitlements(
            hardened_runtime=False,
            allow_jit=True,
            allow_unsigned_memory=True,
            allow_dyld_vars=True,
        )
        assert entitlements == {ENTITLEMENT_PLACEHOLDER: True}

    def test_hardened_runtime_only(self):
        """Test that hardening alone disables library validation."""
        assert build_entitlements(hardened_runtime=True) == {
            ENTITLEMENT_DISABLE_LIBRARY_VALIDATION: True
        }

    def test_hardened_runtime_jit(self):
        """Test JIT plus library validation, nothing else."""
        entitlements = build_entitlements(hardened_runtime=True, allow_jit=True)
        assert set(entitlements) == {
            ENTITLEMENT_ALLOW_JIT,
            ENTITLEMENT_DISABLE_LIBRARY_VALIDATION,
        }
        assert ENTITLEMENT_ALLOW_UNSIGNED_MEMORY not in entitlements
        assert ENTITLEMENT_ALLOW_DYLD_VARS not in entitlements

    def test_hardened_runtime_all(self):
        """Test every exception at once."""
        entitlements = build_entitlements(True, True, True, True)
        assert entitlements == {
            ENTITLEMENT_ALLOW_JIT: True,
            ENTITLEMENT_ALLOW_UNSIGNED_MEMORY: True,
            ENTITLEMENT_ALLOW_DYLD_VARS: True,
            ENTITLEMENT_DISABLE_LIBRARY_VALIDATION: True,
        }


class TestWriteEntitlements:
    """Tests for write_entitlements()."""

    def test_xml_format(self, tmp_path: Path) -> None:
        """Test that the file is a text (XML) plist."""
        path = write_entitlements(
            tmp_path / "entitlements.plist", hardened_runtime=True, allow_jit=True
        )
        text = path.read_text(encoding="utf-8")
        assert text.startswith("<?xml")
        assert "<key>com.apple.security.cs.allow-jit</key>" in text
        assert plistlib.loads(path.read_bytes()) == {
            ENTITLEMENT_ALLOW_JIT: True,
            ENTITLEMENT_DISABLE_LIBRARY_VALIDATION: True,
        }

    def test_placeholder_written(self, tmp_path: Path) -> None:
        """Test that the default file holds exactly one entry."""
        path = write_entitlements(tmp_path / "entitlements.plist")
        assert plistlib.loads(path.read_bytes()) == {ENTITLEMENT_PLACEHOLDER: True}

    def test_unwritable_path(self, tmp_path: Path) -> None:
        """Test failure when the directory does not exist."""
        with pytest.raises(CodesignError):
            write_entitlements(tmp_path / "missing" / "entitlements.plist")
