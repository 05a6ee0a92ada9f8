"""Tests for input validation and error reporting.

This module tests:
- File validation (validate_file)
- Bundle name validation (validate_bundle_name)
- Error codes and the one-line error report (format_error)
"""

from pathlib import Path

import pytest

from appbundler import (
    AccessError,
    BundlerError,
    CodesignError,
    CommandError,
    CommandTimeoutError,
    DirectoryError,
    ErrorCode,
    IconConversionError,
    MetadataError,
    MissingFileError,
    ScriptError,
    ValidationError,
    _os_error,
    format_error,
    validate_bundle_name,
    validate_file,
)


class TestValidateFile:
    """Tests for validate_file function."""

    def test_validate_nonexistent_file(self, tmp_path: Path) -> None:
        """Test validation fails for nonexistent file."""
        with pytest.raises(MissingFileError, match="does not exist"):
            validate_file(tmp_path / "nonexistent")

    def test_validate_empty_file(self, tmp_path: Path) -> None:
        """Test validation fails for empty file."""
        empty = tmp_path / "empty"
        empty.touch()
        with pytest.raises(ValidationError, match="empty"):
            validate_file(empty)

    def test_validate_directory(self, tmp_path: Path) -> None:
        """Test validation fails for directories."""
        with pytest.raises(ValidationError, match="not a regular file"):
            validate_file(tmp_path)

    def test_validate_valid_file(self, tmp_path: Path) -> None:
        """Test validation passes for valid file."""
        valid = tmp_path / "valid.png"
        valid.write_bytes(b"some content")
        validate_file(valid)


class TestValidateBundleName:
    """Tests for validate_bundle_name function."""

    @pytest.mark.parametrize(
        "name", ["Demo", "Midnight Commander", "Tool 2.0", "Ünïcode"]
    )
    def test_valid_names(self, name: str) -> None:
        """Test names that are single path segments."""
        validate_bundle_name(name)

    @pytest.mark.parametrize(
        "name",
        ["", "  ", ".", "..", "a/b", "/abs", "Demo\ntouch x", "Demo\rx", "a\0b"],
    )
    def test_invalid_names(self, name: str) -> None:
        """Test names that cannot be a bundle directory name."""
        with pytest.raises(ValidationError):
            validate_bundle_name(name)


class TestErrorCodes:
    """Tests for the error taxonomy."""

    @pytest.mark.parametrize(
        "error_class, code",
        [
            (ValidationError, ErrorCode.INVALID_ARGUMENTS),
            (MissingFileError, ErrorCode.FILE_NOT_FOUND),
            (AccessError, ErrorCode.PERMISSION_DENIED),
            (DirectoryError, ErrorCode.DIRECTORY_CREATION_FAILED),
            (MetadataError, ErrorCode.METADATA_GENERATION_FAILED),
            (ScriptError, ErrorCode.SCRIPT_GENERATION_FAILED),
            (IconConversionError, ErrorCode.ICON_CONVERSION_FAILED),
            (CodesignError, ErrorCode.CODE_SIGNING_FAILED),
        ],
    )
    def test_one_code_per_error(self, error_class, code) -> None:
        """Test that every error class carries its code."""
        error = error_class("details")
        assert isinstance(error, BundlerError)
        assert error.code is code

    def test_every_code_described(self) -> None:
        """Test that every code has a description."""
        for code in ErrorCode:
            assert code.description

    def test_format_with_details(self) -> None:
        """Test the ERROR line with details."""
        error = IconConversionError("sips failed for size 64x64")
        assert format_error(error) == (
            "ERROR: Icon conversion failed - sips failed for size 64x64"
        )

    def test_format_without_details(self) -> None:
        """Test the ERROR line without details."""
        assert format_error(CodesignError()) == "ERROR: Code signing failed"

    def test_explicit_code(self) -> None:
        """Test overriding the class code."""
        error = BundlerError("x", code=ErrorCode.FILE_NOT_FOUND)
        assert error.code is ErrorCode.FILE_NOT_FOUND

    def test_os_error_mapping(self) -> None:
        """Test that permission errors map to PERMISSION_DENIED."""
        denied = _os_error(ScriptError, "cannot write", PermissionError(13, "denied"))
        assert isinstance(denied, AccessError)
        other = _os_error(ScriptError, "cannot write", OSError(28, "no space"))
        assert isinstance(other, ScriptError)
        assert "no space" in other.details

    def test_command_errors(self) -> None:
        """Test command error attributes."""
        error = CommandError("sips -z 16 16", 2, "bad input")
        assert error.returncode == 2
        assert error.output == "bad input"
        assert "sips -z 16 16" in str(error)

        timeout = CommandTimeoutError("qlmanage -t", 5.0)
        assert isinstance(timeout, CommandError)
        assert "timed out after 5s" in str(timeout)
