"""
Tests for InputValidator path and content checks.

Run with: pytest tests/core/test_input_validator.py -v
"""

import os
import sys

import pytest

from core.validators import InputValidator


@pytest.mark.unit
class TestErdContent:
    """Tests for validate_erd_content."""

    def test_valid(self, simple_erd):
        assert InputValidator.validate_erd_content(simple_erd) == simple_erd

    @pytest.mark.parametrize("content,error,match", [
        (None, ValueError, "cannot be None"),
        (42, TypeError, "must be string, got int"),
        ("   \n ", ValueError, "empty or whitespace-only"),
    ])
    def test_invalid(self, content, error, match):
        with pytest.raises(error, match=match):
            InputValidator.validate_erd_content(content)


@pytest.mark.security
class TestFilePaths:
    """Tests for validate_file_path and friends."""

    def test_valid_erd_path(self, temp_erd_file):
        path = InputValidator.validate_erd_path(temp_erd_file)
        assert path.is_absolute()
        assert path.name == "model.mmd"

    @pytest.mark.parametrize("path", [
        "../secret.mmd",
        "models/../../etc/passwd",
        "..\\windows\\model.mmd",
    ])
    def test_traversal_rejected(self, path):
        with pytest.raises(ValueError, match="Path traversal detected"):
            InputValidator.validate_erd_path(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError, match="File not found"):
            InputValidator.validate_erd_path(str(tmp_path / "nope.mmd"))

    def test_directory_rejected(self, tmp_path):
        folder = tmp_path / "model.mmd"
        folder.mkdir()
        with pytest.raises(ValueError, match="Path is not a file"):
            InputValidator.validate_erd_path(str(folder))

    def test_wrong_extension(self, tmp_path):
        target = tmp_path / "model.exe"
        target.write_text("erDiagram")
        with pytest.raises(ValueError, match="Invalid file extension"):
            InputValidator.validate_erd_path(str(target))

    @pytest.mark.parametrize("value,error", [(None, TypeError), ("  ", ValueError)])
    def test_bad_path_values(self, value, error):
        with pytest.raises(error):
            InputValidator.validate_file_path(value)

    @pytest.mark.skipif(sys.platform == "win32", reason="Symlinks need privileges on Windows")
    def test_symlink_rejected(self, temp_erd_file, tmp_path):
        link = tmp_path / "link.mmd"
        os.symlink(temp_erd_file, link)
        with pytest.raises(ValueError, match="Symlink detected"):
            InputValidator.validate_erd_path(str(link))

    @pytest.mark.skipif(sys.platform == "win32", reason="Symlinks need privileges on Windows")
    def test_symlink_allowed_when_not_strict(self, temp_erd_file, tmp_path):
        link = tmp_path / "link.mmd"
        os.symlink(temp_erd_file, link)
        assert InputValidator.validate_erd_path(str(link), reject_symlinks=False).exists()

    def test_restrict_to_cwd(self, temp_erd_file, tmp_path, monkeypatch):
        elsewhere = tmp_path / "elsewhere"
        elsewhere.mkdir()
        monkeypatch.chdir(elsewhere)
        with pytest.raises(ValueError, match="outside current directory"):
            InputValidator.validate_erd_path(temp_erd_file, restrict_to_cwd=True)

    def test_output_path(self, tmp_path):
        assert InputValidator.validate_output_path(str(tmp_path / "fixed.mmd")).name == "fixed.mmd"

    def test_output_directory_missing(self, tmp_path):
        with pytest.raises(ValueError, match="Output directory does not exist"):
            InputValidator.validate_output_path(str(tmp_path / "missing" / "fixed.mmd"))


@pytest.mark.unit
class TestReadErdFile:
    """Tests for read_erd_file."""

    def test_strips_bom(self, tmp_path, simple_erd):
        target = tmp_path / "bom.mmd"
        target.write_bytes(b"\xef\xbb\xbf" + simple_erd.encode("utf-8"))
        assert InputValidator.read_erd_file(str(target)) == simple_erd

    def test_invalid_utf8(self, tmp_path):
        target = tmp_path / "latin.mmd"
        target.write_bytes(b"erDiagram\n    Caf\xe9 {\n    }\n")
        with pytest.raises(ValueError, match="not valid UTF-8"):
            InputValidator.read_erd_file(str(target))

    def test_empty_file(self, tmp_path):
        target = tmp_path / "empty.mmd"
        target.write_text("")
        with pytest.raises(ValueError, match="empty or whitespace-only"):
            InputValidator.read_erd_file(str(target))

    def test_string_param(self):
        assert InputValidator.validate_string_param("cr123", "prefix") == "cr123"
        with pytest.raises(ValueError, match="prefix cannot be empty"):
            InputValidator.validate_string_param("", "prefix")


@pytest.mark.security
class TestEnvironmentUrl:
    """Tests for validate_environment_url."""

    @pytest.mark.parametrize("url", [
        "https://contoso.crm.dynamics.com",
        "https://contoso.crm4.dynamics.com/",
        " https://Contoso.CRM.dynamics.com ",
    ])
    def test_accepted(self, url):
        assert InputValidator.validate_environment_url(url) == url.strip().rstrip('/')

    @pytest.mark.parametrize("url", [
        "http://contoso.crm.dynamics.com",
        "https://contoso.example.com",
        "https://dynamics.com.attacker.net",
        "contoso.crm.dynamics.com",
        "",
    ])
    def test_rejected(self, url):
        with pytest.raises(ValueError):
            InputValidator.validate_environment_url(url)

    def test_not_a_string(self):
        with pytest.raises(TypeError):
            InputValidator.validate_environment_url(42)
