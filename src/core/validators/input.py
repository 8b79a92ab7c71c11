"""
Input validation for ERD files and CLI arguments.

Checks applied to file paths:
- Path traversal detection (``..`` components)
- Symlink rejection (configurable)
- Extension validation
- Optional working-directory boundary

Usage:
    from core.validators.input import InputValidator

    path = InputValidator.validate_erd_path("models/sales.mmd")
    content = InputValidator.read_erd_file(path)
"""

import os
import logging
from pathlib import Path
from typing import Any, List, Optional
from urllib.parse import urlparse

logger = logging.getLogger(__name__)


class InputValidator:
    """Validation helpers for paths and content handed to the converter."""

    ERD_EXTENSIONS = ['.mmd', '.mermaid', '.md', '.txt']
    JSON_EXTENSIONS = ['.json']
    OUTPUT_EXTENSIONS = ['.mmd', '.md', '.json', '.txt']

    @staticmethod
    def validate_erd_content(content: Any) -> str:
        """
        Validate ERD text.

        Raises:
            ValueError: If content is None, empty or whitespace-only
            TypeError: If content is not a string
        """
        if content is None:
            raise ValueError("ERD content cannot be None")
        if not isinstance(content, str):
            raise TypeError(f"ERD content must be string, got {type(content).__name__}")
        if not content.strip():
            raise ValueError("ERD content cannot be empty or whitespace-only")
        return content

    @staticmethod
    def _has_traversal(path_str: str) -> bool:
        normalized = path_str.replace('\\', '/')
        return any(part == '..' for part in normalized.split('/'))

    @staticmethod
    def _check_symlink(path_obj: Path, strict: bool) -> None:
        if not path_obj.is_symlink():
            return
        msg = f"Symlink detected: {path_obj}. Use the actual file path instead."
        if strict:
            raise ValueError(msg)
        logger.warning(msg)

    @staticmethod
    def _check_directory_boundary(path_obj: Path, strict: bool) -> None:
        try:
            path_obj.resolve().relative_to(Path.cwd().resolve())
        except ValueError:
            msg = f"Path is outside current directory: {path_obj}"
            if strict:
                raise ValueError(msg)
            logger.debug(msg)

    @classmethod
    def validate_file_path(
        cls,
        path: Any,
        allowed_extensions: Optional[List[str]] = None,
        check_exists: bool = True,
        check_readable: bool = True,
        restrict_to_cwd: bool = False,
        reject_symlinks: bool = True,
    ) -> Path:
        """
        Validate a file path for security and correctness.

        Args:
            path: Path to validate (non-empty string)
            allowed_extensions: Accepted suffixes, e.g. ['.mmd', '.md']
            check_exists: Require the file to exist
            check_readable: Require read permission (only with check_exists)
            restrict_to_cwd: Reject paths outside the working directory
            reject_symlinks: Raise on symlinks instead of warning

        Returns:
            The absolute path

        Raises:
            TypeError: If path is not a string
            ValueError: On empty path, traversal, symlink or bad extension
            FileNotFoundError: If the file does not exist
            PermissionError: If the file is not readable
        """
        if not isinstance(path, str):
            raise TypeError(f"File path must be string, got {type(path).__name__}")
        path = path.strip()
        if not path:
            raise ValueError("File path cannot be empty")

        if cls._has_traversal(path):
            raise ValueError(
                f"Path traversal detected in path: {path}. "
                f"Paths containing '..' are not allowed."
            )

        raw = Path(path)
        cls._check_symlink(raw, strict=reject_symlinks)
        path_obj = raw.resolve()
        cls._check_directory_boundary(path_obj, strict=restrict_to_cwd)

        if check_exists:
            if not path_obj.exists():
                raise FileNotFoundError(f"File not found: {path_obj}")
            if not path_obj.is_file():
                raise ValueError(f"Path is not a file: {path_obj}")

        if allowed_extensions:
            normalized = [e.lower() if e.startswith('.') else f'.{e.lower()}' for e in allowed_extensions]
            if path_obj.suffix.lower() not in normalized:
                raise ValueError(
                    f"Invalid file extension: '{path_obj.suffix}'. "
                    f"Expected one of: {', '.join(normalized)}"
                )

        if check_readable and check_exists and not os.access(path_obj, os.R_OK):
            raise PermissionError(f"File is not readable: {path_obj}")

        return path_obj

    @classmethod
    def validate_erd_path(cls, path: Any, **kwargs) -> Path:
        return cls.validate_file_path(path, allowed_extensions=cls.ERD_EXTENSIONS, **kwargs)

    @classmethod
    def validate_output_path(cls, path: Any, allowed_extensions: Optional[List[str]] = None) -> Path:
        """
        Validate a path the CLI will write to.

        The parent directory must exist and be writable.
        """
        path_obj = cls.validate_file_path(
            path,
            allowed_extensions=allowed_extensions or cls.OUTPUT_EXTENSIONS,
            check_exists=False,
            check_readable=False,
            reject_symlinks=True,
        )
        parent = path_obj.parent
        if not parent.exists():
            raise ValueError(f"Output directory does not exist: {parent}")
        if not os.access(parent, os.W_OK):
            raise PermissionError(f"Output directory is not writable: {parent}")
        return path_obj

    @classmethod
    def read_erd_file(cls, path: Any) -> str:
        """Validate ``path`` and return its decoded content."""
        path_obj = path if isinstance(path, Path) else cls.validate_erd_path(path)
        try:
            content = path_obj.read_text(encoding='utf-8-sig')
        except UnicodeDecodeError as e:
            raise ValueError(f"File is not valid UTF-8: {path_obj}: {e}") from e
        return cls.validate_erd_content(content)

    @staticmethod
    def validate_string_param(value: Any, param_name: str, allow_empty: bool = False) -> str:
        if value is None:
            raise ValueError(f"{param_name} cannot be None")
        if not isinstance(value, str):
            raise TypeError(f"{param_name} must be string, got {type(value).__name__}")
        if not allow_empty and not value.strip():
            raise ValueError(f"{param_name} cannot be empty")
        return value

    @staticmethod
    def validate_environment_url(value: Any) -> str:
        """Require an ``https://<org>.<region>.dynamics.com`` environment URL."""
        url = InputValidator.validate_string_param(value, "environmentUrl").strip()
        parsed = urlparse(url)
        host = (parsed.hostname or "").lower()
        if parsed.scheme != "https" or not host.endswith(".dynamics.com"):
            raise ValueError(f"environmentUrl must be an https Dataverse environment URL: {url}")
        return url.rstrip('/')
