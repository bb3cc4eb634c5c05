"""
Utility functions for the Azure DevOps to Azure DevOps migration tool.
"""

from __future__ import annotations

import logging
import os
import re
import subprocess
from subprocess import CompletedProcess
from typing import TYPE_CHECKING, Final

if TYPE_CHECKING:
    from collections.abc import Iterable

DEFAULT_LOG_FILE: Final[str] = "migration.log"


class PassError(Exception):
    """Base class for pass-related errors."""


class InvalidPassPathError(PassError):
    """Raised when the pass path format is invalid."""


class PassphraseRequiredError(PassError):
    """Raised when a GPG passphrase is required for the pass utility."""


def setup_logging(*, verbose: bool = False, log_file: str | None = DEFAULT_LOG_FILE) -> None:
    """Configure logging for the migration process.

    Messages go to stderr and, unless ``log_file`` is None, are appended to
    the log file so that consecutive runs can be compared.
    """
    level = logging.DEBUG if verbose else logging.INFO
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file, mode="a"))
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
        handlers=handlers,
    )
    # Request logging of every REST call is only useful when debugging the client itself
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def parse_name_maps(values: Iterable[str] | None) -> dict[str, str]:
    """Parse ``source=target`` pairs into a mapping.

    Raises:
        ValueError: If a value has no ``=`` or an empty side
    """
    name_maps: dict[str, str] = {}
    for value in values or ():
        source, separator, target = value.partition("=")
        if not separator or not source.strip() or not target.strip():
            msg = f"Invalid name mapping '{value}', expected 'source=target'"
            raise ValueError(msg)
        name_maps[source.strip()] = target.strip()
    return name_maps


def split_names(values: Iterable[str] | None) -> list[str]:
    """Flatten repeated and comma-separated name options into one list."""
    return [name.strip() for value in values or () for name in value.split(",") if name.strip()]


def _validate_pass_path(pass_path: str) -> None:
    """Validate the pass path format."""
    if not re.fullmatch(r"(?:[A-Za-z0-9_-]+)(?:/[A-Za-z0-9_-]+)*", pass_path):
        msg = f"Invalid pass path: {pass_path}"
        raise ValueError(msg)


def get_pass_value(pass_path: str) -> str:
    """Get value from pass utility at specified path."""
    _validate_pass_path(pass_path)

    try:
        result: CompletedProcess[str] = subprocess.run(  # noqa: S603
            ["pass", pass_path], capture_output=True, text=True, check=True
        )
    except subprocess.CalledProcessError as e:
        if e.returncode == 1 and "not in the password store" in e.stderr.lower():
            msg = f"Pass path '{pass_path}' not found or invalid."
            raise InvalidPassPathError(msg) from e
        if e.returncode == 2 and "gpg" in e.stderr.lower() and "public key decryption failed" in e.stderr.lower():
            return _get_pass_value_with_passphrase(pass_path)
        msg = (
            f"Failed to get value from pass at '{pass_path}'.\n"
            f"Output: {e.stdout.strip()}\n"
            f"Error: {e.stderr.strip()}\n"
            f"Return code: {e.returncode}"
        )
        raise PassError(msg) from e

    return result.stdout.strip()


def _get_pass_value_with_passphrase(pass_path: str) -> str:
    # Fails in non-interactive sessions (e.g. pytest), where no passphrase can be entered
    try:
        passphrase = input("Enter passphrase for GPG key used by pass: ")
    except EOFError as e:
        msg = "Passphrase input was interrupted. Please run the command in an interactive session."
        raise PassphraseRequiredError(msg) from e

    env = os.environ.copy() | {"PASSWORD_STORE_GPG_OPTS": "--pinentry-mode=loopback --passphrase-fd 0"}
    try:
        result = subprocess.run(  # noqa: S603
            ["pass", pass_path], input=passphrase, capture_output=True, text=True, check=True, env=env
        )
    except subprocess.CalledProcessError as e:
        msg = (
            f"Failed to get value from pass at '{pass_path}' with passphrase.\n"
            f"Output: {e.stdout.strip()}\n"
            f"Error: {e.stderr.strip()}\n"
            f"Return code: {e.returncode}"
        )
        raise PassphraseRequiredError(msg) from e
    return result.stdout.strip()
