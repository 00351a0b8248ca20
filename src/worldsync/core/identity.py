"""Host identity: stable machine id, display label, and session tokens."""

from __future__ import annotations

import getpass
import hashlib
import platform
import secrets
import socket
import subprocess
from pathlib import Path

MACHINE_ID_FILES = (Path("/etc/machine-id"), Path("/var/lib/dbus/machine-id"))


def _platform_identifier() -> str | None:
    system = platform.system()
    try:
        if system == "Darwin":
            result = subprocess.run(
                ["ioreg", "-rd1", "-c", "IOPlatformExpertDevice"],
                capture_output=True,
                text=True,
                check=False,
                timeout=5,
            )
            for line in result.stdout.splitlines():
                if "IOPlatformUUID" in line:
                    return line.split("=", 1)[1].strip().strip('"')
        elif system == "Windows":
            result = subprocess.run(
                ["wmic", "csproduct", "get", "uuid"],
                capture_output=True,
                text=True,
                check=False,
                timeout=5,
            )
            lines = [line.strip() for line in result.stdout.splitlines() if line.strip()]
            if len(lines) > 1:
                return lines[1]
        else:
            for candidate in MACHINE_ID_FILES:
                if candidate.exists():
                    value = candidate.read_text(encoding="utf-8").strip()
                    if value:
                        return value
    except (OSError, subprocess.SubprocessError):
        return None
    return None


def get_machine_id() -> str:
    """
    Return a stable, anonymized per-machine identifier.

    Hashes the hostname together with the platform's machine UUID (or the
    user name when no UUID is available) and keeps 16 hex characters.
    """
    parts = [socket.gethostname()]
    identifier = _platform_identifier()
    if identifier:
        parts.append(identifier)
    else:
        try:
            parts.append(getpass.getuser())
        except (KeyError, OSError):
            parts.append("unknown")
    return hashlib.sha256("-".join(parts).encode("utf-8")).hexdigest()[:16]


def get_holder_label() -> str:
    """Human-readable host name shown to other hosts."""
    return socket.gethostname()


def generate_token(length: int = 16) -> str:
    """Random hex token of ``length`` characters."""
    return secrets.token_hex((length + 1) // 2)[:length]


__all__ = ["generate_token", "get_holder_label", "get_machine_id"]
