"""
workflow/ssh_config.py

Local SSH client configuration: derive a connection profile for a new box
and merge it into ~/.ssh/config, after taking a timestamped backup.

An existing `Host <alias>` block is replaced in place; otherwise the new
block is appended. Everything else in the file is left byte-for-byte.
"""

import os
import shutil
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Optional

# Login user per image family
LOGIN_USERS = {
    "ubuntu": "ubuntu",
    "amazon-linux": "ec2-user",
}


@dataclass(frozen=True)
class ConnectionProfile:
    alias: str
    host: str
    user: str
    identity_file: str


def login_user_for(family: str) -> str:
    return LOGIN_USERS.get(family, "ec2-user")


def build_profile(alias: str, public_ip: str, image_family: str, key_path: Path) -> ConnectionProfile:
    return ConnectionProfile(
        alias=alias,
        host=public_ip,
        user=login_user_for(image_family),
        identity_file=str(Path(key_path).expanduser().resolve()),
    )


def render_host_block(profile: ConnectionProfile, created: datetime) -> str:
    return (
        f"# {profile.alias} - Created {created:%Y-%m-%d %H:%M:%S}\n"
        f"Host {profile.alias}\n"
        f"    HostName {profile.host}\n"
        f"    User {profile.user}\n"
        f"    IdentityFile {profile.identity_file}\n"
        f"    IdentitiesOnly yes\n"
        f"    StrictHostKeyChecking no\n"
        f"    UserKnownHostsFile /dev/null\n"
    )


def _is_section_start(line: str) -> bool:
    words = line.strip().split()
    return bool(words) and words[0].lower() in ("host", "match")


def _find_block(lines: List[str], alias: str):
    """(start, end) line indexes of the `Host alias` block, or None."""
    for i, line in enumerate(lines):
        words = line.strip().split()
        if len(words) == 2 and words[0].lower() == "host" and words[1] == alias:
            start = i
            if i > 0 and lines[i - 1].startswith(f"# {alias} - Created"):
                start = i - 1
            end = i + 1
            while end < len(lines) and not _is_section_start(lines[end]):
                end += 1
            # leave a trailing comment header of the next block where it is
            while end > i + 1 and lines[end - 1].startswith("# ") and end < len(lines):
                end -= 1
            return start, end
    return None


def merge_host_block(existing: str, alias: str, block: str) -> str:
    lines = existing.splitlines(keepends=True)
    found = _find_block(lines, alias)
    if found is None:
        if existing and not existing.endswith("\n"):
            existing += "\n"
        separator = "\n" if existing else ""
        return existing + separator + block
    start, end = found
    replacement = block if end >= len(lines) else block + "\n"
    return "".join(lines[:start]) + replacement + "".join(lines[end:]).lstrip("\n")


def backup_config(config_path: Path, now: datetime) -> Optional[Path]:
    if not config_path.exists():
        return None
    backup = config_path.with_name(f"{config_path.name}.backup.{now:%Y%m%d%H%M%S}")
    shutil.copy2(config_path, backup)
    return backup


def write_profile(config_path, profile: ConnectionProfile, now: Optional[datetime] = None) -> Optional[Path]:
    """
    Back up the config (if any), then merge the profile into it.

    Returns:
        Path of the backup copy, or None when there was no prior config.
    """
    now = now or datetime.now()
    config_path = Path(config_path).expanduser()
    config_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

    backup = backup_config(config_path, now)
    existing = config_path.read_text() if config_path.exists() else ""
    merged = merge_host_block(existing, profile.alias, render_host_block(profile, now))
    config_path.write_text(merged)
    os.chmod(config_path, 0o600)
    return backup
