"""
remote/tooling.py

The fixed scripts a development box receives, and the helpers that push
them over an SSHChannel.

  USER_DATA                 : boot payload, lightweight tools only
  install_editor()          : VS Code via snap + tunnel start script
  install_extended_toolchain(): Node.js LTS, Python build tools, Claude CLI
  install_tunnel_service()  : systemd unit so the tunnel survives crashes/reboots

Every install script is idempotent, so re-running it on a box that already
has the tools is harmless.
"""

from typing import List, Tuple

TUNNEL_SERVICE = "vscode-tunnel.service"

# Boot payload: lightweight packages only. Editor and toolchain go in over SSH
# after the connectivity gate.
USER_DATA = """#!/bin/bash
exec > >(tee /var/log/user-data.log|logger -t user-data -s 2>/dev/console) 2>&1
echo "Starting minimal user-data script at $(date)"

if [ -f /etc/lsb-release ]; then
    export DEBIAN_FRONTEND=noninteractive
    apt-get update -y
    apt-get install -y curl wget git vim htop
    DEFAULT_USER="ubuntu"
else
    yum update -y
    yum install -y curl wget git vim htop
    DEFAULT_USER="ec2-user"
fi

cat > /etc/motd << MOTD_EOF
========================================
 Minimal Development Instance Ready
========================================
OS: $(grep PRETTY_NAME /etc/os-release | cut -d'"' -f2)
Default user: $DEFAULT_USER
Tools: git, vim, htop, curl, wget
========================================
MOTD_EOF

echo "Minimal setup completed at $(date)"
"""

EDITOR_INSTALL_SCRIPT = """set -e
if ! command -v code >/dev/null 2>&1; then
    sudo snap install code --classic
fi
code --version | head -1
cat > ~/start-vscode-tunnel.sh << 'TUNNEL_SCRIPT'
#!/bin/bash
echo "Starting VS Code Tunnel (Ctrl+C to stop)"
code tunnel --accept-server-license-terms
TUNNEL_SCRIPT
chmod +x ~/start-vscode-tunnel.sh
"""

EXTENDED_TOOLCHAIN_STEPS: List[Tuple[str, str]] = [
    (
        "Node.js LTS",
        """set -e
curl -fsSL https://deb.nodesource.com/setup_lts.x | sudo -E bash -
sudo apt-get install -y nodejs
node --version
""",
    ),
    (
        "Python build tools",
        """set -e
sudo apt-get update -y
sudo apt-get install -y python3-pip python3-venv build-essential
python3 --version
""",
    ),
    (
        "Claude CLI",
        """set -e
sudo npm install -g @anthropic-ai/claude-code
""",
    ),
    (
        "setup marker",
        """cat > ~/.dev-setup-complete << EOF
Development environment setup complete: $(date)
Node.js: $(node --version 2>/dev/null)
Python: $(python3 --version 2>/dev/null)
EOF
""",
    ),
]


def tunnel_unit(user: str) -> str:
    """systemd unit running the editor tunnel as `user`, restarted on exit."""
    return f"""[Unit]
Description=VS Code Tunnel
After=network.target

[Service]
Type=simple
User={user}
WorkingDirectory=/home/{user}
ExecStart=/snap/bin/code tunnel --accept-server-license-terms
Restart=always
RestartSec=10
StandardOutput=journal
StandardError=journal

[Install]
WantedBy=multi-user.target
"""


def _bash(channel, script: str, log) -> int:
    return channel.run("bash -s", log=log, stdin=script)


def install_editor(channel, log=print) -> bool:
    log("  $ snap install code --classic")
    return _bash(channel, EDITOR_INSTALL_SCRIPT, log) == 0


def install_extended_toolchain(channel, log=print) -> List[str]:
    """Runs every step even if an earlier one failed. Returns failed labels."""
    failed = []
    for label, script in EXTENDED_TOOLCHAIN_STEPS:
        log(f"⚙️  Installing {label}...")
        if _bash(channel, script, log) == 0:
            log(f"✅ {label} installed.")
        else:
            log(f"❌ {label} failed.")
            failed.append(label)
    return failed


def install_tunnel_service(channel, user: str, log=print) -> bool:
    """Write the unit, enable and start it. Returns False if any step failed."""
    script = (
        f"set -e\n"
        f"sudo tee /etc/systemd/system/{TUNNEL_SERVICE} > /dev/null << 'UNIT_EOF'\n"
        f"{tunnel_unit(user)}"
        f"UNIT_EOF\n"
        f"sudo systemctl daemon-reload\n"
        f"sudo systemctl enable {TUNNEL_SERVICE}\n"
        f"sudo systemctl start {TUNNEL_SERVICE}\n"
    )
    log(f"  $ systemctl enable --now {TUNNEL_SERVICE}")
    return _bash(channel, script, log) == 0


def tunnel_is_active(channel) -> bool:
    return channel.run(f"systemctl is-active --quiet {TUNNEL_SERVICE}", log=lambda _: None) == 0


def tunnel_status(channel, log=print) -> int:
    return channel.run(f"systemctl status {TUNNEL_SERVICE} --no-pager -l", log=log)


def restart_tunnel(channel, log=print) -> int:
    return channel.run(f"sudo systemctl restart {TUNNEL_SERVICE}", log=log)


def tunnel_url(channel, log=print) -> int:
    """Print the most recent 'open this link' line from the service journal."""
    return channel.run(
        f"sudo journalctl -u {TUNNEL_SERVICE} --no-pager "
        f"| grep -i 'open this link' | tail -1 "
        f"|| echo 'No tunnel URL found in logs yet'",
        log=log,
    )


BOOT_LOG = "/var/log/user-data.log"

# (label, command) pairs run by `status --remote`
HEALTH_CHECKS = [
    ("Connectivity", "echo 'Connected'"),
    ("Memory", "free -h | grep -E 'Mem:|Swap:'"),
    ("Disk", "df -h / | tail -1"),
    ("Load", "uptime"),
    ("Top processes", "ps aux --sort=-%mem | head -6"),
]


def remote_health(channel, log=print, log_lines: int = 20) -> List[str]:
    """Memory, disk, load, top processes and the boot log tail. Returns failed labels."""
    failed = []
    checks = HEALTH_CHECKS + [("Boot log", f"sudo tail -n {log_lines} {BOOT_LOG}")]
    for label, command in checks:
        log(f"⚙️  {label}")
        if channel.run(command, log=log) != 0:
            failed.append(label)
            log(f"⚠ {label} check failed")
    return failed
