import os
import shutil
import subprocess
import sys
from pathlib import Path

from rich.console import Console

from .constants import SERVICE_NAME

console = Console()

SERVICE_TEMPLATE = """[Unit]
Description=ob vault sync daemon
After=network-online.target ssh-agent.service
Wants=network-online.target ssh-agent.service

[Service]
Type=simple
ExecStart={executable}
Restart=on-failure
RestartSec=10
Environment="PATH={path}"
Environment="HOME={home}"
Environment="SSH_AUTH_SOCK={ssh_auth_sock}"
Environment="GIT_SSH_COMMAND=ssh -o BatchMode=yes"

[Install]
WantedBy=default.target
"""


def get_executable() -> str:
    """Locates the installed daemon executable in the system path.

    Returns:
        str: The absolute path to the 'ob-daemon' executable.

    Raises:
        SystemExit: If the executable is not found in the PATH.
    """
    exe = shutil.which("ob-daemon")
    if not exe:
        console.print(
            "[bold red]ERROR:[/bold red] Could not find 'ob-daemon'. "
            "Ensure the package is installed."
        )
        sys.exit(1)
    return exe


def get_unit_path() -> Path:
    """Returns the systemd user unit path for the daemon."""
    return Path.home() / ".config" / "systemd" / "user" / SERVICE_NAME


def render_unit(executable: str) -> str:
    return SERVICE_TEMPLATE.format(
        executable=executable,
        path=os.environ.get("PATH") or "/usr/local/bin:/usr/bin:/bin",
        home=Path.home(),
        ssh_auth_sock=os.environ.get("SSH_AUTH_SOCK", ""),
    )


def _systemctl(*args: str, check: bool = True) -> subprocess.CompletedProcess:
    return subprocess.run(
        ["systemctl", "--user", *args], capture_output=True, text=True, check=check
    )


def _unsupported_platform() -> bool:
    if not sys.platform.startswith("linux"):
        console.print(
            "\n[bold yellow]NOTE:[/bold yellow] Boot integration uses systemd "
            "and is only available on Linux."
        )
        return True
    return False


def enable() -> None:
    """Installs and enables the systemd user service so the daemon starts on login."""
    if _unsupported_platform():
        return

    unit_path = get_unit_path()
    unit_path.parent.mkdir(parents=True, exist_ok=True)
    unit_path.write_text(render_unit(get_executable()))

    _systemctl("daemon-reload")
    _systemctl("enable", SERVICE_NAME)
    console.print(
        f"[bold green]SUCCESS:[/bold green] Boot enabled.\n"
        f"Check status: systemctl --user status {SERVICE_NAME}"
    )


def disable() -> None:
    """Disables the systemd user service and removes its unit file."""
    if _unsupported_platform():
        return

    _systemctl("disable", SERVICE_NAME, check=False)
    unit_path = get_unit_path()
    if unit_path.exists():
        unit_path.unlink()
    _systemctl("daemon-reload", check=False)
    console.print("[bold green]SUCCESS:[/bold green] Boot disabled.")


def is_enabled() -> bool:
    """Checks whether the systemd user service is enabled."""
    if not sys.platform.startswith("linux"):
        return False
    try:
        res = _systemctl("is-enabled", SERVICE_NAME, check=False)
    except FileNotFoundError:
        return False
    return res.returncode == 0
