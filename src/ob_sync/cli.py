import argparse
import datetime
import os
import shutil
import signal
import subprocess
import sys
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from . import daemon, service
from .config import Config, save_vault_path
from .constants import CONFIG_FILE, LOG_FILE, PID_FILE
from .engine import CycleOutcome, CycleResult, ReconciliationEngine
from .errors import ConfigurationError, ObError
from .scheduler import Scheduler

console = Console()
err_console = Console(stderr=True)


def _load_scheduler() -> Scheduler:
    """Builds a scheduler for one-off manual operations, exiting on bad config."""
    try:
        return daemon.build_scheduler(Config.load())
    except ConfigurationError as e:
        err_console.print(f"[bold red]ERROR:[/bold red] {e}")
        err_console.print("   Run 'ob start <vault-path>' first.")
        sys.exit(1)


def _report(result: CycleResult) -> None:
    """Prints a cycle result, exiting with status 1 unless it succeeded."""
    if result.outcome is CycleOutcome.SKIPPED:
        err_console.print(
            f"[bold yellow]SKIPPED:[/bold yellow] {result.error or 'vault busy'}"
        )
        sys.exit(1)
    if not result.ok:
        err_console.print(f"[bold red]ERROR:[/bold red] {result.error}")
        sys.exit(1)


def start_sync(vault: str) -> None:
    """Persists the vault path and launches the background daemon.

    Args:
        vault (str): Path to the vault working copy.
    """
    if pid := daemon.read_pid():
        console.print(f"[bold yellow]Sync is already running[/bold yellow] (PID {pid}).")
        sys.exit(1)

    try:
        vault_path = save_vault_path(Path(vault))
    except ConfigurationError as e:
        err_console.print(f"[bold red]ERROR:[/bold red] {e}")
        sys.exit(1)

    exe = service.get_executable()
    proc = subprocess.Popen(
        [exe],
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
    )

    console.print("[bold green]SUCCESS:[/bold green] Sync started.")
    console.print(f"   PID:   {proc.pid}")
    console.print(f"   Vault: {vault_path}")
    console.print(f"   Logs:  {LOG_FILE}")


def stop_sync() -> None:
    """Signals the running daemon to shut down and clears its PID file."""
    pid = daemon.read_pid()
    if pid is None:
        PID_FILE.unlink(missing_ok=True)  # Stale or absent.
        console.print("[yellow]No running instance found.[/yellow]")
        sys.exit(1)

    try:
        os.kill(pid, signal.SIGTERM)
    except OSError as e:
        console.print(f"[bold yellow]WARNING:[/bold yellow] {e}")
    PID_FILE.unlink(missing_ok=True)
    console.print("[bold green]Sync stopped.[/bold green]")


def show_status() -> None:
    """Displays daemon state and the vault's sync status."""
    pid = daemon.read_pid()
    boot_enabled = service.is_enabled()

    system_content = Text()
    system_content.append("Daemon: ", style="bold")
    if pid:
        system_content.append(f"Active (PID {pid})\n", style="bold green")
    else:
        system_content.append("Stopped\n", style="bold red")
    system_content.append("Boot:   ", style="bold")
    system_content.append(
        "Enabled" if boot_enabled else "Disabled",
        style="green" if boot_enabled else "dim",
    )
    console.print(Panel(system_content, title="System Status", expand=False))

    try:
        settings = Config.load().vault_settings()
    except ConfigurationError as e:
        console.print(f"[yellow]{e}[/yellow]")
        return

    engine = ReconciliationEngine(settings)
    try:
        snap = engine.queries.snapshot()
    except ObError as e:
        err_console.print(f"[bold red]ERROR:[/bold red] Unable to read vault state: {e}")
        sys.exit(1)

    def fmt(ts: datetime.datetime | None) -> str:
        return ts.strftime("%Y-%m-%d %H:%M") if ts else "Never"

    threshold = settings.squash_threshold
    repo_content = Text()
    repo_content.append(f"Vault:       {settings.path}\n")
    repo_content.append(f"Remote:      {settings.remote_ref}\n", style="dim")
    repo_content.append(f"Last Commit: {fmt(snap.last_local_commit)}\n")
    repo_content.append(f"Last Remote: {fmt(snap.last_remote_commit)}\n", style="dim")
    repo_content.append(f"Unpushed:    {snap.ahead}/{threshold} commits\n")
    if snap.dirty:
        repo_content.append("Working:     Pending changes", style="bold yellow")
    else:
        repo_content.append("Working:     Clean", style="green")

    if reason := engine.busy_reason():
        repo_content.append("\n\n⚠ WARNING: ", style="bold yellow")
        repo_content.append(reason, style="yellow")

    console.print(Panel(repo_content, title="Vault Status", expand=False))


def manual_sync() -> None:
    """Runs one reconciliation cycle immediately, pushing anything unpushed."""
    daemon.setup_logging(interactive=True)
    scheduler = _load_scheduler()
    with console.status("Syncing vault...", spinner="dots"):
        result = scheduler.trigger_manual()
    _report(result)
    console.print("Manual sync completed")


def squash(count: int) -> None:
    """Compacts the last `count` commits into one and force-pushes."""
    daemon.setup_logging(interactive=True)
    if count < 1:
        err_console.print("[bold red]ERROR:[/bold red] Count must be at least 1.")
        sys.exit(1)
    scheduler = _load_scheduler()
    with console.status(f"Squashing last {count} commits...", spinner="dots"):
        result = scheduler.trigger_squash(count)
    _report(result)
    console.print(
        f"[bold green]SUCCESS:[/bold green] Squashed {count} commit(s) "
        f"representing {result.squashed} into one."
    )


def tail_log() -> None:
    """Follows the daemon log file in real-time."""
    if not LOG_FILE.exists():
        console.print(f"[red]No log file found yet at {LOG_FILE}.[/red]")
        return

    console.print(f"Tailing [bold cyan]{LOG_FILE}[/bold cyan] (Ctrl+C to stop)...")
    try:
        subprocess.run(["tail", "-n", "1000", "-f", str(LOG_FILE)])
    except KeyboardInterrupt:
        console.print("\nStopped.", style="dim")


def open_config() -> None:
    """Opens the configuration file in the system default editor."""
    if not CONFIG_FILE.exists():
        CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
        with open(CONFIG_FILE, "w") as f:
            f.write(
                "# ob configuration\n\n"
                "[core]\n"
                '# remote_name = "origin"\n'
                '# branch = "main"\n\n'
                "[daemon]\n"
                '# settle_interval = "1m"\n'
                '# reconcile_interval = "12h"\n'
                "# squash_threshold = 25\n"
            )

    editor = os.environ.get("EDITOR") or shutil.which("nano") or "vi"
    console.print(f"Opening [cyan]{CONFIG_FILE}[/cyan]...")
    try:
        subprocess.run([editor, str(CONFIG_FILE)])
    except OSError as e:
        console.print(f"[red]Could not open editor: {e}[/red]")


class ObHelpFormatter(argparse.HelpFormatter):
    """Groups the subcommands into categories in the help output."""

    def _format_action(self, action: argparse.Action) -> str:
        if isinstance(action, argparse._SubParsersAction):
            parts = []
            groups = {
                "Daemon": ["start", "stop", "status", "log"],
                "Sync": ["sync", "squash"],
                "Setup": ["boot", "config"],
                "General": ["help"],
            }

            subactions = list(self._iter_indented_subactions(action))
            for group_name, commands in groups.items():
                group_actions = [a for a in subactions if a.dest in commands]
                if not group_actions:
                    continue

                parts.append(f"\n  {group_name}:\n")
                self._indent()
                for subaction in group_actions:
                    parts.append(self._format_action(subaction))
                self._dedent()

            return self._join_parts(parts)

        return super()._format_action(action)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ob",
        usage="ob <command> [options]",
        formatter_class=ObHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command")

    start_parser = subparsers.add_parser("start", help="Start syncing a vault")
    start_parser.add_argument("vault", help="Path to the vault working copy")
    subparsers.add_parser("stop", help="Stop the sync daemon")
    subparsers.add_parser("status", help="Show daemon and vault status")
    subparsers.add_parser("log", help="Tail the daemon log file")

    subparsers.add_parser("sync", help="Sync now, pushing all local commits")
    squash_parser = subparsers.add_parser(
        "squash", help="Collapse recent pushed commits into one (force push)"
    )
    squash_parser.add_argument(
        "count", type=int, help="Number of most recent commits to collapse"
    )

    boot_parser = subparsers.add_parser("boot", help="Start the daemon on login")
    boot_parser.add_argument("action", choices=["enable", "disable"])
    subparsers.add_parser("config", help="Open the configuration file")

    subparsers.add_parser("help", help="Show this help message")
    return parser


def main() -> None:
    """Main entry point for the ob CLI."""
    parser = build_parser()
    args = parser.parse_args()

    if args.command == "start":
        start_sync(args.vault)
    elif args.command == "stop":
        stop_sync()
    elif args.command == "status":
        show_status()
    elif args.command == "log":
        tail_log()
    elif args.command == "sync":
        manual_sync()
    elif args.command == "squash":
        squash(args.count)
    elif args.command == "boot":
        if args.action == "enable":
            service.enable()
        else:
            service.disable()
    elif args.command == "config":
        open_config()
    else:
        parser.print_help()
        if args.command != "help":
            sys.exit(1)


if __name__ == "__main__":
    main()
