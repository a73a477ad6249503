"""
Preflight checks run before sync to catch common misconfigurations early.
"""

import logging
import sqlite3
from pathlib import Path

from keyring.errors import KeyringError
from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from termcal.config import Settings
from termcal.credential_store import CredentialStore

logger = logging.getLogger(__name__)


def run_preflight_checks(
    settings: Settings, db_path: Path, credential_store: CredentialStore, console: Console
) -> bool:
    """Return True if sync may proceed; print issues and return False otherwise."""
    issues: list[tuple[str, str, str]] = []  # (label, detail, hint)

    # 1. Application (client) id
    if not settings.client_id:
        issues.append(
            (
                "Client id",
                "client_id is not configured",
                "Add 'client_id = <Azure app id>' to the [termcal] section of the config file",
            )
        )

    # 2. Keyring backend usable
    try:
        credential_store.backend.get_password(credential_store.service, credential_store.username)
    except KeyringError as e:
        logger.error("Keyring backend unusable: %s", e)
        issues.append(
            (
                "System keyring",
                str(e),
                "Unlock a secret service (e.g. gnome-keyring) or configure a keyring backend",
            )
        )

    # 3. Replica parent dir writable + DB writable if it exists
    try:
        db_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error("Cannot create replica directory %s: %s", db_path.parent, e)
        issues.append(
            ("Replica database", f"{db_path}: {e}", f"Check permissions on {db_path.parent}")
        )
    else:
        if db_path.exists():
            try:
                conn = sqlite3.connect(db_path)
                try:
                    # BEGIN IMMEDIATE needs the write lock and a creatable journal/WAL file.
                    conn.execute("BEGIN IMMEDIATE")
                    conn.execute("ROLLBACK")
                finally:
                    conn.close()
            except sqlite3.Error as e:
                logger.error("Replica not writable (%s): %s", db_path, e)
                issues.append(
                    (
                        "Replica database",
                        f"{db_path}: {e}",
                        f"Check permissions on {db_path.parent} "
                        f"(WAL and journal files must be creatable alongside the DB)",
                    )
                )

    if issues:
        _print_issues(issues, console)
        return False

    return True


def _print_issues(issues: list[tuple[str, str, str]], console: Console) -> None:
    body = Text()
    for i, (label, detail, hint) in enumerate(issues):
        if i:
            body.append("\n")
        body.append(f"  ✗  {label}: ", style="bold red")
        body.append(detail, style="bold red")
        body.append(f"\n       → {hint}", style="yellow")

    console.print(Panel(body, title="[bold red]Preflight checks failed[/bold red]"))
