#!/usr/bin/env python3
"""
╔══════════════════════════════════════════════════════════════════════════════╗
║                    🪞 MIRROR MONITOR 🪞                                       ║
║                    Live mirror subscriptions & outcomes                       ║
╚══════════════════════════════════════════════════════════════════════════════╝

Usage:
    python scripts/terminal_viz/mirror_monitor.py [--db PATH] [--once]
"""

import argparse
import os
import time
from datetime import datetime
from typing import Any, Dict, List

from rich import box
from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.table import Table

from mirrorbot.config import EngineConfig
from mirrorbot.gateways.storage import MirrorStore

console = Console()

STATUS_STYLES = {"confirmed": "green", "pending": "yellow", "failed": "red"}


def short(value: Any, width: int = 14) -> str:
    """Abbreviate long wallet addresses and references."""
    if not value:
        return "-"
    value = str(value)
    if len(value) <= width:
        return value
    return f"{value[:width - 6]}...{value[-3:]}"


def recent_outcomes(store: MirrorStore, follower_ids: List[str], limit: int = 15) -> List[Dict[str, Any]]:
    rows = []
    for follower_id in follower_ids:
        rows.extend(store.list_outcomes(follower_id, limit=limit))
    rows.sort(key=lambda r: r["id"], reverse=True)
    return rows[:limit]


def mirrors_table(store: MirrorStore) -> Table:
    table = Table(
        show_header=True,
        header_style="bold cyan",
        border_style="cyan",
        box=box.ROUNDED,
        expand=True,
    )
    table.add_column("Follower", style="white")
    table.add_column("Target")
    table.add_column("Chain", justify="center")
    table.add_column("Copy %", justify="right")
    table.add_column("Max", justify="right")
    table.add_column("Trades", justify="right")
    table.add_column("Success", justify="right")
    table.add_column("Volume", justify="right")

    configs = store.load_mirror_configs()
    for config in configs:
        stats = store.get_mirror_stats(config.follower_id)
        rate = stats["success_rate"]
        rate_style = "green" if rate >= 50 else "red"
        table.add_row(
            config.follower_id,
            short(config.target_wallet),
            config.chain.value,
            str(config.copy_percentage),
            str(config.max_amount_per_trade),
            str(stats["total"]),
            f"[{rate_style}]{rate:.1f}%[/{rate_style}]",
            str(stats["total_volume"]),
        )
    if not configs:
        table.add_row("[dim]No active mirrors[/dim]", "", "", "", "", "", "", "")
    return table


def outcomes_table(rows: List[Dict[str, Any]]) -> Table:
    table = Table(
        show_header=True,
        header_style="bold green",
        border_style="green",
        box=box.SIMPLE,
        expand=True,
    )
    table.add_column("Time")
    table.add_column("Follower")
    table.add_column("Chain", justify="center")
    table.add_column("Copied", justify="right")
    table.add_column("Swap")
    table.add_column("Status", justify="center")
    table.add_column("Tx / Reason")

    for row in rows:
        style = STATUS_STYLES.get(row["status"], "white")
        detail = row["failure_reason"] if row["status"] == "failed" else short(row["result_reference"])
        table.add_row(
            (row["timestamp"] or "")[11:19],
            row["follower_id"],
            row["chain"],
            f"{row['copied_amount']} / {row['original_amount']}",
            f"{short(row['asset_in'], 10)} → {short(row['asset_out'], 10)}",
            f"[{style}]{row['status'].upper()}[/{style}]",
            detail or "-",
        )
    if not rows:
        table.add_row("[dim]No mirrored trades yet[/dim]", "", "", "", "", "", "")
    return table


def render(store: MirrorStore) -> Group:
    configs = store.load_mirror_configs()
    rows = recent_outcomes(store, [c.follower_id for c in configs])
    now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    return Group(
        Panel(
            mirrors_table(store),
            title=f"[bold cyan]🪞 ACTIVE MIRRORS ({len(configs)})[/bold cyan]",
            border_style="cyan",
        ),
        Panel(
            outcomes_table(rows),
            title="[bold green]📜 RECENT OUTCOMES[/bold green]",
            border_style="green",
        ),
        Panel(f"[dim]⏱️  {now} | Ctrl+C to exit[/dim]", border_style="dim"),
    )


def main():
    parser = argparse.ArgumentParser(description="Live mirror trading monitor")
    parser.add_argument("--db", default=None, help="MirrorStore database (default: config db_path)")
    parser.add_argument("--once", action="store_true", help="Print once and exit")
    args = parser.parse_args()

    db_path = args.db or EngineConfig.from_env().db_path
    if not os.path.exists(db_path):
        console.print(
            Panel(
                "[bold red]⚠️ Database not found[/bold red]\n\n"
                "[yellow]Run the mirror bot first to create it.[/yellow]",
                title="[bold red]ERROR[/bold red]",
                border_style="red",
            )
        )
        return

    store = MirrorStore(db_path)
    if args.once:
        console.print(render(store))
        return

    console.clear()
    with Live(render(store), refresh_per_second=1, screen=True) as live:
        try:
            while True:
                time.sleep(1)
                live.update(render(store))
        except KeyboardInterrupt:
            pass

    console.print("\n[bold yellow]Mirror monitor closed. 🪞[/bold yellow]")


if __name__ == "__main__":
    main()
