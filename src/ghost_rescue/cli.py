#!/usr/bin/env python3
"""
╔══════════════════════════════════════════════════════════════════╗
║                                                                  ║
║   GHOST RESCUE                                                   ║
║   Private-relay bundle rescue for a compromised account          ║
║                                                                  ║
║   "Faster than the mempool. Moves in shadows."                   ║
║                                                                  ║
╚══════════════════════════════════════════════════════════════════╝

USAGE:
    # Fork mainnet locally and point PROVIDER_URL (or FORK_URL) at it
    anvil --fork-url $MAINNET_RPC_URL

    # Dry run + commit on the fork, print the bundle, send nothing
    ghost-rescue --env-file .env

    # When the printed bundle looks right, send it
    ghost-rescue --env-file .env --send --max-blocks 5
"""

import argparse
import logging
import sys
from typing import Callable, Optional, Sequence

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .bundle import serialize
from .config import RescueConfig
from .errors import ConfigError, RescueError
from .pipeline import AttemptOutcome, RescuePipeline

# ════════════════════════════════════════════════════════════════
# RENDERING
# ════════════════════════════════════════════════════════════════


def render_outcome(console: Console, outcome: AttemptOutcome) -> None:
    final = outcome.final
    table = Table(title=f"Commit pass on {final.backend}", show_lines=False)
    table.add_column("#", justify="right")
    table.add_column("Step")
    table.add_column("Sender")
    table.add_column("Nonce", justify="right")
    table.add_column("Value (wei)", justify="right")
    table.add_column("Observed", justify="right")
    table.add_column("Tx")

    for index, output in enumerate(final.outputs, 1):
        intent = output.signed.intent
        observed = f"{output.observation.value}" if output.observation else "-"
        table.add_row(
            str(index),
            output.step,
            intent.sender[:12] + "…",
            str(intent.nonce),
            str(intent.value),
            observed,
            output.signed.tx_hash[:18] + "…",
        )
    console.print(table)
    console.print(f"[white]Gas price:[/white] {final.base_gas_price} → [cyan]{final.gas_price}[/cyan] wei")

    for name, observation in outcome.estimate.observations.items():
        committed = final.observations.get(name)
        console.print(
            f"[white]{name}:[/white] dry run {observation.value}, commit "
            f"{committed.value if committed else '-'}"
        )

    if outcome.bundle is not None:
        console.print(f"\n[cyan]Target block:[/cyan] {outcome.bundle.target_block}")
        console.print("[dim]Bundle JSON:[/dim]")
        console.print(serialize(outcome.bundle).decode("utf-8"), soft_wrap=True, highlight=False)
    if outcome.ack is not None:
        console.print(f"[green]✓ Relay accepted bundle[/green] {outcome.ack.bundle_hash or ''}")
    if outcome.included is True:
        console.print(Panel("✅ RESCUE SUCCESSFUL", style="green"))
    elif outcome.included is False:
        console.print(Panel("⚠️  RESCUE INCOMPLETE: bundle not included", style="yellow"))


def render_abort(console: Console, err: RescueError) -> None:
    lines = [err.message]
    if err.step:
        lines.insert(0, f"Step: {err.step}")
    for key, value in err.details.items():
        lines.append(f"{key}: {value}")
    console.print(Panel("\n".join(lines), title=f"ABORTED ({type(err).__name__})", style="red"))


# ════════════════════════════════════════════════════════════════
# MAIN
# ════════════════════════════════════════════════════════════════


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Rescue a compromised account via a private relay bundle")
    parser.add_argument("--env-file", type=str, default=None, help="Path to the .env file")
    parser.add_argument("--send", action="store_true", help="Submit the bundle to the relay")
    parser.add_argument("--max-blocks", type=int, default=1, help="Attempts (one block each) when sending")
    parser.add_argument(
        "--commit-live",
        action="store_true",
        help="Run the commit pass as public broadcasts instead of on the fork (no bundle)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def main(
    argv: Optional[Sequence[str]] = None,
    pipeline_factory: Callable[..., RescuePipeline] = RescuePipeline.from_config,
    console: Optional[Console] = None,
) -> int:
    args = build_parser().parse_args(argv)
    console = console or Console()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s | %(levelname)s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )

    try:
        config = RescueConfig.from_env(dotenv_path=args.env_file)
    except ConfigError as err:
        console.print("[red]ERROR:[/red] Missing or invalid configuration:")
        for problem in err.problems:
            console.print(f"  - {problem}")
        return 1

    console.print(Panel("GHOST RESCUE: Private Relay Bundle", style="cyan"))
    console.print(f"[white]Relay:[/white] {config.relay_url}")
    console.print(f"[white]Safe: [/white] {config.safe_address}")

    pipeline = pipeline_factory(config, commit_live=args.commit_live)
    try:
        if args.send:
            outcome = pipeline.run_until_included(max_attempts=args.max_blocks)
        else:
            outcome = pipeline.attempt(submit=False)
    except RescueError as err:
        render_abort(console, err)
        return 1
    except KeyboardInterrupt:
        pipeline.cancel.cancel("operator abort")
        console.print("[yellow]Aborted by operator. Nothing was submitted after this point.[/yellow]")
        return 130

    render_outcome(console, outcome)
    if not args.send:
        console.print("\n[dim]Skipping bundle send. Re-run with --send to submit.[/dim]")
        return 0
    return 0 if outcome.included or outcome.bundle is None else 2


if __name__ == "__main__":
    sys.exit(main())
