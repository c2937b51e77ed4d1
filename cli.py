import argparse
import asyncio
import json
import os
import sys
from pathlib import Path
import time
from typing import Optional

from rich.console import Console
from rich.table import Table

from qnews.app import App
from qnews.config import CONFIG_FILE, CONFIG_KEYS, Settings, load_settings, save_config
from qnews.constants import DEFAULT_SCORING_FORMULA
from qnews.errors import QNewsError
from qnews.logging_config import configure_logging
from qnews.models import Ranking
from qnews.positions import load_positions
from qnews.postprocess import front_page
from qnews.scoring import FORMULAS, score_history

console = Console()


async def cmd_run(settings: Settings, args: argparse.Namespace) -> int:
    app = await App.create(settings)
    app.start()
    try:
        await app.wait()
    finally:
        await app.close()
    return 0


async def cmd_crawl(settings: Settings, args: argparse.Namespace) -> int:
    app = await App.create(settings)
    try:
        loop = asyncio.get_running_loop()
        result = await app.scheduler.crawl(int(time.time()), loop.time() + args.timeout)
    finally:
        await app.close()

    table = Table(title=f"Crawl at {result.sample_time}")
    table.add_column("Items", justify="right")
    table.add_column("New", justify="right")
    table.add_column("Skipped", justify="right")
    table.add_column("Sitewide upvotes", justify="right")
    table.add_column("Expected upvotes", justify="right")
    table.add_row(
        str(result.items),
        str(result.new_items),
        str(result.skipped),
        str(result.sitewide_upvotes),
        f"{result.delta_expected_upvotes:.2f}",
    )
    console.print(table)
    return 0


async def cmd_archive(settings: Settings, args: argparse.Namespace) -> int:
    app = await App.create(settings)
    try:
        if app.worker is None:
            console.print("[red]No archive store configured. Set ARCHIVE_DIR or ARCHIVE_URL.[/]")
            return 1
        summary = await app.worker.archive_and_purge()
    finally:
        await app.close()
    console.print(
        f"[green]Archived {summary.uploaded} items[/] "
        f"({summary.already_archived} already archived, {summary.failed} failed), "
        f"purged {summary.purged_samples} samples"
    )
    return 0 if summary.failed == 0 and summary.purge_failed == 0 else 1


async def cmd_score(settings: Settings, args: argparse.Namespace) -> int:
    params = settings.model_params.with_overrides(args.fatigue_factor, args.prior_weight)
    app = await App.create(settings)
    try:
        positions = await load_positions(app.db, args.user_id, params)
    finally:
        await app.close()
    history = score_history(positions, params, args.formula)

    table = Table(title=f"User {args.user_id} ({args.formula})")
    table.add_column("", style="bold")
    table.add_column("Item", justify="right")
    table.add_column("Title", overflow="fold")
    table.add_column("Vote")
    table.add_column("Entry", justify="right")
    table.add_column("Exit/Now", justify="right")
    table.add_column("Score", justify="right")
    table.add_column("Running", justify="right")
    for p in history.positions[: args.limit]:
        latest = p.exit_upvote_rate if p.exit_upvote_rate is not None else p.current_upvote_rate
        color = "green" if p.user_score > 0 else "red" if p.user_score < 0 else "dim"
        table.add_row(
            p.label,
            str(p.item_id),
            p.title,
            "up" if p.direction == 1 else "down",
            f"{p.entry_upvote_rate:.2f}",
            f"{latest:.2f}",
            f"[{color}]{p.user_score:+.2f}[/]",
            f"{p.running_score:.2f}",
        )
    console.print(table)
    console.print(f"Total: [bold]{history.score:.2f}[/]")
    return 0


async def cmd_frontpage(settings: Settings, args: argparse.Namespace) -> int:
    app = await App.create(settings)
    try:
        stories = await front_page(app.db, settings.frontpage_params, Ranking(args.ranking))
    finally:
        await app.close()

    table = Table(title=f"Front page ({args.ranking})")
    table.add_column("#", justify="right")
    table.add_column("Title", overflow="fold")
    table.add_column("Score", justify="right")
    table.add_column("Rate", justify="right")
    table.add_column("HN", justify="right")
    table.add_column("Age (h)", justify="right")
    for i, s in enumerate(stories[: args.limit], 1):
        table.add_row(
            str(i),
            s["title"],
            str(s["score"]),
            f"{s['upvote_rate']:.2f}",
            str(s["top_rank"] or "-"),
            f"{s['age_hours']:.1f}",
        )
    console.print(table)
    return 0


def cmd_config(args: argparse.Namespace) -> int:
    try:
        value = json.loads(args.value)
    except json.JSONDecodeError:
        value = args.value
    env_file = os.environ.get("QNEWS_CONFIG")
    config_file = Path(env_file) if env_file else CONFIG_FILE
    save_config(args.key, value, config_file)
    console.print(f"[green]Saved {args.key} = {value!r} to {config_file}[/]")
    return 0


def cmd_serve(settings: Settings, args: argparse.Namespace) -> int:
    import uvicorn

    from qnews.main import create_app

    uvicorn.run(
        create_app(settings, background=not args.no_background),
        host=args.host,
        port=args.port,
        log_config=None,
    )
    return 0


COMMANDS = {
    "run": cmd_run,
    "crawl": cmd_crawl,
    "archive": cmd_archive,
    "score": cmd_score,
    "frontpage": cmd_frontpage,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Attention-adjusted ranking and vote scoring for Hacker News"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="Crawl every minute and archive old samples")

    crawl = sub.add_parser("crawl", help="Run a single crawl and re-rank")
    crawl.add_argument("--timeout", type=float, default=59.0, help="Deadline in seconds")

    sub.add_parser("archive", help="Run a single archive/purge pass")

    score = sub.add_parser("score", help="Show a user's positions and score")
    score.add_argument("user_id", type=int)
    score.add_argument(
        "--formula",
        default=DEFAULT_SCORING_FORMULA,
        help=f"One of: {', '.join(FORMULAS)}",
    )
    score.add_argument("--fatigue-factor", type=float, default=None)
    score.add_argument("--prior-weight", type=float, default=None)
    score.add_argument("--limit", type=int, default=50, help="Rows to display")

    fp = sub.add_parser("frontpage", help="Show the latest ranking")
    fp.add_argument("--ranking", choices=[r.value for r in Ranking], default=Ranking.QUALITY.value)
    fp.add_argument("--limit", type=int, default=30)

    cfg = sub.add_parser("config", help="Store a model parameter in the config file")
    cfg.add_argument("key", choices=CONFIG_KEYS)
    cfg.add_argument("value", help="JSON value, e.g. 3.0")

    serve = sub.add_parser("serve", help="Serve the HTTP API")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8080)
    serve.add_argument(
        "--no-background", action="store_true", help="Don't crawl or archive in-process"
    )
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    if args.command == "config":
        try:
            return cmd_config(args)
        except QNewsError as e:
            console.print(f"[red]Configuration error: {e}[/]")
            return 1

    try:
        settings = load_settings()
    except QNewsError as e:
        console.print(f"[red]Configuration error: {e}[/]")
        return 1
    configure_logging(settings.log_level, settings.log_format)

    try:
        if args.command == "serve":
            return cmd_serve(settings, args)
        return asyncio.run(COMMANDS[args.command](settings, args))
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted[/]")
        return 130
    except QNewsError as e:
        console.print(f"[red]Error: {e}[/]")
        return 1


if __name__ == "__main__":
    sys.exit(main())
