"""Entry point for the SubQuest round engine.

Usage:
    python main.py --story stories/example.json   # Start a new game and keep rounds running
    python main.py                                # Resume the stored game after a restart
    python main.py --game-id other --verbose      # Another game, debug logging
"""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import click

from game.config import EngineSettings, load_config
from game.controller import GameController
from game.errors import GameInactiveError
from game.publisher import MoltbookPublisher, MoltbookVoteSource
from game.scheduler import RoundScheduler
from game.store import SqliteGameStore
from game.tally import VoteTally
from game.timers import AsyncioTimerFacility
from moltbook.client import MoltbookClient
from story.graph import StoryValidationError, load_story_file

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool = False, log_file: str | None = None) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    fmt = "%(asctime)s — %(name)s — %(levelname)s — %(message)s"

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(level=level, format=fmt, handlers=handlers)

    # Quiet down noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


async def _serve(cfg: dict, settings: EngineSettings, game_id: str, story_path: str | None) -> None:
    root = Path(__file__).resolve().parent
    api_key = cfg["_secrets"]["moltbook_api_key"]

    async with MoltbookClient(api_key, timeout=settings.http_timeout) as mb, \
            SqliteGameStore(root / settings.db_path) as store:
        tally = VoteTally(
            MoltbookVoteSource(mb),
            retry=settings.score_retry,
            fetch_timeout=settings.score_timeout,
            minimum_votes=settings.minimum_votes,
            tie_break=settings.tie_break,
        )
        publisher = MoltbookPublisher(
            mb,
            submolt=settings.submolt,
            title_prefix=settings.title_prefix,
            comment_delay=settings.comment_delay,
        )
        timers = AsyncioTimerFacility()
        scheduler = RoundScheduler(
            store,
            tally,
            publisher,
            timers,
            retry=settings.advance_retry,
            publish_timeout=settings.publish_timeout,
            rearm_delay=settings.rearm_delay,
        )
        timers.set_callback(scheduler.on_timer)
        controller = GameController(
            store, scheduler, publisher,
            default_timing=settings.timing,
            publish_timeout=settings.publish_timeout,
        )

        if story_path:
            graph = load_story_file(story_path)
            await controller.start_game(game_id, graph, settings.timing)
        elif not await controller.resume(game_id):
            click.echo(f"No active game '{game_id}'. Pass --story to start one.")
            return

        while True:
            status = await controller.status(game_id)
            if status.status != "active":
                click.echo(f"Game '{game_id}' is {status.status}.")
                return
            logger.info(
                "%s: round %d at %s, %s left",
                game_id, status.round_number, status.current_node_id, status.time_remaining,
            )
            try:
                standings = await controller.standings(game_id)
            except GameInactiveError:
                # Finished between the two reads
                continue
            logger.info(
                "%s: standings %s (leader: %s)",
                game_id,
                ", ".join(f"{c.choice_id}={c.score}" for c in standings.choices),
                standings.leader or "none",
            )
            await asyncio.sleep(60)


@click.command()
@click.option("--story", type=click.Path(exists=True, dir_okay=False), default=None,
              help="Story JSON file; starts a new game")
@click.option("--game-id", default="main", show_default=True, help="Game identifier")
@click.option("--verbose", is_flag=True, help="Enable debug logging")
@click.option("--config-dir", type=click.Path(), default=None, help="Config directory")
def main(story: str | None, game_id: str, verbose: bool, config_dir: str | None) -> None:
    """SubQuest: community-voted adventures on Moltbook."""

    cfg = load_config(config_dir)
    settings = EngineSettings.from_config(cfg)

    log_file = cfg.get("storage", {}).get("log_file")
    _setup_logging(verbose=verbose, log_file=log_file)

    if not cfg["_secrets"]["moltbook_api_key"]:
        click.echo("MOLTBOOK_API_KEY is not set (config/.env).", err=True)
        sys.exit(1)

    try:
        asyncio.run(_serve(cfg, settings, game_id, story))
    except StoryValidationError as e:
        click.echo(f"Story rejected: {e}", err=True)
        for issue in e.issues:
            click.echo(f"  - {issue.message}", err=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nStopped. Timers will be re-armed on the next start.")


if __name__ == "__main__":
    main()
