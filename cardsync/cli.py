"""Command-line interface for cardsync."""

import asyncio
import json
import logging
import sys
from contextlib import asynccontextmanager

import click

from cardsync.commands import IssuedCommand, InvalidCommand, check_hours, new_id
from cardsync.config import CardSyncResources, create_card_sync, load_config
from cardsync.model import Card
from cardsync.postgres import create_tables
from cardsync.sync import PersistenceFailed, PersistStatus


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@asynccontextmanager
async def _open(ctx: click.Context, load: bool = True):
    config = load_config(ctx.obj["config_path"], database_url=ctx.obj["db"])
    async with create_card_sync(config) as res:
        if load:
            await res.commands.fetch_all()
        yield res


def _run(ctx: click.Context, body, load: bool = True) -> None:
    async def _main():
        async with _open(ctx, load=load) as res:
            await body(res)

    try:
        asyncio.run(_main())
    except InvalidCommand as e:
        raise click.BadParameter(str(e))
    except PersistenceFailed as e:
        raise click.ClickException(f"Write failed: {e}")


async def _report(issued: list[IssuedCommand]) -> None:
    for cmd in issued:
        result = await cmd.persisted()
        if result.status is PersistStatus.DIVERGED:
            click.echo(
                f"warning: {result.operation} for {result.key} matched no stored card",
                err=True,
            )


def _require_card(res: CardSyncResources, card_id: str) -> Card:
    card = res.store.get(card_id)
    if card is None:
        raise click.ClickException(f"Card '{card_id}' not found")
    return card


def _format_hours(value: float) -> str:
    return f"{value:g}h"


def _echo_card(card: Card) -> None:
    spent = card.spent_time_in_hour
    click.echo(f"{card.id}  {card.title}")
    if card.content:
        click.echo(f"  {card.content}")
    click.echo(
        f"  time: {_format_hours(spent.actual)} spent / "
        f"{_format_hours(spent.estimated)} estimated"
        f"  sessions: {len(card.session_ids)}"
    )
    for st in card.sub_tasks or []:
        mark = "x" if st.completed else " "
        click.echo(f"  [{mark}] {st.id}  {st.title}")


# ---------------------------------------------------------------------------
# Click CLI
# ---------------------------------------------------------------------------


@click.group()
@click.option(
    "--db",
    envvar="CARDSYNC_DATABASE_URL",
    default=None,
    help="SQLAlchemy async database URL (default: from config, else sqlite)",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False),
    default=None,
    help="Path to cardsync.toml",
)
@click.option("-v", "--verbose", is_flag=True, help="Log to stderr")
@click.pass_context
def cli(ctx, db, config_path, verbose):
    """cardsync - kanban cards kept in sync with a document store"""
    ctx.ensure_object(dict)
    ctx.obj["db"] = db
    ctx.obj["config_path"] = config_path
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            stream=sys.stderr,
        )


@cli.command("init-db")
@click.pass_context
def init_db(ctx):
    """Create the card and list tables."""

    async def body(res: CardSyncResources):
        await create_tables(res.engine)
        click.echo("Tables created.")

    _run(ctx, body, load=False)


@cli.command("create-list")
@click.argument("list_id")
@click.option("--title", default="", help="List title")
@click.pass_context
def create_list(ctx, list_id, title):
    """Create an empty list."""

    async def body(res: CardSyncResources):
        await res.lists.create_list(list_id, title)
        click.echo(f"Created list {list_id}")

    _run(ctx, body, load=False)


@cli.command("add-card")
@click.argument("list_id")
@click.argument("title")
@click.option("--content", default="", help="Markdown content")
@click.option("--id", "card_id", default=None, help="Card id (default: generated)")
@click.option(
    "--estimate", type=click.FloatRange(min=0), default=None, help="Estimated hours"
)
@click.pass_context
def add_card(ctx, list_id, title, content, card_id, estimate):
    """Add a card to a list."""
    card_id = card_id or new_id()

    async def body(res: CardSyncResources):
        if card_id in res.store:
            raise click.ClickException(f"Card '{card_id}' already exists")
        if estimate is not None:
            check_hours("set_estimated_time", estimate)
        issued = [await res.commands.add_card(card_id, list_id, title, content)]
        if estimate is not None:
            issued.append(await res.commands.set_estimated_time(card_id, estimate))
        await _report(issued)
        click.echo(card_id)

    _run(ctx, body)


@cli.command("rename")
@click.argument("card_id")
@click.argument("title")
@click.pass_context
def rename(ctx, card_id, title):
    """Rename a card."""

    async def body(res: CardSyncResources):
        _require_card(res, card_id)
        await _report([await res.commands.rename_card(card_id, title)])

    _run(ctx, body)


@cli.command("add-subtask")
@click.argument("card_id")
@click.argument("title")
@click.pass_context
def add_subtask(ctx, card_id, title):
    """Add a subtask to a card; prints the subtask id."""

    async def body(res: CardSyncResources):
        _require_card(res, card_id)
        if not title.strip():
            raise click.BadParameter("Subtask title must not be blank")
        issued = await res.commands.add_sub_task(card_id, title.strip())
        await _report([issued])
        click.echo(issued.event.sub_task.id)

    _run(ctx, body)


@cli.command("toggle-subtask")
@click.argument("card_id")
@click.argument("sub_task_id")
@click.pass_context
def toggle_subtask(ctx, card_id, sub_task_id):
    """Flip a subtask between done and not done."""

    async def body(res: CardSyncResources):
        _require_card(res, card_id)
        await _report([await res.commands.toggle_sub_task(card_id, sub_task_id)])
        for st in res.store.get(card_id).sub_tasks or []:
            if st.id == sub_task_id:
                click.echo("done" if st.completed else "open")

    _run(ctx, body)


@cli.command("log-session")
@click.argument("card_id")
@click.argument("hours", type=float)
@click.option("--session-id", default=None, help="Timer session id (default: generated)")
@click.pass_context
def log_session(ctx, card_id, hours, session_id):
    """Record a finished timer session on a card."""

    async def body(res: CardSyncResources):
        card = _require_card(res, card_id)
        await _report(
            [await res.commands.on_timer_finished(card_id, session_id or new_id(), hours)]
        )
        card = res.store.get(card_id) or card
        click.echo(f"{card_id}: {_format_hours(card.spent_time_in_hour.actual)} spent")

    _run(ctx, body)


@cli.command("delete-card")
@click.argument("card_id")
@click.argument("list_id")
@click.pass_context
def delete_card(ctx, card_id, list_id):
    """Remove a card from its list and delete it."""

    async def body(res: CardSyncResources):
        _require_card(res, card_id)
        await _report([await res.commands.delete_card(card_id, list_id)])
        click.echo(f"Deleted {card_id}")

    _run(ctx, body)


@cli.command("list-cards")
@click.option("--list", "list_id", default=None, help="Only cards of this list, in list order")
@click.option("--json", "as_json", is_flag=True, help="Print stored documents as JSON")
@click.pass_context
def list_cards(ctx, list_id, as_json):
    """List cards."""

    async def body(res: CardSyncResources):
        if list_id is None:
            cards = list(res.store.state.values())
        else:
            ids = await res.lists.cards_of(list_id)
            if ids is None:
                raise click.ClickException(f"List '{list_id}' not found")
            cards = [res.store.get(i) for i in ids if i in res.store]

        if as_json:
            click.echo(json.dumps([c.to_document() for c in cards], indent=2))
            return
        if not cards:
            click.echo("No cards.")
            return
        click.echo(f"\n{'Card ID':<16} {'Spent':>8} {'Est.':>8}  Title")
        click.echo("-" * 60)
        for c in cards:
            spent = c.spent_time_in_hour
            click.echo(
                f"{c.id:<16} {_format_hours(spent.actual):>8} "
                f"{_format_hours(spent.estimated):>8}  {c.title}"
            )

    _run(ctx, body)


@cli.command("show")
@click.argument("card_id")
@click.pass_context
def show(ctx, card_id):
    """Show one card with its subtasks."""

    async def body(res: CardSyncResources):
        _echo_card(_require_card(res, card_id))

    _run(ctx, body)


def main() -> None:
    """Main CLI entry point (delegates to click)."""
    cli()


if __name__ == "__main__":
    main()
