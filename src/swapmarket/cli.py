"""CLI entry point for the swap marketplace.

Every command is one request/response operation against the configured
store and prints JSON on stdout.  The in-memory backend does not survive
between commands, so the CLI requires ``sql`` or ``redis``.  Exit codes:

* 0 success
* 1 domain error (validation, conflict, authorization, not found)
* 3 partial failure: run ``swapmarket reconcile --request <id>``
* 4 store unavailable: safe to retry only for ``propose``
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime
from typing import Any, Awaitable, Callable

import click
from pydantic import BaseModel

from .core.config import Settings, load_settings
from .core.enums import Decision, RequestDirection, SlotStatus, StoreBackend
from .core.errors import ConfigError, PartialFailure, StoreUnavailable, SwapMarketError
from .marketplace import SwapMarketplace, open_marketplace
from .observability.logger import new_trace_id, setup_logging
from .observability.metrics import start_metrics_server

EXIT_DOMAIN_ERROR = 1
EXIT_PARTIAL_FAILURE = 3
EXIT_STORE_UNAVAILABLE = 4


def _parse_time(ctx: click.Context, param: click.Parameter, value: str) -> datetime:
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        raise click.BadParameter(f"expected ISO-8601 datetime, got {value!r}") from None


def _dump(result: Any) -> str:
    if isinstance(result, BaseModel):
        payload: Any = result.model_dump(mode="json")
    elif isinstance(result, list):
        payload = [r.model_dump(mode="json") for r in result]
    else:
        payload = result
    return json.dumps(payload, indent=2)


def _run(
    ctx: click.Context,
    operation: Callable[[SwapMarketplace], Awaitable[Any]],
) -> None:
    """Open the marketplace, run *operation*, print its result as JSON."""
    settings: Settings = ctx.obj

    async def _main() -> Any:
        async with open_marketplace(settings) as market:
            return await operation(market)

    new_trace_id()
    try:
        if settings.store.backend == StoreBackend.MEMORY:
            raise ConfigError(
                "The CLI needs a persistent store; set SWAPMARKET_STORE__BACKEND "
                "to sql or redis"
            )
        result = asyncio.run(_main())
    except PartialFailure as exc:
        click.echo(f"error: PartialFailure: {exc}", err=True)
        ctx.exit(EXIT_PARTIAL_FAILURE)
    except StoreUnavailable as exc:
        click.echo(f"error: StoreUnavailable: {exc}", err=True)
        ctx.exit(EXIT_STORE_UNAVAILABLE)
    except SwapMarketError as exc:
        click.echo(f"error: {type(exc).__name__}: {exc}", err=True)
        ctx.exit(EXIT_DOMAIN_ERROR)
    else:
        if result is not None:
            click.echo(_dump(result))


@click.group()
@click.option(
    "--config",
    "config_path",
    default=None,
    envvar="SWAPMARKET_CONFIG",
    help="TOML config file path",
)
@click.pass_context
def main(ctx: click.Context, config_path: str | None) -> None:
    """Calendar slot swap marketplace."""
    settings = load_settings(config_path)
    setup_logging(
        level=settings.observability.log_level,
        format=settings.observability.log_format,
    )
    if settings.observability.metrics_port:
        start_metrics_server(
            settings.observability.metrics_port, backend=settings.store.backend.value,
        )
    ctx.obj = settings


@main.command("init-db")
@click.pass_context
def init_db(ctx: click.Context) -> None:
    """Create the schema (SQL backends) and verify connectivity."""
    ctx.obj.store.create_tables = True

    async def _op(market: SwapMarketplace) -> dict[str, str]:
        return {"status": "ok", "backend": ctx.obj.store.backend.value}

    _run(ctx, _op)


@main.command("add-user")
@click.argument("user_id")
@click.option("--name", default="", help="Display name")
@click.option("--email", default="", help="E-mail address")
@click.pass_context
def add_user(ctx: click.Context, user_id: str, name: str, email: str) -> None:
    """Register or update a user profile."""
    _run(ctx, lambda m: m.upsert_profile(user_id, name=name, email=email))


@main.command("create-slot")
@click.option("--user", "user_id", required=True, help="Owner user id")
@click.option("--title", required=True, help="Slot title")
@click.option("--start", "start_time", required=True, callback=_parse_time, help="ISO start time")
@click.option("--end", "end_time", required=True, callback=_parse_time, help="ISO end time")
@click.option("--swappable", is_flag=True, help="Offer the slot immediately")
@click.pass_context
def create_slot(
    ctx: click.Context,
    user_id: str,
    title: str,
    start_time: datetime,
    end_time: datetime,
    swappable: bool,
) -> None:
    """Create a calendar slot."""
    status = SlotStatus.SWAPPABLE if swappable else SlotStatus.BUSY
    _run(ctx, lambda m: m.create_slot(user_id, title, start_time, end_time, status))


@main.command("slots")
@click.option("--user", "user_id", required=True, help="Owner user id")
@click.pass_context
def slots(ctx: click.Context, user_id: str) -> None:
    """List a user's slots by start time."""
    _run(ctx, lambda m: m.list_user_slots(user_id))


@main.command("toggle")
@click.argument("slot_id")
@click.option("--user", "user_id", required=True, help="Acting user id")
@click.option("--swappable/--busy", default=True, help="Target status")
@click.pass_context
def toggle(ctx: click.Context, slot_id: str, user_id: str, swappable: bool) -> None:
    """Mark a slot swappable or busy."""
    _run(ctx, lambda m: m.set_swappable(slot_id, user_id, swappable))


@main.command("delete-slot")
@click.argument("slot_id")
@click.option("--user", "user_id", required=True, help="Acting user id")
@click.pass_context
def delete_slot(ctx: click.Context, slot_id: str, user_id: str) -> None:
    """Delete a slot (refused while a swap is pending)."""

    async def _op(market: SwapMarketplace) -> dict[str, str]:
        await market.delete_slot(slot_id, user_id)
        return {"deleted": slot_id}

    _run(ctx, _op)


@main.command("marketplace")
@click.option("--user", "user_id", required=True, help="Viewing user id")
@click.option("--mine", is_flag=True, help="List your own swappable slots instead")
@click.pass_context
def marketplace(ctx: click.Context, user_id: str, mine: bool) -> None:
    """List swappable slots offered by other users."""
    if mine:
        _run(ctx, lambda m: m.list_swappable_slots(user_id))
    else:
        _run(ctx, lambda m: m.list_marketplace(user_id))


@main.command("propose")
@click.option("--user", "user_id", required=True, help="Requesting user id")
@click.option("--offer", "offer_slot_id", required=True, help="Your slot id")
@click.option("--for", "target_slot_id", required=True, help="Their slot id")
@click.pass_context
def propose(ctx: click.Context, user_id: str, offer_slot_id: str, target_slot_id: str) -> None:
    """Propose swapping your slot for another user's slot."""
    _run(ctx, lambda m: m.propose_swap(offer_slot_id, target_slot_id, user_id))


@main.command("accept")
@click.argument("request_id")
@click.option("--user", "user_id", required=True, help="Recipient user id")
@click.pass_context
def accept(ctx: click.Context, request_id: str, user_id: str) -> None:
    """Accept a swap request: ownership of the two slots is exchanged."""
    _run(ctx, lambda m: m.resolve_swap(request_id, Decision.ACCEPT, user_id))


@main.command("reject")
@click.argument("request_id")
@click.option("--user", "user_id", required=True, help="Recipient user id")
@click.pass_context
def reject(ctx: click.Context, request_id: str, user_id: str) -> None:
    """Reject a swap request: both slots return to swappable."""
    _run(ctx, lambda m: m.resolve_swap(request_id, Decision.REJECT, user_id))


@main.command("requests")
@click.option("--user", "user_id", required=True, help="Viewing user id")
@click.option(
    "--direction",
    type=click.Choice([d.value for d in RequestDirection]),
    default=RequestDirection.ALL.value,
    help="incoming, outgoing or all",
)
@click.pass_context
def requests(ctx: click.Context, user_id: str, direction: str) -> None:
    """List swap requests with both parties and slots."""
    _run(ctx, lambda m: m.list_requests(user_id, RequestDirection(direction)))


@main.command("reconcile")
@click.option("--request", "request_id", default=None, help="Single request id")
@click.pass_context
def reconcile(ctx: click.Context, request_id: str | None) -> None:
    """Repair partially applied swaps and orphaned slot holds."""
    _run(ctx, lambda m: m.reconcile(request_id))


if __name__ == "__main__":
    main()
