"""clicktrail command line.

Commands:
    url     Print the encoded postback URL without sending it
    send    Send one conversion postback
    listen  Start the click capture / conversion server

Usage:
    $ clicktrail send --domain network.example --click-id 5f0c... --sum 12.5 --status confirmed
    $ clicktrail url --domain network.example --click-id 5f0c... --custom-field 3=spring
    $ clicktrail listen --domain network.example --port 8080
"""

from __future__ import annotations

import asyncio
from typing import Annotated, NoReturn

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape

from clicktrail.config import settings
from clicktrail.core.errors import TrackingError
from clicktrail.core.models import CUSTOM_FIELDS_COUNT, Postback, PostbackStatus
from clicktrail.postback import PostbackProvider
from clicktrail.server import start_server

app = typer.Typer(
    help="Affiliate click capture and conversion postbacks",
    no_args_is_help=True,
)
console = Console()

STATUS_NAMES = {s.name.lower(): s for s in PostbackStatus if s.is_reportable}
"""Status names accepted by --status."""


def _error(message: str) -> NoReturn:
    """Print error and exit."""
    typer.echo(f"Error: {message}", err=True)
    raise typer.Exit(code=1)


def _resolve_domain(domain: str | None) -> str:
    domain = domain or settings.postback_domain
    if not domain:
        _error("No postback domain. Pass --domain or set CLICKTRAIL_POSTBACK_DOMAIN.")
    return domain


def parse_custom_fields(values: list[str]) -> list[str]:
    """Turn ``N=value`` option values into the 15 custom field slots.

    Args:
        values: Option values, each ``<slot>=<value>`` with slot 1-15.

    Returns:
        Custom field list indexed from 0.

    Raises:
        typer.BadParameter: If a value is malformed or its slot is out of range.
    """
    fields = [""] * CUSTOM_FIELDS_COUNT
    for item in values:
        slot, sep, value = item.partition("=")
        if not sep or not slot.isdigit():
            raise typer.BadParameter(f"expected N=value, got {item!r}")
        index = int(slot)
        if not 1 <= index <= CUSTOM_FIELDS_COUNT:
            raise typer.BadParameter(f"custom field slot must be 1-{CUSTOM_FIELDS_COUNT}")
        fields[index - 1] = value
    return fields


ClickIdOption = Annotated[str, typer.Option(help="Network click id (24 hex characters).")]
DomainOption = Annotated[
    str | None, typer.Option(help="Postback host (default: CLICKTRAIL_POSTBACK_DOMAIN).")
]
SslOption = Annotated[bool, typer.Option("--ssl/--no-ssl", help="Use https.")]
ActionIdOption = Annotated[str, typer.Option(help="Advertiser action id.")]
GoalOption = Annotated[str, typer.Option(help="Conversion goal.")]
SumOption = Annotated[float, typer.Option("--sum", help="Conversion amount.")]
IpOption = Annotated[str | None, typer.Option(help="Visitor IP address.")]
StatusOption = Annotated[str | None, typer.Option(help="confirmed, pending, declined or hold.")]
ReferrerOption = Annotated[str, typer.Option(help="Referring page.")]
CommentOption = Annotated[str, typer.Option(help="Free-form comment.")]
SecureOption = Annotated[str, typer.Option(help="Postback security token.")]
FbclidOption = Annotated[str, typer.Option(help="Facebook click id.")]
DeviceTypeOption = Annotated[str, typer.Option(help="Visitor device type.")]
UserIdOption = Annotated[str, typer.Option(help="Advertiser user id.")]
CustomFieldOption = Annotated[
    list[str] | None,
    typer.Option("--custom-field", help="Custom field as N=value (N from 1 to 15)."),
]


def _build_postback(status: str | None, custom_fields: list[str] | None, **fields) -> Postback:
    """Build a Postback from command options, exiting on invalid values."""
    postback_status = PostbackStatus.INVALID
    if status is not None:
        if status.lower() not in STATUS_NAMES:
            _error(f"Unknown status: {status}. Choose from {', '.join(STATUS_NAMES)}.")
        postback_status = STATUS_NAMES[status.lower()]

    try:
        return Postback(
            status=postback_status,
            custom_fields=parse_custom_fields(custom_fields or []),
            **fields,
        )
    except ValidationError as e:
        _error(str(e))


def _provider(domain: str | None, ssl: bool) -> PostbackProvider:
    return PostbackProvider(_resolve_domain(domain), ssl=ssl, timeout=settings.postback_timeout)


@app.command()
def url(
    click_id: ClickIdOption,
    domain: DomainOption = None,
    ssl: SslOption = True,
    action_id: ActionIdOption = "",
    goal: GoalOption = "",
    amount: SumOption = 0,
    ip: IpOption = None,
    status: StatusOption = None,
    referrer: ReferrerOption = "",
    comment: CommentOption = "",
    secure: SecureOption = "",
    fbclid: FbclidOption = "",
    device_type: DeviceTypeOption = "",
    user_id: UserIdOption = "",
    custom_fields: CustomFieldOption = None,
) -> None:
    """Print the encoded postback URL without sending it."""
    postback = _build_postback(
        status,
        custom_fields,
        click_id=click_id,
        action_id=action_id,
        goal=goal,
        sum=amount,
        ip=ip,
        referrer=referrer,
        comment=comment,
        secure=secure,
        fbclid=fbclid,
        device_type=device_type,
        user_id=user_id,
    )
    try:
        typer.echo(_provider(domain, ssl).url_for(postback))
    except TrackingError as e:
        _error(str(e))


@app.command()
def send(
    click_id: ClickIdOption,
    domain: DomainOption = None,
    ssl: SslOption = True,
    action_id: ActionIdOption = "",
    goal: GoalOption = "",
    amount: SumOption = 0,
    ip: IpOption = None,
    status: StatusOption = None,
    referrer: ReferrerOption = "",
    comment: CommentOption = "",
    secure: SecureOption = "",
    fbclid: FbclidOption = "",
    device_type: DeviceTypeOption = "",
    user_id: UserIdOption = "",
    custom_fields: CustomFieldOption = None,
) -> None:
    """Send a conversion postback to the affiliate network."""
    postback = _build_postback(
        status,
        custom_fields,
        click_id=click_id,
        action_id=action_id,
        goal=goal,
        sum=amount,
        ip=ip,
        referrer=referrer,
        comment=comment,
        secure=secure,
        fbclid=fbclid,
        device_type=device_type,
        user_id=user_id,
    )
    provider = _provider(domain, ssl)
    try:
        target = provider.url_for(postback)
        asyncio.run(provider.send_default(postback))
    except TrackingError as e:
        _error(str(e))

    console.print(f"[green][OK][/green] Sent {escape(target)}")


@app.command()
def listen(
    port: Annotated[int, typer.Option("--port", "-p", help="Port to listen on")] = 8080,
    host: Annotated[str, typer.Option("--host", "-h", help="Host to bind to")] = "127.0.0.1",
    domain: Annotated[
        str | None, typer.Option(help="Postback host (default: CLICKTRAIL_POSTBACK_DOMAIN).")
    ] = None,
    ssl: Annotated[bool, typer.Option("--ssl/--no-ssl", help="Use https for postbacks.")] = True,
) -> None:
    """Start the click capture and conversion server."""
    config = settings.model_copy(
        update={"postback_domain": _resolve_domain(domain), "postback_ssl": ssl}
    )
    start_server(host=host, port=port, config=config)
