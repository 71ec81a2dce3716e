"""CLI entry point for VASA Webhooks."""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import BinaryIO

import click

from vasa import __version__
from vasa.webhooks.models import EVENT_CATEGORIES, WebhookEnvelope, WebhookEventType
from vasa.webhooks.signature import (
    SIGNATURE_HEADER,
    SignatureError,
    sign_payload,
    verify_signature,
)
from vasa.webhooks.store import generate_delivery_id

SAMPLE_DATA: dict[str, dict[str, object]] = {
    "order": {
        "order": {
            "id": "ord_123",
            "status": "pending_payment",
            "total": 2500.0,
            "shippingCountry": "GH",
        }
    },
    "payment": {
        "payment": {"id": "pay_123", "type": "advance", "amount": 750.0},
        "order": {"id": "ord_123", "status": "processing"},
    },
    "shipping": {
        "shipment": {"trackingNumber": "TRK123", "carrier": "DHL"},
        "order": {"id": "ord_123", "status": "shipped"},
    },
    "product": {
        "product": {"id": "prd_123", "name": "Shea butter", "category": "cosmetics"},
    },
}


def _read_body(body_file: BinaryIO | None) -> bytes:
    stream = body_file if body_file is not None else click.get_binary_stream("stdin")
    return stream.read()


@click.group()
@click.version_option(__version__, prog_name="vasa-webhooks")
def cli() -> None:
    """VASA outbound webhook delivery."""


@cli.command()
@click.option("--host", default="0.0.0.0", show_default=True, help="Bind address")
@click.option("--port", default=8000, show_default=True, type=int, help="Bind port")
@click.option(
    "--log-level",
    default="info",
    show_default=True,
    type=click.Choice(["debug", "info", "warning", "error"]),
)
def serve(host: str, port: int, log_level: str) -> None:
    """Run the webhook admin API and delivery workers."""
    import uvicorn

    from vasa.server import create_server

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(create_server(), host=host, port=port, log_level=log_level)


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def events(as_json: bool) -> None:
    """List subscribable event types by category."""
    if as_json:
        payload = {
            category: [event.value for event in members]
            for category, members in EVENT_CATEGORIES.items()
        }
        click.echo(json.dumps(payload, indent=2))
        return

    for category, members in EVENT_CATEGORIES.items():
        click.echo(f"{category}:")
        for event in members:
            click.echo(f"  {event.value}")


@cli.command()
@click.option("--secret", required=True, envvar="VASA_WEBHOOK_SECRET", help="Signing secret")
@click.argument("body_file", type=click.File("rb"), required=False)
def sign(secret: str, body_file: BinaryIO | None) -> None:
    """Print the signature header for a request body (file or stdin)."""
    body = _read_body(body_file)
    click.echo(f"{SIGNATURE_HEADER}: {sign_payload(body, secret)}")


@cli.command()
@click.option("--secret", required=True, envvar="VASA_WEBHOOK_SECRET", help="Signing secret")
@click.option("--signature", required=True, help="Value of the signature header")
@click.argument("body_file", type=click.File("rb"), required=False)
def verify(secret: str, signature: str, body_file: BinaryIO | None) -> None:
    """Check a received signature; exits 1 when it does not match."""
    body = _read_body(body_file)
    try:
        valid = verify_signature(body, signature, secret)
    except SignatureError as e:
        raise click.ClickException(str(e)) from e
    if not valid:
        click.echo("Signature does NOT match", err=True)
        sys.exit(1)
    click.echo("Signature OK")


@cli.command()
@click.argument("event_type", type=click.Choice([e.value for e in WebhookEventType]))
@click.option("--webhook-id", default="wh_sample", show_default=True)
@click.option("--environment", default="development", show_default=True)
def sample(event_type: str, webhook_id: str, environment: str) -> None:
    """Print a sample envelope for EVENT_TYPE."""
    category = event_type.split(".", 1)[0]
    envelope = WebhookEnvelope(
        event=WebhookEventType(event_type),
        timestamp=datetime.now(timezone.utc).isoformat(),
        webhook_id=webhook_id,
        delivery_id=generate_delivery_id(),
        environment=environment,
        data=SAMPLE_DATA.get(category, {}),
    )
    click.echo(envelope.model_dump_json(indent=2))


def main() -> None:
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
