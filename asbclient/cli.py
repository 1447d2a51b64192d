"""
asbclient Command-Line Interface

Send, peek-lock and poll Service Bus entities from the shell.
"""

import logging
import sys
import threading
import time
from pathlib import Path
from typing import Callable, Optional

import click
from pydantic import ValidationError

from asbclient import __version__
from asbclient.core.config import ClientSettings, load_settings
from asbclient.core.logging_config import log_with_context, setup_logging
from asbclient.servicebus import (
    MessageRequest,
    ServiceBusClient,
    ServiceBusError,
)

logger = logging.getLogger("asbclient.cli")


def _default_client_factory(settings: ClientSettings) -> ServiceBusClient:
    return ServiceBusClient(settings.identity(), timeout=settings.http_timeout)


def _open_client(ctx: click.Context) -> ServiceBusClient:
    settings: ClientSettings = ctx.obj["settings"]
    factory: Callable[[ClientSettings], ServiceBusClient] = ctx.obj.get(
        "client_factory", _default_client_factory
    )
    try:
        return factory(settings)
    except ValidationError as e:
        click.echo(f"[ERROR] Incomplete client settings: {e}", err=True)
        sys.exit(1)


def _entity(ctx: click.Context) -> str:
    entity = ctx.obj["settings"].entity
    if not entity:
        click.echo("[ERROR] No entity given; use --entity or ASB_ENTITY", err=True)
        sys.exit(1)
    return entity


@click.group()
@click.version_option(version=__version__, prog_name="asbclient")
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Path to configuration file (YAML or JSON)",
)
@click.option("--entity", "-e", help="Queue or topic path")
@click.option("--subscription", "-s", help="Topic subscription to receive from")
@click.option(
    "--kind",
    type=click.Choice(["queue", "topic"], case_sensitive=False),
    help="Entity kind",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    help="Logging level",
)
@click.pass_context
def cli(ctx, config: Optional[Path], entity: Optional[str], subscription: Optional[str],
        kind: Optional[str], log_level: Optional[str]):
    """
    asbclient - Azure Service Bus REST client

    Credentials come from the config file or ASB_NAMESPACE, ASB_KEY_NAME
    and ASB_KEY_VALUE.
    """
    ctx.ensure_object(dict)

    overrides = {"entity": entity, "subscription": subscription, "kind": kind}
    if log_level:
        overrides["logging"] = {"level": log_level}

    try:
        settings = load_settings(str(config) if config else None, overrides)
    except (ValidationError, ValueError) as e:
        click.echo(f"[ERROR] Invalid configuration: {e}", err=True)
        sys.exit(1)

    setup_logging(
        settings.logging.level,
        format_type=settings.logging.format,
        log_file=settings.logging.file,
        module_levels={"httpx": "WARNING", "httpcore": "WARNING"},
    )
    ctx.obj["settings"] = settings


@cli.command()
@click.argument("body")
@click.option("--content-type", help="Content type of the body")
@click.option("--message-id", help="Message id")
@click.option("--correlation-id", help="Correlation id")
@click.option("--session-id", help="Session id")
@click.option("--label", help="Application label")
@click.option(
    "--property",
    "-p",
    "properties",
    multiple=True,
    help="Custom property NAME=VALUE (can be repeated)",
)
@click.pass_context
def send(ctx, body: str, content_type: Optional[str], message_id: Optional[str],
         correlation_id: Optional[str], session_id: Optional[str], label: Optional[str],
         properties: tuple):
    """
    Send BODY to the configured queue or topic.

    Examples:
        asbclient -e orders send "hello"
        asbclient -e orders send '{"id": 1}' --content-type application/json -p priority=high
    """
    entity = _entity(ctx)

    props = {}
    for prop in properties:
        if "=" not in prop:
            click.echo(f"[ERROR] Property must be NAME=VALUE, got '{prop}'", err=True)
            sys.exit(1)
        name, value = prop.split("=", 1)
        props[name] = value

    message = MessageRequest(
        body=body,
        content_type=content_type,
        message_id=message_id,
        correlation_id=correlation_id,
        session_id=session_id,
        label=label,
        properties=props,
    )

    with _open_client(ctx) as client:
        try:
            client.send(entity, message)
        except ServiceBusError as e:
            click.echo(f"[ERROR] Send failed: {e}", err=True)
            sys.exit(1)

    click.echo(f"[OK] Sent {len(message.body)} bytes to '{entity}'")


@cli.command()
@click.option("--timeout", default=30, show_default=True, type=int,
              help="Seconds the server may wait for a message")
@click.option("--delete", "settle", flag_value="delete", help="Delete the message after printing it")
@click.option("--unlock", "settle", flag_value="unlock", help="Unlock the message after printing it")
@click.pass_context
def peek(ctx, timeout: int, settle: Optional[str]):
    """
    Peek-lock the next message and print its body.

    Without --delete or --unlock the lock is left to expire.
    """
    entity = _entity(ctx)

    with _open_client(ctx) as client:
        try:
            message = client.peek_lock_message(entity, timeout)
            if message is None:
                click.echo("No message available")
                return

            click.echo(f"MessageId: {message.message_id}")
            click.echo(f"DeliveryCount: {message.delivery_count}")
            click.echo(f"LockedUntilUtc: {message.locked_until_utc}")
            click.echo(message.body.decode("utf-8", errors="replace"))

            if settle == "delete":
                client.delete_message(message)
                click.echo("[OK] Deleted")
            elif settle == "unlock":
                client.unlock(message)
                click.echo("[OK] Unlocked")
        except ServiceBusError as e:
            click.echo(f"[ERROR] {e}", err=True)
            sys.exit(1)


@cli.command()
@click.option("--send-interval", default=0.5, show_default=True, type=float,
              help="Seconds between sends")
@click.option("--peek-interval", default=0.2, show_default=True, type=float,
              help="Seconds between peek-lock attempts")
@click.option("--timeout", default=30, show_default=True, type=int,
              help="Peek-lock server timeout in seconds")
@click.option("--count", type=int, help="Stop after sending and receiving COUNT messages")
@click.pass_context
def poll(ctx, send_interval: float, peek_interval: float, timeout: int, count: Optional[int]):
    """
    Run a send/receive loop against one queue.

    A background thread sends "message <n>" every --send-interval while the
    foreground peek-locks, prints and deletes messages. Errors are logged
    and the loop carries on. Stop with Ctrl-C or --count.
    """
    entity = _entity(ctx)
    stop = threading.Event()

    with _open_client(ctx) as client:

        def sender():
            # Only successful sends count towards --count
            sent = 0
            while not stop.is_set() and (count is None or sent < count):
                try:
                    client.send(entity, MessageRequest(body=f"message {sent}"))
                    log_with_context(logger, logging.INFO, f"Sent: {sent}", entity=entity)
                    sent += 1
                except ServiceBusError as e:
                    logger.warning(f"Send error: {e}")
                stop.wait(send_interval)

        thread = threading.Thread(target=sender, name="asbclient-sender", daemon=True)
        thread.start()

        received = 0
        try:
            while count is None or received < count:
                try:
                    message = client.peek_lock_message(entity, timeout)
                except ServiceBusError as e:
                    logger.warning(f"Peek error: {e}")
                    message = None

                if message is not None:
                    click.echo(f"Peeked message: '{message.body.decode('utf-8', errors='replace')}'")
                    try:
                        client.delete_message(message)
                        received += 1
                    except ServiceBusError as e:
                        logger.warning(f"Delete error: {e}")

                time.sleep(peek_interval)
        except KeyboardInterrupt:
            click.echo("\nStopping...")
        finally:
            stop.set()
            thread.join(timeout=max(send_interval, 1.0) * 2)

    click.echo(f"[OK] Received {received} messages")


def main():
    """Console script entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
