"""CLI for napsync."""

import asyncio
import logging
from datetime import datetime, timezone

import click


def _load(config_path: str | None):
    from napsync.config import load_config

    try:
        return load_config(config_path)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--config") from e


@click.group()
def main() -> None:
    """napsync: sleep detection and nap sessions synced between wrist and controller."""


@main.command()
@click.argument("file", type=click.Path(exists=True))
@click.option("--config", "-c", "config_path", default=None, type=click.Path(exists=True),
              help="JSON config file.")
@click.option("--duration", "-d", default=None, type=float, help="Nap length in minutes.")
@click.option("--output", "-o", default=None, help="Write the replay summary as JSON.")
@click.option("--verbose", "-v", is_flag=True, help="Show every classification.")
def replay(file: str, config_path: str | None, duration: float | None,
           output: str | None, verbose: bool) -> None:
    """Replay a recorded JSONL sample log through a standalone session."""
    from napsync.config import get_logger
    from napsync.replay import replay_file

    get_logger(logging.DEBUG if verbose else logging.WARNING)
    config = _load(config_path)
    replay_file(file, config, duration * 60.0 if duration else None, output, verbose)


@main.command()
@click.argument("hex_frame")
def decode(hex_frame: str) -> None:
    """Decode a hex-encoded wire frame."""
    from napsync.protocol import format_message, hex_to_bytes

    try:
        data = hex_to_bytes(hex_frame)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="HEX_FRAME") from e
    click.echo(format_message(data))


@main.command()
@click.option("--timeout", "-t", default=10.0, help="Scan timeout in seconds.")
def scan(timeout: float) -> None:
    """Scan for nearby napsync peers."""
    from napsync.ble import scan as do_scan

    click.echo(f"Scanning for napsync peers ({timeout}s)...")
    results = asyncio.run(do_scan(timeout))
    if not results:
        click.echo("No napsync peers found.")
        return
    for device, adv in results:
        name = adv.local_name or device.name or "?"
        click.echo(f"  {name} [{device.address}] RSSI={adv.rssi} dBm")
    click.echo(f"\n{len(results)} peer(s) found.")


@main.command()
@click.option("--address", "-a", default=None, help="BLE address of the wrist unit.")
@click.option("--duration", "-d", default=None, type=float, help="Nap length in minutes.")
@click.option("--config", "-c", "config_path", default=None, type=click.Path(exists=True),
              help="JSON config file.")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging.")
def listen(address: str | None, duration: float | None, config_path: str | None,
           verbose: bool) -> None:
    """Run a nap as the controller against a wrist unit over BLE."""
    from bleak import BleakClient

    from napsync.ble import BleakTransport, find_peer
    from napsync.config import get_logger
    from napsync.exceptions import NapSyncError
    from napsync.link import LinkChannel
    from napsync.orchestrator import Role, SessionOrchestrator

    get_logger(logging.DEBUG if verbose else logging.INFO)
    config = _load(config_path)

    def _stamp() -> str:
        return datetime.now(timezone.utc).strftime("%H:%M:%S")

    async def _listen() -> None:
        addr = address
        if addr is None:
            device = await find_peer()
            if device is None:
                click.echo("No napsync peer found.")
                return
            addr = device.address

        click.echo(f"Connecting to {addr}...")
        async with BleakClient(addr) as client:
            transport = BleakTransport(client)
            try:
                await transport.open()
            except NapSyncError as e:
                click.echo(f"Error: {e}")
                return

            channel = LinkChannel(transport, config)
            orch = SessionOrchestrator(Role.CONTROLLER, config, channel)

            def _on_event(t) -> None:
                reason = f" ({t.reason.description})" if t.reason else ""
                click.echo(f"[{_stamp()}] {t.new_state.name}{reason}")
                if t.new_state.terminal:
                    orch.stop()

            def _on_peer(event) -> None:
                click.echo(f"[{_stamp()}] wrist: {event.state.label} ({event.confidence:.2f})")

            orch.on_session_event = _on_event
            orch.on_peer_classification = _on_peer

            channel.start()
            session = orch.schedule_nap(duration * 60.0 if duration else None)
            click.echo(f"Nap {session.id} scheduled for {session.scheduled_duration / 60:.0f} min.")
            try:
                await orch.run()
            finally:
                await orch.close()

    try:
        asyncio.run(_listen())
    except KeyboardInterrupt:
        click.echo("\nStopped.")


if __name__ == "__main__":
    main()
