"""Typer CLI entrypoint."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import sys
from pathlib import Path

import typer

from sensorgate.core.errors import SensorGateError
from sensorgate.core.loader import load_config
from sensorgate.core.model import GatewayConfig
from sensorgate.core.service import GatewayService
from sensorgate.transports.mqtt import MqttBridge

app = typer.Typer(help="Serial-to-MQTT gateway for SensorTag nodes")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _load(config_path: Path | None) -> GatewayConfig:
    config = load_config(config_path)
    for warning in config.warnings:
        typer.echo(f"Warning: {warning}", err=True)
    return config


def _apply_overrides(
    config: GatewayConfig,
    *,
    server: bool | None,
    manual: bool,
    baud: int | None,
) -> GatewayConfig:
    changes: dict[str, object] = {}
    if server is not None:
        changes["server"] = server
    if manual:
        changes["ports"] = dataclasses.replace(config.ports, autofind=False)
    if baud is not None:
        changes["uart"] = dataclasses.replace(config.uart, baud_rate=baud)
    return dataclasses.replace(config, **changes) if changes else config


async def _read_lines(service: GatewayService) -> None:
    while True:
        line = await asyncio.to_thread(sys.stdin.readline)
        if not line:
            return
        service.handle_line(line)


async def _serve(service: GatewayService, offline: bool) -> None:
    loop = asyncio.get_running_loop()
    bridge: MqttBridge | None = None
    if not offline:
        bridge = MqttBridge(
            service.config.mqtt,
            lambda payload: loop.call_soon_threadsafe(service.handle_backend_command, payload),
        )
        service.attach_publisher(bridge)
        bridge.start()

    reader = loop.create_task(_read_lines(service))
    try:
        await service.run()
    finally:
        reader.cancel()
        if bridge is not None:
            bridge.stop()


@app.command("run")
def run_gateway(
    server: bool | None = typer.Option(None, "--server/--peer", help="Gateway (ServerTag) or peer mode"),
    manual: bool = typer.Option(False, "--manual", help="Choose the serial port by number"),
    baud: int | None = typer.Option(None, "--baud", help="UART baud rate"),
    config_path: Path | None = typer.Option(None, "--config", help="Extra YAML config file"),
    offline: bool = typer.Option(False, "--offline", help="Do not connect to the MQTT broker"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """Start the gateway and keep reconnecting until interrupted."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT)
    try:
        config = _apply_overrides(_load(config_path), server=server, manual=manual, baud=baud)
        service = GatewayService(config)
        asyncio.run(_serve(service, offline))
    except SensorGateError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None
    except KeyboardInterrupt:
        typer.echo("Stopped.")


@app.command("ports")
def list_ports(
    config_path: Path | None = typer.Option(None, "--config", help="Extra YAML config file"),
) -> None:
    """List serial devices and whether they match the allow pattern."""
    try:
        service = GatewayService(_load(config_path))
        lines = service.list_devices()
        if not lines:
            typer.echo("No serial devices found")
            return
        for line in lines:
            typer.echo(line)
    except SensorGateError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("fields")
def list_fields(
    config_path: Path | None = typer.Option(None, "--config", help="Extra YAML config file"),
) -> None:
    """List the message schema fields."""
    try:
        config = _load(config_path)
        for spec in config.schema.fields:
            flags = []
            if spec.identity:
                flags.append("identity")
            if spec.force_send:
                flags.append("force-send")
            suffix = f" [{', '.join(flags)}]" if flags else ""
            typer.echo(f"{spec.short_name} -> {spec.db_name} ({spec.decoder}) topics: {', '.join(spec.topics)}{suffix}")
    except SensorGateError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("decode")
def decode_text(
    text: str,
    config_path: Path | None = typer.Option(None, "--config", help="Extra YAML config file"),
) -> None:
    """Tokenize TEXT offline and print the decoded topics."""
    try:
        service = GatewayService(_load(config_path))
        message = service.decode(text)
        typer.echo(f"Sender: {message.sender_address}")
        typer.echo(f"Send: {', '.join(message.topics_to_send) or '-'}")
        for topic, values in message.by_topic.items():
            rendered = ", ".join(f"{name}={value}" for name, value in values.items())
            typer.echo(f"  {topic}: {rendered}")
    except SensorGateError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


def run() -> None:
    app()


if __name__ == "__main__":
    run()
