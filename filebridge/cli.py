import asyncio
import json
import logging
import signal
import socket
from pathlib import Path
from typing import Any, List, Optional

import httpx
import typer

from filebridge.client.bridge_client import BridgeClient
from filebridge.contracts import DEFAULT_BRIDGE_HOST, DEFAULT_BRIDGE_PORT
from filebridge.errors import BridgeError, BridgeNotConnectedError
from filebridge.executor.config import (
    CONFIG_PATH,
    ExecutorConfig,
    load_executor_config,
    save_executor_config,
    validate_executor_config,
)
from filebridge.executor.server import BridgeServer
from filebridge.protocol import TOOL_NAMES, ToolName, ToolResponse

app = typer.Typer()

logger = logging.getLogger("filebridge.cli")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler()],
    )


def is_port_in_use(host: str, port: int) -> bool:
    try:
        infos = socket.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    except socket.gaierror:
        return False
    for family, socktype, proto, _, address in infos:
        try:
            with socket.socket(family, socktype, proto) as s:
                if s.connect_ex(address) == 0:
                    return True
        except OSError:
            continue
    return False


def _parse_param_pairs(pairs: List[str]) -> dict[str, Any]:
    """Parse key=value pairs into string values; typed fields are coerced on validation."""
    params: dict[str, Any] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        key = key.strip()
        if not sep or not key:
            raise ValueError(f"invalid --param '{pair}', expected key=value")
        params[key] = value
    return params


def _build_parameters(pairs: Optional[List[str]], params_json: Optional[str]) -> dict[str, Any]:
    params: dict[str, Any] = {}
    if params_json:
        try:
            loaded = json.loads(params_json)
        except ValueError as exc:
            raise ValueError(f"--params-json is not valid JSON: {exc}") from exc
        if not isinstance(loaded, dict):
            raise ValueError("--params-json must be a JSON object")
        params.update(loaded)
    params.update(_parse_param_pairs(pairs or []))
    return params


def _build_serve_config(
    base: ExecutorConfig,
    *,
    host: Optional[str],
    port: Optional[int],
    allow: Optional[List[str]],
    unrestricted: bool,
    working_dir: Optional[str],
    command_timeout_ms: Optional[int],
    max_command_timeout_ms: Optional[int],
) -> ExecutorConfig:
    """Apply CLI flags on top of persisted config."""
    return base.with_overrides(
        host=host,
        port=port,
        allowed_paths=tuple(allow) if allow else None,
        unrestricted=True if unrestricted else None,
        working_dir=working_dir,
        default_command_timeout_ms=command_timeout_ms,
        max_command_timeout_ms=max_command_timeout_ms,
    )


def _print_config(config: ExecutorConfig, json_output: bool) -> None:
    if json_output:
        typer.echo(json.dumps(config.to_dict(), indent=2))
        return
    typer.echo("EXECUTOR CONFIG")
    typer.echo(f"  listen: ws://{config.host}:{config.port}/")
    if config.allowed_paths:
        typer.echo("  allowed_paths:")
        for path in config.allowed_paths:
            typer.echo(f"    - {path}")
    else:
        typer.echo("  allowed_paths: (none)")
    typer.echo(f"  unrestricted: {str(config.unrestricted).lower()}")
    typer.echo(f"  working_dir: {config.working_dir or '(default)'}")
    typer.echo(f"  default_command_timeout_ms: {config.default_command_timeout_ms}")
    typer.echo(f"  max_command_timeout_ms: {config.max_command_timeout_ms}")


async def _serve(config: ExecutorConfig) -> None:
    server = BridgeServer.from_config(config)
    loop = asyncio.get_running_loop()
    try:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, server.request_stop)
    except NotImplementedError:
        # Windows ProactorEventLoop does not support add_signal_handler
        logger.warning("Signal handlers not supported on this platform (likely Windows).")
    await server.run_until_stopped()


async def _call_once(
    url: Optional[str],
    tool: str,
    parameters: dict[str, Any],
    timeout_ms: Optional[float],
) -> ToolResponse:
    client = BridgeClient(url)
    try:
        await client.connect()
        return await client.call(tool, parameters, timeout_ms)
    finally:
        await client.close()


async def _probe_status(url: Optional[str]) -> dict[str, Any]:
    client = BridgeClient(url)
    try:
        try:
            await client.connect()
        except BridgeNotConnectedError:
            pass
        return client.status()
    finally:
        await client.close()


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host"),
    port: Optional[int] = typer.Option(None, "--port"),
    allow: Optional[List[str]] = typer.Option(None, "--allow", help="Allowed path prefix (repeatable)."),
    unrestricted: bool = typer.Option(
        False,
        "--unrestricted",
        help="Allow every path when no --allow prefix is configured.",
    ),
    working_dir: Optional[str] = typer.Option(None, "--working-dir"),
    command_timeout_ms: Optional[int] = typer.Option(None, "--command-timeout-ms"),
    max_command_timeout_ms: Optional[int] = typer.Option(None, "--max-command-timeout-ms"),
    config_path: Path = typer.Option(CONFIG_PATH, "--config"),
    verbose: bool = typer.Option(False, "--verbose"),
):
    """Run the local bridge executor until interrupted."""
    try:
        config = _build_serve_config(
            load_executor_config(config_path),
            host=host,
            port=port,
            allow=allow,
            unrestricted=unrestricted,
            working_dir=working_dir,
            command_timeout_ms=command_timeout_ms,
            max_command_timeout_ms=max_command_timeout_ms,
        )
        config.ensure_servable()
    except ValueError as exc:
        typer.echo("SERVE: FAIL")
        typer.echo(f"  error: {exc}")
        raise typer.Exit(code=1)

    if is_port_in_use(config.host, config.port):
        typer.echo("SERVE: FAIL")
        typer.echo(f"  error: port {config.port} is already in use by another process")
        raise typer.Exit(code=1)

    _configure_logging(verbose)
    if config.allowed_paths:
        logger.info("Allowed paths: %s", ", ".join(config.allowed_paths))
    else:
        logger.warning("No allowed paths specified. All paths will be accessible.")
    try:
        asyncio.run(_serve(config))
    except OSError as exc:
        typer.echo("SERVE: FAIL")
        typer.echo(f"  error: cannot listen on {config.host}:{config.port}: {exc}")
        raise typer.Exit(code=1)


@app.command()
def call(
    tool: str = typer.Argument(..., help=f"One of: {', '.join(sorted(TOOL_NAMES))}"),
    param: Optional[List[str]] = typer.Option(None, "--param", help="key=value (repeatable)."),
    params_json: Optional[str] = typer.Option(None, "--params-json"),
    url: Optional[str] = typer.Option(None, "--url"),
    timeout_ms: Optional[float] = typer.Option(None, "--timeout-ms"),
    json_output: bool = typer.Option(False, "--json"),
):
    """Send one tool call to the local executor and print the response."""
    try:
        tool_name = ToolName(tool.strip()).value
        parameters = _build_parameters(param, params_json)
    except ValueError as exc:
        typer.echo("CALL: FAIL")
        typer.echo(f"  error: {exc}")
        raise typer.Exit(code=1)

    try:
        response = asyncio.run(_call_once(url, tool_name, parameters, timeout_ms))
    except BridgeError as exc:
        if json_output:
            typer.echo(json.dumps({"success": False, "error": str(exc), "error_code": exc.error_code}, indent=2))
        else:
            typer.echo("CALL: FAIL")
            typer.echo(f"  error: {exc}")
            typer.echo(f"  error_code: {exc.error_code}")
        raise typer.Exit(code=1)

    if json_output:
        typer.echo(json.dumps(response.to_payload(), indent=2))
    else:
        typer.echo(f"CALL: {'OK' if response.success else 'FAIL'}")
        typer.echo(f"  tool: {tool_name}")
        if response.error:
            typer.echo(f"  error: {response.error}")
            typer.echo(f"  error_code: {response.error_code}")
        if response.data is not None:
            typer.echo(f"  data: {json.dumps(response.data, indent=2)}")
    if not response.success:
        raise typer.Exit(code=1)


@app.command()
def status(
    url: Optional[str] = typer.Option(None, "--url"),
    json_output: bool = typer.Option(False, "--json"),
):
    """Check whether the executor accepts a bridge connection."""
    snapshot = asyncio.run(_probe_status(url))
    if json_output:
        typer.echo(json.dumps({"connected": snapshot["connected"], "url": snapshot["url"]}, indent=2))
    else:
        typer.echo(f"STATUS: {'CONNECTED' if snapshot['connected'] else 'DISCONNECTED'}")
        typer.echo(f"  url: {snapshot['url']}")
        if snapshot.get("last_error"):
            typer.echo(f"  last_error: {snapshot['last_error']}")
    if not snapshot["connected"]:
        raise typer.Exit(code=1)


@app.command()
def health(
    host: str = typer.Option(DEFAULT_BRIDGE_HOST, "--host"),
    port: int = typer.Option(DEFAULT_BRIDGE_PORT, "--port"),
    json_output: bool = typer.Option(False, "--json"),
):
    """Query the executor health endpoint."""
    url = f"http://{host}:{port}/health"
    try:
        response = httpx.get(url, timeout=5.0)
        response.raise_for_status()
        payload = response.json()
    except (httpx.HTTPError, ValueError) as exc:
        typer.echo("HEALTH: FAIL")
        typer.echo(f"  error: {exc}")
        raise typer.Exit(code=1)
    if json_output:
        typer.echo(json.dumps(payload, indent=2))
        return
    typer.echo(f"HEALTH: {str(payload.get('status', 'unknown')).upper()}")
    typer.echo(f"  version: {payload.get('version')}")
    typer.echo(f"  client_connected: {str(bool(payload.get('connected'))).lower()}")
    typer.echo(f"  unrestricted: {str(bool(payload.get('unrestricted'))).lower()}")


@app.command("config-show")
def config_show(
    config_path: Path = typer.Option(CONFIG_PATH, "--config"),
    json_output: bool = typer.Option(False, "--json"),
):
    """Print persisted executor configuration."""
    _print_config(load_executor_config(config_path), json_output)


@app.command("config-set")
def config_set(
    allow: Optional[List[str]] = typer.Option(None, "--allow", help="Add allowed path prefix (repeatable)."),
    clear_allowed: bool = typer.Option(False, "--clear-allowed"),
    unrestricted: Optional[bool] = typer.Option(None, "--unrestricted/--restricted"),
    port: Optional[int] = typer.Option(None, "--port"),
    working_dir: Optional[str] = typer.Option(None, "--working-dir"),
    command_timeout_ms: Optional[int] = typer.Option(None, "--command-timeout-ms"),
    max_command_timeout_ms: Optional[int] = typer.Option(None, "--max-command-timeout-ms"),
    config_path: Path = typer.Option(CONFIG_PATH, "--config"),
):
    """Update and persist executor configuration."""
    current = load_executor_config(config_path)
    allowed = [] if clear_allowed else list(current.allowed_paths)
    allowed.extend(allow or [])
    raw = current.to_dict()
    raw["allowed_paths"] = allowed
    overrides = {
        "unrestricted": unrestricted,
        "port": port,
        "working_dir": working_dir,
        "default_command_timeout_ms": command_timeout_ms,
        "max_command_timeout_ms": max_command_timeout_ms,
    }
    for key, value in overrides.items():
        if value is not None:
            raw[key] = value
    try:
        saved = save_executor_config(validate_executor_config(raw), config_path)
    except ValueError as exc:
        typer.echo("CONFIG SET: FAIL")
        typer.echo(f"  error: {exc}")
        raise typer.Exit(code=1)
    typer.echo("CONFIG SET: OK")
    _print_config(saved, json_output=False)


if __name__ == "__main__":
    app()
