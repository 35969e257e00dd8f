from __future__ import annotations

from pathlib import Path

import anyio
import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .config_store import CONFIG_DIR, get_config_path, write_raw_toml
from .logging import get_logger, setup_logging, suppress_logs
from .settings import (
    ConfigError,
    DispatchSettings,
    GeminiSettings,
    HiloSettings,
    TimingSettings,
    load_settings,
)

logger = get_logger(__name__)
console = Console()


def _mask_key(settings: HiloSettings) -> str:
    secret = (
        settings.gemini.api_key
        if settings.backend.provider == "gemini"
        else settings.openai.api_key
    )
    if secret is None:
        return "***"
    key = secret.get_secret_value()
    if len(key) > 10:
        return key[:5] + "..." + key[-4:]
    return "***"


def _print_version_and_exit() -> None:
    typer.echo(__version__)
    raise typer.Exit()


def _version_callback(value: bool) -> None:
    if value:
        _print_version_and_exit()


def _load_or_exit(root: Path | None) -> HiloSettings:
    """Load settings and validate credentials, exiting 1 on any problem."""
    try:
        settings = load_settings(root)
        settings.require_credentials()
    except ConfigError as e:
        typer.echo(f"error: {e}", err=True)
        raise typer.Exit(code=1)
    return settings


app = typer.Typer(
    add_completion=False,
    help="Bridge bursty chat conversations to an AI assistant (OpenAI or Gemini).",
)


@app.callback()
def app_main(
    version: bool = typer.Option(
        False,
        "--version",
        help="Show the version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """Hilo CLI."""


@app.command("init", help="Write a starter .hilo/hilo.toml in [FOLDER].")
def init_command(
    folder: Path = typer.Argument(
        Path("."),
        help="Directory to create the config in (defaults to current directory)",
    ),
    provider: str = typer.Option(
        "openai", "--provider", help="Assistant backend: openai or gemini."
    ),
    assistant_id: str = typer.Option(
        "", "--assistant-id", help="OpenAI assistant id (asst_...)"
    ),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing config."),
) -> None:
    if provider not in ("openai", "gemini"):
        typer.echo(f"error: unknown provider {provider!r} (openai or gemini)", err=True)
        raise typer.Exit(code=1)
    config_path = get_config_path(folder)
    if config_path.exists() and not force:
        typer.echo(f"error: config already exists at {config_path}", err=True)
        raise typer.Exit(code=1)

    data = {
        "backend": {"provider": provider},
        "openai": {"assistant_id": assistant_id},
        "gemini": {"model": GeminiSettings().model},
        "timing": TimingSettings().model_dump(),
        "dispatch": DispatchSettings().model_dump(),
    }
    write_raw_toml(data, config_path)
    typer.echo(f"✓ Config saved to {config_path}")
    typer.echo("")
    typer.echo("Next steps:")
    if provider == "gemini":
        typer.echo("  export HILO__GEMINI__API_KEY=...")
    else:
        typer.echo("  export HILO__OPENAI__API_KEY=sk-...")
    typer.echo("  hilo check")


@app.command("check", help="Validate configuration and show effective settings.")
def check_command(
    root: Path = typer.Option(
        None, "--root", help=f"Directory holding {CONFIG_DIR}/ (searched upward by default)"
    ),
) -> None:
    with suppress_logs(level="error"):
        settings = _load_or_exit(root)

    timing = settings.timing
    table = Table(show_header=False, box=None)
    table.add_column("Key", style="cyan")
    table.add_column("Value")

    table.add_row("Backend", settings.backend.provider)
    if settings.backend.provider == "gemini":
        table.add_row("Model", settings.gemini.model)
    else:
        table.add_row("Assistant", settings.openai.assistant_id)
    table.add_row("API key", _mask_key(settings))
    table.add_row("Debounce window", f"{timing.debounce_window_s}s")
    table.add_row("Manual debounce window", f"{timing.manual_debounce_window_s}s")
    table.add_row("Dispatch cooldown", f"{timing.dispatch_cooldown_s}s")
    table.add_row("Request timeout", f"{timing.request_timeout_s}s")
    table.add_row("Max attempts", str(settings.dispatch.max_attempts))
    table.add_row("Max queue size", str(settings.dispatch.max_queue_size))
    table.add_row("Self-echo retention", f"{timing.self_echo_ttl_s}s")
    table.add_row(
        "Thread bindings",
        f"{settings.bindings.max_entries} max, {settings.bindings.ttl_s}s idle TTL",
    )

    console.print("[bold]Configuration OK[/bold]")
    console.print(table)


@app.command("console", help="Chat with the assistant from this terminal.")
def console_command(
    conversation: str = typer.Option(
        "console@s.whatsapp.net", "--conversation", help="Conversation address to simulate."
    ),
    root: Path = typer.Option(None, "--root", help=f"Directory holding {CONFIG_DIR}/"),
    debug: bool = typer.Option(False, "--debug/--no-debug", help="Verbose logging."),
) -> None:
    setup_logging(debug=debug)
    settings = _load_or_exit(root)
    typer.echo("Type messages; prefix with '>>' to send as the operator. Ctrl-D to quit.")
    try:
        anyio.run(_run_console, settings, conversation)
    except KeyboardInterrupt:
        logger.info("shutdown.interrupted")
        raise typer.Exit(code=130)


async def _run_console(settings: HiloSettings, address: str) -> None:
    from .backends import create_backend
    from .bridge import BridgeConfig, run_bridge
    from .transports import ConsoleTransport

    transport = ConsoleTransport(address=address)
    async with create_backend(settings) as backend:
        cfg = BridgeConfig(transport=transport, backend=backend, settings=settings)
        async with anyio.create_task_group() as tg:
            tg.start_soon(transport.read_input)
            await run_bridge(cfg, transport.events())
            tg.cancel_scope.cancel()


def main() -> None:
    app()


if __name__ == "__main__":
    main()
