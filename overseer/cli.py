"""Typer CLI wiring for Overseer."""

from __future__ import annotations

import asyncio
import dataclasses
import json
import signal
from pathlib import Path
from typing import Any, Optional

import typer

from overseer import __version__
from overseer.config import ConfigError, OverseerConfig, load_config
from overseer.logging import configure_logging, get_logger
from overseer.providers.base import PreparedInvocation
from overseer.providers.errors import (
    ErrorKind,
    ProviderError,
    UnknownProviderError,
    UnsupportedModeError,
)
from overseer.providers.registry import (
    REGISTRY,
    auto_detect_provider,
    get_adapter,
    is_binary_available,
    select_provider,
)
from overseer.providers.types import AgentResult, InvocationMode, InvocationRequest

logger = get_logger(__name__)

app = typer.Typer(help="Run agent CLIs under supervision and normalize their results")

EXIT_AGENT_FAILURE = 1
EXIT_USAGE = 2
EXIT_CODES = {
    ErrorKind.NON_ZERO_EXIT: 3,
    ErrorKind.PARSE_FAILURE: 4,
    ErrorKind.TIMEOUT: 124,
    ErrorKind.STALL: 125,
    ErrorKind.BINARY_NOT_FOUND: 127,
    ErrorKind.KILLED: 130,
}


def _version_callback(value: bool) -> None:
    """Print the Overseer package version when requested."""

    if value:
        typer.echo(f"Overseer {__version__}")
        raise typer.Exit()


@app.callback()
def _main(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the Overseer version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    log_level: str = typer.Option(
        "",
        "--log-level",
        help="Set Overseer log level (e.g. info, warning, debug). Overrides OVERSEER_LOG_LEVEL.",
    ),
) -> None:
    """Global callback to wire shared options like --version."""

    configure_logging(log_level or None)

    return None


def _config_option(help_text: str) -> Optional[Path]:
    return typer.Option(
        None,
        "--config",
        "-c",
        exists=True,
        file_okay=True,
        dir_okay=False,
        resolve_path=True,
        help=help_text,
    )


def _usage_error(message: str) -> typer.Exit:
    typer.secho(message, err=True, fg=typer.colors.RED)
    return typer.Exit(code=EXIT_USAGE)


def _load_settings(config: Optional[Path]) -> OverseerConfig:
    try:
        return load_config(config)
    except ConfigError as exc:
        raise _usage_error(f"Configuration error: {exc}") from exc


def _binary_overrides(settings: OverseerConfig) -> dict[str, str]:
    return {
        name: provider_settings.binary
        for name, provider_settings in settings.providers.items()
        if provider_settings.binary
    }


def _read_prompt(prompt: Optional[str], mode: InvocationMode) -> str:
    if prompt is not None and prompt != "-":
        return prompt
    if mode is InvocationMode.CHAT and prompt is None:
        return ""
    stdin = typer.get_text_stream("stdin")
    if prompt is None and stdin.isatty():
        raise _usage_error("No prompt given. Pass PROMPT or pipe it on stdin.")
    return stdin.read()


def _error_payload(exc: ProviderError) -> dict[str, Any]:
    return {
        "success": False,
        "error": exc.kind.value,
        "message": exc.user_message,
        "provider": exc.provider,
        "exit_code": exc.exit_code,
        "elapsed_ms": exc.elapsed_ms,
        "stderr": exc.stderr,
    }


def _report_error(exc: ProviderError, json_output: bool) -> typer.Exit:
    if json_output:
        typer.echo(json.dumps(_error_payload(exc), indent=2))
    typer.secho(exc.user_message, err=True, fg=typer.colors.RED)
    return typer.Exit(code=EXIT_CODES[exc.kind])


async def _supervise(prepared: PreparedInvocation) -> AgentResult:
    """Run ``prepared`` with SIGINT/SIGTERM routed to the harness."""

    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, prepared.harness.cancel)
        except (NotImplementedError, RuntimeError, ValueError):
            logger.debug("Cannot install a handler for %s here", signum.name)
            continue
        installed.append(signum)
    try:
        return await prepared.run()
    finally:
        for signum in installed:
            loop.remove_signal_handler(signum)


@app.command()
def run(
    prompt: Optional[str] = typer.Argument(
        None,
        help="Prompt text; read from stdin when omitted or '-'.",
    ),
    provider: Optional[str] = typer.Option(
        None,
        "--provider",
        "-p",
        help="Provider to use (claude, codex, cursor, gemini, opencode). Overrides OVERSEER_PROVIDER.",
    ),
    model: Optional[str] = typer.Option(
        None, "--model", "-m", help="Model identifier passed to the provider CLI."
    ),
    mode: Optional[InvocationMode] = typer.Option(
        None, "--mode", case_sensitive=False, help="Invocation mode."
    ),
    cwd: Optional[Path] = typer.Option(
        None,
        "--cwd",
        exists=True,
        file_okay=False,
        dir_okay=True,
        resolve_path=True,
        help="Working directory for the agent process.",
    ),
    timeout: Optional[float] = typer.Option(
        None, "--timeout", min=0.001, help="Hard timeout in seconds."
    ),
    stall_timeout: Optional[float] = typer.Option(
        None,
        "--stall-timeout",
        min=0,
        help="Seconds without output before the run counts as stalled (0 disables).",
    ),
    context: Optional[str] = typer.Option(
        None, "--context", help="Extra context to give the agent alongside the prompt."
    ),
    config: Optional[Path] = _config_option("Path to the overseer.yaml configuration file."),
    json_output: bool = typer.Option(
        False, "--json", help="Print the normalized result as JSON."
    ),
) -> None:
    """Invoke an agent CLI once and print its normalized result."""

    settings = _load_settings(config)
    try:
        descriptor = select_provider(
            provider,
            configured=settings.provider,
            binaries=_binary_overrides(settings),
        )
    except UnknownProviderError as exc:
        raise _usage_error(str(exc)) from exc
    except ProviderError as exc:
        raise _report_error(exc, json_output) from exc

    resolved_mode = mode or settings.mode
    text = _read_prompt(prompt, resolved_mode)
    if not text.strip() and resolved_mode is not InvocationMode.CHAT:
        raise _usage_error("Prompt is empty.")
    provider_settings = settings.settings_for(descriptor.provider)
    if stall_timeout is None:
        stall_seconds = settings.stall_timeout_seconds
    else:
        stall_seconds = stall_timeout or None

    try:
        request = InvocationRequest(
            prompt=text,
            provider=descriptor.provider,
            model=model or provider_settings.model,
            mode=resolved_mode,
            working_directory=cwd,
            hard_timeout_seconds=timeout or settings.hard_timeout_seconds,
            stall_timeout_seconds=stall_seconds,
            extra_context=context,
            grace_period_seconds=settings.grace_period_seconds,
            env_overrides=provider_settings.env,
        )
        prepared = get_adapter(
            descriptor.provider, executable=provider_settings.binary
        ).prepare(request)
    except UnsupportedModeError as exc:
        raise _usage_error(str(exc)) from exc
    except ValueError as exc:
        raise _usage_error(f"Invalid request: {exc}") from exc

    try:
        result = asyncio.run(_supervise(prepared))
    except ProviderError as exc:
        raise _report_error(exc, json_output) from exc

    if json_output:
        typer.echo(json.dumps(dataclasses.asdict(result), indent=2))
    elif resolved_mode is not InvocationMode.CHAT:
        typer.echo(result.result)

    if not result.success:
        raise typer.Exit(code=EXIT_AGENT_FAILURE)


@app.command()
def providers(
    config: Optional[Path] = _config_option("Path to the overseer.yaml configuration file."),
) -> None:
    """List known providers and whether their binaries are installed."""

    settings = _load_settings(config)
    overrides = _binary_overrides(settings)
    for provider_type, descriptor in REGISTRY.items():
        binary = overrides.get(provider_type.value) or descriptor.binary
        available = is_binary_available(binary)
        modes = ",".join(sorted(mode.value for mode in descriptor.supported_modes))
        status = "available" if available else "missing"
        line = f"{provider_type.value:<9} {binary:<10} {status:<9} modes={modes}"
        if not available:
            line += f"  install: {descriptor.install_hint}"
        typer.echo(line)


@app.command()
def detect(
    config: Optional[Path] = _config_option("Path to the overseer.yaml configuration file."),
) -> None:
    """Print the provider auto-detection would pick."""

    settings = _load_settings(config)
    descriptor = auto_detect_provider(_binary_overrides(settings))
    if descriptor is None:
        typer.secho("No supported agent CLI found in PATH.", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=EXIT_CODES[ErrorKind.BINARY_NOT_FOUND])
    typer.echo(descriptor.provider.value)


def main() -> None:
    """Entry point for console_scripts."""

    app()


if __name__ == "__main__":  # pragma: no cover - manual execution
    main()
