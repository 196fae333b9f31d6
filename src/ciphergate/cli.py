"""
CLI entry point for ciphergate.

This module provides the Typer-based command-line interface. Every command
opens the ledger database, drives the ConfidentialEngine over the local
runtime, and encrypts inputs on behalf of the acting principal the way a
client SDK would.

Commands:
    init            Create a ledger and install the admin identity
    config          Show the effective configuration
    transfer-admin  Hand the admin role to another principal
    eligibility     set-policy / register
    bonus           set-policy / submit
    content         create / update / clear / show
    match           Match an interest mask against content
    result          Show (and optionally decrypt) a result handle
    disclose        Publicly disclose a result or policy parameters
    decrypt         Ask the local decryption oracle for a handle
    acl             Show grants for a handle
    events          List notifications

Architecture Note:
    The CLI is intentionally thin - it parses arguments and delegates to the
    engine. The local runtime is NOT confidential; it exists for demos.
"""

import json
import logging
import traceback
from dataclasses import dataclass, field
from pathlib import Path
from typing import Annotated, Any, Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from ciphergate import __version__
from ciphergate.engine import ConfidentialEngine
from ciphergate.errors import CipherGateError
from ciphergate.evaluator import AGE_TYPE, COUNTRY_TYPE, INVITE_TYPE
from ciphergate.runtime import LocalDecryptionOracle, LocalRuntime
from ciphergate.schema import (
    CipherType,
    EngineConfig,
    EventType,
    PolicyKind,
    load_config,
    load_eligibility_policy,
)

# Initialize Typer app with metadata
app = typer.Typer(
    name="ciphergate",
    help="Evaluate confidential policies over encrypted attributes.",
    add_completion=False,
    no_args_is_help=True,
)
eligibility_app = typer.Typer(help="Multi-factor eligibility policies.", no_args_is_help=True)
bonus_app = typer.Typer(help="Threshold-gated bonus policies.", no_args_is_help=True)
content_app = typer.Typer(help="Author content with bitmask tags.", no_args_is_help=True)
app.add_typer(eligibility_app, name="eligibility")
app.add_typer(bonus_app, name="bonus")
app.add_typer(content_app, name="content")

# Rich console for formatted output
console = Console()

PrincipalOption = Annotated[
    str,
    typer.Option("--as", help="Principal performing the operation."),
]


@dataclass
class CliState:
    """Options shared by every command."""

    config: EngineConfig = field(default_factory=EngineConfig)
    json_output: bool = False
    debug: bool = False


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold]ciphergate[/bold] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    config_path: Annotated[
        Optional[Path],
        typer.Option(
            "--config",
            "-c",
            help="Path to the engine config YAML file.",
            exists=True,
            readable=True,
            resolve_path=True,
        ),
    ] = None,
    db: Annotated[
        Optional[Path],
        typer.Option("--db", help="Path to the ledger database. Overrides the config."),
    ] = None,
    log_level: Annotated[
        Optional[str],
        typer.Option("--log-level", help="Logging level. Overrides the config."),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output results in JSON format."),
    ] = False,
    debug: Annotated[
        bool,
        typer.Option("--debug", help="Enable debug mode with full error tracebacks."),
    ] = False,
    version: Annotated[
        Optional[bool],
        typer.Option(
            "--version",
            "-v",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """
    ciphergate - confidential predicate evaluation.

    Publish policies whose constants stay encrypted and let principals obtain
    encrypted verdicts they alone may decrypt.
    """
    try:
        config = load_config(config_path) if config_path else EngineConfig()
        overrides: dict[str, Any] = {}
        if db is not None:
            overrides["db_path"] = str(db)
        if log_level is not None:
            overrides["log_level"] = log_level
        if overrides:
            config = EngineConfig.model_validate({**config.model_dump(), **overrides})
    except (OSError, ValidationError) as e:
        console.print(f"[red]Error loading config: {e}[/red]")
        raise typer.Exit(code=1)

    logging.basicConfig(
        level=config.log_level,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )
    ctx.obj = CliState(config=config, json_output=json_output, debug=debug)


# =============================================================================
# Helpers
# =============================================================================


def _state(ctx: typer.Context) -> CliState:
    return ctx.obj or CliState()


def _open_engine(ctx: typer.Context, admin: str | None = None) -> ConfidentialEngine:
    return ConfidentialEngine(_state(ctx).config, admin=admin)


def _local_runtime(engine: ConfidentialEngine) -> LocalRuntime:
    if not isinstance(engine.runtime, LocalRuntime):
        console.print("[red]The CLI requires the local runtime[/red]")
        raise typer.Exit(code=1)
    return engine.runtime


def _parse_mask(value: str) -> int:
    try:
        return int(value, 0)
    except ValueError:
        raise typer.BadParameter(f"Not an integer mask: {value}") from None


def _fail(ctx: typer.Context, error: Exception) -> None:
    """Render an error and exit with code 1."""
    state = _state(ctx)
    if state.json_output:
        if isinstance(error, CipherGateError):
            output = {"error": True, **error.to_dict()}
        else:
            output = {"error": True, "error_type": type(error).__name__, "message": str(error)}
        if state.debug:
            output["traceback"] = traceback.format_exc()
        print(json.dumps(output, indent=2, default=str))
    else:
        console.print(f"[red]{error}[/red]")
        if state.debug:
            console.print(f"[dim]{traceback.format_exc()}[/dim]")
    raise typer.Exit(code=1)


def _emit(ctx: typer.Context, data: dict[str, Any], message: str) -> None:
    if _state(ctx).json_output:
        print(json.dumps(data, indent=2, default=str))
    else:
        console.print(message)


# =============================================================================
# Setup Commands
# =============================================================================


@app.command()
def init(
    ctx: typer.Context,
    admin: Annotated[str, typer.Option("--admin", help="Admin principal to install.")],
) -> None:
    """
    Create the ledger database and install the admin identity.

    Example:
        $ ciphergate --db demo.db init --admin alice
    """
    try:
        with _open_engine(ctx, admin=admin) as engine:
            _emit(
                ctx,
                {"db_path": engine.config.db_path, "admin": engine.admin},
                f"[green]✓[/green] Ledger [bold]{engine.config.db_path}[/bold] "
                f"admin: [cyan]{engine.admin}[/cyan]",
            )
    except (CipherGateError, ValidationError) as e:
        _fail(ctx, e)


@app.command("config")
def show_config(ctx: typer.Context) -> None:
    """Show the effective configuration."""
    config = _state(ctx).config
    if _state(ctx).json_output:
        print(config.model_dump_json(indent=2))
        return
    table = Table(show_header=True, header_style="bold")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    for key, value in config.model_dump().items():
        table.add_row(key, str(value))
    console.print(table)


@app.command("transfer-admin")
def transfer_admin(
    ctx: typer.Context,
    new_admin: Annotated[str, typer.Argument(help="Principal to receive the admin role.")],
    principal: PrincipalOption,
) -> None:
    """Hand the admin role to another principal."""
    try:
        with _open_engine(ctx) as engine:
            engine.transfer_admin(principal, new_admin)
            _emit(ctx, {"admin": new_admin}, f"[green]✓[/green] Admin is now [cyan]{new_admin}[/cyan]")
    except (CipherGateError, ValidationError) as e:
        _fail(ctx, e)


# =============================================================================
# Eligibility Commands
# =============================================================================


@eligibility_app.command("set-policy")
def eligibility_set_policy(
    ctx: typer.Context,
    context_key: Annotated[str, typer.Argument(help="Policy context key.")],
    principal: PrincipalOption,
    min_age: Annotated[int, typer.Option("--min-age", help="Minimum age.")] = 0,
    require_invite: Annotated[
        bool,
        typer.Option("--require-invite/--no-require-invite", help="Require invite == 1."),
    ] = False,
    countries: Annotated[
        Optional[list[int]],
        typer.Option("--country", help="Allowed country code (repeatable)."),
    ] = None,
    policy_file: Annotated[
        Optional[Path],
        typer.Option(
            "--file",
            "-f",
            help="Load min_age/require_invite/allowed_countries from YAML.",
            exists=True,
            readable=True,
            resolve_path=True,
        ),
    ] = None,
) -> None:
    """
    Publish or replace an eligibility policy.

    Example:
        $ ciphergate eligibility set-policy club --min-age 18 --require-invite --country 840 --as alice
    """
    try:
        if policy_file is not None:
            loaded = load_eligibility_policy(policy_file)
            min_age = loaded.min_age
            require_invite = loaded.require_invite
            countries = loaded.allowed_countries
        with _open_engine(ctx) as engine:
            policy = engine.set_eligibility_policy(
                principal,
                context_key,
                min_age=min_age,
                require_invite=require_invite,
                allowed_countries=countries or [],
            )
            _emit(
                ctx,
                json.loads(policy.model_dump_json()),
                f"[green]✓[/green] Eligibility policy [bold]{context_key}[/bold]: "
                f"min_age={policy.min_age} require_invite={policy.require_invite} "
                f"countries={policy.allowed_countries}",
            )
    except (CipherGateError, ValidationError, OSError) as e:
        _fail(ctx, e)


@eligibility_app.command("register")
def eligibility_register(
    ctx: typer.Context,
    context_key: Annotated[str, typer.Argument(help="Policy context key.")],
    principal: PrincipalOption,
    age: Annotated[int, typer.Option("--age", help="Age (encrypted before submission).")],
    country: Annotated[int, typer.Option("--country", help="Country code (encrypted).")],
    invite: Annotated[int, typer.Option("--invite", help="Invite flag (encrypted).")] = 0,
) -> None:
    """Encrypt attributes and register for eligibility."""
    try:
        with _open_engine(ctx) as engine:
            runtime = _local_runtime(engine)
            bundle = runtime.encrypt_input(
                principal,
                [(age, AGE_TYPE), (country, COUNTRY_TYPE), (invite, INVITE_TYPE)],
            )
            handle = engine.register_eligibility(principal, context_key, bundle)
            _emit(ctx, {"handle": handle}, f"[green]✓[/green] Eligibility handle: [cyan]{handle}[/cyan]")
    except (CipherGateError, ValidationError) as e:
        _fail(ctx, e)


# =============================================================================
# Bonus Commands
# =============================================================================


@bonus_app.command("set-policy")
def bonus_set_policy(
    ctx: typer.Context,
    context_key: Annotated[str, typer.Argument(help="Policy context key.")],
    principal: PrincipalOption,
    thresholds: Annotated[
        list[int],
        typer.Option("--threshold", help="Minimum for the next attribute (repeatable)."),
    ],
    bonus_yes: Annotated[int, typer.Option("--bonus-yes", help="Bonus when all thresholds pass.")],
    bonus_no: Annotated[int, typer.Option("--bonus-no", help="Bonus otherwise.")] = 0,
    plain: Annotated[
        bool,
        typer.Option("--plain", help="Use the developer-mode plaintext entry point."),
    ] = False,
) -> None:
    """Publish or replace a threshold-gated bonus policy."""
    try:
        with _open_engine(ctx) as engine:
            if plain:
                policy = engine.set_bonus_policy_plain(
                    principal, context_key, thresholds, bonus_yes, bonus_no
                )
            else:
                runtime = _local_runtime(engine)
                values = [(t, CipherType.EUINT32) for t in thresholds]
                values += [(bonus_yes, CipherType.EUINT32), (bonus_no, CipherType.EUINT32)]
                bundle = runtime.encrypt_input(principal, values)
                policy = engine.set_bonus_policy(principal, context_key, bundle)
            _emit(
                ctx,
                json.loads(policy.model_dump_json()),
                f"[green]✓[/green] Bonus policy [bold]{context_key}[/bold] "
                f"with {len(policy.thresholds)} encrypted threshold(s)",
            )
    except (CipherGateError, ValidationError) as e:
        _fail(ctx, e)


@bonus_app.command("submit")
def bonus_submit(
    ctx: typer.Context,
    context_key: Annotated[str, typer.Argument(help="Policy context key.")],
    principal: PrincipalOption,
    attributes: Annotated[
        list[int],
        typer.Option("--attr", help="Attribute value, in threshold order (repeatable)."),
    ],
) -> None:
    """Encrypt attributes and compute the bonus."""
    try:
        with _open_engine(ctx) as engine:
            runtime = _local_runtime(engine)
            bundle = runtime.encrypt_input(principal, [(a, CipherType.EUINT32) for a in attributes])
            handle = engine.submit_bonus(principal, context_key, bundle)
            _emit(ctx, {"handle": handle}, f"[green]✓[/green] Bonus handle: [cyan]{handle}[/cyan]")
    except (CipherGateError, ValidationError) as e:
        _fail(ctx, e)


# =============================================================================
# Content Commands
# =============================================================================


@content_app.command("create")
def content_create(
    ctx: typer.Context,
    principal: PrincipalOption,
    mask: Annotated[str, typer.Option("--mask", help="Tag mask, e.g. 0x0F.")],
    plain: Annotated[
        bool,
        typer.Option("--plain", help="Store the mask in plaintext (developer mode)."),
    ] = False,
) -> None:
    """Create content carrying a tag mask."""
    value = _parse_mask(mask)
    try:
        with _open_engine(ctx) as engine:
            if plain:
                content = engine.create_content_plain(principal, value)
            else:
                runtime = _local_runtime(engine)
                bundle = runtime.encrypt_input(principal, [(value, engine.config.mask_type)])
                content = engine.create_content(principal, bundle)
            _emit(
                ctx,
                json.loads(content.model_dump_json()),
                f"[green]✓[/green] Content [bold]{content.content_id}[/bold] created",
            )
    except (CipherGateError, ValidationError) as e:
        _fail(ctx, e)


@content_app.command("update")
def content_update(
    ctx: typer.Context,
    content_id: Annotated[int, typer.Argument(help="Content id.")],
    principal: PrincipalOption,
    mask: Annotated[str, typer.Option("--mask", help="New tag mask.")],
    plain: Annotated[
        bool,
        typer.Option("--plain", help="Store the mask in plaintext (developer mode)."),
    ] = False,
) -> None:
    """Replace a content mask."""
    value = _parse_mask(mask)
    try:
        with _open_engine(ctx) as engine:
            if plain:
                content = engine.update_content_plain(principal, content_id, value)
            else:
                runtime = _local_runtime(engine)
                bundle = runtime.encrypt_input(principal, [(value, engine.config.mask_type)])
                content = engine.update_content(principal, content_id, bundle)
            _emit(
                ctx,
                json.loads(content.model_dump_json()),
                f"[green]✓[/green] Content [bold]{content.content_id}[/bold] updated",
            )
    except (CipherGateError, ValidationError) as e:
        _fail(ctx, e)


@content_app.command("clear")
def content_clear(
    ctx: typer.Context,
    content_id: Annotated[int, typer.Argument(help="Content id.")],
    principal: PrincipalOption,
) -> None:
    """Clear content. Cleared content cannot be reactivated."""
    try:
        with _open_engine(ctx) as engine:
            content = engine.clear_content(principal, content_id)
            _emit(
                ctx,
                json.loads(content.model_dump_json()),
                f"[green]✓[/green] Content [bold]{content.content_id}[/bold] cleared",
            )
    except (CipherGateError, ValidationError) as e:
        _fail(ctx, e)


@content_app.command("show")
def content_show(
    ctx: typer.Context,
    content_id: Annotated[int, typer.Argument(help="Content id.")],
) -> None:
    """Show a content record in any state."""
    try:
        with _open_engine(ctx) as engine:
            content = engine.db.get_content(content_id)
    except CipherGateError as e:
        _fail(ctx, e)
    if content is None:
        _emit(ctx, {"content_id": content_id, "state": None}, f"Content {content_id} never existed")
        return
    if _state(ctx).json_output:
        print(content.model_dump_json(indent=2))
        return
    table = Table(show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("id", str(content.content_id))
    table.add_row("author", content.author)
    table.add_row("state", content.state.value)
    table.add_row("mode", "plain" if content.is_plain else "encrypted")
    table.add_row("mask", hex(content.plain_mask) if content.is_plain else content.enc_mask)
    console.print(table)


# =============================================================================
# Participant Commands
# =============================================================================


@app.command()
def match(
    ctx: typer.Context,
    content_id: Annotated[int, typer.Argument(help="Content id to match against.")],
    principal: PrincipalOption,
    mask: Annotated[str, typer.Option("--mask", help="Interest mask, e.g. 0x10.")],
) -> None:
    """Encrypt an interest mask and match it against content."""
    value = _parse_mask(mask)
    try:
        with _open_engine(ctx) as engine:
            runtime = _local_runtime(engine)
            bundle = runtime.encrypt_input(principal, [(value, engine.config.mask_type)])
            handle = engine.match_content(principal, content_id, bundle)
            _emit(ctx, {"handle": handle}, f"[green]✓[/green] Match handle: [cyan]{handle}[/cyan]")
    except (CipherGateError, ValidationError) as e:
        _fail(ctx, e)


@app.command()
def result(
    ctx: typer.Context,
    kind: Annotated[PolicyKind, typer.Argument(help="bonus, eligibility or match.")],
    context_key: Annotated[str, typer.Argument(help="Policy context key or content id.")],
    principal: PrincipalOption,
    decrypt: Annotated[
        bool,
        typer.Option("--decrypt", help="Also decrypt through the local oracle."),
    ] = False,
) -> None:
    """Show the acting principal's latest result handle."""
    try:
        with _open_engine(ctx) as engine:
            handle = engine.get_result(principal, kind, context_key)
            data: dict[str, Any] = {"handle": handle}
            message = f"Handle: [cyan]{handle}[/cyan]"
            if decrypt:
                oracle = LocalDecryptionOracle(_local_runtime(engine), engine.acl)
                data["value"] = oracle.decrypt(handle, principal)
                message += f"\nValue: [bold]{data['value']}[/bold]"
            _emit(ctx, data, message)
    except CipherGateError as e:
        _fail(ctx, e)


@app.command()
def disclose(
    ctx: typer.Context,
    kind: Annotated[PolicyKind, typer.Argument(help="bonus, eligibility or match.")],
    context_key: Annotated[str, typer.Argument(help="Policy context key or content id.")],
    principal: PrincipalOption,
    policy: Annotated[
        bool,
        typer.Option("--policy", help="Disclose the policy parameters instead (admin)."),
    ] = False,
) -> None:
    """Publicly disclose a result or policy parameters. Irreversible."""
    try:
        with _open_engine(ctx) as engine:
            if policy:
                handles = engine.disclose_policy(principal, kind, context_key)
            else:
                handles = [engine.disclose_result(principal, kind, context_key)]
            _emit(
                ctx,
                {"disclosed": handles},
                f"[green]✓[/green] Publicly disclosed {len(handles)} handle(s)",
            )
    except CipherGateError as e:
        _fail(ctx, e)


@app.command("decrypt")
def decrypt_handle(
    ctx: typer.Context,
    handle: Annotated[str, typer.Argument(help="Ciphertext handle.")],
    principal: PrincipalOption,
) -> None:
    """Decrypt a handle through the local oracle (requires an ACL grant)."""
    try:
        with _open_engine(ctx) as engine:
            oracle = LocalDecryptionOracle(_local_runtime(engine), engine.acl)
            value = oracle.decrypt(handle, principal)
            _emit(ctx, {"handle": handle, "value": value}, f"Value: [bold]{value}[/bold]")
    except CipherGateError as e:
        _fail(ctx, e)


# =============================================================================
# Audit Commands
# =============================================================================


@app.command()
def acl(
    ctx: typer.Context,
    handle: Annotated[str, typer.Argument(help="Ciphertext handle.")],
) -> None:
    """Show decrypt grants and disclosure state for a handle."""
    try:
        with _open_engine(ctx) as engine:
            grantees = engine.acl.grantees(handle)
            public = engine.acl.is_publicly_disclosed(handle)
    except CipherGateError as e:
        _fail(ctx, e)
    if _state(ctx).json_output:
        print(json.dumps({"handle": handle, "grantees": grantees, "public": public}, indent=2))
        return
    console.print(f"Handle: [cyan]{handle}[/cyan]")
    console.print(f"Publicly disclosed: {'[yellow]yes[/yellow]' if public else 'no'}")
    for grantee in grantees:
        console.print(f"  • {grantee}")


@app.command()
def events(
    ctx: typer.Context,
    limit: Annotated[int, typer.Option("--limit", "-n", help="Maximum events to show.")] = 50,
    event_type: Annotated[
        Optional[EventType],
        typer.Option("--type", help="Only show this event type."),
    ] = None,
) -> None:
    """List notifications, oldest first."""
    try:
        with _open_engine(ctx) as engine:
            items = engine.events(limit=limit, event_type=event_type)
    except CipherGateError as e:
        _fail(ctx, e)

    if _state(ctx).json_output:
        print(json.dumps([json.loads(e.model_dump_json()) for e in items], indent=2))
        return

    if not items:
        console.print("[dim]No events recorded.[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("#", style="dim", width=5)
    table.add_column("Type", style="cyan")
    table.add_column("Details")
    for event in items:
        details = ", ".join(f"{k}={v}" for k, v in event.payload.items())
        if len(details) > 80:
            details = details[:77] + "..."
        table.add_row(str(event.event_id), event.event_type.value, details)
    console.print(table)


if __name__ == "__main__":
    app()
