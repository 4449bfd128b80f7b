"""
Core Host CLI

Thin wrapper around the CoreHost facade for inspecting zones, policies,
snapshots, signing keys, packs and boot health.

Usage:
    corehost zones [--json]
    corehost classify <path> [--json]
    corehost guard <path> --agent-type self_mod [--override] [--confirmed]
    corehost instructions <path> [--json]
    corehost snapshot create --out <file> [--zone ui] [--kind platform] [--path /ui/x]
    corehost snapshot diff <before> <after> [--json]
    corehost keys [--show-public]
    corehost hash <file>
    corehost packs list [--json]
    corehost packs verify <bundle-file>
    corehost boot status [--json]
    corehost boot request-safe-mode <reason>
"""

from __future__ import annotations

import json as json_module
import logging
from pathlib import Path
from typing import Any, List, Optional

import typer
from pydantic import ValidationError

from . import CoreHost
from .config import load_config
from .models import GuardContext, Snapshot, SnapshotOptions, ZoneKind
from .pack_service import verify_bundle
from .signing import hash_canonical_json
from .snapshots import diff_snapshots
from .state_store import CoreHostError

app = typer.Typer(
    name="corehost",
    help="Core Host - safe self-modification toolkit",
    no_args_is_help=True,
)

snapshot_app = typer.Typer(name="snapshot", help="Snapshot commands")
packs_app = typer.Typer(name="packs", help="Pack commands")
boot_app = typer.Typer(name="boot", help="Boot health commands")
app.add_typer(snapshot_app, name="snapshot")
app.add_typer(packs_app, name="packs")
app.add_typer(boot_app, name="boot")


@app.callback()
def main_callback(
    ctx: typer.Context,
    project_root: Optional[Path] = typer.Option(None, "--project-root", help="Project root directory"),
    home: Optional[Path] = typer.Option(None, "--home", help="App home directory"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Core Host command-line interface."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    ctx.obj = {"project_root": project_root, "home": home}


def get_host(ctx: typer.Context) -> CoreHost:
    """Build a CoreHost from the global options."""
    options = ctx.obj or {}
    config = load_config(project_root=options.get("project_root"), app_home=options.get("home"))
    return CoreHost(config)


def output_json(data: Any) -> None:
    """Output data as JSON."""
    typer.echo(json_module.dumps(data, indent=2, default=str))


def output_error(message: str) -> None:
    """Output error message."""
    typer.secho(f"Error: {message}", fg=typer.colors.RED, err=True)


def output_success(message: str) -> None:
    """Output success message."""
    typer.secho(message, fg=typer.colors.GREEN)


def output_warning(message: str) -> None:
    """Output warning message."""
    typer.secho(f"Warning: {message}", fg=typer.colors.YELLOW)


def read_json_file(path: Path) -> Any:
    try:
        return json_module.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        output_error(f"Cannot read {path}: {e}")
        raise typer.Exit(1)


def load_snapshot_file(path: Path) -> Snapshot:
    try:
        return Snapshot.model_validate(read_json_file(path))
    except ValidationError as e:
        output_error(f"{path} is not a snapshot ({e.error_count()} error(s))")
        raise typer.Exit(1)


# =============================================================================
# Zone Commands
# =============================================================================

@app.command("zones")
def list_zones(
    ctx: typer.Context,
    json: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """List configured zones."""
    host = get_host(ctx)
    zones = host.zones.get_zones()

    if json:
        output_json({"zones": [z.to_json_dict() for z in zones]})
        return

    for zone in zones:
        typer.echo(f"{zone.virtual_root:<16} {zone.kind.value:<9} {', '.join(zone.roots)}")


@app.command("classify")
def classify(
    ctx: typer.Context,
    path: str = typer.Argument(..., help="Virtual, absolute or project-relative path"),
    json: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Classify a path into its zone."""
    host = get_host(ctx)
    classification = host.zones.classify_path(path)

    if json:
        output_json(classification.to_json_dict())
        return

    zone = classification.zone
    typer.echo(f"Absolute: {classification.absolute_path}")
    typer.echo(f"Zone:     {zone.name + ' (' + zone.kind.value + ')' if zone else '-'}")
    typer.echo(f"Virtual:  {classification.virtual_path}")
    typer.echo(f"Project:  {classification.project_relative_path}")


@app.command("guard")
def guard(
    ctx: typer.Context,
    path: str = typer.Argument(..., help="Path to check"),
    agent_type: str = typer.Option("self_mod", "--agent-type", help="Agent type performing the write"),
    override: bool = typer.Option(False, "--override", help="Request a guard override"),
    confirmed: bool = typer.Option(False, "--confirmed", help="User confirmed the action"),
    json: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Check whether an agent may write to a path."""
    host = get_host(ctx)
    result = host.zones.enforce_guard(
        path,
        GuardContext(agent_type=agent_type, override_guard=override, user_confirmed=confirmed),
    )

    if json:
        output_json(result.to_json_dict())
    elif result.ok:
        output_success(f"Allowed: {result.classification.virtual_path}")
    else:
        output_error(result.reason or "Denied")

    if not result.ok:
        raise typer.Exit(1)


@app.command("instructions")
def instructions(
    ctx: typer.Context,
    path: str = typer.Argument(..., help="Path to evaluate"),
    json: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Evaluate the INSTRUCTIONS.md chain for a path."""
    host = get_host(ctx)
    evaluation = host.instructions.get_instructions_for_path(path)

    if json:
        data = evaluation.to_json_dict()
        data["instructionFiles"] = host.instructions.summarize_instruction_files(evaluation.instruction_files)
        output_json(data)
        return

    typer.echo(f"Path: {evaluation.classification.virtual_path}")
    typer.echo(f"Blocked: {'yes' if evaluation.blocked else 'no'}")
    for reason in evaluation.block_reasons:
        output_warning(reason)
    for file in evaluation.instruction_files:
        typer.echo(f"  source: {file.file_path}")
    for invariant in evaluation.invariants:
        typer.echo(f"  invariant: {invariant}")
    for note in evaluation.compatibility_notes:
        typer.echo(f"  note: {note}")


# =============================================================================
# Snapshot Commands
# =============================================================================

@snapshot_app.command("create")
def snapshot_create(
    ctx: typer.Context,
    out: Path = typer.Option(..., "--out", "-o", help="Output file"),
    zone: Optional[List[str]] = typer.Option(None, "--zone", help="Zone name (repeatable)"),
    kind: Optional[List[ZoneKind]] = typer.Option(None, "--kind", help="Zone kind (repeatable)"),
    path: Optional[List[str]] = typer.Option(None, "--path", help="Restrict to path (repeatable)"),
):
    """Capture a snapshot to a JSON file."""
    host = get_host(ctx)
    snapshot = host.snapshots.create_snapshot(SnapshotOptions(
        zone_names=zone or None,
        zone_kinds=kind or None,
        subset_paths=path or None,
    ))

    try:
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text(json_module.dumps(snapshot.to_json_dict(), indent=2) + "\n", encoding="utf-8")
    except OSError as e:
        output_error(str(e))
        raise typer.Exit(1)
    output_success(f"Snapshot {snapshot.id}: {len(snapshot.files)} file(s) -> {out}")


@snapshot_app.command("diff")
def snapshot_diff(
    before: Path = typer.Argument(..., help="Earlier snapshot file"),
    after: Path = typer.Argument(..., help="Later snapshot file"),
    json: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Compare two snapshot files."""
    diffs = diff_snapshots(load_snapshot_file(before), load_snapshot_file(after))

    if json:
        output_json({"diffs": [
            {"virtualPath": d.virtual_path, "zone": d.zone, "changeType": d.change_type.value}
            for d in diffs
        ]})
        return

    if not diffs:
        typer.echo("No differences.")
    for diff in diffs:
        typer.echo(f"  {diff.change_type.value:<9} {diff.virtual_path}")


# =============================================================================
# Signing Commands
# =============================================================================

@app.command("keys")
def keys(
    ctx: typer.Context,
    show_public: bool = typer.Option(False, "--show-public", help="Print the public key PEM"),
):
    """Ensure this device has a signing key pair."""
    host = get_host(ctx)
    try:
        pair = host.signing_keys()
    except CoreHostError as e:
        output_error(str(e))
        raise typer.Exit(1)

    output_success(f"Signing key at {host.state.device_key_path}")
    if show_public:
        typer.echo(pair.public_key_pem.rstrip())


@app.command("hash")
def hash_file(
    file: Path = typer.Argument(..., help="JSON file to hash"),
):
    """Print the canonical JSON hash of a file."""
    typer.echo(hash_canonical_json(read_json_file(file)).hash_hex)


# =============================================================================
# Pack Commands
# =============================================================================

@packs_app.command("list")
def packs_list(
    ctx: typer.Context,
    json: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """List pack installations."""
    host = get_host(ctx)
    installations = host.state.load_pack_installations()

    if json:
        output_json({"installations": [i.to_json_dict() for i in installations]})
        return

    if not installations:
        typer.echo("No pack installations.")
        return
    for item in installations:
        typer.echo(f"  {item.pack_id}@{item.version}  {item.status.value}  ({item.install_id})")
        if item.last_error:
            output_warning(f"    {item.last_error}")


@packs_app.command("verify")
def packs_verify(
    bundle_file: Path = typer.Argument(..., help="Pack bundle JSON file"),
):
    """Verify a bundle's hash and signature."""
    bundle = read_json_file(bundle_file)
    if not isinstance(bundle, dict):
        output_error("Bundle must be a JSON object")
        raise typer.Exit(1)

    verification = verify_bundle(bundle)
    typer.echo(f"Hash: {verification.hash_hex}")
    if not verification.hash_matches:
        output_error("Bundle hash mismatch")
        raise typer.Exit(1)
    if not verification.signature_valid:
        output_error("Bundle signature is invalid")
        raise typer.Exit(1)
    output_success("Bundle verified")


# =============================================================================
# Boot Commands
# =============================================================================

@boot_app.command("status")
def boot_status(
    ctx: typer.Context,
    json: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Show the last boot status and any pending safe-mode request."""
    host = get_host(ctx)
    boot = host.state.get_last_boot_status()
    trigger = host.state.get_safe_mode_trigger()

    if json:
        output_json({
            "boot": boot.to_json_dict() if boot else None,
            "safeModeTrigger": trigger.to_json_dict() if trigger else None,
        })
        return

    if boot is None:
        typer.echo("No boot recorded.")
    else:
        typer.echo(f"Boot {boot.boot_id}: {boot.status.value}")
        if boot.safe_mode_applied:
            typer.echo("  Safe mode applied")
        if boot.failure_reason:
            output_warning(boot.failure_reason)
    if trigger is not None:
        output_warning(f"Safe mode requested: {trigger.reason}")


@boot_app.command("request-safe-mode")
def boot_request_safe_mode(
    ctx: typer.Context,
    reason: str = typer.Argument(..., help="Why the next startup should offer a revert"),
):
    """Ask the next startup check to offer a revert."""
    host = get_host(ctx)
    if host.safe_mode.request_safe_mode(reason) is None:
        output_error("Could not record the safe mode request.")
        raise typer.Exit(1)
    output_success("Safe mode will be offered on next startup.")


def main():
    """Entry point for CLI."""
    app()


if __name__ == "__main__":
    main()
