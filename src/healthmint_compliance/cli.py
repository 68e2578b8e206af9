"""healthmint-compliance: PHI scanning, de-identification and audit tooling CLI."""

import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Annotated, Any

import asyncpg
import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .audit.context import create_cli_context, set_audit_context
from .audit.models import redact_audit_entries
from .config import ComplianceConfig, load_config
from .consent.models import ConsentType
from .errors import (
    ComplianceError,
    ConfigValidationError,
    DecryptionError,
    EncryptionError,
)
from .phi.encryption import KeyManager
from .phi.sanitizer import SanitizeMode
from .secrets import MaskedSecret, get_default_provider
from .service import ComplianceService, default_buffer_dir
from .storage.buffer import JsonFileBuffer


def version_callback(value: bool) -> None:
    if value:
        print(__version__)
        raise typer.Exit()


app = typer.Typer(
    name="healthmint-compliance",
    help="PHI detection, de-identification, consent and audit tooling",
)
console = Console()


@app.callback()
def main_callback(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version", callback=version_callback, is_eager=True, help="Show version and exit"
        ),
    ] = None,
) -> None:
    pass


def setup_logging(verbose: bool, quiet: bool) -> None:
    """Configure logging based on verbosity flags."""
    if quiet:
        level = logging.WARNING
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.INFO

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
    )
    logging.getLogger("healthmint_compliance").setLevel(level)


def _load_config(config_path: Path | None) -> ComplianceConfig:
    if config_path is None:
        return ComplianceConfig()
    try:
        return load_config(config_path)
    except (FileNotFoundError, ConfigValidationError) as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1) from None


def _read_json(path: Path) -> Any:
    try:
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        console.print(f"[red]Error: File not found: {path}[/red]")
        raise typer.Exit(1) from None
    except json.JSONDecodeError as e:
        console.print(f"[red]Error: {path} is not valid JSON: {e}[/red]")
        raise typer.Exit(1) from None


def _echo_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2))


def _service(config: ComplianceConfig) -> ComplianceService:
    return ComplianceService(config)


# --- PHI --------------------------------------------------------------------


@app.command()
def scan(
    input_file: Annotated[
        Path | None, typer.Argument(help="Text file to scan (reads stdin if omitted)")
    ] = None,
    text: Annotated[str | None, typer.Option("--text", "-t", help="Text to scan")] = None,
    config_path: Annotated[Path | None, typer.Option("--config", "-c", help="TOML config")] = None,
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
    fail_on_phi: bool = typer.Option(False, "--fail-on-phi", help="Exit 1 when PHI is found"),
) -> None:
    """Scan free text for PHI patterns.

    Matched values are shown masked.
    """
    if text is None:
        if input_file is not None:
            if not input_file.exists():
                console.print(f"[red]Error: File not found: {input_file}[/red]")
                raise typer.Exit(1)
            text = input_file.read_text(encoding="utf-8")
        else:
            text = sys.stdin.read()

    config = _load_config(config_path)
    service = _service(config)
    result = service.contains_phi(text)
    detections = service.detector.scan_value(text, str(input_file or "text"))

    if json_output:
        output = result.to_dict()
        output["detections"] = [
            {"type": d.pattern_name, "severity": d.severity, "masked": d.masked_value}
            for d in detections
        ]
        _echo_json(output)
    elif result.has_phi:
        console.print(f"[yellow]PHI detected: {', '.join(result.types)}[/yellow]")
        for d in detections:
            console.print(f"  {d.severity:8} {d.pattern_name:20} {d.masked_value}")
    else:
        console.print("[green]✓ No PHI patterns found[/green]")

    if fail_on_phi and result.has_phi:
        raise typer.Exit(1)


@app.command()
def sanitize(
    input_file: Annotated[Path, typer.Argument(help="JSON file to sanitize")],
    mode: Annotated[
        SanitizeMode, typer.Option("--mode", "-m", help="Sanitization mode")
    ] = SanitizeMode.DEFAULT,
    include: Annotated[
        list[str] | None, typer.Option("--include", "-i", help="Only transform these fields")
    ] = None,
    exclude: Annotated[
        list[str] | None, typer.Option("--exclude", "-x", help="Drop these fields (dotted paths)")
    ] = None,
    output: Annotated[Path | None, typer.Option("--output", "-o", help="Output file")] = None,
) -> None:
    """Write a sanitized copy of a JSON document."""
    data = _read_json(input_file)
    service = ComplianceService()
    result = service.sanitize(data, mode, include, exclude)
    if result is None and data is not None:
        console.print("[red]Error: Sanitization failed[/red]")
        raise typer.Exit(1)

    if output:
        output.write_text(json.dumps(result, indent=2) + "\n", encoding="utf-8")
        console.print(f"[green]✓ Sanitized ({mode.value}) output written to {output}[/green]")
    else:
        _echo_json(result)


@app.command()
def verify(
    input_file: Annotated[Path, typer.Argument(help="JSON file to verify")],
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
    strict: bool = typer.Option(
        False, "--strict", help="Fail unless fully de-identified, not just Safe Harbor direct"
    ),
) -> None:
    """Check a JSON document against Safe Harbor de-identification.

    Exits 1 when direct identifiers remain (or any issue, with --strict).
    """
    data = _read_json(input_file)
    report = ComplianceService().verify_deidentification(data)

    if json_output:
        _echo_json(report.to_dict())
    else:
        if report.issues:
            table = Table(title="De-identification Issues")
            table.add_column("Type")
            table.add_column("Field")
            table.add_column("Recommendation")
            for issue in report.issues:
                label = issue.type.value
                if issue.phi_types:
                    label += f" ({', '.join(issue.phi_types)})"
                table.add_row(label, issue.field, issue.recommendation)
            console.print(table)

        if report.is_deidentified:
            console.print("[green]✓ No identifiers found[/green]")
        elif report.passes_hipaa:
            console.print(
                f"[yellow]✓ Passes Safe Harbor direct-identifier check "
                f"({len(report.issues)} indirect/embedded issues)[/yellow]"
            )
        else:
            console.print("[red]✗ Direct identifiers present[/red]")

    failed = not report.is_deidentified if strict else not report.passes_hipaa
    if failed:
        raise typer.Exit(1)


# --- encryption -------------------------------------------------------------


@app.command("generate-key")
def generate_key(
    output: Annotated[
        Path | None, typer.Option("--output", "-o", help="Write key to file (mode 0600)")
    ] = None,
) -> None:
    """Generate a base64 AES-256 key for HEALTHMINT_PHI_KEY."""
    key_b64 = KeyManager.key_to_base64(KeyManager.generate_key())

    if output:
        output.write_text(key_b64 + "\n")
        os.chmod(output, 0o600)
        console.print(f"[green]✓ Key written to {output}[/green]")
        console.print(f"  Use with: export HEALTHMINT_PHI_KEY_FILE={output}")
    else:
        typer.echo(key_b64)


def _passphrase(passphrase_env: str | None) -> MaskedSecret | None:
    if passphrase_env is None:
        return None
    secret = get_default_provider().get_secret_masked(passphrase_env)
    if secret is None:
        console.print(f"[red]Error: Environment variable {passphrase_env} is not set[/red]")
        raise typer.Exit(1)
    return secret


@app.command()
def encrypt(
    value: Annotated[str, typer.Argument(help="Value to encrypt")],
    as_json: bool = typer.Option(False, "--json-value", help="Parse VALUE as JSON first"),
    passphrase_env: Annotated[
        str | None,
        typer.Option("--passphrase-env", help="Environment variable holding a passphrase"),
    ] = None,
    config_path: Annotated[Path | None, typer.Option("--config", "-c", help="TOML config")] = None,
) -> None:
    """Encrypt a single field value."""
    payload: Any = value
    if as_json:
        try:
            payload = json.loads(value)
        except json.JSONDecodeError as e:
            console.print(f"[red]Error: VALUE is not valid JSON: {e}[/red]")
            raise typer.Exit(1) from None

    service = _service(_load_config(config_path))
    try:
        token = service.cryptographer.encrypt(payload, _passphrase(passphrase_env))
    except EncryptionError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1) from None
    typer.echo(token)


@app.command()
def decrypt(
    token: Annotated[str, typer.Argument(help="Ciphertext produced by 'encrypt'")],
    passphrase_env: Annotated[
        str | None,
        typer.Option("--passphrase-env", help="Environment variable holding a passphrase"),
    ] = None,
    config_path: Annotated[Path | None, typer.Option("--config", "-c", help="TOML config")] = None,
) -> None:
    """Decrypt a value produced by 'encrypt'."""
    service = _service(_load_config(config_path))
    try:
        value = service.cryptographer.decrypt(token, _passphrase(passphrase_env))
    except DecryptionError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(2) from None
    except EncryptionError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1) from None

    typer.echo(value if isinstance(value, str) else json.dumps(value))


# --- audit ------------------------------------------------------------------

audit_app = typer.Typer(help="Audit queue inspection and redelivery (HIPAA 164.312(b))")
app.add_typer(audit_app, name="audit")

BufferDirOption = Annotated[
    Path | None,
    typer.Option("--buffer-dir", "-b", help="Local buffer directory"),
]


def _buffer(buffer_dir: Path | None) -> JsonFileBuffer:
    return JsonFileBuffer(buffer_dir or default_buffer_dir())


@audit_app.command("pending")
def audit_pending(
    buffer_dir: BufferDirOption = None,
    redact: bool = typer.Option(True, "--redact/--no-redact", help="Mask IPs and details"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
    config_path: Annotated[Path | None, typer.Option("--config", "-c", help="TOML config")] = None,
) -> None:
    """Show entries held locally: the local log and the delivery queues."""
    config = _load_config(config_path)
    service = ComplianceService(config, buffer=_buffer(buffer_dir))

    async def collect():
        return (
            await service.pipeline.local_log(),
            await service.pipeline.batch_queue(),
            await service.pipeline.retry_queue(),
            await service.pipeline.fallback_queue(),
        )

    local, batch, retry, fallback = asyncio.run(collect())

    if json_output:
        rows = redact_audit_entries(local) if redact else [e.to_dict() for e in local]
        _echo_json(
            {
                "localLog": rows,
                "batchQueue": len(batch),
                "retryQueue": [
                    {"id": r.entry.entry_id, "attempts": r.attempts, "lastAttempt": r.last_attempt}
                    for r in retry
                ],
                "awaitingCredentials": len(fallback),
            }
        )
        return

    console.print("[bold]Local Audit Buffer[/bold]")
    console.print(f"  Local log: {len(local)}")
    console.print(f"  Batch queue: {len(batch)}")
    console.print(f"  Retry queue: {len(retry)}")
    console.print(f"  Awaiting credentials: {len(fallback)}")
    if retry:
        table = Table()
        table.add_column("Entry")
        table.add_column("Action")
        table.add_column("Attempts", justify="right")
        table.add_column("Last attempt")
        for r in retry:
            table.add_row(r.entry.entry_id, r.entry.action, str(r.attempts), r.last_attempt)
        console.print(table)


@audit_app.command("retry")
def audit_retry(
    buffer_dir: BufferDirOption = None,
    base_url: Annotated[
        str | None, typer.Option("--url", "-u", help="Audit API base URL")
    ] = None,
    db_url: Annotated[str | None, typer.Option("--db", "-d", help="PostgreSQL URL")] = None,
    force: bool = typer.Option(False, "--force", "-f", help="Ignore retry backoff"),
    config_path: Annotated[Path | None, typer.Option("--config", "-c", help="TOML config")] = None,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Suppress non-error output"),
) -> None:
    """Flush the batch queue and run one retry pass."""
    config = _load_config(config_path)
    if base_url:
        config.transport.base_url = base_url
    resolved_db_url = db_url or os.environ.get("POSTGRES_URL")

    if not resolved_db_url and not config.transport.base_url:
        console.print("[red]Error: Provide --url, --db or POSTGRES_URL[/red]")
        raise typer.Exit(1)

    setup_logging(verbose, quiet)
    set_audit_context(create_cli_context())

    async def run_retry():
        pool = None
        if resolved_db_url:
            pool = await asyncpg.create_pool(resolved_db_url, min_size=1, max_size=2)
        service = ComplianceService.from_config(config, buffer=_buffer(buffer_dir), pool=pool)
        try:
            flushed = await service.pipeline.flush()
            report = await service.pipeline.retry_failed(force=force)
            return flushed, report
        finally:
            await service.close()
            if pool is not None:
                await pool.close()

    try:
        flushed, report = asyncio.run(run_retry())
    except (OSError, asyncpg.PostgresError) as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1) from None

    if not quiet:
        console.print(f"  Batch entries flushed: {flushed}")
        console.print(f"  Retried: {report.attempted}  Delivered: {report.delivered}")
        console.print(f"  Still failing: {report.failed}  Skipped: {report.skipped}")
    if report.abandoned:
        console.print(f"[red]✗ {report.abandoned} entries abandoned after max attempts[/red]")
        raise typer.Exit(1)
    console.print("[green]✓ Retry pass complete[/green]")


@audit_app.command("abandoned")
def audit_abandoned(
    buffer_dir: BufferDirOption = None,
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
    config_path: Annotated[Path | None, typer.Option("--config", "-c", help="TOML config")] = None,
) -> None:
    """List entries abandoned after exhausting delivery attempts."""
    config = _load_config(config_path)
    service = ComplianceService(config, buffer=_buffer(buffer_dir))
    abandoned = asyncio.run(service.pipeline.abandoned())

    if json_output:
        _echo_json([r.to_dict() for r in abandoned])
        return

    if not abandoned:
        console.print("[green]✓ No abandoned audit entries[/green]")
        return

    console.print(f"[yellow]{len(abandoned)} abandoned audit entries[/yellow]")
    for r in abandoned:
        console.print(
            f"  {r.entry.entry_id}  {r.entry.action}  attempts={r.attempts}  "
            f"last={r.last_attempt}"
        )


# --- consent ----------------------------------------------------------------

consent_app = typer.Typer(help="Consent ledger inspection (HIPAA 164.508)")
app.add_typer(consent_app, name="consent")


@consent_app.command("history")
def consent_history(
    subject_id: Annotated[str, typer.Argument(help="Subject identifier")],
    consent_type: Annotated[
        str | None, typer.Option("--type", "-t", help="Only this consent type")
    ] = None,
    buffer_dir: BufferDirOption = None,
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Show a subject's consent decisions in chronological order."""
    service = ComplianceService(buffer=_buffer(buffer_dir))
    try:
        records = asyncio.run(
            service.consent.get_consent_history(consent_type, subject_id=subject_id)
        )
    except ComplianceError as e:
        valid = ", ".join(t.value for t in ConsentType)
        console.print(f"[red]Error: {e.message}. Valid types: {valid}[/red]")
        raise typer.Exit(1) from None

    if json_output:
        _echo_json([r.to_dict() for r in records])
        return

    if not records:
        console.print(f"No consent decisions recorded for {subject_id}")
        return

    table = Table(title=f"Consent history: {subject_id}")
    table.add_column("Timestamp")
    table.add_column("Type")
    table.add_column("Decision")
    table.add_column("Purpose")
    for r in records:
        decision = "[green]granted[/green]" if r.granted else "[red]revoked[/red]"
        table.add_row(r.timestamp, r.consent_type.value, decision, r.purpose or "")
    console.print(table)


if __name__ == "__main__":
    app()
