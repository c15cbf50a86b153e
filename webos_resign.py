#!/usr/bin/env python3
"""
webOS IPK Resigner - CLI for resigning webOS application packages.
Supports: resign, validate, extract, pack, gen-cert, info

Usage:
    python webos_resign.py <command> [options]

Commands:
    resign    - Resign an IPK with a new certificate/key (or ares-package)
    validate  - Validate an IPK signature
    extract   - Extract IPK sections to a directory
    pack      - Rebuild an IPK from an extracted directory
    gen-cert  - Generate a self-signed development certificate
    info      - Show module and dependency status

Requirements:
    pip install cryptography typer
"""

import json
import sys
from pathlib import Path
from typing import Optional

from ipk import __version__, get_ipk_info
from ipk.core import ResignCore
from ipk.crypto_utils import generate_self_signed, write_pem_pair, get_certificate_info
from ipk.errors import IPKError
from ipk.models import ResignOptions, ResignResult


def build_cli():
    """Build the typer application."""
    try:
        import typer
        from typer import Argument, Option
    except ImportError:
        print("Error: typer is required for CLI mode.")
        print("Install with: pip install typer")
        sys.exit(1)

    cli_app = typer.Typer(
        name="webos-resign",
        help="webOS IPK Resigner - resign, validate, extract and pack IPK files",
        add_completion=False,
    )

    state = {"quiet": False, "json": False}

    def typer_log(message: str, level: str = "info") -> None:
        if state["json"] or (state["quiet"] and level == "info"):
            return
        colors = {
            "info": None,
            "success": typer.colors.GREEN,
            "warning": typer.colors.YELLOW,
            "error": typer.colors.RED,
        }
        typer.secho(message, fg=colors.get(level), err=level == "error")

    def make_core(timeout: float, work_dir: Optional[str] = None,
                  fingerprint: Optional[str] = None, keep_invalid: bool = False) -> ResignCore:
        options = ResignOptions(
            timeout_seconds=timeout,
            keep_invalid=keep_invalid,
            expected_fingerprint=fingerprint,
            work_dir=Path(work_dir) if work_dir else None,
        )
        return ResignCore(options=options, log_callback=typer_log)

    def finish(result: ResignResult) -> None:
        if state["json"]:
            typer.echo(json.dumps(result.to_dict(), indent=2))
        if not result.success:
            if not state["json"]:
                typer.secho(f"Error: {result.message}", fg=typer.colors.RED, err=True)
            raise typer.Exit(code=1)

    def load_material_or_exit(cert, key, p12, password):
        try:
            return ResignCore.load_material(cert, key, p12, password)
        except IPKError as e:
            finish(ResignResult(success=False, message=str(e), errors=[str(e)]))

    @cli_app.command("resign")
    def cmd_resign(
        ipk_file: str = Argument(..., help="Path to the IPK file to resign"),
        cert: Optional[str] = Option(None, "-c", "--cert", help="Certificate file (PEM or DER)"),
        key: Optional[str] = Option(None, "-k", "--key", help="Private key file (PEM or DER)"),
        p12: Optional[str] = Option(None, "--p12", help="PKCS#12 bundle instead of --cert/--key"),
        password: str = Option("", "--password", help="Password for the key or P12 bundle"),
        output: Optional[str] = Option(None, "-o", "--output", help="Output path for the resigned IPK"),
        timeout: float = Option(120.0, "-t", "--timeout", help="Timeout in seconds"),
        work_dir: Optional[str] = Option(None, "--work-dir", help="Base directory for job workspaces"),
        keep_invalid: bool = Option(False, "--keep-invalid", help="Keep output that fails final validation"),
    ) -> None:
        """Resign an IPK file with a new certificate (or ares-package when none is given)."""
        material = load_material_or_exit(cert, key, p12, password)
        core = make_core(timeout, work_dir, keep_invalid=keep_invalid)
        finish(core.resign(ipk_file, output, material))

    @cli_app.command("validate")
    def cmd_validate(
        ipk_file: str = Argument(..., help="Path to the IPK file to validate"),
        fingerprint: Optional[str] = Option(None, "--fingerprint", help="Required signer SHA-256 fingerprint"),
        timeout: float = Option(120.0, "-t", "--timeout", help="Timeout in seconds"),
    ) -> None:
        """Validate IPK signature integrity."""
        core = make_core(timeout, fingerprint=fingerprint)
        finish(core.validate(ipk_file))

    @cli_app.command("extract")
    def cmd_extract(
        ipk_file: str = Argument(..., help="Path to the IPK file to extract"),
        output: Optional[str] = Option(None, "-o", "--output", help="Output directory"),
        timeout: float = Option(120.0, "-t", "--timeout", help="Timeout in seconds"),
    ) -> None:
        """Extract IPK sections to a directory."""
        core = make_core(timeout)
        finish(core.extract(ipk_file, output))

    @cli_app.command("pack")
    def cmd_pack(
        tree_dir: str = Argument(..., help="Directory produced by extract"),
        output: str = Option(..., "-o", "--output", help="Output IPK path"),
        cert: Optional[str] = Option(None, "-c", "--cert", help="Certificate file to sign with"),
        key: Optional[str] = Option(None, "-k", "--key", help="Private key file to sign with"),
        p12: Optional[str] = Option(None, "--p12", help="PKCS#12 bundle instead of --cert/--key"),
        password: str = Option("", "--password", help="Password for the key or P12 bundle"),
        timeout: float = Option(120.0, "-t", "--timeout", help="Timeout in seconds"),
    ) -> None:
        """Rebuild an IPK from an extracted directory, optionally signing it."""
        material = load_material_or_exit(cert, key, p12, password)
        core = make_core(timeout)
        finish(core.pack(tree_dir, output, material))

    @cli_app.command("gen-cert")
    def cmd_gen_cert(
        cert_out: str = Option("webos-dev.crt", "--cert-out", help="Certificate output path"),
        key_out: str = Option("webos-dev.key", "--key-out", help="Private key output path"),
        common_name: str = Option("webOS Developer", "--cn", help="Certificate common name"),
        key_type: str = Option("rsa", "--key-type", help="Key type: rsa or ec"),
        days: int = Option(365, "--days", help="Validity in days"),
    ) -> None:
        """Generate a self-signed development certificate and key."""
        if key_type not in ("rsa", "ec"):
            typer.secho(f"Error: unknown key type {key_type!r}", fg=typer.colors.RED, err=True)
            raise typer.Exit(code=1)

        certificate, private_key = generate_self_signed(common_name, key_type, days)
        cert_path, key_path = write_pem_pair(certificate, private_key, cert_out, key_out)
        info = get_certificate_info(certificate)
        typer_log(f"[+] Certificate: {cert_path}", "success")
        typer_log(f"[+] Private key: {key_path}", "success")
        typer_log(f"[*] SHA-256: {info['fingerprint_sha256']}")
        typer_log(f"[*] Valid until: {info['not_after']}")

    @cli_app.command("info")
    def cmd_info() -> None:
        """Show module and dependency status."""
        typer.echo(json.dumps(get_ipk_info(), indent=2))

    @cli_app.callback(invoke_without_command=True)
    def main(
        ctx: typer.Context,
        version: bool = Option(False, "--version", "-V", help="Show version"),
        quiet: bool = Option(False, "--quiet", "-q", help="Only show warnings and errors"),
        as_json: bool = Option(False, "--json", help="Print the result as JSON"),
    ) -> None:
        """webOS IPK Resigner."""
        if version:
            typer.echo(f"webos-resign version {__version__}")
            raise typer.Exit()

        state["quiet"] = quiet
        state["json"] = as_json

        if ctx.invoked_subcommand is None:
            typer.echo(ctx.get_help())

    return cli_app


def run_cli():
    """Run the CLI interface using typer."""
    build_cli()()


if __name__ == "__main__":
    run_cli()
