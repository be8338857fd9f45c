"""
Command-line interface for the Invoice Compliance Service.

Provides the following commands:
- validate: Validate invoice JSON and generate a report
- rules: List the compliance rules
- version: Show version information
"""

import asyncio
import json
from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError

from .config import TrafficLightStatus, logger
from .rules import VALIDATION_RULES
from .schemas import ValidationReport, ValidationRequest
from .validator import InvoiceContractError, create_validation_report, format_summary_text
from .vies import ViesClient


# Create Typer app
app = typer.Typer(
    name="invoice-compliance",
    help="Austrian invoice compliance checks (§11 UStG)",
    add_completion=False,
)


async def _run_validation(requests: list[ValidationRequest], offline: bool) -> ValidationReport:
    if offline:
        return await create_validation_report(requests, verifier=None)
    async with ViesClient() as client:
        return await create_validation_report(requests, verifier=client)


@app.command()
def validate(
    input_file: Path = typer.Option(
        ...,
        "--input",
        "-i",
        help="Input JSON file with one or more {fields, context} objects",
        exists=True,
        file_okay=True,
        dir_okay=False,
        resolve_path=True,
    ),
    report: Optional[Path] = typer.Option(
        None,
        "--report",
        "-r",
        help="Write the full validation report to this JSON file",
    ),
    offline: bool = typer.Option(
        False,
        "--offline",
        help="Skip the VIES registry lookup (UID checks are reported PENDING)",
    ),
    fail_on_invalid: bool = typer.Option(
        False,
        "--fail-on-invalid",
        help="Exit with non-zero status if any invoice is INVALID",
    ),
) -> None:
    """
    Validate invoices from a JSON file.

    Reads already-extracted invoice fields, runs every compliance rule and
    prints a summary; the full per-invoice report can be written to a file.
    """
    typer.echo(f"Validating invoices from: {input_file}")

    try:
        with open(input_file, 'r', encoding='utf-8') as f:
            invoice_data = json.load(f)

        if not isinstance(invoice_data, list):
            invoice_data = [invoice_data]

        requests = [ValidationRequest.model_validate(item) for item in invoice_data]

        if not requests:
            typer.echo("No invoices found in input file.", err=True)
            raise typer.Exit(code=1)

        validation_report = asyncio.run(_run_validation(requests, offline))

    except typer.Exit:
        raise
    except json.JSONDecodeError as e:
        typer.echo(f"Error: Invalid JSON in input file: {e}", err=True)
        raise typer.Exit(code=1)
    except (ValidationError, InvoiceContractError) as e:
        typer.echo(f"Error: Invalid invoice data: {e}", err=True)
        raise typer.Exit(code=1)
    except Exception as e:
        typer.echo(f"Error during validation: {e}", err=True)
        logger.exception("Validation failed")
        raise typer.Exit(code=1)

    if report is not None:
        with open(report, 'w', encoding='utf-8') as f:
            json.dump(validation_report.model_dump(mode="json"), f, indent=2, ensure_ascii=False)

    summary = validation_report.summary
    typer.echo("\n" + format_summary_text(summary))
    if report is not None:
        typer.echo(f"\n[OK] Validation report saved to: {report}")

    # Show details of invoices that need attention
    flagged = [
        r for r in validation_report.per_invoice_results
        if r.output.overall_status != TrafficLightStatus.VALID
    ]
    if flagged:
        typer.echo("\nInvoices needing attention:")
        for r in flagged[:5]:
            typer.echo(f"  {r.invoice_id}: {r.output.overall_status.value} ({r.output.amount_class.value})")
            for check in r.output.checks:
                if check.status != TrafficLightStatus.VALID:
                    typer.echo(f"    - [{check.status.value}] {check.rule.value}: {check.message}")
        if len(flagged) > 5:
            typer.echo(f"  ... and {len(flagged) - 5} more")

    if fail_on_invalid and summary.invalid_invoices > 0:
        raise typer.Exit(code=1)


@app.command()
def rules() -> None:
    """List the compliance rules with their legal basis."""
    for rule in VALIDATION_RULES:
        required = ", ".join(sorted(c.value for c in rule.required_for)) or "never"
        typer.echo(f"{rule.rule_id.value:<20} {rule.legal_basis:<40} required: {required}")


@app.command()
def version() -> None:
    """Show version information."""
    from . import __version__
    typer.echo(f"Invoice Compliance Service v{__version__}")


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
