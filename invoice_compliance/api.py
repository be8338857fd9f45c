"""
FastAPI application for the Invoice Compliance Service.

Provides REST API endpoints for:
- Health check
- Validation of a single invoice
- Batch validation with summary
- Listing of the compliance rules
"""

from typing import List, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .config import API_HOST, API_PORT, SMALL_INVOICE_MAX, LARGE_INVOICE_MIN, REFERENCE_CURRENCY, logger
from .rules import VALIDATION_RULES
from .schemas import (
    InvoiceVerdict,
    ValidationOutput,
    ValidationRequest,
    ValidationSummary,
)
from .validator import InvoiceContractError, validate_batch, validate_invoice
from .vies import IdentityVerifier, ViesClient


# ============================================================================
# FastAPI App Configuration
# ============================================================================

app = FastAPI(
    title="Invoice Compliance Service API",
    description="""
    Austrian invoice compliance checks (§11 UStG).

    This API validates already-extracted invoice fields against the formal
    invoice requirements and returns one check per rule plus a
    traffic-light verdict.

    ## Features

    - **Validate**: Check a single invoice
    - **Validate Batch**: Check several invoices, including duplicates within the batch
    - **UID Registry**: Issuer UIDs are verified against EU VIES
    """,
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

# Configure CORS for local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# Request/Response Models
# ============================================================================

class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str


class ValidateBatchRequest(BaseModel):
    """Request body for the batch validation endpoint."""
    invoices: List[ValidationRequest]


class ValidateBatchResponse(BaseModel):
    """Response for the batch validation endpoint."""
    summary: ValidationSummary
    per_invoice_results: List[InvoiceVerdict]


# ============================================================================
# Dependencies
# ============================================================================

def get_verifier(request: Request) -> Optional[IdentityVerifier]:
    """Registry client created at startup; None when the app was not started."""
    return getattr(request.app.state, "verifier", None)


# ============================================================================
# API Endpoints
# ============================================================================

@app.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check() -> HealthResponse:
    """
    Health check endpoint.

    Returns the service status and version information.
    """
    from . import __version__
    return HealthResponse(status="ok", version=__version__)


@app.post(
    "/validate",
    response_model=ValidationOutput,
    tags=["Validation"],
    summary="Validate one invoice",
)
async def validate(
    request: ValidationRequest,
    verifier: Optional[IdentityVerifier] = Depends(get_verifier),
) -> ValidationOutput:
    """
    Validate the extracted fields of one invoice.

    Every rule produces exactly one check. The overall status is the most
    severe contribution, where optional rules count at most as WARNING and
    an unanswered registry lookup counts as PENDING.
    """
    logger.info(f"Received validation request for invoice {request.context.invoice_id}")
    return await validate_invoice(request.fields, request.context, verifier)


@app.post(
    "/validate-batch",
    response_model=ValidateBatchResponse,
    tags=["Validation"],
    summary="Validate several invoices",
)
async def validate_many(
    request: ValidateBatchRequest,
    verifier: Optional[IdentityVerifier] = Depends(get_verifier),
) -> ValidateBatchResponse:
    """
    Validate a list of invoices and summarise the verdicts.

    Invoices repeated within the batch (same number and issuer) are
    reported as duplicates.
    """
    logger.info(f"Received batch validation request for {len(request.invoices)} invoices")
    results, summary = await validate_batch(request.invoices, verifier)
    return ValidateBatchResponse(summary=summary, per_invoice_results=results)


@app.get("/rules", tags=["System"])
async def list_rules():
    """
    List all compliance rules.

    Returns each rule with its legal basis and the amount classes for which
    it is mandatory.
    """
    return {
        "total_rules": len(VALIDATION_RULES),
        "thresholds": {
            "currency": REFERENCE_CURRENCY,
            "small_invoice_max": SMALL_INVOICE_MAX,
            "large_invoice_min": LARGE_INVOICE_MIN,
        },
        "rules": [
            {
                "rule_id": rule.rule_id.value,
                "label": rule.label,
                "legal_basis": rule.legal_basis,
                "required_for": sorted(amount_class.value for amount_class in rule.required_for),
            }
            for rule in VALIDATION_RULES
        ],
    }


# ============================================================================
# Error Handlers
# ============================================================================

@app.exception_handler(InvoiceContractError)
async def contract_error_handler(request, exc):
    """Structurally unusable requests are rejected before any check runs."""
    logger.warning(f"Rejected validation request: {exc}")
    return JSONResponse(
        status_code=422,
        content={"detail": str(exc)},
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request, exc):
    """Handle unexpected exceptions."""
    logger.exception(f"Unexpected error: {exc}")
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )


# ============================================================================
# Startup/Shutdown Events
# ============================================================================

@app.on_event("startup")
async def startup_event():
    """Create the shared registry client."""
    app.state.verifier = ViesClient()
    logger.info(f"Invoice Compliance Service API starting on {API_HOST}:{API_PORT}")


@app.on_event("shutdown")
async def shutdown_event():
    """Close the registry client."""
    verifier = getattr(app.state, "verifier", None)
    if verifier is not None:
        await verifier.aclose()
    logger.info("Invoice Compliance Service API shutting down")


# ============================================================================
# Main Entry Point
# ============================================================================

def run_server():
    """Run the API server using uvicorn."""
    import uvicorn
    uvicorn.run(app, host=API_HOST, port=API_PORT)


if __name__ == "__main__":
    run_server()
