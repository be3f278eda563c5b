#!/usr/bin/env python3
"""
HTTP front end for the IBHS certificate workflow.
Runs the same deterministic pipeline as fortified_agent.py per request.
"""
import asyncio
import base64
import logging
import os
import time
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.responses import FileResponse
from pydantic import BaseModel, Field

from fh_config import BASE_DIR, RunConfig, configure_logging
from fh_errors import AuthError, ConfigError
from fh_models import ResultRecord
from fh_sinks import ArtifactStore
from fortified_agent import run_workflow

load_dotenv()
configure_logging()
logger = logging.getLogger("fortified.api")

ARTIFACTS_DIR = Path(os.getenv("ARTIFACTS_DIR", str(BASE_DIR / "artifacts")))

# one workflow at a time; runs share the ledger and artifact files
_run_lock = asyncio.Lock()

app = FastAPI(
    title="IBHS FORTIFIED Certificate API",
    version="1.0.0",
    description="Looks up FORTIFIED certificates by address and returns metadata plus the PDF",
)


class CertificateRequest(BaseModel):
    addresses: List[str] = Field(..., min_length=1, description="One or more property addresses")
    max_items: Optional[int] = Field(None, ge=1, le=500, description="Per-run cap on processed addresses")
    polite_delay_ms: Optional[int] = Field(None, ge=0, le=10_000, description="Base delay between actions")
    include_pdf: bool = Field(True, description="Embed stored PDFs as base64")


class CertificateResult(BaseModel):
    address: str
    normalized_key: str
    status: str
    error: Optional[str] = None
    fh_number: Optional[str] = None
    approved_at: Optional[str] = None
    expiration_date: Optional[str] = None
    building_address: Optional[str] = None
    program: Optional[str] = None
    designation: Optional[str] = None
    selection_policy: Optional[str] = None
    artifact_ref: Optional[dict] = None
    processed_at: str
    artifact_created_at: Optional[str] = None
    pdf_base64: Optional[str] = Field(None, description="Base64-encoded PDF content")


class CertificateResponse(BaseModel):
    results: List[CertificateResult] = Field(default_factory=list)
    processed: int = 0
    processing_time_seconds: float = 0.0
    success: bool = True
    message: str = ""


def _to_result(record: ResultRecord, include_pdf: bool) -> CertificateResult:
    pdf_base64 = None
    path = (record.artifact_ref or {}).get("path")
    if include_pdf and path and Path(path).exists():
        try:
            with open(path, "rb") as f:
                pdf_base64 = base64.b64encode(f.read()).decode("utf-8")
        except OSError as e:
            logger.error(f"Failed to encode PDF {path}: {e}")
    return CertificateResult(**record.to_dict(), pdf_base64=pdf_base64)


@app.get("/")
async def root():
    return {
        "service": "IBHS FORTIFIED Certificate Fetcher",
        "version": "1.0.0",
        "endpoints": {
            "health": "/health",
            "fetch_certificates": "/fetch-certificates",
            "download_pdf": "/download-pdf/{filename}",
            "list_artifacts": "/list-artifacts",
        },
        "usage": {
            "method": "POST",
            "endpoint": "/fetch-certificates",
            "body": {"addresses": ["520 Novatan Rd S, Mobile, AL 36608"]},
        },
    }


@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "artifacts_dir": str(ARTIFACTS_DIR),
        "artifacts_exists": ARTIFACTS_DIR.exists(),
    }


@app.post("/fetch-certificates", response_model=CertificateResponse)
async def fetch_certificates(request: CertificateRequest):
    logger.info(f"Request received for {len(request.addresses)} address(es)")
    start = time.time()
    try:
        config = RunConfig.from_env(
            addresses=request.addresses,
            max_items=request.max_items,
            polite_delay_ms=request.polite_delay_ms,
            artifacts_dir=ARTIFACTS_DIR,
            headless=True,
            debug=False,
        )
    except ConfigError as e:
        raise HTTPException(status_code=400, detail=str(e))

    try:
        async with _run_lock:
            records = await run_workflow(config)
    except AuthError as e:
        logger.error(f"Run aborted: {e}")
        raise HTTPException(status_code=502, detail=f"Login failed: {e}")

    elapsed = round(time.time() - start, 2)
    logger.info(f"Request completed in {elapsed:.2f}s - {len(records)} processed")
    return CertificateResponse(
        results=[_to_result(r, request.include_pdf) for r in records],
        processed=len(records),
        processing_time_seconds=elapsed,
        success=True,
        message="Processed" if records else "Nothing to process (already handled or capped)",
    )


@app.get("/download-pdf/{filename}")
async def download_pdf(filename: str):
    pdf_path = ARTIFACTS_DIR / Path(filename).name
    if not pdf_path.exists():
        raise HTTPException(status_code=404, detail="PDF file not found")
    return FileResponse(path=pdf_path, media_type="application/pdf", filename=pdf_path.name)


@app.get("/list-artifacts")
async def list_artifacts():
    pdf_files = ArtifactStore(ARTIFACTS_DIR).list_keys("*.pdf")
    return {
        "artifacts_dir": str(ARTIFACTS_DIR),
        "pdf_files": pdf_files,
        "total_files": len(pdf_files),
    }


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", "8000"))
    logger.info(f"Starting certificate API on port {port}")
    uvicorn.run("fortified_api:app", host="0.0.0.0", port=port)
