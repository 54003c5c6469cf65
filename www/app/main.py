"""
Faidx FastAPI Application

A FastAPI-based service that builds random-access indices for FASTA
datasets and serves subsequences through them.
"""
import os
import sys
import random
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, FileResponse

import faidx_service
from faidx_service import (
    DatasetNotFound,
    index_dataset,
    get_config,
    get_sequence
)
from fasta_utils import EmptyFasta, MalformedFasta, SourceUnavailable
from schemas import FaidxResponse, SequenceResponse

logging.basicConfig(stream=sys.stderr, level=logging.INFO)
logger = logging.getLogger(__name__)

# Configuration loaded at startup
_config = None
RANDOM_MAX = 10000000


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler - load config at startup."""
    global _config
    try:
        _config = get_config('faidx')
    except (OSError, ValueError) as e:
        logger.warning("Could not load config: %s", e)
        _config = {}
    yield


app = FastAPI(
    title="Faidx",
    description="Random-access index service for FASTA sequence files",
    version="1.0.0",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_request_id() -> str:
    """Generate a unique request ID."""
    return str(random.randint(1, RANDOM_MAX))


def error_response(message: str, status_code: int) -> JSONResponse:
    return JSONResponse(content={"error": message}, status_code=status_code)


def download_response(filename: str):
    file_path = os.path.join(faidx_service.TMP_DIR, os.path.basename(filename))
    if os.path.exists(file_path):
        return FileResponse(
            file_path,
            filename=os.path.basename(filename),
            media_type='application/text'
        )
    return error_response("File not found", 404)


@app.get("/")
async def hello():
    """Health check endpoint."""
    return "Hello, faidx is up!"


@app.get("/faidx")
@app.post("/faidx")
async def faidx(
    request: Request,
    conf: Optional[str] = Query(None),
    file: Optional[str] = Query(None),
    dataset: Optional[str] = Query(None),
    region: Optional[str] = Query(None),
    strict: bool = Query(True)
):
    """
    Index building and sequence retrieval endpoint.

    Supports both GET and POST methods with the following parameters:
    - conf: Configuration name to retrieve
    - file: Generated index file to download
    - dataset: Dataset name
    - region: samtools-style region ('name', 'name:start-end') to retrieve
    - strict: Stop at the first record with uneven line widths
    """
    # Handle form data for POST
    if request.method == "POST":
        form = await request.form()
        conf = form.get('conf', conf)
        file = form.get('file', file)
        dataset = form.get('dataset', dataset)
        region = form.get('region', region)
        strict = str(form.get('strict', strict)).lower() not in ('0', 'false', 'no')

    # Return configuration
    if conf:
        try:
            return JSONResponse(content=get_config(conf))
        except OSError:
            return error_response(f"Unknown configuration: {conf}", 404)

    # Return file download
    if file:
        return download_response(file)

    if not dataset:
        return error_response("Dataset is required", 400)

    try:
        # Return sequence
        if region:
            data = get_sequence(dataset, region)
            return JSONResponse(content=SequenceResponse(**data).model_dump())

        result = index_dataset(dataset, stop_on_mismatch=strict, request_id=get_request_id())
    except (DatasetNotFound, SourceUnavailable):
        return error_response(f"Dataset not found: {dataset}", 404)
    except KeyError as e:
        return error_response(f"Sequence not found: {e.args[0]}", 404)
    except (MalformedFasta, EmptyFasta) as e:
        return error_response(str(e), 422)
    except ValueError as e:
        return error_response(str(e), 400)

    if strict and result["anomalies"]:
        return error_response(result["error_message"], 422)

    return JSONResponse(content=FaidxResponse(**result).model_dump())


@app.get("/download/{filename}")
async def download_file(filename: str):
    """
    Download a generated index file.

    Args:
        filename: Name of the file to download
    """
    return download_response(filename)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
