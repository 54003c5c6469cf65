"""Pydantic models for the faidx FastAPI application."""
from typing import Optional, List
from pydantic import BaseModel


class IndexEntryModel(BaseModel):
    """A single .fai row."""
    name: str
    length: int
    offset: int
    lineBases: int
    lineBytes: int


class FaidxResponse(BaseModel):
    """Response model for index building."""
    entries: List[IndexEntryModel]
    recordCount: int
    skipped: int = 0
    anomalies: int = 0
    leadingOffset: int = 0
    downloadUrl: str = ""
    error_message: Optional[str] = None


class SequenceResponse(BaseModel):
    """Response model for sequence retrieval."""
    defline: str
    seq: str
    length: int
