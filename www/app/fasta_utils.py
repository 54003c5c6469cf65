"""
FASTA utilities module - streaming .fai index builder and random access.

Provides a leading-offset scanner, a record-by-record index builder producing
samtools-compatible index entries, and helpers to persist and consume them.
"""
import os
import enum
import logging
from dataclasses import dataclass
from typing import BinaryIO, Dict, Iterable, Iterator, List, Optional, TextIO, Tuple, Union

import regex

logger = logging.getLogger(__name__)

# Read size for the scanner and the per-line pieces of the builder
CHUNK_SIZE = 1 << 16
# Longest header prefix kept to read the sequence name
HEAD_LIMIT = 1 << 16
# Sentinel offset carried by anomaly results
INVALID_OFFSET = -1
DEFAULT_LINE_WIDTH = 70

WHITESPACE = b' \t\n\r\x0b\x0c'
NAME_RE = regex.compile(rb'>(\S*)')

Source = Union[str, 'os.PathLike[str]', BinaryIO]


class SourceUnavailable(OSError):
    """The FASTA source does not exist or cannot be read."""


class MalformedFasta(ValueError):
    """Raised when a strict index is requested and a record has uneven lines."""

    def __init__(self, mismatch: 'LineWidthMismatch'):
        self.mismatch = mismatch
        super().__init__(mismatch.describe())


class EmptyFasta(ValueError):
    """Raised when a source holds no '>' header line at all."""

    def __init__(self, source):
        self.source = source
        super().__init__(f"No FASTA records in {source}")


@dataclass
class IndexEntry:
    """One .fai row plus the running byte total through the record."""
    name: str
    seq_length: int
    offset: int
    line_bases: int
    line_bytes: int
    running_total: int

    is_valid = True

    def to_fai_line(self) -> str:
        return f"{self.name}\t{self.seq_length}\t{self.offset}\t{self.line_bases}\t{self.line_bytes}\n"


@dataclass
class LineWidthMismatch:
    """A record whose lines do not follow the geometry of its first line."""
    name: str
    line_index: int       # 1-based line number within the record body
    expected_width: int
    observed_width: int
    position: int         # byte position of the offending line
    running_total: int
    offset: int = INVALID_OFFSET
    expected_bases: int = 0
    observed_bases: int = 0

    is_valid = False

    def describe(self) -> str:
        if self.expected_width == self.observed_width:
            found = f"{self.expected_bases} bases, found {self.observed_bases}"
        else:
            found = f"{self.expected_width} bytes, found {self.observed_width}"
        return (f"Different line length in sequence '{self.name}' at body line "
                f"{self.line_index} (byte {self.position}): expected {found}")


IndexResult = Union[IndexEntry, LineWidthMismatch]


@dataclass
class FaiRecord:
    """Index fields needed for random access to one sequence."""
    length: int
    offset: int
    line_bases: int
    line_bytes: int


@dataclass
class _Line:
    width: int        # bytes on disk, terminator included
    bases: int        # width minus the terminator
    residues: int     # non-whitespace bytes
    head: bytes       # first piece of the line
    index: int
    position: int

    @property
    def blank(self) -> bool:
        return self.residues == 0


def _irregular(line: _Line, reference: _Line, last: bool = False) -> bool:
    """
    True when a line breaks the geometry set by the first body line.

    A full line must match the reference in bytes and bases, the last line
    may be shorter. Any line carrying whitespace between its bases is
    irregular since offsets could no longer be computed from the index.
    """
    if line.residues != line.bases:
        return True
    if last:
        return line.bases > reference.bases
    return line.width != reference.width or line.bases != reference.bases


class State(enum.Enum):
    SCANNING_TO_FIRST_RECORD = 'scanning'
    IN_RECORD = 'in_record'
    EMIT = 'emit'
    END = 'end'


def _open_source(path) -> BinaryIO:
    try:
        return open(path, 'rb')
    except OSError as e:
        raise SourceUnavailable(e.errno, f"Cannot open FASTA file: {path}", str(path)) from e


def get_leading_offset(source: Source, chunk_size: int = CHUNK_SIZE) -> int:
    """
    Count the bytes that precede the first '>' in a FASTA source.

    A seekable handle is left at the position it had on entry, a path is
    opened and closed here. A non-seekable handle is consumed.

    Args:
        source: FASTA path or open binary handle
        chunk_size: Read size

    Returns:
        Number of leading bytes; the full source length when no '>' exists
    """
    if isinstance(source, (str, os.PathLike)):
        with _open_source(source) as handle:
            return _scan_to_marker(handle, chunk_size)

    start = source.tell() if source.seekable() else None
    try:
        return _scan_to_marker(source, chunk_size)
    finally:
        if start is not None:
            source.seek(start)


def _scan_to_marker(handle: BinaryIO, chunk_size: int) -> int:
    count = 0
    while True:
        chunk = handle.read(chunk_size)
        if not chunk:
            return count
        pos = chunk.find(b'>')
        if pos >= 0:
            return count + pos
        count += len(chunk)


class FastaIndexer:
    """
    Pull-based builder of .fai entries over one FASTA stream.

    Each call to next_entry() consumes exactly one record and returns an
    IndexEntry, a LineWidthMismatch, or None once the stream is exhausted.
    Records with an empty name are consumed but not returned; they are
    counted in `skipped`.

    A mismatch means byte offsets past that record cannot be trusted, so by
    default the builder ends after reporting it. Callers that pass
    stop_on_mismatch=False must check `is_valid` on every result.

    A builder created from a path owns its handle and closes it on
    exhaustion or close(). A builder created from a handle never closes it.
    """

    def __init__(
        self,
        source: Source,
        stop_on_mismatch: bool = True,
        ignore_trailing_blank_lines: bool = True,
        chunk_size: int = CHUNK_SIZE
    ):
        """
        Initialize the builder.

        Args:
            source: FASTA path or open binary handle
            stop_on_mismatch: End the stream after the first LineWidthMismatch
            ignore_trailing_blank_lines: Drop blank lines at the end of a record
                body before the width check
            chunk_size: Maximum bytes held for a single line piece

        Raises:
            SourceUnavailable: If a path cannot be opened
        """
        self.stop_on_mismatch = stop_on_mismatch
        self.ignore_trailing_blank_lines = ignore_trailing_blank_lines
        self.chunk_size = chunk_size

        if isinstance(source, (str, os.PathLike)):
            self.path = os.fspath(source)
            self._handle = _open_source(source)
            self._owns_handle = True
        else:
            self.path = getattr(source, 'name', None)
            self._handle = source
            self._owns_handle = False

        self.start = self._handle.tell() if self._handle.seekable() else 0
        self.running_total = self.start
        self.leading_offset = 0
        self.skipped = 0
        self.skipped_records: List[int] = []
        self.state = State.SCANNING_TO_FIRST_RECORD
        self._pending_header: Optional[_Line] = None
        self._marker = b''

    def __iter__(self) -> Iterator[IndexResult]:
        return self

    def __next__(self) -> IndexResult:
        result = self.next_entry()
        if result is None:
            raise StopIteration
        return result

    def __enter__(self) -> 'FastaIndexer':
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    @property
    def exhausted(self) -> bool:
        return self.state is State.END

    @property
    def no_records(self) -> bool:
        """True when the whole stream was read without finding a '>' line."""
        return self.exhausted and self.running_total - self.start == self.leading_offset

    def close(self):
        """Stop producing entries and release an owned handle."""
        self.state = State.END
        self._pending_header = None
        if self._owns_handle and not self._handle.closed:
            self._handle.close()

    def next_entry(self) -> Optional[IndexResult]:
        """
        Produce the next index result in file order.

        Returns:
            IndexEntry or LineWidthMismatch, or None when no records remain
        """
        if self.state is State.SCANNING_TO_FIRST_RECORD:
            self._skip_leading_bytes()

        while self.state is State.IN_RECORD:
            header = self._pending_header
            result = self._consume_record(header)
            if result is None:
                self.skipped += 1
                self.skipped_records.append(header.position)
                logger.warning("Skipping record with empty name at byte %d of %s",
                               header.position, self.path or 'stream')
                if self._pending_header is None:
                    self.close()
                continue

            self.state = State.EMIT
            if self._pending_header is None:
                self.close()
            elif not result.is_valid and self.stop_on_mismatch:
                logger.warning("%s; stopping index", result.describe())
                self.close()
            else:
                self.state = State.IN_RECORD
            return result

        return None

    def _skip_leading_bytes(self):
        if self._handle.seekable():
            self.leading_offset = get_leading_offset(self._handle, self.chunk_size)
            self._handle.seek(self.leading_offset, os.SEEK_CUR)
        else:
            # a pipe cannot be rewound, so stop on the marker and keep it
            while True:
                byte = self._handle.read(1)
                if not byte or byte == b'>':
                    break
                self.leading_offset += 1
            self._marker = byte
        if self.leading_offset:
            logger.info("Skipping %d bytes before the first record", self.leading_offset)
        self.running_total += self.leading_offset

        self._pending_header = self._read_line(0)
        if self._pending_header is None:
            self.close()
        else:
            self.state = State.IN_RECORD

    def _read_line(self, index: int) -> Optional[_Line]:
        """Consume one line in bounded pieces, keeping only its counts."""
        position = self.running_total
        piece = self._marker + self._handle.readline(self.chunk_size)
        self._marker = b''
        if not piece:
            return None

        head = b''
        open_token = True
        width = 0
        residues = 0
        previous = b''
        while True:
            width += len(piece)
            kept = len(piece.translate(None, WHITESPACE))
            residues += kept
            # the head must hold the whole name token, bounded by HEAD_LIMIT
            if open_token:
                head += piece
                open_token = kept == len(piece) and len(head) < HEAD_LIMIT
            if piece.endswith(b'\n'):
                break
            previous = piece
            piece = self._handle.readline(self.chunk_size)
            if not piece:
                break

        terminator = 0
        if piece.endswith(b'\n'):
            terminator = 1
            if piece.endswith(b'\r\n') or (piece == b'\n' and previous.endswith(b'\r')):
                terminator = 2

        self.running_total += width
        return _Line(width, width - terminator, residues, head, index, position)

    def _consume_record(self, header: _Line) -> Optional[IndexResult]:
        """
        Read one record body up to the next header line or end of stream.

        Returns None for a record whose header has no name.
        """
        match = NAME_RE.match(header.head)
        name = match.group(1).decode('utf-8', errors='replace') if match else ''
        offset = header.position + header.width

        reference: Optional[_Line] = None
        # last line not yet known to be a full line
        held: Optional[_Line] = None
        # first irregular line in the current run of blank lines
        blank_fault: Optional[_Line] = None
        mismatch: Optional[_Line] = None
        seq_length = 0
        index = 0

        while True:
            line = self._read_line(index + 1)
            if line is None or line.head.startswith(b'>'):
                self._pending_header = line
                break
            index += 1
            seq_length += line.residues

            if reference is None:
                reference = held = line
                continue
            if line.blank and self.ignore_trailing_blank_lines:
                if blank_fault is None and _irregular(line, reference):
                    blank_fault = line
                continue

            # held and the blank run after it now have a successor
            if mismatch is None:
                if _irregular(held, reference):
                    mismatch = held
                elif blank_fault is not None:
                    mismatch = blank_fault
            held = line
            blank_fault = None

        if not name:
            return None

        if mismatch is None and held is not None and not held.blank:
            if _irregular(held, reference, last=True):
                mismatch = held

        if mismatch is not None:
            return LineWidthMismatch(
                name=name,
                line_index=mismatch.index,
                expected_width=reference.width,
                observed_width=mismatch.width,
                position=mismatch.position,
                running_total=self._record_end(),
                expected_bases=reference.bases,
                observed_bases=mismatch.residues
            )

        if seq_length == 0 or reference is None:
            return IndexEntry(name, 0, offset, 0, 0, self._record_end())

        return IndexEntry(
            name=name,
            seq_length=seq_length,
            offset=offset,
            line_bases=reference.bases,
            line_bytes=reference.width,
            running_total=self._record_end()
        )

    def _record_end(self) -> int:
        """Bytes consumed through the end of the current record."""
        if self._pending_header is None:
            return self.running_total
        return self._pending_header.position


def build_index(source: Source, stop_on_mismatch: bool = True) -> Tuple[List[IndexEntry], int]:
    """
    Build the complete index of a FASTA source.

    Args:
        source: FASTA path or open binary handle
        stop_on_mismatch: Raise on the first uneven record instead of
            collecting only the valid entries

    Returns:
        Tuple of (entries, skipped_record_count)

    Raises:
        SourceUnavailable: If the path cannot be opened
        MalformedFasta: If a record has uneven line widths and stop_on_mismatch is set
        EmptyFasta: If the source has no record header
    """
    entries = []
    with FastaIndexer(source, stop_on_mismatch=stop_on_mismatch) as indexer:
        for result in indexer:
            if not result.is_valid:
                if stop_on_mismatch:
                    raise MalformedFasta(result)
                logger.warning("%s; record left out of the index", result.describe())
                continue
            entries.append(result)
        skipped = indexer.skipped
        if indexer.no_records:
            raise EmptyFasta(indexer.path or 'stream')

    logger.info("Indexed %d records (%d skipped)", len(entries), skipped)
    return entries, skipped


def write_fai(entries: Iterable[IndexEntry], handle: TextIO) -> int:
    """
    Write entries in .fai layout.

    Returns:
        Number of rows written
    """
    count = 0
    for entry in entries:
        handle.write(entry.to_fai_line())
        count += 1
    return count


def read_fai(fai_file: str) -> Dict[str, FaiRecord]:
    """
    Load a .fai file.

    Args:
        fai_file: Path to the index file

    Returns:
        Dict mapping sequence name to FaiRecord

    Raises:
        ValueError: If a row does not have five fields
    """
    records = {}
    with open(fai_file, 'r', encoding='utf-8') as f:
        for line in f:
            if not line.strip():
                continue
            row = line.rstrip('\r\n').split('\t')
            if len(row) != 5:
                raise ValueError(f"Invalid FAI record: {line.rstrip()}")
            records[row[0]] = FaiRecord(*(int(x) for x in row[1:]))
    return records


def index_to_dict(entries: Iterable[IndexEntry]) -> Dict[str, FaiRecord]:
    """Map entry names to their random-access fields."""
    return {e.name: FaiRecord(e.seq_length, e.offset, e.line_bases, e.line_bytes) for e in entries}


def fetch_sequence(handle: BinaryIO, record: FaiRecord, start: int = 0, end: Optional[int] = None) -> str:
    """
    Read bases [start, end) of one indexed sequence.

    Args:
        handle: Open binary handle on the indexed FASTA file
        record: Index fields of the sequence
        start: 0-based start
        end: 0-based exclusive end, defaults to the sequence length

    Returns:
        The bases with line terminators removed
    """
    if end is None:
        end = record.length
    if start < 0 or end > record.length or start > end:
        raise ValueError(f"Invalid interval {start}-{end} (length {record.length})")
    if start == end:
        return ''

    first = record.offset + (start // record.line_bases) * record.line_bytes + start % record.line_bases
    last = record.offset + ((end - 1) // record.line_bases) * record.line_bytes + (end - 1) % record.line_bases

    handle.seek(first)
    data = handle.read(last - first + 1)
    return data.translate(None, WHITESPACE).decode('ascii', errors='replace')


def format_seq(seq: str, width: int = DEFAULT_LINE_WIDTH) -> str:
    """Wrap a sequence at `width` columns, one newline per line."""
    if not isinstance(width, int) or width <= 0:
        raise ValueError("width should be a positive integer")
    return ''.join(seq[i:i + width] + '\n' for i in range(0, len(seq), width))
