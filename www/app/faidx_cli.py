#!/usr/bin/env python3
"""
Index a FASTA file in the same manner as 'samtools faidx'.

Usage:
    faidx genome.fa                  # writes genome.fa.fai
    faidx -o - genome.fa             # index to stdout
    faidx genome.fa chr1:100-200     # print regions as FASTA

Exit status: 0 success, 1 file not found, 3 malformed FASTA, 4 unknown region.
"""
import sys
import argparse
import logging

from fasta_utils import (
    DEFAULT_LINE_WIDTH,
    EmptyFasta,
    FastaIndexer,
    SourceUnavailable,
    fetch_sequence,
    format_seq,
    index_to_dict,
    write_fai
)
from faidx_service import parse_region

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_NOT_FOUND = 1
EXIT_MALFORMED = 3
EXIT_BAD_REGION = 4


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Build a .fai random-access index for a FASTA file',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Write genome.fa.fai
  faidx genome.fa

  # Keep indexing past records with uneven line widths
  faidx --continue-on-error -o genome.partial.fai genome.fa

  # Extract regions
  faidx genome.fa chr1 chr2:1,000-2,000
        """
    )
    parser.add_argument('fasta', help='Input FASTA file')
    parser.add_argument('regions', nargs='*', help="Regions to print ('name', 'name:start-end')")
    parser.add_argument('-o', '--output', help="Index output file (default: FASTA.fai, '-' for stdout)")
    parser.add_argument('-w', '--width', type=int, default=DEFAULT_LINE_WIDTH,
                        help=f'Line width for printed regions (default: {DEFAULT_LINE_WIDTH})')
    parser.add_argument('--continue-on-error', action='store_true',
                        help='Report records with uneven line widths and keep indexing')
    parser.add_argument('-q', '--quiet', action='store_true', help='Only log errors')
    return parser


def index_fasta(fasta: str, continue_on_error: bool = False):
    """
    Drain the index builder for one file.

    Returns:
        Tuple of (entries, anomalies)

    Raises:
        EmptyFasta: If the file has no record header
    """
    entries = []
    anomalies = []
    with FastaIndexer(fasta, stop_on_mismatch=not continue_on_error) as indexer:
        for result in indexer:
            if result.is_valid:
                entries.append(result)
            else:
                anomalies.append(result)
        if indexer.skipped:
            logger.warning("%d record(s) with an empty name were skipped", indexer.skipped)
        if indexer.no_records:
            raise EmptyFasta(fasta)
    return entries, anomalies


def print_regions(fasta: str, entries, regions, width: int, out) -> int:
    records = index_to_dict(entries)
    with open(fasta, 'rb') as fh:
        for region in regions:
            try:
                if region in records:
                    name, start, end = region, 0, None
                else:
                    name, start, end = parse_region(region)
                record = records[name]
                end = record.length if end is None else min(end, record.length)
                seq = fetch_sequence(fh, record, start, end)
            except KeyError:
                print(f"Error: sequence '{region}' not found in {fasta}", file=sys.stderr)
                return EXIT_BAD_REGION
            except ValueError as e:
                print(f"Error: {e}", file=sys.stderr)
                return EXIT_BAD_REGION
            out.write(f">{region}\n")
            out.write(format_seq(seq, width))
    return EXIT_OK


def main(argv=None) -> int:
    args = create_parser().parse_args(argv)
    logging.basicConfig(stream=sys.stderr, level=logging.ERROR if args.quiet else logging.INFO,
                        format='%(levelname)s: %(message)s')

    try:
        entries, anomalies = index_fasta(args.fasta, args.continue_on_error)
    except SourceUnavailable as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_NOT_FOUND
    except EmptyFasta as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_MALFORMED

    if anomalies and not args.continue_on_error:
        first = anomalies[0]
        print(f"Error: malformed FASTA {args.fasta}: {first.describe()}", file=sys.stderr)
        return EXIT_MALFORMED

    if args.regions:
        return print_regions(args.fasta, entries, args.regions, args.width, sys.stdout)

    output = args.output or args.fasta + '.fai'
    if output == '-':
        write_fai(entries, sys.stdout)
    else:
        with open(output, 'w', encoding='utf-8') as fw:
            write_fai(entries, fw)
    logger.info("Indexed %d sequences from %s", len(entries), args.fasta)

    for anomaly in anomalies:
        print(f"Warning: {anomaly.describe()}", file=sys.stderr)
    return EXIT_MALFORMED if anomalies else EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
