#!/usr/bin/env python3
"""
Bulk DMARC Report Import Script

Usage:
    # Import every report file in a directory into a domain
    python scripts/import_reports.py /path/to/reports --domain example.com

    # Also queue enrichment and alert jobs for the imported reports
    python scripts/import_reports.py /path/to/reports --domain example.com --follow-ups

Example:
    docker compose exec backend python scripts/import_reports.py /app/import_reports --domain example.com
"""

import argparse
import logging
import sys
import time
from pathlib import Path
from typing import List

from dmarc_pipeline.config import get_settings
from dmarc_pipeline.database import SessionLocal
from dmarc_pipeline.exceptions import ReportParseError
from dmarc_pipeline.jobs.queues import dispatch_requests
from dmarc_pipeline.logging_config import setup_logging
from dmarc_pipeline.models import Domain
from dmarc_pipeline.parsers.dmarc_parser import decompress_attachment
from dmarc_pipeline.services.importer import ReportImporter

logger = logging.getLogger(__name__)

PATTERNS = ['*.xml', '*.XML', '*.gz', '*.gzip', '*.zip']


def find_report_files(directory: str) -> List[Path]:
    """Find all DMARC report files in directory"""
    directory = Path(directory)

    if not directory.exists():
        raise FileNotFoundError(f"Directory not found: {directory}")

    files = []
    for pattern in PATTERNS:
        files.extend(directory.glob(pattern))

    return sorted(set(files))


def import_files(files: List[Path], domain: Domain, follow_ups: bool, batch_size: int) -> dict:
    db = SessionLocal()
    importer = ReportImporter(db)

    total = len(files)
    counts = {'success': 0, 'duplicate': 0, 'error': 0, 'jobs': 0}

    print(f"\n{'='*60}")
    print(f"Importing {total} files into {domain.domain}")
    print(f"{'='*60}\n")
    start_time = time.time()

    try:
        for i, file_path in enumerate(files, 1):
            try:
                xml = decompress_attachment(file_path.read_bytes(), file_path.name)
            except (OSError, ReportParseError) as e:
                counts['error'] += 1
                print(f"! [{i}/{total}] {file_path.name[:50]:<50} ERROR: {str(e)[:60]}")
                continue

            result = importer.import_report(xml, domain.id, dedup_ref=f"bulk-import:{file_path.name}")
            if result.skipped:
                counts['duplicate'] += 1
            elif result.success:
                counts['success'] += 1
                if follow_ups:
                    counts['jobs'] += dispatch_requests(db, result.follow_ups)
            else:
                counts['error'] += 1
                print(f"! [{i}/{total}] {file_path.name[:50]:<50} {result.error_type}: {str(result.error)[:60]}")

            if i % batch_size == 0 or i == total:
                elapsed = time.time() - start_time
                rate = i / elapsed if elapsed > 0 else 0
                print(f"[{i}/{total}] (+ {counts['success']} | x {counts['duplicate']} | "
                      f"! {counts['error']} | {rate:.1f} files/sec)")
    finally:
        db.close()

    elapsed = time.time() - start_time
    print(f"\n{'='*60}")
    print(f"Import Complete!")
    print(f"{'='*60}")
    print(f"Total files:      {total}")
    print(f"+ Imported:       {counts['success']}")
    print(f"x Duplicates:     {counts['duplicate']}")
    print(f"! Errors:         {counts['error']}")
    if follow_ups:
        print(f"~ Jobs queued:    {counts['jobs']}")
    print(f"Time elapsed:     {elapsed:.1f} seconds")
    print(f"{'='*60}\n")
    return counts


def main():
    parser = argparse.ArgumentParser(
        description="Bulk import DMARC reports",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )
    parser.add_argument('directory', help='Directory containing DMARC report files')
    parser.add_argument('--domain', required=True, help='Domain name the reports belong to')
    parser.add_argument(
        '--follow-ups',
        action='store_true',
        help='Queue enrichment and alert jobs for imported reports (requires Celery broker)'
    )
    parser.add_argument(
        '--batch-size',
        type=int,
        default=100,
        help='Progress update frequency (default: 100 files)'
    )
    args = parser.parse_args()

    settings = get_settings()
    setup_logging(log_level=settings.log_level, app_name="dmarc-import")

    try:
        files = find_report_files(args.directory)
    except FileNotFoundError as e:
        print(f"ERROR: {e}")
        sys.exit(1)

    if not files:
        print(f"No report files found in {args.directory}")
        print(f"Looking for: {', '.join(PATTERNS)}")
        sys.exit(0)

    db = SessionLocal()
    try:
        domain = db.query(Domain).filter(Domain.domain == args.domain.lower()).first()
    finally:
        db.close()
    if domain is None:
        print(f"ERROR: Domain not found: {args.domain}")
        sys.exit(1)

    counts = import_files(files, domain, args.follow_ups, args.batch_size)
    sys.exit(1 if counts['error'] and not counts['success'] else 0)


if __name__ == "__main__":
    main()
