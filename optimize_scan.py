#!/usr/bin/env python3
"""
optimize_scan.py - Adaptive MRC compression CLI for scanned documents.

Text is kept as a lossless mask, the background is blurred and shrunk,
and the result is never larger than the input.

Usage:
    python optimize_scan.py scan.pdf -o compressed.pdf
    python optimize_scan.py receipt.jpg --preset receipt
    python optimize_scan.py *.pdf --output-dir ./compressed/
    python optimize_scan.py big.pdf --analyze
"""

import argparse
import logging
import sys
from pathlib import Path

# Add parent to path when running as script
if __name__ == "__main__":
    sys.path.insert(0, str(Path(__file__).parent))

from mrc_optimizer.compression import AdaptiveEncoder
from mrc_optimizer.config import PRESETS, CompressionConfig, get_preset
from mrc_optimizer.errors import OptimizerError, ResourceExhaustedError, ResourceKind
from mrc_optimizer.guarantee import NoImprovement, PartialSuccess, QualityCompromised, Success
from mrc_optimizer.pipeline import PageBatchScheduler
from mrc_optimizer.recovery import (
    PASSWORD_INPUT,
    Cancelled,
    RecoveryContext,
    RecoveryPlanner,
    RequestUserInput,
    RetryChunked,
    RetryDegraded,
    ShowError,
    SuggestUpgrade,
)
from mrc_optimizer.service import CompressionService, default_output_path

MAX_RETRIES = 2


def setup_logging(verbose: bool = False):
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S"
    )


def parse_args(argv=None):
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Adaptive MRC compression for scanned PDFs and images.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python optimize_scan.py scan.pdf -o compressed.pdf
  python optimize_scan.py scan.pdf --preset archive --workers 4
  python optimize_scan.py *.pdf --output-dir ./out/

Presets (quality / DPI):
  id        0.7 / 200   photos and ID cards, no layer separation
  smart     0.6 / 150   coverage-adaptive background
  document  0.5 / 150   general scans (default)
  receipt   0.4 / 100   aggressive blur, adaptive background
  archive   0.3 / 72    smallest output

Output is never larger than the input: if compression doesn't help,
the original is kept and no output file is written.
"""
    )

    parser.add_argument(
        "input",
        nargs="+",
        type=Path,
        help="Input PDF or image file(s)"
    )

    output = parser.add_mutually_exclusive_group()
    output.add_argument(
        "-o", "--output",
        type=Path,
        help="Output file (single input only)"
    )
    output.add_argument(
        "--output-dir",
        type=Path,
        help="Output directory (for multiple files)"
    )

    parser.add_argument(
        "-p", "--preset",
        choices=sorted(PRESETS),
        default="document",
        help="Compression preset (default: document)"
    )

    parser.add_argument(
        "-q", "--quality",
        type=int,
        help="JPEG quality 10-100, overrides the preset"
    )

    parser.add_argument(
        "-d", "--dpi",
        type=int,
        help="Render DPI 48-600, overrides the preset"
    )

    parser.add_argument(
        "--aggressive",
        action="store_true",
        help="Stronger background blur"
    )

    parser.add_argument(
        "--no-layers",
        action="store_true",
        help="Skip layer separation, one JPEG per page"
    )

    parser.add_argument(
        "-g", "--g4",
        action="store_true",
        help="Encode the text mask as CCITT G4 (1-bit)"
    )

    parser.add_argument(
        "--workers",
        type=int,
        default=1,
        help="Pages encoded in parallel within a batch (default: 1)"
    )

    parser.add_argument(
        "--batch-size",
        type=int,
        help="Pages held in memory at once (default: by document size)"
    )

    parser.add_argument(
        "--timeout",
        type=float,
        help="Give up on a file after this many seconds"
    )

    parser.add_argument(
        "--max-size-mb",
        type=float,
        help="Refuse inputs larger than this"
    )

    parser.add_argument(
        "--premium",
        action="store_true",
        help="Lift the size limit by retrying large files in small chunks"
    )

    parser.add_argument(
        "--password",
        help="Password for encrypted PDFs"
    )

    parser.add_argument(
        "--analyze",
        action="store_true",
        help="Only report page count, size class and estimated time"
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Verbose output"
    )

    return parser.parse_args(argv)


def print_progress(current: int, total: int, message: str = ""):
    """Print progress bar."""
    width = 40
    filled = int(width * current / total)
    bar = "=" * filled + "-" * (width - filled)
    pct = current / total * 100
    print(f"\r[{bar}] {current}/{total} ({pct:.0f}%) {message}", end="", file=sys.stderr)
    if current == total:
        print(file=sys.stderr)


def build_config(args) -> CompressionConfig:
    config = get_preset(args.preset)
    overrides = {}
    if args.quality is not None:
        overrides["quality"] = args.quality / 100.0
    if args.dpi is not None:
        overrides["target_resolution_dpi"] = args.dpi
    if args.aggressive:
        overrides["aggressive_mode"] = True
    if args.no_layers:
        overrides["use_layer_separation"] = False
    return config.with_overrides(**overrides) if overrides else config


def describe(result) -> str:
    if isinstance(result, NoImprovement):
        return f"Kept original {result.original.name} ({result.reason.value})"

    imp = result.improvement
    line = (
        f"{result.artifact.name}: {imp.original_size:,} -> {imp.compressed_size:,} bytes "
        f"({imp.percentage_reduction}% smaller)"
    )
    if isinstance(result, PartialSuccess):
        line += " [minimal gain]"
    elif isinstance(result, QualityCompromised):
        line += " [warning: heavy resolution loss]"
    return line


def describe_action(action) -> str:
    if isinstance(action, RequestUserInput):
        if action.kind == PASSWORD_INPUT:
            return "The file is encrypted; pass --password"
        return "Check that the file can be read and the output location written"
    if isinstance(action, SuggestUpgrade):
        return "File exceeds the size limit; rerun with --premium"
    if isinstance(action, ShowError):
        return "Try again" if action.retryable else "The file is damaged or unsupported"
    if isinstance(action, Cancelled):
        return "Cancelled"
    return str(action)


def compress_file(service: CompressionService, planner: RecoveryPlanner, input_path: Path,
                  output_path: Path, config: CompressionConfig, args):
    """Compress one file, retrying as the recovery planner advises."""
    batch_size = args.batch_size
    retries = 0

    while True:
        try:
            return service.compress(
                input_path,
                output_path,
                config,
                progress_callback=print_progress,
                batch_size=batch_size,
                timeout=args.timeout,
                password=args.password
            )
        except OptimizerError as e:
            print(f"\nError: {e}", file=sys.stderr)

            try:
                page_count = service.analyze(input_path).page_count
            except OptimizerError:
                page_count = 0
            context = RecoveryContext(
                config=config,
                file_size=input_path.stat().st_size if input_path.exists() else 0,
                page_count=page_count,
                is_premium_entitled=args.premium,
                retry_count=retries
            )
            action = planner.plan(e, context)

            if retries < MAX_RETRIES and isinstance(action, RetryDegraded) and action.config != config:
                logging.info(f"Retrying with preset {action.config.name}")
                config = action.config
            elif retries < MAX_RETRIES and isinstance(action, RetryChunked) and action.chunk_size != batch_size:
                logging.info(f"Retrying in batches of {action.chunk_size}")
                batch_size = action.chunk_size
                if isinstance(e, ResourceExhaustedError) and e.kind is ResourceKind.FILE_TOO_LARGE:
                    service.max_file_size = None
            else:
                print(describe_action(action), file=sys.stderr)
                return None

            retries += 1


def main(argv=None):
    args = parse_args(argv)
    setup_logging(args.verbose)

    # Validate inputs
    valid_inputs = []
    for p in args.input:
        if not p.exists():
            print(f"Error: File not found: {p}", file=sys.stderr)
            continue
        valid_inputs.append(p)

    if not valid_inputs:
        print("Error: No valid input files", file=sys.stderr)
        sys.exit(1)

    if len(valid_inputs) > 1 and args.output:
        print("Error: Use --output-dir for multiple files", file=sys.stderr)
        sys.exit(1)

    scheduler = PageBatchScheduler(
        encoder=AdaptiveEncoder(use_g4=args.g4),
        max_workers=args.workers
    )
    service = CompressionService(
        scheduler=scheduler,
        max_file_size=int(args.max_size_mb * 1024 * 1024) if args.max_size_mb else None
    )

    if args.analyze:
        status = 0
        for input_path in valid_inputs:
            try:
                a = service.analyze(input_path)
            except OptimizerError as e:
                print(f"{input_path.name}: {e}", file=sys.stderr)
                status = 1
                continue
            print(
                f"{input_path.name}: {a.page_count} pages, {a.size_category.value}, "
                f"{a.file_size:,} bytes, ~{a.estimated_time:.1f}s, "
                f"suggested preset {a.recommended_preset.name}"
            )
        sys.exit(status)

    config = build_config(args)
    planner = RecoveryPlanner()

    if args.output_dir:
        args.output_dir.mkdir(parents=True, exist_ok=True)

    total_in = 0
    total_out = 0
    successes = 0

    for i, input_path in enumerate(valid_inputs):
        if args.output:
            output_path = args.output
        elif args.output_dir:
            output_path = args.output_dir / default_output_path(input_path).name
        else:
            output_path = default_output_path(input_path)

        if len(valid_inputs) > 1:
            print(f"\n[{i+1}/{len(valid_inputs)}] {input_path.name}")

        result = compress_file(service, planner, input_path, output_path, config, args)
        if result is None:
            continue

        print(describe(result))
        if service.last_result is not None and args.verbose:
            print(service.last_result.summary())

        successes += 1
        total_in += input_path.stat().st_size
        if isinstance(result, (Success, PartialSuccess, QualityCompromised)):
            total_out += result.improvement.compressed_size
        else:
            total_out += input_path.stat().st_size

    if len(valid_inputs) > 1:
        print(f"\n{'='*50}")
        print(f"Batch complete: {successes}/{len(valid_inputs)} files")
        print(f"Total: {total_in:,} -> {total_out:,} bytes")
        if total_in > 0:
            print(f"Reduction: {(1 - total_out/total_in)*100:.1f}%")

    sys.exit(0 if successes == len(valid_inputs) else 1)


if __name__ == "__main__":
    main()
