#!/usr/bin/env python3
import argparse
import logging
import sys
from dataclasses import replace

from gkrun.config import AnalysisConfig
from gkrun.oe.core import install_signal_handlers, process_runs, recheck, summary_line
from gkrun.probe.reader import NetCDFReader
from gkrun.runs.record import load_run
from gkrun.runs.registry import RunRegistry


def main(argv=None) -> int:
    ap = argparse.ArgumentParser(description="Classify and analyse gyrokinetic run directories")
    ap.add_argument("dirs", nargs="+", help="Run directories (each holding a .gkrun_record.json)")
    ap.add_argument("--force", action="store_true", help="Ignore persisted records and reprocess")
    ap.add_argument("--recheck", action="store_true", help="Delete records and reprocess from scratch")
    ap.add_argument("--workers", type=int, default=None, help="Worker threads (default GKRUN_WORKERS or 4)")
    ap.add_argument("--keep-going", action="store_true", help="Continue past runs that raise")
    ap.add_argument("--no-analysis", action="store_true", help="Classify only; skip derived metrics")
    ap.add_argument("-v", "--verbose", action="store_true")
    args = ap.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = AnalysisConfig.from_env()
    if args.workers is not None:
        config = replace(config, workers=args.workers)
    if args.no_analysis:
        config = replace(config, analysis_disabled=True)
    try:
        config.validate()
    except ValueError as e:
        ap.error(str(e))

    runs = []
    for d in args.dirs:
        try:
            runs.append(load_run(d))
        except FileNotFoundError as e:
            print(f"skipping {d}: {e}", file=sys.stderr)
    if not runs:
        return 1

    registry = RunRegistry()
    reader = NetCDFReader()
    install_signal_handlers()

    if args.recheck:
        processed = [recheck(run, registry, reader, config) for run in runs]
    else:
        processed = process_runs(
            runs, registry, reader, config,
            force=args.force, workers=config.workers, keep_going=args.keep_going,
        )

    for run in processed:
        print(summary_line(run))
    return 0


if __name__ == "__main__":
    sys.exit(main())
