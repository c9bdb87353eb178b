#!/usr/bin/env python3
"""
SPECPROBE API Security Testing Pipeline - Command Line Interface.

Usage:
    specprobe --help
    specprobe scan -t https://api.example.com -s openapi.yaml --docs ./docs
    specprobe ingest -s collection.json -s traffic.har -o endpoints.json
    specprobe diff -t https://api.example.com -s openapi.yaml -o drift.txt
    specprobe validate -c specprobe.yaml
    specprobe init -o specprobe.yaml
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

import yaml

from core.config import build_config, load_config, render_template, validate_config
from core.exceptions import ConfigurationInvalidError, NoEndpointsError
from core.result_manager import ResultManager
from core.utils import set_verbosity, setup_logging

logger = setup_logging("specprobe")

VERSION = "1.0.0"
BANNER = f"""
 ___ ___ ___ ___ ___ ___  ___  ___ ___
/ __| _ \\ __/ __| _ \\ _ \\/ _ \\| _ ) __|
\\__ \\  _/ _| (__|  _/   / (_) | _ \\ _|
|___/_| |___\\___|_| |_|_\\\\___/|___/___|
                                  v{VERSION}
      API Security Testing Pipeline
"""


def print_banner():
    """Print SPECPROBE banner."""
    print(BANNER)


def _load(args):
    return build_config(load_config(args.config))


async def cmd_scan(args):
    """Run the full pipeline."""
    from orchestrator import ScanTarget, SpecProbeOrchestrator

    orchestrator = SpecProbeOrchestrator(_load(args), output_dir=args.output)
    target = ScanTarget(
        base_url=args.target,
        sources=args.source,
        documentation_sources=args.docs,
        source_map_dir=args.source_maps,
        typescript_dir=args.typescript,
        source_root=args.source_root,
        probe=not args.no_probe,
    )

    task = asyncio.ensure_future(orchestrator.run(target))
    try:
        return await asyncio.shield(task)
    except asyncio.CancelledError:
        orchestrator.stop()
        return await task


async def cmd_diff(args):
    """Compare the sources with the live API and write a drift report."""
    from orchestrator import ScanTarget, SpecProbeOrchestrator

    orchestrator = SpecProbeOrchestrator(_load(args))
    report = await orchestrator.drift(ScanTarget(base_url=args.target, sources=args.source), paths=args.path)

    output = Path(args.output)
    fmt = args.format or {".yaml": "yaml", ".yml": "yaml", ".txt": "text"}.get(output.suffix.lower(), "json")
    if fmt == "text":
        output.write_text(report.to_text(), encoding="utf-8")
    else:
        ResultManager(str(output.parent)).write_document(report.to_dict(), output, fmt)
    return report, output


def print_drift(report, output):
    summary = report.summary()
    print("\n" + "=" * 60)
    print("SPECPROBE DRIFT CHECK COMPLETE")
    print("=" * 60)
    print(f"Target: {report.target}")
    print(f"Documented: {summary['documented']}, confirmed: {summary['confirmed']}")
    print(f"New endpoints: {summary['new_endpoints']}")
    print(f"Missing endpoints: {summary['missing_endpoints']}")
    print(f"Coverage: {summary['coverage']}%")
    print(f"\nReport saved to: {output}")


def cmd_ingest(args):
    """Normalize sources and export them as one OpenAPI 3 document."""
    from phase1_ingestion.openapi import export_openapi
    from phase1_ingestion.registry import IngestorRegistry

    registry = IngestorRegistry(_load(args))
    outcome = registry.ingest_all(args.source, require_endpoints=True)
    document = export_openapi(outcome.endpoints)

    output = Path(args.output)
    with open(output, "w", encoding="utf-8") as f:
        if output.suffix.lower() in (".yaml", ".yml"):
            yaml.safe_dump(document, f, sort_keys=False)
        else:
            json.dump(document, f, indent=2)

    print(f"Exported {len(outcome.endpoints)} endpoints to {output}")
    for failure in outcome.failures:
        print(f"  skipped {failure['source']}: {failure['reason']}")
    return 0


def cmd_validate(args):
    """Check a configuration file."""
    result = validate_config(load_config(args.config))
    if result.valid:
        print("Configuration is valid")
        return 0
    print("Configuration is invalid:")
    for error in result.errors:
        print(f"  - {error}")
    return 1


def cmd_init(args):
    """Write a starter configuration file."""
    output = Path(args.output)
    if output.exists() and not args.force:
        print(f"Error: {output} already exists (use --force to overwrite)")
        return 1
    fmt = "json" if output.suffix.lower() == ".json" else "yaml"
    output.write_text(render_template(fmt), encoding="utf-8")
    print(f"Wrote starter configuration to {output}")
    return 0


def print_report(report):
    print("\n" + "=" * 60)
    print("SPECPROBE SCAN COMPLETE")
    print("=" * 60)
    print(f"Target: {report.target}")
    if report.duration is not None:
        print(f"Duration: {report.duration:.2f} seconds")
    print(f"Endpoints: {len(report.endpoints)} from {len(report.sources)} source(s)")
    documentation = report.documentation
    if documentation:
        print(f"Documented: {documentation.get('documented', 0)}/{documentation.get('endpoints', 0)}")
    if report.probe_stats:
        stats = report.probe_stats
        print(
            f"Probes: {stats.get('completed', 0)} completed, {stats.get('failed', 0)} failed, "
            f"{stats.get('timed_out', 0)} timed out, {stats.get('dropped', 0)} dropped"
        )
    print("\nFindings by Severity:")
    for severity, count in report.stats.get("severity_breakdown", {}).items():
        if count > 0:
            print(f"  {severity.upper()}: {count}")
    print(f"\nTotal Findings: {len(report.findings)}")
    if report.errors:
        print(f"\nErrors: {len(report.errors)}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="specprobe",
        description="SPECPROBE API Security Testing Pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-v", "--version", action="version", version=f"SPECPROBE v{VERSION}")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("-c", "--config", help="Configuration file (YAML or JSON)")
    common.add_argument("--verbose", action="store_true", help="Verbose output")
    common.add_argument("--log-file", help="Also write logs to this file")

    # Scan command (full pipeline)
    scan_parser = subparsers.add_parser("scan", parents=[common], help="Run the full pipeline")
    scan_parser.add_argument("-t", "--target", required=True, help="Base URL of the API under test")
    scan_parser.add_argument("-s", "--source", action="append", required=True, help="API description (repeatable)")
    scan_parser.add_argument("-o", "--output", default="results", help="Output directory")
    scan_parser.add_argument("--docs", action="append", help="Documentation file, directory or URL (repeatable)")
    scan_parser.add_argument("--source-maps", help="Directory of JavaScript bundles and source maps")
    scan_parser.add_argument("--typescript", help="Directory of TypeScript definitions")
    scan_parser.add_argument("--source-root", help="Source tree for route discovery")
    scan_parser.add_argument("--no-probe", action="store_true", help="Stop after documentation matching")

    # Ingest command
    ingest_parser = subparsers.add_parser("ingest", parents=[common], help="Normalize sources to OpenAPI 3")
    ingest_parser.add_argument("-s", "--source", action="append", required=True, help="API description (repeatable)")
    ingest_parser.add_argument("-o", "--output", default="endpoints.json", help="Output file (.json or .yaml)")

    # Diff command
    diff_parser = subparsers.add_parser("diff", parents=[common], help="Compare sources with the live API")
    diff_parser.add_argument("-t", "--target", required=True, help="Base URL of the running API")
    diff_parser.add_argument("-s", "--source", action="append", required=True, help="API description (repeatable)")
    diff_parser.add_argument("-o", "--output", default="drift-report.json", help="Output file")
    diff_parser.add_argument("--format", choices=["json", "yaml", "text"], help="Report format (default from suffix)")
    diff_parser.add_argument("--path", action="append", help="Extra path to crawl (repeatable)")

    # Validate command
    subparsers.add_parser("validate", parents=[common], help="Validate a configuration file")

    # Init command
    init_parser = subparsers.add_parser("init", help="Write a starter configuration")
    init_parser.add_argument("-o", "--output", default="specprobe.yaml", help="Output file")
    init_parser.add_argument("--force", action="store_true", help="Overwrite an existing file")

    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        print_banner()
        parser.print_help()
        return 0

    if getattr(args, "verbose", False) or getattr(args, "log_file", None):
        set_verbosity(args.verbose, args.log_file)

    try:
        if args.command == "scan":
            print_banner()
            report = asyncio.run(cmd_scan(args))
            print_report(report)
            print(f"\nResults saved to: {args.output}/")
            return 0
        if args.command == "ingest":
            return cmd_ingest(args)
        if args.command == "diff":
            report, output = asyncio.run(cmd_diff(args))
            print_drift(report, output)
            return 0
        if args.command == "validate":
            return cmd_validate(args)
        if args.command == "init":
            return cmd_init(args)
        parser.print_help()
        return 0

    except KeyboardInterrupt:
        print("\n\nScan interrupted by user.")
        return 130
    except FileNotFoundError as e:
        print(f"\nError: {e}")
        return 2
    except ConfigurationInvalidError as e:
        print("\nConfiguration is invalid:")
        for error in e.errors:
            print(f"  - {error}")
        return 1
    except NoEndpointsError as e:
        print(f"\nError: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
