"""Command-line interface for perfaudit."""

import json
import sys
from dataclasses import asdict
from typing import Any, Dict, List

from perfaudit.comparison import ComparisonEngine, compare_snapshots
from perfaudit.config import WaterfallThresholds
from perfaudit.constants import SCORE_CATEGORY_LABELS
from perfaudit.history import get_history_store
from perfaudit.logging_config import setup_logging
from perfaudit.models import (
    CORE_WEB_VITALS,
    ComparisonRecord,
    ResourceEntry,
    ScoreSnapshot,
    WaterfallAnalysis,
)
from perfaudit.utils.url import normalize_url
from perfaudit.waterfall_analyzer import WaterfallAnalyzer, format_bytes, format_duration


def _load_json(path: str) -> Any:
    with open(path, "r") as f:
        return json.load(f)


def _write_output(output: str, output_file: str = None) -> None:
    if output_file:
        with open(output_file, "w") as f:
            f.write(output)
        print(f"Results written to {output_file}")
    else:
        print(output)


def load_resources(data: Dict[str, Any]) -> Dict[str, List[ResourceEntry]]:
    """Parse a runner dump of the form ``{"mobile": [...], "desktop": [...]}``.

    A device may also be given as an object with a ``resources`` key.
    """
    resources = {}
    for device in ("mobile", "desktop"):
        entries = data.get(device)
        if entries is None:
            continue
        if isinstance(entries, dict):
            entries = entries.get("resources", [])
        resources[device] = [ResourceEntry.from_dict(item) for item in entries]
    return resources


def print_waterfall(analysis: WaterfallAnalysis):
    """Print waterfall analysis in a formatted way."""
    for waterfall in analysis.devices():
        print(f"\n{'=' * 60}")
        print(f"Waterfall ({waterfall.device})")
        print(f"{'=' * 60}")
        print(f"  • Resources: {waterfall.total_resources}")
        print(f"  • Total size: {format_bytes(waterfall.total_size)} "
              f"({format_bytes(waterfall.total_transfer_size)} transferred)")
        print(f"  • Load time: {format_duration(waterfall.total_duration)}")
        print(f"  • Render-blocking: {waterfall.render_blocking_resources}")
        print(f"  • Peak parallel requests: {waterfall.parallel_requests}")
        print(f"  • Cache hit rate: {waterfall.cache_hit_rate:.1f}%")
        print(f"  • Compression savings: {waterfall.compression_savings:.1f}%")

    if analysis.recommendations:
        print(f"\n💡 Recommendations:")
        for rec in analysis.recommendations:
            print(f"  [{rec.type.value}/{rec.impact.value}] {rec.title} "
                  f"({', '.join(rec.devices)})")
            print(f"      {rec.description}")
            print(f"      Fix: {rec.how_to_fix}")
            print(f"      Savings: {rec.potential_savings}")

    if analysis.insights:
        print(f"\n📊 Insights:")
        for insight in analysis.insights:
            print(f"  • [{insight.device}] {insight.metric}: {insight.value} "
                  f"({insight.impact.value})")

    print(f"\n{'=' * 60}\n")


def print_comparison(record: ComparisonRecord):
    """Print a comparison in a formatted way."""
    print(f"\n{'=' * 60}")
    print(f"Comparison for: {record.url}")
    print(f"{'=' * 60}")
    for name, label in SCORE_CATEGORY_LABELS.items():
        before = getattr(record.previous, name)
        after = getattr(record.current, name)
        delta = getattr(record.improvements, name)
        print(f"  • {label}: {before} → {after} ({delta:+g})")

    for device, changes in record.core_web_vitals_changes.items():
        known = [m for m in CORE_WEB_VITALS if changes[m].delta is not None]
        if not known:
            continue
        print(f"\n  {device}:")
        for metric in known:
            change = changes[metric]
            print(f"    {metric.upper()}: {change.previous} → {change.current} "
                  f"({change.delta:+g})")

    summary = record.summary
    print(f"\nTrend: {summary.overall_trend.value} "
          f"({summary.total_improvements} improved, {summary.total_regressions} regressed)")
    print(f"\n{'=' * 60}\n")


def waterfall_command(args):
    """Analyze a resource timing dump."""
    try:
        thresholds = (
            WaterfallThresholds.from_file(args.thresholds)
            if args.thresholds else WaterfallThresholds.from_env()
        )
        data = _load_json(args.resources)
        analyzer = WaterfallAnalyzer(thresholds)
        analysis = analyzer.analyze_devices(
            load_resources(data), data.get("device_metrics")
        )
    except (OSError, ValueError, KeyError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    if args.output == "json":
        _write_output(json.dumps(analysis.to_dict(), indent=2, default=str), args.output_file)
    else:
        print_waterfall(analysis)


def compare_command(args):
    """Compare two stored score snapshots."""
    try:
        previous = ScoreSnapshot.from_dict(_load_json(args.previous))
        current = ScoreSnapshot.from_dict(_load_json(args.current))
        url = normalize_url(args.url)
    except (OSError, ValueError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    record = compare_snapshots(url, previous, current)
    if args.output == "json":
        _write_output(json.dumps(asdict(record), indent=2, default=str), args.output_file)
    else:
        print_comparison(record)


def history_command(args):
    """Summarize the stored analysis history of a URL."""
    store = get_history_store()
    try:
        summary = ComparisonEngine(store).history_summary(normalize_url(args.url))
    finally:
        store.close()

    if not summary.has_history:
        print(f"No analysis history found for: {summary.url}")
        sys.exit(0)

    if args.output == "json":
        print(json.dumps(asdict(summary), indent=2, default=str))
    else:
        print(f"\nHistory for {summary.url}: {summary.total_analyses} analyses, "
              f"last on {summary.last_analyzed}")
        for name, label in SCORE_CATEGORY_LABELS.items():
            print(f"  Avg {label}: {summary.average_scores[name]}")


def main():
    """Main entry point for the CLI."""
    import argparse

    parser = argparse.ArgumentParser(
        description="perfaudit - Waterfall analytics and comparison of page analyses"
    )

    # Global flags (before subcommands)
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Set logging verbosity (default: INFO)",
    )
    parser.add_argument(
        "--log-file",
        help="Write logs to file in addition to console",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    waterfall_parser = subparsers.add_parser(
        "waterfall", help="Analyze a resource timing dump ({'mobile': [...], 'desktop': [...]})."
    )
    waterfall_parser.add_argument("resources", help="Path to the runner JSON dump")
    waterfall_parser.add_argument(
        "--thresholds",
        help="JSON file with threshold overrides (default: PERFAUDIT_THRESHOLD_* env vars)",
    )
    waterfall_parser.add_argument(
        "--output", "-o", choices=["text", "json"], default="text",
        help="Output format (default: text)",
    )
    waterfall_parser.add_argument(
        "--output-file", "-f", help="Write output to file (only for json format)",
    )
    waterfall_parser.set_defaults(func=waterfall_command)

    compare_parser = subparsers.add_parser(
        "compare", help="Compare two score snapshots of the same URL."
    )
    compare_parser.add_argument("url", help="The analyzed URL")
    compare_parser.add_argument("previous", help="Path to the previous snapshot JSON")
    compare_parser.add_argument("current", help="Path to the current snapshot JSON")
    compare_parser.add_argument(
        "--output", "-o", choices=["text", "json"], default="text",
        help="Output format (default: text)",
    )
    compare_parser.add_argument(
        "--output-file", "-f", help="Write output to file (only for json format)",
    )
    compare_parser.set_defaults(func=compare_command)

    history_parser = subparsers.add_parser(
        "history", help="Summarize stored analyses for a URL."
    )
    history_parser.add_argument("url", help="The analyzed URL")
    history_parser.add_argument(
        "--output", "-o", choices=["text", "json"], default="text",
        help="Output format (default: text)",
    )
    history_parser.set_defaults(func=history_command)

    args = parser.parse_args()

    setup_logging(
        level=args.log_level,
        log_file=getattr(args, 'log_file', None),
    )

    if hasattr(args, "func"):
        args.func(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
