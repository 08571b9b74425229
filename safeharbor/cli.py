#!/usr/bin/env python3
"""Command-line interface for SafeHarbor operations.

Usage:
    python -m safeharbor.cli --help
    python -m safeharbor.cli detect "I can't breathe, panic attack"
    python -m safeharbor.cli analyze conversation.json
    python -m safeharbor.cli sweep
    python -m safeharbor.cli import-resources helplines.tsv
    python -m safeharbor.cli serve --port 8003
"""
import argparse
import json
import logging
import os
import sys
from datetime import datetime

from safeharbor.shared.utils import configure_pii_salt

logger = logging.getLogger(__name__)


def setup_parser() -> argparse.ArgumentParser:
    """Set up argument parser."""
    parser = argparse.ArgumentParser(
        description="SafeHarbor crisis response CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    detect_parser = subparsers.add_parser("detect", help="Scan one text for crisis keywords")
    detect_parser.add_argument("text", help="Text to scan")

    analyze_parser = subparsers.add_parser(
        "analyze", help="Analyse a conversation for escalation"
    )
    analyze_parser.add_argument(
        "file",
        help="JSON list of {content, timestamp} objects, oldest first",
    )

    subparsers.add_parser("sweep", help="Process due follow-ups")

    import_parser = subparsers.add_parser(
        "import-resources", help="Import a tab-separated resource directory"
    )
    import_parser.add_argument("file", help="Path to the export")

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument(
        "--port", type=int, default=int(os.getenv("PORT", "8003")),
        help="Port to listen on"
    )

    return parser


def cmd_detect(args) -> int:
    """Detect command."""
    from safeharbor.services.detection_service import CrisisDetector, DetectionConfig

    detector = CrisisDetector(config=DetectionConfig.from_env())
    result = detector.detect(args.text)
    output = result.to_dict()
    output["references"] = detector.detect_references(args.text).to_dict()
    print(json.dumps(output, indent=2))
    return 0


def cmd_analyze(args) -> int:
    """Analyze command."""
    from safeharbor.services.detection_service import ConversationMessage, PatternAnalyzer

    with open(args.file, "r", encoding="utf-8") as f:
        raw = json.load(f)

    messages = [
        ConversationMessage(
            content=str(m.get("content") or ""),
            timestamp=datetime.fromisoformat(m["timestamp"]) if m.get("timestamp") else None,
        )
        for m in raw
    ]
    analysis = PatternAnalyzer().analyze_conversation(messages)
    print(json.dumps(analysis.to_dict(), indent=2))
    return 0


def cmd_sweep(args) -> int:
    """Follow-up sweep command."""
    from safeharbor.services.crisis_engine import build_services

    processed = build_services().scheduler.sweep()
    print(f"Follow-ups processed: {processed}")
    return 0


def cmd_import_resources(args) -> int:
    """Resource import command."""
    from safeharbor.services.crisis_engine import build_services
    from safeharbor.services.resource_service import ResourceImporter

    summary = ResourceImporter(build_services().directory).import_file(args.file)

    print(f"Imported: {summary.imported}")
    print(f"Skipped (no phone): {summary.skipped}")
    print(f"Failed: {summary.failed}")
    for name, error in summary.errors:
        print(f"  - {name}: {error}")

    return 0 if summary.failed == 0 else 1


def cmd_serve(args) -> int:
    """Serve command."""
    from safeharbor.services.crisis_engine.http_handler import app

    app.run(host="0.0.0.0", port=args.port, debug=False)
    return 0


COMMANDS = {
    "detect": cmd_detect,
    "analyze": cmd_analyze,
    "sweep": cmd_sweep,
    "import-resources": cmd_import_resources,
    "serve": cmd_serve,
}


def main() -> int:
    """Main entry point."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    parser = setup_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 1

    configure_pii_salt(
        os.getenv("PII_HASH_SALT", "default_dev_salt_change_in_production_32chars")
    )
    return COMMANDS[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
