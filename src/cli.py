#!/usr/bin/env python3
"""
Royalty Engine Command Line Interface.

Commands:
    - serve: Start the API server with background monitors
    - preview: Print the royalty breakdown for a revenue amount
    - scan: Run one detection monitor tick
    - tiers: Print the license tier catalogue

Usage:
    royalty-engine serve [--host HOST] [--port PORT] [--debug] [--production]
    royalty-engine preview 12.5 --tier premium
    royalty-engine scan derivative
    royalty-engine tiers
    royalty-engine --version
"""

import argparse
import json
import os
import sys

from dotenv import load_dotenv

from monitoring.logging import configure_logging

VERSION = "2.1.3"


def _build():
    from engine import EngineConfig, build_engine

    return build_engine(EngineConfig.from_env())


def cmd_serve(args):
    """Start the API server and the background scheduler."""
    from api import create_app

    host = args.host or os.getenv("HOST", "0.0.0.0")
    port = args.port or int(os.getenv("PORT", 5000))
    debug = args.debug or os.getenv("FLASK_DEBUG", "").lower() == "true"

    engine = _build()
    flask_app = create_app(engine)
    engine.start()
    print(f"Starting royalty engine API on {host}:{port}")

    try:
        if args.production:
            _serve_gunicorn(flask_app, host, port, args.workers)
        else:
            # Reloader would start a second engine
            flask_app.run(host=host, port=port, debug=debug, use_reloader=False)
    finally:
        engine.stop()
    return 0


def _serve_gunicorn(flask_app, host: str, port: int, workers: int | None) -> None:
    try:
        import gunicorn.app.base
    except ImportError:
        print("Error: gunicorn not installed. Install with: pip install royalty-engine[production]")
        sys.exit(1)

    class StandaloneApplication(gunicorn.app.base.BaseApplication):
        """Gunicorn wrapper serving an already-built Flask app."""

        def __init__(self, app, options=None):
            self.options = options or {}
            self.application = app
            super().__init__()

        def load_config(self):
            for key, value in self.options.items():
                if key in self.cfg.settings and value is not None:
                    self.cfg.set(key.lower(), value)

        def load(self):
            return self.application

    options = {
        "bind": f"{host}:{port}",
        # Rate counters and leases are per-process unless Redis backs them
        "workers": workers or int(os.getenv("WORKERS", 1)),
        "worker_class": "gthread",
        "threads": 8,
        "timeout": 120,
        "accesslog": "-",
        "errorlog": "-",
    }
    StandaloneApplication(flask_app, options).run()


def cmd_preview(args):
    """Print a breakdown and tier comparison for a revenue amount."""
    from royalty_calculator import RoyaltyCalculator
    from token_units import parse_token_amount

    calculator = RoyaltyCalculator()
    revenue = parse_token_amount(args.revenue)
    breakdown = calculator.compute_breakdown(
        revenue, args.tier, include_gas_fee=not args.no_gas
    )
    comparison = calculator.compare_tiers(args.tier, revenue)
    print(
        json.dumps(
            {"breakdown": breakdown.to_dict(), "tierComparison": comparison.to_dict()},
            indent=2,
        )
    )
    return 0


def cmd_scan(args):
    """Run one tick of a detection monitor against the configured oracle."""
    engine = _build()
    try:
        events = engine.detection.run_monitor(args.monitor)
        print(json.dumps({"monitor": args.monitor, "events": [e.to_dict() for e in events]}, indent=2))
    finally:
        engine.stop()
    return 0


def cmd_tiers(args):
    """Print the tier catalogue with monthly economics."""
    from royalty_calculator import LicenseTier, RoyaltyCalculator

    calculator = RoyaltyCalculator()
    print("License tiers")
    print("=" * 40)
    for entry in calculator.tier_catalogue():
        print(
            f"  {entry['tier']:<10} royalty {entry['royaltyRate']:>3}%  "
            f"fee {entry['platformFeeRate']:>3}%  rewards {entry['readerRewardRate']:>3}%  "
            f"{entry['description']}"
        )
    print()
    print(f"Projected at {args.monthly_reads} reads/month:")
    for tier in LicenseTier:
        economics = calculator.calculate_economics(tier, args.monthly_reads).to_dict()
        print(
            f"  {tier.value:<10} monthly royalty {economics['monthlyRoyaltyFormatted']:>12}  "
            f"ROI {economics['estimatedROI']}%"
        )
    return 0


def main(argv=None):
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="royalty-engine",
        description="Royalty distribution and notification engine",
    )
    parser.add_argument("--version", "-v", action="version", version=f"%(prog)s {VERSION}")
    parser.add_argument("--env-file", help="Load environment variables from this file")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument("--host", help="Host to bind to (default: 0.0.0.0)")
    serve_parser.add_argument("--port", type=int, help="Port to bind to (default: 5000)")
    serve_parser.add_argument("--debug", action="store_true", help="Enable debug mode")
    serve_parser.add_argument(
        "--production", action="store_true", help="Use gunicorn for production"
    )
    serve_parser.add_argument("--workers", type=int, help="Number of workers (production mode)")

    preview_parser = subparsers.add_parser("preview", help="Preview a royalty breakdown")
    preview_parser.add_argument("revenue", help="Revenue in tokens, e.g. 12.5")
    preview_parser.add_argument(
        "--tier", default="premium", help="License tier (free, premium, exclusive)"
    )
    preview_parser.add_argument("--no-gas", action="store_true", help="Exclude the gas estimate")

    scan_parser = subparsers.add_parser("scan", help="Run one detection monitor tick")
    scan_parser.add_argument(
        "monitor", choices=["derivative", "quality", "collaboration", "trend"]
    )

    tiers_parser = subparsers.add_parser("tiers", help="Show the license tier catalogue")
    tiers_parser.add_argument("--monthly-reads", type=int, default=100)

    args = parser.parse_args(argv)
    if args.env_file:
        load_dotenv(args.env_file)
    else:
        load_dotenv()
    configure_logging()

    commands = {
        "serve": cmd_serve,
        "preview": cmd_preview,
        "scan": cmd_scan,
        "tiers": cmd_tiers,
    }
    if args.command not in commands:
        parser.print_help()
        return 1
    return commands[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
