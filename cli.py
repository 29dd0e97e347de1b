#!/usr/bin/env python3
"""
Command-line interface for the event fabric demo.

Usage:
    python cli.py [command] [options]

Commands:
    demo        Run order saga scenarios
    test        Run the test suite
    serve       Start the API server

Examples:
    python cli.py demo success
    python cli.py demo payment-failure
    python cli.py demo all
    python cli.py serve
"""

import argparse
import subprocess
import sys

from event_fabric.config import load_settings
from event_fabric.exceptions import ConfigError
from event_fabric.system import SCENARIOS


def run_demo(scenario: str) -> None:
    """Run a demo scenario."""
    from event_fabric.demo import run_all_demos, run_scenario_demo

    if scenario == "all":
        run_all_demos()
    elif scenario in SCENARIOS:
        run_scenario_demo(scenario)
    else:
        print(f"Unknown scenario: {scenario}")
        sys.exit(1)


def check_config(path: str) -> None:
    """Validate a settings file and print the effective settings."""
    try:
        settings = load_settings(path)
    except ConfigError as e:
        print(f"Invalid config: {e}")
        sys.exit(1)
    print(settings.model_dump_json(indent=2))


def run_tests(args: list[str]) -> None:
    """Run the test suite."""
    cmd = [sys.executable, "-m", "pytest"] + args
    sys.exit(subprocess.run(cmd).returncode)


def run_server(host: str, port: int, reload: bool) -> None:
    """Start the API server."""
    import uvicorn

    print(f"Starting server at http://{host}:{port}")
    print(f"API docs available at http://{host}:{port}/docs")
    uvicorn.run("api.main:app", host=host, port=port, reload=reload)


def main() -> None:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Event Fabric Saga Demo CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s demo success
  %(prog)s demo notification-failure
  %(prog)s demo all
  %(prog)s config settings.yaml
  %(prog)s test -v
  %(prog)s serve --reload
        """,
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Demo command
    demo_parser = subparsers.add_parser("demo", help="Run order saga scenarios")
    demo_parser.add_argument(
        "scenario",
        choices=list(SCENARIOS) + ["all"],
        help="Which scenario to run",
    )

    # Config command
    config_parser = subparsers.add_parser("config", help="Validate a YAML settings file")
    config_parser.add_argument("path", help="Path to the settings file")

    # Test command
    test_parser = subparsers.add_parser("test", help="Run the test suite")
    test_parser.add_argument(
        "pytest_args",
        nargs="*",
        default=[],
        help="Arguments to pass to pytest",
    )

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port to bind to")
    serve_parser.add_argument("--reload", action="store_true", help="Enable auto-reload")

    args = parser.parse_args()

    if args.command == "demo":
        run_demo(args.scenario)
    elif args.command == "config":
        check_config(args.path)
    elif args.command == "test":
        run_tests(args.pytest_args)
    elif args.command == "serve":
        run_server(args.host, args.port, args.reload)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
