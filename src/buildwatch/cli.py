#!/usr/bin/env python3
"""buildwatch CLI - run passes, trigger builds and inspect configuration."""
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

# Fail fast on unsupported interpreter version
if sys.version_info < (3, 10):
    print(f"buildwatch requires Python 3.10+; found {sys.version.split()[0]}", file=sys.stderr)
    sys.exit(1)


def _service(args: argparse.Namespace):
    from .config_loader import ConfigError
    from .service import BuildwatchService

    try:
        return BuildwatchService.from_config_file(Path(args.config) if args.config else None)
    except ConfigError as e:
        print(f"❌ Config error: {e}", file=sys.stderr)
        sys.exit(1)


def main(argv: list[str] | None = None) -> None:
    ap = argparse.ArgumentParser(
        prog="buildwatch",
        description="Watch git repositories and rebuild container images on new commits",
    )
    ap.add_argument("--config", help="Config file (default: $BUILDWATCH_CONFIG or ./buildwatch.toml)")

    sub = ap.add_subparsers(dest="cmd")

    p_check = sub.add_parser("check", help="Run one monitoring pass and print the resulting status")
    p_check.add_argument("--repo", help="Only check this repository id")

    p_trigger = sub.add_parser("trigger", help="Build a repository now, without change detection")
    p_trigger.add_argument("repo_id", help="Repository id")

    p_conn = sub.add_parser("test-connection", help="List remote refs for a repository (git ls-remote)")
    p_conn.add_argument("repo_id", help="Repository id")

    p_config = sub.add_parser("config", help="Configuration commands")
    config_sub = p_config.add_subparsers(dest="config_cmd")
    p_show = config_sub.add_parser("show", help="Print the resolved configuration")
    p_show.add_argument("--json", dest="as_json", action="store_true", help="Print as JSON")
    config_sub.add_parser("validate", help="Validate the configuration file")

    p_serve = sub.add_parser("serve", help="Run the HTTP control plane")
    p_serve.add_argument("--host", help="Bind host (default from config)")
    p_serve.add_argument("--port", type=int, help="Bind port (default from config)")
    p_serve.add_argument("--start", action="store_true", help="Start monitoring immediately")

    args = ap.parse_args(argv)

    if not args.cmd:
        ap.print_help()
        sys.exit(0)

    if args.cmd == "check":
        from .service import UnknownRepositoryError

        service = _service(args)
        if args.repo:
            try:
                service.scheduler.check_repository(service.repository(args.repo))
            except UnknownRepositoryError as e:
                print(f"❌ {e}", file=sys.stderr)
                sys.exit(1)
        else:
            service.scheduler.run_pass()
        status = service.status()
        print(json.dumps(status, indent=2))
        failed = any(state["lastError"] for state in status["repositories"].values())
        sys.exit(1 if failed else 0)

    if args.cmd == "trigger":
        from .builder import BuildError
        from .service import UnknownRepositoryError

        service = _service(args)
        try:
            image = service.trigger_build(args.repo_id)
        except UnknownRepositoryError as e:
            print(f"❌ {e}", file=sys.stderr)
            sys.exit(1)
        except BuildError as e:
            print(f"❌ Build failed: {e}", file=sys.stderr)
            sys.exit(1)
        print(f"✅ Published {image}")
        sys.exit(0)

    if args.cmd == "test-connection":
        from .git_reconcile import GitReconcileError
        from .service import UnknownRepositoryError

        service = _service(args)
        try:
            refs = service.test_connection(args.repo_id)
        except UnknownRepositoryError as e:
            print(f"❌ {e}", file=sys.stderr)
            sys.exit(1)
        except GitReconcileError as e:
            print(f"❌ {e}", file=sys.stderr)
            sys.exit(1)
        print("✅ Connection OK")
        for line in refs:
            print(f"  {line}")
        sys.exit(0)

    if args.cmd == "config":
        from .config_loader import ConfigError, default_config_path, dump_config, load_config

        path = Path(args.config) if args.config else default_config_path()

        if args.config_cmd == "show":
            try:
                config = load_config(path)
            except ConfigError as e:
                print(f"❌ Config error: {e}", file=sys.stderr)
                sys.exit(1)
            if args.as_json:
                print(json.dumps(config.model_dump(mode="json"), indent=2))
            else:
                print(dump_config(config))
            sys.exit(0)

        if args.config_cmd == "validate":
            if not path.exists():
                print(f"  ⚠ No config file at {path}. Using defaults.")
            try:
                config = load_config(path)
            except ConfigError as e:
                print(f"❌ {e}", file=sys.stderr)
                sys.exit(1)
            print("✓ Configuration is valid.")
            if not config.repositories:
                print("  ⚠ No repositories configured; monitoring cannot start.")
            sys.exit(0)

        p_config.print_help()
        sys.exit(0)

    if args.cmd == "serve":
        from buildwatch_server.app import serve

        serve(
            config_path=Path(args.config) if args.config else None,
            host=args.host,
            port=args.port,
            start_monitoring=args.start,
        )
        return


if __name__ == "__main__":
    main()
