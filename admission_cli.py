#!/usr/bin/env python3
"""
Admission Gateway - Command Line Interface

Usage:
    admission serve [--host H] [--port P]          Run the HTTP adapter
    admission defaults                             Print the stock action policies as JSON
    admission validate-config <snapshot.json>      Validate a config snapshot
    admission verify-audit <audit.jsonl> --public-key HEX
                                                   Verify a tamper-evident audit log
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from admission_gateway.audit_log import verify_file
from admission_gateway.policy import DEFAULT_ACTION_POLICIES, ActionPolicy, build_escalation_levels
from admission_gateway.schema import validate_snapshot

logger = logging.getLogger("admission_gateway")


def setup_logging(verbose: bool = False):
    """Configure logging for CLI usage."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    logger.setLevel(level)


def cmd_serve(args):
    import uvicorn

    from admission_gateway.server import create_app

    uvicorn.run(create_app(), host=args.host, port=args.port)


def cmd_defaults(args):
    """Print stock policies with their derived escalation tables."""
    out = {}
    for action_id, cfg in DEFAULT_ACTION_POLICIES.items():
        policy = ActionPolicy.from_config(action_id, cfg)
        out[action_id] = {
            "policy": policy.as_dict(),
            "escalation": [lvl.as_dict() for lvl in build_escalation_levels(policy)],
        }
    print(json.dumps(out, indent=2, sort_keys=True))


def cmd_validate_config(args):
    """Validate a configuration snapshot against the published JSON Schema."""
    path = Path(args.path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        print(f"✗ READ_ERROR: {path}: {e}")
        raise SystemExit(2)

    ok, msgs = validate_snapshot(data)
    for m in msgs:
        mark = "✓" if m.ok else "✗"
        print(f"{mark} {m.code}: {m.detail}")
    if not ok:
        raise SystemExit(2)


def cmd_verify_audit(args):
    ok, reason, count = verify_file(args.path, args.public_key)
    if args.json:
        print(json.dumps({"ok": ok, "reason": reason, "records": count}))
    else:
        mark = "✓" if ok else "✗"
        print(f"{mark} {reason} ({count} records)")
    if not ok:
        raise SystemExit(1)


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Admission Gateway CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP adapter")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Host to bind (default: 0.0.0.0)")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port to bind (default: 8000)")
    serve_parser.set_defaults(func=cmd_serve)

    defaults_parser = subparsers.add_parser("defaults", help="Print stock action policies")
    defaults_parser.set_defaults(func=cmd_defaults)

    vc_parser = subparsers.add_parser("validate-config", help="Validate a config snapshot")
    vc_parser.add_argument("path", help="Path to a snapshot JSON file")
    vc_parser.set_defaults(func=cmd_validate_config)

    va_parser = subparsers.add_parser("verify-audit", help="Verify a tamper-evident audit log")
    va_parser.add_argument("path", help="Path to the JSONL audit log")
    va_parser.add_argument("--public-key", required=True, help="Ed25519 public key (hex)")
    va_parser.add_argument("--json", action="store_true", help="Emit a JSON result")
    va_parser.set_defaults(func=cmd_verify_audit)

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    setup_logging(args.verbose)
    args.func(args)


if __name__ == "__main__":
    main()
