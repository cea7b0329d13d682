# ==============================================
# CLI - Command Line Entry Point
# ==============================================
#
# PURPOSE:
#   Operate the storage routing service from a terminal. Every command
#   except `serve` is a thin HTTP client of the running API, so the CLI
#   never bypasses the MigrationGuard.
#
# COMMANDS:
# ---------
# 1. Start the API:
#    python -m taskflow.cli serve --port 8000
#
# 2. Test a candidate database without saving anything:
#    python -m taskflow.cli test-connection "mongodb+srv://..." --database taskflow
#
# 3. Register a tenant (default OFFICIAL record):
#    python -m taskflow.cli register org-42 --kind organization
#
# 4. Switch storage mode:
#    python -m taskflow.cli configure org-42 --mode self_hosted \
#        --connection-string "mongodb+srv://..." --include-org-metadata
#    python -m taskflow.cli configure org-42 --mode official --confirm
#
# 5. Re-run schema initialization:
#    python -m taskflow.cli initialize org-42
#
# 6. Drop cached routing for a tenant:
#    python -m taskflow.cli invalidate org-42
#
# 7. Diagnostics:
#    python -m taskflow.cli status org-42
#    python -m taskflow.cli config [org-42]
#
# IMPLEMENTATION:
# ---------------
# - argparse subcommands
# - requests against config.api.base_url (overridable with --base-url)
# - exit code 0 on success, 1 on any failure
#
# ==============================================

import argparse
import json
import sys
from typing import Any, Dict, Optional

import requests

from taskflow.config import configure_logging, get_config


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, sort_keys=True, default=str))


def _call(
    args: argparse.Namespace,
    method: str,
    path: str,
    payload: Optional[Dict[str, Any]] = None,
    params: Optional[Dict[str, Any]] = None,
) -> int:
    url = args.base_url.rstrip("/") + path
    try:
        response = requests.request(method, url, json=payload, params=params, timeout=args.timeout)
    except requests.RequestException as e:
        print(f"✗ Could not reach {url}: {e}", file=sys.stderr)
        return 1

    try:
        body = response.json()
    except ValueError:
        body = {"success": False, "message": response.text}

    if not isinstance(body, dict):
        body = {"result": body}

    if response.ok:
        print(f"✓ {body.get('message', 'OK')}")
        _print_json(body)
        return 0

    message = body.get("message") or body.get("error") or "request failed"
    print(f"✗ {response.status_code}: {message}", file=sys.stderr)
    if body.get("destructive"):
        print("  This change leaves existing data unreachable. Re-run with --confirm to proceed.",
              file=sys.stderr)
    if body.get("hint"):
        print(f"  Hint: {body['hint']}", file=sys.stderr)
    _print_json(body)
    return 1


def cmd_test_connection(args: argparse.Namespace) -> int:
    payload = {"connectionString": args.connection_string, "databaseName": args.database}
    return _call(args, "POST", "/storage/test-connection", payload)


def cmd_register(args: argparse.Namespace) -> int:
    return _call(args, "POST", "/storage/tenants", {"tenantId": args.tenant_id, "tenantKind": args.kind})


def cmd_configure(args: argparse.Namespace) -> int:
    payload: Dict[str, Any] = {
        "tenantId": args.tenant_id,
        "mode": args.mode,
        "confirm": args.confirm,
    }
    if args.connection_string:
        payload["connectionString"] = args.connection_string
    if args.database:
        payload["databaseName"] = args.database
    if args.include_org_metadata is not None:
        payload["includeOrganizationMetadata"] = args.include_org_metadata
    if args.kind:
        payload["tenantKind"] = args.kind
    return _call(args, "POST", "/storage/configure", payload)


def cmd_initialize(args: argparse.Namespace) -> int:
    payload: Dict[str, Any] = {"tenantId": args.tenant_id}
    if args.connection_string:
        payload["connectionString"] = args.connection_string
    if args.database:
        payload["databaseName"] = args.database
    return _call(args, "POST", "/storage/initialize", payload)


def cmd_invalidate(args: argparse.Namespace) -> int:
    return _call(args, "POST", "/storage/invalidate-cache", {"tenantId": args.tenant_id})


def cmd_status(args: argparse.Namespace) -> int:
    return _call(args, "GET", "/storage/status", params={"tenantId": args.tenant_id})


def cmd_config(args: argparse.Namespace) -> int:
    params = {"tenantId": args.tenant_id} if args.tenant_id else None
    return _call(args, "GET", "/storage/config", params=params)


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    from taskflow.api import create_app

    configure_logging(args.log_level)
    uvicorn.run(create_app(), host=args.host, port=args.port, log_level=args.log_level.lower())
    return 0


def build_parser() -> argparse.ArgumentParser:
    config = get_config()

    parser = argparse.ArgumentParser(
        prog="taskflow-storage",
        description="Manage official / self-hosted storage for Taskflow tenants",
    )
    parser.add_argument("--base-url", default=config.api.base_url, help="API base URL")
    parser.add_argument("--timeout", type=float, default=60.0, help="HTTP timeout in seconds")
    subparsers = parser.add_subparsers(dest="command", required=True)

    p = subparsers.add_parser("test-connection", help="Probe a MongoDB connection string")
    p.add_argument("connection_string")
    p.add_argument("--database", default=None, help="Database name (default: taskflow)")
    p.set_defaults(func=cmd_test_connection)

    p = subparsers.add_parser("register", help="Create a tenant's default official record")
    p.add_argument("tenant_id")
    p.add_argument("--kind", choices=["user", "organization"], default="user")
    p.set_defaults(func=cmd_register)

    p = subparsers.add_parser("configure", help="Change a tenant's storage mode")
    p.add_argument("tenant_id")
    p.add_argument("--mode", choices=["official", "self_hosted"], required=True)
    p.add_argument("--connection-string", default=None)
    p.add_argument("--database", default=None)
    p.add_argument("--kind", choices=["user", "organization"], default=None)
    p.add_argument("--include-org-metadata", dest="include_org_metadata", action="store_true")
    p.add_argument("--no-include-org-metadata", dest="include_org_metadata", action="store_false")
    p.add_argument("--confirm", action="store_true", help="Accept that existing data becomes unreachable")
    p.set_defaults(func=cmd_configure, include_org_metadata=None)

    p = subparsers.add_parser("initialize", help="Create missing collections and indexes")
    p.add_argument("tenant_id")
    p.add_argument("--connection-string", default=None)
    p.add_argument("--database", default=None)
    p.set_defaults(func=cmd_initialize)

    p = subparsers.add_parser("invalidate", help="Drop cached routing for a tenant")
    p.add_argument("tenant_id")
    p.set_defaults(func=cmd_invalidate)

    p = subparsers.add_parser("status", help="Show mode, locations and live counts")
    p.add_argument("tenant_id")
    p.set_defaults(func=cmd_status)

    p = subparsers.add_parser("config", help="Show one or all stored configurations (masked)")
    p.add_argument("tenant_id", nargs="?", default=None)
    p.set_defaults(func=cmd_config)

    p = subparsers.add_parser("serve", help="Run the HTTP API")
    p.add_argument("--host", default=config.api.host)
    p.add_argument("--port", type=int, default=config.api.port)
    p.add_argument("--log-level", default=config.log_level)
    p.set_defaults(func=cmd_serve)

    return parser


def main(argv: Optional[list] = None) -> int:
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
