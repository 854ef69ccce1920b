"""Operator CLI.

Works directly against the configured storage backend, so it is only
useful with a persistent backend (``RINGBROKER_STORAGE_BACKEND=sqlite``).
"""

import argparse
import json
import sys
from dataclasses import asdict

from loguru import logger

from .broker import SecretBroker
from .config import Settings
from .errors import BrokerError
from .log import setup_logging


def _print(payload: dict) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


def _create_ring(broker: SecretBroker, args) -> dict:
    ring = broker.rings.create_ring(
        args.ring_id,
        args.member,
        creator=args.member,
        metadata={"label": args.label} if args.label else None,
    )
    if args.publish:
        broker.registry.register(ring.ring_id, public_name=args.label)
    return {"ring_id": ring.ring_id, "members": ring.role_map()}


def _elevate(broker: SecretBroker, args) -> dict:
    return asdict(broker.credentials.issue_elevation_code(args.fragment))


def _issue_token(broker: SecretBroker, args) -> dict:
    code = args.code or broker.credentials.issue_elevation_code(args.fragment).code
    issued = broker.credentials.issue_bearer_token(
        args.principal,
        args.client_id,
        args.client_type,
        args.days,
        elevation_code=code,
    )
    return asdict(issued)


def _sweep(broker: SecretBroker, args) -> dict:
    return {"removed": broker.credentials.sweep()}


def _discover(broker: SecretBroker, args) -> dict:
    found = broker.registry.discover(include_anonymous=not args.no_anonymous)
    return {"rings": {ring_id: info.to_dict() for ring_id, info in found.items()}}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ringbroker", description="Multi-tenant secret broker admin tool")
    parser.add_argument("--config", help="YAML settings file (defaults to environment variables)")
    parser.add_argument("--log-level", default=None, help="Override the configured log level")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("create-ring", help="Create a ring owned by MEMBER")
    p.add_argument("member", help="First member and creator of the ring")
    p.add_argument("--ring-id", default=None, help="Ring id (generated when omitted)")
    p.add_argument("--label", default=None, help="Human readable label")
    p.add_argument("--publish", action="store_true", help="Register the ring for discovery")
    p.set_defaults(handler=_create_ring)

    p = sub.add_parser("elevate", help="Exchange an architect passphrase fragment for an elevation code")
    p.add_argument("fragment", help="At least four characters of the architect passphrase")
    p.set_defaults(handler=_elevate)

    p = sub.add_parser("issue-token", help="Issue a bearer token")
    p.add_argument("principal")
    p.add_argument("client_id")
    p.add_argument("--client-type", default="generic")
    p.add_argument("--days", type=int, default=None, help="Lifetime in days")
    auth = p.add_mutually_exclusive_group(required=True)
    auth.add_argument("--code", help="Elevation code from 'elevate'")
    auth.add_argument("--fragment", help="Architect passphrase fragment (elevates and issues in one step)")
    p.set_defaults(handler=_issue_token)

    p = sub.add_parser("sweep", help="Purge expired credentials and challenges")
    p.set_defaults(handler=_sweep)

    p = sub.add_parser("discover", help="List rings registered for discovery")
    p.add_argument("--no-anonymous", action="store_true", help="Hide anonymous rings")
    p.set_defaults(handler=_discover)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = Settings.from_yaml(args.config) if args.config else Settings.from_env()
    setup_logging(args.log_level or settings.log_level, settings.log_serialize)

    try:
        broker = SecretBroker(settings)
        _print({"success": True, **args.handler(broker, args)})
    except BrokerError as e:
        _print({"success": False, "status": e.status, "error": e.message})
        return 1
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
