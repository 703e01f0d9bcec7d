from __future__ import annotations

import argparse
import logging
import os
from typing import Optional, Sequence

import uvicorn

from .app import create_app
from .core import FederationSettings
from .core.admin_auth import issue_admin_token


def main(argv: Optional[Sequence[str]] = None) -> None:  # pragma: no cover - entry point
    parser = argparse.ArgumentParser(prog="barter-federation")
    commands = parser.add_subparsers(dest="command")
    token = commands.add_parser("admin-token", help="print a single-use operator token")
    token.add_argument("operator")
    token.add_argument("--ttl", type=int, default=None, help="lifetime in seconds")
    args = parser.parse_args(argv)

    if args.command == "admin-token":
        print(issue_admin_token(FederationSettings(), args.operator, args.ttl))
        return

    logging.basicConfig(
        level=os.environ.get("FEDERATION_LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = create_app()
    uvicorn.run(app, host="0.0.0.0", port=int(os.environ.get("FEDERATION_PORT", "8080")))


if __name__ == "__main__":  # pragma: no cover
    main()
