# src/pos_fiscal/scripts/set_credential.py
"""Encrypt and store a tenant's FBR token.

The token is read from stdin (or prompted for) so it never appears in the
process list or shell history.
"""

from __future__ import annotations

import argparse
import getpass
import sys

from sqlalchemy.exc import SQLAlchemyError

from pos_fiscal.core.errors import ConfigurationError
from pos_fiscal.db.session import SessionLocal
from pos_fiscal.models import Tenant
from pos_fiscal.services.vault import get_credential_vault


def read_token(from_stdin: bool) -> str:
    if from_stdin:
        return sys.stdin.readline().strip()
    return getpass.getpass("FBR token: ").strip()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Store an encrypted FBR token for a tenant")
    parser.add_argument("tenant_id", type=int, help="Tenant to configure")
    parser.add_argument("--base-url", default=None, help="FBR base URL override")
    parser.add_argument(
        "--production",
        action="store_true",
        help="Use the production endpoints instead of the sandbox",
    )
    parser.add_argument("--stdin", action="store_true", help="Read the token from stdin")
    args = parser.parse_args(argv)

    token = read_token(args.stdin)
    if not token:
        print("[set_credential] ERROR: empty token", file=sys.stderr)
        return 1

    try:
        vault = get_credential_vault()
        with SessionLocal() as db:
            if db.get(Tenant, args.tenant_id) is None:
                print(f"[set_credential] ERROR: tenant {args.tenant_id} not found", file=sys.stderr)
                return 1
            vault.store(
                db,
                args.tenant_id,
                token,
                base_url=args.base_url,
                sandbox=not args.production,
            )
            db.commit()
    except ConfigurationError as exc:
        print(f"[set_credential] ERROR: {exc.message}", file=sys.stderr)
        return 1
    except SQLAlchemyError as exc:
        print(f"[set_credential] ERROR: {exc}", file=sys.stderr)
        return 1

    mode = "production" if args.production else "sandbox"
    print(f"[set_credential] stored {mode} credential for tenant {args.tenant_id}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
