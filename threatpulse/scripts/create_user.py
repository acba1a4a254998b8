"""
Create an account (e.g. the first admin). Run from project root:
  python -m threatpulse.scripts.create_user EMAIL PASSWORD NAME [role]
Example:
  python -m threatpulse.scripts.create_user admin@company.com your-secure-password "Administrator" admin
"""
import argparse
import logging
import sys

from threatpulse.core.database import session_scope
from threatpulse.core.errors import AccountExists
from threatpulse.core.security import PASSWORD_MAX_LEN, PASSWORD_MIN_LEN
from threatpulse.schemas.auth import ROLE_VALUES, normalize_email
from threatpulse.services.accounts import create_account

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Create a ThreatPulse account.")
    parser.add_argument("email", help="Account email")
    parser.add_argument("password", help=f"Password ({PASSWORD_MIN_LEN}-{PASSWORD_MAX_LEN} chars)")
    parser.add_argument("name", help="Display name")
    parser.add_argument("role", nargs="?", default="analyst", choices=sorted(ROLE_VALUES))
    args = parser.parse_args(argv)

    try:
        email = normalize_email(args.email)
    except ValueError:
        print("Invalid email address.", file=sys.stderr)
        return 1
    if not (PASSWORD_MIN_LEN <= len(args.password) <= PASSWORD_MAX_LEN):
        print(f"Password must be {PASSWORD_MIN_LEN}-{PASSWORD_MAX_LEN} characters.", file=sys.stderr)
        return 1
    if not args.name.strip():
        print("Name must be non-empty.", file=sys.stderr)
        return 1

    try:
        with session_scope() as db:
            account_id = create_account(db, email, args.password, args.name, role=args.role).id
    except AccountExists:
        print(f"Account '{email}' already exists.", file=sys.stderr)
        return 1
    print(f"Created account '{email}' ({account_id}) with role '{args.role}'.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
