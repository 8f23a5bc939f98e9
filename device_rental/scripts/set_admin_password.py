#!/usr/bin/env python3
from __future__ import annotations

import argparse
import getpass
import os

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from device_rental.db.base import CredentialBase
from device_rental.services.credential_service import ADMIN_CREDENTIAL_KEY, MIN_PASSWORD_LENGTH, set_admin_password


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Set the shared password that authorizes returns and period overrides.",
    )
    parser.add_argument(
        "--password",
        default=None,
        help="Password to store. Omit to be prompted without echo.",
    )
    parser.add_argument(
        "--key",
        default=ADMIN_CREDENTIAL_KEY,
        help="Credential key in AdminCredentials (default: admin).",
    )
    parser.add_argument(
        "--db-url",
        default=os.environ.get("CREDENTIAL_DB_URL", "").strip(),
        help="SQLAlchemy DB URL; defaults to CREDENTIAL_DB_URL env var.",
    )
    return parser


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()

    if not args.db_url:
        parser.error("Missing DB URL. Set CREDENTIAL_DB_URL or pass --db-url.")
    password = args.password if args.password is not None else getpass.getpass("New password: ")
    if len(password.strip()) < MIN_PASSWORD_LENGTH:
        parser.error(f"--password must be at least {MIN_PASSWORD_LENGTH} characters.")

    engine = create_engine(args.db_url, pool_pre_ping=True, future=True)
    CredentialBase.metadata.create_all(bind=engine)
    session_factory = sessionmaker(bind=engine, expire_on_commit=False, future=True)
    with session_factory() as db:
        row = set_admin_password(db, password, credential_key=args.key)
        print(f"OK key={row.CredentialKey} password_updated_at={row.PasswordUpdatedAt}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
