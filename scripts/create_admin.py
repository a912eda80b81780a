#!/usr/bin/env python3
"""
Bootstrap an admin account.

Creates the identity and profile if the email is new, or promotes the
existing account otherwise.

Usage:
    python scripts/create_admin.py admin@example.com "Admin Name"
    python scripts/create_admin.py admin@example.com "Admin Name" --password 'S3cure!pass'

Environment Variables:
    DATABASE_URL: Profile store connection string
    FIREBASE_CREDENTIALS_PATH or FIREBASE_CONFIG_JSON: Service account
"""

import argparse
import asyncio
import getpass
import sys
from pathlib import Path

import dotenv

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

dotenv.load_dotenv()

from app.config import settings  # noqa: E402
from app.core.firebase import IdentityProvider, close_firebase, initialize_firebase  # noqa: E402
from app.core.security import password_policy_errors  # noqa: E402
from app.database import AsyncSessionLocal, engine  # noqa: E402
from app.schemas.users import AccountStatus, Role  # noqa: E402
from app.services.profile_store import ProfileStore  # noqa: E402


async def create_admin(email: str, display_name: str, password: str | None) -> str:
    """Create or promote an admin account and return its uid."""
    email = email.strip().lower()
    identity = IdentityProvider(
        timeout=settings.identity_timeout_seconds,
        web_api_key=settings.firebase_web_api_key,
    )

    record = await identity.get_identity_by_email(email)
    if record is None:
        if not password:
            raise ValueError("A password is required for a new account")
        record = await identity.create_identity(email, password, display_name)
        print(f"✓ Identity created: {record['id']}")
    else:
        print(f"• Identity already exists: {record['id']}")

    uid = record["id"]

    async with AsyncSessionLocal() as session:
        store = ProfileStore(session, timeout=settings.store_timeout_seconds)
        if await store.get(uid) is None:
            await store.create(
                uid,
                {
                    "email": email,
                    "email_verified": record["email_verified"],
                    "display_name": display_name,
                    "role": Role.ADMIN.value,
                    "status": AccountStatus.ACTIVE.value,
                    "personal_info": {},
                    "preferences": {},
                },
            )
            print("✓ Admin profile created")
        else:
            await store.update_fields(
                uid, {"role": Role.ADMIN.value, "status": AccountStatus.ACTIVE.value}
            )
            print("✓ Existing profile promoted to admin")

    await identity.set_claims(
        uid, {"role": Role.ADMIN.value, "emailVerified": record["email_verified"]}
    )
    return uid


def main() -> int:
    """Parse arguments and bootstrap the admin."""
    parser = argparse.ArgumentParser(description="Create or promote an admin account")
    parser.add_argument("email", help="Admin email address")
    parser.add_argument("display_name", help="Admin display name")
    parser.add_argument("--password", help="Password for a new account (prompted if omitted)")
    args = parser.parse_args()

    password = args.password
    if password is None:
        password = getpass.getpass("Password (leave empty for an existing account): ") or None

    if password:
        errors = password_policy_errors(password)
        if errors:
            for error in errors:
                print(f"✗ {error}", file=sys.stderr)
            return 1

    initialize_firebase(settings.firebase_credentials_path, settings.firebase_config_json)

    async def run() -> str:
        try:
            return await create_admin(args.email, args.display_name, password)
        finally:
            await engine.dispose()

    try:
        uid = asyncio.run(run())
    except Exception as e:
        print(f"✗ Failed to create admin: {e}", file=sys.stderr)
        return 1
    finally:
        close_firebase()

    print(f"✓ Admin ready: {uid}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
