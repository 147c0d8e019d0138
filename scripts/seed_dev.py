#!/usr/bin/env python
"""Seed development database with a character to talk to.

Inserts one development character for local testing of the reply pipeline.
The schema must already exist (run migrations first).

Constraints:
- Refuses to run in staging or prod (RELAY_ENV check)
- Idempotent: an existing character row is left untouched
- Never runs automatically (manual invocation only)

Usage:
    cd migrations && DATABASE_URL=... alembic upgrade head
    cd python && DATABASE_URL=... python ../scripts/seed_dev.py
"""

import os
import sys

DEV_CHARACTER = {
    "id": "dev_luna",
    "name": "Luna",
    "system_prompt": (
        "You are Luna, a cheerful amateur astronomer. You chat casually and keep "
        "replies short."
    ),
    "ai_settings": {},
    "knowledge": ["Luna has a backyard telescope.", "Luna's favourite comet is Hale-Bopp."],
}


def main():
    # 1. Environment check (hard fail in staging/prod)
    relay_env = os.getenv("RELAY_ENV", "local")
    if relay_env not in ("local", "test"):
        print(f"ERROR: seed_dev.py refuses to run in RELAY_ENV={relay_env}")
        sys.exit(1)

    # 2. Check DATABASE_URL
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        print("ERROR: DATABASE_URL environment variable must be set")
        sys.exit(1)

    from relay.db.engine import create_db_engine
    from relay.db.models import Character
    from relay.db.session import create_session_factory

    engine = create_db_engine(database_url)

    # 3. Idempotent seeding
    with create_session_factory(engine)() as db:
        created = db.get(Character, DEV_CHARACTER["id"]) is None
        if created:
            db.add(Character(**DEV_CHARACTER))
            db.commit()

    # 4. Report
    db_display = database_url.split("@")[1] if "@" in database_url else database_url
    print(f"Database: {db_display}")
    print(f"RELAY_ENV: {relay_env}")
    print()
    print(f"{'✓ Created' if created else '• Exists'}: character {DEV_CHARACTER['id']}")
    print()
    print("Conversation id for user 'dev_user': dev_user_" + DEV_CHARACTER["id"])


if __name__ == "__main__":
    main()
