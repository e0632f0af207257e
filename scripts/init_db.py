#!/usr/bin/env python3
"""Prepare the database for the suggestion service.

Usage:
    python scripts/init_db.py                       # Create tables from models (dev)
    python scripts/init_db.py --migrate             # alembic upgrade head (production)
    python scripts/init_db.py --reset               # Drop everything first (DANGER)
    python scripts/init_db.py --workspace T0123 --workspace-name Acme
                                                    # Register a Slack workspace
    python scripts/init_db.py --prune               # Prune stale thread participation now
"""

import argparse
import asyncio
import sys

from sqlalchemy import select, text

from speakforme.config import settings
from speakforme.db.models import Base, Workspace
from speakforme.db.session import close_db, db_session, get_engine, init_db


async def check_connection() -> None:
    async with get_engine().connect() as conn:
        await conn.execute(text("SELECT 1"))
    print("Connected")


async def reset_schema() -> None:
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    print("Dropped all tables")


def upgrade_head() -> None:
    import alembic.command
    import alembic.config

    alembic.command.upgrade(alembic.config.Config("alembic.ini"), "head")
    print("Migrations applied")


async def register_workspace(team_id: str, name: str | None) -> None:
    """Events from unknown teams are dropped, so each team needs a row."""
    async with db_session() as db:
        existing = (
            await db.execute(select(Workspace).where(Workspace.slack_team_id == team_id))
        ).scalar_one_or_none()
        if existing is not None:
            print(f"Workspace {team_id} already registered ({existing.id})")
            return
        workspace = Workspace(slack_team_id=team_id, name=name or team_id)
        db.add(workspace)
        await db.flush()
        print(f"Registered workspace {team_id} ({workspace.id})")


async def prune_now() -> None:
    from speakforme.jobs.scheduler import HygieneScheduler

    removed = await HygieneScheduler().prune_participation()
    print(f"Pruned {removed} participation rows")


async def main() -> int:
    parser = argparse.ArgumentParser(description="Prepare the Speak for Me database")
    parser.add_argument("--migrate", action="store_true", help="Run Alembic migrations")
    parser.add_argument("--reset", action="store_true", help="Drop all tables first (DANGER)")
    parser.add_argument("--workspace", metavar="TEAM_ID", help="Register a Slack team id")
    parser.add_argument("--workspace-name", help="Display name for --workspace")
    parser.add_argument("--prune", action="store_true", help="Prune stale participation")
    args = parser.parse_args()

    print(f"Database: {settings.database_url.split('@')[-1]}")

    try:
        await check_connection()

        if args.reset:
            print("DANGER: dropping all tables")
            await reset_schema()

        if args.migrate:
            # env.py drives its own event loop and engine
            await close_db()
            await asyncio.to_thread(upgrade_head)
        elif not (args.workspace or args.prune) or args.reset:
            await init_db()
            print("Tables created from models")

        if args.workspace:
            await register_workspace(args.workspace, args.workspace_name)
        if args.prune:
            await prune_now()
        return 0
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        await close_db()


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
