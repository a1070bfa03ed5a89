"""
Database CLI commands: init
"""
import asyncio


class DbCommand:
    """Database CLI command handler."""

    def __init__(self, dry_run: bool = False):
        self.dry_run = dry_run

    def execute(self, args) -> int:
        if args.db_action == "init":
            return self._init()
        print("Error: Unknown database action")
        return 1

    def _init(self) -> int:
        from roster.database import DATABASE_URL, init_db, close_db

        print("=== Database Init ===")
        if self.dry_run:
            print(f"[DRY RUN] Would create missing tables on {DATABASE_URL}")
            return 0

        async def run():
            try:
                await init_db()
            finally:
                await close_db()

        asyncio.run(run())
        print("✓ Tables created")
        return 0
