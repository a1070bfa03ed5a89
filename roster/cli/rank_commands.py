"""
Rank CLI commands: list, auto-rankup
"""
import asyncio

from roster.errors import APIError


class RankCommand:
    """Rank CLI command handler."""

    def __init__(self, dry_run: bool = False):
        self.dry_run = dry_run

    def execute(self, args) -> int:
        if args.ranks_action == "list":
            return asyncio.run(self._list())
        if args.ranks_action == "auto-rankup":
            return asyncio.run(self._auto_rankup())
        print("Error: Unknown ranks action")
        return 1

    async def _list(self) -> int:
        from roster.database import AsyncSessionLocal, close_db
        from roster.services.rank_catalog_service import RankCatalogService

        try:
            async with AsyncSessionLocal() as db:
                ranks = await RankCatalogService.list_catalog(db)
        finally:
            await close_db()

        print("=== Rank Catalog ===")
        if not ranks:
            print("(no ranks defined)")
        for rank in ranks:
            threshold = rank["attendanceRequiredSinceLastRank"]
            auto = "auto" if rank["autoRankupEnabled"] else "manual"
            print(
                f"{rank['orderIndex']:>3}  {rank['abbreviation']:<6} {rank['name']:<24} "
                f"threshold={threshold if threshold is not None else '-'}  {auto}  "
                f"assigned={rank['assignedCount']}"
            )
        return 0

    async def _auto_rankup(self) -> int:
        from sqlalchemy import select

        from roster.database import AsyncSessionLocal, close_db
        from roster.orm.rank import UserRank
        from roster.services.promotion_service import EligibilityReason, PromotionService

        print("=== Auto Rankup ===")
        try:
            async with AsyncSessionLocal() as db:
                if self.dry_run:
                    user_ids = (await db.execute(select(UserRank.user_id).order_by(UserRank.user_id))).scalars().all()
                    eligible = 0
                    for user_id in user_ids:
                        result = await PromotionService.check_eligibility(db, user_id)
                        if result.reason == EligibilityReason.ELIGIBLE_AUTO:
                            eligible += 1
                            print(f"[DRY RUN] Would promote user {user_id}: "
                                  f"{result.current_rank.name} -> {result.next_rank.name}")
                    print(f"[DRY RUN] {eligible} users eligible")
                    return 0

                summary = await PromotionService.auto_rankup(db)
        except APIError as e:
            print(f"Error: {e.message}")
            return 1
        finally:
            await close_db()

        for row in summary["promoted"]:
            print(f"✓ {row['username'] or row['userId']}: {row['oldRank']} -> {row['newRank']}")
        for row in summary["failed"]:
            print(f"✗ {row['username'] or row['userId']}: {row['reason']}")
        print(
            f"Promoted: {summary['promotedCount']}  "
            f"Not promoted: {summary['failedCount']}  Skipped: {summary['skippedCount']}"
        )
        return 0
