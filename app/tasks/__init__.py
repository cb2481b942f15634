from app.tasks.billing import run_backfill_sync

__all__ = ["run_backfill_sync"]
