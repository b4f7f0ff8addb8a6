"""
Background maintenance jobs.

Each job runs on its own daemon thread at a fixed interval until ``stop()``.
The service is created and started by the application lifespan.
"""
import logging
import threading
from datetime import timedelta
from typing import Callable, Dict, List, Optional

from pymongo.database import Database
from pymongo.errors import PyMongoError

from database import utcnow
from models import EmailVerifications, Sessions, Users

logger = logging.getLogger(__name__)

HOUR = 60 * 60

COLLECTIONS = ("user", "emailverification", "order", "product", "session")


class Job:
    def __init__(self, name: str, interval: float, func: Callable[[], object]):
        self.name = name
        self.interval = interval
        self.func = func
        self.last_run = None
        self.thread: Optional[threading.Thread] = None

    def run_once(self) -> object:
        try:
            result = self.func()
        except Exception:
            logger.exception("Maintenance job %s failed", self.name)
            return None
        finally:
            self.last_run = utcnow()
        return result


class CleanupService:
    def __init__(self, db: Database, verification_interval: float = HOUR,
                 lock_interval: float = 6 * HOUR, maintenance_interval: float = 24 * HOUR):
        self.db = db
        self.jobs: List[Job] = [
            Job("email-verification-cleanup", verification_interval, self.cleanup_verifications),
            Job("lock-and-session-cleanup", lock_interval, self.cleanup_old_sessions),
            Job("database-maintenance", maintenance_interval, self.perform_database_maintenance),
        ]
        self._stop = threading.Event()
        self.is_running = False
        self.last_manual_run = None

    def start(self) -> None:
        if self.is_running:
            logger.info("Cleanup service is already running")
            return
        self._stop.clear()
        for job in self.jobs:
            job.thread = threading.Thread(target=self._loop, args=(job,), name=job.name, daemon=True)
            job.thread.start()
        self.is_running = True
        logger.info("Cleanup service started with %d jobs", len(self.jobs))

    def stop(self) -> None:
        if not self.is_running:
            return
        self._stop.set()
        for job in self.jobs:
            if job.thread is not None:
                job.thread.join(timeout=5)
                job.thread = None
        self.is_running = False
        logger.info("Cleanup service stopped")

    def _loop(self, job: Job) -> None:
        while not self._stop.wait(job.interval):
            job.run_once()

    def cleanup_verifications(self) -> int:
        deleted = EmailVerifications.cleanup_expired(self.db)
        logger.info("Cleaned up %d expired email verifications", deleted)
        return deleted

    def cleanup_expired_locks(self) -> int:
        result = self.db[Users.collection].update_many(
            {"lock_until": {"$ne": None, "$lt": utcnow()}},
            {"$set": {"login_attempts": 0, "lock_until": None, "updated_at": utcnow()}},
        )
        logger.info("Unlocked %d expired account locks", result.modified_count)
        return result.modified_count

    def cleanup_sessions(self) -> int:
        deleted = Sessions.cleanup_expired(self.db)
        logger.info("Removed %d expired sessions", deleted)
        return deleted

    def cleanup_old_sessions(self) -> Dict[str, int]:
        return {"unlocked_accounts": self.cleanup_expired_locks(), "expired_sessions": self.cleanup_sessions()}

    def perform_database_maintenance(self) -> Dict[str, object]:
        stats: Dict[str, object] = {}
        for name in COLLECTIONS:
            try:
                stats[name] = self.db[name].count_documents({})
            except PyMongoError as e:
                logger.error("Failed to count %s: %s", name, e)
                stats[name] = "error"
        logger.info("Database statistics: %s", stats)
        return stats

    def run_manual_cleanup(self) -> Dict[str, object]:
        logger.info("Running manual cleanup")
        deleted = self.cleanup_verifications()
        sessions = self.cleanup_old_sessions()
        stats = self.perform_database_maintenance()
        self.last_manual_run = utcnow()
        return {
            "email_verifications_deleted": deleted,
            **sessions,
            "collections": stats,
            "timestamp": self.last_manual_run,
        }

    def get_status(self) -> Dict[str, object]:
        return {
            "is_running": self.is_running,
            "active_jobs": sum(1 for j in self.jobs if j.thread is not None),
            "jobs": [
                {"name": j.name, "interval_seconds": j.interval, "last_run": j.last_run}
                for j in self.jobs
            ],
            "last_manual_run": self.last_manual_run,
        }

    def get_statistics(self, days: int = 7) -> Dict[str, object]:
        start = utcnow() - timedelta(days=days)
        return {
            "period": f"Last {days} days",
            "email_verifications": EmailVerifications.get_statistics(self.db, start, utcnow()),
            "timestamp": utcnow(),
        }
