import logging
import time
from contextlib import AbstractContextManager
from typing import Callable

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy import select
from sqlalchemy.orm import Session

from config import get_settings
from database import session_scope
from errors import ValidationError
from models import ReminderFrequency, User
from notifications import BudgetAlertService, GoalReminderService


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# id, display name, crontab, CronTrigger fields (day_of_week names avoid
# APScheduler's Monday=0 numbering)
JOBS = (
    (
        "monthly_budget_summary",
        "Monthly budget summary",
        "0 9 1 * *",
        {"day": 1, "hour": 9, "minute": 0},
    ),
    (
        "weekly_budget_check",
        "Weekly budget check",
        "0 8 * * 1",
        {"day_of_week": "mon", "hour": 8, "minute": 0},
    ),
    (
        "daily_budget_violations",
        "Daily budget violation check",
        "0 18 * * *",
        {"hour": 18, "minute": 0},
    ),
    (
        "daily_goal_reminders",
        "Daily goal reminders",
        "0 10 * * *",
        {"hour": 10, "minute": 0},
    ),
    (
        "weekly_goal_reminders",
        "Weekly goal reminders",
        "0 9 * * 1",
        {"day_of_week": "mon", "hour": 9, "minute": 0},
    ),
    (
        "monthly_goal_reminders",
        "Monthly goal reminders",
        "0 10 1 * *",
        {"day": 1, "hour": 10, "minute": 0},
    ),
)


class SchedulerManager:
    def __init__(
        self, session_factory: Callable[[], AbstractContextManager] = session_scope
    ) -> None:
        settings = get_settings()
        self.timezone = settings.timezone
        self.scheduler = BackgroundScheduler(timezone=self.timezone)
        self.session_factory = session_factory
        self.initialized = False
        self._handlers: dict[str, Callable[[Session], dict[str, object]]] = {
            "monthly_budget_summary": self._monthly_budget_summary,
            "weekly_budget_check": self._weekly_budget_check,
            "daily_budget_violations": self._daily_budget_violations,
            "daily_goal_reminders": lambda s: self._goal_reminders(s, ReminderFrequency.daily),
            "weekly_goal_reminders": lambda s: self._goal_reminders(s, ReminderFrequency.weekly),
            "monthly_goal_reminders": lambda s: self._goal_reminders(
                s, ReminderFrequency.monthly
            ),
        }

    @staticmethod
    def _eligible_users(session: Session, *flags: str) -> list[User]:
        stmt = select(User).where(User.is_email_verified.is_(True))
        for flag in flags:
            stmt = stmt.where(getattr(User, flag).is_(True))
        return session.scalars(stmt.order_by(User.id)).all()

    @staticmethod
    def _for_each_user(
        session: Session, users: list[User], action: Callable[[int], int]
    ) -> dict[str, object]:
        processed = 0
        sent = 0
        errors = 0
        for user_id in [u.id for u in users]:
            try:
                sent += action(user_id)
                processed += 1
            except Exception:
                session.rollback()
                errors += 1
                logger.exception(f"scheduler_user_failed: user_id={user_id}")
        return {"users_processed": processed, "notifications_sent": sent, "errors": errors}

    def _monthly_budget_summary(self, session: Session) -> dict[str, object]:
        alerts = BudgetAlertService(session)
        users = self._eligible_users(
            session, "budget_alerts_enabled", "monthly_summary_enabled"
        )
        return self._for_each_user(
            session, users, lambda uid: int(alerts.send_monthly_summary(uid) is not None)
        )

    def _weekly_budget_check(self, session: Session) -> dict[str, object]:
        alerts = BudgetAlertService(session)
        users = self._eligible_users(session, "budget_alerts_enabled", "weekly_check_enabled")
        return self._for_each_user(session, users, lambda uid: len(alerts.check_user(uid)))

    def _daily_budget_violations(self, session: Session) -> dict[str, object]:
        alerts = BudgetAlertService(session)
        users = self._eligible_users(session, "budget_alerts_enabled", "daily_check_enabled")
        return self._for_each_user(session, users, lambda uid: len(alerts.check_user(uid)))

    @staticmethod
    def _goal_reminders(
        session: Session, frequency: ReminderFrequency
    ) -> dict[str, object]:
        return GoalReminderService(session).process_goal_reminders(frequency)

    def run_job(self, job_id: str) -> dict[str, object]:
        handler = self._handlers.get(job_id)
        if handler is None:
            raise ValidationError(f"Unknown scheduler job: {job_id}")

        started = time.monotonic()
        logger.info(f"scheduler_run: job={job_id}")
        try:
            with self.session_factory() as session:
                result = handler(session)
        except Exception as exc:
            logger.exception(f"scheduler_job_failed: job={job_id}")
            return {"job": job_id, "success": False, "error": str(exc)}

        duration = round(time.monotonic() - started, 3)
        logger.info(f"scheduler_run: job={job_id} duration={duration}s result={result}")
        return {"job": job_id, "success": True, "duration_seconds": duration, **result}

    def start(self) -> None:
        if self.scheduler.running:
            logger.warning("Scheduler already running")
            return

        for job_id, name, _, fields in JOBS:
            self.scheduler.add_job(
                self.run_job,
                CronTrigger(timezone=self.timezone, **fields),
                args=[job_id],
                id=job_id,
                name=name,
                replace_existing=True,
                misfire_grace_time=3600,
            )

        self.scheduler.start()
        self.initialized = True
        logger.info(f"Scheduler started with {len(JOBS)} jobs")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

    def status(self) -> dict[str, object]:
        jobs = []
        for job_id, name, cron, _ in JOBS:
            job = self.scheduler.get_job(job_id)
            jobs.append(
                {
                    "id": job_id,
                    "name": name,
                    "trigger": cron,
                    "next_run_time": getattr(job, "next_run_time", None) if job else None,
                }
            )
        return {
            "initialized": self.initialized,
            "running": self.scheduler.running,
            "jobs": jobs,
        }
