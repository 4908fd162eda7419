from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from errors import NotFoundError, ValidationError
from models import (
    Budget,
    Goal,
    GoalStatus,
    Notification,
    NotificationKind,
    ReminderFrequency,
    User,
)
from periods import add_months, month_end, month_start
from reports import monthly_requirement, predict_goal_achievement
from services import BudgetService, next_reminder_time


logger = logging.getLogger(__name__)

EXCEEDED_COOLDOWN = timedelta(hours=24)
WARNING_COOLDOWN = timedelta(hours=12)
CATEGORY_OVERSPEND_PERCENT = 80


def _money(cents: float) -> str:
    return f"{cents / 100:.2f}"


class NotificationService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def record(
        self,
        kind: NotificationKind,
        subject: str,
        *,
        priority: str = "medium",
        budget_id: Optional[int] = None,
        category_id: Optional[int] = None,
        goal_id: Optional[int] = None,
        payload: Optional[dict] = None,
        now: Optional[datetime] = None,
    ) -> Notification:
        notification = Notification(
            user_id=self.user_id,
            kind=kind,
            subject=subject[:200],
            priority=priority,
            budget_id=budget_id,
            category_id=category_id,
            goal_id=goal_id,
            payload=payload or {},
            created_at=now or datetime.utcnow(),
        )
        self.session.add(notification)
        self.session.flush()
        logger.info(
            "notification_queued: user_id=%s kind=%s subject=%r",
            self.user_id,
            kind.value,
            notification.subject,
        )
        return notification

    def has_recent(
        self,
        kind: NotificationKind,
        window: timedelta,
        *,
        budget_id: Optional[int] = None,
        category_id: Optional[int] = None,
        goal_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        since = (now or datetime.utcnow()) - window
        stmt = select(Notification.id).where(
            Notification.user_id == self.user_id,
            Notification.kind == kind,
            Notification.created_at >= since,
        )
        if budget_id is not None:
            stmt = stmt.where(Notification.budget_id == budget_id)
        if category_id is not None:
            stmt = stmt.where(Notification.category_id == category_id)
        if goal_id is not None:
            stmt = stmt.where(Notification.goal_id == goal_id)
        return self.session.scalar(stmt.limit(1)) is not None

    def list(
        self, kind: Optional[NotificationKind] = None, limit: int = 50
    ) -> list[Notification]:
        stmt = select(Notification).where(Notification.user_id == self.user_id)
        if kind:
            stmt = stmt.where(Notification.kind == kind)
        stmt = stmt.order_by(Notification.created_at.desc(), Notification.id.desc())
        return self.session.scalars(stmt.limit(limit)).all()


class BudgetAlertService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def check_budget(
        self, user: User, budget: Budget, now: Optional[datetime] = None
    ) -> list[Notification]:
        now = now or datetime.utcnow()
        outbox = NotificationService(self.session, user.id)
        spending = BudgetService(self.session, user.id).spending(budget)
        spent = spending.spent_cents
        amount = budget.amount_cents
        utilization = round(spent / amount * 100, 2) if amount else 0.0
        payload = {
            "budget_name": budget.name,
            "budget_amount": amount,
            "spent_amount": spent,
            "utilization": utilization,
            "remaining_amount": max(0, amount - spent),
        }

        alerts: list[Notification] = []
        if spent > amount:
            if not outbox.has_recent(
                NotificationKind.budget_exceeded,
                EXCEEDED_COOLDOWN,
                budget_id=budget.id,
                now=now,
            ):
                alerts.append(
                    outbox.record(
                        NotificationKind.budget_exceeded,
                        f"Budget Exceeded Alert - {budget.name}",
                        priority="high",
                        budget_id=budget.id,
                        payload={**payload, "over_amount": spent - amount},
                        now=now,
                    )
                )
        elif utilization >= budget.alert_threshold and utilization < 100:
            if not outbox.has_recent(
                NotificationKind.budget_warning,
                WARNING_COOLDOWN,
                budget_id=budget.id,
                now=now,
            ):
                alerts.append(
                    outbox.record(
                        NotificationKind.budget_warning,
                        f"Budget Warning Alert - {budget.name}",
                        budget_id=budget.id,
                        payload={**payload, "threshold": budget.alert_threshold},
                        now=now,
                    )
                )

        for allocation in budget.allocations:
            if allocation.allocated_cents <= 0:
                continue
            category_spent = spending.by_category.get(allocation.category_id, 0)
            category_pct = round(category_spent / allocation.allocated_cents * 100, 2)
            if category_pct < CATEGORY_OVERSPEND_PERCENT:
                continue
            if outbox.has_recent(
                NotificationKind.category_overspend,
                WARNING_COOLDOWN,
                budget_id=budget.id,
                category_id=allocation.category_id,
                now=now,
            ):
                continue
            alerts.append(
                outbox.record(
                    NotificationKind.category_overspend,
                    f"Category Overspend Alert - {allocation.category.name}",
                    budget_id=budget.id,
                    category_id=allocation.category_id,
                    payload={
                        "budget_name": budget.name,
                        "category_name": allocation.category.name,
                        "allocated_amount": allocation.allocated_cents,
                        "spent_amount": category_spent,
                        "utilization": category_pct,
                    },
                    now=now,
                )
            )

        self.session.commit()
        return alerts

    def check_user(
        self, user_id: int, now: Optional[datetime] = None
    ) -> list[Notification]:
        now = now or datetime.utcnow()
        user = self.session.get(User, user_id)
        if not user:
            raise NotFoundError("User not found")
        if not user.budget_alerts_enabled:
            return []
        alerts: list[Notification] = []
        for budget in BudgetService(self.session, user.id).list(active_on=now.date()):
            alerts.extend(self.check_budget(user, budget, now))
        return alerts

    @staticmethod
    def _summary_insights(
        spent: int, total: int, utilization: float, categories: list[dict[str, object]]
    ) -> list[str]:
        insights = []
        if spent > total:
            insights.append(
                f"You exceeded your budget by {_money(spent - total)}. "
                "Consider reviewing your spending patterns."
            )
        else:
            insights.append(
                f"Great job! You stayed within budget and saved {_money(total - spent)}."
            )

        over = [c for c in categories if c["is_over_budget"]]
        if over:
            names = ", ".join(str(c["name"]) for c in over[:2])
            insights.append(
                f"{len(over)} categories exceeded their budgets. Focus on: {names}."
            )
        if categories:
            top = categories[0]
            insights.append(
                f"Your highest spending category was {top['name']} at "
                f"{_money(top['spent'])} ({top['percentage']}% of its budget)."
            )

        if utilization < 70:
            insights.append(
                "Your spending was well below budget. Consider increasing your "
                "savings goals or adjusting next month's budget."
            )
        elif utilization > 95:
            insights.append(
                "You used almost all of your budget. Consider setting aside an "
                "emergency buffer for next month."
            )
        return insights

    def send_monthly_summary(
        self, user_id: int, month: Optional[date] = None
    ) -> Optional[Notification]:
        user = self.session.get(User, user_id)
        if not user:
            raise NotFoundError("User not found")
        if not user.monthly_summary_enabled:
            return None

        start = month_start(month or add_months(month_start(date.today()), -1))
        end = month_end(start)
        budgets = BudgetService(self.session, user.id)
        candidates = budgets.list(overlapping=(start, end))
        if not candidates:
            logger.info("monthly_summary_skipped: user_id=%s month=%s", user.id, start)
            return None

        budget = candidates[0]
        spending = budgets.spending(budget, start, end)
        spent = spending.spent_cents
        total = budget.amount_cents
        utilization = round(spent / total * 100, 2) if total else 0.0

        categories = []
        for allocation in budget.allocations:
            category_spent = spending.by_category.get(allocation.category_id, 0)
            categories.append(
                {
                    "name": allocation.category.name,
                    "allocated": allocation.allocated_cents,
                    "spent": category_spent,
                    "percentage": round(
                        category_spent / allocation.allocated_cents * 100, 1
                    )
                    if allocation.allocated_cents
                    else 0.0,
                    "is_over_budget": category_spent > allocation.allocated_cents,
                }
            )
        categories.sort(key=lambda c: c["spent"], reverse=True)

        label = start.strftime("%B %Y")
        notification = NotificationService(self.session, user.id).record(
            NotificationKind.monthly_summary,
            f"Monthly Budget Summary - {label}",
            priority="low",
            budget_id=budget.id,
            payload={
                "month": label,
                "total_spent": spent,
                "total_budget": total,
                "utilization": utilization,
                "remaining_budget": max(0, total - spent),
                "over_budget": max(0, spent - total),
                "categories_on_track": sum(
                    1 for c in categories if not c["is_over_budget"]
                ),
                "total_categories": len(categories),
                "avg_daily_spending": round(spent / end.day, 2),
                "category_breakdown": categories,
                "insights": self._summary_insights(spent, total, utilization, categories),
            },
        )
        self.session.commit()
        return notification


def reminder_subject(goal: Goal, progress: float, days_remaining: int) -> str:
    pct = round(progress)
    if days_remaining <= 7:
        return f"Final Week! {goal.name} - {pct}% Complete"
    if days_remaining <= 30:
        return f"Goal Deadline Approaching: {goal.name} - {pct}% Complete"
    if progress >= 90:
        return f"Almost There! {goal.name} - {pct}% Complete"
    if progress >= 75:
        return f"Great Progress! {goal.name} - {pct}% Complete"
    return f"{goal.reminder_frequency.value.capitalize()} Goal Reminder: {goal.name}"


def goal_insights(
    goal: Goal, progress: float, days_remaining: int, now: datetime
) -> list[str]:
    insights = []
    if progress < 25 and days_remaining < 90:
        insights.append("Consider increasing your contribution frequency to stay on track")
    elif progress > 75:
        insights.append(
            "You're in the final stretch! Maintain your current pace to reach your goal"
        )
    elif progress < 50 and days_remaining > 180:
        insights.append(
            "You have plenty of time - consider setting up automatic contributions"
        )

    likelihood = predict_goal_achievement(goal, now)["likelihood"]
    if likelihood == "low":
        insights.append(
            "Your current pace may not reach the target - consider adjusting "
            "your contribution strategy"
        )
    elif likelihood == "high":
        insights.append("Excellent! You're on track to achieve this goal ahead of schedule")

    if days_remaining < 7:
        insights.append("Final week! Make any last contributions to maximize your progress")
    elif days_remaining < 30:
        insights.append(
            "Less than 30 days remaining - consider making larger contributions if possible"
        )

    required = monthly_requirement(goal, now)
    created = goal.created_at or now
    months_elapsed = max(1.0, (now - created).days / 30)
    average = goal.current_cents / months_elapsed
    if required and average < required * 0.8:
        insights.append(
            f"Try to increase monthly contributions to {_money(required)} to stay on target"
        )
    return insights or ["Keep up the great work towards your financial goal!"]


class GoalReminderService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def send_reminder(self, goal: Goal, user: User, now: datetime) -> Notification:
        progress = round(goal.current_cents / goal.target_cents * 100, 1)
        days_remaining = (goal.target_date - now.date()).days
        notification = NotificationService(self.session, user.id).record(
            NotificationKind.goal_reminder,
            reminder_subject(goal, progress, days_remaining),
            priority="high" if days_remaining <= 7 else "medium",
            goal_id=goal.id,
            payload={
                "goal_name": goal.name,
                "current_amount": goal.current_cents,
                "target_amount": goal.target_cents,
                "remaining_amount": max(0, goal.target_cents - goal.current_cents),
                "progress_percentage": progress,
                "days_remaining": days_remaining,
                "frequency": goal.reminder_frequency.value,
                "insights": goal_insights(goal, progress, days_remaining, now),
            },
            now=now,
        )
        goal.last_reminder_sent_at = now
        goal.next_reminder_at = next_reminder_time(goal.reminder_frequency, now)
        return notification

    def process_goal_reminders(
        self, frequency: ReminderFrequency, now: Optional[datetime] = None
    ) -> dict[str, object]:
        if frequency == ReminderFrequency.none:
            raise ValidationError("Reminder frequency must be daily, weekly or monthly")
        now = now or datetime.utcnow()
        rows = self.session.execute(
            select(Goal, User)
            .join(User, User.id == Goal.user_id)
            .where(
                Goal.status == GoalStatus.active,
                Goal.reminder_frequency == frequency,
                Goal.next_reminder_at.isnot(None),
                Goal.next_reminder_at <= now,
            )
            .order_by(Goal.id)
        ).all()

        sent = 0
        skipped = 0
        errors = 0
        for goal, user in rows:
            if not user.goal_reminders_enabled:
                skipped += 1
                continue
            goal_id = goal.id
            try:
                self.send_reminder(goal, user, now)
                self.session.commit()
                sent += 1
            except Exception:
                self.session.rollback()
                errors += 1
                logger.exception("goal_reminder_failed: goal_id=%s", goal_id)

        logger.info(
            "goal_reminders: frequency=%s total=%s sent=%s skipped=%s errors=%s",
            frequency.value,
            len(rows),
            sent,
            skipped,
            errors,
        )
        return {
            "frequency": frequency.value,
            "total_goals": len(rows),
            "reminders_sent": sent,
            "skipped": skipped,
            "errors": errors,
        }
