from datetime import date, datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from errors import NotFoundError, ValidationError
from models import (
    CategoryType,
    Goal,
    NotificationKind,
    ReminderFrequency,
    TransactionType,
    User,
)
from notifications import (
    BudgetAlertService,
    GoalReminderService,
    NotificationService,
    goal_insights,
    reminder_subject,
)
from schemas import BudgetAllocationIn, BudgetIn, CategoryIn, GoalIn, TransactionIn
from services import BudgetService, CategoryService, GoalService, TransactionService, UserService


NOW = datetime(2025, 3, 15, 12, 0)


def _session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def _user(session: Session, **flags: bool) -> User:
    user = User(email="rita.moss@example.com", is_email_verified=True, **flags)
    session.add(user)
    session.commit()
    return user


def _march_budget(session: Session, amount: int = 10_000, allocated: int = 5_000):
    groceries = CategoryService(session).create(
        CategoryIn(name="Groceries", type=CategoryType.expense)
    )
    budget = BudgetService(session).create(
        BudgetIn(
            name="March",
            amount_cents=amount,
            start_date=date(2025, 3, 1),
            end_date=date(2025, 3, 31),
            allocations=[
                BudgetAllocationIn(category_id=groceries.id, allocated_cents=allocated)
            ],
        )
    )
    return budget, groceries


def _spend(session: Session, cents: int, category_id: int, day: date = date(2025, 3, 10)) -> None:
    TransactionService(session).create(
        TransactionIn(
            date=day,
            type=TransactionType.expense,
            amount_cents=cents,
            description="Supermarket",
            category_id=category_id,
        )
    )


def test_warning_and_category_overspend_with_cooldown() -> None:
    with _session() as session:
        user = _user(session)
        budget, groceries = _march_budget(session)
        _spend(session, 9_000, groceries.id)
        alerts = BudgetAlertService(session)

        first = alerts.check_budget(user, budget, NOW)
        assert [n.kind for n in first] == [
            NotificationKind.budget_warning,
            NotificationKind.category_overspend,
        ]
        warning, overspend = first
        assert warning.subject == "Budget Warning Alert - March"
        assert warning.payload["utilization"] == 90.0
        assert warning.payload["remaining_amount"] == 1_000
        assert warning.payload["threshold"] == 80
        assert overspend.subject == "Category Overspend Alert - Groceries"
        assert overspend.payload["utilization"] == 180.0

        assert alerts.check_budget(user, budget, NOW + timedelta(hours=1)) == []


def test_exceeded_alert_and_independent_cooldowns() -> None:
    with _session() as session:
        user = _user(session)
        budget, groceries = _march_budget(session)
        _spend(session, 9_000, groceries.id)
        alerts = BudgetAlertService(session)
        alerts.check_budget(user, budget, NOW)

        _spend(session, 2_000, groceries.id)
        exceeded = alerts.check_budget(user, budget, NOW + timedelta(hours=1))
        assert [n.kind for n in exceeded] == [NotificationKind.budget_exceeded]
        assert exceeded[0].priority == "high"
        assert exceeded[0].payload["over_amount"] == 1_000
        assert exceeded[0].payload["remaining_amount"] == 0

        later = alerts.check_budget(user, budget, NOW + timedelta(hours=13))
        assert [n.kind for n in later] == [NotificationKind.category_overspend]

        outbox = NotificationService(session, user.id)
        assert len(outbox.list()) == 4
        assert len(outbox.list(kind=NotificationKind.category_overspend)) == 2


def test_check_user_respects_preferences_and_active_window() -> None:
    with _session() as session:
        user = _user(session)
        _, groceries = _march_budget(session)
        _spend(session, 8_500, groceries.id)
        alerts = BudgetAlertService(session)

        assert alerts.check_user(user.id, datetime(2025, 4, 2, 9, 0)) == []
        assert len(alerts.check_user(user.id, NOW)) == 2

        UserService(session).update_notification_preferences(
            user.id, budget_alerts_enabled=False
        )
        assert alerts.check_user(user.id, NOW + timedelta(days=2)) == []

        with pytest.raises(NotFoundError):
            alerts.check_user(42, NOW)


def test_monthly_summary() -> None:
    with _session() as session:
        user = _user(session)
        budget, groceries = _march_budget(session)
        _spend(session, 4_000, groceries.id)
        _spend(session, 999, groceries.id, day=date(2025, 4, 1))

        note = BudgetAlertService(session).send_monthly_summary(user.id, date(2025, 3, 20))

        assert note.kind == NotificationKind.monthly_summary
        assert note.subject == "Monthly Budget Summary - March 2025"
        assert note.priority == "low"
        assert note.budget_id == budget.id
        payload = note.payload
        assert payload["total_spent"] == 4_000
        assert payload["utilization"] == 40.0
        assert payload["remaining_budget"] == 6_000
        assert payload["over_budget"] == 0
        assert payload["categories_on_track"] == 1
        assert payload["avg_daily_spending"] == 129.03
        assert payload["category_breakdown"][0]["percentage"] == 80.0
        assert payload["insights"][0] == (
            "Great job! You stayed within budget and saved 60.00."
        )
        assert "well below budget" in payload["insights"][-1]


def test_monthly_summary_skips_without_budget_or_when_disabled() -> None:
    with _session() as session:
        user = _user(session)
        _march_budget(session)
        alerts = BudgetAlertService(session)

        assert alerts.send_monthly_summary(user.id, date(2024, 1, 1)) is None

        UserService(session).update_notification_preferences(
            user.id, monthly_summary_enabled=False
        )
        assert alerts.send_monthly_summary(user.id, date(2025, 3, 1)) is None
        assert NotificationService(session, user.id).list() == []


def test_reminder_subject_variants() -> None:
    goal = Goal(name="Car", reminder_frequency=ReminderFrequency.weekly)
    assert reminder_subject(goal, 40.0, 5) == "Final Week! Car - 40% Complete"
    assert reminder_subject(goal, 40.0, 20) == "Goal Deadline Approaching: Car - 40% Complete"
    assert reminder_subject(goal, 92.4, 100) == "Almost There! Car - 92% Complete"
    assert reminder_subject(goal, 80.0, 100) == "Great Progress! Car - 80% Complete"
    assert reminder_subject(goal, 10.0, 100) == "Weekly Goal Reminder: Car"


def test_goal_insights_for_lagging_goal() -> None:
    goal = Goal(
        name="Trip",
        target_cents=10_000,
        current_cents=1_000,
        target_date=(NOW + timedelta(days=5)).date(),
        created_at=NOW - timedelta(days=60),
    )
    insights = goal_insights(goal, 10.0, 5, NOW)
    assert insights == [
        "Consider increasing your contribution frequency to stay on track",
        "Your current pace may not reach the target - consider adjusting "
        "your contribution strategy",
        "Final week! Make any last contributions to maximize your progress",
        "Try to increase monthly contributions to 90.00 to stay on target",
    ]


def test_process_goal_reminders() -> None:
    with _session() as session:
        user = _user(session)
        goals = GoalService(session)
        fund = goals.create(
            GoalIn(
                name="Emergency Fund",
                target_cents=10_000,
                current_cents=8_000,
                target_date=date.today() + timedelta(days=200),
                reminder_frequency=ReminderFrequency.daily,
            )
        )
        goals.create(
            GoalIn(
                name="Laptop",
                target_cents=10_000,
                target_date=date.today() + timedelta(days=200),
                reminder_frequency=ReminderFrequency.weekly,
            )
        )
        run_at = datetime.utcnow() + timedelta(days=2)
        reminders = GoalReminderService(session)

        result = reminders.process_goal_reminders(ReminderFrequency.daily, run_at)

        assert result == {
            "frequency": "daily",
            "total_goals": 1,
            "reminders_sent": 1,
            "skipped": 0,
            "errors": 0,
        }
        session.refresh(fund)
        assert fund.last_reminder_sent_at == run_at
        assert fund.next_reminder_at == run_at + timedelta(days=1)
        sent = NotificationService(session, user.id).list(kind=NotificationKind.goal_reminder)
        assert sent[0].subject == "Great Progress! Emergency Fund - 80% Complete"
        assert sent[0].goal_id == fund.id
        assert sent[0].payload["insights"]

        again = reminders.process_goal_reminders(ReminderFrequency.daily, run_at)
        assert again["total_goals"] == 0


def test_goal_reminders_skip_opted_out_users() -> None:
    with _session() as session:
        _user(session, goal_reminders_enabled=False)
        GoalService(session).create(
            GoalIn(
                name="Bike",
                target_cents=50_000,
                target_date=date.today() + timedelta(days=90),
                reminder_frequency=ReminderFrequency.weekly,
            )
        )
        reminders = GoalReminderService(session)
        result = reminders.process_goal_reminders(
            ReminderFrequency.weekly, datetime.utcnow() + timedelta(days=8)
        )
        assert result["total_goals"] == 1
        assert result["skipped"] == 1
        assert result["reminders_sent"] == 0

        with pytest.raises(ValidationError):
            reminders.process_goal_reminders(ReminderFrequency.none)
