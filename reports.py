from __future__ import annotations

import logging
import statistics
from datetime import date, datetime, time, timedelta
from typing import Iterable, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import get_settings
from errors import ValidationError
from models import Category, Goal, GoalStatus, Transaction, TransactionStatus, TransactionType
from periods import Period, add_months, iter_months, month_end, month_key, month_start
from services import BudgetService, GoalService, get_current_user_id


logger = logging.getLogger(__name__)

GROUP_BY_CHOICES = ("day", "week", "month", "year")
AVERAGE_DAYS_PER_MONTH = 30.44
TREND_TOLERANCE_PERCENT = 5.0
NET_WORTH_PROJECTION_MONTHS = 6


def diversification_score(amounts: Iterable[int]) -> float:
    """Gini-Simpson index of income sources: 0 for a single source, towards 1 when spread."""
    values = [a for a in amounts if a > 0]
    total = sum(values)
    if len(values) <= 1 or total <= 0:
        return 0.0
    return round(1 - sum((v / total) ** 2 for v in values), 2)


def months_difference(start: date, end: date) -> float:
    return max(0.1, (end - start).days / AVERAGE_DAYS_PER_MONTH)


def percentage_change(previous: int, current: int) -> tuple[int, float, str]:
    change = current - previous
    if previous == 0:
        pct = 0.0 if current == 0 else 100.0
    else:
        pct = round(change / abs(previous) * 100, 2)
    if pct > TREND_TOLERANCE_PERCENT:
        trend = "increasing"
    elif pct < -TREND_TOLERANCE_PERCENT:
        trend = "decreasing"
    else:
        trend = "stable"
    return change, pct, trend


def budget_status(percentage_used: float, warning_threshold: float = 90) -> str:
    if percentage_used > 100:
        return "over_budget"
    if percentage_used >= warning_threshold:
        return "warning"
    return "on_track"


def is_recurring(amounts: Sequence[int]) -> bool:
    if len(amounts) < 2:
        return False
    mean = statistics.fmean(amounts)
    if mean <= 0:
        return False
    return statistics.pstdev(amounts) / mean < 0.1


def recurring_reliability(amounts: Sequence[int]) -> float:
    if not amounts:
        return 0.0
    mean = statistics.fmean(amounts)
    if mean <= 0:
        return 0.0
    mad = statistics.fmean(abs(a - mean) for a in amounts)
    return round(max(0.0, 1 - mad / mean), 2)


def linear_projection(values: Sequence[float], steps: int) -> list[float]:
    """Least-squares line through ``values`` (x = 0..n-1) extended ``steps`` points."""
    n = len(values)
    sum_x = sum(range(n))
    sum_y = sum(values)
    sum_xy = sum(i * v for i, v in enumerate(values))
    sum_xx = sum(i * i for i in range(n))
    denominator = n * sum_xx - sum_x * sum_x
    slope = (n * sum_xy - sum_x * sum_y) / denominator if denominator else 0.0
    intercept = (sum_y - slope * sum_x) / n
    return [slope * (n - 1 + i) + intercept for i in range(1, steps + 1)]


def bucket_key(d: date, group_by: str) -> str:
    if group_by == "day":
        return d.isoformat()
    if group_by == "week":
        year, week, _ = d.isocalendar()
        return f"{year:04d}-W{week:02d}"
    if group_by == "month":
        return month_key(d)
    if group_by == "year":
        return f"{d.year:04d}"
    raise ValidationError(f"Unsupported grouping: {group_by}")


def goal_timeline(goal: Goal, now: datetime) -> dict[str, object]:
    created = goal.created_at or now
    target = datetime.combine(goal.target_date, time.min)
    total = (target - created).total_seconds()
    elapsed = (now - created).total_seconds()
    time_progress = elapsed / total if total > 0 else 1.0
    amount_progress = goal.current_cents / goal.target_cents

    if amount_progress >= time_progress * 1.1:
        status = "ahead"
    elif amount_progress < time_progress * 0.9:
        status = "behind"
    else:
        status = "on_track"
    return {
        "status": status,
        "time_progress": round(min(time_progress * 100, 100), 2),
        "amount_progress": round(min(amount_progress * 100, 100), 2),
        "days_remaining": max(0, (goal.target_date - now.date()).days),
    }


def predict_goal_achievement(goal: Goal, now: datetime) -> dict[str, object]:
    created = goal.created_at or now
    elapsed = (now - created).total_seconds()
    progress = goal.current_cents / goal.target_cents
    if progress <= 0 or elapsed <= 0:
        return {"likelihood": "unknown", "estimated_completion_date": None, "on_target": None}

    remaining_seconds = max(0.0, (1 - progress) / (progress / elapsed))
    estimated = now + timedelta(seconds=remaining_seconds)
    target = datetime.combine(goal.target_date, time.min)
    if estimated <= target - timedelta(days=30):
        likelihood = "high"
    elif estimated <= target:
        likelihood = "moderate"
    else:
        likelihood = "low"
    return {
        "likelihood": likelihood,
        "estimated_completion_date": estimated.date(),
        "on_target": estimated <= target,
    }


def monthly_requirement(goal: Goal, now: datetime) -> float:
    target = datetime.combine(goal.target_date, time.min)
    months_remaining = max(1.0, (target - now).total_seconds() / (30 * 24 * 3600))
    return round(max(0, goal.target_cents - goal.current_cents) / months_remaining, 2)


class ReportService:
    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        today: Optional[date] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.today = today or date.today()
        self.warning_percent = get_settings().budget_warning_percent
        self.budget_service = BudgetService(session, self.user_id)
        self.goal_service = GoalService(session, self.user_id)

    def _window(self, start: Optional[date], end: Optional[date]) -> tuple[date, date]:
        start = start or month_start(self.today)
        end = end or self.today
        if start > end:
            raise ValidationError("Start date must be before end date")
        return start, end

    def _rows(
        self,
        txn_type: TransactionType,
        start: date,
        end: date,
        category_ids: Optional[list[int]] = None,
    ):
        stmt = (
            select(
                Transaction.date,
                Transaction.amount_cents,
                Transaction.description,
                Transaction.payee,
                Transaction.category_id,
                Category.name.label("category_name"),
                Category.color.label("category_color"),
            )
            .outerjoin(Category, Transaction.category_id == Category.id)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.type == txn_type,
                Transaction.is_deleted.is_(False),
                Transaction.status == TransactionStatus.completed,
                Transaction.date.between(start, end),
            )
            .order_by(Transaction.date, Transaction.id)
        )
        if category_ids:
            stmt = stmt.where(Transaction.category_id.in_(category_ids))
        return self.session.execute(stmt).all()

    @staticmethod
    def _group_by_time(rows, group_by: str) -> list[dict[str, object]]:
        buckets: dict[str, dict[str, object]] = {}
        for row in rows:
            key = bucket_key(row.date, group_by)
            bucket = buckets.setdefault(
                key, {"period": key, "total_amount": 0, "transaction_count": 0}
            )
            bucket["total_amount"] += row.amount_cents
            bucket["transaction_count"] += 1
        return [buckets[k] for k in sorted(buckets)]

    def spending_report(
        self,
        start: Optional[date] = None,
        end: Optional[date] = None,
        category_ids: Optional[list[int]] = None,
        group_by: str = "month",
    ) -> dict[str, object]:
        if group_by not in GROUP_BY_CHOICES:
            raise ValidationError(f"Unsupported grouping: {group_by}")
        start, end = self._window(start, end)
        period = Period("report", start, end)
        rows = self._rows(TransactionType.expense, start, end, category_ids)
        total = sum(r.amount_cents for r in rows)

        categories: dict[Optional[int], dict[str, object]] = {}
        merchants: dict[str, dict[str, object]] = {}
        for row in rows:
            entry = categories.setdefault(
                row.category_id,
                {
                    "category_id": row.category_id,
                    "name": row.category_name or "Uncategorized",
                    "color": row.category_color,
                    "total_amount": 0,
                    "transaction_count": 0,
                },
            )
            entry["total_amount"] += row.amount_cents
            entry["transaction_count"] += 1

            name = row.description.strip()
            merchant = merchants.setdefault(
                name.lower(), {"name": name, "total_amount": 0, "transaction_count": 0}
            )
            merchant["total_amount"] += row.amount_cents
            merchant["transaction_count"] += 1

        category_analysis = sorted(
            categories.values(), key=lambda c: c["total_amount"], reverse=True
        )
        for entry in category_analysis:
            entry["percentage"] = round(entry["total_amount"] / total * 100, 2) if total else 0.0
            entry["average_amount"] = round(
                entry["total_amount"] / entry["transaction_count"], 2
            )

        previous = period.previous()
        previous_total = sum(
            r.amount_cents
            for r in self._rows(
                TransactionType.expense, previous.start, previous.end, category_ids
            )
        )
        change, change_pct, trend = percentage_change(previous_total, total)

        return {
            "period": {"start": start, "end": end},
            "summary": {
                "total_spending": total,
                "transaction_count": len(rows),
                "categories_count": len(categories),
                "average_transaction": round(total / len(rows), 2) if rows else 0.0,
                "average_daily_spending": round(total / period.days, 2),
            },
            "category_analysis": category_analysis,
            "time_based_analysis": self._group_by_time(rows, group_by),
            "trends": {
                "previous_period": {"start": previous.start, "end": previous.end},
                "current_total": total,
                "previous_total": previous_total,
                "change_amount": change,
                "change_percentage": change_pct,
                "trend": trend,
            },
            "top_merchants": sorted(
                merchants.values(), key=lambda m: m["total_amount"], reverse=True
            )[:10],
        }

    def income_report(
        self,
        start: Optional[date] = None,
        end: Optional[date] = None,
        group_by: str = "month",
    ) -> dict[str, object]:
        if group_by not in GROUP_BY_CHOICES:
            raise ValidationError(f"Unsupported grouping: {group_by}")
        start, end = self._window(start, end)
        rows = self._rows(TransactionType.income, start, end)
        total = sum(r.amount_cents for r in rows)

        sources: dict[str, dict[str, object]] = {}
        for row in rows:
            name = row.description.strip()
            source = sources.setdefault(
                name.lower(),
                {"source": name, "total_amount": 0, "transaction_count": 0, "frequency": []},
            )
            source["total_amount"] += row.amount_cents
            source["transaction_count"] += 1
            source["frequency"].append({"date": row.date, "amount": row.amount_cents})

        source_analysis = sorted(
            sources.values(), key=lambda s: s["total_amount"], reverse=True
        )
        for source in source_analysis:
            source["percentage"] = round(source["total_amount"] / total * 100, 2) if total else 0.0

        time_based = self._group_by_time(rows, group_by)
        if len(time_based) >= 2:
            first = time_based[0]["total_amount"]
            last = time_based[-1]["total_amount"]
            growth_rate = round((last - first) / first * 100, 2) if first > 0 else 0.0
        else:
            first = last = time_based[0]["total_amount"] if time_based else 0
            growth_rate = 0.0
        if growth_rate > 0:
            growth_trend = "growing"
        elif growth_rate < 0:
            growth_trend = "declining"
        else:
            growth_trend = "stable"

        recurring = []
        for source in source_analysis:
            amounts = [f["amount"] for f in source["frequency"]]
            if is_recurring(amounts):
                recurring.append(
                    {
                        "source": source["source"],
                        "estimated_amount": round(source["total_amount"] / len(amounts), 2),
                        "occurrences": len(amounts),
                        "reliability": recurring_reliability(amounts),
                    }
                )

        return {
            "period": {"start": start, "end": end},
            "summary": {
                "total_income": total,
                "transaction_count": len(rows),
                "source_count": len(sources),
                "average_monthly_income": round(total / months_difference(start, end), 2),
                "diversification_score": diversification_score(
                    s["total_amount"] for s in source_analysis
                ),
            },
            "source_analysis": source_analysis,
            "time_based_analysis": time_based,
            "growth_analysis": {
                "first_period_amount": first,
                "last_period_amount": last,
                "growth_amount": last - first,
                "growth_rate": growth_rate,
                "trend": growth_trend,
            },
            "recurring_income": recurring,
        }

    def _monthly_totals(self, start: date, end: date) -> dict[str, dict[str, int]]:
        months: dict[str, dict[str, int]] = {}
        for txn_type, key in (
            (TransactionType.income, "income"),
            (TransactionType.expense, "expenses"),
        ):
            for row in self._rows(txn_type, start, end):
                bucket = months.setdefault(month_key(row.date), {"income": 0, "expenses": 0})
                bucket[key] += row.amount_cents
        return months

    def _projections(self, months: int) -> list[dict[str, object]]:
        history_start = month_start(add_months(self.today, -11))
        history = self._monthly_totals(history_start, self.today)
        income_months = [m["income"] for m in history.values() if m["income"]]
        expense_months = [m["expenses"] for m in history.values() if m["expenses"]]
        avg_income = sum(income_months) / max(len(income_months), 1)
        avg_expenses = sum(expense_months) / max(len(expense_months), 1)

        projections = []
        for offset in range(1, months + 1):
            month = add_months(month_start(self.today), offset)
            projections.append(
                {
                    "month": month_key(month),
                    "projected_income": round(avg_income, 2),
                    "projected_expenses": round(avg_expenses, 2),
                    "projected_net_flow": round(avg_income - avg_expenses, 2),
                    "projected_savings_rate": round(
                        (avg_income - avg_expenses) / avg_income * 100, 2
                    )
                    if avg_income > 0
                    else 0.0,
                }
            )
        return projections

    @staticmethod
    def _cash_flow_patterns(monthly: list[dict[str, object]]) -> dict[str, object]:
        if len(monthly) < 3:
            return {"trend": "insufficient_data", "seasonal_variation": False}
        half = len(monthly) // 2
        first_avg = statistics.fmean(m["net_flow"] for m in monthly[:half])
        second_avg = statistics.fmean(m["net_flow"] for m in monthly[half:])
        if second_avg > first_avg * 1.1:
            trend = "improving"
        elif second_avg < first_avg * 0.9:
            trend = "declining"
        else:
            trend = "stable"
        expenses = [m["expenses"] for m in monthly]
        return {
            "trend": trend,
            "first_half_average": round(first_avg, 2),
            "second_half_average": round(second_avg, 2),
            "seasonal_variation": max(expenses) > min(expenses) * 1.5,
        }

    def cash_flow_report(
        self,
        start: Optional[date] = None,
        end: Optional[date] = None,
        projection_months: int = 6,
    ) -> dict[str, object]:
        if projection_months < 0 or projection_months > 24:
            raise ValidationError("Projection months must be between 0 and 24")
        start, end = self._window(
            start or month_start(add_months(self.today, -11)), end
        )
        totals = self._monthly_totals(start, end)

        monthly: list[dict[str, object]] = []
        for key in sorted(totals):
            income = totals[key]["income"]
            expenses = totals[key]["expenses"]
            monthly.append(
                {
                    "month": key,
                    "income": income,
                    "expenses": expenses,
                    "net_flow": income - expenses,
                    "savings_rate": round((income - expenses) / income * 100, 2)
                    if income > 0
                    else 0.0,
                }
            )

        if monthly:
            best = max(monthly, key=lambda m: m["savings_rate"])
            worst = min(monthly, key=lambda m: m["savings_rate"])
            savings_rate = {
                "average": round(statistics.fmean(m["savings_rate"] for m in monthly), 2),
                "best": {"month": best["month"], "rate": best["savings_rate"]},
                "worst": {"month": worst["month"], "rate": worst["savings_rate"]},
            }
        else:
            savings_rate = {"average": 0.0, "best": None, "worst": None}

        balance = 0
        running = []
        for month in monthly:
            balance += month["net_flow"]
            running.append(
                {"month": month["month"], "net_flow": month["net_flow"], "balance": balance}
            )

        total_income = sum(m["income"] for m in monthly)
        total_expenses = sum(m["expenses"] for m in monthly)
        return {
            "period": {"start": start, "end": end},
            "monthly_cash_flow": monthly,
            "summary": {
                "total_income": total_income,
                "total_expenses": total_expenses,
                "net_cash_flow": total_income - total_expenses,
                "average_savings_rate": savings_rate["average"],
                "best_month": savings_rate["best"],
                "worst_month": savings_rate["worst"],
            },
            "savings_rate": savings_rate,
            "projections": self._projections(projection_months),
            "patterns": self._cash_flow_patterns(monthly),
            "running_balance": running,
        }

    def budget_performance_report(
        self,
        start: Optional[date] = None,
        end: Optional[date] = None,
        budget_ids: Optional[list[int]] = None,
    ) -> dict[str, object]:
        start, end = self._window(start, end)
        budgets = self.budget_service.list(budget_ids=budget_ids, overlapping=(start, end))

        performance: list[dict[str, object]] = []
        for budget in budgets:
            spending = self.budget_service.spending(budget, start, end)
            spent = spending.spent_cents
            amount = budget.amount_cents
            pct = round(spent / amount * 100, 2) if amount else 0.0
            if amount or not spent:
                status = budget_status(pct, self.warning_percent)
            else:
                status = "over_budget"
            days = (spending.end - spending.start).days + 1 if spending.start else 1
            daily_average = round(spent / days, 2)

            allocations = []
            for allocation in budget.allocations:
                allocated_spent = spending.by_category.get(allocation.category_id, 0)
                allocated_pct = (
                    round(allocated_spent / allocation.allocated_cents * 100, 2)
                    if allocation.allocated_cents
                    else 0.0
                )
                allocations.append(
                    {
                        "category_id": allocation.category_id,
                        "category_name": allocation.category.name,
                        "allocated_amount": allocation.allocated_cents,
                        "spent_amount": allocated_spent,
                        "percentage_used": allocated_pct,
                        "status": budget_status(allocated_pct, self.warning_percent),
                    }
                )

            performance.append(
                {
                    "budget_id": budget.id,
                    "name": budget.name,
                    "budget_amount": amount,
                    "actual_spent": spent,
                    "variance": spent - amount,
                    "percentage_used": pct,
                    "remaining_amount": max(0, amount - spent),
                    "status": status,
                    "transaction_count": spending.transaction_count,
                    "allocations": allocations,
                    "daily_average": daily_average,
                    "projected_monthly_spending": round(daily_average * 30, 2),
                }
            )

        logger.debug(
            "budget_performance: budgets=%s start=%s end=%s", len(performance), start, end
        )
        total_budgeted = sum(p["budget_amount"] for p in performance)
        total_spent = sum(p["actual_spent"] for p in performance)
        statuses = [p["status"] for p in performance]
        summary = {
            "budget_count": len(performance),
            "budgets_on_track": statuses.count("on_track"),
            "budgets_warning": statuses.count("warning"),
            "budgets_over_budget": statuses.count("over_budget"),
            "total_budgeted": total_budgeted,
            "total_spent": total_spent,
            "overall_variance": total_spent - total_budgeted,
            "overall_percentage_used": round(total_spent / total_budgeted * 100, 2)
            if total_budgeted
            else 0.0,
            "average_utilization": round(
                statistics.fmean(p["percentage_used"] for p in performance), 2
            )
            if performance
            else 0.0,
        }

        history = []
        for m_start in iter_months(add_months(month_start(end), -5), end):
            m_end = month_end(m_start)
            budgeted = 0
            spent = 0
            for budget in budgets:
                if budget.start_date > m_end or budget.end_date < m_start:
                    continue
                budgeted += budget.amount_cents
                spent += self.budget_service.spending(budget, m_start, m_end).spent_cents
            history.append({"month": month_key(m_start), "budgeted": budgeted, "spent": spent})

        return {
            "period": {"start": start, "end": end},
            "budgets": performance,
            "summary": summary,
            "historical_trends": history,
        }

    def goal_progress_report(
        self, goal_ids: Optional[list[int]] = None, include_completed: bool = False
    ) -> dict[str, object]:
        now = datetime.combine(self.today, datetime.utcnow().time())
        goals = self.goal_service.list(goal_ids=goal_ids, include_completed=include_completed)

        progress: list[dict[str, object]] = []
        for goal in goals:
            remaining = max(0, goal.target_cents - goal.current_cents)
            progress.append(
                {
                    "goal_id": goal.id,
                    "name": goal.name,
                    "status": goal.status.value,
                    "priority": goal.priority,
                    "target_amount": goal.target_cents,
                    "current_amount": goal.current_cents,
                    "remaining_amount": remaining,
                    "progress_percentage": round(
                        goal.current_cents / goal.target_cents * 100, 2
                    ),
                    "target_date": goal.target_date,
                    "timeline_assessment": goal_timeline(goal, now),
                    "achievement_prediction": predict_goal_achievement(goal, now),
                    "monthly_requirement": monthly_requirement(goal, now),
                }
            )

        recommendations = []
        for item in progress:
            if item["timeline_assessment"]["status"] == "behind":
                recommendations.append(
                    {
                        "type": "increase_contribution",
                        "goal_id": item["goal_id"],
                        "priority": "high",
                        "message": (
                            "Consider increasing your monthly contribution to "
                            f"{item['monthly_requirement'] / 100:.2f} for {item['name']}"
                        ),
                    }
                )
            if item["achievement_prediction"]["likelihood"] == "low":
                recommendations.append(
                    {
                        "type": "review_timeline",
                        "goal_id": item["goal_id"],
                        "priority": "medium",
                        "message": (
                            f"Consider extending the timeline for {item['name']} "
                            "or increasing contributions"
                        ),
                    }
                )
            if item["progress_percentage"] >= 90:
                recommendations.append(
                    {
                        "type": "near_completion",
                        "goal_id": item["goal_id"],
                        "priority": "positive",
                        "message": (
                            f"Almost there! Only {item['remaining_amount'] / 100:.2f} "
                            f"left for {item['name']}"
                        ),
                    }
                )

        total_target = sum(g["target_amount"] for g in progress)
        total_saved = sum(g["current_amount"] for g in progress)
        timelines = [g["timeline_assessment"]["status"] for g in progress]
        return {
            "goals": progress,
            "summary": {
                "total_goals": len(progress),
                "completed_goals": sum(
                    1
                    for g in goals
                    if g.status == GoalStatus.completed or g.current_cents >= g.target_cents
                ),
                "total_target_amount": total_target,
                "total_saved_amount": total_saved,
                "overall_progress": round(total_saved / total_target * 100, 2)
                if total_target
                else 0.0,
                "goals_ahead": timelines.count("ahead"),
                "goals_on_track": timelines.count("on_track"),
                "goals_behind": timelines.count("behind"),
            },
            "recommendations": recommendations,
        }

    def net_worth(
        self, historical_months: int = 12, include_projections: bool = True
    ) -> dict[str, object]:
        if historical_months < 1 or historical_months > 120:
            raise ValidationError("Historical months must be between 1 and 120")

        rows = self.session.execute(
            select(
                Transaction.date,
                Transaction.account,
                Transaction.type,
                Transaction.amount_cents,
            ).where(
                Transaction.user_id == self.user_id,
                Transaction.is_deleted.is_(False),
                Transaction.status == TransactionStatus.completed,
                Transaction.type.in_([TransactionType.income, TransactionType.expense]),
                Transaction.date <= self.today,
            )
        ).all()

        def snapshot(as_of: date) -> dict[str, object]:
            balances: dict[str, int] = {}
            for row in rows:
                if row.date > as_of:
                    continue
                sign = 1 if row.type == TransactionType.income else -1
                balances[row.account] = balances.get(row.account, 0) + sign * row.amount_cents
            assets = sum(b for b in balances.values() if b > 0)
            liabilities = abs(sum(b for b in balances.values() if b < 0))
            return {
                "net_worth": assets - liabilities,
                "assets": assets,
                "liabilities": liabilities,
                "accounts": [
                    {"account": name, "balance": balance}
                    for name, balance in sorted(balances.items())
                ],
            }

        history = []
        for offset in range(historical_months - 1, -1, -1):
            m_start = add_months(month_start(self.today), -offset)
            as_of = min(month_end(m_start), self.today)
            point = snapshot(as_of)
            history.append(
                {
                    "month": month_key(m_start),
                    "date": as_of,
                    "net_worth": point["net_worth"],
                    "assets": point["assets"],
                    "liabilities": point["liabilities"],
                }
            )

        values = [h["net_worth"] for h in history]
        if len(values) < 2:
            trend = {"trend": "insufficient_data", "monthly_change": 0, "volatility": 0.0}
        else:
            changes = [b - a for a, b in zip(values, values[1:])]
            monthly_change = changes[-1]
            trend = {
                "trend": "increasing"
                if monthly_change > 0
                else "decreasing"
                if monthly_change < 0
                else "stable",
                "monthly_change": monthly_change,
                "monthly_percentage_change": percentage_change(values[-2], values[-1])[1],
                "overall_change": values[-1] - values[0],
                "overall_percentage_change": percentage_change(values[0], values[-1])[1],
                "volatility": round(statistics.pstdev(changes), 2),
            }

        projections = None
        if include_projections and len(values) >= 3:
            projected = linear_projection(values, NET_WORTH_PROJECTION_MONTHS)
            projections = [
                {
                    "month": month_key(add_months(month_start(self.today), i)),
                    "projected_net_worth": round(value, 2),
                    "confidence": round(max(0.1, 1 - i * 0.1), 1),
                }
                for i, value in enumerate(projected, start=1)
            ]

        return {
            "current": snapshot(self.today),
            "history": history,
            "trend": trend,
            "projections": projections,
        }
