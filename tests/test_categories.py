from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from errors import ConflictError, NotFoundError, ValidationError
from models import CategoryType, TransactionType
from schemas import CategoryIn, CategoryUpdate, TransactionIn
from services import CategoryFilters, CategoryService, TransactionService


def _session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def test_subcategory_level_and_full_path() -> None:
    with _session() as session:
        service = CategoryService(session)
        food = service.create(CategoryIn(name="Food", type=CategoryType.expense))
        groceries = service.create(
            CategoryIn(name="Groceries", type=CategoryType.expense, parent_id=food.id)
        )

        assert food.level == 0
        assert groceries.level == 1
        assert service.full_path(groceries) == "Food > Groceries"

        detail = service.get(food.id)
        assert [c.name for c in detail["subcategories"]] == ["Groceries"]
        assert detail["stats"]["transaction_count"] == 0


def test_category_names_are_unique_case_insensitive() -> None:
    with _session() as session:
        service = CategoryService(session)
        service.create(CategoryIn(name="Travel", type=CategoryType.expense))

        with pytest.raises(ConflictError):
            service.create(CategoryIn(name=" travel ", type=CategoryType.expense))


def test_category_depth_is_capped() -> None:
    with _session() as session:
        service = CategoryService(session)
        parent = service.create(CategoryIn(name="Level 0", type=CategoryType.expense))
        for level in range(1, 5):
            parent = service.create(
                CategoryIn(
                    name=f"Level {level}", type=CategoryType.expense, parent_id=parent.id
                )
            )
        assert parent.level == 4

        with pytest.raises(ValidationError):
            service.create(
                CategoryIn(name="Level 5", type=CategoryType.expense, parent_id=parent.id)
            )


def test_parent_must_share_type() -> None:
    with _session() as session:
        service = CategoryService(session)
        salary = service.create(CategoryIn(name="Salary", type=CategoryType.income))

        with pytest.raises(ValidationError):
            service.create(
                CategoryIn(name="Bonus food", type=CategoryType.expense, parent_id=salary.id)
            )
        with pytest.raises(NotFoundError):
            service.create(
                CategoryIn(name="Orphan", type=CategoryType.expense, parent_id=999)
            )


def test_moving_category_under_its_descendant_is_rejected() -> None:
    with _session() as session:
        service = CategoryService(session)
        home = service.create(CategoryIn(name="Home", type=CategoryType.expense))
        repairs = service.create(
            CategoryIn(name="Repairs", type=CategoryType.expense, parent_id=home.id)
        )
        plumbing = service.create(
            CategoryIn(name="Plumbing", type=CategoryType.expense, parent_id=repairs.id)
        )

        with pytest.raises(ValidationError):
            service.update(home.id, CategoryUpdate(parent_id=plumbing.id))


def test_moving_category_relevels_its_subtree() -> None:
    with _session() as session:
        service = CategoryService(session)
        home = service.create(CategoryIn(name="Home", type=CategoryType.expense))
        repairs = service.create(
            CategoryIn(name="Repairs", type=CategoryType.expense, parent_id=home.id)
        )
        plumbing = service.create(
            CategoryIn(name="Plumbing", type=CategoryType.expense, parent_id=repairs.id)
        )

        service.update(repairs.id, CategoryUpdate(parent_id=None))

        session.refresh(plumbing)
        assert repairs.level == 0
        assert repairs.parent_id is None
        assert plumbing.level == 1


def test_delete_with_transactions_requires_force() -> None:
    with _session() as session:
        categories = CategoryService(session)
        food = categories.create(CategoryIn(name="Food", type=CategoryType.expense))
        snacks = categories.create(
            CategoryIn(name="Snacks", type=CategoryType.expense, parent_id=food.id)
        )
        txn = TransactionService(session).create(
            TransactionIn(
                date=date(2025, 3, 2),
                type=TransactionType.expense,
                amount_cents=450,
                description="Chips",
                category_id=snacks.id,
            )
        )

        preview = categories.delete(food.id)
        assert preview["can_delete"] is False
        assert preview["transaction_count"] == 1

        result = categories.delete(food.id, force=True)
        assert result == {
            "deleted": True,
            "deleted_count": 2,
            "unassigned_transactions": 1,
        }
        session.refresh(txn)
        session.refresh(snacks)
        assert txn.category_id is None
        assert snacks.is_active is False


def test_default_categories_are_system_and_idempotent() -> None:
    with _session() as session:
        service = CategoryService(session)
        created = service.create_defaults()

        assert len(created) == 12
        assert all(c.is_system for c in created)
        assert service.create_defaults() == []

        salary = next(c for c in created if c.name == "Salary")
        with pytest.raises(ValidationError):
            service.update(salary.id, CategoryUpdate(name="Wages"))
        with pytest.raises(ValidationError):
            service.delete(salary.id)


def test_list_filters_and_paginates() -> None:
    with _session() as session:
        service = CategoryService(session)
        service.create_defaults()

        page = service.list(CategoryFilters(type=CategoryType.income), page=1, limit=3)
        assert len(page["categories"]) == 3
        assert page["pagination"]["total_items"] == 4
        assert page["pagination"]["total_pages"] == 2
        assert page["pagination"]["has_next_page"] is True

        with pytest.raises(ValidationError):
            service.list(sort="color")


def test_search_requires_two_characters() -> None:
    with _session() as session:
        service = CategoryService(session)
        service.create_defaults()

        assert [c.name for c in service.search("trav")] == ["Travel"]
        with pytest.raises(ValidationError):
            service.search("t")


def test_categories_are_scoped_per_user() -> None:
    with _session() as session:
        mine = CategoryService(session, user_id=1).create(
            CategoryIn(name="Pets", type=CategoryType.expense)
        )

        with pytest.raises(NotFoundError):
            CategoryService(session, user_id=2).get(mine.id)


def _expense(session: Session, cents: int, day: date, category_id: int) -> None:
    TransactionService(session).create(
        TransactionIn(
            date=day,
            type=TransactionType.expense,
            amount_cents=cents,
            description="Card payment",
            category_id=category_id,
        )
    )


def test_hierarchy_nests_and_orders_by_sort_order() -> None:
    with _session() as session:
        service = CategoryService(session)
        food = service.create(CategoryIn(name="Food", type=CategoryType.expense, sort_order=1))
        service.create(CategoryIn(name="Bills", type=CategoryType.expense))
        service.create(CategoryIn(name="Salary", type=CategoryType.income))
        service.create(
            CategoryIn(name="Groceries", type=CategoryType.expense, parent_id=food.id, sort_order=1)
        )
        service.create(CategoryIn(name="Restaurants", type=CategoryType.expense, parent_id=food.id))

        tree = service.hierarchy()
        assert [n["name"] for n in tree] == ["Bills", "Salary", "Food"]

        expenses = service.hierarchy(CategoryType.expense)
        assert [n["name"] for n in expenses] == ["Bills", "Food"]
        children = expenses[1]["subcategories"]
        assert [n["name"] for n in children] == ["Restaurants", "Groceries"]
        assert all(n["level"] == 1 for n in children)
        assert expenses[0]["subcategories"] == []


def test_statistics_monthly_breakdown_and_subcategories() -> None:
    with _session() as session:
        service = CategoryService(session)
        food = service.create(CategoryIn(name="Food", type=CategoryType.expense))
        groceries = service.create(
            CategoryIn(name="Groceries", type=CategoryType.expense, parent_id=food.id)
        )
        _expense(session, 1_000, date(2025, 1, 10), food.id)
        _expense(session, 2_000, date(2025, 1, 20), groceries.id)
        _expense(session, 4_000, date(2025, 2, 5), groceries.id)

        own = service.statistics(food.id)
        assert own["total_amount"] == 1_000
        assert own["monthly_breakdown"] == [{"month": "2025-01", "total": 1_000, "count": 1}]
        assert own["trends"]["is_increasing"] is False

        stats = service.statistics(food.id, include_subcategories=True)
        assert stats["total_amount"] == 7_000
        assert stats["transaction_count"] == 3
        assert stats["average_amount"] == 2_333.33
        assert (stats["min_amount"], stats["max_amount"]) == (1_000, 4_000)
        assert stats["first_transaction"] == date(2025, 1, 10)
        assert stats["last_transaction"] == date(2025, 2, 5)
        assert stats["monthly_breakdown"] == [
            {"month": "2025-01", "total": 3_000, "count": 2},
            {"month": "2025-02", "total": 4_000, "count": 1},
        ]
        assert stats["trends"] == {"is_increasing": True, "average_monthly_amount": 3_500}

        february = service.statistics(food.id, start=date(2025, 2, 1), include_subcategories=True)
        assert february["total_amount"] == 4_000


def test_usage_summary_orders_by_total() -> None:
    with _session() as session:
        service = CategoryService(session)
        food = service.create(CategoryIn(name="Food", type=CategoryType.expense))
        rent = service.create(CategoryIn(name="Rent", type=CategoryType.expense))
        salary = service.create(CategoryIn(name="Salary", type=CategoryType.income))
        service.create(CategoryIn(name="Unused", type=CategoryType.expense))
        _expense(session, 1_500, date(2025, 3, 2), food.id)
        _expense(session, 2_500, date(2025, 3, 9), food.id)
        _expense(session, 90_000, date(2025, 3, 1), rent.id)
        TransactionService(session).create(
            TransactionIn(
                date=date(2025, 3, 1),
                type=TransactionType.income,
                amount_cents=250_000,
                description="Payroll",
                category_id=salary.id,
            )
        )

        usage = service.usage_summary()
        assert [u["name"] for u in usage] == ["Salary", "Rent", "Food"]
        assert usage[0]["type"] == "income"
        assert usage[2]["transaction_count"] == 2
        assert usage[2]["average_amount"] == 2_000

        march_second_week = service.usage_summary(start=date(2025, 3, 8))
        assert [u["name"] for u in march_second_week] == ["Food"]
        assert march_second_week[0]["total_amount"] == 2_500
