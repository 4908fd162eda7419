from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Optional, Union

from rapidfuzz.distance import Levenshtein
from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session, joinedload, selectinload

from categorizer import KeywordCategorizer
from csv_utils import decode_csv, export_transactions, parse_csv, parse_xlsx
from errors import AccessDeniedError, ConflictError, NotFoundError, ValidationError
from models import (
    MAX_CATEGORY_LEVEL,
    Budget,
    BudgetAllocation,
    Category,
    CategoryType,
    Goal,
    GoalStatus,
    PasswordHistory,
    ReminderFrequency,
    Tag,
    Transaction,
    TransactionStatus,
    TransactionType,
    User,
)
from passwords import PasswordService
from periods import add_months, month_key, resolve_period
from schemas import (
    BudgetIn,
    BulkOperationIn,
    CategoryIn,
    CategoryUpdate,
    GoalIn,
    ImportRow,
    TransactionIn,
    TransactionUpdate,
    UserIn,
)


logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100
MAX_SEARCH_RESULTS = 50
WEEKDAYS = (
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
    "Sunday",
)

DEFAULT_CATEGORIES: list[dict[str, object]] = [
    {
        "name": "Food & Dining",
        "type": CategoryType.expense,
        "color": "#FF6B6B",
        "icon": "restaurant",
        "keywords": [
            "restaurant", "cafe", "coffee", "starbucks", "mcdonalds", "pizza",
            "grocery", "groceries", "supermarket", "bakery", "lunch", "dinner",
        ],
    },
    {
        "name": "Transportation",
        "type": CategoryType.expense,
        "color": "#4ECDC4",
        "icon": "directions_car",
        "keywords": [
            "uber", "lyft", "taxi", "fuel", "gas station", "petrol", "parking",
            "train", "bus", "metro", "toll",
        ],
    },
    {
        "name": "Shopping",
        "type": CategoryType.expense,
        "color": "#45B7D1",
        "icon": "shopping_cart",
        "keywords": ["amazon", "walmart", "target", "ebay", "ikea", "clothing", "shoes"],
    },
    {
        "name": "Entertainment",
        "type": CategoryType.expense,
        "color": "#FFA07A",
        "icon": "movie",
        "keywords": [
            "netflix", "spotify", "cinema", "movie", "theatre", "concert",
            "steam", "playstation", "hulu",
        ],
    },
    {
        "name": "Bills & Utilities",
        "type": CategoryType.expense,
        "color": "#98D8C8",
        "icon": "receipt",
        "keywords": [
            "electricity", "water bill", "internet", "phone", "rent",
            "utility", "insurance", "broadband",
        ],
    },
    {
        "name": "Healthcare",
        "type": CategoryType.expense,
        "color": "#F7DC6F",
        "icon": "local_hospital",
        "keywords": ["pharmacy", "doctor", "hospital", "dentist", "clinic", "medicine"],
    },
    {
        "name": "Education",
        "type": CategoryType.expense,
        "color": "#BB8FCE",
        "icon": "school",
        "keywords": ["tuition", "course", "udemy", "coursera", "textbook", "university"],
    },
    {
        "name": "Travel",
        "type": CategoryType.expense,
        "color": "#85C1E9",
        "icon": "flight",
        "keywords": ["airline", "flight", "hotel", "airbnb", "expedia", "hostel"],
    },
    {
        "name": "Salary",
        "type": CategoryType.income,
        "color": "#58D68D",
        "icon": "work",
        "keywords": ["salary", "payroll", "wages", "paycheck"],
    },
    {
        "name": "Business",
        "type": CategoryType.income,
        "color": "#52C785",
        "icon": "business",
        "keywords": ["invoice", "client", "consulting", "freelance"],
    },
    {
        "name": "Investments",
        "type": CategoryType.income,
        "color": "#48C775",
        "icon": "trending_up",
        "keywords": ["dividend", "interest", "brokerage", "capital gains"],
    },
    {
        "name": "Other Income",
        "type": CategoryType.income,
        "color": "#3EB770",
        "icon": "attach_money",
        "keywords": ["refund", "gift", "cashback", "rebate"],
    },
]


def get_current_user_id() -> int:
    return 1


def _page_window(page: int, limit: int, max_limit: int = MAX_PAGE_SIZE) -> tuple[int, int]:
    page = max(1, int(page or 1))
    limit = min(max(1, int(limit or 1)), max_limit)
    return page, limit


def _pagination(page: int, limit: int, total: int) -> dict[str, object]:
    total_pages = math.ceil(total / limit) if total else 0
    return {
        "current_page": page,
        "total_pages": total_pages,
        "total_items": total,
        "items_per_page": limit,
        "has_next_page": page < total_pages,
        "has_prev_page": page > 1,
    }


def _category_matches_type(category: Category, txn_type: TransactionType) -> bool:
    if txn_type == TransactionType.transfer:
        return True
    return category.type.value == txn_type.value


def next_reminder_time(
    frequency: ReminderFrequency, base: datetime
) -> Optional[datetime]:
    if frequency == ReminderFrequency.daily:
        return base + timedelta(days=1)
    if frequency == ReminderFrequency.weekly:
        return base + timedelta(days=7)
    if frequency == ReminderFrequency.monthly:
        return datetime.combine(add_months(base.date(), 1), base.time())
    return None


@dataclass
class CategoryFilters:
    type: Optional[CategoryType] = None
    include_inactive: bool = False
    parent_id: Optional[Union[int, str]] = None
    search: Optional[str] = None


@dataclass
class TransactionFilters:
    type: Optional[TransactionType] = None
    category_id: Optional[int] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    amount_min: Optional[int] = None
    amount_max: Optional[int] = None
    search: Optional[str] = None
    status: Optional[TransactionStatus] = TransactionStatus.completed
    tags: list[str] = field(default_factory=list)
    payee: Optional[str] = None
    include_deleted: bool = False


class TagService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def get_or_create(self, name: str) -> Tag:
        clean_name = name.strip()
        if not clean_name:
            raise ValidationError("Tag name cannot be empty")

        stmt = select(Tag).where(
            Tag.user_id == self.user_id, func.lower(Tag.name) == clean_name.lower()
        )
        existing = self.session.scalar(stmt)
        if existing:
            return existing

        tag = Tag(user_id=self.user_id, name=clean_name)
        self.session.add(tag)
        self.session.flush()
        return tag

    def resolve(self, names: list[str]) -> list[Tag]:
        tags: list[Tag] = []
        seen: set[int] = set()
        for name in names:
            if not name or not name.strip():
                continue
            tag = self.get_or_create(name)
            if tag.id not in seen:
                tags.append(tag)
                seen.add(tag.id)
        return tags


class CategoryService:
    SORT_FIELDS = {
        "name": Category.name,
        "type": Category.type,
        "level": Category.level,
        "sort_order": Category.sort_order,
        "created_at": Category.created_at,
        "updated_at": Category.updated_at,
    }

    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def _get_owned(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise NotFoundError("Category not found")
        return category

    def _name_taken(self, name: str, exclude_id: Optional[int] = None) -> bool:
        stmt = select(Category.id).where(
            Category.user_id == self.user_id,
            Category.is_active.is_(True),
            func.lower(Category.name) == name.strip().lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        return self.session.scalar(stmt) is not None

    def _descendants(self, category: Category) -> list[Category]:
        found: list[Category] = []
        seen = {category.id}
        frontier = [category.id]
        while frontier:
            children = self.session.scalars(
                select(Category).where(
                    Category.user_id == self.user_id,
                    Category.parent_id.in_(frontier),
                )
            ).all()
            frontier = []
            for child in children:
                if child.id in seen:
                    continue
                seen.add(child.id)
                found.append(child)
                frontier.append(child.id)
        return found

    def full_path(self, category: Category, separator: str = " > ") -> str:
        names = [category.name]
        seen = {category.id}
        current = category.parent
        while current is not None and current.id not in seen:
            names.append(current.name)
            seen.add(current.id)
            current = current.parent
        return separator.join(reversed(names))

    def _usage_stats(self, category_ids: list[int]) -> dict[str, object]:
        row = self.session.execute(
            select(
                func.count(Transaction.id),
                func.coalesce(func.sum(Transaction.amount_cents), 0),
                func.max(Transaction.date),
            ).where(
                Transaction.user_id == self.user_id,
                Transaction.category_id.in_(category_ids),
                Transaction.is_deleted.is_(False),
                Transaction.status == TransactionStatus.completed,
            )
        ).one()
        count, total, last_used = int(row[0] or 0), int(row[1] or 0), row[2]
        return {
            "transaction_count": count,
            "total_amount": total,
            "average_amount": round(total / count, 2) if count else 0,
            "last_used": last_used,
        }

    def list(
        self,
        filters: Optional[CategoryFilters] = None,
        page: int = 1,
        limit: int = 50,
        sort: str = "sort_order",
        order: str = "asc",
    ) -> dict[str, object]:
        filters = filters or CategoryFilters()
        if sort not in self.SORT_FIELDS:
            raise ValidationError(f"Invalid sort field: {sort}")
        page, limit = _page_window(page, limit)

        stmt = select(Category).where(Category.user_id == self.user_id)
        if not filters.include_inactive:
            stmt = stmt.where(Category.is_active.is_(True))
        if filters.type:
            stmt = stmt.where(Category.type == filters.type)
        if filters.parent_id in ("root", "null"):
            stmt = stmt.where(Category.parent_id.is_(None))
        elif filters.parent_id is not None:
            stmt = stmt.where(Category.parent_id == int(filters.parent_id))
        if filters.search:
            like = f"%{filters.search.strip().lower()}%"
            stmt = stmt.where(
                or_(
                    func.lower(Category.name).like(like),
                    func.lower(func.coalesce(Category.description, "")).like(like),
                )
            )

        total = self.session.scalar(
            select(func.count()).select_from(stmt.subquery())
        ) or 0
        column = self.SORT_FIELDS[sort]
        primary = column.desc() if order == "desc" else column.asc()
        stmt = (
            stmt.order_by(primary, Category.name.asc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return {
            "categories": self.session.scalars(stmt).all(),
            "pagination": _pagination(page, limit, int(total)),
        }

    def hierarchy(self, type: Optional[CategoryType] = None) -> list[dict[str, object]]:
        stmt = select(Category).where(
            Category.user_id == self.user_id, Category.is_active.is_(True)
        )
        if type:
            stmt = stmt.where(Category.type == type)
        stmt = stmt.order_by(Category.level, Category.sort_order, Category.name)

        nodes: dict[int, dict[str, object]] = {}
        roots: list[dict[str, object]] = []
        categories = self.session.scalars(stmt).all()
        for category in categories:
            nodes[category.id] = {
                "id": category.id,
                "name": category.name,
                "type": category.type.value,
                "color": category.color,
                "icon": category.icon,
                "level": category.level,
                "sort_order": category.sort_order,
                "parent_id": category.parent_id,
                "subcategories": [],
            }
        for category in categories:
            node = nodes[category.id]
            parent = nodes.get(category.parent_id) if category.parent_id else None
            if parent is None:
                roots.append(node)
            else:
                parent["subcategories"].append(node)
        return roots

    def get(self, category_id: int) -> dict[str, object]:
        category = self._get_owned(category_id)
        subcategories = self.session.scalars(
            select(Category)
            .where(
                Category.user_id == self.user_id,
                Category.parent_id == category.id,
                Category.is_active.is_(True),
            )
            .order_by(Category.sort_order, Category.name)
        ).all()
        return {
            "category": category,
            "full_path": self.full_path(category),
            "subcategories": subcategories,
            "stats": self._usage_stats([category.id]),
        }

    def create(self, data: CategoryIn) -> Category:
        if self._name_taken(data.name):
            raise ConflictError("Category with this name already exists")

        level = 0
        if data.parent_id is not None:
            parent = self.session.get(Category, data.parent_id)
            if not parent or parent.user_id != self.user_id:
                raise NotFoundError("Parent category not found")
            if not parent.is_active:
                raise ValidationError("Parent category is inactive")
            if parent.type != data.type:
                raise ValidationError("Parent category must have the same type")
            if parent.level >= MAX_CATEGORY_LEVEL:
                raise ValidationError("Maximum category depth exceeded")
            level = parent.level + 1

        category = Category(
            user_id=self.user_id,
            name=data.name.strip(),
            type=data.type,
            color=data.color,
            icon=data.icon,
            description=data.description,
            parent_id=data.parent_id,
            level=level,
            sort_order=data.sort_order,
            budget_allocation_cents=data.budget_allocation_cents,
            keywords=list(data.keywords),
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        logger.info("category_created: id=%s level=%s", category.id, category.level)
        return category

    def _move(self, category: Category, new_parent_id: Optional[int]) -> None:
        descendants = self._descendants(category)
        if new_parent_id is None:
            new_level = 0
        else:
            if new_parent_id == category.id:
                raise ValidationError("Category cannot be its own parent")
            parent = self.session.get(Category, new_parent_id)
            if not parent or parent.user_id != self.user_id:
                raise NotFoundError("Parent category not found")
            if not parent.is_active:
                raise ValidationError("Parent category is inactive")
            if parent.type != category.type:
                raise ValidationError("Parent category must have the same type")
            if parent.id in {d.id for d in descendants}:
                raise ValidationError("Circular category hierarchy is not allowed")
            new_level = parent.level + 1

        subtree_depth = max((d.level for d in descendants), default=category.level)
        subtree_depth -= category.level
        if new_level + subtree_depth > MAX_CATEGORY_LEVEL:
            raise ValidationError("Maximum category depth exceeded")

        delta = new_level - category.level
        category.parent_id = new_parent_id
        category.level = new_level
        for descendant in descendants:
            descendant.level += delta

    def update(self, category_id: int, data: CategoryUpdate) -> Category:
        category = self._get_owned(category_id)
        if category.is_system:
            raise ValidationError("System categories cannot be modified")

        fields = data.model_fields_set
        if "name" in fields and data.name:
            if self._name_taken(data.name, exclude_id=category.id):
                raise ConflictError("Category with this name already exists")
            category.name = data.name.strip()
        if "parent_id" in fields and data.parent_id != category.parent_id:
            self._move(category, data.parent_id)
        if "description" in fields:
            category.description = data.description
        if "color" in fields and data.color:
            category.color = data.color
        if "icon" in fields and data.icon:
            category.icon = data.icon
        if "sort_order" in fields and data.sort_order is not None:
            category.sort_order = data.sort_order
        if "budget_allocation_cents" in fields and data.budget_allocation_cents is not None:
            category.budget_allocation_cents = data.budget_allocation_cents
        if "keywords" in fields and data.keywords is not None:
            category.keywords = list(data.keywords)
        if "is_active" in fields and data.is_active is not None:
            category.is_active = data.is_active

        self.session.commit()
        self.session.refresh(category)
        return category

    def delete(self, category_id: int, force: bool = False) -> dict[str, object]:
        category = self._get_owned(category_id)
        if category.is_system:
            raise ValidationError("System categories cannot be deleted")

        subtree = [category] + [d for d in self._descendants(category) if d.is_active]
        ids = [c.id for c in subtree]
        txn_count = int(
            self.session.scalar(
                select(func.count(Transaction.id)).where(
                    Transaction.user_id == self.user_id,
                    Transaction.category_id.in_(ids),
                    Transaction.is_deleted.is_(False),
                )
            )
            or 0
        )
        if txn_count and not force:
            return {
                "can_delete": False,
                "transaction_count": txn_count,
                "can_force_delete": True,
                "warning": (
                    f"Category has {txn_count} transactions. "
                    "Force delete will leave them uncategorized."
                ),
            }

        unassigned = 0
        if txn_count:
            result = self.session.execute(
                update(Transaction)
                .where(
                    Transaction.user_id == self.user_id,
                    Transaction.category_id.in_(ids),
                    Transaction.is_deleted.is_(False),
                )
                .values(category_id=None)
            )
            unassigned = result.rowcount or 0
        for item in subtree:
            item.is_active = False
        self.session.commit()
        logger.info(
            "category_deleted: id=%s subtree=%s unassigned=%s",
            category.id,
            len(subtree),
            unassigned,
        )
        return {
            "deleted": True,
            "deleted_count": len(subtree),
            "unassigned_transactions": unassigned,
        }

    def statistics(
        self,
        category_id: int,
        start: Optional[date] = None,
        end: Optional[date] = None,
        include_subcategories: bool = False,
    ) -> dict[str, object]:
        category = self._get_owned(category_id)
        ids = [category.id]
        if include_subcategories:
            ids.extend(d.id for d in self._descendants(category))

        stmt = select(Transaction.date, Transaction.amount_cents).where(
            Transaction.user_id == self.user_id,
            Transaction.category_id.in_(ids),
            Transaction.is_deleted.is_(False),
            Transaction.status == TransactionStatus.completed,
        )
        if start:
            stmt = stmt.where(Transaction.date >= start)
        if end:
            stmt = stmt.where(Transaction.date <= end)
        rows = self.session.execute(stmt.order_by(Transaction.date)).all()

        amounts = [row.amount_cents for row in rows]
        monthly: dict[str, dict[str, object]] = {}
        for row in rows:
            key = month_key(row.date)
            bucket = monthly.setdefault(key, {"month": key, "total": 0, "count": 0})
            bucket["total"] += row.amount_cents
            bucket["count"] += 1
        breakdown = [monthly[k] for k in sorted(monthly)]

        total = sum(amounts)
        return {
            "category_id": category.id,
            "include_subcategories": include_subcategories,
            "total_amount": total,
            "transaction_count": len(amounts),
            "average_amount": round(total / len(amounts), 2) if amounts else 0,
            "min_amount": min(amounts) if amounts else 0,
            "max_amount": max(amounts) if amounts else 0,
            "first_transaction": rows[0].date if rows else None,
            "last_transaction": rows[-1].date if rows else None,
            "monthly_breakdown": breakdown,
            "trends": {
                "is_increasing": len(breakdown) >= 2
                and breakdown[-1]["total"] > breakdown[-2]["total"],
                "average_monthly_amount": round(total / len(breakdown), 2)
                if breakdown
                else 0,
            },
        }

    def search(
        self, term: str, type: Optional[CategoryType] = None, limit: int = 10
    ) -> list[Category]:
        clean = (term or "").strip().lower()
        if len(clean) < 2:
            raise ValidationError("Search term must be at least 2 characters")
        limit = min(max(1, limit), MAX_SEARCH_RESULTS)
        stmt = select(Category).where(
            Category.user_id == self.user_id,
            Category.is_active.is_(True),
            func.lower(Category.name).like(f"%{clean}%"),
        )
        if type:
            stmt = stmt.where(Category.type == type)
        stmt = stmt.order_by(Category.level, Category.name).limit(limit)
        return self.session.scalars(stmt).all()

    def usage_summary(
        self, start: Optional[date] = None, end: Optional[date] = None
    ) -> list[dict[str, object]]:
        total = func.coalesce(func.sum(Transaction.amount_cents), 0).label("total")
        count = func.count(Transaction.id).label("count")
        stmt = (
            select(Category.id, Category.name, Category.type, Category.color, count, total)
            .join(Transaction, Transaction.category_id == Category.id)
            .where(
                Category.user_id == self.user_id,
                Transaction.user_id == self.user_id,
                Transaction.is_deleted.is_(False),
                Transaction.status == TransactionStatus.completed,
            )
            .group_by(Category.id, Category.name, Category.type, Category.color)
            .order_by(total.desc(), Category.name)
        )
        if start:
            stmt = stmt.where(Transaction.date >= start)
        if end:
            stmt = stmt.where(Transaction.date <= end)
        return [
            {
                "category_id": row.id,
                "name": row.name,
                "type": row.type.value,
                "color": row.color,
                "transaction_count": int(row.count),
                "total_amount": int(row.total),
                "average_amount": round(int(row.total) / int(row.count), 2),
            }
            for row in self.session.execute(stmt)
        ]

    def create_defaults(self) -> list[Category]:
        existing = {
            name.lower()
            for name in self.session.scalars(
                select(Category.name).where(
                    Category.user_id == self.user_id, Category.is_active.is_(True)
                )
            )
        }
        created: list[Category] = []
        for index, preset in enumerate(DEFAULT_CATEGORIES):
            if str(preset["name"]).lower() in existing:
                continue
            category = Category(
                user_id=self.user_id,
                name=preset["name"],
                type=preset["type"],
                color=preset["color"],
                icon=preset["icon"],
                keywords=list(preset["keywords"]),
                sort_order=index,
                is_system=True,
            )
            self.session.add(category)
            created.append(category)
        self.session.commit()
        return created


class TransactionService:
    SORT_FIELDS = {
        "date": Transaction.date,
        "amount": Transaction.amount_cents,
        "description": Transaction.description,
        "created_at": Transaction.created_at,
    }
    BULK_OPERATIONS = ("delete", "restore", "update_category", "update_status", "add_tags")
    AUTOCOMPLETE_FIELDS = ("description", "category", "payment_method", "notes")

    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def _checked_category(self, category_id: int, txn_type: TransactionType) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise NotFoundError("Category not found")
        if not category.is_active:
            raise ValidationError("Category is inactive")
        if not _category_matches_type(category, txn_type):
            raise ValidationError("Category type must match transaction type")
        return category

    def _build(self, data: TransactionIn) -> Transaction:
        category_id = data.category_id
        auto_categorized = False
        if category_id is None:
            match = KeywordCategorizer(self.session, self.user_id).predict(
                data.description, data.type
            )
            if match:
                category_id = match.category_id
                auto_categorized = True
        if category_id is not None:
            self._checked_category(category_id, data.type)

        txn = Transaction(
            user_id=self.user_id,
            date=data.date,
            type=data.type,
            amount_cents=data.amount_cents,
            description=data.description.strip(),
            payee=data.payee,
            payment_method=data.payment_method,
            notes=data.notes,
            account=data.account,
            status=data.status,
            category_id=category_id,
            auto_categorized=auto_categorized,
        )
        txn.tags = TagService(self.session, self.user_id).resolve(data.tags)
        self.session.add(txn)
        return txn

    def create(self, data: TransactionIn) -> Transaction:
        txn = self._build(data)
        self.session.commit()
        self.session.refresh(txn)
        if txn.auto_categorized:
            logger.info(
                "transaction_auto_categorized: id=%s category_id=%s",
                txn.id,
                txn.category_id,
            )
        return txn

    def get(self, transaction_id: int, *, include_deleted: bool = False) -> Transaction:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category), selectinload(Transaction.tags))
            .where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
        )
        if not include_deleted:
            stmt = stmt.where(Transaction.is_deleted.is_(False))
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    def update(self, transaction_id: int, data: TransactionUpdate) -> Transaction:
        txn = self.get(transaction_id)
        fields = data.model_fields_set

        new_type = data.type if "type" in fields and data.type else txn.type
        new_category_id = data.category_id if "category_id" in fields else txn.category_id
        if new_category_id is not None and (
            new_category_id != txn.category_id or new_type != txn.type
        ):
            self._checked_category(new_category_id, new_type)

        txn.type = new_type
        txn.category_id = new_category_id
        if "category_id" in fields:
            txn.auto_categorized = False
        for name in ("date", "amount_cents", "status", "account"):
            if name in fields and getattr(data, name) is not None:
                setattr(txn, name, getattr(data, name))
        if "description" in fields and data.description:
            txn.description = data.description.strip()
        for name in ("payee", "payment_method", "notes"):
            if name in fields:
                setattr(txn, name, getattr(data, name))
        if "tags" in fields and data.tags is not None:
            txn.tags = TagService(self.session, self.user_id).resolve(data.tags)

        self.session.commit()
        self.session.refresh(txn)
        return txn

    def delete(self, transaction_id: int, permanent: bool = False) -> None:
        txn = self.session.get(Transaction, transaction_id)
        if not txn or txn.user_id != self.user_id:
            raise NotFoundError("Transaction not found")
        if permanent:
            self.session.delete(txn)
        elif not txn.is_deleted:
            txn.is_deleted = True
            txn.deleted_at = datetime.utcnow()
        self.session.commit()

    def restore(self, transaction_id: int) -> Transaction:
        txn = self.session.get(Transaction, transaction_id)
        if not txn or txn.user_id != self.user_id:
            raise NotFoundError("Transaction not found")
        txn.is_deleted = False
        txn.deleted_at = None
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def _apply_filters(self, stmt, filters: TransactionFilters):
        stmt = stmt.where(Transaction.user_id == self.user_id)
        if not filters.include_deleted:
            stmt = stmt.where(Transaction.is_deleted.is_(False))
        if filters.status:
            stmt = stmt.where(Transaction.status == filters.status)
        if filters.type:
            stmt = stmt.where(Transaction.type == filters.type)
        if filters.category_id:
            stmt = stmt.where(Transaction.category_id == filters.category_id)
        if filters.date_from:
            stmt = stmt.where(Transaction.date >= filters.date_from)
        if filters.date_to:
            stmt = stmt.where(Transaction.date <= filters.date_to)
        if filters.amount_min is not None:
            stmt = stmt.where(Transaction.amount_cents >= filters.amount_min)
        if filters.amount_max is not None:
            stmt = stmt.where(Transaction.amount_cents <= filters.amount_max)
        if filters.payee:
            stmt = stmt.where(
                func.lower(func.coalesce(Transaction.payee, "")).like(
                    f"%{filters.payee.strip().lower()}%"
                )
            )
        if filters.search:
            like = f"%{filters.search.strip().lower()}%"
            stmt = stmt.where(
                or_(
                    func.lower(Transaction.description).like(like),
                    func.lower(func.coalesce(Transaction.notes, "")).like(like),
                    func.lower(func.coalesce(Transaction.payee, "")).like(like),
                )
            )
        if filters.tags:
            names = [t.strip().lower() for t in filters.tags if t.strip()]
            stmt = stmt.where(Transaction.tags.any(func.lower(Tag.name).in_(names)))
        return stmt

    def list(
        self,
        filters: Optional[TransactionFilters] = None,
        page: int = 1,
        limit: int = 20,
        sort: str = "date",
        order: str = "desc",
    ) -> dict[str, object]:
        filters = filters or TransactionFilters()
        if sort not in self.SORT_FIELDS:
            raise ValidationError(f"Invalid sort field: {sort}")
        page, limit = _page_window(page, limit)

        base = self._apply_filters(select(Transaction), filters)
        total = self.session.scalar(select(func.count()).select_from(base.subquery())) or 0
        column = self.SORT_FIELDS[sort]
        primary = column.desc() if order == "desc" else column.asc()
        stmt = (
            base.options(joinedload(Transaction.category), selectinload(Transaction.tags))
            .order_by(primary, Transaction.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return {
            "transactions": self.session.scalars(stmt).all(),
            "pagination": _pagination(page, limit, int(total)),
        }

    def all_matching(self, filters: Optional[TransactionFilters] = None) -> list[Transaction]:
        stmt = self._apply_filters(select(Transaction), filters or TransactionFilters())
        stmt = stmt.options(
            joinedload(Transaction.category), selectinload(Transaction.tags)
        ).order_by(Transaction.date.asc(), Transaction.id.asc())
        return self.session.scalars(stmt).all()

    def _type_totals(self, filters: TransactionFilters) -> dict[TransactionType, tuple[int, int]]:
        stmt = self._apply_filters(
            select(
                Transaction.type,
                func.count(Transaction.id),
                func.coalesce(func.sum(Transaction.amount_cents), 0),
            ),
            filters,
        ).group_by(Transaction.type)
        return {row[0]: (int(row[1]), int(row[2])) for row in self.session.execute(stmt)}

    def analytics(
        self,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        type: Optional[TransactionType] = None,
        category_id: Optional[int] = None,
    ) -> dict[str, object]:
        filters = TransactionFilters(
            type=type, category_id=category_id, date_from=date_from, date_to=date_to
        )
        totals = self._type_totals(filters)
        income_count, income = totals.get(TransactionType.income, (0, 0))
        expense_count, expenses = totals.get(TransactionType.expense, (0, 0))
        transfer_count, transfers = totals.get(TransactionType.transfer, (0, 0))
        count = income_count + expense_count + transfer_count
        amount_sum = income + expenses + transfers

        breakdown_stmt = self._apply_filters(
            select(
                Transaction.category_id,
                Category.name,
                Category.color,
                Transaction.type,
                func.count(Transaction.id).label("count"),
                func.coalesce(func.sum(Transaction.amount_cents), 0).label("total"),
            ).outerjoin(Category, Transaction.category_id == Category.id),
            filters,
        ).group_by(Transaction.category_id, Category.name, Category.color, Transaction.type)
        type_totals = {
            TransactionType.income: income,
            TransactionType.expense: expenses,
            TransactionType.transfer: transfers,
        }
        category_breakdown = sorted(
            (
                {
                    "category_id": row.category_id,
                    "name": row.name or "Uncategorized",
                    "color": row.color,
                    "type": row.type.value,
                    "transaction_count": int(row.count),
                    "total_amount": int(row.total),
                    "percentage": round(int(row.total) / type_totals[row.type] * 100, 2)
                    if type_totals[row.type]
                    else 0,
                }
                for row in self.session.execute(breakdown_stmt)
            ),
            key=lambda item: item["total_amount"],
            reverse=True,
        )

        rows = self.session.execute(
            self._apply_filters(
                select(
                    Transaction.date,
                    Transaction.type,
                    Transaction.amount_cents,
                    Transaction.payee,
                    Transaction.description,
                ),
                filters,
            )
        ).all()
        monthly: dict[str, dict[str, int]] = {}
        merchants: dict[str, dict[str, object]] = {}
        weekdays = [{"day": name, "total": 0, "count": 0} for name in WEEKDAYS]
        for row in rows:
            bucket = monthly.setdefault(
                month_key(row.date), {"income": 0, "expense": 0, "count": 0}
            )
            bucket["count"] += 1
            if row.type == TransactionType.income:
                bucket["income"] += row.amount_cents
            elif row.type == TransactionType.expense:
                bucket["expense"] += row.amount_cents
                name = (row.payee or row.description or "").strip()
                merchant = merchants.setdefault(
                    name.lower(), {"name": name, "total_amount": 0, "transaction_count": 0}
                )
                merchant["total_amount"] += row.amount_cents
                merchant["transaction_count"] += 1
                slot = weekdays[row.date.weekday()]
                slot["total"] += row.amount_cents
                slot["count"] += 1

        for slot in weekdays:
            slot["average"] = round(slot["total"] / slot["count"], 2) if slot["count"] else 0

        return {
            "summary": {
                "total_income": income,
                "total_expenses": expenses,
                "total_transfers": transfers,
                "net_amount": income - expenses,
                "transaction_count": count,
                "average_amount": round(amount_sum / count, 2) if count else 0,
            },
            "category_breakdown": category_breakdown,
            "monthly_trends": [
                {
                    "month": key,
                    "income": monthly[key]["income"],
                    "expense": monthly[key]["expense"],
                    "net": monthly[key]["income"] - monthly[key]["expense"],
                    "transaction_count": monthly[key]["count"],
                }
                for key in sorted(monthly)
            ],
            "top_merchants": sorted(
                merchants.values(), key=lambda m: m["total_amount"], reverse=True
            )[:10],
            "spending_patterns": weekdays,
        }

    def bulk_operation(self, data: BulkOperationIn) -> dict[str, object]:
        if data.operation not in self.BULK_OPERATIONS:
            raise ValidationError(f"Unsupported bulk operation: {data.operation}")
        ids = list(dict.fromkeys(data.transaction_ids))
        txns = self.session.scalars(
            select(Transaction).where(
                Transaction.id.in_(ids), Transaction.user_id == self.user_id
            )
        ).all()
        if len(txns) != len(ids):
            raise AccessDeniedError("Access denied to one or more transactions")

        processed = 0
        if data.operation == "delete":
            now = datetime.utcnow()
            for txn in txns:
                if not txn.is_deleted:
                    txn.is_deleted = True
                    txn.deleted_at = now
                    processed += 1
        elif data.operation == "restore":
            for txn in txns:
                if txn.is_deleted:
                    txn.is_deleted = False
                    txn.deleted_at = None
                    processed += 1
        elif data.operation == "update_category":
            if data.category_id is None:
                raise ValidationError("category_id is required for update_category")
            for txn in txns:
                self._checked_category(data.category_id, txn.type)
            for txn in txns:
                txn.category_id = data.category_id
                txn.auto_categorized = False
                processed += 1
        elif data.operation == "update_status":
            if data.status is None:
                raise ValidationError("status is required for update_status")
            for txn in txns:
                txn.status = data.status
                processed += 1
        else:
            tags = TagService(self.session, self.user_id).resolve(data.tags)
            if not tags:
                raise ValidationError("tags are required for add_tags")
            for txn in txns:
                existing = {t.id for t in txn.tags}
                new_tags = [t for t in tags if t.id not in existing]
                if new_tags:
                    txn.tags.extend(new_tags)
                    processed += 1

        self.session.commit()
        logger.info(
            "bulk_operation: op=%s requested=%s processed=%s",
            data.operation,
            len(data.transaction_ids),
            processed,
        )
        return {
            "operation": data.operation,
            "requested_count": len(data.transaction_ids),
            "processed_count": processed,
        }

    def stats(self, period: str = "month", today: Optional[date] = None) -> dict[str, object]:
        if period not in ("week", "month", "quarter", "year"):
            raise ValidationError("Period must be one of week, month, quarter, year")
        window = resolve_period(period, today=today)
        filters = TransactionFilters(date_from=window.start, date_to=window.end)
        totals = self._type_totals(filters)
        income_count, income = totals.get(TransactionType.income, (0, 0))
        expense_count, expenses = totals.get(TransactionType.expense, (0, 0))
        transfer_count, _ = totals.get(TransactionType.transfer, (0, 0))

        total = func.coalesce(func.sum(Transaction.amount_cents), 0).label("total")
        top_stmt = (
            self._apply_filters(
                select(Category.id, Category.name, total).join(
                    Category, Transaction.category_id == Category.id
                ),
                TransactionFilters(
                    type=TransactionType.expense,
                    date_from=window.start,
                    date_to=window.end,
                ),
            )
            .group_by(Category.id, Category.name)
            .order_by(total.desc())
            .limit(5)
        )
        return {
            "period": period,
            "start": window.start,
            "end": window.end,
            "total_income": income,
            "total_expenses": expenses,
            "net": income - expenses,
            "transaction_count": income_count + expense_count + transfer_count,
            "top_categories": [
                {"category_id": row.id, "name": row.name, "total_amount": int(row.total)}
                for row in self.session.execute(top_stmt)
            ],
        }

    def validate_transaction(self, data: dict[str, object]) -> list[str]:
        errors: list[str] = []

        amount = data.get("amount_cents")
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            errors.append("Amount must be a positive number")

        txn_type: Optional[TransactionType] = None
        try:
            txn_type = TransactionType(data.get("type"))
        except ValueError:
            errors.append("Type must be one of income, expense, transfer")

        raw_date = data.get("date")
        txn_date: Optional[date] = None
        if isinstance(raw_date, date):
            txn_date = raw_date
        elif isinstance(raw_date, str):
            try:
                txn_date = date.fromisoformat(raw_date)
            except ValueError:
                errors.append("Date is invalid")
        else:
            errors.append("Date is required")
        if txn_date and txn_date > date.today() + timedelta(days=365):
            errors.append("Date cannot be more than one year in the future")

        description = str(data.get("description") or "").strip()
        if not description:
            errors.append("Description is required")
        elif len(description) > 200:
            errors.append("Description cannot exceed 200 characters")

        category_id = data.get("category_id")
        if category_id is not None:
            category = self.session.get(Category, category_id)
            if not category or category.user_id != self.user_id or not category.is_active:
                errors.append("Category not found")
            elif txn_type and not _category_matches_type(category, txn_type):
                errors.append("Category type must match transaction type")
        return errors

    def autocomplete(
        self, query: str, field: str = "description", limit: int = 10
    ) -> list[dict[str, object]]:
        clean = (query or "").strip().lower()
        if len(clean) < 2:
            raise ValidationError("Query must be at least 2 characters")
        if field not in self.AUTOCOMPLETE_FIELDS:
            raise ValidationError(f"Unsupported autocomplete field: {field}")
        if limit < 1 or limit > MAX_SEARCH_RESULTS:
            raise ValidationError("Limit must be between 1 and 50")

        like = f"%{clean}%"
        uses = func.count(Transaction.id).label("uses")
        if field == "category":
            column = Category.name
            stmt = select(column, uses).join(
                Transaction, Transaction.category_id == Category.id
            )
        else:
            column = getattr(Transaction, field)
            stmt = select(column, uses)
        stmt = (
            stmt.where(
                Transaction.user_id == self.user_id,
                Transaction.is_deleted.is_(False),
                column.isnot(None),
                func.lower(column).like(like),
            )
            .group_by(column)
            .order_by(uses.desc(), column)
            .limit(limit)
        )
        return [{"value": row[0], "count": int(row[1])} for row in self.session.execute(stmt)]

    def _category_for_import(self, row: ImportRow) -> Optional[int]:
        if not row.category or row.type == TransactionType.transfer:
            return None
        candidates = self.session.scalars(
            select(Category).where(
                Category.user_id == self.user_id,
                Category.is_active.is_(True),
                Category.type == CategoryType(row.type.value),
            )
        ).all()
        wanted = row.category.strip().lower()
        for category in candidates:
            if category.name.lower() == wanted:
                return category.id
        close = [
            c for c in candidates if Levenshtein.distance(wanted, c.name.lower()) <= 1
        ]
        if len(close) == 1:
            return close[0].id
        return None

    def import_rows(self, content: bytes, filename: str) -> dict[str, object]:
        suffix = Path(filename or "").suffix.lower()
        if suffix == ".csv":
            rows, errors = parse_csv(decode_csv(content))
        elif suffix == ".xlsx":
            rows, errors = parse_xlsx(content)
        else:
            raise ValidationError("Only .csv and .xlsx files can be imported")

        imported = 0
        for row in rows:
            try:
                self._build(
                    TransactionIn(
                        date=row.date,
                        type=row.type,
                        amount_cents=row.amount_cents,
                        description=row.description,
                        category_id=self._category_for_import(row),
                        payee=row.payee,
                        notes=row.notes,
                        tags=row.tags,
                    )
                )
                imported += 1
            except ValueError as exc:
                errors.append(f"Row {row.row_number}: {exc}")
        self.session.commit()
        logger.info(
            "transactions_imported: file=%s imported=%s failed=%s",
            filename,
            imported,
            len(errors),
        )
        return {"imported": imported, "failed": len(errors), "errors": errors}

    def export_csv(self, filters: Optional[TransactionFilters] = None) -> str:
        return export_transactions(self.all_matching(filters))


@dataclass(frozen=True)
class BudgetSpending:
    start: Optional[date]
    end: Optional[date]
    spent_cents: int
    transaction_count: int
    by_category: dict[int, int]


class BudgetService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def get(self, budget_id: int) -> Budget:
        budget = self.session.get(Budget, budget_id)
        if not budget or budget.user_id != self.user_id:
            raise NotFoundError("Budget not found")
        return budget

    def list(
        self,
        active_on: Optional[date] = None,
        budget_ids: Optional[list[int]] = None,
        overlapping: Optional[tuple[date, date]] = None,
    ) -> list[Budget]:
        stmt = (
            select(Budget)
            .options(selectinload(Budget.allocations).joinedload(BudgetAllocation.category))
            .where(Budget.user_id == self.user_id, Budget.is_active.is_(True))
            .order_by(Budget.start_date, Budget.id)
        )
        if active_on:
            stmt = stmt.where(Budget.start_date <= active_on, Budget.end_date >= active_on)
        if overlapping:
            start, end = overlapping
            stmt = stmt.where(Budget.start_date <= end, Budget.end_date >= start)
        if budget_ids:
            stmt = stmt.where(Budget.id.in_(budget_ids))
        return self.session.scalars(stmt).all()

    def create(self, data: BudgetIn) -> Budget:
        if data.end_date < data.start_date:
            raise ValidationError("Budget end date must be on or after start date")
        budget = Budget(
            user_id=self.user_id,
            name=data.name.strip(),
            amount_cents=data.amount_cents,
            start_date=data.start_date,
            end_date=data.end_date,
            alert_threshold=data.alert_threshold,
        )
        seen: set[int] = set()
        for allocation in data.allocations:
            category = self.session.get(Category, allocation.category_id)
            if not category or category.user_id != self.user_id:
                raise NotFoundError("Category not found")
            if category.type != CategoryType.expense:
                raise ValidationError("Budgets can only allocate expense categories")
            if category.id in seen:
                raise ValidationError("Duplicate category allocation")
            seen.add(category.id)
            budget.allocations.append(
                BudgetAllocation(
                    category_id=category.id, allocated_cents=allocation.allocated_cents
                )
            )
        self.session.add(budget)
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def delete(self, budget_id: int) -> None:
        budget = self.get(budget_id)
        self.session.delete(budget)
        self.session.commit()

    def spending(
        self,
        budget: Budget,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> BudgetSpending:
        """Completed expense spending inside both the budget and the given window."""
        window_start = max(budget.start_date, start) if start else budget.start_date
        window_end = min(budget.end_date, end) if end else budget.end_date
        if window_start > window_end:
            return BudgetSpending(None, None, 0, 0, {})

        stmt = (
            select(
                Transaction.category_id,
                func.count(Transaction.id),
                func.coalesce(func.sum(Transaction.amount_cents), 0),
            )
            .where(
                Transaction.user_id == self.user_id,
                Transaction.type == TransactionType.expense,
                Transaction.is_deleted.is_(False),
                Transaction.status == TransactionStatus.completed,
                Transaction.date.between(window_start, window_end),
            )
            .group_by(Transaction.category_id)
        )
        allocated_ids = [a.category_id for a in budget.allocations]
        if allocated_ids:
            stmt = stmt.where(Transaction.category_id.in_(allocated_ids))

        by_category: dict[int, int] = {}
        spent = 0
        count = 0
        for category_id, txn_count, total in self.session.execute(stmt):
            spent += int(total)
            count += int(txn_count)
            if category_id is not None:
                by_category[category_id] = int(total)
        return BudgetSpending(window_start, window_end, spent, count, by_category)


class GoalService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def get(self, goal_id: int) -> Goal:
        goal = self.session.get(Goal, goal_id)
        if not goal or goal.user_id != self.user_id:
            raise NotFoundError("Goal not found")
        return goal

    def list(
        self, goal_ids: Optional[list[int]] = None, include_completed: bool = False
    ) -> list[Goal]:
        stmt = select(Goal).where(Goal.user_id == self.user_id)
        if goal_ids:
            stmt = stmt.where(Goal.id.in_(goal_ids))
        if not include_completed:
            stmt = stmt.where(Goal.status != GoalStatus.completed)
        return self.session.scalars(stmt.order_by(Goal.target_date, Goal.id)).all()

    def create(self, data: GoalIn) -> Goal:
        now = datetime.utcnow()
        goal = Goal(
            user_id=self.user_id,
            name=data.name.strip(),
            description=data.description,
            target_cents=data.target_cents,
            current_cents=data.current_cents,
            target_date=data.target_date,
            priority=data.priority,
            status=data.status,
            reminder_frequency=data.reminder_frequency,
        )
        if goal.status == GoalStatus.active:
            goal.next_reminder_at = next_reminder_time(data.reminder_frequency, now)
        self.session.add(goal)
        self.session.commit()
        self.session.refresh(goal)
        return goal

    def contribute(self, goal_id: int, amount_cents: int) -> Goal:
        if amount_cents <= 0:
            raise ValidationError("Contribution must be positive")
        goal = self.get(goal_id)
        if goal.status != GoalStatus.active:
            raise ValidationError("Only active goals accept contributions")
        goal.current_cents += amount_cents
        if goal.current_cents >= goal.target_cents:
            goal.status = GoalStatus.completed
            goal.next_reminder_at = None
        self.session.commit()
        self.session.refresh(goal)
        return goal


class UserService:
    def __init__(
        self, session: Session, passwords: Optional[PasswordService] = None
    ) -> None:
        self.session = session
        self.passwords = passwords or PasswordService(session)

    def get(self, user_id: int) -> User:
        user = self.session.get(User, user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    def get_by_email(self, email: str) -> Optional[User]:
        return self.session.scalar(
            select(User).where(func.lower(User.email) == email.strip().lower())
        )

    def create(self, data: UserIn) -> User:
        if self.get_by_email(data.email):
            raise ConflictError("A user with this email already exists")
        strength = self.passwords.validate_strength(
            data.password,
            {"first_name": data.first_name, "last_name": data.last_name, "email": data.email},
        )
        if not strength.is_valid:
            raise ValidationError("; ".join(strength.errors) or "Password is too weak")

        password_hash = self.passwords.hash_password(data.password)
        user = User(
            email=data.email.strip().lower(),
            first_name=data.first_name,
            last_name=data.last_name,
            password_hash=password_hash,
            password_changed_at=datetime.utcnow(),
            is_email_verified=data.is_email_verified,
        )
        user.password_history.append(PasswordHistory(password_hash=password_hash))
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        return user

    def update_notification_preferences(self, user_id: int, **flags: bool) -> User:
        allowed = {
            "budget_alerts_enabled",
            "monthly_summary_enabled",
            "weekly_check_enabled",
            "daily_check_enabled",
            "goal_reminders_enabled",
        }
        unknown = set(flags) - allowed
        if unknown:
            raise ValidationError(f"Unknown preferences: {', '.join(sorted(unknown))}")
        user = self.get(user_id)
        for name, value in flags.items():
            setattr(user, name, bool(value))
        self.session.commit()
        return user
