import logging
from datetime import date
from typing import List, Optional

from fastapi import Depends, FastAPI, File, Form, Query, Request, UploadFile
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.orm import Session

from database import get_db, init_db
from errors import ConflictError, NotFoundError, SecurityError, ValidationError
from models import (
    Budget,
    Category,
    CategoryType,
    Goal,
    Notification,
    NotificationKind,
    StoredFile,
    Transaction,
    TransactionStatus,
    TransactionType,
    User,
)
from notifications import NotificationService
from passwords import PasswordService
from reports import ReportService
from scheduler import SchedulerManager
from schemas import (
    BudgetIn,
    BulkOperationIn,
    CategoryIn,
    CategoryUpdate,
    ContributionIn,
    ForgotPasswordIn,
    GoalIn,
    LoginIn,
    PasswordChangeIn,
    PasswordCheckIn,
    PasswordResetIn,
    TransactionIn,
    TransactionUpdate,
    UserIn,
)
from services import (
    BudgetService,
    CategoryFilters,
    CategoryService,
    GoalService,
    TransactionFilters,
    TransactionService,
    UserService,
    get_current_user_id,
)
from uploads import FileService, IncomingFile

app = FastAPI(title="Finance Dashboard")
scheduler_manager = SchedulerManager()


def _error(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


@app.exception_handler(ValidationError)
def validation_error_handler(request: Request, exc: ValidationError):
    return _error(400, exc)


@app.exception_handler(SecurityError)
def security_error_handler(request: Request, exc: SecurityError):
    return _error(403, exc)


@app.exception_handler(NotFoundError)
def not_found_handler(request: Request, exc: NotFoundError):
    return _error(404, exc)


@app.exception_handler(ConflictError)
def conflict_handler(request: Request, exc: ConflictError):
    return _error(409, exc)


@app.on_event("startup")
def startup_event():
    init_db()
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def category_json(category: Category) -> dict[str, object]:
    return {
        "id": category.id,
        "name": category.name,
        "type": category.type.value,
        "color": category.color,
        "icon": category.icon,
        "description": category.description,
        "parent_id": category.parent_id,
        "level": category.level,
        "sort_order": category.sort_order,
        "budget_allocation_cents": category.budget_allocation_cents,
        "keywords": list(category.keywords or []),
        "is_active": category.is_active,
        "is_system": category.is_system,
    }


def transaction_json(txn: Transaction) -> dict[str, object]:
    return {
        "id": txn.id,
        "date": txn.date.isoformat(),
        "type": txn.type.value,
        "amount_cents": txn.amount_cents,
        "description": txn.description,
        "payee": txn.payee,
        "payment_method": txn.payment_method,
        "notes": txn.notes,
        "account": txn.account,
        "status": txn.status.value,
        "category_id": txn.category_id,
        "category": txn.category.name if txn.category else None,
        "auto_categorized": txn.auto_categorized,
        "tags": sorted(tag.name for tag in txn.tags),
        "is_deleted": txn.is_deleted,
    }


def budget_json(budget: Budget) -> dict[str, object]:
    return {
        "id": budget.id,
        "name": budget.name,
        "amount_cents": budget.amount_cents,
        "start_date": budget.start_date.isoformat(),
        "end_date": budget.end_date.isoformat(),
        "alert_threshold": budget.alert_threshold,
        "allocations": [
            {"category_id": a.category_id, "allocated_cents": a.allocated_cents}
            for a in budget.allocations
        ],
    }


def goal_json(goal: Goal) -> dict[str, object]:
    return {
        "id": goal.id,
        "name": goal.name,
        "target_cents": goal.target_cents,
        "current_cents": goal.current_cents,
        "target_date": goal.target_date.isoformat(),
        "status": goal.status.value,
        "priority": goal.priority,
        "reminder_frequency": goal.reminder_frequency.value,
        "next_reminder_at": goal.next_reminder_at,
    }


def user_json(user: User) -> dict[str, object]:
    return {
        "id": user.id,
        "email": user.email,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "is_email_verified": user.is_email_verified,
    }


def file_json(stored: StoredFile) -> dict[str, object]:
    return {
        "id": stored.id,
        "original_name": stored.original_name,
        "filename": stored.filename,
        "url": stored.url,
        "size": stored.size,
        "mime_type": stored.mime_type,
        "upload_type": stored.upload_type,
        "width": stored.width,
        "height": stored.height,
        "thumbnails": stored.thumbnails,
    }


def notification_json(note: Notification) -> dict[str, object]:
    return {
        "id": note.id,
        "kind": note.kind.value,
        "subject": note.subject,
        "priority": note.priority,
        "budget_id": note.budget_id,
        "category_id": note.category_id,
        "goal_id": note.goal_id,
        "payload": note.payload,
        "created_at": note.created_at,
    }


def _id_list(raw: Optional[str]) -> Optional[list[int]]:
    if not raw:
        return None
    try:
        return [int(part) for part in raw.split(",") if part.strip()]
    except ValueError as exc:
        raise ValidationError("Ids must be a comma separated list of integers") from exc


# Categories


@app.get("/api/categories")
def list_categories(
    type: Optional[CategoryType] = None,
    include_inactive: bool = False,
    parent_id: Optional[str] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 50,
    sort: str = "sort_order",
    order: str = Query("asc", pattern="^(asc|desc)$"),
    db: Session = Depends(get_db),
):
    filters = CategoryFilters(
        type=type, include_inactive=include_inactive, parent_id=parent_id, search=search
    )
    result = CategoryService(db).list(filters, page=page, limit=limit, sort=sort, order=order)
    return {
        "categories": [category_json(c) for c in result["categories"]],
        "pagination": result["pagination"],
    }


@app.get("/api/categories/hierarchy")
def category_hierarchy(type: Optional[CategoryType] = None, db: Session = Depends(get_db)):
    return CategoryService(db).hierarchy(type)


@app.get("/api/categories/search")
def search_categories(
    q: str,
    type: Optional[CategoryType] = None,
    limit: int = 10,
    db: Session = Depends(get_db),
):
    service = CategoryService(db)
    return [
        {**category_json(c), "full_path": service.full_path(c)}
        for c in service.search(q, type=type, limit=limit)
    ]


@app.get("/api/categories/usage")
def category_usage(
    start: Optional[date] = None, end: Optional[date] = None, db: Session = Depends(get_db)
):
    return CategoryService(db).usage_summary(start, end)


@app.post("/api/categories/defaults", status_code=201)
def create_default_categories(db: Session = Depends(get_db)):
    return [category_json(c) for c in CategoryService(db).create_defaults()]


@app.post("/api/categories", status_code=201)
def create_category(payload: CategoryIn, db: Session = Depends(get_db)):
    return category_json(CategoryService(db).create(payload))


@app.get("/api/categories/{category_id}")
def get_category(category_id: int, db: Session = Depends(get_db)):
    detail = CategoryService(db).get(category_id)
    return {
        **category_json(detail["category"]),
        "full_path": detail["full_path"],
        "subcategories": [category_json(c) for c in detail["subcategories"]],
        "stats": detail["stats"],
    }


@app.put("/api/categories/{category_id}")
def update_category(category_id: int, payload: CategoryUpdate, db: Session = Depends(get_db)):
    return category_json(CategoryService(db).update(category_id, payload))


@app.delete("/api/categories/{category_id}")
def delete_category(category_id: int, force: bool = False, db: Session = Depends(get_db)):
    return CategoryService(db).delete(category_id, force=force)


@app.get("/api/categories/{category_id}/statistics")
def category_statistics(
    category_id: int,
    start: Optional[date] = None,
    end: Optional[date] = None,
    include_subcategories: bool = False,
    db: Session = Depends(get_db),
):
    return CategoryService(db).statistics(category_id, start, end, include_subcategories)


# Transactions


def transaction_filters(
    type: Optional[TransactionType] = None,
    category_id: Optional[int] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    amount_min: Optional[int] = None,
    amount_max: Optional[int] = None,
    search: Optional[str] = None,
    status: Optional[TransactionStatus] = TransactionStatus.completed,
    tags: Optional[str] = None,
    payee: Optional[str] = None,
) -> TransactionFilters:
    return TransactionFilters(
        type=type,
        category_id=category_id,
        date_from=date_from,
        date_to=date_to,
        amount_min=amount_min,
        amount_max=amount_max,
        search=search,
        status=status,
        tags=[t for t in tags.split(",") if t.strip()] if tags else [],
        payee=payee,
    )


@app.get("/api/transactions")
def list_transactions(
    filters: TransactionFilters = Depends(transaction_filters),
    page: int = 1,
    limit: int = 20,
    sort: str = "date",
    order: str = Query("desc", pattern="^(asc|desc)$"),
    db: Session = Depends(get_db),
):
    result = TransactionService(db).list(filters, page=page, limit=limit, sort=sort, order=order)
    return {
        "transactions": [transaction_json(t) for t in result["transactions"]],
        "pagination": result["pagination"],
    }


@app.post("/api/transactions", status_code=201)
def create_transaction(payload: TransactionIn, db: Session = Depends(get_db)):
    return transaction_json(TransactionService(db).create(payload))


@app.get("/api/transactions/analytics")
def transaction_analytics(
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    type: Optional[TransactionType] = None,
    category_id: Optional[int] = None,
    db: Session = Depends(get_db),
):
    return TransactionService(db).analytics(date_from, date_to, type, category_id)


@app.get("/api/transactions/stats")
def transaction_stats(period: str = "month", db: Session = Depends(get_db)):
    return TransactionService(db).stats(period)


@app.get("/api/transactions/autocomplete")
def transaction_autocomplete(
    q: str, field: str = "description", limit: int = 10, db: Session = Depends(get_db)
):
    return TransactionService(db).autocomplete(q, field=field, limit=limit)


@app.post("/api/transactions/validate")
def validate_transaction(payload: dict, db: Session = Depends(get_db)):
    errors = TransactionService(db).validate_transaction(payload)
    return {"is_valid": not errors, "errors": errors}


@app.post("/api/transactions/bulk")
def bulk_transactions(payload: BulkOperationIn, db: Session = Depends(get_db)):
    return TransactionService(db).bulk_operation(payload)


@app.get("/api/transactions/export.csv")
def export_transactions(
    filters: TransactionFilters = Depends(transaction_filters), db: Session = Depends(get_db)
):
    csv_text = TransactionService(db).export_csv(filters)
    filename = f"transactions_{date.today().isoformat()}.csv"
    return StreamingResponse(
        iter([csv_text]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.post("/api/transactions/import")
async def import_transactions(file: UploadFile = File(...), db: Session = Depends(get_db)):
    content = await file.read()
    return TransactionService(db).import_rows(content, file.filename or "")


@app.get("/api/transactions/{transaction_id}")
def get_transaction(transaction_id: int, db: Session = Depends(get_db)):
    return transaction_json(TransactionService(db).get(transaction_id))


@app.put("/api/transactions/{transaction_id}")
def update_transaction(
    transaction_id: int, payload: TransactionUpdate, db: Session = Depends(get_db)
):
    return transaction_json(TransactionService(db).update(transaction_id, payload))


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def delete_transaction(
    transaction_id: int, permanent: bool = False, db: Session = Depends(get_db)
):
    TransactionService(db).delete(transaction_id, permanent=permanent)


@app.post("/api/transactions/{transaction_id}/restore")
def restore_transaction(transaction_id: int, db: Session = Depends(get_db)):
    return transaction_json(TransactionService(db).restore(transaction_id))


# Budgets and goals


@app.get("/api/budgets")
def list_budgets(active_on: Optional[date] = None, db: Session = Depends(get_db)):
    return [budget_json(b) for b in BudgetService(db).list(active_on=active_on)]


@app.post("/api/budgets", status_code=201)
def create_budget(payload: BudgetIn, db: Session = Depends(get_db)):
    return budget_json(BudgetService(db).create(payload))


@app.delete("/api/budgets/{budget_id}", status_code=204)
def delete_budget(budget_id: int, db: Session = Depends(get_db)):
    BudgetService(db).delete(budget_id)


@app.get("/api/goals")
def list_goals(include_completed: bool = False, db: Session = Depends(get_db)):
    return [goal_json(g) for g in GoalService(db).list(include_completed=include_completed)]


@app.post("/api/goals", status_code=201)
def create_goal(payload: GoalIn, db: Session = Depends(get_db)):
    return goal_json(GoalService(db).create(payload))


@app.post("/api/goals/{goal_id}/contribute")
def contribute_to_goal(goal_id: int, payload: ContributionIn, db: Session = Depends(get_db)):
    return goal_json(GoalService(db).contribute(goal_id, payload.amount_cents))


# Reports


@app.get("/api/reports/spending")
def spending_report(
    start: Optional[date] = None,
    end: Optional[date] = None,
    category_ids: Optional[str] = None,
    group_by: str = "month",
    db: Session = Depends(get_db),
):
    return ReportService(db).spending_report(start, end, _id_list(category_ids), group_by)


@app.get("/api/reports/income")
def income_report(
    start: Optional[date] = None,
    end: Optional[date] = None,
    group_by: str = "month",
    db: Session = Depends(get_db),
):
    return ReportService(db).income_report(start, end, group_by)


@app.get("/api/reports/cash-flow")
def cash_flow_report(
    start: Optional[date] = None,
    end: Optional[date] = None,
    projection_months: int = 6,
    db: Session = Depends(get_db),
):
    return ReportService(db).cash_flow_report(start, end, projection_months)


@app.get("/api/reports/budget-performance")
def budget_performance_report(
    start: Optional[date] = None,
    end: Optional[date] = None,
    budget_ids: Optional[str] = None,
    db: Session = Depends(get_db),
):
    return ReportService(db).budget_performance_report(start, end, _id_list(budget_ids))


@app.get("/api/reports/goal-progress")
def goal_progress_report(
    goal_ids: Optional[str] = None,
    include_completed: bool = False,
    db: Session = Depends(get_db),
):
    return ReportService(db).goal_progress_report(_id_list(goal_ids), include_completed)


@app.get("/api/reports/net-worth")
def net_worth_report(
    historical_months: int = 12,
    include_projections: bool = True,
    db: Session = Depends(get_db),
):
    return ReportService(db).net_worth(historical_months, include_projections)


# Users and passwords


@app.post("/api/users", status_code=201)
def register_user(payload: UserIn, db: Session = Depends(get_db)):
    return user_json(UserService(db).create(payload))


@app.post("/api/auth/login")
def login(payload: LoginIn, db: Session = Depends(get_db)):
    return user_json(PasswordService(db).authenticate(payload.email, payload.password))


@app.put("/api/users/{user_id}/password")
def change_password(user_id: int, payload: PasswordChangeIn, db: Session = Depends(get_db)):
    PasswordService(db).change_password(
        user_id, payload.current_password, payload.new_password
    )
    return {"message": "Password changed successfully"}


@app.post("/api/password/strength")
def password_strength(payload: PasswordCheckIn, db: Session = Depends(get_db)):
    return PasswordService(db).password_meter(
        payload.password,
        {
            "first_name": payload.first_name,
            "last_name": payload.last_name,
            "email": payload.email,
        },
    )


@app.get("/api/password/generate")
def generate_password(length: int = 12, db: Session = Depends(get_db)):
    return {"password": PasswordService(db).generate_secure_password(length)}


@app.post("/api/password/forgot")
def forgot_password(payload: ForgotPasswordIn, db: Session = Depends(get_db)):
    try:
        PasswordService(db).initiate_reset(payload.email)
    except ValidationError as exc:
        logging.info(f"password_reset_refused: reason={exc}")
    return {"message": "If an account exists for this email, a reset link has been sent"}


@app.post("/api/password/reset")
def reset_password(payload: PasswordResetIn, db: Session = Depends(get_db)):
    PasswordService(db).reset_password(payload.token, payload.new_password)
    return {"message": "Password has been reset"}


# Files


@app.post("/api/files", status_code=201)
async def upload_file(
    file: UploadFile = File(...),
    upload_type: str = Form("image"),
    db: Session = Depends(get_db),
):
    content = await file.read()
    stored = FileService(db).upload_file(
        content,
        file.filename or "upload",
        file.content_type or "application/octet-stream",
        upload_type,
    )
    return file_json(stored)


@app.post("/api/files/batch")
async def upload_files(
    files: List[UploadFile] = File(...),
    upload_type: str = Form("image"),
    db: Session = Depends(get_db),
):
    incoming = [
        IncomingFile(
            filename=f.filename or "upload",
            content=await f.read(),
            mime_type=f.content_type or "application/octet-stream",
        )
        for f in files
    ]
    result = FileService(db).upload_multiple(incoming, upload_type)
    return {**result, "successful": [file_json(f) for f in result["successful"]]}


@app.get("/api/files")
def list_files(upload_type: Optional[str] = None, db: Session = Depends(get_db)):
    return [file_json(f) for f in FileService(db).list_files(upload_type)]


@app.get("/api/files/access")
def access_file(token: str, db: Session = Depends(get_db)):
    service = FileService(db)
    return file_json(service.get(service.verify_file_token(token)))


@app.get("/api/files/{file_id}/url")
def signed_file_url(file_id: int, expires_in: int = 3600, db: Session = Depends(get_db)):
    return {"url": FileService(db).generate_file_url(file_id, expires_in)}


@app.delete("/api/files/{file_id}", status_code=204)
def delete_file(file_id: int, db: Session = Depends(get_db)):
    FileService(db).delete_file(file_id)


# Notifications and scheduler


@app.get("/api/notifications")
def list_notifications(
    kind: Optional[NotificationKind] = None, limit: int = 50, db: Session = Depends(get_db)
):
    service = NotificationService(db, get_current_user_id())
    return [notification_json(n) for n in service.list(kind=kind, limit=limit)]


@app.get("/api/scheduler/status")
def scheduler_status():
    return scheduler_manager.status()


@app.post("/api/scheduler/jobs/{job_id}/run")
def run_scheduler_job(job_id: str):
    return scheduler_manager.run_job(job_id)
