"""Main FastAPI application for Smart Ledger."""
import datetime as dt
import logging
import time
from typing import Optional

from fastapi import FastAPI, HTTPException, Depends, Query, status
from fastapi.security import OAuth2PasswordBearer
from sqlmodel import SQLModel, create_engine, Session, select

from prometheus_fastapi_instrumentator import Instrumentator
from sqlalchemy.exc import OperationalError

from auth import (
    verify_password,
    get_password_hash,
    create_access_token,
    decode_access_token,
)
from budget import (
    BudgetConfig,
    BudgetEvaluator,
    BudgetMonitor,
    BudgetSnapshot,
    allocate_category_budgets,
    budget_report,
    category_scope,
)
from categories import CategoryRegistry, seed_default_categories
from clock import AsyncioTicker, SystemClock
from config import configure_logging, get_settings
from models import Transaction, User
from reports import ReportGenerator
from schemas import (
    BudgetAlertRead,
    BudgetChangeRead,
    BudgetConfigRead,
    BudgetConfigUpdate,
    CategoryBudgetSet,
    CategoryRead,
    PasswordChange,
    Token,
    TransactionCreate,
    TransactionRead,
    TransactionUpdate,
    UserCreate,
    UserLogin,
    UserRead,
    UsernameChange,
)
from store import (
    SQLTransactionStore,
    budget_history,
    load_budget_config,
    record_budget_change,
    save_budget_config,
)
from utils import compute_summary, filter_transactions, round_money

settings = get_settings()
configure_logging(settings)
logger = logging.getLogger(__name__)

app = FastAPI(title="Smart Ledger", version="0.1.0")
Instrumentator().instrument(app).expose(app)
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")

if settings.database_url.startswith("sqlite"):
    connect_args = {"check_same_thread": False}
else:
    connect_args = {}

engine = create_engine(
    settings.database_url,
    connect_args=connect_args,
    echo=False,
)

clock = SystemClock()
budget_evaluator = BudgetEvaluator(
    clock,
    cooldown_seconds=settings.budget_alert_cooldown_seconds,
)

# Fields that may not be cleared with an explicit null in a PATCH.
REQUIRED_TRANSACTION_FIELDS = ("type", "amount", "date", "source", "tags")


@app.get("/")
def root():
    return {"message": "Smart Ledger API is running. See /health for status."}


@app.get("/health")
def health():
    return {
        "status": "ok",
        "timestamp": dt.datetime.utcnow().isoformat(),
        "app": "smart-ledger",
        "version": "0.1.0",
    }


def get_session():
    """Provide a database session per request."""
    with Session(engine) as session:
        yield session


def get_clock():
    return clock


def get_budget_evaluator() -> BudgetEvaluator:
    return budget_evaluator


def get_registry(session: Session = Depends(get_session)) -> CategoryRegistry:
    return CategoryRegistry.from_session(session)


def get_user_by_username(session: Session, username: str) -> User | None:
    """Fetch a user by username or return None."""
    stmt = select(User).where(User.username == username)
    return session.exec(stmt).first()


def get_transaction_or_404(session: Session, transaction_id: str, user_id: int) -> Transaction:
    """Another user's transaction is reported as missing, not forbidden."""
    transaction = session.get(Transaction, transaction_id)
    if not transaction or transaction.user_id != user_id:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return transaction


def save_and_refresh(session: Session, instance):
    """Persist and refresh an instance in the current session."""
    session.add(instance)
    session.commit()
    session.refresh(instance)
    return instance


def load_snapshots() -> list[BudgetSnapshot]:
    """One snapshot per user, all read in a fresh session."""
    with Session(engine) as session:
        registry = CategoryRegistry.from_session(session)
        return [
            BudgetSnapshot(
                transactions=tuple(SQLTransactionStore(session, user.id).get_all()),
                config=load_budget_config(session, user.id),
                registry=registry,
                user_id=user.id,
            )
            for user in session.exec(select(User).order_by(User.id)).all()
        ]


budget_monitor = BudgetMonitor(
    budget_evaluator,
    load_snapshots,
    AsyncioTicker(settings.budget_check_interval_seconds),
)


def run_budget_check(session: Session, evaluator: BudgetEvaluator, now: dt.datetime, user_id: int):
    """On-demand budget check of one user against the current request's session."""
    config = load_budget_config(session, user_id)
    transactions = SQLTransactionStore(session, user_id).get_all()
    registry = CategoryRegistry.from_session(session)
    return evaluator.evaluate(transactions, config, registry, now=now, user_id=user_id)


def config_to_read(config: BudgetConfig) -> BudgetConfigRead:
    return BudgetConfigRead(
        monthly=round_money(config.monthly),
        categories={cid: round_money(amount) for cid, amount in config.categories.items()},
        alert_threshold_percent=config.alert_threshold_percent,
        auto_adjust=config.auto_adjust,
    )


async def get_current_user(
    token: str = Depends(oauth2_scheme),
    session: Session = Depends(get_session),
) -> User:
    """Resolve the current user from a bearer token."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    username = decode_access_token(token)
    if username is None:
        raise credentials_exception

    user = get_user_by_username(session, username=username)
    if user is None:
        raise credentials_exception
    return user


@app.on_event("startup")
def on_startup() -> None:
    """
    Run once when the app starts:
    - Wait for the database to be ready
    - Create tables
    - Seed default categories
    - Start the periodic budget monitor
    """
    retries = settings.db_startup_retries
    delay = settings.db_startup_delay_seconds
    last_exc: Exception | None = None

    for attempt in range(1, retries + 1):
        try:
            SQLModel.metadata.create_all(engine)
            with Session(engine) as session:
                seed_default_categories(session)
            logger.info("Database ready, tables created, categories seeded.")
            break
        except OperationalError as exc:
            last_exc = exc
            logger.warning(
                "DB not ready yet (attempt %d/%d); waiting %ss...", attempt, retries, delay
            )
            time.sleep(delay)
    else:
        logger.error("Giving up connecting to the database.")
        if last_exc:
            raise last_exc
        raise RuntimeError("Database not reachable on startup.")

    budget_monitor.start()


@app.on_event("shutdown")
def on_shutdown() -> None:
    budget_monitor.stop()


# AUTH ENDPOINTS
@app.post("/auth/register", response_model=UserRead, status_code=201)
def register_user(
    user_in: UserCreate,
    session: Session = Depends(get_session),
):
    """Register a new user if the username is free."""
    existing = get_user_by_username(session, user_in.username)
    if existing:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Username already registered",
        )

    try:
        hashed = get_password_hash(user_in.password)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    user = User(username=user_in.username, hashed_password=hashed)
    return save_and_refresh(session, user)


@app.post("/auth/login", response_model=Token)
def login(
    user_in: UserLogin,
    session: Session = Depends(get_session),
):
    """Authenticate a user and return a bearer token."""
    user = get_user_by_username(session, user_in.username)
    if not user or not verify_password(user_in.password, user.hashed_password):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Incorrect username or password",
        )

    access_token = create_access_token({"sub": user.username})
    return {"access_token": access_token, "token_type": "bearer"}


@app.get("/auth/me")
def read_current_user(current_user: User = Depends(get_current_user)):
    """Return the current authenticated user."""
    return {
        "id": current_user.id,
        "username": current_user.username,
        "created_at": getattr(current_user, "created_at", None),
    }


@app.post("/auth/change-username")
def change_username(
    payload: UsernameChange,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    """Change the current user's username and return a fresh token."""
    existing = session.exec(
        select(User).where(User.username == payload.new_username)
    ).first()
    if existing:
        raise HTTPException(status_code=400, detail="Username already in use.")

    current_user.username = payload.new_username
    save_and_refresh(session, current_user)

    new_token = create_access_token(
        {"sub": current_user.username, "user_id": current_user.id}
    )

    return {
        "message": "username-updated",
        "access_token": new_token,
        "token_type": "bearer",
    }


@app.post("/auth/change-password")
def change_password(
    payload: PasswordChange,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    """Change the current user's password."""
    if not verify_password(payload.current_password, current_user.hashed_password):
        raise HTTPException(status_code=400, detail="Current password is incorrect.")

    current_user.hashed_password = get_password_hash(payload.new_password)
    save_and_refresh(session, current_user)

    return {"message": "password-updated"}


# CATEGORY ENDPOINTS

# The registry is read-only and shared: categories are seeded at start-up.
@app.get("/api/categories", response_model=list[CategoryRead])
def list_categories(
    registry: CategoryRegistry = Depends(get_registry),
    current_user: User = Depends(get_current_user),
):
    """List the category registry."""
    return [CategoryRead(**c.to_dict()) for c in registry.all()]


# TRANSACTION ENDPOINTS
# Every transaction belongs to the user who recorded it.
# Unknown categories are stored as 'other'; a missing date means "now".
@app.post("/api/transactions", response_model=TransactionRead, status_code=201)
def create_transaction(
    payload: TransactionCreate,
    session: Session = Depends(get_session),
    registry: CategoryRegistry = Depends(get_registry),
    clock=Depends(get_clock),
    evaluator: BudgetEvaluator = Depends(get_budget_evaluator),
    current_user: User = Depends(get_current_user),
):
    """Record an income or expense transaction."""
    category = registry.resolve(payload.category_id)
    if payload.category_id and category.id != payload.category_id:
        logger.warning("Unknown category %r stored as %r", payload.category_id, category.id)

    row = Transaction(
        user_id=current_user.id,
        type=payload.type,
        amount=payload.amount,
        category_id=category.id,
        description=payload.description,
        merchant=payload.merchant,
        date=payload.date or clock.now(),
        source=payload.source,
        tags=payload.tags,
    )
    result = TransactionRead.model_validate(save_and_refresh(session, row))
    run_budget_check(session, evaluator, clock.now(), current_user.id)
    return result


# Newest first, with optional filters for tables and search boxes.
@app.get("/api/transactions", response_model=list[TransactionRead])
def list_transactions(
    type: Optional[str] = Query(default=None, pattern="^(income|expense)$"),
    category_id: Optional[str] = None,
    source: Optional[str] = None,
    date_from: Optional[dt.date] = None,
    date_to: Optional[dt.date] = None,
    q: Optional[str] = None,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    """List the current user's transactions ordered by date descending."""
    rows = filter_transactions(
        SQLTransactionStore(session, current_user.id).get_all(),
        date_from=date_from,
        date_to=date_to,
        query=q,
        tx_type=type,
        category_id=category_id,
        source=source,
    )
    rows.sort(key=lambda t: t.date, reverse=True)
    return rows


@app.get("/api/transactions/{transaction_id}", response_model=TransactionRead)
def get_transaction(
    transaction_id: str,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    return get_transaction_or_404(session, transaction_id, current_user.id)


# Partially update a transaction. Only the fields provided in the request are changed.
@app.patch("/api/transactions/{transaction_id}", response_model=TransactionRead)
def update_transaction(
    transaction_id: str,
    payload: TransactionUpdate,
    session: Session = Depends(get_session),
    registry: CategoryRegistry = Depends(get_registry),
    clock=Depends(get_clock),
    evaluator: BudgetEvaluator = Depends(get_budget_evaluator),
    current_user: User = Depends(get_current_user),
):
    """Patch a transaction."""
    transaction = get_transaction_or_404(session, transaction_id, current_user.id)

    data = payload.model_dump(exclude_unset=True)
    for field in REQUIRED_TRANSACTION_FIELDS:
        if field in data and data[field] is None:
            data.pop(field)
    if "category_id" in data:
        data["category_id"] = registry.resolve(data["category_id"]).id

    for field, value in data.items():
        setattr(transaction, field, value)

    result = TransactionRead.model_validate(save_and_refresh(session, transaction))
    run_budget_check(session, evaluator, clock.now(), current_user.id)
    return result


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def delete_transaction(
    transaction_id: str,
    session: Session = Depends(get_session),
    clock=Depends(get_clock),
    evaluator: BudgetEvaluator = Depends(get_budget_evaluator),
    current_user: User = Depends(get_current_user),
):
    """Delete a transaction."""
    transaction = get_transaction_or_404(session, transaction_id, current_user.id)
    session.delete(transaction)
    session.commit()
    run_budget_check(session, evaluator, clock.now(), current_user.id)
    return None


# SUMMARY / REPORTS
def get_report_generator(
    session: Session = Depends(get_session),
    registry: CategoryRegistry = Depends(get_registry),
    clock=Depends(get_clock),
    current_user: User = Depends(get_current_user),
) -> ReportGenerator:
    return ReportGenerator(SQLTransactionStore(session, current_user.id), registry, clock)


@app.get("/api/stats/summary")
def get_summary(
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
) -> dict[str, float]:
    """Compute income/expense totals and balance over the user's transactions."""
    return compute_summary(SQLTransactionStore(session, current_user.id).get_all())


@app.get("/api/stats/monthly-report")
def get_monthly_report(
    year: Optional[int] = Query(default=None, ge=1970, le=9999),
    month: Optional[int] = Query(default=None, ge=1, le=12),
    generator: ReportGenerator = Depends(get_report_generator),
):
    """One calendar month (default: the current one) against the month before."""
    return generator.monthly_report(year, month)


@app.get("/api/stats/spending-habits")
def get_spending_habits(
    months: int = Query(default=6, ge=1, le=24),
    generator: ReportGenerator = Depends(get_report_generator),
):
    """Expense averages per source and weekday/weekend, time-of-day buckets."""
    return generator.spending_habits(months)


@app.get("/api/reports")
def get_report(
    window: str = "month",
    generator: ReportGenerator = Depends(get_report_generator),
):
    """Overview, category/source breakdowns, trend, quarter and smart bill for a window."""
    return generator.generate_report(window)


@app.get("/api/reports/health")
def get_health_score(
    window: str = "month",
    generator: ReportGenerator = Depends(get_report_generator),
):
    return generator.health_score(window)


# BUDGET ENDPOINTS
# Budgets, history and alerts are per user.
@app.get("/api/budgets", response_model=BudgetConfigRead)
def get_budgets(
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    return config_to_read(load_budget_config(session, current_user.id))


@app.put("/api/budgets", response_model=BudgetConfigRead)
def update_budgets(
    payload: BudgetConfigUpdate,
    session: Session = Depends(get_session),
    registry: CategoryRegistry = Depends(get_registry),
    clock=Depends(get_clock),
    evaluator: BudgetEvaluator = Depends(get_budget_evaluator),
    current_user: User = Depends(get_current_user),
):
    """Update the monthly budget and alert settings.

    With auto_adjust on, a new monthly amount is re-split over the expense
    categories.
    """
    user_id = current_user.id
    config = load_budget_config(session, user_id)
    data = payload.model_dump(exclude_unset=True, exclude_none=True)

    if "alert_threshold_percent" in data:
        config.alert_threshold_percent = data["alert_threshold_percent"]
    if "auto_adjust" in data:
        config.auto_adjust = data["auto_adjust"]
    if "monthly" in data:
        config.monthly = data["monthly"]
        if config.auto_adjust:
            transactions = SQLTransactionStore(session, user_id).get_all()
            config.categories.update(
                allocate_category_budgets(config.monthly, transactions, registry, clock.now())
            )

    config = save_budget_config(session, config, user_id)
    if "monthly" in data:
        record_budget_change(session, "monthly", config.monthly, user_id)
        logger.info("Monthly budget of user %s set to %s", user_id, config.monthly)
    run_budget_check(session, evaluator, clock.now(), user_id)
    return config_to_read(config)


@app.put("/api/budgets/categories/{category_id}", response_model=BudgetConfigRead)
def set_category_budget(
    category_id: str,
    payload: CategoryBudgetSet,
    session: Session = Depends(get_session),
    registry: CategoryRegistry = Depends(get_registry),
    clock=Depends(get_clock),
    evaluator: BudgetEvaluator = Depends(get_budget_evaluator),
    current_user: User = Depends(get_current_user),
):
    """Set one category's monthly sub-budget."""
    if registry.get(category_id) is None:
        raise HTTPException(status_code=404, detail="Category not found")

    user_id = current_user.id
    config = load_budget_config(session, user_id)
    config.categories[category_id] = payload.amount
    config = save_budget_config(session, config, user_id)
    record_budget_change(session, category_scope(category_id), payload.amount, user_id)
    run_budget_check(session, evaluator, clock.now(), user_id)
    return config_to_read(config)


@app.post("/api/budgets/auto-allocate", response_model=BudgetConfigRead)
def auto_allocate_budgets(
    session: Session = Depends(get_session),
    registry: CategoryRegistry = Depends(get_registry),
    clock=Depends(get_clock),
    current_user: User = Depends(get_current_user),
):
    """Split the monthly budget over expense categories by recent spending."""
    user_id = current_user.id
    config = load_budget_config(session, user_id)
    if config.monthly <= 0:
        raise HTTPException(status_code=400, detail="Monthly budget is not set")

    transactions = SQLTransactionStore(session, user_id).get_all()
    config.categories.update(
        allocate_category_budgets(config.monthly, transactions, registry, clock.now())
    )
    return config_to_read(save_budget_config(session, config, user_id))


@app.delete("/api/budgets", response_model=BudgetConfigRead)
def reset_budgets(
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    """Clear the monthly and category budgets (alert settings are kept)."""
    config = load_budget_config(session, current_user.id)
    config.monthly = 0
    config.categories = {}
    return config_to_read(save_budget_config(session, config, current_user.id))


@app.get("/api/budgets/report")
def get_budget_report(
    session: Session = Depends(get_session),
    registry: CategoryRegistry = Depends(get_registry),
    clock=Depends(get_clock),
    current_user: User = Depends(get_current_user),
):
    config = load_budget_config(session, current_user.id)
    transactions = SQLTransactionStore(session, current_user.id).get_all()
    return budget_report(transactions, config, registry, clock.now())


@app.post("/api/budgets/check", response_model=list[BudgetAlertRead])
def check_budgets(
    session: Session = Depends(get_session),
    clock=Depends(get_clock),
    evaluator: BudgetEvaluator = Depends(get_budget_evaluator),
    current_user: User = Depends(get_current_user),
):
    """Run a budget check now; returns the alerts that fired."""
    alerts = run_budget_check(session, evaluator, clock.now(), current_user.id)
    return [a.to_dict() for a in alerts]


@app.get("/api/budgets/alerts", response_model=list[BudgetAlertRead])
def list_budget_alerts(
    evaluator: BudgetEvaluator = Depends(get_budget_evaluator),
    current_user: User = Depends(get_current_user),
):
    """Recently fired alerts, newest first."""
    return [a.to_dict() for a in reversed(evaluator.recent_alerts(current_user.id))]


@app.get("/api/budgets/history", response_model=list[BudgetChangeRead])
def list_budget_history(
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    return budget_history(session, current_user.id)
