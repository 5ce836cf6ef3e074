import logging
import time
import uuid
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Optional

from fastapi import Depends, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import (
    FileResponse,
    JSONResponse,
    PlainTextResponse,
    RedirectResponse,
    Response,
    StreamingResponse,
)
from sqlalchemy.orm import Session

from auth import (
    AccessDenied,
    AuthService,
    RequestContext,
    end_session,
    require_admin,
    require_user,
    start_session,
)
from config import get_settings
from csv_utils import export_expenses
from database import Base, engine, get_db, session_scope
from excel_import import ExcelImportService, resolve_upload_path
from schemas import (
    CategoryBreakdownOut,
    CategoryIn,
    CategoryOut,
    CategoryUpdate,
    ExpenseIn,
    ExpenseListOut,
    ExpenseOut,
    ExpenseUpdate,
    ExpenseWalletIn,
    ExpenseWalletOut,
    ExpenseWalletUpdate,
    ImportRequest,
    ImportResultOut,
    MonthlyTrendPointOut,
    TrendPointOut,
    UploadOut,
    UserIn,
    UserOut,
    UserStatusIn,
    UserUpdate,
    WalletSummaryOut,
)
from services import (
    AnalyticsService,
    CategoryService,
    ExpenseFilters,
    ExpenseService,
    NotFoundError,
    UserService,
    WalletService,
)
from sso import (
    FLOW_COOKIE,
    SignInError,
    SSOClient,
    clear_flow,
    read_flow,
    remember_flow,
)

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 1000
MAX_UPLOAD_BYTES = 25 * 1024 * 1024

app = FastAPI(title="Office Expenses")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[get_settings().frontend_url],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_api_requests(request: Request, call_next):
    if not request.url.path.startswith("/api"):
        return await call_next(request)
    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started) * 1000
    logger.info(
        f"api_request: method={request.method} path={request.url.path} "
        f"status={response.status_code} duration_ms={elapsed_ms:.0f}"
    )
    return response


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception):
    logger.exception(f"unhandled_error: method={request.method} path={request.url.path}")
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@app.on_event("startup")
def startup_event():
    Base.metadata.create_all(bind=engine)
    email = get_settings().bootstrap_admin_email
    if email:
        with session_scope() as db:
            user = UserService(db).ensure_admin(email)
            logger.info(f"bootstrap_admin: user_id={user.id}")


def _query_int(request: Request, name: str, default: Optional[int] = None) -> Optional[int]:
    raw = request.query_params.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid {name} parameter") from exc


def _query_decimal(request: Request, name: str) -> Optional[Decimal]:
    raw = request.query_params.get(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        value = Decimal(raw.strip())
    except InvalidOperation as exc:
        raise HTTPException(status_code=400, detail=f"Invalid {name} parameter") from exc
    if not value.is_finite():
        raise HTTPException(status_code=400, detail=f"Invalid {name} parameter")
    return value


def _query_date(request: Request, name: str) -> Optional[date]:
    raw = request.query_params.get(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        return date.fromisoformat(raw.strip())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid {name} parameter") from exc


def filters_from_request(request: Request) -> ExpenseFilters:
    search = request.query_params.get("search")
    return ExpenseFilters(
        search=search or None,
        category_id=_query_int(request, "categoryId"),
        start_date=_query_date(request, "startDate"),
        end_date=_query_date(request, "endDate"),
        min_amount=_query_decimal(request, "minAmount"),
        max_amount=_query_decimal(request, "maxAmount"),
    )


def _summary_out(summary) -> WalletSummaryOut:
    return WalletSummaryOut(
        wallet_amount=summary.wallet_amount,
        monthly_budget=summary.monthly_budget,
        total_expenses=summary.total_expenses,
        remaining_amount=summary.remaining_amount,
        expense_count=summary.expense_count,
        average_expense=summary.average_expense,
        percentage_used=summary.percentage_used,
        daily_average=summary.daily_average,
        projected_total=summary.projected_total,
        days_left=summary.days_left,
    )


@app.get("/health", response_class=PlainTextResponse)
def health():
    return "Healthy"


@app.get("/auth/signin")
def auth_signin(next: str = "/"):
    client = SSOClient()
    if not client.configured:
        raise HTTPException(status_code=503, detail="Sign-in is not configured")
    try:
        flow = client.begin_sign_in()
    except SignInError as exc:
        logger.warning(f"sign_in_failed: error={exc}")
        raise HTTPException(status_code=502, detail="Sign-in failed") from exc
    response = RedirectResponse(url=flow["auth_uri"], status_code=302)
    remember_flow(response, flow, next)
    return response


@app.get("/auth/redirect")
def auth_redirect(request: Request, db: Session = Depends(get_db)):
    pending = read_flow(request.cookies.get(FLOW_COOKIE))
    if pending is None:
        raise HTTPException(status_code=400, detail="Invalid sign-in response")
    flow, next_path = pending
    client = SSOClient()
    try:
        profile = client.complete_sign_in(flow, dict(request.query_params))
    except SignInError as exc:
        logger.warning(f"sign_in_failed: error={exc}")
        raise HTTPException(status_code=502, detail="Sign-in failed") from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid sign-in response") from exc
    try:
        user = AuthService(db).sign_in(profile)
    except AccessDenied as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    response = RedirectResponse(url=next_path, status_code=302)
    clear_flow(response)
    start_session(response, user)
    return response


@app.get("/auth/me", response_model=UserOut)
def auth_me(ctx: RequestContext = Depends(require_user)):
    return UserOut.model_validate(ctx.user)


@app.get("/auth/signout")
def auth_signout():
    client = SSOClient()
    target = client.logout_url() if client.configured else "/"
    response = RedirectResponse(url=target, status_code=302)
    end_session(response)
    return response


@app.get("/api/categories", response_model=list[CategoryOut])
def list_categories(
    db: Session = Depends(get_db), ctx: RequestContext = Depends(require_user)
):
    return [CategoryOut.model_validate(c) for c in CategoryService(db).list_all()]


@app.post("/api/categories", response_model=CategoryOut, status_code=201)
def create_category(
    payload: CategoryIn,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_user),
):
    try:
        category = CategoryService(db).create(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return CategoryOut.model_validate(category)


@app.put("/api/categories/{category_id}", response_model=CategoryOut)
def update_category(
    category_id: int,
    payload: CategoryUpdate,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_user),
):
    try:
        category = CategoryService(db).update(category_id, payload)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return CategoryOut.model_validate(category)


@app.delete("/api/categories/{category_id}", status_code=204)
def delete_category(
    category_id: int,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_user),
):
    try:
        CategoryService(db).soft_delete(category_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return Response(status_code=204)


@app.get("/api/expense-wallets", response_model=list[ExpenseWalletOut])
def list_wallets(
    db: Session = Depends(get_db), ctx: RequestContext = Depends(require_user)
):
    return [ExpenseWalletOut.from_model(w) for w in WalletService(db).list_all()]


@app.get("/api/current-expense-wallet", response_model=ExpenseWalletOut)
def current_wallet(
    db: Session = Depends(get_db), ctx: RequestContext = Depends(require_user)
):
    try:
        wallet = WalletService(db).current()
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return ExpenseWalletOut.from_model(wallet)


@app.post("/api/expense-wallets", response_model=ExpenseWalletOut, status_code=201)
def create_wallet(
    payload: ExpenseWalletIn,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_user),
):
    try:
        wallet = WalletService(db).create(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return ExpenseWalletOut.from_model(wallet)


@app.put("/api/expense-wallets/{wallet_id}", response_model=ExpenseWalletOut)
def update_wallet(
    wallet_id: int,
    payload: ExpenseWalletUpdate,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_user),
):
    try:
        wallet = WalletService(db).update(wallet_id, payload)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return ExpenseWalletOut.from_model(wallet)


@app.delete("/api/expense-wallets/{wallet_id}", status_code=204)
def delete_wallet(
    wallet_id: int,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_user),
):
    try:
        WalletService(db).delete(wallet_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return Response(status_code=204)


@app.get("/api/expenses", response_model=ExpenseListOut)
def list_expenses(
    request: Request,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_user),
):
    filters = filters_from_request(request)
    sort_by = request.query_params.get("sortBy", "date")
    sort_order = request.query_params.get("sortOrder", "desc")
    limit = _query_int(request, "limit", 50)
    offset = _query_int(request, "offset", 0)
    if limit < 1 or limit > MAX_PAGE_SIZE:
        raise HTTPException(
            status_code=400, detail=f"limit must be between 1 and {MAX_PAGE_SIZE}"
        )
    if offset < 0:
        raise HTTPException(status_code=400, detail="offset must not be negative")

    service = ExpenseService(db)
    expenses = service.list(filters, sort_by, sort_order, limit=limit, offset=offset)
    total_count = service.count(filters)
    return ExpenseListOut(
        expenses=[ExpenseOut.from_model(e) for e in expenses],
        total_count=total_count,
        has_more=offset + len(expenses) < total_count,
    )


@app.get("/api/expenses/{expense_id}", response_model=ExpenseOut)
def get_expense(
    expense_id: int,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_user),
):
    try:
        expense = ExpenseService(db).get(expense_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return ExpenseOut.from_model(expense)


@app.post("/api/expenses", response_model=ExpenseOut, status_code=201)
def create_expense(
    payload: ExpenseIn,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_user),
):
    service = ExpenseService(db)
    try:
        expense = service.create(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return ExpenseOut.from_model(service.get(expense.id))


@app.put("/api/expenses/{expense_id}", response_model=ExpenseOut)
def update_expense(
    expense_id: int,
    payload: ExpenseUpdate,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_user),
):
    service = ExpenseService(db)
    try:
        service.update(expense_id, payload)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return ExpenseOut.from_model(service.get(expense_id))


@app.delete("/api/expenses/{expense_id}", status_code=204)
def delete_expense(
    expense_id: int,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_user),
):
    try:
        ExpenseService(db).delete(expense_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return Response(status_code=204)


@app.post("/api/expenses/import-excel", response_model=ImportResultOut)
def import_expenses(
    payload: ImportRequest,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_user),
):
    try:
        path = resolve_upload_path(payload.file_path, get_settings().upload_dir)
        result = ExcelImportService(db).import_file(path)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return ImportResultOut(
        total=result.total,
        successful=result.successful,
        failed=result.failed,
        errors=result.errors,
    )


def _safe_filename(name: str) -> str:
    base = Path(name.replace("\\", "/")).name.strip()
    cleaned = "".join(ch if ch.isalnum() or ch in "._-" else "_" for ch in base)
    return cleaned.lstrip(".") or "upload"


@app.post("/api/uploadfile", response_model=UploadOut, status_code=201)
async def upload_file(
    file: Optional[UploadFile] = File(None),
    ctx: RequestContext = Depends(require_user),
):
    if file is None or not file.filename:
        raise HTTPException(status_code=400, detail="No file uploaded")
    content = await file.read()
    if len(content) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=400, detail="File too large (max 25MB)")
    saved_as = f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}-{_safe_filename(file.filename)}"
    target = get_settings().upload_dir / saved_as
    target.write_bytes(content)
    logger.info(f"file_uploaded: saved_as={saved_as} size={len(content)}")
    return UploadOut(
        original_name=file.filename,
        saved_as=saved_as,
        size=len(content),
        mime_type=file.content_type,
        path=f"/uploads/{saved_as}",
    )


@app.get("/uploads/{name}")
def download_upload(name: str, ctx: RequestContext = Depends(require_user)):
    root = get_settings().upload_dir.resolve()
    candidate = (root / name).resolve()
    if candidate.parent != root or not candidate.is_file():
        raise HTTPException(status_code=404, detail="File not found")
    return FileResponse(candidate)


@app.get("/api/analytics/wallet-summary", response_model=WalletSummaryOut)
def wallet_summary(
    db: Session = Depends(get_db), ctx: RequestContext = Depends(require_user)
):
    return _summary_out(AnalyticsService(db).wallet_summary())


@app.get(
    "/api/analytics/budget-summary/{month}/{year}", response_model=WalletSummaryOut
)
def budget_summary(
    month: str,
    year: str,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_user),
):
    try:
        summary = AnalyticsService(db).wallet_summary_for_month(int(month), int(year))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _summary_out(summary)


@app.get(
    "/api/analytics/category-breakdown", response_model=list[CategoryBreakdownOut]
)
def category_breakdown(
    request: Request,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_user),
):
    month = _query_int(request, "month")
    year = _query_int(request, "year")
    try:
        rows = AnalyticsService(db).category_breakdown(month, year)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return [
        CategoryBreakdownOut.from_row(
            row.category, row.total_amount, row.expense_count, row.percentage
        )
        for row in rows
    ]


@app.get("/api/analytics/expense-trends/{days}", response_model=list[TrendPointOut])
def expense_trends(
    days: str,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_user),
):
    try:
        points = AnalyticsService(db).expense_trends(int(days))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid days parameter") from exc
    return [TrendPointOut(**point) for point in points]


@app.get(
    "/api/analytics/expense-trends-monthly/{months}",
    response_model=list[MonthlyTrendPointOut],
)
def monthly_trends(
    months: str,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_user),
):
    try:
        points = AnalyticsService(db).monthly_trends(int(months))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid months parameter") from exc
    return [MonthlyTrendPointOut(**point) for point in points]


@app.get("/api/export/csv")
def export_csv(
    request: Request,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_user),
):
    filters = filters_from_request(request)
    expenses = ExpenseService(db).list(filters, "date", "desc", limit=None)
    csv_text = export_expenses(expenses)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    filename = f"expenses_{timestamp}.csv"
    return StreamingResponse(
        iter([csv_text]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/api/users", response_model=list[UserOut])
def list_users(
    db: Session = Depends(get_db), ctx: RequestContext = Depends(require_admin)
):
    return [UserOut.model_validate(u) for u in UserService(db).list_all()]


@app.post("/api/users", response_model=UserOut, status_code=201)
def create_user(
    payload: UserIn,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_admin),
):
    try:
        user = UserService(db).create(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return UserOut.model_validate(user)


@app.get("/api/users/{user_id}", response_model=UserOut)
def get_user(
    user_id: int,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_admin),
):
    try:
        user = UserService(db).get(user_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return UserOut.model_validate(user)


@app.put("/api/users/{user_id}", response_model=UserOut)
def update_user(
    user_id: int,
    payload: UserUpdate,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_admin),
):
    try:
        user = UserService(db).update(user_id, payload, acting_user_id=ctx.user.id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return UserOut.model_validate(user)


@app.patch("/api/users/{user_id}/status", response_model=UserOut)
def set_user_status(
    user_id: int,
    payload: UserStatusIn,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_admin),
):
    try:
        user = UserService(db).set_active(
            user_id, payload.is_active, acting_user_id=ctx.user.id
        )
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return UserOut.model_validate(user)


@app.delete("/api/users/{user_id}", status_code=204)
def delete_user(
    user_id: int,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_admin),
):
    try:
        UserService(db).delete(user_id, acting_user_id=ctx.user.id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return Response(status_code=204)


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
