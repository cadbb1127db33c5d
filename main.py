import logging
import math
from datetime import date, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Optional
from urllib.parse import urlencode

from fastapi import (
    Depends,
    FastAPI,
    File,
    Form,
    Header,
    HTTPException,
    Request,
    UploadFile,
)
from fastapi.responses import (
    FileResponse,
    HTMLResponse,
    JSONResponse,
    PlainTextResponse,
    RedirectResponse,
    Response,
    StreamingResponse,
)
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from auth import (
    ACCESS_TOKEN_MAX_AGE_SECS,
    SESSION_COOKIE,
    NotAuthenticated,
    bearer_token,
    user_id_from_token,
)
from csrf import generate_csrf_token, validate_csrf_token
from csv_utils import export_report, parse_amount, parse_quantity
from database import get_db
from ocr import ReceiptOCRService, ReceiptStorage, build_prefill
from periods import Period, PeriodKind, resolve_period
from reports import ReportComposer, ReportGenerationError, report_payload
from scheduler import SchedulerManager
from schemas import (
    BackupOut,
    BatchItemIn,
    BudgetIn,
    CategoryIn,
    ExpenseBatchIn,
    ExpenseIn,
    FamilyIn,
    FavoriteIn,
    FundIn,
    ReceiptPrefill,
    TagIn,
    UnitIn,
)
from services import (
    AppContext,
    BackupService,
    BudgetService,
    CategoryService,
    DashboardService,
    EntryFilters,
    ExpenseService,
    FamilyService,
    FavoriteService,
    FundService,
    NotFoundError,
    PermissionDenied,
    SettingsService,
    TagService,
    UnitService,
    build_context,
    local_today,
    timeline,
)

if TYPE_CHECKING:  # pragma: no cover
    from weasyprint import HTML, CSS  # noqa: F401
    from weasyprint.text.fonts import FontConfiguration  # noqa: F401

BASE_DIR = Path(__file__).resolve().parent
DEFAULT_PERIOD_KEY = "default_report_period"

app = FastAPI(title="Daily Boarding Manager")
app.mount("/static", StaticFiles(directory=BASE_DIR / "static"), name="static")
templates = Jinja2Templates(directory=BASE_DIR / "templates")


def _load_app_version() -> str:
    try:
        import tomllib
    except Exception:
        return "unknown"
    try:
        with open(BASE_DIR / "pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except Exception:
        return "unknown"


APP_VERSION = _load_app_version()


def format_currency(cents: int, options: Optional[dict] = None) -> str:
    include_cents = True
    if isinstance(options, dict):
        include_cents = options.get("include_cents", True)
    sign = "-" if cents < 0 else ""
    if include_cents:
        return f"{sign}৳{abs(cents) / 100:,.2f}"
    return f"{sign}৳{abs(cents) / 100:,.0f}"


templates.env.filters["currency"] = format_currency
templates.env.globals["math"] = math
templates.env.globals["csrf_token"] = generate_csrf_token
templates.env.globals["APP_VERSION"] = APP_VERSION


def static_path(path: str) -> str:
    return app.url_path_for("static", path=path)


templates.env.globals["static_path"] = static_path

scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.exception_handler(NotAuthenticated)
async def not_authenticated_handler(request: Request, exc: NotAuthenticated):
    if request.url.path.startswith("/api/"):
        return JSONResponse(
            {"error": str(exc)},
            status_code=401,
            headers={"WWW-Authenticate": "Bearer"},
        )
    return RedirectResponse(url="/signin", status_code=303)


@app.exception_handler(SQLAlchemyError)
async def store_error_handler(request: Request, exc: SQLAlchemyError):
    logging.error(
        f"store_error: path={request.url.path} error={exc.__class__.__name__}",
        exc_info=exc,
    )
    message = "The database is unavailable right now. Please try again."
    if request.url.path.startswith("/api/"):
        return JSONResponse({"error": message}, status_code=503)
    return PlainTextResponse(message, status_code=503)


@app.exception_handler(ReportGenerationError)
async def report_error_handler(request: Request, exc: ReportGenerationError):
    return JSONResponse({"error": str(exc)}, status_code=503)


def http_error(exc: ValueError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, PermissionDenied):
        return HTTPException(status_code=403, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def get_context(request: Request, db: Session = Depends(get_db)) -> AppContext:
    token = request.cookies.get(SESSION_COOKIE) or bearer_token(
        request.headers.get("Authorization")
    )
    return build_context(db, user_id_from_token(token))


def get_api_context(
    authorization: Optional[str] = Header(None), db: Session = Depends(get_db)
) -> AppContext:
    return build_context(db, user_id_from_token(bearer_token(authorization)))


def period_from_request(request: Request, default: str = "daily") -> Period:
    period_slug = request.query_params.get("period") or default
    start = request.query_params.get("start")
    end = request.query_params.get("end")
    try:
        return resolve_period(period_slug, start, end, today=local_today())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _optional_int(value) -> Optional[int]:
    if value is None or str(value).strip() in {"", "all"}:
        return None
    return int(str(value).strip())


def filters_from_request(request: Request) -> EntryFilters:
    try:
        category_id = _optional_int(request.query_params.get("category"))
        tag_id = _optional_int(request.query_params.get("tag"))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid filter value") from exc
    query = (request.query_params.get("q") or "").strip() or None
    return EntryFilters(category_id=category_id, tag_id=tag_id, query=query)


def render(
    request: Request, template: str, ctx: AppContext, context: dict[str, object]
) -> HTMLResponse:
    data: dict[str, object] = {"request": request, "ctx": ctx}
    data.update(context)
    return templates.TemplateResponse(template, data)


async def checked_form(request: Request, ctx: AppContext):
    form = await request.form()
    if not validate_csrf_token(form.get("csrf_token", ""), ctx.user_id):
        raise HTTPException(status_code=400, detail="Invalid CSRF token")
    return form


def done(request: Request, url: str, trigger: str) -> Response:
    headers = {"HX-Trigger": trigger}
    if request.headers.get("HX-Request"):
        return Response(status_code=204, headers=headers)
    return RedirectResponse(url=url, status_code=303, headers=headers)


def _tags_from_form(value) -> list[str]:
    return [t.strip() for t in str(value or "").split(",") if t.strip()]


def _receipt_path(form, user_id: int) -> Optional[str]:
    path = (form.get("receipt_path") or "").strip()
    if not path:
        return None
    if not path.startswith(f"{user_id}/") or ".." in path.split("/"):
        raise ValueError("Receipt does not belong to you")
    return path


def expense_payload_from_form(form, user_id: int) -> ExpenseIn:
    return ExpenseIn(
        expense_date=date.fromisoformat(form["expense_date"]),
        item_name=form["item_name"],
        category_id=_optional_int(form.get("category_id")),
        unit_id=_optional_int(form.get("unit_id")),
        quantity=parse_quantity(form.get("quantity")),
        total_cents=parse_amount(form["amount"]),
        notes=(form.get("notes") or "").strip() or None,
        receipt_image_url=_receipt_path(form, user_id),
        tags=_tags_from_form(form.get("tags")),
    )


def batch_payload_from_form(form, user_id: int) -> ExpenseBatchIn:
    names = form.getlist("item_name")
    quantities = form.getlist("quantity")
    amounts = form.getlist("amount")
    category_ids = form.getlist("category_id")
    unit_ids = form.getlist("unit_id")
    items: list[BatchItemIn] = []
    for idx, name in enumerate(names):
        amount = amounts[idx] if idx < len(amounts) else ""
        if not str(name).strip() and not str(amount).strip():
            continue
        items.append(
            BatchItemIn(
                item_name=str(name).strip(),
                quantity=parse_quantity(quantities[idx] if idx < len(quantities) else None),
                total_cents=parse_amount(str(amount)),
                category_id=_optional_int(
                    category_ids[idx] if idx < len(category_ids) else None
                ),
                unit_id=_optional_int(unit_ids[idx] if idx < len(unit_ids) else None),
            )
        )
    return ExpenseBatchIn(
        expense_date=date.fromisoformat(form["expense_date"]),
        items=items,
        notes=(form.get("notes") or "").strip() or None,
        receipt_image_url=_receipt_path(form, user_id),
    )


def fund_payload_from_form(form) -> FundIn:
    return FundIn(
        fund_date=date.fromisoformat(form["fund_date"]),
        amount_cents=parse_amount(form["amount"]),
        source_note=form.get("source_note"),
    )


# Sign-in


@app.get("/signin", response_class=HTMLResponse)
def signin_page(request: Request):
    return templates.TemplateResponse(
        "signin.html", {"request": request, "ctx": None, "error": None}
    )


@app.post("/signin")
def signin(request: Request, token: str = Form(...)):
    try:
        user_id = user_id_from_token(token.strip())
    except NotAuthenticated as exc:
        return templates.TemplateResponse(
            "signin.html",
            {"request": request, "ctx": None, "error": str(exc)},
            status_code=401,
        )
    logging.info(f"signin: user={user_id}")
    response = RedirectResponse(url="/", status_code=303)
    response.set_cookie(
        SESSION_COOKIE,
        token.strip(),
        max_age=ACCESS_TOKEN_MAX_AGE_SECS,
        httponly=True,
        samesite="lax",
    )
    return response


@app.post("/signout")
def signout():
    response = RedirectResponse(url="/signin", status_code=303)
    response.delete_cookie(SESSION_COOKIE)
    return response


# Pages


@app.get("/", response_class=HTMLResponse)
def dashboard(
    request: Request,
    ctx: AppContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    summary = DashboardService(db, ctx.user_id, ctx.visible_user_ids).summary()
    expenses = ExpenseService(db, ctx.user_id, ctx.visible_user_ids).recent(10)
    funds = FundService(db, ctx.user_id, ctx.visible_user_ids).recent(5)
    budgets = BudgetService(db, ctx.user_id).progress()
    return render(
        request,
        "dashboard.html",
        ctx,
        {
            "summary": summary,
            "entries": timeline(expenses, funds)[:10],
            "budgets": budgets,
            "favorites": FavoriteService(db, ctx.user_id).list_all(),
        },
    )


@app.get("/transactions", response_class=HTMLResponse)
def transactions_page(
    request: Request,
    ctx: AppContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    period = period_from_request(request, default="monthly")
    filters = filters_from_request(request)
    try:
        page = max(int(request.query_params.get("page", "1") or 1), 1)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid page number") from exc
    limit = 50
    offset = (page - 1) * limit
    expenses = ExpenseService(db, ctx.user_id, ctx.visible_user_ids).list(
        period, filters, limit=limit + 1, offset=offset
    )
    has_more = len(expenses) > limit
    expenses = expenses[:limit]
    # Funds carry no category or tags; hide them when those filters are set.
    funds = []
    if page == 1 and not (filters.category_id or filters.tag_id or filters.query):
        funds = FundService(db, ctx.user_id, ctx.visible_user_ids).all_for_period(
            period
        )

    filter_params: dict[str, str] = {}
    if filters.category_id:
        filter_params["category"] = str(filters.category_id)
    if filters.tag_id:
        filter_params["tag"] = str(filters.tag_id)
    if filters.query:
        filter_params["q"] = filters.query
    return render(
        request,
        "transactions.html",
        ctx,
        {
            "period": period,
            "entries": timeline(expenses, funds),
            "categories": CategoryService(db, ctx.user_id).list_all(),
            "tags": TagService(db, ctx.user_id).list_all(),
            "filters": filters,
            "page": page,
            "has_more": has_more,
            "period_query": f"period={period.slug}&start={period.start}&end={period.end}",
            "filter_query": urlencode(filter_params),
        },
    )


def _form_page(
    request: Request,
    ctx: AppContext,
    db: Session,
    prefill: Optional[ReceiptPrefill] = None,
    receipt_path: Optional[str] = None,
    scan_error: Optional[str] = None,
) -> HTMLResponse:
    return render(
        request,
        "expense_form.html",
        ctx,
        {
            "today": local_today(),
            "categories": CategoryService(db, ctx.user_id).list_all(),
            "units": UnitService(db, ctx.user_id).list_all(),
            "favorites": FavoriteService(db, ctx.user_id).list_all(),
            "prefill": prefill,
            "receipt_path": receipt_path,
            "scan_error": scan_error,
        },
    )


@app.get("/expenses/new", response_class=HTMLResponse)
def new_expense_page(
    request: Request,
    ctx: AppContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    return _form_page(request, ctx, db)


@app.post("/expenses")
async def create_expense(
    request: Request,
    ctx: AppContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    form = await checked_form(request, ctx)
    try:
        ctx.require_can_add()
        data = expense_payload_from_form(form, ctx.user_id)
        ExpenseService(db, ctx.user_id, ctx.visible_user_ids).create(data)
    except (KeyError, ValidationError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ValueError as exc:
        raise http_error(exc) from exc
    return done(request, "/transactions", "transactions-changed")


@app.post("/expenses/batch")
async def create_expense_batch(
    request: Request,
    ctx: AppContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    form = await checked_form(request, ctx)
    try:
        ctx.require_can_add()
        data = batch_payload_from_form(form, ctx.user_id)
        ExpenseService(db, ctx.user_id, ctx.visible_user_ids).create_batch(data)
    except (KeyError, ValidationError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ValueError as exc:
        raise http_error(exc) from exc
    return done(request, "/transactions", "transactions-changed")


@app.post("/expenses/from-favorite/{favorite_id}")
async def quick_add_favorite(
    favorite_id: int,
    request: Request,
    ctx: AppContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    form = await checked_form(request, ctx)
    try:
        ctx.require_can_add()
        favorite = FavoriteService(db, ctx.user_id).get(favorite_id)
        data = ExpenseIn(
            expense_date=local_today(),
            item_name=favorite.item_name,
            category_id=favorite.category_id,
            unit_id=favorite.default_unit_id,
            quantity=favorite.default_quantity,
            total_cents=parse_amount(form["amount"]),
        )
        ExpenseService(db, ctx.user_id, ctx.visible_user_ids).create(data)
    except (KeyError, ValidationError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ValueError as exc:
        raise http_error(exc) from exc
    return done(request, "/", "transactions-changed")


@app.get("/expenses/{expense_id}/edit", response_class=HTMLResponse)
def edit_expense_page(
    expense_id: int,
    request: Request,
    ctx: AppContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    try:
        ctx.require_edit_mode()
        expense = ExpenseService(db, ctx.user_id, ctx.visible_user_ids).get(expense_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return render(
        request,
        "expense_edit.html",
        ctx,
        {
            "expense": expense,
            "categories": CategoryService(db, ctx.user_id).list_all(),
            "units": UnitService(db, ctx.user_id).list_all(),
        },
    )


@app.post("/expenses/{expense_id}/edit")
async def edit_expense_submit(
    expense_id: int,
    request: Request,
    ctx: AppContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    form = await checked_form(request, ctx)
    try:
        ctx.require_edit_mode()
        data = expense_payload_from_form(form, ctx.user_id)
        ExpenseService(db, ctx.user_id, ctx.visible_user_ids).update(expense_id, data)
    except (KeyError, ValidationError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ValueError as exc:
        raise http_error(exc) from exc
    return done(request, "/transactions", "transactions-changed")


@app.post("/expenses/{expense_id}/delete")
async def delete_expense(
    expense_id: int,
    request: Request,
    ctx: AppContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    await checked_form(request, ctx)
    try:
        ctx.require_edit_mode()
        ExpenseService(db, ctx.user_id, ctx.visible_user_ids).delete(expense_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return done(request, "/transactions", "transactions-changed")


@app.post("/batches/{batch_id}/delete")
async def delete_batch(
    batch_id: str,
    request: Request,
    ctx: AppContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    await checked_form(request, ctx)
    try:
        ctx.require_edit_mode()
        ExpenseService(db, ctx.user_id, ctx.visible_user_ids).delete_batch(batch_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return done(request, "/transactions", "transactions-changed")


@app.post("/funds")
async def create_fund(
    request: Request,
    ctx: AppContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    form = await checked_form(request, ctx)
    try:
        ctx.require_can_add()
        data = fund_payload_from_form(form)
        FundService(db, ctx.user_id, ctx.visible_user_ids).create(data)
    except (KeyError, ValidationError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ValueError as exc:
        raise http_error(exc) from exc
    return done(request, "/", "transactions-changed")


@app.get("/funds/{fund_id}/edit", response_class=HTMLResponse)
def edit_fund_page(
    fund_id: int,
    request: Request,
    ctx: AppContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    try:
        ctx.require_edit_mode()
        fund = FundService(db, ctx.user_id, ctx.visible_user_ids).get(fund_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return render(request, "fund_edit.html", ctx, {"fund": fund})


@app.post("/funds/{fund_id}/edit")
async def edit_fund_submit(
    fund_id: int,
    request: Request,
    ctx: AppContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    form = await checked_form(request, ctx)
    try:
        ctx.require_edit_mode()
        data = fund_payload_from_form(form)
        FundService(db, ctx.user_id, ctx.visible_user_ids).update(fund_id, data)
    except (KeyError, ValidationError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ValueError as exc:
        raise http_error(exc) from exc
    return done(request, "/transactions", "transactions-changed")


@app.post("/funds/{fund_id}/delete")
async def delete_fund(
    fund_id: int,
    request: Request,
    ctx: AppContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    await checked_form(request, ctx)
    try:
        ctx.require_edit_mode()
        FundService(db, ctx.user_id, ctx.visible_user_ids).delete(fund_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return done(request, "/transactions", "transactions-changed")


# Receipts


@app.post("/receipts/scan", response_class=HTMLResponse)
async def scan_receipt_page(
    request: Request,
    receipt: UploadFile = File(...),
    csrf_token: str = Form(...),
    ctx: AppContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    if not validate_csrf_token(csrf_token, ctx.user_id):
        raise HTTPException(status_code=400, detail="Invalid CSRF token")
    storage = ReceiptStorage()
    try:
        relative = storage.save(ctx.user_id, await receipt.read(), receipt.content_type)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    result = ReceiptOCRService().scan(storage.signed_url(relative))
    if not result.success:
        return _form_page(
            request, ctx, db, receipt_path=relative, scan_error=result.error
        )
    prefill = build_prefill(result.data, FavoriteService(db, ctx.user_id))
    return _form_page(request, ctx, db, prefill=prefill, receipt_path=relative)


@app.get("/receipts", response_class=HTMLResponse)
def receipts_page(
    request: Request,
    ctx: AppContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    query = (request.query_params.get("q") or "").strip()
    expenses = ExpenseService(db, ctx.user_id, ctx.visible_user_ids).with_receipts(
        query or None
    )
    storage = ReceiptStorage()
    return render(
        request,
        "receipts.html",
        ctx,
        {
            "receipts": [
                (expense, storage.signed_url(expense.receipt_image_url))
                for expense in expenses
            ],
            "query": query,
        },
    )


@app.get("/receipts/signed/{token}")
def signed_receipt(token: str):
    try:
        path = ReceiptStorage().open_signed(token)
    except FileNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Receipt not found") from exc
    except ValueError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    return FileResponse(path)


@app.get("/receipts/view/{expense_id}")
def view_receipt(
    expense_id: int,
    ctx: AppContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    try:
        expense = ExpenseService(db, ctx.user_id, ctx.visible_user_ids).get(expense_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    if not expense.receipt_image_url:
        raise HTTPException(status_code=404, detail="No receipt attached")
    return RedirectResponse(
        url=ReceiptStorage().signed_url(expense.receipt_image_url), status_code=303
    )


# Categories, units, tags


@app.get("/categories", response_class=HTMLResponse)
def categories_page(
    request: Request,
    ctx: AppContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    return render(
        request,
        "categories.html",
        ctx,
        {
            "categories": CategoryService(db, ctx.user_id).list_all(),
            "units": UnitService(db, ctx.user_id).list_all(),
            "tags": TagService(db, ctx.user_id).list_all(),
        },
    )


@app.post("/categories")
async def create_category(
    request: Request,
    ctx: AppContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    form = await checked_form(request, ctx)
    try:
        CategoryService(db, ctx.user_id).create(CategoryIn(name=form["name"]))
    except (KeyError, ValidationError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ValueError as exc:
        raise http_error(exc) from exc
    return done(request, "/categories", "categories-updated")


@app.post("/categories/{category_id}/rename")
async def rename_category(
    category_id: int,
    request: Request,
    ctx: AppContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    form = await checked_form(request, ctx)
    try:
        ctx.require_edit_mode()
        CategoryService(db, ctx.user_id).rename(category_id, form.get("name", ""))
    except ValueError as exc:
        raise http_error(exc) from exc
    return done(request, "/categories", "categories-updated")


@app.post("/categories/{category_id}/delete")
async def delete_category(
    category_id: int,
    request: Request,
    ctx: AppContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    await checked_form(request, ctx)
    try:
        ctx.require_edit_mode()
        CategoryService(db, ctx.user_id).delete(category_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return done(request, "/categories", "categories-updated")


@app.post("/units")
async def create_unit(
    request: Request,
    ctx: AppContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    form = await checked_form(request, ctx)
    try:
        UnitService(db, ctx.user_id).create(UnitIn(name=form["name"]))
    except (KeyError, ValidationError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ValueError as exc:
        raise http_error(exc) from exc
    return done(request, "/categories", "categories-updated")


@app.post("/units/{unit_id}/delete")
async def delete_unit(
    unit_id: int,
    request: Request,
    ctx: AppContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    await checked_form(request, ctx)
    try:
        ctx.require_edit_mode()
        UnitService(db, ctx.user_id).delete(unit_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return done(request, "/categories", "categories-updated")


@app.post("/tags")
async def create_tag(
    request: Request,
    ctx: AppContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    form = await checked_form(request, ctx)
    try:
        data = TagIn(name=form["name"], color=(form.get("color") or None))
        TagService(db, ctx.user_id).create(data)
    except (KeyError, ValidationError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ValueError as exc:
        raise http_error(exc) from exc
    return done(request, "/categories", "tags-updated")


@app.post("/tags/{tag_id}/delete")
async def delete_tag(
    tag_id: int,
    request: Request,
    ctx: AppContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    await checked_form(request, ctx)
    try:
        ctx.require_edit_mode()
        TagService(db, ctx.user_id).delete(tag_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return done(request, "/categories", "tags-updated")


# Favorites


def favorite_payload_from_form(form) -> FavoriteIn:
    return FavoriteIn(
        item_name=form["item_name"],
        category_id=_optional_int(form.get("category_id")),
        default_unit_id=_optional_int(form.get("default_unit_id")),
        default_quantity=parse_quantity(form.get("default_quantity")),
        display_order=int(form.get("display_order") or 0),
    )


@app.get("/favorites", response_class=HTMLResponse)
def favorites_page(
    request: Request,
    ctx: AppContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    return render(
        request,
        "favorites.html",
        ctx,
        {
            "favorites": FavoriteService(db, ctx.user_id).list_all(),
            "categories": CategoryService(db, ctx.user_id).list_all(),
            "units": UnitService(db, ctx.user_id).list_all(),
        },
    )


@app.post("/favorites")
async def create_favorite(
    request: Request,
    ctx: AppContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    form = await checked_form(request, ctx)
    try:
        FavoriteService(db, ctx.user_id).create(favorite_payload_from_form(form))
    except (KeyError, ValidationError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ValueError as exc:
        raise http_error(exc) from exc
    return done(request, "/favorites", "favorites-updated")


@app.post("/favorites/{favorite_id}")
async def update_favorite(
    favorite_id: int,
    request: Request,
    ctx: AppContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    form = await checked_form(request, ctx)
    try:
        ctx.require_edit_mode()
        FavoriteService(db, ctx.user_id).update(
            favorite_id, favorite_payload_from_form(form)
        )
    except (KeyError, ValidationError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ValueError as exc:
        raise http_error(exc) from exc
    return done(request, "/favorites", "favorites-updated")


@app.post("/favorites/{favorite_id}/delete")
async def delete_favorite(
    favorite_id: int,
    request: Request,
    ctx: AppContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    await checked_form(request, ctx)
    try:
        ctx.require_edit_mode()
        FavoriteService(db, ctx.user_id).delete(favorite_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return done(request, "/favorites", "favorites-updated")


# Budgets


@app.get("/budgets", response_class=HTMLResponse)
def budgets_page(
    request: Request,
    ctx: AppContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    svc = BudgetService(db, ctx.user_id)
    return render(
        request,
        "budgets.html",
        ctx,
        {
            "today": local_today(),
            "progress": svc.progress(),
            "categories": CategoryService(db, ctx.user_id).list_all(),
        },
    )


@app.post("/budgets")
async def upsert_budget(
    request: Request,
    ctx: AppContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    form = await checked_form(request, ctx)
    try:
        data = BudgetIn(
            category_id=int(form["category_id"]),
            monthly_limit_cents=parse_amount(str(form.get("amount") or "0")),
        )
    except (KeyError, ValueError, ValidationError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    try:
        BudgetService(db, ctx.user_id).upsert(data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return RedirectResponse(url="/budgets", status_code=303)


@app.post("/budgets/{budget_id}/delete")
async def delete_budget(
    budget_id: int,
    request: Request,
    ctx: AppContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    await checked_form(request, ctx)
    try:
        ctx.require_edit_mode()
        BudgetService(db, ctx.user_id).delete(budget_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return RedirectResponse(url="/budgets", status_code=303)


# Reports


@app.get("/reports", response_class=HTMLResponse)
def reports_page(
    request: Request,
    ctx: AppContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    composer = ReportComposer(db, ctx.user_id, ctx.visible_user_ids)
    error = None
    if request.query_params.get("period"):
        period = period_from_request(request)
        try:
            composer.generate(
                period.slug,
                period.start,
                period.end,
                filters=filters_from_request(request),
            )
        except ReportGenerationError as exc:
            error = str(exc)
    default_period = SettingsService(db, ctx.user_id).get(DEFAULT_PERIOD_KEY, "daily")
    return render(
        request,
        "reports.html",
        ctx,
        {
            "report": composer.current,
            "error": error,
            "today": local_today(),
            "default_period": default_period,
            "categories": CategoryService(db, ctx.user_id).list_all(),
        },
    )


@app.get("/reports/export.csv")
def export_report_csv(
    request: Request,
    ctx: AppContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    period = period_from_request(request)
    snapshot = ReportComposer(db, ctx.user_id, ctx.visible_user_ids).generate(
        period.slug, period.start, period.end, filters=filters_from_request(request)
    )
    csv_data = export_report(snapshot)
    filename = f"report-{period.slug}-{period.start}.csv"
    return StreamingResponse(
        iter([csv_data]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.post("/reports/pdf")
async def generate_pdf_report(
    request: Request,
    period: str = Form("daily"),
    start: Optional[str] = Form(None),
    end: Optional[str] = Form(None),
    category: Optional[str] = Form(None),
    csrf_token: str = Form(...),
    ctx: AppContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    if not validate_csrf_token(csrf_token, ctx.user_id):
        raise HTTPException(status_code=400, detail="Invalid CSRF token")
    try:
        resolved = resolve_period(period, start or None, end or None, today=local_today())
        filters = EntryFilters(category_id=_optional_int(category))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    try:
        from weasyprint import CSS, HTML
        from weasyprint.text.fonts import FontConfiguration
    except Exception as exc:
        raise HTTPException(
            status_code=500,
            detail="PDF export requires WeasyPrint system dependencies; install them for your OS and retry.",
        ) from exc

    snapshot = ReportComposer(db, ctx.user_id, ctx.visible_user_ids).generate(
        resolved.slug, resolved.start, resolved.end, filters=filters
    )
    try:
        font_config = FontConfiguration()
        html = templates.env.get_template("report.html").render(
            report=snapshot,
            generated_at=datetime.now(),
            app_version=APP_VERSION,
        )
        css = CSS(
            string="""
                @page {
                    size: A4;
                    margin: 18mm 16mm 20mm 16mm;
                    @bottom-center {
                        content: "Page " counter(page) " of " counter(pages);
                        font-size: 9px;
                        color: #6b7280;
                    }
                }
            """,
            font_config=font_config,
        )
        start_time = datetime.now()
        pdf_bytes = HTML(string=html, base_url=str(request.base_url)).write_pdf(
            stylesheets=[css], font_config=font_config
        )
        pdf_duration = (datetime.now() - start_time).total_seconds()
        logging.info(
            f"report_pdf_generated: period={resolved.start}to{resolved.end} "
            f"pdf_size_bytes={len(pdf_bytes)} "
            f"pdf_duration={pdf_duration:.2f}s"
        )
    except Exception as exc:
        logging.exception("Error generating PDF report")
        raise HTTPException(status_code=500, detail=str(exc)) from exc

    filename = f"boarding_report_{resolved.start}_{resolved.end}.pdf"
    return StreamingResponse(
        iter([pdf_bytes]),
        media_type="application/pdf",
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "Content-Length": str(len(pdf_bytes)),
        },
    )


# Settings and family


@app.get("/settings", response_class=HTMLResponse)
def settings_page(
    request: Request,
    ctx: AppContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    family = FamilyService(db, ctx.user_id)
    return render(
        request,
        "settings.html",
        ctx,
        {
            "family": family.family(),
            "members": family.members(),
            "default_period": SettingsService(db, ctx.user_id).get(
                DEFAULT_PERIOD_KEY, "daily"
            ),
            "period_kinds": [k.value for k in PeriodKind if k != PeriodKind.custom],
        },
    )


@app.post("/settings/edit-mode")
async def toggle_edit_mode(
    request: Request,
    ctx: AppContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    await checked_form(request, ctx)
    SettingsService(db, ctx.user_id).toggle_edit_mode()
    back = request.query_params.get("next") or "/settings"
    if not back.startswith("/") or back.startswith("//"):
        back = "/settings"
    return done(request, back, "edit-mode-changed")


@app.post("/settings/preferences")
async def save_preferences(
    request: Request,
    ctx: AppContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    form = await checked_form(request, ctx)
    try:
        kind = PeriodKind(form.get("default_period") or "daily")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if kind == PeriodKind.custom:
        raise HTTPException(status_code=400, detail="Custom cannot be the default period")
    SettingsService(db, ctx.user_id).set(DEFAULT_PERIOD_KEY, kind.value)
    return done(request, "/settings", "settings-updated")


@app.post("/family")
async def create_family(
    request: Request,
    ctx: AppContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    form = await checked_form(request, ctx)
    try:
        FamilyService(db, ctx.user_id).create(FamilyIn(name=form["name"]))
    except (KeyError, ValidationError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ValueError as exc:
        raise http_error(exc) from exc
    return done(request, "/settings", "family-updated")


@app.post("/family/join")
async def join_family(
    request: Request,
    ctx: AppContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    form = await checked_form(request, ctx)
    try:
        FamilyService(db, ctx.user_id).join(form.get("invite_code", ""))
    except ValueError as exc:
        raise http_error(exc) from exc
    return done(request, "/settings", "family-updated")


@app.post("/family/leave")
async def leave_family(
    request: Request,
    ctx: AppContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    await checked_form(request, ctx)
    try:
        FamilyService(db, ctx.user_id).leave()
    except ValueError as exc:
        raise http_error(exc) from exc
    return done(request, "/settings", "family-updated")


@app.post("/family/delete")
async def delete_family(
    request: Request,
    ctx: AppContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    await checked_form(request, ctx)
    try:
        FamilyService(db, ctx.user_id).delete()
    except ValueError as exc:
        raise http_error(exc) from exc
    return done(request, "/settings", "family-updated")


@app.post("/family/members/{member_user_id}/permission")
async def set_member_permission(
    member_user_id: int,
    request: Request,
    ctx: AppContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    form = await checked_form(request, ctx)
    try:
        FamilyService(db, ctx.user_id).set_can_add(
            member_user_id, form.get("can_add") == "on"
        )
    except ValueError as exc:
        raise http_error(exc) from exc
    return done(request, "/settings", "family-updated")


# JSON API


def _api_report(
    request: Request, ctx: AppContext, db: Session, kind: PeriodKind
) -> JSONResponse:
    filters = filters_from_request(request)
    composer = ReportComposer(db, ctx.user_id, ctx.visible_user_ids)
    try:
        snapshot = composer.generate(
            kind,
            request.query_params.get("start"),
            request.query_params.get("end"),
            filters=filters,
        )
    except ValueError as exc:
        return JSONResponse({"error": str(exc)}, status_code=400)
    return JSONResponse(report_payload(snapshot))


@app.get("/api/reports/daily")
def api_report_daily(
    request: Request,
    ctx: AppContext = Depends(get_api_context),
    db: Session = Depends(get_db),
):
    return _api_report(request, ctx, db, PeriodKind.daily)


@app.get("/api/reports/monthly")
def api_report_monthly(
    request: Request,
    ctx: AppContext = Depends(get_api_context),
    db: Session = Depends(get_db),
):
    return _api_report(request, ctx, db, PeriodKind.monthly)


@app.get("/api/reports/custom")
def api_report_custom(
    request: Request,
    ctx: AppContext = Depends(get_api_context),
    db: Session = Depends(get_db),
):
    return _api_report(request, ctx, db, PeriodKind.custom)


@app.get("/api/reports/last")
def api_report_last(
    ctx: AppContext = Depends(get_api_context),
    db: Session = Depends(get_db),
):
    current = ReportComposer(db, ctx.user_id, ctx.visible_user_ids).current
    if current is None:
        return JSONResponse({"error": "No report generated yet"}, status_code=404)
    return JSONResponse(report_payload(current))


@app.post("/api/ocr")
async def api_ocr(request: Request, ctx: AppContext = Depends(get_api_context)):
    try:
        body = await request.json()
    except ValueError:
        body = None
    image_url = body.get("imageUrl") if isinstance(body, dict) else None
    if not isinstance(image_url, str) or not image_url.strip():
        return JSONResponse(
            {"success": False, "error": "Image URL is required"}, status_code=400
        )

    result = ReceiptOCRService().scan(image_url)
    if not result.success:
        status = {"rate_limited": 429, "payment_required": 402}.get(
            result.error_kind or "", 500
        )
        return JSONResponse(
            {"success": False, "error": result.error}, status_code=status
        )
    return JSONResponse(
        {
            "success": True,
            "data": result.data.model_dump(by_alias=True, exclude_none=True),
        }
    )


@app.post("/api/receipts")
async def api_upload_receipt(
    receipt: UploadFile = File(...),
    ctx: AppContext = Depends(get_api_context),
):
    storage = ReceiptStorage()
    try:
        relative = storage.save(ctx.user_id, await receipt.read(), receipt.content_type)
    except ValueError as exc:
        return JSONResponse({"error": str(exc)}, status_code=400)
    return {"path": relative, "signed_url": storage.signed_url(relative)}


@app.get("/api/backup")
def api_backup(
    ctx: AppContext = Depends(get_api_context),
    db: Session = Depends(get_db),
):
    backup = BackupOut.model_validate(BackupService(db, ctx.user_id).export())
    return JSONResponse(backup.model_dump(mode="json"))


@app.post("/api/settings/edit-mode")
def api_set_edit_mode(
    enabled: bool,
    ctx: AppContext = Depends(get_api_context),
    db: Session = Depends(get_db),
):
    return {"edit_mode": SettingsService(db, ctx.user_id).set_edit_mode(enabled)}


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
