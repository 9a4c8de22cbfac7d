import asyncio
import logging
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, WebSocket, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.websockets import WebSocketDisconnect

from alerts import QueueChannel, get_alert_publisher
from config import get_settings
from csv_utils import export_report
from database import SessionLocal
from identity import owner_from_token
from models import Report
from money import from_cents
from periods import current_month_key
from scheduler import SchedulerManager
from schemas import (
    BudgetIn,
    BudgetStatusOut,
    ExpenseCreatedOut,
    ExpenseIn,
    ExpenseOut,
    ReportGenerateIn,
    ReportGeneratedOut,
    ReportLineOut,
    ReportOut,
)
from services import (
    BudgetService,
    ExpenseService,
    NotFoundError,
    ReportService,
)


logger = logging.getLogger(__name__)

app = FastAPI(title="SpendGuard")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def current_user_id(request: Request) -> int:
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        return owner_from_token(token.strip())
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    if get_settings().scheduler_enabled:
        scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400, content={"detail": jsonable_encoder(exc.errors())}
    )


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    logger.exception(f"request_failed: path={request.url.path}", exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"detail": "The change could not be saved, please resubmit"},
    )


def report_out(report: Report) -> ReportOut:
    return ReportOut(
        id=report.id,
        year=report.year,
        month=report.month,
        total_budgeted=from_cents(report.total_budgeted_cents),
        total_spent=from_cents(report.total_spent_cents),
        total_overspent=from_cents(report.total_overspent_cents),
        categories=[
            ReportLineOut(
                category=line.category,
                budgeted=from_cents(line.budgeted_cents),
                spent=from_cents(line.spent_cents),
                overspent=from_cents(line.overspent_cents),
            )
            for line in report.lines
        ],
        generated_at=report.generated_at,
    )


@app.get("/api/health")
def health():
    return {"ok": True}


@app.get("/api/expenses", response_model=list[ExpenseOut])
def list_expenses(
    db: Session = Depends(get_db), user_id: int = Depends(current_user_id)
):
    return [
        ExpenseOut(
            id=expense.id,
            amount=from_cents(expense.amount_cents),
            date=expense.date,
            category=expense.category,
            vendor=expense.vendor,
            note=expense.note,
        )
        for expense in ExpenseService(db, user_id).recent()
    ]


@app.post("/api/expenses", response_model=ExpenseCreatedOut, status_code=201)
def create_expense(
    data: ExpenseIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    created = ExpenseService(db, user_id).create(data)
    return ExpenseCreatedOut(
        id=created.expense.id,
        alerts=[alert.to_schema() for alert in created.alerts],
    )


@app.delete("/api/expenses/{expense_id}")
def delete_expense(
    expense_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        ExpenseService(db, user_id).delete(expense_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"ok": True}


@app.get("/api/budgets", response_model=list[BudgetStatusOut])
def list_budgets(
    db: Session = Depends(get_db), user_id: int = Depends(current_user_id)
):
    return [
        BudgetStatusOut(
            category=row.category,
            budget_amount=from_cents(row.budget_cents),
            spent=from_cents(row.spent_cents),
            remaining=from_cents(row.remaining_cents),
            percentage=row.percentage,
            status=row.status,
        )
        for row in BudgetService(db, user_id).list_status()
    ]


@app.post("/api/budgets")
def upsert_budget(
    data: BudgetIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    BudgetService(db, user_id).upsert(data)
    return {"ok": True}


@app.delete("/api/budgets/{category}")
def delete_budget(
    category: str,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        BudgetService(db, user_id).delete(category)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"ok": True}


@app.post("/api/reports/generate")
def generate_report(
    data: Optional[ReportGenerateIn] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    month_key = (data.month if data else None) or current_month_key()
    try:
        report = ReportService(db, user_id).generate(month_key)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if report is None:
        return {"message": "No data to report"}
    return ReportGeneratedOut(generated_at=report.generated_at).model_dump(mode="json")


@app.get("/api/reports", response_model=list[ReportOut])
def list_reports(
    limit: int = Query(12, ge=1, le=100),
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    return [report_out(r) for r in ReportService(db, user_id).list_recent(limit)]


@app.get("/api/reports/{report_id}/export.csv")
def export_report_csv(
    report_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    service = ReportService(db, user_id)
    try:
        report = service.get(report_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    filename = f"report-{report.month_key}-{report.id}.csv"
    return Response(
        content=export_report(report),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.websocket("/ws/alerts")
async def alerts_socket(websocket: WebSocket, token: str = ""):
    try:
        user_id = owner_from_token(token)
    except ValueError:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    registry = get_alert_publisher().registry
    channel = QueueChannel(asyncio.get_running_loop())
    # Registered before accept so events published right after connect are kept.
    registry.register(user_id, channel)
    try:
        await websocket.accept()

        async def forward() -> None:
            while True:
                await websocket.send_json(await channel.receive())

        async def watch_disconnect() -> None:
            while True:
                await websocket.receive_text()

        tasks = [
            asyncio.create_task(forward()),
            asyncio.create_task(watch_disconnect()),
        ]
        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                task.cancel()
            results = await asyncio.gather(*tasks, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception) and not isinstance(
                    result, WebSocketDisconnect
                ):
                    logger.warning(
                        f"alert_socket_error: user_id={user_id} error={result!r}"
                    )
    finally:
        registry.unregister(user_id, channel)


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
