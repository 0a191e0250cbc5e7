"""HTTP surface: the Telegram webhook plus the dashboard approval endpoints."""

import hmac
import json
import logging
import secrets
from contextlib import asynccontextmanager
from typing import Literal, Optional

import uvicorn
from fastapi import FastAPI, Header, HTTPException, Request
from pydantic import BaseModel, Field

from .telegram.approvals import (
    SURFACE_WEB,
    Actor,
    ApprovalError,
    OrderAlreadyProcessedError,
    OrderNotFoundError,
    PermissionDeniedError,
)
from .telegram.bot import ReportBot, summarize_update
from .telegram.config import load_bot_config

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

ERROR_STATUS = {
    OrderNotFoundError: 404,
    OrderAlreadyProcessedError: 409,
    PermissionDeniedError: 403,
}


class OrderStatusUpdate(BaseModel):
    status: Literal["approved", "rejected"]
    rejection_reason: Optional[str] = Field(default=None, max_length=500)
    approver_name: str = Field(default="dashboard", min_length=1, max_length=100)


class EmployeeCodeRequest(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    type: Literal["employee", "admin"] = "employee"


def _matches(expected: Optional[str], provided: Optional[str]) -> bool:
    if not expected or not provided:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


def create_app(bot: ReportBot, *, manage_lifecycle: bool = True) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manage_lifecycle:
            await bot.start()
        try:
            yield
        finally:
            if manage_lifecycle:
                await bot.stop()

    app = FastAPI(title="report_desk", lifespan=lifespan)
    app.state.bot = bot

    def require_dashboard(token: Optional[str]) -> None:
        if not _matches(bot.config.dashboard_token, token):
            raise HTTPException(status_code=401, detail="Invalid dashboard token")

    @app.get("/health")
    async def health():
        return {"ok": True}

    @app.post("/api/telegram/webhook")
    async def telegram_webhook(
        request: Request,
        secret: Optional[str] = Header(default=None, alias="X-Telegram-Bot-Api-Secret-Token"),
    ):
        if not _matches(bot.config.webhook_secret, secret):
            logger.warning("Webhook call with a bad secret from %s", request.client.host if request.client else "?")
            raise HTTPException(status_code=401, detail="Invalid secret token")

        body = await request.body()
        try:
            payload = json.loads(body)
        except (UnicodeDecodeError, ValueError):
            raise HTTPException(status_code=400, detail="Body is not valid JSON")
        try:
            processed = await bot.process_update(payload)
        except ValueError as exc:
            logger.warning("Rejected webhook payload: %s", exc)
            raise HTTPException(status_code=400, detail=str(exc))
        logger.debug("Handled %s (processed=%s)", summarize_update(payload), processed)
        return {"ok": True, "processed": processed}

    @app.patch("/api/orders/{order_id}/status")
    async def update_order_status(
        order_id: int,
        change: OrderStatusUpdate,
        token: Optional[str] = Header(default=None, alias="X-Dashboard-Token"),
    ):
        require_dashboard(token)
        actor = Actor(approver_id=f"web:{change.approver_name}", display_name=change.approver_name)
        try:
            if change.status == "approved":
                order = await bot.approvals.approve(order_id, actor, surface=SURFACE_WEB)
            else:
                order = await bot.approvals.reject(
                    order_id, actor, reason=change.rejection_reason, surface=SURFACE_WEB
                )
        except ApprovalError as exc:
            raise HTTPException(status_code=ERROR_STATUS.get(type(exc), 400), detail=exc.user_message)
        return {"ok": True, "order": order.as_dict()}

    @app.get("/api/dashboard/stats")
    async def dashboard_stats(token: Optional[str] = Header(default=None, alias="X-Dashboard-Token")):
        require_dashboard(token)
        return bot.storage.get_dashboard_stats()

    @app.post("/api/employee-codes", status_code=201)
    async def create_employee_code(
        request: EmployeeCodeRequest,
        token: Optional[str] = Header(default=None, alias="X-Dashboard-Token"),
    ):
        require_dashboard(token)
        code = f"{secrets.randbelow(1_000_000):06d}"
        while bot.storage.get_employee_code(code) is not None:
            code = f"{secrets.randbelow(1_000_000):06d}"
        row = bot.storage.create_employee_code(
            code,
            request.name,
            code_type=request.type,
            ttl_minutes=bot.config.employee_code_ttl_minutes,
        )
        logger.info("Created %s activation code for %s", request.type, request.name)
        return {"code": row["code"], "name": row["name"], "type": row["type"], "expires_at": row["expires_at"]}

    return app


def main() -> None:
    config = load_bot_config()
    logging.basicConfig(level=config.log_level, format=LOG_FORMAT)
    logger.info("Starting report_desk on %s:%s", config.host, config.port)
    app = create_app(ReportBot(config))
    uvicorn.run(app, host=config.host, port=config.port, log_level=config.log_level.lower())


if __name__ == "__main__":
    main()
