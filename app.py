# app.py
# Ежедневный отчёт по объектам: планировщик + опрос REST API + отправка в Telegram.
# Один процесс: FastAPI (статус / ручной запуск), APScheduler, aiogram Bot (без polling).

from __future__ import annotations

import asyncio
import collections
import datetime as dt
import hmac
import logging
import os
import sys
import time
import traceback
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Deque, Dict, List, Optional, Set, Tuple

import aiohttp
from fastapi import Depends, FastAPI, Header, HTTPException
from pydantic import BaseModel

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

# aiogram v3
from aiogram import Bot
from aiogram.client.default import DefaultBotProperties

import report_bot
from report_api import (
    ApiClient,
    AuthError,
    FetchError,
    TokenSession,
    fetch_apartments,
    fetch_clients,
    fetch_expense_statistics,
    fetch_payments,
)
from report_bot import deliver_report, format_report, strip_tags
from report_config import Config, ConfigError, load_config
from report_models import (
    SECTION_APARTMENTS,
    SECTION_DEBT,
    SECTION_EXPENSES,
    SECTION_PAYMENTS,
    DailyReport,
    build_report,
)

logger = logging.getLogger("app")

REPORT_JOB_ID = "job_daily_report"

CFG: Optional[Config] = None
JOB: Optional["ReportJob"] = None
bot: Optional[Bot] = None

RUN_HISTORY: Deque[Dict[str, Any]] = collections.deque(maxlen=20)
BACKGROUND_TASKS: Set["asyncio.Task[Any]"] = set()


# ---------------------------
# Report cycle
# ---------------------------

class ReportJob:
    """authenticate -> fetch (concurrently) -> aggregate -> format -> deliver.

    Owns the TokenSession for the whole process. Only one cycle runs at a
    time; a trigger that arrives mid-cycle is skipped.
    """

    def __init__(self, cfg: Config, session: Optional[TokenSession] = None) -> None:
        self.cfg = cfg
        self.session = session or TokenSession.from_config(cfg)
        self.last_report: Optional[DailyReport] = None
        self._lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._lock.locked()

    async def run_cycle(self, now: Optional[dt.datetime] = None) -> Optional[DailyReport]:
        if self._lock.locked():
            logger.warning("Report cycle already in progress, trigger skipped")
            return None
        async with self._lock:
            return await self._run(now or dt.datetime.now(self.cfg.tzinfo()))

    async def _section(self, name: str, coro: Awaitable[Any]) -> Tuple[Any, Optional[str]]:
        try:
            return await coro, None
        except (FetchError, AuthError) as exc:
            logger.error("Failed to fetch %s: %s", name, exc)
            return None, name

    async def _run(self, now: dt.datetime) -> DailyReport:
        day = now.date().isoformat()
        logger.info("Starting daily report for %s", day)

        timeout = aiohttp.ClientTimeout(total=self.cfg.REQUEST_TIMEOUT)
        async with aiohttp.ClientSession(timeout=timeout) as http:
            try:
                await self.session.ensure(http)
            except AuthError:
                self.session.invalidate()
                raise

            api = ApiClient(http, self.session, page_size=self.cfg.PAGE_SIZE)
            sections = await asyncio.gather(
                self._section(SECTION_APARTMENTS, fetch_apartments(api)),
                self._section(SECTION_PAYMENTS, fetch_payments(api)),
                self._section(SECTION_EXPENSES, fetch_expense_statistics(api)),
                self._section(SECTION_DEBT, fetch_clients(api, self.cfg.CLIENT_USER_TYPE)),
            )

        (apartments, _), (payments, _), (expense_stats, _), (users, _) = sections
        report = build_report(
            day=day,
            generated_at=now,
            apartments=apartments,
            payments=payments,
            expense_stats=expense_stats,
            users=users,
            client_type=self.cfg.CLIENT_USER_TYPE,
            failed_sections=[failed for _, failed in sections if failed],
        )
        self.last_report = report

        text = format_report(report, self.cfg.DEBT_CURRENCY, self.cfg.EXPENSE_CURRENCY)
        logger.info("\n=== DAILY REPORT ===\n%s\n====================", strip_tags(text))

        delivered = await deliver_report(text, self.cfg.REPORT_CHAT_IDS)
        if not delivered:
            logger.error("Daily report for %s was not delivered to any chat", day)
        return report


# ---------------------------
# Scheduler jobs
# ---------------------------

scheduler = AsyncIOScheduler()


def parse_hhmm(s: str, default_h: int, default_m: int) -> Tuple[int, int]:
    try:
        hh, mm = s.strip().split(":")
        h = int(hh)
        m = int(mm)
        if 0 <= h <= 23 and 0 <= m <= 59:
            return h, m
    except Exception:
        pass
    return default_h, default_m


def spawn(coro: Awaitable[Any]) -> "asyncio.Task[Any]":
    # start-up run; scheduled runs are awaited by the scheduler itself
    task = asyncio.create_task(coro)
    BACKGROUND_TASKS.add(task)
    task.add_done_callback(BACKGROUND_TASKS.discard)
    return task


def build_trigger(cfg: Config):
    tzinfo = cfg.tzinfo()
    if cfg.SCHEDULE_MODE == "interval":
        return IntervalTrigger(minutes=cfg.REPORT_INTERVAL_MINUTES, timezone=tzinfo)
    h, m = parse_hhmm(cfg.REPORT_TIME, 12, 0)
    return CronTrigger(hour=h, minute=m, timezone=tzinfo)


def reschedule_jobs(cfg: Config) -> None:
    try:
        scheduler.remove_job(REPORT_JOB_ID)
    except JobLookupError:
        pass

    scheduler.add_job(
        func=run_report_job,
        trigger=build_trigger(cfg),
        id=REPORT_JOB_ID,
        replace_existing=True,
        coalesce=True,
        misfire_grace_time=3600,
    )


async def run_job_with_logging(job_id: str, coro: Awaitable[Optional[str]]) -> None:
    tzinfo = CFG.tzinfo() if CFG else dt.timezone.utc
    started_at = dt.datetime.now(tzinfo).replace(microsecond=0).isoformat()
    started_ts = time.perf_counter()
    status = "success"
    error: Optional[str] = None
    try:
        status = (await coro) or "success"
    except Exception as exc:
        status = "fail"
        error = str(exc)
        trace = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        logger.error("Job %s failed: %s\n%s", job_id, exc, trace)
    finally:
        duration_ms = int((time.perf_counter() - started_ts) * 1000)
        RUN_HISTORY.append(
            {
                "job_id": job_id,
                "status": status,
                "started_at": started_at,
                "finished_at": dt.datetime.now(tzinfo).replace(microsecond=0).isoformat(),
                "duration_ms": duration_ms,
                "error": error,
            }
        )
        logger.info("Job %s finished: %s (%d ms)", job_id, status, duration_ms)


async def run_report_job() -> None:
    async def _job() -> Optional[str]:
        if JOB is None:
            raise RuntimeError("Report job is not initialized")
        report = await JOB.run_cycle()
        if report is None:
            return "skipped"
        return "degraded" if report.is_degraded else "success"

    await run_job_with_logging("daily_report", _job())


# ---------------------------
# FastAPI app
# ---------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    global CFG, JOB, bot
    if CFG is None:
        CFG = load_config()
    JOB = ReportJob(CFG)

    bot = Bot(token=CFG.BOT_TOKEN, default=DefaultBotProperties(parse_mode="HTML"))
    report_bot.set_bot(bot)

    if not scheduler.running:
        scheduler.start()
    reschedule_jobs(CFG)
    logger.info(
        "Report scheduler started (%s, %s)",
        CFG.SCHEDULE_MODE,
        f"every {CFG.REPORT_INTERVAL_MINUTES} min" if CFG.SCHEDULE_MODE == "interval" else f"at {CFG.REPORT_TIME} {CFG.TZ}",
    )

    if CFG.RUN_ON_START:
        spawn(run_report_job())

    try:
        yield
    finally:
        try:
            scheduler.shutdown(wait=False)
        except Exception:
            pass
        try:
            await bot.session.close()
        except Exception:
            pass
        report_bot.set_bot(None)


APP = FastAPI(title="Daily Property Report", version="1.0.0", lifespan=lifespan)


class JobOut(BaseModel):
    id: str
    trigger: str
    next_run_time: Optional[str] = None


class StatusOut(BaseModel):
    scheduler_running: bool
    jobs: List[JobOut]
    in_flight: bool
    last_report: Optional[Dict[str, Any]] = None
    runs: List[Dict[str, Any]]


class RunOut(BaseModel):
    ok: bool
    report: Dict[str, Any]


def require_api_key(x_api_key: Optional[str] = Header(None)) -> None:
    expected = CFG.ADMIN_API_KEY if CFG else ""
    if not expected:
        raise HTTPException(status_code=403, detail="Manual report trigger is disabled")
    if not x_api_key or not hmac.compare_digest(x_api_key, expected):
        raise HTTPException(status_code=401, detail="Invalid API key")


@APP.get("/health")
def health():
    return {"ok": True}


@APP.get("/api/report/status", response_model=StatusOut)
def api_report_status():
    jobs: List[JobOut] = []
    for j in scheduler.get_jobs():
        next_run = getattr(j, "next_run_time", None)
        jobs.append(
            JobOut(
                id=j.id,
                trigger=str(j.trigger),
                next_run_time=next_run.isoformat() if next_run else None,
            )
        )
    last_report = JOB.last_report if JOB else None
    return StatusOut(
        scheduler_running=bool(scheduler.running),
        jobs=jobs,
        in_flight=bool(JOB and JOB.running),
        last_report=last_report.as_dict() if last_report else None,
        runs=list(RUN_HISTORY),
    )


@APP.post("/api/report/run", response_model=RunOut)
async def api_report_run(_: None = Depends(require_api_key)):
    if JOB is None:
        raise HTTPException(status_code=503, detail="Report job is not initialized")
    if JOB.running:
        raise HTTPException(status_code=409, detail="Report cycle already in progress")
    try:
        report = await JOB.run_cycle()
    except AuthError as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    if report is None:
        raise HTTPException(status_code=409, detail="Report cycle already in progress")
    return {"ok": True, "report": report.as_dict()}


# ---------------------------
# Run
# ---------------------------

def setup_logging() -> None:
    level = getattr(logging, os.getenv("LOG_LEVEL", "INFO").strip().upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def main() -> int:
    global CFG
    setup_logging()
    try:
        CFG = load_config()
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc)
        return 1

    import uvicorn

    uvicorn.run(APP, host=CFG.HOST, port=CFG.PORT, reload=False, log_level="info")
    return 0


if __name__ == "__main__":
    sys.exit(main())
