import logging
import threading
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from database import session_scope
from fx_rates import ExchangeRateSyncService
from services import MaintenanceService, ScheduleRuleService


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    """Owns the background scheduler for schedule rules and maintenance jobs.

    ``reinit`` builds a fresh scheduler from the enabled schedule rules and
    swaps it in; it is called after every schedule-rule change.
    """

    def __init__(self) -> None:
        self.settings = get_settings()
        self.scheduler: Optional[BackgroundScheduler] = None
        self._lock = threading.Lock()

    def _run_schedule_rule(self, rule_id: int) -> None:
        logger.info(f"schedule_rule_run: rule_id={rule_id}")
        try:
            with session_scope() as session:
                txn = ScheduleRuleService(session).run(rule_id)
                logger.info(
                    f"schedule_rule_run: rule_id={rule_id} transaction_id={txn.id}"
                )
        except Exception:
            logger.exception(f"schedule_rule_failed: rule_id={rule_id}")

    def _fix_daily_gaps(self, source: str = "manual") -> None:
        try:
            with session_scope() as session:
                inserted = MaintenanceService(session).fix_daily_gaps()
                logger.info(f"fix_daily_gaps_run: source={source} inserted_rows={inserted}")
        except Exception:
            logger.exception(f"fix_daily_gaps_failed: source={source}")

    def _sync_exchange_rates(self, source: str = "manual") -> None:
        try:
            with session_scope() as session:
                count = ExchangeRateSyncService(session).sync()
                logger.info(f"exchange_rate_sync_run: source={source} currencies={count}")
        except Exception:
            logger.exception(f"exchange_rate_sync_failed: source={source}")

    def _build(self) -> BackgroundScheduler:
        scheduler = BackgroundScheduler(timezone=self.settings.timezone)

        scheduler.add_job(
            self._fix_daily_gaps,
            CronTrigger(hour=0, minute=5, timezone="UTC"),
            args=["daily_00:05"],
            id="fix_daily_gaps",
            replace_existing=True,
            misfire_grace_time=3600,
        )
        scheduler.add_job(
            self._sync_exchange_rates,
            IntervalTrigger(hours=1),
            args=["hourly"],
            id="exchange_rate_sync",
            replace_existing=True,
            misfire_grace_time=300,
        )

        with session_scope() as session:
            rules = ScheduleRuleService(session).list_enabled()
            jobs = [(rule.id, rule.cron_expression) for rule in rules]
        for rule_id, expression in jobs:
            try:
                trigger = CronTrigger.from_crontab(
                    expression, timezone=self.settings.timezone
                )
            except ValueError:
                logger.exception(
                    f"schedule_rule_skipped: rule_id={rule_id} cron={expression!r}"
                )
                continue
            scheduler.add_job(
                self._run_schedule_rule,
                trigger,
                args=[rule_id],
                id=f"schedule_rule_{rule_id}",
                replace_existing=True,
                misfire_grace_time=300,
                max_instances=1,
            )
        logger.info(f"scheduler_built: schedule_rules={len(jobs)}")
        return scheduler

    def reinit(self) -> None:
        with self._lock:
            scheduler = self._build()
            scheduler.start()
            previous, self.scheduler = self.scheduler, scheduler
            if previous is not None and previous.running:
                previous.shutdown(wait=False)
            logger.info("Scheduler reinitialized")

    def start(self) -> None:
        self._fix_daily_gaps("startup")
        self._sync_exchange_rates("startup")
        self.reinit()
        logger.info("Scheduler started with daily gap fix and hourly rate sync")

    def stop(self) -> None:
        with self._lock:
            if self.scheduler is not None and self.scheduler.running:
                self.scheduler.shutdown(wait=False)
                logger.info("Scheduler stopped")
            self.scheduler = None
