"""
Scheduler pour les tâches automatiques RatePro
- Worker de la file durable toutes les 5 secondes
- Libération des jobs bloqués en processing toutes les 5 minutes
- Réconciliation nocturne (agrégats survey + stats contacts) à 3h
- Nettoyage quotidien des notifications à 4h
"""

import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from services.event_logger import log_error

logger = logging.getLogger("scheduler")

QUEUE_POLL_SECONDS = 5


class TaskScheduler:
    """Gestionnaire de tâches planifiées"""

    def __init__(self):
        self.scheduler = AsyncIOScheduler(timezone="UTC")

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def start(self):
        """Démarre le scheduler avec toutes les tâches"""
        self.scheduler.add_job(
            self.process_queue,
            IntervalTrigger(seconds=QUEUE_POLL_SECONDS),
            id="queue_worker",
            name="Worker file d'attente",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

        self.scheduler.add_job(
            self.release_stale_jobs,
            IntervalTrigger(minutes=5),
            id="release_stale_jobs",
            name="Libération jobs bloqués",
            replace_existing=True,
        )

        self.scheduler.add_job(
            self.nightly_reconciliation,
            CronTrigger(hour=3, minute=0),
            id="nightly_reconciliation",
            name="Réconciliation nocturne",
            replace_existing=True,
        )

        self.scheduler.add_job(
            self.cleanup_notifications,
            CronTrigger(hour=4, minute=0),
            id="cleanup_notifications",
            name="Nettoyage notifications",
            replace_existing=True,
        )

        self.scheduler.start()
        logger.info("[SCHEDULER] started")

    def stop(self):
        """Arrête le scheduler"""
        if self.scheduler.running:
            self.scheduler.shutdown()
            logger.info("[SCHEDULER] stopped")

    # ==================== TÂCHES PLANIFIÉES ====================

    async def process_queue(self):
        # Import ici pour éviter les imports circulaires
        from services.job_queue import DurableQueue

        try:
            return await DurableQueue().process_due_jobs()
        except Exception as e:
            log_error("scheduler.process_queue", str(e), exc_info=True)

    async def release_stale_jobs(self):
        from services.job_queue import release_stale_jobs

        try:
            return await release_stale_jobs()
        except Exception as e:
            log_error("scheduler.release_stale_jobs", str(e), exc_info=True)

    async def nightly_reconciliation(self):
        """Recalcule totalResponses/analytics des surveys et surveyStats des contacts."""
        from services.survey_aggregates import reconcile_surveys
        from services.contact_stats import recalculate_contact_stats

        try:
            surveys = await reconcile_surveys()
            contacts = await recalculate_contact_stats()
            logger.info(f"[SCHEDULER] reconciliation done surveys={surveys} contacts={contacts}")
            return {"surveys": surveys, "contacts": contacts}
        except Exception as e:
            log_error("scheduler.nightly_reconciliation", str(e), exc_info=True)

    async def cleanup_notifications(self):
        from services.notifications import cleanup_old_notifications

        try:
            return await cleanup_old_notifications()
        except Exception as e:
            log_error("scheduler.cleanup_notifications", str(e), exc_info=True)


task_scheduler = TaskScheduler()
