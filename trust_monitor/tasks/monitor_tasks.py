# trust_monitor/tasks/monitor_tasks.py
import logging

from celery import shared_task

from trust_monitor.services.monitor_agent import get_monitor

logger = logging.getLogger(__name__)


@shared_task(name="monitor.cycle")
def monitor_cycle():
    """
    One agent tick; each tier's cadence decides what runs.

    Under MONITOR_DRIVER=celery the monitor holds a Redis lock for the cycle, so a
    tick landing while another worker is mid-cycle comes back with skipped=True.
    """
    summary = get_monitor().tick()
    return summary.to_dict()


@shared_task(name="monitor.purge_expired_logs")
def purge_expired_logs():
    purged = get_monitor().store.purge_expired()
    logger.info("Purged %d expired audit logs", purged)
    return {"purged": purged}
