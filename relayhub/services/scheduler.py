"""
Background jobs: periodic rule evaluation, stale-command alerts,
memory-queue eviction and the optional offline sweep
"""
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
import logging

from relayhub.database import SessionLocal, settings, get_utc_datetime
from relayhub.models.rule import DecisionRule
from relayhub.services.command_queue import get_command_queue, get_transient_queue
from relayhub.services.liveness import sweep_offline
from relayhub.services.rule_engine import RuleEngine, report_stale_commands

logger = logging.getLogger(__name__)
scheduler = BackgroundScheduler()


def evaluate_periodic_rules():
    """Evaluate periodic rules of every device that has enabled rules"""
    db = SessionLocal()
    try:
        device_ids = [
            row.device_id for row in
            db.query(DecisionRule.device_id).filter(DecisionRule.enabled == True).distinct().all()
        ]
        now = get_utc_datetime()
        for device_id in device_ids:
            try:
                result = RuleEngine(db).evaluate(device_id, trigger="periodic", now=now)
                if result.rules_fired:
                    logger.info(f"Periodic evaluation of {device_id}: {result.actions_executed} action(s)")
            except Exception as e:
                db.rollback()
                logger.error(f"Error evaluating rules for {device_id}: {str(e)}")
    except Exception as e:
        logger.error(f"Error in periodic rule evaluation: {str(e)}")
    finally:
        db.close()


def check_stale_commands():
    db = SessionLocal()
    try:
        count = report_stale_commands(db, get_command_queue(db))
        if count:
            logger.warning(f"{count} command(s) not acknowledged in time")
    except Exception as e:
        db.rollback()
        logger.error(f"Error checking stale commands: {str(e)}")
    finally:
        db.close()


def evict_finished_commands():
    try:
        get_transient_queue().evict()
    except Exception as e:
        logger.error(f"Error evicting finished commands: {str(e)}")


def sweep_offline_devices():
    db = SessionLocal()
    try:
        flipped = sweep_offline(db)
        if flipped:
            logger.info(f"Marked {flipped} device(s) offline")
    except Exception as e:
        db.rollback()
        logger.error(f"Error sweeping offline devices: {str(e)}")
    finally:
        db.close()


def start_scheduler():
    """Start the background jobs"""
    if scheduler.running:
        return

    scheduler.add_job(
        evaluate_periodic_rules,
        IntervalTrigger(seconds=settings.rule_tick_seconds),
        id="rule_evaluation",
        replace_existing=True
    )
    scheduler.add_job(
        check_stale_commands,
        IntervalTrigger(seconds=60),
        id="stale_commands",
        replace_existing=True
    )
    if settings.command_queue_backend == "memory":
        scheduler.add_job(
            evict_finished_commands,
            IntervalTrigger(seconds=60),
            id="command_eviction",
            replace_existing=True
        )
    if settings.liveness_sweep_enabled:
        scheduler.add_job(
            sweep_offline_devices,
            IntervalTrigger(seconds=settings.online_window_seconds),
            id="offline_sweep",
            replace_existing=True
        )
    scheduler.start()
    logger.info(f"Rule scheduler started (tick: {settings.rule_tick_seconds}s)")


def stop_scheduler():
    """Stop the scheduler"""
    if scheduler.running:
        scheduler.shutdown()
        logger.info("Rule scheduler stopped")
