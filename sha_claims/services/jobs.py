"""
Background job handlers and the recurring schedule.

Importing this module registers a handler for every job name on the four
queues defined in `sha_claims.services.queue`.  The worker imports it before
it starts polling; the API imports it so that `/jobs` can validate names.

Claims handlers talk to SHA through a client built by `sha_client_factory`,
which tests replace with one backed by ``httpx.MockTransport``.  A failed
SHA response is raised as `SHASubmissionError` so the queue retries it.
"""

from __future__ import annotations

import logging
import shutil
import sqlite3
import subprocess
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.orm import Session, sessionmaker

from sha_claims.config import settings
from sha_claims.enterprise import audit
from sha_claims.models.database import session_scope, utcnow
from sha_claims.models.inventory import InventoryBatch, InventoryItem
from sha_claims.services import submission
from sha_claims.services import workflow as workflow_service
from sha_claims.services.queue import (
    backup_queue,
    claims_queue,
    get_queue,
    inventory_queue,
    notification_queue,
)
from sha_claims.services.sha_client import SHAClient

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"
EXPIRY_WARNING_DAYS = 30

sha_client_factory: Callable[[], SHAClient] = SHAClient


class SHASubmissionError(RuntimeError):
    """SHA rejected or could not receive a submission."""


def _actor(data: Dict[str, Any]) -> str:
    return str(data.get("submitted_by") or data.get("triggered_by") or SYSTEM_ACTOR)


# ---------------------------------------------------------------------------
# Claims queue
# ---------------------------------------------------------------------------

@claims_queue.process("submit_single_claim")
def submit_single_claim(db: Session, data: Dict[str, Any]) -> Dict[str, Any]:
    with sha_client_factory() as client:
        result = submission.submit_single_claim(db, client, int(data["claim_id"]), _actor(data))
    if not result.success:
        raise SHASubmissionError(f"SHA returned {result.status}: {result.error}")
    return {"success": True, "sha_reference": result.reference}


@claims_queue.process("submit_claim_batch")
def submit_claim_batch(db: Session, data: Dict[str, Any]) -> Dict[str, Any]:
    with sha_client_factory() as client:
        result = submission.submit_claim_batch(db, client, int(data["batch_id"]), _actor(data))
    if not result.success:
        raise SHASubmissionError(f"SHA returned {result.status}: {result.error}")
    return {"success": True, "sha_batch_reference": result.reference}


@claims_queue.process("check_batch_status")
def check_batch_status(db: Session, data: Dict[str, Any]) -> Dict[str, Any]:
    with sha_client_factory() as client:
        result = submission.check_batch_status(db, client, int(data["batch_id"]))
    if not result.success:
        raise SHASubmissionError(f"SHA returned {result.status}: {result.error}")
    return {"success": True, "status": result.data}


@claims_queue.process("reconcile_claims")
def reconcile_claims(db: Session, data: Dict[str, Any]) -> Dict[str, Any]:
    with sha_client_factory() as client:
        counts = submission.reconcile_claims(db, client)
    logger.info("Reconciled claims: %s", counts)
    return {"success": True, **counts}


@claims_queue.process("process_workflow")
def process_workflow(db: Session, data: Dict[str, Any]) -> Dict[str, Any]:
    workflow = workflow_service.process_automated_steps(db, int(data["workflow_id"]), _actor(data))
    return {
        "success": True,
        "workflow_id": workflow.id,
        "current_step": workflow.current_step.value if workflow.current_step else None,
        "overall_status": workflow.overall_status.value,
    }


# ---------------------------------------------------------------------------
# Inventory queue
# ---------------------------------------------------------------------------

def _stock_levels(db: Session) -> List[Tuple[InventoryItem, int]]:
    """Each item with the quantity held in batches that have not expired."""
    today = utcnow().date()
    levels = []
    for item in db.query(InventoryItem).order_by(InventoryItem.name).all():
        stock = sum(b.quantity for b in item.batches if b.expiry_date > today)
        levels.append((item, stock))
    return levels


@inventory_queue.process("check_low_stock")
def check_low_stock(db: Session, data: Dict[str, Any]) -> Dict[str, Any]:
    low = [(item, stock) for item, stock in _stock_levels(db) if stock <= item.reorder_level]
    for item, stock in low:
        notification_queue.add(
            db,
            "send_email",
            {
                "type": "low_stock_alert",
                "recipient": settings.admin_email,
                "message": f"Low stock alert: {item.name} has only {stock} units remaining",
                "metadata": {"item_id": item.id, "current_stock": stock, "reorder_level": item.reorder_level},
            },
        )
    if low:
        logger.warning("Found %d items with low stock", len(low))
    return {"success": True, "low_stock_count": len(low)}


@inventory_queue.process("check_expiring_items")
def check_expiring_items(db: Session, data: Dict[str, Any]) -> Dict[str, Any]:
    today = utcnow().date()
    horizon = today + timedelta(days=int(data.get("days", EXPIRY_WARNING_DAYS)))
    expiring = (
        db.query(InventoryBatch)
        .filter(
            InventoryBatch.expiry_date > today,
            InventoryBatch.expiry_date <= horizon,
            InventoryBatch.quantity > 0,
        )
        .order_by(InventoryBatch.expiry_date)
        .all()
    )
    if expiring:
        notification_queue.add(
            db,
            "send_email",
            {
                "type": "expiry_alert",
                "recipient": settings.admin_email,
                "message": f"{len(expiring)} items expiring within {(horizon - today).days} days",
                "metadata": {
                    "items": [
                        {
                            "name": b.item.name,
                            "batch_number": b.batch_number,
                            "expiry_date": b.expiry_date.isoformat(),
                            "quantity": b.quantity,
                        }
                        for b in expiring
                    ]
                },
            },
        )
        logger.warning("Found %d batches expiring by %s", len(expiring), horizon)
    return {"success": True, "expiring_count": len(expiring)}


@inventory_queue.process("generate_reorder_report")
def generate_reorder_report(db: Session, data: Dict[str, Any]) -> Dict[str, Any]:
    items = [
        {
            "item_id": item.id,
            "name": item.name,
            "unit": item.unit,
            "current_stock": stock,
            "reorder_level": item.reorder_level,
            "suggested_quantity": max(item.reorder_quantity, item.reorder_level - stock),
        }
        for item, stock in _stock_levels(db)
        if stock <= item.reorder_level
    ]
    return {"success": True, "generated_at": utcnow().isoformat(), "items": items}


# ---------------------------------------------------------------------------
# Notification queue
# ---------------------------------------------------------------------------

def _deliver(channel: str, data: Dict[str, Any]) -> Dict[str, Any]:
    recipient = data.get("recipient")
    message = data.get("message")
    if not recipient or not message:
        raise ValueError(f"{channel} notification needs a recipient and a message")
    # Delivery goes through the clinic's mail/SMS gateway, outside this service.
    logger.info("[%s] To: %s, Message: %s", channel.upper(), recipient, message)
    audit.log_action(
        SYSTEM_ACTOR,
        SYSTEM_ACTOR,
        f"send_{channel}",
        {"recipient": recipient, "type": data.get("type"), "message": message},
    )
    return {"success": True, "channel": channel, "recipient": recipient}


@notification_queue.process("send_email")
def send_email(db: Session, data: Dict[str, Any]) -> Dict[str, Any]:
    return _deliver("email", data)


@notification_queue.process("send_sms")
def send_sms(db: Session, data: Dict[str, Any]) -> Dict[str, Any]:
    return _deliver("sms", data)


@notification_queue.process("send_overdue_reminder")
def send_overdue_reminder(db: Session, data: Dict[str, Any]) -> Dict[str, Any]:
    reminder = dict(data)
    reminder.setdefault("type", "overdue_reminder")
    if not reminder.get("message") and reminder.get("invoice_number"):
        reminder["message"] = (
            f"Reminder from {settings.clinic_name}: invoice {reminder['invoice_number']} is overdue"
        )
    return _deliver(reminder.get("channel", "sms"), reminder)


# ---------------------------------------------------------------------------
# Backup queue
# ---------------------------------------------------------------------------

def _backup_dir(data: Dict[str, Any]) -> Path:
    path = Path(data.get("destination") or settings.backup_path)
    path.mkdir(parents=True, exist_ok=True)
    return path


@backup_queue.process("database_backup")
def database_backup(db: Session, data: Dict[str, Any]) -> Dict[str, Any]:
    """Dump the database next to earlier backups.

    SQLite is copied with the online backup API; PostgreSQL is dumped with
    ``pg_dump``, which must be on the worker's PATH.
    """
    url = db.get_bind().url
    timestamp = utcnow().strftime("%Y%m%d-%H%M%S")
    directory = _backup_dir(data)
    if url.get_backend_name() == "sqlite":
        target = directory / f"backup-{timestamp}.db"
        source = db.connection().connection.driver_connection
        destination = sqlite3.connect(str(target))
        try:
            source.backup(destination)
        finally:
            destination.close()
    elif url.get_backend_name() == "postgresql":
        target = directory / f"backup-{timestamp}.sql"
        subprocess.run(
            ["pg_dump", "--dbname", url.set(drivername="postgresql").render_as_string(hide_password=False),
             "--file", str(target)],
            check=True,
            capture_output=True,
        )
    else:
        raise ValueError(f"Backups are not supported for {url.get_backend_name()} databases")

    logger.info("Database backup written to %s", target)
    audit.log_action(SYSTEM_ACTOR, SYSTEM_ACTOR, "database_backup", {"path": str(target)})
    return {"success": True, "path": str(target)}


@backup_queue.process("file_backup")
def file_backup(db: Session, data: Dict[str, Any]) -> Dict[str, Any]:
    source = Path(data.get("source") or settings.upload_folder)
    if not source.is_dir():
        raise FileNotFoundError(f"Upload folder {source} does not exist")
    base = _backup_dir(data) / f"files-{utcnow():%Y%m%d-%H%M%S}"
    archive = shutil.make_archive(str(base), "gztar", root_dir=str(source))
    logger.info("File backup written to %s", archive)
    audit.log_action(SYSTEM_ACTOR, SYSTEM_ACTOR, "file_backup", {"path": archive, "source": str(source)})
    return {"success": True, "path": archive}


# ---------------------------------------------------------------------------
# Recurring schedule
# ---------------------------------------------------------------------------

RECURRING_JOBS: List[Tuple[str, str, str]] = [
    ("inventory", "check_low_stock", "0 */6 * * *"),
    ("inventory", "check_expiring_items", "0 9 * * *"),
    ("claims", "reconcile_claims", "0 */4 * * *"),
    ("backup", "database_backup", "0 2 * * *"),
]


def enqueue(queue_name: str, job_name: str, data: Optional[Dict[str, Any]] = None,
            factory: Optional[sessionmaker] = None) -> int:
    """Add a job in its own transaction and return its id."""
    with session_scope(factory) as db:
        job = get_queue(queue_name).add(db, job_name, data)
        return job.id


def schedule_recurring_jobs(scheduler, factory: Optional[sessionmaker] = None) -> None:
    """Register the recurring jobs on an APScheduler scheduler.

    The scheduler only enqueues; the jobs themselves run on the worker's
    queues like any other job.
    """
    for queue_name, job_name, crontab in RECURRING_JOBS:
        scheduler.add_job(
            enqueue,
            CronTrigger.from_crontab(crontab),
            args=[queue_name, job_name, {}, factory],
            id=f"{queue_name}:{job_name}",
            replace_existing=True,
            coalesce=True,
        )
        logger.info("Scheduled %s/%s (%s)", queue_name, job_name, crontab)
