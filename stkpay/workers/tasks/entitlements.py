"""
Celery beat task: re-apply entitlement grants for PAID upgrade intents whose
grant failed or never ran (entitlement_granted_at still NULL).
"""
import logging

from sqlalchemy.exc import ProgrammingError

from stkpay.core.celery_app import celery_app, settings
from stkpay.db.session import SessionLocal
from stkpay.models import audit_log, user  # noqa: F401  (register tables)
from stkpay.services.entitlements.service import EntitlementGrantor

logger = logging.getLogger(__name__)


def run_regrant(db, limit: int, grace_seconds: int) -> dict:
    counts = EntitlementGrantor(db).regrant_pending(limit=limit, grace_seconds=grace_seconds)
    return {"ok": True, **counts}


@celery_app.task(
    name="stkpay.workers.tasks.entitlements.regrant_entitlements",
    time_limit=300,
    soft_time_limit=280,
)
def regrant_entitlements() -> dict:
    db = SessionLocal()
    try:
        return run_regrant(
            db,
            limit=settings.entitlement_sweep_batch_size,
            grace_seconds=settings.entitlement_sweep_grace_seconds,
        )
    except ProgrammingError as e:
        msg = str(e.orig) if getattr(e, "orig", None) else str(e)
        db.rollback()
        if "does not exist" in msg or "UndefinedTable" in msg:
            return {"ok": True, "skipped": "table_not_found"}
        logger.exception("regrant_entitlements_error")
        return {"ok": False}
    except Exception:
        logger.exception("regrant_entitlements_error")
        db.rollback()
        return {"ok": False}
    finally:
        db.close()
