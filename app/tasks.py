"""
Celery Tasks
Downstream effects of payment reconciliation, run outside the request.

The reconciler queues these only after a status transition has been
committed, and a transition fires once per order, so each task runs once
per order no matter how often the payment result is observed. The tasks
only build and log the event for the collaborator, so none of them retry.
"""

import logging
import time
from datetime import datetime, timezone

from app.celery_worker import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(bind=True)
def track_order_placed(self, order_data: dict) -> dict:
    """
    Record a paid order with the analytics collaborator.

    Args:
        order_data: Order snapshot (id, reference, total, currency, user)

    Returns:
        dict: Tracking event that was emitted
    """
    task_id = self.request.id
    order_id = order_data.get('order_id', 'unknown')
    start_time = time.time()

    event = {
        'event': 'order_placed',
        'order_id': order_id,
        'reference': order_data.get('reference'),
        'user_id': order_data.get('user_id'),
        'total_amount': order_data.get('total_amount'),
        'currency': order_data.get('currency'),
        'source': order_data.get('source'),
        'tracked_at': datetime.now(timezone.utc).isoformat(),
    }
    logger.info(f"Task {task_id}: order_placed tracked for order #{order_id}")

    event['task_id'] = task_id
    event['processing_time_seconds'] = round(time.time() - start_time, 3)
    return event


@celery_app.task(bind=True)
def notify_payment_failed(self, order_data: dict) -> dict:
    """
    Tell the notification collaborator that a payment failed.

    Args:
        order_data: Order snapshot (id, reference, customer e-mail)
    """
    order_id = order_data.get('order_id', 'unknown')
    logger.warning(
        f"Task {self.request.id}: payment failed for order #{order_id} "
        f"({order_data.get('reference')})"
    )
    return {
        'event': 'payment_failed',
        'order_id': order_id,
        'customer_email': order_data.get('customer_email'),
        'notified_at': datetime.now(timezone.utc).isoformat(),
    }


@celery_app.task
def health_check() -> dict:
    """
    Simple health check task to verify Celery is working.
    """
    return {
        'status': 'healthy',
        'worker': 'celery',
        'timestamp': datetime.now(timezone.utc).isoformat()
    }
