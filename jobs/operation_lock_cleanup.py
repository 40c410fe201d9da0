"""
Operation Lock Cleanup Job
Releases ACTIVE operation locks whose TTL has passed, so a worker that died
mid-order cannot block the user's next card order indefinitely
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict

from services.operation_lock_manager import OperationLockManager

logger = logging.getLogger(__name__)


async def release_stale_operation_locks(lock_manager: OperationLockManager) -> Dict[str, Any]:
    """Scheduled job; returns a status dict and never raises into the scheduler"""
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        released = await lock_manager.release_expired()
    except Exception as e:
        logger.error(f"❌ OPERATION_LOCK_CLEANUP_FAILED: {e}")
        return {'status': 'error', 'error': str(e), 'timestamp': timestamp}

    if released:
        logger.warning(f"🧹 OPERATION_LOCK_CLEANUP: released {released} stale locks")
    else:
        logger.debug("✅ OPERATION_LOCK_CLEANUP: no stale locks")
    return {'status': 'ok', 'released': released, 'timestamp': timestamp}
