"""scan_engine_shared.merge_trigger — The PENDING -> MERGING test-and-set.

Every worker calls ``try_trigger`` after recording its own completion. The
claim is a single conditional write on the orchestration record:

    SET finalStatus = MERGING
    IF (finalStatus absent OR finalStatus = PENDING)
       AND engine[w] = DONE for every configured worker w

Exactly one concurrent caller can satisfy it; everyone else gets a rejected
condition, which means "not my turn". The winner then enqueues the
merge-trigger message. If that send fails the winner hands the claim back
(MERGING -> PENDING, conditioned on MERGING) so a redelivered completion can
try again.
"""

from __future__ import annotations

import logging
from typing import Iterable, Tuple

from scan_engine_shared.models import FinalStatus, MergeTriggerMessage, StoreResult
from scan_engine_shared.store import FINAL_STATUS, Equals, merge_claim_predicate

logger = logging.getLogger(__name__)


class MergeTrigger:
    def __init__(self, store, merge_queue, expected_workers: Iterable[str]):
        self._store = store
        self._merge_queue = merge_queue
        self.expected_workers: Tuple[str, ...] = tuple(expected_workers)

    def claim(self, request_id: str) -> bool:
        if not self.expected_workers:
            logger.warning("Expected worker list is empty. Skipping merge trigger. requestId=%s", request_id)
            return False
        result = self._store.conditional_update(
            request_id,
            {FINAL_STATUS: FinalStatus.MERGING.value},
            merge_claim_predicate(self.expected_workers),
        )
        if result == StoreResult.OK:
            return True
        if result == StoreResult.NOT_FOUND:
            logger.warning("Merge claim for unknown record. requestId=%s", request_id)
        else:
            logger.debug("Merge claim rejected (not all done or already claimed). requestId=%s", request_id)
        return False

    def release(self, request_id: str) -> bool:
        """Return a claimed request to PENDING. Never raises."""
        try:
            result = self._store.conditional_update(
                request_id,
                {FINAL_STATUS: FinalStatus.PENDING.value},
                [Equals(FINAL_STATUS, FinalStatus.MERGING.value)],
            )
        except Exception:
            logger.warning("Failed to reset merge status. requestId=%s", request_id, exc_info=True)
            return False
        if result != StoreResult.OK:
            logger.warning("Merge status was not MERGING on reset. requestId=%s result=%s", request_id, result.value)
            return False
        return True

    def send(self, request_id: str) -> str:
        return self._merge_queue.send(MergeTriggerMessage(request_id).to_json())

    def try_trigger(self, request_id: str) -> bool:
        """Claim the merge and enqueue the trigger. True only for the winner."""
        if not self.claim(request_id):
            return False
        try:
            message_id = self.send(request_id)
        except Exception:
            logger.error("Failed to send merge trigger. requestId=%s", request_id, exc_info=True)
            self.release(request_id)
            raise
        logger.info("Triggered merge. requestId=%s messageId=%s", request_id, message_id)
        return True
