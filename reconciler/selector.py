from __future__ import annotations

from common.logger import Logger
from reconciler.config import MatchPolicy
from reconciler.errors import InvalidInput
from reconciler.stores import CollectionStore, bounded
from reconciler.types import CollectionRecord, PaymentEvent


class CandidateSelector:
    def __init__(self, collections: CollectionStore, *, lookup_timeout_seconds: float) -> None:
        self._collections = collections
        self._timeout = lookup_timeout_seconds

    async def select_candidates(self, event: PaymentEvent, policy: MatchPolicy) -> list[CollectionRecord]:
        """
        Open collections of the event's tenant recorded inside
        [occurred_at - window_before, occurred_at + window_after].
        """
        if not event.tenant_id:
            raise InvalidInput("payment event has no tenant")

        start = event.occurred_at - policy.window_before
        end = event.occurred_at + policy.window_after
        candidates = await bounded(
            self._collections.open_in_window(
                event.tenant_id,
                start=start,
                end=end,
                methods=policy.eligible_methods,
            ),
            timeout=self._timeout,
            what="candidate retrieval",
        )
        Logger.debug(
            "Candidates for %s: %d in [%s, %s]",
            event.external_reference,
            len(candidates),
            start.isoformat(),
            end.isoformat(),
        )
        return list(candidates)
