"""Derive a request's overall status from its units."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable, Iterable

from ingestcue.models import OverallStatus, Unit, UnitStatus

if TYPE_CHECKING:
    from ingestcue.store import Store

logger = logging.getLogger(__name__)


def derive_overall_status(units: Iterable[Unit]) -> OverallStatus:
    """
    Compute the overall status of a request from its units.

    Precedence:
        1. every unit DONE -> COMPLETED
        2. every unit DONE or FAILED, at least one FAILED -> PARTIAL if any
           DONE, else FAILED
        3. any unit started (IN_FLIGHT, DONE, FAILED, or PENDING waiting on a
           retry) -> TRIGGERED
        4. otherwise NOT_STARTED
    """
    units = list(units)
    if not units:
        return OverallStatus.NOT_STARTED

    statuses = [u.status for u in units]
    if all(s == UnitStatus.DONE for s in statuses):
        return OverallStatus.COMPLETED
    if all(s.terminal for s in statuses):
        if any(s == UnitStatus.DONE for s in statuses):
            return OverallStatus.PARTIAL
        return OverallStatus.FAILED
    if any(u.status != UnitStatus.PENDING or u.attempts > 0 for u in units):
        return OverallStatus.TRIGGERED
    return OverallStatus.NOT_STARTED


class StatusAggregator:
    """
    Recomputes and persists ``overall_status``.

    The only component that writes ``overall_status``. Called after every
    unit status transition.
    """

    def __init__(self, store: Store, now: Callable[[], float]) -> None:
        self._store = store
        self._now = now

    async def recompute(self, request_id: str) -> OverallStatus:
        """
        Re-derive a request's status and persist it if it changed.

        Idempotent: with no intervening unit change, a second call returns
        the same status and writes nothing.

        Raises:
            KeyError: If the request does not exist.
        """
        request = await self._store.get_request(request_id)
        if request is None:
            raise KeyError(request_id)

        status = derive_overall_status(request.units)
        if status != request.overall_status:
            await self._store.set_overall_status(request_id, status, self._now())
            logger.info(
                "Request %s: %s -> %s", request_id, request.overall_status.value, status.value
            )
        return status
