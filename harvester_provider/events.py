import logging

from harvester_provider.db import session_scope
from harvester_provider.models import MachineRequest
from harvester_provider.repositories import write_event


SEVERITY_NORMAL = "Normal"
SEVERITY_WARNING = "Warning"

logger = logging.getLogger(__name__)


class EventRecorder:
    """Audit sink for MachineRequest events.

    Recording is fire-and-forget: a failing store write is logged and
    dropped so it never interferes with reconciliation.
    """

    def event(
        self, mr: MachineRequest, severity: str, reason: str, message: str
    ) -> None:
        log = logger.warning if severity == SEVERITY_WARNING else logger.info
        log(
            "event machinerequest=%s/%s severity=%s reason=%s message=%s",
            mr.namespace,
            mr.name,
            severity,
            reason,
            message,
        )
        try:
            with session_scope() as session:
                write_event(
                    session,
                    severity,
                    reason,
                    message,
                    namespace=mr.namespace,
                    name=mr.name,
                )
        except Exception:  # noqa: BLE001
            logger.exception(
                "failed to record event machinerequest=%s/%s reason=%s",
                mr.namespace,
                mr.name,
                reason,
            )
