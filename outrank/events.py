"""
Event bus.

Workflows are triggered by named events with a JSON payload:

  scan/process     {scanId, domain, email, leadId, domainSubscriptionId, skipEmail}
  subscriber/enrich {leadId, scanRunId}

`PrefectEventBus` delivers an event by starting the deployment mapped to its
name, passing the payload as flow parameters (keys converted to snake_case).
"""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

SCAN_PROCESS = "scan/process"
SUBSCRIBER_ENRICH = "subscriber/enrich"

DEFAULT_DEPLOYMENTS: Dict[str, str] = {
    SCAN_PROCESS: "process-scan/process-scan",
    SUBSCRIBER_ENRICH: "enrich-scan/enrich-scan",
}

_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


def to_flow_parameters(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {_CAMEL_RE.sub("_", k).lower(): v for k, v in payload.items()}


def scan_process_payload(
    domain: str,
    lead_id: str,
    email: Optional[str] = None,
    domain_subscription_id: Optional[str] = None,
    scan_id: Optional[str] = None,
    skip_email: bool = False,
) -> Dict[str, Any]:
    return {
        "scanId": scan_id,
        "domain": domain,
        "email": email or "",
        "leadId": lead_id,
        "domainSubscriptionId": domain_subscription_id,
        "skipEmail": skip_email,
    }


class EventBus(ABC):
    @abstractmethod
    def send(self, name: str, payload: Dict[str, Any]) -> Optional[str]:
        """Deliver one event. Returns an id for the triggered run, if any."""
        raise NotImplementedError


class PrefectEventBus(EventBus):
    """Fire-and-forget: `run_deployment(..., timeout=0)` returns once the run is scheduled."""

    def __init__(self, deployments: Optional[Dict[str, str]] = None) -> None:
        self.deployments = dict(DEFAULT_DEPLOYMENTS if deployments is None else deployments)

    def send(self, name: str, payload: Dict[str, Any]) -> Optional[str]:
        from prefect.deployments import run_deployment

        deployment = self.deployments.get(name)
        if not deployment:
            raise KeyError(f"no deployment mapped for event {name!r}")

        flow_run = run_deployment(deployment, parameters=to_flow_parameters(payload), timeout=0)
        run_id = str(getattr(flow_run, "id", "") or "") or None
        logger.info(
            json.dumps(
                {"event": "event_sent", "name": name, "deployment": deployment, "flow_run_id": run_id},
                sort_keys=True,
            )
        )
        return run_id
