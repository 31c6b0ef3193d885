"""Infrastructure collaborator used by escalation actions."""

from __future__ import annotations

import abc
from typing import Any

import structlog

logger = structlog.get_logger(__name__)


class InfrastructureOperator(abc.ABC):
    """Performs infrastructure changes requested by escalation levels."""

    @abc.abstractmethod
    async def scale_service(self, service: str, instances: int) -> dict[str, Any]:
        """Scale *service* to *instances* replicas."""

    @abc.abstractmethod
    async def rollback(self, service: str, version: str) -> dict[str, Any]:
        """Roll *service* back to *version*."""


class LoggingOperator(InfrastructureOperator):
    """Logs requested changes without performing them.

    Used when no deployment tooling is wired in; each request is logged so
    operators can see what the policy asked for.
    """

    async def scale_service(self, service: str, instances: int) -> dict[str, Any]:
        logger.info("scale_service_requested", service=service, instances=instances)
        return {"status": "requested", "service": service, "instances": instances}

    async def rollback(self, service: str, version: str) -> dict[str, Any]:
        logger.info("rollback_requested", service=service, version=version)
        return {"status": "requested", "service": service, "version": version}
