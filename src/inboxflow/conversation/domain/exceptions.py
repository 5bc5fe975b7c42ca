from __future__ import annotations

from fastapi import status

from inboxflow.shared.exceptions import DomainError, NotFoundError


class FlowDefinitionError(DomainError):
    """Malformed flow graph (missing start node, dangling edge, ...); the flow must not run."""
    code = "flow_definition_error"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class FlowStepLimitExceeded(FlowDefinitionError):
    """Traversal exceeded the per-execution step guard (cyclic graph)."""
    code = "flow_step_limit_exceeded"


class FlowNotFoundError(NotFoundError):
    code = "flow_not_found"
